"""
Registro de TableSchemas (uno por dataset).

Carga el documento declarativo (YAML) una sola vez por corrida del orquestador
y lo expone como TableSchema inmutables. Cambiar el documento requiere una
nueva corrida: no hay live reload.

Formato del documento:

    datasets:
      - name: mst_ledger
        collection: Ledger
        nature: master
        fetch: [OpeningBalance, ClosingBalance]
        filters: ["NOT $IsDeleted"]
        fields:
          - {name: guid, field: Guid, type: text, required: true}
          - {name: opening_balance, field: OpeningBalance, type: amount}
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from app.shared.exceptions.sync import ConfigurationError

from .types import DatasetNature, FieldSpec, FieldType, ImportOperation, TableSchema

_TARGET_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class _FieldDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    field: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    default: Optional[Any] = None
    sign_field: Optional[str] = None

    @model_validator(mode="after")
    def validate_field(self) -> "_FieldDocument":
        if not _TARGET_NAME_RE.match(self.name):
            raise ValueError(f"Nombre de columna inválido '{self.name}'")
        if self.sign_field and self.type not in (FieldType.AMOUNT, FieldType.QUANTITY):
            raise ValueError(f"sign_field solo aplica a amount/quantity (campo '{self.name}')")
        return self


class _DatasetDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    collection: str
    nature: DatasetNature = DatasetNature.MASTER
    import_mode: Optional[ImportOperation] = None
    fetch: list[str] = Field(default_factory=list)
    filters: list[str] = Field(default_factory=list)
    fields: list[_FieldDocument] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_dataset(self) -> "_DatasetDocument":
        if not _TARGET_NAME_RE.match(self.name):
            raise ValueError(f"Nombre de dataset inválido '{self.name}'")
        if not self.collection.strip():
            raise ValueError(f"Dataset '{self.name}' sin collection")
        names = [f.name for f in self.fields]
        if duplicates := {n for n in names if names.count(n) > 1}:
            raise ValueError(f"Columnas duplicadas en '{self.name}': {sorted(duplicates)}")
        for f in self.fields:
            if f.sign_field and f.sign_field not in names:
                raise ValueError(
                    f"sign_field '{f.sign_field}' del campo '{f.name}' no existe en '{self.name}'"
                )
        return self

    def to_schema(self) -> TableSchema:
        return TableSchema(
            dataset_name=self.name,
            collection_path=self.collection,
            fields=tuple(
                FieldSpec(
                    source_expression=f.field,
                    target_name=f.name,
                    type=f.type,
                    required=f.required,
                    default_value=f.default,
                    sign_field=f.sign_field,
                )
                for f in self.fields
            ),
            fetch_directives=tuple(self.fetch),
            filter_expressions=tuple(self.filters),
            nature=self.nature,
            import_mode=self.import_mode,
        )


class _SchemaDocument(BaseModel):
    model_config = ConfigDict(extra="forbid")

    datasets: list[_DatasetDocument]


class TableSchemaRegistry:
    """
    Registro de solo lectura: dataset_name -> TableSchema.

    Mantiene el orden del documento (es el orden de procesamiento por defecto).
    """

    def __init__(self, schemas: Iterable[TableSchema]) -> None:
        self._schemas: dict[str, TableSchema] = {}
        for schema in schemas:
            if schema.dataset_name in self._schemas:
                raise ConfigurationError(f"Dataset duplicado en el registro: '{schema.dataset_name}'")
            self._schemas[schema.dataset_name] = schema

    @classmethod
    def from_document(cls, document: Any) -> "TableSchemaRegistry":
        try:
            parsed = _SchemaDocument.model_validate(document)
        except ValidationError as e:
            raise ConfigurationError(f"Documento de schemas inválido: {e}") from e
        return cls(d.to_schema() for d in parsed.datasets)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "TableSchemaRegistry":
        file_path = Path(path)
        if not file_path.is_file():
            raise ConfigurationError(f"No existe el documento de schemas: {file_path}")

        with file_path.open("r", encoding="utf-8") as fh:
            try:
                document = yaml.safe_load(fh)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"YAML inválido en {file_path}: {e}") from e

        registry = cls.from_document(document or {})
        logger.info(f"Registro de schemas cargado desde {file_path.name}: {len(registry)} dataset(s)")
        return registry

    def __len__(self) -> int:
        return len(self._schemas)

    def __contains__(self, name: object) -> bool:
        return name in self._schemas

    def names(self) -> list[str]:
        return list(self._schemas.keys())

    def get(self, name: str) -> TableSchema:
        try:
            return self._schemas[name]
        except KeyError:
            raise ConfigurationError(
                f"Dataset no registrado: '{name}'",
                details={"available": self.names()},
            ) from None

    def select(self, names: Optional[Iterable[str]] = None) -> list[TableSchema]:
        """
        Retorna los schemas pedidos (en el orden pedido) o todos si names es None.

        Un nombre desconocido es un error de configuración (fatal, antes de procesar).
        """
        if names is None:
            return list(self._schemas.values())

        requested = list(dict.fromkeys(names))
        unknown = [n for n in requested if n not in self._schemas]
        if unknown:
            raise ConfigurationError(
                f"Datasets no registrados: {unknown}",
                details={"unknown": unknown, "available": self.names()},
            )
        return [self._schemas[n] for n in requested]

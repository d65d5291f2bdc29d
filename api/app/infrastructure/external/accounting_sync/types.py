"""
Tipos y utilidades puras para el pipeline contable -> Postgres.

Se mantienen libres de I/O para poder testearlos fácilmente.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utc_now() -> datetime:
    """Retorna la hora actual en UTC, como datetime aware."""
    return datetime.now(timezone.utc)


class FieldType(str, Enum):
    """Regla de tipado de un campo (cómo se extrae en remoto y cómo se decodifica)."""

    TEXT = "text"
    NUMBER = "number"
    AMOUNT = "amount"
    QUANTITY = "quantity"
    RATE = "rate"
    LOGICAL = "logical"
    DATE = "date"

    @property
    def is_numeric(self) -> bool:
        return self in NUMERIC_TYPES


NUMERIC_TYPES = frozenset({FieldType.NUMBER, FieldType.AMOUNT, FieldType.QUANTITY, FieldType.RATE})


class ImportOperation(str, Enum):
    """Semántica de escritura ante conflicto de clave."""

    REPLACE = "replace"  # sobrescribe el registro completo
    MERGE = "merge"      # sobrescribe solo los campos presentes (no nulos)


class DatasetNature(str, Enum):
    MASTER = "master"
    TRANSACTION = "transaction"


# Claves de tenant inyectadas en cada registro
COMPANY_KEY = "company_id"
DIVISION_KEY = "division_id"
GUID_KEY = "guid"
CONFLICT_KEY: tuple[str, ...] = (GUID_KEY, COMPANY_KEY, DIVISION_KEY)


@dataclass(frozen=True)
class FieldSpec:
    """
    Define un campo del dataset.

    - source_expression: expresión/identificador del sistema remoto (p.ej. "Name", "..Parent")
    - target_name: columna destino en Postgres (única dentro del TableSchema)
    - type: regla de tipado (FieldType)
    - required: si True y el valor falta, se usa default_value (o fallback heurístico en text)
    - default_value: valor a usar cuando el campo está ausente
    - sign_field: target_name de un campo lógico del mismo registro que marca
      débito (amount) o entrada a inventario (quantity); define el signo al decodificar
    """

    source_expression: str
    target_name: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    default_value: Optional[Any] = None
    sign_field: Optional[str] = None


@dataclass(frozen=True)
class TableSchema:
    """
    Descripción declarativa de un dataset.

    collection_path: ruta separada por puntos a través de la jerarquía remota;
    el primer nivel es el tipo de colección y los siguientes son sub-colecciones
    (p.ej. "Voucher.AllLedgerEntries").
    """

    dataset_name: str
    collection_path: str
    fields: tuple[FieldSpec, ...]
    fetch_directives: tuple[str, ...] = ()
    filter_expressions: tuple[str, ...] = ()
    nature: DatasetNature = DatasetNature.MASTER
    import_mode: Optional[ImportOperation] = None

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for f in self.fields:
            if f.target_name in seen:
                raise ValueError(
                    f"target_name duplicado '{f.target_name}' en dataset '{self.dataset_name}'"
                )
            seen.add(f.target_name)

    @property
    def field_names(self) -> list[str]:
        return [f.target_name for f in self.fields]

    @property
    def route(self) -> list[str]:
        return [level.strip() for level in self.collection_path.split(".") if level.strip()]


@dataclass(frozen=True)
class TenantKeys:
    """Claves de tenant que se inyectan en cada registro decodificado."""

    company_id: str
    division_id: str

    def as_dict(self) -> dict[str, str]:
        return {COMPANY_KEY: self.company_id, DIVISION_KEY: self.division_id}


# Registro decodificado: target_name -> valor tipado (+ claves de tenant y guid)
DecodedRecord = dict[str, Any]

# Fila normalizada: una celda por FieldSpec; None = celda ausente en el origen
NormalizedRow = list[Optional[str]]


@dataclass
class ImportBatch:
    """Porción acotada de registros destinada a una tabla."""

    table: str
    index: int
    records: list[DecodedRecord]
    operation: ImportOperation = ImportOperation.REPLACE
    attempt: int = 0

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ReportContext:
    """Variables estáticas del request de reporte (empresa y período)."""

    company_name: Optional[str] = None
    from_date: Optional[str] = None
    to_date: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)

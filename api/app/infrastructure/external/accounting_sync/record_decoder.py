"""
Decodificador genérico: fila posicional + TableSchema -> registro tipado.

Una sola función recorre la tabla de FieldSpecs; no hay código por campo.

Reglas por tipo:
- number | amount | quantity | rate: float del prefijo numérico ("30 Days" -> 30);
  ausente, no numérico, nan o inf -> 0 (o default_value)
- logical: "1" / "true" -> True; cualquier otro valor -> False
- date: YYYY-MM-DD al inicio -> date; otro valor -> None
- text: verbatim; si es requerido y falta o viene vacío -> default_value o TEXT_DEFAULT_FALLBACKS
"""

from __future__ import annotations

import math
import re
import secrets
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from app.shared.exceptions.sync import DecodeSkip

from .types import (
    GUID_KEY,
    DecodedRecord,
    FieldSpec,
    FieldType,
    NormalizedRow,
    TableSchema,
    TenantKeys,
)

_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
# Prefijo numérico, como parseFloat: "30 Days" -> 30
_LEADING_NUMBER_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")

IdFactory = Callable[[str], str]


@dataclass(frozen=True)
class TextFallback:
    """
    Default heurístico para un campo de texto requerido ausente.

    Se aplica cuando `substring` está contenido en el nombre de la columna.
    Si `from_field` está definido y ese campo ya fue decodificado con valor,
    se usa ese valor; si no, `default`.
    """

    substring: str
    default: str
    from_field: Optional[str] = None


# Orden significativo: gana la primera coincidencia
TEXT_DEFAULT_FALLBACKS: tuple[TextFallback, ...] = (
    TextFallback(substring="unit", default="Nos"),
    TextFallback(substring="parent", default="Primary"),
    TextFallback(substring="name", default="Unknown", from_field="name"),
)


def resolve_text_fallback(target_name: str, record: DecodedRecord) -> Optional[str]:
    """Retorna el default heurístico para target_name, o None si ninguno aplica."""
    lowered = target_name.lower()
    for fallback in TEXT_DEFAULT_FALLBACKS:
        if fallback.substring not in lowered:
            continue
        if fallback.from_field and fallback.from_field != target_name:
            value = record.get(fallback.from_field)
            if value:
                return str(value)
        return fallback.default
    return None


def synthesize_guid(dataset_name: str) -> str:
    """Identificador único dentro de la corrida (tiempo + sufijo aleatorio). No es estable entre corridas."""
    return f"{dataset_name}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _parse_number(raw: Any) -> Optional[float]:
    if raw is None:
        return None
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        value = float(raw)
        return value if math.isfinite(value) else None
    text = str(raw).strip().replace("(-)", "-").replace(",", "")
    m = _LEADING_NUMBER_RE.match(text)
    if not m:
        return None
    # El patrón solo admite dígitos: nan / inf nunca llegan aquí
    return float(m.group(0))


def _parse_date(raw: Any) -> Optional[date]:
    if raw is None:
        return None
    if isinstance(raw, date):
        return raw
    m = _DATE_RE.match(str(raw).strip())
    if not m:
        return None
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        return None


def _parse_logical(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if raw is None:
        return False
    return str(raw).strip().lower() in ("1", "true")


def decode_value(spec: FieldSpec, raw: Optional[str]) -> Any:
    """Decodifica una celda según el tipo del FieldSpec (sin defaults de requeridos)."""
    if spec.type.is_numeric:
        value = _parse_number(raw)
        if value is None:
            value = _parse_number(spec.default_value)
        return value if value is not None else 0.0
    if spec.type == FieldType.LOGICAL:
        if raw is None and spec.default_value is not None:
            return _parse_logical(spec.default_value)
        return _parse_logical(raw)
    if spec.type == FieldType.DATE:
        return _parse_date(raw)
    return raw


def _apply_sign(value: float, flag: Any) -> float:
    magnitude = abs(value)
    return magnitude if flag else -magnitude


def decode_row(
    row: NormalizedRow,
    schema: TableSchema,
    tenant: TenantKeys,
    id_factory: Optional[IdFactory] = None,
) -> DecodedRecord:
    """
    Decodifica una fila. Levanta DecodeSkip si un campo requerido queda sin valor.

    El guid se sintetiza si falta o está vacío (ver `synthesize_guid`).
    """
    record, _ = _decode(row, schema, tenant, id_factory or synthesize_guid)
    return record


def _decode(
    row: NormalizedRow,
    schema: TableSchema,
    tenant: TenantKeys,
    id_factory: IdFactory,
) -> tuple[DecodedRecord, bool]:
    record: DecodedRecord = {}
    present: dict[str, bool] = {}

    for i, spec in enumerate(schema.fields):
        raw = row[i] if i < len(row) else None
        present[spec.target_name] = raw is not None
        value = decode_value(spec, raw)
        # Texto vacío (<Fnn></Fnn>) cuenta como ausente para los requeridos
        if spec.required and spec.type == FieldType.TEXT and value == "":
            value = None

        if value is None and spec.required and spec.target_name != GUID_KEY:
            value = _required_default(spec, record)
            if value is None:
                raise DecodeSkip(spec.target_name, schema.dataset_name)

        record[spec.target_name] = value

    # El signo se resuelve al final: el campo de flag puede venir después del valor
    for spec in schema.fields:
        if spec.sign_field and present.get(spec.sign_field):
            record[spec.target_name] = _apply_sign(record[spec.target_name], record.get(spec.sign_field))

    synthesized = False
    if not record.get(GUID_KEY):
        record[GUID_KEY] = id_factory(schema.dataset_name)
        synthesized = True

    record.update(tenant.as_dict())
    return record, synthesized


def _required_default(spec: FieldSpec, record: DecodedRecord) -> Any:
    if spec.default_value is not None:
        if spec.type == FieldType.DATE:
            return _parse_date(spec.default_value)
        return spec.default_value
    if spec.type == FieldType.TEXT:
        return resolve_text_fallback(spec.target_name, record)
    return None


@dataclass
class DecodeOutcome:
    records: list[DecodedRecord] = field(default_factory=list)
    skipped: int = 0
    guids_synthesized: int = 0
    skipped_by_field: dict[str, int] = field(default_factory=dict)


def decode_rows(
    rows: Iterable[NormalizedRow],
    schema: TableSchema,
    tenant: TenantKeys,
    id_factory: Optional[IdFactory] = None,
) -> DecodeOutcome:
    """
    Decodifica todas las filas de una tabla.

    Los registros descartados (DecodeSkip) se cuentan y se loguean agregados por
    campo; nunca interrumpen la tabla.
    """
    factory = id_factory or synthesize_guid
    outcome = DecodeOutcome()
    skipped_fields: Counter[str] = Counter()

    for row in rows:
        try:
            record, synthesized = _decode(row, schema, tenant, factory)
        except DecodeSkip as e:
            outcome.skipped += 1
            skipped_fields[e.field_name] += 1
            continue
        outcome.records.append(record)
        if synthesized:
            outcome.guids_synthesized += 1

    if outcome.skipped:
        outcome.skipped_by_field = dict(skipped_fields)
        logger.warning(
            f"{schema.dataset_name}: {outcome.skipped} registro(s) descartado(s) "
            f"por campos requeridos sin valor: {outcome.skipped_by_field}"
        )
    if outcome.guids_synthesized:
        logger.warning(
            f"{schema.dataset_name}: {outcome.guids_synthesized} guid(s) sintetizado(s); "
            f"no son estables entre corridas"
        )
    return outcome

"""
Normalizador de la respuesta del reporte remoto.

El remoto aplana los registros anidados en un stream pseudo-tabular:

    <ENVELOPE><F01>Cliente A</F01><F02>Deudores</F02><FLDBLANK></FLDBLANK>
    <F01>Cliente B</F01><F02>Deudores</F02>...</ENVELOPE>

Cada registro empieza en <F01>. Las reescrituras se aplican exactamente una vez
y en este orden: cualquier reordenamiento desalinea celdas vs FieldSpecs.
"""

from __future__ import annotations

import codecs
import re
from typing import Optional

from loguru import logger

from .types import NormalizedRow

# Placeholder del remoto para celdas vacías (fechas en blanco): $$StrByCharCode:241
EMPTY_CELL_SENTINEL = chr(241)

ROW_BREAK = "\r\n"
CELL_SEPARATOR = "\t"

_BLANK_FIELD_RE = re.compile(r"<FLDBLANK></FLDBLANK>|<FLDBLANK\s*/>")
_WHITESPACE_NEWLINE_RE = re.compile(r"\s+\r?\n")
_NEWLINE_RE = re.compile(r"\r?\n")
_SPACE_BEFORE_FIELD_RE = re.compile(r"\s+<F")
_FIELD_CLOSE_RE = re.compile(r"</F\d+>")
_FIRST_FIELD_OPEN_RE = re.compile(r"<F01>")
_FIELD_OPEN_RE = re.compile(r"<F\d+>")
_NUMERIC_ENTITY_RE = re.compile(r"&#\d+;")

# &amp; va al final para no generar entidades nuevas al desescapar
_ENTITIES: tuple[tuple[str, str], ...] = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&tab;", ""),
    ("&amp;", "&"),
)


def decode_payload(raw: bytes, encoding: str = "utf-8") -> str:
    """
    Convierte los bytes crudos en texto.

    Detecta BOM UTF-16/UTF-8; si no hay BOM se usa el encoding configurado.
    Bytes inválidos se reemplazan (la respuesta no se descarta por un carácter).
    """
    if raw.startswith(codecs.BOM_UTF16_LE) or raw.startswith(codecs.BOM_UTF16_BE):
        return raw.decode("utf-16", errors="replace")
    if raw.startswith(codecs.BOM_UTF8):
        return raw.decode("utf-8-sig", errors="replace")
    return raw.decode(encoding, errors="replace")


def rewrite_payload(text: str) -> str:
    """Aplica la secuencia fija de reescrituras y retorna el stream tabulado."""
    s = text.replace("<ENVELOPE>", "", 1)
    s = s.replace("</ENVELOPE>", "", 1)
    s = _BLANK_FIELD_RE.sub("", s)
    s = _WHITESPACE_NEWLINE_RE.sub("", s)
    s = _NEWLINE_RE.sub("", s)
    s = s.replace("\t", " ")
    s = _SPACE_BEFORE_FIELD_RE.sub("<F", s)
    s = _FIELD_CLOSE_RE.sub("", s)
    s = _FIRST_FIELD_OPEN_RE.sub(ROW_BREAK, s)
    s = _FIELD_OPEN_RE.sub(CELL_SEPARATOR, s)

    s = _NUMERIC_ENTITY_RE.sub("", s)
    for entity, char in _ENTITIES:
        s = s.replace(entity, char)
    return s


def _translate_cell(cell: str) -> str:
    return "" if cell == EMPTY_CELL_SENTINEL else cell


def normalize_payload(text: str, field_count: Optional[int] = None) -> list[NormalizedRow]:
    """
    Payload (texto) -> filas posicionales.

    Si se indica field_count, las filas cortas se completan con None (celda
    ausente) y las filas largas se truncan. Nunca se descartan filas.
    """
    flat = rewrite_payload(text)
    chunks = flat.split(ROW_BREAK)

    # Lo anterior al primer <F01> no es un registro
    rows: list[NormalizedRow] = []
    truncated = 0
    for chunk in chunks[1:]:
        row: NormalizedRow = [_translate_cell(c) for c in chunk.split(CELL_SEPARATOR)]
        if field_count is not None:
            if len(row) < field_count:
                row.extend([None] * (field_count - len(row)))
            elif len(row) > field_count:
                truncated += 1
                row = row[:field_count]
        rows.append(row)

    if truncated:
        logger.warning(f"{truncated} fila(s) con más celdas que campos declarados; se truncaron")
    return rows

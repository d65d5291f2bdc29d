"""
Sintetizador de requests de reporte (TableSchema -> XML/TDL).

El sistema remoto no expone una API de consulta: se le envía la definición de
un reporte ad-hoc (parts/lines/fields) y responde con el reporte ya aplanado.

Estructura generada para collection "Voucher.AllLedgerEntries":

    MyPart01 (REPEAT MyLine01 : MyCollection)  -> MyLine01 explota MyPart02
    MyPart02 (REPEAT MyLine02 : AllLedgerEntries)
    MyLine02 -> Fld01, Fld02, ... (uno por FieldSpec, XMLTAG F01, F02, ...)
    FldBlank (siempre presente, SET "")

Los nombres generados son posicionales (MyPartNN, FldNN, FltrNN), por lo que
nunca colisionan dentro de un mismo descriptor.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional, Union
from xml.sax.saxutils import escape

from .types import FieldSpec, FieldType, ReportContext, TableSchema

REPORT_NAME = "AccountingSyncReport"
FORM_NAME = "MyForm"
COLLECTION_NAME = "MyCollection"
BLANK_FIELD_NAME = "FldBlank"
EXPORT_FORMAT = "XML (Data Interchange)"

# Solo identificadores simples (opcionalmente relativos al padre con "..")
# reciben el idioma tipado; cualquier otra expresión se envía tal cual.
_IDENTIFIER_RE = re.compile(r"^(\.\.)?[a-zA-Z0-9_]+$")


def part_name(level: int) -> str:
    return f"MyPart{level:02d}"


def line_name(level: int) -> str:
    return f"MyLine{level:02d}"


def field_name(position: int) -> str:
    return f"Fld{position:02d}"


def field_tag(position: int) -> str:
    return f"F{position:02d}"


def filter_name(position: int) -> str:
    return f"Fltr{position:02d}"


@dataclass(frozen=True)
class PartDeclaration:
    name: str
    line: str
    repeat_over: str


@dataclass(frozen=True)
class LineDeclaration:
    name: str
    fields: tuple[str, ...]
    explode: Optional[str] = None


@dataclass(frozen=True)
class FieldDeclaration:
    name: str
    set_expression: str
    xml_tag: Optional[str] = None


@dataclass(frozen=True)
class FilterDeclaration:
    name: str
    formula: str


@dataclass(frozen=True)
class CollectionDeclaration:
    name: str
    type: str
    fetch: tuple[str, ...] = ()
    filters: tuple[str, ...] = ()


@dataclass(frozen=True)
class QueryDescriptor:
    """
    Árbol ordenado de declaraciones para un dataset.

    Se crea por intento de sync, se consume una vez al renderizar el request.
    """

    dataset_name: str
    parts: tuple[PartDeclaration, ...]
    lines: tuple[LineDeclaration, ...]
    fields: tuple[FieldDeclaration, ...]
    collection: CollectionDeclaration
    filters: tuple[FilterDeclaration, ...] = ()

    @property
    def field_declaration_count(self) -> int:
        """Cantidad de FIELD declarados (incluye el campo en blanco terminal)."""
        return len(self.fields)


def is_simple_identifier(expression: str) -> bool:
    return bool(_IDENTIFIER_RE.match(expression))


def build_set_expression(spec: FieldSpec) -> str:
    """
    Traduce el tipo del campo al idioma de extracción del sistema remoto.

    - text: valor verbatim
    - logical: 1/0
    - date: carácter centinela (241) si está vacío, si no YYYY-MM-DD
    - number/rate: "0"/0 si está vacío, si no el string numérico
    - amount: invierte el signo si es débito y normaliza "(-)" a "-"
    - quantity: invierte el signo si NO es entrada a inventario
    """
    expr = spec.source_expression.strip()
    if not is_simple_identifier(expr):
        # Expresión compuesta o texto libre: se envía como literal sin tipar
        return expr

    ref = f"${expr}"
    if spec.type == FieldType.TEXT:
        return ref
    if spec.type == FieldType.LOGICAL:
        return f"if {ref} then 1 else 0"
    if spec.type == FieldType.DATE:
        return f'if $$IsEmpty:{ref} then $$StrByCharCode:241 else $$PyrlYYYYMMDDFormat:{ref}:"-"'
    if spec.type == FieldType.NUMBER:
        return f'if $$IsEmpty:{ref} then "0" else $$String:{ref}'
    if spec.type == FieldType.AMOUNT:
        return (
            f"$$StringFindAndReplace:(if $$IsDebit:{ref} then -$$NumValue:{ref} "
            f'else $$NumValue:{ref}):"(-)":"-"'
        )
    if spec.type == FieldType.QUANTITY:
        return (
            f'$$StringFindAndReplace:(if $$IsInwards:{ref} then $$Number:$$String:{ref}:"TailUnits" '
            f'else -$$Number:$$String:{ref}:"TailUnits"):"(-)":"-"'
        )
    if spec.type == FieldType.RATE:
        return f"if $$IsEmpty:{ref} then 0 else $$Number:{ref}"
    return expr


def build_query_descriptor(schema: TableSchema) -> QueryDescriptor:
    """Construye el descriptor de reporte para un TableSchema."""
    route = schema.route
    if not route:
        raise ValueError(f"collection_path vacío en dataset '{schema.dataset_name}'")

    collection_type = route[0]
    # El primer nivel se recorre sobre la colección declarada; el resto son sub-colecciones
    levels = [COLLECTION_NAME, *route[1:]]

    parts = tuple(
        PartDeclaration(name=part_name(i), line=line_name(i), repeat_over=over)
        for i, over in enumerate(levels, start=1)
    )

    lines: list[LineDeclaration] = [
        LineDeclaration(name=line_name(i), fields=(BLANK_FIELD_NAME,), explode=part_name(i + 1))
        for i in range(1, len(levels))
    ]
    leaf_fields = tuple(field_name(i) for i in range(1, len(schema.fields) + 1))
    lines.append(LineDeclaration(name=line_name(len(levels)), fields=leaf_fields or (BLANK_FIELD_NAME,)))

    fields = [
        FieldDeclaration(name=field_name(i), set_expression=build_set_expression(spec), xml_tag=field_tag(i))
        for i, spec in enumerate(schema.fields, start=1)
    ]
    fields.append(FieldDeclaration(name=BLANK_FIELD_NAME, set_expression='""'))

    filters = tuple(
        FilterDeclaration(name=filter_name(i), formula=formula)
        for i, formula in enumerate(schema.filter_expressions, start=1)
    )

    collection = CollectionDeclaration(
        name=COLLECTION_NAME,
        type=collection_type,
        fetch=tuple(schema.fetch_directives),
        filters=tuple(f.name for f in filters),
    )

    return QueryDescriptor(
        dataset_name=schema.dataset_name,
        parts=parts,
        lines=tuple(lines),
        fields=tuple(fields),
        collection=collection,
        filters=filters,
    )


def format_report_date(value: Union[str, date, datetime, None]) -> Optional[str]:
    """
    Normaliza una fecha de período a YYYYMMDD.

    Acepta date/datetime, "YYYY-MM-DD" o "YYYYMMDD". Otro formato -> ValueError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.strftime("%Y%m%d")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")

    text = str(value).strip()
    for fmt in ("%Y-%m-%d", "%Y%m%d"):
        try:
            return datetime.strptime(text, fmt).strftime("%Y%m%d")
        except ValueError:
            continue
    raise ValueError(f"Fecha de período inválida: '{value}' (se espera YYYY-MM-DD)")


def _render_static_variables(context: ReportContext) -> str:
    out = [f"<SVEXPORTFORMAT>{escape(EXPORT_FORMAT)}</SVEXPORTFORMAT>"]

    from_date = format_report_date(context.from_date)
    to_date = format_report_date(context.to_date)
    if from_date:
        out.append(f"<SVFROMDATE>{from_date}</SVFROMDATE>")
    if to_date:
        out.append(f"<SVTODATE>{to_date}</SVTODATE>")
    if context.company_name:
        out.append(f"<SVCURRENTCOMPANY>{escape(context.company_name)}</SVCURRENTCOMPANY>")
    for key, value in context.extra.items():
        tag = key.upper()
        out.append(f"<{tag}>{escape(str(value))}</{tag}>")
    return "".join(out)


def render_request(descriptor: QueryDescriptor, context: Optional[ReportContext] = None) -> str:
    """Renderiza el descriptor como body XML listo para POST."""
    context = context or ReportContext()
    out: list[str] = [
        '<?xml version="1.0" encoding="utf-8"?>',
        "<ENVELOPE><HEADER><VERSION>1</VERSION><TALLYREQUEST>Export</TALLYREQUEST>",
        f"<TYPE>Data</TYPE><ID>{REPORT_NAME}</ID></HEADER>",
        "<BODY><DESC><STATICVARIABLES>",
        _render_static_variables(context),
        "</STATICVARIABLES><TDL><TDLMESSAGE>",
        f'<REPORT NAME="{REPORT_NAME}"><FORMS>{FORM_NAME}</FORMS></REPORT>',
        f'<FORM NAME="{FORM_NAME}"><PARTS>{descriptor.parts[0].name}</PARTS></FORM>',
    ]

    for part in descriptor.parts:
        out.append(
            f'<PART NAME="{part.name}"><LINES>{part.line}</LINES>'
            f"<REPEAT>{part.line} : {escape(part.repeat_over)}</REPEAT>"
            f"<SCROLLED>Vertical</SCROLLED></PART>"
        )

    for line in descriptor.lines:
        explode = f"<EXPLODE>{line.explode}</EXPLODE>" if line.explode else ""
        out.append(f'<LINE NAME="{line.name}"><FIELDS>{",".join(line.fields)}</FIELDS>{explode}</LINE>')

    for fld in descriptor.fields:
        xml_tag = f"<XMLTAG>{fld.xml_tag}</XMLTAG>" if fld.xml_tag else ""
        out.append(f'<FIELD NAME="{fld.name}"><SET>{escape(fld.set_expression)}</SET>{xml_tag}</FIELD>')

    coll = descriptor.collection
    out.append(f'<COLLECTION NAME="{coll.name}"><TYPE>{escape(coll.type)}</TYPE>')
    if coll.fetch:
        out.append(f"<FETCH>{escape(','.join(coll.fetch))}</FETCH>")
    if coll.filters:
        out.append(f"<FILTER>{','.join(coll.filters)}</FILTER>")
    out.append("</COLLECTION>")

    for flt in descriptor.filters:
        out.append(f'<SYSTEM TYPE="Formulae" NAME="{flt.name}">{escape(flt.formula)}</SYSTEM>')

    out.append("</TDLMESSAGE></TDL></DESC></BODY></ENVELOPE>")
    return "".join(out)


def synthesize_request(schema: TableSchema, context: Optional[ReportContext] = None) -> str:
    """Atajo: TableSchema -> body XML."""
    return render_request(build_query_descriptor(schema), context)

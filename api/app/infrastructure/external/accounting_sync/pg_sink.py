"""
Sink Postgres (psycopg v3) para:
- tablas destino (UPSERT por guid + claves de tenant)
- DDL derivado de los TableSchema
- bitácora de corridas (sync_job_log)

Cada llamada abre su propia conexión y hace commit al final, por lo que el
sink tolera escritores concurrentes (batches/tablas en paralelo).
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

import psycopg
from loguru import logger
from psycopg import errors as pg_errors

from app.shared.exceptions.sync import ConfigurationError, PersistenceError, TransientNetworkError

from .types import (
    COMPANY_KEY,
    CONFLICT_KEY,
    DIVISION_KEY,
    GUID_KEY,
    DatasetNature,
    DecodedRecord,
    FieldType,
    ImportOperation,
    TableSchema,
)

JOB_LOG_TABLE = "sync_job_log"

_IDENT_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

COLUMN_TYPES: dict[FieldType, str] = {
    FieldType.TEXT: "TEXT",
    FieldType.NUMBER: "NUMERIC",
    FieldType.AMOUNT: "NUMERIC(17,2)",
    FieldType.QUANTITY: "NUMERIC(17,4)",
    FieldType.RATE: "NUMERIC(17,4)",
    FieldType.LOGICAL: "BOOLEAN",
    FieldType.DATE: "DATE",
}

# Errores que vale la pena reintentar (conexión caída, contención)
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    psycopg.OperationalError,
    pg_errors.SerializationFailure,
    pg_errors.DeadlockDetected,
)


class StorageSink(Protocol):
    """Colaborador opaco de escritura: un upsert por tabla."""

    def upsert(
        self,
        table: str,
        records: Sequence[DecodedRecord],
        conflict_key: Sequence[str] = CONFLICT_KEY,
        mode: ImportOperation = ImportOperation.REPLACE,
    ) -> int:
        ...


def quote_ident(name: str) -> str:
    if not _IDENT_RE.match(name):
        raise ConfigurationError(f"Identificador SQL inválido: '{name}'")
    return f'"{name}"'


def build_upsert_sql(
    target_schema: str,
    table: str,
    columns: Sequence[str],
    conflict_key: Sequence[str] = CONFLICT_KEY,
    mode: ImportOperation = ImportOperation.REPLACE,
) -> str:
    """
    INSERT ... ON CONFLICT (conflict_key) DO UPDATE.

    - replace: toda columna no clave se sobrescribe con el valor entrante
    - merge: solo se sobrescribe si el valor entrante no es NULL
    """
    missing = [c for c in conflict_key if c not in columns]
    if missing:
        raise ValueError(f"Faltan columnas de conflicto {missing} para UPSERT en '{table}'")

    qualified = f"{quote_ident(target_schema)}.{quote_ident(table)}"
    insert_cols_sql = ", ".join(quote_ident(c) for c in columns)
    placeholders = ", ".join(["%s"] * len(columns))
    conflict_sql = ", ".join(quote_ident(c) for c in conflict_key)

    update_cols = [c for c in columns if c not in conflict_key]
    if not update_cols:
        return (
            f"INSERT INTO {qualified} ({insert_cols_sql}) VALUES ({placeholders}) "
            f"ON CONFLICT ({conflict_sql}) DO NOTHING"
        )

    if mode == ImportOperation.MERGE:
        set_sql = ", ".join(
            f"{quote_ident(c)} = COALESCE(EXCLUDED.{quote_ident(c)}, {qualified}.{quote_ident(c)})"
            for c in update_cols
        )
    else:
        set_sql = ", ".join(f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}" for c in update_cols)

    return (
        f"INSERT INTO {qualified} ({insert_cols_sql}) VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_sql}) DO UPDATE SET {set_sql}"
    )


def render_table_ddl(schema: TableSchema, target_schema: str = "public") -> str:
    """
    CREATE TABLE IF NOT EXISTS derivado del TableSchema.

    Agrega las claves de tenant y el guid (si el schema no lo declara) con un
    UNIQUE compuesto que es el target del ON CONFLICT.
    """
    table = schema.dataset_name
    columns: list[str] = [
        f"{quote_ident(GUID_KEY)} TEXT NOT NULL",
        f"{quote_ident(COMPANY_KEY)} TEXT NOT NULL",
        f"{quote_ident(DIVISION_KEY)} TEXT NOT NULL",
    ]
    for f in schema.fields:
        if f.target_name in CONFLICT_KEY:
            continue
        columns.append(f"{quote_ident(f.target_name)} {COLUMN_TYPES[f.type]}")

    constraint = quote_ident(f"{table}_tenant_guid_key")
    columns.append(f"CONSTRAINT {constraint} UNIQUE ({', '.join(quote_ident(c) for c in CONFLICT_KEY)})")

    body = ",\n    ".join(columns)
    return f"CREATE TABLE IF NOT EXISTS {quote_ident(target_schema)}.{quote_ident(table)} (\n    {body}\n);"


def render_job_log_ddl(target_schema: str = "public") -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {quote_ident(target_schema)}.{quote_ident(JOB_LOG_TABLE)} (
    id                  BIGSERIAL   PRIMARY KEY,
    job_id              TEXT        NOT NULL,
    company_id          TEXT        NOT NULL,
    division_id         TEXT        NOT NULL,
    table_name          TEXT        NOT NULL,
    nature              TEXT        NOT NULL DEFAULT 'master',
    status              TEXT        NOT NULL,
    records_fetched     INTEGER     NOT NULL DEFAULT 0,
    records_imported    INTEGER     NOT NULL DEFAULT 0,
    records_skipped     INTEGER     NOT NULL DEFAULT 0,
    records_failed      INTEGER     NOT NULL DEFAULT 0,
    guids_synthesized   INTEGER     NOT NULL DEFAULT 0,
    error_count         INTEGER     NOT NULL DEFAULT 0,
    error               TEXT        NULL,
    started_at          TIMESTAMPTZ NULL,
    finished_at         TIMESTAMPTZ NULL,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now()
);
ALTER TABLE {quote_ident(target_schema)}.{quote_ident(JOB_LOG_TABLE)}
    ADD COLUMN IF NOT EXISTS nature TEXT NOT NULL DEFAULT 'master';
""".strip()


class PostgresSink:
    """Implementación psycopg del StorageSink (+ DDL y bitácora)."""

    def __init__(self, dsn: str, *, target_schema: str = "public", connect_timeout: int = 10) -> None:
        if not dsn:
            raise ConfigurationError("Falta configurar DATABASE_URL para el sink Postgres")
        self._dsn = dsn
        self._target_schema = target_schema
        self._connect_timeout = connect_timeout

    @property
    def target_schema(self) -> str:
        return self._target_schema

    def connect(self) -> psycopg.Connection:
        """Abre conexión (autocommit False). El caller controla commits."""
        return psycopg.connect(self._dsn, connect_timeout=self._connect_timeout)

    def upsert(
        self,
        table: str,
        records: Sequence[DecodedRecord],
        conflict_key: Sequence[str] = CONFLICT_KEY,
        mode: ImportOperation = ImportOperation.REPLACE,
    ) -> int:
        if not records:
            return 0

        # Columnas en orden de aparición; filas sin alguna columna se completan con NULL
        columns: list[str] = list(dict.fromkeys(k for r in records for k in r.keys()))
        sql = build_upsert_sql(self._target_schema, table, columns, conflict_key, mode)
        values = [tuple(r.get(c) for c in columns) for r in records]

        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.executemany(sql, values)
                conn.commit()
        except _TRANSIENT_ERRORS as e:
            raise TransientNetworkError(f"Error transitorio escribiendo '{table}': {e}") from e
        except psycopg.Error as e:
            raise PersistenceError(f"Postgres rechazó el batch de '{table}': {e}", table) from e

        return len(records)

    def ensure_schema(self) -> None:
        self._execute_ddl(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(self._target_schema)};", "schema")

    def ensure_table(self, schema: TableSchema) -> None:
        self._execute_ddl(render_table_ddl(schema, self._target_schema), schema.dataset_name)
        logger.info(f'Tabla asegurada: "{self._target_schema}"."{schema.dataset_name}"')

    def ensure_job_log_table(self) -> None:
        self._execute_ddl(render_job_log_ddl(self._target_schema), JOB_LOG_TABLE)

    def record_table_result(
        self,
        *,
        job_id: str,
        company_id: str,
        division_id: str,
        table_name: str,
        status: str,
        records_fetched: int,
        records_imported: int,
        records_skipped: int,
        records_failed: int,
        guids_synthesized: int,
        errors: Sequence[str],
        started_at: Optional[datetime],
        finished_at: Optional[datetime],
        nature: str = DatasetNature.MASTER.value,
    ) -> None:
        """Inserta una fila en sync_job_log por tabla procesada."""
        params: tuple[Any, ...] = (
            job_id,
            company_id,
            division_id,
            table_name,
            status,
            records_fetched,
            records_imported,
            records_skipped,
            records_failed,
            guids_synthesized,
            len(errors),
            "\n".join(errors)[:4000] if errors else None,
            started_at,
            finished_at,
            nature,
        )
        sql = f"""
            INSERT INTO {quote_ident(self._target_schema)}.{quote_ident(JOB_LOG_TABLE)} (
                job_id, company_id, division_id, table_name, status,
                records_fetched, records_imported, records_skipped, records_failed,
                guids_synthesized, error_count, error, started_at, finished_at, nature
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                conn.commit()
        except psycopg.Error as e:
            raise PersistenceError(f"No se pudo registrar el resultado de '{table_name}': {e}", JOB_LOG_TABLE) from e

    def _execute_ddl(self, ddl: str, target: str) -> None:
        try:
            with self.connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(ddl)
                conn.commit()
        except _TRANSIENT_ERRORS as e:
            raise TransientNetworkError(f"Error transitorio ejecutando DDL de '{target}': {e}") from e
        except psycopg.Error as e:
            raise PersistenceError(f"DDL rechazado para '{target}': {e}", target) from e

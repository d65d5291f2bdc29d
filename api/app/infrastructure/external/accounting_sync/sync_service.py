"""
Orquestador del sync contable -> Postgres.

Diseño (resumen):
- Resuelve los TableSchema pedidos desde el registro (todos si no se indican)
- Por tabla, etapas estrictamente secuenciales:
  query -> fetch -> normalize -> decode -> import
- Cada tabla termina en completed o failed; el fallo de una tabla nunca
  aborta el job
- Solo los errores de configuración (detectados antes de procesar) se propagan

Concurrencia:
- Tablas secuenciales por defecto; con table_workers > 1 se procesan en un
  ThreadPoolExecutor. El único estado compartido es el mapa de resultados
  (protegido por un lock).
- Cancelación cooperativa: se revisa entre tablas y entre batches.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

from loguru import logger

from app.core.config import get_tunnel_headers
from app.shared.exceptions.sync import ConfigurationError, SyncException, TransientNetworkError
from app.shared.utils.audit_logger import SyncAuditLogger

from .batch_importer import BatchImporter, compute_backoff
from .pg_sink import PostgresSink, StorageSink
from .query_builder import build_query_descriptor, render_request
from .record_decoder import IdFactory, decode_rows
from .response_normalizer import decode_payload, normalize_payload
from .schema_registry import TableSchemaRegistry
from .transport_client import AccountingTransportClient
from .types import DatasetNature, ImportOperation, ReportContext, TableSchema, TenantKeys, utc_now

CANCELLED_ERROR = "cancelado antes de completar"


class TableSyncState(str, Enum):
    PENDING = "pending"
    QUERYING = "querying"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    DECODING = "decoding"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TableSyncState.COMPLETED, TableSyncState.FAILED)


class ReportTransport(Protocol):
    encoding: str

    def post_report(self, body: str) -> bytes:
        ...


class JobLog(Protocol):
    def record_table_result(self, **kwargs: Any) -> None:
        ...


@dataclass
class TableSyncResult:
    """
    Resultado por tabla.

    errors: una entrada por unidad fallida (batch o etapa), no por registro.
    records_failed: registros de batches fallidos.
    """

    table: str
    state: TableSyncState = TableSyncState.PENDING
    records_fetched: int = 0
    records_imported: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    guids_synthesized: int = 0
    batches: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.state == TableSyncState.COMPLETED

    @property
    def duration(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def fail(self, error: str) -> None:
        self.errors.append(error)
        self.state = TableSyncState.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "status": self.state.value,
            "success": self.success,
            "recordsFetched": self.records_fetched,
            "recordsImported": self.records_imported,
            "recordsSkipped": self.records_skipped,
            "recordsFailed": self.records_failed,
            "guidsSynthesized": self.guids_synthesized,
            "batches": self.batches,
            "errors": list(self.errors),
            "duration": self.duration,
        }


@dataclass(frozen=True)
class SyncJobSummary:
    job_id: str
    company_id: str
    division_id: str
    results: tuple[TableSyncResult, ...]
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return all(r.success for r in self.results)

    @property
    def tables_processed(self) -> int:
        return len(self.results)

    @property
    def total_records(self) -> int:
        return sum(r.records_fetched for r in self.results)

    @property
    def total_inserted(self) -> int:
        return sum(r.records_imported for r in self.results)

    @property
    def total_errors(self) -> int:
        return sum(len(r.errors) for r in self.results)

    @property
    def duration(self) -> float:
        return round((self.finished_at - self.started_at).total_seconds(), 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "success": self.success,
            "tablesProcessed": self.tables_processed,
            "totalRecords": self.total_records,
            "totalInserted": self.total_inserted,
            "totalErrors": self.total_errors,
            "duration": self.duration,
            "results": [r.to_dict() for r in self.results],
        }


class SyncOrchestrator:
    """
    Orquestador del pipeline para un tenant.
    """

    def __init__(
        self,
        *,
        registry: TableSchemaRegistry,
        transport: ReportTransport,
        importer: BatchImporter,
        job_log: Optional[JobLog] = None,
        context: Optional[ReportContext] = None,
        import_mode: ImportOperation = ImportOperation.REPLACE,
        fetch_max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        table_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._importer = importer
        self._job_log = job_log
        self._context = context or ReportContext()
        self._import_mode = import_mode
        self._fetch_max_attempts = max(1, fetch_max_attempts)
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._table_workers = max(1, table_workers)
        self._sleep = sleep
        self._id_factory = id_factory

    @property
    def registry(self) -> TableSchemaRegistry:
        return self._registry

    def run(
        self,
        company_id: str,
        division_id: str,
        table_names: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncJobSummary:
        """
        Ejecuta una corrida completa.

        Levanta ConfigurationError (antes de procesar tablas) si faltan claves de
        tenant o si se pide un dataset no registrado. Fallos parciales nunca levantan.
        """
        if not company_id or not str(company_id).strip():
            raise ConfigurationError("company_id es obligatorio")
        if not division_id or not str(division_id).strip():
            raise ConfigurationError("division_id es obligatorio")

        schemas = self._registry.select(list(table_names) if table_names is not None else None)
        tenant = TenantKeys(company_id=str(company_id), division_id=str(division_id))
        job_id = str(uuid.uuid4())
        started_at = utc_now()

        SyncAuditLogger.start_job(job_id, tenant.company_id, tenant.division_id, [s.dataset_name for s in schemas])
        logger.info(
            f"Sync {job_id[:8]} iniciado: {len(schemas)} tabla(s) para "
            f"empresa={tenant.company_id} división={tenant.division_id}"
        )

        results: dict[str, TableSyncResult] = {}
        results_lock = threading.Lock()
        summary: Optional[SyncJobSummary] = None

        def process(schema: TableSchema) -> None:
            result = self._run_table(schema, tenant, job_id, cancel_event)
            with results_lock:
                results[schema.dataset_name] = result

        try:
            if self._table_workers == 1 or len(schemas) <= 1:
                for schema in schemas:
                    process(schema)
            else:
                with ThreadPoolExecutor(max_workers=self._table_workers, thread_name_prefix="sync-table-") as pool:
                    # list() propaga excepciones no controladas de los workers
                    list(pool.map(process, schemas))

            summary = SyncJobSummary(
                job_id=job_id,
                company_id=tenant.company_id,
                division_id=tenant.division_id,
                results=tuple(results[s.dataset_name] for s in schemas),
                started_at=started_at,
                finished_at=utc_now(),
            )

            logger.info(
                f"Sync {job_id[:8]} finalizado: success={summary.success} tablas={summary.tables_processed} "
                f"registros={summary.total_records} importados={summary.total_inserted} "
                f"errores={summary.total_errors} ({summary.duration}s)"
            )
            return summary
        finally:
            # El handler por job se libera aunque la corrida se interrumpa
            SyncAuditLogger.finish_job(job_id, summary.to_dict() if summary is not None else None)

    def _run_table(
        self,
        schema: TableSchema,
        tenant: TenantKeys,
        job_id: str,
        cancel_event: Optional[threading.Event],
    ) -> TableSyncResult:
        result = TableSyncResult(table=schema.dataset_name, started_at=utc_now())

        if cancel_event is not None and cancel_event.is_set():
            result.fail(CANCELLED_ERROR)
        else:
            try:
                self._sync_table(schema, tenant, job_id, result, cancel_event)
            except SyncException as e:
                SyncAuditLogger.log_error(job_id, schema.dataset_name, type(e).__name__, e.message)
                logger.error(f"{schema.dataset_name}: fallo en etapa {result.state.value}: {e.message}")
                result.fail(f"{result.state.value}: {e.message}")
            except Exception as e:
                # La tabla queda failed; el resto del job continúa
                SyncAuditLogger.log_error(job_id, schema.dataset_name, type(e).__name__, str(e))
                logger.exception(f"{schema.dataset_name}: error inesperado en etapa {result.state.value}")
                result.fail(f"{result.state.value}: {type(e).__name__}: {e}")

        result.finished_at = utc_now()
        SyncAuditLogger.log_table_event(job_id, schema.dataset_name, result.state.value, result.to_dict())
        self._record(job_id, tenant, result, schema.nature)
        return result

    def _transition(self, job_id: str, result: TableSyncResult, state: TableSyncState) -> None:
        result.state = state
        SyncAuditLogger.log_table_event(job_id, result.table, state.value)

    def _sync_table(
        self,
        schema: TableSchema,
        tenant: TenantKeys,
        job_id: str,
        result: TableSyncResult,
        cancel_event: Optional[threading.Event],
    ) -> None:
        table = schema.dataset_name

        self._transition(job_id, result, TableSyncState.QUERYING)
        descriptor = build_query_descriptor(schema)
        body = render_request(descriptor, self._context)

        self._transition(job_id, result, TableSyncState.FETCHING)
        raw = self._fetch(table, body)

        self._transition(job_id, result, TableSyncState.NORMALIZING)
        text = decode_payload(raw, self._transport.encoding)
        rows = normalize_payload(text, field_count=len(schema.fields))
        result.records_fetched = len(rows)
        logger.info(f"{table}: {len(rows)} fila(s) recibida(s)")

        self._transition(job_id, result, TableSyncState.DECODING)
        outcome = decode_rows(rows, schema, tenant, id_factory=self._id_factory)
        result.records_skipped = outcome.skipped
        result.guids_synthesized = outcome.guids_synthesized

        self._transition(job_id, result, TableSyncState.IMPORTING)
        mode = schema.import_mode or self._import_mode
        imported = self._importer.import_records(table, outcome.records, mode, cancel_event)
        result.batches = len(imported.batches)
        result.records_imported = imported.imported
        result.records_failed = imported.failed_records

        for error in imported.errors:
            SyncAuditLogger.log_error(job_id, table, "BatchFailed", error)
            result.errors.append(error)
        if imported.cancelled:
            result.errors.append(f"{CANCELLED_ERROR}: {imported.pending_records} registro(s) sin importar")

        result.state = TableSyncState.COMPLETED if imported.success else TableSyncState.FAILED
        logger.info(
            f"{table} ({schema.nature.value}): {result.state.value} importados={result.records_imported} "
            f"omitidos={result.records_skipped} fallidos={result.records_failed}"
        )

    def _fetch(self, table: str, body: str) -> bytes:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._transport.post_report(body)
            except TransientNetworkError as e:
                if attempt >= self._fetch_max_attempts:
                    raise
                delay = compute_backoff(attempt, self._retry_base_delay, self._retry_max_delay)
                if e.retry_after:
                    delay = min(self._retry_max_delay, max(delay, e.retry_after))
                logger.warning(
                    f"{table}: fetch intento {attempt}/{self._fetch_max_attempts} falló ({e.message}); "
                    f"reintentando en {delay:.1f}s"
                )
                self._sleep(delay)

    def _record(
        self, job_id: str, tenant: TenantKeys, result: TableSyncResult, nature: DatasetNature
    ) -> None:
        if self._job_log is None:
            return
        try:
            self._job_log.record_table_result(
                job_id=job_id,
                company_id=tenant.company_id,
                division_id=tenant.division_id,
                table_name=result.table,
                status=result.state.value,
                records_fetched=result.records_fetched,
                records_imported=result.records_imported,
                records_skipped=result.records_skipped,
                records_failed=result.records_failed,
                guids_synthesized=result.guids_synthesized,
                errors=result.errors,
                started_at=result.started_at,
                finished_at=result.finished_at,
                nature=nature.value,
            )
        except SyncException as e:
            logger.error(f"{result.table}: no se pudo registrar en sync_job_log: {e.message}")


def build_report_context(settings: Any) -> ReportContext:
    return ReportContext(
        company_name=settings.ACCOUNTING_COMPANY or None,
        from_date=settings.ACCOUNTING_FROM_DATE or None,
        to_date=settings.ACCOUNTING_TO_DATE or None,
    )


def build_orchestrator_from_settings(
    settings: Any,
    *,
    sink: Optional[StorageSink] = None,
    transport: Optional[ReportTransport] = None,
) -> SyncOrchestrator:
    """
    Constructor "oficial" del pipeline a partir de Settings.

    Levanta ConfigurationError si falta el endpoint, el documento de schemas
    es inválido o el modo de importación no existe.
    """
    registry = TableSchemaRegistry.from_yaml(settings.SYNC_SCHEMA_FILE)

    try:
        import_mode = ImportOperation(settings.SYNC_IMPORT_MODE.lower())
    except ValueError:
        raise ConfigurationError(
            f"SYNC_IMPORT_MODE inválido: '{settings.SYNC_IMPORT_MODE}' (replace | merge)"
        ) from None

    if transport is None:
        transport = AccountingTransportClient(
            settings.ACCOUNTING_URL,
            timeout_s=settings.ACCOUNTING_TIMEOUT_SECONDS,
            headers=get_tunnel_headers(settings.ACCOUNTING_TUNNEL_HEADERS),
            encoding=settings.ACCOUNTING_ENCODING,
        )

    job_log: Optional[JobLog] = None
    if sink is None:
        pg_sink = PostgresSink(settings.effective_database_url, target_schema=settings.SYNC_TARGET_SCHEMA)
        sink = pg_sink
        job_log = pg_sink

    importer = BatchImporter(
        sink,
        batch_size=settings.SYNC_BATCH_SIZE,
        max_attempts=settings.SYNC_MAX_ATTEMPTS,
        base_delay=settings.SYNC_RETRY_BASE_DELAY,
        max_delay=settings.SYNC_RETRY_MAX_DELAY,
        workers=settings.SYNC_BATCH_WORKERS,
    )

    return SyncOrchestrator(
        registry=registry,
        transport=transport,
        importer=importer,
        job_log=job_log,
        context=build_report_context(settings),
        import_mode=import_mode,
        fetch_max_attempts=settings.SYNC_FETCH_MAX_ATTEMPTS,
        retry_base_delay=settings.SYNC_RETRY_BASE_DELAY,
        retry_max_delay=settings.SYNC_RETRY_MAX_DELAY,
        table_workers=settings.SYNC_TABLE_WORKERS,
    )

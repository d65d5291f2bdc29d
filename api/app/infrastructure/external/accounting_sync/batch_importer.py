"""
Importador por batches hacia el StorageSink.

- Divide los registros en batches de tamaño fijo (orden original preservado)
- UPSERT por (guid, company_id, division_id) en modo replace o merge
- Reintenta un batch ante TransientNetworkError con backoff exponencial
- PersistenceError no se reintenta: el batch falla y sus registros cuentan como error
- Un batch fallido nunca interrumpe los siguientes
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from loguru import logger

from app.shared.exceptions.sync import PersistenceError, TransientNetworkError

from .pg_sink import StorageSink
from .types import CONFLICT_KEY, DecodedRecord, ImportBatch, ImportOperation

DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_ATTEMPTS = 5


def chunk_records(
    records: Sequence[DecodedRecord],
    table: str,
    size: int = DEFAULT_BATCH_SIZE,
    operation: ImportOperation = ImportOperation.REPLACE,
) -> list[ImportBatch]:
    """Divide los registros en ImportBatch de a lo sumo `size` registros."""
    if size <= 0:
        raise ValueError(f"batch size debe ser > 0 (recibido {size})")
    return [
        ImportBatch(table=table, index=i, records=list(records[start : start + size]), operation=operation)
        for i, start in enumerate(range(0, len(records), size))
    ]


def compute_backoff(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay antes del reintento siguiente al intento `attempt` (1-based)."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


@dataclass
class BatchResult:
    index: int
    size: int
    attempts: int
    success: bool
    written: int = 0
    error: Optional[str] = None


@dataclass
class ImportResult:
    table: str
    batches: list[BatchResult] = field(default_factory=list)
    cancelled: bool = False
    pending_records: int = 0

    @property
    def total_records(self) -> int:
        return sum(b.size for b in self.batches) + self.pending_records

    @property
    def imported(self) -> int:
        return sum(b.written for b in self.batches if b.success)

    @property
    def failed_batches(self) -> list[BatchResult]:
        return [b for b in self.batches if not b.success]

    @property
    def failed_records(self) -> int:
        return sum(b.size for b in self.failed_batches)

    @property
    def errors(self) -> list[str]:
        return [f"batch {b.index}: {b.error}" for b in self.failed_batches]

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.failed_batches


class BatchImporter:
    """
    Escribe registros decodificados en el sink, batch por batch.

    Por defecto los batches de una tabla se serializan (workers=1); con
    workers > 1 se despachan en un ThreadPoolExecutor acotado.
    """

    def __init__(
        self,
        sink: StorageSink,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        workers: int = 1,
        conflict_key: Sequence[str] = CONFLICT_KEY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts debe ser >= 1")
        self._sink = sink
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._workers = max(1, workers)
        self._conflict_key = tuple(conflict_key)
        self._sleep = sleep

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def import_records(
        self,
        table: str,
        records: Sequence[DecodedRecord],
        operation: ImportOperation = ImportOperation.REPLACE,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        batches = chunk_records(records, table, self._batch_size, operation)
        result = ImportResult(table=table)
        if not batches:
            return result

        logger.info(f"{table}: importando {len(records)} registro(s) en {len(batches)} batch(es) [{operation.value}]")

        if self._workers == 1:
            for batch in batches:
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    result.pending_records += len(batch)
                    continue
                result.batches.append(self.import_batch(batch))
        else:
            result = self._import_concurrently(table, batches, cancel_event)

        if result.cancelled:
            logger.warning(f"{table}: importación cancelada, {result.pending_records} registro(s) sin intentar")
        return result

    def _import_concurrently(
        self,
        table: str,
        batches: list[ImportBatch],
        cancel_event: Optional[threading.Event],
    ) -> ImportResult:
        result = ImportResult(table=table)

        def run(batch: ImportBatch) -> Optional[BatchResult]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            return self.import_batch(batch)

        with ThreadPoolExecutor(max_workers=self._workers, thread_name_prefix=f"import-{table}-") as pool:
            outcomes = list(pool.map(run, batches))

        for batch, outcome in zip(batches, outcomes):
            if outcome is None:
                result.cancelled = True
                result.pending_records += len(batch)
            else:
                result.batches.append(outcome)
        return result

    def import_batch(self, batch: ImportBatch) -> BatchResult:
        """Escribe un batch con reintentos. Nunca levanta por errores del sink."""
        last_error: Optional[str] = None

        while batch.attempt < self._max_attempts:
            batch.attempt += 1
            try:
                written = self._sink.upsert(batch.table, batch.records, self._conflict_key, batch.operation)
                return BatchResult(
                    index=batch.index,
                    size=len(batch),
                    attempts=batch.attempt,
                    success=True,
                    written=written,
                )
            except PersistenceError as e:
                logger.error(f"{batch.table}: batch {batch.index} rechazado por el sink: {e.message}")
                return BatchResult(
                    index=batch.index,
                    size=len(batch),
                    attempts=batch.attempt,
                    success=False,
                    error=e.message,
                )
            except TransientNetworkError as e:
                last_error = e.message
                if batch.attempt >= self._max_attempts:
                    break
                delay = compute_backoff(batch.attempt, self._base_delay, self._max_delay)
                if e.retry_after:
                    delay = min(self._max_delay, max(delay, e.retry_after))
                logger.warning(
                    f"{batch.table}: batch {batch.index} intento {batch.attempt}/{self._max_attempts} "
                    f"falló ({e.message}); reintentando en {delay:.1f}s"
                )
                self._sleep(delay)

        logger.error(
            f"{batch.table}: batch {batch.index} falló tras {batch.attempt} intento(s): {last_error}"
        )
        return BatchResult(
            index=batch.index,
            size=len(batch),
            attempts=batch.attempt,
            success=False,
            error=last_error,
        )

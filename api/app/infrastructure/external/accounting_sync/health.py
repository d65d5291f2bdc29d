"""
Monitoreo de salud del sync.

Cada chequeo retorna un HealthReport nuevo; no hay registros globales de
alertas ni métricas. Las reglas por tabla siguen el protocolo TableHealthRule
y se pasan explícitamente a evaluate_job_health.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Sequence

from loguru import logger

from app.shared.exceptions.sync import FatalRequestError, TransientNetworkError

from .types import utc_now

if TYPE_CHECKING:
    from .sync_service import SyncJobSummary, TableSyncResult


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"


_STATUS_RANK = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.ERROR: 2}


@dataclass(frozen=True)
class HealthIssue:
    """Condición detectada por un chequeo (endpoint o tabla)."""

    id: str
    severity: HealthStatus
    message: str
    table: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "message": self.message,
            "table": self.table,
            "value": self.value,
            "threshold": self.threshold,
        }


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    issues: tuple[HealthIssue, ...] = ()
    metrics: Dict[str, Any] = field(default_factory=dict)
    response_time_ms: Optional[float] = None
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "issues": [i.to_dict() for i in self.issues],
            "metrics": dict(self.metrics),
            "responseTimeMs": self.response_time_ms,
            "checkedAt": self.checked_at.isoformat(),
        }


def worst_status(issues: Sequence[HealthIssue]) -> HealthStatus:
    status = HealthStatus.HEALTHY
    for issue in issues:
        if _STATUS_RANK[issue.severity] > _STATUS_RANK[status]:
            status = issue.severity
    return status


class PingTransport(Protocol):
    def ping(self) -> float:
        ...


def check_endpoint_health(transport: PingTransport, slow_threshold_ms: float = 5000.0) -> HealthReport:
    """
    Verifica el endpoint remoto con un GET liviano.

    - sin respuesta / error HTTP -> error
    - respuesta más lenta que slow_threshold_ms -> warning
    """
    try:
        elapsed_ms = round(transport.ping() * 1000, 1)
    except (TransientNetworkError, FatalRequestError) as e:
        logger.warning(f"Health check del sistema contable falló: {e.message}")
        issue = HealthIssue(id="endpoint_unreachable", severity=HealthStatus.ERROR, message=e.message)
        return HealthReport(status=HealthStatus.ERROR, issues=(issue,))

    issues: list[HealthIssue] = []
    if elapsed_ms > slow_threshold_ms:
        issues.append(
            HealthIssue(
                id="endpoint_slow",
                severity=HealthStatus.WARNING,
                message=f"El sistema contable respondió en {elapsed_ms:.0f} ms (umbral: {slow_threshold_ms:.0f} ms)",
                value=elapsed_ms,
                threshold=slow_threshold_ms,
            )
        )
    return HealthReport(status=worst_status(issues), issues=tuple(issues), response_time_ms=elapsed_ms)


class TableHealthRule(Protocol):
    id: str

    def evaluate(self, result: "TableSyncResult") -> Optional[HealthIssue]:
        ...


@dataclass(frozen=True)
class FailedTableRule:
    """La tabla terminó en failed."""

    id: str = "table_failed"

    def evaluate(self, result: "TableSyncResult") -> Optional[HealthIssue]:
        if result.success:
            return None
        detail = result.errors[0] if result.errors else "sin detalle"
        return HealthIssue(
            id=self.id,
            severity=HealthStatus.ERROR,
            table=result.table,
            message=f"{result.table} falló ({len(result.errors)} error(es)): {detail}",
            value=float(len(result.errors)),
        )


@dataclass(frozen=True)
class SkippedRecordsRule:
    """
    Proporción de registros descartados por el decoder sobre los recibidos.

    Un valor alto suele indicar un schema desalineado con el remoto.
    """

    id: str = "records_skipped"
    threshold: float = 0.05

    def evaluate(self, result: "TableSyncResult") -> Optional[HealthIssue]:
        if not result.records_fetched or not result.records_skipped:
            return None
        ratio = result.records_skipped / result.records_fetched
        if ratio <= self.threshold:
            return None
        return HealthIssue(
            id=self.id,
            severity=HealthStatus.WARNING,
            table=result.table,
            message=(
                f"{result.table}: {result.records_skipped} de {result.records_fetched} "
                f"registros descartados ({ratio:.1%}, umbral {self.threshold:.0%})"
            ),
            value=round(ratio, 4),
            threshold=self.threshold,
        )


@dataclass(frozen=True)
class SynthesizedGuidRule:
    """La tabla depende de guids sintetizados (no estables entre corridas)."""

    id: str = "guids_synthesized"

    def evaluate(self, result: "TableSyncResult") -> Optional[HealthIssue]:
        if not result.guids_synthesized:
            return None
        return HealthIssue(
            id=self.id,
            severity=HealthStatus.WARNING,
            table=result.table,
            message=(
                f"{result.table}: {result.guids_synthesized} registro(s) con guid sintetizado; "
                f"un replace en otra corrida puede duplicarlos"
            ),
            value=float(result.guids_synthesized),
        )


DEFAULT_TABLE_RULES: tuple[TableHealthRule, ...] = (
    FailedTableRule(),
    SkippedRecordsRule(),
    SynthesizedGuidRule(),
)


def evaluate_job_health(
    summary: "SyncJobSummary",
    rules: Sequence[TableHealthRule] = DEFAULT_TABLE_RULES,
) -> HealthReport:
    """Convierte el resumen de un job en un HealthReport con alertas por tabla."""
    issues: list[HealthIssue] = []
    for result in summary.results:
        for rule in rules:
            issue = rule.evaluate(result)
            if issue is not None:
                issues.append(issue)

    metrics = {
        "jobId": summary.job_id,
        "tablesProcessed": summary.tables_processed,
        "tablesFailed": sum(1 for r in summary.results if not r.success),
        "totalRecords": summary.total_records,
        "totalInserted": summary.total_inserted,
        "totalErrors": summary.total_errors,
        "duration": summary.duration,
    }
    return HealthReport(status=worst_status(issues), issues=tuple(issues), metrics=metrics)

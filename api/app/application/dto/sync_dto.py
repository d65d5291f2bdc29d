"""
DTOs para el sync contable -> Postgres.

El job se dispara con las claves de tenant y, opcionalmente, la lista de
datasets a procesar (si se omite, se procesan todos los registrados).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class AccountingSyncRequestDTO(BaseModel):
    """Request para ejecutar un job de sincronización."""

    company_id: str = Field(..., min_length=1, description="Empresa (tenant) destino")
    division_id: str = Field(..., min_length=1, description="División (tenant) destino")
    table_names: Optional[List[str]] = Field(
        None,
        description="Datasets a sincronizar. Si se omite, se sincronizan todos los registrados."
    )

    @field_validator("company_id", "division_id")
    @classmethod
    def strip_tenant_key(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("no puede estar vacío")
        return v

    @field_validator("table_names")
    @classmethod
    def table_names_not_empty(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not v:
            raise ValueError("table_names no puede ser una lista vacía (omitir para todas)")
        return v


class TableSyncResultDTO(BaseModel):
    """Resultado de una tabla dentro del job."""

    table: str
    status: str
    success: bool
    recordsFetched: int
    recordsImported: int
    recordsSkipped: int
    recordsFailed: int
    guidsSynthesized: int
    batches: int
    errors: List[str]
    duration: float


class AccountingSyncResponseDTO(BaseModel):
    """Resumen del job (forma JSON estable para clientes)."""

    jobId: str
    success: bool
    tablesProcessed: int
    totalRecords: int
    totalInserted: int
    totalErrors: int
    duration: float
    results: List[TableSyncResultDTO]


class HealthIssueDTO(BaseModel):
    id: str
    severity: str
    message: str
    table: Optional[str] = None
    value: Optional[float] = None
    threshold: Optional[float] = None


class HealthReportDTO(BaseModel):
    """Estado de salud del endpoint remoto."""

    status: str
    issues: List[HealthIssueDTO]
    metrics: Dict[str, Any]
    responseTimeMs: Optional[float] = None
    checkedAt: str


class DatasetListDTO(BaseModel):
    """Datasets registrados en el documento de schemas."""

    datasets: List[str]
    total: int

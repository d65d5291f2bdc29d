"""
Data Transfer Objects (DTOs) para la capa de aplicacion.
"""
from .sync_dto import (
    AccountingSyncRequestDTO,
    AccountingSyncResponseDTO,
    TableSyncResultDTO,
    HealthIssueDTO,
    HealthReportDTO,
    DatasetListDTO,
)

__all__ = [
    "AccountingSyncRequestDTO",
    "AccountingSyncResponseDTO",
    "TableSyncResultDTO",
    "HealthIssueDTO",
    "HealthReportDTO",
    "DatasetListDTO",
]

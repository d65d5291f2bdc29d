"""
Casos de uso del sync contable.

El orquestador es síncrono (requests + psycopg); desde el API se ejecuta en un
thread separado para no bloquear el event loop.

Health y catálogo no construyen el orquestador: solo necesitan el transporte
o el registro de schemas, y no dependen de la base de datos.
"""
import asyncio
from typing import List

from loguru import logger

from app.application.dto.sync_dto import (
    AccountingSyncRequestDTO,
    AccountingSyncResponseDTO,
    DatasetListDTO,
    HealthReportDTO,
)
from app.infrastructure.external.accounting_sync.health import check_endpoint_health
from app.infrastructure.external.accounting_sync.schema_registry import TableSchemaRegistry
from app.infrastructure.external.accounting_sync.sync_service import SyncOrchestrator
from app.infrastructure.external.accounting_sync.transport_client import AccountingTransportClient


class AccountingSyncUseCases:
    """Fachada del pipeline para la capa HTTP."""

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator

    async def run_sync(self, dto: AccountingSyncRequestDTO) -> AccountingSyncResponseDTO:
        """
        Ejecuta un job completo y retorna el resumen.

        Los errores de configuración se propagan (AppException -> 400);
        los fallos parciales quedan reflejados en el resumen.
        """
        logger.info(
            f"Sync contable solicitado desde API: empresa={dto.company_id} "
            f"división={dto.division_id} tablas={dto.table_names or 'todas'}"
        )
        summary = await asyncio.to_thread(
            self.orchestrator.run, dto.company_id, dto.division_id, dto.table_names
        )
        return AccountingSyncResponseDTO.model_validate(summary.to_dict())


class AccountingHealthUseCases:
    def __init__(self, transport: AccountingTransportClient):
        self.transport = transport

    async def check_health(self) -> HealthReportDTO:
        report = await asyncio.to_thread(check_endpoint_health, self.transport)
        return HealthReportDTO.model_validate(report.to_dict())


class AccountingCatalogUseCases:
    def __init__(self, registry: TableSchemaRegistry):
        self.registry = registry

    def list_tables(self) -> DatasetListDTO:
        names: List[str] = self.registry.names()
        return DatasetListDTO(datasets=names, total=len(names))

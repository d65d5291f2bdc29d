"""
Endpoints para sincronizacion del sistema contable.
Permite disparar el sync contable -> PostgreSQL desde la UI o un scheduler.
"""
from fastapi import APIRouter, Depends, status
from loguru import logger

from app.api.v1.dependencies.use_case_deps import (
    get_accounting_catalog_use_cases,
    get_accounting_health_use_cases,
    get_accounting_sync_use_cases,
)
from app.application.dto.sync_dto import (
    AccountingSyncRequestDTO,
    AccountingSyncResponseDTO,
    DatasetListDTO,
    HealthReportDTO,
)
from app.application.use_cases.accounting_sync_use_cases import (
    AccountingCatalogUseCases,
    AccountingHealthUseCases,
    AccountingSyncUseCases,
)


router = APIRouter(prefix="/sync", tags=["Sync"])


@router.post(
    "/accounting",
    response_model=AccountingSyncResponseDTO,
    status_code=status.HTTP_200_OK,
    summary="Sincronizar sistema contable con PostgreSQL"
)
async def sync_accounting(
    dto: AccountingSyncRequestDTO,
    use_cases: AccountingSyncUseCases = Depends(get_accounting_sync_use_cases),
) -> AccountingSyncResponseDTO:
    """
    Ejecuta un job de sincronizacion para un tenant.

    - Procesa todos los datasets registrados si no se indica table_names
    - Un fallo parcial (tabla o batch) no aborta el job: se refleja en success=false
    - Errores de configuracion retornan 400

    Returns:
        AccountingSyncResponseDTO con el resumen del job
    """
    result = await use_cases.run_sync(dto)
    if not result.success:
        logger.warning(f"Sync {result.jobId[:8]} con errores: {result.totalErrors} error(es)")
    return result


@router.get(
    "/accounting/health",
    response_model=HealthReportDTO,
    summary="Estado del endpoint del sistema contable"
)
async def accounting_health(
    use_cases: AccountingHealthUseCases = Depends(get_accounting_health_use_cases),
) -> HealthReportDTO:
    """Consulta el endpoint remoto y retorna un HealthReport."""
    return await use_cases.check_health()


@router.get(
    "/accounting/tables",
    response_model=DatasetListDTO,
    summary="Datasets registrados"
)
async def accounting_tables(
    use_cases: AccountingCatalogUseCases = Depends(get_accounting_catalog_use_cases),
) -> DatasetListDTO:
    """Lista los datasets del documento de schemas, en orden de procesamiento."""
    return use_cases.list_tables()

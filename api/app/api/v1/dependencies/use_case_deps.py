"""
Dependencias para inyeccion de casos de uso.
"""
from app.application.use_cases.accounting_sync_use_cases import (
    AccountingCatalogUseCases,
    AccountingHealthUseCases,
    AccountingSyncUseCases,
)
from app.core.config import get_tunnel_headers, settings
from app.infrastructure.external.accounting_sync.schema_registry import TableSchemaRegistry
from app.infrastructure.external.accounting_sync.sync_service import build_orchestrator_from_settings
from app.infrastructure.external.accounting_sync.transport_client import AccountingTransportClient


def get_accounting_transport() -> AccountingTransportClient:
    """
    Dependencia para obtener el cliente del sistema contable.

    Raises:
        ConfigurationError: Si ACCOUNTING_URL no esta configurada
    """
    return AccountingTransportClient(
        settings.ACCOUNTING_URL,
        timeout_s=settings.ACCOUNTING_TIMEOUT_SECONDS,
        headers=get_tunnel_headers(settings.ACCOUNTING_TUNNEL_HEADERS),
        encoding=settings.ACCOUNTING_ENCODING,
    )


def get_schema_registry() -> TableSchemaRegistry:
    """
    Dependencia para obtener el registro de datasets.

    Se carga en cada request: un cambio en el documento aplica a la
    siguiente corrida sin reiniciar el servicio.

    Raises:
        ConfigurationError: Si el documento de schemas falta o es invalido
    """
    return TableSchemaRegistry.from_yaml(settings.SYNC_SCHEMA_FILE)


def get_accounting_sync_use_cases() -> AccountingSyncUseCases:
    """
    Dependencia para obtener los casos de uso del sync contable.

    Returns:
        AccountingSyncUseCases: Instancia con el orquestador completo (transporte + Postgres)
    """
    orchestrator = build_orchestrator_from_settings(settings, transport=get_accounting_transport())
    return AccountingSyncUseCases(orchestrator)


def get_accounting_health_use_cases() -> AccountingHealthUseCases:
    """Solo el transporte: el health check no toca la base de datos."""
    return AccountingHealthUseCases(get_accounting_transport())


def get_accounting_catalog_use_cases() -> AccountingCatalogUseCases:
    return AccountingCatalogUseCases(get_schema_registry())

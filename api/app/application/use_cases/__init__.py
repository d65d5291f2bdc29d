"""
Casos de uso de la aplicacion.
"""
from .accounting_sync_use_cases import (
    AccountingCatalogUseCases,
    AccountingHealthUseCases,
    AccountingSyncUseCases,
)

__all__ = ["AccountingCatalogUseCases", "AccountingHealthUseCases", "AccountingSyncUseCases"]

"""
Excepciones del pipeline de sincronización contable.

Cada excepción corresponde a una unidad de aislamiento de fallos:
- ConfigurationError: fatal para todo el job (antes de procesar tablas).
- TransientNetworkError: se reintenta con backoff; si se agota, falla la tabla/batch.
- FatalRequestError: no se reintenta; la tabla queda en estado failed.
- DecodeSkip: solo descarta el registro afectado.
- PersistenceError: el sink rechazó un batch; se cuentan sus registros como error.
"""
from typing import Optional

from app.shared.exceptions.base import AppException


class SyncException(AppException):
    """Excepción base del pipeline de sincronización."""

    def __init__(self, message: str, status_code: int = 500, error_code: str = "SYNC_ERROR", details=None):
        super().__init__(
            message=message,
            status_code=status_code,
            error_code=error_code,
            details=details
        )


class ConfigurationError(SyncException):
    """Configuración inválida o incompleta (endpoint, schemas, tablas)."""

    def __init__(self, message: str, details=None):
        super().__init__(
            message=message,
            status_code=400,
            error_code="SYNC_CONFIGURATION_ERROR",
            details=details
        )


class TransientNetworkError(SyncException):
    """
    Error recuperable (timeout, conexión rechazada, 429, 5xx).

    Se usa tanto para el endpoint remoto como para el sink de almacenamiento.
    """

    def __init__(
        self,
        message: str,
        remote_status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(
            message=message,
            status_code=503,
            error_code="SYNC_TRANSIENT_ERROR",
            details={"remote_status_code": remote_status_code, "retry_after": retry_after}
        )
        self.remote_status_code = remote_status_code
        self.retry_after = retry_after


class FatalRequestError(SyncException):
    """Error no recuperable del request (4xx distinto de 429, URL inválida)."""

    def __init__(self, message: str, remote_status_code: Optional[int] = None):
        super().__init__(
            message=message,
            status_code=502,
            error_code="SYNC_FATAL_REQUEST",
            details={"remote_status_code": remote_status_code}
        )
        self.remote_status_code = remote_status_code


class DecodeSkip(SyncException):
    """Un campo requerido no tiene valor ni default: se descarta el registro."""

    def __init__(self, field_name: str, dataset: str):
        super().__init__(
            message=f"Campo requerido '{field_name}' sin valor ni default en '{dataset}'",
            status_code=422,
            error_code="SYNC_DECODE_SKIP",
            details={"field": field_name, "dataset": dataset}
        )
        self.field_name = field_name
        self.dataset = dataset


class PersistenceError(SyncException):
    """El sink rechazó la escritura de un batch."""

    def __init__(self, message: str, table: str):
        super().__init__(
            message=message,
            status_code=500,
            error_code="SYNC_PERSISTENCE_ERROR",
            details={"table": table}
        )
        self.table = table

"""
Excepción base de la aplicación.

La capa HTTP traduce cualquier AppException a {error, message, details}
con el status_code de la excepción; el CLI usa error_code para loguear.
"""
from typing import Any, Dict, Optional


class AppException(Exception):
    """
    Excepción base de la aplicación.

    Args:
        message: Mensaje de error descriptivo
        status_code: Código HTTP con el que se expone en el API
        error_code: Código estable para clientes y logs (p.ej. SYNC_CONFIGURATION_ERROR)
        details: Datos adicionales serializables a JSON
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500

    def to_dict(self) -> Dict[str, Any]:
        """Cuerpo JSON de la respuesta de error."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }

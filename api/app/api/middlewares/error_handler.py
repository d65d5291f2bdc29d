"""
Middleware para manejo centralizado de errores no controlados.

Las AppException (incluidas las del sync) se resuelven en el exception handler
registrado en main.py; aqui solo llega lo inesperado.
"""
import time

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from loguru import logger


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Middleware para capturar errores y medir la duracion de cada request."""

    async def dispatch(self, request: Request, call_next):
        """
        Procesa la petición y captura errores.

        Args:
            request: Petición HTTP
            call_next: Siguiente middleware/handler

        Returns:
            Response: Respuesta HTTP
        """
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as exc:
            # Escapar llaves para evitar error de formato en loguru
            error_msg = str(exc).replace("{", "{{").replace("}", "}}")
            logger.opt(exception=exc).error(
                f"Error no manejado en {request.method} {request.url.path}: {error_msg}"
            )

            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": "INTERNAL_SERVER_ERROR",
                    "message": "Ha ocurrido un error interno del servidor",
                    "details": {}
                }
            )

        duration_ms = (time.perf_counter() - started) * 1000
        if response.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f} ms)")
        else:
            logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.0f} ms)")
        return response

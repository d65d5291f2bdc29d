"""
Cliente HTTP del sistema contable remoto.

Primitiva de transporte pura: envía el request XML y retorna los bytes crudos.
No reintenta; los reintentos son responsabilidad del orquestador (fetch) y del
importador (batches).

Clasificación de errores:
- conexión rechazada, timeout, 429, 5xx -> TransientNetworkError
- otros 4xx, URL mal formada, <LINEERROR> en el body -> FatalRequestError
"""

from __future__ import annotations

import re
import time
from typing import Mapping, Optional

import requests
from loguru import logger

from app.shared.exceptions.sync import ConfigurationError, FatalRequestError, TransientNetworkError

_LINE_ERROR_RE = re.compile(rb"<LINEERROR>(.*?)</LINEERROR>", re.IGNORECASE | re.DOTALL)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class AccountingTransportClient:
    """
    Cliente del endpoint de reportes.

    Los headers extra (p.ej. de un túnel) se agregan a cada request.
    """

    def __init__(
        self,
        endpoint_url: str,
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 120.0,
        headers: Optional[Mapping[str, str]] = None,
        encoding: str = "utf-8",
    ) -> None:
        if not endpoint_url or not endpoint_url.strip():
            raise ConfigurationError("Falta configurar ACCOUNTING_URL (endpoint del sistema contable)")

        self._endpoint_url = endpoint_url.strip()
        self._timeout_s = timeout_s
        self._encoding = encoding
        self._session = session or requests.Session()
        self._headers = {"Content-Type": f"text/xml; charset={encoding}"}
        self._headers.update(headers or {})

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    @property
    def encoding(self) -> str:
        return self._encoding

    def post_report(self, body: str) -> bytes:
        """POST del request de reporte. Retorna el body crudo de la respuesta."""
        resp = self._send("POST", data=body.encode(self._encoding))
        content = resp.content or b""

        line_error = _LINE_ERROR_RE.search(content)
        if line_error:
            detail = line_error.group(1).decode(self._encoding, errors="replace").strip()
            raise FatalRequestError(f"El sistema contable rechazó el request: {detail}", resp.status_code)

        logger.debug(f"Respuesta del sistema contable: {len(content)} bytes")
        return content

    def ping(self) -> float:
        """GET liviano al endpoint. Retorna el tiempo de respuesta en segundos."""
        started = time.perf_counter()
        self._send("GET")
        return time.perf_counter() - started

    def _send(self, method: str, *, data: Optional[bytes] = None) -> requests.Response:
        try:
            resp = self._session.request(
                method=method,
                url=self._endpoint_url,
                data=data,
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema, requests.exceptions.InvalidURL) as e:
            raise FatalRequestError(f"Endpoint inválido '{self._endpoint_url}': {e}") from e
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"Timeout hablando con el sistema contable: {e}") from e
        except requests.exceptions.ConnectionError as e:
            raise TransientNetworkError(f"No se pudo conectar al sistema contable: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FatalRequestError(f"Request al sistema contable falló: {e}") from e

        if 200 <= resp.status_code < 300:
            return resp

        if resp.status_code == 429 or 500 <= resp.status_code < 600:
            raise TransientNetworkError(
                f"Sistema contable respondió {resp.status_code}: {resp.text[:200]}",
                remote_status_code=resp.status_code,
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )

        raise FatalRequestError(
            f"Sistema contable respondió {resp.status_code}: {resp.text[:200]}",
            remote_status_code=resp.status_code,
        )

"""
Tests unitarios del cliente HTTP del sistema contable.

La sesión de requests se reemplaza por un doble que registra las llamadas.
"""
from __future__ import annotations

import pytest
import requests

from app.infrastructure.external.accounting_sync.transport_client import AccountingTransportClient
from app.shared.exceptions.sync import ConfigurationError, FatalRequestError, TransientNetworkError


class DummyResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", headers=None) -> None:
        self.status_code = status_code
        self.content = content
        self.text = content.decode("utf-8", errors="replace")
        self.headers = headers or {}


class DummySession:
    def __init__(self, response=None, error: Exception | None = None) -> None:
        self.response = response or DummyResponse()
        self.error = error
        self.calls: list[dict] = []

    def request(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


def _client(session: DummySession, **kwargs) -> AccountingTransportClient:
    return AccountingTransportClient("http://localhost:9000", session=session, **kwargs)


class TestPostReport:
    def test_returns_raw_bytes(self) -> None:
        session = DummySession(DummyResponse(200, b"<ENVELOPE><F01>a</F01></ENVELOPE>"))
        assert _client(session).post_report("<ENVELOPE/>") == b"<ENVELOPE><F01>a</F01></ENVELOPE>"

    def test_sends_encoded_body_with_headers(self) -> None:
        session = DummySession()
        _client(session, headers={"ngrok-skip-browser-warning": "true"}, timeout_s=30).post_report("<A>ñ</A>")

        call = session.calls[0]
        assert call["method"] == "POST"
        assert call["url"] == "http://localhost:9000"
        assert call["data"] == "<A>ñ</A>".encode("utf-8")
        assert call["timeout"] == 30
        assert call["headers"]["Content-Type"] == "text/xml; charset=utf-8"
        assert call["headers"]["ngrok-skip-browser-warning"] == "true"

    def test_configured_encoding_is_used(self) -> None:
        session = DummySession()
        client = _client(session, encoding="utf-16")
        client.post_report("<A/>")

        assert client.encoding == "utf-16"
        assert session.calls[0]["data"] == "<A/>".encode("utf-16")

    def test_line_error_is_fatal(self) -> None:
        body = b"<RESPONSE><LINEERROR>Could not find Report 'X'!</LINEERROR></RESPONSE>"
        with pytest.raises(FatalRequestError) as exc:
            _client(DummySession(DummyResponse(200, body))).post_report("<A/>")
        assert "Could not find Report 'X'!" in exc.value.message

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_retryable_statuses_are_transient(self, status) -> None:
        session = DummySession(DummyResponse(status, b"busy", headers={"Retry-After": "7"}))
        with pytest.raises(TransientNetworkError) as exc:
            _client(session).post_report("<A/>")
        assert exc.value.remote_status_code == status
        assert exc.value.retry_after == 7.0

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors_are_fatal(self, status) -> None:
        with pytest.raises(FatalRequestError) as exc:
            _client(DummySession(DummyResponse(status, b"nope"))).post_report("<A/>")
        assert exc.value.remote_status_code == status

    @pytest.mark.parametrize(
        "error",
        [requests.exceptions.ConnectTimeout("t"), requests.exceptions.ConnectionError("refused")],
    )
    def test_network_errors_are_transient(self, error) -> None:
        with pytest.raises(TransientNetworkError):
            _client(DummySession(error=error)).post_report("<A/>")

    def test_malformed_url_is_fatal(self) -> None:
        with pytest.raises(FatalRequestError):
            _client(DummySession(error=requests.exceptions.MissingSchema("no scheme"))).post_report("<A/>")


class TestConstruction:
    @pytest.mark.parametrize("url", ["", "   "])
    def test_missing_url(self, url) -> None:
        with pytest.raises(ConfigurationError):
            AccountingTransportClient(url, session=DummySession())

    def test_ping_uses_get(self) -> None:
        session = DummySession()
        elapsed = _client(session).ping()

        assert session.calls[0]["method"] == "GET"
        assert elapsed >= 0

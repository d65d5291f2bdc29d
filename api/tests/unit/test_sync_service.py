"""
Tests unitarios del orquestador de sync.

El transporte y el sink se reemplazan por dobles en memoria; el pipeline
(query -> fetch -> normalize -> decode -> import) corre completo.
"""
from __future__ import annotations

import threading

import pytest

from app.infrastructure.external.accounting_sync.batch_importer import BatchImporter
from app.infrastructure.external.accounting_sync.schema_registry import TableSchemaRegistry
from app.infrastructure.external.accounting_sync.sync_service import (
    CANCELLED_ERROR,
    SyncOrchestrator,
    TableSyncState,
)
from app.infrastructure.external.accounting_sync.types import CONFLICT_KEY, ImportOperation, ReportContext
from app.shared.exceptions.sync import (
    ConfigurationError,
    FatalRequestError,
    PersistenceError,
    TransientNetworkError,
)
from app.shared.utils.audit_logger import SyncAuditLogger


def _payload(rows: list[list[str]]) -> bytes:
    parts = ["<ENVELOPE>"]
    for row in rows:
        parts.extend(f"<F{i:02d}>{v}</F{i:02d}>" for i, v in enumerate(row, start=1))
        parts.append("<FLDBLANK></FLDBLANK>")
    parts.append("</ENVELOPE>")
    return "".join(parts).encode("utf-8")


LEDGER_ROWS = [
    ["g-1", "Cash", "Cash-in-Hand", "1500"],
    ["g-2", "Bank", "Bank Accounts", "-200"],
    ["g-3", "Sales", "Sales Accounts", "0"],
]

ACCOUNTING_ROWS = [
    ["v-1", "Cash", "-1500", "1"],
    ["v-1", "Sales", "1500", "0"],
]


class FakeTransport:
    """Responde según la colección pedida; los valores pueden ser bytes o excepciones."""

    encoding = "utf-8"

    def __init__(self, responses: dict) -> None:
        self.responses = {k: list(v) if isinstance(v, list) else v for k, v in responses.items()}
        self.bodies: list[str] = []

    def post_report(self, body: str) -> bytes:
        self.bodies.append(body)
        for collection, response in self.responses.items():
            if f"<TYPE>{collection}</TYPE>" in body:
                if isinstance(response, list):
                    response = response.pop(0)
                if isinstance(response, Exception):
                    raise response
                return response
        raise AssertionError(f"request inesperado: {body[:80]}")


class MemorySink:
    def __init__(self, fail_tables: set[str] = frozenset()) -> None:
        self.rows: dict[tuple, dict] = {}
        self.fail_tables = fail_tables

    def upsert(self, table, records, conflict_key=CONFLICT_KEY, mode=ImportOperation.REPLACE) -> int:
        if table in self.fail_tables:
            raise PersistenceError("relation does not exist", table=table)
        for record in records:
            self.rows[(table,) + tuple(record[k] for k in conflict_key)] = record
        return len(records)


class RecordingJobLog:
    def __init__(self) -> None:
        self.entries: list[dict] = []

    def record_table_result(self, **kwargs) -> None:
        self.entries.append(kwargs)


def _ids():
    counter = {"n": 0}

    def factory(dataset: str) -> str:
        counter["n"] += 1
        return f"{dataset}-{counter['n']}"

    return factory


@pytest.fixture
def registry(ledger_schema, accounting_schema) -> TableSchemaRegistry:
    return TableSchemaRegistry([ledger_schema, accounting_schema])


def _orchestrator(registry, transport, sink=None, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(
        registry=registry,
        transport=transport,
        importer=BatchImporter(sink or MemorySink(), batch_size=2, sleep=lambda _: None),
        sleep=lambda _: None,
        id_factory=_ids(),
        **kwargs,
    )


class TestRun:
    def test_full_job_succeeds(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": _payload(ACCOUNTING_ROWS),
        })
        sink = MemorySink()
        summary = _orchestrator(registry, transport, sink).run("acme", "main")

        assert summary.success is True
        assert summary.tables_processed == 2
        assert summary.total_records == 5
        assert summary.total_inserted == 5
        assert summary.total_errors == 0
        assert [r.table for r in summary.results] == ["mst_ledger", "trn_accounting"]
        assert all(r.state == TableSyncState.COMPLETED for r in summary.results)

        ledger = summary.results[0]
        assert ledger.batches == 2
        cash = sink.rows[("mst_ledger", "g-1", "acme", "main")]
        assert cash["opening_balance"] == 1500.0
        assert cash["parent"] == "Cash-in-Hand"

        amounts = sorted(r["amount"] for k, r in sink.rows.items() if k[0] == "trn_accounting")
        assert amounts == [-1500.0, 1500.0]
        assert summary.results[1].guids_synthesized == 2

    def test_selected_tables_in_requested_order(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": _payload(ACCOUNTING_ROWS),
        })
        summary = _orchestrator(registry, transport).run(
            "acme", "main", table_names=["trn_accounting", "mst_ledger"]
        )

        assert [r.table for r in summary.results] == ["trn_accounting", "mst_ledger"]

    def test_request_carries_report_context(self, registry) -> None:
        transport = FakeTransport({"Ledger": _payload(LEDGER_ROWS)})
        context = ReportContext(company_name="ACME Ltd", from_date="2024-04-01", to_date="2025-03-31")
        _orchestrator(registry, transport, context=context).run("acme", "main", ["mst_ledger"])

        body = transport.bodies[0]
        assert "<SVCURRENTCOMPANY>ACME Ltd</SVCURRENTCOMPANY>" in body
        assert "<SVFROMDATE>20240401</SVFROMDATE>" in body

    def test_unknown_table_fails_before_processing(self, registry) -> None:
        transport = FakeTransport({})
        with pytest.raises(ConfigurationError):
            _orchestrator(registry, transport).run("acme", "main", ["mst_unknown"])
        assert transport.bodies == []

    @pytest.mark.parametrize("company, division", [("", "main"), ("acme", ""), ("  ", "main")])
    def test_missing_tenant_keys(self, registry, company, division) -> None:
        with pytest.raises(ConfigurationError):
            _orchestrator(registry, FakeTransport({})).run(company, division)

    def test_summary_dict_keys(self, registry) -> None:
        transport = FakeTransport({"Ledger": _payload(LEDGER_ROWS)})
        data = _orchestrator(registry, transport).run("acme", "main", ["mst_ledger"]).to_dict()

        assert set(data) == {
            "jobId", "success", "tablesProcessed", "totalRecords",
            "totalInserted", "totalErrors", "duration", "results",
        }
        assert set(data["results"][0]) == {
            "table", "status", "success", "recordsFetched", "recordsImported", "recordsSkipped",
            "recordsFailed", "guidsSynthesized", "batches", "errors", "duration",
        }
        assert data["results"][0]["status"] == "completed"


class TestPartialFailure:
    def test_fatal_request_fails_only_that_table(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": FatalRequestError("Could not find Report", remote_status_code=200),
        })
        summary = _orchestrator(registry, transport).run("acme", "main")

        ledger, accounting = summary.results
        assert ledger.success is True
        assert accounting.state == TableSyncState.FAILED
        assert accounting.errors == ["fetching: Could not find Report"]
        assert summary.success is False
        assert summary.total_errors == 1

    def test_transient_fetch_is_retried(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": [TransientNetworkError("timeout"), TransientNetworkError("timeout"), _payload(LEDGER_ROWS)],
        })
        summary = _orchestrator(registry, transport, fetch_max_attempts=3).run("acme", "main", ["mst_ledger"])

        assert len(transport.bodies) == 3
        assert summary.success is True
        assert summary.total_inserted == 3

    def test_exhausted_fetch_retries_fail_table(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": [TransientNetworkError("timeout")] * 3,
        })
        summary = _orchestrator(registry, transport, fetch_max_attempts=3).run("acme", "main", ["mst_ledger"])

        assert len(transport.bodies) == 3
        assert summary.results[0].errors == ["fetching: timeout"]

    def test_sink_rejection_counts_failed_records(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": _payload(ACCOUNTING_ROWS),
        })
        sink = MemorySink(fail_tables={"trn_accounting"})
        summary = _orchestrator(registry, transport, sink).run("acme", "main")

        accounting = summary.results[1]
        assert accounting.success is False
        assert accounting.records_fetched == 2
        assert accounting.records_failed == 2
        assert accounting.records_imported == 0
        assert accounting.errors == ["batch 0: relation does not exist"]
        assert summary.results[0].success is True

    def test_unexpected_exception_is_isolated(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": RuntimeError("boom"),
            "Voucher": _payload(ACCOUNTING_ROWS),
        })
        summary = _orchestrator(registry, transport).run("acme", "main")

        assert summary.results[0].errors == ["fetching: RuntimeError: boom"]
        assert summary.results[1].success is True

    def test_skipped_records_do_not_fail_table(self, registry) -> None:
        rows = ACCOUNTING_ROWS + [["v-2"]]
        transport = FakeTransport({"Voucher": _payload(rows)})
        summary = _orchestrator(registry, transport).run("acme", "main", ["trn_accounting"])

        result = summary.results[0]
        assert result.success is True
        assert result.records_fetched == 3
        assert result.records_skipped == 1
        assert result.records_imported == 2


class TestCancellationAndConcurrency:
    def test_cancelled_job_fails_every_table(self, registry) -> None:
        cancel = threading.Event()
        cancel.set()
        transport = FakeTransport({})
        summary = _orchestrator(registry, transport).run("acme", "main", cancel_event=cancel)

        assert transport.bodies == []
        assert all(r.errors == [CANCELLED_ERROR] for r in summary.results)
        assert summary.success is False

    def test_parallel_tables_produce_same_results(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": _payload(ACCOUNTING_ROWS),
        })
        summary = _orchestrator(registry, transport, table_workers=2).run("acme", "main")

        assert [r.table for r in summary.results] == ["mst_ledger", "trn_accounting"]
        assert summary.total_inserted == 5


class TestJobLog:
    def test_each_table_is_recorded(self, registry) -> None:
        transport = FakeTransport({
            "Ledger": _payload(LEDGER_ROWS),
            "Voucher": FatalRequestError("bad"),
        })
        job_log = RecordingJobLog()
        summary = _orchestrator(registry, transport, job_log=job_log).run("acme", "main")

        assert [e["table_name"] for e in job_log.entries] == ["mst_ledger", "trn_accounting"]
        assert [e["status"] for e in job_log.entries] == ["completed", "failed"]
        assert all(e["job_id"] == summary.job_id for e in job_log.entries)
        assert job_log.entries[0]["records_imported"] == 3
        assert [e["nature"] for e in job_log.entries] == ["master", "transaction"]

    def test_job_log_failure_does_not_fail_table(self, registry) -> None:
        class BrokenJobLog:
            def record_table_result(self, **kwargs) -> None:
                raise PersistenceError("connection closed", table="sync_job_log")

        transport = FakeTransport({"Ledger": _payload(LEDGER_ROWS)})
        summary = _orchestrator(registry, transport, job_log=BrokenJobLog()).run("acme", "main", ["mst_ledger"])

        assert summary.success is True

    def test_audit_file_is_written(self, registry, sync_audit_logs) -> None:
        transport = FakeTransport({"Ledger": _payload(LEDGER_ROWS)})
        summary = _orchestrator(registry, transport).run("acme", "main", ["mst_ledger"])

        files = list(sync_audit_logs.glob(f"sync_acme_*_{summary.job_id[:8]}.log"))
        assert len(files) == 1
        content = files[0].read_text(encoding="utf-8")
        assert "SYNC INICIADO" in content
        assert "[mst_ledger] completed" in content
        assert SyncAuditLogger.log_file_for(summary.job_id) is None

    def test_audit_handler_released_when_run_aborts(self, registry, sync_audit_logs) -> None:
        class CrashingJobLog:
            def record_table_result(self, **kwargs) -> None:
                raise RuntimeError("pool agotado")

        transport = FakeTransport({"Ledger": _payload(LEDGER_ROWS)})
        with pytest.raises(RuntimeError):
            _orchestrator(registry, transport, job_log=CrashingJobLog()).run("acme", "main", ["mst_ledger"])

        assert SyncAuditLogger._job_handlers == {}
        files = list(sync_audit_logs.glob("sync_acme_*.log"))
        assert len(files) == 1
        assert "SYNC INTERRUMPIDO" in files[0].read_text(encoding="utf-8")

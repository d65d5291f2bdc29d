"""
Configuración de fixtures para pytest.
"""
import pytest
from loguru import logger

from app.infrastructure.external.accounting_sync.types import (
    DatasetNature,
    FieldSpec,
    FieldType,
    TableSchema,
    TenantKeys,
)
from app.shared.utils.audit_logger import SyncAuditLogger


@pytest.fixture(autouse=True)
def sync_audit_logs(tmp_path, monkeypatch):
    """Redirige los logs de auditoría de sync a un directorio temporal."""
    monkeypatch.setattr(SyncAuditLogger, "SYNC_LOG_DIR", tmp_path / "sync_logs")
    monkeypatch.setattr(SyncAuditLogger, "_daily_handler", None)
    yield tmp_path / "sync_logs"
    if SyncAuditLogger._daily_handler is not None:
        logger.remove(SyncAuditLogger._daily_handler)


@pytest.fixture
def tenant() -> TenantKeys:
    return TenantKeys(company_id="acme", division_id="main")


@pytest.fixture
def ledger_schema() -> TableSchema:
    """Schema mínimo de maestros: guid + nombre + grupo + saldo."""
    return TableSchema(
        dataset_name="mst_ledger",
        collection_path="Ledger",
        fields=(
            FieldSpec("Guid", "guid", FieldType.TEXT, required=True),
            FieldSpec("Name", "name", FieldType.TEXT, required=True),
            FieldSpec("Parent", "parent", FieldType.TEXT, required=True),
            FieldSpec("OpeningBalance", "opening_balance", FieldType.AMOUNT),
        ),
    )


@pytest.fixture
def accounting_schema() -> TableSchema:
    """Líneas contables de comprobantes (sin guid propio, signo por débito)."""
    return TableSchema(
        dataset_name="trn_accounting",
        collection_path="Voucher.AllLedgerEntries",
        fields=(
            FieldSpec("..Guid", "voucher_guid", FieldType.TEXT, required=True),
            FieldSpec("LedgerName", "ledger", FieldType.TEXT, required=True),
            FieldSpec("Amount", "amount", FieldType.AMOUNT, sign_field="is_deemed_positive"),
            FieldSpec("IsDeemedPositive", "is_deemed_positive", FieldType.LOGICAL),
        ),
        filter_expressions=("NOT $IsCancelled", "NOT $IsOptional"),
        nature=DatasetNature.TRANSACTION,
    )

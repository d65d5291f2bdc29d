"""
Tests unitarios del decodificador genérico de registros.

Cubre tipado por FieldType, signo por campo lógico, defaults de requeridos,
descarte de registros (DecodeSkip) y síntesis de guid.
"""
from __future__ import annotations

from datetime import date

import pytest

from app.infrastructure.external.accounting_sync.record_decoder import (
    decode_row,
    decode_rows,
    decode_value,
    resolve_text_fallback,
    synthesize_guid,
)
from app.infrastructure.external.accounting_sync.types import (
    FieldSpec,
    FieldType,
    TableSchema,
)
from app.shared.exceptions.sync import DecodeSkip


def _fixed_ids(prefix: str = "syn"):
    counter = {"n": 0}

    def factory(dataset: str) -> str:
        counter["n"] += 1
        return f"{prefix}-{dataset}-{counter['n']}"

    return factory


class TestDecodeValue:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1500.00", 1500.0),
            ("1,234.50", 1234.5),
            ("(-)250", -250.0),
            ("  42 ", 42.0),
            ("", 0.0),
            (None, 0.0),
            ("N/A", 0.0),
            ("30 Days", 30.0),
            ("-12.5 Nos", -12.5),
            ("nan", 0.0),
            ("inf", 0.0),
            (float("nan"), 0.0),
        ],
    )
    def test_numeric_types(self, raw, expected) -> None:
        spec = FieldSpec("Amount", "amount", FieldType.AMOUNT)
        assert decode_value(spec, raw) == expected

    def test_numeric_default_value_when_absent(self) -> None:
        spec = FieldSpec("Rate", "rate", FieldType.RATE, default_value="1")
        assert decode_value(spec, None) == 1.0

    @pytest.mark.parametrize(
        "raw, expected",
        [("1", True), ("true", True), ("TRUE", True), ("0", False), ("Yes", False), ("", False), (None, False)],
    )
    def test_logical(self, raw, expected) -> None:
        spec = FieldSpec("IsRevenue", "is_revenue", FieldType.LOGICAL)
        assert decode_value(spec, raw) is expected

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("2024-04-01", date(2024, 4, 1)),
            ("2024-04-01T00:00:00", date(2024, 4, 1)),
            ("2024-02-30", None),
            ("01-04-2024", None),
            ("", None),
            (None, None),
        ],
    )
    def test_date(self, raw, expected) -> None:
        spec = FieldSpec("Date", "date", FieldType.DATE)
        assert decode_value(spec, raw) == expected

    def test_text_is_verbatim(self) -> None:
        spec = FieldSpec("Narration", "narration")
        assert decode_value(spec, "  Pago  ") == "  Pago  "
        assert decode_value(spec, "") == ""
        assert decode_value(spec, None) is None


class TestSignConvention:
    def test_debit_amount_is_positive(self, accounting_schema, tenant) -> None:
        record = decode_row(["v-1", "Cash", "-1500", "1"], accounting_schema, tenant, _fixed_ids())
        assert record["amount"] == 1500.0
        assert record["is_deemed_positive"] is True

    def test_credit_amount_is_negative(self, accounting_schema, tenant) -> None:
        record = decode_row(["v-1", "Sales", "1500", "0"], accounting_schema, tenant, _fixed_ids())
        assert record["amount"] == -1500.0

    def test_sign_not_applied_when_flag_cell_absent(self, accounting_schema, tenant) -> None:
        record = decode_row(["v-1", "Sales", "-75"], accounting_schema, tenant, _fixed_ids())
        assert record["amount"] == -75.0

    def test_inventory_quantity_sign(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="trn_inventory",
            collection_path="Voucher.AllInventoryEntries",
            fields=(
                FieldSpec("StockItemName", "item", required=True),
                FieldSpec("ActualQty", "quantity", FieldType.QUANTITY, sign_field="is_inwards"),
                FieldSpec("IsInwards", "is_inwards", FieldType.LOGICAL),
            ),
        )
        inwards = decode_row(["Widget", "10", "1"], schema, tenant, _fixed_ids())
        outwards = decode_row(["Widget", "10", "0"], schema, tenant, _fixed_ids())

        assert inwards["quantity"] == 10.0
        assert outwards["quantity"] == -10.0


class TestRequiredFields:
    def test_parent_fallback(self, ledger_schema, tenant) -> None:
        record = decode_row(["g-1", "Cash", None, "10"], ledger_schema, tenant)
        assert record["parent"] == "Primary"

    def test_name_fallback(self, ledger_schema, tenant) -> None:
        record = decode_row(["g-1", None, "Assets", "10"], ledger_schema, tenant)
        assert record["name"] == "Unknown"

    def test_unit_fallback(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="mst_stock_item",
            collection_path="StockItem",
            fields=(
                FieldSpec("Name", "name", required=True),
                FieldSpec("BaseUnits", "base_unit", required=True),
            ),
        )
        record = decode_row(["Widget", None], schema, tenant, _fixed_ids())
        assert record["base_unit"] == "Nos"

    def test_name_like_columns_fall_back_to_name(self) -> None:
        assert resolve_text_fallback("ledger_name", {"name": "Cash"}) == "Cash"
        assert resolve_text_fallback("ledger_name", {}) == "Unknown"
        assert resolve_text_fallback("narration", {}) is None

    def test_explicit_default_wins_over_fallback(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="mst_group",
            collection_path="Group",
            fields=(FieldSpec("Parent", "parent", required=True, default_value="Root"),),
        )
        record = decode_row([None], schema, tenant, _fixed_ids())
        assert record["parent"] == "Root"

    def test_empty_text_falls_back_like_absent(self, ledger_schema, tenant) -> None:
        record = decode_row(["g-1", "Cash", "", "10"], ledger_schema, tenant)
        assert record["parent"] == "Primary"

    def test_empty_unit_and_mailing_name_fall_back(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="mst_uom",
            collection_path="Unit",
            fields=(
                FieldSpec("Guid", "guid", required=True),
                FieldSpec("Name", "name", required=True),
                FieldSpec("BaseUnits", "base_units", required=True),
                FieldSpec("MailingName", "mailing_name", required=True),
            ),
        )
        record = decode_row(["g1", "Kg", "", ""], schema, tenant, _fixed_ids())
        assert record["base_units"] == "Nos"
        assert record["mailing_name"] == "Kg"

    def test_empty_required_text_without_fallback_is_skipped(self, accounting_schema, tenant) -> None:
        with pytest.raises(DecodeSkip) as exc:
            decode_row(["v-1", "", "10", "1"], accounting_schema, tenant, _fixed_ids())
        assert exc.value.field_name == "ledger"

    def test_empty_optional_text_is_kept(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="trn_voucher",
            collection_path="Voucher",
            fields=(FieldSpec("Narration", "narration"),),
        )
        record = decode_row([""], schema, tenant, _fixed_ids())
        assert record["narration"] == ""

    def test_required_date_default(self, tenant) -> None:
        schema = TableSchema(
            dataset_name="trn_voucher",
            collection_path="Voucher",
            fields=(FieldSpec("Date", "date", FieldType.DATE, required=True, default_value="2024-04-01"),),
        )
        record = decode_row(["garbage"], schema, tenant, _fixed_ids())
        assert record["date"] == date(2024, 4, 1)

    def test_missing_required_without_default_raises(self, accounting_schema, tenant) -> None:
        with pytest.raises(DecodeSkip) as exc:
            decode_row(["v-1", None, "10", "1"], accounting_schema, tenant, _fixed_ids())
        assert exc.value.field_name == "ledger"
        assert exc.value.dataset == "trn_accounting"


class TestGuidAndTenant:
    def test_tenant_keys_are_injected(self, ledger_schema, tenant) -> None:
        record = decode_row(["g-1", "Cash", "Assets", "10"], ledger_schema, tenant)
        assert record["company_id"] == "acme"
        assert record["division_id"] == "main"
        assert record["guid"] == "g-1"

    def test_missing_guid_is_synthesized(self, ledger_schema, tenant) -> None:
        record = decode_row([None, "Cash", "Assets", "10"], ledger_schema, tenant, _fixed_ids())
        assert record["guid"] == "syn-mst_ledger-1"

    def test_empty_guid_is_synthesized(self, ledger_schema, tenant) -> None:
        record = decode_row(["", "Cash", "Assets", "10"], ledger_schema, tenant, _fixed_ids())
        assert record["guid"] == "syn-mst_ledger-1"

    def test_schema_without_guid_field_gets_one(self, accounting_schema, tenant) -> None:
        record = decode_row(["v-1", "Cash", "10", "1"], accounting_schema, tenant, _fixed_ids())
        assert record["guid"] == "syn-trn_accounting-1"
        assert record["voucher_guid"] == "v-1"

    def test_default_synthesized_guids_are_unique(self) -> None:
        guids = {synthesize_guid("trn_accounting") for _ in range(200)}
        assert len(guids) == 200
        assert all(g.startswith("trn_accounting-") for g in guids)


class TestDecodeRows:
    def test_counts_skipped_and_synthesized(self, accounting_schema, tenant) -> None:
        rows = [
            ["v-1", "Cash", "100", "1"],
            ["v-1", None, "100", "0"],
            ["v-2", "Bank", "50", "0"],
            [None, None, None, None],
        ]
        outcome = decode_rows(rows, accounting_schema, tenant, _fixed_ids())

        assert len(outcome.records) == 2
        assert outcome.skipped == 2
        assert outcome.guids_synthesized == 2
        assert outcome.skipped_by_field == {"ledger": 1, "voucher_guid": 1}

    def test_preserves_row_order(self, ledger_schema, tenant) -> None:
        rows = [[f"g-{i}", f"L{i}", "Assets", str(i)] for i in range(10)]
        outcome = decode_rows(rows, ledger_schema, tenant)

        assert [r["guid"] for r in outcome.records] == [f"g-{i}" for i in range(10)]
        assert outcome.skipped == 0
        assert outcome.guids_synthesized == 0

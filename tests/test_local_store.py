"""Tests for the Local Sale Store."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from salesync.core.exceptions import (
    InvalidTransitionError,
    PermissionDeniedError,
    RecordNotFoundError,
)
from salesync.models.offline_sale import SaleStatus
from salesync.schemas.sales import OfflineSaleRecord, ServerSale, StockShortage

from conftest import OTHER_SELLER_ID, SELLER_ID


def server_copy(folio="20250101-0001", qty="3", status="CONFIRMED") -> ServerSale:
    return ServerSale.model_validate({
        "id": 1, "uuid": "a1", "folio": folio, "status": status,
        "subtotal": "30", "taxTotal": "4.80", "grandTotal": "34.80",
        "items": [{
            "id": 11, "lineId": "line-1", "productId": 1, "unitCode": "UND", "unitFactor": "1",
            "qty": qty, "qtyBase": qty, "unitPrice": "10", "lineTotal": str(Decimal(qty) * 10),
            "taxRate": "16",
        }],
    })


class TestCapture:
    def test_saved_as_pending_with_totals(self, local_store, make_draft):
        row = local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))

        assert row.status == SaleStatus.PENDING_SYNC.value
        assert row.retry_count == 0
        assert row.subtotal == Decimal("50.00")
        assert row.tax_total == Decimal("8.00")
        assert row.grand_total == Decimal("58.00")
        assert row.folio is None
        assert row.line_items[0]["qtyBase"] == "5.000"

    def test_same_id_twice_keeps_one_record(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1", qty="9"))

        rows = local_store.list_by_status(SELLER_ID)
        assert len(rows) == 1
        assert rows[0].grand_total == Decimal("58.00")

    def test_id_owned_by_other_seller_is_reassigned(self, local_store, make_draft):
        local_store.save_offline_sale(OTHER_SELLER_ID, make_draft(sale_id="a1"))
        row = local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))

        assert row.seller_id == SELLER_ID
        assert local_store.list_by_status(OTHER_SELLER_ID) == []
        assert len(local_store.list_by_status(SELLER_ID)) == 1

    def test_record_round_trips_to_wire_model(self, local_store, make_draft):
        row = local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        record = OfflineSaleRecord.from_row(row)
        wire = record.to_wire()

        assert wire["id"] == "a1"
        assert wire["sellerId"] == SELLER_ID
        assert wire["items"][0]["unitPrice"] == "10"
        assert wire["grandTotal"] == "58.00"


class TestScoping:
    """Every read and write is confined to the seller's partition."""

    def test_other_seller_cannot_see_record(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))

        assert local_store.get(OTHER_SELLER_ID, "a1") is None
        assert local_store.pending_count(OTHER_SELLER_ID) == 0
        assert local_store.mark_confirmed(OTHER_SELLER_ID, "a1", "F-1") is None
        assert local_store.delete(OTHER_SELLER_ID, "a1") is False
        assert local_store.get(SELLER_ID, "a1").status == SaleStatus.PENDING_SYNC.value

    def test_get_owned_distinguishes_missing_from_foreign(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))

        with pytest.raises(PermissionDeniedError):
            local_store.get_owned(OTHER_SELLER_ID, "a1")
        with pytest.raises(RecordNotFoundError):
            local_store.get_owned(SELLER_ID, "nope")

    def test_reviewer_reads_another_sellers_partition(self, local_store, reviewer_session, make_draft):
        local_store.save_offline_sale(OTHER_SELLER_ID, make_draft(sale_id="x1"))
        local_store.save_offline_sale(OTHER_SELLER_ID, make_draft(sale_id="x2"))
        local_store.mark_review_required(OTHER_SELLER_ID, "x2", "INSUFFICIENT_STOCK: short")

        everything = local_store.list_for_seller(reviewer_session, OTHER_SELLER_ID)
        in_review = local_store.list_for_seller(reviewer_session, OTHER_SELLER_ID, [SaleStatus.REVIEW_REQUIRED])

        assert sorted(row.id for row in everything) == ["x1", "x2"]
        assert [row.id for row in in_review] == ["x2"]

    def test_seller_cannot_name_another_seller(self, local_store, seller_session, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.save_offline_sale(OTHER_SELLER_ID, make_draft(sale_id="x1"))

        with pytest.raises(PermissionDeniedError):
            local_store.list_for_seller(seller_session, OTHER_SELLER_ID)
        assert [row.id for row in local_store.list_for_seller(seller_session)] == ["a1"]

    def test_pending_count_includes_review_required(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a2"))
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a3"))
        local_store.mark_review_required(SELLER_ID, "a2", "INSUFFICIENT_STOCK: short")
        local_store.mark_confirmed(SELLER_ID, "a3", "F-3")

        assert local_store.pending_count(SELLER_ID) == 2


class TestMutations:
    def test_review_required_records_error_and_shortage(self, local_store, make_draft):
        draft = make_draft(sale_id="a1")
        line_id = draft.items[0].id
        local_store.save_offline_sale(SELLER_ID, draft)

        row = local_store.mark_review_required(
            SELLER_ID, "a1", "INSUFFICIENT_STOCK: not enough",
            [StockShortage(line_id=line_id, product_id=1, required_stock=5, available_stock=2, stock_shortage=3)],
        )

        assert row.status == SaleStatus.REVIEW_REQUIRED.value
        assert row.retry_count == 1
        assert row.last_error == "INSUFFICIENT_STOCK: not enough"
        assert row.line_items[0]["stockShortage"] == "3"
        assert row.line_items[0]["availableStockHint"] == "2"

    def test_retry_count_accumulates(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_review_required(SELLER_ID, "a1", "SYSTEM_ERROR: boom")
        row = local_store.mark_review_required(SELLER_ID, "a1", "SYSTEM_ERROR: boom")
        assert row.retry_count == 2

    def test_confirm_with_canonical_copy(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        row = local_store.mark_confirmed(SELLER_ID, "a1", "F-001", canonical=server_copy(folio="F-001"))

        assert row.status == SaleStatus.CONFIRMED.value
        assert row.folio == "F-001"
        assert row.synced_at is not None
        assert row.grand_total == Decimal("34.80")
        assert row.line_items[0]["qty"] == "3"

    def test_confirm_without_canonical_keeps_local_totals(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        row = local_store.mark_confirmed(SELLER_ID, "a1", "F-001")

        assert row.folio == "F-001"
        assert row.grand_total == Decimal("58.00")

    def test_requeue_clears_error(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_review_required(SELLER_ID, "a1", "SYSTEM_ERROR: boom")

        row = local_store.requeue(SELLER_ID, "a1")
        assert row.status == SaleStatus.PENDING_SYNC.value
        assert row.last_error is None

    def test_requeue_rejects_foreign_and_unknown(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_review_required(SELLER_ID, "a1", "SYSTEM_ERROR: boom")

        with pytest.raises(PermissionDeniedError):
            local_store.requeue(OTHER_SELLER_ID, "a1")
        with pytest.raises(RecordNotFoundError):
            local_store.requeue(SELLER_ID, "missing")

    def test_confirmed_cannot_be_requeued(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_confirmed(SELLER_ID, "a1", "F-1")

        with pytest.raises(InvalidTransitionError):
            local_store.requeue(SELLER_ID, "a1")

    def test_apply_server_copy_totals_only(self, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_confirmed(SELLER_ID, "a1", "F-001")

        row = local_store.apply_server_copy(SELLER_ID, "a1", server_copy(folio="F-999"), include_status=False)
        assert row.folio == "F-001"
        assert row.grand_total == Decimal("34.80")


class TestDiagnose:
    def test_counts_stale_and_high_retry(self, local_store, make_draft):
        old = make_draft(sale_id="old")
        old.created_at = datetime.now(timezone.utc) - timedelta(days=10)
        local_store.save_offline_sale(SELLER_ID, old)
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="flaky"))
        for _ in range(4):
            local_store.mark_review_required(SELLER_ID, "flaky", "SYSTEM_ERROR: boom")

        diagnosis = local_store.diagnose(SELLER_ID)

        assert diagnosis.total == 2
        assert diagnosis.by_status["PENDING_SYNC"] == 1
        assert diagnosis.by_status["REVIEW_REQUIRED"] == 1
        assert diagnosis.older_than_7_days == 1
        assert diagnosis.high_retry == 1
        assert diagnosis.retry_ids == ["flaky"]

"""Tests for the reconciliation poll protocol."""

from decimal import Decimal

import httpx
import pytest

from salesync.core.exceptions import PermissionDeniedError
from salesync.models.offline_sale import SaleStatus
from salesync.services.conflict_resolution import build_cancel_action
from salesync.services.reconciliation import check_offline_sales_status, never_reached_ledger
from salesync.services.sync_push import push_pending_sales

from conftest import CHIPS_ID, OTHER_SELLER_ID, SELLER_ID, mock_client


def status_sale(sale_uuid, status="CONFIRMED", folio="F-001", qty="5", price="10", tax_rate="16"):
    line_total = Decimal(qty) * Decimal(price)
    tax = (line_total * Decimal(tax_rate) / 100).quantize(Decimal("0.01"))
    return {
        "id": 1, "uuid": sale_uuid, "folio": folio, "status": status,
        "subtotal": str(line_total), "taxTotal": str(tax), "grandTotal": str(line_total + tax),
        "items": [{
            "id": 11, "productId": 1, "unitCode": "UND", "unitFactor": "1", "taxRate": tax_rate,
            "qty": qty, "qtyBase": qty, "unitPrice": price, "lineTotal": str(line_total),
        }],
    }


def status_handler(*sales, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        assert request.url.path == "/sales/offline/status"
        return httpx.Response(200, json={"sales": list(sales), "total": len(sales)})
    return handler


class TestReconcileOutcomes:
    @pytest.mark.asyncio
    async def test_missing_on_server_is_removed(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="gone"))
        local_store.mark_review_required(SELLER_ID, "gone", "INSUFFICIENT_STOCK: short")

        result = await check_offline_sales_status(
            seller_session, local_store, mock_client(seller_session, status_handler())
        )

        assert (result.updated, result.removed) == (0, 1)
        assert local_store.get(SELLER_ID, "gone") is None

    @pytest.mark.asyncio
    async def test_pending_records_are_not_touched(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="queued"))
        seen = []

        result = await check_offline_sales_status(
            seller_session, local_store, mock_client(seller_session, status_handler(seen=seen))
        )

        assert (result.updated, result.removed) == (0, 0)
        assert seen == []
        assert local_store.get(SELLER_ID, "queued") is not None

    @pytest.mark.asyncio
    async def test_status_change_overwrites_record(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_review_required(SELLER_ID, "a1", "INSUFFICIENT_STOCK: short")

        result = await check_offline_sales_status(
            seller_session, local_store,
            mock_client(seller_session, status_handler(status_sale("a1", folio="F-002", qty="3"))),
        )

        assert result.updated == 1
        row = local_store.get(SELLER_ID, "a1")
        assert row.status == SaleStatus.CONFIRMED.value
        assert row.folio == "F-002"
        assert row.last_error is None
        assert row.synced_at is not None
        assert row.grand_total == Decimal("34.80")

    @pytest.mark.asyncio
    async def test_total_drift_overwrites_totals_only(self, seller_session, local_store, make_draft):
        """Scenario: a1 confirmed as F-001 with qty 5, later edited to qty 3."""
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1", qty="5", unit_price="10"))
        local_store.mark_confirmed(SELLER_ID, "a1", "F-001")

        result = await check_offline_sales_status(
            seller_session, local_store,
            mock_client(seller_session, status_handler(status_sale("a1", folio="F-001", qty="3"))),
        )

        assert result.updated == 1
        row = local_store.get(SELLER_ID, "a1")
        assert row.status == SaleStatus.CONFIRMED.value
        assert row.folio == "F-001"
        line = row.line_items[0]
        assert Decimal(line["qty"]) == Decimal("3")
        assert Decimal(line["lineTotal"]) == Decimal("30")

    @pytest.mark.asyncio
    async def test_drift_within_epsilon_is_ignored(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_confirmed(SELLER_ID, "a1", "F-001")
        sale = status_sale("a1")
        sale["grandTotal"] = "58.01"

        result = await check_offline_sales_status(
            seller_session, local_store, mock_client(seller_session, status_handler(sale))
        )

        assert result.updated == 0
        assert local_store.get(SELLER_ID, "a1").grand_total == Decimal("58.00")

    @pytest.mark.asyncio
    async def test_forbidden_transition_is_skipped(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        local_store.mark_confirmed(SELLER_ID, "a1", "F-001")

        result = await check_offline_sales_status(
            seller_session, local_store,
            mock_client(seller_session, status_handler(status_sale("a1", status="REVIEW_REQUIRED", folio=None))),
        )

        assert result.updated == 0
        assert local_store.get(SELLER_ID, "a1").status == SaleStatus.CONFIRMED.value

    @pytest.mark.asyncio
    async def test_rejections_never_stored_by_ledger_are_kept(self, seller_session, local_store, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="bad"))
        local_store.mark_review_required(SELLER_ID, "bad", "INVALID_DATA: items: too short")

        result = await check_offline_sales_status(
            seller_session, local_store, mock_client(seller_session, status_handler())
        )

        assert result.removed == 0
        assert local_store.get(SELLER_ID, "bad") is not None

    def test_never_reached_ledger(self):
        assert never_reached_ledger("REVIEW_REQUIRED", "NOT_FOUND: Product 9 not found")
        assert not never_reached_ledger("REVIEW_REQUIRED", "INSUFFICIENT_STOCK: short")
        assert not never_reached_ledger("CONFIRMED", "SYSTEM_ERROR: stale")
        assert not never_reached_ledger("REVIEW_REQUIRED", None)


class TestReconcileScope:
    @pytest.mark.asyncio
    async def test_seller_cannot_poll_other_partition(self, seller_session, local_store):
        with pytest.raises(PermissionDeniedError):
            await check_offline_sales_status(
                seller_session, local_store, mock_client(seller_session, status_handler()),
                seller_id=OTHER_SELLER_ID,
            )

    @pytest.mark.asyncio
    async def test_reviewer_polls_named_seller(self, reviewer_session, local_store, make_draft):
        local_store.save_offline_sale(OTHER_SELLER_ID, make_draft(sale_id="x1"))
        local_store.mark_review_required(OTHER_SELLER_ID, "x1", "INSUFFICIENT_STOCK: short")
        seen = []

        result = await check_offline_sales_status(
            reviewer_session, local_store,
            mock_client(reviewer_session, status_handler(status_sale("x1", folio="F-9"), seen=seen)),
            seller_id=OTHER_SELLER_ID,
        )

        assert result.updated == 1
        assert seen[0].url.params["sellerId"] == str(OTHER_SELLER_ID)
        assert local_store.get(OTHER_SELLER_ID, "x1").status == SaleStatus.CONFIRMED.value


class TestReconcileAgainstLedger:
    @pytest.mark.asyncio
    async def test_cancelled_by_reviewer_is_removed_and_not_recreated(
        self, seller_session, local_store, seller_client, reviewer_client, make_draft
    ):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="s1", product_id=CHIPS_ID, qty="5", tax_rate="0"))
        await push_pending_sales(seller_session, local_store, seller_client)
        conflicts = await reviewer_client.list_conflicts()
        await reviewer_client.resolve_conflict(build_cancel_action(conflicts.sales[0].id))

        result = await check_offline_sales_status(seller_session, local_store, seller_client)
        assert result.removed == 1
        assert local_store.get(SELLER_ID, "s1") is None

        again = await push_pending_sales(seller_session, local_store, seller_client)
        assert again.results == []
        assert local_store.get(SELLER_ID, "s1") is None

    @pytest.mark.asyncio
    async def test_confirmed_sale_stays_in_sync(self, seller_session, local_store, seller_client, make_draft):
        local_store.save_offline_sale(SELLER_ID, make_draft(sale_id="a1"))
        await push_pending_sales(seller_session, local_store, seller_client)

        result = await check_offline_sales_status(seller_session, local_store, seller_client)

        assert (result.updated, result.removed) == (0, 0)
        assert local_store.get(SELLER_ID, "a1").status == SaleStatus.CONFIRMED.value

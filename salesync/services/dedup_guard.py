"""
Deduplication guard.

A submission can succeed on the server while the client records it as a
DUPLICATE_SALE rejection (lost or misclassified acknowledgment). This pass
looks such records up server-side and heals them to CONFIRMED, and clears
stale duplicate errors left on records that are already CONFIRMED.

Every lookup is best-effort: a failure is logged and the record skipped.
"""

import logging
from typing import Optional

from salesync.core.auth import SessionContext
from salesync.core.config import settings
from salesync.core.exceptions import AuthenticationError, SyncError
from salesync.core.observability import sync_cycle
from salesync.models.offline_sale import OfflineSale, SaleStatus
from salesync.schemas.sales import DedupResult, ServerSale
from salesync.services.api_client import SalesApiClient
from salesync.services.local_store import LocalSaleStore

logger = logging.getLogger(__name__)


def is_duplicate_error(last_error: Optional[str], code: Optional[str] = None) -> bool:
    return bool(last_error) and (code or settings.duplicate_error_code) in last_error


async def locate_server_sale(client: SalesApiClient, row: OfflineSale) -> Optional[ServerSale]:
    """Find the server copy of a local record, by folio first, then by its id."""
    if row.folio:
        try:
            found = await client.find_sale_by_folio(row.folio)
        except AuthenticationError:
            raise
        except SyncError as e:
            logger.warning(f"Folio lookup {row.folio} for offline sale {row.id} failed, trying its id: {e}")
        else:
            if found is not None and (found.uuid is None or found.uuid == row.id):
                return found
    return await client.get_sale_by_uuid(row.id)


async def run_dedup_guard(
    session: SessionContext,
    store: LocalSaleStore,
    client: SalesApiClient,
    duplicate_code: Optional[str] = None,
) -> DedupResult:
    """Heal falsely-flagged duplicates and clear stale duplicate errors."""
    seller_id = session.scope_seller()
    code = duplicate_code or settings.duplicate_error_code
    result = DedupResult()

    with sync_cycle("dedup"):
        flagged = [
            row for row in store.list_by_status(seller_id, SaleStatus.REVIEW_REQUIRED)
            if is_duplicate_error(row.last_error, code)
        ]
        for row in flagged:
            if not session.is_authenticated:
                logger.warning("Session lost during dedup pass, stopping")
                break
            try:
                server_sale = await locate_server_sale(client, row)
            except SyncError as e:
                logger.warning(f"Dedup lookup for offline sale {row.id} failed, skipping: {e}")
                continue

            if server_sale is None:
                logger.info(f"Offline sale {row.id} flagged duplicate but unknown to the server")
                continue
            if server_sale.status != SaleStatus.CONFIRMED:
                logger.info(
                    f"Offline sale {row.id} flagged duplicate, server copy is {server_sale.status.value}"
                )
                continue

            try:
                store.mark_confirmed(seller_id, row.id, server_sale.folio, canonical=server_sale)
            except ValueError as e:
                logger.warning(f"Server copy of {row.id} has inconsistent lines ({e}), confirming with folio only")
                store.mark_confirmed(seller_id, row.id, server_sale.folio)
            result.healed += 1
            logger.info(f"Healed offline sale {row.id} to CONFIRMED (folio {server_sale.folio})")

        for row in store.list_by_status(seller_id, SaleStatus.CONFIRMED):
            if is_duplicate_error(row.last_error, code):
                store.clear_error(seller_id, row.id)
                result.cleared += 1

    if result.healed or result.cleared:
        logger.info(f"Dedup pass for seller {seller_id}: healed={result.healed} cleared={result.cleared}")
    return result

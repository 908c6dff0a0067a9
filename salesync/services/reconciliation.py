"""
Reconciliation poll protocol.

Compares local REVIEW_REQUIRED / CONFIRMED records with the server's view
of the seller's offline sales and repairs drift:

- unknown to the server       -> deleted locally (resolved out-of-band),
                                 unless the ledger rejected it without storing it
- different status            -> status, folio, totals and lines overwritten
- same status, totals drifted -> totals and lines overwritten

Never pushes anything.
"""

import logging
from typing import Optional

from salesync.core.auth import SessionContext
from salesync.core.config import settings
from salesync.core.exceptions import InvalidTransitionError
from salesync.core.observability import sync_cycle
from salesync.models.offline_sale import SaleStatus
from salesync.schemas.sales import StatusCheckResult
from salesync.services import totals
from salesync.services.api_client import SalesApiClient
from salesync.services.local_store import LocalSaleStore
from salesync.services.sale_state import RECONCILABLE_STATUSES

logger = logging.getLogger(__name__)


def error_code(last_error: Optional[str]) -> Optional[str]:
    """The code part of a stored "<CODE>: <message>" error."""
    if not last_error:
        return None
    return last_error.split(":", 1)[0].strip()


def never_reached_ledger(status: str, last_error: Optional[str]) -> bool:
    """True for REVIEW_REQUIRED records the ledger rejected without storing."""
    return (
        status == SaleStatus.REVIEW_REQUIRED.value
        and error_code(last_error) in settings.local_only_error_codes
    )


async def check_offline_sales_status(
    session: SessionContext,
    store: LocalSaleStore,
    client: SalesApiClient,
    seller_id: Optional[int] = None,
) -> StatusCheckResult:
    """Poll the server and repair local drift. Reviewers may name another seller."""
    target = session.scope_seller(seller_id)
    result = StatusCheckResult()

    with sync_cycle("reconcile"):
        local = store.list_for_seller(session, target, RECONCILABLE_STATUSES)
        if not local:
            return result

        response = await client.get_offline_status(target if target != session.seller_id else None)
        server_by_uuid = {sale.uuid: sale for sale in response.sales if sale.uuid}
        epsilon = settings.currency_epsilon

        for row in local:
            server_sale = server_by_uuid.get(row.id)

            if server_sale is None:
                if never_reached_ledger(row.status, row.last_error):
                    logger.debug(f"Offline sale {row.id} was rejected before it reached the ledger, kept")
                    continue
                if store.delete(target, row.id):
                    result.removed += 1
                    logger.info(f"Offline sale {row.id} ({row.status}) no longer on server, removed")
                continue

            try:
                if server_sale.status.value != row.status:
                    store.apply_server_copy(target, row.id, server_sale, include_status=True)
                    result.updated += 1
                    logger.info(f"Offline sale {row.id}: {row.status} -> {server_sale.status.value}")
                elif totals.totals_differ(row.grand_total, server_sale.grand_total, epsilon):
                    store.apply_server_copy(target, row.id, server_sale, include_status=False)
                    result.updated += 1
                    logger.info(
                        f"Offline sale {row.id}: total {row.grand_total} -> {server_sale.grand_total}"
                    )
            except InvalidTransitionError as e:
                logger.warning(f"Offline sale {row.id} not reconciled: {e}")
            except ValueError as e:
                logger.warning(f"Server copy of offline sale {row.id} is inconsistent, skipped: {e}")

    if result.updated or result.removed:
        logger.info(f"Reconciled seller {target}: updated={result.updated} removed={result.removed}")
    return result

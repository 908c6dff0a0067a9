"""
Sync push protocol.

Submits every PENDING_SYNC / REVIEW_REQUIRED record of the current seller
as one batch and applies the per-record outcomes back to the local store.

Transport and authentication failures on the batch request abort the whole
call before any record is touched. Once the batch is accepted its outcomes
are always applied: a 401 on a follow-up lookup only skips the remaining
lookups and is raised after the outcomes are stored. Record-level outcomes
never raise. Each one is applied on its own, and a failure applying one
never affects another.
"""

import logging
from typing import List

from pydantic import ValidationError

from salesync.core.auth import SessionContext
from salesync.core.exceptions import AuthenticationError, SyncError
from salesync.core.observability import sync_cycle
from salesync.models.offline_sale import SaleStatus
from salesync.schemas.sales import OfflineSaleRecord, SyncResult, SyncResultEntry
from salesync.services.api_client import SalesApiClient
from salesync.services.dedup_guard import run_dedup_guard
from salesync.services.local_store import LocalSaleStore

logger = logging.getLogger(__name__)


def format_error(entry: SyncResultEntry) -> str:
    """lastError as stored locally: "<CODE>: <message>"."""
    if entry.error and entry.message:
        return f"{entry.error}: {entry.message}"
    return entry.error or entry.message or "REVIEW_REQUIRED"


async def _apply_confirmed(
    seller_id: int,
    entry: SyncResultEntry,
    store: LocalSaleStore,
    client: SalesApiClient,
    fetch_canonical: bool = True,
) -> None:
    canonical = None
    if fetch_canonical:
        try:
            canonical = await client.find_sale_by_folio(entry.folio)
        except AuthenticationError:
            # The server has already committed this sale
            store.mark_confirmed(seller_id, entry.id, entry.folio)
            raise
        except SyncError as e:
            logger.warning(f"Could not fetch canonical sale {entry.folio} for {entry.id}, confirming with folio only: {e}")

    if canonical is not None:
        try:
            store.mark_confirmed(seller_id, entry.id, entry.folio, canonical=canonical)
            return
        except ValueError as e:
            # Server lines that break qtyBase/lineTotal arithmetic
            logger.warning(f"Canonical sale {entry.folio} has inconsistent lines ({e}), confirming with folio only")
    store.mark_confirmed(seller_id, entry.id, entry.folio)


async def push_pending_sales(
    session: SessionContext,
    store: LocalSaleStore,
    client: SalesApiClient,
    run_dedup: bool = True,
) -> SyncResult:
    """Push the seller's pending records and apply the results."""
    session.require_valid()
    seller_id = session.seller_id

    with sync_cycle("push"):
        records: List[OfflineSaleRecord] = []
        for row in store.list_syncable(seller_id):
            try:
                records.append(OfflineSaleRecord.from_row(row))
            except ValidationError as e:
                logger.error(f"Offline sale {row.id} is unreadable locally, not submitting: {e}")

        if not records:
            logger.debug(f"No offline sales to sync for seller {seller_id}")
            return SyncResult()

        logger.info(f"Syncing {len(records)} offline sale(s) for seller {seller_id}")
        result = await client.push_sales(records)

        submitted = {record.id for record in records}
        for entry in result.results:
            if entry.id not in submitted:
                logger.warning(f"Server reported outcome for unknown sale {entry.id}, ignoring")
                continue
            try:
                if entry.status == SaleStatus.CONFIRMED:
                    await _apply_confirmed(
                        seller_id, entry, store, client, fetch_canonical=session.is_authenticated
                    )
                    logger.info(f"Offline sale {entry.id} confirmed with folio {entry.folio}")
                else:
                    store.mark_review_required(seller_id, entry.id, format_error(entry), entry.shortages)
                    logger.warning(f"Offline sale {entry.id} requires review: {format_error(entry)}")
            except AuthenticationError as e:
                logger.error(f"Session rejected while confirming {entry.id}, applying remaining outcomes without lookups: {e}")
            except SyncError as e:
                logger.warning(f"Could not apply outcome {entry.status.value} to {entry.id}: {e}")

        logger.info(
            f"Sync finished for seller {seller_id}: synced={result.synced} "
            f"review_required={result.review_required}"
        )

    if not session.is_authenticated:
        raise AuthenticationError("Session rejected by server while applying sync results. Please log in again.")

    if run_dedup:
        try:
            await run_dedup_guard(session, store, client)
        except Exception as e:
            logger.warning(f"Dedup pass after sync failed (ignored): {e}", exc_info=True)

    return result

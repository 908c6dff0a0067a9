"""
Offline sync engine.

Ties the protocols together behind the surface the UI layer observes:
pending_count, is_syncing, sync_now() and check_status().

All protocol runs share one asyncio.Lock, so push, poll and dedup never
interleave their read-modify-writes. sync_now() is single-flight: a call
made while a cycle is running returns None without touching anything.
"""

import asyncio
import logging
from typing import Optional

from salesync.core.auth import SessionContext
from salesync.core.config import settings
from salesync.core.exceptions import AuthenticationError, SyncError
from salesync.core.observability import sync_cycle
from salesync.models.offline_sale import OfflineSale
from salesync.schemas.sales import (
    DedupResult,
    OfflineDiagnosis,
    SaleDraft,
    StatusCheckResult,
    SyncCycleReport,
)
from salesync.services.api_client import SalesApiClient
from salesync.services.conflict_resolution import ConflictResolutionService
from salesync.services.dedup_guard import run_dedup_guard
from salesync.services.local_store import LocalSaleStore
from salesync.services.reconciliation import check_offline_sales_status
from salesync.services.sync_push import push_pending_sales

logger = logging.getLogger(__name__)


class OfflineSyncEngine:
    """One engine per authenticated session."""

    def __init__(
        self,
        session: SessionContext,
        store: LocalSaleStore,
        client: Optional[SalesApiClient] = None,
    ):
        self.session = session
        self.store = store
        self.client = client or SalesApiClient(session)
        self.conflicts = ConflictResolutionService(self.client)
        self._lock = asyncio.Lock()
        self._syncing = False

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def pending_count(self) -> int:
        if self.session.seller_id is None:
            return 0
        return self.store.pending_count(self.session.seller_id)

    # ==========================================================================
    # Capture and local operations
    # ==========================================================================

    def record_sale(self, draft: SaleDraft) -> OfflineSale:
        """Store a completed sale for later sync."""
        return self.store.save_offline_sale(self.session.scope_seller(), draft)

    def diagnose(self) -> OfflineDiagnosis:
        return self.store.diagnose(self.session.scope_seller())

    # ==========================================================================
    # Protocol runs
    # ==========================================================================

    async def sync_now(self) -> Optional[SyncCycleReport]:
        """Push, then reconcile. Returns None if a cycle is already running."""
        if self._syncing:
            logger.debug("Sync already in progress, skipping")
            return None

        self._syncing = True
        try:
            async with self._lock:
                with sync_cycle("sync_now"):
                    push = await push_pending_sales(self.session, self.store, self.client)
                    status = await check_offline_sales_status(self.session, self.store, self.client)
                    return SyncCycleReport(
                        push=push,
                        status=status,
                        pending_count=self.pending_count,
                    )
        finally:
            self._syncing = False

    async def check_status(self, seller_id: Optional[int] = None) -> StatusCheckResult:
        """Reconciliation poll, serialized with any running cycle."""
        async with self._lock:
            return await check_offline_sales_status(self.session, self.store, self.client, seller_id)

    async def run_dedup(self) -> DedupResult:
        async with self._lock:
            return await run_dedup_guard(self.session, self.store, self.client)

    async def retry_sale(self, sale_id: str) -> Optional[SyncCycleReport]:
        """Put a REVIEW_REQUIRED sale back in the queue and sync."""
        seller_id = self.session.scope_seller()
        async with self._lock:
            self.store.requeue(seller_id, sale_id)
        logger.info(f"Offline sale {sale_id} requeued by seller {seller_id}")
        return await self.sync_now()

    # ==========================================================================
    # Triggers
    # ==========================================================================

    async def on_connectivity_restored(self) -> Optional[SyncCycleReport]:
        logger.info("Connectivity restored, syncing")
        return await self.sync_now()

    async def run_periodic(self, stop_event: asyncio.Event, interval: Optional[float] = None) -> None:
        """Sync every `interval` seconds until stop_event is set or the session dies."""
        interval = interval if interval is not None else settings.sync_poll_interval_seconds
        logger.info(f"Periodic sync started (every {interval}s)")
        while not stop_event.is_set():
            try:
                await self.sync_now()
            except AuthenticationError as e:
                logger.error(f"Periodic sync stopped: {e}")
                break
            except SyncError as e:
                logger.warning(f"Periodic sync failed, will retry next interval: {e}")
            except Exception as e:
                logger.error(f"Periodic sync error, will retry next interval: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Periodic sync stopped")

"""
Local Sale Store.

Durable per-seller partition of offline sales. Every query and mutation
filters by seller id; every mutation is a single read-modify-write in its
own transaction, so a failure on one record never touches another.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from salesync.core.auth import SessionContext
from salesync.core.config import settings
from salesync.core.exceptions import PermissionDeniedError, RecordNotFoundError
from salesync.db.base import LocalBase
from salesync.db.session import ensure_sqlite_dir, make_engine, make_session_factory
from salesync.models.offline_sale import OfflineSale, SaleStatus
from salesync.schemas.sales import (
    LineItem,
    OfflineDiagnosis,
    SaleDraft,
    ServerSale,
    StockShortage,
)
from salesync.services import totals
from salesync.services.sale_state import SYNCABLE_STATUSES, assert_transition

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=7)
HIGH_RETRY_THRESHOLD = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _dump_items(items: Iterable[LineItem]) -> List[dict]:
    return [item.to_wire() for item in items]


class LocalSaleStore:
    """Seller-scoped access to the offline_sales table."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    # ==========================================================================
    # Reads
    # ==========================================================================

    def get(self, seller_id: int, sale_id: str) -> Optional[OfflineSale]:
        with self._session_factory() as db:
            return self._scoped(db, seller_id, sale_id)

    def get_owned(self, seller_id: int, sale_id: str) -> OfflineSale:
        """Like get(), but tells "someone else's" apart from "does not exist"."""
        with self._session_factory() as db:
            row = db.get(OfflineSale, sale_id)
            if row is None:
                raise RecordNotFoundError(sale_id)
            if row.seller_id != seller_id:
                raise PermissionDeniedError(
                    f"Offline sale {sale_id} belongs to another seller",
                    sale_id=sale_id,
                    owner_id=row.seller_id,
                )
            return row

    def list_by_status(self, seller_id: int, *statuses: SaleStatus) -> List[OfflineSale]:
        with self._session_factory() as db:
            stmt = (
                select(OfflineSale)
                .where(OfflineSale.seller_id == seller_id)
                .order_by(OfflineSale.created_at, OfflineSale.id)
            )
            if statuses:
                stmt = stmt.where(OfflineSale.status.in_([SaleStatus(s).value for s in statuses]))
            return list(db.scalars(stmt).all())

    def list_syncable(self, seller_id: int) -> List[OfflineSale]:
        return self.list_by_status(seller_id, *SYNCABLE_STATUSES)

    def list_for_seller(
        self,
        session: SessionContext,
        seller_id: Optional[int] = None,
        statuses: Sequence[SaleStatus] = (),
    ) -> List[OfflineSale]:
        """Read a seller partition on behalf of the session.

        Sellers only ever get their own records; reviewers may name any seller.
        Raises PermissionDeniedError when a seller names someone else.
        """
        return self.list_by_status(session.scope_seller(seller_id), *statuses)

    def pending_count(self, seller_id: int) -> int:
        """Records still needing attention: PENDING_SYNC plus REVIEW_REQUIRED."""
        with self._session_factory() as db:
            stmt = (
                select(func.count())
                .select_from(OfflineSale)
                .where(
                    OfflineSale.seller_id == seller_id,
                    OfflineSale.status.in_([s.value for s in SYNCABLE_STATUSES]),
                )
            )
            return db.scalar(stmt) or 0

    def diagnose(self, seller_id: int) -> OfflineDiagnosis:
        rows = self.list_by_status(seller_id)
        cutoff = _utcnow() - STALE_AFTER
        by_status = Counter(row.status for row in rows)
        high_retry = [row.id for row in rows if row.retry_count > HIGH_RETRY_THRESHOLD]
        diagnosis = OfflineDiagnosis(
            seller_id=seller_id,
            total=len(rows),
            by_status={status.value: by_status.get(status.value, 0) for status in SaleStatus},
            older_than_7_days=sum(1 for row in rows if _as_utc(row.created_at) < cutoff),
            high_retry=len(high_retry),
            retry_ids=high_retry,
        )
        logger.info(
            f"Offline sales for seller {seller_id}: total={diagnosis.total} "
            f"by_status={diagnosis.by_status} stale={diagnosis.older_than_7_days} "
            f"high_retry={diagnosis.high_retry}"
        )
        return diagnosis

    # ==========================================================================
    # Capture
    # ==========================================================================

    def save_offline_sale(self, seller_id: int, draft: SaleDraft) -> OfflineSale:
        """Store a completed sale as PENDING_SYNC.

        Ids are unique across the store: an id already owned by another
        seller is handed over to this one instead of creating a second row,
        and an id this seller already has is returned unchanged.
        """
        for item in draft.items:
            totals.check_line(
                item.qty, item.unit_factor, item.qty_base,
                item.unit_price, item.discount, item.line_total,
                line_id=item.id,
            )
        subtotal, tax_total, grand_total = totals.compute_sale_totals(
            (item.line_total, item.tax_rate) for item in draft.items
        )

        with self._session_factory() as db:
            existing = db.get(OfflineSale, draft.id)
            if existing is not None:
                if existing.seller_id != seller_id:
                    logger.warning(
                        f"Offline sale {draft.id} belonged to seller {existing.seller_id}, "
                        f"reassigning to seller {seller_id}"
                    )
                    existing.seller_id = seller_id
                    db.commit()
                return existing

            row = OfflineSale(
                id=draft.id,
                status=SaleStatus.PENDING_SYNC.value,
                seller_id=seller_id,
                customer_id=draft.customer_id,
                customer_name=draft.customer_name,
                warehouse_id=draft.warehouse_id,
                line_items=_dump_items(draft.items),
                subtotal=subtotal,
                tax_total=tax_total,
                grand_total=grand_total,
                notes=draft.notes,
                retry_count=0,
                created_at=_as_utc(draft.created_at),
            )
            db.add(row)
            db.commit()
            logger.info(f"Saved offline sale {row.id} for seller {seller_id} (total {grand_total})")
            return row

    # ==========================================================================
    # Mutations (one record, one transaction)
    # ==========================================================================

    def mark_confirmed(
        self,
        seller_id: int,
        sale_id: str,
        folio: str,
        canonical: Optional[ServerSale] = None,
    ) -> Optional[OfflineSale]:
        """CONFIRMED with the server's folio; totals and lines too when the canonical copy is known."""
        with self._session_factory() as db:
            row = self._scoped(db, seller_id, sale_id)
            if row is None:
                logger.warning(f"Cannot confirm offline sale {sale_id}: not in seller {seller_id} partition")
                return None
            row.status = assert_transition(row.status, SaleStatus.CONFIRMED).value
            row.folio = folio
            row.last_error = None
            row.synced_at = _utcnow()
            if canonical is not None:
                self._copy_server_totals(row, canonical)
            db.commit()
            return row

    def mark_review_required(
        self,
        seller_id: int,
        sale_id: str,
        error: str,
        shortages: Sequence[StockShortage] = (),
    ) -> Optional[OfflineSale]:
        with self._session_factory() as db:
            row = self._scoped(db, seller_id, sale_id)
            if row is None:
                logger.warning(f"Cannot flag offline sale {sale_id}: not in seller {seller_id} partition")
                return None
            row.status = assert_transition(row.status, SaleStatus.REVIEW_REQUIRED).value
            row.last_error = error
            row.retry_count = (row.retry_count or 0) + 1
            if shortages:
                row.line_items = self._apply_shortages(row.line_items, shortages)
            db.commit()
            return row

    def requeue(self, seller_id: int, sale_id: str) -> OfflineSale:
        """REVIEW_REQUIRED -> PENDING_SYNC for an explicit retry."""
        with self._session_factory() as db:
            row = db.get(OfflineSale, sale_id)
            if row is None:
                raise RecordNotFoundError(sale_id)
            if row.seller_id != seller_id:
                raise PermissionDeniedError(
                    f"Offline sale {sale_id} belongs to another seller",
                    sale_id=sale_id,
                    owner_id=row.seller_id,
                )
            row.status = assert_transition(row.status, SaleStatus.PENDING_SYNC).value
            row.last_error = None
            db.commit()
            return row

    def apply_server_copy(
        self,
        seller_id: int,
        sale_id: str,
        server_sale: ServerSale,
        include_status: bool,
    ) -> Optional[OfflineSale]:
        """Overwrite totals and lines with the server's copy, and status/folio when asked."""
        with self._session_factory() as db:
            row = self._scoped(db, seller_id, sale_id)
            if row is None:
                return None
            if include_status:
                row.status = assert_transition(row.status, server_sale.status).value
                row.folio = server_sale.folio
                row.last_error = None
                if server_sale.status == SaleStatus.CONFIRMED:
                    row.synced_at = _utcnow()
            self._copy_server_totals(row, server_sale)
            db.commit()
            return row

    def clear_error(self, seller_id: int, sale_id: str) -> Optional[OfflineSale]:
        with self._session_factory() as db:
            row = self._scoped(db, seller_id, sale_id)
            if row is None:
                return None
            row.last_error = None
            db.commit()
            return row

    def delete(self, seller_id: int, sale_id: str) -> bool:
        """Remove a record. Only reconciliation calls this."""
        with self._session_factory() as db:
            row = self._scoped(db, seller_id, sale_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @staticmethod
    def _scoped(db: Session, seller_id: int, sale_id: str) -> Optional[OfflineSale]:
        stmt = select(OfflineSale).where(
            OfflineSale.id == sale_id,
            OfflineSale.seller_id == seller_id,
        )
        return db.scalars(stmt).first()

    @staticmethod
    def _copy_server_totals(row: OfflineSale, server_sale: ServerSale) -> None:
        row.subtotal = totals.money(server_sale.subtotal)
        row.tax_total = totals.money(server_sale.tax_total)
        row.grand_total = totals.money(server_sale.grand_total)
        row.line_items = _dump_items(server_sale.to_line_items())

    @staticmethod
    def _apply_shortages(line_items: List[dict], shortages: Sequence[StockShortage]) -> List[dict]:
        by_line: Dict[str, StockShortage] = {s.line_id: s for s in shortages if s.line_id}
        by_product: Dict[int, StockShortage] = {s.product_id: s for s in shortages}
        updated = []
        for raw in line_items:
            item = LineItem.model_validate(raw)
            shortage = by_line.get(item.id) or by_product.get(item.product_id)
            if shortage is not None:
                item = item.model_copy(update={
                    "available_stock_hint": shortage.available_stock,
                    "stock_shortage": shortage.stock_shortage,
                })
            updated.append(item.to_wire())
        return updated


def create_local_store(database_url: Optional[str] = None) -> LocalSaleStore:
    """Open (and create if needed) the Local Sale Store database."""
    url = database_url or settings.local_database_url
    ensure_sqlite_dir(url)
    engine = make_engine(url)
    LocalBase.metadata.create_all(bind=engine)
    return LocalSaleStore(make_session_factory(engine))

"""Sales ledger service - the authoritative side of offline sync.

Flow for POST /sales/sync, per record and in its own transaction:
1. Validate the record (INVALID_DATA on failure)
2. Idempotency: a known uuid returns the stored status and folio
3. Recompute line totals and tax from the ledger's own product data
4. Check stock in the sale's warehouse:
   - short:  store as REVIEW_REQUIRED (no folio, no deduction) and report
             per-line shortages
   - enough: deduct stock, issue a daily folio, store as CONFIRMED
5. Unique-key race on uuid -> DUPLICATE_SALE

Reviewers later resolve REVIEW_REQUIRED sales with EDIT_QUANTITIES (which
re-runs the stock check) or CANCEL; both leave an audit log entry.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from salesync.core.config import settings
from salesync.core.exceptions import ConflictNotFoundError, InsufficientStockError
from salesync.models.ledger import (
    LedgerAuditLog,
    LedgerProduct,
    LedgerSale,
    LedgerSaleItem,
    LedgerStock,
    LedgerStockMovement,
    MovementReason,
)
from salesync.models.offline_sale import SaleStatus
from salesync.schemas.sales import (
    ConflictAction,
    ConflictItem,
    ConflictResolutionAction,
    ConflictSale,
    OfflineSaleRecord,
    ServerSale,
    ServerSaleItem,
    StockShortage,
    SyncResult,
    SyncResultEntry,
)
from salesync.services import totals

logger = logging.getLogger(__name__)

MAX_FOLIO_ATTEMPTS = 10


class ProductNotFoundError(Exception):
    """Raised when a sale references a product the ledger does not know."""

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


def serialize_sale(sale: LedgerSale) -> ServerSale:
    return ServerSale(
        id=sale.id,
        uuid=sale.uuid,
        folio=sale.folio,
        status=SaleStatus(sale.status),
        seller_id=sale.seller_id,
        customer_id=sale.customer_id,
        warehouse_id=sale.warehouse_id,
        subtotal=sale.subtotal,
        tax_total=sale.tax_total,
        grand_total=sale.grand_total,
        items=[_serialize_item(item) for item in sale.items],
        last_error=sale.last_error,
        notes=sale.notes,
        created_at=sale.sold_at,
    )


def _serialize_item(item: LedgerSaleItem) -> ServerSaleItem:
    return ServerSaleItem(
        id=item.id,
        line_id=item.client_line_id,
        product_id=item.product_id,
        product_sku=item.product.sku if item.product else None,
        product_name=item.product.name if item.product else None,
        tax_rate=item.product.tax_rate if item.product else Decimal("0"),
        unit_code=item.unit_code,
        unit_factor=item.unit_factor,
        qty=item.qty,
        qty_base=item.qty_base,
        unit_price=item.unit_price,
        discount=item.discount,
        line_total=item.line_total,
    )


class SalesLedgerService:
    """Business rules of the reference ledger."""

    def __init__(self, db: Session):
        self.db = db

    # ===== SYNC =====

    def sync_offline_sales(self, seller_id: int, raw_sales: Sequence[Dict[str, Any]]) -> SyncResult:
        """Process a batch; every record gets exactly one outcome."""
        logger.info(f"Syncing {len(raw_sales)} offline sale(s) from seller {seller_id}")
        results: List[SyncResultEntry] = []

        for raw in raw_sales:
            sale_id = str(raw.get("id", "")) if isinstance(raw, dict) else ""
            try:
                record = OfflineSaleRecord.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"Offline sale {sale_id or '?'} rejected: invalid data")
                results.append(self._review(sale_id, "INVALID_DATA", self._describe(e)))
                continue

            try:
                results.append(self._process_record(seller_id, record))
            except ProductNotFoundError as e:
                self.db.rollback()
                results.append(self._review(record.id, "NOT_FOUND", str(e)))
            except IntegrityError:
                self.db.rollback()
                logger.warning(f"Offline sale {record.id} hit a unique constraint, reporting duplicate")
                results.append(self._review(
                    record.id, settings.duplicate_error_code, "This sale was already processed"
                ))
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to sync offline sale {record.id}: {e}", exc_info=True)
                results.append(self._review(record.id, "SYSTEM_ERROR", f"{type(e).__name__}: {str(e)[:100]}"))

        synced = sum(1 for r in results if r.status == SaleStatus.CONFIRMED)
        logger.info(f"Sync from seller {seller_id}: synced={synced} review_required={len(results) - synced}")
        return SyncResult(synced=synced, review_required=len(results) - synced, results=results)

    def _process_record(self, seller_id: int, record: OfflineSaleRecord) -> SyncResultEntry:
        existing = self.db.scalar(select(LedgerSale).where(LedgerSale.uuid == record.id))
        if existing is not None:
            return self._existing_outcome(existing)

        products = self._load_products(item.product_id for item in record.line_items)
        sale = LedgerSale(
            uuid=record.id,
            status=SaleStatus.PENDING_SYNC.value,
            customer_id=record.customer_id,
            warehouse_id=record.warehouse_id,
            seller_id=seller_id,
            notes=record.notes,
            sold_at=record.created_at,
        )
        for line in record.line_items:
            sale.items.append(LedgerSaleItem(
                client_line_id=line.id,
                product_id=line.product_id,
                unit_code=line.unit_code,
                unit_factor=line.unit_factor,
                qty=line.qty,
                qty_base=totals.compute_qty_base(line.qty, line.unit_factor),
                unit_price=line.unit_price,
                discount=line.discount,
                line_total=totals.compute_line_total(line.qty, line.unit_price, line.discount),
            ))
        self._recompute_totals(sale, products)

        shortages = self._find_shortages(sale)
        if shortages:
            sale.status = SaleStatus.REVIEW_REQUIRED.value
            sale.last_error = "INSUFFICIENT_STOCK"
            self.db.add(sale)
            self.db.commit()
            logger.warning(f"Offline sale {record.id} sent to review: {len(shortages)} line(s) short")
            return SyncResultEntry(
                id=record.id,
                status=SaleStatus.REVIEW_REQUIRED,
                error="INSUFFICIENT_STOCK",
                message="Not enough stock available to complete the sale",
                shortages=shortages,
            )

        self.db.add(sale)
        self.db.flush()
        self._confirm(sale, MovementReason.SALE, user_id=seller_id)
        self.db.commit()
        logger.info(f"Offline sale {record.id} confirmed as {sale.folio}")
        return SyncResultEntry(
            id=record.id,
            status=SaleStatus.CONFIRMED,
            folio=sale.folio,
            message="Sale synchronized",
        )

    def _existing_outcome(self, sale: LedgerSale) -> SyncResultEntry:
        logger.info(f"Offline sale {sale.uuid} already known as {sale.status}, skipping")
        if sale.status == SaleStatus.CONFIRMED.value:
            return SyncResultEntry(
                id=sale.uuid, status=SaleStatus.CONFIRMED, folio=sale.folio,
                message="Sale already synchronized",
            )
        if sale.status == SaleStatus.CANCELLED.value:
            return self._review(sale.uuid, "CANCELLED", "Sale was cancelled by a reviewer")
        return self._review(sale.uuid, sale.last_error or "REVIEW_REQUIRED", "Sale is waiting for review")

    @staticmethod
    def _review(sale_id: str, code: str, message: str) -> SyncResultEntry:
        return SyncResultEntry(id=sale_id, status=SaleStatus.REVIEW_REQUIRED, error=code, message=message)

    @staticmethod
    def _describe(error: ValidationError) -> str:
        parts = []
        for err in error.errors(include_url=False)[:3]:
            loc = ".".join(str(p) for p in err.get("loc", ()))
            parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
        return "; ".join(parts)

    # ===== STOCK, TOTALS, FOLIO =====

    def _load_products(self, product_ids) -> Dict[int, LedgerProduct]:
        wanted = set(product_ids)
        products = {
            p.id: p for p in self.db.scalars(select(LedgerProduct).where(LedgerProduct.id.in_(wanted)))
        }
        for product_id in sorted(wanted):
            if product_id not in products or not products[product_id].active:
                raise ProductNotFoundError(product_id)
        return products

    @staticmethod
    def _recompute_totals(sale: LedgerSale, products: Dict[int, LedgerProduct]) -> None:
        sale.subtotal, sale.tax_total, sale.grand_total = totals.compute_sale_totals(
            (item.line_total, products[item.product_id].tax_rate) for item in sale.items
        )

    def _available(self, warehouse_id: int, product_id: int) -> Decimal:
        stock = self.db.scalar(
            select(LedgerStock).where(
                LedgerStock.warehouse_id == warehouse_id,
                LedgerStock.product_id == product_id,
            )
        )
        return totals.quantity(stock.qty) if stock else Decimal("0")

    def _required_by_product(self, sale: LedgerSale) -> Dict[int, Decimal]:
        required: Dict[int, Decimal] = {}
        for item in sale.items:
            required[item.product_id] = required.get(item.product_id, Decimal("0")) + totals.quantity(item.qty_base)
        return required

    def _find_shortages(self, sale: LedgerSale) -> List[StockShortage]:
        shortages = []
        for product_id, required in self._required_by_product(sale).items():
            available = self._available(sale.warehouse_id, product_id)
            if required <= available:
                continue
            for item in sale.items:
                if item.product_id == product_id:
                    shortages.append(StockShortage(
                        line_id=item.client_line_id,
                        product_id=product_id,
                        required_stock=required,
                        available_stock=available,
                        stock_shortage=required - available,
                    ))
        return shortages

    def _confirm(self, sale: LedgerSale, reason: MovementReason, user_id: Optional[int]) -> None:
        """Deduct stock, issue a folio and mark CONFIRMED. Caller commits."""
        for product_id, required in self._required_by_product(sale).items():
            if required == 0:
                continue
            stock = self.db.scalar(
                select(LedgerStock).where(
                    LedgerStock.warehouse_id == sale.warehouse_id,
                    LedgerStock.product_id == product_id,
                )
            )
            stock.qty = totals.quantity(stock.qty) - required
            self.db.add(LedgerStockMovement(
                warehouse_id=sale.warehouse_id,
                product_id=product_id,
                sale_id=sale.id,
                reason=reason.value,
                qty_delta=-required,
                user_id=user_id,
            ))
        sale.folio = self._generate_folio()
        sale.status = SaleStatus.CONFIRMED.value
        sale.last_error = None
        sale.confirmed_at = datetime.now(timezone.utc)

    def _generate_folio(self) -> str:
        """Daily sequence: YYYYMMDD-0001, YYYYMMDD-0002, ..."""
        prefix = datetime.now(timezone.utc).strftime("%Y%m%d")
        count = self.db.scalar(
            select(func.count()).select_from(LedgerSale).where(LedgerSale.folio.like(f"{prefix}-%"))
        ) or 0
        for attempt in range(MAX_FOLIO_ATTEMPTS):
            folio = f"{prefix}-{count + 1 + attempt:04d}"
            if self.db.scalar(select(LedgerSale.id).where(LedgerSale.folio == folio)) is None:
                return folio
            logger.warning(f"Folio {folio} already taken, trying next number")
        return f"{prefix}-{str(int(time.time() * 1000))[-6:]}"

    # ===== QUERIES =====

    def _sale_query(self):
        return select(LedgerSale).options(
            selectinload(LedgerSale.items).selectinload(LedgerSaleItem.product)
        )

    def get_by_uuid(self, sale_uuid: str) -> Optional[LedgerSale]:
        return self.db.scalar(self._sale_query().where(LedgerSale.uuid == sale_uuid))

    def list_sales(
        self,
        folio: Optional[str] = None,
        seller_id: Optional[int] = None,
        limit: int = 50,
    ) -> Tuple[List[LedgerSale], int]:
        stmt = self._sale_query()
        count_stmt = select(func.count()).select_from(LedgerSale)
        if folio:
            stmt = stmt.where(LedgerSale.folio == folio)
            count_stmt = count_stmt.where(LedgerSale.folio == folio)
        if seller_id is not None:
            stmt = stmt.where(LedgerSale.seller_id == seller_id)
            count_stmt = count_stmt.where(LedgerSale.seller_id == seller_id)
        sales = list(self.db.scalars(stmt.order_by(LedgerSale.id.desc()).limit(limit)).all())
        return sales, self.db.scalar(count_stmt) or 0

    def offline_status(self, seller_id: int) -> List[LedgerSale]:
        """Offline-origin sales still under review, or confirmed recently."""
        since = datetime.now(timezone.utc) - timedelta(hours=settings.offline_status_window_hours)
        stmt = self._sale_query().where(
            LedgerSale.seller_id == seller_id,
            LedgerSale.uuid.is_not(None),
            (LedgerSale.status == SaleStatus.REVIEW_REQUIRED.value)
            | (
                (LedgerSale.status == SaleStatus.CONFIRMED.value)
                & (LedgerSale.confirmed_at >= since)
            ),
        ).order_by(LedgerSale.id)
        return list(self.db.scalars(stmt).all())

    # ===== CONFLICTS =====

    def list_conflicts(self) -> List[ConflictSale]:
        stmt = self._sale_query().where(
            LedgerSale.status == SaleStatus.REVIEW_REQUIRED.value
        ).order_by(LedgerSale.sold_at)
        conflicts = []
        for sale in self.db.scalars(stmt).all():
            base = serialize_sale(sale)
            items = []
            for item, wire in zip(sale.items, base.items):
                available = self._available(sale.warehouse_id, item.product_id)
                required = totals.quantity(item.qty_base)
                shortage = max(Decimal("0"), required - available)
                items.append(ConflictItem(
                    **wire.model_dump(),
                    required_stock=required,
                    available_stock=available,
                    stock_shortage=shortage if shortage > 0 else None,
                ))
            conflicts.append(ConflictSale(**base.model_dump(exclude={"items"}), items=items))
        return conflicts

    def resolve_conflict(self, action: ConflictResolutionAction, user_id: int) -> LedgerSale:
        sale = self.db.scalar(self._sale_query().where(LedgerSale.id == action.sale_id))
        if sale is None or sale.status != SaleStatus.REVIEW_REQUIRED.value:
            raise ConflictNotFoundError(action.sale_id)

        if action.action == ConflictAction.CANCEL:
            return self._cancel(sale, action, user_id)
        return self._edit_quantities(sale, action, user_id)

    def _cancel(self, sale: LedgerSale, action: ConflictResolutionAction, user_id: int) -> LedgerSale:
        sale.status = SaleStatus.CANCELLED.value
        if action.notes:
            sale.notes = action.notes
        self.db.add(LedgerAuditLog(
            user_id=user_id,
            action="CONFLICT_CANCELLED",
            entity="sale",
            entity_id=sale.id,
            meta={"notes": action.notes},
        ))
        self.db.commit()
        logger.info(f"Sale {sale.id} cancelled by reviewer {user_id}")
        return sale

    def _edit_quantities(self, sale: LedgerSale, action: ConflictResolutionAction, user_id: int) -> LedgerSale:
        items_by_id = {item.id: item for item in sale.items}
        changes = []
        try:
            for edit in action.items:
                item = items_by_id.get(edit.id)
                if item is None:
                    raise ValueError(f"Sale {sale.id} has no item {edit.id}")
                old_qty = item.qty
                if edit.new_qty is not None:
                    new_qty = totals.to_decimal(edit.new_qty)
                else:
                    new_qty = totals.to_decimal(edit.new_qty_base) / totals.to_decimal(item.unit_factor)
                new_qty_base = totals.compute_qty_base(new_qty, item.unit_factor)
                if edit.new_qty_base is not None and totals.quantity(edit.new_qty_base) != new_qty_base:
                    raise ValueError(
                        f"Item {edit.id}: newQtyBase {edit.new_qty_base} != newQty x unitFactor ({new_qty_base})"
                    )
                item.qty = totals.quantity(new_qty)
                item.qty_base = new_qty_base
                item.line_total = totals.compute_line_total(item.qty, item.unit_price, item.discount)
                changes.append({"itemId": item.id, "oldQty": str(old_qty), "newQty": str(item.qty)})

            products = self._load_products(item.product_id for item in sale.items)
            self._recompute_totals(sale, products)

            shortages = self._find_shortages(sale)
            if shortages:
                raise InsufficientStockError([
                    {
                        "product_id": s.product_id,
                        "required_stock": s.required_stock,
                        "available_stock": s.available_stock,
                        "stock_shortage": s.stock_shortage,
                    }
                    for s in shortages
                ])

            self._confirm(sale, MovementReason.CONFLICT_RESOLUTION, user_id=user_id)
            if action.notes:
                sale.notes = action.notes
            self.db.add(LedgerAuditLog(
                user_id=user_id,
                action="CONFLICT_RESOLVED",
                entity="sale",
                entity_id=sale.id,
                meta={"changes": changes, "notes": action.notes},
            ))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Sale {sale.id} confirmed as {sale.folio} after quantity edit by reviewer {user_id}")
        return sale

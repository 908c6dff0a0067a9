"""Wire schemas for offline sale synchronization.

Everything that crosses the HTTP boundary is validated here. Field names
are snake_case in Python and camelCase on the wire; money and quantities
are Decimal (serialized as strings).
"""

from __future__ import annotations

import enum
import uuid as uuid_lib
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from salesync.models.offline_sale import SaleStatus
from salesync.services import totals


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for wire models: camelCase aliases, snake_case accepted too."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Line items
# =============================================================================

class LineItem(CamelModel):
    """One line of an offline sale, as stored locally and pushed."""

    id: str = Field(default_factory=lambda: uuid_lib.uuid4().hex)
    product_id: int
    product_sku: Optional[str] = None
    product_name: Optional[str] = None
    unit_code: str = Field(..., min_length=1)
    unit_factor: Decimal = Field(..., gt=0)
    qty: Decimal = Field(..., ge=0)
    qty_base: Decimal
    unit_price: Decimal = Field(..., ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    line_total: Decimal
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    # Advisory only, copied from the server's shortage report
    available_stock_hint: Optional[Decimal] = None
    stock_shortage: Optional[Decimal] = None

    @model_validator(mode="after")
    def check_arithmetic(self) -> "LineItem":
        totals.check_line(
            self.qty, self.unit_factor, self.qty_base,
            self.unit_price, self.discount, self.line_total,
            line_id=self.id,
        )
        return self

    @classmethod
    def build(
        cls,
        product_id: int,
        unit_code: str,
        unit_factor: Decimal,
        qty: Decimal,
        unit_price: Decimal,
        discount: Decimal = Decimal("0"),
        tax_rate: Decimal = Decimal("0"),
        **extra: Any,
    ) -> "LineItem":
        """Create a line with qtyBase and lineTotal derived from its inputs."""
        return cls(
            product_id=product_id,
            unit_code=unit_code,
            unit_factor=totals.to_decimal(unit_factor),
            qty=totals.to_decimal(qty),
            qty_base=totals.compute_qty_base(qty, unit_factor),
            unit_price=totals.to_decimal(unit_price),
            discount=totals.to_decimal(discount),
            line_total=totals.compute_line_total(qty, unit_price, discount),
            tax_rate=totals.to_decimal(tax_rate),
            **extra,
        )


class StockShortage(CamelModel):
    """Per-line shortage reported when a sale needs more stock than is available."""

    line_id: Optional[str] = None
    product_id: int
    required_stock: Decimal
    available_stock: Decimal
    stock_shortage: Decimal


# =============================================================================
# Local records and push protocol
# =============================================================================

class SaleDraft(CamelModel):
    """A completed sale handed to the engine for offline storage."""

    id: str = Field(default_factory=lambda: str(uuid_lib.uuid4()))
    customer_id: int
    customer_name: Optional[str] = None
    warehouse_id: int
    items: List[LineItem] = Field(..., min_length=1)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class OfflineSaleRecord(CamelModel):
    """The unit of work pushed to POST /sales/sync."""

    id: str = Field(..., min_length=1)
    status: SaleStatus = SaleStatus.PENDING_SYNC
    seller_id: int
    customer_id: int
    customer_name: Optional[str] = None
    warehouse_id: int
    line_items: List[LineItem] = Field(..., min_length=1, alias="items")
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal
    notes: Optional[str] = None
    folio: Optional[str] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    created_at: datetime
    synced_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "OfflineSaleRecord":
        """Build from an OfflineSale ORM row."""
        return cls(
            id=row.id,
            status=SaleStatus(row.status),
            seller_id=row.seller_id,
            customer_id=row.customer_id,
            customer_name=row.customer_name,
            warehouse_id=row.warehouse_id,
            line_items=[LineItem.model_validate(item) for item in row.line_items],
            subtotal=row.subtotal,
            tax_total=row.tax_total,
            grand_total=row.grand_total,
            notes=row.notes,
            folio=row.folio,
            last_error=row.last_error,
            retry_count=row.retry_count,
            created_at=row.created_at,
            synced_at=row.synced_at,
        )


class SyncRequest(BaseModel):
    """Batch body. Records are kept raw so each one is validated on its own."""

    sales: List[Dict[str, Any]]


class SyncResultEntry(CamelModel):
    """Outcome of one submitted record."""

    id: str
    status: SaleStatus
    folio: Optional[str] = None
    error: Optional[str] = None
    message: str = ""
    shortages: List[StockShortage] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_outcome(self) -> "SyncResultEntry":
        if self.status not in (SaleStatus.CONFIRMED, SaleStatus.REVIEW_REQUIRED):
            raise ValueError(f"unexpected sync outcome status {self.status.value}")
        if self.status == SaleStatus.CONFIRMED and not self.folio:
            raise ValueError("CONFIRMED outcome without folio")
        return self


class SyncResult(CamelModel):
    """Per-batch response of POST /sales/sync."""

    synced: int = 0
    review_required: int = 0
    results: List[SyncResultEntry] = Field(default_factory=list)


# =============================================================================
# Server views
# =============================================================================

class ServerSaleItem(CamelModel):
    """A line of the server's canonical sale."""

    id: int
    line_id: Optional[str] = None
    product_id: int
    product_sku: Optional[str] = None
    product_name: Optional[str] = None
    tax_rate: Decimal = Decimal("0")
    unit_code: str
    unit_factor: Optional[Decimal] = None
    qty: Decimal
    qty_base: Decimal
    unit_price: Decimal
    discount: Decimal = Decimal("0")
    line_total: Decimal

    def to_line_item(self) -> LineItem:
        """Convert to the local line shape, deriving unitFactor when absent."""
        factor = self.unit_factor
        if factor is None:
            factor = totals.derive_unit_factor(self.qty, self.qty_base)
        return LineItem(
            id=self.line_id or str(self.id),
            product_id=self.product_id,
            product_sku=self.product_sku,
            product_name=self.product_name,
            unit_code=self.unit_code,
            unit_factor=factor,
            qty=self.qty,
            qty_base=self.qty_base,
            unit_price=self.unit_price,
            discount=self.discount,
            line_total=self.line_total,
            tax_rate=self.tax_rate,
        )


class ServerSale(CamelModel):
    """The server's canonical copy of a sale."""

    id: int
    uuid: Optional[str] = None
    folio: Optional[str] = None
    status: SaleStatus
    seller_id: Optional[int] = None
    customer_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    subtotal: Decimal
    tax_total: Decimal
    grand_total: Decimal
    items: List[ServerSaleItem]
    last_error: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def confirmed_has_folio(self) -> "ServerSale":
        if self.status == SaleStatus.CONFIRMED and not self.folio:
            raise ValueError("CONFIRMED sale without folio")
        return self

    def to_line_items(self) -> List[LineItem]:
        return [item.to_line_item() for item in self.items]


class OfflineStatusResponse(CamelModel):
    """GET /sales/offline/status."""

    seller_id: Optional[int] = None
    sales: List[ServerSale]
    total: int = 0


class SaleListResponse(CamelModel):
    """GET /sales?folio=&limit=."""

    sales: List[ServerSale]
    total: int = 0


# =============================================================================
# Conflict resolution
# =============================================================================

class ConflictAction(str, enum.Enum):
    EDIT_QUANTITIES = "EDIT_QUANTITIES"
    CANCEL = "CANCEL"


class EditItem(CamelModel):
    """New quantity for one line of a sale under review."""

    id: int = Field(..., gt=0)
    new_qty: Optional[Decimal] = Field(default=None, ge=0)
    new_qty_base: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def requires_quantity(self) -> "EditItem":
        if self.new_qty is None and self.new_qty_base is None:
            raise ValueError("newQty or newQtyBase is required")
        return self


class ConflictResolutionAction(CamelModel):
    """Command submitted by a reviewer against a REVIEW_REQUIRED sale."""

    action: ConflictAction
    sale_id: int = Field(..., gt=0)
    items: Optional[List[EditItem]] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def edit_requires_items(self) -> "ConflictResolutionAction":
        if self.action == ConflictAction.EDIT_QUANTITIES and not self.items:
            raise ValueError("EDIT_QUANTITIES requires at least one item")
        return self


class ConflictItem(ServerSaleItem):
    """Sale line annotated with the current stock situation."""

    required_stock: Decimal
    available_stock: Decimal
    stock_shortage: Optional[Decimal] = None


class ConflictSale(ServerSale):
    items: List[ConflictItem]


class ConflictListResponse(CamelModel):
    sales: List[ConflictSale]
    total: int = 0


class ResolutionResponse(CamelModel):
    message: str
    sale: ServerSale


# =============================================================================
# Engine reports
# =============================================================================

class StatusCheckResult(CamelModel):
    """Outcome of one reconciliation poll."""

    updated: int = 0
    removed: int = 0


class DedupResult(CamelModel):
    """Outcome of one deduplication guard pass."""

    healed: int = 0
    cleared: int = 0


class SyncCycleReport(CamelModel):
    """What one sync_now() cycle did."""

    push: SyncResult
    status: Optional[StatusCheckResult] = None
    pending_count: int = 0


class OfflineDiagnosis(CamelModel):
    """Snapshot of a seller's partition, for support and troubleshooting."""

    seller_id: int
    total: int
    by_status: Dict[str, int]
    older_than_7_days: int = 0
    high_retry: int = 0
    retry_ids: List[str] = Field(default_factory=list)

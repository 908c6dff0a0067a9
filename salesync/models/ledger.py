"""
Reference ledger models.

The authoritative server-side copy of every sale, the stock it draws on,
and an audit trail of reviewer resolutions.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import (
    JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from salesync.db.base import LedgerBase, TimestampMixin


class MovementReason(str, enum.Enum):
    """Reasons for stock movements."""

    SALE = "sale"  # Offline sale confirmed on sync
    CONFLICT_RESOLUTION = "conflict_resolution"  # Confirmed by a reviewer


class LedgerProduct(LedgerBase, TimestampMixin):
    """Product as known to the ledger (tax rate is what matters here)."""

    __tablename__ = "ledger_products"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0, nullable=False)  # percent, 0-100
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class LedgerStock(LedgerBase):
    """Current stock level per product per warehouse, in base units."""

    __tablename__ = "ledger_stock"
    __table_args__ = (
        UniqueConstraint("warehouse_id", "product_id", name="uq_stock_warehouse_product"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_products.id", ondelete="CASCADE"), nullable=False, index=True
    )
    qty: Mapped[Decimal] = mapped_column(Numeric(14, 3), default=0, nullable=False)


class LedgerStockMovement(LedgerBase):
    """Ledger of stock changes caused by sales."""

    __tablename__ = "ledger_stock_movements"

    id: Mapped[int] = mapped_column(primary_key=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("ledger_products.id"), nullable=False)
    sale_id: Mapped[Optional[int]] = mapped_column(ForeignKey("ledger_sales.id"), nullable=True)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    qty_delta: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)  # negative = out
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class LedgerSale(LedgerBase, TimestampMixin):
    """Authoritative sale record. Offline-origin sales carry the client uuid."""

    __tablename__ = "ledger_sales"

    id: Mapped[int] = mapped_column(primary_key=True)
    uuid: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True, index=True)
    folio: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    customer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    warehouse_id: Mapped[int] = mapped_column(Integer, nullable=False)
    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sold_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[List["LedgerSaleItem"]] = relationship(
        "LedgerSaleItem", back_populates="sale", cascade="all, delete-orphan",
        order_by="LedgerSaleItem.id",
    )


class LedgerSaleItem(LedgerBase):
    """One line of a ledger sale."""

    __tablename__ = "ledger_sale_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_sales.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_line_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("ledger_products.id"), nullable=False)
    unit_code: Mapped[str] = mapped_column(String(20), nullable=False)
    unit_factor: Mapped[Decimal] = mapped_column(Numeric(12, 3), default=1, nullable=False)
    qty: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    qty_base: Mapped[Decimal] = mapped_column(Numeric(14, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    sale: Mapped["LedgerSale"] = relationship("LedgerSale", back_populates="items")
    product: Mapped["LedgerProduct"] = relationship("LedgerProduct")


class LedgerAuditLog(LedgerBase):
    """Who resolved which conflict, and how."""

    __tablename__ = "ledger_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CONFLICT_RESOLVED, CONFLICT_CANCELLED
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    meta: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

"""
Local Sale Store model.

One row per offline sale, keyed by the client-generated id which doubles
as the idempotency key on the server. Line items are stored as JSON in
their wire (camelCase) shape.
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from salesync.db.base import LocalBase


class SaleStatus(str, enum.Enum):
    """Status of a sale, shared by the local store and the ledger."""
    PENDING_SYNC = "PENDING_SYNC"
    CONFIRMED = "CONFIRMED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"
    CANCELLED = "CANCELLED"


class OfflineSale(LocalBase):
    """A sale captured on the device, waiting for (or done with) synchronization."""

    __tablename__ = "offline_sales"
    __table_args__ = (
        Index("ix_offline_sales_seller_status", "seller_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(20), default=SaleStatus.PENDING_SYNC.value, nullable=False, index=True
    )

    seller_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    customer_id: Mapped[int] = mapped_column(Integer, nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, nullable=False)

    line_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    tax_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Assigned by the server on confirmation
    folio: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    # Diagnostics accumulated across failed sync attempts
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<OfflineSale {self.id} seller={self.seller_id} status={self.status} folio={self.folio}>"

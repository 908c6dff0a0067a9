"""SQLAlchemy declarative bases and common utilities.

The Local Sale Store and the reference ledger live in separate databases,
so each gets its own metadata.
"""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class LocalBase(DeclarativeBase):
    """Base class for tables of the client-side Local Sale Store."""

    pass


class LedgerBase(DeclarativeBase):
    """Base class for tables of the reference server ledger."""

    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

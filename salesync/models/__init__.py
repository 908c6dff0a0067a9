from salesync.models.offline_sale import OfflineSale, SaleStatus
from salesync.models.ledger import (
    LedgerAuditLog,
    LedgerProduct,
    LedgerSale,
    LedgerSaleItem,
    LedgerStock,
    LedgerStockMovement,
    MovementReason,
)

__all__ = [
    "OfflineSale",
    "SaleStatus",
    "LedgerAuditLog",
    "LedgerProduct",
    "LedgerSale",
    "LedgerSaleItem",
    "LedgerStock",
    "LedgerStockMovement",
    "MovementReason",
]

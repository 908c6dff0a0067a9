"""Reviewer routes for sales the ledger could not confirm automatically."""

import logging

from fastapi import APIRouter, HTTPException, status

from salesync.api.deps import RequireReviewer
from salesync.core.exceptions import ConflictNotFoundError, InsufficientStockError
from salesync.db.session import LedgerDbSession
from salesync.schemas.sales import (
    ConflictListResponse,
    ConflictResolutionAction,
    ResolutionResponse,
)
from salesync.services.ledger_service import SalesLedgerService, serialize_sale

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/conflicts", response_model=ConflictListResponse)
def list_conflicts(db: LedgerDbSession, current_user: RequireReviewer):
    """REVIEW_REQUIRED sales with their current stock situation."""
    conflicts = SalesLedgerService(db).list_conflicts()
    return ConflictListResponse(sales=conflicts, total=len(conflicts))


@router.post("/conflicts/resolve", response_model=ResolutionResponse)
def resolve_conflict(action: ConflictResolutionAction, db: LedgerDbSession, current_user: RequireReviewer):
    """Apply EDIT_QUANTITIES or CANCEL to a sale under review."""
    service = SalesLedgerService(db)
    try:
        sale = service.resolve_conflict(action, user_id=current_user.user_id)
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InsufficientStockError as e:
        logger.warning(f"Resolution of sale {action.sale_id} still short on stock")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(e),
                "shortages": [
                    {
                        "productId": s["product_id"],
                        "requiredStock": str(s["required_stock"]),
                        "availableStock": str(s["available_stock"]),
                        "stockShortage": str(s["stock_shortage"]),
                    }
                    for s in e.shortages
                ],
            },
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    message = (
        "Sale cancelled" if sale.status == "CANCELLED"
        else f"Sale confirmed with folio {sale.folio}"
    )
    return ResolutionResponse(message=message, sale=serialize_sale(sale))

"""Sales routes consumed by the offline sync engine."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from salesync.api.deps import CurrentUser
from salesync.core.config import settings
from salesync.core.rate_limit import limiter
from salesync.db.session import LedgerDbSession
from salesync.schemas.sales import (
    OfflineStatusResponse,
    SaleListResponse,
    ServerSale,
    SyncRequest,
    SyncResult,
)
from salesync.services.ledger_service import SalesLedgerService, serialize_sale

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/sync", response_model=SyncResult)
@limiter.limit(settings.sync_rate_limit)
def sync_offline_sales(request: Request, body: SyncRequest, db: LedgerDbSession, current_user: CurrentUser):
    """Accept a batch of offline sales. Each record gets its own outcome."""
    service = SalesLedgerService(db)
    return service.sync_offline_sales(current_user.user_id, body.sales)


@router.get("/offline/status", response_model=OfflineStatusResponse)
def get_offline_status(
    db: LedgerDbSession,
    current_user: CurrentUser,
    seller_id: Optional[int] = Query(None, alias="sellerId"),
):
    """Offline sales under review or recently confirmed, for reconciliation."""
    target = current_user.user_id
    if seller_id is not None and seller_id != current_user.user_id:
        if not current_user.is_reviewer:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Only reviewers may query another seller",
            )
        target = seller_id

    sales = SalesLedgerService(db).offline_status(target)
    return OfflineStatusResponse(
        seller_id=target,
        sales=[serialize_sale(sale) for sale in sales],
        total=len(sales),
    )


@router.get("/by-uuid/{sale_uuid}", response_model=ServerSale)
def get_sale_by_uuid(sale_uuid: str, db: LedgerDbSession, current_user: CurrentUser):
    sale = SalesLedgerService(db).get_by_uuid(sale_uuid)
    if sale is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
    if sale.seller_id != current_user.user_id and not current_user.is_reviewer:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Sale belongs to another seller")
    return serialize_sale(sale)


@router.get("", response_model=SaleListResponse)
def list_sales(
    db: LedgerDbSession,
    current_user: CurrentUser,
    folio: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=100),
):
    """List sales, optionally by folio. Sellers only see their own."""
    seller_scope = None if current_user.is_reviewer else current_user.user_id
    sales, total = SalesLedgerService(db).list_sales(folio=folio, seller_id=seller_scope, limit=limit)
    return SaleListResponse(sales=[serialize_sale(sale) for sale in sales], total=total)

"""
Conflict resolution workflow (reviewer side).

Reviewers list REVIEW_REQUIRED sales with their stock situation and send
EDIT_QUANTITIES or CANCEL actions to the ledger. Nothing here touches the
Local Sale Store: the outcome reaches sellers through their next
reconciliation poll.
"""

import logging
from decimal import Decimal
from typing import Dict, Mapping, Optional, Union

from salesync.core.exceptions import PermissionDeniedError
from salesync.schemas.sales import (
    ConflictAction,
    ConflictListResponse,
    ConflictResolutionAction,
    EditItem,
    ResolutionResponse,
    ServerSale,
)
from salesync.services import totals
from salesync.services.api_client import SalesApiClient

logger = logging.getLogger(__name__)


def build_edit_action(
    sale: ServerSale,
    new_quantities: Mapping[int, Union[Decimal, int, str]],
    notes: Optional[str] = None,
) -> ConflictResolutionAction:
    """EDIT_QUANTITIES from {item id: new qty}, with newQtyBase = newQty x unitFactor."""
    items_by_id = {item.id: item for item in sale.items}
    edits = []
    for item_id, new_qty in new_quantities.items():
        item = items_by_id.get(item_id)
        if item is None:
            raise ValueError(f"Sale {sale.id} has no item {item_id}")
        factor = item.unit_factor
        if factor is None:
            factor = totals.derive_unit_factor(item.qty, item.qty_base)
        edits.append(EditItem(
            id=item_id,
            new_qty=totals.to_decimal(new_qty),
            new_qty_base=totals.compute_qty_base(new_qty, factor),
        ))
    return ConflictResolutionAction(
        action=ConflictAction.EDIT_QUANTITIES,
        sale_id=sale.id,
        items=edits,
        notes=notes,
    )


def build_cancel_action(sale_id: int, notes: Optional[str] = None) -> ConflictResolutionAction:
    return ConflictResolutionAction(action=ConflictAction.CANCEL, sale_id=sale_id, notes=notes)


class ConflictResolutionService:
    """Reviewer operations against the ledger."""

    def __init__(self, client: SalesApiClient):
        self.client = client

    def _require_reviewer(self) -> None:
        session = self.client.session
        session.require_valid()
        if not session.is_reviewer:
            raise PermissionDeniedError(f"Seller {session.seller_id} is not a reviewer")

    async def list_conflicts(self) -> ConflictListResponse:
        self._require_reviewer()
        return await self.client.list_conflicts()

    async def submit(self, action: ConflictResolutionAction) -> ResolutionResponse:
        self._require_reviewer()
        response = await self.client.resolve_conflict(action)
        logger.info(
            f"Conflict on sale {action.sale_id} resolved with {action.action.value}: "
            f"now {response.sale.status.value}"
        )
        return response

    async def edit_quantities(
        self,
        sale: ServerSale,
        new_quantities: Dict[int, Union[Decimal, int, str]],
        notes: Optional[str] = None,
    ) -> ResolutionResponse:
        return await self.submit(build_edit_action(sale, new_quantities, notes))

    async def cancel(self, sale_id: int, notes: Optional[str] = None) -> ResolutionResponse:
        return await self.submit(build_cancel_action(sale_id, notes))

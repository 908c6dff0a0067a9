"""Sale state machine.

    PENDING_SYNC ----> CONFIRMED
         |                 ^
         v                 |  (dedup guard / reconciliation)
    REVIEW_REQUIRED -------+
         |    |
         |    +--> CANCELLED  (observed from the server only)
         v
    PENDING_SYNC     (explicit retry)

REVIEW_REQUIRED records can also disappear entirely when reconciliation
finds the server no longer knows them; that is a deletion, not a
transition, and is handled by the local store.
"""

from typing import Dict, FrozenSet, Union

from salesync.core.exceptions import InvalidTransitionError
from salesync.models.offline_sale import SaleStatus

StatusLike = Union[SaleStatus, str]

TRANSITIONS: Dict[SaleStatus, FrozenSet[SaleStatus]] = {
    SaleStatus.PENDING_SYNC: frozenset({SaleStatus.CONFIRMED, SaleStatus.REVIEW_REQUIRED}),
    SaleStatus.REVIEW_REQUIRED: frozenset({
        SaleStatus.PENDING_SYNC,
        SaleStatus.CONFIRMED,
        SaleStatus.CANCELLED,
    }),
    SaleStatus.CONFIRMED: frozenset(),
    SaleStatus.CANCELLED: frozenset(),
}

# Statuses the push protocol submits
SYNCABLE_STATUSES = (SaleStatus.PENDING_SYNC, SaleStatus.REVIEW_REQUIRED)

# Statuses the reconciliation poll checks against the server
RECONCILABLE_STATUSES = (SaleStatus.REVIEW_REQUIRED, SaleStatus.CONFIRMED)

TERMINAL_STATUSES = frozenset({SaleStatus.CONFIRMED, SaleStatus.CANCELLED})


def can_transition(from_status: StatusLike, to_status: StatusLike) -> bool:
    from_status, to_status = SaleStatus(from_status), SaleStatus(to_status)
    if from_status == to_status:
        return True
    return to_status in TRANSITIONS[from_status]


def assert_transition(from_status: StatusLike, to_status: StatusLike) -> SaleStatus:
    """Return the target status, or raise InvalidTransitionError."""
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(SaleStatus(from_status).value, SaleStatus(to_status).value)
    return SaleStatus(to_status)


def is_terminal(status: StatusLike) -> bool:
    return SaleStatus(status) in TERMINAL_STATUSES

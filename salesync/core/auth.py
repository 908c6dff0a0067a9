"""Client-side session context.

Every protocol call receives the session explicitly; nothing reads a
global auth store.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from salesync.core.exceptions import AuthenticationError, PermissionDeniedError

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """The authenticated seller (or reviewer) the engine acts for.

    Attributes:
        seller_id: Partition key for every local query.
        access_token: Bearer token sent to the ledger.
        is_reviewer: Reviewers may read another seller's partition.
        username: Display name, only used in log lines.
    """

    seller_id: Optional[int]
    access_token: Optional[str]
    is_reviewer: bool = False
    username: str = ""
    _invalidated: bool = field(default=False, repr=False)
    _logout_hooks: List[Callable[["SessionContext"], None]] = field(default_factory=list, repr=False)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token) and self.seller_id is not None and not self._invalidated

    def require_valid(self) -> str:
        """Return the bearer token, or raise AuthenticationError."""
        if not self.is_authenticated:
            raise AuthenticationError()
        return self.access_token

    def on_logout(self, hook: Callable[["SessionContext"], None]) -> None:
        """Register a callback run once when the session is force-invalidated."""
        self._logout_hooks.append(hook)

    def invalidate(self) -> None:
        """Force logout: drop the token and notify listeners."""
        if self._invalidated:
            return
        logger.warning(f"Session for seller {self.seller_id} invalidated, forcing logout")
        self._invalidated = True
        self.access_token = None
        for hook in self._logout_hooks:
            hook(self)

    def scope_seller(self, seller_id: Optional[int] = None) -> int:
        """Resolve which seller partition a call may touch.

        Sellers always get their own partition; reviewers may name another one.
        """
        self.require_valid()
        if seller_id is None or seller_id == self.seller_id:
            return self.seller_id
        if not self.is_reviewer:
            raise PermissionDeniedError(
                f"Seller {self.seller_id} may not read the partition of seller {seller_id}",
                owner_id=seller_id,
            )
        return seller_id

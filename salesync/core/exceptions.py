"""Exception taxonomy for the sync engine.

Protocol-level failures (transport, authentication, malformed responses)
are raised to the caller. Record-level failures are never raised: they
are absorbed into the record's own state by the protocols.
"""

from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base class for every error raised by the engine."""


class AuthenticationError(SyncError):
    """Raised when there is no valid session, or the server answered 401."""

    def __init__(self, message: str = "No authentication token available. Please log in first."):
        super().__init__(message)


class ConnectivityError(SyncError):
    """Raised when a request never reached the server (transport failure or timeout)."""

    def __init__(self, method: str, path: str, cause: Optional[BaseException] = None):
        self.method = method
        self.path = path
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{method} {path} failed before reaching the server{detail}")


class ServerRequestError(SyncError):
    """Raised when a protocol-level request is answered with an unexpected status."""

    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Server answered {status_code}: {detail}" if detail else f"Server answered {status_code}")


class MalformedResponseError(SyncError):
    """Raised when a server response is missing required fields or has the wrong shape."""

    def __init__(self, endpoint: str, errors: Any = None):
        self.endpoint = endpoint
        self.errors = errors
        super().__init__(f"Malformed response from {endpoint}: {errors}")


class PermissionDeniedError(SyncError):
    """Raised when a seller tries to act on a record or partition it does not own."""

    def __init__(self, message: str, sale_id: Optional[str] = None, owner_id: Optional[int] = None):
        self.sale_id = sale_id
        self.owner_id = owner_id
        super().__init__(message)


class RecordNotFoundError(SyncError):
    """Raised when a local offline sale id is unknown."""

    def __init__(self, sale_id: str):
        self.sale_id = sale_id
        super().__init__(f"Offline sale {sale_id} not found")


class InvalidTransitionError(SyncError):
    """Raised when a status change is not allowed by the sale state machine."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")


class InvalidLineItemError(SyncError, ValueError):
    """Raised when a line item breaks qtyBase = qty x unitFactor or its total arithmetic."""

    def __init__(self, reason: str, line_id: Optional[str] = None):
        self.reason = reason
        self.line_id = line_id
        prefix = f"Line {line_id}: " if line_id else ""
        super().__init__(f"{prefix}{reason}")


class InsufficientStockError(Exception):
    """Raised by the ledger when one or more lines need more stock than is available."""

    def __init__(self, shortages: List[Dict[str, Any]]):
        self.shortages = shortages
        parts = [
            f"product {s['product_id']}: need {s['required_stock']}, have {s['available_stock']}"
            for s in shortages
        ]
        super().__init__("Insufficient stock (" + "; ".join(parts) + ")")


class ConflictNotFoundError(Exception):
    """Raised by the ledger when a sale does not exist or does not require review."""

    def __init__(self, sale_id: int):
        self.sale_id = sale_id
        super().__init__(f"Sale {sale_id} not found or does not require review")

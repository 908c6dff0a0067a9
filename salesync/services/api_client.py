"""Authenticated HTTP client for the sales ledger.

Every call takes its token from the SessionContext it was built with.
Failures are mapped onto the engine's taxonomy:

- no response at all (connect error, timeout)  -> ConnectivityError
- 401                                           -> session invalidated, AuthenticationError
- any other non-2xx                             -> ServerRequestError
- body that does not match its schema          -> MalformedResponseError

With FEATURE_TRANSPORT_BACKOFF on, transport failures are retried with
bounded exponential backoff before giving up. Retrying is safe because
every sale carries its own idempotency key.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from salesync.core.auth import SessionContext
from salesync.core.config import settings
from salesync.core.exceptions import (
    AuthenticationError,
    ConnectivityError,
    MalformedResponseError,
    ServerRequestError,
)
from salesync.core.feature_flags import is_enabled
from salesync.core.observability import CORRELATION_HEADER, get_correlation_id
from salesync.schemas.sales import (
    ConflictListResponse,
    ConflictResolutionAction,
    OfflineSaleRecord,
    OfflineStatusResponse,
    ResolutionResponse,
    SaleListResponse,
    ServerSale,
    SyncResult,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_NOT_FOUND = object()


def backoff_delay(attempt: int) -> float:
    """Delay before retry number `attempt` (1-based), capped."""
    return min(
        settings.transport_backoff_max_seconds,
        settings.transport_backoff_base_seconds * (2 ** (attempt - 1)),
    )


class SalesApiClient:
    """Thin typed wrapper over the ledger's /sales endpoints."""

    def __init__(
        self,
        session: SessionContext,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session = session
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        token = self.session.require_valid()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers[CORRELATION_HEADER] = correlation_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        allow_404: bool = False,
    ) -> Any:
        headers = self._headers()
        attempts = settings.transport_retry_attempts if is_enabled("TRANSPORT_BACKOFF") else 1

        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport
        ) as client:
            for attempt in range(1, attempts + 1):
                try:
                    resp = await client.request(method, path, json=json, params=params, headers=headers)
                    break
                except httpx.TransportError as e:
                    if attempt >= attempts:
                        logger.error(f"{method} {path} unreachable after {attempt} attempt(s): {e!r}")
                        raise ConnectivityError(method, path, e) from e
                    delay = backoff_delay(attempt)
                    logger.warning(
                        f"{method} {path} transport failure ({e!r}), retry {attempt}/{attempts - 1} in {delay:.1f}s"
                    )
                    await self._sleep(delay)

        if resp.status_code == 401:
            logger.error(f"{method} {path} rejected with 401, invalidating session")
            self.session.invalidate()
            raise AuthenticationError("Session rejected by server. Please log in again.")
        if resp.status_code == 404 and allow_404:
            return _NOT_FOUND
        if resp.is_error:
            raise ServerRequestError(resp.status_code, self._error_detail(resp))

        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(f"{method} {path}", f"invalid JSON: {e}") from e

    @staticmethod
    def _error_detail(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text[:500]
        if isinstance(body, dict) and "detail" in body:
            detail = body["detail"]
            return detail if isinstance(detail, str) else str(detail)
        return str(body)[:500]

    @staticmethod
    def _parse(model: Type[ModelT], data: Any, endpoint: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(endpoint, e.errors(include_url=False)) from e

    # ==========================================================================
    # Endpoints
    # ==========================================================================

    async def push_sales(self, records: List[OfflineSaleRecord]) -> SyncResult:
        """POST /sales/sync"""
        body = {"sales": [record.to_wire() for record in records]}
        data = await self._request("POST", "/sales/sync", json=body)
        return self._parse(SyncResult, data, "POST /sales/sync")

    async def get_offline_status(self, seller_id: Optional[int] = None) -> OfflineStatusResponse:
        """GET /sales/offline/status[?sellerId=]"""
        params = {"sellerId": seller_id} if seller_id is not None else None
        data = await self._request("GET", "/sales/offline/status", params=params)
        return self._parse(OfflineStatusResponse, data, "GET /sales/offline/status")

    async def get_sale_by_uuid(self, sale_uuid: str) -> Optional[ServerSale]:
        """GET /sales/by-uuid/{uuid}; None when the server does not know it."""
        data = await self._request("GET", f"/sales/by-uuid/{sale_uuid}", allow_404=True)
        if data is _NOT_FOUND:
            return None
        return self._parse(ServerSale, data, "GET /sales/by-uuid")

    async def find_sale_by_folio(self, folio: str) -> Optional[ServerSale]:
        """GET /sales?folio=&limit=1; None when no sale carries that folio."""
        data = await self._request("GET", "/sales", params={"folio": folio, "limit": 1})
        listing = self._parse(SaleListResponse, data, "GET /sales")
        return listing.sales[0] if listing.sales else None

    async def list_conflicts(self) -> ConflictListResponse:
        """GET /sales/conflicts (reviewers only)"""
        data = await self._request("GET", "/sales/conflicts")
        return self._parse(ConflictListResponse, data, "GET /sales/conflicts")

    async def resolve_conflict(self, action: ConflictResolutionAction) -> ResolutionResponse:
        """POST /sales/conflicts/resolve (reviewers only)"""
        data = await self._request("POST", "/sales/conflicts/resolve", json=action.to_wire())
        return self._parse(ResolutionResponse, data, "POST /sales/conflicts/resolve")

"""Shared rate limiter for the reference ledger routes."""

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from salesync.core.config import settings


def get_seller_or_ip(request: Request) -> str:
    """Rate limit by seller if authenticated, else by IP."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        from salesync.core.security import decode_access_token
        token = auth.split(" ", 1)[1]
        payload = decode_access_token(token)
        if payload and payload.get("sub"):
            return f"seller:{payload['sub']}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_seller_or_ip, enabled=settings.rate_limit_enabled)

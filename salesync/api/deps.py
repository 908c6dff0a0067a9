"""Authentication dependencies for the reference ledger."""

from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from salesync.core.security import decode_access_token


class Role(str, Enum):
    SELLER = "seller"
    REVIEWER = "reviewer"


class TokenData:
    """Decoded token data.

    Attributes:
        user_id: Seller id (the token's `sub`).
        role: seller or reviewer.
        username: Display name, when the token carries one.
    """

    def __init__(self, user_id: int, role: Role, username: str = ""):
        self.user_id = user_id
        self.role = role
        self.username = username or f"seller-{user_id}"

    @property
    def is_reviewer(self) -> bool:
        return self.role == Role.REVIEWER


async def get_current_user(request: Request) -> TokenData:
    """Get the current seller from the Authorization: Bearer header."""
    payload = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            payload = decode_access_token(token)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = int(payload["sub"])
        role = Role(payload.get("role", Role.SELLER.value))
    except (KeyError, TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    return TokenData(user_id=user_id, role=role, username=payload.get("username", ""))


async def require_reviewer(
    current_user: Annotated[TokenData, Depends(get_current_user)]
) -> TokenData:
    if not current_user.is_reviewer:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Requires role reviewer",
        )
    return current_user


CurrentUser = Annotated[TokenData, Depends(get_current_user)]
RequireReviewer = Annotated[TokenData, Depends(require_reviewer)]

"""
FastAPI dependencies for authentication.
"""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from commission_engine.auth.jwt import (
    ROLE_ADMIN,
    ROLE_SERVICE,
    get_token_from_request,
    verify_token,
)


@dataclass(frozen=True)
class Actor:
    """Authenticated caller."""

    id: int
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def label(self) -> str:
        """Actor string stored on commission audit records."""
        return f"{self.role}:{self.id}"


async def get_current_actor(request: Request) -> Actor:
    """
    Get the authenticated caller.

    Raises 401 if no valid token is present.
    """
    token = get_token_from_request(request)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = verify_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    return Actor(id=payload["actor_id"], role=payload["role"])


async def require_admin(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """
    Require the caller to be an administrator.

    Raises 403 otherwise.
    """
    if actor.role != ROLE_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return actor


async def require_service(
    actor: Actor = Depends(get_current_actor),
) -> Actor:
    """
    Require a service account (or an administrator, for manual checks).
    """
    if actor.role not in (ROLE_SERVICE, ROLE_ADMIN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )
    return actor

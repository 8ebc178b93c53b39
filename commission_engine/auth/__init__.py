"""Authentication module."""

from commission_engine.auth.dependencies import (
    Actor,
    get_current_actor,
    require_admin,
    require_service,
)
from commission_engine.auth.jwt import create_access_token, verify_token

__all__ = [
    "Actor",
    "create_access_token",
    "verify_token",
    "get_current_actor",
    "require_admin",
    "require_service",
]

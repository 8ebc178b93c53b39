"""
JWT token verification.

Tokens are issued by the identity service. Callers send them either as
`Authorization: Bearer <token>` (services) or in the httpOnly
`access_token` cookie (admin console).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from commission_engine.config import settings

# JWT configuration
ALGORITHM = "HS256"
TOKEN_TYPE = "access"
ROLE_ADMIN = "admin"
ROLE_SERVICE = "service"


def create_access_token(
    actor_id: int,
    role: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        actor_id: Administrator or service account id
        role: Actor's role (admin/service)
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token string
    """
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.jwt_expire_hours)

    payload = {
        "sub": str(actor_id),
        "role": role,
        "exp": expire,
        "type": TOKEN_TYPE,
        "iat": datetime.now(timezone.utc),
    }

    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """
    Verify and decode a JWT token.

    Returns:
        Dict with 'actor_id' and 'role', or None if the token is
        invalid/expired
    """
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[ALGORITHM],
        )

        if payload.get("type") != TOKEN_TYPE:
            return None

        actor_id = payload.get("sub")
        role = payload.get("role")

        if not actor_id or role not in (ROLE_ADMIN, ROLE_SERVICE):
            return None

        return {
            "actor_id": int(actor_id),
            "role": role,
        }

    except (JWTError, ValueError):
        return None


def get_token_from_request(request) -> Optional[str]:
    """Extract the token from the Authorization header, then the cookie."""
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token:
            return token.strip()
    return request.cookies.get("access_token")

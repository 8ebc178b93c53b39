"""
Administrative audit logging utilities.

Every change to commission rules must be logged for compliance.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from commission_engine.models.audit import ActorType, AuditAction, AuditLog


async def log_action(
    db: AsyncSession,
    actor_id: int,
    action: AuditAction,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    action_metadata: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    actor_type: ActorType = ActorType.ADMIN,
) -> AuditLog:
    """
    Log an administrative action.

    Args:
        db: Database session
        actor_id: ID of the administrator performing the action
        action: Type of action being performed
        target_type: Type of entity affected (e.g., "override", "bulk_run")
        target_id: ID of the affected entity
        action_metadata: Additional context about the action
        ip_address: Client IP address
        actor_type: Kind of principal (admin by default)

    Returns:
        Created AuditLog entry
    """
    log_entry = AuditLog(
        actor_id=actor_id,
        actor_type=actor_type,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        action_metadata=action_metadata,
        ip_address=ip_address,
    )
    db.add(log_entry)
    # Note: commit should happen in the calling context
    return log_entry


def get_client_ip(request) -> Optional[str]:
    """
    Extract client IP from request.

    Handles X-Forwarded-For header for reverse proxy setups.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP in the list is the client
        return forwarded_for.split(",")[0].strip()

    if hasattr(request, "client") and request.client:
        return request.client.host

    return None

from sqlalchemy.ext.asyncio import AsyncSession

from deadman.models.audit_log import AuditLog

ACTION_SECRET_CREATED = "secret_created"
ACTION_SECRET_EDITED = "secret_edited"
ACTION_SECRET_DELETED = "secret_deleted"
ACTION_CHECK_IN = "check_in"
ACTION_SECRET_PAUSED = "secret_paused"
ACTION_SECRET_RESUMED = "secret_resumed"
ACTION_SECRET_TRIGGERED = "secret_triggered"
ACTION_DISCLOSURE_RETRIED = "disclosure_retried"

RESOURCE_SECRET = "secret"


async def log_action(
    session: AsyncSession,
    user_id: str | None,
    action: str,
    resource: str = RESOURCE_SECRET,
    resource_id: str | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> None:
    """Add an audit row in the caller's transaction so it commits or rolls back with the change."""
    session.add(
        AuditLog(
            user_id=user_id,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=ip_address,
        )
    )
    await session.flush()

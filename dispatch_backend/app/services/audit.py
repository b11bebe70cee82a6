"""
Audit logging service for dispatch and ledger actions.

Entries join the caller's transaction: they are flushed, never committed
here, so an audited action and its audit row succeed or fail together.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from dispatch_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    DISPATCH_CREATED = "DISPATCH_CREATED"
    DISPATCH_FINALIZED = "DISPATCH_FINALIZED"
    DISPATCH_DELETED = "DISPATCH_DELETED"

    SMART_RECEIVE_COMPLETED = "SMART_RECEIVE_COMPLETED"
    RECEPTION_FINALIZED = "RECEPTION_FINALIZED"

    DISPATCH_PAYMENT_ADDED = "DISPATCH_PAYMENT_ADDED"
    DISPATCH_PAYMENT_DELETED = "DISPATCH_PAYMENT_DELETED"

    DEBT_MARKED_PAID = "DEBT_MARKED_PAID"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_agency_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action
        actor_agency_id: Agency the actor belongs to
        entity_type: Kind of entity acted upon ("dispatch", "debt", ...)
        entity_id: ID of that entity
        metadata: Additional context as JSON

    Returns:
        Flushed AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_agency_id=actor_agency_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Args:
        db: Database session
        entity_type: Filter by entity kind
        entity_id: Filter by entity ID
        action: Filter by action type
        limit: Maximum number of records to return

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)

    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())

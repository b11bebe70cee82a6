"""
Security guards for role-based and agency-based access control.

Provides dependencies for protecting endpoints and the role predicates the
dispatch services consult.
"""

from typing import Optional
from fastapi import Depends, HTTPException, status
from dispatch_backend.app.models.enums import UserRole
from dispatch_backend.app.core.dependencies import get_current_user

ELEVATED_ROLES = frozenset({UserRole.ROOT, UserRole.ADMINISTRATOR})


def _as_role(role) -> Optional[UserRole]:
    if role is None or isinstance(role, UserRole):
        return role
    try:
        return UserRole(role)
    except ValueError:
        return None


def is_elevated(role) -> bool:
    """ROOT and ADMINISTRATOR may act on dispatches of any agency."""
    return _as_role(role) in ELEVATED_ROLES


def require_agency(current_user: dict = Depends(get_current_user)) -> dict:
    """
    Dependency for endpoints that act on behalf of the caller's agency.

    Raises:
        HTTPException 403 if the token carries no agency
    """
    if not current_user.get("agency_id"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User must belong to an agency"
        )
    return current_user

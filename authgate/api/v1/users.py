"""User management routes"""

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List

from authgate.api.deps import client_ip, get_current_admin_user, get_services
from authgate.core.database import get_db
from authgate.core.exceptions import AuthorizationError, ResourceNotFoundError, ValidationError
from authgate.models.user import User
from authgate.schemas.audit import AuditEventResponse
from authgate.schemas.response import APIResponse
from authgate.schemas.user import UserResponse, UserStatusUpdate
from authgate.services import audit_service as audit
from authgate.services.registry import Services

router = APIRouter()


def _load_target(db: Session, services: Services, admin: User, user_id: int) -> User:
    target = services.users.get_by_id(db, user_id)
    if target is None:
        raise ResourceNotFoundError("User")
    if target.id == admin.id:
        raise ValidationError("Administrators cannot change their own account status")
    if target.role == "super_admin" and admin.role != "super_admin":
        raise AuthorizationError("Only a super admin can manage this account")
    return target


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    user_id: int,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Get a user (admin only)

    Args:
        user_id: User ID
        current_user: Current admin user
        db: Database session

    Returns:
        User profile
    """
    user = services.users.get_by_id(db, user_id)
    if user is None:
        raise ResourceNotFoundError("User")
    return UserResponse.model_validate(user)


@router.patch("/{user_id}/status", response_model=UserResponse)
def set_user_status(
    user_id: int,
    body: UserStatusUpdate,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Activate or deactivate a user (admin only)

    A deactivated user can neither rotate refresh tokens nor pass the request
    gate with an access token already issued.
    """
    _load_target(db, services, current_user, user_id)
    user = services.users.set_active(db, user_id, body.is_active)
    services.audit.log_event(
        db,
        user_id=current_user.id,
        action=audit.USER_ACTIVATED if body.is_active else audit.USER_DEACTIVATED,
        target_type="user",
        target_id=str(user_id),
        ip_address=client_ip(request),
    )
    return UserResponse.model_validate(user)


@router.delete("/{user_id}", response_model=APIResponse)
def delete_user(
    user_id: int,
    request: Request,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Delete a user with their OTP challenges and refresh tokens (admin only)"""
    target = _load_target(db, services, current_user, user_id)
    email = target.email
    services.users.delete_user(db, user_id)
    services.audit.log_event(
        db,
        user_id=current_user.id,
        action=audit.USER_DELETED,
        target_type="user",
        target_id=str(user_id),
        ip_address=client_ip(request),
        metadata={"email": email},
    )
    return APIResponse(message="User deleted successfully", data={"user_id": user_id})


@router.get("/{user_id}/audit-events", response_model=List[AuditEventResponse])
def list_user_audit_events(
    user_id: int,
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Recent audit events recorded for a user (admin only)"""
    events = services.audit.list_events(db, user_id, limit)
    return [AuditEventResponse.from_event(event) for event in events]

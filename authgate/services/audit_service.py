"""Audit service for security-sensitive account events."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from authgate.models.audit import AuditEvent

logger = logging.getLogger(__name__)

LOGIN = "auth.login"
LOGOUT = "auth.logout"
LOGOUT_ALL = "auth.logout_all"
PASSWORD_CHANGE = "auth.password_change"
PASSWORD_RESET = "auth.password_reset"
OTP_VERIFIED = "auth.otp_verified"
FEDERATED_LOGIN = "auth.federated_login"
FEDERATED_LINK = "auth.federated_link"
FEDERATED_UNLINK = "auth.federated_unlink"
USER_ACTIVATED = "admin.user_activated"
USER_DEACTIVATED = "admin.user_deactivated"
USER_DELETED = "admin.user_deleted"


class AuditService:
    """Persist immutable audit trail entries."""

    def log_event(
        self,
        db: Session,
        *,
        user_id: Optional[int],
        action: str,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        """
        Store one event. The action it records has already committed, so a
        failure here is logged and does not fail the request.
        """
        event = AuditEvent(
            user_id=user_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            ip_address=ip_address,
            metadata_json=json.dumps(metadata or {}, ensure_ascii=False, default=str),
        )
        try:
            db.add(event)
            db.commit()
            db.refresh(event)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(f"Failed to write audit event {action} for user {user_id}: {exc}")
            return None
        return event

    def list_events(self, db: Session, user_id: int, limit: int = 50) -> List[AuditEvent]:
        return (
            db.query(AuditEvent)
            .filter(AuditEvent.user_id == user_id)
            .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
            .limit(limit)
            .all()
        )

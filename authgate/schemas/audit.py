"""Audit event response schemas."""

import json
from datetime import datetime
from typing import Optional, Dict, Any

from pydantic import BaseModel

from authgate.models.audit import AuditEvent


class AuditEventResponse(BaseModel):
    id: int
    user_id: Optional[int]
    action: str
    target_type: Optional[str]
    target_id: Optional[str]
    ip_address: Optional[str]
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime]

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        try:
            metadata = json.loads(event.metadata_json or "{}")
        except ValueError:
            metadata = {}
        return cls(
            id=event.id,
            user_id=event.user_id,
            action=event.action,
            target_type=event.target_type,
            target_id=event.target_id,
            ip_address=event.ip_address,
            metadata=metadata,
            created_at=event.created_at,
        )

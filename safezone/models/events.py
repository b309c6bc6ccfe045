"""
Messages published on the case_events topic.
Transition events (geofence_events topic) live in safezone.models.geofence.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict
from enum import Enum


class CaseEventType(str, Enum):
    CASE_CREATED = "case_created"
    CASE_UPDATED = "case_updated"
    CASE_CLOSED = "case_closed"
    CASE_REOPENED = "case_reopened"
    CASE_ESCALATED = "case_escalated"
    CASE_ARCHIVED = "case_archived"
    TIMELINE_ENTRY_ADDED = "timeline_entry_added"
    LEAD_ADDED = "lead_added"
    LEAD_UPDATED = "lead_updated"
    WATCHER_NOTIFICATION = "watcher_notification"


class CaseEvent(BaseModel):
    type: CaseEventType
    case_id: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True

"""
Pydantic models for missing-person cases, their timelines and leads.

DESIGN PRINCIPLES:
- category, risk_level, risk_score and search_radius_meters are DERIVED,
  never accepted from callers
- Timeline entries are immutable once written
- Cases are archived, never deleted
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from enum import Enum

from safezone.models.geofence import Coordinates
from safezone.utils.timeutils import ensure_utc


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)

    def next(self) -> "Priority":
        """Next tier up; CRITICAL stays CRITICAL."""
        return PRIORITY_ORDER[min(self.rank + 1, len(PRIORITY_ORDER) - 1)]


PRIORITY_ORDER = [Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL]


class CaseStatus(str, Enum):
    ACTIVE = "active"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class CaseCategory(str, Enum):
    CHILD = "child"
    VULNERABLE_ADULT = "vulnerable_adult"
    ADULT = "adult"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TransportationMethod(str, Enum):
    WALKING = "walking"
    BICYCLE = "bicycle"
    VEHICLE = "vehicle"
    PUBLIC_TRANSPORT = "public_transport"
    UNKNOWN = "unknown"


class TimelineEntryType(str, Enum):
    CASE_CREATED = "case_created"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    DETAILS_UPDATED = "details_updated"
    AUTO_ESCALATION = "auto_escalation"
    LEAD_ADDED = "lead_added"
    LEAD_UPDATED = "lead_updated"
    CASE_CLOSED = "case_closed"
    CASE_REOPENED = "case_reopened"
    GEOFENCE_ENTRY = "geofence_entry"
    GEOFENCE_EXIT = "geofence_exit"
    CASE_ARCHIVED = "case_archived"
    UPDATE = "update"


class CaseSubject(BaseModel):
    """The missing person."""
    subject_id: Optional[str] = Field(None, description="Monitored subject id (links location reports)")
    name: str = Field(..., min_length=1, max_length=200)
    age: Optional[int] = Field(None, ge=0, le=130)
    gender: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    medical_conditions: List[str] = Field(default_factory=list)
    clothing: str = ""
    distinguishing_features: List[str] = Field(default_factory=list)

    @field_validator("medical_conditions", mode="after")
    @classmethod
    def _normalize_conditions(cls, value: List[str]) -> List[str]:
        return [c.strip().lower() for c in value if c and c.strip()]


class LastKnownLocation(Coordinates):
    address: str = ""
    timestamp: Optional[datetime] = None
    accuracy_meters: Optional[float] = Field(None, ge=0)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Circumstances(BaseModel):
    time_of_disappearance: Optional[datetime] = None
    transportation_method: TransportationMethod = TransportationMethod.WALKING
    behavior_notes: str = ""
    last_seen_with: str = ""
    possible_destinations: List[str] = Field(default_factory=list)

    @field_validator("time_of_disappearance", mode="after")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class TimelineEntry(BaseModel):
    """Immutable record of something that happened to a case."""
    id: str
    type: str
    description: str
    actor: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
    location: Optional[Coordinates] = None

    class Config:
        frozen = True


class TimelineEntryCreate(BaseModel):
    """Free-form entry added by a user (search update, note, ...)."""
    type: str = Field(default=TimelineEntryType.UPDATE.value, min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=2000)
    timestamp: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    location: Optional[Coordinates] = None

    class Config:
        extra = "ignore"

    @field_validator("timestamp", mode="after")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class LeadStatus(str, Enum):
    NEW = "new"
    INVESTIGATING = "investigating"
    VERIFIED = "verified"
    DISMISSED = "dismissed"


class LeadCreate(BaseModel):
    type: str = Field(default="sighting", min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=2000)
    location: Optional[Coordinates] = None
    timestamp: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    credibility: str = "unverified"
    follow_up_required: bool = True

    class Config:
        extra = "ignore"

    @field_validator("timestamp", mode="after")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class LeadUpdate(BaseModel):
    status: Optional[LeadStatus] = None
    priority: Optional[Priority] = None
    credibility: Optional[str] = None
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    follow_up_required: Optional[bool] = None

    class Config:
        extra = "ignore"


class Lead(BaseModel):
    id: str
    type: str = "sighting"
    description: str
    location: Optional[Coordinates] = None
    timestamp: datetime
    reported_by: str
    reported_at: datetime
    status: LeadStatus = LeadStatus.NEW
    priority: Priority = Priority.MEDIUM
    credibility: str = "unverified"
    follow_up_required: bool = True
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    @field_validator("timestamp", "reported_at", mode="after")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ClosureOutcome(str, Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    FALSE_ALARM = "false_alarm"


class Closure(BaseModel):
    outcome: ClosureOutcome = ClosureOutcome.RESOLVED
    description: str = ""
    found_location: Optional[Coordinates] = None
    found_by: Optional[str] = None
    condition: Optional[str] = Field(None, description="safe | injured | deceased")

    class Config:
        extra = "ignore"


class CaseCreate(BaseModel):
    """
    Model for opening a new case (reporter action).
    reporter_id, subject.name and last_known_location are mandatory.
    """
    reporter_id: str = Field(..., min_length=1)
    subject: CaseSubject
    last_known_location: LastKnownLocation
    circumstances: Circumstances = Field(default_factory=Circumstances)
    priority: Priority = Priority.MEDIUM

    class Config:
        extra = "ignore"
        json_schema_extra = {
            "example": {
                "reporter_id": "user_42",
                "subject": {"name": "Chen Mei", "age": 80, "medical_conditions": ["dementia"]},
                "last_known_location": {"lat": 24.8047, "lng": 120.9688, "address": "East District"},
                "circumstances": {"transportation_method": "walking"},
                "priority": "high",
            }
        }


class CaseUpdate(BaseModel):
    """
    Manual case update. Priority may be set to any value here; only the
    escalation sweep is restricted to raising it.
    """
    status: Optional[CaseStatus] = None
    status_reason: Optional[str] = None
    priority: Optional[Priority] = None
    priority_reason: Optional[str] = None
    subject: Optional[CaseSubject] = None
    circumstances: Optional[Circumstances] = None
    last_known_location: Optional[LastKnownLocation] = None

    class Config:
        extra = "ignore"


class RiskAssessment(BaseModel):
    """Output of the derived-field computation."""
    category: CaseCategory
    risk_score: int
    risk_level: RiskLevel
    search_radius_meters: int
    factors: List[str] = Field(default_factory=list)


class Case(BaseModel):
    """Authoritative case record held by the case ledger."""
    case_id: str
    reporter_id: str
    subject: CaseSubject
    last_known_location: LastKnownLocation
    circumstances: Circumstances
    priority: Priority = Priority.MEDIUM
    status: CaseStatus = CaseStatus.ACTIVE
    category: CaseCategory = CaseCategory.ADULT
    risk_level: RiskLevel = RiskLevel.LOW
    risk_score: int = 0
    search_radius_meters: int = 0
    timeline: List[TimelineEntry] = Field(default_factory=list)
    leads: List[Lead] = Field(default_factory=list)
    watchers: Set[str] = Field(default_factory=set)
    closure: Optional[Closure] = None
    archived: bool = False
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    reopened_at: Optional[datetime] = None
    reopen_reason: Optional[str] = None

    @property
    def is_closed(self) -> bool:
        return self.status == CaseStatus.CLOSED

    def find_lead(self, lead_id: str) -> Optional[Lead]:
        for lead in self.leads:
            if lead.id == lead_id:
                return lead
        return None

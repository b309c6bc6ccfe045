"""
Pydantic models for geofences, location samples and transition events.
These models handle validation for incoming data; bounds that depend on
configuration (radius limits, accuracy ceiling) are checked by the services.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional
from enum import Enum

from safezone.utils.timeutils import ensure_utc, utc_now


class Coordinates(BaseModel):
    """A WGS84 point."""
    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


class GeofenceKind(str, Enum):
    """What crossing the boundary means for the monitored person."""
    SAFE_ZONE = "safe_zone"
    RESTRICTED_AREA = "restricted_area"


class GeofenceCreate(BaseModel):
    """
    Model for creating a geofence.
    radius_meters falls back to the configured default radius when omitted.
    """
    name: str = Field(..., min_length=1, max_length=200, description="Display name, e.g. 'Home'")
    center: Coordinates
    radius_meters: Optional[float] = Field(None, gt=0, description="Radius in meters")
    kind: GeofenceKind = Field(default=GeofenceKind.SAFE_ZONE)
    alert_on_entry: bool = True
    alert_on_exit: bool = True
    enabled: bool = True

    class Config:
        extra = "ignore"
        json_schema_extra = {
            "example": {
                "name": "Home",
                "center": {"lat": 24.8047, "lng": 120.9688},
                "radius_meters": 200,
                "kind": "safe_zone",
                "alert_on_entry": True,
                "alert_on_exit": True,
            }
        }


class GeofenceUpdate(BaseModel):
    """Partial update; only fields that are set are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    center: Optional[Coordinates] = None
    radius_meters: Optional[float] = Field(None, gt=0)
    kind: Optional[GeofenceKind] = None
    alert_on_entry: Optional[bool] = None
    alert_on_exit: Optional[bool] = None
    enabled: Optional[bool] = None

    class Config:
        extra = "ignore"


class Geofence(BaseModel):
    """Stored geofence. Owned by exactly one subject/user."""
    id: str
    owner_id: str
    name: str
    center: Coordinates
    radius_meters: float
    kind: GeofenceKind = GeofenceKind.SAFE_ZONE
    alert_on_entry: bool = True
    alert_on_exit: bool = True
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class LocationSample(BaseModel):
    """A single location report for a monitored subject."""
    subject_id: Optional[str] = None
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    accuracy_meters: float = Field(default=0.0, ge=0, description="Reported GPS accuracy")
    captured_at: datetime = Field(default_factory=utc_now, description="When the device took the fix")

    @field_validator("captured_at", mode="after")
    @classmethod
    def _normalize_captured_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class TransitionType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"


class TransitionEvent(BaseModel):
    """
    Entry into or exit from a geofence, detected by comparing consecutive
    containment states. Produced once, never mutated.
    """
    type: TransitionType
    subject_id: str
    geofence_id: str
    geofence_name: str
    geofence_kind: GeofenceKind
    location: Coordinates
    accuracy_meters: float = 0.0
    occurred_at: datetime
    distance_meters: float = Field(..., description="Distance from the zone center")

    class Config:
        frozen = True

"""
Core settings and environment variables for SafeZone Guardian.
Uses pydantic-settings for type-safe environment variable loading.

Every service accepts an optional Settings instance at construction.
Tests and embedding applications override individual options with
Settings(MIN_GEOFENCE_RADIUS=25, ...); everything else keeps its default.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Create a .env file in the root directory to configure these.
    """

    # Application
    APP_NAME: str = "SafeZone Guardian"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Firebase/Firestore (durable store behind the in-memory registries)
    FIREBASE_PROJECT_ID: Optional[str] = None
    FIREBASE_CREDENTIALS_PATH: Optional[str] = None  # Path to service account JSON

    # In-memory store for local development and tests
    USE_MOCK_DB: bool = True

    # Geofences (meters)
    DEFAULT_GEOFENCE_RADIUS: float = 500
    MIN_GEOFENCE_RADIUS: float = 50
    MAX_GEOFENCE_RADIUS: float = 5000
    MAX_GEOFENCES_PER_OWNER: int = 10

    # Location tracking
    GEOFENCE_CHECK_INTERVAL_MS: int = 30000  # Stale-sample reaper period
    MAX_LOCATION_ACCURACY_METERS: float = 10000
    STALE_LOCATION_SECONDS: int = 3600

    # Escalation thresholds, keyed by the priority a case currently holds.
    # LOW is disabled unless configured.
    ESCALATION_LOW_SECONDS: Optional[int] = None
    ESCALATION_MEDIUM_SECONDS: int = 7200
    ESCALATION_HIGH_SECONDS: int = 3600
    ESCALATION_CRITICAL_SECONDS: int = 1800
    ESCALATION_SWEEP_SECONDS: int = 300

    # Cases
    AUTO_ARCHIVE_DAYS: int = 30
    MAX_ACTIVE_CASES_PER_REPORTER: int = 5

    # Event bus / outbound side channels
    MAX_SUBSCRIBERS_PER_TOPIC: int = 32
    OUTBOUND_WORKERS: int = 4
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "allow"  # Allow extra env vars to prevent crashes

    @property
    def escalation_thresholds(self) -> Dict[str, Optional[int]]:
        """Escalation thresholds in seconds, keyed by priority value."""
        return {
            "low": self.ESCALATION_LOW_SECONDS,
            "medium": self.ESCALATION_MEDIUM_SECONDS,
            "high": self.ESCALATION_HIGH_SECONDS,
            "critical": self.ESCALATION_CRITICAL_SECONDS,
        }


# Global settings instance
settings = Settings()

"""
Geofence Registry - owner-scoped circular zones.

DESIGN PRINCIPLES:
- Authoritative copy lives in memory; the durable store is a mirror
- Radius bounds and the per-owner cap are configuration
- Only the owner may modify or delete a zone
- Deletion is immediate for containment checks
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from safezone.core.errors import (
    NotFound,
    QuotaExceeded,
    Unauthorized,
    ValidationError,
    validation_error_from_pydantic,
)
from safezone.core.settings import Settings, settings
from safezone.models.geofence import Coordinates, Geofence, GeofenceCreate, GeofenceUpdate
from safezone.services.outbound import AuditSink, OutboundExecutor, build_audit_event
from safezone.stores.base import DocumentStore
from safezone.utils.geo import distance_meters
from safezone.utils.ids import generate_geofence_id
from safezone.utils.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


class GeofenceRegistry:
    """
    Stores geofences keyed by id and answers containment / proximity queries.
    """

    COLLECTION = "geofences"
    DEFAULT_NEARBY_RADIUS = 5000  # meters

    def __init__(
        self,
        config: Optional[Settings] = None,
        store: Optional[DocumentStore] = None,
        outbound: Optional[OutboundExecutor] = None,
        audit: Optional[AuditSink] = None,
        clock: Clock = utc_now,
    ):
        self.config = config or settings
        self.store = store
        self.outbound = outbound
        self.audit = audit
        self.clock = clock
        self._lock = threading.RLock()
        self._geofences: Dict[str, Geofence] = {}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, owner_id: str, payload: Union[GeofenceCreate, Dict[str, Any]]) -> Geofence:
        """
        Create a geofence for an owner.

        Args:
            owner_id: Subject/user the zone belongs to
            payload: GeofenceCreate or equivalent dict

        Returns:
            The stored Geofence (a copy)

        Raises:
            ValidationError: Missing owner, bad coordinates or radius out of bounds
            QuotaExceeded: Owner already has MAX_GEOFENCES_PER_OWNER zones
        """
        self._require_owner(owner_id)
        data = self._parse(GeofenceCreate, payload, "geofence")
        radius = data.radius_meters if data.radius_meters is not None else self.config.DEFAULT_GEOFENCE_RADIUS
        self._check_radius(radius)

        now = self.clock()
        with self._lock:
            owned = sum(1 for g in self._geofences.values() if g.owner_id == owner_id)
            if owned >= self.config.MAX_GEOFENCES_PER_OWNER:
                raise QuotaExceeded(
                    f"Maximum {self.config.MAX_GEOFENCES_PER_OWNER} geofences allowed per owner",
                    details={"owner_id": owner_id, "limit": self.config.MAX_GEOFENCES_PER_OWNER},
                )

            geofence = Geofence(
                id=generate_geofence_id(),
                owner_id=owner_id,
                name=data.name,
                center=data.center,
                radius_meters=radius,
                kind=data.kind,
                alert_on_entry=data.alert_on_entry,
                alert_on_exit=data.alert_on_exit,
                enabled=data.enabled,
                created_at=now,
                updated_at=now,
            )
            self._geofences[geofence.id] = geofence
            self._mirror(geofence)

        logger.info(f"Created geofence {geofence.id} ({geofence.name}) for owner {owner_id}")
        self._record("geofence_created", geofence.id, owner_id, {"name": geofence.name})
        return geofence.model_copy(deep=True)

    def update(
        self,
        geofence_id: str,
        patch: Union[GeofenceUpdate, Dict[str, Any]],
        owner_id: Optional[str] = None,
    ) -> Geofence:
        """
        Apply a partial update.

        Raises:
            NotFound: Unknown geofence id
            Unauthorized: owner_id given and does not match the zone owner
            ValidationError: New center or radius out of bounds
        """
        changes = self._parse(GeofenceUpdate, patch, "geofence update").model_dump(exclude_unset=True)
        changes = {k: v for k, v in changes.items() if v is not None}
        if "radius_meters" in changes:
            self._check_radius(changes["radius_meters"])

        with self._lock:
            current = self._geofences.get(geofence_id)
            if current is None:
                raise NotFound(f"Geofence {geofence_id} not found")
            if owner_id is not None and current.owner_id != owner_id:
                raise Unauthorized(f"Geofence {geofence_id} is not owned by {owner_id}")

            if "center" in changes:
                changes["center"] = Coordinates(**changes["center"])
            updated = current.model_copy(update={**changes, "updated_at": self.clock()})
            self._geofences[geofence_id] = updated
            self._mirror(updated)

        logger.info(f"Updated geofence {geofence_id}: {sorted(changes)}")
        self._record("geofence_updated", geofence_id, owner_id or updated.owner_id, {"fields": sorted(changes)})
        return updated.model_copy(deep=True)

    def delete(self, geofence_id: str, owner_id: str) -> bool:
        """
        Delete a geofence. Unknown ids return False.

        Raises:
            Unauthorized: owner_id does not match the zone owner
        """
        with self._lock:
            current = self._geofences.get(geofence_id)
            if current is None:
                logger.debug(f"Delete of unknown geofence {geofence_id} ignored")
                return False
            if current.owner_id != owner_id:
                raise Unauthorized(f"Geofence {geofence_id} is not owned by {owner_id}")
            del self._geofences[geofence_id]
            if self.store is not None and self.outbound is not None:
                self.outbound.submit(
                    f"delete geofence {geofence_id}", self.store.delete, self.COLLECTION, geofence_id,
                    key=geofence_id,
                )

        logger.info(f"Deleted geofence {geofence_id} for owner {owner_id}")
        self._record("geofence_deleted", geofence_id, owner_id, {})
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, geofence_id: str) -> Optional[Geofence]:
        with self._lock:
            geofence = self._geofences.get(geofence_id)
            return geofence.model_copy(deep=True) if geofence else None

    def list_for_owner(self, owner_id: str) -> List[Geofence]:
        """All zones of an owner, enabled or not, oldest first."""
        with self._lock:
            owned = [g for g in self._geofences.values() if g.owner_id == owner_id]
        owned.sort(key=lambda g: g.created_at)
        return [g.model_copy(deep=True) for g in owned]

    def list_active(self, owner_id: str) -> List[Geofence]:
        """Enabled zones of an owner; the only ones used for transitions."""
        return [g for g in self.list_for_owner(owner_id) if g.enabled]

    def contains(self, location: Any, geofence_id: str) -> bool:
        """
        True when location lies inside the zone (boundary counts as inside).
        A disabled zone contains nothing.

        Raises:
            ValidationError: Location is not a valid coordinate
            NotFound: Unknown geofence id
        """
        point = self._parse(Coordinates, location, "location")
        geofence = self.get(geofence_id)
        if geofence is None:
            raise NotFound(f"Geofence {geofence_id} not found")
        if not geofence.enabled:
            return False
        return self.is_inside(point, geofence)

    @staticmethod
    def is_inside(location: Any, geofence: Geofence) -> bool:
        return distance_meters(location, geofence.center) <= geofence.radius_meters

    def nearby(self, location: Any, search_radius: float = DEFAULT_NEARBY_RADIUS) -> List[Tuple[Geofence, float]]:
        """
        Enabled zones whose circle comes within search_radius of location.

        Returns:
            (geofence, distance to center) pairs, nearest first
        """
        if search_radius < 0:
            raise ValidationError("search_radius must be non-negative")
        point = self._parse(Coordinates, location, "location")

        with self._lock:
            geofences = list(self._geofences.values())

        results = []
        for geofence in geofences:
            if not geofence.enabled:
                continue
            distance = distance_meters(point, geofence.center)
            if distance <= search_radius + geofence.radius_meters:
                results.append((geofence.model_copy(deep=True), distance))
        results.sort(key=lambda item: item[1])
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Restore geofences from the durable store. Returns the number loaded."""
        if self.store is None:
            return 0
        loaded = 0
        for doc in self.store.query(self.COLLECTION):
            try:
                geofence = Geofence.model_validate(doc)
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed geofence document {doc.get('id')}: {e}")
                continue
            with self._lock:
                self._geofences[geofence.id] = geofence
            loaded += 1
        logger.info(f"Loaded {loaded} geofences from store")
        return loaded

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            geofences = list(self._geofences.values())
        return {
            "total": len(geofences),
            "enabled": sum(1 for g in geofences if g.enabled),
            "owners": len({g.owner_id for g in geofences}),
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_radius(self, radius: float) -> None:
        low, high = self.config.MIN_GEOFENCE_RADIUS, self.config.MAX_GEOFENCE_RADIUS
        if not low <= radius <= high:
            raise ValidationError(
                f"Geofence radius must be between {low} and {high} meters",
                details={"radius_meters": radius, "min": low, "max": high},
            )

    @staticmethod
    def _require_owner(owner_id: str) -> None:
        if not owner_id or not isinstance(owner_id, str):
            raise ValidationError("owner_id is required")

    @staticmethod
    def _parse(model, value, what: str):
        if isinstance(value, model):
            return value
        try:
            if isinstance(value, dict):
                return model.model_validate(value)
            return model.model_validate(value, from_attributes=True)
        except PydanticValidationError as e:
            raise validation_error_from_pydantic(e, what) from e

    def _mirror(self, geofence: Geofence) -> None:
        if self.store is None or self.outbound is None:
            return
        self.outbound.submit(
            f"save geofence {geofence.id}",
            self.store.put,
            self.COLLECTION,
            geofence.id,
            geofence.model_dump(mode="json"),
            key=geofence.id,
        )

    def _record(self, event_type: str, geofence_id: str, actor: str, data: Dict[str, Any]) -> None:
        if self.audit is None or self.outbound is None:
            return
        event = build_audit_event(event_type, "geofence", geofence_id, actor, data)
        self.outbound.submit(f"audit {event_type}", self.audit.record, event, key=geofence_id)

"""
Case Status Workflow - state machine for manual status updates.

DESIGN PRINCIPLES:
- CLOSED is reached only through close_case and left only through reopen_case
- Every accepted transition produces a status_changed timeline entry
- Invalid transitions are rejected before any mutation
"""

from typing import Dict, List, Optional

from safezone.core.errors import InvalidTransition
from safezone.models.case import CaseStatus, TimelineEntry, TimelineEntryType
from safezone.utils.ids import generate_timeline_id
from safezone.utils.timeutils import utc_now


class CaseStatusWorkflow:
    """
    Allowed status moves for update_case.

    Open cases move freely between active, investigating and resolved.
    """

    # Allowed transitions map: {from_status: [to_status, ...]}
    ALLOWED_TRANSITIONS: Dict[CaseStatus, List[CaseStatus]] = {
        CaseStatus.ACTIVE: [CaseStatus.INVESTIGATING, CaseStatus.RESOLVED],
        CaseStatus.INVESTIGATING: [CaseStatus.ACTIVE, CaseStatus.RESOLVED],
        CaseStatus.RESOLVED: [CaseStatus.ACTIVE, CaseStatus.INVESTIGATING],
        CaseStatus.CLOSED: [],  # Only reopen_case leaves CLOSED
    }

    @classmethod
    def is_valid_transition(cls, from_status: str, to_status: str) -> bool:
        try:
            from_enum = CaseStatus(from_status)
            to_enum = CaseStatus(to_status)
        except ValueError:
            return False

        if from_enum == to_enum:
            return True
        return to_enum in cls.ALLOWED_TRANSITIONS.get(from_enum, [])

    @classmethod
    def get_allowed_transitions(cls, current_status: str) -> List[str]:
        try:
            current_enum = CaseStatus(current_status)
        except ValueError:
            return []
        return [status.value for status in cls.ALLOWED_TRANSITIONS.get(current_enum, [])]

    @classmethod
    def create_status_entry(
        cls,
        from_status: CaseStatus,
        to_status: CaseStatus,
        actor: str,
        note: Optional[str] = None,
        timestamp=None,
    ) -> TimelineEntry:
        """
        Create the timeline entry recording a status change.

        Args:
            from_status: Previous status
            to_status: New status
            actor: User who made the change
            note: Optional reason
            timestamp: When the change happened (defaults to now)
        """
        return TimelineEntry(
            id=generate_timeline_id(),
            type=TimelineEntryType.STATUS_CHANGED.value,
            description=f"Status changed from {from_status.value} to {to_status.value}",
            actor=actor,
            timestamp=timestamp or utc_now(),
            data={
                "previous_status": from_status.value,
                "new_status": to_status.value,
                "reason": note or "",
            },
        )

    @classmethod
    def validate_and_transition(
        cls,
        current_status: CaseStatus,
        new_status: CaseStatus,
        actor: str,
        note: Optional[str] = None,
        timestamp=None,
    ) -> TimelineEntry:
        """
        Validate a manual status move and build its timeline entry.

        Raises:
            InvalidTransition: Move not allowed (including any move into or out of CLOSED)
        """
        if new_status == CaseStatus.CLOSED and current_status != CaseStatus.CLOSED:
            raise InvalidTransition(
                "Cases are closed through close_case",
                details={"from": current_status.value, "to": new_status.value},
            )
        if not cls.is_valid_transition(current_status, new_status):
            allowed = cls.get_allowed_transitions(current_status)
            raise InvalidTransition(
                f"Invalid status transition: {current_status.value} -> {new_status.value}. "
                f"Allowed transitions from {current_status.value}: {allowed}",
                details={"from": current_status.value, "to": new_status.value, "allowed": allowed},
            )
        return cls.create_status_entry(current_status, new_status, actor, note, timestamp)

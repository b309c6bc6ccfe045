"""
Escalation Engine - time-based priority promotion for active cases.

DESIGN PRINCIPLES:
- Priority only goes UP, one tier per sweep, never past critical
- Only ACTIVE cases are swept; closed, resolved and investigating cases are untouched
- Ids are snapshotted first, then each case is handled under its own lock
- A failure on one case is logged and recorded; the sweep continues
- Auto-archive of long-closed cases runs as a separate pass in the same cycle
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from safezone.core.errors import NotFound, ServiceUnavailable
from safezone.core.settings import Settings, settings
from safezone.models.case import CaseStatus, Priority, TimelineEntry, TimelineEntryType
from safezone.models.events import CaseEventType
from safezone.services.case_service import SYSTEM_ACTOR, CaseService
from safezone.services.scheduler import PeriodicWorker
from safezone.utils.ids import generate_timeline_id
from safezone.utils.timeutils import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class Escalation:
    case_id: str
    previous_priority: Priority
    new_priority: Priority
    elapsed_seconds: float


@dataclass
class SweepReport:
    started_at: datetime
    checked: int = 0
    escalated: List[Escalation] = field(default_factory=list)
    refreshed: int = 0
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "checked": self.checked,
            "escalated": [
                {
                    "case_id": e.case_id,
                    "previous_priority": e.previous_priority.value,
                    "new_priority": e.new_priority.value,
                }
                for e in self.escalated
            ],
            "refreshed": self.refreshed,
            "failed": dict(self.failed),
        }


class EscalationEngine:
    """
    Promotes the priority of active cases that stay open past the threshold
    configured for their current priority.

    Threshold lookup uses the priority the case holds at sweep time, and
    elapsed time is measured from case creation.
    """

    def __init__(
        self,
        case_service: CaseService,
        config: Optional[Settings] = None,
        clock: Clock = utc_now,
    ):
        self.case_service = case_service
        self.ledger = case_service.ledger
        self.config = config or settings
        self.clock = clock
        self.thresholds = self.config.escalation_thresholds
        self._worker = PeriodicWorker("escalation-sweep", self.config.ESCALATION_SWEEP_SECONDS, self.run_cycle)
        self.last_report: Optional[SweepReport] = None
        self.total_escalations = 0
        self.total_archived = 0

    def start(self) -> None:
        self._worker.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the periodic sweep; an in-flight sweep finishes first."""
        self._worker.stop(timeout=timeout)

    def run_cycle(self) -> None:
        self.sweep()
        self.archive_closed()

    def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        One escalation pass over every active case.

        Raises:
            ServiceUnavailable: Case service has been shut down
        """
        if not self.case_service.accepting:
            raise ServiceUnavailable("Case service is shut down")
        now = now or self.clock()
        report = SweepReport(started_at=now)

        for case_id in self.ledger.ids(status=CaseStatus.ACTIVE):
            report.checked += 1
            try:
                escalation, refreshed = self._process_case(case_id, now)
            except (NotFound, ServiceUnavailable) as e:
                logger.debug(f"Skipped case {case_id} during sweep: {e}")
                continue
            except Exception as e:
                report.failed[case_id] = str(e)
                logger.error(f"Escalation sweep failed for case {case_id}: {e}", exc_info=True)
                continue

            if refreshed:
                report.refreshed += 1
            if escalation is not None:
                report.escalated.append(escalation)

        self.total_escalations += len(report.escalated)
        self.last_report = report
        if report.escalated or report.failed:
            logger.info(
                f"Escalation sweep: checked={report.checked} escalated={len(report.escalated)} "
                f"failed={len(report.failed)}"
            )
        else:
            logger.debug(f"Escalation sweep: checked={report.checked}, nothing to escalate")
        return report

    def _process_case(self, case_id: str, now: datetime):
        with self.case_service.mutation(case_id) as case:
            if case.status != CaseStatus.ACTIVE:
                return None, False

            refreshed = self.case_service.apply_assessment(case, now)
            escalation = None
            threshold = self.thresholds.get(case.priority.value)
            elapsed = (now - case.created_at).total_seconds()

            if case.priority != Priority.CRITICAL and threshold is not None and elapsed > threshold:
                previous = case.priority
                case.priority = previous.next()
                entry = self.case_service.escalation_entry(previous, case.priority, now, {
                    "reason": f"Open {int(elapsed)}s, over the {threshold}s threshold for {previous.value}",
                    "elapsed_seconds": int(elapsed),
                    "threshold_seconds": threshold,
                })
                case.timeline.append(entry)
                case.updated_at = now
                case.last_activity_at = now
                escalation = Escalation(case_id, previous, case.priority, elapsed)

            if refreshed or escalation is not None:
                self.ledger.upsert(case)

        if escalation is not None:
            self.case_service.publish_escalation(
                case, escalation.previous_priority, escalation.new_priority, "time threshold exceeded"
            )
        return escalation, refreshed

    def archive_closed(self, now: Optional[datetime] = None) -> int:
        """
        Mark cases closed for more than AUTO_ARCHIVE_DAYS as archived.

        Returns:
            Number of cases archived
        """
        now = now or self.clock()
        cutoff = now - timedelta(days=self.config.AUTO_ARCHIVE_DAYS)
        archived = 0

        for case_id in self.ledger.ids(status=CaseStatus.CLOSED):
            try:
                with self.case_service.mutation(case_id) as case:
                    if not case.is_closed or case.archived or case.closed_at is None or case.closed_at > cutoff:
                        continue
                    case.archived = True
                    case.timeline.append(TimelineEntry(
                        id=generate_timeline_id(),
                        type=TimelineEntryType.CASE_ARCHIVED.value,
                        description=f"Archived after {self.config.AUTO_ARCHIVE_DAYS} days closed",
                        actor=SYSTEM_ACTOR,
                        timestamp=now,
                        data={"closed_at": case.closed_at.isoformat()},
                    ))
                    case.updated_at = now
                    self.ledger.upsert(case)
                archived += 1
                self.case_service.publish_event(CaseEventType.CASE_ARCHIVED, case, {})
            except (NotFound, ServiceUnavailable) as e:
                logger.debug(f"Skipped archiving case {case_id}: {e}")
            except Exception as e:
                logger.error(f"Auto-archive failed for case {case_id}: {e}", exc_info=True)

        if archived:
            self.total_archived += archived
            logger.info(f"Archived {archived} cases closed before {cutoff.isoformat()}")
        return archived

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": self._worker.is_running,
            "interval_seconds": self._worker.interval_seconds,
            "thresholds": self.thresholds,
            "total_escalations": self.total_escalations,
            "total_archived": self.total_archived,
            "last_sweep": self.last_report.to_dict() if self.last_report else None,
        }

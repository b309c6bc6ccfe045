"""
Risk Scoring - derived case fields (category, risk score/level, search radius).

DESIGN PRINCIPLES:
- Derived fields are SYSTEM-COMPUTED, never caller-supplied
- One pure function, re-run after every mutation touching subject or
  circumstance data and on every escalation sweep
- Score and radius never decrease as elapsed time grows
- All weights and thresholds are class-level configuration
"""

from datetime import datetime
from typing import List, Optional, Tuple

from safezone.models.case import (
    CaseCategory,
    CaseSubject,
    Circumstances,
    RiskAssessment,
    RiskLevel,
    TransportationMethod,
)
from safezone.utils.timeutils import hours_between, utc_now


class RiskScorer:
    """
    Scores a missing-person case.

    Factors:
    1. Age of the subject
    2. Medical conditions (cognitive impairment weighs most)
    3. Circumstances (motorized transport, signs of distress)
    4. Time elapsed since disappearance
    """

    # Configuration: Age points, checked in order, first match wins
    AGE_RULES: List[Tuple[str, int]] = [
        ("very_young_or_very_old", 3),  # <5 or >80
        ("young_or_elderly", 2),        # <12 or >65
        ("minor", 1),                   # <18
    ]

    # Configuration: Medical markers (substring match on normalized conditions)
    COGNITIVE_MARKERS = ("dementia", "alzheimer")
    COGNITIVE_POINTS = 3
    CHRONIC_MARKERS = ("diabetes", "heart_condition", "heart condition")
    CHRONIC_POINTS = 2
    ANY_CONDITION_POINTS = 1

    # Configuration: Circumstances
    VEHICLE_POINTS = 1
    DISTRESS_KEYWORD = "distress"
    DISTRESS_POINTS = 2

    # Configuration: Elapsed time (hours, points), highest threshold first
    ELAPSED_RULES: List[Tuple[float, int]] = [(24, 2), (12, 1)]

    # Configuration: Score -> level, highest threshold first
    LEVEL_THRESHOLDS: List[Tuple[int, RiskLevel]] = [
        (6, RiskLevel.CRITICAL),
        (4, RiskLevel.HIGH),
        (2, RiskLevel.MEDIUM),
    ]

    # Configuration: Search radius
    BASE_SEARCH_RADIUS = 2000  # meters
    TRANSPORT_MULTIPLIERS = {
        TransportationMethod.WALKING: 1.0,
        TransportationMethod.BICYCLE: 2.0,
        TransportationMethod.VEHICLE: 3.0,
        TransportationMethod.PUBLIC_TRANSPORT: 3.0,
        TransportationMethod.UNKNOWN: 1.0,
    }
    TIME_GROWTH_PER_HOUR = 0.1
    MAX_TIME_MULTIPLIER = 3.0

    # Configuration: Category
    CHILD_AGE_LIMIT = 18
    VULNERABLE_AGE = 65

    def assess(
        self,
        subject: CaseSubject,
        circumstances: Circumstances,
        now: Optional[datetime] = None,
    ) -> RiskAssessment:
        """
        Compute every derived field for a case.

        Args:
            subject: The missing person
            circumstances: Disappearance circumstances; time_of_disappearance
                drives the elapsed-time factors (None means just now)
            now: Evaluation time

        Returns:
            RiskAssessment with category, score, level, radius and the
            human-readable factors that contributed to the score
        """
        now = now or utc_now()
        hours = self.elapsed_hours(circumstances, now)
        conditions = subject.medical_conditions

        score = 0
        factors = []

        age_points = self._age_points(subject.age)
        if age_points:
            score += age_points
            factors.append(f"Age {subject.age} (+{age_points})")

        if self._has_marker(conditions, self.COGNITIVE_MARKERS):
            score += self.COGNITIVE_POINTS
            factors.append(f"Cognitive impairment (+{self.COGNITIVE_POINTS})")
        if self._has_marker(conditions, self.CHRONIC_MARKERS):
            score += self.CHRONIC_POINTS
            factors.append(f"Chronic condition (+{self.CHRONIC_POINTS})")
        if conditions:
            score += self.ANY_CONDITION_POINTS
            factors.append(f"Medical conditions reported (+{self.ANY_CONDITION_POINTS})")

        if circumstances.transportation_method == TransportationMethod.VEHICLE:
            score += self.VEHICLE_POINTS
            factors.append(f"Vehicle access (+{self.VEHICLE_POINTS})")
        if self.DISTRESS_KEYWORD in (circumstances.behavior_notes or "").lower():
            score += self.DISTRESS_POINTS
            factors.append(f"Signs of distress (+{self.DISTRESS_POINTS})")

        for threshold, points in self.ELAPSED_RULES:
            if hours > threshold:
                score += points
                factors.append(f"Missing over {threshold:g}h (+{points})")
                break

        return RiskAssessment(
            category=self.categorize(subject),
            risk_score=score,
            risk_level=self.level_for(score),
            search_radius_meters=self.search_radius(subject, circumstances, hours),
            factors=factors,
        )

    def categorize(self, subject: CaseSubject) -> CaseCategory:
        if subject.age is not None and subject.age < self.CHILD_AGE_LIMIT:
            return CaseCategory.CHILD
        if subject.age is not None and subject.age >= self.VULNERABLE_AGE:
            return CaseCategory.VULNERABLE_ADULT
        if self._has_marker(subject.medical_conditions, self.COGNITIVE_MARKERS):
            return CaseCategory.VULNERABLE_ADULT
        return CaseCategory.ADULT

    def level_for(self, score: int) -> RiskLevel:
        for threshold, level in self.LEVEL_THRESHOLDS:
            if score >= threshold:
                return level
        return RiskLevel.LOW

    def search_radius(self, subject: CaseSubject, circumstances: Circumstances, hours: float) -> int:
        age = subject.age
        if age is None:
            age_multiplier = 1.0
        elif age < 5:
            age_multiplier = 0.5
        elif age < 12:
            age_multiplier = 0.7
        elif age > 65:
            age_multiplier = 0.8
        else:
            age_multiplier = 1.0

        transport = self.TRANSPORT_MULTIPLIERS.get(circumstances.transportation_method, 1.0)
        time_multiplier = min(1 + self.TIME_GROWTH_PER_HOUR * max(hours, 0), self.MAX_TIME_MULTIPLIER)
        return round(self.BASE_SEARCH_RADIUS * age_multiplier * transport * time_multiplier)

    @staticmethod
    def elapsed_hours(circumstances: Circumstances, now: datetime) -> float:
        """Hours since disappearance, clamped at zero."""
        if circumstances.time_of_disappearance is None:
            return 0.0
        return max(hours_between(circumstances.time_of_disappearance, now), 0.0)

    def _age_points(self, age: Optional[int]) -> int:
        if age is None:
            return 0
        if age < 5 or age > 80:
            return self.AGE_RULES[0][1]
        if age < 12 or age > 65:
            return self.AGE_RULES[1][1]
        if age < self.CHILD_AGE_LIMIT:
            return self.AGE_RULES[2][1]
        return 0

    @staticmethod
    def _has_marker(conditions: List[str], markers) -> bool:
        return any(marker in condition for condition in conditions for marker in markers)


_default_scorer = RiskScorer()


def assess(
    subject: CaseSubject,
    circumstances: Circumstances,
    now: Optional[datetime] = None,
) -> RiskAssessment:
    """Module-level shortcut using the default scorer."""
    return _default_scorer.assess(subject, circumstances, now)

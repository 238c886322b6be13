"""Security score and letter grade from de-duplicated open vulnerabilities."""

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

# Penalty per open unified vulnerability (tunable; no magic numbers in logic).
SEVERITY_PENALTIES: dict[str, float] = {
    "critical": 10.0,
    "high": 5.0,
    "medium": 2.0,
    "low": 0.5,
    "info": 0.0,
}
# Applied on top of the severity penalty for every secrets finding.
SECRET_PENALTY = 15.0
# Awarded when there is no open critical or high vulnerability.
NO_CRITICAL_HIGH_BONUS = 10.0

MIN_SCORE = 0.0
MAX_SCORE = 100.0

# Lower bound (inclusive) -> grade, checked in order.
GRADE_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (90.0, "A"),
    (80.0, "B"),
    (70.0, "C"),
    (60.0, "D"),
)
FAILING_GRADE = "F"


@dataclass(frozen=True)
class ScoredVulnerability:
    """Minimal input for scoring: severity and scanner kind of one unified vulnerability."""

    severity: str
    kind: str


@dataclass
class SecurityScore:
    score: int
    grade: str
    breakdown: dict[str, Any] = field(default_factory=dict)


def grade_for(score: float) -> str:
    """Letter grade for a 0–100 score."""
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return FAILING_GRADE


def calculate_security_score(vulnerabilities: Iterable[ScoredVulnerability]) -> SecurityScore:
    """
    Deterministic weighted penalty from 100, plus a bounded bonus when nothing
    critical or high is open. Clamped to [0, 100] and rounded.
    """
    counts = {"critical": 0, "high": 0, "medium": 0, "low": 0, "info": 0, "secrets": 0}
    for v in vulnerabilities:
        if v.severity in counts:
            counts[v.severity] += 1
        if v.kind == "secrets":
            counts["secrets"] += 1

    penalty = sum(SEVERITY_PENALTIES[s] * counts[s] for s in SEVERITY_PENALTIES)
    penalty += SECRET_PENALTY * counts["secrets"]
    score = MAX_SCORE - penalty

    bonuses: dict[str, float] = {}
    if counts["critical"] == 0 and counts["high"] == 0:
        score += NO_CRITICAL_HIGH_BONUS
        bonuses["no_critical_high"] = NO_CRITICAL_HIGH_BONUS

    score = max(MIN_SCORE, min(MAX_SCORE, score))
    # Halves round up; the grade uses the unrounded score, so 89.5 shows as 90 with grade B.
    return SecurityScore(
        score=math.floor(score + 0.5),
        grade=grade_for(score),
        breakdown={"deductions": counts, "penalty": penalty, "bonuses": bonuses},
    )

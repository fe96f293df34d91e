# ABOUTME: Scores how likely a student is to fall behind from their result history.
# ABOUTME: Combines academic, trend, engagement, and consistency signals and rolls them up per class.

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from src.common.config import DEFAULT_CONFIG, EngineConfig, RiskConfig, RiskThresholds
from src.common.schemas import (
    AssessmentResult,
    Student,
    completed_only,
    ensure_utc,
    order_history,
    utc_now,
)
from src.common.trend import DECLINING, IMPROVING, classify_trend, score_volatility

logger = logging.getLogger(__name__)

LOW = "low"
MEDIUM = "medium"
HIGH = "high"
RISK_LEVELS = (LOW, MEDIUM, HIGH)

WORSENING = "worsening"
STABLE = "stable"
IMPROVING_RISK = "improving"

CRITICAL = "critical"
WARNING = "warning"
INFO = "info"

# (upper bound inclusive, sub-score); the last entry applies beyond every bound.
INCOMPLETE_STEPS: Tuple[Tuple[float, int], ...] = ((0, 0), (1, 40), (2, 70))
CONSECUTIVE_STEPS: Tuple[Tuple[float, int], ...] = ((0, 0), (1, 30), (2, 60), (3, 80))
VOLATILITY_STEPS: Tuple[Tuple[float, int], ...] = ((5, 0), (10, 30), (15, 50), (20, 70))
STEP_CEILING = 100

CRITICAL_GAP_DAYS = 30

TriggerValue = Union[float, int, str]


@dataclass(frozen=True)
class RiskFactors:
    academic: int = 0
    trend: int = 0
    engagement: int = 0
    consistency: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "academic": self.academic,
            "trend": self.trend,
            "engagement": self.engagement,
            "consistency": self.consistency,
        }


@dataclass(frozen=True)
class RiskTrigger:
    factor: str
    description: str
    value: TriggerValue
    threshold: TriggerValue
    severity: str


@dataclass(frozen=True)
class RiskAssessment:
    student_id: str
    student_name: str
    grade: int
    risk_factors: RiskFactors
    overall_risk_score: int
    risk_level: str
    trend: str
    trigger_factors: List[RiskTrigger] = field(default_factory=list)
    primary_concerns: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    average_score: float = 0.0
    assessment_count: int = 0
    last_assessment_at: Optional[datetime] = None
    generated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RiskFactorCount:
    factor: str
    count: int


@dataclass(frozen=True)
class ClassRiskSummary:
    class_id: str
    total_students: int
    high_risk_count: int
    medium_risk_count: int
    low_risk_count: int
    high_risk_students: List[RiskAssessment]
    medium_risk_students: List[RiskAssessment]
    common_risk_factors: List[RiskFactorCount]
    class_trend: str
    average_risk_score: int
    generated_at: datetime


@dataclass(frozen=True)
class _Signals:
    scores: Tuple[float, ...]
    average: float
    trend_direction: str
    trend_magnitude: float
    days_since_last: Optional[int]
    missed: int
    incomplete: int
    consecutive_low: int
    volatility: float
    failed: int


def _step(value: float, steps: Sequence[Tuple[float, int]]) -> int:
    for bound, score in steps:
        if value <= bound:
            return score
    return STEP_CEILING


def _clamp(value: float) -> int:
    return int(min(100, max(0, round(value))))


def risk_level_for(score: float, config: RiskConfig = DEFAULT_CONFIG.risk) -> str:
    if score >= config.high_threshold:
        return HIGH
    if score >= config.medium_threshold:
        return MEDIUM
    return LOW


def trailing_low_count(scores: Sequence[float], low_score: float) -> int:
    count = 0
    for score in reversed(scores):
        if score >= low_score:
            break
        count += 1
    return count


def academic_score(average: float, config: RiskConfig = DEFAULT_CONFIG.risk) -> int:
    """Inverted average with a step below the low and very-low thresholds."""

    t = config.thresholds
    score = 100.0 - average
    if average < t.low_score:
        score += t.low_score_step
    if average < t.very_low_score:
        score += t.very_low_score_step
    return _clamp(score)


def trend_score(scores: Sequence[float], config: EngineConfig = DEFAULT_CONFIG) -> int:
    if len(scores) < 2:
        return 0
    trend = classify_trend(scores, config.trend.threshold)
    if trend.direction == IMPROVING:
        return 0
    if trend.direction != DECLINING:
        return 30
    limit = abs(config.risk.thresholds.declining_trend_threshold)
    decline = abs(trend.difference)
    if decline >= limit * 1.5:
        return 100
    if decline >= limit:
        return 85
    return 60


def missed_steps(thresholds: RiskThresholds) -> Tuple[Tuple[float, int], ...]:
    """Missed-assessment bands centred on ``missed_assessments_threshold`` (0/1/2/3 by default)."""

    limit = thresholds.missed_assessments_threshold
    return ((0, 0), (max(limit - 1, 0), 30), (limit, 60), (limit + 1, 80))


def frequency_steps(thresholds: RiskThresholds) -> Tuple[Tuple[float, int], ...]:
    """Days-since-last bands scaled from ``days_since_assessment_threshold`` (7/14/21/30 by default)."""

    limit = thresholds.days_since_assessment_threshold
    return ((limit / 2, 0), (limit, 30), (limit * 1.5, 50), (max(CRITICAL_GAP_DAYS, limit * 2), 70))


def engagement_score(
    days_since_last: Optional[int],
    missed: int,
    incomplete: int,
    config: RiskConfig = DEFAULT_CONFIG.risk,
) -> int:
    missed_component = _step(missed, missed_steps(config.thresholds))
    frequency_component = 0
    if days_since_last is not None:
        frequency_component = _step(days_since_last, frequency_steps(config.thresholds))
    incomplete_component = _step(incomplete, INCOMPLETE_STEPS)
    return _clamp(0.4 * missed_component + 0.4 * frequency_component + 0.2 * incomplete_component)


def consistency_score(scores: Sequence[float], config: RiskConfig = DEFAULT_CONFIG.risk) -> int:
    consecutive = trailing_low_count(scores, config.thresholds.low_score) if len(scores) >= 3 else 0
    consecutive_component = _step(consecutive, CONSECUTIVE_STEPS)
    volatility_component = _step(score_volatility(scores), VOLATILITY_STEPS) if len(scores) >= 2 else 0
    return _clamp((2 * consecutive_component + volatility_component) / 3)


def overall_risk_score(factors: RiskFactors, config: RiskConfig = DEFAULT_CONFIG.risk) -> int:
    w = config.weights
    weighted = (
        factors.academic * w.academic
        + factors.trend * w.trend
        + factors.engagement * w.engagement
        + factors.consistency * w.consistency
    )
    return _clamp(weighted)


def _collect_signals(
    ordered: Sequence[AssessmentResult],
    config: EngineConfig,
    as_of: datetime,
    expected_assessments: Optional[int],
) -> _Signals:
    completed = completed_only(ordered)
    scores = tuple(float(r.percentage) for r in completed)
    thresholds = config.risk.thresholds

    days_since_last: Optional[int] = None
    if completed:
        elapsed = as_of - ensure_utc(completed[-1].completed_at)
        days_since_last = max(0, int(elapsed.total_seconds() // 86400))

    trend = classify_trend(scores, config.trend.threshold)
    missed = max(0, expected_assessments - len(completed)) if expected_assessments is not None else 0
    return _Signals(
        scores=scores,
        average=float(np.mean(scores)) if scores else 0.0,
        trend_direction=trend.direction,
        trend_magnitude=abs(trend.difference),
        days_since_last=days_since_last,
        missed=missed,
        incomplete=len(ordered) - len(completed),
        consecutive_low=trailing_low_count(scores, thresholds.low_score) if len(scores) >= 3 else 0,
        volatility=score_volatility(scores),
        failed=sum(1 for s in scores if s < thresholds.low_score),
    )


def _identify_triggers(factors: RiskFactors, signals: _Signals, config: RiskConfig) -> List[RiskTrigger]:
    t = config.thresholds
    gates = config.triggers
    triggers: List[RiskTrigger] = []

    if factors.academic >= gates.academic:
        triggers.append(
            RiskTrigger(
                factor="Low Academic Score",
                description="Overall performance is below expected level",
                value=round(signals.average, 1),
                threshold=t.low_score,
                severity=CRITICAL if signals.average < t.very_low_score else WARNING,
            )
        )
    if factors.trend >= gates.trend:
        triggers.append(
            RiskTrigger(
                factor="Declining Performance",
                description="Performance trend is declining",
                value=round(-signals.trend_magnitude, 1),
                threshold=t.declining_trend_threshold,
                severity=CRITICAL if factors.trend >= 80 else WARNING,
            )
        )
    if factors.engagement >= gates.engagement:
        days = signals.days_since_last if signals.days_since_last is not None else 0
        critical = days > CRITICAL_GAP_DAYS or signals.missed >= t.missed_assessments_threshold
        triggers.append(
            RiskTrigger(
                factor="Low Engagement",
                description="Missed assessments or a long gap since the last assessment",
                value=f"{days} days, {signals.missed} missed, {signals.incomplete} incomplete",
                threshold=f"{t.days_since_assessment_threshold} days",
                severity=CRITICAL if critical else WARNING,
            )
        )
    if factors.consistency >= gates.consistency:
        triggers.append(
            RiskTrigger(
                factor="Consecutive Low Scores",
                description="Multiple consecutive low scores",
                value=signals.consecutive_low,
                threshold=t.consecutive_low_threshold,
                severity=CRITICAL if signals.consecutive_low >= t.consecutive_low_threshold else WARNING,
            )
        )
    if signals.volatility > t.volatility_threshold:
        triggers.append(
            RiskTrigger(
                factor="Inconsistent Performance",
                description="High variability in scores",
                value=round(signals.volatility, 1),
                threshold=t.volatility_threshold,
                severity=INFO,
            )
        )
    if signals.failed >= t.failed_assessments_threshold:
        triggers.append(
            RiskTrigger(
                factor="Multiple Failed Assessments",
                description="Has failed multiple assessments",
                value=signals.failed,
                threshold=t.failed_assessments_threshold,
                severity=INFO,
            )
        )
    return triggers


def _largest_contributor(factors: RiskFactors, config: RiskConfig) -> Tuple[str, float]:
    weights = config.weights
    contributions = [
        ("academic", factors.academic * weights.academic),
        ("trend", factors.trend * weights.trend),
        ("engagement", factors.engagement * weights.engagement),
        ("consistency", factors.consistency * weights.consistency),
    ]
    return max(contributions, key=lambda item: item[1])


def _recommended_actions(factors: RiskFactors, level: str, signals: _Signals, config: RiskConfig) -> List[str]:
    gates = config.triggers
    actions: List[str] = []
    if level == HIGH:
        actions.extend(
            [
                "Schedule immediate one-on-one meeting with student",
                "Contact parent/guardian to discuss concerns",
                "Create individualized support plan",
            ]
        )
    if factors.academic >= gates.academic:
        actions.extend(["Provide additional practice materials", "Consider peer tutoring or small group instruction"])
    if factors.trend >= gates.trend:
        actions.extend(["Identify recent changes affecting performance", "Increase frequency of formative assessments"])
    if factors.engagement >= gates.engagement:
        actions.extend(["Check on student attendance and engagement", "Schedule make-up assessments"])
    if factors.consistency >= gates.consistency:
        actions.extend(["Review foundational skills", "Implement daily check-ins"])
    if signals.volatility > config.thresholds.volatility_threshold:
        actions.extend(["Establish consistent study routine", "Monitor for external factors affecting performance"])
    if not actions:
        actions.append("Continue monitoring student progress")
    return actions[: config.max_recommended_actions]


def assess_risk(
    history: Sequence[AssessmentResult],
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
    expected_assessments: Optional[int] = None,
    student: Optional[Student] = None,
) -> RiskAssessment:
    """
    Derive a RiskAssessment from one student's result history.

    ``as_of`` anchors the days-since-last-assessment signal; pass a fixed value
    to make the output reproducible. In-progress results only feed the
    engagement signal.
    """

    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    ordered = order_history(history)
    risk_cfg = config.risk

    student_id = student.id if student else (ordered[0].student_id if ordered else "")
    student_name = student.name if student else (ordered[-1].student_name if ordered else "")
    grade = student.grade if student else (ordered[-1].grade if ordered else 0)

    if not ordered:
        return RiskAssessment(
            student_id=student_id,
            student_name=student_name,
            grade=grade,
            risk_factors=RiskFactors(),
            overall_risk_score=0,
            risk_level=LOW,
            trend=STABLE,
            recommended_actions=["Continue monitoring student progress"],
            generated_at=as_of,
        )

    signals = _collect_signals(ordered, config, as_of, expected_assessments)
    factors = RiskFactors(
        academic=academic_score(signals.average, risk_cfg) if signals.scores else 0,
        trend=trend_score(signals.scores, config),
        engagement=engagement_score(signals.days_since_last, signals.missed, signals.incomplete, risk_cfg),
        consistency=consistency_score(signals.scores, risk_cfg),
    )
    overall = overall_risk_score(factors, risk_cfg)
    level = risk_level_for(overall, risk_cfg)

    triggers = _identify_triggers(factors, signals, risk_cfg)
    if level != LOW and not triggers:
        name, contribution = _largest_contributor(factors, risk_cfg)
        triggers.append(
            RiskTrigger(
                factor="Elevated Overall Risk",
                description=f"Combined risk signals are elevated, led by the {name} factor",
                value=overall,
                threshold=risk_cfg.medium_threshold,
                severity=WARNING,
            )
        )
        logger.debug("Student %s: no factor trigger fired at level %s; %s contributes %.1f", student_id, level, name, contribution)

    if signals.trend_direction == DECLINING:
        trend = WORSENING
    elif signals.trend_direction == IMPROVING:
        trend = IMPROVING_RISK
    else:
        trend = STABLE

    completed = completed_only(ordered)
    return RiskAssessment(
        student_id=student_id,
        student_name=student_name,
        grade=grade,
        risk_factors=factors,
        overall_risk_score=overall,
        risk_level=level,
        trend=trend,
        trigger_factors=triggers,
        primary_concerns=[t.description for t in triggers if t.severity in (CRITICAL, WARNING)],
        recommended_actions=_recommended_actions(factors, level, signals, risk_cfg),
        average_score=round(signals.average, 1),
        assessment_count=len(completed),
        last_assessment_at=ensure_utc(completed[-1].completed_at) if completed else None,
        generated_at=as_of,
    )


def class_score_trend(results: Sequence[AssessmentResult], config: EngineConfig = DEFAULT_CONFIG) -> str:
    """Trend over per-assessment class means, ordered by each assessment's first completion."""

    firsts: Dict[str, datetime] = {}
    totals: Dict[str, List[float]] = {}
    for result in completed_only(order_history(results)):
        firsts.setdefault(result.assessment_id, ensure_utc(result.completed_at))
        totals.setdefault(result.assessment_id, []).append(float(result.percentage))

    ordered_ids = sorted(firsts, key=lambda aid: (firsts[aid], aid))
    means = [float(np.mean(totals[aid])) for aid in ordered_ids]
    direction = classify_trend(means, config.trend.threshold).direction
    if direction == DECLINING:
        return WORSENING
    if direction == IMPROVING:
        return IMPROVING_RISK
    return STABLE


def assess_class_risk(
    assessments: Sequence[RiskAssessment],
    results: Sequence[AssessmentResult] = (),
    class_id: str = "",
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
    total_students: Optional[int] = None,
) -> ClassRiskSummary:
    """Roll student assessments up into a class summary."""

    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    by_score = sorted(assessments, key=lambda a: (-a.overall_risk_score, a.student_id))
    high = [a for a in by_score if a.risk_level == HIGH]
    medium = [a for a in by_score if a.risk_level == MEDIUM]
    low = [a for a in by_score if a.risk_level == LOW]

    factor_counts: Counter = Counter(t.factor for a in assessments for t in a.trigger_factors)
    common = [
        RiskFactorCount(factor=factor, count=count)
        for factor, count in sorted(factor_counts.items(), key=lambda item: (-item[1], item[0]))[:5]
    ]

    average = round(float(np.mean([a.overall_risk_score for a in assessments]))) if assessments else 0
    return ClassRiskSummary(
        class_id=class_id,
        total_students=len(assessments) if total_students is None else total_students,
        high_risk_count=len(high),
        medium_risk_count=len(medium),
        low_risk_count=len(low),
        high_risk_students=high,
        medium_risk_students=medium,
        common_risk_factors=common,
        class_trend=class_score_trend(results, config),
        average_risk_score=average,
        generated_at=as_of,
    )


def assess_roster(
    histories: Mapping[str, Sequence[AssessmentResult]],
    students: Sequence[Student] = (),
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
    expected_assessments: Optional[int] = None,
) -> List[RiskAssessment]:
    """Assess every student in ``students`` (or every history key when no roster is given)."""

    roster = list(students)
    if roster:
        return [
            assess_risk(histories.get(s.id, ()), config, as_of, expected_assessments, student=s) for s in roster
        ]
    return [assess_risk(histories[sid], config, as_of, expected_assessments) for sid in sorted(histories)]

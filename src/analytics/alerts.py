# ABOUTME: Proposes risk alerts when a student's assessment changes meaningfully.
# ABOUTME: Consults an external alert log for cooldowns and never persists alerts itself.

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from src.common.config import DEFAULT_CONFIG, EngineConfig
from src.common.schemas import ensure_utc, utc_now
from src.common.store import AlertLog

from .risk import CRITICAL, HIGH, LOW, MEDIUM, WARNING, WORSENING, RiskAssessment

logger = logging.getLogger(__name__)

NEW_HIGH_RISK = "new_high_risk"
NEW_MEDIUM_RISK = "new_medium_risk"
RISK_INCREASED = "risk_increased"
DECLINING_TREND = "declining_trend"
ALERT_TYPES = (NEW_HIGH_RISK, NEW_MEDIUM_RISK, RISK_INCREASED, DECLINING_TREND)


@dataclass(frozen=True)
class RiskAlert:
    id: str
    student_id: str
    student_name: str
    alert_type: str
    severity: str
    message: str
    risk_score: int
    previous_risk_score: Optional[int]
    created_at: datetime


def _candidate_alerts(current: RiskAssessment, previous: Optional[RiskAssessment], config: EngineConfig):
    name = current.student_name or current.student_id
    previous_score = previous.overall_risk_score if previous else None

    if current.risk_level == HIGH and (previous is None or previous.risk_level != HIGH):
        yield (
            NEW_HIGH_RISK,
            CRITICAL,
            f"{name} is now at HIGH RISK with a risk score of {current.overall_risk_score}",
        )
    if current.risk_level == MEDIUM and (previous is None or previous.risk_level == LOW):
        yield (
            NEW_MEDIUM_RISK,
            WARNING,
            f"{name} has moved to MEDIUM RISK with a risk score of {current.overall_risk_score}",
        )
    if previous_score is not None:
        increase = current.overall_risk_score - previous_score
        if increase >= config.risk.risk_increase_alert_points:
            yield (RISK_INCREASED, WARNING, f"{name}'s risk score increased by {increase} points")
    if current.trend == WORSENING and (previous is None or previous.trend != WORSENING):
        yield (DECLINING_TREND, WARNING, f"{name} is showing a declining performance trend")


def _in_cooldown(last: Optional[datetime], now: datetime, cooldown_days: int) -> bool:
    if last is None or cooldown_days <= 0:
        return False
    return now - ensure_utc(last) < timedelta(days=cooldown_days)


def generate_risk_alerts(
    assessments: Sequence[RiskAssessment],
    alert_log: AlertLog,
    config: EngineConfig = DEFAULT_CONFIG,
    now: Optional[datetime] = None,
    previous: Optional[Mapping[str, RiskAssessment]] = None,
) -> List[RiskAlert]:
    """
    Propose alerts for students entering high/medium risk, large risk increases,
    and newly worsening trends.

    A proposal is dropped when the alert log holds an alert of the same type
    for the student within ``alert_cooldown_days``. Critical alerts sort first,
    then higher risk scores.
    """

    now = ensure_utc(now) if now is not None else utc_now()
    previous = previous or {}
    cooldown = config.risk.alert_cooldown_days
    alerts: List[RiskAlert] = []

    for current in assessments:
        prior = previous.get(current.student_id)
        for alert_type, severity, message in _candidate_alerts(current, prior, config):
            last = alert_log.get_last_alert_time(current.student_id, alert_type)
            if _in_cooldown(last, now, cooldown):
                logger.debug("Suppressed %s alert for %s (last sent %s)", alert_type, current.student_id, last)
                continue
            alerts.append(
                RiskAlert(
                    id=f"alert-{current.student_id}-{alert_type}-{now:%Y%m%d%H%M%S}",
                    student_id=current.student_id,
                    student_name=current.student_name,
                    alert_type=alert_type,
                    severity=severity,
                    message=message,
                    risk_score=current.overall_risk_score,
                    previous_risk_score=prior.overall_risk_score if prior else None,
                    created_at=now,
                )
            )

    return sorted(
        alerts,
        key=lambda a: (a.severity != CRITICAL, -a.risk_score, a.student_id, ALERT_TYPES.index(a.alert_type)),
    )


def record_alerts(alerts: Iterable[RiskAlert], alert_log: AlertLog) -> int:
    """Persist delivered alerts through the caller's alert log; returns the count recorded."""

    count = 0
    for alert in alerts:
        alert_log.record_alert(alert.student_id, alert.alert_type, alert.created_at)
        count += 1
    return count


def alerts_frame(alerts: Sequence[RiskAlert]) -> pd.DataFrame:
    columns = [
        "id",
        "student_id",
        "student_name",
        "alert_type",
        "severity",
        "message",
        "risk_score",
        "previous_risk_score",
        "created_at",
    ]
    return pd.DataFrame([[getattr(a, c) for c in columns] for a in alerts], columns=columns)

# ABOUTME: Tests multi-factor risk scoring, triggers, and class roll-ups.
# ABOUTME: Uses fixed as-of timestamps so day-gap signals are reproducible.

import unittest
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from src.analytics.risk import (
    academic_score,
    assess_class_risk,
    assess_risk,
    engagement_score,
    frequency_steps,
    missed_steps,
    risk_level_for,
)
from src.common.config import DEFAULT_CONFIG, EngineConfig, RiskConfig, RiskThresholds
from src.common.schemas import STATUS_IN_PROGRESS, AssessmentResult, Student

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


def _history(scores, student_id="s1", spacing_days=7, subject="Mathematics", start=START):
    return [
        AssessmentResult(
            student_id=student_id,
            student_name=f"Student {student_id}",
            assessment_id=f"a{i + 1}",
            subject=subject,
            grade=5,
            percentage=float(score),
            completed_at=start + timedelta(days=spacing_days * i),
        )
        for i, score in enumerate(scores)
    ]


def _day_after(history, days=1):
    return history[-1].completed_at + timedelta(days=days)


def test_default_weights_sum_to_one():
    assert DEFAULT_CONFIG.risk.weights.total() == pytest.approx(1.0, abs=1e-6)


class LowAverageScenarioTests(unittest.TestCase):
    """Three weekly results of 40, 45 and 38 with nothing missed."""

    def setUp(self):
        self.history = _history([40, 45, 38])
        self.assessment = assess_risk(self.history, as_of=_day_after(self.history))

    def test_trend_is_stable(self):
        self.assertEqual(self.assessment.trend, "stable")
        self.assertEqual(self.assessment.risk_factors.trend, 30)

    def test_sub_scores(self):
        factors = self.assessment.risk_factors
        self.assertEqual(factors.academic, 74)
        self.assertEqual(factors.engagement, 0)
        self.assertEqual(factors.consistency, 53)

    def test_weighted_score_lands_in_medium(self):
        self.assertEqual(self.assessment.overall_risk_score, 46)
        self.assertEqual(self.assessment.risk_level, "medium")

    def test_average_above_very_low_yields_warning_not_critical(self):
        academic = next(t for t in self.assessment.trigger_factors if t.factor == "Low Academic Score")
        self.assertEqual(academic.severity, "warning")
        self.assertEqual(academic.value, 41.0)
        self.assertIn("Overall performance is below expected level", self.assessment.primary_concerns)

    def test_failed_assessments_reported_as_info(self):
        failed = next(t for t in self.assessment.trigger_factors if t.factor == "Multiple Failed Assessments")
        self.assertEqual(failed.severity, "info")
        self.assertEqual(failed.value, 3)


def test_academic_score_boundaries():
    assert academic_score(80) == 20
    assert academic_score(60) == 40
    assert academic_score(59) == 56
    assert academic_score(41) == 74
    assert academic_score(40) == 75
    assert academic_score(39) == 91
    assert academic_score(0) == 100


def test_high_risk_student_with_long_gap():
    history = _history([30, 25, 20, 15])
    assessment = assess_risk(history, as_of=_day_after(history, days=40), expected_assessments=6)

    assert assessment.risk_factors.academic == 100
    assert assessment.risk_factors.trend == 85
    assert assessment.risk_factors.engagement == 64
    assert assessment.risk_factors.consistency == 77
    assert assessment.overall_risk_score == 85
    assert assessment.risk_level == "high"
    assert assessment.trend == "worsening"

    severities = {t.factor: t.severity for t in assessment.trigger_factors}
    assert severities["Low Academic Score"] == "critical"
    assert severities["Declining Performance"] == "critical"
    assert severities["Low Engagement"] == "critical"
    assert severities["Consecutive Low Scores"] == "critical"
    assert assessment.recommended_actions[0] == "Schedule immediate one-on-one meeting with student"
    assert len(assessment.recommended_actions) == 5


def test_engagement_bands_follow_configured_thresholds():
    assert frequency_steps(RiskThresholds()) == ((7, 0), (14, 30), (21, 50), (30, 70))
    assert missed_steps(RiskThresholds()) == ((0, 0), (1, 30), (2, 60), (3, 80))

    relaxed = RiskConfig(thresholds=RiskThresholds(days_since_assessment_threshold=28, missed_assessments_threshold=4))
    assert engagement_score(20, 0, 0) == 20
    assert engagement_score(20, 0, 0, relaxed) == 12
    assert engagement_score(None, 3, 0) == 32
    assert engagement_score(None, 3, 0, relaxed) == 12


def test_assess_risk_engagement_uses_config_thresholds():
    history = _history([80, 80, 80])
    as_of = _day_after(history, 20)
    relaxed = EngineConfig(risk=RiskConfig(thresholds=RiskThresholds(days_since_assessment_threshold=28)))

    assert assess_risk(history, as_of=as_of).risk_factors.engagement == 20
    assert assess_risk(history, relaxed, as_of=as_of).risk_factors.engagement == 12


def test_empty_history_is_low_risk_with_zero_factors():
    assessment = assess_risk([], as_of=START, student=Student(id="s9", name="New Student"))
    assert assessment.student_id == "s9"
    assert assessment.risk_level == "low"
    assert assessment.overall_risk_score == 0
    assert assessment.risk_factors.as_dict() == {"academic": 0, "trend": 0, "engagement": 0, "consistency": 0}
    assert assessment.trigger_factors == []


def test_in_progress_results_count_as_incomplete_only():
    history = _history([85, 90])
    pending = [
        AssessmentResult(
            student_id="s1",
            student_name="Student s1",
            assessment_id=f"p{i}",
            subject="Mathematics",
            grade=5,
            percentage=0.0,
            completed_at=history[-1].completed_at + timedelta(hours=i + 1),
            status=STATUS_IN_PROGRESS,
        )
        for i in range(2)
    ]
    assessment = assess_risk(history + pending, as_of=_day_after(history))
    assert assessment.average_score == 87.5
    assert assessment.assessment_count == 2
    assert assessment.risk_factors.engagement == 14


def test_fallback_trigger_when_level_elevated_without_factor_triggers():
    config = EngineConfig(risk=RiskConfig(medium_threshold=10))
    history = _history([70, 72, 71])
    assessment = assess_risk(history, config, as_of=_day_after(history))

    assert assessment.risk_level == "medium"
    assert [t.factor for t in assessment.trigger_factors] == ["Elevated Overall Risk"]
    assert "academic" in assessment.trigger_factors[0].description


def test_risk_is_deterministic():
    history = _history([55, 62, 48, 51])
    as_of = _day_after(history, days=10)
    assert assess_risk(history, as_of=as_of) == assess_risk(list(reversed(history)), as_of=as_of)


def test_bounds_level_consistency_and_explainability_over_random_histories():
    rng = np.random.RandomState(11)
    for trial in range(200):
        history = _history(rng.randint(0, 101, size=rng.randint(1, 9)).tolist())
        assessment = assess_risk(
            history,
            as_of=_day_after(history, days=int(rng.randint(0, 60))),
            expected_assessments=int(rng.randint(0, 10)),
        )
        score = assessment.overall_risk_score
        assert 0 <= score <= 100, trial
        for value in assessment.risk_factors.as_dict().values():
            assert 0 <= value <= 100, trial
        assert assessment.risk_level == risk_level_for(score)
        if assessment.risk_level != "low":
            assert assessment.trigger_factors, trial


def test_risk_level_is_monotonic_in_score():
    rank = {"low": 0, "medium": 1, "high": 2}
    levels = [rank[risk_level_for(score)] for score in range(0, 101)]
    assert levels == sorted(levels)
    assert risk_level_for(39) == "low"
    assert risk_level_for(40) == "medium"
    assert risk_level_for(70) == "high"


def test_class_summary_rollup():
    strong = _history([90, 92, 95], student_id="s1")
    weak = _history([30, 25, 20, 15], student_id="s2")
    middle = _history([40, 45, 38], student_id="s3")
    as_of = START + timedelta(days=30)
    assessments = [assess_risk(h, as_of=as_of) for h in (strong, weak, middle)]

    summary = assess_class_risk(assessments, strong + weak + middle, class_id="t1", as_of=as_of)

    assert summary.total_students == 3
    assert summary.high_risk_count + summary.medium_risk_count + summary.low_risk_count == 3
    assert [a.student_id for a in summary.high_risk_students] == ["s2"]
    assert summary.common_risk_factors[0].factor == "Low Academic Score"
    assert summary.common_risk_factors[0].count == 2
    counts = [f.count for f in summary.common_risk_factors]
    assert counts == sorted(counts, reverse=True)
    assert len(summary.common_risk_factors) <= 5
    assert summary.average_risk_score == round(np.mean([a.overall_risk_score for a in assessments]))


def test_class_trend_uses_per_assessment_means():
    first = _history([80, 60], student_id="s1")
    second = _history([84, 58], student_id="s2")
    summary = assess_class_risk([], first + second, as_of=START)
    assert summary.class_trend == "worsening"
    assert summary.total_students == 0
    assert summary.average_risk_score == 0

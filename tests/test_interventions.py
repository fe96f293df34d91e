# ABOUTME: Tests student context building and rule-driven intervention planning.
# ABOUTME: Exercises subject overrides, fallback selection, ranking, and rule table validation.

import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from src.analytics.interventions import (
    build_student_context,
    load_intervention_rules,
    plan_at_risk_interventions,
    plan_interventions,
)
from src.common.config import EngineConfig, InterventionConfig, RiskConfig, RiskThresholds
from src.common.errors import ConfigError
from src.common.schemas import MULTIPLE_CHOICE, AssessmentResult, Question, SubmittedAnswer

START = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)
AS_OF = START + timedelta(days=60)


def _history(entries, student_id="s1"):
    """entries: iterable of (subject, percentage) in completion order."""

    return [
        AssessmentResult(
            student_id=student_id,
            student_name="Bilal",
            assessment_id=f"a{i + 1}",
            subject=subject,
            grade=6,
            percentage=float(score),
            completed_at=START + timedelta(days=3 * i),
        )
        for i, (subject, score) in enumerate(entries)
    ]


def _plan(entries, **kwargs):
    context = build_student_context(_history(entries), as_of=AS_OF)
    return plan_interventions(context, as_of=AS_OF, **kwargs)


TWO_WEAK_SUBJECTS = [("Mathematics", 40), ("English", 50)] * 3


class StudentContextTests(unittest.TestCase):
    def test_subjects_sorted_weakest_first(self):
        context = build_student_context(_history(TWO_WEAK_SUBJECTS), as_of=AS_OF)
        self.assertEqual([s.subject for s in context.subject_performance], ["Mathematics", "English"])
        self.assertEqual([s.subject for s in context.weak_subjects], ["Mathematics", "English"])
        self.assertEqual(context.strong_subjects, [])
        self.assertEqual(context.average_score, 45)
        self.assertEqual(context.performance_tier, "Needs Support")
        self.assertEqual(context.total_assessments, 6)

    def test_recent_scores_window_and_days_since(self):
        context = build_student_context(_history(TWO_WEAK_SUBJECTS), as_of=AS_OF)
        self.assertEqual(context.recent_scores, [50.0, 40.0, 50.0, 40.0, 50.0])
        self.assertEqual(context.days_since_last_assessment, 45)

    def test_empty_history_is_no_data(self):
        context = build_student_context([], as_of=AS_OF)
        self.assertEqual(context.performance_tier, "No Data")
        self.assertEqual(context.total_assessments, 0)
        self.assertIsNone(context.days_since_last_assessment)

    def test_question_type_breakdown(self):
        questions = {"a1": [Question(id=f"q{i}", type=MULTIPLE_CHOICE, correct_answer=0) for i in range(5)]}
        result = replace(
            _history([("Science", 65)])[0],
            answers=tuple(
                SubmittedAnswer(question_id=f"q{i}", answer=0 if i < 2 else 1, is_correct=i < 2, points=float(i < 2))
                for i in range(5)
            ),
        )
        context = build_student_context([result], as_of=AS_OF, questions=questions)
        self.assertEqual(len(context.question_type_performance), 1)
        perf = context.question_type_performance[0]
        self.assertEqual((perf.type, perf.correct_rate, perf.total_questions), (MULTIPLE_CHOICE, 40, 5))


def test_default_rule_table_loads():
    rules = load_intervention_rules()
    assert rules.version == "2025.2"
    assert [r.id for r in rules.rules][0] == "foundational"
    assert sum(1 for r in rules.rules if r.fallback) == 1


def test_two_weak_subjects_get_ordered_skill_gap_interventions():
    plan = _plan(TWO_WEAK_SUBJECTS)

    assert plan.overall_priority == "critical"
    first = plan.interventions[0]
    assert first.title == "Math Foundations Builder"
    assert first.category == "foundational"
    assert first.id == "math-found-number-sense-and-operations-s1"

    skill_gaps = [i.target_area for i in plan.interventions if i.rule_id == "skill-gap"]
    assert skill_gaps == ["English skills", "Specific math skills (Mathematics)"]
    assert "Focus areas include: Mathematics, English." in plan.summary
    assert plan.rules_version == "2025.2"


def test_interventions_are_unique_and_capped():
    config = EngineConfig(interventions=InterventionConfig(max_recommendations=2))
    context = build_student_context(_history(TWO_WEAK_SUBJECTS), config, as_of=AS_OF)
    plan = plan_interventions(context, config=config, as_of=AS_OF)
    assert len(plan.interventions) == 2
    assert [i.target_area for i in plan.interventions] == ["Number sense and operations", "English skills"]

    full = _plan(TWO_WEAK_SUBJECTS)
    ids = [i.id for i in full.interventions]
    assert len(ids) == len(set(ids))


def test_volatile_student_gets_consistency_quick_win():
    plan = _plan([("Science", s) for s in (40, 95, 45, 100, 50)])
    assert plan.context.volatility == pytest.approx(25.96, abs=0.01)
    assert [i.rule_id for i in plan.interventions] == ["consistency"]
    assert [i.rule_id for i in plan.quick_wins] == ["consistency"]
    assert plan.overall_priority == "medium"
    assert len(plan.weekly_focus) == 4
    assert {w.focus for w in plan.weekly_focus} == {"Study habits"}


def test_high_achiever_gets_advancement():
    plan = _plan([("Science", s) for s in (92, 95, 94)])
    assert [i.rule_id for i in plan.interventions] == ["advancement"]
    assert plan.overall_priority == "low"


def test_fallback_when_nothing_else_matches():
    plan = _plan([("Science", s) for s in (70, 72, 71)])
    assert [i.title for i in plan.interventions] == ["General Skill Reinforcement"]
    assert plan.interventions[0].id == "skill-general-general-skill-reinforcement-s1"


def test_empty_history_only_gets_fallback():
    context = build_student_context([], as_of=AS_OF)
    plan = plan_interventions(context, as_of=AS_OF)
    assert [i.rule_id for i in plan.interventions] == ["general-reinforcement"]
    assert "no completed assessments" in plan.summary


def test_risk_signals_drive_engagement_rules():
    context = build_student_context(_history([("Science", s) for s in (70, 72, 71)]), as_of=AS_OF)
    context = replace(context, risk_level="high", risk_triggers=("Low Engagement",))
    plan = plan_interventions(context, as_of=AS_OF)
    assert [i.rule_id for i in plan.interventions] == ["intensive-support", "re-engagement"]
    assert [i.rule_id for i in plan.quick_wins] == ["re-engagement"]


def test_weak_question_type_triggers_strategy_training():
    questions = {"a1": [Question(id=f"q{i}", type=MULTIPLE_CHOICE, correct_answer=0) for i in range(5)]}
    result = replace(
        _history([("Science", 72)])[0],
        answers=tuple(
            SubmittedAnswer(question_id=f"q{i}", answer=0, is_correct=i < 2, points=float(i < 2)) for i in range(5)
        ),
    )
    context = build_student_context([result], as_of=AS_OF, questions=questions)
    plan = plan_interventions(context, as_of=AS_OF)
    assert [i.rule_id for i in plan.interventions] == ["question-type-choice"]


def test_at_risk_plans_cover_struggling_students_most_urgent_first():
    histories = {
        "s5": _history([("Mathematics", 64), ("Mathematics", 66), ("Mathematics", 65)], student_id="s5"),
        "s1": _history([("Mathematics", 30), ("Mathematics", 35), ("Mathematics", 40)], student_id="s1"),
        "s2": _history([("Mathematics", 85), ("Mathematics", 90), ("Mathematics", 88)], student_id="s2"),
        "s4": [],
    }

    plans = plan_at_risk_interventions(histories, as_of=AS_OF)
    assert [p.student_id for p in plans] == ["s1"]
    assert plans[0].overall_priority == "critical"

    stricter = EngineConfig(risk=RiskConfig(thresholds=RiskThresholds(low_score=70)))
    plans = plan_at_risk_interventions(histories, config=stricter, as_of=START + timedelta(days=7))
    assert [p.student_id for p in plans] == ["s1", "s5"]
    assert plans[0].overall_priority == "critical"
    assert plans[1].context.performance_tier == "Developing"


def test_rule_table_rejects_unknown_category(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "version: '1'\n"
        "rules:\n"
        "  - id: odd\n"
        "    category: homework\n"
        "    when: [{max_average_score: 50}]\n"
        "    template: {id: t, title: T, description: D, target_area: X, priority: high}\n"
    )
    with pytest.raises(ConfigError):
        load_intervention_rules(path)


def test_rule_table_rejects_unknown_condition(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "version: '1'\n"
        "rules:\n"
        "  - id: odd\n"
        "    category: skill-gap\n"
        "    when: [{shoe_size: 9}]\n"
        "    template: {id: t, title: T, description: D, target_area: X, priority: high}\n"
    )
    with pytest.raises(ConfigError, match="shoe_size"):
        load_intervention_rules(path)


def test_custom_rule_table_is_used(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "version: 'local-1'\n"
        "rules:\n"
        "  - id: everyone\n"
        "    category: advancement\n"
        "    when: [{min_average_score: 0}]\n"
        "    template: {id: stretch, title: Stretch, description: D, target_area: Anything, priority: medium}\n"
    )
    rules = load_intervention_rules(path)
    plan = _plan([("Science", 55)], rules=rules)
    assert plan.rules_version == "local-1"
    assert [i.id for i in plan.interventions] == ["stretch-anything-s1"]

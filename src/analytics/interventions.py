# ABOUTME: Plans prioritized teacher interventions from a student's context snapshot.
# ABOUTME: Evaluates a versioned YAML rule table; no learned parameters are involved.

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import yaml

from src.common.config import DEFAULT_CONFIG, EngineConfig
from src.common.errors import ConfigError
from src.common.schemas import (
    AssessmentResult,
    Question,
    Student,
    completed_only,
    ensure_utc,
    order_history,
    utc_now,
)
from src.common.trend import DECLINING, IMPROVING, STABLE, classify_trend, score_volatility

from .risk import RiskAssessment, assess_risk

logger = logging.getLogger(__name__)

DEFAULT_RULES_PATH = Path(__file__).parent / "rules" / "interventions.yaml"

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
CATEGORIES = ("foundational", "skill-gap", "question-type", "consistency", "advancement", "engagement")

TIER_PROFICIENT = "Proficient"
TIER_DEVELOPING = "Developing"
TIER_NEEDS_SUPPORT = "Needs Support"
TIER_NO_DATA = "No Data"

CONDITION_KEYS = {
    "max_average_score",
    "min_average_score",
    "performance_tiers",
    "trends",
    "subject_below",
    "question_type_below",
    "min_volatility",
    "risk_levels",
    "risk_triggers",
}
SCORE_CONDITIONS = {"max_average_score", "min_average_score", "performance_tiers", "trends", "min_volatility"}


@dataclass(frozen=True)
class SubjectPerformance:
    subject: str
    average_score: int
    assessment_count: int
    trend: str


@dataclass(frozen=True)
class QuestionTypePerformance:
    type: str
    correct_rate: int
    total_questions: int


@dataclass(frozen=True)
class StudentContext:
    student_id: str
    student_name: str
    grade: int
    performance_tier: str
    trend: str
    average_score: int
    subject_performance: List[SubjectPerformance] = field(default_factory=list)
    weak_subjects: List[SubjectPerformance] = field(default_factory=list)
    strong_subjects: List[SubjectPerformance] = field(default_factory=list)
    question_type_performance: List[QuestionTypePerformance] = field(default_factory=list)
    recent_scores: List[float] = field(default_factory=list)
    volatility: float = 0.0
    total_assessments: int = 0
    days_since_last_assessment: Optional[int] = None
    risk_level: Optional[str] = None
    risk_triggers: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Activity:
    name: str
    description: str
    duration: str
    frequency: Optional[str] = None
    materials: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Resource:
    name: str
    type: str
    description: str
    url: Optional[str] = None


@dataclass(frozen=True)
class Checkpoint:
    milestone: str
    timeframe: str
    indicator: str


@dataclass(frozen=True)
class InterventionTemplate:
    id: str
    title: str
    description: str
    target_area: str
    priority: str
    effort: str
    impact: str
    estimated_duration: str
    rationale: str
    activities: Tuple[Activity, ...]
    resources: Tuple[Resource, ...]
    checkpoints: Tuple[Checkpoint, ...]
    subject_overrides: Mapping[str, "InterventionTemplate"] = field(default_factory=dict)


@dataclass(frozen=True)
class InterventionRule:
    id: str
    category: str
    template: InterventionTemplate
    when: Tuple[Mapping[str, Any], ...] = ()
    fallback: bool = False


@dataclass(frozen=True)
class InterventionRuleSet:
    version: str
    rules: Tuple[InterventionRule, ...]


@dataclass(frozen=True)
class Intervention:
    id: str
    rule_id: str
    title: str
    description: str
    category: str
    target_area: str
    priority: str
    effort: str
    impact: str
    activities: Tuple[Activity, ...]
    resources: Tuple[Resource, ...]
    checkpoints: Tuple[Checkpoint, ...]
    estimated_duration: str
    rationale: str


@dataclass(frozen=True)
class WeeklyFocus:
    week: int
    focus: str
    activities: List[str]
    goal: str


@dataclass(frozen=True)
class InterventionPlan:
    student_id: str
    student_name: str
    context: StudentContext
    overall_priority: str
    summary: str
    interventions: List[Intervention]
    quick_wins: List[Intervention]
    weekly_focus: List[WeeklyFocus]
    rules_version: str
    generated_at: datetime


def performance_tier(average: float) -> str:
    if average >= 80:
        return TIER_PROFICIENT
    if average >= 60:
        return TIER_DEVELOPING
    return TIER_NEEDS_SUPPORT


def build_student_context(
    history: Sequence[AssessmentResult],
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
    questions: Optional[Mapping[str, Sequence[Question]]] = None,
    risk: Optional[RiskAssessment] = None,
    student: Optional[Student] = None,
) -> StudentContext:
    """
    Snapshot everything the planner looks at from one student's history.

    ``questions`` maps assessment id to its question bank and enables the
    per-question-type correctness breakdown.
    """

    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    settings = config.interventions
    completed = completed_only(order_history(history))

    student_id = student.id if student else (completed[0].student_id if completed else "")
    student_name = student.name if student else (completed[-1].student_name if completed else "")
    grade = student.grade if student else (completed[-1].grade if completed else 0)
    risk_level = risk.risk_level if risk else None
    risk_triggers = tuple(t.factor for t in risk.trigger_factors) if risk else ()

    if not completed:
        return StudentContext(
            student_id=student_id,
            student_name=student_name,
            grade=grade,
            performance_tier=TIER_NO_DATA,
            trend=STABLE,
            average_score=0,
            risk_level=risk_level,
            risk_triggers=risk_triggers,
        )

    scores = [float(r.percentage) for r in completed]
    average = round(float(np.mean(scores)))
    trend = classify_trend(scores, config.trend.threshold).direction

    by_subject: Dict[str, List[float]] = {}
    for result in completed:
        by_subject.setdefault(result.subject, []).append(float(result.percentage))
    subjects = sorted(
        (
            SubjectPerformance(
                subject=name,
                average_score=round(float(np.mean(values))),
                assessment_count=len(values),
                trend=classify_trend(values, config.trend.threshold).direction,
            )
            for name, values in by_subject.items()
        ),
        key=lambda s: (s.average_score, s.subject),
    )

    recent = scores[-settings.recent_score_window :]
    elapsed = as_of - ensure_utc(completed[-1].completed_at)

    return StudentContext(
        student_id=student_id,
        student_name=student_name,
        grade=grade,
        performance_tier=performance_tier(average),
        trend=trend,
        average_score=average,
        subject_performance=subjects,
        weak_subjects=[s for s in subjects if s.average_score < settings.intervention_threshold],
        strong_subjects=[s for s in subjects if s.average_score >= settings.strong_subject_threshold],
        question_type_performance=_question_type_performance(completed, questions),
        recent_scores=recent,
        volatility=score_volatility(recent) if len(recent) >= 3 else 0.0,
        total_assessments=len(completed),
        days_since_last_assessment=max(0, int(elapsed.total_seconds() // 86400)),
        risk_level=risk_level,
        risk_triggers=risk_triggers,
    )


def _question_type_performance(
    completed: Sequence[AssessmentResult],
    questions: Optional[Mapping[str, Sequence[Question]]],
) -> List[QuestionTypePerformance]:
    if not questions:
        return []

    tallies: Dict[str, List[int]] = {}
    for result in completed:
        bank = {q.id: q.type for q in questions.get(result.assessment_id, ())}
        for answer in result.answers:
            qtype = bank.get(answer.question_id)
            if qtype is None:
                continue
            tally = tallies.setdefault(qtype, [0, 0])
            tally[1] += 1
            if answer.is_correct:
                tally[0] += 1

    return [
        QuestionTypePerformance(type=qtype, correct_rate=round(correct / total * 100), total_questions=total)
        for qtype, (correct, total) in sorted(tallies.items())
        if total
    ]


def _parse_template(data: Mapping[str, Any], base: Optional[InterventionTemplate] = None) -> InterventionTemplate:
    def _get(key: str, default: Any = None) -> Any:
        if key in data:
            return data[key]
        if base is not None:
            return getattr(base, key)
        if default is not None:
            return default
        raise ConfigError(f"Intervention template is missing '{key}'.")

    activities = data.get("activities")
    resources = data.get("resources")
    checkpoints = data.get("checkpoints")
    template = InterventionTemplate(
        id=str(_get("id")),
        title=str(_get("title")),
        description=str(_get("description")),
        target_area=str(_get("target_area")),
        priority=str(_get("priority")),
        effort=str(_get("effort", "medium")),
        impact=str(_get("impact", "medium")),
        estimated_duration=str(_get("estimated_duration", "")),
        rationale=str(_get("rationale", "")),
        activities=(
            tuple(
                Activity(
                    name=a["name"],
                    description=a.get("description", ""),
                    duration=a.get("duration", ""),
                    frequency=a.get("frequency"),
                    materials=tuple(a.get("materials") or ()),
                )
                for a in activities
            )
            if activities is not None
            else (base.activities if base else ())
        ),
        resources=(
            tuple(
                Resource(name=r["name"], type=r.get("type", "worksheet"), description=r.get("description", ""), url=r.get("url"))
                for r in resources
            )
            if resources is not None
            else (base.resources if base else ())
        ),
        checkpoints=(
            tuple(Checkpoint(milestone=c["milestone"], timeframe=c["timeframe"], indicator=c["indicator"]) for c in checkpoints)
            if checkpoints is not None
            else (base.checkpoints if base else ())
        ),
    )
    if template.priority not in PRIORITY_ORDER:
        raise ConfigError(f"Template '{template.id}' has unknown priority '{template.priority}'.")

    if base is None and data.get("subject_overrides"):
        overrides = {
            str(subject): replace(_parse_template(override, base=template), subject_overrides={})
            for subject, override in data["subject_overrides"].items()
        }
        template = replace(template, subject_overrides=overrides)
    return template


def load_intervention_rules(path: Optional[Path] = None) -> InterventionRuleSet:
    """Load and validate the YAML rule table (the packaged default when ``path`` is None)."""

    path = Path(path) if path is not None else DEFAULT_RULES_PATH
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if "version" not in raw or not raw.get("rules"):
        raise ConfigError(f"Rule table {path} must define 'version' and a non-empty 'rules' list.")

    rules: List[InterventionRule] = []
    for entry in raw["rules"]:
        category = entry.get("category")
        if category not in CATEGORIES:
            raise ConfigError(f"Rule '{entry.get('id')}' has unknown category '{category}'.")
        when = tuple(entry.get("when") or ())
        for alternative in when:
            unknown = set(alternative) - CONDITION_KEYS
            if unknown:
                raise ConfigError(f"Rule '{entry['id']}' uses unknown conditions: {', '.join(sorted(unknown))}.")
        fallback = bool(entry.get("fallback", False))
        if not when and not fallback:
            raise ConfigError(f"Rule '{entry['id']}' needs 'when' conditions or 'fallback: true'.")
        rules.append(
            InterventionRule(
                id=str(entry["id"]),
                category=category,
                template=_parse_template(entry["template"]),
                when=when,
                fallback=fallback,
            )
        )

    logger.info("Loaded %d intervention rules (version %s) from %s", len(rules), raw["version"], path)
    return InterventionRuleSet(version=str(raw["version"]), rules=tuple(rules))


def _subjects_below(context: StudentContext, condition: Mapping[str, Any]) -> List[str]:
    score = float(condition.get("score", 60))
    min_attempts = int(condition.get("min_attempts", 1))
    return [
        s.subject
        for s in context.subject_performance
        if s.average_score < score and s.assessment_count >= min_attempts
    ]


def _match_alternative(context: StudentContext, alternative: Mapping[str, Any]) -> Tuple[bool, List[str]]:
    """Return (matched, subjects). Every condition in the alternative must hold."""

    if context.total_assessments == 0 and SCORE_CONDITIONS & set(alternative):
        return False, []

    subjects: List[str] = []
    for key, value in alternative.items():
        if key == "max_average_score":
            ok = context.average_score < float(value)
        elif key == "min_average_score":
            ok = context.average_score >= float(value)
        elif key == "performance_tiers":
            ok = context.performance_tier in value
        elif key == "trends":
            ok = context.trend in value
        elif key == "min_volatility":
            ok = context.volatility > float(value)
        elif key == "risk_levels":
            ok = context.risk_level in value
        elif key == "risk_triggers":
            ok = any(trigger in value for trigger in context.risk_triggers)
        elif key == "subject_below":
            subjects = _subjects_below(context, value)
            ok = bool(subjects)
        elif key == "question_type_below":
            types = set(value.get("types") or ())
            rate = float(value.get("rate", 60))
            min_questions = int(value.get("min_questions", 1))
            ok = any(
                qt.type in types and qt.correct_rate < rate and qt.total_questions >= min_questions
                for qt in context.question_type_performance
            )
        else:
            ok = False
        if not ok:
            return False, []
    return True, subjects


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def _instantiate(
    rule: InterventionRule, template: InterventionTemplate, subject: Optional[str], student_id: str
) -> Intervention:
    target = template.target_area.replace("{subject}", subject or "General")
    rationale = template.rationale
    if subject and "{subject}" not in template.target_area:
        target = f"{target} ({subject})"
    return Intervention(
        id=f"{template.id}-{_slug(target)}-{student_id}" if student_id else f"{template.id}-{_slug(target)}",
        rule_id=rule.id,
        title=template.title,
        description=template.description,
        category=rule.category,
        target_area=target,
        priority=template.priority,
        effort=template.effort,
        impact=template.impact,
        activities=template.activities,
        resources=template.resources,
        checkpoints=template.checkpoints,
        estimated_duration=template.estimated_duration,
        rationale=rationale,
    )


def _candidates(context: StudentContext, rules: InterventionRuleSet) -> List[Tuple[int, Intervention]]:
    weakest = context.weak_subjects[0].subject if context.weak_subjects else None
    found: List[Tuple[int, Intervention]] = []

    for order, rule in enumerate(rules.rules):
        if rule.fallback:
            continue
        matched = False
        subjects: List[str] = []
        for alternative in rule.when:
            ok, alt_subjects = _match_alternative(context, alternative)
            if ok:
                matched = True
                subjects.extend(s for s in alt_subjects if s not in subjects)
        if not matched:
            continue

        if subjects:
            for subject in subjects:
                template = rule.template.subject_overrides.get(subject, rule.template)
                found.append((order, _instantiate(rule, template, subject, context.student_id)))
        else:
            template = rule.template.subject_overrides.get(weakest, rule.template) if weakest else rule.template
            found.append((order, _instantiate(rule, template, None, context.student_id)))

    if not found:
        for order, rule in enumerate(rules.rules):
            if rule.fallback:
                found.append((order, _instantiate(rule, rule.template, None, context.student_id)))
                break
    return found


def _weekly_focus(interventions: Sequence[Intervention], weeks: int) -> List[WeeklyFocus]:
    plan: List[WeeklyFocus] = []
    for week in range(1, weeks + 1):
        if interventions:
            item = interventions[min(week - 1, len(interventions) - 1)]
            plan.append(
                WeeklyFocus(
                    week=week,
                    focus=item.target_area,
                    activities=[a.name for a in item.activities[:3]],
                    goal=item.checkpoints[0].indicator if item.checkpoints else "Improve understanding",
                )
            )
        else:
            plan.append(
                WeeklyFocus(week=week, focus="General practice", activities=["Daily practice", "Review sessions"], goal="Improve understanding")
            )
    return plan


def _summary(context: StudentContext, interventions: Sequence[Intervention]) -> str:
    name = context.student_name or context.student_id
    if context.total_assessments == 0:
        return f"{name} has no completed assessments yet. This plan includes {len(interventions)} targeted interventions."

    text = f'{name} is currently performing at the "{context.performance_tier}" level with an average score of {context.average_score}%'
    if context.trend == IMPROVING:
        text += " and showing improvement"
    elif context.trend == DECLINING:
        text += " but showing a declining trend"
    text += "."
    if context.weak_subjects:
        text += f" Focus areas include: {', '.join(s.subject for s in context.weak_subjects)}."
    text += f" This plan includes {len(interventions)} targeted interventions."
    return text


def plan_interventions(
    context: StudentContext,
    rules: Optional[InterventionRuleSet] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
) -> InterventionPlan:
    """
    Select, rank, and cap interventions for a student.

    Ranking is priority (critical first), then rule order, then target area.
    The fallback rule applies only when nothing else matched.
    """

    rules = rules or load_intervention_rules()
    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    settings = config.interventions

    ranked = sorted(
        _candidates(context, rules),
        key=lambda item: (PRIORITY_ORDER[item[1].priority], item[0], item[1].target_area),
    )
    selected = [intervention for _, intervention in ranked][: settings.max_recommendations]
    overall = min((i.priority for i in selected), key=PRIORITY_ORDER.__getitem__, default="low")

    return InterventionPlan(
        student_id=context.student_id,
        student_name=context.student_name,
        context=context,
        overall_priority=overall,
        summary=_summary(context, selected),
        interventions=selected,
        quick_wins=[i for i in selected if i.effort == "low" and i.impact == "high"],
        weekly_focus=_weekly_focus(selected, settings.plan_weeks),
        rules_version=rules.version,
        generated_at=as_of,
    )


def plan_at_risk_interventions(
    histories: Mapping[str, Sequence[AssessmentResult]],
    rules: Optional[InterventionRuleSet] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    as_of: Optional[datetime] = None,
    questions: Optional[Mapping[str, Sequence[Question]]] = None,
    students: Sequence[Student] = (),
) -> List[InterventionPlan]:
    """
    Plan for every student who needs support, most urgent first.

    A student qualifies when their tier is Needs Support or their average is
    below the configured low score. Students without a completed assessment
    are skipped. Plans are ordered by overall priority, then student id.
    """

    rules = rules or load_intervention_rules()
    as_of = ensure_utc(as_of) if as_of is not None else utc_now()
    by_id = {s.id: s for s in students}
    low_score = config.risk.thresholds.low_score

    plans: List[InterventionPlan] = []
    for student_id, history in histories.items():
        student = by_id.get(student_id)
        risk = assess_risk(history, config, as_of, student=student)
        context = build_student_context(history, config, as_of, questions=questions, risk=risk, student=student)
        if context.total_assessments == 0:
            continue
        if context.performance_tier != TIER_NEEDS_SUPPORT and context.average_score >= low_score:
            continue
        plans.append(plan_interventions(context, rules, config, as_of))

    logger.info("Planned interventions for %d of %d students", len(plans), len(histories))
    return sorted(plans, key=lambda p: (PRIORITY_ORDER[p.overall_priority], p.student_id))

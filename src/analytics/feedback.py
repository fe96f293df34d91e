# ABOUTME: Writes template-based personalized feedback for a student's assessment results.
# ABOUTME: Templates come from a versioned YAML table; the choice within a tier is deterministic.

from __future__ import annotations

import logging
import zlib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from src.common.errors import ConfigError
from src.common.schemas import (
    MULTIPLE_CHOICE,
    SHORT_ANSWER,
    TRUE_FALSE,
    AssessmentResult,
    Question,
    SubmittedAnswer,
    completed_only,
    order_history,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "rules" / "feedback_templates.yaml"

QUESTION_TYPES = (MULTIPLE_CHOICE, TRUE_FALSE, SHORT_ANSWER)
STRENGTH_RATE = 80.0
WEAKNESS_RATE = 60.0
LOW_SCORE_TIP = 60.0


@dataclass(frozen=True)
class FeedbackTemplate:
    message: str
    encouragement: str
    next_steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FeedbackTier:
    name: str
    min_score: float
    templates: Tuple[FeedbackTemplate, ...]


@dataclass(frozen=True)
class FeedbackTemplates:
    version: str
    tiers: Tuple[FeedbackTier, ...]
    question_types: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    subject_tips: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    default_tip: str = ""


@dataclass(frozen=True)
class GeneratedFeedback:
    student_id: str
    assessment_id: str
    main_message: str
    encouragement: str
    next_steps: List[str]
    strength_areas: List[str]
    improvement_areas: List[str]
    subject_tip: str
    performance_tier: str
    templates_version: str


def load_feedback_templates(path: Optional[Path] = None) -> FeedbackTemplates:
    path = Path(path) if path is not None else DEFAULT_TEMPLATES_PATH
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if "version" not in raw or not raw.get("tiers"):
        raise ConfigError(f"Feedback templates {path} must define 'version' and a non-empty 'tiers' list.")

    tiers: List[FeedbackTier] = []
    for entry in raw["tiers"]:
        templates = tuple(
            FeedbackTemplate(
                message=str(t["message"]),
                encouragement=str(t.get("encouragement", "")),
                next_steps=tuple(str(step) for step in t.get("next_steps") or ()),
            )
            for t in entry.get("templates") or ()
        )
        if not templates:
            raise ConfigError(f"Feedback tier '{entry.get('name')}' has no templates.")
        tiers.append(FeedbackTier(name=str(entry["name"]), min_score=float(entry.get("min_score", 0)), templates=templates))

    scores = [t.min_score for t in tiers]
    if scores != sorted(scores, reverse=True) or len(set(scores)) != len(scores):
        raise ConfigError("Feedback tiers must be listed by strictly descending min_score.")
    unknown = set(raw.get("question_types") or {}) - set(QUESTION_TYPES)
    if unknown:
        raise ConfigError(f"Feedback templates name unknown question types: {', '.join(sorted(unknown))}.")

    logger.info("Loaded %d feedback tiers (version %s) from %s", len(tiers), raw["version"], path)
    return FeedbackTemplates(
        version=str(raw["version"]),
        tiers=tuple(tiers),
        question_types={str(k): dict(v) for k, v in (raw.get("question_types") or {}).items()},
        subject_tips={str(k): dict(v) for k, v in (raw.get("subject_tips") or {}).items()},
        default_tip=str(raw.get("default_tip", "")),
    )


def tier_for_score(percentage: float, templates: FeedbackTemplates) -> FeedbackTier:
    """First tier whose floor the score reaches; scores below every floor get the lowest tier."""

    for tier in templates.tiers:
        if percentage >= tier.min_score:
            return tier
    return templates.tiers[-1]


def pick_template(tier: FeedbackTier, student_id: str, assessment_id: str) -> FeedbackTemplate:
    # Stable across runs and processes for the same student and assessment.
    index = zlib.crc32(f"{student_id}:{assessment_id}".encode("utf-8")) % len(tier.templates)
    return tier.templates[index]


def question_type_feedback(
    answers: Sequence[SubmittedAnswer],
    questions: Sequence[Question],
    templates: FeedbackTemplates,
) -> Tuple[List[str], List[str]]:
    """Strength and improvement notes per question type (80% and above, below 60%)."""

    by_id = {q.id: q for q in questions}
    tallies: Dict[str, List[int]] = {}
    for answer in answers:
        question = by_id.get(answer.question_id)
        if question is None or question.type not in QUESTION_TYPES:
            continue
        counts = tallies.setdefault(question.type, [0, 0])
        counts[1] += 1
        if answer.is_correct:
            counts[0] += 1

    strengths: List[str] = []
    improvements: List[str] = []
    for qtype in QUESTION_TYPES:
        if qtype not in tallies:
            continue
        correct, total = tallies[qtype]
        rate = correct / total * 100
        texts = templates.question_types.get(qtype, {})
        if rate >= STRENGTH_RATE and texts.get("strength"):
            strengths.append(texts["strength"])
        elif rate < WEAKNESS_RATE and texts.get("weakness"):
            improvements.append(texts["weakness"])
    return strengths, improvements


def subject_tip(subject: str, percentage: float, templates: FeedbackTemplates) -> str:
    tips = templates.subject_tips.get(subject)
    if not tips:
        return templates.default_tip
    key = "low_score" if percentage < LOW_SCORE_TIP else "general"
    return tips.get(key) or templates.default_tip


def _number(value: float) -> str:
    return f"{round(float(value), 1):g}"


def _fill(text: str, variables: Mapping[str, str]) -> str:
    for key, value in variables.items():
        text = text.replace("{" + key + "}", value)
    return text


def generate_feedback(
    result: AssessmentResult,
    questions: Sequence[Question],
    templates: Optional[FeedbackTemplates] = None,
) -> GeneratedFeedback:
    """
    Personalized feedback for one assessment result.

    The score tier picks the template set; within a tier the template is
    chosen from the student and assessment ids, so regenerating feedback for
    the same result always gives the same text.
    """

    templates = templates or load_feedback_templates()
    tier = tier_for_score(result.percentage, templates)
    template = pick_template(tier, result.student_id, result.assessment_id)
    strengths, improvements = question_type_feedback(result.answers, questions, templates)

    variables = {
        "student_name": result.student_name,
        "percentage": _number(result.percentage),
        "subject": result.subject,
        "score": _number(sum(float(a.points) for a in result.answers)),
        "total_points": _number(sum(q.points for q in questions)),
    }
    return GeneratedFeedback(
        student_id=result.student_id,
        assessment_id=result.assessment_id,
        main_message=_fill(template.message, variables),
        encouragement=_fill(template.encouragement, variables),
        next_steps=[_fill(step, variables) for step in template.next_steps],
        strength_areas=strengths,
        improvement_areas=improvements,
        subject_tip=subject_tip(result.subject, result.percentage, templates),
        performance_tier=tier.name,
        templates_version=templates.version,
    )


def generate_aggregate_feedback(
    results: Sequence[AssessmentResult],
    questions: Mapping[str, Sequence[Question]],
    templates: Optional[FeedbackTemplates] = None,
) -> Optional[GeneratedFeedback]:
    """
    Feedback on a student's overall standing across completed assessments.

    Uses the rounded average percentage with the most recent result for
    context; strengths and improvements are merged across every result in
    first-seen order. Returns None when nothing has been completed.
    """

    completed = completed_only(order_history(results))
    if not completed:
        return None

    templates = templates or load_feedback_templates()
    average = round(sum(float(r.percentage) for r in completed) / len(completed))
    recent = completed[-1]

    strengths: List[str] = []
    improvements: List[str] = []
    for result in completed:
        found, missing = question_type_feedback(result.answers, questions.get(result.assessment_id, ()), templates)
        strengths.extend(s for s in found if s not in strengths)
        improvements.extend(i for i in missing if i not in improvements)

    feedback = generate_feedback(
        replace(recent, percentage=float(average)),
        questions.get(recent.assessment_id, ()),
        templates,
    )
    return replace(feedback, strength_areas=strengths, improvement_areas=improvements)

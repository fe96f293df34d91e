# ABOUTME: Aggregates graded answers into per-question psychometric statistics.
# ABOUTME: Computes difficulty, upper-lower discrimination, quality metrics, and question flags.

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import pandas as pd

from src.common.config import DEFAULT_CONFIG, EngineConfig, ItemAnalysisConfig
from src.common.schemas import AssessmentResult, Question, completed_only, ensure_utc

logger = logging.getLogger(__name__)

EASY = "Easy"
MEDIUM = "Medium"
HARD = "Hard"

FLAG_NEGATIVE_DISCRIMINATION = "negative_discrimination"
FLAG_POOR_DISCRIMINATION = "poor_discrimination"
FLAG_TOO_DIFFICULT = "too_difficult"


@dataclass(frozen=True)
class QuestionStats:
    question_id: str
    question_text: str
    question_type: str
    total_attempts: int
    correct_attempts: int
    incorrect_attempts: int
    correct_percentage: int
    difficulty: str
    discrimination_index: float
    average_points: float
    max_points: int


@dataclass(frozen=True)
class QuestionFlag:
    question_id: str
    kind: str
    severity: str
    value: float
    message: str


@dataclass(frozen=True)
class AssessmentItemAnalysis:
    assessment_id: str
    subject: str
    total_students: int
    question_stats: List[QuestionStats]
    average_score: int
    pass_rate: int
    flags: List[QuestionFlag] = field(default_factory=list)
    settings: ItemAnalysisConfig = DEFAULT_CONFIG.item_analysis


@dataclass(frozen=True)
class AssessmentQualityMetrics:
    assessment_id: str
    total_questions: int
    easy_questions: int
    medium_questions: int
    hard_questions: int
    average_discrimination: float
    problematic_questions: int
    quality_score: int
    recommendations: List[str]


def classify_difficulty(correct_percentage: float, config: ItemAnalysisConfig = DEFAULT_CONFIG.item_analysis) -> str:
    if correct_percentage >= config.easy_threshold:
        return EASY
    if correct_percentage >= config.medium_threshold:
        return MEDIUM
    return HARD


def rank_results(results: Sequence[AssessmentResult]) -> List[AssessmentResult]:
    """Order by percentage descending; ties by student id then completion time."""

    return sorted(results, key=lambda r: (-float(r.percentage), r.student_id, ensure_utc(r.completed_at)))


def discrimination_index(
    ranked: Sequence[AssessmentResult],
    question_id: str,
    config: ItemAnalysisConfig = DEFAULT_CONFIG.item_analysis,
) -> float:
    """
    Upper-lower discrimination for one question.

    ``ranked`` must already be ordered best-first (see ``rank_results``). The
    top and bottom ``ceil(cohort_fraction * N)`` results are compared; with
    fewer than ``min_results_for_discrimination`` results the index is 0.
    """

    total = len(ranked)
    if total < config.min_results_for_discrimination:
        return 0.0

    group_size = math.ceil(total * config.cohort_fraction)
    top_correct = sum(1 for r in ranked[:group_size] if _answered_correctly(r, question_id))
    bottom_correct = sum(1 for r in ranked[-group_size:] if _answered_correctly(r, question_id))
    return round((top_correct - bottom_correct) / group_size, 2)


def _answered_correctly(result: AssessmentResult, question_id: str) -> bool:
    for answer in result.answers:
        if answer.question_id == question_id:
            return bool(answer.is_correct)
    return False


def _attempts_frame(results: Sequence[AssessmentResult]) -> pd.DataFrame:
    rows = [
        {"question_id": a.question_id, "is_correct": bool(a.is_correct), "points": float(a.points)}
        for r in results
        for a in r.answers
    ]
    if not rows:
        return pd.DataFrame(columns=["question_id", "is_correct", "points"])
    return pd.DataFrame(rows)


def analyze_assessment(
    assessment_id: str,
    results: Sequence[AssessmentResult],
    questions: Sequence[Question],
    config: EngineConfig = DEFAULT_CONFIG,
) -> AssessmentItemAnalysis:
    """Compute per-question statistics and assessment-level aggregates."""

    cfg = config.item_analysis
    scoped = [r for r in completed_only(results) if r.assessment_id == assessment_id]
    subject = scoped[0].subject if scoped else ""

    if not scoped:
        return AssessmentItemAnalysis(
            assessment_id=assessment_id,
            subject=subject,
            total_students=0,
            question_stats=[],
            average_score=0,
            pass_rate=0,
            settings=cfg,
        )

    known_ids = {q.id for q in questions}
    attempts = _attempts_frame(scoped)
    stray = sorted(set(attempts["question_id"]) - known_ids)
    if stray:
        logger.warning("Ignoring answers to unknown questions %s in assessment %s", stray, assessment_id)

    ranked = rank_results(scoped)
    grouped = attempts.groupby("question_id").agg(
        total=("is_correct", "size"),
        correct=("is_correct", "sum"),
        points_mean=("points", "mean"),
    )

    stats: List[QuestionStats] = []
    for question in questions:
        if question.id in grouped.index:
            row = grouped.loc[question.id]
            total = int(row["total"])
            correct = int(row["correct"])
            average_points = round(float(row["points_mean"]), 1)
        else:
            total, correct, average_points = 0, 0, 0.0
        correct_percentage = round(correct / total * 100) if total else 0
        stats.append(
            QuestionStats(
                question_id=question.id,
                question_text=question.text,
                question_type=question.type,
                total_attempts=total,
                correct_attempts=correct,
                incorrect_attempts=total - correct,
                correct_percentage=correct_percentage,
                difficulty=classify_difficulty(correct_percentage, cfg),
                discrimination_index=discrimination_index(ranked, question.id, cfg),
                average_points=average_points,
                max_points=question.points,
            )
        )

    percentages = [float(r.percentage) for r in scoped]
    average_score = round(sum(percentages) / len(percentages))
    pass_rate = round(sum(1 for p in percentages if p >= cfg.pass_mark) / len(percentages) * 100)

    flags = flag_questions(stats, cfg)
    for flag in flags:
        if flag.kind == FLAG_NEGATIVE_DISCRIMINATION:
            logger.warning("Assessment %s: %s", assessment_id, flag.message)

    return AssessmentItemAnalysis(
        assessment_id=assessment_id,
        subject=subject,
        total_students=len(scoped),
        question_stats=stats,
        average_score=average_score,
        pass_rate=pass_rate,
        flags=flags,
        settings=cfg,
    )


def flag_questions(
    stats: Sequence[QuestionStats],
    config: ItemAnalysisConfig = DEFAULT_CONFIG.item_analysis,
) -> List[QuestionFlag]:
    """Surface questions that are likely flawed or too hard. Negative discrimination is critical."""

    flags: List[QuestionFlag] = []
    for q in stats:
        if q.total_attempts == 0:
            continue
        if q.discrimination_index < 0:
            flags.append(
                QuestionFlag(
                    question_id=q.question_id,
                    kind=FLAG_NEGATIVE_DISCRIMINATION,
                    severity="critical",
                    value=q.discrimination_index,
                    message=(
                        f"Question {q.question_id} has negative discrimination ({q.discrimination_index:.2f}); "
                        "high performers miss it more often than low performers. Review the answer key."
                    ),
                )
            )
        elif q.discrimination_index < config.poor_discrimination_threshold:
            flags.append(
                QuestionFlag(
                    question_id=q.question_id,
                    kind=FLAG_POOR_DISCRIMINATION,
                    severity="warning",
                    value=q.discrimination_index,
                    message=f"Question {q.question_id} barely separates high and low performers.",
                )
            )
        if q.correct_percentage < config.problematic_threshold:
            flags.append(
                QuestionFlag(
                    question_id=q.question_id,
                    kind=FLAG_TOO_DIFFICULT,
                    severity="warning",
                    value=float(q.correct_percentage),
                    message=f"Only {q.correct_percentage}% answered question {q.question_id} correctly.",
                )
            )

    severity_rank = {"critical": 0, "warning": 1}
    return sorted(flags, key=lambda f: (severity_rank[f.severity], f.value, f.question_id))


def problematic_questions(
    analysis: AssessmentItemAnalysis,
    threshold: Optional[int] = None,
    config: Optional[ItemAnalysisConfig] = None,
) -> List[QuestionStats]:
    """Questions most students struggle with, hardest first. Unattempted questions are skipped."""

    settings = config or analysis.settings
    limit = settings.problematic_threshold if threshold is None else threshold
    return sorted(
        (q for q in analysis.question_stats if q.total_attempts > 0 and q.correct_percentage < limit),
        key=lambda q: (q.correct_percentage, q.question_id),
    )


def poor_discrimination_questions(
    analysis: AssessmentItemAnalysis,
    threshold: Optional[float] = None,
    config: Optional[ItemAnalysisConfig] = None,
) -> List[QuestionStats]:
    settings = config or analysis.settings
    limit = settings.poor_discrimination_threshold if threshold is None else threshold
    return sorted(
        (q for q in analysis.question_stats if q.total_attempts > 0 and q.discrimination_index < limit),
        key=lambda q: (q.discrimination_index, q.question_id),
    )


def assessment_quality_metrics(
    analysis: AssessmentItemAnalysis,
    config: Optional[ItemAnalysisConfig] = None,
) -> Optional[AssessmentQualityMetrics]:
    """Score overall assessment quality (0-100) with reviewer recommendations."""

    config = config or analysis.settings

    stats = analysis.question_stats
    if not stats:
        return None

    total = len(stats)
    easy = sum(1 for q in stats if q.difficulty == EASY)
    medium = sum(1 for q in stats if q.difficulty == MEDIUM)
    hard = sum(1 for q in stats if q.difficulty == HARD)
    average_discrimination = sum(q.discrimination_index for q in stats) / total
    problematic = sum(1 for q in stats if q.total_attempts > 0 and q.correct_percentage < config.problematic_threshold)
    negative = sum(1 for q in stats if q.discrimination_index < 0)

    score = 100
    recommendations: List[str] = []

    balanced = abs(easy - medium) < total * 0.3 and abs(medium - hard) < total * 0.3
    if not balanced:
        score -= 20
        recommendations.append("Consider balancing question difficulty distribution")
    if average_discrimination < 0.3:
        score -= 30
        recommendations.append("Some questions do not effectively differentiate between high and low performers")
    if problematic > total * 0.3:
        score -= 25
        recommendations.append(
            f"{problematic} questions are too difficult (< {config.problematic_threshold}% correct rate)"
        )
    if negative:
        score -= 25
        recommendations.append(f"{negative} questions have negative discrimination (review for errors)")
    if not recommendations:
        recommendations.append("Assessment demonstrates good quality metrics")

    return AssessmentQualityMetrics(
        assessment_id=analysis.assessment_id,
        total_questions=total,
        easy_questions=easy,
        medium_questions=medium,
        hard_questions=hard,
        average_discrimination=round(average_discrimination, 2),
        problematic_questions=problematic,
        quality_score=max(0, score),
        recommendations=recommendations,
    )


def question_stats_frame(analysis: AssessmentItemAnalysis) -> pd.DataFrame:
    """Tabular view of question statistics for export collaborators."""

    columns = [f.name for f in QuestionStats.__dataclass_fields__.values()]
    if not analysis.question_stats:
        return pd.DataFrame(columns=["assessment_id"] + columns)
    df = pd.DataFrame([asdict(q) for q in analysis.question_stats], columns=columns)
    df.insert(0, "assessment_id", analysis.assessment_id)
    flagged: Dict[str, str] = {}
    for flag in analysis.flags:
        flagged.setdefault(flag.question_id, flag.kind)
    df["flag"] = df["question_id"].map(flagged)
    return df

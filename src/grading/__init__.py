# ABOUTME: Groups answer scoring and item analysis for published assessments.
# ABOUTME: Re-exports the scorer entrypoints and the item analyzer.

from .scorer import ScoringOutcome, build_result, grade_submission, score_answer
from .similarity import dice_similarity
from .item_analysis import (
    AssessmentItemAnalysis,
    QuestionStats,
    analyze_assessment,
    assessment_quality_metrics,
    question_stats_frame,
)

__all__ = [
    "ScoringOutcome",
    "build_result",
    "grade_submission",
    "score_answer",
    "dice_similarity",
    "AssessmentItemAnalysis",
    "QuestionStats",
    "analyze_assessment",
    "assessment_quality_metrics",
    "question_stats_frame",
]

# ABOUTME: Grades a submitted answer against a published question definition.
# ABOUTME: Supports exact choice matching and fuzzy short-answer matching with subject thresholds.

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from src.common.config import DEFAULT_CONFIG, EngineConfig, FuzzyMatchingConfig, PartialCreditConfig
from src.common.errors import UnknownQuestionError
from src.common.schemas import (
    MATCH_EXACT,
    MATCH_FUZZY,
    MATCH_NONE,
    MULTIPLE_CHOICE,
    SHORT_ANSWER,
    STATUS_COMPLETED,
    TRUE_FALSE,
    AnswerValue,
    AssessmentResult,
    Question,
    SubmittedAnswer,
    ensure_utc,
)

from .similarity import dice_similarity, normalize_answer

_INTEGRAL = re.compile(r"-?\d+(?:\.0+)?")


@dataclass(frozen=True)
class ScoringOutcome:
    is_correct: bool
    similarity_score: Optional[float]
    matching_method: str
    points_awarded: float


def resolve_threshold(question: Question, subject: Optional[str], fuzzy: FuzzyMatchingConfig) -> float:
    """Question threshold, then subject threshold, then the global default."""

    if question.similarity_threshold is not None:
        return float(question.similarity_threshold)
    if subject:
        wanted = subject.strip().casefold()
        for name, threshold in fuzzy.subject_thresholds.items():
            if name.casefold() == wanted:
                return float(threshold)
    return float(fuzzy.default_threshold)


def award_points(similarity: float, max_points: int, threshold: float, partial_credit: PartialCreditConfig) -> float:
    """Binary points unless partial-credit bands are enabled."""

    if not partial_credit.enabled:
        return float(max_points) if similarity >= threshold else 0.0
    for band in partial_credit.bands:
        if similarity >= band.min_similarity:
            return float(round(max_points * band.credit_percent / 100))
    return 0.0


def score_answer(
    question: Question,
    raw_answer: AnswerValue,
    subject: Optional[str] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> ScoringOutcome:
    """Grade one answer. Never raises for unsupported question types."""

    if question.type in (MULTIPLE_CHOICE, TRUE_FALSE):
        is_correct = _choice_key(raw_answer) == _choice_key(question.correct_answer)
        return ScoringOutcome(
            is_correct=is_correct,
            similarity_score=None,
            matching_method=MATCH_EXACT if is_correct else MATCH_NONE,
            points_awarded=float(question.points) if is_correct else 0.0,
        )
    if question.type == SHORT_ANSWER:
        return _score_short_answer(question, raw_answer, subject, config.fuzzy)
    return ScoringOutcome(is_correct=False, similarity_score=None, matching_method=MATCH_NONE, points_awarded=0.0)


def _score_short_answer(
    question: Question,
    raw_answer: AnswerValue,
    subject: Optional[str],
    fuzzy: FuzzyMatchingConfig,
) -> ScoringOutcome:
    student = normalize_answer(raw_answer)
    expected = normalize_answer(question.correct_answer)

    if student == expected:
        return ScoringOutcome(
            is_correct=True,
            similarity_score=1.0,
            matching_method=MATCH_EXACT,
            points_awarded=float(question.points),
        )

    if not (fuzzy.enabled or question.fuzzy_matching_enabled is True):
        return ScoringOutcome(is_correct=False, similarity_score=0.0, matching_method=MATCH_NONE, points_awarded=0.0)

    similarity = dice_similarity(student, expected)
    threshold = resolve_threshold(question, subject, fuzzy)
    is_correct = similarity >= threshold
    points = award_points(similarity, question.points, threshold, fuzzy.partial_credit)
    return ScoringOutcome(
        is_correct=is_correct,
        similarity_score=similarity,
        matching_method=MATCH_FUZZY if is_correct else MATCH_NONE,
        points_awarded=points,
    )


def _choice_key(value: AnswerValue):
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    text = str(value).strip()
    if _INTEGRAL.fullmatch(text):
        return int(text.split(".")[0])
    return text.casefold()


def grade_submission(
    questions: Sequence[Question],
    raw_answers: Mapping[str, AnswerValue],
    subject: Optional[str] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    assessment_id: str = "",
) -> List[SubmittedAnswer]:
    """Grade every answered question of a submission, in question-bank order."""

    bank: Dict[str, Question] = {q.id: q for q in questions}
    unknown = [qid for qid in raw_answers if qid not in bank]
    if unknown:
        raise UnknownQuestionError(sorted(unknown)[0], assessment_id)

    graded: List[SubmittedAnswer] = []
    for question in questions:
        if question.id not in raw_answers:
            continue
        raw = raw_answers[question.id]
        outcome = score_answer(question, raw, subject, config)
        graded.append(
            SubmittedAnswer(
                question_id=question.id,
                answer=raw,
                is_correct=outcome.is_correct,
                points=outcome.points_awarded,
                similarity_score=outcome.similarity_score,
                matching_method=outcome.matching_method,
            )
        )
    return graded


def build_result(
    student_id: str,
    student_name: str,
    assessment_id: str,
    subject: str,
    grade: int,
    questions: Sequence[Question],
    raw_answers: Mapping[str, AnswerValue],
    completed_at: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> AssessmentResult:
    """Grade a submission and assemble the completed AssessmentResult."""

    answers = grade_submission(questions, raw_answers, subject, config, assessment_id=assessment_id)
    total_points = sum(q.points for q in questions)
    awarded = sum(a.points for a in answers)
    percentage = round(awarded / total_points * 100) if total_points else 0
    return AssessmentResult(
        student_id=student_id,
        student_name=student_name,
        assessment_id=assessment_id,
        subject=subject,
        grade=grade,
        percentage=float(percentage),
        completed_at=ensure_utc(completed_at),
        answers=tuple(answers),
        status=STATUS_COMPLETED,
    )

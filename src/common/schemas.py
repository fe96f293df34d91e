# ABOUTME: Defines canonical records shared by the grading and analytics engines.
# ABOUTME: Centralizes question, answer, result, and student schema definitions.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

MULTIPLE_CHOICE = "multiple-choice"
TRUE_FALSE = "true-false"
SHORT_ANSWER = "short-answer"
QUESTION_TYPES = (MULTIPLE_CHOICE, TRUE_FALSE, SHORT_ANSWER)

MATCH_EXACT = "exact"
MATCH_FUZZY = "fuzzy"
MATCH_NONE = "none"

STATUS_COMPLETED = "completed"
STATUS_IN_PROGRESS = "in-progress"

AnswerValue = Union[int, str]


@dataclass(frozen=True)
class Student:
    """Roster entry returned by the result store."""

    id: str
    name: str
    grade: int = 0
    teacher_id: Optional[str] = None
    subjects: Sequence[str] = ()


@dataclass(frozen=True)
class Question:
    """Published question definition. Never mutated after publication."""

    id: str
    type: str
    correct_answer: AnswerValue
    points: int = 1
    text: str = ""
    options: Sequence[str] = ()
    similarity_threshold: Optional[float] = None
    fuzzy_matching_enabled: Optional[bool] = None

    def __post_init__(self) -> None:
        if self.points <= 0:
            raise ValueError(f"Question '{self.id}' must award a positive number of points, got {self.points}.")
        if self.similarity_threshold is not None and not 0.0 <= self.similarity_threshold <= 1.0:
            raise ValueError(
                f"Question '{self.id}' similarity_threshold must be within [0, 1], got {self.similarity_threshold}."
            )


@dataclass(frozen=True)
class SubmittedAnswer:
    """One graded response. Produced once at submission time."""

    question_id: str
    answer: AnswerValue
    is_correct: bool
    points: float
    similarity_score: Optional[float] = None
    matching_method: str = MATCH_NONE


@dataclass(frozen=True)
class AssessmentResult:
    """A student's attempt at an assessment."""

    student_id: str
    student_name: str
    assessment_id: str
    subject: str
    grade: int
    percentage: float
    completed_at: datetime
    answers: Sequence[SubmittedAnswer] = field(default_factory=tuple)
    status: str = STATUS_COMPLETED

    @property
    def is_completed(self) -> bool:
        return self.status == STATUS_COMPLETED


def ensure_utc(value: Union[datetime, str, pd.Timestamp]) -> datetime:
    """Coerce timestamps (ISO strings included) into timezone-aware UTC datetimes."""

    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    else:
        ts = ts.tz_convert("UTC")
    return ts.to_pydatetime()


def order_history(results: Sequence[AssessmentResult]) -> List[AssessmentResult]:
    """Return results ordered by completion time, ties broken by assessment id."""

    return sorted(results, key=lambda r: (ensure_utc(r.completed_at), r.assessment_id))


def completed_only(results: Sequence[AssessmentResult]) -> List[AssessmentResult]:
    return [r for r in results if r.is_completed]


def question_from_dict(data: Mapping[str, Any]) -> Question:
    return Question(
        id=str(data["id"]),
        type=str(data["type"]),
        correct_answer=data["correct_answer"],
        points=int(data.get("points", 1)),
        text=str(data.get("text", "")),
        options=tuple(data.get("options") or ()),
        similarity_threshold=data.get("similarity_threshold"),
        fuzzy_matching_enabled=data.get("fuzzy_matching_enabled"),
    )


def answer_from_dict(data: Mapping[str, Any]) -> SubmittedAnswer:
    return SubmittedAnswer(
        question_id=str(data["question_id"]),
        answer=data.get("answer", ""),
        is_correct=bool(data.get("is_correct", False)),
        points=float(data.get("points", 0)),
        similarity_score=data.get("similarity_score"),
        matching_method=str(data.get("matching_method", MATCH_NONE)),
    )


def result_from_dict(data: Mapping[str, Any]) -> AssessmentResult:
    return AssessmentResult(
        student_id=str(data["student_id"]),
        student_name=str(data.get("student_name", data["student_id"])),
        assessment_id=str(data["assessment_id"]),
        subject=str(data.get("subject", "")),
        grade=int(data.get("grade", 0)),
        percentage=float(data["percentage"]),
        completed_at=ensure_utc(data["completed_at"]),
        answers=tuple(answer_from_dict(a) for a in data.get("answers", [])),
        status=str(data.get("status", STATUS_COMPLETED)),
    )


def student_from_dict(data: Mapping[str, Any]) -> Student:
    return Student(
        id=str(data["id"]),
        name=str(data.get("name", data["id"])),
        grade=int(data.get("grade", 0)),
        teacher_id=data.get("teacher_id"),
        subjects=tuple(data.get("subjects") or ()),
    )


def results_frame(results: Sequence[AssessmentResult]) -> pd.DataFrame:
    """Flatten results (without answers) into a DataFrame for reporting."""

    rows: List[Dict[str, Any]] = []
    for result in results:
        rows.append(
            {
                "student_id": result.student_id,
                "student_name": result.student_name,
                "assessment_id": result.assessment_id,
                "subject": result.subject,
                "grade": result.grade,
                "percentage": float(result.percentage),
                "completed_at": ensure_utc(result.completed_at),
                "status": result.status,
                "answer_count": len(result.answers),
            }
        )
    if not rows:
        return pd.DataFrame(
            columns=[
                "student_id",
                "student_name",
                "assessment_id",
                "subject",
                "grade",
                "percentage",
                "completed_at",
                "status",
                "answer_count",
            ]
        )
    df = pd.DataFrame(rows)
    return df.sort_values(["student_id", "completed_at", "assessment_id"], kind="mergesort").reset_index(drop=True)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

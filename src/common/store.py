# ABOUTME: Describes the read-only result store and alert log the engines depend on.
# ABOUTME: Ships in-memory implementations plus a JSON dataset loader for the CLI and tests.

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .schemas import (
    AssessmentResult,
    Question,
    Student,
    ensure_utc,
    order_history,
    question_from_dict,
    result_from_dict,
    student_from_dict,
)


class ResultStore(Protocol):
    def get_results_by_student(self, student_id: str) -> List[AssessmentResult]:
        ...

    def get_results_by_assessment(self, assessment_id: str) -> List[AssessmentResult]:
        ...

    def get_questions_for_assessment(self, assessment_id: str) -> List[Question]:
        ...

    def get_students(self, teacher_id: Optional[str] = None) -> List[Student]:
        ...


class AlertLog(Protocol):
    def get_last_alert_time(self, student_id: str, category: str) -> Optional[datetime]:
        ...

    def record_alert(self, student_id: str, category: str, created_at: datetime) -> None:
        ...


class InMemoryStore:
    """Result store backed by plain lists, indexed on construction."""

    def __init__(
        self,
        results: Iterable[AssessmentResult] = (),
        questions: Optional[Dict[str, Sequence[Question]]] = None,
        students: Iterable[Student] = (),
    ):
        self._results = list(results)
        self._questions = {aid: list(qs) for aid, qs in (questions or {}).items()}
        self._students = list(students)
        self._by_student: Dict[str, List[AssessmentResult]] = defaultdict(list)
        self._by_assessment: Dict[str, List[AssessmentResult]] = defaultdict(list)
        for result in self._results:
            self._by_student[result.student_id].append(result)
            self._by_assessment[result.assessment_id].append(result)

    def get_results_by_student(self, student_id: str) -> List[AssessmentResult]:
        return order_history(self._by_student.get(student_id, []))

    def get_results_by_assessment(self, assessment_id: str) -> List[AssessmentResult]:
        return order_history(self._by_assessment.get(assessment_id, []))

    def get_questions_for_assessment(self, assessment_id: str) -> List[Question]:
        return list(self._questions.get(assessment_id, []))

    def get_students(self, teacher_id: Optional[str] = None) -> List[Student]:
        if teacher_id is None:
            return list(self._students)
        return [s for s in self._students if s.teacher_id == teacher_id]

    def all_results(self) -> List[AssessmentResult]:
        return order_history(self._results)


class InMemoryAlertLog:
    """Remembers the last alert time per (student, category)."""

    def __init__(self) -> None:
        self._last: Dict[Tuple[str, str], datetime] = {}

    def get_last_alert_time(self, student_id: str, category: str) -> Optional[datetime]:
        return self._last.get((student_id, category))

    def record_alert(self, student_id: str, category: str, created_at: datetime) -> None:
        key = (student_id, category)
        created_at = ensure_utc(created_at)
        previous = self._last.get(key)
        if previous is None or created_at > previous:
            self._last[key] = created_at


def load_dataset(path: Path) -> InMemoryStore:
    """
    Build an InMemoryStore from a JSON dataset.

    Expected layout::

        {
          "students": [{"id": ..., "name": ..., "grade": ..., "teacher_id": ...}],
          "questions": {"<assessment_id>": [{"id": ..., "type": ..., "correct_answer": ...}]},
          "results": [{"student_id": ..., "assessment_id": ..., "percentage": ..., "completed_at": ...}]
        }
    """

    path = Path(path)
    if path.suffix.lower() != ".json":
        raise ValueError(f"Unsupported dataset format '{path.suffix}'. Expected a .json file.")

    payload = json.loads(path.read_text(encoding="utf-8"))
    students = [student_from_dict(s) for s in payload.get("students", [])]
    questions = {
        str(aid): [question_from_dict(q) for q in qs] for aid, qs in (payload.get("questions") or {}).items()
    }
    results = [result_from_dict(r) for r in payload.get("results", [])]
    return InMemoryStore(results=results, questions=questions, students=students)

# ABOUTME: Tests the in-memory result store, alert log, and JSON dataset loader.
# ABOUTME: Writes small datasets to tmp_path and reads them back through the store protocol.

import json
from datetime import datetime, timedelta, timezone

import pytest

from src.common.schemas import AssessmentResult, results_frame
from src.common.store import InMemoryAlertLog, InMemoryStore, load_dataset

T0 = datetime(2025, 5, 5, 9, 0, tzinfo=timezone.utc)

DATASET = {
    "students": [
        {"id": "s1", "name": "Hina", "grade": 5, "teacher_id": "t1"},
        {"id": "s2", "name": "Ali", "grade": 5, "teacher_id": "t2"},
    ],
    "questions": {
        "a1": [
            {"id": "q1", "type": "multiple-choice", "correct_answer": 2, "options": ["1", "2", "3"]},
            {"id": "q2", "type": "short-answer", "correct_answer": "Karachi", "points": 2},
        ]
    },
    "results": [
        {
            "student_id": "s1",
            "student_name": "Hina",
            "assessment_id": "a1",
            "subject": "Social Studies",
            "grade": 5,
            "percentage": 66.7,
            "completed_at": "2025-05-06T09:00:00Z",
            "answers": [{"question_id": "q1", "answer": 2, "is_correct": True, "points": 1}],
        },
        {
            "student_id": "s1",
            "assessment_id": "a0",
            "percentage": 50,
            "completed_at": "2025-05-01T09:00:00",
        },
    ],
}


def _write(tmp_path, payload=DATASET):
    path = tmp_path / "data.json"
    path.write_text(json.dumps(payload))
    return path


def test_load_dataset_round_trips_through_store(tmp_path):
    store = load_dataset(_write(tmp_path))

    history = store.get_results_by_student("s1")
    assert [r.assessment_id for r in history] == ["a0", "a1"]
    assert history[0].completed_at.tzinfo is not None
    assert history[0].student_name == "s1"
    assert history[1].answers[0].is_correct

    questions = store.get_questions_for_assessment("a1")
    assert [q.id for q in questions] == ["q1", "q2"]
    assert questions[1].points == 2
    assert store.get_questions_for_assessment("missing") == []


def test_students_filtered_by_teacher(tmp_path):
    store = load_dataset(_write(tmp_path))
    assert [s.id for s in store.get_students()] == ["s1", "s2"]
    assert [s.id for s in store.get_students("t2")] == ["s2"]
    assert store.get_results_by_student("s2") == []


def test_non_json_dataset_rejected(tmp_path):
    path = tmp_path / "data.csv"
    path.write_text("student_id\n")
    with pytest.raises(ValueError, match="json"):
        load_dataset(path)


def test_store_orders_results_by_assessment():
    results = [
        AssessmentResult("s2", "B", "a1", "Mathematics", 5, 70.0, T0 + timedelta(hours=2)),
        AssessmentResult("s1", "A", "a1", "Mathematics", 5, 80.0, T0),
    ]
    store = InMemoryStore(results)
    assert [r.student_id for r in store.get_results_by_assessment("a1")] == ["s1", "s2"]
    assert len(store.all_results()) == 2


def test_alert_log_keeps_latest_time_per_category():
    log = InMemoryAlertLog()
    log.record_alert("s1", "new_high_risk", T0)
    log.record_alert("s1", "new_high_risk", T0 - timedelta(days=1))
    log.record_alert("s1", "declining_trend", T0 + timedelta(days=1))
    assert log.get_last_alert_time("s1", "new_high_risk") == T0
    assert log.get_last_alert_time("s1", "declining_trend") == T0 + timedelta(days=1)
    assert log.get_last_alert_time("s2", "new_high_risk") is None


def test_results_frame_is_sorted_per_student():
    store = InMemoryStore(
        [
            AssessmentResult("s1", "A", "a2", "English", 5, 60.0, T0 + timedelta(days=1)),
            AssessmentResult("s1", "A", "a1", "English", 5, 70.0, T0),
        ]
    )
    df = results_frame(store.all_results())
    assert list(df["assessment_id"]) == ["a1", "a2"]
    assert results_frame([]).empty

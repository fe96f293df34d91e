# ABOUTME: Tests answer scoring for choice and short-answer questions.
# ABOUTME: Covers normalization, fuzzy thresholds, partial credit, and unknown question handling.

from datetime import datetime, timezone

import pytest

from src.common.config import EngineConfig, FuzzyMatchingConfig, PartialCreditConfig
from src.common.errors import UnknownQuestionError
from src.common.schemas import MULTIPLE_CHOICE, SHORT_ANSWER, TRUE_FALSE, Question
from src.grading.scorer import build_result, grade_submission, resolve_threshold, score_answer
from src.grading.similarity import dice_similarity


def _short(correct: str, **kwargs) -> Question:
    return Question(id="q-short", type=SHORT_ANSWER, correct_answer=correct, **kwargs)


def test_dice_similarity_one_letter_typo():
    assert dice_similarity("matematics", "mathematics") == pytest.approx(16 / 19)


def test_dice_similarity_edge_cases():
    assert dice_similarity("abc", "abc") == 1.0
    assert dice_similarity("a", "b") == 0.0
    assert dice_similarity("new york", "newyork") == 1.0
    assert dice_similarity("abcd", "wxyz") == 0.0


def test_multiple_choice_compares_index():
    question = Question(id="q1", type=MULTIPLE_CHOICE, correct_answer=2, points=2)

    hit = score_answer(question, "2")
    assert hit.is_correct
    assert hit.matching_method == "exact"
    assert hit.points_awarded == 2.0
    assert hit.similarity_score is None

    miss = score_answer(question, 1)
    assert not miss.is_correct
    assert miss.matching_method == "none"
    assert miss.points_awarded == 0.0


def test_multiple_choice_accepts_integral_float_index():
    question = Question(id="q1", type=MULTIPLE_CHOICE, correct_answer=2)
    assert score_answer(question, 2.0).is_correct
    assert score_answer(question, "2.0").is_correct
    assert not score_answer(question, 2.5).is_correct
    assert score_answer(Question(id="q1b", type=MULTIPLE_CHOICE, correct_answer=2.0), 2).is_correct


def test_true_false_accepts_boolean_and_string():
    question = Question(id="q2", type=TRUE_FALSE, correct_answer="true")
    assert score_answer(question, True).is_correct
    assert score_answer(question, " TRUE ").is_correct
    assert not score_answer(question, False).is_correct


def test_short_answer_normalized_exact_match():
    outcome = score_answer(_short("Islamabad"), "islamabad ")
    assert outcome.is_correct
    assert outcome.matching_method == "exact"
    assert outcome.similarity_score == 1.0


def test_short_answer_typo_passes_with_lenient_subject_threshold():
    outcome = score_answer(_short("Mathematics"), "Matematics", subject="English")
    assert outcome.is_correct
    assert outcome.matching_method == "fuzzy"
    assert 0.8 <= outcome.similarity_score <= 0.9


def test_short_answer_typo_fails_with_strict_subject_threshold():
    outcome = score_answer(_short("Mathematics"), "Matematics", subject="Mathematics")
    assert not outcome.is_correct
    assert outcome.matching_method == "none"
    assert outcome.similarity_score == pytest.approx(16 / 19)
    assert outcome.points_awarded == 0.0


def test_threshold_priority_question_then_subject_then_default():
    fuzzy = FuzzyMatchingConfig()
    assert resolve_threshold(_short("x", similarity_threshold=0.95), "English", fuzzy) == 0.95
    assert resolve_threshold(_short("x"), "english", fuzzy) == 0.75
    assert resolve_threshold(_short("x"), "Science", fuzzy) == 0.80
    assert resolve_threshold(_short("x"), None, fuzzy) == 0.80


def test_fuzzy_disabled_globally_returns_zero_similarity():
    config = EngineConfig(fuzzy=FuzzyMatchingConfig(enabled=False))
    outcome = score_answer(_short("Mathematics"), "Matematics", subject="English", config=config)
    assert not outcome.is_correct
    assert outcome.similarity_score == 0.0
    assert outcome.matching_method == "none"


def test_question_override_enables_fuzzy_when_globally_disabled():
    config = EngineConfig(fuzzy=FuzzyMatchingConfig(enabled=False))
    question = _short("Mathematics", fuzzy_matching_enabled=True)
    outcome = score_answer(question, "Matematics", subject="English", config=config)
    assert outcome.is_correct
    assert outcome.matching_method == "fuzzy"


def test_raising_threshold_never_turns_incorrect_into_correct():
    answers = ["Matematics", "Mathematic", "Maths", "Physics", "mathematics"]
    thresholds = [0.0, 0.5, 0.7, 0.8, 0.85, 0.9, 0.99, 1.0]
    for answer in answers:
        verdicts = [score_answer(_short("Mathematics", similarity_threshold=t), answer).is_correct for t in thresholds]
        assert verdicts == sorted(verdicts, reverse=True), answer


def test_partial_credit_bands_when_enabled():
    config = EngineConfig(fuzzy=FuzzyMatchingConfig(partial_credit=PartialCreditConfig(enabled=True)))
    question = Question(id="q3", type=SHORT_ANSWER, correct_answer="Mathematics", points=10)
    outcome = score_answer(question, "Matematics", subject="English", config=config)
    assert outcome.is_correct
    assert outcome.points_awarded == 9.0


def test_unknown_question_type_never_raises():
    question = Question(id="q4", type="essay", correct_answer="anything")
    outcome = score_answer(question, "anything")
    assert not outcome.is_correct
    assert outcome.similarity_score is None
    assert outcome.matching_method == "none"


def test_scoring_is_idempotent():
    question = _short("Mathematics")
    assert score_answer(question, "Matematics", "English") == score_answer(question, "Matematics", "English")


def test_grade_submission_rejects_unknown_question():
    questions = [Question(id="q1", type=MULTIPLE_CHOICE, correct_answer=0)]
    with pytest.raises(UnknownQuestionError) as excinfo:
        grade_submission(questions, {"q1": 0, "ghost": 1}, assessment_id="a1")
    assert isinstance(excinfo.value, KeyError)
    assert excinfo.value.question_id == "ghost"
    assert "a1" in str(excinfo.value)


def test_build_result_percentage_from_points():
    questions = [
        Question(id="q1", type=MULTIPLE_CHOICE, correct_answer=1, points=2),
        Question(id="q2", type=TRUE_FALSE, correct_answer="false"),
        Question(id="q3", type=SHORT_ANSWER, correct_answer="Lahore"),
    ]
    result = build_result(
        student_id="s1",
        student_name="Ayesha",
        assessment_id="a1",
        subject="Social Studies",
        grade=4,
        questions=questions,
        raw_answers={"q1": 1, "q2": "true", "q3": "lahore"},
        completed_at=datetime(2025, 3, 1, 9, 0),
    )
    assert result.percentage == 75.0
    assert [a.question_id for a in result.answers] == ["q1", "q2", "q3"]
    assert [a.is_correct for a in result.answers] == [True, False, True]
    assert result.completed_at.tzinfo is not None
    assert result.completed_at == datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

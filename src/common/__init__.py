# ABOUTME: Makes the shared common package importable across engines.
# ABOUTME: Re-exports schema types, configuration, and trend helpers for convenience.

from .schemas import AssessmentResult, Question, Student, SubmittedAnswer
from .config import DEFAULT_CONFIG, EngineConfig, load_engine_config
from .errors import ConfigError, UnknownQuestionError
from .trend import classify_trend, score_volatility

__all__ = [
    "AssessmentResult",
    "Question",
    "Student",
    "SubmittedAnswer",
    "DEFAULT_CONFIG",
    "EngineConfig",
    "load_engine_config",
    "ConfigError",
    "UnknownQuestionError",
    "classify_trend",
    "score_volatility",
]

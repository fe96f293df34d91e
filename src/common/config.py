# ABOUTME: Holds the immutable thresholds and weights every engine call receives.
# ABOUTME: Loads YAML overrides onto defaults and validates invariants up front.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-6


@dataclass(frozen=True)
class PartialCreditBand:
    min_similarity: float
    credit_percent: int


@dataclass(frozen=True)
class PartialCreditConfig:
    """Similarity-to-credit bands. Binary scoring applies while disabled."""

    enabled: bool = False
    bands: Tuple[PartialCreditBand, ...] = (
        PartialCreditBand(0.90, 100),
        PartialCreditBand(0.80, 90),
        PartialCreditBand(0.70, 75),
        PartialCreditBand(0.60, 50),
        PartialCreditBand(0.00, 0),
    )


@dataclass(frozen=True)
class FuzzyMatchingConfig:
    enabled: bool = True
    default_threshold: float = 0.80
    subject_thresholds: Mapping[str, float] = field(
        default_factory=lambda: {"Mathematics": 0.85, "English": 0.75, "Urdu": 0.75}
    )
    partial_credit: PartialCreditConfig = PartialCreditConfig()


@dataclass(frozen=True)
class ItemAnalysisConfig:
    easy_threshold: int = 70
    medium_threshold: int = 40
    cohort_fraction: float = 0.27
    min_results_for_discrimination: int = 4
    pass_mark: float = 60.0
    problematic_threshold: int = 40
    poor_discrimination_threshold: float = 0.2


@dataclass(frozen=True)
class TrendConfig:
    threshold: float = 5.0


@dataclass(frozen=True)
class RiskWeights:
    academic: float = 0.45
    trend: float = 0.15
    engagement: float = 0.25
    consistency: float = 0.15

    def total(self) -> float:
        return self.academic + self.trend + self.engagement + self.consistency


@dataclass(frozen=True)
class RiskThresholds:
    low_score: float = 60.0
    very_low_score: float = 40.0
    low_score_step: float = 15.0
    very_low_score_step: float = 15.0
    declining_trend_threshold: float = -10.0
    missed_assessments_threshold: int = 2
    days_since_assessment_threshold: int = 14
    consecutive_low_threshold: int = 3
    volatility_threshold: float = 20.0
    failed_assessments_threshold: int = 2


@dataclass(frozen=True)
class RiskTriggerThresholds:
    """Sub-score level at which a factor is reported as a trigger."""

    academic: int = 60
    trend: int = 50
    engagement: int = 50
    consistency: int = 60


@dataclass(frozen=True)
class RiskConfig:
    high_threshold: int = 70
    medium_threshold: int = 40
    weights: RiskWeights = RiskWeights()
    thresholds: RiskThresholds = RiskThresholds()
    triggers: RiskTriggerThresholds = RiskTriggerThresholds()
    alert_cooldown_days: int = 7
    risk_increase_alert_points: int = 20
    max_recommended_actions: int = 5


@dataclass(frozen=True)
class InterventionConfig:
    max_recommendations: int = 5
    intervention_threshold: float = 70.0
    strong_subject_threshold: float = 80.0
    recent_score_window: int = 5
    plan_weeks: int = 4


@dataclass(frozen=True)
class GroupingConfig:
    beginner: float = 40.0
    developing: float = 60.0
    proficient: float = 80.0
    min_group_size: int = 2
    max_group_size: int = 10


@dataclass(frozen=True)
class EngineConfig:
    """Snapshot of every threshold the engines consult."""

    fuzzy: FuzzyMatchingConfig = FuzzyMatchingConfig()
    item_analysis: ItemAnalysisConfig = ItemAnalysisConfig()
    trend: TrendConfig = TrendConfig()
    risk: RiskConfig = RiskConfig()
    interventions: InterventionConfig = InterventionConfig()
    grouping: GroupingConfig = GroupingConfig()

    def __post_init__(self) -> None:
        validate_engine_config(self)


def validate_engine_config(config: EngineConfig) -> None:
    """Raise ConfigError when an invariant does not hold."""

    weights = config.risk.weights
    for name in ("academic", "trend", "engagement", "consistency"):
        if getattr(weights, name) < 0:
            raise ConfigError(f"Risk weight '{name}' must be non-negative.")
    total = weights.total()
    if not math.isclose(total, 1.0, abs_tol=WEIGHT_TOLERANCE):
        raise ConfigError(f"Risk weights must sum to 1.0, got {total:.6f}.")

    risk = config.risk
    if not 0 <= risk.medium_threshold < risk.high_threshold <= 100:
        raise ConfigError(
            f"Risk thresholds must satisfy 0 <= medium < high <= 100, got medium={risk.medium_threshold} high={risk.high_threshold}."
        )
    if risk.thresholds.very_low_score >= risk.thresholds.low_score:
        raise ConfigError("very_low_score must be below low_score.")
    if risk.thresholds.declining_trend_threshold >= 0:
        raise ConfigError("declining_trend_threshold must be negative.")
    if risk.alert_cooldown_days < 0:
        raise ConfigError("alert_cooldown_days must be non-negative.")
    if risk.thresholds.missed_assessments_threshold < 1 or risk.thresholds.days_since_assessment_threshold < 1:
        raise ConfigError("missed_assessments_threshold and days_since_assessment_threshold must be at least 1.")

    fuzzy = config.fuzzy
    thresholds = {"default": fuzzy.default_threshold, **dict(fuzzy.subject_thresholds)}
    for subject, value in thresholds.items():
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"Similarity threshold for '{subject}' must be within [0, 1], got {value}.")
    bands = fuzzy.partial_credit.bands
    if [b.min_similarity for b in bands] != sorted((b.min_similarity for b in bands), reverse=True):
        raise ConfigError("Partial credit bands must be ordered by descending min_similarity.")

    items = config.item_analysis
    if not 0 <= items.medium_threshold < items.easy_threshold <= 100:
        raise ConfigError("Item difficulty thresholds must satisfy 0 <= medium < easy <= 100.")
    if not 0 < items.cohort_fraction <= 0.5:
        raise ConfigError("cohort_fraction must be within (0, 0.5].")

    if config.trend.threshold <= 0:
        raise ConfigError("Trend threshold must be positive.")

    grouping = config.grouping
    if not 0 <= grouping.beginner < grouping.developing < grouping.proficient <= 100:
        raise ConfigError("Grouping thresholds must be strictly increasing within [0, 100].")
    if not 1 <= grouping.min_group_size <= grouping.max_group_size:
        raise ConfigError("Group sizes must satisfy 1 <= min_group_size <= max_group_size.")

    if config.interventions.max_recommendations < 1:
        raise ConfigError("max_recommendations must be at least 1.")
    if config.interventions.plan_weeks < 1:
        raise ConfigError("plan_weeks must be at least 1.")


DEFAULT_CONFIG = EngineConfig()


def load_engine_config(path: Path) -> EngineConfig:
    """Read a YAML file and overlay it onto the default configuration."""

    with open(path) as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    logger.info("Loading engine config from %s", path)
    return config_from_dict(cfg)


def config_from_dict(cfg: Mapping[str, Any]) -> EngineConfig:
    try:
        return _overlay(DEFAULT_CONFIG, cfg)
    except TypeError as exc:
        raise ConfigError(str(exc)) from exc


def _overlay(base: Any, overrides: Mapping[str, Any]) -> Any:
    known = {f.name for f in fields(base)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigError(f"Unknown config keys for {type(base).__name__}: {', '.join(sorted(unknown))}.")

    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        current = getattr(base, key)
        if is_dataclass(current) and isinstance(value, Mapping):
            changes[key] = _overlay(current, value)
        elif key == "bands":
            changes[key] = tuple(PartialCreditBand(**band) for band in value)
        elif key == "subject_thresholds":
            changes[key] = {str(k): float(v) for k, v in value.items()}
        else:
            changes[key] = value
    return replace(base, **changes)

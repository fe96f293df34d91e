# ABOUTME: Exposes student analytics: risk scoring, alerts, intervention plans, feedback, and grouping.
# ABOUTME: All entrypoints are pure functions over result histories and an engine config.

from .risk import RiskAssessment, assess_class_risk, assess_risk
from .alerts import RiskAlert, generate_risk_alerts
from .interventions import (
    build_student_context,
    load_intervention_rules,
    plan_at_risk_interventions,
    plan_interventions,
)
from .feedback import generate_aggregate_feedback, generate_feedback, load_feedback_templates
from .grouping import group_students, prepare_grouping_inputs

__all__ = [
    "RiskAssessment",
    "assess_class_risk",
    "assess_risk",
    "RiskAlert",
    "generate_risk_alerts",
    "build_student_context",
    "load_intervention_rules",
    "plan_at_risk_interventions",
    "plan_interventions",
    "generate_aggregate_feedback",
    "generate_feedback",
    "load_feedback_templates",
    "group_students",
    "prepare_grouping_inputs",
]

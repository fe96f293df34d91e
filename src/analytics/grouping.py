# ABOUTME: Buckets students into competency groups for Teaching at the Right Level (TaRL).
# ABOUTME: Supports subject filters, deterministic merge/split passes, and mixed-ability grouping.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import yaml

from src.common.config import DEFAULT_CONFIG, EngineConfig, GroupingConfig
from src.common.errors import ConfigError
from src.common.schemas import AssessmentResult, Student, completed_only, ensure_utc, order_history, utc_now
from src.common.trend import classify_trend

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "rules" / "group_templates.yaml"

BEGINNER = "Beginner"
DEVELOPING = "Developing"
PROFICIENT = "Proficient"
ADVANCED = "Advanced"
LEVELS = (BEGINNER, DEVELOPING, PROFICIENT, ADVANCED)

METHOD_COMPETENCY = "competency"
METHOD_MIXED = "mixed-ability"


@dataclass(frozen=True)
class SubjectScore:
    subject: str
    percentage: int
    assessment_count: int


@dataclass(frozen=True)
class GroupingInput:
    student_id: str
    student_name: str
    grade: int
    scores: Tuple[SubjectScore, ...]
    average_score: int
    recent_trend: str
    assessment_count: int

    def score_for(self, subject: Optional[str]) -> int:
        """Subject average when the student has one, otherwise the overall average."""

        if subject:
            wanted = subject.casefold()
            for score in self.scores:
                if score.subject.casefold() == wanted:
                    return score.percentage
        return self.average_score


@dataclass(frozen=True)
class GroupMember:
    student_id: str
    student_name: str
    score: int
    assessment_count: int = 0


@dataclass(frozen=True)
class LevelTemplate:
    level: int
    description: str
    focus_areas: Tuple[str, ...]
    activities: Tuple[str, ...]
    strategies: Tuple[str, ...]


@dataclass(frozen=True)
class GroupTemplates:
    version: str
    levels: Mapping[str, LevelTemplate]
    mixed: LevelTemplate
    subject_focus: Mapping[str, Mapping[str, Tuple[str, ...]]] = field(default_factory=dict)

    def focus_for(self, level: str, subject: Optional[str]) -> Tuple[str, ...]:
        if subject:
            for name, by_level in self.subject_focus.items():
                if name.casefold() == subject.casefold() and level in by_level:
                    return by_level[level]
        return self.levels[level].focus_areas


@dataclass(frozen=True)
class StudentGroup:
    group_name: str
    group_level: int
    description: str
    students: List[GroupMember]
    average_score: int
    recommended_focus: List[str]
    suggested_activities: List[str]
    teaching_strategies: List[str]
    level_name: str = ""


@dataclass(frozen=True)
class GroupingResult:
    subject: str
    total_students: int
    groups: List[StudentGroup]
    grouping_method: str
    templates_version: str
    generated_at: datetime


@dataclass(frozen=True)
class StudentMove:
    student_id: str
    from_level: str
    to_level: str


@dataclass(frozen=True)
class RegroupingSuggestion:
    should_regroup: bool
    reason: str
    moved_students: List[StudentMove]


@dataclass(frozen=True)
class LevelShare:
    level: str
    count: int
    percentage: int


@dataclass(frozen=True)
class GroupingSummary:
    total_students: int
    distribution: List[LevelShare]
    average_score: int
    needs_attention: int


def load_group_templates(path: Optional[Path] = None) -> GroupTemplates:
    path = Path(path) if path is not None else DEFAULT_TEMPLATES_PATH
    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    levels_raw = raw.get("levels") or {}
    missing = [level for level in LEVELS if level not in levels_raw]
    if "version" not in raw or missing:
        raise ConfigError(f"Group templates {path} need a version and every level; missing {missing}.")

    def _level(data: Mapping, default_level: int = 0) -> LevelTemplate:
        return LevelTemplate(
            level=int(data.get("level", default_level)),
            description=str(data.get("description", "")),
            focus_areas=tuple(data.get("focus_areas") or ()),
            activities=tuple(data.get("activities") or ()),
            strategies=tuple(data.get("strategies") or ()),
        )

    subject_focus = {
        str(subject): {str(level): tuple(items) for level, items in by_level.items()}
        for subject, by_level in (raw.get("subject_focus") or {}).items()
    }
    return GroupTemplates(
        version=str(raw["version"]),
        levels={name: _level(levels_raw[name], i + 1) for i, name in enumerate(LEVELS)},
        mixed=_level(raw.get("mixed") or {}),
        subject_focus=subject_focus,
    )


def grouping_level(score: float, config: GroupingConfig = DEFAULT_CONFIG.grouping) -> str:
    if score <= config.beginner:
        return BEGINNER
    if score <= config.developing:
        return DEVELOPING
    if score <= config.proficient:
        return PROFICIENT
    return ADVANCED


def prepare_grouping_inputs(
    results: Sequence[AssessmentResult],
    students: Optional[Sequence[Student]] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> List[GroupingInput]:
    """Per-student subject and overall averages. Students without completed results are skipped."""

    by_student: Dict[str, List[AssessmentResult]] = {}
    for result in completed_only(order_history(results)):
        by_student.setdefault(result.student_id, []).append(result)

    if students is not None:
        roster = [(s.id, s.name, s.grade) for s in students]
    else:
        roster = [(sid, rs[-1].student_name, rs[-1].grade) for sid, rs in by_student.items()]

    inputs: List[GroupingInput] = []
    for student_id, name, grade in sorted(roster):
        history = by_student.get(student_id)
        if not history:
            continue
        subjects: Dict[str, List[float]] = {}
        for result in history:
            subjects.setdefault(result.subject, []).append(float(result.percentage))
        scores = [float(r.percentage) for r in history]
        inputs.append(
            GroupingInput(
                student_id=student_id,
                student_name=name,
                grade=grade,
                scores=tuple(
                    SubjectScore(subject=s, percentage=round(float(np.mean(v))), assessment_count=len(v))
                    for s, v in sorted(subjects.items())
                ),
                average_score=round(float(np.mean(scores))),
                recent_trend=classify_trend(scores[-3:], config.trend.threshold).direction,
                assessment_count=len(history),
            )
        )
    return inputs


def _members_sorted(members: Sequence[GroupMember]) -> List[GroupMember]:
    return sorted(members, key=lambda m: (-m.score, m.student_id))


def _mean(members: Sequence[GroupMember]) -> float:
    return float(np.mean([m.score for m in members])) if members else 0.0


def _build_group(
    level: str,
    members: Sequence[GroupMember],
    templates: GroupTemplates,
    subject: Optional[str],
    name: Optional[str] = None,
) -> StudentGroup:
    template = templates.levels[level]
    return StudentGroup(
        group_name=name or level,
        group_level=template.level,
        description=template.description,
        students=_members_sorted(members),
        average_score=round(_mean(members)),
        recommended_focus=list(templates.focus_for(level, subject)),
        suggested_activities=list(template.activities),
        teaching_strategies=list(template.strategies),
        level_name=level,
    )


def merge_buckets(buckets: List[Tuple[str, List[GroupMember]]], min_size: int) -> List[Tuple[str, List[GroupMember]]]:
    """
    Merge undersized buckets into a neighbour until none remain or one is left.

    ``buckets`` holds non-empty (level, members) pairs in ascending level order.
    The lowest undersized bucket goes first and joins the adjacent bucket whose
    mean score is nearer; ties go to the lower level. The receiving bucket keeps
    its level.
    """

    buckets = [(level, list(members)) for level, members in buckets]
    while len(buckets) > 1:
        index = next((i for i, (_, members) in enumerate(buckets) if len(members) < min_size), None)
        if index is None:
            break
        level, members = buckets[index]
        mean = _mean(members)

        candidates = []
        if index > 0:
            candidates.append((abs(mean - _mean(buckets[index - 1][1])), 0, index - 1))
        if index < len(buckets) - 1:
            candidates.append((abs(mean - _mean(buckets[index + 1][1])), 1, index + 1))
        _, _, target = min(candidates)

        logger.debug("Merging %d student(s) from %s into %s", len(members), level, buckets[target][0])
        buckets[target][1].extend(members)
        del buckets[index]
    return buckets


def _split(members: Sequence[GroupMember], max_size: int) -> List[List[GroupMember]]:
    ordered = _members_sorted(members)
    parts = math.ceil(len(ordered) / max_size)
    if parts <= 1:
        return [ordered]
    base, extra = divmod(len(ordered), parts)
    chunks: List[List[GroupMember]] = []
    start = 0
    for i in range(parts):
        size = base + (1 if i < extra else 0)
        chunks.append(ordered[start : start + size])
        start += size
    return chunks


def group_students(
    roster: Sequence[GroupingInput],
    subject: Optional[str] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    merge_small_groups: bool = False,
    templates: Optional[GroupTemplates] = None,
    as_of: Optional[datetime] = None,
) -> GroupingResult:
    """
    Bucket students into Beginner/Developing/Proficient/Advanced groups.

    With a subject filter each student is placed by their subject average,
    falling back to the overall average when they have no result in it.
    When merging is enabled, undersized groups are merged and oversized
    groups split into balanced, score-ordered parts.
    """

    templates = templates or load_group_templates()
    settings = config.grouping
    as_of = ensure_utc(as_of) if as_of is not None else utc_now()

    by_level: Dict[str, List[GroupMember]] = {level: [] for level in LEVELS}
    for student in roster:
        score = student.score_for(subject)
        member = GroupMember(
            student_id=student.student_id,
            student_name=student.student_name,
            score=score,
            assessment_count=student.assessment_count,
        )
        by_level[grouping_level(score, settings)].append(member)

    buckets = [(level, members) for level, members in by_level.items() if members]
    groups: List[StudentGroup] = []
    if merge_small_groups:
        buckets = merge_buckets(buckets, settings.min_group_size)
        for level, members in buckets:
            chunks = _split(members, settings.max_group_size)
            if len(chunks) == 1:
                groups.append(_build_group(level, chunks[0], templates, subject))
            else:
                groups.extend(
                    _build_group(level, chunk, templates, subject, name=f"{level} {i}")
                    for i, chunk in enumerate(chunks, start=1)
                )
    else:
        groups = [_build_group(level, members, templates, subject) for level, members in buckets]

    return GroupingResult(
        subject=subject or "All Subjects",
        total_students=len(roster),
        groups=groups,
        grouping_method=METHOD_COMPETENCY,
        templates_version=templates.version,
        generated_at=as_of,
    )


def mixed_ability_groups(
    roster: Sequence[GroupingInput],
    group_size: int = 4,
    config: EngineConfig = DEFAULT_CONFIG,
    templates: Optional[GroupTemplates] = None,
) -> List[StudentGroup]:
    """Serpentine distribution so each group spans the ability range."""

    templates = templates or load_group_templates()
    settings = config.grouping
    if not roster:
        return []

    target = min(max(group_size, settings.min_group_size), settings.max_group_size)
    ordered = sorted(roster, key=lambda s: (-s.average_score, s.student_id))
    count = math.ceil(len(ordered) / target)
    buckets: List[List[GroupMember]] = [[] for _ in range(count)]

    for index, student in enumerate(ordered):
        round_no, position = divmod(index, count)
        slot = position if round_no % 2 == 0 else count - 1 - position
        buckets[slot].append(
            GroupMember(
                student_id=student.student_id,
                student_name=student.student_name,
                score=student.average_score,
                assessment_count=student.assessment_count,
            )
        )

    groups: List[StudentGroup] = []
    for index, members in enumerate(buckets, start=1):
        average = _mean(members)
        groups.append(
            StudentGroup(
                group_name=f"Mixed Group {index}",
                group_level=index,
                description=f"Mixed-ability group for collaborative learning (Avg: {round(average)}%)",
                students=members,
                average_score=round(average),
                recommended_focus=list(templates.mixed.focus_areas),
                suggested_activities=list(templates.mixed.activities),
                teaching_strategies=list(templates.mixed.strategies),
                level_name=grouping_level(average, settings),
            )
        )
    return groups


def suggest_regrouping(
    groups: Sequence[StudentGroup],
    new_results: Sequence[AssessmentResult],
    config: EngineConfig = DEFAULT_CONFIG,
) -> RegroupingSuggestion:
    """Flag students whose running average would now place them at a different level."""

    fresh: Dict[str, List[float]] = {}
    for result in completed_only(new_results):
        fresh.setdefault(result.student_id, []).append(float(result.percentage))

    moves: List[StudentMove] = []
    for group in groups:
        current_level = group.level_name or group.group_name
        for member in group.students:
            scores = fresh.get(member.student_id)
            if not scores:
                continue
            weight = max(member.assessment_count, 1)
            new_average = round((member.score * weight + sum(scores)) / (weight + len(scores)))
            new_level = grouping_level(new_average, config.grouping)
            if new_level != current_level:
                moves.append(StudentMove(student_id=member.student_id, from_level=current_level, to_level=new_level))

    if moves:
        reason = f"{len(moves)} student(s) have changed performance levels based on recent assessments"
    else:
        reason = "All students remain in appropriate groups"
    return RegroupingSuggestion(should_regroup=bool(moves), reason=reason, moved_students=moves)


def grouping_summary(groups: Sequence[StudentGroup]) -> GroupingSummary:
    total = sum(len(g.students) for g in groups)
    distribution = [
        LevelShare(
            level=g.group_name,
            count=len(g.students),
            percentage=round(len(g.students) / total * 100) if total else 0,
        )
        for g in groups
    ]
    scores = [m.score for g in groups for m in g.students]
    needs_attention = sum(len(g.students) for g in groups if (g.level_name or g.group_name) in (BEGINNER, DEVELOPING))
    return GroupingSummary(
        total_students=total,
        distribution=distribution,
        average_score=round(float(np.mean(scores))) if scores else 0,
        needs_attention=needs_attention,
    )

# ABOUTME: Provides a CLI for item analysis, risk scoring, interventions, feedback, and grouping on a dataset.
# ABOUTME: Reads a JSON dataset plus optional YAML config and renders results with rich tables.

import logging
from pathlib import Path
from typing import Optional

import pandas as pd
import typer
from rich.console import Console
from rich.table import Table

from src.analytics.alerts import alerts_frame, generate_risk_alerts
from src.analytics.feedback import generate_aggregate_feedback, generate_feedback
from src.analytics.grouping import group_students, grouping_summary, prepare_grouping_inputs
from src.analytics.interventions import build_student_context, plan_at_risk_interventions, plan_interventions
from src.analytics.risk import assess_class_risk, assess_risk
from src.common.config import DEFAULT_CONFIG, EngineConfig, load_engine_config
from src.common.errors import ConfigError
from src.common.schemas import ensure_utc
from src.common.store import InMemoryAlertLog, InMemoryStore, load_dataset
from src.grading.item_analysis import analyze_assessment, assessment_quality_metrics, question_stats_frame

console = Console()
app = typer.Typer(help="Score assessments and surface student analytics from a JSON dataset.")

LEVEL_COLORS = {"high": "red", "medium": "yellow", "low": "green", "critical": "red", "warning": "yellow", "info": "cyan"}


def _load(dataset: Path, config_path: Optional[Path]) -> tuple:
    if not dataset.exists():
        raise typer.BadParameter(f"Dataset not found at {dataset}")
    try:
        store = load_dataset(dataset)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc
    config: EngineConfig = DEFAULT_CONFIG
    if config_path is not None:
        try:
            config = load_engine_config(config_path)
        except ConfigError as exc:
            console.print(f"[red]Invalid config: {exc}[/red]")
            raise typer.Exit(code=1)
    return store, config


def _parse_as_of(as_of: Optional[str]):
    if as_of is None:
        return None
    try:
        return ensure_utc(as_of)
    except ValueError as exc:
        raise typer.BadParameter(f"Could not parse --as-of '{as_of}': {exc}") from exc


def _export(df: pd.DataFrame, out: Optional[Path]) -> None:
    if out is None:
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(out, index=False)
    typer.echo(f"[export] wrote {len(df)} rows to {out}")


def _histories(store: InMemoryStore, teacher_id: Optional[str]):
    students = store.get_students(teacher_id)
    if not students:
        ids = sorted({r.student_id for r in store.all_results()})
        return [(sid, None, store.get_results_by_student(sid)) for sid in ids]
    return [(s.id, s, store.get_results_by_student(s.id)) for s in students]


@app.command("item-analysis")
def item_analysis(
    assessment_id: str = typer.Option(..., "--assessment-id", help="Assessment to analyze."),
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    out: Optional[Path] = typer.Option(None, "--out", help="Optional parquet export of question stats."),
) -> None:
    """
    Per-question difficulty and discrimination with flagged questions.
    """
    store, config = _load(dataset, config_path)
    questions = store.get_questions_for_assessment(assessment_id)
    if not questions:
        raise typer.BadParameter(f"No questions found for assessment {assessment_id}")

    analysis = analyze_assessment(assessment_id, store.get_results_by_assessment(assessment_id), questions, config)
    console.rule(f"[bold blue]Item Analysis: {assessment_id}[/bold blue]")
    console.print(
        f"[bold]Students:[/] {analysis.total_students}  [bold]Average:[/] {analysis.average_score}%  "
        f"[bold]Pass rate:[/] {analysis.pass_rate}%"
    )

    table = Table(show_header=True, header_style="bold magenta")
    for column in ("Question", "Type", "Attempts", "Correct %", "Difficulty", "Discrimination", "Avg Points"):
        table.add_column(column)
    for q in analysis.question_stats:
        table.add_row(
            q.question_id,
            q.question_type,
            str(q.total_attempts),
            str(q.correct_percentage),
            q.difficulty,
            f"{q.discrimination_index:.2f}",
            f"{q.average_points:.1f}/{q.max_points}",
        )
    console.print(table)

    for flag in analysis.flags:
        color = LEVEL_COLORS.get(flag.severity, "white")
        console.print(f"[{color}]{flag.kind} ({flag.severity})[/{color}] {flag.message}")

    metrics = assessment_quality_metrics(analysis, config.item_analysis)
    if metrics is not None:
        console.print(f"[bold]Quality score:[/] {metrics.quality_score}/100")
        for rec in metrics.recommendations:
            console.print(f"  → {rec}")

    _export(question_stats_frame(analysis), out)


@app.command()
def risk(
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    teacher_id: Optional[str] = typer.Option(None, "--teacher-id", help="Restrict to one teacher's class."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO timestamp used as 'now'."),
    expected_assessments: Optional[int] = typer.Option(None, "--expected-assessments", help="Assessments each student should have completed."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    out: Optional[Path] = typer.Option(None, "--out", help="Optional parquet export of risk scores."),
) -> None:
    """
    Score every student's risk and print the class roll-up.
    """
    store, config = _load(dataset, config_path)
    now = _parse_as_of(as_of)

    histories = _histories(store, teacher_id)
    assessments = [assess_risk(history, config, now, expected_assessments, student=student) for _, student, history in histories]
    class_results = [r for _, _, history in histories for r in history]
    summary = assess_class_risk(assessments, class_results, teacher_id or "all", config, now)

    console.rule("[bold blue]Student Risk[/bold blue]")
    table = Table(show_header=True, header_style="bold magenta")
    for column in ("Student", "Score", "Level", "Trend", "Triggers"):
        table.add_column(column)
    for a in sorted(assessments, key=lambda a: (-a.overall_risk_score, a.student_id)):
        color = LEVEL_COLORS.get(a.risk_level, "white")
        table.add_row(
            a.student_name or a.student_id,
            str(a.overall_risk_score),
            f"[{color}]{a.risk_level}[/{color}]",
            a.trend,
            ", ".join(t.factor for t in a.trigger_factors) or "-",
        )
    console.print(table)
    console.print(
        f"[bold]High:[/] {summary.high_risk_count}  [bold]Medium:[/] {summary.medium_risk_count}  "
        f"[bold]Low:[/] {summary.low_risk_count}  [bold]Average risk:[/] {summary.average_risk_score}  "
        f"[bold]Class trend:[/] {summary.class_trend}"
    )

    rows = [
        {
            "student_id": a.student_id,
            "student_name": a.student_name,
            "overall_risk_score": a.overall_risk_score,
            "risk_level": a.risk_level,
            "trend": a.trend,
            **{f"{k}_score": v for k, v in a.risk_factors.as_dict().items()},
            "triggers": "; ".join(t.factor for t in a.trigger_factors),
        }
        for a in assessments
    ]
    _export(pd.DataFrame(rows), out)


@app.command()
def alerts(
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    teacher_id: Optional[str] = typer.Option(None, "--teacher-id", help="Restrict to one teacher's class."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO timestamp used as 'now'."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    out: Optional[Path] = typer.Option(None, "--out", help="Optional parquet export of proposed alerts."),
) -> None:
    """
    Propose risk alerts for students without a previous snapshot.
    """
    store, config = _load(dataset, config_path)
    now = _parse_as_of(as_of)
    assessments = [assess_risk(history, config, now, student=student) for _, student, history in _histories(store, teacher_id)]

    proposed = generate_risk_alerts(assessments, InMemoryAlertLog(), config, now)
    if not proposed:
        console.print("[green]No alerts to raise[/green]")
        return
    for alert in proposed:
        color = LEVEL_COLORS.get(alert.severity, "white")
        console.print(f"[{color}]{alert.alert_type} ({alert.severity})[/{color}] {alert.message}")
    _export(alerts_frame(proposed), out)


@app.command()
def plan(
    student_id: str = typer.Option(..., "--student-id", help="Student to plan for."),
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO timestamp used as 'now'."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
) -> None:
    """
    Build an intervention plan for one student.
    """
    store, config = _load(dataset, config_path)
    now = _parse_as_of(as_of)
    history = store.get_results_by_student(student_id)
    if not history:
        console.print(f"[yellow]No results for {student_id}[/yellow]")
        raise typer.Exit(code=1)

    student = next((s for s in store.get_students() if s.id == student_id), None)
    banks = {aid: store.get_questions_for_assessment(aid) for aid in {r.assessment_id for r in history}}
    risk_assessment = assess_risk(history, config, now, student=student)
    context = build_student_context(history, config, now, questions=banks, risk=risk_assessment, student=student)
    result = plan_interventions(context, config=config, as_of=now)

    console.rule(f"[bold blue]Intervention Plan ({result.overall_priority})[/bold blue]")
    console.print(result.summary)
    table = Table(show_header=True, header_style="bold magenta")
    for column in ("Priority", "Category", "Title", "Target", "Duration"):
        table.add_column(column)
    for item in result.interventions:
        table.add_row(item.priority, item.category, item.title, item.target_area, item.estimated_duration)
    console.print(table)
    for week in result.weekly_focus:
        console.print(f"[bold]Week {week.week}:[/] {week.focus} ({', '.join(week.activities)}) → {week.goal}")
    if result.quick_wins:
        console.print(f"[bold green]Quick wins:[/] {', '.join(i.title for i in result.quick_wins)}")


@app.command()
def group(
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    subject: Optional[str] = typer.Option(None, "--subject", help="Group by this subject's average."),
    teacher_id: Optional[str] = typer.Option(None, "--teacher-id", help="Restrict to one teacher's class."),
    merge: bool = typer.Option(False, "--merge/--no-merge", help="Merge undersized and split oversized groups."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
    out: Optional[Path] = typer.Option(None, "--out", help="Optional parquet export of group membership."),
) -> None:
    """
    Competency (TaRL) grouping for a class.
    """
    store, config = _load(dataset, config_path)
    students = store.get_students(teacher_id) or None
    roster = prepare_grouping_inputs(store.all_results(), students, config)
    result = group_students(roster, subject, config, merge_small_groups=merge)

    console.rule(f"[bold blue]Groups: {result.subject}[/bold blue]")
    rows = []
    for g in result.groups:
        console.print(f"[bold]{g.group_name}[/] (avg {g.average_score}%): {', '.join(m.student_name for m in g.students)}")
        console.print(f"  focus: {', '.join(g.recommended_focus[:3])}")
        rows.extend(
            {"group_name": g.group_name, "group_level": g.group_level, "student_id": m.student_id, "score": m.score}
            for m in g.students
        )
    summary = grouping_summary(result.groups)
    console.print(f"[bold]Needs attention:[/] {summary.needs_attention}/{summary.total_students}")
    _export(pd.DataFrame(rows, columns=["group_name", "group_level", "student_id", "score"]), out)


@app.command("at-risk")
def at_risk(
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
    teacher_id: Optional[str] = typer.Option(None, "--teacher-id", help="Restrict to one teacher's class."),
    as_of: Optional[str] = typer.Option(None, "--as-of", help="ISO timestamp used as 'now'."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Engine config YAML."),
) -> None:
    """
    Intervention plans for every struggling student, most urgent first.
    """
    store, config = _load(dataset, config_path)
    now = _parse_as_of(as_of)
    histories = {sid: history for sid, _, history in _histories(store, teacher_id)}
    banks = {aid: store.get_questions_for_assessment(aid) for aid in {r.assessment_id for h in histories.values() for r in h}}
    plans = plan_at_risk_interventions(
        histories, config=config, as_of=now, questions=banks, students=store.get_students(teacher_id)
    )
    if not plans:
        console.print("[green]No students need an intervention plan[/green]")
        return

    console.rule("[bold blue]At-Risk Intervention Plans[/bold blue]")
    table = Table(show_header=True, header_style="bold magenta")
    for column in ("Student", "Priority", "Average", "Tier", "Top Intervention"):
        table.add_column(column)
    for p in plans:
        color = LEVEL_COLORS.get(p.overall_priority, "white")
        table.add_row(
            p.student_name or p.student_id,
            f"[{color}]{p.overall_priority}[/{color}]",
            f"{p.context.average_score}%",
            p.context.performance_tier,
            p.interventions[0].title if p.interventions else "-",
        )
    console.print(table)


@app.command()
def feedback(
    student_id: str = typer.Option(..., "--student-id", help="Student to write feedback for."),
    assessment_id: Optional[str] = typer.Option(None, "--assessment-id", help="One assessment; omit for overall feedback."),
    dataset: Path = typer.Option(Path("data/assessments.json"), "--dataset", help="JSON dataset path."),
) -> None:
    """
    Personalized feedback for one result, or across a student's history.
    """
    store, _ = _load(dataset, None)
    history = store.get_results_by_student(student_id)
    if assessment_id is not None:
        result = next((r for r in history if r.assessment_id == assessment_id), None)
        if result is None:
            console.print(f"[yellow]No result for {student_id} on {assessment_id}[/yellow]")
            raise typer.Exit(code=1)
        generated = generate_feedback(result, store.get_questions_for_assessment(assessment_id))
    else:
        banks = {aid: store.get_questions_for_assessment(aid) for aid in {r.assessment_id for r in history}}
        generated = generate_aggregate_feedback(history, banks)
        if generated is None:
            console.print(f"[yellow]No completed results for {student_id}[/yellow]")
            raise typer.Exit(code=1)

    console.rule(f"[bold blue]Feedback ({generated.performance_tier})[/bold blue]")
    console.print(generated.main_message)
    console.print(f"[italic]{generated.encouragement}[/italic]")
    for step in generated.next_steps:
        console.print(f"  → {step}")
    if generated.strength_areas:
        console.print(f"[bold green]Strengths:[/] {'; '.join(generated.strength_areas)}")
    if generated.improvement_areas:
        console.print(f"[bold yellow]Work on:[/] {'; '.join(generated.improvement_areas)}")
    console.print(f"[bold]Tip:[/] {generated.subject_tip}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app()

"""
Typer command-line interface for building, sharing and exporting score reports.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, List, Optional, Tuple

import typer
import yaml
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.traceback import install as install_rich_traceback

from .config import FeedbackConfig
from .export import DEFAULT_SUFFIX, ExportError, PdfExporter
from .feedback import FeedbackRequest, FeedbackStatus, generate_feedback
from .questions import (
    Question,
    Section,
    StudentInput,
    apply_bulk_paste,
    generate_default_questions,
    load_questions,
    load_student_input,
    questions_to_dict,
)
from .report import chart_rows, format_points, iter_section_titles, write_report_markdown, write_summary_csv
from .scoring import EvaluationResult, evaluate
from .session import ReportSession
from .share import LATEST_VERSION, ShareEncodeError, ShareVersion, share_url
from .utils import write_text, write_yaml

try:
    from typer.rich_utils import console as typer_console
except ImportError:  # pragma: no cover - fallback for older Typer versions
    typer_console = Console()

app = typer.Typer(
    help="Build exam score reports and compact share links.",
    no_args_is_help=True,
)

install_rich_traceback(show_locals=False)

ExamOption = Annotated[
    Optional[Path],
    typer.Option("--exam", help="Exam setup YAML (answer key, categories, points).", exists=True, readable=True),
]
AnswersOption = Annotated[
    Optional[Path],
    typer.Option("--answers", help="Student answers YAML.", exists=True, readable=True),
]
LinkOption = Annotated[
    Optional[str],
    typer.Option("--link", help="Share URL or fragment to read the report from."),
]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("-v", "--verbose", help="Show debug logging.")] = False,
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=typer_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


@app.command()
def template(
    output: Annotated[
        Path,
        typer.Option("-o", "--output", help="Where to write the exam setup YAML.", dir_okay=False),
    ] = Path("exam.yml"),
) -> None:
    """
    Write the default exam setup so it can be edited by hand.
    """
    write_yaml(output, questions_to_dict(generate_default_questions()))
    typer.echo(f"Exam template written → {output}")


@app.command("import-key")
def import_key(
    section: Annotated[str, typer.Argument(help="Section to update (Reading, Listening, Speaking, Writing).")],
    paste_file: Annotated[
        Path,
        typer.Argument(
            help="Rows copied from a spreadsheet: category, correct answer, points.",
            exists=True,
            readable=True,
        ),
    ],
    exam: ExamOption = None,
    output: Annotated[
        Optional[Path],
        typer.Option("-o", "--output", help="Output exam YAML (defaults to --exam or exam.yml).", dir_okay=False),
    ] = None,
) -> None:
    """
    Apply pasted spreadsheet rows to one section of the exam setup.
    """
    try:
        target_section = Section.parse(section)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    questions = _read_questions(exam)
    questions = apply_bulk_paste(questions, target_section, paste_file.read_text(encoding="utf-8"))
    destination = output or exam or Path("exam.yml")
    write_yaml(destination, questions_to_dict(questions))
    typer.echo(f"{target_section.value} answer key updated → {destination}")


@app.command()
def score(exam: ExamOption = None, answers: AnswersOption = None, link: LinkOption = None) -> None:
    """
    Print the section scores and category results.
    """
    questions, student, shared = _load_inputs(exam, answers, link)
    _print_result(evaluate(questions, student), shared=shared)


@app.command()
def share(
    exam: ExamOption = None,
    answers: AnswersOption = None,
    base_url: Annotated[
        str,
        typer.Option("--base-url", help="Address of the report page the fragment is appended to."),
    ] = "https://example.org/report",
    version: Annotated[
        str,
        typer.Option("--version", help="Share format tag (defaults to the newest)."),
    ] = LATEST_VERSION.tag,
) -> None:
    """
    Print a student link that rebuilds this report without a server.
    """
    questions, student, _ = _load_inputs(exam, answers, None)
    try:
        share_version = ShareVersion(version)
    except ValueError as exc:
        choices = ", ".join(v.tag for v in ShareVersion)
        raise typer.BadParameter(f"Unknown version {version!r} (choose from {choices}).") from exc
    try:
        url = share_url(base_url, questions, student, share_version)
    except ShareEncodeError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(url)


@app.command("open")
def open_link(
    link: Annotated[str, typer.Argument(help="Share URL or fragment.")],
) -> None:
    """
    Open a shared report in view-only mode.
    """
    session = ReportSession()
    if not session.load_fragment(link):
        typer_console.print(
            "[bold yellow]No shared report found in this link.[/] Start a new report with "
            "[bold]report-card template[/]."
        )
        raise typer.Exit(code=1)
    _print_result(session.evaluate(), shared=True)


@app.command()
def report(
    exam: ExamOption = None,
    answers: Annotated[
        Optional[List[Path]],
        typer.Option("--answers", help="Student answers YAML (repeat for a CSV of several students).", exists=True, readable=True),
    ] = None,
    link: LinkOption = None,
    output: Annotated[
        Path,
        typer.Option("-o", "--output", help="Path to the generated report (Markdown by default)."),
    ] = Path("report.md"),
    format: Annotated[
        str,
        typer.Option("-f", "--format", help="Report format (md or csv).", show_choices=True),
    ] = "md",
    feedback_file: Annotated[
        Optional[Path],
        typer.Option("--feedback", help="Feedback text to include in the Markdown report.", exists=True, readable=True),
    ] = None,
) -> None:
    """
    Generate a Markdown report, or a CSV summary of several students.
    """
    if format not in ("md", "csv"):
        raise typer.BadParameter("Format must be 'md' or 'csv'.")

    results: List[EvaluationResult] = []
    if link or not answers:
        if link and answers:
            raise typer.BadParameter("--link cannot be combined with --exam or --answers.")
        questions, student, _ = _load_inputs(exam, None, link)
        results.append(evaluate(questions, student))
    else:
        questions = _read_questions(exam)
        for path in answers:
            results.append(evaluate(questions, _read_student(path)))

    if format == "csv":
        write_summary_csv(results, output)
        typer.echo(f"Summary CSV generated → {output}")
        return

    if len(results) > 1:
        raise typer.BadParameter("Markdown output takes a single student; use -f csv for several.")
    feedback_text = feedback_file.read_text(encoding="utf-8") if feedback_file else None
    write_report_markdown(results[0], output, feedback_text)
    typer.echo(f"Markdown report generated → {output}")


@app.command()
def pdf(
    exam: ExamOption = None,
    answers: AnswersOption = None,
    link: LinkOption = None,
    output_dir: Annotated[
        Path,
        typer.Option("-o", "--output-dir", help="Directory for the PDF file.", file_okay=False),
    ] = Path("."),
    suffix: Annotated[str, typer.Option("--suffix", help="File name suffix.")] = DEFAULT_SUFFIX,
    feedback_file: Annotated[
        Optional[Path],
        typer.Option("--feedback", help="Feedback text to print on the report.", exists=True, readable=True),
    ] = None,
) -> None:
    """
    Export the report as `<name>_<suffix>.pdf`.
    """
    questions, student, _ = _load_inputs(exam, answers, link)
    result = evaluate(questions, student)
    feedback_text = feedback_file.read_text(encoding="utf-8") if feedback_file else None
    try:
        path = PdfExporter(suffix=suffix).export(result, output_dir, feedback=feedback_text)
    except ExportError as exc:
        typer_console.print(f"[bold red]PDF export failed:[/] {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"PDF report generated → {path}")


@app.command()
def feedback(
    exam: ExamOption = None,
    answers: AnswersOption = None,
    link: LinkOption = None,
    api_key: Annotated[
        Optional[str],
        typer.Option("--api-key", help="OpenAI API key (defaults to OPENAI_API_KEY)."),
    ] = None,
    model: Annotated[Optional[str], typer.Option("--model", help="Model used for the feedback.")] = None,
    locale: Annotated[str, typer.Option("--locale", help="Feedback language (ko or en).")] = "ko",
    output: Annotated[
        Optional[Path],
        typer.Option("-o", "--output", help="Write the feedback to this file.", dir_okay=False),
    ] = None,
) -> None:
    """
    Ask the AI model for short written feedback on the report.
    """
    questions, student, _ = _load_inputs(exam, answers, link)
    config = FeedbackConfig.from_env().with_overrides(api_key=api_key, model=model, locale=locale)
    outcome = generate_feedback(FeedbackRequest.from_evaluation(evaluate(questions, student)), config)

    if outcome.status is FeedbackStatus.OK:
        if output:
            write_text(output, outcome.text + "\n")
            typer.echo(f"Feedback written → {output}")
        else:
            typer_console.print(Panel(outcome.text, title="AI feedback", box=box.ROUNDED))
        return

    if outcome.status is FeedbackStatus.CREDENTIAL_MISSING:
        typer_console.print("[bold yellow]No API key configured.[/] Set OPENAI_API_KEY or pass --api-key.")
    elif outcome.status is FeedbackStatus.CREDENTIAL_INVALID:
        typer_console.print("[bold red]The API key was rejected.[/] Check the key and pass it again with --api-key.")
    elif outcome.status is FeedbackStatus.MODEL_UNAVAILABLE:
        typer_console.print(f"[bold red]Model {config.model} is unavailable.[/] Try again later or choose --model.")
    else:
        typer_console.print(f"[bold red]Feedback failed:[/] {outcome.detail} Please retry.")
    raise typer.Exit(code=2 if outcome.status.needs_credential else 1)


# ---------------------------------------------------------------------------
# Internal helpers


def _load_inputs(
    exam: Optional[Path],
    answers: Optional[Path],
    link: Optional[str],
) -> Tuple[List[Question], StudentInput, bool]:
    if link:
        if exam or answers:
            raise typer.BadParameter("--link cannot be combined with --exam or --answers.")
        session = ReportSession()
        if not session.load_fragment(link):
            raise typer.BadParameter("The link does not contain a readable report.")
        return session.questions, session.student, True

    questions = _read_questions(exam)
    student = _read_student(answers) if answers else StudentInput()
    return questions, student, False


def _read_questions(exam: Optional[Path]) -> List[Question]:
    if exam is None:
        return generate_default_questions()
    try:
        return load_questions(exam)
    except (ValueError, yaml.YAMLError) as exc:
        raise typer.BadParameter(f"Invalid exam file {exam}: {exc}") from exc


def _read_student(path: Path) -> StudentInput:
    try:
        return load_student_input(path)
    except (ValueError, yaml.YAMLError) as exc:
        raise typer.BadParameter(f"Invalid answers file {path}: {exc}") from exc


def _print_result(result: EvaluationResult, *, shared: bool) -> None:
    title = f"{result.student_name or 'Student'} 성적표"
    if shared:
        title += " (shared, view-only)"

    summary = Table(title=title, box=box.SIMPLE_HEAVY)
    summary.add_column("Section")
    summary.add_column("Score", justify="right")
    for section in iter_section_titles(result):
        summary.add_row(
            section.value,
            f"{format_points(result.section_score(section))} / {format_points(result.section_max(section))}",
        )
    summary.add_row(
        "[bold]Total[/bold]",
        f"[bold]{format_points(result.total_score)}[/bold] / {format_points(result.max_score)}",
    )
    typer_console.print(summary)

    for section in iter_section_titles(result):
        table = Table(title=f"{section.value} 영역별 정답률", box=box.MINIMAL)
        table.add_column("Category")
        table.add_column("Result", justify="right")
        table.add_column("Rate", justify="right")
        for row in chart_rows(result, section):
            table.add_row(row.category, row.detail, f"[{row.color}]{row.percentage:.1f}%[/]")
        typer_console.print(table)


if __name__ == "__main__":
    app()

"""
Utility helpers to turn evaluation results into chart rows, Markdown and CSV.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .questions import SECTION_ORDER, Section
from .scoring import EvaluationResult
from .utils import ensure_directory, write_text

BAND_HIGH = "#10b981"
BAND_MID = "#6366f1"
BAND_LOW = "#f43f5e"


@dataclass(frozen=True)
class ChartRow:
    """One bar of a per-section category chart."""

    category: str
    percentage: float
    color: str
    detail: str


def band_color(percentage: float) -> str:
    if percentage >= 80:
        return BAND_HIGH
    if percentage >= 50:
        return BAND_MID
    return BAND_LOW


def chart_rows(result: EvaluationResult, section: Section) -> List[ChartRow]:
    rows: List[ChartRow] = []
    for entry in result.categories_for(section):
        if entry.max_points is not None:
            detail = f"{format_points(entry.earned_points or 0.0)}/{format_points(entry.max_points)}"
        else:
            detail = f"{entry.correct_count}/{entry.total_questions}"
        rows.append(
            ChartRow(
                category=entry.category,
                percentage=entry.percentage,
                color=band_color(entry.percentage),
                detail=detail,
            )
        )
    return rows


def format_points(value: float) -> str:
    return f"{value:.0f}" if float(value).is_integer() else f"{value:.2f}".rstrip("0").rstrip(".")


def iter_section_titles(result: EvaluationResult) -> Iterable[Section]:
    """Sections that have at least one question in `result`."""
    return (section for section in SECTION_ORDER if result.categories_for(section))


def build_markdown_report(result: EvaluationResult, feedback: Optional[str] = None) -> str:
    """
    Produce a Markdown score report for one student.
    """
    name = result.student_name or "Student"
    lines = [f"# {name} 성적표", ""]
    lines.append(
        f"**Total score:** {format_points(result.total_score)} / {format_points(result.max_score)}"
    )
    lines.append("")
    lines.append("| Section | Score |")
    lines.append("| --- | --- |")
    for section in iter_section_titles(result):
        score = format_points(result.section_score(section))
        maximum = format_points(result.section_max(section))
        lines.append(f"| {section.value} | {score} / {maximum} |")
    lines.append("")

    for section in SECTION_ORDER:
        rows = chart_rows(result, section)
        if not rows:
            continue
        lines.append(f"## {section.value}")
        lines.append("")
        lines.append("| Category | Result | Rate |")
        lines.append("| --- | --- | --- |")
        for row in rows:
            lines.append(f"| {row.category} | {row.detail} | {row.percentage:.1f}% |")
        lines.append("")

    if feedback:
        lines.append("## Feedback")
        lines.append("")
        lines.append(feedback.strip())
        lines.append("")

    return "\n".join(lines).strip() + "\n"


def write_report_markdown(result: EvaluationResult, out_markdown: Path, feedback: Optional[str] = None) -> None:
    write_text(out_markdown, build_markdown_report(result, feedback))


def write_summary_csv(results: Sequence[EvaluationResult], out_csv: Path) -> None:
    """
    Write one row per student with every section score and the total.
    """
    fieldnames = ["name", "reading", "listening", "speaking", "writing", "total", "max"]
    ensure_directory(out_csv.parent)
    with out_csv.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        for result in results:
            writer.writerow(
                {
                    "name": result.student_name,
                    "reading": result.score_r,
                    "listening": result.score_l,
                    "speaking": format_points(result.score_s),
                    "writing": format_points(result.score_w),
                    "total": format_points(result.total_score),
                    "max": format_points(result.max_score),
                }
            )


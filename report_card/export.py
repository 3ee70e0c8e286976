"""Render an evaluation result as an A4 PDF score report."""
from __future__ import annotations

import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.charts.barcharts import HorizontalBarChart
from reportlab.graphics.shapes import Drawing, String
from reportlab.lib import colors
from reportlab.lib.enums import TA_LEFT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfgen import canvas
from reportlab.platypus import Frame, KeepInFrame, Paragraph

from .questions import Section
from .report import chart_rows, format_points, iter_section_titles
from .scoring import EvaluationResult
from .utils import ensure_directory, sanitize_filename

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = "성적표"
FONT_NAME = "HYSMyeongJo-Medium"

# Geometry/appearance constants
PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN_MM = 15.0
HEADER_HEIGHT_MM = 42.0
BAR_HEIGHT_MM = 5.0
BACKGROUND = colors.HexColor("#f8fafc")
HEADER_COLOR = colors.HexColor("#4f46e5")
TEXT_MUTED = colors.HexColor("#64748b")

_font_lock = threading.Lock()
_font_registered = False


class ExportError(RuntimeError):
    """Raised when the PDF cannot be produced; the message is meant for the user."""


class ExportBusyError(ExportError):
    """Raised when an export is requested while another one is running."""


def pdf_filename(student_name: str, suffix: str = DEFAULT_SUFFIX) -> str:
    return f"{sanitize_filename(student_name)}_{sanitize_filename(suffix, fallback=DEFAULT_SUFFIX)}.pdf"


class PdfExporter:
    """
    Export reports one at a time.

    The PDF is drawn into a temporary file next to the target and moved into
    place only when complete; the temporary file is removed on every path.
    """

    def __init__(self, suffix: str = DEFAULT_SUFFIX) -> None:
        self.suffix = suffix
        self._lock = threading.Lock()
        self._busy = False

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._busy

    def export(
        self,
        result: EvaluationResult,
        directory: Path,
        *,
        feedback: Optional[str] = None,
        suffix: Optional[str] = None,
    ) -> Path:
        with self._lock:
            if self._busy:
                raise ExportBusyError("A PDF export is already running.")
            self._busy = True

        temp_path: Optional[Path] = None
        try:
            ensure_directory(directory)
            target = directory / pdf_filename(result.student_name, suffix or self.suffix)
            handle, temp_name = tempfile.mkstemp(prefix=".report-", suffix=".pdf", dir=directory)
            os.close(handle)
            temp_path = Path(temp_name)
            render_report_pdf(result, temp_path, feedback=feedback)
            os.replace(temp_path, target)
            logger.info("PDF report written to %s", target)
            return target
        except ExportError:
            raise
        except Exception as exc:
            logger.error("PDF generation failed: %s", exc)
            raise ExportError(f"PDF generation failed: {exc}") from exc
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)
            with self._lock:
                self._busy = False


def render_report_pdf(result: EvaluationResult, out_pdf: Path, *, feedback: Optional[str] = None) -> None:
    """
    Draw the score cards, one category chart per section and the feedback text.
    """
    _ensure_font()
    pdf = canvas.Canvas(str(out_pdf), pagesize=A4)
    pdf.setTitle(f"{result.student_name} {DEFAULT_SUFFIX}")

    pdf.setFillColor(BACKGROUND)
    pdf.rect(0, 0, PAGE_WIDTH, PAGE_HEIGHT, stroke=0, fill=1)

    top = PAGE_HEIGHT - MARGIN_MM * mm
    _draw_header(pdf, result, top)
    cursor = top - HEADER_HEIGHT_MM * mm - 6 * mm

    for section in iter_section_titles(result):
        drawing = _section_chart(result, section)
        if drawing is None:
            continue
        if cursor - drawing.height < MARGIN_MM * mm + 40 * mm:
            pdf.showPage()
            cursor = PAGE_HEIGHT - MARGIN_MM * mm
        pdf.setFillColor(colors.black)
        pdf.setFont(FONT_NAME, 11)
        pdf.drawString(MARGIN_MM * mm, cursor, f"{section.value} 영역별 성취도")
        cursor -= 3 * mm + drawing.height
        renderPDF.draw(drawing, pdf, MARGIN_MM * mm, cursor)
        cursor -= 8 * mm

    if feedback:
        _draw_feedback(pdf, feedback, cursor)

    pdf.showPage()
    pdf.save()


# ---------------------------------------------------------------------------
# Internal helpers


def _ensure_font() -> None:
    global _font_registered
    with _font_lock:
        if not _font_registered:
            pdfmetrics.registerFont(UnicodeCIDFont(FONT_NAME))
            _font_registered = True


def _draw_header(pdf: canvas.Canvas, result: EvaluationResult, top: float) -> None:
    left = MARGIN_MM * mm
    width = PAGE_WIDTH - 2 * MARGIN_MM * mm
    height = HEADER_HEIGHT_MM * mm
    pdf.setFillColor(HEADER_COLOR)
    pdf.roundRect(left, top - height, width, height, 6 * mm, stroke=0, fill=1)

    pdf.setFillColor(colors.white)
    pdf.setFont(FONT_NAME, 8)
    pdf.drawString(left + 8 * mm, top - 8 * mm, "STUDENT SCORE REPORT")
    pdf.setFont(FONT_NAME, 20)
    pdf.drawString(left + 8 * mm, top - 17 * mm, f"{result.student_name} 학생")

    cards: List[str] = [
        f"{section.value} {format_points(result.section_score(section))} / "
        f"{format_points(result.section_max(section))}"
        for section in iter_section_titles(result)
    ]
    pdf.setFont(FONT_NAME, 9)
    x = left + 8 * mm
    for card in cards:
        pdf.drawString(x, top - 28 * mm, card)
        x += pdf.stringWidth(card, FONT_NAME, 9) + 8 * mm

    pdf.setFont(FONT_NAME, 9)
    pdf.drawRightString(left + width - 8 * mm, top - 10 * mm, "FINAL TOTAL SCORE")
    pdf.setFont(FONT_NAME, 26)
    pdf.drawRightString(left + width - 8 * mm, top - 22 * mm, format_points(result.total_score))
    pdf.setFont(FONT_NAME, 9)
    pdf.drawRightString(
        left + width - 8 * mm, top - 29 * mm, f"MAX: {format_points(result.max_score)}"
    )


def _section_chart(result: EvaluationResult, section: Section) -> Optional[Drawing]:
    rows = chart_rows(result, section)
    if not rows:
        return None
    width = PAGE_WIDTH - 2 * MARGIN_MM * mm
    height = max(len(rows) * (BAR_HEIGHT_MM + 2) * mm + 8 * mm, 20 * mm)
    drawing = Drawing(width, height)

    chart = HorizontalBarChart()
    chart.x = 40 * mm
    chart.y = 4 * mm
    chart.width = width - 70 * mm
    chart.height = height - 8 * mm
    # HorizontalBarChart draws the first category at the bottom.
    ordered = list(reversed(rows))
    chart.data = [[row.percentage for row in ordered]]
    chart.categoryAxis.categoryNames = [row.category for row in ordered]
    chart.categoryAxis.labels.fontName = FONT_NAME
    chart.categoryAxis.labels.fontSize = 8
    chart.categoryAxis.labels.fillColor = TEXT_MUTED
    chart.categoryAxis.visibleTicks = 0
    chart.valueAxis.valueMin = 0
    chart.valueAxis.valueMax = 100
    chart.valueAxis.valueStep = 25
    chart.valueAxis.labels.fontName = FONT_NAME
    chart.valueAxis.labels.fontSize = 7
    chart.bars.strokeColor = None
    for index, row in enumerate(ordered):
        chart.bars[(0, index)].fillColor = colors.HexColor(row.color)
    drawing.add(chart)

    for index, row in enumerate(ordered):
        slot = chart.height / len(ordered)
        y = chart.y + slot * index + slot / 2 - 1.2 * mm
        label = f"{row.percentage:.1f}% ({row.detail})"
        drawing.add(_text(chart.x + chart.width + 3 * mm, y, label))
    return drawing


def _text(x: float, y: float, value: str) -> String:
    return String(x, y, value, fontName=FONT_NAME, fontSize=8, fillColor=TEXT_MUTED)


def _draw_feedback(pdf: canvas.Canvas, feedback: str, cursor: float) -> None:
    style = ParagraphStyle(
        "feedback",
        fontName=FONT_NAME,
        fontSize=10,
        leading=14,
        alignment=TA_LEFT,
        wordWrap="CJK",
    )
    left = MARGIN_MM * mm
    width = PAGE_WIDTH - 2 * MARGIN_MM * mm
    if cursor - MARGIN_MM * mm < 30 * mm:
        pdf.showPage()
        cursor = PAGE_HEIGHT - MARGIN_MM * mm
    height = cursor - MARGIN_MM * mm

    pdf.setFillColor(colors.black)
    pdf.setFont(FONT_NAME, 11)
    pdf.drawString(left, cursor, "AI 피드백")
    paragraphs = [
        Paragraph(_escape(block).replace("\n", "<br/>"), style)
        for block in feedback.strip().split("\n\n")
        if block.strip()
    ]
    frame = Frame(left, cursor - height, width, height - 4 * mm, showBoundary=0)
    frame.addFromList([KeepInFrame(width, height - 4 * mm, paragraphs, mode="shrink")], pdf)


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")

"""
Helpers to request short written feedback for a score report from an LLM.

Failures are returned as a tagged FeedbackResult rather than raised, so callers
can tell a missing or rejected credential apart from a temporary outage.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

import openai
from openai import OpenAI

from .config import FeedbackConfig
from .llm import build_openai_client
from .scoring import EvaluationResult

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).resolve().parent / "assets" / "prompts"
SUPPORTED_LOCALES = ("ko", "en")

_USER_TEMPLATES = {
    "ko": "학생 이름: {name}\n총점: {total} / {maximum}\n영역별 성취도: {categories}",
    "en": "Student name: {name}\nTotal score: {total} / {maximum}\nResults by category: {categories}",
}


class FeedbackStatus(str, Enum):
    OK = "ok"
    CREDENTIAL_MISSING = "credential-missing"
    CREDENTIAL_INVALID = "credential-invalid"
    MODEL_UNAVAILABLE = "model-unavailable"
    FAILURE = "failure"

    @property
    def needs_credential(self) -> bool:
        """True when the user should be offered to (re)enter an API key."""
        return self in (FeedbackStatus.CREDENTIAL_MISSING, FeedbackStatus.CREDENTIAL_INVALID)


@dataclass(frozen=True)
class FeedbackResult:
    status: FeedbackStatus
    text: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status is FeedbackStatus.OK


@dataclass(frozen=True)
class CategorySummary:
    section: str
    category: str
    percentage: float
    correct: int
    total: int
    earned_points: Optional[float] = None
    max_points: Optional[float] = None


@dataclass(frozen=True)
class FeedbackRequest:
    """Everything the model sees about one report."""

    student_name: str
    total_score: float
    max_score: float
    categories: Sequence[CategorySummary]

    @classmethod
    def from_evaluation(cls, result: EvaluationResult) -> "FeedbackRequest":
        return cls(
            student_name=result.student_name,
            total_score=result.total_score,
            max_score=result.max_score,
            categories=tuple(
                CategorySummary(
                    section=entry.section.value,
                    category=entry.category,
                    percentage=entry.percentage,
                    correct=entry.correct_count,
                    total=entry.total_questions,
                    earned_points=entry.earned_points,
                    max_points=entry.max_points,
                )
                for entry in result.category_results
            ),
        )

    def category_summary(self) -> str:
        parts = []
        for entry in self.categories:
            if entry.max_points is not None:
                detail = f"{_format_score(entry.earned_points or 0.0)}/{_format_score(entry.max_points)}"
            else:
                detail = f"{entry.correct}/{entry.total}"
            parts.append(f"{entry.section} {entry.category}: {entry.percentage:.1f}% ({detail})")
        return ", ".join(parts)

    def render(self, locale: str = "ko") -> str:
        template = _USER_TEMPLATES.get(locale, _USER_TEMPLATES["ko"])
        return template.format(
            name=self.student_name,
            total=_format_score(self.total_score),
            maximum=_format_score(self.max_score),
            categories=self.category_summary(),
        )


def load_system_prompt(locale: str = "ko", prompt_path: Optional[Path] = None) -> str:
    path = prompt_path or PROMPTS_DIR / f"feedback.{_locale(locale)}.prompt.md"
    return path.read_text(encoding="utf-8")


def generate_feedback(
    request: FeedbackRequest,
    config: FeedbackConfig,
    *,
    client: Optional[OpenAI] = None,
    prompt_path: Optional[Path] = None,
) -> FeedbackResult:
    """
    Ask the configured model for feedback on `request`.
    """
    if not config.has_credential and client is None:
        return FeedbackResult(FeedbackStatus.CREDENTIAL_MISSING, detail="No API key configured.")

    locale = _locale(config.locale)
    system_prompt = load_system_prompt(locale, prompt_path)
    client = client or build_openai_client(config)
    try:
        response = client.responses.create(
            model=config.model,
            input=[
                {
                    "role": "system",
                    "content": [{"type": "input_text", "text": system_prompt}],
                },
                {
                    "role": "user",
                    "content": [{"type": "input_text", "text": request.render(locale)}],
                },
            ],
        )
    except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
        logger.warning("Feedback credential rejected: %s", exc)
        return FeedbackResult(FeedbackStatus.CREDENTIAL_INVALID, detail=str(exc))
    except openai.NotFoundError as exc:
        logger.warning("Feedback model %s unavailable: %s", config.model, exc)
        return FeedbackResult(FeedbackStatus.MODEL_UNAVAILABLE, detail=str(exc))
    except openai.APIStatusError as exc:
        logger.warning("Feedback request failed with HTTP %s: %s", exc.status_code, exc)
        status = (
            FeedbackStatus.MODEL_UNAVAILABLE if exc.status_code == 503 else FeedbackStatus.FAILURE
        )
        return FeedbackResult(status, detail=str(exc))
    except openai.OpenAIError as exc:
        logger.warning("Feedback request failed: %s", exc)
        return FeedbackResult(FeedbackStatus.FAILURE, detail=str(exc))

    text = (getattr(response, "output_text", None) or "").strip()
    if not text:
        return FeedbackResult(FeedbackStatus.FAILURE, detail="The model did not produce any text.")
    return FeedbackResult(FeedbackStatus.OK, text=text)


class FeedbackSession:
    """
    Keeps at most one feedback request current per report view.

    Every `request` takes a new generation token; a result that comes back after
    a newer request started, or after `cancel`, is dropped and None is returned.
    """

    def __init__(self, config: FeedbackConfig, *, client: Optional[OpenAI] = None) -> None:
        self.config = config
        self._client = client
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def request(self, result: EvaluationResult) -> Optional[FeedbackResult]:
        token = self.begin()
        outcome = generate_feedback(
            FeedbackRequest.from_evaluation(result), self.config, client=self._client
        )
        if not self.is_current(token):
            logger.debug("Dropping stale feedback for generation %s", token)
            return None
        return outcome


# ---------------------------------------------------------------------------
# Internal helpers


def _locale(locale: str) -> str:
    return locale if locale in SUPPORTED_LOCALES else "ko"


def _format_score(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.2f}"

"""
Application state for one report-building session (Setup → Input → Report).

A session opened from a share link lands directly on the report in shared mode,
where every edit is refused until the session is reset.
"""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, List, Optional, Sequence

from .questions import (
    Question,
    Section,
    StudentInput,
    apply_bulk_paste,
    generate_default_questions,
    update_question,
)
from .scoring import EvaluationResult, evaluate
from .share import LATEST_VERSION, ShareVersion, SharedReport, decode_fragment, encode, share_url

logger = logging.getLogger(__name__)


class Step(IntEnum):
    SETUP = 0
    INPUT = 1
    REPORT = 2


class SessionLockedError(RuntimeError):
    """Raised when an edit is attempted on a session opened from a share link."""


class ReportSession:
    """Holds the current questions, answers and step; every change replaces state."""

    def __init__(self) -> None:
        self.questions: List[Question] = generate_default_questions()
        self.student = StudentInput()
        self.step = Step.SETUP
        self.shared = False
        self.shared_version: Optional[ShareVersion] = None

    # -- share links ------------------------------------------------------

    def load_fragment(self, fragment: str) -> bool:
        """
        Apply a share fragment. Returns True when the session switched to the
        shared report; unusable fragments leave the session untouched.
        """
        shared = decode_fragment(fragment)
        if shared is None:
            return False
        self._apply_shared(shared)
        return True

    def fragment(self, version: ShareVersion = LATEST_VERSION) -> str:
        return encode(self.questions, self.student, version)

    def share_url(self, base_url: str, version: ShareVersion = LATEST_VERSION) -> str:
        return share_url(base_url, self.questions, self.student, version)

    # -- navigation -------------------------------------------------------

    def go_to(self, step: Step) -> None:
        if self.shared:
            raise SessionLockedError("Navigation is disabled for shared reports.")
        if step > self.step + 1:
            raise ValueError(f"Cannot skip ahead from {self.step.name} to {step.name}.")
        self.step = step

    def reset(self) -> None:
        """
        Leave shared mode with a fresh template, or clear the answers and go
        back to input for a new student on the same exam.
        """
        if self.shared:
            self.questions = generate_default_questions()
            self.shared = False
            self.shared_version = None
            self.student = StudentInput()
            self.step = Step.SETUP
        else:
            self.student = StudentInput()
            self.step = Step.INPUT

    # -- edits ------------------------------------------------------------

    def set_questions(self, questions: Sequence[Question]) -> None:
        self._ensure_editable()
        self.questions = list(questions)

    def update_question(self, qid: str, **changes: Any) -> None:
        self._ensure_editable()
        self.questions = update_question(self.questions, qid, **changes)

    def bulk_paste(self, section: Section, text: str) -> None:
        self._ensure_editable()
        self.questions = apply_bulk_paste(self.questions, section, text)

    def set_student_name(self, name: str) -> None:
        self._ensure_editable()
        self.student = self.student.with_name(name)

    def set_answer(self, qid: str, value: str) -> None:
        self._ensure_editable()
        self.student = self.student.with_answer(qid, value)

    def evaluate(self) -> EvaluationResult:
        return evaluate(self.questions, self.student)

    # -- internals --------------------------------------------------------

    def _apply_shared(self, shared: SharedReport) -> None:
        self.questions = list(shared.questions)
        self.student = shared.student
        self.step = Step.REPORT
        self.shared = True
        self.shared_version = shared.version
        logger.info(
            "Opened shared report for %r (%s link)", shared.student.name, shared.version.tag
        )

    def _ensure_editable(self) -> None:
        if self.shared:
            raise SessionLockedError("Shared reports are view-only.")

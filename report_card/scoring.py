"""
Score a student's answers against the configured answer key.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .questions import SECTION_ORDER, Question, Section, StudentInput
from .utils import coerce_finite_float

SCALED_SCORE_OFFSET = 140


@dataclass(frozen=True)
class CategoryResult:
    """Aggregate for one (section, category) group."""

    category: str
    section: Section
    total_questions: int
    correct_count: int
    percentage: float
    earned_points: Optional[float] = None
    max_points: Optional[float] = None


@dataclass(frozen=True)
class EvaluationResult:
    student_name: str
    score_r: int
    score_l: int
    score_s: float
    score_w: float
    total_score_rl: int
    total_score_sw: float
    max_score_rl: int
    max_score_sw: float
    category_results: Tuple[CategoryResult, ...] = ()
    is_correct: Dict[str, bool] = field(default_factory=dict)
    section_maxima: Dict[Section, float] = field(default_factory=dict)

    @property
    def total_score(self) -> float:
        return self.total_score_rl + self.total_score_sw

    @property
    def max_score(self) -> float:
        return self.max_score_rl + self.max_score_sw

    def section_score(self, section: Section) -> float:
        return {
            Section.READING: self.score_r,
            Section.LISTENING: self.score_l,
            Section.SPEAKING: self.score_s,
            Section.WRITING: self.score_w,
        }[section]

    def section_max(self, section: Section) -> float:
        return self.section_maxima.get(section, 0.0)

    def categories_for(self, section: Section) -> List[CategoryResult]:
        return [result for result in self.category_results if result.section == section]


def normalise_answer(value: Optional[str]) -> str:
    return (value or "").strip().casefold()


def is_answer_correct(student_answer: Optional[str], correct_answer: Optional[str]) -> bool:
    """
    Exact match after trimming and case folding. A blank answer never matches,
    even against a blank key.
    """
    given = normalise_answer(student_answer)
    return given != "" and given == normalise_answer(correct_answer)


def parse_award(value: Optional[str]) -> float:
    """Rubric award as a float; anything unparsable counts as 0."""
    award = coerce_finite_float(value)
    return 0.0 if award is None else award


def scaled_score(earned_points: float) -> int:
    return int(math.floor(SCALED_SCORE_OFFSET + earned_points))


def evaluate(questions: Sequence[Question], student_input: StudentInput) -> EvaluationResult:
    """
    Compute per-question correctness, category aggregates and section scores.

    Reading/Listening scores are `floor(140 + earned points)`; Speaking/Writing
    scores are the raw sum of awarded points. Sections without questions score 0.
    """
    earned: Dict[Section, float] = {section: 0.0 for section in SECTION_ORDER}
    available: Dict[Section, float] = {section: 0.0 for section in SECTION_ORDER}
    present: Dict[Section, bool] = {section: False for section in SECTION_ORDER}
    is_correct: Dict[str, bool] = {}
    groups: Dict[Tuple[Section, str], Dict[str, float]] = {}

    for question in questions:
        section = question.section
        present[section] = True
        available[section] += question.points
        group = groups.setdefault(
            (section, question.category),
            {"total": 0, "correct": 0, "earned": 0.0, "max": 0.0},
        )
        group["total"] += 1
        answer = student_input.answers.get(question.id)

        if section.is_objective:
            correct = is_answer_correct(answer, question.correct_answer)
            is_correct[question.id] = correct
            if correct:
                earned[section] += question.points
                group["correct"] += 1
        else:
            award = parse_award(answer)
            earned[section] += award
            group["earned"] += award
            group["max"] += question.points

    category_results: List[CategoryResult] = []
    for (section, category), group in groups.items():
        total = int(group["total"])
        correct_count = int(group["correct"])
        if section.is_objective:
            category_results.append(
                CategoryResult(
                    category=category,
                    section=section,
                    total_questions=total,
                    correct_count=correct_count,
                    percentage=correct_count / total * 100 if total else 0.0,
                )
            )
        else:
            max_points = group["max"]
            category_results.append(
                CategoryResult(
                    category=category,
                    section=section,
                    total_questions=total,
                    correct_count=correct_count,
                    percentage=group["earned"] / max_points * 100 if max_points else 0.0,
                    earned_points=group["earned"],
                    max_points=max_points,
                )
            )

    def objective(section: Section, points: Dict[Section, float]) -> int:
        return scaled_score(points[section]) if present[section] else 0

    score_r = objective(Section.READING, earned)
    score_l = objective(Section.LISTENING, earned)
    score_s = earned[Section.SPEAKING]
    score_w = earned[Section.WRITING]
    maxima = {
        Section.READING: objective(Section.READING, available),
        Section.LISTENING: objective(Section.LISTENING, available),
        Section.SPEAKING: available[Section.SPEAKING],
        Section.WRITING: available[Section.WRITING],
    }

    return EvaluationResult(
        student_name=student_input.name,
        score_r=score_r,
        score_l=score_l,
        score_s=score_s,
        score_w=score_w,
        total_score_rl=score_r + score_l,
        total_score_sw=score_s + score_w,
        max_score_rl=int(maxima[Section.READING] + maxima[Section.LISTENING]),
        max_score_sw=maxima[Section.SPEAKING] + maxima[Section.WRITING],
        category_results=tuple(category_results),
        is_correct=is_correct,
        section_maxima=maxima,
    )

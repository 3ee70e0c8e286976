"""
Exam structure: sections, questions, student answers and their YAML form.

Every exam has the same fixed layout (36 Reading, 36 Listening, 4 Speaking and
4 Writing items). Question ids are derived from the section letter and number,
so neither ids nor counts ever need to be transmitted in a share link.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .utils import coerce_finite_float, read_yaml

DEFAULT_CATEGORY = "일반"
DEFAULT_POINTS = 1.0
RUBRIC_ANSWER = "N/A"


class Section(str, Enum):
    READING = "Reading"
    LISTENING = "Listening"
    SPEAKING = "Speaking"
    WRITING = "Writing"

    @property
    def letter(self) -> str:
        return self.value[0]

    @property
    def is_objective(self) -> bool:
        """Reading and Listening are marked right/wrong; the others are rubric awards."""
        return self in (Section.READING, Section.LISTENING)

    @classmethod
    def parse(cls, value: Any) -> "Section":
        if isinstance(value, Section):
            return value
        text = str(value or "").strip()
        for section in cls:
            if text.lower() in (section.value.lower(), section.letter.lower()):
                return section
        raise ValueError(f"Unknown section: {value!r}")


# Bit i of the share-link mask refers to SECTION_ORDER[i].
SECTION_ORDER: Tuple[Section, ...] = (
    Section.READING,
    Section.LISTENING,
    Section.SPEAKING,
    Section.WRITING,
)

SECTION_SIZES: Dict[Section, int] = {
    Section.READING: 36,
    Section.LISTENING: 36,
    Section.SPEAKING: 4,
    Section.WRITING: 4,
}

_RUBRIC_DEFAULT_POINTS: Dict[Section, Tuple[float, ...]] = {
    Section.SPEAKING: (3.0, 3.0, 5.0, 5.0),
    Section.WRITING: (3.0, 3.0, 5.0, 5.0),
}


@dataclass(frozen=True)
class Question:
    """A single answer-key entry (or rubric line item for Speaking/Writing)."""

    id: str
    number: int
    section: Section
    category: str = DEFAULT_CATEGORY
    correct_answer: str = ""
    points: float = DEFAULT_POINTS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "section": self.section.value,
            "category": self.category,
            "correctAnswer": self.correct_answer,
            "points": self.points,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Question":
        section = Section.parse(data["section"])
        number = int(data["number"])
        raw_points = data.get("points")
        if raw_points is None or raw_points == "":
            points = default_question(section, number).points
        else:
            points = coerce_finite_float(raw_points)
            if points is None:
                raise ValueError(f"Invalid points for {question_id(section, number)}: {raw_points!r}")
        category = data.get("category")
        return cls(
            id=str(data.get("id") or question_id(section, number)),
            number=number,
            section=section,
            category=DEFAULT_CATEGORY if category is None else str(category),
            correct_answer=str(data.get("correctAnswer", "") or ""),
            points=points,
        )


@dataclass(frozen=True)
class StudentInput:
    """The student's name and raw answers keyed by question id."""

    name: str = ""
    answers: Dict[str, str] = field(default_factory=dict)

    def answer_for(self, qid: str) -> str:
        return self.answers.get(qid, "")

    def with_answer(self, qid: str, value: str) -> "StudentInput":
        answers = dict(self.answers)
        answers[qid] = value
        return replace(self, answers=answers)

    def with_name(self, name: str) -> "StudentInput":
        return replace(self, name=name)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "answers": dict(self.answers)}


def question_id(section: Section, number: int) -> str:
    return f"{section.letter}-{number}"


def default_question(section: Section, number: int) -> Question:
    """
    Return the built-in template entry for `section` / `number` (1-based).
    """
    if section.is_objective:
        return Question(
            id=question_id(section, number),
            number=number,
            section=section,
        )
    defaults = _RUBRIC_DEFAULT_POINTS[section]
    points = defaults[number - 1] if 0 < number <= len(defaults) else DEFAULT_POINTS
    return Question(
        id=question_id(section, number),
        number=number,
        section=section,
        category=f"Task {number}",
        correct_answer=RUBRIC_ANSWER,
        points=points,
    )


def default_section(section: Section) -> List[Question]:
    return [default_question(section, number) for number in range(1, SECTION_SIZES[section] + 1)]


def generate_default_questions() -> List[Question]:
    """
    Build the fixed exam template in section-major, number-ascending order.
    """
    questions: List[Question] = []
    for section in SECTION_ORDER:
        questions.extend(default_section(section))
    return questions


def questions_by_section(questions: Iterable[Question]) -> Dict[Section, List[Question]]:
    grouped: Dict[Section, List[Question]] = {section: [] for section in SECTION_ORDER}
    for question in questions:
        grouped.setdefault(question.section, []).append(question)
    for entries in grouped.values():
        entries.sort(key=lambda q: q.number)
    return grouped


def update_question(questions: Sequence[Question], qid: str, **changes: Any) -> List[Question]:
    """
    Return a new question list where the entry `qid` has `changes` applied.
    """
    if "section" in changes or "number" in changes or "id" in changes:
        raise ValueError("Question identity fields cannot be changed.")
    found = False
    updated: List[Question] = []
    for question in questions:
        if question.id == qid:
            question = replace(question, **changes)
            found = True
        updated.append(question)
    if not found:
        raise KeyError(qid)
    return updated


def apply_bulk_paste(questions: Sequence[Question], section: Section, text: str) -> List[Question]:
    """
    Apply spreadsheet rows (category, correct answer, points) to `section`.

    Row N targets question number N. Columns may be separated by tabs or commas;
    absent columns leave the field unchanged and unparsable points become 0.
    """
    rows = text.strip().split("\n") if text.strip() else []
    changes: Dict[int, Dict[str, Any]] = {}
    for index, line in enumerate(rows, start=1):
        columns = re.split(r"\t|,", line.rstrip("\r"))
        entry: Dict[str, Any] = {}
        if len(columns) > 0:
            entry["category"] = columns[0].strip()
        if len(columns) > 1:
            entry["correct_answer"] = columns[1].strip()
        if len(columns) > 2:
            entry["points"] = _parse_leading_float(columns[2])
        changes[index] = entry

    updated: List[Question] = []
    for question in questions:
        if question.section == section and question.number in changes:
            question = replace(question, **changes[question.number])
        updated.append(question)
    return updated


# ---------------------------------------------------------------------------
# YAML setup files


def questions_to_dict(questions: Iterable[Question]) -> Dict[str, Any]:
    """
    Serialise questions as an exam setup mapping, one list per section.
    """
    sections: Dict[str, List[Dict[str, Any]]] = {}
    for section, entries in questions_by_section(questions).items():
        if not entries:
            continue
        rows: List[Dict[str, Any]] = []
        for question in entries:
            row: Dict[str, Any] = {"number": question.number, "category": question.category}
            if section.is_objective:
                row["answer"] = question.correct_answer
            row["points"] = question.points
            rows.append(row)
        sections[section.value] = rows
    return {"sections": sections}


def questions_from_dict(data: Any) -> List[Question]:
    """
    Overlay the section entries of an exam setup mapping onto the defaults.
    """
    if not isinstance(data, dict):
        raise ValueError("Exam file should contain a top-level mapping.")
    raw_sections = data.get("sections") or {}
    if not isinstance(raw_sections, dict):
        raise ValueError("'sections' must be a mapping of section name to entries.")

    overrides: Dict[Section, Dict[int, Dict[str, Any]]] = {}
    for key, entries in raw_sections.items():
        section = Section.parse(key)
        if not isinstance(entries, list):
            raise ValueError(f"Section {section.value} must be a list of entries.")
        per_number: Dict[int, Dict[str, Any]] = {}
        for index, entry in enumerate(entries, start=1):
            if not isinstance(entry, dict):
                raise ValueError(f"{section.value} entry {index} must be a mapping.")
            number = int(entry.get("number", index))
            if not 1 <= number <= SECTION_SIZES[section]:
                raise ValueError(
                    f"{section.value} entry number {number} is outside 1..{SECTION_SIZES[section]}."
                )
            per_number[number] = entry
        overrides[section] = per_number

    questions: List[Question] = []
    for question in generate_default_questions():
        entry = overrides.get(question.section, {}).get(question.number)
        if entry:
            question = _overlay(question, entry)
        questions.append(question)
    return questions


def load_questions(path: Path) -> List[Question]:
    return questions_from_dict(read_yaml(path))


def student_input_from_dict(data: Any) -> StudentInput:
    """
    Build a StudentInput from `{name, answers}` where answers is either a
    mapping of question id to answer or a mapping of section to a list.
    """
    if not isinstance(data, dict):
        raise ValueError("Answers file should contain a top-level mapping.")
    name = str(data.get("name") or "").strip()
    raw_answers = data.get("answers") or {}
    if not isinstance(raw_answers, dict):
        raise ValueError("'answers' must be a mapping.")

    answers: Dict[str, str] = {}
    for key, value in raw_answers.items():
        if isinstance(value, list):
            section = Section.parse(key)
            for number, item in enumerate(value[: SECTION_SIZES[section]], start=1):
                answers[question_id(section, number)] = _answer_text(item)
        else:
            answers[str(key).strip()] = _answer_text(value)
    return StudentInput(name=name, answers=answers)


def load_student_input(path: Path) -> StudentInput:
    return student_input_from_dict(read_yaml(path))


# ---------------------------------------------------------------------------
# Internal helpers


def _overlay(question: Question, entry: Mapping[str, Any]) -> Question:
    changes: Dict[str, Any] = {}
    if "category" in entry:
        changes["category"] = str(entry["category"] or "")
    if question.section.is_objective:
        answer = entry.get("answer", entry.get("correctAnswer"))
        if answer is not None:
            changes["correct_answer"] = _answer_text(answer)
    if "points" in entry:
        points = coerce_finite_float(entry["points"])
        if points is None:
            raise ValueError(f"Invalid points for {question.id}: {entry['points']!r}")
        changes["points"] = points
    return replace(question, **changes) if changes else question


def _answer_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


_LEADING_FLOAT = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")


def _parse_leading_float(text: str) -> float:
    match = _LEADING_FLOAT.match(text)
    if not match:
        return 0.0
    return coerce_finite_float(match.group(0)) or 0.0

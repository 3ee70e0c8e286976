"""
Share-link codec: pack an exam setup and a student's answers into a URL fragment.

A fragment looks like ``<tag>=<payload>``. Every tag that was ever issued stays
decodable; new links are always written with the newest version.

======== ============================================================
Tag      Payload
======== ============================================================
report   percent-encoded base64 of the UTF-8 JSON ``{questions, studentInput}``
v2       compressed JSON ``[name, rAnswers, lAnswers, rConfigs, lConfigs]``
v3       compressed ``name|rAnswers|lAnswers|rConfigs|lConfigs``
v4       compressed ``name|rChars|lChars|sChars|wChars|mask|blocks...``
v5       compressed ``name|rAnswers|lAnswers|sAnswers|wAnswers|mask|blocks...``
======== ============================================================

Compressed payloads are zlib streams written with the unpadded URL-safe base64
alphabet. Inside the delimited forms ``|`` separates fields, ``^`` separates the
per-question entries of a field and ``*`` separates the attributes of one entry.
Answer fields always carry one token per fixed position; an empty token is an
explicit blank answer. Decoders always return the full fixed layout, so
encoders refuse question sets with gaps in the sections they carry.

The mask is a hex number whose bit *i* refers to ``SECTION_ORDER[i]``. A set bit
means the section is the unmodified template and has no trailing block; each
cleared bit consumes the next block, in section order. Blocks hold
``category*answer*points`` entries for Reading/Listening and ``category*points``
for Speaking/Writing. An empty points attribute means "default points for this
position", and attributes or entries missing at the end of a block fall back to
the template value.

The ``v4`` form packs objective answers one character per question and rubric
awards one letter per item in half-point steps (``a`` = 0, ``b`` = 0.5, ...).
Awards are therefore only accurate to ±0.25 points on that path.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type
from urllib.parse import quote, unquote

from .questions import (
    RUBRIC_ANSWER,
    SECTION_ORDER,
    SECTION_SIZES,
    Question,
    Section,
    StudentInput,
    default_question,
    default_section,
    question_id,
)
from .scoring import parse_award
from .utils import coerce_finite_float

logger = logging.getLogger(__name__)

FIELD_SEP = "|"
ITEM_SEP = "^"
ATTR_SEP = "*"
RESERVED_CHARS = frozenset(FIELD_SEP + ITEM_SEP + ATTR_SEP)

COMPACT_BLANK = "."
COMPACT_AWARD_BASE = ord("a")
COMPACT_AWARD_STEP = 0.5
COMPACT_AWARD_LEVELS = 26

_HEX_MASK = re.compile(r"^[0-9a-fA-F]{1,2}$")
_ALL_DEFAULT_MASK = (1 << len(SECTION_ORDER)) - 1
OBJECTIVE_SECTIONS = (Section.READING, Section.LISTENING)


class ShareError(ValueError):
    """Base class for share-link failures."""


class ShareEncodeError(ShareError):
    """The current questions or answers cannot be written in the requested form."""


class ShareDecodeError(ShareError):
    """A fragment is unrecognised or malformed."""


class ShareVersion(Enum):
    V1 = "report"
    V2 = "v2"
    V3 = "v3"
    V4 = "v4"
    V5 = "v5"

    @property
    def tag(self) -> str:
        return self.value

    @property
    def prefix(self) -> str:
        return f"{self.value}="


LATEST_VERSION = ShareVersion.V5


@dataclass(frozen=True)
class SharedReport:
    """A fully decoded share link."""

    version: ShareVersion
    questions: Tuple[Question, ...]
    student: StudentInput


def encode(
    questions: Sequence[Question],
    student: StudentInput,
    version: ShareVersion = LATEST_VERSION,
) -> str:
    """
    Return the fragment (without ``#``) for `questions` and `student`.
    """
    payload = _ENCODERS[version](questions, student)
    return f"{version.prefix}{payload}"


def share_url(
    base_url: str,
    questions: Sequence[Question],
    student: StudentInput,
    version: ShareVersion = LATEST_VERSION,
) -> str:
    base = base_url.split("#", 1)[0]
    return f"{base}#{encode(questions, student, version)}"


def fragment_text(value: str) -> str:
    """
    Extract the fragment from a full URL, a ``#fragment`` or a bare fragment.
    """
    text = (value or "").strip()
    if "#" in text:
        text = text.split("#", 1)[1]
    return text


def detect_version(value: str) -> Optional[ShareVersion]:
    text = fragment_text(value)
    for version, _ in _DECODERS:
        if text.startswith(version.prefix):
            return version
    return None


def decode(value: str) -> SharedReport:
    """
    Decode a fragment (or URL) into questions and student input.

    The first tag in newest-first order that prefixes the fragment wins.
    Raises ShareDecodeError for unknown tags and malformed payloads.
    """
    text = fragment_text(value)
    for version, decoder in _DECODERS:
        if not text.startswith(version.prefix):
            continue
        payload = unquote(text[len(version.prefix):])
        try:
            questions, student = decoder(payload)
        except ShareDecodeError:
            raise
        except Exception as exc:
            raise ShareDecodeError(f"Malformed {version.tag} payload: {exc}") from exc
        return SharedReport(version=version, questions=tuple(questions), student=student)
    raise ShareDecodeError("Fragment does not carry a known share tag.")


def decode_fragment(value: str) -> Optional[SharedReport]:
    """
    Like `decode` but never raises: anything unusable is logged and yields None.
    """
    if detect_version(value) is None:
        logger.debug("No share tag in fragment %r", fragment_text(value)[:40])
        return None
    try:
        return decode(value)
    except ShareDecodeError as exc:
        logger.warning("Ignoring share link: %s", exc)
        return None


# ---------------------------------------------------------------------------
# Transport


def compress_text(text: str) -> str:
    raw = zlib.compress(text.encode("utf-8"), 9)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decompress_text(payload: str) -> str:
    padded = payload + "=" * (-len(payload) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        return zlib.decompress(raw).decode("utf-8")
    except (binascii.Error, zlib.error, UnicodeError) as exc:
        raise ShareDecodeError(f"Payload is not a compressed share string: {exc}") from exc


def format_number(value: float) -> str:
    """Shortest text that parses back to exactly `value`."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)


# ---------------------------------------------------------------------------
# v1: legacy JSON


def _encode_v1(questions: Sequence[Question], student: StudentInput) -> str:
    for question in questions:
        _checked_points(question)
    data = {
        "questions": [question.to_dict() for question in questions],
        "studentInput": student.to_dict(),
    }
    text = json.dumps(data, ensure_ascii=False)
    encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")
    return quote(encoded, safe="")


def _decode_v1(payload: str) -> Tuple[List[Question], StudentInput]:
    text = base64.b64decode(payload.encode("ascii"), validate=True).decode("utf-8")
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ShareDecodeError("Legacy payload is not an object.")
    raw_questions = data.get("questions")
    raw_student = data.get("studentInput")
    if not isinstance(raw_questions, list) or not isinstance(raw_student, dict):
        raise ShareDecodeError("Legacy payload lacks questions or studentInput.")

    questions = _complete([Question.from_dict(entry) for entry in raw_questions])
    raw_answers = raw_student.get("answers") or {}
    if not isinstance(raw_answers, dict):
        raise ShareDecodeError("Legacy answers must be an object.")
    answers = {
        str(key): _json_text(value) for key, value in raw_answers.items() if value is not None
    }
    student = StudentInput(name=_json_text(raw_student.get("name")), answers=answers)
    return questions, student


# ---------------------------------------------------------------------------
# v2: compressed JSON array (Reading/Listening)


def _encode_v2(questions: Sequence[Question], student: StudentInput) -> str:
    layout = _layout(questions, OBJECTIVE_SECTIONS)
    data: List[Any] = [student.name]
    for section in OBJECTIVE_SECTIONS:
        data.append(_answer_tokens(section, student))
    for section in OBJECTIVE_SECTIONS:
        data.append(
            [
                [q.category, q.correct_answer, _points_slot(q)]
                for q in layout[section]
            ]
        )
    text = json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return compress_text(text)


def _decode_v2(payload: str) -> Tuple[List[Question], StudentInput]:
    data = json.loads(decompress_text(payload))
    if not isinstance(data, list) or not 3 <= len(data) <= 5:
        raise ShareDecodeError("v2 payload must be a 3 to 5 element array.")

    answers: Dict[str, str] = {}
    configs: Dict[Section, List[Question]] = {}
    for offset, section in enumerate(OBJECTIVE_SECTIONS):
        tokens = data[1 + offset]
        if not isinstance(tokens, list):
            raise ShareDecodeError(f"v2 {section.value} answers must be a list.")
        if len(tokens) > SECTION_SIZES[section]:
            raise ShareDecodeError(f"v2 {section.value} has {len(tokens)} answers.")
        for number, token in enumerate(tokens, start=1):
            if token is not None:
                answers[question_id(section, number)] = _json_text(token)

        raw_configs = data[3 + offset] if len(data) > 3 + offset else []
        if not isinstance(raw_configs, list):
            raise ShareDecodeError(f"v2 {section.value} configs must be a list.")
        attrs = [
            [_json_text(value) for value in entry] if isinstance(entry, list) else None
            for entry in raw_configs
        ]
        configs[section] = _section_from_attrs(section, attrs)

    student = StudentInput(name=_json_text(data[0]), answers=answers)
    return _assemble(configs), student


# ---------------------------------------------------------------------------
# v3: delimited text (Reading/Listening)


def _encode_v3(questions: Sequence[Question], student: StudentInput) -> str:
    layout = _layout(questions, OBJECTIVE_SECTIONS)
    fields = [_checked(student.name, "student name")]
    for section in OBJECTIVE_SECTIONS:
        fields.append(_join_answers(section, student))
    for section in OBJECTIVE_SECTIONS:
        fields.append(_config_block(section, layout[section]))
    return compress_text(FIELD_SEP.join(fields))


def _decode_v3(payload: str) -> Tuple[List[Question], StudentInput]:
    fields = decompress_text(payload).split(FIELD_SEP)
    if len(fields) != 5:
        raise ShareDecodeError(f"v3 payload needs 5 fields, found {len(fields)}.")
    name, r_answers, l_answers, r_configs, l_configs = fields

    answers: Dict[str, str] = {}
    answers.update(_answers_from_tokens(Section.READING, r_answers.split(ITEM_SEP)))
    answers.update(_answers_from_tokens(Section.LISTENING, l_answers.split(ITEM_SEP)))
    configs = {
        Section.READING: _parse_config_block(Section.READING, r_configs),
        Section.LISTENING: _parse_config_block(Section.LISTENING, l_configs),
    }
    return _assemble(configs), StudentInput(name=name, answers=answers)


# ---------------------------------------------------------------------------
# v4: compact score letters with section mask


def _encode_v4(questions: Sequence[Question], student: StudentInput) -> str:
    layout = _layout(questions)
    fields = [_checked(student.name, "student name")]
    for section in SECTION_ORDER:
        if section.is_objective:
            fields.append("".join(_compact_answer(q.id, student) for q in layout[section]))
        else:
            fields.append("".join(_compact_award(q.id, student) for q in layout[section]))
    fields.extend(_mask_and_blocks(layout))
    return compress_text(FIELD_SEP.join(fields))


def _decode_v4(payload: str) -> Tuple[List[Question], StudentInput]:
    fields = decompress_text(payload).split(FIELD_SEP)
    if len(fields) < 6:
        raise ShareDecodeError(f"v4 payload needs at least 6 fields, found {len(fields)}.")

    answers: Dict[str, str] = {}
    for offset, section in enumerate(SECTION_ORDER):
        packed = fields[1 + offset]
        if len(packed) > SECTION_SIZES[section]:
            raise ShareDecodeError(f"v4 {section.value} field is longer than the section.")
        for number, char in enumerate(packed, start=1):
            if char == COMPACT_BLANK:
                continue
            qid = question_id(section, number)
            answers[qid] = char if section.is_objective else _unpack_award(char)

    configs = _parse_mask_and_blocks(fields[5], fields[6:])
    return _assemble(configs), StudentInput(name=fields[0], answers=answers)


# ---------------------------------------------------------------------------
# v5: four sections with mask and delimited answers


def _encode_v5(questions: Sequence[Question], student: StudentInput) -> str:
    layout = _layout(questions)
    fields = [_checked(student.name, "student name")]
    for section in SECTION_ORDER:
        fields.append(_join_answers(section, student))
    fields.extend(_mask_and_blocks(layout))
    return compress_text(FIELD_SEP.join(fields))


def _decode_v5(payload: str) -> Tuple[List[Question], StudentInput]:
    fields = decompress_text(payload).split(FIELD_SEP)
    if len(fields) < 6:
        raise ShareDecodeError(f"v5 payload needs at least 6 fields, found {len(fields)}.")

    answers: Dict[str, str] = {}
    for offset, section in enumerate(SECTION_ORDER):
        answers.update(_answers_from_tokens(section, fields[1 + offset].split(ITEM_SEP)))

    configs = _parse_mask_and_blocks(fields[5], fields[6:])
    return _assemble(configs), StudentInput(name=fields[0], answers=answers)


_ENCODERS: Dict[ShareVersion, Callable[[Sequence[Question], StudentInput], str]] = {
    ShareVersion.V1: _encode_v1,
    ShareVersion.V2: _encode_v2,
    ShareVersion.V3: _encode_v3,
    ShareVersion.V4: _encode_v4,
    ShareVersion.V5: _encode_v5,
}

# Newest first; the first matching prefix wins.
_DECODERS: Tuple[Tuple[ShareVersion, Callable[[str], Tuple[List[Question], StudentInput]]], ...] = (
    (ShareVersion.V5, _decode_v5),
    (ShareVersion.V4, _decode_v4),
    (ShareVersion.V3, _decode_v3),
    (ShareVersion.V2, _decode_v2),
    (ShareVersion.V1, _decode_v1),
)


# ---------------------------------------------------------------------------
# Section masks and custom blocks


def section_mask(questions: Sequence[Question]) -> int:
    """
    Bit i is set when SECTION_ORDER[i] matches the template on every transmitted field.
    """
    layout = _layout(questions)
    mask = 0
    for bit, section in enumerate(SECTION_ORDER):
        if _is_default_section(section, layout[section]):
            mask |= 1 << bit
    return mask


def _mask_and_blocks(layout: Dict[Section, List[Question]]) -> List[str]:
    mask = 0
    blocks: List[str] = []
    for bit, section in enumerate(SECTION_ORDER):
        if _is_default_section(section, layout[section]):
            mask |= 1 << bit
        else:
            blocks.append(_config_block(section, layout[section]))
    return [format(mask, "x"), *blocks]


def _parse_mask_and_blocks(mask_text: str, blocks: Sequence[str]) -> Dict[Section, List[Question]]:
    if not _HEX_MASK.match(mask_text):
        raise ShareDecodeError(f"Invalid section mask {mask_text!r}.")
    mask = int(mask_text, 16)
    if mask > _ALL_DEFAULT_MASK:
        raise ShareDecodeError(f"Section mask {mask_text!r} has unknown bits.")

    configs: Dict[Section, List[Question]] = {}
    cursor = 0
    for bit, section in enumerate(SECTION_ORDER):
        if mask & (1 << bit):
            configs[section] = default_section(section)
            continue
        if cursor >= len(blocks):
            raise ShareDecodeError(f"Missing custom block for {section.value}.")
        configs[section] = _parse_config_block(section, blocks[cursor])
        cursor += 1
    if cursor != len(blocks):
        raise ShareDecodeError(f"{len(blocks) - cursor} unexpected trailing block(s).")
    return configs


def _is_default_section(section: Section, entries: Sequence[Question]) -> bool:
    for question, reference in zip(entries, default_section(section)):
        if question.category != reference.category or question.points != reference.points:
            return False
        if section.is_objective and question.correct_answer != reference.correct_answer:
            return False
    return True


def _config_block(section: Section, entries: Sequence[Question]) -> str:
    items: List[str] = []
    for question in entries:
        attrs = [_checked(question.category, f"{question.id} category")]
        if section.is_objective:
            attrs.append(_checked(question.correct_answer, f"{question.id} answer"))
        attrs.append(_points_slot(question))
        items.append(ATTR_SEP.join(attrs))
    return ITEM_SEP.join(items)


def _parse_config_block(section: Section, block: str) -> List[Question]:
    entries = block.split(ITEM_SEP)
    if len(entries) > SECTION_SIZES[section]:
        raise ShareDecodeError(f"{section.value} block has {len(entries)} entries.")
    attrs = [entry.split(ATTR_SEP) if entry else None for entry in entries]
    return _section_from_attrs(section, attrs)


def _section_from_attrs(section: Section, attrs: Sequence[Optional[List[str]]]) -> List[Question]:
    """
    Build a full section from per-position attribute lists, falling back to the
    template for missing entries and missing trailing attributes.
    """
    if len(attrs) > SECTION_SIZES[section]:
        raise ShareDecodeError(f"{section.value} has more than {SECTION_SIZES[section]} entries.")
    questions: List[Question] = []
    for number in range(1, SECTION_SIZES[section] + 1):
        reference = default_question(section, number)
        values = attrs[number - 1] if number <= len(attrs) else None
        if not values:
            questions.append(reference)
            continue
        if section.is_objective:
            category, answer, points = (values + [None, None, None])[:3]
        else:
            category, points = (values + [None, None])[:2]
            answer = RUBRIC_ANSWER
        questions.append(
            Question(
                id=reference.id,
                number=number,
                section=section,
                category=reference.category if category is None else category,
                correct_answer=reference.correct_answer if answer is None else answer,
                points=_points_from_slot(points, reference),
            )
        )
    return questions


def _points_slot(question: Question) -> str:
    _checked_points(question)
    reference = default_question(question.section, question.number)
    if question.points == reference.points:
        return ""
    return format_number(question.points)


def _points_from_slot(slot: Optional[str], reference: Question) -> float:
    if slot is None or slot == "":
        return reference.points
    value = coerce_finite_float(slot)
    if value is None:
        raise ShareDecodeError(f"Invalid points {slot!r} for {reference.id}.")
    return value


# ---------------------------------------------------------------------------
# Answers


def _answer_tokens(section: Section, student: StudentInput) -> List[str]:
    return [
        student.answer_for(question_id(section, number))
        for number in range(1, SECTION_SIZES[section] + 1)
    ]


def _join_answers(section: Section, student: StudentInput) -> str:
    tokens = _answer_tokens(section, student)
    for number, token in enumerate(tokens, start=1):
        _checked(token, f"answer {question_id(section, number)}")
    return ITEM_SEP.join(tokens)


def _answers_from_tokens(section: Section, tokens: Sequence[str]) -> Dict[str, str]:
    if len(tokens) > SECTION_SIZES[section]:
        raise ShareDecodeError(f"{section.value} has {len(tokens)} answers.")
    return {question_id(section, number): token for number, token in enumerate(tokens, start=1)}


def _compact_answer(qid: str, student: StudentInput) -> str:
    answer = student.answer_for(qid)
    if answer == "":
        return COMPACT_BLANK
    if len(answer) != 1 or answer == COMPACT_BLANK or answer in RESERVED_CHARS:
        raise ShareEncodeError(f"Answer {qid}={answer!r} cannot be packed as one character.")
    return answer


def _compact_award(qid: str, student: StudentInput) -> str:
    raw = student.answer_for(qid)
    if raw.strip() == "" or coerce_finite_float(raw) is None:
        return COMPACT_BLANK
    award = parse_award(raw)
    steps = round(award / COMPACT_AWARD_STEP)
    if not 0 <= steps < COMPACT_AWARD_LEVELS:
        raise ShareEncodeError(f"Award {qid}={raw!r} is outside the compact range.")
    return chr(COMPACT_AWARD_BASE + steps)


def _unpack_award(char: str) -> str:
    steps = ord(char) - COMPACT_AWARD_BASE
    if not 0 <= steps < COMPACT_AWARD_LEVELS:
        raise ShareDecodeError(f"Invalid award character {char!r}.")
    return format_number(steps * COMPACT_AWARD_STEP)


# ---------------------------------------------------------------------------
# Internal helpers


def _slots(
    questions: Sequence[Question], error: Type[ShareError]
) -> Dict[Section, Dict[int, Question]]:
    slots: Dict[Section, Dict[int, Question]] = {section: {} for section in SECTION_ORDER}
    for question in questions:
        size = SECTION_SIZES[question.section]
        if not 1 <= question.number <= size:
            raise error(f"{question.id}: number {question.number} is outside 1..{size}.")
        if question.number in slots[question.section]:
            raise error(f"Duplicate question {question.id}.")
        slots[question.section][question.number] = question
    return slots


def _layout(
    questions: Sequence[Question], sections: Sequence[Section] = SECTION_ORDER
) -> Dict[Section, List[Question]]:
    """
    Arrange questions by section and position for encoding.

    Every position of `sections` must be present, since the decoder rebuilds
    the full layout; sections the form does not carry come from the template.
    """
    slots = _slots(questions, ShareEncodeError)
    for section in sections:
        missing = [
            number for number in range(1, SECTION_SIZES[section] + 1) if number not in slots[section]
        ]
        if missing:
            raise ShareEncodeError(
                f"{section.value} is missing {len(missing)} question(s), "
                f"first {question_id(section, missing[0])}."
            )
    return {
        section: [
            slots[section].get(number) or default_question(section, number)
            for number in range(1, SECTION_SIZES[section] + 1)
        ]
        for section in SECTION_ORDER
    }


def _complete(questions: Sequence[Question]) -> List[Question]:
    """Decoded questions in layout order, gaps filled from the template."""
    slots = _slots(questions, ShareDecodeError)
    return [
        slots[section].get(number) or default_question(section, number)
        for section in SECTION_ORDER
        for number in range(1, SECTION_SIZES[section] + 1)
    ]


def _checked_points(question: Question) -> float:
    if not math.isfinite(question.points):
        raise ShareEncodeError(f"{question.id}: points must be a finite number, got {question.points!r}.")
    return question.points


def _assemble(configs: Dict[Section, List[Question]]) -> List[Question]:
    questions: List[Question] = []
    for section in SECTION_ORDER:
        questions.extend(configs.get(section) or default_section(section))
    return questions


def _checked(value: str, label: str) -> str:
    if any(char in RESERVED_CHARS for char in value):
        raise ShareEncodeError(
            f"{label} contains a reserved character ({''.join(sorted(RESERVED_CHARS))}): {value!r}"
        )
    return value


def _json_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, float):
        return format_number(value)
    return str(value)

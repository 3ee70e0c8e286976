import base64
import json
from urllib.parse import quote

import pytest

from report_card.questions import Section, StudentInput, default_question, update_question
from report_card.scoring import evaluate
from report_card.share import (
    LATEST_VERSION,
    ShareDecodeError,
    ShareEncodeError,
    ShareVersion,
    compress_text,
    decode,
    decode_fragment,
    decompress_text,
    detect_version,
    encode,
    format_number,
    fragment_text,
    section_mask,
    share_url,
)


def _blank_answers(count: int) -> str:
    return "^".join([""] * count)


def _v5(text: str) -> str:
    return "v5=" + compress_text(text)


def _fields(fragment: str) -> list:
    tag, payload = fragment.split("=", 1)
    return decompress_text(payload).split("|")


def _legacy_json(text: str) -> str:
    return quote(base64.b64encode(text.encode("utf-8")).decode("ascii"), safe="")


class TestLatestRoundTrip:
    """Links written by the current encoder reproduce the same report."""

    def test_encode_when_default_version_then_v5_is_used(self, default_questions):
        fragment = encode(default_questions, StudentInput(name="Kim"))

        assert LATEST_VERSION is ShareVersion.V5
        assert fragment.startswith("v5=")

    def test_decode_when_custom_exam_then_evaluation_matches(self, custom_questions, student):
        shared = decode(encode(custom_questions, student))

        assert shared.version is ShareVersion.V5
        assert list(shared.questions) == custom_questions
        assert evaluate(shared.questions, shared.student) == evaluate(custom_questions, student)

    def test_decode_when_korean_text_then_preserved(self, default_questions):
        questions = update_question(default_questions, "L-4", category="듣기 세부")
        shared = decode(encode(questions, StudentInput(name="이서연", answers={"L-4": "가"})))

        assert shared.student.name == "이서연"
        assert shared.student.answers["L-4"] == "가"
        assert shared.questions[36 + 3].category == "듣기 세부"

    def test_decode_when_points_have_no_short_decimal_then_exact(self, default_questions):
        questions = update_question(default_questions, "L-5", points=0.1 + 0.2)
        questions = update_question(questions, "W-2", points=1e-7)

        shared = decode(encode(questions, StudentInput()))

        assert shared.questions[36 + 4].points == 0.1 + 0.2
        assert shared.questions[72 + 4 + 1].points == 1e-7

    def test_decode_when_same_fragment_twice_then_identical(self, custom_questions, student):
        fragment = encode(custom_questions, student)

        assert decode(fragment) == decode(fragment)

    def test_decode_when_blank_answers_then_kept_as_empty(self, default_questions):
        shared = decode(encode(default_questions, StudentInput(name="Kim", answers={"R-2": "c"})))

        assert shared.student.answers["R-1"] == ""
        assert shared.student.answers["R-2"] == "c"
        assert len(shared.student.answers) == 80

    def test_share_url_when_base_has_fragment_then_replaced(self, default_questions):
        url = share_url("https://example.org/app#old", default_questions, StudentInput(name="Kim"))

        assert url.startswith("https://example.org/app#v5=")
        assert decode(url).student.name == "Kim"


class TestEraFragments:
    """Every issued tag still opens, whichever encoder wrote it."""

    def test_decode_when_legacy_json_link_then_questions_kept_verbatim(self, custom_questions, student):
        fragment = encode(custom_questions, student, ShareVersion.V1)

        shared = decode(fragment)

        assert fragment.startswith("report=")
        assert shared.version is ShareVersion.V1
        assert list(shared.questions) == custom_questions
        assert shared.student == student

    def test_decode_when_hand_written_legacy_link_then_full_layout(self):
        data = {
            "questions": [
                {
                    "id": "R-1",
                    "number": 1,
                    "section": "Reading",
                    "category": "Grammar",
                    "correctAnswer": "b",
                    "points": 1,
                }
            ],
            "studentInput": {"name": "Park", "answers": {"R-1": "B"}},
        }
        encoded = base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")

        shared = decode("#report=" + quote(encoded, safe=""))

        assert len(shared.questions) == 80
        assert (shared.questions[0].category, shared.questions[0].points) == ("Grammar", 1.0)
        assert shared.questions[1] == default_question(Section.READING, 2)
        assert evaluate(shared.questions, shared.student).score_r == 141

    def test_encode_when_legacy_link_reshared_then_evaluation_unchanged(self, default_questions):
        keyed = update_question(default_questions, "R-1", correct_answer="a")
        objective_only = [q for q in keyed if q.section.is_objective]
        student = StudentInput(name="Park", answers={"R-1": "a", "S-1": "3"})
        legacy = decode(encode(objective_only, student, ShareVersion.V1))

        reshared = decode(encode(legacy.questions, legacy.student))

        assert evaluate(reshared.questions, reshared.student) == evaluate(legacy.questions, legacy.student)
        assert evaluate(reshared.questions, reshared.student).max_score_sw == 32.0

    @pytest.mark.parametrize("version", [ShareVersion.V2, ShareVersion.V3])
    def test_decode_when_reading_listening_era_then_evaluation_matches(self, version, default_questions):
        questions = update_question(default_questions, "R-1", correct_answer="a", category="Grammar")
        questions = update_question(questions, "L-36", correct_answer="d", points=2.5)
        student = StudentInput(name="Choi", answers={"R-1": "A", "L-36": "d", "L-2": "b"})

        shared = decode(encode(questions, student, version))

        assert shared.version is version
        assert list(shared.questions) == questions
        assert evaluate(shared.questions, shared.student) == evaluate(questions, student)

    def test_decode_when_hand_written_v2_then_defaults_fill_gaps(self):
        data = [
            "Lee",
            ["a", None, "c"],
            [],
            [["Vocab", "c", ""], None, ["Vocab", "d", "2.5"]],
        ]
        shared = decode("v2=" + compress_text(json.dumps(data)))

        questions = {q.id: q for q in shared.questions}
        assert shared.student.answers == {"R-1": "a", "R-3": "c"}
        assert questions["R-1"].category == "Vocab"
        assert questions["R-1"].points == 1.0
        assert questions["R-2"] == default_question(Section.READING, 2)
        assert questions["R-3"].points == 2.5
        assert questions["L-1"] == default_question(Section.LISTENING, 1)

    def test_decode_when_hand_written_v3_then_fields_mapped(self):
        r_answers = "^".join(["b"] + [""] * 35)
        text = "|".join(["Jung", r_answers, "", "Reading*b*2", ""])

        shared = decode("v3=" + compress_text(text))

        result = evaluate(shared.questions, shared.student)
        assert shared.questions[0].correct_answer == "b"
        assert result.score_r == 142

    def test_decode_when_compact_link_then_evaluation_matches(self, custom_questions):
        answers = {f"R-{n}": "abcd"[(n - 1) % 4] for n in range(1, 37)}
        answers.update({"L-1": "c", "S-1": "2.5", "S-2": "4", "W-1": "3", "W-4": "oops"})
        student = StudentInput(name="Han", answers=answers)

        shared = decode(encode(custom_questions, student, ShareVersion.V4))

        assert shared.version is ShareVersion.V4
        assert shared.student.answers["S-1"] == "2.5"
        assert "W-4" not in shared.student.answers
        assert evaluate(shared.questions, shared.student) == evaluate(custom_questions, student)


class TestCompactAwards:
    @pytest.mark.parametrize("award", [0.1, 1.2, 3.74, 12.49])
    def test_decode_when_award_not_half_step_then_within_quarter_point(self, default_questions, award):
        student = StudentInput(name="Kim", answers={"S-1": str(award)})

        shared = decode(encode(default_questions, student, ShareVersion.V4))

        assert abs(float(shared.student.answers["S-1"]) - award) <= 0.25

    def test_encode_when_answer_longer_than_one_character_then_error(self, default_questions):
        student = StudentInput(name="Kim", answers={"R-1": "ab"})

        with pytest.raises(ShareEncodeError):
            encode(default_questions, student, ShareVersion.V4)

    def test_encode_when_award_beyond_last_letter_then_error(self, default_questions):
        student = StudentInput(name="Kim", answers={"W-1": "13"})

        with pytest.raises(ShareEncodeError):
            encode(default_questions, student, ShareVersion.V4)


class TestSectionMask:
    def test_section_mask_when_template_then_all_bits_set(self, default_questions):
        fragment = encode(default_questions, StudentInput(name="Kim"))

        assert section_mask(default_questions) == 0xF
        assert _fields(fragment)[5] == "f"
        assert len(_fields(fragment)) == 6

    def test_section_mask_when_one_answer_key_changes_then_one_block_added(self, default_questions):
        questions = update_question(default_questions, "R-3", correct_answer="c")

        fields = _fields(encode(questions, StudentInput(name="Kim")))

        assert section_mask(questions) == 0xE
        assert fields[5] == "e"
        assert len(fields) == 7

    def test_section_mask_when_rubric_points_change_then_bit_cleared(self, default_questions):
        questions = update_question(default_questions, "W-4", points=10)

        assert section_mask(questions) == 0x7

    def test_section_mask_when_rubric_answer_changes_then_still_default(self, default_questions):
        questions = update_question(default_questions, "S-1", correct_answer="anything")

        assert section_mask(questions) == 0xF

    def test_decode_when_block_truncated_then_template_fills_rest(self):
        shared = decode(_v5("Kim|||||e|Grammar*b"))

        first, second = shared.questions[0], shared.questions[1]
        assert (first.category, first.correct_answer, first.points) == ("Grammar", "b", 1.0)
        assert second == default_question(Section.READING, 2)

    def test_decode_when_rubric_block_then_points_and_categories_applied(self):
        shared = decode(_v5("Kim|||||b|Oral*4^^Presentation"))

        speaking = [q for q in shared.questions if q.section is Section.SPEAKING]
        assert (speaking[0].category, speaking[0].points) == ("Oral", 4.0)
        assert speaking[1] == default_question(Section.SPEAKING, 2)
        assert (speaking[2].category, speaking[2].points) == ("Presentation", 5.0)
        assert speaking[0].correct_answer == "N/A"

    def test_decode_when_points_slot_empty_then_default_points(self):
        shared = decode(_v5("Kim|||||7|Task*"))

        assert shared.questions[-4].category == "Task"
        assert shared.questions[-4].points == 3.0


class TestMalformedFragments:
    @pytest.mark.parametrize(
        "fragment",
        [
            "",
            "#",
            "v9=abc",
            "https://example.org/app#nothing-here",
            "v5=not-a-payload",
            "v5=" + compress_text("Kim|||||"),
            "v5=" + compress_text("Kim|||||e"),
            "v5=" + compress_text("Kim|||||f|extra"),
            "v5=" + compress_text("Kim|||||1f"),
            "v5=" + compress_text("Kim|||||zz"),
            "v5=" + compress_text("Kim|" + _blank_answers(37) + "||||f"),
            "v5=" + compress_text("Kim|||||e|Grammar*b*lots"),
            "v3=" + compress_text("Kim|||"),
            "v2=" + compress_text('{"name": "Kim"}'),
            "v4=" + compress_text("Kim|" + "a" * 37 + "||||f"),
            "report=%%%",
            "v5=" + compress_text("Kim|b||||e|G*b*nan"),
            "v5=" + compress_text("Kim|b||||e|G*b*inf"),
            "v5=" + compress_text("Kim|||||7|Task*-inf"),
            "v2=" + compress_text('["Kim", ["b"], [], [["G", "b", "1e999"]]]'),
            "v2=" + compress_text('["Kim", ["b"], [], [["G", "b", NaN]]]'),
            "v2=" + compress_text('["Kim", ["b"], [], [["G", "b", 1e999]]]'),
            "report=" + _legacy_json('{"questions": [{"section": "Reading", "number": 1, "points": NaN}], "studentInput": {"name": "Kim"}}'),
            "report=" + _legacy_json('{"questions": [{"section": "Reading", "number": 1, "points": 1e999}], "studentInput": {"name": "Kim"}}'),
            "report=" + _legacy_json('{"questions": [{"section": "Reading", "number": 37}], "studentInput": {"name": "Kim"}}'),
        ],
    )
    def test_decode_fragment_when_malformed_then_none(self, fragment):
        assert decode_fragment(fragment) is None

    def test_decode_when_unknown_tag_then_error(self):
        with pytest.raises(ShareDecodeError):
            decode("v9=abc")

    def test_decode_fragment_when_valid_url_then_report(self, default_questions):
        url = share_url("https://example.org/app", default_questions, StudentInput(name="Kim"))

        assert decode_fragment(url).student.name == "Kim"


class TestReservedCharacters:
    @pytest.mark.parametrize("version", [ShareVersion.V3, ShareVersion.V4, ShareVersion.V5])
    def test_encode_when_name_has_delimiter_then_error(self, version, default_questions):
        with pytest.raises(ShareEncodeError):
            encode(default_questions, StudentInput(name="A|B"), version)

    def test_encode_when_category_has_delimiter_then_error(self, default_questions):
        questions = update_question(default_questions, "R-1", category="Main*idea")

        with pytest.raises(ShareEncodeError):
            encode(questions, StudentInput(name="Kim"))

    def test_encode_when_answer_has_delimiter_then_error(self, default_questions):
        with pytest.raises(ShareEncodeError):
            encode(default_questions, StudentInput(name="Kim", answers={"L-1": "a^b"}))

    def test_encode_when_legacy_json_then_delimiters_allowed(self, default_questions):
        shared = decode(encode(default_questions, StudentInput(name="A|B"), ShareVersion.V1))

        assert shared.student.name == "A|B"


class TestHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [(2.0, "2"), (0, "0"), (2.5, "2.5"), (0.1 + 0.2, "0.30000000000000004")],
    )
    def test_format_number(self, value, expected):
        assert format_number(value) == expected

    def test_fragment_text_when_full_url_then_fragment_only(self):
        assert fragment_text("https://example.org/app#v5=abc") == "v5=abc"
        assert fragment_text("  #report=xyz ") == "report=xyz"
        assert fragment_text("v3=abc") == "v3=abc"

    @pytest.mark.parametrize(
        "fragment, expected",
        [
            ("v5=abc", ShareVersion.V5),
            ("v4=abc", ShareVersion.V4),
            ("#v3=abc", ShareVersion.V3),
            ("v2=abc", ShareVersion.V2),
            ("report=abc", ShareVersion.V1),
            ("v6=abc", None),
        ],
    )
    def test_detect_version(self, fragment, expected):
        assert detect_version(fragment) is expected


class TestIncompleteQuestionSets:
    @pytest.mark.parametrize("version", [ShareVersion.V4, ShareVersion.V5])
    def test_encode_when_section_missing_then_error_names_it(self, version, default_questions):
        objective_only = [q for q in default_questions if q.section.is_objective]

        with pytest.raises(ShareEncodeError, match="Speaking"):
            encode(objective_only, StudentInput(name="Kim"), version)

    def test_encode_when_position_missing_then_error(self, default_questions):
        questions = [q for q in default_questions if q.id != "L-7"]

        with pytest.raises(ShareEncodeError, match="L-7"):
            encode(questions, StudentInput(name="Kim"))

    @pytest.mark.parametrize("version", [ShareVersion.V2, ShareVersion.V3])
    def test_encode_when_rubric_missing_in_objective_form_then_allowed(self, version, default_questions):
        objective_only = [q for q in default_questions if q.section.is_objective]

        shared = decode(encode(objective_only, StudentInput(name="Kim"), version))

        assert len(shared.questions) == 80

    def test_encode_when_duplicate_question_then_error(self, default_questions):
        with pytest.raises(ShareEncodeError, match="Duplicate"):
            encode(default_questions + default_questions[:1], StudentInput(name="Kim"))

    @pytest.mark.parametrize("version", list(ShareVersion))
    @pytest.mark.parametrize("points", [float("nan"), float("inf")])
    def test_encode_when_points_not_finite_then_error(self, version, points, default_questions):
        questions = update_question(default_questions, "R-1", points=points)

        with pytest.raises(ShareEncodeError, match="finite"):
            encode(questions, StudentInput(name="Kim"), version)

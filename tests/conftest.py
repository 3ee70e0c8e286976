import sys
from pathlib import Path

import pytest

# Make the package importable when running pytest from a source checkout
ROOT_PATH = Path(__file__).resolve().parent.parent
if ROOT_PATH.as_posix() not in sys.path:
    sys.path.insert(0, ROOT_PATH.as_posix())

from report_card.questions import (  # noqa: E402
    Section,
    StudentInput,
    generate_default_questions,
    update_question,
)


@pytest.fixture
def default_questions():
    """The untouched exam template."""
    return generate_default_questions()


@pytest.fixture
def custom_questions(default_questions):
    """Template with a configured Reading key and one tweaked Speaking item."""
    questions = default_questions
    keys = "abcdabcdabcdabcdabcdabcdabcdabcdabcd"
    for number, key in enumerate(keys, start=1):
        category = "Grammar" if number <= 12 else "어휘"
        questions = update_question(questions, f"R-{number}", correct_answer=key, category=category)
    questions = update_question(questions, "R-36", points=1.5)
    questions = update_question(questions, "S-2", points=4.5, category="Fluency")
    return questions


@pytest.fixture
def student():
    """A student with mixed-case, blank and rubric answers."""
    answers = {f"R-{n}": "A" for n in range(1, 10)}
    answers.update({"R-2": " b ", "R-3": "", "R-36": "d", "L-1": "c"})
    answers.update({"S-1": "2.5", "S-2": "4", "W-1": "3", "W-4": "oops"})
    return StudentInput(name="김민준", answers=answers)

"""
Exam score reports with compact, server-free share links.
"""

from .questions import Question, Section, StudentInput, generate_default_questions
from .scoring import CategoryResult, EvaluationResult, evaluate
from .share import ShareVersion, SharedReport, decode, decode_fragment, encode

__version__ = "0.1.0"

__all__ = [
    "CategoryResult",
    "EvaluationResult",
    "Question",
    "Section",
    "ShareVersion",
    "SharedReport",
    "StudentInput",
    "__version__",
    "decode",
    "decode_fragment",
    "encode",
    "evaluate",
    "generate_default_questions",
]

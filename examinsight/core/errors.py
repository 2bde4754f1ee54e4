"""
Error taxonomy shared by the scoring, analytics and coaching services.
"""
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable failure kinds returned by public entry points."""
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    ANALYTICS_UNAVAILABLE = "ANALYTICS_UNAVAILABLE"
    COMPUTE_TIMEOUT = "COMPUTE_TIMEOUT"


class ExamInsightError(Exception):
    """Base exception for the service."""


class ValidationError(ExamInsightError):
    """Malformed answer sheet, answer key or rotation table. Never retried."""


class LengthMismatch(ValidationError):
    def __init__(self, expected: int, actual: int, student_id: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.student_id = student_id
        who = f" for student {student_id}" if student_id else ""
        super().__init__(f"Answer sheet{who} has {actual} answers, key has {expected}")


class UnknownBooklet(ValidationError):
    def __init__(self, booklet: str, known=()):
        self.booklet = booklet
        self.known = tuple(known)
        super().__init__(f"No rotation entry for booklet '{booklet}' (known: {', '.join(self.known) or '-'})")


class InvalidOption(ValidationError):
    def __init__(self, position: int, value: str):
        self.position = position
        self.value = value
        super().__init__(f"Invalid mark '{value}' at question {position + 1}")


class InvalidAnswerKey(ValidationError):
    pass


class InvalidRotation(ValidationError):
    pass


class NotFound(ExamInsightError):
    """Requested exam, answer key or answer sheet does not exist."""


class PersistenceError(ExamInsightError):
    """Storage failure; retried with bounded backoff by the orchestrator."""


class ComputeTimeout(ExamInsightError):
    """Another process held the snapshot lock past its TTL without producing a snapshot."""


class AIServiceError(ExamInsightError):
    """The language model call failed. Triggers fallback commentary, never retried inline."""

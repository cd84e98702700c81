"""
Core data models for the exam engine.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple, Any
from datetime import datetime
from enum import Enum


OPTION_KEYS = ("A", "B", "C", "D")


class Phase(Enum):
    """Phases of an exam session."""
    AUTH = "auth"
    INSTRUCTIONS = "instructions"
    QUESTIONS = "questions"
    RESULT = "result"
    REVIEW = "review"


class Verdict(Enum):
    """Outcome of a graded attempt."""
    PASS = "Pass"
    FAIL = "Fail"


class PaymentStatus(Enum):
    """Payment state of a user's registration for an exam."""
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Question:
    """A single multiple-choice question."""
    id: str
    text: str
    options: Dict[str, str]
    correct_option: str

    def __post_init__(self):
        unknown = [key for key in self.options if key not in OPTION_KEYS]
        if unknown:
            raise ValueError(f"Question {self.id}: unknown option keys {unknown}")
        if self.correct_option not in self.options:
            raise ValueError(
                f"Question {self.id}: correct option '{self.correct_option}' is not one of its options"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "question": self.text,
            "options": dict(self.options),
            "correctOption": self.correct_option,
        }


@dataclass(frozen=True)
class ExamDefinition:
    """An exam as fetched from the exam catalog. Read-only for the lifetime of an attempt."""
    id: str
    name: str
    duration: int
    total_marks: int
    passing_marks: int
    questions: Tuple[Question, ...]
    category: str = ""
    access_code: str = ""
    is_paid: bool = False
    price: float = 0.0

    @property
    def question_count(self) -> int:
        return len(self.questions)


@dataclass
class AttemptState:
    """Mutable state of an in-progress attempt, owned by a single ExamSession."""
    seconds_remaining: int
    selected_options: Dict[int, str] = field(default_factory=dict)
    marked_for_review: Set[int] = field(default_factory=set)
    current_index: int = 0


@dataclass(frozen=True)
class PersistedSnapshot:
    """
    Serialized copy of an attempt used for recovery.

    The serialized form is the autosave wire format:
    {selectedOptions, markedForReview, currentIndex, secondsRemaining, savedAtEpochMillis}
    """
    selected_options: Dict[int, str]
    marked_for_review: Tuple[int, ...]
    current_index: int
    seconds_remaining: int
    saved_at_epoch_millis: int

    @classmethod
    def from_attempt(cls, attempt: AttemptState, saved_at_epoch_millis: int) -> "PersistedSnapshot":
        return cls(
            selected_options=dict(attempt.selected_options),
            marked_for_review=tuple(sorted(attempt.marked_for_review)),
            current_index=attempt.current_index,
            seconds_remaining=attempt.seconds_remaining,
            saved_at_epoch_millis=saved_at_epoch_millis,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selectedOptions": {str(index): key for index, key in sorted(self.selected_options.items())},
            "markedForReview": list(self.marked_for_review),
            "currentIndex": self.current_index,
            "secondsRemaining": self.seconds_remaining,
            "savedAtEpochMillis": self.saved_at_epoch_millis,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistedSnapshot":
        """
        Parse a serialized snapshot.

        Raises:
            ValueError: If the payload is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Snapshot must be a JSON object")

        try:
            raw_options = data.get("selectedOptions", {})
            if not isinstance(raw_options, dict):
                raise ValueError("'selectedOptions' must be an object")
            selected_options = {int(index): str(key) for index, key in raw_options.items()}

            raw_marked = data.get("markedForReview", [])
            if not isinstance(raw_marked, list):
                raise ValueError("'markedForReview' must be an array")
            marked = tuple(sorted({int(index) for index in raw_marked}))

            current_index = _require_int(data, "currentIndex", default=0)
            seconds_remaining = _require_int(data, "secondsRemaining")
            saved_at = _require_int(data, "savedAtEpochMillis")
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed snapshot: {e}") from e

        if seconds_remaining < 0:
            raise ValueError("Malformed snapshot: negative secondsRemaining")

        return cls(
            selected_options=selected_options,
            marked_for_review=marked,
            current_index=current_index,
            seconds_remaining=seconds_remaining,
            saved_at_epoch_millis=saved_at,
        )


def _require_int(data: Dict[str, Any], name: str, default: Optional[int] = None) -> int:
    value = data.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{name}' must be an integer")
    return value


@dataclass(frozen=True)
class Result:
    """Graded outcome of an attempt. Never mutated after creation."""
    correct_answers: Tuple[Question, ...]
    wrong_answers: Tuple[Question, ...]
    verdict: Verdict

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correctAnswers": [question.to_dict() for question in self.correct_answers],
            "wrongAnswers": [question.to_dict() for question in self.wrong_answers],
            "verdict": self.verdict.value,
        }


@dataclass(frozen=True)
class Report:
    """System of record for a finished attempt."""
    report_id: str
    exam_id: str
    user_id: str
    result: Result
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reportId": self.report_id,
            "examId": self.exam_id,
            "userId": self.user_id,
            "result": self.result.to_dict(),
            "createdAt": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class AccessStatus:
    """Registration, access code and payment state for one user and exam."""
    is_registered: bool
    access_code_valid: bool
    payment_status: PaymentStatus
    is_paid: bool = False

    @property
    def payment_satisfied(self) -> bool:
        return not self.is_paid or self.payment_status is PaymentStatus.COMPLETED

    @property
    def may_enter(self) -> bool:
        return self.is_registered and self.access_code_valid and self.payment_satisfied


@dataclass
class EngineSettings:
    """Configuration settings for exam sessions."""
    autosave_interval: float = 10
    recovery_window_hours: float = 24
    report_max_attempts: int = 3
    report_retry_delay: float = 0.5
    report_timeout: float = 10.0

    @property
    def recovery_window_millis(self) -> int:
        return int(self.recovery_window_hours * 60 * 60 * 1000)

"""
Exam engine core logic.
Handles the attempt countdown timer and grading of answered question sets.
"""
import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from .models import Question, Result, Verdict

# Set up logger for timer operations
logger = logging.getLogger(__name__)


def log_timer_event(session_key: str, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """
    Log a countdown lifecycle event.

    The event name and fields are attached as structured extras so log
    handlers can filter on them.
    """
    details = ", ".join(f"{name}={value}" for name, value in fields.items())
    logger.log(
        level,
        f"Timer {event} [{session_key}]" + (f" {details}" if details else ""),
        extra={
            'event_type': f"timer_{event.lower()}",
            'session_key': session_key,
            'timer_fields': fields,
            'timestamp': time.time()
        }
    )


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class ExamTimer:
    """
    Single countdown for one exam session.

    Emits a tick with the decremented remaining count once per tick interval and
    exactly one expiry event when the count reaches zero. A stopped or expired
    timer never fires again.
    """

    def __init__(self, session_key: str = None, tick_interval: float = 1.0):
        """
        Initialize the timer.

        Args:
            session_key: Identifier used in lifecycle logs
            tick_interval: Seconds between ticks
        """
        self._task: Optional[asyncio.Task] = None
        self._session_key = session_key
        self._tick_interval = tick_interval
        self._remaining_time = 0
        self._total_duration = 0
        self._is_cancelled = False
        self._is_expired = False

    def start(
        self,
        total_seconds: int,
        tick_callback: Callable[[int], Any],
        expiry_callback: Callable[[], Any]
    ) -> None:
        """
        Start the countdown as a background task on the running event loop.

        A countdown that is still running is stopped first, so a session never
        has two live intervals.

        Args:
            total_seconds: Countdown length in seconds
            tick_callback: Called after each tick with the remaining seconds
            expiry_callback: Called once when the countdown reaches zero

        Raises:
            ValueError: If total_seconds is negative
            RuntimeError: If there is no running event loop
        """
        if total_seconds < 0:
            raise ValueError(f"Timer duration cannot be negative: {total_seconds}")

        loop = asyncio.get_running_loop()

        if self.is_running:
            log_timer_event(self._session_key, "RESTART", logging.WARNING, remaining=self._remaining_time)
            self.stop()

        self._remaining_time = total_seconds
        self._total_duration = total_seconds
        self._is_cancelled = False
        self._is_expired = False

        log_timer_event(self._session_key, "START", duration=total_seconds)
        self._task = loop.create_task(self._countdown(tick_callback, expiry_callback))

    async def _countdown(
        self,
        tick_callback: Callable[[int], Any],
        expiry_callback: Callable[[], Any]
    ) -> None:
        try:
            while self._remaining_time > 0:
                await asyncio.sleep(self._tick_interval)
                if self._is_cancelled:
                    return
                self._remaining_time -= 1
                # Every 10s plus the final countdown
                if self._remaining_time % 10 == 0 or self._remaining_time <= 5:
                    log_timer_event(self._session_key, "TICK", logging.DEBUG, remaining=self._remaining_time)
                await _maybe_await(tick_callback(self._remaining_time))

            if self._is_cancelled:
                return

            self._is_expired = True
            log_timer_event(self._session_key, "EXPIRED", duration=self._total_duration)
            await _maybe_await(expiry_callback())

        except asyncio.CancelledError:
            log_timer_event(self._session_key, "CANCELLED", remaining=self._remaining_time)
            raise
        except Exception as e:
            log_timer_event(self._session_key, "ERROR", logging.ERROR, error=e)
            raise

    def stop(self) -> bool:
        """
        Stop the countdown. Safe to call repeatedly and after expiry.

        Returns:
            True if a running countdown was stopped, False otherwise
        """
        was_running = self.is_running
        self._is_cancelled = True

        task = self._task
        if task is not None and not task.done():
            # The expiry callback runs inside the task and may stop the timer itself
            if task is not _current_task():
                task.cancel()

        if was_running:
            log_timer_event(self._session_key, "STOPPED", remaining=self._remaining_time)
        return was_running

    async def wait(self) -> None:
        """Wait until the countdown task has finished, however it ends."""
        if self._task is not None:
            await asyncio.wait([self._task])

    @property
    def is_running(self) -> bool:
        """Check if the countdown is still ticking."""
        return (
            self._task is not None
            and not self._task.done()
            and not self._is_cancelled
            and not self._is_expired
        )

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    @property
    def is_expired(self) -> bool:
        return self._is_expired

    @property
    def remaining_time(self) -> int:
        """Get remaining time in seconds."""
        return self._remaining_time

    def get_status(self) -> Dict[str, Any]:
        return {
            'remaining_time': self._remaining_time,
            'total_duration': self._total_duration,
            'is_running': self.is_running,
            'is_cancelled': self._is_cancelled,
            'is_expired': self._is_expired
        }


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def grade(
    questions: Sequence[Question],
    selected_options: Mapping[int, str],
    passing_marks: int
) -> Result:
    """
    Grade an answered question set.

    An absent selection never matches. The attempt passes when the number of
    correct answers is at least passing_marks.

    Args:
        questions: Questions in exam order
        selected_options: Question index -> chosen option key
        passing_marks: Correct answers required to pass

    Returns:
        Result partitioning the questions into correct and wrong answers
    """
    correct_answers = []
    wrong_answers = []

    for index, question in enumerate(questions):
        if selected_options.get(index) == question.correct_option:
            correct_answers.append(question)
        else:
            wrong_answers.append(question)

    verdict = Verdict.PASS if len(correct_answers) >= passing_marks else Verdict.FAIL
    return Result(
        correct_answers=tuple(correct_answers),
        wrong_answers=tuple(wrong_answers),
        verdict=verdict
    )


def score_summary(result: Result, total_marks: Optional[int] = None) -> Dict[str, Any]:
    """
    Summarise a result for display.

    Args:
        result: Graded result
        total_marks: Exam total; marks are spread evenly over the questions

    Returns:
        Dictionary with counts, percentage, verdict and, when total_marks is
        given, obtained and total marks
    """
    correct = len(result.correct_answers)
    total = correct + len(result.wrong_answers)
    summary = {
        'correct': correct,
        'wrong': len(result.wrong_answers),
        'total_questions': total,
        'percentage': round(correct / total * 100, 1) if total else 0.0,
        'verdict': result.verdict.value
    }
    if total_marks is not None:
        summary['total_marks'] = total_marks
        summary['obtained_marks'] = round(correct * total_marks / total, 2) if total else 0
    return summary


def format_time(seconds: int) -> str:
    """Format a second count as MM:SS."""
    seconds = max(0, int(seconds))
    minutes, secs = divmod(seconds, 60)
    return f"{minutes:02d}:{secs:02d}"


def timer_status(seconds_remaining: int, duration: int) -> str:
    """
    Classify the remaining time.

    Returns:
        'critical' at or below 10% of the duration, 'warning' at or below 25%,
        'normal' otherwise
    """
    if duration <= 0:
        return "critical"
    percent_remaining = seconds_remaining / duration * 100
    if percent_remaining <= 10:
        return "critical"
    if percent_remaining <= 25:
        return "warning"
    return "normal"

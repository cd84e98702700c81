"""
Exam session state machine.

An ExamSession drives one user through one exam:

    auth -> instructions -> questions -> result -> review
                 ^                          |        |
                 +------------ retake ------+--------+

It owns the attempt state, the countdown timer and the autosave loop, and is
the only place attempt state is mutated. Caller operations validate
synchronously and return a dict with a 'success' flag; failures carry an
ErrorCode under 'error' and leave the session unchanged.

Finalization (manual submit or timer expiry) is single-flight: the first
trigger to reach the gate grades and records the report, any other trigger
arriving meanwhile is rejected without side effects.
"""
import asyncio
import hmac
import logging
import threading
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .errors import (
    ErrorCode, PersistenceError, ReportSubmissionError, failure
)
from .exam_engine import ExamTimer, grade, log_timer_event, score_summary
from .models import (
    AttemptState, EngineSettings, ExamDefinition, PersistedSnapshot, Phase, Question, Report, Result
)
from .report_service import ReportService, new_report_id
from .snapshot_store import SnapshotStore, snapshot_key


def epoch_millis() -> int:
    return int(time.time() * 1000)


class ExamSession:
    """State machine for a single user's attempt at a single exam."""

    def __init__(
        self,
        exam: ExamDefinition,
        user_id: str,
        snapshot_store: SnapshotStore,
        report_service: ReportService,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], int]] = None,
        tick_interval: float = 1.0,
        on_tick: Optional[Callable[["ExamSession", int], Awaitable[None]]] = None,
        on_finalized: Optional[Callable[["ExamSession", Dict[str, Any]], Awaitable[None]]] = None
    ):
        """
        Initialize a session in the auth phase.

        Args:
            exam: Exam definition, read-only for the session's lifetime
            user_id: User taking the exam
            snapshot_store: Autosave storage
            report_service: Where finished attempts are recorded
            settings: Autosave, recovery and retry settings
            clock: Returns the current wall-clock time in epoch milliseconds
            tick_interval: Seconds between countdown ticks
            on_tick: Awaited after each countdown tick with the remaining seconds
            on_finalized: Awaited after each finalize with its outcome, including
                a failed report submission (success False)
        """
        self.exam = exam
        self.user_id = str(user_id)
        self.snapshot_store = snapshot_store
        self.report_service = report_service
        self.settings = settings or EngineSettings()
        self.session_key = snapshot_key(exam.id, self.user_id)
        self.logger = logging.getLogger(__name__)

        self._clock = clock or epoch_millis
        self._timer = ExamTimer(self.session_key, tick_interval=tick_interval)
        self._on_tick = on_tick
        self._on_finalized = on_finalized

        self._phase = Phase.AUTH
        self._attempt: Optional[AttemptState] = None
        self._recovery_offer: Optional[PersistedSnapshot] = None
        self._autosave_task: Optional[asyncio.Task] = None
        self._save_lock = threading.Lock()
        self._save_generation = 0

        self._finalizing = False
        self._pending_result: Optional[Result] = None
        self._pending_report_id: Optional[str] = None
        self._result: Optional[Result] = None
        self._report: Optional[Report] = None
        self._final_selections: Dict[int, str] = {}

        self.last_saved_at: Optional[int] = None
        self.last_activity = datetime.now()

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def is_finalizing(self) -> bool:
        return self._finalizing

    @property
    def awaiting_retry(self) -> bool:
        """True after a failed finalize: only submit() or exit() are accepted."""
        return self._pending_result is not None

    @property
    def recovery_offer(self) -> Optional[PersistedSnapshot]:
        return self._recovery_offer

    @property
    def result(self) -> Optional[Result]:
        return self._result

    @property
    def report(self) -> Optional[Report]:
        return self._report

    @property
    def timer(self) -> ExamTimer:
        return self._timer

    @property
    def selected_options(self) -> Dict[int, str]:
        if self._attempt is not None:
            return dict(self._attempt.selected_options)
        return dict(self._final_selections)

    @property
    def marked_for_review(self) -> frozenset:
        if self._attempt is None:
            return frozenset()
        return frozenset(self._attempt.marked_for_review)

    @property
    def current_index(self) -> int:
        return self._attempt.current_index if self._attempt is not None else 0

    @property
    def seconds_remaining(self) -> int:
        if self._attempt is None:
            return self.exam.duration
        return self._attempt.seconds_remaining

    def current_question(self) -> Optional[Question]:
        if self._attempt is None:
            return None
        return self.exam.questions[self._attempt.current_index]

    def question_status(self, index: int) -> str:
        """
        Navigator status of a question.

        Returns:
            One of 'current', 'marked', 'answered', 'skipped' (passed without an
            answer) or 'not_visited'
        """
        attempt = self._attempt
        if attempt is None:
            return "not_visited"
        if index == attempt.current_index:
            return "current"
        if index in attempt.marked_for_review:
            return "marked"
        if index in attempt.selected_options:
            return "answered"
        if index < attempt.current_index:
            return "skipped"
        return "not_visited"

    def progress(self) -> Dict[str, Any]:
        """Answered, marked and unanswered counts for the current attempt."""
        total = self.exam.question_count
        attempt = self._attempt
        answered = len(attempt.selected_options) if attempt else 0
        marked = len(attempt.marked_for_review) if attempt else 0
        return {
            'phase': self._phase.value,
            'total_questions': total,
            'answered': answered,
            'marked_for_review': marked,
            'unanswered': total - answered,
            'percent_answered': round(answered / total * 100) if total else 0,
            'current_index': self.current_index,
            'seconds_remaining': self.seconds_remaining
        }

    def describe_last_saved(self) -> str:
        """Human readable age of the last successful autosave."""
        if self.last_saved_at is None:
            return ""
        diff_ms = self._clock() - self.last_saved_at
        if diff_ms < 60_000:
            return "just now"
        if diff_ms < 3_600_000:
            minutes = diff_ms // 60_000
            return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
        return datetime.fromtimestamp(self.last_saved_at / 1000).strftime("%H:%M:%S")

    # ------------------------------------------------------------------
    # Caller operations
    # ------------------------------------------------------------------

    def verify_access(self, code: str) -> Dict[str, Any]:
        """
        Check an access code and move on to the instructions.

        Args:
            code: Access code distributed to the user out of band

        Returns:
            Operation result; on success includes whether a recovery offer exists
        """
        if self._phase is not Phase.AUTH:
            return self._phase_error("verify_access")

        if not isinstance(code, str) or not hmac.compare_digest(
            code.encode('utf-8'), self.exam.access_code.encode('utf-8')
        ):
            self.logger.info(f"Rejected access code for session {self.session_key}")
            return failure(ErrorCode.INVALID_ACCESS_CODE, "Incorrect exam code")

        self._enter_instructions(offer_recovery=True)
        return {
            'success': True,
            'phase': self._phase,
            'recovery_available': self._recovery_offer is not None
        }

    def acknowledge_instructions(self, agreed: bool, resume: bool = True) -> Dict[str, Any]:
        """
        Accept the instructions and start the timed question phase.

        Args:
            agreed: The user's explicit agreement to the instructions
            resume: Restore the offered snapshot if there is one

        Returns:
            Operation result with 'restored' and 'seconds_remaining'
        """
        if self._phase is not Phase.INSTRUCTIONS:
            return self._phase_error("acknowledge_instructions")

        if agreed is not True:
            return failure(
                ErrorCode.ACKNOWLEDGMENT_REQUIRED,
                "You must agree to the instructions before starting the exam"
            )

        attempt = AttemptState(seconds_remaining=self.exam.duration)
        restored = False
        if resume and self._recovery_offer is not None:
            attempt = self._restore_attempt(self._recovery_offer)
            restored = True

        # Timer start is the only step that can fail, so nothing is committed before it
        self._timer.start(attempt.seconds_remaining, self._handle_tick, self._handle_expiry)

        self._attempt = attempt
        self._recovery_offer = None
        self._pending_result = None
        self._phase = Phase.QUESTIONS
        self._touch()
        self._start_autosave()

        self.logger.info(
            f"Session {self.session_key} entered questions phase "
            f"({'restored' if restored else 'fresh'} attempt, {attempt.seconds_remaining}s remaining)"
        )
        return {
            'success': True,
            'phase': self._phase,
            'restored': restored,
            'seconds_remaining': attempt.seconds_remaining
        }

    def select_option(self, question_index: int, option_key: str) -> Dict[str, Any]:
        """Record the answer for a question, replacing any earlier answer."""
        rejection = self._check_mutable("select_option")
        if rejection:
            return rejection

        if not self._valid_index(question_index):
            return self._index_error(question_index)

        options = self.exam.questions[question_index].options
        if not isinstance(option_key, str) or option_key not in options:
            return failure(
                ErrorCode.INVALID_OPTION,
                f"Option '{option_key}' is not available for question {question_index + 1}",
                valid_options=sorted(options)
            )

        self._attempt.selected_options[question_index] = option_key
        self._touch()
        return {'success': True, 'question_index': question_index, 'option': option_key}

    def toggle_review(self, question_index: int) -> Dict[str, Any]:
        """Flip a question's marked-for-review flag. Has no effect on grading."""
        rejection = self._check_mutable("toggle_review")
        if rejection:
            return rejection

        if not self._valid_index(question_index):
            return self._index_error(question_index)

        marked = self._attempt.marked_for_review
        if question_index in marked:
            marked.discard(question_index)
        else:
            marked.add(question_index)
        self._touch()
        return {'success': True, 'question_index': question_index, 'marked': question_index in marked}

    def navigate(self, question_index: int) -> Dict[str, Any]:
        """Move to another question."""
        rejection = self._check_mutable("navigate")
        if rejection:
            return rejection

        if not self._valid_index(question_index):
            return self._index_error(question_index)

        self._attempt.current_index = question_index
        self._touch()
        return {'success': True, 'question_index': question_index}

    async def submit(self) -> Dict[str, Any]:
        """
        Grade the attempt and record its report.

        Returns:
            On success: {'success': True, 'result', 'report', 'summary', 'trigger'}.
            If the report cannot be recorded the session stays in the questions
            phase with the timer stopped and submit() may be retried.
        """
        return await self._finalize("manual_submit")

    def exit(self) -> Dict[str, Any]:
        """
        Suspend the attempt without grading.

        Saves a snapshot, stops the timer and returns the session to the auth
        phase. No report is produced; the attempt can be resumed later through
        the recovery offer.

        Returns:
            Operation result; 'saved' tells whether the snapshot was written
        """
        if self._phase is not Phase.QUESTIONS or self._finalizing:
            return self._phase_error("exit")

        saved = self._save_snapshot("exit")
        self._timer.stop()
        self._stop_autosave()

        self._attempt = None
        self._pending_result = None
        self._phase = Phase.AUTH
        self._touch()
        self.logger.info(f"Session {self.session_key} suspended (snapshot saved: {saved})")
        return {'success': True, 'phase': self._phase, 'saved': saved}

    def open_review(self) -> Dict[str, Any]:
        """Move from the result to the read-only answer review."""
        if self._phase is not Phase.RESULT:
            return self._phase_error("open_review")
        self._phase = Phase.REVIEW
        self._touch()
        return {'success': True, 'phase': self._phase, 'entries': self.review()}

    def review(self) -> List[Dict[str, Any]]:
        """
        Per-question review of a finished attempt.

        Returns:
            One entry per question; empty before the attempt is graded
        """
        if self._phase not in (Phase.RESULT, Phase.REVIEW):
            return []
        entries = []
        for index, question in enumerate(self.exam.questions):
            selected = self._final_selections.get(index)
            entries.append({
                'index': index,
                'question': question.text,
                'options': dict(question.options),
                'selected_option': selected,
                'correct_option': question.correct_option,
                'is_correct': selected == question.correct_option
            })
        return entries

    def retake(self) -> Dict[str, Any]:
        """Start over from the instructions with a fresh attempt."""
        if self._phase not in (Phase.RESULT, Phase.REVIEW):
            return self._phase_error("retake")

        self._result = None
        self._report = None
        self._final_selections = {}
        self._attempt = None
        # A graded attempt never resurrects its snapshot
        self._enter_instructions(offer_recovery=False)
        return {'success': True, 'phase': self._phase}

    def flush(self) -> bool:
        """
        Best-effort save for process or session teardown. Never raises.

        Returns:
            True if a snapshot was written
        """
        try:
            if self._phase is not Phase.QUESTIONS or self._finalizing or self._attempt is None:
                return False
            return self._save_snapshot("teardown")
        except Exception as e:
            self.logger.warning(f"Teardown flush failed for session {self.session_key}: {e}")
            return False

    def close(self) -> None:
        """Stop the timer and autosave loop without saving or grading."""
        self._timer.stop()
        self._stop_autosave()

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize(self, trigger: str) -> Dict[str, Any]:
        if self._phase is not Phase.QUESTIONS:
            return self._phase_error(trigger)

        if self._finalizing:
            log_timer_event(
                self.session_key, "RACE_CONDITION", logging.WARNING,
                details=f"{trigger} arrived while finalization is already in progress; ignoring"
            )
            return failure(
                ErrorCode.INVALID_PHASE_TRANSITION,
                "This attempt is already being submitted"
            )

        # No await between the check above and this assignment
        self._finalizing = True
        try:
            self._timer.stop()
            self._stop_autosave()
            self._sync_remaining()

            if self._pending_result is None:
                self._pending_result = grade(
                    self.exam.questions,
                    self._attempt.selected_options,
                    self.exam.passing_marks
                )
                # Reused by every retry of this attempt so the ledger records it once
                self._pending_report_id = new_report_id()
            result = self._pending_result

            try:
                report = await self._submit_report_with_retry(result, self._pending_report_id)
            except ReportSubmissionError as e:
                self.logger.error(f"Finalize ({trigger}) failed for session {self.session_key}: {e}")
                self._save_snapshot("finalize_failed")
                outcome = failure(
                    ErrorCode.REPORT_SUBMISSION_FAILED,
                    "Your answers could not be submitted. Please try again.",
                    trigger=trigger
                )
            else:
                snapshot_cleared = self._clear_snapshot()

                self._final_selections = dict(self._attempt.selected_options)
                self._attempt = None
                self._pending_result = None
                self._result = result
                self._report = report
                self._phase = Phase.RESULT
                self._touch()

                self.logger.info(
                    f"Session {self.session_key} finalized by {trigger}: {result.verdict.value} "
                    f"({len(result.correct_answers)}/{self.exam.question_count} correct)"
                )
                outcome = {
                    'success': True,
                    'phase': self._phase,
                    'trigger': trigger,
                    'result': result,
                    'report': report,
                    'summary': score_summary(result, self.exam.total_marks),
                    'snapshot_cleared': snapshot_cleared
                }
        finally:
            self._finalizing = False

        await self._notify_finalized(outcome)
        return outcome

    async def _submit_report_with_retry(self, result: Result, report_id: str) -> Report:
        max_attempts = max(1, self.settings.report_max_attempts)
        delay = self.settings.report_retry_delay

        for attempt in range(1, max_attempts + 1):
            try:
                return await asyncio.wait_for(
                    self.report_service.submit_report(self.exam.id, self.user_id, result, report_id=report_id),
                    timeout=self.settings.report_timeout
                )
            except asyncio.TimeoutError as e:
                error = e
                reason = f"timed out after {self.settings.report_timeout}s"
            except Exception as e:
                error = e
                reason = str(e) or type(e).__name__

            if attempt == max_attempts:
                raise ReportSubmissionError(
                    f"Report submission failed after {max_attempts} attempts: {reason}"
                ) from error

            self.logger.warning(
                f"Report submission attempt {attempt}/{max_attempts} failed for session "
                f"{self.session_key} ({reason}), retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
            delay *= 2

    async def _notify_finalized(self, outcome: Dict[str, Any]) -> None:
        if self._on_finalized is None:
            return
        try:
            await self._on_finalized(self, outcome)
        except Exception as e:
            self.logger.error(f"Finalize listener failed for session {self.session_key}: {e}")

    # ------------------------------------------------------------------
    # Timer and autosave callbacks
    # ------------------------------------------------------------------

    async def _handle_tick(self, remaining: int) -> None:
        if self._phase is not Phase.QUESTIONS or self._finalizing or self._attempt is None:
            return
        self._attempt.seconds_remaining = min(self._attempt.seconds_remaining, remaining)
        if self._on_tick is not None:
            try:
                await self._on_tick(self, self._attempt.seconds_remaining)
            except Exception as e:
                self.logger.error(f"Tick listener failed for session {self.session_key}: {e}")

    async def _handle_expiry(self) -> None:
        outcome = await self._finalize("timer_expiry")
        if not outcome['success'] and outcome['error'] is ErrorCode.REPORT_SUBMISSION_FAILED:
            self.logger.error(
                f"Automatic submission failed for session {self.session_key}; waiting for a manual retry"
            )

    def _start_autosave(self) -> None:
        self._stop_autosave()
        self._autosave_task = asyncio.get_running_loop().create_task(self._autosave_loop())

    def _stop_autosave(self) -> None:
        task = self._autosave_task
        self._autosave_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.autosave_interval)
            if self._phase is not Phase.QUESTIONS or self._finalizing or self.awaiting_retry:
                return
            taken = self._take_snapshot()
            if taken is not None:
                # Disk writes run off the event loop so ticks and submits are not delayed
                await asyncio.to_thread(self._write_snapshot, *taken, "interval")

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _take_snapshot(self) -> Optional[Tuple[int, PersistedSnapshot]]:
        if self._attempt is None:
            return None
        self._sync_remaining()
        self._save_generation += 1
        return self._save_generation, PersistedSnapshot.from_attempt(self._attempt, self._clock())

    def _write_snapshot(self, generation: int, snapshot: PersistedSnapshot, reason: str) -> bool:
        """
        Write a snapshot unless a newer save or a clear has been issued since it
        was taken. Failures are logged and reported as False.
        """
        with self._save_lock:
            if generation != self._save_generation:
                self.logger.debug(f"Autosave ({reason}) superseded for session {self.session_key}")
                return False
            try:
                self.snapshot_store.save(self.exam.id, self.user_id, snapshot)
            except PersistenceError as e:
                self.logger.warning(
                    f"Autosave ({reason}) failed for session {self.session_key}: {e}",
                    extra={'event_type': 'autosave_failed', 'error_code': ErrorCode.PERSISTENCE_WRITE_FAILED.value}
                )
                return False
            self.last_saved_at = snapshot.saved_at_epoch_millis
        self.logger.debug(f"Autosave ({reason}) written for session {self.session_key}")
        return True

    def _save_snapshot(self, reason: str) -> bool:
        """Write the current attempt synchronously."""
        taken = self._take_snapshot()
        if taken is None:
            return False
        return self._write_snapshot(*taken, reason)

    def _clear_snapshot(self) -> bool:
        # Bumping the generation drops any autosave still being written
        self._save_generation += 1
        try:
            with self._save_lock:
                self.snapshot_store.clear(self.exam.id, self.user_id)
            return True
        except PersistenceError as e:
            self.logger.error(
                f"Could not clear snapshot for finalized session {self.session_key}: {e}",
                extra={'event_type': 'snapshot_clear_failed', 'error_code': ErrorCode.PERSISTENCE_WRITE_FAILED.value}
            )
            return False

    def _enter_instructions(self, offer_recovery: bool) -> None:
        self._phase = Phase.INSTRUCTIONS
        self._recovery_offer = self._load_recovery_offer() if offer_recovery else None
        self._touch()

    def _load_recovery_offer(self) -> Optional[PersistedSnapshot]:
        try:
            snapshot = self.snapshot_store.load(self.exam.id, self.user_id)
        except PersistenceError as e:
            self.logger.warning(f"Could not load snapshot for session {self.session_key}: {e}")
            return None

        if snapshot is None:
            return None

        age = self._clock() - snapshot.saved_at_epoch_millis
        if age < 0 or age >= self.settings.recovery_window_millis:
            self.logger.info(
                f"Ignoring snapshot for session {self.session_key} saved {age / 3_600_000:.1f}h ago"
            )
            return None

        self.logger.info(f"Recovery available for session {self.session_key}")
        return snapshot

    def _restore_attempt(self, snapshot: PersistedSnapshot) -> AttemptState:
        """Rebuild attempt state from a snapshot, dropping anything that does not fit this exam."""
        questions = self.exam.questions
        selected = {
            index: key
            for index, key in snapshot.selected_options.items()
            if 0 <= index < len(questions) and key in questions[index].options
        }
        marked = {index for index in snapshot.marked_for_review if 0 <= index < len(questions)}
        current_index = snapshot.current_index if 0 <= snapshot.current_index < len(questions) else 0

        seconds_remaining = self.exam.duration
        if snapshot.seconds_remaining < self.exam.duration:
            seconds_remaining = snapshot.seconds_remaining
        else:
            self.logger.warning(
                f"Snapshot for session {self.session_key} claims {snapshot.seconds_remaining}s "
                f"of a {self.exam.duration}s exam; using the full duration"
            )

        return AttemptState(
            seconds_remaining=seconds_remaining,
            selected_options=selected,
            marked_for_review=marked,
            current_index=current_index
        )

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _check_mutable(self, operation: str) -> Optional[Dict[str, Any]]:
        if self._phase is not Phase.QUESTIONS or self._attempt is None:
            return self._phase_error(operation)
        if self._finalizing or self.awaiting_retry:
            return failure(
                ErrorCode.INVALID_PHASE_TRANSITION,
                "Answers can no longer be changed; submit the attempt again"
            )
        return None

    def _valid_index(self, question_index: Any) -> bool:
        return (
            isinstance(question_index, int)
            and not isinstance(question_index, bool)
            and 0 <= question_index < self.exam.question_count
        )

    def _index_error(self, question_index: Any) -> Dict[str, Any]:
        return failure(
            ErrorCode.INDEX_OUT_OF_RANGE,
            f"Question index {question_index} is out of range (0-{self.exam.question_count - 1})"
        )

    def _phase_error(self, operation: str) -> Dict[str, Any]:
        self.logger.debug(f"Rejected {operation} in phase {self._phase.value} for session {self.session_key}")
        return failure(
            ErrorCode.INVALID_PHASE_TRANSITION,
            f"Cannot {operation.replace('_', ' ')} during the {self._phase.value} phase",
            phase=self._phase
        )

    def _sync_remaining(self) -> None:
        if self._attempt is not None and self._timer.remaining_time < self._attempt.seconds_remaining:
            self._attempt.seconds_remaining = self._timer.remaining_time

    def _touch(self) -> None:
        self.last_activity = datetime.now()

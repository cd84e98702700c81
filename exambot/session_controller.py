"""
Exam session controller.
Keeps the live exam sessions, gates entry on registration and payment, and
turns session failures into user-facing messages.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta

from .config_manager import ConfigManager
from .data_manager import DataManager
from .errors import ErrorCode, ExamNotFoundError, failure
from .exam_engine import format_time, timer_status
from .exam_session import ExamSession
from .models import Phase
from .report_service import ReportService
from .snapshot_store import SnapshotStore


class SessionController:
    """
    Orchestrates exam sessions for many users.

    Each user has at most one live session at a time. Sessions are keyed by
    (exam id, user id) and created only after the exam service confirms the
    user may enter.
    """

    def __init__(
        self,
        data_manager: DataManager,
        snapshot_store: SnapshotStore,
        report_service: ReportService,
        config_manager: ConfigManager,
        tick_interval: float = 1.0,
        clock: Optional[Callable[[], int]] = None,
        on_tick: Optional[Callable[[ExamSession, int], Awaitable[None]]] = None,
        on_finalized: Optional[Callable[[ExamSession, Dict[str, Any]], Awaitable[None]]] = None
    ):
        """
        Initialize the controller.

        Args:
            data_manager: Exam catalog used for fetch_exam and check_access
            snapshot_store: Autosave storage shared by all sessions
            report_service: Report ledger shared by all sessions
            config_manager: Source of engine settings
            tick_interval: Seconds between countdown ticks
            clock: Wall clock in epoch milliseconds, for snapshot timestamps
            on_tick: Passed to every session, awaited after each tick
            on_finalized: Passed to every session, awaited after each finalize
        """
        self.logger = logging.getLogger(__name__)
        self.data_manager = data_manager
        self.snapshot_store = snapshot_store
        self.report_service = report_service
        self.config_manager = config_manager
        self._tick_interval = tick_interval
        self._clock = clock
        self._on_tick = on_tick
        self._on_finalized = on_finalized

        self._sessions: Dict[Tuple[str, str], ExamSession] = {}
        self._user_exams: Dict[str, str] = {}

        # Error tracking
        self._session_errors: Dict[str, List[str]] = {}
        self._session_ttl = timedelta(hours=1)
        self._cleanup_interval = timedelta(minutes=10)
        self._last_cleanup = datetime.now()

        self.logger.info("SessionController initialized")

    # ------------------------------------------------------------------
    # Session registry
    # ------------------------------------------------------------------

    def get_session(self, exam_id: str, user_id: str) -> Optional[ExamSession]:
        return self._sessions.get((exam_id, str(user_id)))

    def get_user_session(self, user_id: str) -> Optional[ExamSession]:
        """Get the session a user is currently working in."""
        user_id = str(user_id)
        exam_id = self._user_exams.get(user_id)
        if exam_id is None:
            return None
        return self._sessions.get((exam_id, user_id))

    def get_active_sessions(self) -> List[ExamSession]:
        return list(self._sessions.values())

    def start_exam(self, exam_id: str, user_id: str) -> Dict[str, Any]:
        """
        Open an exam session in the auth phase.

        Args:
            exam_id: Exam to take
            user_id: User taking it

        Returns:
            Operation result with the session on success
        """
        user_id = str(user_id)
        self._periodic_cleanup()

        current = self.get_user_session(user_id)
        if current is not None and current.phase is Phase.QUESTIONS:
            if current.exam.id == exam_id:
                return {'success': True, 'session': current, 'phase': current.phase, 'resumed_existing': True}
            return self._record_failure(user_id, failure(
                ErrorCode.INVALID_PHASE_TRANSITION,
                f"Exam '{current.exam.id}' is still in progress; submit or exit it first"
            ))

        try:
            access = self.data_manager.check_access(exam_id, user_id)
            exam = self.data_manager.fetch_exam(exam_id)
        except ExamNotFoundError as e:
            return self._record_failure(user_id, failure(ErrorCode.EXAM_NOT_FOUND, str(e)))

        if not access.is_registered or not access.access_code_valid:
            self.logger.info(f"User {user_id} is not registered for exam {exam_id}")
            return self._record_failure(user_id, failure(
                ErrorCode.ACCESS_DENIED, f"User is not registered for exam '{exam_id}'"
            ))

        if not access.payment_satisfied:
            self.logger.info(
                f"User {user_id} blocked from paid exam {exam_id} (payment {access.payment_status.value})"
            )
            return self._record_failure(user_id, failure(
                ErrorCode.PAYMENT_REQUIRED,
                f"Payment for exam '{exam_id}' is {access.payment_status.value}",
                payment_status=access.payment_status
            ))

        if current is not None:
            self.end_session(user_id)

        session = ExamSession(
            exam=exam,
            user_id=user_id,
            snapshot_store=self.snapshot_store,
            report_service=self.report_service,
            settings=self.config_manager.get_engine_settings(),
            clock=self._clock,
            tick_interval=self._tick_interval,
            on_tick=self._on_tick,
            on_finalized=self._on_finalized
        )
        self._sessions[(exam_id, user_id)] = session
        self._user_exams[user_id] = exam_id
        self._session_errors.pop(user_id, None)

        self.logger.info(f"Created exam session for user {user_id}: exam='{exam_id}'")
        return {'success': True, 'session': session, 'phase': session.phase, 'resumed_existing': False}

    def end_session(self, user_id: str) -> bool:
        """
        Drop a user's session. An attempt in progress is suspended first so it stays resumable.

        Returns:
            True if a session was removed
        """
        user_id = str(user_id)
        session = self.get_user_session(user_id)
        if session is None:
            return False

        if session.phase is Phase.QUESTIONS and not session.is_finalizing:
            session.exit()
        session.close()

        del self._sessions[(session.exam.id, user_id)]
        del self._user_exams[user_id]
        self.logger.info(f"Removed exam session for user {user_id}: exam='{session.exam.id}'")
        return True

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def _dispatch(self, user_id: str, operation: str, call: Callable[[ExamSession], Dict[str, Any]]) -> Dict[str, Any]:
        user_id = str(user_id)
        session = self.get_user_session(user_id)
        if session is None:
            return self._record_failure(user_id, failure(
                ErrorCode.SESSION_NOT_FOUND, "No exam in progress"
            ))

        result = call(session)
        if not result['success']:
            self.logger.debug(f"{operation} rejected for user {user_id}: {result['error'].value}")
            return self._record_failure(user_id, result)
        return result

    def verify_access(self, user_id: str, code: str) -> Dict[str, Any]:
        return self._dispatch(user_id, "verify_access", lambda session: session.verify_access(code))

    def acknowledge_instructions(self, user_id: str, agreed: bool, resume: bool = True) -> Dict[str, Any]:
        return self._dispatch(
            user_id, "acknowledge_instructions",
            lambda session: session.acknowledge_instructions(agreed, resume=resume)
        )

    def select_option(self, user_id: str, question_index: int, option_key: str) -> Dict[str, Any]:
        return self._dispatch(
            user_id, "select_option",
            lambda session: session.select_option(question_index, option_key)
        )

    def toggle_review(self, user_id: str, question_index: int) -> Dict[str, Any]:
        return self._dispatch(user_id, "toggle_review", lambda session: session.toggle_review(question_index))

    def navigate(self, user_id: str, question_index: int) -> Dict[str, Any]:
        return self._dispatch(user_id, "navigate", lambda session: session.navigate(question_index))

    def exit_exam(self, user_id: str) -> Dict[str, Any]:
        return self._dispatch(user_id, "exit", lambda session: session.exit())

    def open_review(self, user_id: str) -> Dict[str, Any]:
        return self._dispatch(user_id, "open_review", lambda session: session.open_review())

    def retake(self, user_id: str) -> Dict[str, Any]:
        return self._dispatch(user_id, "retake", lambda session: session.retake())

    async def submit(self, user_id: str) -> Dict[str, Any]:
        """Submit the user's attempt for grading."""
        user_id = str(user_id)
        session = self.get_user_session(user_id)
        if session is None:
            return self._record_failure(user_id, failure(
                ErrorCode.SESSION_NOT_FOUND, "No exam in progress"
            ))

        result = await session.submit()
        if not result['success']:
            return self._record_failure(user_id, result)
        return result

    def revalidate_access(self, user_id: str) -> Dict[str, Any]:
        """
        Re-check registration and payment for a user's live session.

        An attempt in progress whose payment is no longer completed is
        suspended: the snapshot is saved, the timer stops and no report is
        written. It can be resumed once payment is completed.

        Returns:
            {'success': True, 'suspended': bool} or a failure
        """
        user_id = str(user_id)
        session = self.get_user_session(user_id)
        if session is None:
            return self._record_failure(user_id, failure(
                ErrorCode.SESSION_NOT_FOUND, "No exam in progress"
            ))

        try:
            access = self.data_manager.check_access(session.exam.id, user_id)
        except ExamNotFoundError as e:
            return self._record_failure(user_id, failure(ErrorCode.EXAM_NOT_FOUND, str(e)))

        if access.may_enter:
            return {'success': True, 'suspended': False}

        suspended = False
        if session.phase is Phase.QUESTIONS and not session.is_finalizing:
            suspended = session.exit()['success']
            self.logger.warning(
                f"Suspended exam {session.exam.id} for user {user_id}: access revoked "
                f"(payment {access.payment_status.value})"
            )
        code = ErrorCode.PAYMENT_REQUIRED if not access.payment_satisfied else ErrorCode.ACCESS_DENIED
        return self._record_failure(user_id, failure(
            code, "Access to this exam is no longer valid", suspended=suspended
        ))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def flush_all(self) -> int:
        """
        Best-effort save of every attempt in progress. Never raises.

        Returns:
            Number of snapshots written
        """
        saved = 0
        for session in list(self._sessions.values()):
            if session.flush():
                saved += 1
        if saved:
            self.logger.info(f"Flushed {saved} in-progress attempts")
        return saved

    def shutdown(self) -> int:
        """Flush every attempt in progress and stop all timers."""
        saved = self.flush_all()
        for session in self._sessions.values():
            session.close()
        return saved

    def cleanup_inactive_sessions(self) -> int:
        """
        Remove sessions that are not in progress and have been idle past the session TTL.

        Returns:
            Number of sessions cleaned up
        """
        cutoff = datetime.now() - self._session_ttl
        stale_users = [
            user_id for (exam_id, user_id), session in self._sessions.items()
            if session.phase is not Phase.QUESTIONS and session.last_activity < cutoff
        ]
        for user_id in stale_users:
            self.end_session(user_id)

        if stale_users:
            self.logger.info(f"Cleaned up {len(stale_users)} inactive sessions")
        return len(stale_users)

    def _periodic_cleanup(self) -> None:
        now = datetime.now()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self.cleanup_inactive_sessions()
        for user_id in list(self._session_errors.keys()):
            self._session_errors[user_id] = self._session_errors[user_id][-10:]
        self._last_cleanup = now

    # ------------------------------------------------------------------
    # Error reporting
    # ------------------------------------------------------------------

    def _record_failure(self, user_id: str, result: Dict[str, Any]) -> Dict[str, Any]:
        code = result['error']
        self._session_errors.setdefault(user_id, []).append(f"{code.value}: {result['message']}")
        result['user_message'] = self.get_user_friendly_error_message(code, result['message'])
        return result

    def get_user_friendly_error_message(self, code: ErrorCode, detail: str = "") -> str:
        """
        Generate user-friendly error messages.

        Args:
            code: Error code of the failed operation
            detail: Operation-specific message

        Returns:
            User-friendly error message
        """
        messages = {
            ErrorCode.INVALID_ACCESS_CODE: "❌ Incorrect exam code. Please check the code you received and try again.",
            ErrorCode.ACKNOWLEDGMENT_REQUIRED: "❌ You must agree to the instructions before starting the exam.",
            ErrorCode.INVALID_OPTION: "❌ That option is not available for this question.",
            ErrorCode.INDEX_OUT_OF_RANGE: "❌ There is no question with that number.",
            ErrorCode.REPORT_SUBMISSION_FAILED: "❌ Your answers could not be submitted. Use `/submit` to try again.",
            ErrorCode.PERSISTENCE_WRITE_FAILED: "⚠️ Your progress could not be saved.",
            ErrorCode.ACCESS_DENIED: "❌ You are not registered for this exam.",
            ErrorCode.PAYMENT_REQUIRED: "❌ Payment for this exam has not been completed.",
            ErrorCode.EXAM_NOT_FOUND: "❌ Exam not found. Use `/exams` to list available exams.",
            ErrorCode.SESSION_NOT_FOUND: "❌ You have no exam in progress. Start one with `/exam_start`.",
        }
        if code is ErrorCode.INVALID_PHASE_TRANSITION:
            return f"❌ {detail}" if detail else "❌ That action is not available right now."
        return messages.get(code, f"❌ An unexpected error occurred: {detail}")

    def get_error_summary(self, user_id: str) -> Dict[str, Any]:
        errors = self._session_errors.get(str(user_id), [])
        return {
            'error_count': len(errors),
            'recent_errors': errors[-5:]
        }

    def get_session_status_summary(self, user_id: str) -> str:
        """
        Get a human-readable summary of the user's session.

        Returns:
            Formatted string describing the session status
        """
        session = self.get_user_session(user_id)
        if session is None:
            return "No exam in progress."

        status_parts = [f"Exam: {session.exam.name}", f"Phase: {session.phase.value}"]

        if session.phase is Phase.QUESTIONS:
            progress = session.progress()
            status_parts.append(f"Question: {progress['current_index'] + 1}/{progress['total_questions']}")
            status_parts.append(f"Answered: {progress['answered']}")
            status_parts.append(f"Marked: {progress['marked_for_review']}")
            status_parts.append(
                f"Time left: {format_time(progress['seconds_remaining'])} "
                f"({timer_status(progress['seconds_remaining'], session.exam.duration)})"
            )
            last_saved = session.describe_last_saved()
            if last_saved:
                status_parts.append(f"Saved: {last_saved}")
        elif session.result is not None:
            status_parts.append(f"Verdict: {session.result.verdict.value}")

        return " | ".join(status_parts)

"""
Unit tests for grading and the exam countdown timer.
"""
import unittest
import asyncio
import logging
from unittest.mock import AsyncMock, Mock

from exambot.exam_engine import ExamTimer, format_time, grade, log_timer_event, score_summary, timer_status
from exambot.models import Question, Verdict
from tests.test_fixtures import TestFixtures, AsyncTestHelpers


class TestGrading(unittest.TestCase):
    """Test cases for the grading function."""

    def setUp(self):
        self.questions = (
            Question("q1", "First", {"A": "a", "B": "b", "C": "c"}, "A"),
            Question("q2", "Second", {"A": "a", "B": "b", "C": "c"}, "C"),
        )

    def test_one_right_one_wrong_passes_with_one_mark(self):
        result = grade(self.questions, {0: "A", 1: "B"}, passing_marks=1)

        self.assertEqual(len(result.correct_answers), 1)
        self.assertEqual(len(result.wrong_answers), 1)
        self.assertEqual(result.verdict, Verdict.PASS)
        self.assertEqual(result.correct_answers[0].id, "q1")
        self.assertEqual(result.wrong_answers[0].id, "q2")

    def test_tie_at_passing_marks_passes(self):
        result = grade(self.questions, {0: "A", 1: "C"}, passing_marks=2)
        self.assertEqual(result.verdict, Verdict.PASS)

    def test_below_passing_marks_fails(self):
        result = grade(self.questions, {0: "A"}, passing_marks=2)
        self.assertEqual(result.verdict, Verdict.FAIL)

    def test_unanswered_questions_are_wrong(self):
        result = grade(self.questions, {}, passing_marks=1)
        self.assertEqual(len(result.correct_answers), 0)
        self.assertEqual(len(result.wrong_answers), 2)
        self.assertEqual(result.verdict, Verdict.FAIL)

    def test_zero_passing_marks_always_passes(self):
        result = grade(self.questions, {}, passing_marks=0)
        self.assertEqual(result.verdict, Verdict.PASS)

    def test_grading_is_repeatable(self):
        selections = {0: "B", 1: "C"}
        first = grade(self.questions, selections, passing_marks=1)
        second = grade(self.questions, selections, passing_marks=1)
        self.assertEqual(first, second)
        self.assertEqual(selections, {0: "B", 1: "C"})

    def test_score_summary(self):
        result = grade(TestFixtures.create_sample_questions(), {0: "B", 1: "A"}, passing_marks=2)
        summary = score_summary(result, total_marks=30)

        self.assertEqual(summary['correct'], 2)
        self.assertEqual(summary['wrong'], 1)
        self.assertEqual(summary['total_questions'], 3)
        self.assertEqual(summary['percentage'], 66.7)
        self.assertEqual(summary['verdict'], "Pass")
        self.assertEqual(summary['obtained_marks'], 20)
        self.assertEqual(summary['total_marks'], 30)

    def test_score_summary_without_marks(self):
        result = grade(TestFixtures.create_sample_questions(), {}, passing_marks=1)
        self.assertNotIn('total_marks', score_summary(result))


class TestTimeFormatting(unittest.TestCase):

    def test_format_time(self):
        self.assertEqual(format_time(0), "00:00")
        self.assertEqual(format_time(65), "01:05")
        self.assertEqual(format_time(3600), "60:00")
        self.assertEqual(format_time(-5), "00:00")

    def test_timer_status_thresholds(self):
        self.assertEqual(timer_status(600, 600), "normal")
        self.assertEqual(timer_status(151, 600), "normal")
        self.assertEqual(timer_status(150, 600), "warning")
        self.assertEqual(timer_status(61, 600), "warning")
        self.assertEqual(timer_status(60, 600), "critical")
        self.assertEqual(timer_status(0, 600), "critical")


class TestTimerEventLogging(unittest.TestCase):
    """Test cases for structured timer event logs."""

    def test_event_fields_in_message_and_extras(self):
        with self.assertLogs("exambot.exam_engine", level="INFO") as logs:
            log_timer_event("exam_e1_u1", "START", duration=600)

        record = logs.records[0]
        self.assertEqual(record.getMessage(), "Timer START [exam_e1_u1] duration=600")
        self.assertEqual(record.event_type, "timer_start")
        self.assertEqual(record.session_key, "exam_e1_u1")
        self.assertEqual(record.timer_fields, {'duration': 600})

    def test_level_is_respected(self):
        with self.assertLogs("exambot.exam_engine", level="DEBUG") as logs:
            log_timer_event("exam_e1_u1", "TICK", logging.DEBUG, remaining=5)

        self.assertEqual(logs.records[0].levelno, logging.DEBUG)


class TestExamTimer(unittest.IsolatedAsyncioTestCase):
    """Test cases for the countdown timer."""

    def setUp(self):
        self.timer = ExamTimer("exam_test_user", tick_interval=0.001)
        self.ticks = []
        self.expiry = AsyncMock()

    async def _tick(self, remaining):
        self.ticks.append(remaining)

    async def test_ticks_down_and_expires_once(self):
        self.timer.start(3, self._tick, self.expiry)
        self.assertTrue(self.timer.is_running)

        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertEqual(self.ticks, [2, 1, 0])
        self.expiry.assert_awaited_once()
        self.assertTrue(self.timer.is_expired)
        self.assertFalse(self.timer.is_running)
        self.assertEqual(self.timer.remaining_time, 0)

    async def test_sync_callbacks_are_supported(self):
        tick = Mock()
        expiry = Mock()
        self.timer.start(2, tick, expiry)
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertEqual(tick.call_count, 2)
        expiry.assert_called_once_with()

    async def test_zero_duration_expires_without_ticks(self):
        self.timer.start(0, self._tick, self.expiry)
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertEqual(self.ticks, [])
        self.expiry.assert_awaited_once()

    async def test_stop_is_idempotent(self):
        self.timer.start(1000, self._tick, self.expiry)

        self.assertTrue(self.timer.stop())
        self.assertFalse(self.timer.stop())
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertTrue(self.timer.is_cancelled)
        self.assertFalse(self.timer.is_running)
        self.expiry.assert_not_awaited()

    async def test_stop_after_expiry_is_safe(self):
        self.timer.start(1, self._tick, self.expiry)
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertFalse(self.timer.stop())
        self.expiry.assert_awaited_once()

    async def test_no_ticks_after_stop(self):
        self.timer.start(1000, self._tick, self.expiry)
        await AsyncTestHelpers.wait_until(lambda: len(self.ticks) >= 2)

        self.timer.stop()
        ticks_at_stop = len(self.ticks)
        await asyncio.sleep(0.02)

        self.assertEqual(len(self.ticks), ticks_at_stop)

    async def test_restart_replaces_running_countdown(self):
        first_expiry = AsyncMock()
        self.timer.start(1000, self._tick, first_expiry)
        first_task = self.timer._task

        self.timer.start(2, self._tick, self.expiry)
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertTrue(first_task.cancelled() or first_task.done())
        first_expiry.assert_not_awaited()
        self.expiry.assert_awaited_once()

    async def test_expiry_callback_may_stop_its_own_timer(self):
        completed = []

        async def on_expiry():
            self.timer.stop()
            await asyncio.sleep(0)
            completed.append(True)

        self.timer.start(1, self._tick, on_expiry)
        await AsyncTestHelpers.run_with_timeout(self.timer.wait())

        self.assertEqual(completed, [True])

    async def test_negative_duration_rejected(self):
        with self.assertRaises(ValueError):
            self.timer.start(-1, self._tick, self.expiry)
        self.assertFalse(self.timer.is_running)

    async def test_get_status(self):
        self.timer.start(5, self._tick, self.expiry)
        status = self.timer.get_status()
        self.timer.stop()

        self.assertEqual(status['total_duration'], 5)
        self.assertTrue(status['is_running'])
        self.assertFalse(status['is_expired'])


class TestExamTimerWithoutLoop(unittest.TestCase):

    def test_start_requires_running_loop(self):
        timer = ExamTimer("exam_test_user")
        with self.assertRaises(RuntimeError):
            timer.start(10, Mock(), Mock())


if __name__ == '__main__':
    unittest.main()

"""
Unit tests for Discord bot command handlers and API interactions.
"""
import unittest
import shutil
import tempfile
from unittest.mock import Mock, AsyncMock, patch
import discord
from discord.ext import commands

from exambot.bot import ExamBot
from exambot.config_manager import ConfigManager
from exambot.data_manager import DataManager
from exambot.errors import ReportSubmissionError
from exambot.models import Phase, PaymentStatus
from exambot.report_service import InMemoryReportService
from exambot.session_controller import SessionController
from exambot.snapshot_store import InMemorySnapshotStore
from tests.test_fixtures import MockDiscordObjects, TestFixtures


class TestDiscordBotIntegration(unittest.IsolatedAsyncioTestCase):
    """Test Discord command handlers with mocked interactions."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        TestFixtures.create_temp_exam_files(self.temp_dir)

        self.bot = ExamBot({'bot': {'command_prefix': '?'}})
        self.bot.config_manager = ConfigManager()
        self.bot.data_manager = DataManager(self.temp_dir)
        self.bot.data_manager.load_exam_files()
        self.reports = InMemoryReportService()
        self.store = InMemorySnapshotStore()
        self.bot.session_controller = SessionController(
            self.bot.data_manager,
            self.store,
            self.reports,
            self.bot.config_manager,
            tick_interval=60.0,
            on_finalized=self.bot.on_attempt_finalized
        )

    async def asyncTearDown(self):
        self.bot.session_controller.shutdown()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def interaction(self, user_id: int = 100):
        return MockDiscordObjects.create_mock_interaction(channel_id=555, user_id=user_id)

    def sent_embed(self, interaction) -> discord.Embed:
        call_args = interaction.response.send_message.call_args
        self.assertTrue(call_args[1].get('ephemeral', False))
        return call_args[1]['embed']

    async def start_questions(self, user_id: int = 100, exam_id: str = "geo"):
        await self.bot.handle_exam_start(self.interaction(user_id), exam_id)
        await self.bot.handle_exam_code(self.interaction(user_id), "GEO-1")
        await self.bot.handle_exam_agree(self.interaction(user_id), True)

    async def test_help_command(self):
        interaction = self.interaction()

        await self.bot.handle_help(interaction)

        embed = self.sent_embed(interaction)
        self.assertIn("Exam Bot Commands", embed.title)
        self.assertTrue(any("Settings" in field.name for field in embed.fields))

    async def test_help_command_with_discord_error(self):
        interaction = self.interaction()
        interaction.response.send_message.side_effect = discord.HTTPException(Mock(), "API Error")

        await self.bot.handle_help(interaction)

        interaction.response.send_message.assert_called()

    async def test_exams_command_lists_exams(self):
        interaction = self.interaction()

        await self.bot.handle_exams(interaction)

        embed = self.sent_embed(interaction)
        names = " ".join(field.name for field in embed.fields)
        self.assertIn("`geo`", names)
        self.assertIn("`paid`", names)
        self.assertIn("could not be loaded", embed.footer.text)

    async def test_exam_start_asks_for_code(self):
        interaction = self.interaction()

        await self.bot.handle_exam_start(interaction, "geo")

        embed = self.sent_embed(interaction)
        self.assertIn("Access Code Required", embed.title)
        self.assertIs(self.bot.session_controller.get_user_session("100").phase, Phase.AUTH)

    async def test_exam_start_blocked_without_payment(self):
        interaction = self.interaction(user_id=200)

        await self.bot.handle_exam_start(interaction, "paid")

        embed = self.sent_embed(interaction)
        self.assertIn("Cannot Start Exam", embed.title)
        self.assertIn("Payment", embed.description)

    async def test_wrong_code_reports_error(self):
        await self.bot.handle_exam_start(self.interaction(), "geo")
        interaction = self.interaction()

        await self.bot.handle_exam_code(interaction, "nope")

        self.assertIn("Access Denied", self.sent_embed(interaction).title)

    async def test_code_shows_instructions(self):
        await self.bot.handle_exam_start(self.interaction(), "geo")
        interaction = self.interaction()

        await self.bot.handle_exam_code(interaction, "GEO-1")

        embed = self.sent_embed(interaction)
        self.assertIn("Instructions", embed.title)
        self.assertIn("02:00", embed.description)

    async def test_agree_shows_first_question(self):
        await self.bot.handle_exam_start(self.interaction(), "geo")
        await self.bot.handle_exam_code(self.interaction(), "GEO-1")
        interaction = self.interaction()

        await self.bot.handle_exam_agree(interaction, True)

        embed = self.sent_embed(interaction)
        self.assertEqual(embed.title, "Question 1/2")
        self.assertIn("capital of Japan", embed.description)

    async def test_answer_and_mark(self):
        await self.start_questions()
        answer = self.interaction()
        mark = self.interaction()

        await self.bot.handle_answer(answer, 2, " a ")
        await self.bot.handle_mark(mark, 2)

        session = self.bot.session_controller.get_user_session("100")
        self.assertEqual(session.selected_options, {1: "A"})
        self.assertEqual(session.marked_for_review, {1})
        self.assertEqual(self.sent_embed(answer).title, "Question 2/2")
        self.assertIn("marked for review", self.sent_embed(mark).description)

    async def test_invalid_answer_reports_error(self):
        await self.start_questions()
        interaction = self.interaction()

        await self.bot.handle_answer(interaction, 2, "D")

        self.assertIn("Answer Not Saved", self.sent_embed(interaction).title)

    async def test_question_navigation_out_of_range(self):
        await self.start_questions()
        interaction = self.interaction()

        await self.bot.handle_question(interaction, 9)

        self.assertIn("Navigation Error", self.sent_embed(interaction).title)

    async def test_submit_sends_result(self):
        await self.start_questions()
        await self.bot.handle_answer(self.interaction(), 1, "B")
        interaction = self.interaction()

        await self.bot.handle_submit(interaction)

        interaction.response.defer.assert_awaited_once()
        embed = interaction.followup.send.call_args[1]['embed']
        self.assertIn("Pass", embed.title)
        self.assertEqual(len(self.reports.reports), 1)

    async def test_review_and_retake_after_submit(self):
        await self.start_questions()
        await self.bot.handle_submit(self.interaction())
        review = self.interaction()
        retake = self.interaction()

        await self.bot.handle_review(review)
        await self.bot.handle_retake(retake)

        self.assertIn("Answer Review", self.sent_embed(review).title)
        self.assertIn("Instructions", self.sent_embed(retake).title)

    async def test_exit_saves_progress(self):
        await self.start_questions()
        interaction = self.interaction()

        await self.bot.handle_exit(interaction)

        self.assertIn("Exam Paused", self.sent_embed(interaction).title)
        self.assertIsNotNone(self.store.load("geo", "100"))

    async def test_exam_status_without_session(self):
        interaction = self.interaction()

        await self.bot.handle_exam_status(interaction)

        self.assertIn("No Active Exam", self.sent_embed(interaction).title)

    async def test_revoked_payment_suspends_on_next_command(self):
        await self.start_questions(exam_id="paid")
        self.bot.data_manager.set_payment_status("paid", "100", PaymentStatus.FAILED)
        interaction = self.interaction()

        await self.bot.handle_answer(interaction, 1, "B")

        embed = self.sent_embed(interaction)
        self.assertIn("Exam Suspended", embed.title)
        self.assertIn("progress was saved", embed.description)
        self.assertIs(self.bot.session_controller.get_user_session("100").phase, Phase.AUTH)

    async def test_timer_expiry_result_posted_to_channel(self):
        await self.start_questions()
        session = self.bot.session_controller.get_user_session("100")
        channel = MockDiscordObjects.create_mock_channel(555)

        with patch.object(self.bot, 'get_channel', return_value=channel) as get_channel:
            await session._handle_expiry()

        get_channel.assert_called_once_with(555)
        channel.send.assert_awaited_once()
        self.assertIn("<@100>", channel.send.call_args[1]['content'])

    async def test_failed_automatic_submission_prompts_retry(self):
        self.assertTrue(self.bot.config_manager.set_report_retry_policy(1, 0)['success'])
        await self.start_questions()
        session = self.bot.session_controller.get_user_session("100")
        channel = MockDiscordObjects.create_mock_channel(555)

        with patch.object(self.reports, 'submit_report', AsyncMock(side_effect=ReportSubmissionError("ledger down"))):
            with patch.object(self.bot, 'get_channel', return_value=channel):
                await session._handle_expiry()

        channel.send.assert_awaited_once()
        kwargs = channel.send.call_args[1]
        self.assertIn("could not be recorded", kwargs['content'])
        self.assertIn("/submit", kwargs['embed'].description)
        self.assertTrue(session.awaiting_retry)

        interaction = self.interaction()
        await self.bot.handle_submit(interaction)

        self.assertIn("Fail", interaction.followup.send.call_args[1]['embed'].title)
        self.assertEqual(len(self.reports.reports), 1)

    async def test_manual_submit_not_posted_to_channel(self):
        await self.start_questions()
        channel = MockDiscordObjects.create_mock_channel(555)

        with patch.object(self.bot, 'get_channel', return_value=channel):
            await self.bot.handle_submit(self.interaction())

        channel.send.assert_not_awaited()

    async def test_close_flushes_attempts(self):
        await self.start_questions()

        with patch.object(commands.Bot, 'close', new=AsyncMock()) as parent_close:
            await self.bot.close()

        parent_close.assert_awaited_once()
        self.assertIsNotNone(self.store.load("geo", "100"))

    async def test_error_response_falls_back_to_plain_text(self):
        interaction = self.interaction()
        interaction.response.send_message.side_effect = [
            discord.HTTPException(Mock(), "embed rejected"),
            None
        ]

        await self.bot.send_error_response(interaction, "Something broke", "❌ Error")

        fallback = interaction.response.send_message.call_args_list[1]
        self.assertEqual(fallback[0][0], "❌ Error: Something broke")


class TestBotSetup(unittest.IsolatedAsyncioTestCase):
    """Test bot startup wiring."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    async def test_setup_hook_applies_configuration(self):
        bot = ExamBot({
            'exam': {
                'exam_directory': self.temp_dir,
                'snapshot_directory': f"{self.temp_dir}/snapshots",
                'report_file': f"{self.temp_dir}/reports.jsonl",
                'autosave_interval': 15,
                'recovery_window_hours': 0
            }
        })

        await bot.setup_hook()
        self.addCleanup(bot.session_controller.shutdown)

        self.assertEqual(bot.config_manager.get_autosave_interval(), 15)
        self.assertEqual(bot.config_manager.get_recovery_window_hours(), ConfigManager.DEFAULT_RECOVERY_WINDOW_HOURS)
        self.assertIn("sample", bot.data_manager.get_available_exams())
        self.assertIsNotNone(bot.session_controller)
        command_names = {command.name for command in bot.tree.get_commands()}
        self.assertTrue({"help", "exam_start", "answer", "submit", "retake"} <= command_names)


if __name__ == '__main__':
    unittest.main()

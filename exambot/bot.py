import discord
from discord.ext import commands
import logging
import asyncio
from typing import Any, Dict, Optional
import os
from pathlib import Path

from .data_manager import DataManager
from .config_manager import ConfigManager
from .errors import ErrorCode
from .exam_engine import format_time, timer_status
from .exam_session import ExamSession
from .models import Phase
from .report_service import JsonReportService
from .session_controller import SessionController
from .snapshot_store import JsonFileSnapshotStore

# Set up comprehensive logging
def setup_logging():
    """Set up logging for debugging and monitoring."""
    logs_dir = Path("logs")
    logs_dir.mkdir(exist_ok=True)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(logs_dir / "bot.log", encoding='utf-8'),
        ]
    )

    # Errors also go to their own file
    error_handler = logging.FileHandler(logs_dir / "errors.log", encoding='utf-8')
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    ))
    logging.getLogger().addHandler(error_handler)

    logging.getLogger('discord').setLevel(logging.WARNING)
    logging.getLogger('discord.http').setLevel(logging.WARNING)

    return logging.getLogger(__name__)

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    'normal': 0x00ff00,
    'warning': 0xffaa00,
    'critical': 0xff0000,
}

NAVIGATOR_SYMBOLS = {
    'current': '🔵',
    'marked': '🟣',
    'answered': '🟢',
    'skipped': '🔴',
    'not_visited': '⚪',
}


class ExamBot(commands.Bot):
    """Discord bot for taking timed exams"""

    def __init__(self, config=None):
        intents = discord.Intents.none()
        intents.guilds = True  # Required for slash commands

        command_prefix = '!'
        if config and 'bot' in config:
            command_prefix = config['bot'].get('command_prefix', '!')

        super().__init__(
            command_prefix=command_prefix,
            intents=intents,
            help_command=None
        )

        self.app_config = config or {}

        self.data_manager: Optional[DataManager] = None
        self.config_manager: Optional[ConfigManager] = None
        self.session_controller: Optional[SessionController] = None

        # user id -> channel the attempt was started in
        self._attempt_channels: Dict[str, int] = {}

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager()
            if self.app_config:
                self.apply_configuration()

            self.data_manager = DataManager(self.config_manager.get_exam_directory())
            self.load_exam_data()

            self.session_controller = SessionController(
                data_manager=self.data_manager,
                snapshot_store=JsonFileSnapshotStore(self.config_manager.get_snapshot_directory()),
                report_service=JsonReportService(self.config_manager.get_report_file()),
                config_manager=self.config_manager,
                on_finalized=self.on_attempt_finalized
            )

            await self.setup_commands()

            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    def apply_configuration(self):
        """Apply the 'exam' section of the configuration file."""
        errors = self.config_manager.apply_config(self.app_config.get('exam', {}))
        for error in errors:
            logger.warning(f"Configuration entry ignored: {error}")

        health_check = self.config_manager.get_configuration_health_check()
        for message in health_check['errors'] + health_check['warnings']:
            logger.warning(f"Configuration check: {message}")
        logger.info("Configuration applied")

    def load_exam_data(self):
        """Load exam files from the exam directory"""
        loaded_exams = self.data_manager.load_exam_files()
        logger.info(f"Loaded {len(loaded_exams)} exams from {self.config_manager.get_exam_directory()}")
        if self.data_manager.has_load_errors():
            for error in self.data_manager.get_load_errors():
                logger.warning(f"Exam loading error: {error}")

    async def setup_commands(self):
        """Register all slash commands"""
        @self.tree.command(name="help", description="Display available commands and their descriptions")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        @self.tree.command(name="exams", description="List available exams")
        async def exams_command(interaction: discord.Interaction):
            await self.handle_exams(interaction)

        @self.tree.command(name="exam_start", description="Open an exam you are registered for")
        async def exam_start_command(interaction: discord.Interaction, exam_id: str):
            await self.handle_exam_start(interaction, exam_id)

        @self.tree.command(name="exam_code", description="Enter the access code for the opened exam")
        async def exam_code_command(interaction: discord.Interaction, code: str):
            await self.handle_exam_code(interaction, code)

        @self.tree.command(name="exam_agree", description="Agree to the instructions and start the timer")
        async def exam_agree_command(interaction: discord.Interaction, resume: bool = True):
            await self.handle_exam_agree(interaction, resume)

        @self.tree.command(name="question", description="Show the current question or jump to another one")
        async def question_command(interaction: discord.Interaction, number: Optional[int] = None):
            await self.handle_question(interaction, number)

        @self.tree.command(name="answer", description="Answer a question (A-D)")
        async def answer_command(interaction: discord.Interaction, number: int, option: str):
            await self.handle_answer(interaction, number, option)

        @self.tree.command(name="mark", description="Mark or unmark a question for review")
        async def mark_command(interaction: discord.Interaction, number: int):
            await self.handle_mark(interaction, number)

        @self.tree.command(name="submit", description="Submit your answers for grading")
        async def submit_command(interaction: discord.Interaction):
            await self.handle_submit(interaction)

        @self.tree.command(name="exit", description="Save your progress and leave the exam")
        async def exit_command(interaction: discord.Interaction):
            await self.handle_exit(interaction)

        @self.tree.command(name="exam_status", description="Show your exam progress and time left")
        async def exam_status_command(interaction: discord.Interaction):
            await self.handle_exam_status(interaction)

        @self.tree.command(name="review", description="Review your graded answers")
        async def review_command(interaction: discord.Interaction):
            await self.handle_review(interaction)

        @self.tree.command(name="retake", description="Take the exam again")
        async def retake_command(interaction: discord.Interaction):
            await self.handle_retake(interaction)

        logger.info("Slash commands registered successfully")

    async def on_ready(self):
        """Called when the bot has successfully connected to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        logger.info(f"Bot is in {len(self.guilds)} guilds")
        print(f"🤖 {self.user} is Ready and Online!")

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")

    async def on_error(self, event, *args, **kwargs):
        """Handle general bot errors"""
        logger.error(f"An error occurred in event {event}", exc_info=True)

    async def close(self):
        """Save every attempt in progress before disconnecting."""
        if self.session_controller is not None:
            saved = self.session_controller.shutdown()
            logger.info(f"Saved {saved} in-progress attempts on shutdown")
        await super().close()

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        try:
            embed = discord.Embed(
                title="📝 Exam Bot Commands",
                description="Take timed multiple-choice exams right here in Discord",
                color=0x00ff00
            )
            embed.add_field(
                name="🚪 Getting Started",
                value=(
                    "`/exams` - List available exams\n"
                    "`/exam_start <exam_id>` - Open an exam you are registered for\n"
                    "`/exam_code <code>` - Enter the exam access code\n"
                    "`/exam_agree [resume]` - Accept the instructions and start the timer"
                ),
                inline=False
            )
            embed.add_field(
                name="✏️ During the Exam",
                value=(
                    "`/question [number]` - Show a question\n"
                    "`/answer <number> <option>` - Choose an answer\n"
                    "`/mark <number>` - Mark or unmark for review\n"
                    "`/exam_status` - Progress and time left\n"
                    "`/submit` - Submit for grading\n"
                    "`/exit` - Save and leave; resume within "
                    f"{self.config_manager.get_recovery_window_hours()}h"
                ),
                inline=False
            )
            embed.add_field(
                name="🏁 After Grading",
                value="`/review` - Review your answers\n`/retake` - Take the exam again",
                inline=False
            )
            embed.add_field(
                name="⚙️ Current Settings",
                value=f"```\n{self.config_manager.get_settings_summary()}\n```",
                inline=False
            )
            embed.set_footer(text="Your progress is saved automatically while the timer runs")
            await interaction.response.send_message(embed=embed, ephemeral=True)

        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "help", interaction)

    async def handle_exams(self, interaction: discord.Interaction):
        """Handle /exams command"""
        try:
            exam_ids = self.data_manager.get_available_exams()
            if not exam_ids:
                await self.send_info_response(
                    interaction,
                    "No exams are available yet. Add exam files to the exams directory.",
                    "📚 No Exams"
                )
                return

            embed = discord.Embed(title="📚 Available Exams", color=0x6699ff)
            for exam_id in exam_ids[:25]:
                exam = self.data_manager.fetch_exam(exam_id)
                price = f"💳 {exam.price:.2f}" if exam.is_paid else "Free"
                embed.add_field(
                    name=f"{exam.name} (`{exam.id}`)",
                    value=(
                        f"{exam.question_count} questions | {format_time(exam.duration)} | "
                        f"pass: {exam.passing_marks} | {price}"
                        + (f"\nCategory: {exam.category}" if exam.category else "")
                    ),
                    inline=False
                )
            if self.data_manager.has_load_errors():
                embed.set_footer(text="⚠️ Some exam files could not be loaded")
            await interaction.response.send_message(embed=embed, ephemeral=True)

        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "exams", interaction)

    async def handle_exam_start(self, interaction: discord.Interaction, exam_id: str):
        """Handle /exam_start command"""
        user_id = str(interaction.user.id)
        result = self.session_controller.start_exam(exam_id, user_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Start Exam")
            return

        self._attempt_channels[user_id] = interaction.channel_id
        session = result['session']
        if result['resumed_existing']:
            await self.send_question(interaction, session, "Your exam is already in progress.")
            return

        await self.send_info_response(
            interaction,
            f"**{session.exam.name}** is ready.\nEnter your access code with `/exam_code`.",
            "🔐 Access Code Required"
        )

    async def handle_exam_code(self, interaction: discord.Interaction, code: str):
        """Handle /exam_code command"""
        user_id = str(interaction.user.id)
        result = self.session_controller.verify_access(user_id, code)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Access Denied")
            return

        session = self.session_controller.get_user_session(user_id)
        try:
            await interaction.response.send_message(
                embed=self.build_instructions_embed(session), ephemeral=True
            )
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "exam_code", interaction)

    async def handle_exam_agree(self, interaction: discord.Interaction, resume: bool):
        """Handle /exam_agree command"""
        user_id = str(interaction.user.id)
        result = self.session_controller.acknowledge_instructions(user_id, True, resume=resume)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Start")
            return

        self._attempt_channels[user_id] = interaction.channel_id
        session = self.session_controller.get_user_session(user_id)
        note = "Restored your saved progress." if result['restored'] else "The timer has started. Good luck!"
        await self.send_question(interaction, session, note)

    async def handle_question(self, interaction: discord.Interaction, number: Optional[int]):
        """Handle /question command"""
        user_id = str(interaction.user.id)
        if not await self.ensure_access(interaction, user_id):
            return

        if number is not None:
            result = self.session_controller.navigate(user_id, number - 1)
            if not result['success']:
                await self.send_error_response(interaction, result['user_message'], "❌ Navigation Error")
                return

        session = self.session_controller.get_user_session(user_id)
        if session is None or session.phase is not Phase.QUESTIONS:
            await self.send_error_response(
                interaction,
                self.session_controller.get_user_friendly_error_message(ErrorCode.SESSION_NOT_FOUND),
                "❌ No Exam In Progress"
            )
            return
        await self.send_question(interaction, session)

    async def handle_answer(self, interaction: discord.Interaction, number: int, option: str):
        """Handle /answer command"""
        user_id = str(interaction.user.id)
        if not await self.ensure_access(interaction, user_id):
            return

        result = self.session_controller.select_option(user_id, number - 1, option.strip().upper())
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Answer Not Saved")
            return

        self.session_controller.navigate(user_id, number - 1)
        session = self.session_controller.get_user_session(user_id)
        await self.send_question(interaction, session, f"Answer **{result['option']}** saved for question {number}.")

    async def handle_mark(self, interaction: discord.Interaction, number: int):
        """Handle /mark command"""
        user_id = str(interaction.user.id)
        if not await self.ensure_access(interaction, user_id):
            return

        result = self.session_controller.toggle_review(user_id, number - 1)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Mark Failed")
            return

        state = "marked for review" if result['marked'] else "no longer marked"
        await self.send_info_response(interaction, f"Question {number} is {state}.", "🟣 Review Mark")

    async def handle_submit(self, interaction: discord.Interaction):
        """Handle /submit command"""
        user_id = str(interaction.user.id)
        if not await self.ensure_access(interaction, user_id):
            return

        try:
            await interaction.response.defer(ephemeral=True, thinking=True)
        except discord.HTTPException as e:
            logger.warning(f"Could not defer submit for user {user_id}: {e}")

        result = await self.session_controller.submit(user_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Submission Failed")
            return

        session = self.session_controller.get_user_session(user_id)
        try:
            await interaction.followup.send(
                embed=self.build_result_embed(session, result['summary']), ephemeral=True
            )
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "submit", interaction)

    async def handle_exit(self, interaction: discord.Interaction):
        """Handle /exit command"""
        user_id = str(interaction.user.id)
        result = self.session_controller.exit_exam(user_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Exit")
            return

        if result['saved']:
            message = (
                "Your progress has been saved. Use `/exam_start` again within "
                f"{self.config_manager.get_recovery_window_hours()}h to resume."
            )
            await self.send_info_response(interaction, message, "💾 Exam Paused")
        else:
            await self.send_warning_response(
                interaction,
                "You left the exam, but your progress could not be saved.",
                "⚠️ Progress Not Saved"
            )

    async def handle_exam_status(self, interaction: discord.Interaction):
        """Handle /exam_status command"""
        user_id = str(interaction.user.id)
        session = self.session_controller.get_user_session(user_id)
        if session is None:
            await self.send_info_response(
                interaction,
                "You have no exam in progress. Use `/exams` to find one.",
                "📭 No Active Exam"
            )
            return

        await self.send_info_response(
            interaction,
            self.session_controller.get_session_status_summary(user_id),
            f"📊 {session.exam.name}"
        )

    async def handle_review(self, interaction: discord.Interaction):
        """Handle /review command"""
        user_id = str(interaction.user.id)
        session = self.session_controller.get_user_session(user_id)
        if session is not None and session.phase is Phase.REVIEW:
            entries = session.review()
        else:
            result = self.session_controller.open_review(user_id)
            if not result['success']:
                await self.send_error_response(interaction, result['user_message'], "❌ Review Unavailable")
                return
            entries = result['entries']

        try:
            await interaction.response.send_message(embed=self.build_review_embed(entries), ephemeral=True)
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "review", interaction)

    async def handle_retake(self, interaction: discord.Interaction):
        """Handle /retake command"""
        user_id = str(interaction.user.id)
        result = self.session_controller.retake(user_id)
        if not result['success']:
            await self.send_error_response(interaction, result['user_message'], "❌ Cannot Retake")
            return

        session = self.session_controller.get_user_session(user_id)
        try:
            await interaction.response.send_message(
                embed=self.build_instructions_embed(session), ephemeral=True
            )
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "retake", interaction)

    async def ensure_access(self, interaction: discord.Interaction, user_id: str) -> bool:
        """Re-check registration and payment for an attempt in progress."""
        session = self.session_controller.get_user_session(user_id)
        if session is None or session.phase is not Phase.QUESTIONS:
            return True

        result = self.session_controller.revalidate_access(user_id)
        if result['success'] or result['error'] is ErrorCode.SESSION_NOT_FOUND:
            return True

        message = result['user_message']
        if result.get('suspended'):
            message += "\nYour progress was saved and the timer stopped."
        await self.send_error_response(interaction, message, "❌ Exam Suspended")
        return False

    # ------------------------------------------------------------------
    # Timer events
    # ------------------------------------------------------------------

    async def on_attempt_finalized(self, session: ExamSession, outcome: Dict[str, Any]):
        """
        Announce attempts finalized by the timer.

        Manual submits answer the /submit interaction instead. If the report
        could not be recorded the user is asked to retry with /submit.
        """
        if outcome.get('trigger') != 'timer_expiry':
            return

        channel_id = self._attempt_channels.get(session.user_id)
        channel = self.get_channel(channel_id) if channel_id is not None else None
        if channel is None:
            logger.warning(f"No channel to announce expired exam for user {session.user_id}")
            return

        if outcome['success']:
            content = f"<@{session.user_id}> ⏰ Time is up! Your answers were submitted automatically."
            embed = self.build_result_embed(session, outcome['summary'])
        else:
            content = f"<@{session.user_id}> ⏰ Time is up, but your answers could not be recorded."
            embed = discord.Embed(
                title="⚠️ Submission Failed",
                description=(
                    "Your answers are saved and locked. "
                    "Use `/submit` to try sending them again."
                ),
                color=0xffaa00
            )

        try:
            await channel.send(content=content, embed=embed)
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "announce_expiry")

    # ------------------------------------------------------------------
    # Embeds
    # ------------------------------------------------------------------

    def build_instructions_embed(self, session: ExamSession) -> discord.Embed:
        exam = session.exam
        embed = discord.Embed(
            title=f"📋 {exam.name} - Instructions",
            description=(
                f"• {exam.question_count} questions, {exam.total_marks} marks\n"
                f"• You need **{exam.passing_marks}** correct answers to pass\n"
                f"• Time limit: **{format_time(exam.duration)}**\n"
                "• The exam is submitted automatically when time runs out\n"
                "• Use `/exit` to save and leave; the timer stops while you are away"
            ),
            color=0x6699ff
        )

        offer = session.recovery_offer
        if offer is not None:
            embed.add_field(
                name="💾 Saved Progress Found",
                value=(
                    f"{len(offer.selected_options)} answers saved, "
                    f"{format_time(min(offer.seconds_remaining, exam.duration))} left.\n"
                    "`/exam_agree` resumes it, `/exam_agree resume:False` starts over."
                ),
                inline=False
            )
        embed.set_footer(text="Run /exam_agree to accept the instructions and start")
        return embed

    def build_question_embed(self, session: ExamSession, note: str = "") -> discord.Embed:
        question = session.current_question()
        index = session.current_index
        remaining = session.seconds_remaining
        status = timer_status(remaining, session.exam.duration)

        selected = session.selected_options.get(index)
        lines = []
        for key, text in question.options.items():
            marker = "✅" if key == selected else "▫️"
            lines.append(f"{marker} **{key}**. {text}")

        embed = discord.Embed(
            title=f"Question {index + 1}/{session.exam.question_count}",
            description=f"{question.text}\n\n" + "\n".join(lines),
            color=STATUS_COLORS[status]
        )
        if index in session.marked_for_review:
            embed.add_field(name="🟣 Marked", value="This question is marked for review", inline=False)

        navigator = " ".join(
            f"{NAVIGATOR_SYMBOLS[session.question_status(i)]}{i + 1}"
            for i in range(session.exam.question_count)
        )
        embed.add_field(name="🧭 Navigator", value=navigator[:1024], inline=False)
        embed.add_field(name="⏱️ Time Left", value=format_time(remaining), inline=True)

        last_saved = session.describe_last_saved()
        if last_saved:
            embed.add_field(name="💾 Saved", value=last_saved, inline=True)
        if note:
            embed.set_footer(text=note)
        return embed

    def build_result_embed(self, session: Optional[ExamSession], summary: Dict[str, Any]) -> discord.Embed:
        passed = summary['verdict'] == "Pass"
        title = f"{'🎉' if passed else '📉'} Result: {summary['verdict']}"
        if session is not None:
            title += f" - {session.exam.name}"

        embed = discord.Embed(title=title, color=0x00ff00 if passed else 0xff0000)
        embed.add_field(
            name="📊 Score",
            value=(
                f"Correct: {summary['correct']}/{summary['total_questions']}\n"
                f"Percentage: {summary['percentage']}%"
            ),
            inline=True
        )
        if 'total_marks' in summary:
            embed.add_field(
                name="🏅 Marks",
                value=f"{summary['obtained_marks']}/{summary['total_marks']}",
                inline=True
            )
        embed.set_footer(text="Use /review to see your answers or /retake to try again")
        return embed

    def build_review_embed(self, entries) -> discord.Embed:
        embed = discord.Embed(title="🔍 Answer Review", color=0x6699ff)
        for entry in entries[:25]:
            selected = entry['selected_option'] or "-"
            icon = "✅" if entry['is_correct'] else "❌"
            embed.add_field(
                name=f"{icon} {entry['index'] + 1}. {entry['question'][:200]}",
                value=f"Your answer: {selected} | Correct: {entry['correct_option']}",
                inline=False
            )
        if len(entries) > 25:
            embed.set_footer(text=f"... and {len(entries) - 25} more questions")
        return embed

    async def send_question(self, interaction: discord.Interaction, session: ExamSession, note: str = ""):
        try:
            embed = self.build_question_embed(session, note)
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            await self.handle_discord_api_error(e, "send_question", interaction)

    # ------------------------------------------------------------------
    # Responses and Discord errors
    # ------------------------------------------------------------------

    async def handle_discord_api_error(self, error: Exception, operation: str, interaction: discord.Interaction = None) -> bool:
        """
        Log a Discord API error and tell the user when it is worth telling them.

        Args:
            error: The Discord API error
            operation: Description of the operation that failed
            interaction: Discord interaction object (optional)

        Returns:
            True if the error is transient and the operation may be retried
        """
        if isinstance(error, discord.HTTPException):
            if error.status == 429:
                retry_after = getattr(error, 'retry_after', 5)
                logger.warning(f"Rate limited during {operation}, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                return True

            if error.status in [500, 502, 503, 504]:
                logger.warning(f"Discord server error during {operation}: {error.status}")
                return True

            if error.status == 403:
                logger.error(f"Permission denied during {operation}: {error}")
                if interaction:
                    await self.send_error_response(
                        interaction,
                        "Bot doesn't have permission to perform this action. Please check bot permissions.",
                        "❌ Permission Error"
                    )
                return False

        logger.error(f"Discord API error during {operation}: {error}")
        if interaction:
            await self.send_error_response(
                interaction,
                "Discord API error occurred. Please try again in a moment.",
                "❌ Discord Error"
            )
        return False

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send formatted error response to user"""
        embed = discord.Embed(title=title, description=message, color=0xff0000)
        embed.set_footer(text="If this error persists, try using /help for available commands")
        await self._send_embed(interaction, embed, f"{title}: {message}")

    async def send_info_response(self, interaction: discord.Interaction, message: str, title: str = "ℹ️ Information"):
        """Send formatted info response to user"""
        embed = discord.Embed(title=title, description=message, color=0x6699ff)
        await self._send_embed(interaction, embed, f"{title}: {message}")

    async def send_warning_response(self, interaction: discord.Interaction, message: str, title: str = "⚠️ Warning"):
        """Send formatted warning response to user"""
        embed = discord.Embed(title=title, description=message, color=0xffaa00)
        await self._send_embed(interaction, embed, f"{title}: {message}")

    async def _send_embed(self, interaction: discord.Interaction, embed: discord.Embed, fallback: str):
        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error(f"Failed to send embed: {e}")
            # Fall back to a plain message
            try:
                if interaction.response.is_done():
                    await interaction.followup.send(fallback, ephemeral=True)
                else:
                    await interaction.response.send_message(fallback, ephemeral=True)
            except discord.HTTPException:
                logger.error("Failed to send fallback message")


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = ExamBot(config)

    try:
        logger.info("Starting Discord Exam Bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_bot())

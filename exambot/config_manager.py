"""
Configuration manager for exam engine settings and storage locations.
"""
import logging
from typing import Optional, Dict, Any, List, Union
from pathlib import Path
import os

from .models import EngineSettings


Number = Union[int, float]


class ConfigManager:
    """Manages engine configuration settings and storage paths."""

    # Default configuration values
    DEFAULT_AUTOSAVE_INTERVAL = 10
    DEFAULT_RECOVERY_WINDOW_HOURS = 24
    DEFAULT_REPORT_MAX_ATTEMPTS = 3
    DEFAULT_REPORT_RETRY_DELAY = 0.5
    DEFAULT_REPORT_TIMEOUT = 10.0
    DEFAULT_EXAM_DIRECTORY = "./exams/"
    DEFAULT_SNAPSHOT_DIRECTORY = "./snapshots/"
    DEFAULT_REPORT_FILE = "./reports/reports.jsonl"

    # Validation limits
    MIN_AUTOSAVE_INTERVAL = 1
    MAX_AUTOSAVE_INTERVAL = 300  # 5 minutes
    MIN_RECOVERY_WINDOW_HOURS = 1
    MAX_RECOVERY_WINDOW_HOURS = 168  # one week
    MIN_REPORT_MAX_ATTEMPTS = 1
    MAX_REPORT_MAX_ATTEMPTS = 10
    MIN_REPORT_RETRY_DELAY = 0
    MAX_REPORT_RETRY_DELAY = 30
    MIN_REPORT_TIMEOUT = 1
    MAX_REPORT_TIMEOUT = 120

    def __init__(self):
        """Initialize ConfigManager with default settings."""
        self.logger = logging.getLogger(__name__)
        self._settings = EngineSettings()
        self._exam_directory = self.DEFAULT_EXAM_DIRECTORY
        self._snapshot_directory = self.DEFAULT_SNAPSHOT_DIRECTORY
        self._report_file = self.DEFAULT_REPORT_FILE

    def get_engine_settings(self) -> EngineSettings:
        """
        Get current engine settings.

        Returns:
            A copy of the current EngineSettings
        """
        return EngineSettings(
            autosave_interval=self._settings.autosave_interval,
            recovery_window_hours=self._settings.recovery_window_hours,
            report_max_attempts=self._settings.report_max_attempts,
            report_retry_delay=self._settings.report_retry_delay,
            report_timeout=self._settings.report_timeout
        )

    def _validate_number(
        self,
        label: str,
        value: Any,
        minimum: Number,
        maximum: Number,
        integer_only: bool = False
    ) -> Optional[Dict[str, Any]]:
        """
        Validate a numeric setting.

        Returns:
            None if the value is acceptable, otherwise a failure dictionary
        """
        accepted = (int,) if integer_only else (int, float)
        if isinstance(value, bool) or not isinstance(value, accepted):
            expected = "an integer" if integer_only else "a number"
            error_msg = f"{label} must be {expected}, got {type(value).__name__}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid input: Expected {expected}, got {type(value).__name__}"
            }

        if value < minimum or value > maximum:
            error_msg = f"{label} must be between {minimum} and {maximum}, got {value}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {label} must be between {minimum} and {maximum}"
            }

        return None

    def set_autosave_interval(self, seconds: Number) -> Dict[str, Any]:
        """
        Set how often in-progress attempts are saved.

        Args:
            seconds: Interval between autosaves

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        rejection = self._validate_number(
            "Autosave interval", seconds, self.MIN_AUTOSAVE_INTERVAL, self.MAX_AUTOSAVE_INTERVAL
        )
        if rejection:
            return rejection

        self._settings.autosave_interval = seconds
        self.logger.info(f"Autosave interval set to {seconds}s")
        return {
            'success': True,
            'message': f"Autosave interval set to {seconds}s",
            'user_message': f"✅ Progress will be saved every {seconds} seconds"
        }

    def get_autosave_interval(self) -> Number:
        return self._settings.autosave_interval

    def set_recovery_window_hours(self, hours: Number) -> Dict[str, Any]:
        """
        Set how long an interrupted attempt stays resumable.

        Args:
            hours: Maximum snapshot age in hours

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        rejection = self._validate_number(
            "Recovery window", hours, self.MIN_RECOVERY_WINDOW_HOURS, self.MAX_RECOVERY_WINDOW_HOURS
        )
        if rejection:
            return rejection

        self._settings.recovery_window_hours = hours
        self.logger.info(f"Recovery window set to {hours}h")
        return {
            'success': True,
            'message': f"Recovery window set to {hours}h",
            'user_message': f"✅ Interrupted attempts can be resumed for {hours} hours"
        }

    def get_recovery_window_hours(self) -> Number:
        return self._settings.recovery_window_hours

    def set_report_retry_policy(self, max_attempts: int, retry_delay: Number) -> Dict[str, Any]:
        """
        Set the bounded retry policy for recording reports.

        Args:
            max_attempts: Total submission attempts before giving up
            retry_delay: Delay before the first retry in seconds, doubled for each further retry

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        rejection = self._validate_number(
            "Report attempts", max_attempts,
            self.MIN_REPORT_MAX_ATTEMPTS, self.MAX_REPORT_MAX_ATTEMPTS,
            integer_only=True
        )
        if rejection:
            return rejection

        rejection = self._validate_number(
            "Report retry delay", retry_delay, self.MIN_REPORT_RETRY_DELAY, self.MAX_REPORT_RETRY_DELAY
        )
        if rejection:
            return rejection

        self._settings.report_max_attempts = max_attempts
        self._settings.report_retry_delay = retry_delay
        self.logger.info(f"Report retry policy set to {max_attempts} attempts, {retry_delay}s initial delay")
        return {
            'success': True,
            'message': f"Report retry policy set to {max_attempts} attempts",
            'user_message': f"✅ Reports will be attempted up to {max_attempts} times"
        }

    def set_report_timeout(self, seconds: Number) -> Dict[str, Any]:
        """
        Set the time limit for a single report submission attempt.

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        rejection = self._validate_number(
            "Report timeout", seconds, self.MIN_REPORT_TIMEOUT, self.MAX_REPORT_TIMEOUT
        )
        if rejection:
            return rejection

        self._settings.report_timeout = seconds
        self.logger.info(f"Report timeout set to {seconds}s")
        return {
            'success': True,
            'message': f"Report timeout set to {seconds}s",
            'user_message': f"✅ Report submissions time out after {seconds} seconds"
        }

    def _set_path(self, label: str, value: Any) -> Dict[str, Any]:
        if not isinstance(value, str) or not value.strip():
            error_msg = f"{label} must be a non-empty string"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ Invalid {label.lower()}: a path is required"
            }
        return {'success': True, 'value': value.strip()}

    def set_exam_directory(self, directory: str) -> Dict[str, Any]:
        """
        Set the directory exam definition files are loaded from.

        Args:
            directory: Path to the exam directory

        Returns:
            Dictionary with success status, error message, and user-friendly message
        """
        result = self._set_path("Exam directory", directory)
        if not result['success']:
            return result

        path = Path(result['value'])
        if path.exists() and not path.is_dir():
            error_msg = f"Exam directory path exists but is not a directory: {path}"
            self.logger.error(error_msg)
            return {
                'success': False,
                'error': error_msg,
                'user_message': f"❌ {path} is a file, not a directory"
            }

        self._exam_directory = result['value']
        self.logger.info(f"Exam directory set to {self._exam_directory}")
        return {
            'success': True,
            'message': f"Exam directory set to {self._exam_directory}",
            'user_message': f"✅ Exams will be loaded from {self._exam_directory}"
        }

    def get_exam_directory(self) -> str:
        return self._exam_directory

    def set_snapshot_directory(self, directory: str) -> Dict[str, Any]:
        """Set the directory autosave snapshots are written to."""
        result = self._set_path("Snapshot directory", directory)
        if not result['success']:
            return result

        self._snapshot_directory = result['value']
        self.logger.info(f"Snapshot directory set to {self._snapshot_directory}")
        return {
            'success': True,
            'message': f"Snapshot directory set to {self._snapshot_directory}",
            'user_message': f"✅ Progress will be saved in {self._snapshot_directory}"
        }

    def get_snapshot_directory(self) -> str:
        return self._snapshot_directory

    def set_report_file(self, report_file: str) -> Dict[str, Any]:
        """Set the JSON-lines file reports are appended to."""
        result = self._set_path("Report file", report_file)
        if not result['success']:
            return result

        self._report_file = result['value']
        self.logger.info(f"Report file set to {self._report_file}")
        return {
            'success': True,
            'message': f"Report file set to {self._report_file}",
            'user_message': f"✅ Reports will be recorded in {self._report_file}"
        }

    def get_report_file(self) -> str:
        return self._report_file

    def apply_config(self, exam_config: Dict[str, Any]) -> List[str]:
        """
        Apply the 'exam' section of a configuration file.

        Invalid entries are skipped and keep their current values.

        Args:
            exam_config: Mapping of setting names to values

        Returns:
            List of error messages for entries that were rejected
        """
        errors = []
        results = []

        setters = (
            ('autosave_interval', self.set_autosave_interval),
            ('recovery_window_hours', self.set_recovery_window_hours),
            ('report_timeout', self.set_report_timeout),
            ('exam_directory', self.set_exam_directory),
            ('snapshot_directory', self.set_snapshot_directory),
            ('report_file', self.set_report_file),
        )
        for name, setter in setters:
            if name in exam_config:
                results.append(setter(exam_config[name]))

        if 'report_max_attempts' in exam_config or 'report_retry_delay' in exam_config:
            results.append(self.set_report_retry_policy(
                exam_config.get('report_max_attempts', self._settings.report_max_attempts),
                exam_config.get('report_retry_delay', self._settings.report_retry_delay)
            ))

        for result in results:
            if not result['success']:
                errors.append(result['error'])

        if errors:
            self.logger.warning(f"Ignored {len(errors)} invalid configuration entries")
        return errors

    def reset_to_defaults(self) -> None:
        """Reset all settings to their default values."""
        self._settings = EngineSettings(
            autosave_interval=self.DEFAULT_AUTOSAVE_INTERVAL,
            recovery_window_hours=self.DEFAULT_RECOVERY_WINDOW_HOURS,
            report_max_attempts=self.DEFAULT_REPORT_MAX_ATTEMPTS,
            report_retry_delay=self.DEFAULT_REPORT_RETRY_DELAY,
            report_timeout=self.DEFAULT_REPORT_TIMEOUT
        )
        self._exam_directory = self.DEFAULT_EXAM_DIRECTORY
        self._snapshot_directory = self.DEFAULT_SNAPSHOT_DIRECTORY
        self._report_file = self.DEFAULT_REPORT_FILE
        self.logger.info("All settings reset to default values")

    def validate_settings(self) -> Dict[str, Any]:
        """
        Validate current settings and return validation results.

        Returns:
            Dictionary with validation results and any issues found
        """
        validation_result = {
            "valid": True,
            "issues": []
        }

        checks = (
            ("autosave interval", self._settings.autosave_interval,
             self.MIN_AUTOSAVE_INTERVAL, self.MAX_AUTOSAVE_INTERVAL),
            ("recovery window", self._settings.recovery_window_hours,
             self.MIN_RECOVERY_WINDOW_HOURS, self.MAX_RECOVERY_WINDOW_HOURS),
            ("report attempts", self._settings.report_max_attempts,
             self.MIN_REPORT_MAX_ATTEMPTS, self.MAX_REPORT_MAX_ATTEMPTS),
            ("report retry delay", self._settings.report_retry_delay,
             self.MIN_REPORT_RETRY_DELAY, self.MAX_REPORT_RETRY_DELAY),
            ("report timeout", self._settings.report_timeout,
             self.MIN_REPORT_TIMEOUT, self.MAX_REPORT_TIMEOUT),
        )
        for label, value, minimum, maximum in checks:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not minimum <= value <= maximum:
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid {label}: {value}")

        for label, value in (
            ("exam directory", self._exam_directory),
            ("snapshot directory", self._snapshot_directory),
            ("report file", self._report_file),
        ):
            if not isinstance(value, str) or not value.strip():
                validation_result["valid"] = False
                validation_result["issues"].append(f"Invalid {label}: {value}")

        return validation_result

    def get_settings_summary(self) -> str:
        """
        Get a formatted summary of current settings.

        Returns:
            Human-readable string describing current settings
        """
        return (
            f"Exam Settings:\n"
            f"• Autosave: every {self._settings.autosave_interval} seconds\n"
            f"• Recovery window: {self._settings.recovery_window_hours} hours\n"
            f"• Report attempts: {self._settings.report_max_attempts}\n"
            f"• Exam Directory: {self._exam_directory}"
        )

    def get_configuration_health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the configuration.

        Returns:
            Dictionary with health status and recommendations
        """
        health_check = {
            'healthy': True,
            'warnings': [],
            'errors': [],
            'recommendations': []
        }

        validation_result = self.validate_settings()
        if not validation_result['valid']:
            health_check['healthy'] = False
            health_check['errors'].extend(f"❌ {issue}" for issue in validation_result['issues'])

        exam_dir = Path(self._exam_directory)
        if not exam_dir.exists():
            health_check['warnings'].append(
                f"⚠️ Exam directory does not exist: {self._exam_directory}"
            )
            health_check['recommendations'].append(
                "The exam directory will be created automatically when loading exam files."
            )
        elif not os.access(exam_dir, os.R_OK):
            health_check['healthy'] = False
            health_check['errors'].append(
                f"❌ Cannot read exam directory: {self._exam_directory}"
            )

        snapshot_dir = Path(self._snapshot_directory)
        if snapshot_dir.exists() and not os.access(snapshot_dir, os.W_OK):
            health_check['healthy'] = False
            health_check['errors'].append(
                f"❌ Cannot write to snapshot directory: {self._snapshot_directory}"
            )
            health_check['recommendations'].append(
                "Autosave will fail until the snapshot directory is writable."
            )

        if self._settings.autosave_interval > 60:
            health_check['warnings'].append(
                f"⚠️ Long autosave interval ({self._settings.autosave_interval}s) risks losing answers"
            )

        return health_check

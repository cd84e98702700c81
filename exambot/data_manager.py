"""
Data manager for JSON exam files: exam definitions, registrations and access checks.
"""
import json
import os
import logging
from typing import Dict, List, Optional, Any
from pathlib import Path

from .errors import ExamNotFoundError
from .models import (
    OPTION_KEYS, AccessStatus, ExamDefinition, PaymentStatus, Question
)


class DataManager:
    """Manages loading and validation of JSON exam files."""

    MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB limit

    def __init__(self, exam_directory: str = "./exams/"):
        """
        Initialize DataManager with exam directory path.

        Args:
            exam_directory: Path to directory containing JSON exam files
        """
        self.exam_directory = Path(exam_directory)
        self.loaded_exams: Dict[str, ExamDefinition] = {}
        self.registrations: Dict[str, Dict[str, PaymentStatus]] = {}
        self.open_registration: Dict[str, bool] = {}
        self.logger = logging.getLogger(__name__)
        self.load_errors: List[str] = []  # Track loading errors for user feedback

    def load_exam_files(self) -> Dict[str, ExamDefinition]:
        """
        Load all JSON files from the exam directory.

        Returns:
            Dictionary mapping exam ids to exam definitions
        """
        self.loaded_exams.clear()
        self.registrations.clear()
        self.open_registration.clear()
        self.load_errors.clear()

        directory_result = self._ensure_exam_directory()
        if not directory_result['success']:
            self.load_errors.append(directory_result['error'])
            return self.loaded_exams

        try:
            json_files = sorted(self.exam_directory.glob("*.json"))
        except OSError as e:
            self.load_errors.append(f"System error scanning {self.exam_directory}: {e}")
            return self.loaded_exams

        if not json_files:
            self.logger.warning(f"No JSON files found in {self.exam_directory}")
            self.load_errors.append(f"No exam files found in {self.exam_directory}")
            return self._create_sample_exam()

        successful_loads = 0
        for json_file in json_files:
            load_result = self._load_exam_file_safely(json_file)
            if load_result['success']:
                successful_loads += 1
            else:
                self.load_errors.append(f"{json_file.name}: {load_result['error']}")

        if successful_loads == 0:
            self.logger.error("No exam files could be loaded successfully")
        else:
            self.logger.info(f"Successfully loaded {successful_loads} exam files")
        if self.load_errors:
            self.logger.warning(f"Encountered {len(self.load_errors)} loading errors")

        return self.loaded_exams

    def validate_exam_structure(self, data: dict) -> bool:
        """
        Validate that JSON data has the correct exam structure.

        Expected structure:
        {
            "exam": {
                "id": str, "name": str, "duration": int, "totalMarks": int,
                "passingMarks": int, "category": str, "accessCode": str,
                "isPaid": bool, "price": number, "openRegistration": bool
            },
            "questions": [
                {"id": str, "question": str, "options": {"A": str, ...}, "correctOption": str}
            ],
            "registrations": [
                {"userId": str, "paymentStatus": "pending" | "completed" | "failed"}
            ]
        }

        Args:
            data: Parsed JSON data to validate

        Returns:
            True if structure is valid, False otherwise
        """
        if not isinstance(data, dict):
            self.logger.error("Exam data must be a JSON object")
            return False

        exam = data.get("exam")
        if not isinstance(exam, dict):
            self.logger.error("Exam data must contain an 'exam' object")
            return False

        for name in ("id", "name", "accessCode"):
            if not isinstance(exam.get(name), str) or not exam[name].strip():
                self.logger.error(f"Exam '{name}' must be a non-empty string")
                return False

        for name in ("duration", "totalMarks", "passingMarks"):
            value = exam.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                self.logger.error(f"Exam '{name}' must be an integer")
                return False

        if exam["duration"] <= 0:
            self.logger.error("Exam 'duration' must be positive")
            return False

        if exam["passingMarks"] < 0:
            self.logger.error("Exam 'passingMarks' cannot be negative")
            return False

        questions = data.get("questions")
        if not isinstance(questions, list) or not questions:
            self.logger.error("'questions' must be a non-empty array")
            return False

        for i, question_data in enumerate(questions):
            if not self._validate_question(i, question_data):
                return False

        registrations = data.get("registrations", [])
        if not isinstance(registrations, list):
            self.logger.error("'registrations' must be an array")
            return False

        valid_statuses = {status.value for status in PaymentStatus}
        for i, registration in enumerate(registrations):
            if not isinstance(registration, dict) or "userId" not in registration:
                self.logger.error(f"Registration {i} must be an object with a 'userId'")
                return False
            status = registration.get("paymentStatus", PaymentStatus.PENDING.value)
            if status not in valid_statuses:
                self.logger.error(f"Registration {i} has unknown payment status '{status}'")
                return False

        return True

    def _validate_question(self, i: int, question_data: Any) -> bool:
        if not isinstance(question_data, dict):
            self.logger.error(f"Question {i} must be an object")
            return False

        if not isinstance(question_data.get("question"), str):
            self.logger.error(f"Question {i} 'question' field must be a string")
            return False

        options = question_data.get("options")
        if not isinstance(options, dict) or not options:
            self.logger.error(f"Question {i} 'options' field must be a non-empty object")
            return False

        for key, text in options.items():
            if key not in OPTION_KEYS:
                self.logger.error(f"Question {i} has unknown option key '{key}'")
                return False
            if not isinstance(text, str):
                self.logger.error(f"Question {i} option '{key}' must be a string")
                return False

        if question_data.get("correctOption") not in options:
            self.logger.error(f"Question {i} 'correctOption' must be one of its option keys")
            return False

        return True

    def _parse_exam(self, data: dict) -> ExamDefinition:
        """
        Parse validated exam data into an ExamDefinition.

        Args:
            data: Validated exam data dictionary

        Returns:
            ExamDefinition with its questions in file order
        """
        exam = data["exam"]
        questions = tuple(
            Question(
                id=str(question_data.get("id", index + 1)),
                text=question_data["question"],
                options=dict(question_data["options"]),
                correct_option=question_data["correctOption"]
            )
            for index, question_data in enumerate(data["questions"])
        )

        return ExamDefinition(
            id=exam["id"],
            name=exam["name"],
            duration=exam["duration"],
            total_marks=exam["totalMarks"],
            passing_marks=exam["passingMarks"],
            questions=questions,
            category=exam.get("category", ""),
            access_code=exam["accessCode"],
            is_paid=bool(exam.get("isPaid", False)),
            price=float(exam.get("price", 0))
        )

    def _load_exam_file_safely(self, json_file: Path) -> Dict[str, Any]:
        """
        Load a single exam file with error handling.

        Args:
            json_file: Path to the JSON file to load

        Returns:
            Dictionary with success status and error message if applicable
        """
        try:
            file_size = json_file.stat().st_size
            if file_size > self.MAX_FILE_SIZE:
                return {
                    'success': False,
                    'error': f"File too large ({file_size / 1024 / 1024:.1f}MB). Maximum size is {self.MAX_FILE_SIZE / 1024 / 1024}MB"
                }

            with open(json_file, 'r', encoding='utf-8') as f:
                data = json.load(f)

            if not self.validate_exam_structure(data):
                return {
                    'success': False,
                    'error': "Invalid exam structure or validation failed"
                }

            exam = self._parse_exam(data)
            if exam.id in self.loaded_exams:
                return {
                    'success': False,
                    'error': f"Duplicate exam id '{exam.id}'"
                }

            self.loaded_exams[exam.id] = exam
            self.open_registration[exam.id] = bool(data["exam"].get("openRegistration", False))
            self.registrations[exam.id] = {
                str(registration["userId"]): PaymentStatus(
                    registration.get("paymentStatus", PaymentStatus.PENDING.value)
                )
                for registration in data.get("registrations", [])
            }
            self.logger.info(f"Loaded exam '{exam.id}' with {exam.question_count} questions")

            return {'success': True}

        except json.JSONDecodeError as e:
            return {
                'success': False,
                'error': f"Invalid JSON: {e}"
            }
        except ValueError as e:
            return {
                'success': False,
                'error': f"Invalid exam data: {e}"
            }
        except PermissionError:
            return {
                'success': False,
                'error': "Permission denied"
            }
        except OSError as e:
            return {
                'success': False,
                'error': f"System error: {e}"
            }

    def fetch_exam(self, exam_id: str) -> ExamDefinition:
        """
        Retrieve an exam definition.

        Raises:
            ExamNotFoundError: If no exam with this id is loaded
        """
        exam = self.loaded_exams.get(exam_id)
        if exam is None:
            raise ExamNotFoundError(f"Exam '{exam_id}' not found")
        return exam

    def check_access(self, exam_id: str, user_id: str) -> AccessStatus:
        """
        Report a user's registration, access code and payment state for an exam.

        Raises:
            ExamNotFoundError: If no exam with this id is loaded
        """
        exam = self.fetch_exam(exam_id)
        registered = self.registrations.get(exam_id, {})
        user_id = str(user_id)

        if user_id in registered:
            is_registered = True
            payment_status = registered[user_id]
        elif self.open_registration.get(exam_id, False):
            is_registered = True
            payment_status = PaymentStatus.PENDING
        else:
            is_registered = False
            payment_status = PaymentStatus.PENDING

        if not exam.is_paid:
            payment_status = PaymentStatus.NOT_REQUIRED

        return AccessStatus(
            is_registered=is_registered,
            access_code_valid=is_registered and bool(exam.access_code),
            payment_status=payment_status,
            is_paid=exam.is_paid
        )

    def set_payment_status(self, exam_id: str, user_id: str, status: PaymentStatus) -> None:
        """Record a registration's payment status."""
        self.fetch_exam(exam_id)
        self.registrations.setdefault(exam_id, {})[str(user_id)] = status
        self.logger.info(f"Payment status for exam {exam_id}, user {user_id} set to {status.value}")

    def get_available_exams(self) -> List[str]:
        """
        Get list of available exam ids.

        Returns:
            List of exam ids
        """
        return list(self.loaded_exams.keys())

    def exam_exists(self, exam_id: str) -> bool:
        return exam_id in self.loaded_exams

    def get_exam_count(self) -> int:
        return len(self.loaded_exams)

    def _ensure_exam_directory(self) -> Dict[str, Any]:
        """
        Ensure exam directory exists.

        Returns:
            Dictionary with success status and error message if applicable
        """
        try:
            if not self.exam_directory.exists():
                self.exam_directory.mkdir(parents=True, exist_ok=True)
                self.logger.info(f"Created exam directory: {self.exam_directory}")

            if not os.access(self.exam_directory, os.R_OK):
                return {
                    'success': False,
                    'error': f"Permission denied: Cannot read from {self.exam_directory}"
                }

            return {'success': True}

        except PermissionError:
            return {
                'success': False,
                'error': f"Permission denied: Cannot access {self.exam_directory}"
            }
        except OSError as e:
            return {
                'success': False,
                'error': f"System error accessing {self.exam_directory}: {e}"
            }

    def _create_sample_exam(self) -> Dict[str, ExamDefinition]:
        """
        Create a sample exam file when no exam files are found.

        Returns:
            Dictionary with the sample exam loaded
        """
        sample_exam_data = {
            "exam": {
                "id": "sample",
                "name": "Sample Exam",
                "category": "General",
                "duration": 300,
                "totalMarks": 3,
                "passingMarks": 2,
                "accessCode": "SAMPLE",
                "isPaid": False,
                "openRegistration": True
            },
            "questions": [
                {
                    "id": "q1",
                    "question": "What is the capital of France?",
                    "options": {"A": "Berlin", "B": "Paris", "C": "Madrid", "D": "Rome"},
                    "correctOption": "B"
                },
                {
                    "id": "q2",
                    "question": "What is 2 + 2?",
                    "options": {"A": "3", "B": "4", "C": "5"},
                    "correctOption": "B"
                },
                {
                    "id": "q3",
                    "question": "Which language is this bot written in?",
                    "options": {"A": "Python", "B": "Java"},
                    "correctOption": "A"
                }
            ]
        }

        sample_file_path = self.exam_directory / "sample_exam.json"
        try:
            if not sample_file_path.exists():
                with open(sample_file_path, 'w', encoding='utf-8') as f:
                    json.dump(sample_exam_data, f, indent=2, ensure_ascii=False)
                self.logger.info(f"Created sample exam file: {sample_file_path}")
        except OSError as e:
            self.logger.error(f"Failed to write sample exam file: {e}")
            self.load_errors.append(f"Failed to write sample exam file: {e}")

        exam = self._parse_exam(sample_exam_data)
        self.loaded_exams[exam.id] = exam
        self.open_registration[exam.id] = True
        self.registrations[exam.id] = {}
        self.logger.info("Loaded sample exam")
        return self.loaded_exams

    def get_load_errors(self) -> List[str]:
        return self.load_errors.copy()

    def has_load_errors(self) -> bool:
        return len(self.load_errors) > 0

    def get_loading_summary(self) -> Dict[str, Any]:
        """
        Get a summary of the loading operation.

        Returns:
            Dictionary with loading statistics and status
        """
        return {
            'total_exams': len(self.loaded_exams),
            'has_errors': self.has_load_errors(),
            'error_count': len(self.load_errors),
            'errors': self.get_load_errors(),
            'exam_directory': str(self.exam_directory),
            'available_exams': list(self.loaded_exams.keys())
        }

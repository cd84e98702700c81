"""
Unit tests for the DataManager class.
"""
import unittest
import json
import os
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

from exambot.data_manager import DataManager
from exambot.errors import ExamNotFoundError
from exambot.models import PaymentStatus
from tests.test_fixtures import TestFixtures


class TestDataManager(unittest.TestCase):
    """Test cases for DataManager loading and validation."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.data_manager = DataManager(self.temp_dir)

    def tearDown(self):
        """Clean up test fixtures."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_exam(self, filename: str, data) -> Path:
        path = Path(self.temp_dir) / filename
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f)
        return path

    def test_init_with_default_directory(self):
        dm = DataManager()
        self.assertEqual(dm.exam_directory, Path("./exams/"))
        self.assertEqual(dm.loaded_exams, {})

    def test_load_valid_exam(self):
        self.write_exam("geo.json", TestFixtures.create_valid_exam_json())

        loaded = self.data_manager.load_exam_files()

        self.assertEqual(list(loaded), ["geo"])
        exam = loaded["geo"]
        self.assertEqual(exam.name, "Geography")
        self.assertEqual(exam.duration, 120)
        self.assertEqual(exam.passing_marks, 1)
        self.assertEqual(exam.access_code, "GEO-1")
        self.assertEqual(exam.category, "Science")
        self.assertEqual(exam.question_count, 2)
        self.assertEqual(exam.questions[0].text, "What is the capital of Japan?")
        self.assertEqual(exam.questions[0].correct_option, "B")
        self.assertFalse(self.data_manager.has_load_errors())

    def test_load_mixed_files_collects_errors(self):
        TestFixtures.create_temp_exam_files(self.temp_dir)

        loaded = self.data_manager.load_exam_files()

        self.assertEqual(sorted(loaded), ["geo", "paid"])
        errors = self.data_manager.get_load_errors()
        self.assertEqual(len(errors), 2)
        self.assertTrue(any(error.startswith("invalid.json") for error in errors))
        self.assertTrue(any(error.startswith("invalid_structure.json") for error in errors))

    def test_invalid_structures_rejected(self):
        for data in TestFixtures.create_invalid_exam_json_structures():
            with self.subTest(data=data):
                self.assertFalse(self.data_manager.validate_exam_structure(data))

    def test_valid_structure_accepted(self):
        self.assertTrue(self.data_manager.validate_exam_structure(TestFixtures.create_valid_exam_json()))

    def test_non_object_rejected(self):
        self.assertFalse(self.data_manager.validate_exam_structure(["not", "an", "object"]))

    def test_duplicate_exam_ids_rejected(self):
        self.write_exam("a.json", TestFixtures.create_valid_exam_json())
        self.write_exam("b.json", TestFixtures.create_valid_exam_json())

        loaded = self.data_manager.load_exam_files()

        self.assertEqual(len(loaded), 1)
        self.assertIn("Duplicate exam id", self.data_manager.get_load_errors()[0])

    def test_oversized_file_rejected(self):
        self.write_exam("geo.json", TestFixtures.create_valid_exam_json())

        with patch.object(DataManager, "MAX_FILE_SIZE", 10):
            loaded = self.data_manager.load_exam_files()

        self.assertEqual(loaded, {})
        self.assertIn("File too large", self.data_manager.get_load_errors()[0])

    def test_empty_directory_creates_sample_exam(self):
        loaded = self.data_manager.load_exam_files()

        self.assertIn("sample", loaded)
        self.assertTrue((Path(self.temp_dir) / "sample_exam.json").exists())
        self.assertTrue(self.data_manager.has_load_errors())

        reloaded = DataManager(self.temp_dir).load_exam_files()
        self.assertEqual(reloaded["sample"], loaded["sample"])

    def test_missing_directory_is_created(self):
        directory = Path(self.temp_dir) / "nested" / "exams"
        dm = DataManager(directory)

        dm.load_exam_files()

        self.assertTrue(directory.exists())
        self.assertIn("sample", dm.get_available_exams())

    def test_fetch_exam(self):
        self.write_exam("geo.json", TestFixtures.create_valid_exam_json())
        self.data_manager.load_exam_files()

        self.assertEqual(self.data_manager.fetch_exam("geo").id, "geo")
        with self.assertRaises(ExamNotFoundError):
            self.data_manager.fetch_exam("history")

    def test_reload_clears_previous_state(self):
        path = self.write_exam("geo.json", TestFixtures.create_valid_exam_json())
        self.data_manager.load_exam_files()

        os.remove(path)
        self.write_exam("math.json", TestFixtures.create_valid_exam_json("math"))
        self.data_manager.load_exam_files()

        self.assertEqual(self.data_manager.get_available_exams(), ["math"])
        self.assertFalse(self.data_manager.exam_exists("geo"))

    def test_loading_summary(self):
        TestFixtures.create_temp_exam_files(self.temp_dir)
        self.data_manager.load_exam_files()

        summary = self.data_manager.get_loading_summary()

        self.assertEqual(summary['total_exams'], 2)
        self.assertTrue(summary['has_errors'])
        self.assertEqual(summary['error_count'], 2)
        self.assertEqual(sorted(summary['available_exams']), ["geo", "paid"])
        self.assertEqual(self.data_manager.get_exam_count(), 2)


class TestAccessChecks(unittest.TestCase):
    """Test cases for registration and payment lookups."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        TestFixtures.create_temp_exam_files(self.temp_dir)
        open_exam = TestFixtures.create_valid_exam_json("open", openRegistration=True, isPaid=True)
        with open(Path(self.temp_dir) / "open.json", 'w', encoding='utf-8') as f:
            json.dump(open_exam, f)

        self.data_manager = DataManager(self.temp_dir)
        self.data_manager.load_exam_files()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_registered_user_on_free_exam(self):
        status = self.data_manager.check_access("geo", "200")

        self.assertTrue(status.is_registered)
        self.assertTrue(status.access_code_valid)
        self.assertIs(status.payment_status, PaymentStatus.NOT_REQUIRED)
        self.assertTrue(status.may_enter)

    def test_unregistered_user(self):
        status = self.data_manager.check_access("geo", "999")

        self.assertFalse(status.is_registered)
        self.assertFalse(status.access_code_valid)
        self.assertFalse(status.may_enter)

    def test_paid_exam_payment_states(self):
        self.assertIs(self.data_manager.check_access("paid", "100").payment_status, PaymentStatus.COMPLETED)
        pending = self.data_manager.check_access("paid", "200")
        self.assertIs(pending.payment_status, PaymentStatus.PENDING)
        self.assertFalse(pending.may_enter)

    def test_open_registration_requires_payment_for_paid_exam(self):
        status = self.data_manager.check_access("open", "555")

        self.assertTrue(status.is_registered)
        self.assertIs(status.payment_status, PaymentStatus.PENDING)
        self.assertFalse(status.may_enter)

    def test_set_payment_status(self):
        self.data_manager.set_payment_status("paid", "200", PaymentStatus.COMPLETED)
        self.assertTrue(self.data_manager.check_access("paid", "200").may_enter)

    def test_set_payment_status_unknown_exam(self):
        with self.assertRaises(ExamNotFoundError):
            self.data_manager.set_payment_status("history", "200", PaymentStatus.COMPLETED)

    def test_check_access_unknown_exam(self):
        with self.assertRaises(ExamNotFoundError):
            self.data_manager.check_access("history", "100")


if __name__ == '__main__':
    unittest.main()

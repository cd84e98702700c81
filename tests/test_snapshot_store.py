"""
Unit tests for snapshot stores.
"""
import unittest
import json
import tempfile
import shutil
from pathlib import Path
from unittest.mock import patch

from exambot.errors import PersistenceError
from exambot.models import PersistedSnapshot
from exambot.snapshot_store import InMemorySnapshotStore, JsonFileSnapshotStore, snapshot_key


def make_snapshot(seconds_remaining: int = 120, saved_at: int = 1000) -> PersistedSnapshot:
    return PersistedSnapshot({0: "A", 2: "C"}, (1,), 2, seconds_remaining, saved_at)


class TestSnapshotKey(unittest.TestCase):

    def test_key_format(self):
        self.assertEqual(snapshot_key("math", "42"), "exam_math_42")


class TestInMemorySnapshotStore(unittest.TestCase):
    """Test cases for the in-memory store."""

    def setUp(self):
        self.store = InMemorySnapshotStore()

    def test_save_and_load(self):
        self.store.save("math", "42", make_snapshot())
        self.assertEqual(self.store.load("math", "42"), make_snapshot())
        self.assertEqual(self.store.keys(), ["exam_math_42"])

    def test_save_overwrites(self):
        self.store.save("math", "42", make_snapshot(120))
        self.store.save("math", "42", make_snapshot(60))
        self.assertEqual(self.store.load("math", "42").seconds_remaining, 60)

    def test_keys_are_per_exam_and_user(self):
        self.store.save("math", "42", make_snapshot())
        self.assertIsNone(self.store.load("math", "43"))
        self.assertIsNone(self.store.load("physics", "42"))

    def test_clear(self):
        self.store.save("math", "42", make_snapshot())
        self.assertTrue(self.store.clear("math", "42"))
        self.assertFalse(self.store.clear("math", "42"))
        self.assertIsNone(self.store.load("math", "42"))


class TestJsonFileSnapshotStore(unittest.TestCase):
    """Test cases for the file-backed store."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = JsonFileSnapshotStore(Path(self.temp_dir) / "snapshots")

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_save_creates_directory_and_file(self):
        self.store.save("math", "42", make_snapshot())

        path = Path(self.temp_dir) / "snapshots" / "exam_math_42.json"
        self.assertTrue(path.exists())
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        self.assertEqual(data["secondsRemaining"], 120)
        self.assertEqual(data["selectedOptions"], {"0": "A", "2": "C"})

    def test_round_trip(self):
        self.store.save("math", "42", make_snapshot())
        self.assertEqual(self.store.load("math", "42"), make_snapshot())

    def test_no_temp_files_left_behind(self):
        self.store.save("math", "42", make_snapshot())
        self.store.save("math", "42", make_snapshot(30))
        files = [p.name for p in (Path(self.temp_dir) / "snapshots").iterdir()]
        self.assertEqual(files, ["exam_math_42.json"])

    def test_unsafe_characters_stay_inside_directory(self):
        self.store.save("../etc", "a/b", make_snapshot())
        files = list((Path(self.temp_dir) / "snapshots").iterdir())
        self.assertEqual(len(files), 1)
        self.assertEqual(self.store.load("../etc", "a/b"), make_snapshot())

    def test_load_missing_returns_none(self):
        self.assertIsNone(self.store.load("math", "42"))

    def test_load_invalid_json_returns_none(self):
        directory = Path(self.temp_dir) / "snapshots"
        directory.mkdir()
        (directory / "exam_math_42.json").write_text("{ not json", encoding='utf-8')
        self.assertIsNone(self.store.load("math", "42"))

    def test_load_malformed_snapshot_returns_none(self):
        directory = Path(self.temp_dir) / "snapshots"
        directory.mkdir()
        (directory / "exam_math_42.json").write_text(
            json.dumps({"secondsRemaining": -5, "savedAtEpochMillis": 1}), encoding='utf-8'
        )
        self.assertIsNone(self.store.load("math", "42"))

    def test_clear(self):
        self.store.save("math", "42", make_snapshot())
        self.assertTrue(self.store.clear("math", "42"))
        self.assertFalse(self.store.clear("math", "42"))

    def test_write_failure_raises_persistence_error(self):
        with patch("exambot.snapshot_store.tempfile.mkstemp", side_effect=OSError("disk full")):
            with self.assertRaises(PersistenceError):
                self.store.save("math", "42", make_snapshot())

    def test_clear_failure_raises_persistence_error(self):
        self.store.save("math", "42", make_snapshot())
        with patch.object(Path, "unlink", side_effect=PermissionError("read-only")):
            with self.assertRaises(PersistenceError):
                self.store.clear("math", "42")


if __name__ == '__main__':
    unittest.main()

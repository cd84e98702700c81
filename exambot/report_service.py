"""
Report storage: the system of record for finished attempts.

Submissions carry a report id chosen by the caller, so a retry of the same
finalize is recorded once even if an earlier try finished after timing out.
"""
import asyncio
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .errors import ReportSubmissionError
from .models import Report, Result


def new_report_id() -> str:
    return uuid.uuid4().hex


class ReportService(ABC):
    """Records one report per finalized attempt."""

    @abstractmethod
    async def submit_report(
        self,
        exam_id: str,
        user_id: str,
        result: Result,
        report_id: Optional[str] = None
    ) -> Report:
        """
        Persist a report for a graded attempt.

        Args:
            exam_id: Exam the attempt belongs to
            user_id: User who took the attempt
            result: Graded result
            report_id: Id for the report; resubmitting an id that is already
                recorded does not record it again

        Raises:
            ReportSubmissionError: If the report could not be recorded
        """

    def _build_report(self, exam_id: str, user_id: str, result: Result, report_id: Optional[str] = None) -> Report:
        return Report(
            report_id=report_id or new_report_id(),
            exam_id=exam_id,
            user_id=user_id,
            result=result,
            created_at=datetime.now(timezone.utc)
        )


class InMemoryReportService(ReportService):
    """Keeps reports in memory."""

    def __init__(self):
        self.reports: List[Report] = []
        self.logger = logging.getLogger(__name__)

    async def submit_report(
        self,
        exam_id: str,
        user_id: str,
        result: Result,
        report_id: Optional[str] = None
    ) -> Report:
        existing = next((r for r in self.reports if report_id and r.report_id == report_id), None)
        if existing is not None:
            self.logger.info(f"Report {report_id} already recorded")
            return existing

        report = self._build_report(exam_id, user_id, result, report_id)
        self.reports.append(report)
        self.logger.info(f"Recorded report {report.report_id} for exam {exam_id}, user {user_id}")
        return report

    def get_reports_by_user(self, user_id: str) -> List[Report]:
        return [report for report in self.reports if report.user_id == user_id]

    def get_reports_by_exam(self, exam_id: str) -> List[Report]:
        return [report for report in self.reports if report.exam_id == exam_id]


class JsonReportService(ReportService):
    """Appends reports to a JSON-lines ledger file."""

    def __init__(self, report_file: str = "./reports/reports.jsonl"):
        """
        Initialize the ledger.

        Args:
            report_file: Path of the JSON-lines file reports are appended to
        """
        self.report_file = Path(report_file)
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._recorded_ids: Optional[Set[str]] = None

    async def submit_report(
        self,
        exam_id: str,
        user_id: str,
        result: Result,
        report_id: Optional[str] = None
    ) -> Report:
        report = self._build_report(exam_id, user_id, result, report_id)
        if await asyncio.to_thread(self._append, report):
            self.logger.info(f"Recorded report {report.report_id} for exam {exam_id}, user {user_id}")
        else:
            self.logger.info(f"Report {report.report_id} already recorded")
        return report

    def _append(self, report: Report) -> bool:
        """Append a report unless its id is already in the ledger. Returns True if written."""
        line = json.dumps(report.to_dict(), ensure_ascii=False)
        with self._lock:
            if self._recorded_ids is None:
                self._recorded_ids = {
                    record.get("reportId") for record in self._read_records_locked()
                }
            if report.report_id in self._recorded_ids:
                return False
            try:
                self.report_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.report_file, 'a', encoding='utf-8') as f:
                    f.write(line + "\n")
            except OSError as e:
                raise ReportSubmissionError(f"Failed to append report to {self.report_file}: {e}") from e
            self._recorded_ids.add(report.report_id)
            return True

    def _read_records_locked(self) -> List[Dict[str, Any]]:
        try:
            with open(self.report_file, 'r', encoding='utf-8') as f:
                lines = f.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            self.logger.error(f"Failed to read report ledger {self.report_file}: {e}")
            return []

        records = []
        for line_number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError as e:
                self.logger.warning(f"Skipping unreadable report on line {line_number}: {e}")
        return records

    def _read_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._read_records_locked()

    def get_reports_by_user(self, user_id: str) -> List[Dict[str, Any]]:
        """Return ledger entries for a user, oldest first."""
        return [record for record in self._read_all() if record.get("userId") == user_id]

    def get_reports_by_exam(self, exam_id: str) -> List[Dict[str, Any]]:
        """Return ledger entries for an exam, oldest first."""
        return [record for record in self._read_all() if record.get("examId") == exam_id]

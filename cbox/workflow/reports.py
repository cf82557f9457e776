"""Structured reports filed by the agent with ``cbox-report``.

Reports are JSON files under ``<project>/.cbox/reports/<safe-branch>/``,
named so that lexical order is filing order. The latest ``done`` report
becomes the pull request body.
"""

import shutil
from pathlib import Path

import structlog
from pydantic import ValidationError

from cbox.models.schemas import Report
from cbox.storage import atomic_write_text, safe_branch, state_dir

logger = structlog.get_logger(__name__)

REPORT_TYPES = ("plan", "done", "note")


class ReportStore:
    """Reports of one branch."""

    def __init__(self, project_dir: str | Path, branch: str) -> None:
        self.directory = state_dir(project_dir) / "reports" / safe_branch(branch)

    def add(self, report: Report) -> Path:
        """Persist a report and return its path.

        Raises:
            ValueError: If the report type is unknown.
        """
        if report.type not in REPORT_TYPES:
            raise ValueError(f"unknown report type {report.type!r} (expected one of {', '.join(REPORT_TYPES)})")
        stamp = report.created_at.strftime("%Y%m%dT%H%M%S%fZ")
        path = self.directory / f"{stamp}-{report.type}.json"
        atomic_write_text(path, report.model_dump_json(indent=2))
        logger.info("report_filed", type=report.type, path=str(path))
        return path

    def list_reports(self) -> list[Report]:
        """All readable reports, oldest first."""
        if not self.directory.is_dir():
            return []
        reports = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                reports.append(Report.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("report_unreadable", path=str(path), error=str(e))
        return reports

    def latest(self, report_type: str | None = None) -> Report | None:
        matching = [r for r in self.list_reports() if report_type is None or r.type == report_type]
        return matching[-1] if matching else None

    def remove_all(self) -> None:
        shutil.rmtree(self.directory, ignore_errors=True)

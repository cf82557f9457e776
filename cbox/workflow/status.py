"""Concurrent Status Aggregator: live flow status and clean-merged.

PR states are fetched concurrently, one worker per flow with a PR, while a
``LineSpinner`` on the calling thread shows each flow's line until its
state arrives. Lines resolve in whatever order the fetches finish.
"""

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import structlog

from cbox.errors import FlowError
from cbox.models.schemas import FlowState, PRStatus, Task
from cbox.output.spinner import STATUS, LineSpinner
from cbox.workflow.flow import FlowOrchestrator
from cbox.workflow.task import TaskStore
from cbox.workflow.tracker import format_pr_phase

logger = structlog.get_logger(__name__)

MAX_FETCH_WORKERS = 8
CONFIRM_ANSWERS = ("y", "yes")


@dataclass
class FlowEntry:
    """One flow as listed by ``status``, from a task file or a legacy record."""

    branch: str
    title: str
    phase: str
    pr_number: str = ""
    pr_url: str = ""
    issue_id: str = ""
    task: Task | None = None
    legacy: FlowState | None = None
    pr_status: PRStatus | None = field(default=None, compare=False)

    @classmethod
    def from_task(cls, task: Task) -> "FlowEntry":
        return cls(
            branch=task.branch,
            title=task.title,
            phase=task.phase.value,
            pr_number=task.pr_number,
            pr_url=task.pr_url,
            issue_id=task.memory_ref,
            task=task,
        )

    @classmethod
    def from_legacy(cls, state: FlowState) -> "FlowEntry":
        canonical = state.canonical_phase()
        return cls(
            branch=state.branch,
            title=state.title,
            phase=canonical.value if canonical is not None else state.phase,
            pr_number=state.pr_number,
            pr_url=state.pr_url,
            issue_id=state.issue_id,
            legacy=state,
        )

    @property
    def display_phase(self) -> str:
        return format_pr_phase(self.pr_status) if self.pr_status is not None else self.phase


def _line(entry: FlowEntry) -> str:
    return f"{entry.branch:<30} {STATUS}  {entry.title}"


class StatusAggregator:
    """Lists flows and resolves their PR state concurrently.

    Args:
        flow: Orchestrator providing the project, stores, tracker and renderer.
        interval: Spinner repaint interval (defaults to the configured one).
    """

    def __init__(self, flow: FlowOrchestrator, interval: float | None = None) -> None:
        self.flow = flow
        self.renderer = flow.renderer
        self.interval = interval

    def entries(self) -> list[FlowEntry]:
        """Flows with a task file in a sandbox worktree, then legacy-only flows."""
        entries: list[FlowEntry] = []
        seen: set[str] = set()
        for state in self.flow.lifecycle.store.list_all():
            task = TaskStore(state.worktree_path).load_optional()
            if task is not None:
                entries.append(FlowEntry.from_task(task))
                seen.add(task.branch)
        for legacy in self.flow.legacy.list_all():
            if legacy.branch not in seen:
                entries.append(FlowEntry.from_legacy(legacy))
        return entries

    def resolve_pr_states(self, entries: list[FlowEntry]) -> None:
        """Fetch PR states for all entries with a PR, painting progress live.

        Sets ``pr_status`` on each entry whose fetch succeeded. Returns once
        every line is resolved; with no entries it returns immediately.
        """
        tracker = self.flow.tracker
        spinner = LineSpinner(
            len(entries),
            stream=self.renderer.stream,
            theme=self.renderer.theme,
            interval=self.interval,
        )
        pending: list[tuple[int, FlowEntry]] = []
        for i, entry in enumerate(entries):
            spinner.set_line(i, _line(entry))
            if entry.pr_number and tracker.can_view_pr:
                pending.append((i, entry))
            else:
                spinner.resolve(i, f"{entry.phase:<15}")

        def fetch(index: int, entry: FlowEntry) -> None:
            try:
                entry.pr_status = tracker.fetch_pr_status(entry.pr_number, entry.pr_url)
            finally:
                spinner.resolve(index, f"{entry.display_phase:<15}")

        with ThreadPoolExecutor(max_workers=MAX_FETCH_WORKERS) as pool:
            futures = [pool.submit(fetch, i, entry) for i, entry in pending]
            try:
                spinner.run()
            finally:
                spinner.stop()
            for future in futures:
                future.result()

    def status(self, branch: str = "") -> list[FlowEntry]:
        """Show one flow in detail, or all flows with their live PR state."""
        if branch:
            return [self._status_one(branch)]

        entries = self.entries()
        if not entries:
            self.renderer.text("No active flows.")
            return entries
        if not any(e.pr_number for e in entries) or not self.flow.tracker.can_view_pr:
            for entry in entries:
                self.renderer.text(f"{entry.branch:<30} {entry.phase:<15}  {entry.title}")
            return entries
        self.resolve_pr_states(entries)
        return entries

    def _status_one(self, branch: str) -> FlowEntry:
        task = self.flow.task_store(branch).load_optional()
        if task is not None:
            entry = FlowEntry.from_task(task)
        else:
            legacy = self.flow.legacy.load(branch)
            if legacy is None:
                raise FlowError(f"no flow found for branch {branch!r}")
            entry = FlowEntry.from_legacy(legacy)

        text = self.renderer.text
        text(f"Branch:      {entry.branch}")
        text(f"Title:       {entry.title}")
        description = task.description if task is not None else entry.legacy.description
        if description:
            text(f"Description: {description}")

        if entry.pr_number and self.flow.tracker.can_view_pr:
            spinner = LineSpinner(1, stream=self.renderer.stream, theme=self.renderer.theme, interval=self.interval)
            spinner.set_line(0, f"Phase:       {STATUS}")

            def fetch() -> None:
                try:
                    entry.pr_status = self.flow.tracker.fetch_pr_status(entry.pr_number, entry.pr_url)
                finally:
                    spinner.resolve(0, entry.display_phase)

            with ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(fetch)
                spinner.run()
                future.result()
        else:
            text(f"Phase:       {entry.phase}")

        if entry.issue_id:
            issue = self.flow.tracker.view_issue(entry.issue_id)
            if issue is not None and issue.title:
                state = f" ({issue.state.lower()})" if issue.state else ""
                text(f"Issue:       #{entry.issue_id} {issue.title}{state}")
            else:
                text(f"Issue:       #{entry.issue_id}")
        if entry.pr_url:
            text(f"PR:          {entry.pr_url}")
        if entry.pr_status is not None:
            if entry.pr_status.merged_at:
                text(f"Merged at:   {entry.pr_status.merged_at}")
            if entry.pr_status.closed_at:
                text(f"Closed at:   {entry.pr_status.closed_at}")

        if task is not None:
            if task.plan:
                text(f"Plan:        {task.plan}")
            if task.verify_failures:
                text(f"Verify failures: {len(task.verify_failures)}")
                for failure in task.verify_failures:
                    text(f"  - [{failure.timestamp.isoformat(timespec='seconds')}] {failure.reason}")
            created, updated = task.created_at, task.updated_at
        else:
            text(f"Auto mode:   {entry.legacy.auto_mode}")
            created, updated = entry.legacy.created_at, entry.legacy.updated_at
        text(f"Created:     {created.isoformat(timespec='seconds')}")
        text(f"Updated:     {updated.isoformat(timespec='seconds')}")

        latest = self.flow.reports(branch).latest()
        if latest is not None:
            text(f"Latest report ({latest.type}): {latest.title}")
        return entry

    def clean_merged(self, answer: Callable[[str], str]) -> list[str]:
        """Clean up every flow whose PR is merged, after confirmation.

        Args:
            answer: Asks the user a question and returns the reply; only
                ``y``/``yes`` confirms.

        Returns:
            The branches that were cleaned.
        """
        if not self.flow.tracker.can_view_pr:
            raise FlowError("no pr.view command configured - add [workflow.pr] view to .cbox.toml")
        entries = self.entries()
        if not entries:
            self.renderer.text("No active flows.")
            return []

        self.resolve_pr_states(entries)
        merged = [e for e in entries if e.pr_status is not None and e.pr_status.is_merged]
        if not merged:
            self.renderer.text("No merged flows to clean up.")
            return []

        self.renderer.text("\nThe following merged flows will be cleaned up:")
        for entry in merged:
            self.renderer.text(f"  - {entry.branch} ({entry.title})")
        if answer("Remove these flows? [y/N]").strip().lower() not in CONFIRM_ANSWERS:
            self.renderer.text("Aborted.")
            return []

        for entry in merged:
            self.flow.cleanup(entry.branch, label=f"Cleaning up {entry.branch}")
        logger.info("merged_flows_cleaned", count=len(merged))
        self.renderer.success(f"Done. Cleaned up {len(merged)} merged flow(s).")
        return [e.branch for e in merged]

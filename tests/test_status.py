"""Tests for workflow/status.py -- the Concurrent Status Aggregator."""

import io
import json
from pathlib import Path
from typing import Any

import pytest

from cbox.errors import FlowError
from cbox.models.project import IssueCommands, ProjectConfig, PRCommands, WorkflowConfig
from cbox.models.schemas import FlowState
from cbox.workflow import agent
from cbox.workflow.flow import FlowOrchestrator
from cbox.workflow.status import StatusAggregator
from cbox.workflow.tracker import Tracker
from tests.conftest import RecordingRunner

WORKFLOW = WorkflowConfig(
    issue=IssueCommands(create="issue-create", close="issue-close"),
    pr=PRCommands(create="pr-create", merge="pr-merge", view="pr-view"),
)


class PerPRRunner(RecordingRunner):
    """Answers ``pr-view`` with the state configured for each PR number."""

    def __init__(self, states: dict[str, str] | None = None) -> None:
        super().__init__()
        self.states = states or {}

    def __call__(self, command: str, variables: dict[str, str] | None = None, cwd: Any = None) -> str:
        output = super().__call__(command, variables, cwd)
        if "pr-view" in command:
            number = (variables or {})["PRNumber"]
            return json.dumps({"number": int(number), "state": self.states[number]})
        return output


@pytest.fixture(autouse=True)
def _no_claude(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(agent, "ask_claude", lambda prompt, model=None: "")


@pytest.fixture()
def runner() -> PerPRRunner:
    return PerPRRunner()


@pytest.fixture()
def make_flow(project_dir: Path, make_lifecycle, renderer, runner: PerPRRunner):
    def _make(workflow: WorkflowConfig = WORKFLOW) -> FlowOrchestrator:
        config = ProjectConfig(workflow=workflow)
        return FlowOrchestrator(
            project_dir,
            config=config,
            lifecycle=make_lifecycle(config),
            tracker=Tracker(config.workflow, runner=runner),
            renderer=renderer,
            ask=lambda question: "a",
        )

    return _make


def _with_pr(flow: FlowOrchestrator, description: str, number: str) -> str:
    branch = flow.new(description)
    store = flow.task_store(branch)
    task = store.load()
    task.pr_number = number
    task.pr_url = f"https://github.com/acme/app/pull/{number}"
    store.save(task)
    return branch


# =========================================================================
# status
# =========================================================================


class TestStatus:
    """Listing flows."""

    def test_no_flows(self, make_flow, output: io.StringIO) -> None:
        assert StatusAggregator(make_flow(), interval=0.01).status() == []
        assert "No active flows." in output.getvalue()

    def test_local_phases_without_pr_view(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow(WORKFLOW.model_copy(update={"pr": PRCommands(create="pr-create")}))
        branch = _with_pr(flow, "add rate limiting to the api", "7")

        entries = StatusAggregator(flow, interval=0.01).status()
        assert [(e.branch, e.phase) for e in entries] == [(branch, "new")]
        assert "pr-view" not in " ".join(runner.commands())
        assert f"{branch:<30} new" in output.getvalue()

    def test_live_pr_states(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow()
        merged = _with_pr(flow, "add rate limiting to the api", "7")
        open_ = _with_pr(flow, "fix login bug", "8")
        plain = flow.new("write release notes")
        runner.states = {"7": "MERGED", "8": "OPEN"}

        entries = {e.branch: e for e in StatusAggregator(flow, interval=0.01).status()}
        assert set(entries) == {merged, open_, plain}
        assert entries[merged].display_phase == "merged"
        assert entries[open_].display_phase == "pr-open"
        assert entries[plain].pr_status is None
        assert entries[plain].display_phase == "new"

        painted = output.getvalue()
        assert "merged" in painted and "pr-open" in painted
        assert "\033[" not in painted
        assert f"{merged:<30} merged" in painted

    def test_failed_fetch_keeps_local_phase(self, make_flow, runner: PerPRRunner) -> None:
        flow = make_flow()
        _with_pr(flow, "add rate limiting to the api", "7")
        runner.failures = {"pr-view"}

        (entry,) = StatusAggregator(flow, interval=0.01).status()
        assert entry.pr_status is None
        assert entry.display_phase == "new"

    def test_legacy_flows_are_listed(self, make_flow) -> None:
        flow = make_flow()
        branch = flow.new("add rate limiting to the api")
        for name in ("old-flow", branch):
            path = flow.legacy.path_for(name)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(FlowState(branch=name, title="Old", phase="executing").model_dump_json())

        entries = StatusAggregator(flow).entries()
        assert [(e.branch, e.legacy is not None) for e in entries] == [(branch, False), ("old-flow", True)]
        assert entries[1].phase == "implementation"

    def test_single_flow_detail(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow()
        branch = _with_pr(flow, "add rate limiting to the api", "7")
        runner.states = {"7": "OPEN"}

        (entry,) = StatusAggregator(flow, interval=0.01).status(branch)
        assert entry.display_phase == "pr-open"
        text = output.getvalue()
        assert f"Branch:      {branch}" in text
        assert "Phase:       pr-open" in text
        assert "PR:          https://github.com/acme/app/pull/7" in text

    def test_single_flow_shows_issue(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow(WORKFLOW.model_copy(update={"issue": IssueCommands(view="issue-view")}))
        branch = flow.new("add rate limiting to the api")
        store = flow.task_store(branch)
        task = store.load()
        task.memory_ref = "12"
        store.save(task)
        runner.outputs["issue-view"] = json.dumps({"number": 12, "title": "Rate limiting", "state": "OPEN"})

        StatusAggregator(flow, interval=0.01).status(branch)
        assert "Issue:       #12 Rate limiting (open)" in output.getvalue()
        assert runner.variables_for("issue-view") == [{"IssueID": "12"}]

    def test_unknown_flow(self, make_flow) -> None:
        with pytest.raises(FlowError, match="no flow found"):
            StatusAggregator(make_flow()).status("ghost")


# =========================================================================
# clean_merged
# =========================================================================


class TestCleanMerged:
    """Bulk cleanup of merged flows."""

    def test_requires_pr_view(self, make_flow) -> None:
        flow = make_flow(WORKFLOW.model_copy(update={"pr": PRCommands(create="pr-create")}))
        with pytest.raises(FlowError, match="pr.view"):
            StatusAggregator(flow).clean_merged(lambda question: "y")

    def test_declined(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow()
        branch = _with_pr(flow, "add rate limiting to the api", "7")
        runner.states = {"7": "MERGED"}

        assert StatusAggregator(flow, interval=0.01).clean_merged(lambda question: "n") == []
        assert "Aborted." in output.getvalue()
        assert flow.lifecycle.store.exists(branch)

    def test_confirmed(self, make_flow, runner: PerPRRunner) -> None:
        flow = make_flow()
        merged = _with_pr(flow, "add rate limiting to the api", "7")
        still_open = _with_pr(flow, "fix login bug", "8")
        runner.states = {"7": "MERGED", "8": "OPEN"}

        assert StatusAggregator(flow, interval=0.01).clean_merged(lambda question: "yes") == [merged]
        assert not flow.lifecycle.store.exists(merged)
        assert flow.lifecycle.store.exists(still_open)

    def test_nothing_merged(self, make_flow, runner: PerPRRunner, output: io.StringIO) -> None:
        flow = make_flow()
        _with_pr(flow, "add rate limiting to the api", "7")
        runner.states = {"7": "OPEN"}

        assert StatusAggregator(flow, interval=0.01).clean_merged(lambda question: "y") == []
        assert "No merged flows to clean up." in output.getvalue()

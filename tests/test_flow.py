"""Tests for workflow/flow.py -- the Flow Orchestrator.

Sandboxes, the tracker and the host-side Claude calls are faked. The
example scenario walks a task from ``new`` to ``merge``.
"""

import io
from pathlib import Path

import pytest

from cbox.errors import ConfigError, FlowError
from cbox.models.project import IssueCommands, ProjectConfig, PRCommands, WorkflowConfig
from cbox.models.schemas import FlowState, Phase
from cbox.workflow import agent
from cbox.workflow.flow import FlowOrchestrator
from cbox.workflow.tracker import Tracker
from tests.conftest import FakeRuntime, FakeWorktrees, RecordingRunner

BRANCH = "add-rate-limiting"
PR_URL = "https://github.com/acme/app/pull/7"
PR_OPEN = '{"number": 7, "state": "OPEN"}'
PR_MERGED = '{"number": 7, "state": "MERGED", "mergedAt": "2026-10-01T12:00:00Z"}'

WORKFLOW = WorkflowConfig(
    issue=IssueCommands(
        create="issue-create",
        close="issue-close",
        set_status="issue-status",
        comment="issue-comment",
    ),
    pr=PRCommands(create="pr-create", merge="pr-merge", view="pr-view"),
)


@pytest.fixture(autouse=True)
def _no_claude(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(agent, "ask_claude", lambda prompt, model=None: "")


@pytest.fixture()
def runner() -> RecordingRunner:
    return RecordingRunner(outputs={"issue-create": "42", "pr-create": PR_URL, "pr-view": PR_OPEN})


@pytest.fixture()
def make_flow(project_dir: Path, make_lifecycle, renderer, runner: RecordingRunner):
    def _make(config: ProjectConfig | None = None, answers: list[str] | None = None) -> FlowOrchestrator:
        config = config or ProjectConfig(workflow=WORKFLOW)
        pending = list(answers or [])
        return FlowOrchestrator(
            project_dir,
            config=config,
            lifecycle=make_lifecycle(config),
            tracker=Tracker(config.workflow, runner=runner),
            renderer=renderer,
            ask=lambda question: pending.pop(0) if pending else "a",
        )

    return _make


@pytest.fixture()
def flow(make_flow) -> FlowOrchestrator:
    return make_flow()


def _phase(flow: FlowOrchestrator, branch: str = BRANCH) -> Phase:
    return flow.task_store(branch).load().phase


def _set_phase(flow: FlowOrchestrator, phase: Phase, branch: str = BRANCH, **fields: str) -> None:
    store = flow.task_store(branch)
    task = store.load()
    task.phase = phase
    for name, value in fields.items():
        setattr(task, name, value)
    store.save(task)


# =========================================================================
# Example scenario
# =========================================================================


class TestScenario:
    """new -> shape -> ready -> run -> pr -> verify -> merge."""

    def test_full_flow(self, flow: FlowOrchestrator, runner: RecordingRunner, runtime: FakeRuntime) -> None:
        branch = flow.new("add rate limiting to the api")
        assert branch == BRANCH
        task = flow.task_store(branch).load()
        assert task.phase == Phase.NEW
        assert task.container == "cbox-proj-add-rate-limiting-claude"

        assert flow.shape(branch)
        task = flow.task_store(branch).load()
        assert task.phase == Phase.SHAPING
        assert task.memory_ref == "42"
        assert task.plan == ".cbox/plan.md"
        assert flow.task_store(branch).plan_exists()
        assert "SHAPING MODE" in runtime.interactive_calls[-1][1][-1]

        flow.ready(branch)
        assert _phase(flow) == Phase.READY
        assert runner.variables_for("issue-status")[-1] == {"IssueID": "42", "Status": "ready"}

        flow.run(branch)
        assert _phase(flow) == Phase.IMPLEMENTATION
        assert "IMPLEMENTATION MODE" in runtime.interactive_calls[-1][1][-1]

        assert flow.pr(branch) == PR_URL
        task = flow.task_store(branch).load()
        assert (task.phase, task.pr_number, task.pr_url) == (Phase.VERIFICATION, "7", PR_URL)
        assert runner.variables_for("issue-status")[-1]["Status"] == "review"
        assert "git push -u origin $Branch" in runner.commands()

        with pytest.raises(FlowError, match="verify pass"):
            flow.merge(branch)
        assert "pr-merge" not in runner.commands()

        flow.verify_fail(branch, "tests fail")
        task = flow.task_store(branch).load()
        assert task.phase == Phase.IMPLEMENTATION
        assert [f.reason for f in task.verify_failures] == ["tests fail"]

        flow.run(branch)
        assert "tests fail" in runtime.interactive_calls[-1][1][-1]

        flow.pr(branch)
        flow.verify_pass(branch)
        assert _phase(flow) == Phase.DONE

        flow.merge(branch)
        assert runner.variables_for("pr-merge") == [{"PRNumber": "7", "PRURL": PR_URL}]
        assert runner.variables_for("issue-close") == [{"IssueID": "42"}]
        assert not flow.lifecycle.store.exists(branch)
        assert not flow.worktree_for(branch).exists()


# =========================================================================
# New
# =========================================================================


class TestNew:
    """Task creation."""

    def test_requires_workflow(self, make_flow) -> None:
        with pytest.raises(ConfigError, match="flow init"):
            make_flow(ProjectConfig()).new("something")

    def test_requires_description(self, flow: FlowOrchestrator) -> None:
        with pytest.raises(FlowError, match="description is required"):
            flow.new("   ")

    def test_branch_suffix_when_taken(self, flow: FlowOrchestrator, worktrees: FakeWorktrees) -> None:
        worktrees.branches.update({BRANCH, f"{BRANCH}-2"})
        branch = flow.new("add rate limiting to the api")
        assert branch == f"{BRANCH}-3"
        assert flow.task_store(branch).load().slug == f"{BRANCH}-3"

    def test_branch_template(self, make_flow) -> None:
        config = ProjectConfig(workflow=WORKFLOW.model_copy(update={"branch": "feature/$Slug"}))
        assert make_flow(config).new("add rate limiting to the api") == f"feature/{BRANCH}"

    def test_regenerate_then_accept(self, make_flow, output: io.StringIO) -> None:
        flow = make_flow(answers=["x", "r", "a"])
        flow.new("add rate limiting to the api")
        assert "Invalid choice" in output.getvalue()
        assert "Regenerating" in output.getvalue()

    def test_yolo_runs_through_to_pr(self, flow: FlowOrchestrator, runtime: FakeRuntime) -> None:
        branch = flow.new("add rate limiting to the api", yolo=True)
        task = flow.task_store(branch).load()
        assert task.phase == Phase.VERIFICATION
        assert task.pr_url == PR_URL
        prompts_sent = [arg[-3] for m, arg in runtime.calls if m == "exec"]
        assert "YOLO SHAPING MODE" in prompts_sent[0]
        assert "YOLO mode" in prompts_sent[1]


# =========================================================================
# Shape / Ready / Run
# =========================================================================


class TestPhaseCommands:
    """Phase preconditions."""

    def test_ready_requires_shaping(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        with pytest.raises(FlowError, match="must be in shaping"):
            flow.ready(BRANCH)

    def test_ready_requires_plan(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.SHAPING)
        with pytest.raises(FlowError, match="no plan found"):
            flow.ready(BRANCH)
        assert _phase(flow) == Phase.SHAPING

    def test_run_from_new_is_refused(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        with pytest.raises(FlowError, match="must be in 'ready'"):
            flow.run(BRANCH)
        assert _phase(flow) == Phase.NEW

    def test_run_from_shaping_needs_plan(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.SHAPING)
        with pytest.raises(FlowError, match="no plan exists"):
            flow.run(BRANCH)

    def test_run_from_shaping_with_plan(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        flow.shape(BRANCH)
        flow.run(BRANCH)
        assert _phase(flow) == Phase.IMPLEMENTATION

    def test_shape_resume_continues_conversation(self, flow: FlowOrchestrator, runtime: FakeRuntime) -> None:
        flow.new("add rate limiting to the api")
        flow.shape(BRANCH)
        flow.shape(BRANCH)
        assert runtime.interactive_calls[-1][1][-1] == "--continue"

    def test_shape_reopen_declined(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.READY)
        assert flow.shape(BRANCH, confirm_reopen=lambda question: False) is False
        assert _phase(flow) == Phase.READY

    def test_shape_done_task(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.DONE)
        with pytest.raises(FlowError, match="task is done"):
            flow.shape(BRANCH)

    def test_externally_merged_pr_marks_done(self, flow: FlowOrchestrator, runner: RecordingRunner) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.VERIFICATION, pr_number="7", pr_url=PR_URL)
        runner.outputs["pr-view"] = PR_MERGED
        with pytest.raises(FlowError, match="merged"):
            flow.run(BRANCH)
        assert _phase(flow) == Phase.DONE

    def test_resume_implementation_with_history(self, flow: FlowOrchestrator, runtime: FakeRuntime) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.IMPLEMENTATION)
        runtime.history = True
        flow.run(BRANCH)
        assert runtime.interactive_calls[-1][1][-1] == "--continue"


# =========================================================================
# Verify / PR / Merge / Abandon
# =========================================================================


class TestFinishing:
    """Verification, PRs and cleanup."""

    def test_verify_fail_requires_reason_before_loading(self, flow: FlowOrchestrator) -> None:
        with pytest.raises(FlowError, match="reason is required"):
            flow.verify_fail("no-such-branch", " ")

    def test_pr_uses_done_report(self, flow: FlowOrchestrator, runner: RecordingRunner) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.IMPLEMENTATION)
        flow.report(BRANCH, "done", "Summary", "Added a token bucket limiter")
        flow.pr(BRANCH)
        assert runner.variables_for("pr-create")[0]["Description"] == "Added a token bucket limiter"

    def test_pr_refused_when_done(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.DONE)
        with pytest.raises(FlowError, match="cannot create PR"):
            flow.pr(BRANCH)

    def test_pr_without_number_warns(self, flow: FlowOrchestrator, runner: RecordingRunner, output: io.StringIO) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.IMPLEMENTATION)
        runner.outputs["pr-create"] = "created"
        assert flow.pr(BRANCH) == "created"
        assert "Could not parse PR number" in output.getvalue()

    def test_abandon(self, flow: FlowOrchestrator, runner: RecordingRunner) -> None:
        flow.new("add rate limiting to the api")
        flow.shape(BRANCH)
        flow.abandon(BRANCH)
        assert runner.variables_for("issue-status")[-1] == {"IssueID": "42", "Status": "cancelled"}
        assert runner.variables_for("issue-close") == [{"IssueID": "42"}]
        assert not flow.lifecycle.store.exists(BRANCH)

    def test_unknown_flow(self, flow: FlowOrchestrator) -> None:
        with pytest.raises(FlowError, match="no flow found"):
            flow.merge("ghost")

    def test_legacy_flow_merges_without_gate(
        self, flow: FlowOrchestrator, runner: RecordingRunner, project_dir: Path
    ) -> None:
        path = flow.legacy.path_for("old-flow")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(FlowState(branch="old-flow", phase="pr-open", pr_number="3", issue_id="9").model_dump_json())

        flow.merge("old-flow")
        assert runner.variables_for("pr-merge") == [{"PRNumber": "3", "PRURL": ""}]
        assert runner.variables_for("issue-close") == [{"IssueID": "9"}]
        assert not path.exists()

    def test_legacy_pr_updates_record(self, flow: FlowOrchestrator) -> None:
        path = flow.legacy.path_for("old-flow")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(FlowState(branch="old-flow", title="Old", phase="executing").model_dump_json())

        flow.pr("old-flow")
        assert flow.legacy.load("old-flow").pr_number == "7"


# =========================================================================
# Chat / Open / Report
# =========================================================================


class TestAuxiliary:
    """chat, open and report."""

    def test_chat_uses_phase_prompt(self, flow: FlowOrchestrator, runtime: FakeRuntime) -> None:
        flow.new("add rate limiting to the api")
        _set_phase(flow, Phase.IMPLEMENTATION)
        assert flow.chat(BRANCH) == 0
        assert "IMPLEMENTATION MODE" in runtime.interactive_calls[-1][1][-1]

    def test_open_runs_in_worktree(self, flow: FlowOrchestrator) -> None:
        flow.new("add rate limiting to the api")
        flow.open(BRANCH, 'touch "$Dir/opened"')
        assert (flow.worktree_for(BRANCH) / "opened").exists()

    def test_open_without_command(self, flow: FlowOrchestrator) -> None:
        with pytest.raises(ConfigError, match="no open command"):
            flow.open(BRANCH)

    def test_report_validation(self, flow: FlowOrchestrator) -> None:
        with pytest.raises(FlowError, match="unknown report type"):
            flow.report(BRANCH, "bogus", "title")
        with pytest.raises(FlowError, match="title is required"):
            flow.report(BRANCH, "note", "  ")

    def test_init_adds_workflow(self, make_flow, project_dir: Path) -> None:
        flow = make_flow(ProjectConfig())
        flow.init()
        assert flow.config.workflow is not None
        assert flow.tracker.can_view_pr
        assert ".cbox/" in (project_dir / ".gitignore").read_text()

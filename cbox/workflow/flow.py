"""Flow Orchestrator: drives a task through its phases.

Each operation loads the task (``<worktree>/.cbox/task.json``), performs
its phase-specific side effects through the sandbox lifecycle and the
tracker, and persists the result. Flows started by older versions only
have a legacy ``FlowState`` record; PR, merge and abandon still work for
them.

Usage:
    flow = FlowOrchestrator(project_dir, renderer=Renderer())
    branch = flow.new("add rate limiting to the API")
    flow.shape(branch)
    flow.ready(branch)
    flow.run(branch)
    flow.verify_pass(branch)
    flow.merge(branch)
"""

from collections.abc import Callable
from pathlib import Path

import click
import structlog
from docker.errors import DockerException

from cbox.errors import CboxError, ConfigError, FlowError, SandboxNotFoundError
from cbox.models.project import (
    ProjectConfig,
    WorkflowConfig,
    append_workflow_config,
    ensure_gitignored,
    load_project_config,
)
from cbox.models.schemas import PHASE_ORDER, FlowState, Phase, Report, Task
from cbox.output.render import Renderer
from cbox.sandbox.lifecycle import SandboxLifecycle, UpOptions
from cbox.workflow import agent, prompts
from cbox.workflow.editor import edit_title_description
from cbox.workflow.flow_state import LegacyFlowStore
from cbox.workflow.reports import ReportStore
from cbox.workflow.task import (
    TaskStore,
    check_merge_gate,
    mark_done,
    set_phase,
    verify_fail,
    verify_pass,
)
from cbox.workflow.template import expand_vars, run_shell_command
from cbox.workflow.tracker import IssueTrackerSync, Tracker, parse_pr_output

logger = structlog.get_logger(__name__)

MAX_BRANCH_SUFFIX = 100
PLAN_REF = ".cbox/plan.md"

Ask = Callable[[str], str]
Confirm = Callable[[str], bool]


def _ask(question: str) -> str:
    return click.prompt(question, default="", show_default=False)


class FlowOrchestrator:
    """Runs flow operations for one project.

    Args:
        project_dir: The main project checkout.
        config: Project configuration (loaded from ``.cbox.toml`` if omitted).
        lifecycle: Sandbox lifecycle used to start, chat with and clean sandboxes.
        tracker: Issue/PR collaborator.
        renderer: User-facing output.
        ask: Reads one line of user input (Accept/Edit/Regenerate).
    """

    def __init__(
        self,
        project_dir: str | Path,
        config: ProjectConfig | None = None,
        lifecycle: SandboxLifecycle | None = None,
        tracker: Tracker | None = None,
        renderer: Renderer | None = None,
        ask: Ask = _ask,
    ) -> None:
        self.project_dir = Path(project_dir).resolve()
        self.config = config if config is not None else load_project_config(self.project_dir)
        self.renderer = renderer or Renderer()
        self.lifecycle = lifecycle or SandboxLifecycle(self.project_dir, config=self.config, renderer=self.renderer)
        self.tracker = tracker or Tracker(self.config.workflow)
        self.sync = IssueTrackerSync(self.tracker)
        self.legacy = LegacyFlowStore(self.project_dir)
        self.ask = ask

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _workflow(self) -> WorkflowConfig:
        if self.config.workflow is None:
            raise ConfigError("no workflow config - run 'cbox flow init' first")
        return self.config.workflow

    def worktree_for(self, branch: str) -> Path:
        """Worktree of a branch, from its sandbox record or the naming convention."""
        try:
            return Path(self.lifecycle.store.load(branch).worktree_path)
        except SandboxNotFoundError:
            return self.lifecycle.worktrees.path_for(branch)

    def task_store(self, branch: str) -> TaskStore:
        return TaskStore(self.worktree_for(branch))

    def _load(self, branch: str) -> tuple[Task, TaskStore]:
        store = self.task_store(branch)
        return store.load(), store

    def reports(self, branch: str) -> ReportStore:
        return ReportStore(self.project_dir, branch)

    def _check_merged(self, task: Task, store: TaskStore) -> None:
        """Refuse to continue a task whose PR was merged outside cbox.

        Raises:
            FlowError: If the PR is merged (the task is marked done first).
        """
        status = self.tracker.fetch_pr_status(task.pr_number, task.pr_url)
        if status is not None and status.is_merged:
            mark_done(task, store)
            raise FlowError("PR has been merged - task is done")

    # ------------------------------------------------------------------
    # Init / New
    # ------------------------------------------------------------------

    def init(self) -> Path:
        """Add the default ``[workflow]`` section to ``.cbox.toml``."""
        path = append_workflow_config(self.project_dir)
        ensure_gitignored(self.project_dir)
        self.config = load_project_config(self.project_dir)
        self.tracker.workflow = self.config.workflow
        self.renderer.success(f"Added workflow config to {path.name}")
        self.renderer.text("Defaults use the 'gh' CLI. Edit the [workflow] section to use a different tracker.")
        return path

    def _confirm_task(self, title: str, description: str, rough: str) -> tuple[str, str]:
        """Accept / Edit / Regenerate loop."""
        while True:
            self.renderer.text(f"\nTitle: {title}\n\n{description}\n")
            choice = self.ask("[A]ccept  [E]dit  [R]egenerate").strip().lower()
            if choice in ("", "a", "accept"):
                return title, description
            if choice in ("e", "edit"):
                try:
                    return edit_title_description(title, description, self.config.editor)
                except (ConfigError, FlowError) as e:
                    self.renderer.warning(f"Editor error: {e} - try again.")
            elif choice in ("r", "regenerate"):
                title, description = self.renderer.spin("Regenerating", lambda: agent.polish_task(rough))
            else:
                self.renderer.warning("Invalid choice. Enter A, E, or R.")

    def resolve_branch(self, template: str, slug: str) -> tuple[str, str]:
        """Branch for ``slug``, adding ``-2``..``-99`` if the branch already exists."""
        branch = expand_vars(template or "$Slug", {"Slug": slug})
        worktrees = self.lifecycle.worktrees
        if not worktrees.branch_exists(branch):
            return branch, slug
        for i in range(2, MAX_BRANCH_SUFFIX):
            candidate = f"{branch}-{i}"
            if not worktrees.branch_exists(candidate):
                return candidate, f"{slug}-{i}"
        return branch, slug

    def new(self, rough: str, yolo: bool = False) -> str:
        """Create a task from a rough description and start its sandbox.

        With ``yolo`` the description is accepted as polished and the task
        continues straight through planning, implementation and PR.

        Returns:
            The task branch.

        Raises:
            ConfigError: If no workflow is configured.
            FlowError: If the description is empty or a task already exists.
        """
        workflow = self._workflow()
        rough = rough.strip()
        if not rough:
            raise FlowError("a task description is required")

        title, description = self.renderer.spin("Polishing task", lambda: agent.polish_task(rough))
        if yolo:
            self.renderer.success(f"Task: {title}")
        else:
            title, description = self._confirm_task(title, description, rough)

        slug = agent.slugify(title)
        branch, slug = self.resolve_branch(workflow.branch, slug)
        store = self.task_store(branch)
        if store.exists():
            hint = f"cbox flow run --yolo {branch}" if yolo else f"cbox flow shape {branch}"
            raise FlowError(f"task already exists for branch {branch!r} - use '{hint}' to continue")

        state = self.lifecycle.up(branch, UpOptions(flow_branch=branch))
        store = TaskStore(state.worktree_path)
        task = Task(
            slug=slug,
            branch=branch,
            title=title,
            description=description,
            container=state.claude_container,
        )
        store.save(task)
        logger.info("task_created", branch=branch, slug=slug)
        self.renderer.success(f"Task created on branch '{branch}'.")

        if yolo:
            self._yolo_pipeline(task, store)
        else:
            self.renderer.text(f"Next: run 'cbox flow shape {branch}' to begin planning.")
        return branch

    def _write_plan_scaffold(self, task: Task, store: TaskStore) -> None:
        if not store.plan_exists():
            store.plan_path.parent.mkdir(parents=True, exist_ok=True)
            store.plan_path.write_text(prompts.plan_scaffold(task.title), encoding="utf-8")
        if task.plan != PLAN_REF:
            task.plan = PLAN_REF
            store.save(task)

    def _yolo_pipeline(self, task: Task, store: TaskStore) -> None:
        set_phase(task, Phase.SHAPING, store, self.sync)
        self._write_plan_scaffold(task, store)

        self.renderer.progress("Generating plan")
        self.renderer.render(self.lifecycle.chat_prompt(task.branch, prompts.shaping_prompt(task, yolo=True)))

        task = store.load()
        if not store.plan_exists():
            raise FlowError(f"plan generation did not produce a plan file - debug with 'cbox flow shape {task.branch}'")
        if task.phase == Phase.SHAPING:
            set_phase(task, Phase.READY, store, self.sync)
        self.renderer.success("Plan ready")

        self.renderer.progress("Running implementation (yolo mode)")
        self.run(task.branch, yolo=True)

    # ------------------------------------------------------------------
    # Shape / Ready / Run
    # ------------------------------------------------------------------

    def shape(self, branch: str, confirm_reopen: Confirm | None = None) -> bool:
        """Enter or resume shaping and open a chat with the shaping prompt.

        ``confirm_reopen`` is asked before re-opening shaping from a later
        phase; without it the task is re-opened directly.

        Returns:
            False if the user declined to re-open shaping.

        Raises:
            FlowError: If the task is done or its PR was merged.
        """
        task, store = self._load(branch)
        self._check_merged(task, store)

        already_shaping = task.phase == Phase.SHAPING
        if not already_shaping:
            if task.phase == Phase.DONE:
                raise FlowError("task is done - cannot re-enter shaping")
            if task.phase != Phase.NEW and confirm_reopen is not None:
                if not confirm_reopen(f"Task is in phase {task.phase.value!r}. Re-enter shaping?"):
                    return False
            set_phase(task, Phase.SHAPING, store, self.sync)

        self._write_plan_scaffold(task, store)
        prompt = "" if already_shaping else prompts.shaping_prompt(task)
        self.lifecycle.chat(branch, prompt=prompt, resume=already_shaping)
        return True

    def ready(self, branch: str) -> Task:
        """Mark shaping complete.

        Raises:
            FlowError: If the task is not shaping or has no plan.
        """
        task, store = self._load(branch)
        if task.phase != Phase.SHAPING:
            raise FlowError(f"task is in phase {task.phase.value!r} - must be in shaping to mark ready")
        if not store.plan_exists():
            raise FlowError("no plan found - write a plan before marking ready")
        set_phase(task, Phase.READY, store, self.sync)
        self.renderer.success(f"Task '{branch}' is ready for implementation.")
        return task

    def run(self, branch: str, yolo: bool = False) -> None:
        """Enter implementation and hand the task to the agent.

        Interactive runs open (or resume) a chat; yolo runs the agent
        headless and then creates the PR.

        Raises:
            FlowError: If shaping is not complete or the PR was merged.
        """
        task, store = self._load(branch)
        self._check_merged(task, store)

        already_implementing = task.phase == Phase.IMPLEMENTATION
        if not already_implementing:
            if task.phase == Phase.SHAPING:
                if not store.plan_exists():
                    raise FlowError(
                        f"task is in shaping phase and no plan exists - run 'cbox flow shape {branch}' first"
                    )
                set_phase(task, Phase.READY, store, self.sync)
            elif task.phase != Phase.READY:
                raise FlowError(
                    f"cannot start implementation from phase {task.phase.value!r} - task must be in 'ready' phase"
                )
            set_phase(task, Phase.IMPLEMENTATION, store, self.sync)

        custom_yolo = self.config.workflow.prompts.yolo if self.config.workflow else ""
        prompt = prompts.implementation_prompt(task, yolo=yolo, custom_yolo=custom_yolo)

        if yolo:
            self.renderer.progress("Running in yolo mode")
            self.renderer.render(self.lifecycle.chat_prompt(branch, prompt))
            self.renderer.progress("Creating PR")
            self.pr(branch)
            return

        resume = already_implementing and self._has_history(branch)
        self.lifecycle.chat(branch, prompt="" if resume else prompt, resume=resume)

    def _has_history(self, branch: str) -> bool:
        try:
            found = self.lifecycle.has_conversation_history(branch)
        except (CboxError, DockerException) as e:
            self.renderer.warning(f"Could not check conversation history: {e}")
            return False
        if not found:
            self.renderer.warning("No conversation history found - starting fresh session")
        return found

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_pass(self, branch: str) -> Task:
        task, store = self._load(branch)
        verify_pass(task, store, self.sync)
        self.renderer.success(f"Task verified. Run 'cbox flow merge {branch}' to merge the PR.")
        return task

    def verify_fail(self, branch: str, reason: str) -> Task:
        """Record a failed verification.

        Raises:
            FlowError: If no reason is given (checked before anything is loaded).
        """
        if not reason.strip():
            raise FlowError("reason is required - use --reason to explain what needs fixing")
        task, store = self._load(branch)
        verify_fail(task, reason, store, self.sync)
        self.renderer.warning(f"Verification failed: {reason.strip()}")
        self.renderer.text(f"Task moved back to implementation. Run 'cbox flow run {branch}' to address the issues.")
        return task

    # ------------------------------------------------------------------
    # PR / Merge / Abandon
    # ------------------------------------------------------------------

    def _records(self, branch: str) -> tuple[Task | None, TaskStore, FlowState | None]:
        store = self.task_store(branch)
        task = store.load_optional()
        legacy = self.legacy.load(branch) if task is None else None
        if task is None and legacy is None:
            raise FlowError(f"no flow found for branch {branch!r}")
        return task, store, legacy

    def pr(self, branch: str) -> str:
        """Push the branch, open a PR and advance the task to verification.

        Returns:
            The PR URL.

        Raises:
            FlowError: If the task is done.
            ConfigError: If no PR create command is configured.
            CommandError: If pushing or creating the PR fails.
        """
        task, store, legacy = self._records(branch)
        if task is not None and task.phase == Phase.DONE:
            raise FlowError("task is done - cannot create PR")
        if legacy is not None and legacy.phase in ("done", "abandoned"):
            raise FlowError(f"flow is in {legacy.phase!r} phase - cannot create PR")

        title = task.title if task is not None else legacy.title
        done_report = self.reports(branch).latest("done")
        fallback = task.description if task is not None else legacy.description
        description = (done_report.body if done_report else "") or fallback or title
        worktree = store.worktree_path

        self.renderer.spin("Pushing branch", lambda: self.tracker.push_branch(branch, worktree))
        output = self.renderer.spin(
            "Creating PR", lambda: self.tracker.create_pr(title, description, branch, worktree)
        )
        try:
            url, number = parse_pr_output(output)
        except ValueError:
            url, number = output, ""
        if not number:
            self.renderer.warning(f"Could not parse PR number from: {output}")

        if task is not None:
            task.pr_url, task.pr_number = url, number
            store.save(task)
            if PHASE_ORDER.index(task.phase) < PHASE_ORDER.index(Phase.VERIFICATION):
                set_phase(task, Phase.VERIFICATION, store)
            issue_id = task.memory_ref
        else:
            legacy.pr_url, legacy.pr_number = url, number
            self.legacy.update(legacy)
            issue_id = legacy.issue_id

        self.tracker.update_issue(issue_id, status="review", comment=f"PR created: {url}")
        logger.info("pr_created", branch=branch, url=url, number=number)
        self.renderer.success(f"PR created: {url}")
        self.renderer.text(f"To merge: cbox flow merge {branch}")
        return url

    def cleanup(self, branch: str, label: str = "Cleaning up sandbox") -> None:
        """Remove the sandbox, legacy record and reports of a finished flow."""
        try:
            self.renderer.spin(label, lambda: self.lifecycle.clean(branch))
        except (CboxError, DockerException, OSError) as e:
            self.renderer.warning(f"Sandbox cleanup failed for {branch}: {e}")
        self.legacy.remove(branch)
        self.reports(branch).remove_all()

    def _finish(self, branch: str, issue_id: str, status: str) -> None:
        self.tracker.update_issue(issue_id, status=status, close=True)
        self.cleanup(branch)

    def merge(self, branch: str) -> None:
        """Merge the PR of a verified task and clean everything up.

        Raises:
            FlowError: If the task is not done (the verify gate).
            CommandError: If the merge command fails.
        """
        task, _, legacy = self._records(branch)
        check_merge_gate(task)

        number = task.pr_number if task is not None else legacy.pr_number
        url = task.pr_url if task is not None else legacy.pr_url
        if not number and url:
            try:
                number = parse_pr_output(url)[1]
            except ValueError:
                number = ""

        merged = False
        if url or number:
            merged = self.renderer.spin("Merging PR", lambda: self.tracker.merge_pr(number, url))
        if not merged:
            self.renderer.warning("No PR merge command configured - merge manually.")

        issue_id = task.memory_ref if task is not None else legacy.issue_id
        self._finish(branch, issue_id, "done")
        logger.info("flow_merged", branch=branch)
        self.renderer.success("Flow complete.")

    def abandon(self, branch: str) -> None:
        """Cancel a flow: close its issue and remove the sandbox."""
        task, _, legacy = self._records(branch)
        title = task.title if task is not None else legacy.title
        issue_id = task.memory_ref if task is not None else legacy.issue_id
        self._finish(branch, issue_id, "cancelled")
        logger.info("flow_abandoned", branch=branch)
        self.renderer.success(f"Flow '{title}' abandoned.")

    # ------------------------------------------------------------------
    # Chat / Open / Report
    # ------------------------------------------------------------------

    def chat(self, branch: str) -> int:
        """Resume the agent session, or start one with the current phase's prompt."""
        task, _ = self._load(branch)
        if self._has_history(branch):
            return self.lifecycle.chat(branch, resume=True)
        match task.phase:
            case Phase.SHAPING:
                prompt = prompts.shaping_prompt(task)
            case Phase.IMPLEMENTATION:
                prompt = prompts.implementation_prompt(task)
            case _:
                prompt = ""
        return self.lifecycle.chat(branch, prompt=prompt)

    def open(self, branch: str, command: str = "") -> None:
        """Run the open command (``$Dir`` is the worktree).

        Raises:
            ConfigError: If no open command is given or configured.
            CommandError: If the command fails.
        """
        open_cmd = command.strip() or self.config.open
        if not open_cmd:
            raise ConfigError("no open command configured - add 'open' to .cbox.toml or pass --command")
        run_shell_command(open_cmd, {"Dir": str(self.worktree_for(branch))})

    def report(self, branch: str, report_type: str, title: str, body: str = "") -> Report:
        """File a report for ``branch``.

        Raises:
            FlowError: If the report type is unknown or the title is empty.
        """
        if not title.strip():
            raise FlowError("a report title is required")
        report = Report(type=report_type, title=title.strip(), body=body)
        try:
            self.reports(branch).add(report)
        except ValueError as e:
            raise FlowError(str(e)) from e
        self.renderer.success(f"Report filed: {report.title}")
        return report


__all__ = ["FlowOrchestrator"]

"""Issue tracker and pull request collaborators.

Every call is a templated shell command from the ``[workflow]`` section of
``.cbox.toml`` (GitHub CLI by default). Issue updates are best effort: a
failing tracker is logged and never blocks local workflow state.
"""

import re
from collections.abc import Callable
from pathlib import Path

import structlog
from pydantic import ValidationError

from cbox.errors import CommandError, ConfigError
from cbox.models.project import CONFIG_FILE, IssueCommands, PRCommands, WorkflowConfig
from cbox.models.schemas import IssueInfo, PRStatus, Task
from cbox.workflow.template import run_shell_command

logger = structlog.get_logger(__name__)

Runner = Callable[..., str]

_PR_URL = re.compile(r"https://github\.com/\S+/pull/(\d+)")
_TRAILING_NUMBER = re.compile(r"/(\d+)\s*$")

PUSH_COMMAND = "git push -u origin $Branch"


def parse_pr_output(output: str) -> tuple[str, str]:
    """Extract ``(url, number)`` from the output of the PR create command.

    The number is empty when it cannot be found; the URL then falls back to
    the whole output.

    Raises:
        ValueError: If the output is empty.
    """
    output = output.strip()
    if not output:
        raise ValueError("empty PR output")
    match = _PR_URL.search(output)
    if match:
        return match.group(0), match.group(1)
    fallback = _TRAILING_NUMBER.search(output)
    return output, fallback.group(1) if fallback else ""


def parse_pr_json(text: str) -> PRStatus:
    """Parse ``gh pr view --json`` output.

    Raises:
        ValueError: If the text is not a valid PR document.
    """
    try:
        return PRStatus.model_validate_json(text)
    except ValidationError as e:
        raise ValueError(f"parsing PR JSON: {e}") from e


def parse_issue_json(text: str) -> IssueInfo:
    """Parse ``gh issue view --json`` output.

    Raises:
        ValueError: If the text is not a valid issue document.
    """
    try:
        return IssueInfo.model_validate_json(text)
    except ValidationError as e:
        raise ValueError(f"parsing issue JSON: {e}") from e


def format_pr_phase(status: PRStatus) -> str:
    """Display label for a PR state."""
    match status.state.upper():
        case "MERGED":
            return "merged"
        case "CLOSED":
            return "closed"
        case "OPEN":
            return "pr-open"
        case _:
            return status.state.lower()


class Tracker:
    """Runs the configured issue and PR commands.

    Args:
        workflow: The ``[workflow]`` config; None means nothing is configured.
        runner: Command runner, ``run_shell_command`` by default.
    """

    def __init__(self, workflow: WorkflowConfig | None, runner: Runner = run_shell_command) -> None:
        self.workflow = workflow
        self.runner = runner

    @property
    def issue(self) -> IssueCommands:
        return self.workflow.issue if self.workflow else IssueCommands()

    @property
    def pr(self) -> PRCommands:
        return self.workflow.pr if self.workflow else PRCommands()

    # Issues

    def create_issue(self, title: str, description: str) -> str:
        """Create an issue and return its id, or "" if no create command is set.

        Raises:
            CommandError: If the command fails.
        """
        if not self.issue.create:
            return ""
        return self.runner(self.issue.create, {"Title": title, "Description": description}).strip()

    def view_issue(self, issue_id: str) -> IssueInfo | None:
        """Fetch an issue; a non-JSON view command yields its raw output as the body."""
        if not self.issue.view or not issue_id:
            return None
        try:
            output = self.runner(self.issue.view, {"IssueID": issue_id})
        except CommandError as e:
            logger.warning("issue_view_failed", issue_id=issue_id, error=str(e))
            return None
        try:
            return parse_issue_json(output)
        except ValueError:
            return IssueInfo(body=output)

    def update_issue(self, issue_id: str, status: str = "", comment: str = "", close: bool = False) -> None:
        """Set status, comment and/or close an issue. Failures are logged only."""
        if not issue_id:
            return
        steps: list[tuple[str, str, dict[str, str]]] = []
        if status and self.issue.set_status:
            steps.append(("set_status", self.issue.set_status, {"IssueID": issue_id, "Status": status}))
        if comment and self.issue.comment:
            steps.append(("comment", self.issue.comment, {"IssueID": issue_id, "Body": comment}))
        if close and self.issue.close:
            steps.append(("close", self.issue.close, {"IssueID": issue_id}))
        for step, command, variables in steps:
            try:
                self.runner(command, variables)
            except CommandError as e:
                logger.warning("tracker_sync_failed", step=step, issue_id=issue_id, error=str(e))

    # Pull requests

    def push_branch(self, branch: str, cwd: str | Path) -> None:
        self.runner(PUSH_COMMAND, {"Branch": branch}, cwd=cwd)

    def create_pr(self, title: str, description: str, branch: str, cwd: str | Path) -> str:
        """Create a PR from ``cwd`` and return the command output.

        Raises:
            ConfigError: If no create command is configured.
            CommandError: If the command fails.
        """
        if not self.pr.create:
            raise ConfigError(f"no PR create command configured - add [workflow.pr] create to {CONFIG_FILE}")
        return self.runner(
            self.pr.create,
            {"Title": title, "Description": description, "Branch": branch},
            cwd=cwd,
        )

    def merge_pr(self, number: str, url: str) -> bool:
        """Merge a PR. Returns False when no merge command is configured.

        Raises:
            CommandError: If the command fails.
        """
        if not self.pr.merge:
            return False
        self.runner(self.pr.merge, {"PRNumber": number, "PRURL": url})
        return True

    @property
    def can_view_pr(self) -> bool:
        return bool(self.pr.view)

    def view_pr(self, number: str, url: str = "") -> PRStatus:
        """Fetch a PR's status.

        Raises:
            ConfigError: If no view command is configured.
            CommandError: If the command fails.
            ValueError: If the output is not valid PR JSON.
        """
        if not self.pr.view:
            raise ConfigError(f"no pr.view command configured - add [workflow.pr] view to {CONFIG_FILE}")
        return parse_pr_json(self.runner(self.pr.view, {"PRNumber": number, "PRURL": url}))

    def fetch_pr_status(self, number: str, url: str = "") -> PRStatus | None:
        """Like ``view_pr`` but None when there is no PR or the fetch fails."""
        if not number or not self.can_view_pr:
            return None
        try:
            return self.view_pr(number, url)
        except (CommandError, ValueError) as e:
            logger.warning("pr_status_fetch_failed", pr_number=number, error=str(e))
            return None


class IssueTrackerSync:
    """Sync hook mirroring task phases to the issue tracker.

    The first sync creates the issue and records its id on the task; later
    syncs label the issue with the phase and leave a comment.
    """

    def __init__(self, tracker: Tracker) -> None:
        self.tracker = tracker

    def __call__(self, task: Task) -> bool:
        if not task.memory_ref:
            try:
                issue_id = self.tracker.create_issue(task.title, task.description)
            except CommandError as e:
                logger.warning("tracker_sync_failed", step="create", branch=task.branch, error=str(e))
                return False
            if issue_id:
                task.memory_ref = issue_id
                logger.info("issue_created", branch=task.branch, issue_id=issue_id)
                return True
            return False
        self.tracker.update_issue(
            task.memory_ref,
            status=task.phase.value,
            comment=f"Phase changed to: {task.phase.value}",
        )
        return False

"""Task State Machine: phases, transition rules and the task file.

A task lives in ``<worktree>/.cbox/task.json`` and moves through the phases
``new < shaping < ready < implementation < verification < done``.

Allowed transitions:
    - any forward move, including skipped phases;
    - ``verification -> implementation`` (rework after a failed review);
    - ``ready | implementation | verification -> shaping`` (re-open planning).

Two operator commands widen the table on purpose: ``verify pass`` jumps to
``done`` from any unfinished phase and ``verify fail`` jumps back to
``implementation`` from any started, unfinished phase.
"""

from pathlib import Path
from typing import Protocol

import structlog
from pydantic import ValidationError

from cbox.errors import FlowError, InvalidTransitionError, TaskNotFoundError
from cbox.models.schemas import PHASE_ORDER, Phase, Task, VerifyFailure, utc_now
from cbox.storage import atomic_write_text, state_dir

logger = structlog.get_logger(__name__)

TASK_FILE = "task.json"
PLAN_FILE = "plan.md"

_REOPEN_SHAPING_FROM = frozenset({Phase.READY, Phase.IMPLEMENTATION, Phase.VERIFICATION})


def _parse_phase(value: Phase | str, role: str) -> Phase:
    try:
        return Phase(value)
    except ValueError:
        raise InvalidTransitionError(f"invalid {role} phase: {value!r}") from None


def validate_transition(current: Phase | str, target: Phase | str) -> None:
    """Check that ``current -> target`` is allowed.

    Raises:
        InvalidTransitionError: Naming the offending phases.
    """
    src = _parse_phase(current, "current")
    dst = _parse_phase(target, "target")
    if src == dst:
        raise InvalidTransitionError(f"already in phase {src.value!r}")
    if PHASE_ORDER.index(dst) > PHASE_ORDER.index(src):
        return
    if src == Phase.VERIFICATION and dst == Phase.IMPLEMENTATION:
        return
    if dst == Phase.SHAPING and src in _REOPEN_SHAPING_FROM:
        return
    raise InvalidTransitionError(f"cannot transition from {src.value!r} to {dst.value!r}")


class SyncHook(Protocol):
    """Pushes task state to an external system.

    Returns True when it changed the task (for example by recording a new
    issue reference) so the caller persists it again. Implementations must
    not raise.
    """

    def __call__(self, task: Task) -> bool: ...


class TaskStore:
    """Reads and writes the task file of one worktree."""

    def __init__(self, worktree_path: str | Path) -> None:
        self.worktree_path = Path(worktree_path)

    @property
    def path(self) -> Path:
        return state_dir(self.worktree_path) / TASK_FILE

    @property
    def plan_path(self) -> Path:
        return state_dir(self.worktree_path) / PLAN_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def plan_exists(self) -> bool:
        return self.plan_path.is_file()

    def load(self) -> Task:
        """Load the task.

        Raises:
            TaskNotFoundError: If there is no task file.
            FlowError: If the file cannot be parsed.
        """
        try:
            data = self.path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise TaskNotFoundError(str(self.worktree_path)) from e
        try:
            return Task.model_validate_json(data)
        except ValidationError as e:
            raise FlowError(f"parsing task file {self.path}: {e}") from e

    def save(self, task: Task) -> None:
        """Persist the whole task atomically, stamping ``updated_at``."""
        task.updated_at = utc_now()
        atomic_write_text(self.path, task.model_dump_json(indent=2))

    def load_optional(self) -> Task | None:
        try:
            return self.load()
        except TaskNotFoundError:
            return None


def _sync(task: Task, store: TaskStore, sync: SyncHook | None) -> None:
    if sync is not None and sync(task):
        store.save(task)


def set_phase(task: Task, target: Phase, store: TaskStore, sync: SyncHook | None = None) -> None:
    """Validate, apply and persist a phase change, then sync it.

    On any failure before the task is written the in-memory phase is left
    unchanged.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
    """
    validate_transition(task.phase, target)
    previous = task.phase
    task.phase = target
    try:
        store.save(task)
    except OSError:
        task.phase = previous
        raise
    logger.info("task_phase_changed", branch=task.branch, previous=previous.value, phase=target.value)
    _sync(task, store, sync)


def _force_phase(task: Task, target: Phase, store: TaskStore, sync: SyncHook | None) -> None:
    previous = task.phase
    task.phase = target
    store.save(task)
    logger.info("task_phase_forced", branch=task.branch, previous=previous.value, phase=target.value)
    _sync(task, store, sync)


def verify_pass(task: Task, store: TaskStore, sync: SyncHook | None = None) -> None:
    """Jump to ``done`` from any unfinished phase.

    Raises:
        FlowError: If the task is already done.
    """
    if task.phase == Phase.DONE:
        raise FlowError("task is already done")
    _force_phase(task, Phase.DONE, store, sync)


def verify_fail(task: Task, reason: str, store: TaskStore, sync: SyncHook | None = None) -> VerifyFailure:
    """Record a failed verification and send the task back to implementation.

    Raises:
        FlowError: If ``reason`` is empty, or the task is new or done.
    """
    reason = reason.strip()
    if not reason:
        raise FlowError("reason is required - use --reason to explain what needs fixing")
    if task.phase == Phase.DONE:
        raise FlowError("task is already done - cannot fail verification")
    if task.phase == Phase.NEW:
        raise FlowError("task has not started yet - nothing to verify")
    failure = VerifyFailure(reason=reason)
    task.verify_failures.append(failure)
    _force_phase(task, Phase.IMPLEMENTATION, store, sync)
    return failure


def mark_done(task: Task, store: TaskStore) -> None:
    """Record that the task's pull request was merged outside cbox."""
    if task.phase != Phase.DONE:
        _force_phase(task, Phase.DONE, store, None)


def check_merge_gate(task: Task | None) -> None:
    """Merging requires a verified task. Legacy flows without a task pass.

    Raises:
        FlowError: If the task is not done.
    """
    if task is not None and task.phase != Phase.DONE:
        raise FlowError(
            f"task is in phase {task.phase.value!r} - run 'cbox flow verify pass {task.branch}' before merging"
        )

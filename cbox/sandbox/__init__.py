"""Sandbox management for cbox.

- state: ``SessionStore``, one JSON state file per branch
- supervisor: ``ProcessSupervisor`` for detached helper processes
- lifecycle: ``SandboxLifecycle`` with up / down / clean
- docker_runtime, worktree, serve, bridge, hostcmd: external collaborators
"""

from cbox.sandbox.docker_runtime import DockerRuntime
from cbox.sandbox.lifecycle import SandboxLifecycle, UpOptions
from cbox.sandbox.state import SessionStore
from cbox.sandbox.supervisor import HelperProcess, ProcessSupervisor
from cbox.sandbox.worktree import Worktrees

__all__ = [
    "DockerRuntime",
    "HelperProcess",
    "ProcessSupervisor",
    "SandboxLifecycle",
    "SessionStore",
    "UpOptions",
    "Worktrees",
]

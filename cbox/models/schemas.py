"""Pydantic models for the records cbox persists or exchanges.

Every durable record (sandbox state, task, legacy flow state, report) is a
single JSON document written with ``model_dump_json`` and read back with
``model_validate_json``. Transient records (PR status, issue info, helper
handshakes) share the same models so parsing is validated in one place.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Phase(StrEnum):
    """Task workflow phases, declared in their fixed order."""

    NEW = "new"
    SHAPING = "shaping"
    READY = "ready"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    DONE = "done"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class ProxyMapping(BaseModel):
    """A host socket republished on a TCP port by the bridge proxy."""

    socket_name: str = Field(description="File name of the socket in the bridge directory")
    tcp_port: int = Field(description="Host TCP port relaying to the socket")


class HelperHandshake(BaseModel):
    """The single JSON line a helper process prints once it is ready."""

    port: int = Field(ge=0, description="Listening port; 0 only when the helper has nothing to serve")
    mappings: list[ProxyMapping] = Field(default_factory=list)


class SandboxState(BaseModel):
    """Resources that exist for one (project, branch) sandbox.

    ``Down`` clears the transient fields (running flag, ports, helper pids,
    serve details) but keeps the identifiers so ``Clean`` can still find the
    container, network and worktree.
    """

    branch: str
    project_dir: str
    worktree_path: str
    claude_container: str = ""
    claude_image: str = ""
    network_name: str = ""
    running: bool = False
    ports: list[str] = Field(default_factory=list)

    bridge_proxy_pid: int = 0
    bridge_mappings: list[ProxyMapping] = Field(default_factory=list)
    command_proxy_pid: int = 0
    command_proxy_port: int = 0

    serve_pid: int = 0
    serve_port: int = 0
    serve_url: str = ""

    def clear_transient(self) -> None:
        """Reset the fields that only describe a running sandbox."""
        self.running = False
        self.ports = []
        self.bridge_proxy_pid = 0
        self.bridge_mappings = []
        self.command_proxy_pid = 0
        self.command_proxy_port = 0
        self.serve_pid = 0
        self.serve_port = 0
        self.serve_url = ""


class VerifyFailure(BaseModel):
    """One failed verification, kept forever as part of the audit trail."""

    model_config = ConfigDict(frozen=True)

    reason: str
    timestamp: datetime = Field(default_factory=utc_now)


class Task(BaseModel):
    """The durable workflow record stored in ``<worktree>/.cbox/task.json``."""

    version: int = 1
    slug: str
    branch: str
    title: str
    description: str = ""
    phase: Phase = Phase.NEW
    container: str = ""
    plan: str = ""
    memory_ref: str = Field(default="", description="Issue tracker reference backing this task")
    pr_url: str = ""
    pr_number: str = ""
    verify_failures: list[VerifyFailure] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class FlowState(BaseModel):
    """Legacy per-branch flow record, ``<project>/.cbox/flow-<branch>.json``.

    Deprecated: new flows only write ``Task``. These files are still read so
    flows started by older versions can be inspected, merged or abandoned.
    The free-form ``phase`` string is mapped onto ``Phase`` where possible.
    """

    branch: str
    title: str = ""
    description: str = ""
    phase: str = ""
    issue_id: str = ""
    pr_url: str = ""
    pr_number: str = ""
    auto_mode: bool = False
    chatted: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def canonical_phase(self) -> Phase | None:
        """Map the legacy phase string onto the six-phase enum, if it fits."""
        legacy = {
            "started": Phase.IMPLEMENTATION,
            "research": Phase.SHAPING,
            "planning": Phase.SHAPING,
            "executing": Phase.IMPLEMENTATION,
            "pr-open": Phase.VERIFICATION,
            "abandoned": Phase.DONE,
        }
        try:
            return Phase(self.phase)
        except ValueError:
            return legacy.get(self.phase)


class PRStatus(BaseModel):
    """Pull request status as reported by the PR view command."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: int | None = None
    state: str = ""
    title: str = ""
    url: str = ""
    merged_at: str = Field(default="", alias="mergedAt")
    closed_at: str = Field(default="", alias="closedAt")

    @field_validator("merged_at", "closed_at", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> str:
        return "" if v is None else v

    @property
    def is_merged(self) -> bool:
        return self.state.upper() == "MERGED"


class IssueInfo(BaseModel):
    """Issue details as reported by the issue view command."""

    model_config = ConfigDict(extra="ignore")

    number: int | None = None
    title: str = ""
    body: str = ""
    state: str = ""
    url: str = ""
    labels: list[str] = Field(default_factory=list)

    @field_validator("labels", mode="before")
    @classmethod
    def label_names(cls, v: Any) -> list[str]:
        """Accept both plain names and GitHub's ``{"name": ...}`` objects."""
        if v is None:
            return []
        return [item["name"] if isinstance(item, dict) else str(item) for item in v]


class Report(BaseModel):
    """A structured report filed by the agent from inside the sandbox."""

    type: str
    title: str
    body: str = ""
    created_at: datetime = Field(default_factory=utc_now)

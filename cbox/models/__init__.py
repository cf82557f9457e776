"""Data models for cbox.

- schemas: persisted and exchanged records (sandbox state, task, phases,
  legacy flow state, PR/issue status, reports, helper handshakes)
- project: the ``.cbox.toml`` project configuration
"""

from cbox.models.project import (
    CONFIG_FILE,
    ProjectConfig,
    ServeConfig,
    WorkflowConfig,
    load_project_config,
)
from cbox.models.schemas import (
    PHASE_ORDER,
    FlowState,
    HelperHandshake,
    IssueInfo,
    Phase,
    PRStatus,
    ProxyMapping,
    Report,
    SandboxState,
    Task,
    VerifyFailure,
)

__all__ = [
    "CONFIG_FILE",
    "PHASE_ORDER",
    "FlowState",
    "HelperHandshake",
    "IssueInfo",
    "Phase",
    "PRStatus",
    "ProjectConfig",
    "ProxyMapping",
    "Report",
    "SandboxState",
    "ServeConfig",
    "Task",
    "VerifyFailure",
    "WorkflowConfig",
    "load_project_config",
]

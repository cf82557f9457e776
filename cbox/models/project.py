"""Per-project configuration stored in ``.cbox.toml``.

The file is parsed with ``tomllib`` and validated with pydantic models so
typos surface as a clear error instead of silently ignored keys.

Usage:
    config = load_project_config(project_dir)
    if config.workflow and config.workflow.pr.view:
        ...
"""

import tomllib
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cbox.errors import ConfigError

CONFIG_FILE = ".cbox.toml"


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ServeConfig(_Section):
    """Dev server started on the host and routed through Traefik."""

    command: str = ""
    port: int = Field(default=0, description="Fixed port; 0 allocates a free one")
    proxy_port: int = Field(default=80, description="Host port the shared Traefik listens on")


class IssueCommands(_Section):
    create: str = ""
    view: str = ""
    close: str = ""
    set_status: str = ""
    comment: str = ""


class PRCommands(_Section):
    create: str = ""
    merge: str = ""
    view: str = ""


class PromptOverrides(_Section):
    yolo: str = ""


class WorkflowConfig(_Section):
    """Templated shell commands used by the task workflow."""

    branch: str = "$Slug"
    issue: IssueCommands = Field(default_factory=IssueCommands)
    pr: PRCommands = Field(default_factory=PRCommands)
    prompts: PromptOverrides = Field(default_factory=PromptOverrides)


class ProjectConfig(_Section):
    """Top-level ``.cbox.toml`` contents."""

    commands: dict[str, str] = Field(default_factory=dict)
    env: list[str] = Field(default_factory=list)
    env_file: str = ""
    browser: bool = False
    host_commands: list[str] = Field(default_factory=list)
    dockerfile: str = ""
    open: str = ""
    editor: str = ""
    copy_files: list[str] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    serve: ServeConfig | None = None
    workflow: WorkflowConfig | None = None


DEFAULT_CONFIG_TOML = """\
# cbox project configuration

# Host environment variables forwarded into the sandbox container.
env = ["ANTHROPIC_API_KEY"]

# Host commands the agent may run through the command proxy.
host_commands = ["git", "gh"]

# Files copied from the project into each new worktree.
copy_files = [".env"]

# Port mappings published by the sandbox container ("host:container").
ports = []

# Command used by 'cbox flow open' ($Dir is the worktree path).
# open = "code $Dir"

# Named commands exposed inside the sandbox as cbox-<name>.
[commands]
build = "echo 'TODO: set your build command'"
test = "echo 'TODO: set your test command'"
run = "echo 'TODO: set your run command'"

# Dev server started on the host and routed through Traefik.
# [serve]
# command = "npm run dev -- --port $Port"
# proxy_port = 80
"""

DEFAULT_WORKFLOW_TOML = """\

[workflow]
branch = "$Slug"

[workflow.issue]
create = "gh issue create --title \\"$Title\\" --body \\"$Description\\" | grep -o '[0-9]*$'"
view = "gh issue view \\"$IssueID\\" --json number,title,body,labels,state,url"
close = "gh issue close \\"$IssueID\\""
set_status = "gh issue edit \\"$IssueID\\" --add-label \\"$Status\\""
comment = "gh issue comment \\"$IssueID\\" --body \\"$Body\\""

[workflow.pr]
create = "gh pr create --title \\"$Title\\" --body \\"$Description\\""
merge = "gh pr merge \\"$PRNumber\\" --merge"
view = "gh pr view \\"$PRNumber\\" --json number,state,title,url,mergedAt,closedAt"
"""


def config_path(project_dir: str | Path) -> Path:
    return Path(project_dir) / CONFIG_FILE


def load_project_config(project_dir: str | Path) -> ProjectConfig:
    """Load ``.cbox.toml`` from the project, or defaults if it is absent.

    Raises:
        ConfigError: If the file is not valid TOML or has unknown/invalid keys.
    """
    path = config_path(project_dir)
    if not path.exists():
        return ProjectConfig()
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
        return ProjectConfig.model_validate(data)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"reading {CONFIG_FILE}: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"invalid {CONFIG_FILE}: {e}") from e


def write_default_config(project_dir: str | Path) -> Path:
    """Create ``.cbox.toml`` with the default template.

    Raises:
        ConfigError: If the file already exists.
    """
    path = config_path(project_dir)
    if path.exists():
        raise ConfigError(f"{CONFIG_FILE} already exists")
    path.write_text(DEFAULT_CONFIG_TOML)
    return path


def append_workflow_config(project_dir: str | Path) -> Path:
    """Add the default ``[workflow]`` section, creating the file if needed.

    Raises:
        ConfigError: If a workflow section is already configured.
    """
    path = config_path(project_dir)
    if not path.exists():
        path.write_text(DEFAULT_CONFIG_TOML)
    if load_project_config(project_dir).workflow is not None:
        raise ConfigError(f"{CONFIG_FILE} already has a [workflow] section")
    with path.open("a") as f:
        f.write(DEFAULT_WORKFLOW_TOML)
    return path


def ensure_gitignored(project_dir: str | Path, entry: str = ".cbox/") -> bool:
    """Append ``entry`` to the project's .gitignore unless already listed.

    Returns:
        True if the file was changed.
    """
    path = Path(project_dir) / ".gitignore"
    existing = path.read_text() if path.exists() else ""
    if any(line.strip() in (entry, entry.rstrip("/")) for line in existing.splitlines()):
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with path.open("a") as f:
        f.write(f"{prefix}{entry}\n")
    return True

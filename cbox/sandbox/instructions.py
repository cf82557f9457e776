"""Content injected into the agent container after it starts.

Two things are injected: a system ``CLAUDE.md`` describing the sandbox,
and the command proxy client with one symlink per exposed command.
"""

from importlib import resources

from cbox.models.project import ProjectConfig
from cbox.sandbox.docker_runtime import CLAUDE_HOME, FileEntry
from cbox.sandbox.hostcmd import NAMED_PREFIX
from cbox.sandbox.hostcmd_client import CLIENT_NAME

BIN_DIR = f"{CLAUDE_HOME}/bin"
INSTRUCTIONS_PATH = f"{CLAUDE_HOME}/.claude/CLAUDE.md"

FLOW_TOOL_HELP = {
    "cbox-flow-ready": "mark the plan complete and advance the task to the ready phase",
    "cbox-flow-pr": "push the branch and open a pull request for the task",
    "cbox-report": "file a report: cbox-report --type plan|done --title TITLE --body BODY",
}


def build_instructions(config: ProjectConfig, exposed_commands: list[str]) -> str:
    """The system CLAUDE.md for a sandbox."""
    lines = [
        "# cbox sandbox",
        "",
        "You are running inside a cbox sandbox container.",
        "",
        "- The project checkout for this branch is mounted at /workspace.",
        "- The Docker socket is available; `docker` commands run against the host daemon.",
        "- Files under /workspace/.cbox/ are local workflow state. Never commit them.",
    ]
    if config.ports:
        lines.append(f"- Published ports (host:container): {', '.join(config.ports)}.")

    host = [c for c in exposed_commands if not c.startswith(NAMED_PREFIX)]
    named = [c for c in exposed_commands if c.startswith(NAMED_PREFIX) and c not in FLOW_TOOL_HELP]
    tools = [c for c in exposed_commands if c in FLOW_TOOL_HELP]

    if host:
        lines += [
            "",
            "## Host commands",
            "",
            "These commands run on the host in the matching directory of the checkout:",
            "",
            *[f"- `{c}`" for c in host],
        ]
    if named:
        lines += ["", "## Project commands", ""]
        for c in named:
            lines.append(f"- `{c}`: `{config.commands[c[len(NAMED_PREFIX):]]}`")
    if tools:
        lines += ["", "## Workflow tools", ""]
        lines += [f"- `{c}`: {FLOW_TOOL_HELP[c]}" for c in tools]
    return "\n".join(lines) + "\n"


def client_entries(exposed_commands: list[str]) -> list[FileEntry]:
    """The proxy client script plus one symlink per exposed command."""
    source = (resources.files("cbox.sandbox") / "hostcmd_client.py").read_bytes()
    client_path = f"{BIN_DIR}/{CLIENT_NAME}"
    entries = [FileEntry(path=client_path, content=source, mode=0o755)]
    entries += [
        FileEntry(path=f"{BIN_DIR}/{name}", symlink_to=client_path) for name in exposed_commands
    ]
    return entries

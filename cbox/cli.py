"""Command line interface for cbox.

Public commands manage branch sandboxes (``up``, ``down``, ``clean``...) and
the task workflow (``cbox flow ...``). Hidden commands starting with ``_``
are the entry points of the detached helper processes; cbox re-invokes
itself with them.
"""

import json
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from cbox import __version__
from cbox.config import configure_logging, settings
from cbox.errors import CboxError, ConfigError
from cbox.models.project import CONFIG_FILE, ensure_gitignored, write_default_config
from cbox.output.blocks import BlockKind
from cbox.output.render import Renderer
from cbox.sandbox.bridge import run_bridge_helper
from cbox.sandbox.hostcmd import run_command_proxy_helper
from cbox.sandbox.lifecycle import SandboxLifecycle, UpOptions
from cbox.sandbox.serve import run_serve_helper
from cbox.workflow.editor import edit_text
from cbox.workflow.flow import FlowOrchestrator
from cbox.workflow.reports import REPORT_TYPES
from cbox.workflow.status import StatusAggregator

console = Console()

DESCRIPTION_TEMPLATE = """
# Describe the task above.
# Lines starting with '#' will be ignored.
# An empty description aborts the flow.
"""


@dataclass
class CliContext:
    """Per-invocation state shared by commands; collaborators are built lazily."""

    project_dir: Path
    renderer: Renderer = field(default_factory=Renderer)
    _lifecycle: SandboxLifecycle | None = None
    _flow: FlowOrchestrator | None = None

    @property
    def lifecycle(self) -> SandboxLifecycle:
        if self._lifecycle is None:
            self._lifecycle = SandboxLifecycle(self.project_dir, renderer=self.renderer)
        return self._lifecycle

    @property
    def flow(self) -> FlowOrchestrator:
        if self._flow is None:
            lifecycle = self.lifecycle
            self._flow = FlowOrchestrator(
                self.project_dir,
                config=lifecycle.config,
                lifecycle=lifecycle,
                renderer=self.renderer,
            )
        return self._flow


pass_cli = click.make_pass_decorator(CliContext)


class CboxGroup(click.Group):
    """Turns ``CboxError`` into an error block and exit status 1."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except CboxError as e:
            Renderer(stream=sys.stderr).error(str(e))
            ctx.exit(1)


def _ask(question: str) -> str:
    return click.prompt(question, default="", show_default=False)


@click.group(cls=CboxGroup)
@click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project directory (defaults to the current directory).",
)
@click.version_option(__version__, prog_name="cbox")
@click.pass_context
def cli(ctx: click.Context, project: Path | None) -> None:
    """Sandboxed per-branch development environments for Claude Code."""
    configure_logging(settings.log_level, settings.log_format)
    ctx.obj = CliContext((project or Path.cwd()).resolve())


# ---------------------------------------------------------------------------
# Sandbox commands
# ---------------------------------------------------------------------------


@cli.command()
@pass_cli
def init(obj: CliContext) -> None:
    """Create a .cbox.toml config in the project."""
    write_default_config(obj.project_dir)
    ensure_gitignored(obj.project_dir)
    obj.renderer.success(f"Created {CONFIG_FILE}")
    obj.renderer.text("Edit the file to configure your commands, env vars, and host commands.")


@cli.command()
@click.argument("branch")
@click.option("--no-cache", is_flag=True, help="Rebuild the image without the layer cache.")
@pass_cli
def up(obj: CliContext, branch: str, no_cache: bool) -> None:
    """Create the worktree and start the sandbox for BRANCH."""
    state = obj.lifecycle.up(branch, UpOptions(no_cache=no_cache))
    obj.renderer.success(f"Sandbox for '{branch}' is running ({state.claude_container}).")
    obj.renderer.text(f"Worktree: {state.worktree_path}")
    if state.serve_url:
        obj.renderer.text(f"Serve:    {state.serve_url}")
    obj.renderer.text(f"Next: cbox chat {branch}")


@cli.command()
@click.argument("branch")
@pass_cli
def down(obj: CliContext, branch: str) -> None:
    """Stop the sandbox for BRANCH (keeps the worktree)."""
    obj.lifecycle.down(branch)
    obj.renderer.success(f"Sandbox for '{branch}' stopped. Worktree kept.")


@cli.command()
@click.argument("branch")
@pass_cli
def clean(obj: CliContext, branch: str) -> None:
    """Remove the sandbox, worktree and branch for BRANCH."""
    obj.lifecycle.clean(branch)
    obj.renderer.success(f"Sandbox for '{branch}' cleaned up.")


@cli.command()
@click.argument("branch")
@pass_cli
def info(obj: CliContext, branch: str) -> None:
    """Show the recorded state of the sandbox for BRANCH."""
    state = obj.lifecycle.info(branch)
    rows = [
        ("Branch", state.branch),
        ("Running", "yes" if state.running else "no"),
        ("Worktree", state.worktree_path),
        ("Container", state.claude_container),
        ("Image", state.claude_image),
        ("Network", state.network_name),
        ("Ports", ", ".join(state.ports) or "-"),
        ("Command proxy", f"pid {state.command_proxy_pid}, port {state.command_proxy_port}" if state.command_proxy_pid else "-"),
        ("Bridge proxy", f"pid {state.bridge_proxy_pid}, {len(state.bridge_mappings)} socket(s)" if state.bridge_proxy_pid else "-"),
        ("Serve", f"{state.serve_url} (pid {state.serve_pid}, port {state.serve_port})" if state.serve_pid else "-"),
    ]
    for label, value in rows:
        obj.renderer.text(f"{label + ':':<15}{value}")


@cli.command("list")
@pass_cli
def list_sandboxes(obj: CliContext) -> None:
    """List all tracked sandboxes."""
    states = obj.lifecycle.list_all()
    if not states:
        obj.renderer.text("No active sandboxes.")
        return

    table = Table(title="cbox sandboxes")
    table.add_column("Branch", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Serve", style="green")
    table.add_column("Worktree", style="dim")
    runtime = obj.lifecycle.runtime
    for state in states:
        status = "running" if runtime.container_running(state.claude_container) else "stopped"
        table.add_row(state.branch, status, state.serve_url or "-", state.worktree_path)
    console.print(table)


@cli.command()
@click.argument("branch")
@click.option("-p", "--prompt", default="", help="Run a one-shot prompt instead of an interactive session.")
@click.option("--resume", is_flag=True, help="Continue the previous conversation.")
@click.pass_context
def chat(ctx: click.Context, branch: str, prompt: str, resume: bool) -> None:
    """Start Claude Code in the sandbox for BRANCH."""
    obj: CliContext = ctx.obj
    if prompt:
        blocks = obj.lifecycle.chat_prompt(branch, prompt)
        obj.renderer.render(blocks)
        if any(b.kind == BlockKind.ERROR for b in blocks):
            ctx.exit(1)
        return
    ctx.exit(obj.lifecycle.chat(branch, resume=resume))


@cli.command()
@click.argument("branch")
@click.pass_context
def shell(ctx: click.Context, branch: str) -> None:
    """Open a shell in the sandbox container for BRANCH."""
    ctx.exit(ctx.obj.lifecycle.shell(branch))


@cli.command("exec", context_settings={"ignore_unknown_options": True})
@click.argument("branch")
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
def exec_command(ctx: click.Context, branch: str, command: tuple[str, ...]) -> None:
    """Run COMMAND in the sandbox container for BRANCH."""
    ctx.exit(ctx.obj.lifecycle.exec_interactive(branch, list(command)))


@cli.group()
def serve() -> None:
    """Manage the serve process of a sandbox."""


@serve.command("start")
@click.argument("branch")
@pass_cli
def serve_start(obj: CliContext, branch: str) -> None:
    """Start the serve process and its Traefik route."""
    state = obj.lifecycle.serve_start(branch)
    obj.renderer.success(f"Serving {branch} at {state.serve_url} (port {state.serve_port})")


@serve.command("stop")
@click.argument("branch")
@pass_cli
def serve_stop(obj: CliContext, branch: str) -> None:
    """Stop the serve process and remove its Traefik route."""
    obj.lifecycle.serve_stop(branch)
    obj.renderer.success(f"Serve stopped for {branch}")


@serve.command("logs")
@click.argument("branch")
@click.option("-f", "--follow", is_flag=True, help="Follow log output.")
@click.pass_context
def serve_logs(ctx: click.Context, branch: str, follow: bool) -> None:
    """Show the serve process output."""
    path = ctx.obj.lifecycle.serve_log_path(branch)
    if not path.exists():
        raise ConfigError(f"no serve log for {branch!r} - has 'cbox serve start {branch}' run?")
    argv = ["tail", "-n", "+1", *(["-f"] if follow else []), str(path)]
    ctx.exit(subprocess.run(argv).returncode)


# ---------------------------------------------------------------------------
# Flow commands
# ---------------------------------------------------------------------------


@cli.group()
def flow() -> None:
    """Task workflow: new, shape, ready, run, verify, pr, merge."""


@flow.command("init")
@pass_cli
def flow_init(obj: CliContext) -> None:
    """Add the default workflow config to .cbox.toml."""
    obj.flow.init()


@flow.command("new")
@click.argument("description", required=False, default="")
@click.option("--yolo", is_flag=True, help="Run planning, implementation and PR without stopping.")
@pass_cli
def flow_new(obj: CliContext, description: str, yolo: bool) -> None:
    """Create a task from DESCRIPTION (opens an editor if omitted)."""
    if not description:
        description = edit_text(DESCRIPTION_TEMPLATE, obj.flow.config.editor)
        if not description:
            raise ConfigError("aborting: empty description")
    obj.flow.new(description, yolo=yolo)


@flow.command("shape")
@click.argument("branch")
@pass_cli
def flow_shape(obj: CliContext, branch: str) -> None:
    """Enter or resume the shaping (planning) phase."""
    obj.flow.shape(branch, confirm_reopen=lambda question: click.confirm(question, default=False))


@flow.command("ready")
@click.argument("branch")
@pass_cli
def flow_ready(obj: CliContext, branch: str) -> None:
    """Mark the plan complete and advance to ready."""
    obj.flow.ready(branch)


@flow.command("run")
@click.argument("branch")
@click.option("--yolo", is_flag=True, help="Run headless and open a PR when done.")
@pass_cli
def flow_run(obj: CliContext, branch: str, yolo: bool) -> None:
    """Enter implementation and start (or resume) the agent."""
    obj.flow.run(branch, yolo=yolo)


@flow.group("verify")
def flow_verify() -> None:
    """Record the result of reviewing a task."""


@flow_verify.command("pass")
@click.argument("branch")
@pass_cli
def flow_verify_pass(obj: CliContext, branch: str) -> None:
    """Accept the work and mark the task done."""
    obj.flow.verify_pass(branch)


@flow_verify.command("fail")
@click.argument("branch")
@click.option("--reason", default="", help="What needs fixing (required).")
@pass_cli
def flow_verify_fail(obj: CliContext, branch: str, reason: str) -> None:
    """Reject the work and send the task back to implementation."""
    obj.flow.verify_fail(branch, reason)


@flow.command("pr")
@click.argument("branch")
@pass_cli
def flow_pr(obj: CliContext, branch: str) -> None:
    """Push the branch and create a pull request."""
    obj.flow.pr(branch)


@flow.command("merge")
@click.argument("branch")
@pass_cli
def flow_merge(obj: CliContext, branch: str) -> None:
    """Merge the PR of a verified task and clean up."""
    obj.flow.merge(branch)


@flow.command("abandon")
@click.argument("branch")
@pass_cli
def flow_abandon(obj: CliContext, branch: str) -> None:
    """Cancel the flow and clean up."""
    obj.flow.abandon(branch)


@flow.command("status")
@click.argument("branch", required=False, default="")
@pass_cli
def flow_status(obj: CliContext, branch: str) -> None:
    """Show one flow in detail, or all active flows."""
    StatusAggregator(obj.flow).status(branch)


@flow.command("clean")
@pass_cli
def flow_clean(obj: CliContext) -> None:
    """Remove local resources of flows whose PRs are merged."""
    StatusAggregator(obj.flow).clean_merged(_ask)


@flow.command("chat")
@click.argument("branch")
@click.pass_context
def flow_chat(ctx: click.Context, branch: str) -> None:
    """Open the agent session for the task's current phase."""
    ctx.exit(ctx.obj.flow.chat(branch))


@flow.command("open")
@click.argument("branch")
@click.option("--command", default="", help="Command to run instead of the configured one ($Dir is the worktree).")
@pass_cli
def flow_open(obj: CliContext, branch: str, command: str) -> None:
    """Run the open command for the task's worktree."""
    obj.flow.open(branch, command)


@flow.command("report")
@click.argument("branch")
@click.option("--type", "report_type", type=click.Choice(REPORT_TYPES), required=True)
@click.option("--title", required=True)
@click.option("--body", default="")
@pass_cli
def flow_report(obj: CliContext, branch: str, report_type: str, title: str, body: str) -> None:
    """File a structured report for the task."""
    obj.flow.report(branch, report_type, title, body)


# ---------------------------------------------------------------------------
# Helper process entry points
# ---------------------------------------------------------------------------


@cli.command("_bridge-proxy", hidden=True)
@click.argument("socket_dir")
def bridge_proxy(socket_dir: str) -> None:
    run_bridge_helper(socket_dir)


@cli.command("_cmd-proxy", hidden=True)
@click.option("--worktree", required=True)
@click.option("--host-commands", default="[]")
@click.option("--commands", "named_commands", default="{}")
@click.option("--builtins", default="{}")
def command_proxy(worktree: str, host_commands: str, named_commands: str, builtins: str) -> None:
    run_command_proxy_helper(
        worktree,
        json.loads(host_commands),
        json.loads(named_commands),
        json.loads(builtins),
    )


@cli.command("_serve-runner", hidden=True)
@click.option("--command", required=True)
@click.option("--port", type=int, default=0)
@click.option("--dir", "workdir", required=True)
def serve_runner(command: str, port: int, workdir: str) -> None:
    run_serve_helper(command, port, workdir)


def main() -> None:
    cli()

"""Tests for sandbox/state.py and storage.py -- the per-branch state files."""

from pathlib import Path

import pytest

from cbox.errors import CboxError, SandboxNotFoundError, SandboxStateError
from cbox.models.schemas import ProxyMapping, SandboxState
from cbox.sandbox.state import SessionStore
from cbox.storage import atomic_write_text, safe_branch, state_dir


def _state(project_dir: Path, branch: str, **kwargs: object) -> SandboxState:
    return SandboxState(
        branch=branch,
        project_dir=str(project_dir),
        worktree_path=f"/tmp/wt-{safe_branch(branch)}",
        **kwargs,
    )


# =========================================================================
# Storage helpers
# =========================================================================


class TestStorageHelpers:
    """Branch naming and atomic writes."""

    def test_safe_branch_replaces_slashes(self) -> None:
        assert safe_branch("feature/login/form") == "feature-login-form"
        assert safe_branch("main") == "main"

    def test_state_dir_is_dot_cbox(self, tmp_path: Path) -> None:
        assert state_dir(tmp_path) == tmp_path / ".cbox"

    def test_atomic_write_creates_parents_and_leaves_no_temp(self, tmp_path: Path) -> None:
        path = tmp_path / "a" / "b" / "file.json"
        atomic_write_text(path, "one")
        atomic_write_text(path, "two")
        assert path.read_text() == "two"
        assert [p.name for p in path.parent.iterdir()] == ["file.json"]


# =========================================================================
# SessionStore
# =========================================================================


class TestSessionStore:
    """Load, save, remove and list sandbox state."""

    def test_save_and_load(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        state = _state(
            project_dir,
            "feature/login",
            claude_container="cbox-proj-feature-login-claude",
            running=True,
            bridge_mappings=[ProxyMapping(socket_name="a.sock", tcp_port=5000)],
        )
        store.save(state)

        assert store.path_for("feature/login").name == "feature-login.state.json"
        loaded = store.load("feature/login")
        assert loaded == state

    def test_load_missing_raises_not_found(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        with pytest.raises(SandboxNotFoundError) as exc_info:
            store.load("nope")
        assert exc_info.value.branch == "nope"
        assert isinstance(exc_info.value, FileNotFoundError)
        assert isinstance(exc_info.value, CboxError)
        assert "cbox up nope" in str(exc_info.value)

    def test_load_corrupt_raises_state_error(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        store.save(_state(project_dir, "main"))
        store.path_for("main").write_text("{truncated")

        with pytest.raises(SandboxStateError, match="parsing sandbox state") as exc_info:
            store.load("main")
        assert isinstance(exc_info.value, CboxError)

    def test_exists(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        assert not store.exists("main")
        store.save(_state(project_dir, "main"))
        assert store.exists("main")

    def test_remove_is_idempotent(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        store.save(_state(project_dir, "main"))
        store.remove("main")
        store.remove("main")
        assert not store.exists("main")

    def test_list_all_sorted_and_skips_corrupt(self, project_dir: Path) -> None:
        store = SessionStore(project_dir)
        for branch in ("zeta", "alpha", "feature/mid"):
            store.save(_state(project_dir, branch))
        (state_dir(project_dir) / "broken.state.json").write_text("{not json")
        (state_dir(project_dir) / "flow-x.json").write_text("{}")

        assert [s.branch for s in store.list_all()] == ["alpha", "feature/mid", "zeta"]

    def test_list_all_without_directory(self, project_dir: Path) -> None:
        assert SessionStore(project_dir).list_all() == []


class TestClearTransient:
    """Down keeps identifiers and drops runtime-only fields."""

    def test_clear_transient(self, project_dir: Path) -> None:
        state = _state(
            project_dir,
            "main",
            claude_container="c",
            claude_image="i",
            network_name="n",
            running=True,
            ports=["3000"],
            bridge_proxy_pid=10,
            command_proxy_pid=11,
            command_proxy_port=4000,
            serve_pid=12,
            serve_port=5000,
            serve_url="http://main.proj.dev.localhost",
        )
        state.clear_transient()

        assert (state.claude_container, state.claude_image, state.network_name) == ("c", "i", "n")
        assert state.worktree_path.endswith("wt-main")
        assert not state.running
        assert state.ports == []
        assert state.bridge_proxy_pid == state.command_proxy_pid == state.serve_pid == 0
        assert state.command_proxy_port == state.serve_port == 0
        assert state.serve_url == ""

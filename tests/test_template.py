"""Tests for workflow/template.py -- templated shell commands."""

from pathlib import Path

import pytest

from cbox.errors import CommandError
from cbox.workflow.template import command_env, expand_vars, run_shell_command


class TestExpandVars:
    """In-process placeholder expansion."""

    def test_known_and_braced(self) -> None:
        assert expand_vars("$Slug/${Slug}-x", {"Slug": "fix-login"}) == "fix-login/fix-login-x"

    def test_unknown_names_stay_braced(self) -> None:
        assert expand_vars("feature/$Slug-$Other", {"Slug": "a"}) == "feature/a-${Other}"


class TestRunShellCommand:
    """Commands run under sh -c with values passed through the environment."""

    def test_values_with_shell_metacharacters_are_literal(self) -> None:
        title = 'Fix "quotes" `date` $(echo pwned); rm -rf /'
        assert run_shell_command('printf %s "$Title"', {"Title": title}) == title

    def test_unset_known_placeholder_stays_literal(self) -> None:
        assert run_shell_command('printf %s "$Status"') == "$Status"

    def test_output_is_trimmed(self) -> None:
        assert run_shell_command("echo '  42  '") == "42"

    def test_cwd(self, tmp_path: Path) -> None:
        assert run_shell_command("pwd", cwd=tmp_path) == str(tmp_path.resolve())

    def test_failure_carries_combined_output(self) -> None:
        with pytest.raises(CommandError) as exc_info:
            run_shell_command("echo out; echo err >&2; exit 4")
        err = exc_info.value
        assert err.returncode == 4
        assert "out" in err.output
        assert "err" in err.output
        assert "command failed" in str(err)

    def test_command_env_prefers_supplied_values(self) -> None:
        env = command_env({"Title": "x"})
        assert env["Title"] == "x"
        assert env["PRURL"] == "$PRURL"

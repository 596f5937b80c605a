from __future__ import annotations

import json
import sys
import time
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from hookpolicy.cli import cli
from hookpolicy.session.store import CheckpointStore
from hookpolicy.utils.logging import logger

GUARD_DOCUMENT = {
    "PreToolUse": [
        {
            "matcher": "Bash",
            "hooks": [{"command": '"${PYTHON}" -m hookpolicy.hooks.builtin.git_guard'}],
        }
    ]
}


@pytest.fixture(autouse=True)
def quiet_logging() -> Iterator[None]:
    yield
    # The CLI enables logging to streams that die with each invocation
    logger.remove()
    logger.disable("hookpolicy")


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def hooks_file(tmp_path: Path) -> Path:
    path = tmp_path / "hooks.json"
    path.write_text(json.dumps(GUARD_DOCUMENT), encoding="utf-8")
    return path


def _bash(command: str, **extra: object) -> bytes:
    payload = {"hook_event_name": "PreToolUse", "tool_name": "Bash", **extra}
    payload["tool_input"] = {"command": command}
    return json.dumps(payload).encode()


class TestDispatch:
    def test_allow_prints_payload(self, runner: CliRunner, hooks_file: Path, tmp_path: Path):
        result = runner.invoke(
            cli, ["dispatch", "-f", str(hooks_file), "-w", str(tmp_path)], input=_bash("git status")
        )
        assert result.exit_code == 0, result.output
        payload = json.loads(result.stdout_bytes)
        assert payload["tool_name"] == "Bash"
        assert payload["tool_input"] == {"command": "git status"}

    def test_block_exits_2(self, runner: CliRunner, hooks_file: Path, tmp_path: Path):
        result = runner.invoke(
            cli,
            ["dispatch", "-f", str(hooks_file), "-w", str(tmp_path)],
            input=_bash("git commit -m fix"),
        )
        assert result.exit_code == 2
        assert 'blocked: "git commit"' in result.output

    def test_event_name_argument_with_legacy_payload(
        self, runner: CliRunner, hooks_file: Path, tmp_path: Path
    ):
        legacy = json.dumps({"tool": "Bash", "toolInput": {"command": "git push"}}).encode()
        result = runner.invoke(
            cli,
            ["dispatch", "PreToolUse", "-f", str(hooks_file), "-w", str(tmp_path)],
            input=legacy,
        )
        assert result.exit_code == 2
        assert "git push" in result.output

    def test_stats(self, runner: CliRunner, hooks_file: Path, tmp_path: Path):
        result = runner.invoke(
            cli,
            ["dispatch", "--stats", "-f", str(hooks_file), "-w", str(tmp_path)],
            input=_bash("git status"),
        )
        assert result.exit_code == 0
        assert "Dispatches: 1" in result.output
        assert "Allowed: 1 | Blocked: 0" in result.output

    @pytest.mark.parametrize(
        ("stdin", "message"),
        [
            (b"not json", "not JSON"),
            (b"[]", "must be a JSON object"),
            (b'{"tool_name": "Bash"}', "Invalid event"),
        ],
    )
    def test_bad_event(
        self, runner: CliRunner, hooks_file: Path, tmp_path: Path, stdin: bytes, message: str
    ):
        result = runner.invoke(
            cli, ["dispatch", "-f", str(hooks_file), "-w", str(tmp_path)], input=stdin
        )
        assert result.exit_code == 1
        assert message in result.output

    def test_invalid_hooks_file(self, runner: CliRunner, tmp_path: Path):
        bad = tmp_path / "bad.json"
        bad.write_text('{"PreToolUse": [],}', encoding="utf-8")
        result = runner.invoke(
            cli, ["dispatch", "-f", str(bad), "-w", str(tmp_path)], input=_bash("ls")
        )
        assert result.exit_code == 1
        assert "bad.json:1:" in result.output

    def test_broken_chain(self, runner: CliRunner, tmp_path: Path):
        script = tmp_path / "noisy.py"
        script.write_text("import sys\nsys.stdin.read()\nprint('hello')\n", encoding="utf-8")
        hooks = tmp_path / "hooks.json"
        command = f'"{sys.executable}" "{script}"'
        hooks.write_text(
            json.dumps({"PreToolUse": [{"hooks": [{"command": command}]}]}), encoding="utf-8"
        )
        result = runner.invoke(
            cli, ["dispatch", "-f", str(hooks), "-w", str(tmp_path)], input=_bash("ls")
        )
        assert result.exit_code == 1
        assert "broke the payload chain" in result.output

    def test_async_hook_outlives_dispatch(self, runner: CliRunner, tmp_path: Path, hook_script):
        marker = tmp_path / "marker"
        command = hook_script(
            "late",
            f"""
            import sys, time
            sys.stdin.read()
            time.sleep(1.0)
            open({str(marker)!r}, "w").close()
            """,
        )
        hooks = tmp_path / "hooks.json"
        hooks.write_text(
            json.dumps({"PostToolUse": [{"hooks": [{"command": command, "async": True}]}]}),
            encoding="utf-8",
        )
        event = json.dumps({"hook_event_name": "PostToolUse", "tool_name": "Bash"}).encode()
        result = runner.invoke(
            cli, ["dispatch", "-f", str(hooks), "-w", str(tmp_path)], input=event
        )
        assert result.exit_code == 0, result.output
        assert not marker.exists()

        deadline = time.monotonic() + 10
        while not marker.exists() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert marker.exists()

    def test_discovers_project_rules(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        project = tmp_path / "project"
        (project / ".hookpolicy").mkdir(parents=True)
        (project / ".hookpolicy" / "hooks.json").write_text(
            json.dumps(GUARD_DOCUMENT), encoding="utf-8"
        )
        result = runner.invoke(cli, ["dispatch", "-w", str(project)], input=_bash("git rebase x"))
        assert result.exit_code == 2


class TestValidate:
    def test_ok(self, runner: CliRunner, hooks_file: Path):
        result = runner.invoke(cli, ["validate", "-f", str(hooks_file)])
        assert result.exit_code == 0
        assert result.output.strip() == "OK: 1 rule(s) from 1 source(s)"

    def test_merge_several_files(self, runner: CliRunner, hooks_file: Path, tmp_path: Path):
        other = tmp_path / "other.json"
        other.write_text(json.dumps(GUARD_DOCUMENT), encoding="utf-8")
        result = runner.invoke(cli, ["validate", "-f", str(hooks_file), "-f", str(other)])
        assert result.exit_code == 0
        # Identical rules collapse into one
        assert result.output.strip() == "OK: 1 rule(s) from 2 source(s)"

    def test_dump(self, runner: CliRunner, hooks_file: Path):
        result = runner.invoke(cli, ["validate", "--dump", "-f", str(hooks_file)])
        assert result.exit_code == 0
        assert json.loads(result.output)["PreToolUse"][0]["matcher"] == "Bash"

    def test_bundled(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        result = runner.invoke(cli, ["validate", "--bundled", "-w", str(tmp_path)])
        assert result.exit_code == 0
        assert result.output.strip() == "OK: 4 rule(s) from 1 source(s)"

    def test_error_location(self, runner: CliRunner, tmp_path: Path):
        bad = tmp_path / "bad.json"
        bad.write_text(
            json.dumps({"Stop": [{"hooks": [{"command": "x", "timeout": 1}]}]}), encoding="utf-8"
        )
        result = runner.invoke(cli, ["validate", "-f", str(bad)])
        assert result.exit_code == 1
        assert "bad.json:Stop[0].hooks[0].timeout" in result.output


class TestList:
    def test_rules(self, runner: CliRunner, hooks_file: Path):
        result = runner.invoke(cli, ["list", "-f", str(hooks_file)])
        assert result.exit_code == 0
        assert "Found 1 rule(s)" in result.output
        assert "PreToolUse:" in result.output
        assert "[Bash]" in result.output

    def test_empty(self, runner: CliRunner, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        result = runner.invoke(cli, ["list", "-w", str(tmp_path)])
        assert result.exit_code == 0
        assert "No rules configured." in result.output
        assert "(not found)" in result.output


class TestResolve:
    def test_python(self, runner: CliRunner):
        result = runner.invoke(cli, ["resolve", "python"])
        assert result.exit_code == 0
        assert result.output.startswith("python: ")

    def test_unknown(self, runner: CliRunner):
        result = runner.invoke(cli, ["resolve", "ruby"])
        assert result.exit_code == 1
        assert "ruby: not found" in result.output


class TestCheckpoint:
    def test_create_list_diff(self, runner: CliRunner, tmp_path: Path):
        log = tmp_path / "checkpoints.log"
        base = ["checkpoint", "--log", str(log), "-w", str(tmp_path)]

        result = runner.invoke(cli, [*base, "create", "start", "--revision=-"])
        assert result.exit_code == 0, result.output
        assert result.output.strip().endswith("| start | -")
        runner.invoke(cli, [*base, "create", "end", "--revision=-"])

        result = runner.invoke(cli, [*base, "list"])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("  0  ")
        assert lines[1].endswith("| end | -")

        result = runner.invoke(cli, [*base, "diff", "start", "end"])
        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "start (-) -> end (-)",
            "files changed: n/a",
            "test delta: n/a",
            "coverage delta: n/a",
        ]

        result = runner.invoke(cli, [*base, "diff", "0"])
        assert result.exit_code == 0
        assert result.output.startswith("start (-) -> end (-)")

    def test_diff_unknown(self, runner: CliRunner, tmp_path: Path):
        log = tmp_path / "checkpoints.log"
        CheckpointStore(log).create("start")
        result = runner.invoke(cli, ["checkpoint", "--log", str(log), "diff", "start", "nope"])
        assert result.exit_code == 1
        assert "No checkpoint 'nope'" in result.output

    def test_invalid_name(self, runner: CliRunner, tmp_path: Path):
        log = tmp_path / "checkpoints.log"
        result = runner.invoke(cli, ["checkpoint", "--log", str(log), "create", "a|b"])
        assert result.exit_code == 1
        assert not log.exists()


class TestHookCommands:
    def test_git_guard_allows(self, runner: CliRunner):
        raw = _bash("git log --oneline")
        result = runner.invoke(cli, ["hook", "git-guard"], input=raw)
        assert result.exit_code == 0
        assert result.stdout_bytes == raw

    def test_git_guard_blocks(self, runner: CliRunner):
        result = runner.invoke(cli, ["hook", "git-guard"], input=_bash("git branch -D old"))
        assert result.exit_code == 2
        assert 'blocked: "git branch -D"' in result.output
        assert "git branch --show-current" in result.output

    def test_session_checkpoint(self, runner: CliRunner, tmp_path: Path):
        raw = json.dumps(
            {"hook_event_name": "SessionStart", "session_id": "s1", "cwd": str(tmp_path)}
        ).encode()
        result = runner.invoke(cli, ["hook", "session-checkpoint"], input=raw)
        assert result.exit_code == 0
        assert result.stdout_bytes == raw
        (entry,) = CheckpointStore(tmp_path / ".hookpolicy" / "checkpoints.log").list()
        assert entry.name == "SessionStart:s1"


class TestConfigFile:
    def test_invalid_config_is_a_usage_error(self, runner: CliRunner, tmp_path: Path):
        config = tmp_path / "config.toml"
        config.write_text("default_timeout = [", encoding="utf-8")
        result = runner.invoke(cli, ["--config-file", str(config), "validate", "--bundled"])
        assert result.exit_code == 2
        assert "Invalid TOML" in result.output

    def test_checkpoint_log_from_config(self, runner: CliRunner, tmp_path: Path):
        log = tmp_path / "from-config.log"
        config = tmp_path / "config.toml"
        config.write_text(f"checkpoint_log = {json.dumps(str(log))}\n", encoding="utf-8")
        result = runner.invoke(
            cli, ["--config-file", str(config), "checkpoint", "create", "x", "--revision", "r1"]
        )
        assert result.exit_code == 0, result.output
        assert CheckpointStore(log).get("x").revision == "r1"

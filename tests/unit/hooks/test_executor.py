from __future__ import annotations

import json
import os
import sys
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hookpolicy.hooks.executor import HookExecutor

ECHO = """
import sys
sys.stdout.write(sys.stdin.read())
"""

REJECT = """
import sys
sys.stdin.read()
sys.stderr.write("nope: protected path\\n")
sys.exit(2)
"""

SLEEP = """
import time
time.sleep(5)
"""


def _env(**extra: str) -> dict[str, str]:
    return {**os.environ, **extra}


class TestRun:
    @pytest.mark.asyncio
    async def test_stdout_passthrough(self, hook_script):
        result = await HookExecutor().run(
            "echo", hook_script("echo", ECHO), b'{"a": 1}', env=_env(), timeout_ms=10000
        )
        assert result.allowed
        assert result.exit_code == 0
        assert result.stdout == b'{"a": 1}'
        assert result.hook_name == "echo"

    @pytest.mark.asyncio
    async def test_nonzero_exit_with_stderr(self, hook_script):
        result = await HookExecutor().run(
            "reject", hook_script("reject", REJECT), b"{}", env=_env(), timeout_ms=10000
        )
        assert not result.allowed
        assert result.exit_code == 2
        assert result.stderr_text == "nope: protected path"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_environment_and_cwd(self, hook_script, tmp_path: Path):
        command = hook_script(
            "env",
            """
            import json, os, sys
            json.dump({"var": os.environ["HOOK_EVENT"], "cwd": os.getcwd()}, sys.stdout)
            """,
        )
        result = await HookExecutor(cwd=tmp_path).run(
            "env", command, b"", env=_env(HOOK_EVENT="Stop"), timeout_ms=10000
        )
        output = json.loads(result.stdout)
        assert output["var"] == "Stop"
        assert Path(output["cwd"]).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, hook_script):
        result = await HookExecutor().run(
            "slow", hook_script("slow", SLEEP), b"{}", env=_env(), timeout_ms=300
        )
        assert result.timed_out
        assert not result.allowed
        assert result.duration_ms < 5000
        assert b"timed out after 300ms" in result.stderr

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
    async def test_timeout_kills_children_of_the_shell(self):
        # The shell forks `sleep`, which would otherwise keep the output pipes open
        result = await HookExecutor().run(
            "slow", "sleep 6; true", b"{}", env=_env(), timeout_ms=300
        )
        assert result.timed_out
        assert result.duration_ms < 3000

    @pytest.mark.asyncio
    async def test_spawn_failure(self):
        with patch(
            "asyncio.create_subprocess_shell", AsyncMock(side_effect=OSError("no shell"))
        ):
            result = await HookExecutor().run("h", "anything", b"{}", env={}, timeout_ms=1000)
        assert result.error is not None
        assert "no shell" in result.error
        assert not result.allowed

    @pytest.mark.asyncio
    async def test_killed_by_signal(self):
        proc = MagicMock()
        proc.communicate = AsyncMock(return_value=(b"", b""))
        proc.returncode = -9
        with patch("asyncio.create_subprocess_shell", AsyncMock(return_value=proc)):
            result = await HookExecutor().run("h", "anything", b"{}", env={}, timeout_ms=1000)
        assert result.exit_code == -9
        assert result.error == "Hook killed by signal 9"
        proc.communicate.assert_awaited_once_with(input=b"{}")

    @pytest.mark.asyncio
    async def test_independent_invocations(self, hook_script):
        executor = HookExecutor()
        command = hook_script("echo", ECHO)
        first = await executor.run("echo", command, b'{"n": 1}', env=_env(), timeout_ms=10000)
        second = await executor.run("echo", command, b'{"n": 2}', env=_env(), timeout_ms=10000)
        assert first.stdout == b'{"n": 1}'
        assert second.stdout == b'{"n": 2}'


class TestSpawn:
    @pytest.mark.asyncio
    async def test_runs_in_background(self, hook_script, tmp_path: Path):
        out = tmp_path / "received.json"
        command = hook_script(
            "record",
            f"""
            import sys
            with open({str(out)!r}, "wb") as f:
                f.write(sys.stdin.buffer.read())
            """,
        )
        task = await HookExecutor().spawn(
            "record", command, b'{"ok": true}', env=_env(), timeout_ms=10000
        )
        assert task is not None
        result = await task
        assert result.exit_code == 0
        assert out.read_bytes() == b'{"ok": true}'

    @pytest.mark.asyncio
    async def test_watcher_gives_up_after_timeout(self, hook_script):
        task = await HookExecutor().spawn(
            "slow", hook_script("slow", SLEEP), b"{}", env=_env(), timeout_ms=200
        )
        assert task is not None
        result = await task
        assert result.timed_out

    @pytest.mark.asyncio
    async def test_spawn_failure_returns_none(self):
        with patch("subprocess.Popen", side_effect=OSError("boom")):
            task = await HookExecutor().spawn("h", "anything", b"{}", env={}, timeout_ms=1000)
        assert task is None

    @pytest.mark.asyncio
    async def test_large_payload_does_not_wait_for_reader(self, hook_script):
        # The hook never reads stdin; a pipe would fill up long before 1 MiB
        payload = b'{"tool_output": "' + b"x" * (1024 * 1024) + b'"}'
        started = time.monotonic()
        task = await HookExecutor().spawn(
            "deaf", hook_script("deaf", SLEEP), payload, env=_env(), timeout_ms=10000
        )
        assert time.monotonic() - started < 2
        assert task is not None
        assert not task.done()
        task.cancel()

    @pytest.mark.asyncio
    async def test_cancelled_watcher_leaves_process_running(self, hook_script, tmp_path: Path):
        marker = tmp_path / "done"
        command = hook_script(
            "late",
            f"""
            import time
            time.sleep(0.5)
            open({str(marker)!r}, "w").close()
            """,
        )
        task = await HookExecutor().spawn("late", command, b"{}", env=_env(), timeout_ms=10000)
        assert task is not None
        task.cancel()
        deadline = time.monotonic() + 10
        while not marker.exists() and time.monotonic() < deadline:
            time.sleep(0.05)
        assert marker.exists()

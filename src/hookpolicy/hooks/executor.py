"""Hook executor for running hook commands as subprocesses."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import subprocess
import sys
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path

from hookpolicy.hooks.models import HookResult
from hookpolicy.utils.logging import logger

# How long to wait for a killed hook to be reaped before giving up on it.
_REAP_GRACE_S = 1.0
# How often the watcher of an async hook checks whether it has exited.
_POLL_INTERVAL_S = 0.05


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell running a hook together with everything it started."""
    if sys.platform == "win32":
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        return
    # The hook leads its own session, so its pid is also its process group id
    with contextlib.suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


class HookExecutor:
    """Runs one hook command with a payload on stdin.

    Each call is independent: ``(command, payload) -> HookResult`` with no state kept
    between invocations.
    """

    def __init__(self, cwd: Path | None = None) -> None:
        self._cwd = str(cwd) if cwd is not None else None

    async def run(
        self,
        name: str,
        command: str,
        payload: bytes,
        *,
        env: Mapping[str, str],
        timeout_ms: int,
    ) -> HookResult:
        """Run ``command`` synchronously and wait up to ``timeout_ms`` for it.

        Spawn failures and deaths by signal are reported through ``HookResult.error``;
        an expired timeout kills the process group of the hook and sets ``timed_out``.
        """
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env),
                cwd=self._cwd,
                start_new_session=True,
            )
        except OSError as e:
            logger.exception("Hook {name} could not be started", name=name)
            return HookResult(
                hook_name=name,
                exit_code=-1,
                duration_ms=_elapsed_ms(start),
                error=f"Could not start hook: {e}",
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=payload),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError:
            _kill_group(proc)
            # A descendant that escaped the group may still hold the pipes open
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(proc.wait(), timeout=_REAP_GRACE_S)
            logger.warning("Hook {name} timed out after {timeout}ms", name=name, timeout=timeout_ms)
            return HookResult(
                hook_name=name,
                exit_code=-1,
                stderr=f"Hook timed out after {timeout_ms}ms".encode(),
                duration_ms=_elapsed_ms(start),
                timed_out=True,
            )

        returncode = proc.returncode if proc.returncode is not None else -1
        error = f"Hook killed by signal {-returncode}" if returncode < 0 else None
        return HookResult(
            hook_name=name,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=_elapsed_ms(start),
            error=error,
        )

    async def spawn(
        self,
        name: str,
        command: str,
        payload: bytes,
        *,
        env: Mapping[str, str],
        timeout_ms: int,
    ) -> asyncio.Task[HookResult] | None:
        """Start ``command`` in the background and return a task watching it.

        The payload is handed over through a temporary file, so the caller never waits
        for the hook to read it. The process runs in its own session and is not tied to
        the event loop: cancelling the watcher, or closing the loop, only stops waiting.
        """
        start = time.monotonic()
        try:
            with tempfile.TemporaryFile() as stdin:
                stdin.write(payload)
                stdin.seek(0)
                proc = subprocess.Popen(
                    command,
                    shell=True,
                    stdin=stdin,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    env=dict(env),
                    cwd=self._cwd,
                    start_new_session=True,
                )
        except OSError:
            logger.exception("Async hook {name} could not be started", name=name)
            return None

        return asyncio.create_task(self._watch(name, proc, timeout_ms, start))

    async def _watch(
        self, name: str, proc: subprocess.Popen[bytes], timeout_ms: int, start: float
    ) -> HookResult:
        deadline = start + timeout_ms / 1000
        returncode = proc.poll()
        while returncode is None:
            if time.monotonic() >= deadline:
                logger.warning(
                    "Stopped waiting for async hook {name} after {timeout}ms",
                    name=name,
                    timeout=timeout_ms,
                )
                return HookResult(
                    hook_name=name, exit_code=-1, duration_ms=_elapsed_ms(start), timed_out=True
                )
            await asyncio.sleep(_POLL_INTERVAL_S)
            returncode = proc.poll()
        logger.debug("Async hook {name} exited with {code}", name=name, code=returncode)
        return HookResult(hook_name=name, exit_code=returncode, duration_ms=_elapsed_ms(start))

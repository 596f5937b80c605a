from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from hookpolicy.exception import ChainIntegrityError, InterpreterNotFoundError, ResolutionError
from hookpolicy.hooks.config import DEFAULT_TIMEOUT_MS, CommandHookConfig
from hookpolicy.hooks.executor import HookExecutor
from hookpolicy.hooks.models import Decision, HookResult, ToolInvocationEvent
from hookpolicy.hooks.registry import PolicyRegistry
from hookpolicy.hooks.resolver import RuntimeResolver
from hookpolicy.hooks.variables import (
    INTERPRETER_VARIABLES,
    PLUGIN_ROOT,
    PROJECT_DIR,
    event_variables,
    referenced_variables,
    render,
)
from hookpolicy.utils.logging import logger


@dataclass
class DispatchStats:
    """Counters for hook activity in this process."""

    total_dispatches: int = 0
    allowed: int = 0
    blocked: int = 0
    hook_runs: int = 0
    async_runs: int = 0
    timeouts: int = 0
    unavailable: int = 0
    total_duration_ms: int = 0

    @property
    def avg_duration_ms(self) -> float:
        if self.hook_runs == 0:
            return 0.0
        return self.total_duration_ms / self.hook_runs


class Dispatcher:
    """Runs the hooks of every matching rule for an event and aggregates a decision."""

    def __init__(
        self,
        registry: PolicyRegistry,
        *,
        resolver: RuntimeResolver | None = None,
        executor: HookExecutor | None = None,
        plugin_root: Path | None = None,
        project_dir: Path | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self.registry = registry
        self._resolver = resolver or RuntimeResolver()
        self._executor = executor or HookExecutor(cwd=project_dir)
        self._plugin_root = plugin_root
        self._project_dir = project_dir
        self._default_timeout_ms = default_timeout_ms
        self._pending: set[asyncio.Task[HookResult]] = set()
        self.stats = DispatchStats()

    async def dispatch(self, event: ToolInvocationEvent) -> Decision:
        """Run matching hooks in declaration order and return Allow or Block.

        Raises:
            ChainIntegrityError: A hook of a gating event exited 0 but its stdout was
                not a JSON object.
        """
        self.stats.total_dispatches += 1
        decision = await self._dispatch(event)
        if decision.allowed:
            self.stats.allowed += 1
        else:
            self.stats.blocked += 1
            logger.info(
                "Blocked {event} for {tool}: {reason}",
                event=event.event_type.value,
                tool=event.tool or "-",
                reason=decision.reason,
            )
        return decision

    async def _dispatch(self, event: ToolInvocationEvent) -> Decision:
        payload = event.serialize()
        gating = event.event_type.is_gating
        results: list[HookResult] = []

        for rule in self.registry.rules_for(event.event_type):
            if not rule.matches(event):
                continue
            logger.debug("Rule {location} matched", location=rule.location)

            for position, hook in enumerate(rule.hooks):
                name = rule.hook_name(position)
                timeout_ms = hook.effective_timeout(self._default_timeout_ms)
                try:
                    command, env = self._prepare(hook, event)
                except InterpreterNotFoundError as e:
                    # Fail open, but never quietly: a missing interpreter disables a check
                    self.stats.unavailable += 1
                    logger.error(
                        "Hook {name} is unavailable and was skipped: {error}", name=name, error=e
                    )
                    continue
                except ResolutionError as e:
                    result = HookResult(hook_name=name, exit_code=-1, error=str(e))
                    results.append(result)
                    if gating:
                        return Decision.block(f"Hook {name} failed: {e}", tuple(results))
                    logger.warning(
                        "Hook {name} failed and was ignored: {error}", name=name, error=e
                    )
                    continue

                if hook.async_:
                    await self._fire(name, command, payload, env, timeout_ms)
                    continue

                result = await self._executor.run(
                    name, command, payload, env=env, timeout_ms=timeout_ms
                )
                results.append(result)
                self.stats.hook_runs += 1
                self.stats.total_duration_ms += result.duration_ms

                if result.timed_out:
                    self.stats.timeouts += 1
                    return Decision.block(
                        f"Hook {name} timed out after {timeout_ms}ms", tuple(results)
                    )
                if result.error is not None:
                    if gating:
                        return Decision.block(f"Hook {name} failed: {result.error}", tuple(results))
                    logger.warning(
                        "Hook {name} failed and was ignored: {error}", name=name, error=result.error
                    )
                    continue
                if result.exit_code != 0:
                    reason = result.stderr_text or (
                        f"Blocked by hook {name} (exit code {result.exit_code})"
                    )
                    return Decision.block(reason, tuple(results))

                payload = self._forward(name, payload, result.stdout, gating=gating)

        return Decision.allow(payload, tuple(results))

    def _prepare(
        self, hook: CommandHookConfig, event: ToolInvocationEvent
    ) -> tuple[str, dict[str, str]]:
        values: dict[str, str] = event_variables(event)
        project_dir = self._project_dir or (Path(event.cwd) if event.cwd else None)
        if project_dir is not None:
            values[PROJECT_DIR] = str(project_dir)
        if self._plugin_root is not None:
            values[PLUGIN_ROOT] = str(self._plugin_root)
        for variable in referenced_variables(hook.command):
            interpreter = INTERPRETER_VARIABLES.get(variable)
            if interpreter is not None:
                values[variable] = str(self._resolver.resolve(interpreter))
        if self._resolver.wsl:
            names = list(values)
            values = dict(zip(names, self._resolver.rewrite_args([values[n] for n in names])))
        env = {**os.environ, **values}
        return render(hook.command, values), env

    @staticmethod
    def _forward(name: str, payload: bytes, stdout: bytes, *, gating: bool) -> bytes:
        """The payload for the next hook, given what this hook printed.

        Output that is not a JSON object breaks the chain of a gating event. For
        observational events it is logged and the payload is passed on unchanged.
        """
        text = stdout.strip()
        if not text:
            return payload
        try:
            output: Any = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            detail = f"stdout is not JSON ({e})"
        else:
            if isinstance(output, dict):
                if output == json.loads(payload):
                    # Observers that re-serialize must not perturb the bytes we forward
                    return payload
                return text
            detail = f"stdout is a JSON {type(output).__name__}, not an object"
        if gating:
            raise ChainIntegrityError(name, detail)
        logger.warning("Ignoring output of hook {name}: {detail}", name=name, detail=detail)
        return payload

    async def _fire(
        self, name: str, command: str, payload: bytes, env: dict[str, str], timeout_ms: int
    ) -> None:
        task = await self._executor.spawn(name, command, payload, env=env, timeout_ms=timeout_ms)
        if task is None:
            return
        self.stats.async_runs += 1
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def aclose(self) -> None:
        """Stop waiting for async hooks still running; their processes are left alone."""
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()

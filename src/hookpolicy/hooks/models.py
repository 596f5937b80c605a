from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class HookEventType(str, Enum):
    """Host runtime event types a rule set can be scoped to."""

    # Tool interception
    PRE_TOOL_USE = "PreToolUse"
    POST_TOOL_USE = "PostToolUse"

    # Session lifecycle
    SESSION_START = "SessionStart"
    SESSION_END = "SessionEnd"

    # Context management
    PRE_COMPACT = "PreCompact"

    # Agent turn
    STOP = "Stop"

    @property
    def is_gating(self) -> bool:
        """Whether the host waits on this event to decide if something may happen."""
        return self in (HookEventType.PRE_TOOL_USE, HookEventType.STOP)


class DecisionKind(str, Enum):
    """Aggregate dispatch decision."""

    ALLOW = "allow"
    BLOCK = "block"


# Keys older hosts used for the same fields.
_EVENT_ALIASES = ("hook_event_name", "event_type", "eventType")
_TOOL_ALIASES = ("tool_name", "tool")
_INPUT_ALIASES = ("tool_input", "toolInput", "parameters")
_OUTPUT_ALIASES = ("tool_output", "toolOutput", "tool_response")


def _first(data: dict[str, Any], keys: tuple[str, ...], default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass(frozen=True, slots=True, kw_only=True)
class ToolInvocationEvent:
    """One host runtime event; immutable for the whole dispatch."""

    event_type: HookEventType
    tool: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    tool_output: str | None = None
    session_id: str | None = None
    cwd: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """The JSON object written to a hook's standard input."""
        return {
            "hook_event_name": self.event_type.value,
            "tool_name": self.tool,
            "tool_input": self.tool_input,
            "tool_output": self.tool_output,
            "session_id": self.session_id,
            "cwd": self.cwd,
        }

    def serialize(self) -> bytes:
        return json.dumps(self.to_payload(), ensure_ascii=False, default=str).encode("utf-8")

    @classmethod
    def from_payload(
        cls, data: dict[str, Any], event_type: HookEventType | str | None = None
    ) -> ToolInvocationEvent:
        """Build an event from a host payload, accepting legacy key names.

        Raises:
            ValueError: If no event type is given or it is unknown.
        """
        raw_type = event_type if event_type is not None else _first(data, _EVENT_ALIASES)
        if raw_type is None:
            raise ValueError("Event payload has no event type")
        tool_input = _first(data, _INPUT_ALIASES, {})
        tool_output = _first(data, _OUTPUT_ALIASES)
        if tool_output is not None and not isinstance(tool_output, str):
            tool_output = json.dumps(tool_output, ensure_ascii=False, default=str)
        return cls(
            event_type=HookEventType(raw_type),
            tool=str(_first(data, _TOOL_ALIASES, "") or ""),
            tool_input=tool_input if isinstance(tool_input, dict) else {},
            tool_output=tool_output,
            session_id=data.get("session_id"),
            cwd=data.get("cwd"),
        )


@dataclass(frozen=True, slots=True, kw_only=True)
class HookResult:
    """Outcome of running one hook command.

    ``exit_code == 0`` means allow (``stdout`` may carry a replacement payload),
    anything else means block.
    """

    hook_name: str
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    duration_ms: int = field(default=0, compare=False)
    timed_out: bool = False
    # Spawn failures and signal deaths, as opposed to a deliberate nonzero exit
    error: str | None = None

    @property
    def allowed(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and self.error is None

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace").strip()


@dataclass(frozen=True, slots=True, kw_only=True)
class Decision:
    """What the host runtime should do with the gated operation."""

    kind: DecisionKind
    payload: bytes = b""
    reason: str | None = None
    results: tuple[HookResult, ...] = ()

    @classmethod
    def allow(cls, payload: bytes, results: tuple[HookResult, ...] = ()) -> Decision:
        return cls(kind=DecisionKind.ALLOW, payload=payload, results=results)

    @classmethod
    def block(cls, reason: str, results: tuple[HookResult, ...] = ()) -> Decision:
        return cls(kind=DecisionKind.BLOCK, reason=reason, results=results)

    @property
    def allowed(self) -> bool:
        return self.kind is DecisionKind.ALLOW

from __future__ import annotations

import json
import re
from json.decoder import scanstring
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hookpolicy.exception import ConfigError
from hookpolicy.hooks.models import HookEventType

DEFAULT_TIMEOUT_MS = 30000


class CommandHookConfig(BaseModel):
    """One hook command bound to a rule."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    type: Literal["command"] = "command"
    command: str = Field(min_length=1, description="Shell command template to execute")
    async_: bool = Field(
        default=False,
        validation_alias="async",
        serialization_alias="async",
        description="Run in the background without blocking the decision",
    )
    timeout: int | None = Field(
        default=None, ge=100, le=600000, description="Timeout in milliseconds"
    )

    def effective_timeout(self, default: int = DEFAULT_TIMEOUT_MS) -> int:
        return self.timeout if self.timeout is not None else default

    def to_document(self) -> dict[str, Any]:
        return {"type": "command", **self.model_dump(by_alias=True, exclude_defaults=True)}


class RuleConfig(BaseModel):
    """A matcher and the hooks it guards, as written in the document."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    matcher: str = Field(default="", description="Matcher expression or tool alternation")
    hooks: tuple[CommandHookConfig, ...] = Field(min_length=1)
    description: str | None = None


class HooksDocument(BaseModel):
    """Configuration document: rules keyed by event type name."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    pre_tool_use: list[RuleConfig] = Field(default_factory=list, alias="PreToolUse")
    post_tool_use: list[RuleConfig] = Field(default_factory=list, alias="PostToolUse")
    session_start: list[RuleConfig] = Field(default_factory=list, alias="SessionStart")
    session_end: list[RuleConfig] = Field(default_factory=list, alias="SessionEnd")
    pre_compact: list[RuleConfig] = Field(default_factory=list, alias="PreCompact")
    stop: list[RuleConfig] = Field(default_factory=list, alias="Stop")

    def rules(self, event_type: HookEventType) -> list[RuleConfig]:
        for name, info in type(self).model_fields.items():
            if info.alias == event_type.value:
                return getattr(self, name)
        return []


class _DuplicateKey(Exception):
    def __init__(self, key: str):
        self.key = key


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise _DuplicateKey(key)
        result[key] = value
    return result


def _line_col(text: str, offset: int) -> tuple[int, int]:
    line = text.count("\n", 0, offset) + 1
    col = offset - (text.rfind("\n", 0, offset) + 1) + 1
    return line, col


_WHITESPACE = re.compile(r"[ \t\n\r]*")


def _skip_ws(text: str, pos: int) -> int:
    match = _WHITESPACE.match(text, pos)
    return match.end() if match else pos


def _find_duplicate(text: str) -> tuple[str, int] | None:
    """The first key repeated within one object, with the offset of the repeat.

    ``text`` must already be valid JSON apart from duplicate keys.
    """
    decoder = json.JSONDecoder()

    def walk(pos: int) -> tuple[tuple[str, int] | None, int]:
        pos = _skip_ws(text, pos)
        if text.startswith("{", pos):
            seen: set[str] = set()
            pos = _skip_ws(text, pos + 1)
            if text.startswith("}", pos):
                return None, pos + 1
            while True:
                key_offset = pos
                key, pos = scanstring(text, pos + 1)
                if key in seen:
                    return (key, key_offset), pos
                seen.add(key)
                # Past the colon
                found, pos = walk(_skip_ws(text, pos) + 1)
                if found is not None:
                    return found, pos
                pos = _skip_ws(text, pos)
                if text.startswith("}", pos):
                    return None, pos + 1
                pos = _skip_ws(text, pos + 1)
        if text.startswith("[", pos):
            pos = _skip_ws(text, pos + 1)
            if text.startswith("]", pos):
                return None, pos + 1
            while True:
                found, pos = walk(pos)
                if found is not None:
                    return found, pos
                pos = _skip_ws(text, pos)
                if text.startswith("]", pos):
                    return None, pos + 1
                pos += 1
        _, end = decoder.raw_decode(text, pos)
        return None, end

    return walk(0)[0]


def loads_strict(text: str, source: str = "<string>") -> Any:
    """Parse JSON, rejecting duplicate keys as well as plain syntax errors.

    Raises:
        ConfigError: With ``source:line:column`` of the first problem.
    """
    try:
        return json.loads(text, object_pairs_hook=_reject_duplicates)
    except _DuplicateKey as e:
        found = _find_duplicate(text)
        key, offset = found if found is not None else (e.key, 0)
        line, col = _line_col(text, offset)
        raise ConfigError(f"Duplicate key '{key}'", f"{source}:{line}:{col}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(e.msg, f"{source}:{e.lineno}:{e.colno}") from None


def format_location(loc: tuple[int | str, ...]) -> str:
    """Render a pydantic error location as ``PreToolUse[0].hooks[1].timeout``."""
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        else:
            parts.append(f".{item}" if parts else str(item))
    return "".join(parts)


def parse_hooks_document(text: str, source: str = "<string>") -> HooksDocument:
    """Parse and validate a configuration document.

    Both the bare event map and the plugin layout ``{"hooks": {...}}`` are accepted.

    Raises:
        ConfigError: If the text is malformed or structurally invalid.
    """
    data = loads_strict(text, source)
    if not isinstance(data, dict):
        raise ConfigError("Configuration document must be a JSON object", source)
    if "hooks" in data:
        extra = set(data) - {"hooks", "description"}
        if extra:
            raise ConfigError(f"Unexpected top-level key(s): {', '.join(sorted(extra))}", source)
        data = data["hooks"]
        if not isinstance(data, dict):
            raise ConfigError("'hooks' must be a JSON object", f"{source}:hooks")
    try:
        return HooksDocument.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = format_location(tuple(first["loc"]))
        more = f" (and {e.error_count() - 1} more)" if e.error_count() > 1 else ""
        raise ConfigError(f"{first['msg']}{more}", f"{source}:{location}") from None

"""Substitution variables recognized in hook command templates."""

from __future__ import annotations

import re
import shlex
from collections.abc import Mapping

from hookpolicy.hooks.models import ToolInvocationEvent

PLUGIN_ROOT = "CLAUDE_PLUGIN_ROOT"
PROJECT_DIR = "CLAUDE_PROJECT_DIR"

# Variables whose value is an interpreter path found by the runtime resolver.
INTERPRETER_VARIABLES: dict[str, str] = {"NODE": "node", "PYTHON": "python"}

EVENT_VARIABLES = frozenset({"HOOK_EVENT", "HOOK_TOOL_NAME", "HOOK_FILE_PATH"})

# Values that can come from the event payload. They are substituted as a single
# shell word, so templates must reference them without quotes of their own.
SHELL_QUOTED_VARIABLES = frozenset({PROJECT_DIR, *EVENT_VARIABLES})

RECOGNIZED_VARIABLES = frozenset(
    {PLUGIN_ROOT, PROJECT_DIR, *EVENT_VARIABLES, *INTERPRETER_VARIABLES}
)

_VARIABLE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def referenced_variables(template: str) -> list[str]:
    """Names referenced as ``${NAME}`` in ``template``, in order of appearance."""
    return list(dict.fromkeys(_VARIABLE.findall(template)))


def unknown_variables(template: str) -> list[str]:
    return [name for name in referenced_variables(template) if name not in RECOGNIZED_VARIABLES]


def event_variables(event: ToolInvocationEvent) -> dict[str, str]:
    file_path = event.tool_input.get("file_path") or event.tool_input.get("path") or ""
    return {
        "HOOK_EVENT": event.event_type.value,
        "HOOK_TOOL_NAME": event.tool,
        "HOOK_FILE_PATH": file_path if isinstance(file_path, str) else "",
    }


def render(template: str, values: Mapping[str, str]) -> str:
    """Substitute ``${NAME}`` references; names missing from ``values`` become empty.

    Values of ``SHELL_QUOTED_VARIABLES`` are quoted with ``shlex.quote`` so that
    text from a tool call can never reach the shell as syntax.
    """

    def _value(match: re.Match[str]) -> str:
        name = match.group(1)
        value = values.get(name, "")
        if name in SHELL_QUOTED_VARIABLES:
            return shlex.quote(value)
        return value

    return _VARIABLE.sub(_value, template)

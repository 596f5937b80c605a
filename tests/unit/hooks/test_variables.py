from __future__ import annotations

from hookpolicy.hooks.models import HookEventType, ToolInvocationEvent
from hookpolicy.hooks.variables import (
    RECOGNIZED_VARIABLES,
    event_variables,
    referenced_variables,
    render,
    unknown_variables,
)


def test_recognized_variables():
    assert RECOGNIZED_VARIABLES == {
        "CLAUDE_PLUGIN_ROOT",
        "CLAUDE_PROJECT_DIR",
        "HOOK_EVENT",
        "HOOK_TOOL_NAME",
        "HOOK_FILE_PATH",
        "NODE",
        "PYTHON",
    }


def test_referenced_variables_in_order_without_repeats():
    template = '"${NODE}" "${CLAUDE_PLUGIN_ROOT}/a.js" --root ${CLAUDE_PLUGIN_ROOT} $HOME'
    assert referenced_variables(template) == ["NODE", "CLAUDE_PLUGIN_ROOT"]


def test_unknown_variables():
    assert unknown_variables("${PYTHON} ${CLAUDE_PLUGIN_DIR} ${HOME}") == [
        "CLAUDE_PLUGIN_DIR",
        "HOME",
    ]
    assert unknown_variables("echo $HOME ${HOOK_EVENT}") == []


def test_event_variables():
    event = ToolInvocationEvent(
        event_type=HookEventType.PRE_TOOL_USE, tool="Write", tool_input={"file_path": "a.py"}
    )
    assert event_variables(event) == {
        "HOOK_EVENT": "PreToolUse",
        "HOOK_TOOL_NAME": "Write",
        "HOOK_FILE_PATH": "a.py",
    }


def test_event_variables_path_fallbacks():
    glob = ToolInvocationEvent(
        event_type=HookEventType.PRE_TOOL_USE, tool="Glob", tool_input={"path": "src"}
    )
    assert event_variables(glob)["HOOK_FILE_PATH"] == "src"

    odd = ToolInvocationEvent(
        event_type=HookEventType.PRE_TOOL_USE, tool="Write", tool_input={"file_path": ["a"]}
    )
    assert event_variables(odd)["HOOK_FILE_PATH"] == ""

    stop = ToolInvocationEvent(event_type=HookEventType.STOP)
    assert event_variables(stop) == {
        "HOOK_EVENT": "Stop",
        "HOOK_TOOL_NAME": "",
        "HOOK_FILE_PATH": "",
    }


def test_render():
    values = {"PYTHON": "/usr/bin/python3", "CLAUDE_PLUGIN_ROOT": "/plugins/x"}
    assert render('"${PYTHON}" "${CLAUDE_PLUGIN_ROOT}/hook.py"', values) == (
        '"/usr/bin/python3" "/plugins/x/hook.py"'
    )
    assert render("${NODE} run", values) == " run"
    assert render("echo $PYTHON", values) == "echo $PYTHON"


def test_render_quotes_event_values():
    values = {
        "PYTHON": "/usr/bin/python3",
        "CLAUDE_PROJECT_DIR": "/home/me/my project",
        "HOOK_FILE_PATH": "a.py; rm -rf ~",
        "HOOK_TOOL_NAME": "Write",
    }
    rendered = render("${PYTHON} check.py ${CLAUDE_PROJECT_DIR} ${HOOK_FILE_PATH}", values)
    assert rendered == "/usr/bin/python3 check.py '/home/me/my project' 'a.py; rm -rf ~'"
    # Plain words need no quotes; a missing value is still one (empty) argument
    assert render("${HOOK_TOOL_NAME} ${HOOK_EVENT}", values) == "Write ''"

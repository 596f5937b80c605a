"""PreToolUse hook: block git write operations issued through the Bash tool.

Read-only git commands stay available. Commands are tokenized like a shell would,
so a blocked word that only appears as a path or argument (``cat git-commit.txt``,
``echo "git push"``) is not mistaken for a git invocation, while git run through
wrappers (``timeout 30 git push``), ``eval``, ``bash -c``, command substitution or
``find -exec`` is still found.
"""

from __future__ import annotations

import json
import re
import shlex
import sys
from dataclasses import dataclass
from typing import IO, Any

from hookpolicy.utils.logging import logger

GATED_TOOL = "Bash"
BLOCK_EXIT_CODE = 2
ERROR_EXIT_CODE = 1

READ_ONLY_ALTERNATIVES = (
    "git status",
    "git diff",
    "git log",
    "git show",
    "git branch --show-current",
    "git rev-parse",
    "git merge-base",
)

# Subcommands that always mutate the repository or its working tree.
ALWAYS_WRITE = frozenset(
    {
        "commit",
        "push",
        "pull",
        "merge",
        "checkout",
        "switch",
        "reset",
        "rebase",
        "stash",
        "cherry-pick",
    }
)

WORKTREE_WRITE = frozenset({"add", "remove", "move", "prune"})
REMOTE_WRITE = frozenset(
    {"add", "remove", "rm", "rename", "set-url", "set-head", "set-branches", "prune"}
)

_BRANCH_WRITE_FLAGS = frozenset(
    {
        "-d", "-D", "--delete",
        "-m", "-M", "--move",
        "-c", "-C", "--copy",
        "-f", "--force",
        "-u", "--set-upstream-to", "--unset-upstream",
        "-t", "--track", "--no-track",
        "--edit-description",
    }
)  # fmt: skip
_BRANCH_WRITE_LETTERS = frozenset("dDmMcCfut")
_BRANCH_OPTS_WITH_ARG = frozenset(
    {"--contains", "--no-contains", "--merged", "--no-merged", "--points-at", "--sort", "--format"}
)

_TAG_WRITE_FLAGS = frozenset(
    {
        "-d", "--delete",
        "-a", "--annotate",
        "-s", "--sign",
        "-u", "--local-user",
        "-f", "--force",
        "-m", "--message",
        "-F", "--file",
    }
)  # fmt: skip
_TAG_WRITE_LETTERS = frozenset("dasufmF")
_TAG_READ_FLAGS = frozenset({"-l", "--list", "-n", "-v", "--verify"})
_TAG_OPTS_WITH_ARG = _BRANCH_OPTS_WITH_ARG

_GIT_OPTS_WITH_ARG = frozenset(
    {"-C", "-c", "--git-dir", "--work-tree", "--namespace", "--super-prefix", "--config-env"}
)

WRAPPERS = frozenset(
    {
        "sudo", "doas", "env", "time", "nice", "nohup", "command", "exec", "builtin",
        "xargs", "timeout", "stdbuf", "ionice", "setsid", "flock", "watch", "chronic",
    }
)  # fmt: skip
SHELLS = frozenset({"sh", "bash", "zsh", "dash"})
FIND_EXEC_ACTIONS = frozenset({"-exec", "-execdir", "-ok", "-okdir"})
_DEFAULT_WRAPPER_OPTS_WITH_ARG = frozenset({"-u", "-g", "-n", "-C"})
_WRAPPER_OPTS_WITH_ARG = {
    "timeout": frozenset({"-s", "--signal", "-k", "--kill-after"}),
    "xargs": frozenset({"-I", "-L", "-n", "-P", "-d", "-E", "-s", "-a"}),
    "stdbuf": frozenset({"-i", "-o", "-e"}),
    "ionice": frozenset({"-c", "-n", "-p", "-P", "-u"}),
    "flock": frozenset({"-w", "--timeout", "-E", "--conflict-exit-code"}),
    "watch": frozenset({"-n", "--interval"}),
}
# Operands a wrapper takes before the command it runs (`timeout 30 git push`)
_WRAPPER_OPERANDS = {"timeout": 1, "flock": 1}
# Shell words that may precede a command in the same segment
_KEYWORDS = frozenset({"if", "then", "else", "elif", "do", "while", "until", "!", "{"})

_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_PUNCTUATION = frozenset("();<>|&")


def _tokens(command: str) -> list[str]:
    text = command.replace("\r\n", "\n").replace("\n", " ; ")
    lexer = shlex.shlex(text, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        return list(lexer)
    except ValueError as e:
        logger.debug("shlex failed ({error}), falling back to a plain split", error=e)
        return re.findall(r"[();<>|&]+|[^\s();<>|&]+", text)


def split_segments(command: str) -> list[list[str]]:
    """Split a shell command into simple commands, dropping redirections."""
    segments: list[list[str]] = []
    current: list[str] = []
    skip_next = False
    for token in _tokens(command):
        if skip_next:
            skip_next = False
            continue
        if token and set(token) <= _PUNCTUATION:
            if "<" in token or ">" in token:
                # Redirection: drop a leading fd number and the target
                if current and current[-1].isdigit():
                    current.pop()
                skip_next = True
                continue
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _basename(word: str) -> str:
    return re.split(r"[\\/]", word)[-1].strip("`").lower()


def command_words(segment: list[str]) -> list[str]:
    """The command actually run by ``segment`` and its arguments.

    Leading assignments, shell keywords and wrappers such as ``sudo -u me`` or
    ``timeout 30`` are skipped.
    """
    i = 0
    while i < len(segment):
        word = segment[i]
        if _ASSIGNMENT.match(word):
            i += 1
            continue
        base = _basename(word)
        if base in _KEYWORDS:
            i += 1
            continue
        if base in WRAPPERS:
            opts = _WRAPPER_OPTS_WITH_ARG.get(base, _DEFAULT_WRAPPER_OPTS_WITH_ARG)
            i += 1
            while i < len(segment) and segment[i].startswith("-"):
                i += 2 if segment[i] in opts else 1
            i += _WRAPPER_OPERANDS.get(base, 0)
            continue
        return segment[i:]
    return []


def git_arguments(segment: list[str]) -> list[str] | None:
    """Arguments after ``git`` if ``segment`` runs git, else ``None``."""
    words = command_words(segment)
    if words and _basename(words[0]) in ("git", "git.exe"):
        return [arg.strip("`") for arg in words[1:]]
    return None


def _subcommand(args: list[str]) -> tuple[str | None, list[str]]:
    i = 0
    while i < len(args):
        arg = args[i]
        if arg in _GIT_OPTS_WITH_ARG:
            i += 2
            continue
        if arg.startswith("-"):
            i += 1
            continue
        return arg, args[i + 1 :]
    return None, []


def _short_cluster_hits(arg: str, letters: frozenset[str]) -> bool:
    return (
        arg.startswith("-")
        and not arg.startswith("--")
        and len(arg) > 2
        and any(ch in letters for ch in arg[1:])
    )


def _positionals(args: list[str], opts_with_arg: frozenset[str]) -> list[str]:
    found: list[str] = []
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            found.extend(args[i + 1 :])
            break
        if arg in opts_with_arg:
            i += 2
            continue
        if not arg.startswith("-"):
            found.append(arg)
        i += 1
    return found


def _branch_operation(args: list[str]) -> str | None:
    for arg in args:
        flag = arg.split("=", 1)[0]
        if flag in _BRANCH_WRITE_FLAGS:
            return f"git branch {flag}"
        if _short_cluster_hits(arg, _BRANCH_WRITE_LETTERS):
            return f"git branch {arg}"
    listing = any(arg in ("-l", "--list") for arg in args)
    if _positionals(args, _BRANCH_OPTS_WITH_ARG) and not listing:
        return "git branch (create)"
    return None


def _tag_operation(args: list[str]) -> str | None:
    for arg in args:
        flag = arg.split("=", 1)[0]
        if flag in _TAG_WRITE_FLAGS:
            return f"git tag {flag}"
        if _short_cluster_hits(arg, _TAG_WRITE_LETTERS):
            return f"git tag {arg}"
    if any(arg in _TAG_READ_FLAGS for arg in args):
        return None
    if _positionals(args, _TAG_OPTS_WITH_ARG):
        return "git tag (create)"
    return None


def classify(args: list[str]) -> str | None:
    """The blocked operation performed by ``git <args>``, or ``None`` if read-only."""
    sub, rest = _subcommand(args)
    if sub is None:
        return None
    if sub in ALWAYS_WRITE:
        return f"git {sub}"
    if sub == "branch":
        return _branch_operation(rest)
    if sub == "tag":
        return _tag_operation(rest)
    action = next((arg for arg in rest if not arg.startswith("-")), None)
    if sub == "worktree" and action in WORKTREE_WRITE:
        return f"git worktree {action}"
    if sub == "remote" and action in REMOTE_WRITE:
        return f"git remote {action}"
    return None


def _inline_script(words: list[str]) -> str | None:
    """The script run by ``bash -c "..."`` and friends, or by ``eval``."""
    if not words:
        return None
    base = _basename(words[0])
    if base == "eval":
        return " ".join(words[1:])
    if base not in SHELLS:
        return None
    for i, arg in enumerate(words[1:-1], start=1):
        if arg.startswith("-") and not arg.startswith("--") and arg.endswith("c"):
            return words[i + 1]
    return None


def _exec_commands(words: list[str]) -> list[list[str]]:
    """Commands run by ``find ... -exec <command> ;`` actions."""
    if not words or _basename(words[0]) != "find":
        return []
    found: list[list[str]] = []
    i = 1
    while i < len(words):
        if words[i] in FIND_EXEC_ACTIONS:
            end = i + 1
            while end < len(words) and words[end] not in (";", "+"):
                end += 1
            found.append(words[i + 1 : end])
            i = end
        i += 1
    return found


def substitutions(command: str) -> list[str]:
    """Bodies of the ``$(...)`` and backtick substitutions in ``command``.

    Substitutions inside double quotes still run, so only single quotes and
    backslashes hide them.
    """
    bodies: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(command):
        ch = command[i]
        if quote == "'":
            if ch == "'":
                quote = None
        elif ch == "\\":
            i += 1
        elif ch == "'" and quote is None:
            quote = "'"
        elif ch == '"':
            quote = None if quote == '"' else '"'
        elif ch == "`":
            end = command.find("`", i + 1)
            if end == -1:
                end = len(command)
            bodies.append(command[i + 1 : end])
            i = end
        elif command.startswith("$(", i):
            depth, end = 1, i + 2
            while end < len(command) and depth:
                depth += {"(": 1, ")": -1}.get(command[end], 0)
                end += 1
            bodies.append(command[i + 2 : end - 1] if depth == 0 else command[i + 2 :])
            i = end - 1
        i += 1
    return bodies


def find_blocked_operation(command: str) -> str | None:
    """Return the first git write operation in ``command`` (e.g. ``"git push"``)."""
    for body in substitutions(command):
        operation = find_blocked_operation(body)
        if operation is not None:
            return operation
    for segment in split_segments(command):
        words = command_words(segment)
        script = _inline_script(words)
        if script is not None:
            operation = find_blocked_operation(script)
            if operation is not None:
                return operation
            continue
        for executed in _exec_commands(words):
            args = git_arguments(executed)
            operation = classify(args) if args is not None else None
            if operation is not None:
                return operation
        args = git_arguments(segment)
        if args is None:
            continue
        operation = classify(args)
        if operation is not None:
            return operation
    return None


def block_message(operation: str) -> str:
    return "\n".join(
        [
            f'Git write operation blocked: "{operation}"',
            "Policy: git write operations must be performed manually by the user.",
            "Read-only operations remain available: " + ", ".join(READ_ONLY_ALTERNATIVES) + ".",
        ]
    )


@dataclass(frozen=True, slots=True)
class GuardVerdict:
    exit_code: int
    operation: str | None = None
    message: str = ""


def check(payload: dict[str, Any]) -> GuardVerdict:
    """Decide on a hook payload. Tools other than Bash are allowed without inspection."""
    tool = payload.get("tool_name", payload.get("tool"))
    if tool != GATED_TOOL:
        return GuardVerdict(0)
    tool_input = (
        payload.get("tool_input") or payload.get("toolInput") or payload.get("parameters") or {}
    )
    command = tool_input.get("command", "") if isinstance(tool_input, dict) else ""
    if not isinstance(command, str) or not command:
        return GuardVerdict(0)
    operation = find_blocked_operation(command)
    if operation is None:
        return GuardVerdict(0)
    logger.debug("git-guard blocked {operation}", operation=operation)
    return GuardVerdict(BLOCK_EXIT_CODE, operation, block_message(operation))


def main(
    stdin: IO[bytes] | None = None,
    stdout: IO[bytes] | None = None,
    stderr: IO[str] | None = None,
) -> int:
    """Hook entry point: payload on stdin, echoed on stdout when allowed."""
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout.buffer
    stderr = stderr or sys.stderr

    raw = stdin.read()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        stderr.write(f"git-guard: cannot parse hook input, refusing to allow: {e}\n")
        return ERROR_EXIT_CODE
    if not isinstance(payload, dict):
        stderr.write("git-guard: hook input is not a JSON object, refusing to allow\n")
        return ERROR_EXIT_CODE

    verdict = check(payload)
    if verdict.exit_code == 0:
        stdout.write(raw)
        stdout.flush()
        return 0
    stderr.write(verdict.message + "\n")
    return verdict.exit_code


if __name__ == "__main__":
    sys.exit(main())

from __future__ import annotations


class HookPolicyException(Exception):
    """Base exception class for hookpolicy."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigError(HookPolicyException, ValueError):
    """Configuration error.

    ``location`` points at the offending spot, either ``source:line:column`` for
    syntax errors or ``source:PreToolUse[0].hooks[1]`` for structural ones.
    """

    def __init__(self, message: str, location: str | None = None):
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


class MatcherSyntaxError(HookPolicyException, ValueError):
    """Matcher expression could not be parsed."""

    def __init__(self, message: str, expression: str, offset: int):
        self.expression = expression
        self.offset = offset
        super().__init__(f"{message} at offset {offset} in matcher {expression!r}")


class ResolutionError(HookPolicyException, OSError):
    """Interpreter lookup failed with an I/O error."""

    pass


class InterpreterNotFoundError(ResolutionError):
    """No interpreter was found; hooks that need it are unavailable."""

    def __init__(self, name: str, searched: list[str]):
        self.name = name
        self.searched = searched
        super().__init__(f"{name} not found in PATH or {len(searched)} known location(s)")


class ChainIntegrityError(HookPolicyException, RuntimeError):
    """A hook broke the payload chain instead of forwarding it."""

    def __init__(self, hook: str, detail: str):
        self.hook = hook
        super().__init__(f"Hook '{hook}' broke the payload chain: {detail}")


class CheckpointNotFoundError(HookPolicyException, LookupError):
    """A checkpoint name or position does not exist in the log."""

    def __init__(self, ref: str | int):
        self.ref = ref
        super().__init__(f"No checkpoint {ref!r}")

"""Matcher expressions deciding whether a policy rule applies to an event.

Two syntaxes are accepted:

* the host's native form: ``""`` or ``"*"`` match everything, and a bare tool
  alternation such as ``"Bash"`` or ``"Edit|Write"`` matches the whole tool name;
* boolean expressions over event fields::

      tool == "Bash" && tool_input.command matches "git\\s+push"
      !(tool == "Read") || tool_input.file_path matches "\\.env"

``matches`` searches on token boundaries, so ``"git commit"`` does not match
inside ``not-git-committed.txt``. Fields that do not exist on the event make
their term false instead of raising.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal

from hookpolicy.exception import MatcherSyntaxError
from hookpolicy.hooks.models import ToolInvocationEvent

# Characters that may not touch either end of a ``matches`` hit.
_TOKEN_CHARS = r"\w./-"

_LEGACY_MATCHER = re.compile(r"^[^\s=!&()\"']*$")

_TOKEN_SPEC = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<op>&&|\|\||==|!=|!|\(|\))
  | (?P<string>"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')
  | (?P<name>[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)
    """,
    re.VERBOSE,
)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()


def _resolve_field(event: ToolInvocationEvent, path: tuple[str, ...]) -> Any:
    head, rest = path[0], path[1:]
    if head == "tool" and not rest:
        return event.tool
    if head == "event" and not rest:
        return event.event_type.value
    if head == "tool_output" and not rest:
        return MISSING if event.tool_output is None else event.tool_output
    if head == "tool_input" and rest:
        value: Any = event.tool_input
        for key in rest:
            if not isinstance(value, dict) or key not in value:
                return MISSING
            value = value[key]
        return value
    return MISSING


@dataclass(frozen=True, slots=True)
class Always:
    def evaluate(self, event: ToolInvocationEvent) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class ToolPattern:
    """Host-native matcher: a regex that must match the whole tool name."""

    pattern: re.Pattern[str]

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        return self.pattern.fullmatch(event.tool) is not None


@dataclass(frozen=True, slots=True)
class Compare:
    field: tuple[str, ...]
    op: Literal["==", "!="]
    value: str

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        actual = _resolve_field(event, self.field)
        if not isinstance(actual, str):
            return False
        return (actual == self.value) if self.op == "==" else (actual != self.value)


@dataclass(frozen=True, slots=True)
class Match:
    field: tuple[str, ...]
    pattern: re.Pattern[str]

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        actual = _resolve_field(event, self.field)
        if not isinstance(actual, str):
            return False
        return self.pattern.search(actual) is not None


@dataclass(frozen=True, slots=True)
class Not:
    operand: MatcherExpression

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        return not self.operand.evaluate(event)


@dataclass(frozen=True, slots=True)
class And:
    left: MatcherExpression
    right: MatcherExpression

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        return self.left.evaluate(event) and self.right.evaluate(event)


@dataclass(frozen=True, slots=True)
class Or:
    left: MatcherExpression
    right: MatcherExpression

    def evaluate(self, event: ToolInvocationEvent) -> bool:
        return self.left.evaluate(event) or self.right.evaluate(event)


MatcherExpression = Always | ToolPattern | Compare | Match | Not | And | Or


def token_pattern(regex: str) -> re.Pattern[str]:
    """Compile ``regex`` so that it only matches whole tokens."""
    return re.compile(rf"(?<![{_TOKEN_CHARS}])(?:{regex})(?![{_TOKEN_CHARS}])")


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    text: str
    offset: int


def _unquote(literal: str) -> str:
    # Only the quote and the backslash itself are escapes; everything else is kept
    # so regexes like "\bgit\b" survive untouched.
    body = literal[1:-1]
    quote = literal[0]
    return body.replace("\\" + quote, quote).replace("\\\\", "\\")


def _tokenize(text: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_SPEC.match(text, pos)
        if m is None:
            raise MatcherSyntaxError(f"Unexpected character {text[pos]!r}", text, pos)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def parse(self) -> MatcherExpression:
        if not self.tokens:
            raise MatcherSyntaxError("Empty expression", self.text, 0)
        expr = self._or()
        if self.pos < len(self.tokens):
            tok = self.tokens[self.pos]
            raise MatcherSyntaxError(f"Unexpected {tok.text!r}", self.text, tok.offset)
        return expr

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, kind: str, text: str | None = None) -> _Token:
        tok = self._peek()
        if tok is None:
            expected = text or kind
            raise MatcherSyntaxError(
                f"Expected {expected}, got end of input", self.text, len(self.text)
            )
        if tok.kind != kind or (text is not None and tok.text != text):
            raise MatcherSyntaxError(
                f"Expected {text or kind}, got {tok.text!r}", self.text, tok.offset
            )
        self.pos += 1
        return tok

    def _accept(self, text: str) -> bool:
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text == text:
            self.pos += 1
            return True
        return False

    def _or(self) -> MatcherExpression:
        expr = self._and()
        while self._accept("||"):
            expr = Or(expr, self._and())
        return expr

    def _and(self) -> MatcherExpression:
        expr = self._unary()
        while self._accept("&&"):
            expr = And(expr, self._unary())
        return expr

    def _unary(self) -> MatcherExpression:
        if self._accept("!"):
            return Not(self._unary())
        if self._accept("("):
            expr = self._or()
            self._take("op", ")")
            return expr
        return self._term()

    def _term(self) -> MatcherExpression:
        name = self._take("name")
        field = tuple(name.text.split("."))
        tok = self._peek()
        if tok is not None and tok.kind == "op" and tok.text in ("==", "!="):
            self.pos += 1
            value = _unquote(self._take("string").text)
            return Compare(field, "==" if tok.text == "==" else "!=", value)
        if tok is not None and tok.kind == "name" and tok.text == "matches":
            self.pos += 1
            literal = self._take("string")
            try:
                return Match(field, token_pattern(_unquote(literal.text)))
            except re.error as e:
                raise MatcherSyntaxError(f"Invalid regex ({e})", self.text, literal.offset) from e
        offset = tok.offset if tok is not None else len(self.text)
        raise MatcherSyntaxError("Expected '==', '!=' or 'matches'", self.text, offset)


def parse_matcher(text: str) -> MatcherExpression:
    """Parse a matcher string into an expression tree.

    Raises:
        MatcherSyntaxError: If the text is neither a tool alternation nor a valid
            expression.
    """
    stripped = text.strip()
    if stripped in ("", "*"):
        return Always()
    if _LEGACY_MATCHER.match(stripped):
        try:
            return ToolPattern(re.compile(stripped))
        except re.error as e:
            raise MatcherSyntaxError(f"Invalid tool pattern ({e})", text, 0) from e
    return _Parser(text).parse()


def evaluate(expression: MatcherExpression, event: ToolInvocationEvent) -> bool:
    """Evaluate ``expression`` against ``event``. Pure and side-effect free."""
    return expression.evaluate(event)


@dataclass(frozen=True, slots=True)
class Matcher:
    """A matcher string together with its parsed form."""

    source: str
    expression: MatcherExpression

    @classmethod
    def parse(cls, source: str) -> Matcher:
        return cls(source, parse_matcher(source))

    def matches(self, event: ToolInvocationEvent) -> bool:
        return self.expression.evaluate(event)

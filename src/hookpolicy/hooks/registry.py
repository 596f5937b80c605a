"""Policy registry: ordered rules per event type, merged from several sources."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

from hookpolicy.exception import ConfigError, MatcherSyntaxError
from hookpolicy.hooks.config import (
    CommandHookConfig,
    HooksDocument,
    RuleConfig,
    parse_hooks_document,
)
from hookpolicy.hooks.matcher import Matcher
from hookpolicy.hooks.models import HookEventType, ToolInvocationEvent
from hookpolicy.hooks.variables import unknown_variables
from hookpolicy.utils.logging import logger

HOOKS_FILE_NAME = "hooks.json"

# Plugin directory shipped with the package: the git write blocker and session checkpoints.
BUNDLED_PLUGIN_ROOT = Path(__file__).resolve().parent.parent / "data"


@dataclass(frozen=True, slots=True, kw_only=True)
class PolicyRule:
    """A matcher and its ordered hooks for one event type."""

    event_type: HookEventType
    matcher: Matcher
    hooks: tuple[CommandHookConfig, ...]
    description: str | None = None
    source: str = "<string>"
    index: int = 0

    @property
    def key(self) -> tuple[HookEventType, str, tuple[CommandHookConfig, ...]]:
        """Structural identity used to drop exact duplicates on merge."""
        return (self.event_type, self.matcher.source, self.hooks)

    @property
    def location(self) -> str:
        return f"{self.source}:{self.event_type.value}[{self.index}]"

    def hook_name(self, position: int) -> str:
        return f"{self.location}.hooks[{position}]"

    def matches(self, event: ToolInvocationEvent) -> bool:
        return self.matcher.matches(event)

    def to_document(self) -> dict[str, Any]:
        rule: dict[str, Any] = {
            "matcher": self.matcher.source,
            "hooks": [hook.to_document() for hook in self.hooks],
        }
        if self.description is not None:
            rule["description"] = self.description
        return rule


def _build_rule(
    rule: RuleConfig, event_type: HookEventType, index: int, source: str
) -> PolicyRule:
    location = f"{source}:{event_type.value}[{index}]"
    try:
        matcher = Matcher.parse(rule.matcher)
    except MatcherSyntaxError as e:
        raise ConfigError(e.message, f"{location}.matcher") from None
    for position, hook in enumerate(rule.hooks):
        unknown = unknown_variables(hook.command)
        if unknown:
            raise ConfigError(
                f"Unknown substitution variable(s): {', '.join(unknown)}",
                f"{location}.hooks[{position}].command",
            )
    return PolicyRule(
        event_type=event_type,
        matcher=matcher,
        hooks=rule.hooks,
        description=rule.description,
        source=source,
        index=index,
    )


@dataclass(frozen=True, slots=True)
class RuleSet:
    """Rules contributed by one configuration source."""

    source: str
    rules: tuple[PolicyRule, ...]

    @classmethod
    def from_document(cls, document: HooksDocument, source: str = "<string>") -> RuleSet:
        rules: list[PolicyRule] = []
        for event_type in HookEventType:
            for index, rule in enumerate(document.rules(event_type)):
                rules.append(_build_rule(rule, event_type, index, source))
        return cls(source, tuple(rules))

    @classmethod
    def from_text(cls, text: str, source: str = "<string>") -> RuleSet:
        return cls.from_document(parse_hooks_document(text, source), source)

    @classmethod
    def from_file(cls, path: Path) -> RuleSet:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration: {e}", str(path)) from e
        return cls.from_text(text, str(path))


class PolicyRegistry:
    """Immutable, ordered collection of policy rules grouped by event type."""

    def __init__(
        self,
        rules: Mapping[HookEventType, Sequence[PolicyRule]] | None = None,
        sources: Sequence[str] = (),
    ) -> None:
        rules = rules or {}
        self._rules = MappingProxyType(
            {event_type: tuple(rules.get(event_type, ())) for event_type in HookEventType}
        )
        self.sources = tuple(sources)

    def rules_for(self, event_type: HookEventType) -> tuple[PolicyRule, ...]:
        return self._rules[event_type]

    def __iter__(self) -> Iterator[PolicyRule]:
        for rules in self._rules.values():
            yield from rules

    def __len__(self) -> int:
        return sum(len(rules) for rules in self._rules.values())

    def to_document(self) -> dict[str, list[dict[str, Any]]]:
        return {
            event_type.value: [rule.to_document() for rule in rules]
            for event_type, rules in self._rules.items()
            if rules
        }

    def dumps(self) -> str:
        return json.dumps(self.to_document(), indent=2, ensure_ascii=False)


def merge(sources: Sequence[RuleSet]) -> PolicyRegistry:
    """Concatenate rule sets in priority order, dropping exact structural duplicates.

    Near-duplicates (same matcher but different hooks, or the other way round) are
    kept: two blocking hooks for the same operation are harmless.

    Raises:
        ConfigError: If the merged registry does not serialize to a valid document.
    """
    merged: dict[HookEventType, list[PolicyRule]] = {event_type: [] for event_type in HookEventType}
    seen: set[tuple[Any, ...]] = set()
    for rule_set in sources:
        for rule in rule_set.rules:
            if rule.key in seen:
                logger.debug("Dropping duplicate rule {location}", location=rule.location)
                continue
            seen.add(rule.key)
            merged[rule.event_type].append(rule)

    registry = PolicyRegistry(merged, [rule_set.source for rule_set in sources])
    # The merged registry must itself be a well-formed document
    parse_hooks_document(registry.dumps(), "<merged>")
    logger.info(
        "Built policy registry with {count} rule(s) from {sources} source(s)",
        count=len(registry),
        sources=len(sources),
    )
    return registry


@dataclass(frozen=True, slots=True)
class DiscoveryPaths:
    """Configuration files consulted when none are given explicitly, in priority order."""

    project: Path
    user: Path
    plugin: Path | None

    @classmethod
    def from_work_dir(cls, work_dir: Path, plugin_root: Path | None = None) -> DiscoveryPaths:
        xdg_config_home = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        return cls(
            project=work_dir / ".hookpolicy" / HOOKS_FILE_NAME,
            user=xdg_config_home / "hookpolicy" / HOOKS_FILE_NAME,
            plugin=plugin_root / "hooks" / HOOKS_FILE_NAME if plugin_root else None,
        )

    def ordered(self) -> list[Path]:
        paths = [self.project, self.user]
        if self.plugin is not None:
            paths.append(self.plugin)
        return paths


def load_registry(paths: Sequence[Path], *, skip_missing: bool = False) -> PolicyRegistry:
    """Build a registry from configuration files, first path first.

    Raises:
        ConfigError: On the first invalid file, or a missing one unless ``skip_missing``.
    """
    rule_sets: list[RuleSet] = []
    for path in paths:
        if skip_missing and not path.is_file():
            logger.debug("No hook configuration at {path}", path=path)
            continue
        rule_sets.append(RuleSet.from_file(path))
    return merge(rule_sets)


def discover_registry(work_dir: Path, plugin_root: Path | None = None) -> PolicyRegistry:
    return load_registry(
        DiscoveryPaths.from_work_dir(work_dir, plugin_root).ordered(), skip_missing=True
    )

"""Display and formatting utilities for policy registries."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hookpolicy.hooks.dispatcher import DispatchStats
    from hookpolicy.hooks.registry import DiscoveryPaths, PolicyRegistry, PolicyRule


def format_rule_info(rule: PolicyRule) -> str:
    """Format a single rule for display."""
    matcher = rule.matcher.source or "*"
    lines = [f"   • {rule.location}  [{matcher}]"]
    if rule.description:
        lines.append(f"     {rule.description}")
    for hook in rule.hooks:
        mode = "async" if hook.async_ else "sync"
        timeout = f"{hook.timeout}ms" if hook.timeout is not None else "default"
        lines.append(f"     - ({mode}, timeout {timeout}) {hook.command}")
    return "\n".join(lines)


def format_sources(registry: PolicyRegistry, paths: DiscoveryPaths | None) -> list[str]:
    lines: list[str] = ["📁 Configuration sources (highest priority first):"]
    if paths is not None:
        loaded = set(registry.sources)
        labelled = (("Project", paths.project), ("User", paths.user), ("Plugin", paths.plugin))
        for label, path in labelled:
            if path is None:
                continue
            state = "" if str(path) in loaded else "  (not found)"
            lines.append(f"   {label + ':':<9}{path}{state}")
    else:
        lines.extend(f"   {source}" for source in registry.sources)
    return lines


def format_empty_registry() -> list[str]:
    """Format the 'no rules' state with instructions."""
    return [
        "No rules configured.",
        "",
        "To add a rule, create .hookpolicy/hooks.json in the project:",
        "",
        "  {",
        '    "PreToolUse": [',
        '      {"matcher": "Bash", "hooks": [{"type": "command", "command": "./check.sh"}]}',
        "    ]",
        "  }",
    ]


def format_dispatch_statistics(stats: DispatchStats) -> list[str]:
    """Format dispatch statistics if any dispatch happened."""
    if stats.total_dispatches == 0:
        return []
    return [
        "📊 Dispatch Statistics:",
        f"   Dispatches: {stats.total_dispatches}",
        f"   Allowed: {stats.allowed} | Blocked: {stats.blocked}",
        f"   Hook runs: {stats.hook_runs} | Async: {stats.async_runs} | "
        f"Timeouts: {stats.timeouts} | Unavailable: {stats.unavailable}",
        f"   Total duration: {stats.total_duration_ms}ms (avg {stats.avg_duration_ms:.1f}ms)",
        "",
    ]


def build_registry_display(
    registry: PolicyRegistry,
    paths: DiscoveryPaths | None = None,
    stats: DispatchStats | None = None,
) -> str:
    """Build the complete registry listing.

    Args:
        registry: The merged registry to show
        paths: Discovery locations, when the registry came from discovery
        stats: Counters from a dispatcher that ran against this registry

    Returns:
        Formatted display string
    """
    lines: list[str] = ["\n🪝 Hook Policy", ""]
    lines.extend(format_sources(registry, paths))
    lines.append("")

    if len(registry) == 0:
        lines.extend(format_empty_registry())
        return "\n".join(lines)

    lines.append(f"📋 Found {len(registry)} rule(s):")
    lines.append("")
    current = None
    for rule in registry:
        if rule.event_type != current:
            current = rule.event_type
            lines.append(f"{current.value}:")
        lines.append(format_rule_info(rule))
    lines.append("")

    if stats is not None:
        lines.extend(format_dispatch_statistics(stats))
    return "\n".join(lines)

"""Hook policy engine.

Rules from one or more ``hooks.json`` documents are merged into a registry; the
dispatcher runs the hooks of every rule matching an event and turns their exit
codes into a single Allow or Block decision.
"""

from hookpolicy.hooks.config import CommandHookConfig, HooksDocument, RuleConfig
from hookpolicy.hooks.dispatcher import Dispatcher, DispatchStats
from hookpolicy.hooks.display import build_registry_display
from hookpolicy.hooks.executor import HookExecutor
from hookpolicy.hooks.matcher import Matcher, MatcherExpression, evaluate, parse_matcher
from hookpolicy.hooks.models import (
    Decision,
    DecisionKind,
    HookEventType,
    HookResult,
    ToolInvocationEvent,
)
from hookpolicy.hooks.registry import (
    DiscoveryPaths,
    PolicyRegistry,
    PolicyRule,
    RuleSet,
    discover_registry,
    load_registry,
    merge,
)
from hookpolicy.hooks.resolver import RuntimeResolver, is_wsl, rewrite_args, to_wsl_path

__all__ = [
    # Models
    "HookEventType",
    "ToolInvocationEvent",
    "HookResult",
    "Decision",
    "DecisionKind",
    # Config
    "CommandHookConfig",
    "RuleConfig",
    "HooksDocument",
    # Matcher
    "Matcher",
    "MatcherExpression",
    "parse_matcher",
    "evaluate",
    # Resolver
    "RuntimeResolver",
    "is_wsl",
    "to_wsl_path",
    "rewrite_args",
    # Registry
    "PolicyRule",
    "RuleSet",
    "PolicyRegistry",
    "DiscoveryPaths",
    "merge",
    "load_registry",
    "discover_registry",
    # Dispatch
    "Dispatcher",
    "DispatchStats",
    "HookExecutor",
    # Display
    "build_registry_display",
]

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click
from rich.console import Console
from rich.markup import escape

from hookpolicy.config import Config, load_config
from hookpolicy.constant import VERSION
from hookpolicy.exception import (
    ChainIntegrityError,
    CheckpointNotFoundError,
    ConfigError,
    InterpreterNotFoundError,
    ResolutionError,
)
from hookpolicy.hooks.dispatcher import Dispatcher
from hookpolicy.hooks.display import build_registry_display, format_dispatch_statistics
from hookpolicy.hooks.models import HookEventType, ToolInvocationEvent
from hookpolicy.hooks.registry import (
    BUNDLED_PLUGIN_ROOT,
    DiscoveryPaths,
    PolicyRegistry,
    load_registry,
)
from hookpolicy.hooks.resolver import DEFAULT_SPECS, RuntimeResolver

_LOG_LEVEL_OPTION = "--log-level"
_DEFAULT_LOG_LEVEL_KEY = "default"

EXIT_ALLOW = 0
EXIT_ERROR = 1
EXIT_BLOCK = 2

console = Console(stderr=True, highlight=False)


def _fail(message: str, code: int = EXIT_ERROR) -> NoReturn:
    console.print(f"[red]error:[/red] {escape(message)}", soft_wrap=True)
    sys.exit(code)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(VERSION)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Log debug information, also to stderr. Default: no.",
)
@click.option(
    "--log-level",
    "-L",
    "log_level_override",
    multiple=True,
    help=(
        "Override log level per module. Use `module=LEVEL` to target a specific module "
        "(e.g. `-L hookpolicy.hooks=DEBUG`) or just `LEVEL` to change the default level."
    ),
)
@click.option(
    "--config-file",
    type=click.Path(file_okay=True, dir_okay=False, path_type=Path),
    default=None,
    help="Configuration file. Default: ~/.hookpolicy/config.toml.",
)
@click.pass_context
def cli(
    ctx: click.Context,
    debug: bool,
    log_level_override: tuple[str, ...],
    config_file: Path | None,
):
    """Policy hooks for agent tool calls."""
    from hookpolicy.share import get_share_dir
    from hookpolicy.utils.logging import configure_logging, logger

    try:
        config = load_config(config_file)
    except ConfigError as e:
        raise click.BadOptionUsage("--config-file", str(e)) from e

    logger.enable("hookpolicy")
    config_levels = dict(config.logging.levels)
    cli_levels = _parse_log_level_overrides(log_level_override)
    merged_levels = {**config_levels, **cli_levels}
    base_level = "TRACE" if debug else config.logging.level
    try:
        configure_logging(
            get_share_dir() / "logs" / "hookpolicy.log",
            base_level=base_level,
            module_levels=merged_levels,
            stderr_level="DEBUG" if debug else "WARNING",
        )
    except ValueError as exc:
        raise click.BadOptionUsage("--log-level", str(exc)) from exc

    ctx.obj = config


def _registry_options(func):
    func = click.option(
        "--bundled",
        is_flag=True,
        default=False,
        help="Use the bundled plugin rules as the plugin root. Default: no.",
    )(func)
    func = click.option(
        "--plugin-root",
        type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
        default=None,
        help="Plugin directory whose hooks/hooks.json is loaded last. Default: from config.",
    )(func)
    func = click.option(
        "--work-dir",
        "-w",
        type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
        default=None,
        help="Project directory. Default: current directory.",
    )(func)
    func = click.option(
        "--hooks-file",
        "-f",
        "hooks_files",
        type=click.Path(exists=True, file_okay=True, dir_okay=False, path_type=Path),
        multiple=True,
        help=(
            "Hooks document to load, highest priority first. Add this option multiple times "
            "to merge several documents. Default: discover project, user and plugin files."
        ),
    )(func)
    return func


def _plugin_root(config: Config, plugin_root: Path | None, bundled: bool) -> Path | None:
    root = BUNDLED_PLUGIN_ROOT if bundled else (plugin_root or config.plugin_root)
    return root.absolute() if root is not None else None


def _load(
    hooks_files: tuple[Path, ...],
    work_dir: Path,
    plugin_root: Path | None,
) -> tuple[PolicyRegistry, DiscoveryPaths | None]:
    if hooks_files:
        return load_registry(list(hooks_files)), None
    paths = DiscoveryPaths.from_work_dir(work_dir, plugin_root)
    return load_registry(paths.ordered(), skip_missing=True), paths


@cli.command()
@click.argument(
    "event_name",
    type=click.Choice([event_type.value for event_type in HookEventType]),
    required=False,
)
@_registry_options
@click.option(
    "--stats",
    is_flag=True,
    default=False,
    help="Print dispatch statistics to stderr. Default: no.",
)
@click.pass_obj
def dispatch(
    config: Config,
    event_name: str | None,
    hooks_files: tuple[Path, ...],
    work_dir: Path | None,
    plugin_root: Path | None,
    bundled: bool,
    stats: bool,
):
    """Dispatch the event read from stdin and report the decision.

    Exits 0 with the final payload on stdout when allowed, 2 with the reason on
    stderr when blocked, and 1 on configuration or chain errors.
    """
    work_dir = (work_dir or Path.cwd()).absolute()
    plugin_root = _plugin_root(config, plugin_root, bundled)
    raw = click.get_binary_stream("stdin").read()
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        _fail(f"Event on stdin is not JSON: {e}")
    if not isinstance(data, dict):
        _fail("Event on stdin must be a JSON object")
    try:
        event = ToolInvocationEvent.from_payload(data, event_name)
    except ValueError as e:
        _fail(f"Invalid event: {e}")

    try:
        registry, _ = _load(hooks_files, work_dir, plugin_root)
    except ConfigError as e:
        _fail(str(e))

    dispatcher = Dispatcher(
        registry,
        plugin_root=plugin_root,
        project_dir=work_dir,
        default_timeout_ms=config.default_timeout,
    )

    async def _run():
        try:
            return await dispatcher.dispatch(event)
        finally:
            await dispatcher.aclose()

    try:
        decision = asyncio.run(_run())
    except ChainIntegrityError as e:
        _fail(str(e))

    if stats:
        click.echo("\n".join(format_dispatch_statistics(dispatcher.stats)), err=True)
    if decision.allowed:
        stdout = click.get_binary_stream("stdout")
        stdout.write(decision.payload)
        stdout.flush()
        sys.exit(EXIT_ALLOW)
    click.echo(decision.reason, err=True)
    sys.exit(EXIT_BLOCK)


@cli.command()
@_registry_options
@click.option(
    "--dump",
    is_flag=True,
    default=False,
    help="Print the merged document on success. Default: no.",
)
@click.pass_obj
def validate(
    config: Config,
    hooks_files: tuple[Path, ...],
    work_dir: Path | None,
    plugin_root: Path | None,
    bundled: bool,
    dump: bool,
):
    """Check that the hooks documents load and merge cleanly."""
    work_dir = (work_dir or Path.cwd()).absolute()
    try:
        plugin_root = _plugin_root(config, plugin_root, bundled)
        registry, _ = _load(hooks_files, work_dir, plugin_root)
    except ConfigError as e:
        _fail(str(e))
    if dump:
        click.echo(registry.dumps())
    else:
        click.echo(f"OK: {len(registry)} rule(s) from {len(registry.sources)} source(s)")


@cli.command("list")
@_registry_options
@click.pass_obj
def list_(
    config: Config,
    hooks_files: tuple[Path, ...],
    work_dir: Path | None,
    plugin_root: Path | None,
    bundled: bool,
):
    """Show the merged rules in dispatch order."""
    work_dir = (work_dir or Path.cwd()).absolute()
    try:
        plugin_root = _plugin_root(config, plugin_root, bundled)
        registry, paths = _load(hooks_files, work_dir, plugin_root)
    except ConfigError as e:
        _fail(str(e))
    click.echo(build_registry_display(registry, paths))


@cli.command()
@click.argument("names", nargs=-1)
@click.option(
    "--candidates",
    is_flag=True,
    default=False,
    help="Also list every location searched, in order. Default: no.",
)
def resolve(names: tuple[str, ...], candidates: bool):
    """Locate hook interpreters (node, python)."""
    resolver = RuntimeResolver()
    missing = False
    for name in names or tuple(DEFAULT_SPECS):
        try:
            click.echo(f"{name}: {resolver.resolve(name)}")
        except InterpreterNotFoundError as e:
            missing = True
            click.echo(f"{name}: not found", err=True)
            if candidates:
                for path in e.searched:
                    click.echo(f"  searched {path}", err=True)
            continue
        except ResolutionError as e:
            _fail(str(e))
        if candidates and name in DEFAULT_SPECS:
            for path in resolver.candidates(DEFAULT_SPECS[name]):
                click.echo(f"  candidate {path}")
    if resolver.wsl:
        click.echo("(running under WSL: Windows paths are rewritten to /mnt/<drive>/...)")
    sys.exit(EXIT_ERROR if missing else 0)


@cli.group()
@click.option(
    "--log",
    "log_path",
    type=click.Path(file_okay=True, dir_okay=False, path_type=Path),
    default=None,
    help="Checkpoint log. Default: from config, else .hookpolicy/checkpoints.log.",
)
@click.option(
    "--work-dir",
    "-w",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    default=None,
    help="Project directory. Default: current directory.",
)
@click.pass_context
def checkpoint(ctx: click.Context, log_path: Path | None, work_dir: Path | None):
    """Record and compare session checkpoints."""
    from hookpolicy.hooks.builtin.session_checkpoint import default_log_path
    from hookpolicy.session.store import CheckpointStore

    config: Config = ctx.obj
    work_dir = (work_dir or Path.cwd()).absolute()
    path = log_path or config.checkpoint_log or default_log_path(str(work_dir))
    ctx.obj = (CheckpointStore(path), work_dir)


@checkpoint.command("create")
@click.argument("name")
@click.option("--revision", default=None, help="Revision to record. Default: git HEAD.")
@click.pass_obj
def checkpoint_create(obj, name: str, revision: str | None):
    """Append a named checkpoint."""
    from hookpolicy.session.signals import current_revision
    from hookpolicy.session.store import NO_REVISION

    store, work_dir = obj
    revision = revision or current_revision(work_dir) or NO_REVISION
    try:
        entry = store.create(name, revision)
    except (ValueError, OSError) as e:
        _fail(str(e))
    click.echo(entry.to_line())


@checkpoint.command("list")
@click.pass_obj
def checkpoint_list(obj):
    """Show checkpoints, oldest first."""
    store, _ = obj
    for position, entry in enumerate(store.list()):
        click.echo(f"{position:>3}  {entry.to_line()}")


def _checkpoint_ref(value: str) -> str | int:
    stripped = value.lstrip("-")
    return int(value) if stripped.isdigit() else value


@checkpoint.command("diff")
@click.argument("old")
@click.argument("new", required=False, default="-1")
@click.pass_obj
def checkpoint_diff(obj, old: str, new: str):
    """Compare two checkpoints given by name or log position (NEW defaults to the latest)."""
    from hookpolicy.session.signals import GitSignals

    store, work_dir = obj
    try:
        diff = store.diff(_checkpoint_ref(old), _checkpoint_ref(new), GitSignals(work_dir))
    except CheckpointNotFoundError as e:
        _fail(str(e))

    click.echo(f"{diff.old.name} ({diff.old.revision}) -> {diff.new.name} ({diff.new.revision})")
    if diff.files_changed is None:
        click.echo("files changed: n/a")
    else:
        click.echo(f"files changed: {len(diff.files_changed)}")
        for path in diff.files_changed:
            click.echo(f"  {path}")
    click.echo(f"test delta: {'n/a' if diff.test_delta is None else f'{diff.test_delta:+d}'}")
    coverage = "n/a" if diff.coverage_delta is None else f"{diff.coverage_delta:+.2f}"
    click.echo(f"coverage delta: {coverage}")


@cli.group()
def hook():
    """Built-in hook commands (payload on stdin)."""


@hook.command("git-guard")
def hook_git_guard():
    """Block git write operations run through the Bash tool."""
    from hookpolicy.hooks.builtin import git_guard

    sys.exit(git_guard.main())


@hook.command("session-checkpoint")
@click.pass_obj
def hook_session_checkpoint(config: Config):
    """Record a checkpoint on session start, end and compaction."""
    from hookpolicy.hooks.builtin import session_checkpoint

    sys.exit(session_checkpoint.main(log_path=config.checkpoint_log))


def _parse_log_level_overrides(values: tuple[str, ...]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for raw in values:
        entry = raw.strip()
        if not entry:
            raise click.BadOptionUsage(_LOG_LEVEL_OPTION, "Log level override cannot be empty")
        if "=" in entry:
            module, level = entry.split("=", 1)
            module = module.strip()
            if not module:
                raise click.BadOptionUsage(
                    _LOG_LEVEL_OPTION,
                    "Module name is required before '=' when using --log-level",
                )
        else:
            module = _DEFAULT_LOG_LEVEL_KEY
            level = entry
        level = level.strip()
        if not level:
            raise click.BadOptionUsage(_LOG_LEVEL_OPTION, "Log level cannot be empty")
        overrides[_normalize_module_key(module)] = level
    return overrides


def _normalize_module_key(module: str) -> str:
    normalized = module.strip().rstrip(".").lower()
    if not normalized:
        return _DEFAULT_LOG_LEVEL_KEY
    return normalized


def main():
    cli()


if __name__ == "__main__":
    main()

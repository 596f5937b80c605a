"""Lifecycle hook: record a checkpoint when a session starts, ends or compacts.

The checkpoint is named ``<event>:<session_id>`` and written at most once per
session, so the hook can be configured more than once for the same event.
Recording is best effort; the payload is always passed through.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path
from typing import IO

from hookpolicy.hooks.models import HookEventType
from hookpolicy.session.signals import current_revision
from hookpolicy.session.store import NO_REVISION, CheckpointStore
from hookpolicy.utils.logging import logger

RECORDED_EVENTS = frozenset(
    {HookEventType.SESSION_START, HookEventType.SESSION_END, HookEventType.PRE_COMPACT}
)

CHECKPOINT_LOG = Path(".hookpolicy") / "checkpoints.log"


def default_log_path(cwd: str | None) -> Path:
    project = cwd or os.environ.get("CLAUDE_PROJECT_DIR") or os.getcwd()
    return Path(project) / CHECKPOINT_LOG


def record(payload: dict[str, object], log_path: Path | None = None) -> str | None:
    """Append the checkpoint for ``payload`` and return its name.

    Returns ``None`` when the event is not a lifecycle event or the checkpoint
    already exists.
    """
    try:
        event = HookEventType(str(payload.get("hook_event_name", "")))
    except ValueError:
        return None
    if event not in RECORDED_EVENTS:
        return None

    session_id = str(payload.get("session_id") or "unknown")
    name = f"{event.value}:{session_id}"
    cwd = payload.get("cwd")
    cwd = cwd if isinstance(cwd, str) and cwd else None
    store = CheckpointStore(log_path or default_log_path(cwd))
    if store.find(name) is not None:
        logger.debug("Checkpoint {name} already recorded", name=name)
        return None

    revision = current_revision(Path(cwd) if cwd else None) or NO_REVISION
    # Another hook process may have recorded it while git was running
    if store.create_once(name, revision) is None:
        logger.debug("Checkpoint {name} already recorded", name=name)
        return None
    return name


def main(
    stdin: IO[bytes] | None = None,
    stdout: IO[bytes] | None = None,
    stderr: IO[str] | None = None,
    *,
    log_path: Path | None = None,
) -> int:
    stdin = stdin or sys.stdin.buffer
    stdout = stdout or sys.stdout.buffer
    stderr = stderr or sys.stderr

    raw = stdin.read()
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        stderr.write(f"session-checkpoint: cannot parse hook input, skipped: {e}\n")
        return 0
    if not isinstance(payload, dict):
        stderr.write("session-checkpoint: hook input is not a JSON object, skipped\n")
        return 0

    try:
        record(payload, log_path)
    except (OSError, ValueError) as e:
        stderr.write(f"session-checkpoint: checkpoint not recorded: {e}\n")
    stdout.write(raw)
    stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Signals compared between two checkpoints: changed files, test counts, coverage."""

from __future__ import annotations

import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from hookpolicy.utils.logging import logger

if TYPE_CHECKING:
    from hookpolicy.session.store import CheckpointEntry

GIT_TIMEOUT_S = 10


class CheckpointSignals(Protocol):
    """Supplies the measurements a checkpoint diff is built from.

    Each method returns ``None`` when the signal is not available.
    """

    def files_changed(self, old: CheckpointEntry, new: CheckpointEntry) -> list[str] | None: ...

    def tests_passing(self, entry: CheckpointEntry) -> int | None: ...

    def coverage(self, entry: CheckpointEntry) -> float | None: ...


def _git(args: list[str], cwd: Path | None) -> str | None:
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_S,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git {args} failed: {error}", args=" ".join(args), error=e)
        return None
    if proc.returncode != 0:
        logger.debug("git {args} exited {code}", args=" ".join(args), code=proc.returncode)
        return None
    return proc.stdout


def current_revision(cwd: Path | None = None) -> str | None:
    """Short hash of ``HEAD``, or ``None`` outside a repository."""
    out = _git(["rev-parse", "--short", "HEAD"], cwd)
    if out is None:
        return None
    return out.strip() or None


class GitSignals:
    """Changed files from ``git diff --name-only``; tests and coverage are unknown."""

    def __init__(self, repo: Path | None = None) -> None:
        self.repo = repo

    def files_changed(self, old: CheckpointEntry, new: CheckpointEntry) -> list[str] | None:
        if old.revision == "-" or new.revision == "-":
            return None
        out = _git(["diff", "--name-only", old.revision, new.revision], self.repo)
        if out is None:
            return None
        return [line for line in out.splitlines() if line]

    def tests_passing(self, entry: CheckpointEntry) -> int | None:
        return None

    def coverage(self, entry: CheckpointEntry) -> float | None:
        return None


class StaticSignals:
    """Signals recorded elsewhere, keyed by checkpoint name."""

    def __init__(
        self,
        *,
        files: Mapping[tuple[str, str], list[str]] | None = None,
        tests: Mapping[str, int] | None = None,
        coverage: Mapping[str, float] | None = None,
    ) -> None:
        self._files = dict(files or {})
        self._tests = dict(tests or {})
        self._coverage = dict(coverage or {})

    def files_changed(self, old: CheckpointEntry, new: CheckpointEntry) -> list[str] | None:
        return self._files.get((old.name, new.name))

    def tests_passing(self, entry: CheckpointEntry) -> int | None:
        return self._tests.get(entry.name)

    def coverage(self, entry: CheckpointEntry) -> float | None:
        return self._coverage.get(entry.name)

"""Append-only log of named session checkpoints.

Each line is ``<timestamp> | <name> | <revision>``. Appends are a single ``write``
on an ``O_APPEND`` descriptor, so concurrent writers never interleave short lines;
longer lines additionally take an advisory lock. ``create_once`` holds the same
lock across its lookup and its write.
"""

from __future__ import annotations

import contextlib
import os
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from hookpolicy.exception import CheckpointNotFoundError
from hookpolicy.session.signals import CheckpointSignals
from hookpolicy.utils.logging import logger

# POSIX guarantees atomic appends up to PIPE_BUF; 4096 is the common Linux value.
ATOMIC_APPEND_LIMIT = 4096

SEPARATOR = " | "
LEGACY_TIMESTAMP_FORMAT = "%Y-%m-%d-%H:%M"
NO_REVISION = "-"

IS_WINDOWS = sys.platform == "win32"
# Windows locks byte ranges per handle; lock a byte past any real data so readers
# of the log are never refused.
_WINDOWS_LOCK_OFFSET = 2**31 - 2
_APPEND_FLAGS = os.O_WRONLY | os.O_APPEND | os.O_CREAT | getattr(os, "O_BINARY", 0)


def _parse_timestamp(text: str) -> datetime:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return datetime.strptime(text, LEGACY_TIMESTAMP_FORMAT)


@dataclass(frozen=True, slots=True)
class CheckpointEntry:
    timestamp: datetime
    name: str
    revision: str = NO_REVISION

    def __post_init__(self) -> None:
        for label, value in (("name", self.name), ("revision", self.revision)):
            if not value.strip():
                raise ValueError(f"Checkpoint {label} must not be empty")
            if "|" in value or "\n" in value or "\r" in value:
                raise ValueError(f"Checkpoint {label} must not contain '|' or line breaks")

    @classmethod
    def now(cls, name: str, revision: str = NO_REVISION) -> CheckpointEntry:
        return cls(datetime.now().astimezone().replace(microsecond=0), name, revision)

    def to_line(self) -> str:
        return SEPARATOR.join((self.timestamp.isoformat(), self.name, self.revision))

    @classmethod
    def from_line(cls, line: str) -> CheckpointEntry:
        """Parse one log line.

        Raises:
            ValueError: If the line does not have three fields or a readable timestamp.
        """
        parts = line.rstrip("\r\n").split(SEPARATOR)
        if len(parts) != 3:
            raise ValueError(f"Expected 3 fields, got {len(parts)}")
        timestamp, name, revision = (part.strip() for part in parts)
        return cls(_parse_timestamp(timestamp), name, revision)


@dataclass(frozen=True, slots=True)
class CheckpointDiff:
    """What changed between two checkpoints. ``None`` means the signal is unavailable."""

    old: CheckpointEntry
    new: CheckpointEntry
    files_changed: list[str] | None
    test_delta: int | None
    coverage_delta: float | None


@contextlib.contextmanager
def _locked(fd: int) -> Iterator[None]:
    if IS_WINDOWS:
        import msvcrt

        os.lseek(fd, _WINDOWS_LOCK_OFFSET, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
        try:
            yield
        finally:
            os.lseek(fd, _WINDOWS_LOCK_OFFSET, os.SEEK_SET)
            msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        import fcntl

        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)


def _write_all(fd: int, data: bytes) -> None:
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


def _delta(old: float | None, new: float | None) -> float | None:
    if old is None or new is None:
        return None
    return new - old


def _int_delta(old: int | None, new: int | None) -> int | None:
    if old is None or new is None:
        return None
    return new - old


class CheckpointStore:
    """Checkpoint log backed by a single text file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, entry: CheckpointEntry) -> None:
        data = (entry.to_line() + "\n").encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, _APPEND_FLAGS, 0o644)
        try:
            if len(data) <= ATOMIC_APPEND_LIMIT:
                os.write(fd, data)
            else:
                with _locked(fd):
                    _write_all(fd, data)
        finally:
            os.close(fd)
        logger.debug("Appended checkpoint {name} to {path}", name=entry.name, path=self.path)

    def create(self, name: str, revision: str = NO_REVISION) -> CheckpointEntry:
        entry = CheckpointEntry.now(name, revision)
        self.append(entry)
        return entry

    def create_once(self, name: str, revision: str = NO_REVISION) -> CheckpointEntry | None:
        """Append ``name`` unless the log already has it; ``None`` if it did.

        The lookup and the write happen under the log lock, so concurrent callers
        for the same name append exactly one entry.
        """
        entry = CheckpointEntry.now(name, revision)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, _APPEND_FLAGS, 0o644)
        try:
            with _locked(fd):
                if self.find(name) is not None:
                    return None
                _write_all(fd, (entry.to_line() + "\n").encode("utf-8"))
        finally:
            os.close(fd)
        logger.debug("Appended checkpoint {name} to {path}", name=name, path=self.path)
        return entry

    def list(self) -> list[CheckpointEntry]:
        """All entries in file order; unreadable lines are skipped."""
        if not self.path.exists():
            return []
        entries: list[CheckpointEntry] = []
        with self.path.open(encoding="utf-8", errors="replace") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entries.append(CheckpointEntry.from_line(line))
                except ValueError as e:
                    logger.warning(
                        "Skipping malformed checkpoint line {path}:{lineno}: {error}",
                        path=self.path,
                        lineno=lineno,
                        error=e,
                    )
        return entries

    def find(self, name: str) -> CheckpointEntry | None:
        """The most recent entry called ``name``."""
        for entry in reversed(self.list()):
            if entry.name == name:
                return entry
        return None

    def latest(self) -> CheckpointEntry | None:
        entries = self.list()
        return entries[-1] if entries else None

    def get(self, ref: str | int) -> CheckpointEntry:
        """Look up a checkpoint by name or by position in the log (negative counts back).

        Raises:
            CheckpointNotFoundError: If there is no such checkpoint.
        """
        if isinstance(ref, int):
            entries = self.list()
            try:
                return entries[ref]
            except IndexError:
                raise CheckpointNotFoundError(ref) from None
        entry = self.find(ref)
        if entry is None:
            raise CheckpointNotFoundError(ref)
        return entry

    def diff(self, a: str | int, b: str | int, signals: CheckpointSignals) -> CheckpointDiff:
        old, new = self.get(a), self.get(b)
        return CheckpointDiff(
            old=old,
            new=new,
            files_changed=signals.files_changed(old, new),
            test_delta=_int_delta(signals.tests_passing(old), signals.tests_passing(new)),
            coverage_delta=_delta(signals.coverage(old), signals.coverage(new)),
        )

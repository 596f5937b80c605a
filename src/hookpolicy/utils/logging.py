"""Logging for the ``hookpolicy`` command.

Library code logs through ``logger`` and stays silent until the CLI enables the
package. Stdout carries hook payloads, so records go to a rotating file in the
share directory and are mirrored to stderr above a separate threshold.
"""

from __future__ import annotations

import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from loguru import Record
else:  # pragma: no cover - runtime fallback for typing-only import
    Record = dict[str, Any]  # type: ignore[assignment]

DEFAULT_LEVEL_KEY = "default"
STDERR_FORMAT = "[hookpolicy] {level}: {message}"

logger.remove()


def level_number(level_name: str) -> int:
    try:
        return logger.level(level_name.strip().upper()).no
    except ValueError as exc:
        raise ValueError(f"Invalid log level '{level_name}'") from exc


@dataclass(frozen=True)
class LevelTable:
    """Level thresholds keyed by dotted module prefix.

    ``hookpolicy.hooks`` covers ``hookpolicy.hooks.executor`` and everything else
    below it; the longest matching prefix decides, and ``default`` covers the rest.
    Used directly as a loguru sink filter.
    """

    default: int
    modules: Mapping[str, int] = field(default_factory=dict)

    @classmethod
    def parse(cls, base_level: str, overrides: Mapping[str, str] | None = None) -> LevelTable:
        """Build a table from level names; a ``default`` override replaces ``base_level``.

        Raises:
            ValueError: If a level name is unknown to loguru.
        """
        default = level_number(base_level)
        modules: dict[str, int] = {}
        for module, level_name in (overrides or {}).items():
            key = module.strip().rstrip(".").lower() or DEFAULT_LEVEL_KEY
            if key == DEFAULT_LEVEL_KEY:
                default = level_number(level_name)
            else:
                modules[key] = level_number(level_name)
        return cls(default, modules)

    def threshold(self, module: str | None) -> int:
        if module:
            module = module.lower()
            matches = [
                key for key in self.modules if module == key or module.startswith(f"{key}.")
            ]
            if matches:
                return self.modules[max(matches, key=len)]
        return self.default

    def __call__(self, record: Record) -> bool:
        return record["level"].no >= self.threshold(record["name"])


def configure_logging(
    log_file: Path,
    *,
    base_level: str,
    module_levels: Mapping[str, str] | None = None,
    stderr_level: str = "WARNING",
    rotation: str = "06:00",
    retention: str = "10 days",
) -> LevelTable:
    """Replace all sinks with the log file and the stderr mirror.

    Raises:
        ValueError: If a level name is unknown to loguru.
    """
    table = LevelTable.parse(base_level, module_levels)
    stderr_threshold = level_number(stderr_level)
    logger.remove()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    # The file sink accepts everything; the table decides what is kept
    logger.add(log_file, level="TRACE", rotation=rotation, retention=retention, filter=table)
    logger.add(sys.stderr, level=stderr_threshold, format=STDERR_FORMAT, filter=table)
    logger.debug("Configured log levels: {table}", table=table)
    return table

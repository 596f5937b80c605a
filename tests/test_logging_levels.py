import types
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

import click
import pytest

from hookpolicy.cli import _parse_log_level_overrides
from hookpolicy.utils.logging import LevelTable, configure_logging, logger

if TYPE_CHECKING:
    from loguru import Record
else:  # pragma: no cover - typing fallback
    Record = dict[str, Any]  # type: ignore[assignment]


def _make_record(name: str, level_no: int) -> "Record":
    path = "/tmp/src/" + name.replace(".", "/") + ".py"
    module = Path(path).stem
    return cast(
        Record,
        {
            "elapsed": timedelta(),
            "exception": None,
            "extra": {},
            "file": types.SimpleNamespace(path=path, name=Path(path).name),
            "function": "func",
            "level": types.SimpleNamespace(name="X", no=level_no, icon=""),
            "line": 0,
            "message": "",
            "module": module,
            "name": name,
            "process": types.SimpleNamespace(id=0, name="proc"),
            "thread": types.SimpleNamespace(id=0, name="thread"),
            "time": datetime.now(),
        },
    )


def test_parse_log_level_overrides_accepts_default_and_modules():
    overrides = _parse_log_level_overrides(
        (
            "debug",
            " hookpolicy.hooks = warning ",
            "hookpolicy.session=TRACE",
        )
    )
    assert overrides == {
        "default": "debug",
        "hookpolicy.hooks": "warning",
        "hookpolicy.session": "TRACE",
    }


def test_parse_log_level_overrides_is_case_insensitive():
    overrides = _parse_log_level_overrides(("HookPolicy.Hooks=info",))
    assert overrides == {"hookpolicy.hooks": "info"}


def test_parse_log_level_overrides_rejects_missing_module():
    with pytest.raises(click.BadOptionUsage):
        _parse_log_level_overrides(("=INFO",))


def test_parse_log_level_overrides_rejects_empty_level():
    with pytest.raises(click.BadOptionUsage):
        _parse_log_level_overrides(("hookpolicy.hooks=",))


def test_level_table_parse():
    table = LevelTable.parse("WARNING", {"HookPolicy.Hooks.": "debug"})
    assert table == LevelTable(30, {"hookpolicy.hooks": 10})


def test_level_table_default_override_replaces_base_level():
    table = LevelTable.parse("TRACE", {"default": "info", "hookpolicy.session": "ERROR"})
    assert table.default == 20
    assert table.modules == {"hookpolicy.session": 40}


def test_level_table_rejects_unknown_level():
    with pytest.raises(ValueError, match="Invalid log level"):
        LevelTable.parse("LOUD")
    with pytest.raises(ValueError, match="Invalid log level 'noisy'"):
        LevelTable.parse("INFO", {"hookpolicy.hooks": "noisy"})


def test_level_table_prefers_more_specific_prefix():
    table = LevelTable(30, {"hookpolicy.hooks": 20, "hookpolicy.hooks.builtin": 10})

    assert table(_make_record("hookpolicy.hooks.builtin.git_guard", 15)) is True  # threshold 10
    assert table(_make_record("hookpolicy.hooks.builtin.git_guard", 5)) is False
    assert table(_make_record("hookpolicy.hooks.dispatcher", 15)) is False  # threshold 20
    assert table(_make_record("hookpolicy.session.store", 25)) is False  # default 30


def test_level_table_matches_whole_segments():
    table = LevelTable(30, {"hookpolicy.hooks": 10})
    assert table.threshold("hookpolicy.hooksmith") == 30
    assert table.threshold("HOOKPOLICY.Hooks.executor") == 10
    assert table.threshold(None) == 30


def test_configure_logging_writes_filtered_file(tmp_path: Path, capsys):
    log_file = tmp_path / "logs" / "hookpolicy.log"
    try:
        table = configure_logging(log_file, base_level="INFO")
        logger.warning("kept and mirrored")
        logger.info("kept in the file only")
        logger.debug("dropped everywhere")
    finally:
        logger.remove()

    assert table.default == 20
    text = log_file.read_text(encoding="utf-8")
    assert "kept and mirrored" in text
    assert "kept in the file only" in text
    assert "dropped everywhere" not in text
    err = capsys.readouterr().err
    assert "[hookpolicy] WARNING: kept and mirrored" in err
    assert "kept in the file only" not in err


def test_configure_logging_rejects_unknown_level(tmp_path: Path):
    with pytest.raises(ValueError, match="Invalid log level 'LOUD'"):
        configure_logging(tmp_path / "h.log", base_level="LOUD")

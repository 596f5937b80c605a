from __future__ import annotations

import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from hookpolicy.share import _resolve_share_dir

HookScript = Callable[[str, str], str]


@pytest.fixture(autouse=True)
def share_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Keep config and log files of every test inside its own temporary directory."""
    path = tmp_path / "share"
    monkeypatch.setenv("HOOKPOLICY_SHARE_DIR", str(path))
    _resolve_share_dir.cache_clear()
    yield path
    _resolve_share_dir.cache_clear()


@pytest.fixture
def hook_script(tmp_path: Path) -> HookScript:
    """Write a Python hook script and return the shell command that runs it."""
    scripts = tmp_path / "scripts"
    scripts.mkdir(exist_ok=True)

    def _make(name: str, body: str) -> str:
        path = scripts / f"{name}.py"
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return f'"{sys.executable}" "{path}"'

    return _make

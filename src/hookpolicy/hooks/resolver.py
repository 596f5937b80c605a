"""Locate hook interpreters across native, Homebrew, Windows and WSL installs."""

from __future__ import annotations

import glob
import os
import platform
import re
import shutil
import sys
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from hookpolicy.exception import InterpreterNotFoundError, ResolutionError
from hookpolicy.utils.logging import logger

_DRIVE_PATH = re.compile(r"^([A-Za-z]):(?:[\\/]+(.*))?$", re.DOTALL)
_VERSION = re.compile(r"(\d+(?:\.\d+)+)")


def to_wsl_path(path: str) -> str:
    """Rewrite a Windows drive-letter path to the WSL mount convention.

    ``C:\\Users\\me`` and ``C:/Users/me`` become ``/mnt/c/Users/me``. POSIX,
    relative, drive-relative (``C:foo``) and UNC paths are returned unchanged.
    """
    m = _DRIVE_PATH.match(path)
    if m is None:
        return path
    drive, rest = m.group(1), m.group(2) or ""
    parts = [p for p in re.split(r"[\\/]+", rest) if p]
    return "/".join(["/mnt", drive.lower(), *parts])


def rewrite_args(args: Iterable[str], *, wsl: bool) -> list[str]:
    """Apply :func:`to_wsl_path` to every argument when running under WSL."""
    return [to_wsl_path(arg) for arg in args] if wsl else list(args)


def platform_family(system: str | None = None) -> str:
    match system or platform.system():
        case "Darwin":
            return "macOS"
        case "Windows":
            return "Windows"
        case "Linux":
            return "Linux"
        case other:
            return other


def is_wsl(env: Mapping[str, str] | None = None, release: str | None = None) -> bool:
    """Whether we are a Linux process running inside Windows Subsystem for Linux."""
    env = os.environ if env is None else env
    if "WSL_DISTRO_NAME" in env or "WSL_INTEROP" in env:
        return True
    release = platform.release() if release is None else release
    return "microsoft" in release.lower()


@dataclass(frozen=True, slots=True, kw_only=True)
class InterpreterSpec:
    """Where to look for one interpreter."""

    name: str
    executables: tuple[str, ...]
    preferred: tuple[str, ...] = ()
    known_locations: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    version_globs: tuple[str, ...] = ()


NODE = InterpreterSpec(
    name="node",
    executables=("node",),
    known_locations={
        "Linux": ("/usr/bin/node", "/usr/local/bin/node", "/snap/bin/node"),
        "macOS": ("/opt/homebrew/bin/node", "/usr/local/bin/node"),
        "Windows": (
            "C:/Program Files/nodejs/node.exe",
            "C:/Program Files (x86)/nodejs/node.exe",
            "/c/Program Files/nodejs/node.exe",
        ),
        "WSL": ("/mnt/c/Program Files/nodejs/node.exe",),
    },
    version_globs=(
        "~/.nvm/versions/node/*/bin/node",
        "~/.volta/bin/node",
        "~/.fnm/node-versions/*/installation/bin/node",
    ),
)

PYTHON = InterpreterSpec(
    name="python",
    executables=("python3", "python"),
    preferred=(sys.executable,) if sys.executable else (),
    known_locations={
        "Linux": ("/usr/bin/python3", "/usr/local/bin/python3"),
        "macOS": ("/opt/homebrew/bin/python3", "/usr/local/bin/python3", "/usr/bin/python3"),
        "Windows": (
            "C:/Program Files/Python313/python.exe",
            "C:/Program Files/Python312/python.exe",
            "C:/Program Files/Python311/python.exe",
        ),
    },
    version_globs=("~/.pyenv/versions/*/bin/python3",),
)

DEFAULT_SPECS: dict[str, InterpreterSpec] = {spec.name: spec for spec in (NODE, PYTHON)}


def _version_key(path: str) -> tuple[int, ...]:
    # The innermost version-looking directory wins: ~/.nvm/versions/node/v20.11.0/bin/node
    found = _VERSION.findall(path)
    return tuple(int(part) for part in found[-1].split(".")) if found else ()


class RuntimeResolver:
    """Find interpreters for hook commands; each name is searched for once."""

    def __init__(
        self,
        specs: Mapping[str, InterpreterSpec] | None = None,
        *,
        system: str | None = None,
        wsl: bool | None = None,
        home: Path | None = None,
    ) -> None:
        self._specs = dict(DEFAULT_SPECS if specs is None else specs)
        self.family = platform_family(system)
        self.wsl = is_wsl() if wsl is None and self.family == "Linux" else bool(wsl)
        self._home = home or Path.home()
        self._cache: dict[str, Path] = {}

    def candidates(self, spec: InterpreterSpec) -> list[str]:
        """Paths to try, in order, for ``spec``."""
        found: list[str] = list(spec.preferred)
        for executable in spec.executables:
            which = shutil.which(executable)
            if which:
                found.append(which)
        families = [self.family, "WSL"] if self.wsl else [self.family]
        for family in families:
            found.extend(spec.known_locations.get(family, ()))
        for pattern in spec.version_globs:
            expanded = pattern.replace("~", str(self._home), 1)
            found.extend(sorted(glob.glob(expanded), key=_version_key, reverse=True))
        # Keep first occurrence only
        return list(dict.fromkeys(found))

    def resolve(self, name: str) -> Path:
        """Return the interpreter path for ``name``.

        Raises:
            InterpreterNotFoundError: Nothing usable was found; hooks needing it are optional.
            ResolutionError: A location could not be checked.
        """
        if name in self._cache:
            return self._cache[name]
        spec = self._specs.get(name)
        if spec is None:
            raise InterpreterNotFoundError(name, [])

        searched = self.candidates(spec)
        for candidate in searched:
            try:
                path = Path(candidate)
                usable = path.is_file() and os.access(path, os.X_OK)
            except OSError as e:
                raise ResolutionError(f"Cannot check {candidate} for {name}: {e}") from e
            if usable:
                logger.debug("Resolved {name} to {path}", name=name, path=path)
                self._cache[name] = path
                return path

        raise InterpreterNotFoundError(name, searched)

    def rewrite_args(self, args: Sequence[str]) -> list[str]:
        return rewrite_args(args, wsl=self.wsl)

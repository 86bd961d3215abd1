"""
State and workspace directory resolution.

Railway volumes are sometimes mounted read-only or owned by another uid, so
every candidate is probed before use and we fall back through a fixed list
of locations instead of crashing at startup.
"""

import os
import re
import tempfile
from pathlib import Path
from typing import NamedTuple, Optional

import settings


class StateDirs(NamedTuple):
    state_dir: Path
    workspace_dir: Path


def expand_shell_path(raw: str) -> Path:
    """Expand ~ and $HOME, which Railway passes through as literal text."""
    home = str(Path.home())
    if raw == "~":
        raw = home
    elif raw.startswith("~/"):
        raw = os.path.join(home, raw[2:])
    raw = re.sub(r"\$\{HOME\}|\$HOME\b", lambda _m: home, raw)
    return Path(raw)


def is_dir_usable(path: Path) -> bool:
    """True if path can be created, written to, and can hold subdirectories."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        probe = path / ".write-test"
        probe.write_text("test")
        probe.chmod(0o600)
        probe.unlink()
        subdir = path / ".subdir-test"
        subdir.mkdir(parents=True, exist_ok=True)
        subdir.rmdir()
        return True
    except OSError:
        return False


def is_under(path: Path, root: Path) -> bool:
    """True if path is root itself or lies below it (after normalization)."""
    abs_path = Path(os.path.abspath(path))
    abs_root = Path(os.path.abspath(root))
    return abs_path == abs_root or abs_root in abs_path.parents


def find_state_dir(override: str = "", data_root: Optional[Path] = None) -> Path:
    data_root = data_root or settings.DATA_ROOT
    if override:
        declared = expand_shell_path(override)
        if is_dir_usable(declared):
            return declared
        print(f"[wrapper] Configured state dir {override!r} (expanded: {declared}) is not writable, auto-discovering...", flush=True)

    tmp = Path(tempfile.gettempdir())
    candidates = [
        data_root / ".openclaw",
        Path.home() / ".openclaw",
        tmp / ".openclaw",
        Path.cwd() / ".openclaw",
    ]
    for candidate in candidates:
        if is_dir_usable(candidate):
            return candidate

    fallback = tmp / f"openclaw-{os.getpid()}"
    try:
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback
    except OSError:
        # Nothing writable at all; fail later with a clear error on first use.
        return candidates[0]


def find_workspace_dir(state_dir: Path, override: str = "") -> Path:
    if override:
        declared = expand_shell_path(override)
        if is_dir_usable(declared):
            return declared
        print(f"[wrapper] Configured workspace dir {override!r} (expanded: {declared}) is not writable, using default...", flush=True)

    default = state_dir / "workspace"
    if is_dir_usable(default):
        return default

    fallback = Path(tempfile.gettempdir()) / f"openclaw-workspace-{os.getpid()}"
    try:
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback
    except OSError:
        return default


def resolve_state_dirs(
    state_override: Optional[str] = None,
    workspace_override: Optional[str] = None,
    data_root: Optional[Path] = None,
) -> StateDirs:
    """Resolve both directories using the operator overrides from settings by default."""
    if state_override is None:
        state_override = settings.STATE_DIR_OVERRIDE
    if workspace_override is None:
        workspace_override = settings.WORKSPACE_DIR_OVERRIDE
    state_dir = find_state_dir(state_override, data_root)
    workspace_dir = find_workspace_dir(state_dir, workspace_override)
    return StateDirs(state_dir, workspace_dir)

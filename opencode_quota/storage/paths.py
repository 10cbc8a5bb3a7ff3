"""
Runtime path resolution.

Locates OpenCode's data and state directories across platforms.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

APP_DIR_NAME = "opencode"
DB_FILE_NAME = "opencode.db"


@dataclass(frozen=True)
class RuntimeDirs:
    """Primary runtime directories."""
    data_dir: Path
    state_dir: Path


@dataclass(frozen=True)
class RuntimeDirCandidates:
    """Runtime directories in priority order (primary first)."""
    data_dirs: List[Path]
    state_dirs: List[Path]


def get_runtime_dirs(
    env: Optional[Mapping[str, str]] = None,
    home_dir: Optional[Path] = None
) -> RuntimeDirs:
    """Build the primary runtime dirs from XDG variables with home fallbacks.

    Args:
        env: Environment mapping (defaults to os.environ)
        home_dir: Home directory (defaults to Path.home())

    Returns:
        RuntimeDirs for OpenCode
    """
    env = os.environ if env is None else env
    home = Path(home_dir) if home_dir is not None else Path.home()

    data_home = env.get("XDG_DATA_HOME") or str(home / ".local" / "share")
    state_home = env.get("XDG_STATE_HOME") or str(home / ".local" / "state")

    return RuntimeDirs(
        data_dir=Path(data_home) / APP_DIR_NAME,
        state_dir=Path(state_home) / APP_DIR_NAME,
    )


def get_runtime_dir_candidates(
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home_dir: Optional[Path] = None,
    primary: Optional[RuntimeDirs] = None
) -> RuntimeDirCandidates:
    """List candidate runtime dirs, primary first, then platform fallbacks.

    Windows installs may keep data under APPDATA or LOCALAPPDATA, and macOS
    installs under Application Support.
    """
    platform = platform or sys.platform
    env = os.environ if env is None else env
    home = Path(home_dir) if home_dir is not None else Path.home()
    primary = primary or get_runtime_dirs(env=env, home_dir=home)

    data_dirs = [primary.data_dir]
    state_dirs = [primary.state_dir]

    if platform == "win32":
        for var in ("APPDATA", "LOCALAPPDATA"):
            base = env.get(var)
            if base:
                data_dirs.append(Path(base) / APP_DIR_NAME)
                state_dirs.append(Path(base) / APP_DIR_NAME)
    elif platform == "darwin":
        support = home / "Library" / "Application Support" / APP_DIR_NAME
        data_dirs.append(support)
        state_dirs.append(support)

    return RuntimeDirCandidates(
        data_dirs=_dedupe(data_dirs),
        state_dirs=_dedupe(state_dirs),
    )


def get_db_path_candidates(
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home_dir: Optional[Path] = None
) -> List[Path]:
    """Candidate locations of opencode.db in priority order."""
    candidates = get_runtime_dir_candidates(platform=platform, env=env, home_dir=home_dir)
    return [d / DB_FILE_NAME for d in candidates.data_dirs]


def get_local_quota_path(
    env: Optional[Mapping[str, str]] = None,
    home_dir: Optional[Path] = None
) -> Path:
    """Default location of the local quota state file."""
    dirs = get_runtime_dirs(env=env, home_dir=home_dir)
    return dirs.state_dir / "opencode-quota" / "qwen-local-quota.json"


def pick_first_existing(candidates: Sequence[Path]) -> Optional[Path]:
    """Return the first candidate that exists on disk, or None."""
    for candidate in candidates:
        path = Path(candidate)
        if path.exists():
            return path
    return None


def _dedupe(paths: List[Path]) -> List[Path]:
    seen = set()
    out = []
    for path in paths:
        key = str(path)
        if key in seen:
            continue
        seen.add(key)
        out.append(path)
    return out

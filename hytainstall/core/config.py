# hytainstall/core/config.py
"""
HyTa Installer – central configuration helper
=============================================

Single source for:
• constants (name, branches, remote endpoints)
• the launcher data root and the game install root
• the user settings file (mirror, always-full-download, verbose log, …)
• the logging setup shared by the CLI and the API server

Other modules read the path globals at call time (`config.CACHE_DIR`),
never copy them at import, so `_reset_for_tests` can redirect them.
No network access happens here.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import platform
import shutil
import sys
from pathlib import Path
from typing import Any, Dict

# ──────────────────────────────────────────────
# 1. Application constants
# ──────────────────────────────────────────────
APP_NAME: str = "HyTa Installer"
LAUNCHER_VERSION: str = "0.1.0"
USER_AGENT: str = f"HyTaLauncher/{LAUNCHER_VERSION}"

BRANCHES = ("release", "pre-release", "beta", "alpha")
DEFAULT_BRANCH: str = "release"

OFFICIAL_PATCH_URL = "https://game-patches.hytale.com/patches"
JRE_INDEX_URL = "https://launcher.hytale.com/version/{branch}/jre.json"
BUTLER_URL = "https://broth.itch.zone/butler/{channel}/LATEST/archive/default"

# file & directory names
CONFIG_FILE_NAME = "settings.json"
PLAYERS_FILE_NAME = "players.json"
LOG_FILE_NAME = "launcher.log"



logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# 2. Where things live
# ──────────────────────────────────────────────
def _roaming() -> Path:
    return Path(os.getenv("APPDATA") or Path.home() / "AppData" / "Roaming")


def _data_root() -> Path:
    """Launcher data: `$HYTA_HOME`, else `%APPDATA%\\HyTaLauncher` or `~/.hytalauncher`."""
    override = os.getenv("HYTA_HOME")
    if override:
        root = Path(override).expanduser()
    elif platform.system() == "Windows":
        root = _roaming() / "HyTaLauncher"
    else:
        root = Path.home() / ".hytalauncher"
    return root.resolve()


def _install_root() -> Path:
    """Game files: `$HYTA_GAME_DIR/install`, else next to the official launcher's."""
    override = os.getenv("HYTA_GAME_DIR")
    if override:
        parent = Path(override).expanduser()
    elif platform.system() == "Windows":
        parent = _roaming() / "Hytale"
    else:
        parent = Path.home() / ".hytale"
    return (parent / "install").resolve()


def _point_at(base: Path, install: Path) -> None:
    global BASE_DIR, INSTALL_DIR, CACHE_DIR, TOOLS_DIR, LOG_DIR, CONFIG_DIR
    BASE_DIR = base
    INSTALL_DIR = install
    CACHE_DIR = base / "cache"
    TOOLS_DIR = base / "butler"
    LOG_DIR = base / "logs"
    CONFIG_DIR = base / "config"


BASE_DIR: Path
INSTALL_DIR: Path
CACHE_DIR: Path
TOOLS_DIR: Path
LOG_DIR: Path
CONFIG_DIR: Path
_point_at(_data_root(), _install_root())


def ensure_dirs() -> None:
    for folder in (INSTALL_DIR, CACHE_DIR, TOOLS_DIR, LOG_DIR, CONFIG_DIR):
        folder.mkdir(parents=True, exist_ok=True)


ensure_dirs()


# ──────────────────────────────────────────────
# 3. User settings (read only)
# ──────────────────────────────────────────────
_DEFAULT_SETTINGS: Dict[str, Any] = {
    "branch": DEFAULT_BRANCH,
    "useMirror": False,
    "mirrorUrl": None,
    "alwaysFullDownload": True,
    "verifySsl": True,
    "verboseLogging": False,
    "customGameArgs": "",
}


def _user_settings() -> Dict[str, Any]:
    path = CONFIG_DIR / CONFIG_FILE_NAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (ValueError, OSError) as exc:
        logger.warning("unreadable %s (%s), keeping a .bak and using defaults", path.name, exc)
        shutil.copy2(path, path.with_suffix(".bak"))
        return {}
    return data if isinstance(data, dict) else {}


def read_config() -> Dict[str, Any]:
    """Defaults overlaid with the user's values.  Values of the wrong type are dropped."""
    merged = dict(_DEFAULT_SETTINGS)
    for key, value in _user_settings().items():
        default = _DEFAULT_SETTINGS.get(key)
        if default is not None and not isinstance(value, type(default)):
            logger.warning("ignoring setting %s=%r", key, value)
            continue
        merged[key] = value
    return merged


# ──────────────────────────────────────────────
# 4. Derived locations
# ──────────────────────────────────────────────
def patch_base_url(os_name: str, arch: str, cfg: Dict[str, Any] | None = None) -> str:
    """
    Root of the patch tree for this machine, e.g.
    https://game-patches.hytale.com/patches/linux/amd64

    A configured mirror replaces the official host entirely.
    """
    cfg = cfg if cfg is not None else read_config()
    mirror = (cfg.get("mirrorUrl") or "").strip()
    if cfg.get("useMirror") and mirror:
        return mirror.rstrip("/")
    return f"{OFFICIAL_PATCH_URL}/{os_name}/{arch}"


def branch_root(branch: str) -> Path:
    """Return `<install>/<branch>/package`, the per-branch install root."""
    return INSTALL_DIR / branch / "package"


def players_path() -> Path:
    return BASE_DIR / PLAYERS_FILE_NAME


# ──────────────────────────────────────────────
# 5. Logging
# ──────────────────────────────────────────────
def setup_logging(verbose: bool | None = None) -> None:
    """
    Route every `hytainstall.*` logger to stderr and to a rotating file in
    LOG_DIR.  Verbose mode lowers the threshold to DEBUG.
    """
    if verbose is None:
        verbose = bool(read_config().get("verboseLogging"))

    root = logging.getLogger("hytainstall")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_handler = logging.handlers.RotatingFileHandler(
        LOG_DIR / LOG_FILE_NAME, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(name)s] %(levelname)s %(message)s")
    )
    root.addHandler(file_handler)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
    root.addHandler(stream)


def _reset_for_tests(tmp_path: Path) -> None:  # pragma: no cover
    """Point every folder below `tmp_path` (pytest)."""
    _point_at(tmp_path / "launcher", tmp_path / "game" / "install")
    ensure_dirs()

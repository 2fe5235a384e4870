# hytainstall/core/launcher.py
"""
HyTa Installer – game process bootstrapper
==========================================

This module is *purely* responsible for locating the installed client
executable, building the command-line arguments (app dir, java, user
dir, offline uuid, player name) and spawning the subprocess.

Public helpers
--------------
• locate_client(branch, platform_info) -> Path
• get_or_create_uuid(player_name) -> str
• build_launch_cmd(branch, player_name, ...) -> List[str]
• start_game(branch, player_name, ...) -> subprocess.Popen

Installation itself is the orchestrator's job – by the time
start_game() runs, the branch is expected to be `launchable`.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import uuid
from pathlib import Path
from typing import Dict, List

from hytainstall.core import config
from hytainstall.core.errors import CorruptedInstallError
from hytainstall.core.installer import game_dir
from hytainstall.core.jre import java_path
from hytainstall.core.models import Branch
from hytainstall.core.platform import PlatformInfo
from hytainstall.core.validator import is_valid_executable

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# 1. Locate executable
# ──────────────────────────────────────────────
def locate_client(branch: Branch | str, platform_info: PlatformInfo) -> Path:
    """
    Return the platform-specific client executable.

    Raises FileNotFoundError if the binary is missing and
    CorruptedInstallError if it is not a valid executable.
    """
    client = game_dir(branch) / "Client" / platform_info.game_executable
    if not client.exists():
        raise FileNotFoundError(f"Game client not found: {client}")
    if not is_valid_executable(client, platform_info):
        raise CorruptedInstallError(client)
    return client.resolve()


def user_data_dir() -> Path:
    """Shared UserData folder next to the install root (`.../Hytale/UserData`)."""
    return config.INSTALL_DIR.parent / "UserData"


# ──────────────────────────────────────────────
# 2. Offline player identity
# ──────────────────────────────────────────────
def _load_players(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    try:
        with path.open(encoding="utf-8") as fh:
            data = json.load(fh)
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, OSError):
        return {}


def _save_players(path: Path, players: Dict[str, str]) -> None:
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(players, fh, indent=2)
    tmp.replace(path)


def get_or_create_uuid(player_name: str, path: Path | None = None) -> str:
    """Stable 32-hex-digit uuid per (case-insensitive) player name."""
    path = path or config.players_path()
    players = _load_players(path)
    key = player_name.lower()

    current = players.get(key)
    if current and "-" not in current:
        return current

    # new player, or an entry stored in the old dashed format
    value = current.replace("-", "") if current else uuid.uuid4().hex
    players[key] = value
    try:
        _save_players(path, players)
    except OSError as exc:
        logger.warning("could not save players file: %s", exc)
    return value


# ──────────────────────────────────────────────
# 3. Build launch arguments
# ──────────────────────────────────────────────
def build_launch_cmd(
    branch: Branch | str,
    player_name: str,
    platform_info: PlatformInfo,
    java_exec: str,
    player_uuid: str,
    custom_args: str = "",
) -> List[str]:
    """
    Compose the argument vector for subprocess.Popen().

    `custom_args` replaces the default arguments; the placeholders
    {app-dir} {java-exec} {user-dir} {uuid} {name} are substituted.
    """
    exe = str(locate_client(branch, platform_info))
    app_dir = str(game_dir(branch))
    user_dir = str(user_data_dir())

    if custom_args.strip():
        values = {
            "{app-dir}": app_dir,
            "{java-exec}": java_exec,
            "{user-dir}": user_dir,
            "{uuid}": player_uuid,
            "{name}": player_name,
        }
        args = [exe]
        for token in shlex.split(custom_args):
            for placeholder, value in values.items():
                token = token.replace(placeholder, value)
            args.append(token)
        return args

    return [
        exe,
        "--app-dir", app_dir,
        "--java-exec", java_exec,
        "--user-dir", user_dir,
        "--auth-mode", "offline",
        "--uuid", player_uuid,
        "--name", player_name,
    ]


# ──────────────────────────────────────────────
# 4. Public entry – spawn game
# ──────────────────────────────────────────────
def start_game(
    branch: Branch | str,
    player_name: str,
    platform_info: PlatformInfo,
    custom_args: str = "",
) -> subprocess.Popen:
    """
    Spawn the game client **non-blocking** and return the Popen handle.
    """
    user_data_dir().mkdir(parents=True, exist_ok=True)
    cmd = build_launch_cmd(
        branch=branch,
        player_name=player_name,
        platform_info=platform_info,
        java_exec=java_path(branch, platform_info),
        player_uuid=get_or_create_uuid(player_name),
        custom_args=custom_args,
    )

    logger.info("starting game: %s", " ".join(cmd))
    proc = subprocess.Popen(cmd, cwd=str(Path(cmd[0]).parent), env=os.environ.copy())
    logger.info("game process started: pid=%s", proc.pid)
    return proc

# hytainstall/__main__.py
"""
Command line front end.

    python -m hytainstall versions  [--branch release]
    python -m hytainstall install   [--branch release] [--version N] [--incremental]
    python -m hytainstall reinstall [--branch release] [--version N]
    python -m hytainstall launch    --name PLAYER [--branch release]
    python -m hytainstall serve     [--host 127.0.0.1] [--port 5050]
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

from hytainstall.core import config
from hytainstall.core.errors import InstallError
from hytainstall.core.installer import create_orchestrator
from hytainstall.core.models import Branch, GameVersion, RetryConfig
from hytainstall.core.platform import detect_platform
from hytainstall.core.progress import INDETERMINATE, Reporter
from hytainstall.core.transfer import ResilientTransfer, friendly_error


def _console_reporter() -> Reporter:
    def _progress(value: float) -> None:
        text = "working..." if value == INDETERMINATE else f"{value:5.1f}%"
        sys.stdout.write(f"\r  {text}   ")
        sys.stdout.flush()

    def _status(text: str) -> None:
        sys.stdout.write(f"\n{text}\n")

    return Reporter(on_progress=_progress, on_status=_status)


async def _versions(branch: Branch, cfg: dict) -> int:
    async with ResilientTransfer(RetryConfig(verify_ssl=cfg["verifySsl"])) as http:
        orch = create_orchestrator(http, cfg=cfg)
        snapshot = await orch.catalog(branch, _console_reporter())
    sys.stdout.write("\n")
    for v in snapshot.selectable_versions():
        sys.stdout.write(f"{v.name:>8}  {v.package_name}\n")
    return 0


async def _install(branch: Branch, version: Optional[int], cfg: dict, reinstall: bool) -> int:
    reporter = _console_reporter()
    async with ResilientTransfer(RetryConfig(verify_ssl=cfg["verifySsl"])) as http:
        orch = create_orchestrator(http, cfg=cfg)
        if version is None:
            snapshot = await orch.catalog(branch, reporter)
            target = snapshot.selectable_versions()[0]
        else:
            target = GameVersion(branch=branch, version=version)
        try:
            if reinstall:
                installed = await orch.reinstall(target, reporter)
            else:
                installed = await orch.install(target, reporter)
        except InstallError as exc:
            sys.stderr.write(f"\nInstall failed: {friendly_error(exc)}\n")
            return 1
    sys.stdout.write(f"\n{branch.value} is at v{installed}\n")
    return 0


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="hytainstall", description=config.APP_NAME)
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    def _branch_arg(sp):
        sp.add_argument("--branch", default=None, choices=config.BRANCHES)

    sp = sub.add_parser("versions", help="list versions on the patch server")
    _branch_arg(sp)

    for name in ("install", "reinstall"):
        sp = sub.add_parser(name, help=f"{name} a game version")
        _branch_arg(sp)
        sp.add_argument("--version", type=int, default=None, help="default: latest")
        if name == "install":
            sp.add_argument("--incremental", action="store_true",
                            help="use incremental patches instead of a full download")

    sp = sub.add_parser("launch", help="start the installed client")
    _branch_arg(sp)
    sp.add_argument("--name", required=True, help="player name")

    sp = sub.add_parser("serve", help="run the HTTP API")
    sp.add_argument("--host", default="127.0.0.1")
    sp.add_argument("--port", type=int, default=5050)

    args = p.parse_args(argv)
    cfg = config.read_config()
    config.setup_logging(args.verbose or bool(cfg.get("verboseLogging")))

    if args.command == "serve":
        from hytainstall.main import run_server
        run_server(args.host, args.port)
        return 0

    branch = Branch(args.branch or cfg.get("branch") or config.DEFAULT_BRANCH)

    if args.command == "versions":
        return asyncio.run(_versions(branch, cfg))

    if args.command == "launch":
        from hytainstall.core.launcher import start_game
        try:
            start_game(branch, args.name, detect_platform(), cfg.get("customGameArgs") or "")
        except (FileNotFoundError, InstallError) as exc:
            sys.stderr.write(f"Cannot launch: {exc}\n")
            return 1
        return 0

    if args.command == "install" and args.incremental:
        cfg = {**cfg, "alwaysFullDownload": False}
    try:
        return asyncio.run(_install(branch, args.version, cfg, args.command == "reinstall"))
    except KeyboardInterrupt:
        sys.stderr.write("\nCancelled – partial downloads are kept for the next run.\n")
        return 130


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())

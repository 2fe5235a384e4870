# hytainstall/api/updates.py
"""
HyTa Installer – update API
===========================

Endpoints for the frontend:

1) GET  /api/versions?branch=release
      -> discovered versions ("latest" alias first).

2) POST /api/install          body: InstallRequest
   POST /api/install/reinstall
      -> start the acquisition in a background task and respond
         immediately (202 Accepted).

3) GET  /api/install/status
      -> phase, progress (-1 = indeterminate) and status text.  The
         frontend polls this while an install runs.

4) POST /api/install/cancel
      -> cancel the running install; partial downloads stay for resume.

The heavy lifting is delegated to `hytainstall.core.installer`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel

from hytainstall.core import config
from hytainstall.core.errors import InstallError
from hytainstall.core.installer import InstallationOrchestrator, create_orchestrator
from hytainstall.core.models import (
    Branch,
    GameVersion,
    InstallPhase,
    InstallStatus,
    RetryConfig,
)
from hytainstall.core.progress import Reporter
from hytainstall.core.transfer import ResilientTransfer, friendly_error

logger = logging.getLogger(__name__)

router = APIRouter(tags=["updates"])


# ──────────────────────────────────────────────
# Request models
# ──────────────────────────────────────────────
class InstallRequest(BaseModel):
    branch: Branch = Branch(config.DEFAULT_BRANCH)
    version: Optional[int] = None          # None = latest discovered
    fullDownload: Optional[bool] = None    # override the settings file


# ──────────────────────────────────────────────
# Session state (one install at a time)
# ──────────────────────────────────────────────
class InstallSession:
    def __init__(self) -> None:
        self.status = InstallStatus()
        self.task: Optional[asyncio.Task] = None
        self._transfer: Optional[ResilientTransfer] = None
        self._orchestrator: Optional[InstallationOrchestrator] = None

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def orchestrator(self) -> InstallationOrchestrator:
        if self._orchestrator is None:
            cfg = config.read_config()
            self._transfer = ResilientTransfer(
                RetryConfig(verify_ssl=bool(cfg.get("verifySsl", True)))
            )
            self._orchestrator = create_orchestrator(self._transfer, cfg=cfg)
        return self._orchestrator

    def reporter(self) -> Reporter:
        def _progress(value: float) -> None:
            self.status.progress = value

        def _status(text: str) -> None:
            self.status.status = text

        def _phase(phase: InstallPhase) -> None:
            self.status.phase = phase

        return Reporter(_progress, _status, _phase)

    async def close(self) -> None:
        if self.running:
            self.task.cancel()
        if self._transfer is not None:
            await self._transfer.close()
        self._transfer = None
        self._orchestrator = None


session = InstallSession()


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────
async def _resolve_version(orch: InstallationOrchestrator, body: InstallRequest) -> GameVersion:
    if body.version is not None:
        return GameVersion(branch=body.branch, version=body.version)
    snapshot = await orch.catalog(body.branch)
    return snapshot.selectable_versions()[0]


async def _run(orch: InstallationOrchestrator, body: InstallRequest, reinstall: bool) -> None:
    reporter = session.reporter()
    try:
        version = await _resolve_version(orch, body)
        session.status.target_version = version.version
        if reinstall:
            installed = await orch.reinstall(version, reporter, body.fullDownload)
        else:
            installed = await orch.install(version, reporter, body.fullDownload)
        session.status.installed_version = installed
    except asyncio.CancelledError:
        session.status.phase = InstallPhase.idle
        session.status.status = "Cancelled"
        session.status.installed_version = orch.installed_version(body.branch)
        raise
    except InstallError as exc:
        session.status.phase = InstallPhase.failed
        session.status.error = friendly_error(exc)
        session.status.installed_version = orch.installed_version(body.branch)
        logger.error("install of %s failed: %s", body.branch.value, exc)


def _start(body: InstallRequest, reinstall: bool) -> dict:
    # session.task is set before any await
    if session.running:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An install is already running")

    orch = session.orchestrator()
    session.status = InstallStatus(
        branch=body.branch,
        target_version=body.version,
        installed_version=orch.installed_version(body.branch),
    )
    session.task = asyncio.create_task(_run(orch, body, reinstall))
    target = f"v{body.version}" if body.version is not None else "latest"
    return {"detail": f"Installing {body.branch.value} {target}"}


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────
@router.get("/versions", response_model=List[GameVersion])
async def list_versions(
    branch: Branch = Query(Branch(config.DEFAULT_BRANCH)),
    refresh: bool = False,
):
    """
    Discover what the patch server offers for a branch (cached per session).
    """
    orch = session.orchestrator()
    snapshot = await orch.catalog(branch, refresh=refresh)
    return snapshot.selectable_versions()


@router.get("/install/status", response_model=InstallStatus)
async def install_status():
    return session.status


@router.post("/install", status_code=status.HTTP_202_ACCEPTED)
async def start_install(body: InstallRequest):
    """
    Kick off download/patch process in a background task.
    """
    return _start(body, reinstall=False)


@router.post("/install/reinstall", status_code=status.HTTP_202_ACCEPTED)
async def start_reinstall(body: InstallRequest):
    return _start(body, reinstall=True)


@router.post("/install/cancel")
async def cancel_install():
    if not session.running:
        return {"detail": "Nothing to cancel"}
    session.task.cancel()
    return {"detail": "Cancelling"}

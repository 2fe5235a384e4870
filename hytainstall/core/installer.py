# hytainstall/core/installer.py
"""
HyTa Installer – installation orchestrator
==========================================

Drives one install session for a branch:

    idle → checking_java → checking_game → downloading → applying
         → validating → launchable

    applying / validating ──(incremental edge broke the client)──► corrupted
    corrupted → downloading with the plan forced to the full package 0/target
    full package broke the client → failed  (no further fallback)

Filesystem layout
-----------------
<install>/<branch>/package/
    ├─ jre/latest/bin/java
    └─ game/latest/
        ├─ .version              ← last *validated* version, decimal text
        ├─ staging-temp/         ← butler scratch space (transient)
        └─ Client/HytaleClient[.exe]
<launcher>/cache/<branch>_<prev>_<target>.pwr

`.version` is rewritten with one atomic replace after each edge that
was applied *and* validated, and never before.  A crash mid-edge leaves
it at the previous version; the next run simply plans from there.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

from hytainstall.core import config
from hytainstall.core.applier import PatchApplier
from hytainstall.core.catalog import VersionCatalog
from hytainstall.core.errors import (
    CorruptedInstallError,
    DownloadError,
    InstallError,
    InstallFailed,
    PatchApplyError,
)
from hytainstall.core.jre import JreProvider
from hytainstall.core.models import (
    Branch,
    CatalogSnapshot,
    DownloadJob,
    GameVersion,
    InstallPhase,
    PatchEdge,
    RetryConfig,
)
from hytainstall.core.pathing import FullInstallRequired, PathPlan, resolve_path
from hytainstall.core.platform import PlatformInfo, detect_platform
from hytainstall.core.progress import SILENT, Reporter
from hytainstall.core.transfer import ResilientTransfer
from hytainstall.core.validator import is_valid_executable

logger = logging.getLogger(__name__)

VERSION_FILE_NAME = ".version"


# ──────────────────────────────────────────────
# 1. Local state helpers
# ──────────────────────────────────────────────
def game_dir(branch: Branch | str) -> Path:
    return config.branch_root(Branch(branch).value) / "game" / "latest"


def read_installed_version(directory: Path) -> int:
    """Version recorded in `<directory>/.version`, 0 if absent or garbage."""
    marker = directory / VERSION_FILE_NAME
    try:
        return int(marker.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return 0


def write_installed_version(directory: Path, version: int) -> None:
    directory.mkdir(parents=True, exist_ok=True)
    marker = directory / VERSION_FILE_NAME
    tmp = marker.with_name(VERSION_FILE_NAME + ".tmp")
    tmp.write_text(str(version), encoding="utf-8")
    tmp.replace(marker)


def clear_installed_version(directory: Path) -> None:
    (directory / VERSION_FILE_NAME).unlink(missing_ok=True)


def package_cache_name(branch: Branch | str, patch: PatchEdge) -> str:
    return f"{Branch(branch).value}_{patch.prev}_{patch.target}.pwr"


# ──────────────────────────────────────────────
# 2. Orchestrator
# ──────────────────────────────────────────────
class InstallationOrchestrator:
    """
    One instance per game directory.  The per-branch catalog cache lives
    on the instance, i.e. for the lifetime of the session that owns it.
    """

    def __init__(
        self,
        catalog: VersionCatalog,
        applier: PatchApplier,
        platform_info: PlatformInfo,
        jre: JreProvider | None = None,
        cache_dir: Path | None = None,
        always_full_download: bool = True,
        retry: RetryConfig | None = None,
    ) -> None:
        self.catalog_service = catalog
        self.transfer = catalog.transfer
        self.applier = applier
        self.platform_info = platform_info
        self.jre = jre
        self.cache_dir = cache_dir or config.CACHE_DIR
        self.always_full_download = always_full_download
        self.retry = retry or RetryConfig.large_file()
        self.phase = InstallPhase.idle
        self._catalogs: Dict[Branch, CatalogSnapshot] = {}

    # ── helpers ──────────────────────────────────
    def _enter(self, phase: InstallPhase, reporter: Reporter) -> None:
        logger.debug("phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase
        reporter.phase(phase)

    def client_path(self, branch: Branch | str) -> Path:
        return game_dir(branch) / "Client" / self.platform_info.game_executable

    def installed_version(self, branch: Branch | str) -> int:
        return read_installed_version(game_dir(branch))

    def is_installed(self, version: GameVersion) -> bool:
        return (
            self.client_path(version.branch).is_file()
            and self.installed_version(version.branch) == version.version
        )

    async def catalog(self, branch: Branch | str, reporter: Reporter = SILENT,
                      refresh: bool = False) -> CatalogSnapshot:
        branch = Branch(branch)
        if refresh or branch not in self._catalogs:
            self._catalogs[branch] = await self.catalog_service.discover(branch, reporter)
        return self._catalogs[branch]

    async def plan(self, version: GameVersion, installed: int,
                   reporter: Reporter = SILENT,
                   full_download: Optional[bool] = None) -> PathPlan:
        """`full_download` overrides `always_full_download` for this call only."""
        target = version.version
        full = self.always_full_download if full_download is None else full_download
        if full or installed == 0:
            logger.debug("using full download (always-full or fresh install)")
            return FullInstallRequired(target=target)

        snapshot = await self.catalog(version.branch, reporter)
        plan = resolve_path(installed, target, snapshot.edges)
        if not plan.edges:
            # up to date on paper but the client is gone, or a downgrade
            return FullInstallRequired(target=target)
        logger.debug("update path: %s", " -> ".join(str(e) for e in plan.edges))
        return plan

    # ── public entry ─────────────────────────────
    async def install(self, version: GameVersion, reporter: Reporter = SILENT,
                      full_download: Optional[bool] = None) -> int:
        """
        Bring the branch to `version`.  Returns the installed version.
        `full_download` overrides `always_full_download` for this call.
        Raises InstallFailed once every fallback is used up;
        asyncio.CancelledError passes through untouched.
        """
        branch = Branch(version.branch)
        target_dir = game_dir(branch)
        logger.info("install %s v%d", branch.value, version.version)

        try:
            self._enter(InstallPhase.checking_java, reporter)
            if self.jre is not None:
                await self.jre.ensure(branch, reporter)

            self._enter(InstallPhase.checking_game, reporter)
            reporter.status("Checking game files...")
            installed = read_installed_version(target_dir)
            logger.debug("installed %d, target %d", installed, version.version)
            if installed == version.version and self.client_path(branch).is_file():
                reporter.status("Game is installed")
                reporter.progress(100)
                self._enter(InstallPhase.launchable, reporter)
                return installed

            await self.applier.ensure_tool(reporter)
            plan = await self.plan(version, installed, reporter, full_download)
            await self._run_plan(branch, version.version, plan, reporter)
        except InstallFailed:
            self._enter(InstallPhase.failed, reporter)
            raise
        except InstallError as exc:
            self._enter(InstallPhase.failed, reporter)
            raise InstallFailed(str(exc)) from exc

        self._enter(InstallPhase.launchable, reporter)
        reporter.status("Game installed")
        logger.info("%s is at v%d", branch.value, version.version)
        return version.version

    async def reinstall(self, version: GameVersion, reporter: Reporter = SILENT,
                        full_download: Optional[bool] = None) -> int:
        """Wipe the branch's game files and cached packages for `version`, then install."""
        branch = Branch(version.branch)
        target_dir = game_dir(branch)
        logger.info("reinstall %s v%d", branch.value, version.version)
        reporter.status("Reinstalling game...")

        if target_dir.exists():
            try:
                shutil.rmtree(target_dir)
            except OSError as exc:
                logger.error("failed to delete game folder: %s", exc)
                raise InstallFailed(f"Failed to delete game folder: {exc}") from exc

        for cached in self.cache_dir.glob(f"{branch.value}_*_{version.version}.pwr"):
            cached.unlink(missing_ok=True)

        return await self.install(version, reporter, full_download)

    # ── state machine ────────────────────────────
    async def _run_plan(self, branch: Branch, target: int, plan: PathPlan,
                        reporter: Reporter) -> None:
        target_dir = game_dir(branch)
        while True:
            current: Optional[PatchEdge] = None
            try:
                for current in plan.edges:
                    await self._apply_edge(branch, current, reporter)
                return
            except (PatchApplyError, CorruptedInstallError) as exc:
                if current is None or current.is_full_install:
                    clear_installed_version(target_dir)
                    logger.error("full install of v%d failed: %s", target, exc)
                    if isinstance(exc, CorruptedInstallError):
                        message = f"Game files corrupted after patch. Please try reinstalling. ({exc})"
                    else:
                        message = f"Patch could not be applied: {exc}"
                    raise InstallFailed(message) from exc

                self._enter(InstallPhase.corrupted, reporter)
                logger.warning("patch %s failed (%s), retrying with full install", current, exc)
                reporter.status("Patch failed, downloading full version...")
                self._discard_install(target_dir)
                plan = FullInstallRequired(target=target)

    async def _apply_edge(self, branch: Branch, patch: PatchEdge, reporter: Reporter) -> None:
        target_dir = game_dir(branch)
        logger.info("processing patch %s", patch)

        self._enter(InstallPhase.downloading, reporter)
        package = await self._fetch_package(branch, patch, reporter)

        self._enter(InstallPhase.applying, reporter)
        await self.applier.apply(package, target_dir, reporter)

        self._enter(InstallPhase.validating, reporter)
        client = self.client_path(branch)
        if not is_valid_executable(client, self.platform_info):
            logger.error("corrupted executable after patch %s", patch)
            raise CorruptedInstallError(client)

        write_installed_version(target_dir, patch.target)
        logger.debug("version file updated to %d", patch.target)

    async def _fetch_package(self, branch: Branch, patch: PatchEdge,
                             reporter: Reporter) -> Path:
        url = self.catalog_service.package_url(branch, patch.prev, patch.target)
        dest = self.cache_dir / package_cache_name(branch, patch)

        if patch.is_full_install:
            reporter.status(f"Downloading v{patch.target}...")
        else:
            reporter.status(f"Downloading patch {patch.prev} -> {patch.target}...")

        probe = await self.transfer.probe(url)
        expected = probe.size if probe.exists else None

        if dest.is_file():
            size = dest.stat().st_size
            if not expected or size == expected:
                logger.debug("package %s already cached (%d bytes)", dest.name, size)
                reporter.status("Using cached package")
                return dest
            logger.debug("cached %s is %d/%d bytes, re-downloading", dest.name, size, expected)
            reporter.status("Cached package incomplete, re-downloading...")
            dest.unlink()

        result = await self.transfer.download(
            DownloadJob(url=url, destination=dest, expected_size=expected, retry=self.retry),
            reporter,
        )
        if not result.success:
            raise DownloadError(
                f"Download failed: {result.error}",
                url=url,
                attempts=result.attempts_used,
                tls_error=result.tls_error,
            )
        return dest

    def _discard_install(self, target_dir: Path) -> None:
        clear_installed_version(target_dir)
        shutil.rmtree(target_dir, ignore_errors=True)


# ──────────────────────────────────────────────
# 3. Wiring from user settings
# ──────────────────────────────────────────────
def create_orchestrator(
    transfer: ResilientTransfer,
    platform_info: PlatformInfo | None = None,
    cfg: Dict[str, Any] | None = None,
) -> InstallationOrchestrator:
    """Build the full component stack for this machine and settings file."""
    platform_info = platform_info or detect_platform()
    cfg = cfg if cfg is not None else config.read_config()
    base_url = config.patch_base_url(platform_info.os.value, platform_info.arch.value, cfg)
    logger.debug("patch base url: %s", base_url)
    return InstallationOrchestrator(
        catalog=VersionCatalog(transfer, base_url),
        applier=PatchApplier(transfer, platform_info),
        platform_info=platform_info,
        jre=JreProvider(transfer, platform_info),
        always_full_download=bool(cfg.get("alwaysFullDownload", True)),
    )

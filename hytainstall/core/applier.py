# hytainstall/core/applier.py
"""
HyTa Installer – patch application
==================================

Packages are applied by itch.io's `butler`, treated as a black box:

    butler apply --staging-dir <install>/staging-temp <package.pwr> <install>

exit 0 = applied, anything else (or the 10 minute timeout) = failed.
butler is fetched once into the tools folder the first time it is needed.

The staging directory is wiped before and after every run.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import stat
import zipfile
from pathlib import Path

from pydantic import BaseModel

from hytainstall.core import config
from hytainstall.core.errors import DownloadError, PatchApplyError
from hytainstall.core.models import DownloadJob, RetryConfig
from hytainstall.core.platform import OperatingSystem, PlatformInfo
from hytainstall.core.progress import INDETERMINATE, SILENT, Reporter
from hytainstall.core.transfer import ResilientTransfer

logger = logging.getLogger(__name__)

APPLY_TIMEOUT = 600.0
TERMINATE_GRACE = 5.0
STAGING_DIR_NAME = "staging-temp"


class ApplyResult(BaseModel):
    returncode: int
    stdout: str = ""
    stderr: str = ""


# ──────────────────────────────────────────────
# Staging helpers
# ──────────────────────────────────────────────
def _clear_contents(directory: Path) -> None:
    for child in directory.iterdir():
        try:
            if child.is_dir() and not child.is_symlink():
                shutil.rmtree(child, ignore_errors=True)
            else:
                child.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("could not clear %s: %s", child, exc)


def prepare_staging(install_dir: Path) -> Path:
    """Return an empty staging directory below `install_dir`."""
    staging = install_dir / STAGING_DIR_NAME
    if staging.exists():
        try:
            shutil.rmtree(staging)
        except OSError as exc:
            logger.warning("could not delete %s (%s), clearing contents", staging, exc)
            _clear_contents(staging)
    staging.mkdir(parents=True, exist_ok=True)
    install_dir.mkdir(parents=True, exist_ok=True)
    return staging


def remove_staging(staging: Path) -> None:
    shutil.rmtree(staging, ignore_errors=True)


# ──────────────────────────────────────────────
# Applier
# ──────────────────────────────────────────────
class PatchApplier:
    def __init__(
        self,
        transfer: ResilientTransfer,
        platform_info: PlatformInfo,
        tools_dir: Path | None = None,
        cache_dir: Path | None = None,
        tool_path: Path | None = None,
        timeout: float = APPLY_TIMEOUT,
    ) -> None:
        self.transfer = transfer
        self.platform_info = platform_info
        self.tools_dir = tools_dir or config.TOOLS_DIR
        self.cache_dir = cache_dir or config.CACHE_DIR
        self.tool_path = tool_path or self.tools_dir / platform_info.tool_executable
        self.timeout = timeout

    # ── butler bootstrap ─────────────────────────
    async def ensure_tool(self, reporter: Reporter = SILENT) -> Path:
        if self.tool_path.is_file():
            return self.tool_path

        self.tools_dir.mkdir(parents=True, exist_ok=True)
        reporter.status("Downloading patch tool...")
        url = config.BUTLER_URL.format(channel=self.platform_info.tool_channel)
        archive = self.cache_dir / "butler.zip"

        result = await self.transfer.download(
            DownloadJob(url=url, destination=archive, retry=RetryConfig()),
            reporter,
        )
        if not result.success:
            raise DownloadError(
                f"Could not download butler: {result.error}",
                url=url,
                attempts=result.attempts_used,
                tls_error=result.tls_error,
            )

        reporter.status("Extracting patch tool...")
        try:
            await asyncio.to_thread(self._extract_tool, archive)
        except (zipfile.BadZipFile, OSError) as exc:
            logger.error("could not unpack butler from %s: %s", url, exc)
            raise PatchApplyError(f"Downloaded butler archive is unusable: {exc}") from exc
        finally:
            archive.unlink(missing_ok=True)

        if not self.tool_path.is_file():
            raise PatchApplyError(f"butler archive did not contain {self.tool_path.name}")
        logger.info("butler installed at %s", self.tool_path)
        return self.tool_path

    def _extract_tool(self, archive: Path) -> None:
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(self.tools_dir)
        if self.platform_info.os is not OperatingSystem.windows:
            for entry in self.tools_dir.iterdir():
                if entry.is_file():
                    mode = entry.stat().st_mode
                    entry.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    # ── apply ────────────────────────────────────
    def build_command(self, tool: Path, staging: Path, package: Path, install_dir: Path):
        return [
            str(tool),
            "apply",
            "--staging-dir",
            str(staging),
            str(package),
            str(install_dir),
        ]

    async def apply(self, package: Path, install_dir: Path,
                    reporter: Reporter = SILENT) -> ApplyResult:
        """
        Run butler against `install_dir`.  Raises PatchApplyError on a
        non-zero exit or timeout.  A zero exit does not prove the install
        works – callers validate the client afterwards.
        """
        tool = await self.ensure_tool(reporter)
        if not package.is_file():
            raise PatchApplyError(f"Package not found: {package}")

        staging = prepare_staging(install_dir)
        cmd = self.build_command(tool, staging, package, install_dir)

        reporter.status("Applying patch...")
        reporter.progress(INDETERMINATE)
        logger.info("running %s", " ".join(cmd))
        logger.debug("package size: %d bytes", package.stat().st_size)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.tools_dir),
            )
        except OSError as exc:
            remove_staging(staging)
            raise PatchApplyError(f"Could not start butler: {exc}") from exc

        try:
            try:
                out, err = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                logger.error("butler timed out after %.0f s", self.timeout)
                raise PatchApplyError(f"Butler timeout ({self.timeout / 60:.0f} min)") from None
            except asyncio.CancelledError:
                await self._terminate(proc)
                raise
        finally:
            remove_staging(staging)

        stdout = out.decode(errors="replace")
        stderr = err.decode(errors="replace")
        logger.debug("butler exit code %s\nstdout: %s\nstderr: %s",
                     proc.returncode, stdout, stderr)

        if proc.returncode != 0:
            message = stderr.strip() or stdout.strip() or "Unknown error"
            logger.error("butler failed (code %s): %s", proc.returncode, message)
            raise PatchApplyError(
                f"Butler error (code {proc.returncode}): {message}",
                returncode=proc.returncode,
                stdout=stdout,
                stderr=stderr,
            )

        reporter.progress(100)
        return ApplyResult(returncode=0, stdout=stdout, stderr=stderr)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        logger.info("cancelling butler (pid %s)", proc.pid)
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=TERMINATE_GRACE)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass

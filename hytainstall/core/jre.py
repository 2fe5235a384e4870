# hytainstall/core/jre.py
"""
Java runtime provisioning for a branch.

The launcher index `jre.json` lists one archive per os/arch:

    {"version": "...",
     "download_url": {"linux": {"amd64": {"url": "...", "sha256": "..."}}}}

Failures here are never fatal – the client can still be started with
whatever `java` is on PATH.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tarfile
import zipfile
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ValidationError

from hytainstall.core import config
from hytainstall.core.errors import DownloadError
from hytainstall.core.models import Branch, DownloadJob, RetryConfig
from hytainstall.core.platform import PlatformInfo
from hytainstall.core.progress import SILENT, Reporter
from hytainstall.core.transfer import ResilientTransfer

logger = logging.getLogger(__name__)


class JrePlatform(BaseModel):
    url: str
    sha256: str = ""


class JreIndex(BaseModel):
    version: Optional[str] = None
    download_url: Dict[str, Dict[str, JrePlatform]] = {}


def jre_dir(branch: Branch | str) -> Path:
    return config.branch_root(Branch(branch).value) / "jre" / "latest"


def java_path(branch: Branch | str, platform_info: PlatformInfo) -> str:
    """Bundled java if present, otherwise whatever `java` is on PATH."""
    exe = jre_dir(branch) / "bin" / platform_info.java_executable
    return str(exe) if exe.is_file() else "java"


def extract_archive(archive: Path, dest: Path) -> None:
    """Unpack .zip / .tar.gz / .tgz into `dest`."""
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()
    if name.endswith(".zip"):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(dest)
    elif name.endswith((".tar.gz", ".tgz")):
        with tarfile.open(archive, "r:gz") as tf:
            tf.extractall(dest, filter="data")
    else:
        raise ValueError(f"Unsupported archive type: {archive.name}")


def flatten_single_subdir(directory: Path) -> None:
    """`jdk-21/bin/...` → `bin/...` when the archive had one top-level folder."""
    entries = list(directory.iterdir())
    if len(entries) != 1 or not entries[0].is_dir():
        return
    inner = entries[0]
    for child in list(inner.iterdir()):
        target = directory / child.name
        if target.exists():
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
        shutil.move(str(child), str(target))
    inner.rmdir()


class JreProvider:
    def __init__(self, transfer: ResilientTransfer, platform_info: PlatformInfo,
                 cache_dir: Path | None = None) -> None:
        self.transfer = transfer
        self.platform_info = platform_info
        self.cache_dir = cache_dir or config.CACHE_DIR

    def java_executable(self, branch: Branch | str) -> Path:
        return jre_dir(branch) / "bin" / self.platform_info.java_executable

    async def ensure(self, branch: Branch | str, reporter: Reporter = SILENT) -> bool:
        """
        Make sure the bundled runtime exists.  Returns False when it could
        not be provisioned and the system java will be used.
        """
        branch = Branch(branch)
        if self.java_executable(branch).is_file():
            logger.debug("JRE already installed for %s", branch.value)
            reporter.progress(100)
            return True

        logger.info("downloading JRE for %s", branch.value)
        reporter.status("Downloading Java runtime...")
        try:
            await self._install(branch, reporter)
        except (DownloadError, ValidationError, ValueError, OSError,
                zipfile.BadZipFile, tarfile.TarError) as exc:
            logger.warning("JRE download failed, using system Java: %s", exc)
            reporter.status("Using system Java")
            return False
        logger.info("JRE installation completed")
        return True

    async def _install(self, branch: Branch, reporter: Reporter) -> None:
        index_url = config.JRE_INDEX_URL.format(branch=branch.value)
        index = JreIndex.model_validate(
            await self.transfer.get_json(index_url, RetryConfig.quick())
        )

        os_key, arch_key = self.platform_info.os.value, self.platform_info.arch.value
        entry = index.download_url.get(os_key, {}).get(arch_key)
        if entry is None:
            raise ValueError(f"JRE not available for {os_key}/{arch_key}")

        archive = self.cache_dir / Path(entry.url.split("?", 1)[0]).name
        result = await self.transfer.download(
            DownloadJob(
                url=entry.url,
                destination=archive,
                expected_hash=entry.sha256 or None,
                retry=RetryConfig.large_file(),
            ),
            reporter,
        )
        if not result.success:
            raise DownloadError(result.error or "JRE download failed", url=entry.url,
                                attempts=result.attempts_used, tls_error=result.tls_error)

        reporter.status("Extracting Java runtime...")
        target = jre_dir(branch)
        await asyncio.to_thread(extract_archive, archive, target)
        await asyncio.to_thread(flatten_single_subdir, target)
        archive.unlink(missing_ok=True)

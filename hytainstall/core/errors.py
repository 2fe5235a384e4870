# hytainstall/core/errors.py
"""
Failure types surfaced by the acquisition engine.

Everything recoverable (a flaky probe, one bad download attempt, a
failed incremental patch) is handled inside the core; callers only see
these once the documented fallbacks are exhausted.  Cancellation is
plain `asyncio.CancelledError` and never wrapped here.
"""

from __future__ import annotations

from pathlib import Path

from hytainstall.core.models import TlsErrorKind


class InstallError(RuntimeError):
    """Base class for every typed failure of the installer."""


class DownloadError(InstallError):
    def __init__(
        self,
        message: str,
        url: str = "",
        attempts: int = 0,
        tls_error: TlsErrorKind = TlsErrorKind.none,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.attempts = attempts
        self.tls_error = tls_error


class PatchApplyError(InstallError):
    def __init__(self, message: str, returncode: int | None = None,
                 stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class CorruptedInstallError(InstallError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"Invalid executable after patch: {path}")
        self.path = path


class InstallFailed(InstallError):
    """Terminal outcome of InstallationOrchestrator.install()."""

# hytainstall/core/models.py
"""
HyTa Installer – shared data models
===================================

Catalog, resolver, transfer and orchestrator communicate through the
**typed** value objects defined here.  Pydantic gives us validation,
(de)serialisation for the API layer, and hashable frozen models for the
edge sets.

Avoid adding business logic – that belongs in the `core/` modules.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ──────────────────────────────────────────────
# 1. Branches & versions
# ──────────────────────────────────────────────
class Branch(str, enum.Enum):
    release = "release"
    pre_release = "pre-release"
    beta = "beta"
    alpha = "alpha"


class PatchEdge(BaseModel):
    """A package on the server turning an install at `prev` into `target`."""
    model_config = ConfigDict(frozen=True)

    prev: int = Field(ge=0)
    target: int

    @model_validator(mode="after")
    def _forward_only(self) -> "PatchEdge":
        if self.target <= self.prev:
            raise ValueError("target must be greater than prev")
        return self

    @property
    def is_full_install(self) -> bool:
        return self.prev == 0

    def __str__(self) -> str:
        return f"{self.prev}/{self.target}"


def edge(prev: int, target: int) -> PatchEdge:
    """Shorthand used by the resolver and tests."""
    return PatchEdge(prev=prev, target=target)


class GameVersion(BaseModel):
    model_config = ConfigDict(frozen=True)

    branch: Branch = Branch.release
    version: int = Field(ge=1)
    package_name: str = ""
    prev_version: int = 0          # 0 = full install
    is_latest: bool = False

    @model_validator(mode="before")
    @classmethod
    def _default_package_name(cls, data):
        if isinstance(data, dict) and not data.get("package_name") and "version" in data:
            data = {**data, "package_name": f"{data['version']}.pwr"}
        return data

    @property
    def is_full_install(self) -> bool:
        return self.prev_version == 0

    @property
    def name(self) -> str:
        return "latest" if self.is_latest else f"v{self.version}"


class CatalogSnapshot(BaseModel):
    """Result of one discovery sweep over a branch."""
    model_config = ConfigDict(frozen=True)

    branch: Branch
    edges: FrozenSet[PatchEdge] = frozenset()
    max_version: int = 0

    @property
    def versions(self) -> List[int]:
        return sorted({e.target for e in self.edges})

    def selectable_versions(self) -> List[GameVersion]:
        """Concrete versions, newest alias first."""
        found = [GameVersion(branch=self.branch, version=v) for v in self.versions]
        if not found:
            # nothing answered – offer version 1 so the user can still try
            return [GameVersion(branch=self.branch, version=1, is_latest=True)]
        latest = found[-1]
        alias = GameVersion(
            branch=self.branch,
            version=latest.version,
            package_name=latest.package_name,
            is_latest=True,
        )
        return [alias, *found]


# ──────────────────────────────────────────────
# 2. Transfer
# ──────────────────────────────────────────────
class RetryConfig(BaseModel):
    """Retry / timeout policy for one kind of transfer (seconds)."""
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(3, ge=1)
    initial_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 30 * 60
    resume_enabled: bool = True
    buffer_size: int = Field(81920, gt=0)
    verify_ssl: bool = True

    @classmethod
    def quick(cls) -> "RetryConfig":
        return cls(max_retries=2, timeout=10, resume_enabled=False)

    @classmethod
    def large_file(cls) -> "RetryConfig":
        return cls(max_retries=5, timeout=60 * 60, initial_delay=2.0)


class DownloadJob(BaseModel):
    url: str
    destination: Path
    expected_size: Optional[int] = None      # bytes, None/0 = unknown
    expected_hash: Optional[str] = None      # sha256 hex
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @property
    def part_path(self) -> Path:
        return self.destination.with_name(self.destination.name + ".part")


class TlsErrorKind(str, enum.Enum):
    none = "none"
    certificate = "certificate"
    protocol = "protocol"
    authentication = "authentication"
    unknown = "unknown"


class DownloadResult(BaseModel):
    success: bool = False
    path: Optional[Path] = None
    bytes_transferred: int = 0
    attempts_used: int = 0
    resumed: bool = False
    sha256: Optional[str] = None
    error: Optional[str] = None
    tls_error: TlsErrorKind = TlsErrorKind.none


class ProbeResult(BaseModel):
    exists: bool
    size: Optional[int] = None


# ──────────────────────────────────────────────
# 3. Installation session
# ──────────────────────────────────────────────
class InstallPhase(str, enum.Enum):
    idle = "idle"
    checking_java = "checking_java"
    checking_game = "checking_game"
    downloading = "downloading"
    applying = "applying"
    validating = "validating"
    corrupted = "corrupted"
    launchable = "launchable"
    failed = "failed"


class InstallStatus(BaseModel):
    """Snapshot of the running session, polled by the frontend."""
    phase: InstallPhase = InstallPhase.idle
    progress: float = 0.0                   # -1 = indeterminate
    status: str = ""
    branch: Optional[Branch] = None
    target_version: Optional[int] = None
    installed_version: int = 0
    error: Optional[str] = None

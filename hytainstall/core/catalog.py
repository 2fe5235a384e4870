# hytainstall/core/catalog.py
"""
HyTa Installer – version catalog
================================

The patch server has no "list versions" endpoint, so discovery probes
package URLs with HEAD requests until a run of misses says there is
nothing further:

    {base}/{branch}/0/{v}.pwr        full install of version v
    {base}/{branch}/{p}/{v}.pwr      incremental patch p -> v

A failed probe (404, timeout, reset…) is simply a miss.  Discovery never
aborts; at worst it stops a little early on a flaky connection.
"""

from __future__ import annotations

import logging
from typing import Set

from hytainstall.core.models import Branch, CatalogSnapshot, PatchEdge
from hytainstall.core.progress import SILENT, Reporter
from hytainstall.core.transfer import ResilientTransfer

logger = logging.getLogger(__name__)

CONSECUTIVE_MISSES_TO_STOP = 5
PACKAGE_EXT = "pwr"


class VersionCatalog:
    def __init__(
        self,
        transfer: ResilientTransfer,
        base_url: str,
        miss_limit: int = CONSECUTIVE_MISSES_TO_STOP,
    ) -> None:
        self.transfer = transfer
        self.base_url = base_url.rstrip("/")
        self.miss_limit = miss_limit

    def package_url(self, branch: Branch | str, prev: int, target: int) -> str:
        branch = Branch(branch).value
        return f"{self.base_url}/{branch}/{prev}/{target}.{PACKAGE_EXT}"

    async def _exists(self, branch: Branch, prev: int, target: int) -> bool:
        probe = await self.transfer.probe(self.package_url(branch, prev, target))
        return probe.exists

    async def discover(self, branch: Branch | str, reporter: Reporter = SILENT) -> CatalogSnapshot:
        branch = Branch(branch)
        edges: Set[PatchEdge] = set()
        reporter.status(f"Checking available versions ({branch.value})...")

        # 1) full installs 0 -> v, 0..50 %
        max_version = 0
        misses = 0
        ver = 1
        while misses < self.miss_limit:
            if await self._exists(branch, 0, ver):
                edges.add(PatchEdge(prev=0, target=ver))
                max_version = ver
                misses = 0
            else:
                misses += 1
            reporter.progress(min(ver * 5, 50))
            ver += 1

        logger.debug("%s: %d full versions, latest %d", branch.value, len(edges), max_version)

        # 2) incremental patches p -> t, 50..100 %
        for prev in range(1, max_version):
            misses = 0
            target = prev + 1
            while misses < self.miss_limit and target <= max_version + self.miss_limit:
                if await self._exists(branch, prev, target):
                    edges.add(PatchEdge(prev=prev, target=target))
                    misses = 0
                else:
                    misses += 1
                target += 1
            reporter.progress(50 + prev / max(max_version, 1) * 50)

        reporter.progress(100)
        snapshot = CatalogSnapshot(branch=branch, edges=frozenset(edges), max_version=max_version)
        logger.info(
            "%s: discovered %d packages, versions %s",
            branch.value, len(snapshot.edges), snapshot.versions,
        )
        return snapshot

# hytainstall/core/pathing.py
"""
Update path resolution over a discovered edge set.  Pure, no I/O.

The walk is greedy: from the current version it always takes the
largest jump that does not overshoot the target.  It is not a
shortest-path search.
"""

from __future__ import annotations

from typing import Iterable, List, Union

from pydantic import BaseModel, ConfigDict

from hytainstall.core.models import PatchEdge


class UpdatePath(BaseModel):
    """Edges to apply in order.  Empty means nothing to do."""
    model_config = ConfigDict(frozen=True)

    edges: List[PatchEdge] = []


class FullInstallRequired(BaseModel):
    """No chain of patches reaches the target; install it from scratch."""
    model_config = ConfigDict(frozen=True)

    target: int

    @property
    def edges(self) -> List[PatchEdge]:
        return [PatchEdge(prev=0, target=self.target)]


PathPlan = Union[UpdatePath, FullInstallRequired]


def resolve_path(current: int, target: int, available: Iterable[PatchEdge]) -> PathPlan:
    if current >= target:
        return UpdatePath()

    edges = set(available)
    direct = PatchEdge(prev=current, target=target)
    if direct in edges:
        return UpdatePath(edges=[direct])

    path: List[PatchEdge] = []
    position = current
    while position < target:
        candidates = [e for e in edges if e.prev == position and e.target <= target]
        if not candidates:
            return FullInstallRequired(target=target)
        best = max(candidates, key=lambda e: e.target)
        path.append(best)
        position = best.target

    return UpdatePath(edges=path)

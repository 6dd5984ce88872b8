"""
Sync mode resolution.

A run is exactly one of three modes, decided once up front and threaded through
admission, diffing and the shop state update:

    INITIAL      shop never finished a sync; generate for every submitted product
    REFRESH      caller asked to regenerate; drop the shop's edges, then generate for all
    INCREMENTAL  generate only for submitted products without outgoing edges
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class SyncMode(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    REFRESH = "refresh"

    @property
    def regenerates_all(self) -> bool:
        return self is not SyncMode.INCREMENTAL


MODE_HINTS = ("auto", "refresh")


def resolve_sync_mode(
    initial_sync_done: bool,
    hint: Optional[str] = "auto",
    regenerate: bool = False,
) -> SyncMode:
    """Pick the mode for a run. ``regenerate`` is the legacy alias for ``hint='refresh'``."""
    if not initial_sync_done:
        return SyncMode.INITIAL
    if regenerate or (hint or "auto").lower() == "refresh":
        return SyncMode.REFRESH
    return SyncMode.INCREMENTAL

from __future__ import annotations

import threading
from typing import Any

from almanac.models import DomainSnapshot


class SnapshotRegistry:
    """Latest domain snapshot per user, as pushed by the domain store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._snapshots: dict[str, DomainSnapshot] = {}

    def put(self, user_id: str, snapshot: DomainSnapshot | dict[str, Any]) -> bool:
        if isinstance(snapshot, dict):
            snapshot = DomainSnapshot.from_dict(snapshot)
        with self._lock:
            previous = self._snapshots.get(user_id)
            self._snapshots[user_id] = snapshot
        return previous != snapshot

    def get(self, user_id: str) -> DomainSnapshot:
        with self._lock:
            return self._snapshots.get(user_id) or DomainSnapshot()

    def drop(self, user_id: str) -> None:
        with self._lock:
            self._snapshots.pop(user_id, None)

    def __call__(self, user_id: str) -> DomainSnapshot:
        return self.get(user_id)

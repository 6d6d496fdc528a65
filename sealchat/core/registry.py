from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

log = logging.getLogger("sealchat.core.registry")


class ConnectionRegistry:
    """Maps a user to the one live endpoint that should receive their pushes.

    Last connect wins. Removal is guarded: a disconnect only clears the entry
    if it still points at the disconnecting endpoint, so a late close of an old
    socket cannot evict a newer connection for the same user.

    Nothing is persisted; every user is offline after a restart until they
    reconnect.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._endpoints: Dict[str, str] = {}

    def register(self, user_id: str, endpoint_id: str) -> Optional[str]:
        """Bind ``user_id`` to ``endpoint_id`` and return the endpoint it replaced."""
        if not user_id or not endpoint_id:
            raise ValueError("user_id and endpoint_id are required")
        with self._lock:
            previous = self._endpoints.get(user_id)
            self._endpoints[user_id] = endpoint_id
        if previous is not None and previous != endpoint_id:
            log.info("User %s reconnected on %s, superseding %s", user_id, endpoint_id, previous)
            return previous
        return None

    def unregister(self, user_id: str, endpoint_id: str) -> bool:
        with self._lock:
            current = self._endpoints.get(user_id)
            if current is None or current != endpoint_id:
                removed = False
            else:
                del self._endpoints[user_id]
                removed = True
        if not removed:
            log.debug("Ignored stale unregister for %s (endpoint=%s, current=%s)", user_id, endpoint_id, current)
        return removed

    def lookup(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._endpoints.get(user_id)

    def online_users(self) -> List[str]:
        with self._lock:
            return sorted(self._endpoints)

    def __contains__(self, user_id: object) -> bool:
        with self._lock:
            return user_id in self._endpoints

    def __len__(self) -> int:
        with self._lock:
            return len(self._endpoints)


__all__ = ["ConnectionRegistry"]

"""In-memory subscription registry for websocket fan-out."""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from typing import Any, Hashable, Optional

from starlette.websockets import WebSocketState


_LOGGER = logging.getLogger("marketplace.realtime")


def is_open(connection: Any) -> bool:
    """Return True while both ends of the websocket are connected."""
    return (
        connection.application_state == WebSocketState.CONNECTED
        and connection.client_state == WebSocketState.CONNECTED
    )


class SubscriptionRegistry:
    """Map of topic key (order, delivery or chat id) to live connections.

    Entries are created on first subscribe and dropped when the last
    subscriber leaves. State lives for the lifetime of the process only.
    """

    def __init__(self, name: str = "registry"):
        self.name = name
        self._subs: dict[Hashable, set] = defaultdict(set)
        self._lock = threading.Lock()

    def subscribe(self, key: Hashable, connection: Any) -> None:
        with self._lock:
            self._subs[key].add(connection)

    def unsubscribe(self, key: Hashable, connection: Any) -> None:
        with self._lock:
            conns = self._subs.get(key)
            if conns is None:
                return
            conns.discard(connection)
            if not conns:
                del self._subs[key]

    def subscribers(self, key: Hashable) -> frozenset:
        with self._lock:
            return frozenset(self._subs.get(key, ()))

    async def broadcast(self, key: Hashable, payload: dict, exclude: Optional[Any] = None) -> int:
        """Send `payload` to every open subscriber of `key` except `exclude`.

        Delivery is best-effort: closed connections are skipped and a
        failing send is logged, never retried. Returns the number of
        connections the frame was handed to.
        """
        targets = [c for c in self.subscribers(key) if c is not exclude]
        text = json.dumps(payload)
        sent = 0
        for conn in targets:
            if not is_open(conn):
                continue
            try:
                await conn.send_text(text)
            except Exception:
                _LOGGER.warning("broadcast_failed %s", json.dumps({"registry": self.name, "key": str(key)}))
                continue
            sent += 1
        return sent

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._subs

    def __len__(self) -> int:
        with self._lock:
            return len(self._subs)

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

log = logging.getLogger("sealchat.client.events")

Callback = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    event: str
    callback: Callback

    def deliver(self, payload: Any) -> None:
        self.callback(payload)


class EventFeed:
    """Named live events from the server, with explicit subscribe/unsubscribe pairs."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, event: str, callback: Callback) -> Subscription:
        subscription = Subscription(event=event, callback=callback)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.event, None)

    def emit(self, event: str, payload: Any) -> int:
        subs = list(self._subscriptions.get(event, []))
        for subscription in subs:
            try:
                subscription.deliver(payload)
            except Exception:
                log.exception("Listener for %s failed", event)
        return len(subs)

    def listener_count(self, event: str) -> int:
        return len(self._subscriptions.get(event, []))


__all__ = ["EventFeed", "Subscription"]

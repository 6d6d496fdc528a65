from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .proto import SERVER_ID, T_NEW_MESSAGE, build_frame
from .registry import ConnectionRegistry

log = logging.getLogger("sealchat.core.dispatcher")


class Endpoint(Protocol):
    endpoint_id: str

    def send(self, frame: Dict[str, Any]) -> Awaitable[None]: ...


EndpointLookup = Callable[[str], Optional[Endpoint]]


class DeliveryDispatcher:
    """Pushes a freshly stored message to the recipient's live endpoint.

    Delivery is best effort. The message is already persisted when this runs,
    so an offline recipient, a vanished endpoint or a failing socket are all
    logged and swallowed here; none of them may reach the sender.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        endpoints: EndpointLookup,
        *,
        send_timeout: float = 5.0,
    ) -> None:
        self.registry = registry
        self.endpoints = endpoints
        self.send_timeout = send_timeout

    async def deliver(self, receiver_id: str, payload: Dict[str, Any]) -> bool:
        endpoint_id = self.registry.lookup(receiver_id)
        if endpoint_id is None:
            log.debug("Recipient %s offline; message %s left for next fetch", receiver_id, payload.get("id"))
            return False

        endpoint = self.endpoints(endpoint_id)
        if endpoint is None:
            # disconnect raced us between lookup and resolve
            log.debug("Endpoint %s for %s already gone", endpoint_id, receiver_id)
            return False

        frame = build_frame(T_NEW_MESSAGE, SERVER_ID, receiver_id, payload)
        try:
            await asyncio.wait_for(endpoint.send(frame), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            log.warning("Push of %s to %s timed out after %.1fs", payload.get("id"), receiver_id, self.send_timeout)
            return False
        except Exception as exc:
            log.warning("Push of %s to %s failed: %s", payload.get("id"), receiver_id, exc)
            return False

        log.debug("Pushed %s to %s on %s", payload.get("id"), receiver_id, endpoint_id)
        return True


__all__ = ["DeliveryDispatcher", "Endpoint", "EndpointLookup"]

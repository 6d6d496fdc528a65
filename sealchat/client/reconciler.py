from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Set, Union

from sealchat.core.proto import T_NEW_MESSAGE, Message, UserSummary

from .events import EventFeed, Subscription

"""
Client-side conversation state
------------------------------
One selected counterpart at a time, one live listener for it, and one ordered
view of the messages exchanged with it.

States:
  no conversation     -> select_conversation(c) -> selected, view empty
  selected            -> load_history(...)      -> view = history
  selected            -> live event / own post  -> view += message (deduped)
  selected            -> select_conversation(d) -> old listener gone, view empty
  any                 -> close()                -> no conversation, no listener

Events are applied one at a time from the client's event loop; a switch and an
incoming event are therefore strictly ordered.
"""

log = logging.getLogger("sealchat.client.reconciler")

Identity = Union[UserSummary, dict, str]
FetchFn = Callable[[str], Awaitable[Iterable[Any]]]
ChangeFn = Callable[[Message], None]


def identity_of(value: Identity) -> str:
    """Reduce a raw id or an expanded user object to the user id."""

    if isinstance(value, UserSummary):
        return value.user_id
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        return UserSummary.model_validate(value).user_id
    raise ValueError(f"cannot resolve identity from {type(value).__name__}")


def as_message(value: Union[Message, dict]) -> Message:
    if isinstance(value, Message):
        return value
    return Message.model_validate(value)


class ChatState:
    """Reconciles pushed messages with the locally held conversation view."""

    def __init__(self, me: str, feed: EventFeed, *, on_append: Optional[ChangeFn] = None) -> None:
        self.me = me
        self.feed = feed
        self.on_append = on_append
        self.selected: Optional[str] = None
        self.messages: List[Message] = []
        self._known: Set[str] = set()
        self._subscription: Optional[Subscription] = None
        self._generation = 0

    # --- selection ---

    def select_conversation(self, counterpart_id: Identity) -> int:
        """Switch to ``counterpart_id``; returns the token ``load_history`` expects."""
        counterpart = identity_of(counterpart_id)
        self._unsubscribe()
        self._generation += 1
        self.selected = counterpart
        self.messages = []
        self._known = set()
        self._subscription = self.feed.subscribe(T_NEW_MESSAGE, self.on_live_message)
        log.debug("Selected conversation with %s (generation %d)", counterpart, self._generation)
        return self._generation

    def load_history(self, generation: int, history: Iterable[Union[Message, dict]]) -> bool:
        """Install fetched history unless the user has moved on since the fetch began.

        Live messages applied while the fetch was in flight stay in the view if
        the history does not already contain them.
        """
        if generation != self._generation or self.selected is None:
            log.debug("Dropped stale history for generation %d", generation)
            return False

        merged: List[Message] = []
        seen: Set[str] = set()
        for item in history:
            message = as_message(item)
            if message.id not in seen:
                seen.add(message.id)
                merged.append(message)
        for message in self.messages:
            if message.id not in seen:
                seen.add(message.id)
                merged.append(message)

        self.messages = merged
        self._known = seen
        return True

    async def open_conversation(self, counterpart_id: Identity, fetch: FetchFn) -> bool:
        generation = self.select_conversation(counterpart_id)
        history = await fetch(self.selected)
        return self.load_history(generation, history)

    def close(self) -> None:
        self._unsubscribe()
        self._generation += 1
        self.selected = None
        self.messages = []
        self._known = set()

    # --- incoming ---

    def on_live_message(self, payload: Union[Message, dict]) -> bool:
        try:
            message = as_message(payload)
            belongs = self._belongs_to_selected(message)
        except ValueError as exc:
            log.debug("Discarded malformed live message: %s", exc)
            return False
        if not belongs:
            return False
        return self._append(message)

    def append_local(self, message: Union[Message, dict]) -> bool:
        """Own post, appended optimistically; a later echo of the same id is ignored."""
        message = as_message(message)
        if not self._belongs_to_selected(message):
            log.debug("Local message %s is not part of the open conversation", message.id)
            return False
        return self._append(message)

    # --- internals ---

    @property
    def listening(self) -> bool:
        return self._subscription is not None

    def _belongs_to_selected(self, message: Message) -> bool:
        if self.selected is None:
            return False
        sender = identity_of(message.sender_id)
        receiver = identity_of(message.receiver_id)
        if self.me not in (sender, receiver):
            return False
        counterpart = receiver if sender == self.me else sender
        return counterpart == self.selected

    def _append(self, message: Message) -> bool:
        if message.id in self._known:
            return False
        self._known.add(message.id)
        self.messages.append(message)
        if self.on_append is not None:
            self.on_append(message)
        return True

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self.feed.unsubscribe(self._subscription)
            self._subscription = None


__all__ = ["ChatState", "identity_of", "as_message"]

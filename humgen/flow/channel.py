"""Typed data channels connecting humgen task nodes.

A channel is the only way data moves between nodes. Value channels hold a
single item (e.g. a reference bundle) that is replayed to every subscriber,
while stream channels carry ordered per-sample tuples that are delivered once
to each subscriber in emission order.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Hashable, Iterator
from typing import Any

from .errors import ArityMismatch, ChannelClosed, DuplicateKey, ValueAlreadySet


class Channel(ABC):
    """Abstract base class for value and stream channels.

    Channels are compared by identity: two channels with the same name are
    still different conduits.

    Attributes:
        name: Human-readable channel name used in diagnostics.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._closed = False
        self._subscriptions: dict[str, "Subscription"] = {}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"

    @property
    def closed(self) -> bool:
        """Whether no further items will be emitted."""
        return self._closed

    @property
    def subscribers(self) -> list[str]:
        """Consumer identifiers registered on this channel."""
        return list(self._subscriptions)

    def subscribe(self, consumer_id: str) -> "Subscription":
        """Register a consumer and return its lazy view of the channel.

        Subscribing twice with the same consumer identifier returns the
        existing subscription.

        Args:
            consumer_id: Identifier of the consuming node or handle

        Returns:
            Subscription bound to this channel
        """
        if consumer_id not in self._subscriptions:
            self._subscriptions[consumer_id] = Subscription(
                channel=self, consumer_id=consumer_id, cursor=self._initial_cursor()
            )
        return self._subscriptions[consumer_id]

    def close(self) -> None:
        """Mark the channel as complete."""
        if not self._closed:
            logging.getLogger(__name__).debug("close channel:\t%s", self.name)
            self._closed = True
            self._release_if_drained()

    @abstractmethod
    def emit(self, item: Any) -> None:
        """Publish an item on the channel."""
        raise NotImplementedError

    @abstractmethod
    def _read(self, cursor: int) -> tuple[list[Any], int]:
        raise NotImplementedError

    @abstractmethod
    def _snapshot(self) -> list[Any]:
        raise NotImplementedError

    def _initial_cursor(self) -> int:
        return 0

    def _release_if_drained(self) -> None:
        pass


class ValueChannel(Channel):
    """Channel holding exactly one item replayed to every subscriber.

    Args:
        name: Channel name
        value: Optional initial value (the channel is closed once set)
        mutable: Allow the value to be replaced; subscribers then see the
            latest value
    """

    _unset = object()

    def __init__(self, name: str, value: Any = _unset, mutable: bool = False) -> None:
        super().__init__(name)
        self.mutable = mutable
        self._value: Any = self._unset
        self._version = 0
        if value is not self._unset:
            self.emit(value)

    @property
    def is_set(self) -> bool:
        """Whether a value has been emitted."""
        return self._value is not self._unset

    @property
    def value(self) -> Any:
        """The current value.

        Raises:
            LookupError: If no value has been emitted yet
        """
        if not self.is_set:
            msg = f"value channel is empty: {self.name}"
            raise LookupError(msg)
        return self._value

    def emit(self, item: Any) -> None:
        """Set the single slot of the channel.

        Args:
            item: Value to replay to every subscriber

        Raises:
            ChannelClosed: If the channel was closed without a value
            ValueAlreadySet: If the channel is immutable and already holds a value
        """
        if self.is_set and not self.mutable:
            msg = f"value channel is already set: {self.name}"
            raise ValueAlreadySet(msg)
        elif self._closed and not self.mutable:
            msg = f"emit after close: {self.name}"
            raise ChannelClosed(msg)
        self._value = item
        self._version += 1
        if not self.mutable:
            self._closed = True

    def _read(self, cursor: int) -> tuple[list[Any], int]:
        if self.is_set and cursor < self._version:
            return [self._value], self._version
        else:
            return [], cursor

    def _snapshot(self) -> list[Any]:
        return [self._value] if self.is_set else []


class StreamChannel(Channel):
    """Channel carrying an ordered sequence of keyed tuples.

    Every tuple has the same arity for the lifetime of the channel, and the
    join key sits at a fixed position. Keys must be unique unless the channel
    is declared as an aggregate sink.

    Args:
        name: Channel name
        arity: Tuple length (fixed on first emission when omitted)
        key_index: Position of the join key in each tuple, or None for an
            unkeyed stream
        unique_keys: Reject a second tuple with the same key
    """

    def __init__(
        self,
        name: str,
        arity: int | None = None,
        key_index: int | None = 0,
        unique_keys: bool = True,
    ) -> None:
        super().__init__(name)
        self.arity = arity
        self.key_index = key_index
        self.unique_keys = unique_keys and key_index is not None
        self._items: list[tuple] = []
        self._offset = 0
        self._keys: set[Hashable] = set()
        self._drained = False

    def __len__(self) -> int:
        return self._offset + len(self._items)

    @property
    def drained(self) -> bool:
        """Whether the channel is closed and every subscriber has read it all."""
        return self._drained

    def key_of(self, item: tuple) -> Hashable:
        """Return the join key of a tuple emitted on this channel."""
        if self.key_index is None:
            msg = f"stream channel is not keyed: {self.name}"
            raise ArityMismatch(msg)
        return item[self.key_index]

    def emit(self, item: tuple) -> None:
        """Append a tuple to the stream.

        Args:
            item: Tuple whose length matches the channel arity

        Raises:
            ChannelClosed: If the channel is closed
            ArityMismatch: If the tuple length differs from the channel arity
            DuplicateKey: If the key was already emitted on a unique-key channel
        """
        if self._closed:
            msg = f"emit after close: {self.name}"
            raise ChannelClosed(msg)
        elif not isinstance(item, tuple):
            msg = f"stream items must be tuples: {self.name} <- {item!r}"
            raise ArityMismatch(msg)
        if self.arity is None:
            self.arity = len(item)
        if len(item) != self.arity:
            msg = f"arity mismatch on {self.name}: expected {self.arity}, got {len(item)}"
            raise ArityMismatch(msg)
        if self.unique_keys:
            key = self.key_of(item)
            if key in self._keys:
                msg = f"duplicate key on {self.name}: {key}"
                raise DuplicateKey(msg)
            self._keys.add(key)
        self._items.append(item)

    def _initial_cursor(self) -> int:
        return self._offset + len(self._items) if self._drained else 0

    def _read(self, cursor: int) -> tuple[list[Any], int]:
        start = max(cursor - self._offset, 0)
        return self._items[start:], self._offset + len(self._items)

    def _snapshot(self) -> list[Any]:
        return list(self._items)

    def _release_if_drained(self) -> None:
        if not self._closed or self._drained:
            return
        end = self._offset + len(self._items)
        cursors = [s.cursor for s in self._subscriptions.values()]
        if cursors and all(c >= end for c in cursors):
            self._offset = end
            self._items = []
            self._drained = True


class Subscription:
    """Per-consumer view of a channel.

    Iterating a subscription lazily replays every item still buffered from the
    start, so each consumer can restart its own pass. ``poll`` returns only the
    items that arrived since the previous poll and is what the scheduler uses
    to consume the channel.

    Attributes:
        channel: Subscribed channel.
        consumer_id: Identifier of the consumer.
        cursor: Position of the next unpolled item.
    """

    def __init__(self, channel: Channel, consumer_id: str, cursor: int = 0) -> None:
        self.channel = channel
        self.consumer_id = consumer_id
        self.cursor = cursor

    def __repr__(self) -> str:
        return f"Subscription({self.channel.name!r}, {self.consumer_id!r})"

    def __iter__(self) -> Iterator[Any]:
        if isinstance(self.channel, StreamChannel) and self.channel.drained:
            return iter([])
        return iter(self.channel._snapshot())

    def poll(self) -> list[Any]:
        """Return the items emitted since the previous poll.

        Returns:
            Newly available items in emission order
        """
        items, self.cursor = self.channel._read(self.cursor)
        self.channel._release_if_drained()
        return items

    @property
    def exhausted(self) -> bool:
        """Whether the channel is closed and this consumer has polled everything."""
        if not self.channel.closed:
            return False
        elif isinstance(self.channel, StreamChannel):
            return self.cursor >= len(self.channel)
        else:
            return not self.channel._read(self.cursor)[0]

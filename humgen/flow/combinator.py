"""Join and fan-out combinators.

Combinators are operator nodes: they take part in the task graph like any
other node, but the scheduler evaluates them inline instead of dispatching
them to an execution backend.
"""

import logging
from collections.abc import Hashable, Sequence
from typing import Any

from .channel import Channel, StreamChannel, Subscription, ValueChannel
from .errors import ChannelProtocolError, DuplicateKey, JoinStarvation
from .node import ResourceProfile, TaskNode


class KeyedBuffer:
    """Buffer tuples by key until one item per position has arrived.

    Args:
        width: Number of positions (joined channels)
    """

    def __init__(self, width: int) -> None:
        self.width = width
        self._pending: dict[Hashable, dict[int, Any]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def offer(self, position: int, key: Hashable, item: Any) -> list[Any] | None:
        """Buffer an item and return the complete set for its key, if any.

        Args:
            position: Position of the channel the item arrived on
            key: Join key of the item
            item: Item to buffer

        Returns:
            Items ordered by position once every position holds one, else None

        Raises:
            DuplicateKey: If the key already arrived at this position
        """
        entry = self._pending.setdefault(key, {})
        if position in entry:
            msg = f"key arrived twice at position {position}: {key}"
            raise DuplicateKey(msg)
        entry[position] = item
        if len(entry) == self.width:
            del self._pending[key]
            return [entry[i] for i in range(self.width)]
        else:
            return None

    def pending(self) -> dict[Hashable, list[int]]:
        """Return the missing positions of every incomplete key."""
        return {
            k: [i for i in range(self.width) if i not in v]
            for k, v in self._pending.items()
        }


class OperatorNode(TaskNode):
    """Task node evaluated inline by the scheduler."""

    resources = ResourceProfile(n_cpu=1, memory_mb=1)

    @property
    def is_operator(self) -> bool:
        return True

    def react(self, index: int, item: Any) -> list[tuple[int, Any]]:
        """Consume one input item and return ``(output_index, item)`` pairs."""
        raise NotImplementedError

    def finish(self) -> list[tuple[int, Any]]:
        """Return the final emissions once every input channel is exhausted."""
        return []

    def starving(self, ignore_keys: set[Hashable] | None = None) -> list[JoinStarvation]:
        """Report keys that never completed."""
        return []

    def signature(self) -> dict[str, Any]:
        return {**super().signature(), "operator": True}


class Join(OperatorNode):
    """Key-based join of several stream channels.

    The merged tuple is ``(key, *fields_a, *fields_b, ...)`` where each field
    group is the corresponding input tuple without its key.

    Args:
        name: Node and output channel name
        inputs: Keyed stream channels to join
    """

    def __init__(self, name: str, inputs: Sequence[StreamChannel]) -> None:
        if len(inputs) < 2:
            msg = f"join requires at least two channels: {name}"
            raise ChannelProtocolError(msg)
        for c in inputs:
            if not isinstance(c, StreamChannel) or c.key_index is None:
                msg = f"join input must be a keyed stream channel: {name} <- {c!r}"
                raise ChannelProtocolError(msg)
        arity = (
            1 + sum(c.arity - 1 for c in inputs)
            if all(c.arity is not None for c in inputs)
            else None
        )
        super().__init__(
            name=name, inputs=inputs, outputs=[StreamChannel(name, arity=arity)]
        )
        self._buffer = KeyedBuffer(width=len(inputs))

    def react(self, index: int, item: Any) -> list[tuple[int, Any]]:
        channel: StreamChannel = self.inputs[index]
        key = channel.key_of(item)
        complete = self._buffer.offer(index, key, item)
        if complete is None:
            return []
        merged: list[Any] = [key]
        for c, t in zip(self.inputs, complete, strict=True):
            merged.extend(v for i, v in enumerate(t) if i != c.key_index)
        logging.getLogger(__name__).debug("join %s:\t%s", self.name, key)
        return [(0, tuple(merged))]

    def starving(self, ignore_keys: set[Hashable] | None = None) -> list[JoinStarvation]:
        return [
            JoinStarvation(
                node_name=self.name,
                key=str(k),
                missing=[self.inputs[i].name for i in v],
            )
            for k, v in self._buffer.pending().items()
            if k not in (ignore_keys or set())
        ]


class CollectAll(OperatorNode):
    """Buffer a whole stream and emit it as one item once the producer closes.

    The output is a value channel holding the tuple of every input item in
    arrival order.
    """

    def __init__(self, name: str, source: StreamChannel) -> None:
        super().__init__(name=name, inputs=[source], outputs=[ValueChannel(name)])
        self._items: list[Any] = []

    def react(self, index: int, item: Any) -> list[tuple[int, Any]]:
        self._items.append(item)
        return []

    def finish(self) -> list[tuple[int, Any]]:
        return [(0, tuple(self._items))]


class Split(OperatorNode):
    """Duplicate a stream into independent copies for separate consumers."""

    def __init__(self, name: str, source: StreamChannel, n: int) -> None:
        super().__init__(
            name=name,
            inputs=[source],
            outputs=[
                StreamChannel(
                    f"{name}.{i}", arity=source.arity, key_index=source.key_index
                )
                for i in range(n)
            ],
        )

    def react(self, index: int, item: Any) -> list[tuple[int, Any]]:
        return [(i, item) for i in range(len(self.outputs))]


def join(*channels: StreamChannel, name: str | None = None) -> Join:
    """Declare a key-based join over stream channels.

    Args:
        *channels: Keyed stream channels to join
        name: Node name (defaults to the joined channel names)

    Returns:
        Join node whose single output carries the merged tuples
    """
    return Join(
        name=(name or "join({})".format(",".join(c.name for c in channels))),
        inputs=channels,
    )


def collect_all(channel: StreamChannel, name: str | None = None) -> CollectAll:
    """Declare a collect sink that gathers every item of a stream."""
    return CollectAll(name=(name or f"collect({channel.name})"), source=channel)


def split(channel: StreamChannel, n: int, name: str | None = None) -> Split:
    """Declare ``n`` duplicated copies of a stream."""
    return Split(name=(name or f"split({channel.name})"), source=channel, n=n)


def broadcast(channel: Channel, n: int) -> list[Subscription]:
    """Return ``n`` independent subscriber handles over the same source.

    Args:
        channel: Source channel
        n: Number of handles

    Returns:
        Subscriptions that each see every item of the channel
    """
    return [channel.subscribe(f"{channel.name}#broadcast{i}") for i in range(n)]

"""Task graph construction from declared channel bindings.

Edges are inferred from channel identity: a node depends on the node that
declares one of its input channels as an output. Initial channels (sample
reads, reference bundles) have no producer.
"""

import logging
import os
from collections.abc import Iterable, Sequence
from pprint import pformat
from types import MappingProxyType

from .channel import Channel
from .errors import ConfigurationError, CycleDetected, DuplicateProducer, UnboundInput
from .node import TaskNode


class TaskGraph:
    """Finalized, read-only adjacency structure of a workflow.

    Attributes:
        nodes: Nodes in declaration order.
        order: Nodes in topological order (declaration order breaks ties).
        initial_channels: Channels fed from outside the graph.
    """

    def __init__(
        self,
        nodes: Sequence[TaskNode],
        initial_channels: Sequence[Channel],
        producers: dict[int, TaskNode],
        upstream: dict[str, tuple[str, ...]],
        downstream: dict[str, tuple[str, ...]],
        order: Sequence[TaskNode],
    ) -> None:
        self.nodes = tuple(nodes)
        self.initial_channels = tuple(initial_channels)
        self.order = tuple(order)
        self._by_name = MappingProxyType({n.name: n for n in nodes})
        self._producers = MappingProxyType(dict(producers))
        self._upstream = MappingProxyType(dict(upstream))
        self._downstream = MappingProxyType(dict(downstream))

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __getitem__(self, name: str) -> TaskNode:
        return self._by_name[name]

    def index(self, node: TaskNode) -> int:
        """Return the declaration index of a node."""
        return self.nodes.index(node)

    def producer(self, channel: Channel) -> TaskNode | None:
        """Return the node producing a channel, or None for an initial channel."""
        return self._producers.get(id(channel))

    def consumers(self, channel: Channel) -> list[TaskNode]:
        return [n for n in self.nodes if any(c is channel for c in n.inputs)]

    def upstream(self, name: str) -> tuple[str, ...]:
        return self._upstream[name]

    def downstream(self, name: str) -> tuple[str, ...]:
        return self._downstream[name]

    def ancestors(self, name: str) -> set[str]:
        found: set[str] = set()
        stack = list(self._upstream[name])
        while stack:
            n = stack.pop()
            if n not in found:
                found.add(n)
                stack.extend(self._upstream[n])
        return found

    def descendants(self, name: str) -> set[str]:
        found: set[str] = set()
        stack = list(self._downstream[name])
        while stack:
            n = stack.pop()
            if n not in found:
                found.add(n)
                stack.extend(self._downstream[n])
        return found

    @property
    def terminal_nodes(self) -> list[TaskNode]:
        return [n for n in self.nodes if not self._downstream[n.name]]


def build_graph(
    nodes: Iterable[TaskNode], initial_channels: Iterable[Channel] = ()
) -> TaskGraph:
    """Resolve node bindings into a task graph.

    Args:
        nodes: Node declarations in declaration order
        initial_channels: Channels populated outside the graph

    Returns:
        Finalized task graph

    Raises:
        ConfigurationError: If node names collide or a node has no inputs
        DuplicateProducer: If a channel is produced twice or is both initial
            and produced
        UnboundInput: If a declared input is never produced
        CycleDetected: If the bindings form a cycle
    """
    logger = logging.getLogger(__name__)
    node_list = list(nodes)
    initial_list = list(initial_channels)
    initial_ids = {id(c) for c in initial_list}
    names = [n.name for n in node_list]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        msg = f"duplicate node names: {', '.join(duplicated)}"
        raise ConfigurationError(msg)

    producers: dict[int, TaskNode] = {}
    for n in node_list:
        for c in n.outputs:
            if id(c) in initial_ids:
                msg = f"initial channel '{c.name}' is also produced by '{n.name}'"
                raise DuplicateProducer(msg)
            elif id(c) in producers:
                msg = (
                    f"channel '{c.name}' is produced by both"
                    f" '{producers[id(c)].name}' and '{n.name}'"
                )
                raise DuplicateProducer(msg)
            producers[id(c)] = n

    upstream: dict[str, list[str]] = {n.name: [] for n in node_list}
    downstream: dict[str, list[str]] = {n.name: [] for n in node_list}
    for n in node_list:
        if not n.inputs:
            msg = f"node has no input channel: {n.name}"
            raise ConfigurationError(msg)
        for c in n.inputs:
            if id(c) in initial_ids:
                continue
            elif id(c) not in producers:
                raise UnboundInput(node_name=n.name, channel_name=c.name)
            p = producers[id(c)].name
            if p not in upstream[n.name]:
                upstream[n.name].append(p)
                downstream[p].append(n.name)

    _check_acyclic(names=names, upstream=upstream)
    order = _toposort(node_list=node_list, upstream=upstream)
    logger.debug(
        "task graph:%s%s",
        os.linesep,
        pformat({n.name: upstream[n.name] for n in order}),
    )
    return TaskGraph(
        nodes=node_list,
        initial_channels=initial_list,
        producers=producers,
        upstream={k: tuple(v) for k, v in upstream.items()},
        downstream={k: tuple(v) for k, v in downstream.items()},
        order=order,
    )


def _check_acyclic(names: Sequence[str], upstream: dict[str, list[str]]) -> None:
    """Depth-first search that fails on the first node revisited on a path.

    Raises:
        CycleDetected: If a cycle is found
    """
    done: set[str] = set()
    for root in names:
        if root in done:
            continue
        path: list[str] = []
        on_path: set[str] = set()
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            name, i = stack.pop()
            if i == 0:
                if name in on_path:
                    raise CycleDetected(path=[*path[path.index(name) :], name])
                elif name in done:
                    continue
                path.append(name)
                on_path.add(name)
            parents = upstream[name]
            if i < len(parents):
                stack.append((name, i + 1))
                stack.append((parents[i], 0))
            else:
                path.pop()
                on_path.discard(name)
                done.add(name)


def _toposort(
    node_list: Sequence[TaskNode], upstream: dict[str, list[str]]
) -> list[TaskNode]:
    done: set[str] = set()
    order: list[TaskNode] = []
    remaining = list(node_list)
    while remaining:
        ready = next(n for n in remaining if all(u in done for u in upstream[n.name]))
        order.append(ready)
        done.add(ready.name)
        remaining.remove(ready)
    return order

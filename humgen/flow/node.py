"""Task node declarations and task instance state.

A TaskNode is the declarative description of one processing stage: its input
and output channel bindings, its resource profile, and an opaque body made of
``output``, ``run`` and ``emit``. A TaskInstance is one materialized execution
of a node for one sample (or a single global execution for reference nodes).
"""

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import luigi

from .channel import Channel, StreamChannel, ValueChannel


@dataclass(frozen=True)
class ResourceProfile:
    """CPU and memory request of a task node.

    Attributes:
        n_cpu: Number of CPU cores reserved while running.
        memory_mb: Memory ceiling in megabytes.
        walltime: Optional wall-time hint passed to backends that support it.
    """

    n_cpu: int = 1
    memory_mb: int = 1024
    walltime: timedelta | None = None

    def __post_init__(self) -> None:
        if self.n_cpu < 1:
            msg = f"n_cpu must be positive: {self.n_cpu}"
            raise ValueError(msg)
        if self.memory_mb < 1:
            msg = f"memory_mb must be positive: {self.memory_mb}"
            raise ValueError(msg)

    def fits_within(self, n_cpu: int, memory_mb: int) -> bool:
        """Return True if this profile fits in the given capacity."""
        return self.n_cpu <= n_cpu and self.memory_mb <= memory_mb

    def to_dict(self) -> dict[str, Any]:
        return {
            "n_cpu": self.n_cpu,
            "memory_mb": self.memory_mb,
            "walltime": (str(self.walltime) if self.walltime else None),
        }


class TaskState(Enum):
    """Lifecycle states of a task instance."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskState.SUCCEEDED, TaskState.FAILED}


_TRANSITIONS = {
    TaskState.PENDING: {TaskState.READY},
    TaskState.READY: {TaskState.RUNNING, TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.RUNNING: {TaskState.SUCCEEDED, TaskState.FAILED},
    TaskState.SUCCEEDED: set(),
    TaskState.FAILED: set(),
}


@dataclass
class TaskContext:
    """Resolved inputs and locations handed to a node body.

    Attributes:
        node_name: Name of the node being executed.
        key: Sample identifier, or None for a global instance.
        inputs: One resolved item per input binding, in declaration order.
        work_dir: Directory where the instance writes its artifacts.
        resources: Resource profile reserved for the instance.
    """

    node_name: str
    key: str | None
    inputs: tuple
    work_dir: Path
    resources: ResourceProfile = field(default_factory=ResourceProfile)

    @property
    def run_id(self) -> str:
        return f"{self.node_name}.{self.key}" if self.key else self.node_name

    def input_paths(self) -> list[Path]:
        """Collect every filesystem path found in the resolved inputs."""
        return sorted(set(_find_paths(self.inputs)), key=str)


def _find_paths(obj: object) -> list[Path]:
    if isinstance(obj, Path):
        return [obj]
    elif isinstance(obj, Mapping):
        return [p for v in obj.values() for p in _find_paths(v)]
    elif isinstance(obj, Sequence) and not isinstance(obj, str):
        return [p for v in obj for p in _find_paths(v)]
    elif hasattr(obj, "paths"):
        return [p for v in obj.paths() for p in _find_paths(v)]
    else:
        return []


class TaskNode:
    """Declarative description of one processing stage.

    Subclasses describe a stage the way a Luigi task does: ``output`` lists the
    declared artifacts, ``run`` returns the shell commands that produce them,
    and ``emit`` builds the items published on each output channel.

    Attributes:
        resources: Default resource profile of the stage.
        publish_category: Output directory category for published artifacts
            (``alignments``, ``analysis``, ``qc`` or ``stats``), or None.
        commands: Executables whose versions are logged before running.
    """

    resources: ResourceProfile = ResourceProfile()
    publish_category: str | None = None
    commands: Sequence[str] = ()

    def __init__(
        self,
        name: str | None = None,
        inputs: Sequence[Channel] = (),
        outputs: Sequence[Channel] = (),
        resources: ResourceProfile | None = None,
        **params: Any,
    ) -> None:
        self.name = name or self.__class__.__name__
        self.inputs = tuple(inputs)
        self.outputs = tuple(outputs)
        self.resources = resources or type(self).resources
        self.params = params

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.name!r})"

    @property
    def is_operator(self) -> bool:
        """Whether the node is evaluated inline by the scheduler."""
        return False

    @property
    def stream_input_indices(self) -> list[int]:
        return [i for i, c in enumerate(self.inputs) if isinstance(c, StreamChannel)]

    @property
    def value_input_indices(self) -> list[int]:
        return [i for i, c in enumerate(self.inputs) if isinstance(c, ValueChannel)]

    @property
    def per_sample(self) -> bool:
        """Whether one instance runs per sample key."""
        return bool(self.stream_input_indices)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        """Return the declared output artifacts of an instance."""
        return []

    def run(self, ctx: TaskContext) -> list[str]:
        """Return the shell commands that produce the declared outputs."""
        msg = f"{self.__class__.__name__} does not define a body"
        raise NotImplementedError(msg)

    def emit(self, ctx: TaskContext) -> list[Any]:
        """Build one item per output channel from the declared artifacts.

        Stream outputs receive ``(key, *paths)`` and value outputs receive the
        tuple of paths.
        """
        paths = tuple(Path(t.path) for t in self.output(ctx))
        return [
            ((ctx.key, *paths) if isinstance(c, StreamChannel) else paths)
            for c in self.outputs
        ]

    def signature(self) -> dict[str, Any]:
        """Identity of the node used in cache fingerprints."""
        return {
            "node": self.name,
            "class": f"{self.__class__.__module__}.{self.__class__.__qualname__}",
            "params": {k: _normalize(v) for k, v in sorted(self.params.items())},
        }

    @classmethod
    def print_log(cls, message: str, new_line: bool = True) -> None:
        """Print log message to both logger and stdout.

        Args:
            message: Message to log and print
            new_line: Prepend newline to output
        """
        logger = logging.getLogger(cls.__name__)
        logger.info(message)
        print((os.linesep if new_line else "") + f">>\t{message}", flush=True)


def _normalize(value: object) -> object:
    if isinstance(value, Path):
        return str(value)
    elif isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in sorted(value.items())}
    elif isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    elif isinstance(value, (str, int, float, bool)) or value is None:
        return value
    else:
        return repr(value)


class TaskInstance:
    """One concrete execution of a task node.

    Attributes:
        node: Declaring task node.
        key: Sample identifier, or None for a global instance.
        seq: Arrival order of the instance within the run.
        state: Current lifecycle state.
        slots: Resolved input item per input binding (None until arrived).
        cached: Whether the instance was satisfied from the resume cache.
        error: Failure raised by the backend, if any.
        outputs: Items emitted on the output channels.
        fingerprint: Cache fingerprint computed before dispatch.
        artifacts: Declared output artifacts, known once the body is rendered
            or the instance is restored from the cache.
    """

    def __init__(self, node: TaskNode, key: str | None, seq: int) -> None:
        self.node = node
        self.key = key
        self.seq = seq
        self.state = TaskState.PENDING
        self.slots: list[Any] = [None] * len(node.inputs)
        self.filled: set[int] = set()
        self.context: TaskContext | None = None
        self.cached = False
        self.error: BaseException | None = None
        self.outputs: list[Any] = []
        self.fingerprint: str | None = None
        self.artifacts: list[Path] = []
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None

    def __repr__(self) -> str:
        return f"TaskInstance({self.id!r}, {self.state.value})"

    @property
    def id(self) -> str:
        return f"{self.node.name}[{self.key}]" if self.key else self.node.name

    @property
    def elapsed(self) -> timedelta | None:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        else:
            return None

    def fill(self, index: int, item: Any) -> None:
        self.slots[index] = item
        self.filled.add(index)

    @property
    def complete(self) -> bool:
        """Whether every input binding has an item."""
        return len(self.filled) == len(self.node.inputs)

    def transition(self, state: TaskState) -> None:
        """Move the instance to a new lifecycle state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if state not in _TRANSITIONS[self.state]:
            msg = f"invalid transition for {self.id}: {self.state.value} -> {state.value}"
            raise ValueError(msg)
        now = datetime.now(UTC)
        if state is TaskState.RUNNING:
            self.started_at = now
        elif state.is_terminal:
            self.started_at = self.started_at or now
            self.finished_at = now
        self.state = state

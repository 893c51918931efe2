"""Resource-aware scheduler for task graphs.

A single coordinating thread polls channel subscriptions, materializes task
instances per sample key, and dispatches ready instances to an execution
backend through a thread pool. Dispatch is gated by the resource ledger, and
each completion is handled back on the coordinating thread. Resume cache
lookups run once per instance on a separate single-thread pool.
"""

import logging
import os
import warnings
from collections import defaultdict
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from .backend import ExecutionBackend
from .cache import TaskCache
from .channel import StreamChannel, Subscription
from .combinator import OperatorNode
from .dag import TaskGraph
from .errors import JoinStarvation, TaskExecutionError
from .ledger import Reservation, ResourceLedger
from .node import TaskContext, TaskInstance, TaskNode, TaskState


class FailurePolicy(Enum):
    """What the scheduler does after a task instance fails."""

    FAIL_FAST = "fail-fast"
    CONTINUE_ON_ERROR = "continue-on-error"


@dataclass(frozen=True)
class TaskEvent:
    """Terminal event of a task instance, delivered to listeners.

    Attributes:
        node_name: Name of the node.
        key: Sample identifier, or None for a global instance.
        state: Terminal state.
        cached: Whether the result came from the resume cache.
        started_at: Start time (UTC).
        finished_at: End time (UTC).
        artifacts: Declared output artifacts of the instance.
        publish_category: Output directory category of the node.
        error: Failure message, if any.
    """

    node_name: str
    key: str | None
    state: TaskState
    cached: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    artifacts: tuple[Path, ...] = ()
    publish_category: str | None = None
    error: str | None = None

    @property
    def elapsed(self) -> timedelta | None:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        else:
            return None


Listener = Callable[[TaskEvent], None]


@dataclass
class RunSummary:
    """Outcome of a scheduler run.

    Attributes:
        instances: Every materialized task instance.
        starved: Join keys that never completed.
        skipped: Nodes never instantiated for a key because an upstream
            instance of that key failed.
        n_executed: Number of backend invocations.
        n_cached: Number of instances satisfied from the cache.
        aborted: Whether dispatching stopped early under fail-fast.
    """

    instances: list[TaskInstance] = field(default_factory=list)
    starved: list[JoinStarvation] = field(default_factory=list)
    skipped: dict[str, list[str]] = field(default_factory=dict)
    n_executed: int = 0
    n_cached: int = 0
    aborted: bool = False

    @property
    def failures(self) -> list[tuple[str | None, str]]:
        """Failed ``(sample, node)`` pairs."""
        return [
            (i.key, i.node.name) for i in self.instances if i.state is TaskState.FAILED
        ]

    @property
    def succeeded(self) -> bool:
        return not (self.aborted or self.failures)

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    @property
    def failed_keys(self) -> set[str | None]:
        return {k for k, _ in self.failures}

    def get(self, node_name: str, key: str | None = None) -> TaskInstance | None:
        for i in self.instances:
            if i.node.name == node_name and i.key == key:
                return i
        return None

    def status_table(self) -> dict[str, dict[str, str]]:
        """Return ``{sample: {node: state}}`` for every per-sample instance."""
        table: dict[str, dict[str, str]] = defaultdict(dict)
        for i in self.instances:
            if i.key is not None:
                table[i.key][i.node.name] = (
                    "cached" if i.cached else i.state.value
                )
        for k, nodes in self.skipped.items():
            for n in nodes:
                table[k].setdefault(n, "skipped")
        return {k: table[k] for k in sorted(table)}


class Scheduler:
    """Dispatch task instances of a graph as their inputs become available.

    Args:
        graph: Finalized task graph
        backend: Execution backend running task bodies
        ledger: Resource ledger bounding concurrent execution
        cache: Optional resume cache
        policy: Failure policy
        work_dir_path: Root of the per-node, per-sample working directories
        listeners: Callables receiving every terminal TaskEvent

    Raises:
        ResourceExceeded: If any node requests more than the ledger capacity
    """

    def __init__(
        self,
        graph: TaskGraph,
        backend: ExecutionBackend,
        ledger: ResourceLedger | None = None,
        cache: TaskCache | None = None,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
        work_dir_path: str | os.PathLike[str] = ".",
        listeners: Iterable[Listener] = (),
    ) -> None:
        self.graph = graph
        self.backend = backend
        self.ledger = ledger if ledger is not None else ResourceLedger()
        self.cache = cache
        self.policy = policy
        self.work_dir = Path(work_dir_path).resolve()
        self.listeners = list(listeners)
        for n in graph.nodes:
            if not n.is_operator:
                self.ledger.validate(n.resources, holder=n.name)
        self._subs: dict[str, list[Subscription]] = {
            n.name: [c.subscribe(f"{n.name}#{i}") for i, c in enumerate(n.inputs)]
            for n in graph.nodes
        }
        self._instances: dict[str, dict[str | None, TaskInstance]] = {
            n.name: {} for n in graph.nodes
        }
        self._values: dict[str, dict[int, Any]] = {n.name: {} for n in graph.nodes}
        self._finished: set[str] = set()
        self._ready: list[TaskInstance] = []
        self._running: dict[Future, tuple[TaskInstance, Reservation]] = {}
        self._probing: dict[Future, TaskInstance] = {}
        self._probed_ids: set[str] = set()
        self._seq = 0
        self._stopping = False
        self._summary = RunSummary()

    def run(self) -> RunSummary:
        """Run the graph to completion.

        Returns:
            Run summary with per-instance states

        Raises:
            ChannelProtocolError: If a node emits items that violate a channel
                contract (the run is aborted)
        """
        logger = logging.getLogger(__name__)
        logger.info(
            "run %d nodes with %d CPU / %d MB",
            len(self.graph),
            self.ledger.n_cpu,
            self.ledger.memory_mb,
        )
        with (
            ThreadPoolExecutor(
                max_workers=self.ledger.n_cpu, thread_name_prefix="humgen"
            ) as executor,
            ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="humgen-cache"
            ) as prober,
        ):
            try:
                while True:
                    self._pump()
                    self._probe(prober)
                    self._dispatch(executor)
                    pending = [*self._running, *self._probing]
                    if not pending:
                        break
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for f in sorted(done, key=self._future_sort_key):
                        if f in self._probing:
                            self._probed(f)
                        else:
                            self._complete(f)
            except BaseException:
                self._cancel_running()
                raise
        self._finalize()
        return self._summary

    def _sort_key(self, instance: TaskInstance) -> tuple[int, int]:
        return self.graph.index(instance.node), instance.seq

    def _future_sort_key(self, future: Future) -> tuple[int, int, int]:
        if future in self._probing:
            return (0, *self._sort_key(self._probing[future]))
        else:
            return (1, *self._sort_key(self._running[future][0]))

    def _pump(self) -> None:
        """Propagate channel items into instances until nothing changes."""
        progressed = True
        while progressed:
            progressed = False
            for node in self.graph.order:
                if node.name in self._finished:
                    continue
                for i, sub in enumerate(self._subs[node.name]):
                    for item in sub.poll():
                        progressed = True
                        if isinstance(node, OperatorNode):
                            self._route(node, node.react(i, item))
                        else:
                            self._accept(node, i, item)
                if not isinstance(node, OperatorNode):
                    self._promote(node)
                if self._check_finished(node):
                    progressed = True

    def _accept(self, node: TaskNode, index: int, item: Any) -> None:
        channel = node.inputs[index]
        if isinstance(channel, StreamChannel):
            key = channel.key_of(item)
            self._instance(node, key).fill(index, item)
        else:
            self._values[node.name][index] = item
            for inst in self._instances[node.name].values():
                if inst.state is TaskState.PENDING:
                    inst.fill(index, item)

    def _instance(self, node: TaskNode, key: str | None) -> TaskInstance:
        instances = self._instances[node.name]
        if key not in instances:
            inst = TaskInstance(node=node, key=key, seq=self._seq)
            self._seq += 1
            for i, v in self._values[node.name].items():
                inst.fill(i, v)
            instances[key] = inst
            self._summary.instances.append(inst)
            logging.getLogger(__name__).debug("pending:\t%s", inst.id)
        return instances[key]

    def _promote(self, node: TaskNode) -> None:
        if not node.per_sample and len(self._values[node.name]) == len(node.inputs):
            self._instance(node, None)
        for inst in self._instances[node.name].values():
            if inst.state is TaskState.PENDING and inst.complete:
                inst.context = TaskContext(
                    node_name=node.name,
                    key=inst.key,
                    inputs=tuple(inst.slots),
                    work_dir=self.work_dir.joinpath(node.name, inst.key or "global"),
                    resources=node.resources,
                )
                inst.transition(TaskState.READY)
                self._ready.append(inst)
                logging.getLogger(__name__).debug("ready:\t%s", inst.id)

    def _check_finished(self, node: TaskNode) -> bool:
        if not all(s.exhausted for s in self._subs[node.name]):
            return False
        elif isinstance(node, OperatorNode):
            self._route(node, node.finish())
        elif any(
            i.state in {TaskState.READY, TaskState.RUNNING}
            for i in self._instances[node.name].values()
        ):
            return False
        for c in node.outputs:
            c.close()
        self._finished.add(node.name)
        logging.getLogger(__name__).debug("finished:\t%s", node.name)
        return True

    @staticmethod
    def _route(node: OperatorNode, emissions: list[tuple[int, Any]]) -> None:
        for i, item in emissions:
            node.outputs[i].emit(item)

    def _probe(self, prober: ThreadPoolExecutor) -> None:
        """Look up each newly ready instance in the cache, once, off this thread."""
        if self.cache is None or self._stopping:
            return
        for inst in sorted(self._ready, key=self._sort_key):
            if inst.id not in self._probed_ids:
                self._probed_ids.add(inst.id)
                self._probing[prober.submit(self._consult_cache, inst)] = inst

    def _consult_cache(self, inst: TaskInstance) -> tuple[str, dict[str, Any] | None]:
        try:
            fingerprint = self.cache.fingerprint(inst)
        except OSError as e:
            msg = f"{inst.id} inputs could not be fingerprinted: {e}"
            raise TaskExecutionError(msg, node_name=inst.node.name, key=inst.key) from e
        return fingerprint, self.cache.lookup(fingerprint)

    def _probed(self, future: Future) -> None:
        inst = self._probing.pop(future)
        try:
            inst.fingerprint, entry = future.result()
        except TaskExecutionError as e:
            self._ready.remove(inst)
            self._fail(inst, e)
            return
        if entry is not None and not self._stopping:
            self._ready.remove(inst)
            inst.artifacts = [Path(a["path"]) for a in entry["artifacts"]]
            self._succeed(inst, outputs=list(entry["outputs"]), cached=True)

    def _dispatch(self, executor: ThreadPoolExecutor) -> None:
        """Start every ready instance that fits in the ledger."""
        if self._stopping:
            return
        for inst in sorted(self._ready, key=self._sort_key):
            if self.cache is not None and inst.fingerprint is None:
                continue
            reservation = self.ledger.try_reserve(inst.node.resources, holder=inst.id)
            if reservation is None:
                continue
            self._ready.remove(inst)
            if self.cache is not None:
                self.cache.claim(inst.fingerprint)
            inst.transition(TaskState.RUNNING)
            self._summary.n_executed += 1
            logging.getLogger(__name__).info("dispatch:\t%s", inst.id)
            self._running[executor.submit(self.backend.execute, inst)] = (
                inst,
                reservation,
            )

    def _complete(self, future: Future) -> None:
        inst, reservation = self._running.pop(future)
        self.ledger.release(reservation)
        try:
            result = future.result()
            outputs = inst.node.emit(inst.context)
        except TaskExecutionError as e:
            self._fail(inst, e)
            return
        except Exception as e:
            msg = f"{inst.id} could not emit its outputs: {e!r}"
            error = TaskExecutionError(msg, node_name=inst.node.name, key=inst.key)
            error.__cause__ = e
            self._fail(inst, error)
            return
        self._succeed(inst, outputs=outputs, cached=False)
        if self.cache is not None:
            self.cache.record(inst, artifacts=result.artifacts)

    def _succeed(self, inst: TaskInstance, outputs: list[Any], cached: bool) -> None:
        inst.outputs = outputs
        inst.cached = cached
        inst.transition(TaskState.SUCCEEDED)
        if cached:
            self._summary.n_cached += 1
            logging.getLogger(__name__).info("cached:\t%s", inst.id)
        else:
            logging.getLogger(__name__).info(
                "succeeded:\t%s (%s)", inst.id, inst.elapsed
            )
        for c, item in zip(inst.node.outputs, outputs, strict=True):
            c.emit(item)
        self._notify(inst)

    def _fail(self, inst: TaskInstance, error: TaskExecutionError) -> None:
        inst.error = error
        inst.transition(TaskState.FAILED)
        logging.getLogger(__name__).error("failed:\t%s (%s)", inst.id, error)
        self._notify(inst)
        if self.policy is FailurePolicy.FAIL_FAST and not self._stopping:
            self._stopping = True
            self._summary.aborted = True
            self._cancel_running()

    def _cancel_running(self) -> None:
        for inst, _ in self._running.values():
            self.backend.cancel(inst)

    def _notify(self, inst: TaskInstance) -> None:
        event = TaskEvent(
            node_name=inst.node.name,
            key=inst.key,
            state=inst.state,
            cached=inst.cached,
            started_at=inst.started_at,
            finished_at=inst.finished_at,
            artifacts=tuple(inst.artifacts),
            publish_category=inst.node.publish_category,
            error=(str(inst.error) if inst.error else None),
        )
        for listener in self.listeners:
            listener(event)

    def _starving(
        self, node: TaskNode, failed_keys: set[str | None]
    ) -> list[JoinStarvation]:
        starved = []
        for i in self._instances[node.name].values():
            if i.state is not TaskState.PENDING or i.key in failed_keys:
                continue
            missing = [c for j, c in enumerate(node.inputs) if j not in i.filled]
            if None in failed_keys and not any(
                isinstance(c, StreamChannel) for c in missing
            ):
                continue
            starved.append(
                JoinStarvation(
                    node_name=node.name, key=str(i.key), missing=[c.name for c in missing]
                )
            )
        return starved

    def _finalize(self) -> None:
        logger = logging.getLogger(__name__)
        summary = self._summary
        failed_keys = summary.failed_keys
        for key, node_name in summary.failures:
            if key is None:
                continue
            for d in sorted(self.graph.descendants(node_name)):
                if not self.graph[d].is_operator and key not in self._instances[d]:
                    summary.skipped.setdefault(key, [])
                    if d not in summary.skipped[key]:
                        summary.skipped[key].append(d)
        if not summary.aborted:
            for node in self.graph.nodes:
                if isinstance(node, OperatorNode):
                    summary.starved.extend(node.starving(ignore_keys=failed_keys))
                else:
                    summary.starved.extend(self._starving(node, failed_keys))
        for w in summary.starved:
            logger.warning("join starvation:\t%s", w)
            warnings.warn(w, stacklevel=2)
        for inst in summary.instances:
            inst.slots = []
        logger.info(
            "executed: %d, cached: %d, failed: %d",
            summary.n_executed,
            summary.n_cached,
            len(summary.failures),
        )

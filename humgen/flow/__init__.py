"""Task orchestration engine for the humgen pipeline.

This package contains the channel model, the DAG builder, the join and fan-out
combinators, the resource-aware scheduler, the execution backends, and the
resume cache used to run any set of declared stages.
"""

from .backend import ContainerBackend, ExecutionBackend, ShellBackend, SlurmBackend
from .cache import TaskCache
from .channel import StreamChannel, ValueChannel
from .combinator import broadcast, collect_all, join, split
from .dag import TaskGraph, build_graph
from .ledger import ResourceLedger
from .node import ResourceProfile, TaskContext, TaskInstance, TaskNode, TaskState
from .scheduler import FailurePolicy, RunSummary, Scheduler, TaskEvent

__all__ = [
    "ContainerBackend",
    "ExecutionBackend",
    "FailurePolicy",
    "ResourceLedger",
    "ResourceProfile",
    "RunSummary",
    "Scheduler",
    "ShellBackend",
    "SlurmBackend",
    "StreamChannel",
    "TaskCache",
    "TaskContext",
    "TaskEvent",
    "TaskGraph",
    "TaskInstance",
    "TaskNode",
    "TaskState",
    "ValueChannel",
    "broadcast",
    "build_graph",
    "collect_all",
    "join",
    "split",
]

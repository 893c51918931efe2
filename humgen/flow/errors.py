"""Exception hierarchy for the humgen orchestration engine.

Configuration and channel protocol errors abort a run before or during wiring.
Task execution errors are raised per task instance and handled by the
scheduler according to the failure policy.
"""


class HumgenError(Exception):
    """Base class for all humgen errors."""


class ConfigurationError(HumgenError):
    """Fatal error detected before any task instance is dispatched."""


class UnboundInput(ConfigurationError):
    """A declared input channel is neither initial nor produced by any node."""

    def __init__(self, node_name: str, channel_name: str) -> None:
        super().__init__(
            f"input channel '{channel_name}' of node '{node_name}' is never produced"
        )
        self.node_name = node_name
        self.channel_name = channel_name


class CycleDetected(ConfigurationError):
    """Resolution of the task graph visits a node twice on one path."""

    def __init__(self, path: list[str]) -> None:
        super().__init__("cycle detected: " + " -> ".join(path))
        self.path = path


class DuplicateProducer(ConfigurationError):
    """A channel is declared as an output of more than one node."""


class UnknownGenome(ConfigurationError):
    """The requested genome identifier is missing from the reference config."""

    def __init__(self, genome: str, known: list[str]) -> None:
        super().__init__(
            f"unknown genome: {genome} (available: {', '.join(known) or 'none'})"
        )
        self.genome = genome


class ResourceExceeded(ConfigurationError):
    """A node requests more CPU or memory than the total configured capacity."""


class InputDiscoveryError(ConfigurationError):
    """No paired-end read files match the sample naming convention."""


class ChannelProtocolError(HumgenError):
    """A channel was used in a way that indicates a wiring bug."""


class ChannelClosed(ChannelProtocolError):
    """An item was emitted after the channel had been closed."""


class ArityMismatch(ChannelProtocolError):
    """A tuple does not match the fixed arity of a stream channel."""


class ValueAlreadySet(ChannelProtocolError):
    """An immutable value channel received a second value."""


class DuplicateKey(ChannelProtocolError):
    """A key arrived twice on a channel that is not a collect sink."""


class TaskExecutionError(HumgenError):
    """A task instance failed: non-zero exit status or missing outputs."""

    def __init__(
        self,
        message: str,
        node_name: str | None = None,
        key: str | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.node_name = node_name
        self.key = key
        self.exit_code = exit_code


class MissingOutput(TaskExecutionError):
    """A declared output artifact is absent or empty after execution."""


class TaskCancelled(TaskExecutionError):
    """A task instance was cancelled through the backend cancellation hook."""


class JoinStarvation(UserWarning):
    """A key never completed across every channel of a join before shutdown."""

    def __init__(self, node_name: str, key: str, missing: list[str]) -> None:
        super().__init__(
            f"{node_name}: key '{key}' never arrived on {', '.join(missing)}"
        )
        self.node_name = node_name
        self.key = key
        self.missing = missing

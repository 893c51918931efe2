"""Execution backends that run one task instance at a time.

The backend boundary is the extension seam of the engine: the scheduler only
calls ``execute`` and ``cancel``. Every backend verifies the declared output
artifacts after the body completes, so a tool that exits with status 0 but
leaves an empty file still fails with MissingOutput.
"""

import logging
import os
import re
import shlex
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from shoper.shelloperator import ShellOperator

from .errors import MissingOutput, TaskCancelled, TaskExecutionError
from .node import TaskInstance


@dataclass
class ExecutionResult:
    """Outcome of a successful task instance execution."""

    exit_code: int = 0
    artifacts: list[Path] = field(default_factory=list)


class ExecutionBackend(ABC):
    """Abstract base class for task execution backends.

    Subclasses implement ``run_commands``. The public ``execute`` method
    renders the node body, runs it, and verifies the declared outputs.
    """

    def __init__(self) -> None:
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def execute(self, instance: TaskInstance) -> ExecutionResult:
        """Run one task instance and verify its declared outputs.

        Args:
            instance: Ready task instance with a resolved context

        Returns:
            Exit status and produced artifacts

        Raises:
            TaskCancelled: If the instance was cancelled before or between commands
            TaskExecutionError: If the body cannot be rendered or exits with a
                non-zero status
            MissingOutput: If a declared artifact is absent or empty
        """
        ctx = instance.context
        node = instance.node
        self._check_cancelled(instance)
        try:
            artifacts = [Path(t.path) for t in node.output(ctx)]
            commands = node.run(ctx)
        except Exception as e:
            msg = f"{instance.id} could not render its body: {e!r}"
            raise TaskExecutionError(msg, node_name=node.name, key=instance.key) from e
        instance.artifacts = artifacts
        commands = [commands] if isinstance(commands, str) else list(commands)
        try:
            ctx.work_dir.mkdir(parents=True, exist_ok=True)
            self.remove_previous_outputs(artifacts)
            exit_code = self.run_commands(instance, commands=commands, artifacts=artifacts)
        except OSError as e:
            msg = f"{instance.id} could not be executed: {e}"
            raise TaskExecutionError(
                msg, node_name=node.name, key=instance.key
            ) from e
        self.verify_outputs(instance, artifacts=artifacts)
        return ExecutionResult(exit_code=exit_code, artifacts=artifacts)

    @abstractmethod
    def run_commands(
        self, instance: TaskInstance, commands: Sequence[str], artifacts: Sequence[Path]
    ) -> int:
        """Run the rendered commands of an instance and return the exit status."""
        raise NotImplementedError

    def cancel(self, instance: TaskInstance) -> None:
        """Request cancellation of a running instance.

        The base implementation is cooperative: commands not yet started are
        skipped. Subclasses may additionally stop the running process.
        """
        with self._lock:
            self._cancelled.add(instance.id)
        logging.getLogger(__name__).info("cancel requested:\t%s", instance.id)

    def _check_cancelled(self, instance: TaskInstance) -> None:
        with self._lock:
            cancelled = instance.id in self._cancelled
        if cancelled:
            msg = f"{instance.id} was cancelled"
            raise TaskCancelled(msg, node_name=instance.node.name, key=instance.key)

    @staticmethod
    def remove_previous_outputs(artifacts: Iterable[Path]) -> None:
        for p in artifacts:
            if p.is_file():
                p.unlink()

    @staticmethod
    def verify_outputs(instance: TaskInstance, artifacts: Sequence[Path]) -> None:
        """Check that every declared artifact exists and is non-empty.

        Raises:
            MissingOutput: If any artifact is absent or empty
        """
        missing = [
            str(p)
            for p in artifacts
            if not p.exists() or (p.is_file() and p.stat().st_size == 0)
        ]
        if missing:
            msg = f"{instance.id} did not produce: {', '.join(missing)}"
            raise MissingOutput(msg, node_name=instance.node.name, key=instance.key)


class ShellBackend(ExecutionBackend):
    """Run task bodies as local shell commands through shoper's ShellOperator.

    Args:
        log_dir_path: Directory for per-instance shell log files
        remove_if_failed: Remove declared outputs when a command fails
        quiet: Suppress stdout from commands
        print_command: Print commands before execution
        executable: Shell executable to use
        env: Environment variables to set
    """

    def __init__(
        self,
        log_dir_path: str | os.PathLike[str] | None = None,
        remove_if_failed: bool = True,
        quiet: bool = True,
        print_command: bool = True,
        executable: str = "/bin/bash",
        env: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__()
        self.log_dir_path = log_dir_path
        self.remove_if_failed = remove_if_failed
        self.quiet = quiet
        self.print_command = print_command
        self.executable = executable
        self.env = dict(env or {})

    def setup_shell(self, instance: TaskInstance) -> tuple[ShellOperator, str | None]:
        """Create the shell operator and log file of an instance."""
        log_txt_path = (
            str(
                Path(self.log_dir_path)
                .joinpath(f"{instance.context.run_id}.sh.log.txt")
                .resolve()
            )
            if self.log_dir_path
            else None
        )
        if self.log_dir_path:
            Path(self.log_dir_path).mkdir(parents=True, exist_ok=True)
        sh = ShellOperator(
            log_txt=log_txt_path,
            quiet=self.quiet,
            clear_log_txt=True,
            logger=logging.getLogger(instance.node.__class__.__name__),
            print_command=self.print_command,
            executable=self.executable,
        )
        return sh, log_txt_path

    def build_env(self, instance: TaskInstance) -> dict[str, str]:
        """Return the process environment of an instance."""
        ctx = instance.context
        return {
            **os.environ,
            **self.env,
            "REF_CACHE": str(ctx.work_dir.joinpath(".ref_cache")),
            "JAVA_TOOL_OPTIONS": generate_java_options(
                n_cpu=ctx.resources.n_cpu, memory_mb=ctx.resources.memory_mb
            ),
        }

    def wrap(self, instance: TaskInstance, command: str) -> str:
        """Return the command line actually run for one body command."""
        return command

    def run_commands(
        self, instance: TaskInstance, commands: Sequence[str], artifacts: Sequence[Path]
    ) -> int:
        ctx = instance.context
        sh, log_txt_path = self.setup_shell(instance)
        env = self.build_env(instance)
        logger = logging.getLogger(instance.node.__class__.__name__)
        start_datetime = datetime.now(UTC)
        input_paths = [p for p in ctx.input_paths() if p.exists()]
        if instance.node.commands:
            self._run(
                instance,
                sh,
                args=[
                    self.wrap(instance, c)
                    for c in generate_version_commands(instance.node.commands)
                ],
                cwd=str(ctx.work_dir),
                env=env,
            )
        for i, c in enumerate(commands):
            self._check_cancelled(instance)
            self._run(
                instance,
                sh,
                args=self.wrap(instance, c),
                input_files_or_dirs=[str(p) for p in input_paths],
                output_files_or_dirs=(
                    [str(p) for p in artifacts] if i == len(commands) - 1 else None
                ),
                cwd=str(ctx.work_dir),
                remove_if_failed=self.remove_if_failed,
                env=env,
            )
        message = f"shell elapsed time:\t{datetime.now(UTC) - start_datetime}"
        logger.info(message)
        if log_txt_path:
            with Path(log_txt_path).open("a", encoding="utf-8") as f:
                f.write(f"### {message}{os.linesep}")
        return 0

    @staticmethod
    def _run(instance: TaskInstance, sh: ShellOperator, **kwargs: object) -> None:
        try:
            sh.run(skip_if_exist=False, **kwargs)
        except subprocess.SubprocessError as e:
            exit_code = _parse_exit_code(e)
            msg = f"{instance.id} exited with status {exit_code}"
            raise TaskExecutionError(
                msg, node_name=instance.node.name, key=instance.key, exit_code=exit_code
            ) from e

    def run_quietly(self, args: str) -> None:
        """Run a control command (e.g. a kill request) and log its failure."""
        sh = ShellOperator(
            quiet=True,
            print_command=False,
            logger=logging.getLogger(self.__class__.__name__),
            executable=self.executable,
        )
        try:
            sh.run(args=args, skip_if_exist=False)
        except subprocess.SubprocessError as e:
            logging.getLogger(__name__).warning(
                "control command failed (%s):\t%s", _parse_exit_code(e), args
            )


class ContainerBackend(ShellBackend):
    """Run each body command inside a Docker or Singularity container.

    Args:
        image: Default container image
        engine: ``docker`` or ``singularity``
        node_images: Optional image per node name
        **kwargs: Arguments passed to ShellBackend
    """

    def __init__(
        self,
        image: str,
        engine: str = "docker",
        node_images: Mapping[str, str] | None = None,
        **kwargs: object,
    ) -> None:
        if engine not in {"docker", "singularity"}:
            msg = f"unsupported container engine: {engine}"
            raise ValueError(msg)
        super().__init__(**kwargs)
        self.image = image
        self.engine = engine
        self.node_images = dict(node_images or {})

    def container_name(self, instance: TaskInstance) -> str:
        return "humgen-" + re.sub(r"[^A-Za-z0-9_.-]", "_", instance.context.run_id)

    def mounts(self, instance: TaskInstance) -> list[str]:
        ctx = instance.context
        dirs = {ctx.work_dir.resolve()}
        for p in ctx.input_paths():
            r = p.resolve()
            dirs.add(r if r.is_dir() else r.parent)
        return sorted(str(d) for d in dirs)

    def wrap(self, instance: TaskInstance, command: str) -> str:
        ctx = instance.context
        image = self.node_images.get(instance.node.name, self.image)
        work_dir = ctx.work_dir.resolve()
        if self.engine == "docker":
            return " ".join([
                "docker run --rm",
                f"--name {self.container_name(instance)}",
                f"--cpus {ctx.resources.n_cpu}",
                f"--memory {ctx.resources.memory_mb}m",
                '--user "$(id -u):$(id -g)"',
                "--env REF_CACHE --env JAVA_TOOL_OPTIONS",
                *[f"--volume {d}:{d}" for d in self.mounts(instance)],
                f"--workdir {work_dir}",
                image,
                f"{self.executable} -c {shlex.quote(command)}",
            ])
        else:
            return " ".join([
                "singularity exec --cleanenv",
                "--env REF_CACHE=$REF_CACHE,JAVA_TOOL_OPTIONS=\"$JAVA_TOOL_OPTIONS\"",
                "--bind " + ",".join(self.mounts(instance)),
                f"--pwd {work_dir}",
                image,
                f"{self.executable} -c {shlex.quote(command)}",
            ])

    def cancel(self, instance: TaskInstance) -> None:
        super().cancel(instance)
        if self.engine == "docker":
            self.run_quietly(f"docker kill {self.container_name(instance)}")


class SlurmBackend(ShellBackend):
    """Submit each body command as a Slurm job and wait for it.

    Args:
        partition: Optional partition (queue) name
        add_sbatch_args: Additional arguments for sbatch
        **kwargs: Arguments passed to ShellBackend
    """

    def __init__(
        self,
        partition: str | None = None,
        add_sbatch_args: Sequence[str] = (),
        **kwargs: object,
    ) -> None:
        super().__init__(**kwargs)
        self.partition = partition
        self.add_sbatch_args = list(add_sbatch_args)

    def job_name(self, instance: TaskInstance) -> str:
        return "humgen." + re.sub(r"[^A-Za-z0-9_.-]", "_", instance.context.run_id)

    def wrap(self, instance: TaskInstance, command: str) -> str:
        ctx = instance.context
        walltime = ctx.resources.walltime
        return " ".join([
            "sbatch --wait --parsable --export=ALL",
            f"--job-name {self.job_name(instance)}",
            f"--cpus-per-task {ctx.resources.n_cpu}",
            f"--mem {ctx.resources.memory_mb}M",
            *([f"--time {_format_walltime(walltime)}"] if walltime else []),
            *([f"--partition {self.partition}"] if self.partition else []),
            *self.add_sbatch_args,
            f"--chdir {ctx.work_dir.resolve()}",
            f"--output {ctx.work_dir.resolve().joinpath('slurm-%j.out')}",
            f"--wrap {shlex.quote(command)}",
        ])

    def cancel(self, instance: TaskInstance) -> None:
        super().cancel(instance)
        self.run_quietly(f"scancel --name {self.job_name(instance)}")


def _parse_exit_code(error: subprocess.SubprocessError) -> int | None:
    """Return the exit status carried by a failed shell command, if any.

    ShellOperator raises a plain SubprocessError listing the attributes of the
    failed processes, so the status is read from that listing.
    """
    returncode = getattr(error, "returncode", None)
    if returncode is not None:
        return returncode
    found = re.search(r"'returncode': (-?\d+)", str(error))
    return int(found.group(1)) if found else None


def _format_walltime(walltime: object) -> str:
    seconds = int(walltime.total_seconds())
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def generate_java_options(n_cpu: int = 1, memory_mb: int = 4096) -> str:
    """Generate Java options for GATK and Picard tools.

    Args:
        n_cpu: Number of CPU threads for parallel GC
        memory_mb: Maximum memory in megabytes

    Returns:
        String of Java options
    """
    return " ".join([
        "-Dsamjdk.compression_level=5",
        "-Dsamjdk.use_async_io_read_samtools=true",
        "-Dsamjdk.use_async_io_write_samtools=true",
        "-Dsamjdk.use_async_io_write_tribble=false",
        f"-Xmx{int(memory_mb)}m",
        "-XX:+UseParallelGC",
        f"-XX:ParallelGCThreads={int(n_cpu)}",
    ])


def generate_version_commands(commands: str | Sequence[str]) -> Iterable[str]:
    """Generate version checking commands for bioinformatics tools.

    Args:
        commands: Command name(s) to generate version commands for

    Yields:
        Version checking command strings
    """
    for c in [commands] if isinstance(commands, str) else commands:
        n = Path(c).name
        if n == "java" or n.endswith(".jar"):
            yield f"{c} -version"
        elif n in {"bwa", "bwa-mem2"}:
            yield f'{c} 2>&1 | grep -e "Program:" -e "Version:" || true'
        elif n == "vep":
            yield f'{c} --help | grep -e "ensembl-vep" || true'
        else:
            yield f"{c} --version"

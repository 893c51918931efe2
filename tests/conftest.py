"""Common pytest configuration."""

import gzip
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import luigi
import pytest
import yaml

from humgen.flow.backend import ExecutionBackend
from humgen.flow.errors import TaskExecutionError
from humgen.flow.node import ResourceProfile, TaskContext, TaskInstance, TaskNode


class FakeBackend(ExecutionBackend):
    """In-process backend that writes every declared output artifact.

    Args:
        label: Text written into artifacts; a different label changes sizes
        fail: ``(node_name, key)`` pairs that exit with status 1
        missing: ``(node_name, key)`` pairs that exit 0 without writing
        delay: Seconds to sleep inside each instance
        delays: Seconds to sleep per ``(node_name, key)`` pair
    """

    def __init__(
        self,
        label: str = "run",
        fail: Sequence[tuple[str, str | None]] = (),
        missing: Sequence[tuple[str, str | None]] = (),
        delay: float = 0.0,
        delays: Mapping[tuple[str, str | None], float] | None = None,
    ) -> None:
        super().__init__()
        self.label = label
        self.fail = set(fail)
        self.missing = set(missing)
        self.delay = delay
        self.delays = dict(delays or {})
        self.executed: list[tuple[str, str | None]] = []
        self.cancelled: list[str] = []
        self._record_lock = threading.Lock()

    def run_commands(
        self, instance: TaskInstance, commands: Sequence[str], artifacts: Sequence[Path]
    ) -> int:
        pair = (instance.node.name, instance.key)
        with self._record_lock:
            self.executed.append(pair)
        if self.delays.get(pair, self.delay):
            time.sleep(self.delays.get(pair, self.delay))
        self._check_cancelled(instance)
        if pair in self.fail:
            raise TaskExecutionError(
                f"{instance.id} exited with status 1",
                node_name=instance.node.name,
                key=instance.key,
                exit_code=1,
            )
        elif pair not in self.missing:
            for p in artifacts:
                p.parent.mkdir(parents=True, exist_ok=True)
                p.write_text(f"{self.label}:{instance.id}\n", encoding="utf-8")
        return 0

    def cancel(self, instance: TaskInstance) -> None:
        super().cancel(instance)
        with self._record_lock:
            self.cancelled.append(instance.id)


class FileNode(TaskNode):
    """Node writing one text artifact per instance."""

    resources = ResourceProfile(n_cpu=1, memory_mb=256)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [luigi.LocalTarget(ctx.work_dir.joinpath(f"{ctx.key or 'all'}.txt"))]

    def run(self, ctx: TaskContext) -> list[str]:
        return [f"touch {self.output(ctx)[0].path}"]


@pytest.fixture
def fake_backend() -> Callable[..., FakeBackend]:
    return FakeBackend


@pytest.fixture
def file_node() -> type[FileNode]:
    return FileNode


def _write_fq(path: Path, sample_id: str, read: int) -> Path:
    with gzip.open(path, "wt") as f:
        f.write(f"@{sample_id}:1/{read}\nACGTACGT\n+\nFFFFFFFF\n")
    return path


@pytest.fixture
def read_dir(tmp_path: Path) -> Path:
    """Directory with paired-end reads of samples S1 and S2."""
    d = tmp_path.joinpath("fastq")
    d.mkdir()
    for s in ["S1", "S2"]:
        for r in [1, 2]:
            _write_fq(d.joinpath(f"{s}_R{r}.fastq.gz"), sample_id=s, read=r)
    return d


@pytest.fixture
def reference_dir(tmp_path: Path) -> Path:
    d = tmp_path.joinpath("ref")
    d.mkdir()
    d.joinpath("genome.fa").write_text(">chr1\nACGTACGTACGT\n", encoding="utf-8")
    for n in ["dbsnp.vcf.gz", "mills.vcf.gz", "gnomad.vcf.gz"]:
        d.joinpath(n).write_bytes(b"##fileformat=VCFv4.2\n")
    return d


@pytest.fixture
def config_dict(read_dir: Path, reference_dir: Path) -> dict:
    return {
        "genome": "GRCh38",
        "genomes": {
            "GRCh38": {
                "fasta": str(reference_dir.joinpath("genome.fa")),
                "known_sites": [
                    str(reference_dir.joinpath("dbsnp.vcf.gz")),
                    str(reference_dir.joinpath("mills.vcf.gz")),
                ],
                "population_panel": str(reference_dir.joinpath("gnomad.vcf.gz")),
            }
        },
        "input_dir": str(read_dir),
        "samples": {"S1": {"gender": "female", "status": 1}},
        "resources": {
            label: {"cpus": 1, "memory_mb": 512}
            for label in ["process_low", "process_medium", "process_high"]
        },
        "failure_policy": "fail-fast",
        "cache": {"epoch": 1, "mode": "standard"},
    }


@pytest.fixture
def write_config(tmp_path: Path) -> Callable[[dict], Path]:
    def _write(config: dict, name: str = "humgen.yml") -> Path:
        p = tmp_path.joinpath(name)
        with p.open("w", encoding="utf-8") as f:
            yaml.dump(config, f)
        return p

    return _write

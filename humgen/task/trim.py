"""Adapter trimming stage for the humgen pipeline."""

from collections.abc import Iterable
from pathlib import Path
from typing import Any

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage, Sample, strip_fq_suffix


class TrimAdapters(HumgenStage):
    """Trim adapter sequences and low-quality ends with Trim Galore.

    Inputs:
        0: reads stream ``(sample_id, Sample)``.

    Outputs:
        0: stream ``(sample_id, (trimmed_r1[, trimmed_r2]))``.

    Parameters:
        tools: Executable paths (trim_galore, cutadapt).
        add_trim_galore_args: Additional arguments for Trim Galore.
    """

    label = "process_medium"
    tool_names = ("trim_galore", "cutadapt")
    resources = ResourceProfile(n_cpu=4, memory_mb=4096)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        sample: Sample = ctx.inputs[0][1]
        return [
            luigi.LocalTarget(p)
            for p in _generate_trimmed_fqs(
                raw_fq_paths=sample.fq_paths, dest_dir=ctx.work_dir
            )
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        sample: Sample = ctx.inputs[0][1]
        self.print_log(f"Trim adapters:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('trim_galore')}"
                f" --path_to_cutadapt {self.tool('cutadapt')}"
                f" --cores {ctx.resources.n_cpu}"
                f" --output_dir {ctx.work_dir}"
                + (" --paired" if sample.paired else "")
                + self.add_args("trim_galore")
                + "".join(f" {p}" for p in sample.fq_paths)
            )
        ]

    def emit(self, ctx: TaskContext) -> list[Any]:
        """Emit ``(sample_id, (trimmed_r1[, trimmed_r2]))``."""
        return [(ctx.key, tuple(Path(t.path) for t in self.output(ctx)))]


def _generate_trimmed_fqs(
    raw_fq_paths: Iterable[Path], dest_dir: Path
) -> Iterable[Path]:
    paths = list(raw_fq_paths)
    for i, p in enumerate(paths):
        yield dest_dir.joinpath(
            strip_fq_suffix(p)
            + (f"_val_{i + 1}.fq" if len(paths) > 1 else "_trimmed.fq")
            + (".gz" if Path(p).name.endswith(".gz") else "")
        )

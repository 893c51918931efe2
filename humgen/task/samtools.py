"""Alignment statistics stage built on samtools."""

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage


class CollectSamMetricsWithSamtools(HumgenStage):
    """Collect alignment statistics of the recalibrated BAM with samtools.

    Inputs:
        0: recalibrated stream ``(sample_id, bam, bai)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, *metrics_txt)``, one file per command.

    Parameters:
        samtools_commands: samtools subcommands to run.
    """

    label = "process_low"
    tool_names = ("samtools",)
    publish_category = "stats"
    resources = ResourceProfile(n_cpu=1, memory_mb=1024)
    default_commands = ("coverage", "flagstat", "idxstats", "stats")

    def samtools_commands(self) -> list[str]:
        return list(self.params.get("samtools_commands") or self.default_commands)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, f"bqsr.bam.{c}.txt"))
            for c in self.samtools_commands()
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        bam = ctx.inputs[0][1]
        fa = self.reference(ctx).fasta
        samtools = self.tool("samtools")
        self.print_log(f"Collect alignment metrics using samtools:\t{ctx.key}")
        return [
            (
                f"set -e && {samtools} {c}"
                + (f" --reference {fa}" if c in {"coverage", "stats"} else "")
                + (f" -@ {ctx.resources.n_cpu}" if c in {"flagstat", "stats"} else "")
                + f" {bam} > {t.path}"
            )
            for c, t in zip(self.samtools_commands(), self.output(ctx), strict=True)
        ]

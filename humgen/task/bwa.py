"""Read alignment stage for the humgen pipeline."""

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage


class AlignReads(HumgenStage):
    """Align trimmed reads with BWA-MEM and coordinate-sort them.

    Inputs:
        0: trimmed reads stream ``(sample_id, (r1[, r2]))``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, bam, bai)``.

    Parameters:
        tools: Executable paths (bwa or bwa-mem2, samtools).
        use_bwa_mem2: Use BWA-MEM2 instead of BWA.
        add_mem_args: Additional arguments for BWA MEM.
    """

    label = "process_high"
    tool_names = ("bwa", "samtools")
    resources = ResourceProfile(n_cpu=8, memory_mb=16384)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["aligned.bam", "aligned.bam.bai"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        fq_paths = ctx.inputs[0][1]
        fa = self.reference(ctx).fasta
        bam = self.output(ctx)[0].path
        n_cpu = ctx.resources.n_cpu
        memory_mb_per_thread = max(int(ctx.resources.memory_mb / n_cpu / 8), 64)
        self.print_log(f"Align reads:\t{ctx.key}")
        return [
            (
                f"set -eo pipefail && {self.bwa} mem -t {n_cpu}"
                f" -R '{self.read_group(ctx.key)}'"
                + self.add_args("mem", default=["-Y", "-K", "100000000"])
                + f" {fa}"
                + "".join(f" {p}" for p in fq_paths)
                + f" | {self.tool('samtools')} sort -@ {n_cpu}"
                f" -m {memory_mb_per_thread}M -O BAM -T {bam}.sort -o {bam} -"
            ),
            self.samtools_index(bam, n_cpu=n_cpu),
        ]

"""Reference preparation stage for the humgen pipeline.

This module stages the reference FASTA into the working directory and creates
the samtools index, the GATK sequence dictionary and the BWA indices once per
run, before any per-sample alignment.
"""

import dataclasses
from pathlib import Path
from typing import Any

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage, ReferenceBundle


class PrepareReference(HumgenStage):
    """Stage and index the reference genome.

    Inputs:
        0: value channel holding the configured ReferenceBundle.

    Outputs:
        0: value channel holding the ReferenceBundle of the staged FASTA.

    Parameters:
        tools: Executable paths (samtools, gatk, bwa or bwa-mem2).
        use_bwa_mem2: Build BWA-MEM2 indices instead of BWA indices.
    """

    label = "process_medium"
    tool_names = ("samtools", "gatk", "bwa")
    resources = ResourceProfile(n_cpu=2, memory_mb=8192)

    def staged_fasta(self, ctx: TaskContext) -> Path:
        return ctx.work_dir.joinpath(self.reference(ctx).fasta.name)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        staged = dataclasses.replace(self.reference(ctx), fasta=self.staged_fasta(ctx))
        return [
            luigi.LocalTarget(p)
            for p in [
                staged.fasta,
                staged.fai,
                staged.sequence_dict,
                *staged.bwa_indices(use_bwa_mem2=self.params.get("use_bwa_mem2", False)),
            ]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        src = self.reference(ctx).fasta.resolve()
        fa = self.staged_fasta(ctx)
        self.print_log(f"Prepare the reference genome:\t{fa.stem}")
        return [
            f"set -e && ln -sf {src} {fa}",
            f"set -e && {self.tool('samtools')} faidx {fa}",
            (
                f"set -e && {self.tool('gatk')} CreateSequenceDictionary"
                f" --REFERENCE {fa}"
                f" --OUTPUT {fa.parent.joinpath(fa.stem + '.dict')}"
            ),
            f"set -e && {self.bwa} index{self.add_args('index')} {fa}",
        ]

    def emit(self, ctx: TaskContext) -> list[Any]:
        return [dataclasses.replace(self.reference(ctx), fasta=self.staged_fasta(ctx))]

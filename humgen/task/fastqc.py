"""FastQC and cross-sample MultiQC stages."""

from pathlib import Path
from typing import Any

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage, Sample, strip_fq_suffix


class CollectFqMetricsWithFastqc(HumgenStage):
    """Collect raw FASTQ quality metrics with FastQC.

    Inputs:
        0: reads stream ``(sample_id, Sample)``.

    Outputs:
        0: stream ``(sample_id, (html, zip[, html, zip]))``.
    """

    label = "process_low"
    tool_names = ("fastqc",)
    publish_category = "qc"
    resources = ResourceProfile(n_cpu=2, memory_mb=4096)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        sample: Sample = ctx.inputs[0][1]
        return [
            luigi.LocalTarget(ctx.work_dir.joinpath(f"{strip_fq_suffix(p)}_fastqc.{e}"))
            for p in sample.fq_paths
            for e in ["html", "zip"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        sample: Sample = ctx.inputs[0][1]
        self.print_log(f"Collect FASTQ metrics using FastQC:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('fastqc')}"
                f" --threads {ctx.resources.n_cpu}"
                + self.add_args("fastqc", default=["--nogroup"])
                + f" --outdir {ctx.work_dir}"
                + "".join(f" {p}" for p in sample.fq_paths)
            )
        ]

    def emit(self, ctx: TaskContext) -> list[Any]:
        return [(ctx.key, tuple(Path(t.path) for t in self.output(ctx)))]


class SummarizeQcWithMultiqc(HumgenStage):
    """Aggregate per-sample QC and statistics outputs with MultiQC.

    Inputs:
        value channels produced by ``collect_all`` over per-sample QC streams.

    Outputs:
        0: value channel holding ``(report_html,)``.
    """

    label = "process_low"
    tool_names = ("multiqc",)
    publish_category = "qc"
    resources = ResourceProfile(n_cpu=1, memory_mb=2048)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [luigi.LocalTarget(ctx.work_dir.joinpath("multiqc_report.html"))]

    def run(self, ctx: TaskContext) -> list[str]:
        search_dirs = sorted({str(p.parent) for p in ctx.input_paths()})
        self.print_log(f"Summarize QC reports using MultiQC:\t{len(search_dirs)} dirs")
        return [
            (
                f"set -e && {self.tool('multiqc')} --force"
                + self.add_args("multiqc")
                + f" --outdir {ctx.work_dir}"
                + " --filename multiqc_report.html"
                + "".join(f" {d}" for d in search_dirs)
            )
        ]

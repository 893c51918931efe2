"""Variant merging and evaluation stages built on bcftools."""

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage


class MergeVariants(HumgenStage):
    """Merge the filtered germline and somatic call sets of a sample.

    Inputs:
        0: joined stream ``(sample_id, germline_vcf, germline_tbi,
           somatic_vcf, somatic_tbi)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, vcf_gz, tbi)``.
    """

    label = "process_low"
    tool_names = ("bcftools", "tabix")
    publish_category = "analysis"
    resources = ResourceProfile(n_cpu=1, memory_mb=2048)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["merged.vcf.gz", "merged.vcf.gz.tbi"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        _, germline_vcf, _, somatic_vcf, _ = ctx.inputs[0]
        output_vcf = self.output(ctx)[0].path
        self.print_log(f"Merge germline and somatic variants:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('bcftools')} concat"
                " --allow-overlaps --remove-duplicates"
                f" --threads {ctx.resources.n_cpu}"
                + self.add_args("concat")
                + f" --output-type z --output {output_vcf}"
                + f" {germline_vcf} {somatic_vcf}"
            ),
            self.tabix_index(output_vcf),
        ]


class EvaluateVariants(HumgenStage):
    """Collect call set statistics with bcftools stats.

    Inputs:
        0: merged stream ``(sample_id, vcf_gz, tbi)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, stats_txt)``.
    """

    label = "process_low"
    tool_names = ("bcftools",)
    publish_category = "stats"
    resources = ResourceProfile(n_cpu=1, memory_mb=1024)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [luigi.LocalTarget(self.dest_path(ctx, "merged.vcf.stats.txt"))]

    def run(self, ctx: TaskContext) -> list[str]:
        self.print_log(f"Evaluate variants:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('bcftools')} stats"
                f" --fasta-ref {self.reference(ctx).fasta}"
                + self.add_args("stats")
                + f" {ctx.inputs[0][1]} > {self.output(ctx)[0].path}"
            )
        ]

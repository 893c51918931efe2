"""GATK stages for the humgen pipeline.

This module provides duplicate marking, base quality score recalibration
(BQSR), germline calling with HaplotypeCaller, tumor-only somatic calling with
Mutect2, and the filtering stages of both call sets.
"""

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage, join_args


class MarkDuplicates(HumgenStage):
    """Mark duplicate reads in an aligned BAM file.

    Inputs:
        0: aligned stream ``(sample_id, bam, bai)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, bam, bai, metrics)``.
    """

    label = "process_medium"
    tool_names = ("gatk", "samtools")
    resources = ResourceProfile(n_cpu=2, memory_mb=8192)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["markdup.bam", "markdup.bam.bai", "markdup.metrics.txt"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        input_bam = ctx.inputs[0][1]
        output_bam, _, metrics_txt = (t.path for t in self.output(ctx))
        self.print_log(f"Mark duplicates:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} MarkDuplicates"
                f" --INPUT {input_bam}"
                + self.add_args(
                    "markduplicates", default=["--ASSUME_SORT_ORDER", "coordinate"]
                )
                + f" --METRICS_FILE {metrics_txt}"
                + f" --OUTPUT {output_bam}"
            ),
            self.samtools_index(output_bam, n_cpu=ctx.resources.n_cpu),
        ]


class BaseRecalibrator(HumgenStage):
    """Build the base quality recalibration table of a sample.

    Inputs:
        0: duplicate-marked stream ``(sample_id, bam, bai, metrics)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, recal_table)``.
    """

    label = "process_medium"
    tool_names = ("gatk",)
    resources = ResourceProfile(n_cpu=2, memory_mb=8192)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [luigi.LocalTarget(self.dest_path(ctx, "recal.table"))]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        self.print_log(f"Build the BQSR model:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} BaseRecalibrator"
                f" --input {ctx.inputs[0][1]}"
                f" --reference {ref.fasta}"
                + join_args("--known-sites", ref.known_sites)
                + self.add_args(
                    "baserecalibrator", default=["--use-original-qualities", "true"]
                )
                + f" --output {self.output(ctx)[0].path}"
            )
        ]


class ApplyBqsr(HumgenStage):
    """Apply the recalibration model to produce the analysis-ready BAM.

    Inputs:
        0: duplicate-marked stream ``(sample_id, bam, bai, metrics)``.
        1: recalibration table stream ``(sample_id, recal_table)``.
        2: reference value channel.

    Outputs:
        0: stream ``(sample_id, bam, bai)``.
    """

    label = "process_medium"
    tool_names = ("gatk", "samtools")
    publish_category = "alignments"
    resources = ResourceProfile(n_cpu=2, memory_mb=8192)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["bqsr.bam", "bqsr.bam.bai"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        output_bam = self.output(ctx)[0].path
        self.print_log(f"Apply base quality score recalibration:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} ApplyBQSR"
                f" --input {ctx.inputs[0][1]}"
                f" --reference {ref.fasta}"
                f" --bqsr-recal-file {ctx.inputs[1][1]}"
                + self.add_args(
                    "applybqsr",
                    default=[
                        "--static-quantized-quals",
                        "10",
                        "--static-quantized-quals",
                        "20",
                        "--static-quantized-quals",
                        "30",
                        "--use-original-qualities",
                        "true",
                        "--add-output-sam-program-record",
                        "true",
                        "--create-output-bam-index",
                        "false",
                    ],
                )
                + f" --output {output_bam}"
            ),
            self.samtools_index(output_bam, n_cpu=ctx.resources.n_cpu),
        ]


class CallGermlineVariants(HumgenStage):
    """Call germline SNVs and indels with HaplotypeCaller.

    Inputs:
        0: recalibrated stream ``(sample_id, bam, bai)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, vcf_gz, tbi)``.
    """

    label = "process_high"
    tool_names = ("gatk",)
    resources = ResourceProfile(n_cpu=4, memory_mb=16384)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["haplotypecaller.vcf.gz", "haplotypecaller.vcf.gz.tbi"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        self.print_log(f"Call germline variants using HaplotypeCaller:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} HaplotypeCaller"
                f" --input {ctx.inputs[0][1]}"
                f" --reference {ref.fasta}"
                + (f" --dbsnp {ref.dbsnp}" if ref.dbsnp else "")
                + f" --native-pair-hmm-threads {ctx.resources.n_cpu}"
                + self.add_args("haplotypecaller")
                + f" --output {self.output(ctx)[0].path}"
            )
        ]


class CallSomaticVariants(HumgenStage):
    """Call somatic SNVs and indels with Mutect2 in tumor-only mode.

    Inputs:
        0: recalibrated stream ``(sample_id, bam, bai)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, vcf_gz, tbi, stats)``.
    """

    label = "process_high"
    tool_names = ("gatk",)
    resources = ResourceProfile(n_cpu=4, memory_mb=16384)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["mutect2.vcf.gz", "mutect2.vcf.gz.tbi", "mutect2.vcf.gz.stats"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        self.print_log(f"Call somatic variants using Mutect2:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} Mutect2"
                f" --input {ctx.inputs[0][1]}"
                f" --reference {ref.fasta}"
                + (
                    f" --germline-resource {ref.population_panel}"
                    if ref.population_panel
                    else ""
                )
                + (
                    f" --panel-of-normals {ref.panel_of_normals}"
                    if ref.panel_of_normals
                    else ""
                )
                + f" --native-pair-hmm-threads {ctx.resources.n_cpu}"
                + self.add_args("mutect2")
                + f" --output {self.output(ctx)[0].path}"
            )
        ]


class FilterGermlineVariants(HumgenStage):
    """Apply hard filters to germline calls with VariantFiltration.

    Inputs:
        0: raw germline stream ``(sample_id, vcf_gz, tbi)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, vcf_gz, tbi)``.
    """

    label = "process_low"
    tool_names = ("gatk",)
    publish_category = "analysis"
    resources = ResourceProfile(n_cpu=1, memory_mb=4096)
    hard_filters = {
        "QD2": "QD < 2.0",
        "FS60": "FS > 60.0",
        "MQ40": "MQ < 40.0",
        "SOR3": "SOR > 3.0",
        "QUAL30": "QUAL < 30.0",
    }

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["germline.vcf.gz", "germline.vcf.gz.tbi"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        filters = self.params.get("hard_filters") or self.hard_filters
        self.print_log(f"Filter germline variants:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} VariantFiltration"
                f" --variant {ctx.inputs[0][1]}"
                f" --reference {ref.fasta}"
                + "".join(
                    f' --filter-name {k} --filter-expression "{v}"'
                    for k, v in filters.items()
                )
                + self.add_args("variantfiltration")
                + f" --output {self.output(ctx)[0].path}"
            )
        ]


class FilterSomaticVariants(HumgenStage):
    """Filter Mutect2 calls with FilterMutectCalls.

    Inputs:
        0: raw somatic stream ``(sample_id, vcf_gz, tbi, stats)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, vcf_gz, tbi)``.
    """

    label = "process_low"
    tool_names = ("gatk",)
    publish_category = "analysis"
    resources = ResourceProfile(n_cpu=1, memory_mb=4096)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["somatic.vcf.gz", "somatic.vcf.gz.tbi"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        _, vcf, _, stats = ctx.inputs[0]
        self.print_log(f"Filter somatic variants:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('gatk')} FilterMutectCalls"
                f" --variant {vcf}"
                f" --stats {stats}"
                f" --reference {self.reference(ctx).fasta}"
                + self.add_args("filtermutectcalls")
                + f" --output {self.output(ctx)[0].path}"
            )
        ]

"""Variant annotation stage built on the Ensembl Variant Effect Predictor."""

import luigi

from ..flow.node import ResourceProfile, TaskContext
from .core import HumgenStage


class AnnotateVariants(HumgenStage):
    """Annotate the merged call set of a sample with VEP.

    Uses the offline cache of the reference bundle when one is configured and
    the Ensembl database otherwise.

    Inputs:
        0: merged stream ``(sample_id, vcf_gz, tbi)``.
        1: reference value channel.

    Outputs:
        0: stream ``(sample_id, annotated_vcf_gz, summary_html)``.
    """

    label = "process_medium"
    tool_names = ("vep",)
    publish_category = "analysis"
    resources = ResourceProfile(n_cpu=4, memory_mb=8192)

    def output(self, ctx: TaskContext) -> list[luigi.LocalTarget]:
        return [
            luigi.LocalTarget(self.dest_path(ctx, s))
            for s in ["annotated.vcf.gz", "annotated.vep.html"]
        ]

    def run(self, ctx: TaskContext) -> list[str]:
        ref = self.reference(ctx)
        output_vcf, summary_html = (t.path for t in self.output(ctx))
        self.print_log(f"Annotate variants using VEP:\t{ctx.key}")
        return [
            (
                f"set -e && {self.tool('vep')}"
                f" --input_file {ctx.inputs[0][1]}"
                f" --output_file {output_vcf}"
                f" --stats_file {summary_html}"
                f" --fasta {ref.fasta}"
                f" --fork {ctx.resources.n_cpu}"
                " --vcf --compress_output bgzip --force_overwrite"
                + (
                    f" --offline --cache --dir_cache {ref.vep_cache}"
                    if ref.vep_cache
                    else " --database"
                )
                + self.add_args("vep", default=["--everything"])
            )
        ]

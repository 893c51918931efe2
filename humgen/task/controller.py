"""Workflow wiring for the humgen pipeline.

This module declares every stage of the germline/somatic workflow and binds
their input and output channels, from raw reads and the configured reference
to annotated variant calls and the cross-sample QC summary.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..flow.channel import StreamChannel, ValueChannel
from ..flow.combinator import collect_all, join, split
from ..flow.dag import TaskGraph, build_graph
from ..flow.node import ResourceProfile, TaskNode
from .bcftools import EvaluateVariants, MergeVariants
from .bwa import AlignReads
from .core import HumgenStage, ReferenceBundle, Sample
from .fastqc import CollectFqMetricsWithFastqc, SummarizeQcWithMultiqc
from .gatk import (
    ApplyBqsr,
    BaseRecalibrator,
    CallGermlineVariants,
    CallSomaticVariants,
    FilterGermlineVariants,
    FilterSomaticVariants,
    MarkDuplicates,
)
from .resource import PrepareReference
from .samtools import CollectSamMetricsWithSamtools
from .trim import TrimAdapters
from .vep import AnnotateVariants


@dataclass
class HumgenWorkflow:
    """Declared nodes of the workflow and its initial channels.

    Attributes:
        nodes: Node declarations in declaration order.
        reads: Initial stream channel of ``(sample_id, Sample)`` tuples.
        genome: Initial value channel of the configured ReferenceBundle.
    """

    nodes: list[TaskNode] = field(default_factory=list)
    reads: StreamChannel = field(default_factory=lambda: StreamChannel("reads", arity=2))
    genome: ValueChannel = field(default_factory=lambda: ValueChannel("genome"))

    def feed(self, samples: list[Sample], reference: ReferenceBundle) -> None:
        """Populate and close the initial channels."""
        self.genome.emit(reference)
        for s in samples:
            self.reads.emit((s.sample_id, s))
        self.reads.close()

    def graph(self) -> TaskGraph:
        return build_graph(nodes=self.nodes, initial_channels=[self.reads, self.genome])


def build_humgen_nodes(
    resources: Mapping[str, ResourceProfile] | None = None,
    tools: Mapping[str, str] | None = None,
    use_bwa_mem2: bool = False,
    stage_args: Mapping[str, Mapping[str, Any]] | None = None,
) -> HumgenWorkflow:
    """Declare the humgen workflow.

    Args:
        resources: Resource profile per label (``process_low``,
            ``process_medium``, ``process_high``); stages fall back to their
            own defaults for missing labels
        tools: Executable path per tool name
        use_bwa_mem2: Use BWA-MEM2 for indexing and alignment
        stage_args: Additional parameters per stage class name

    Returns:
        Workflow holding the node declarations and the initial channels
    """
    logger = logging.getLogger(__name__)
    wf = HumgenWorkflow()

    def add(
        cls: type[HumgenStage], inputs: list, outputs: list, **params: Any
    ) -> HumgenStage:
        node = cls(
            inputs=inputs,
            outputs=outputs,
            resources=(resources or {}).get(cls.label),
            **{
                "tools": dict(tools or {}),
                **(stage_args or {}).get(cls.__name__, {}),
                **params,
            },
        )
        logger.debug("declare:\t%s (%s)", node.name, node.resources)
        wf.nodes.append(node)
        return node

    def stream(name: str, arity: int | None = None) -> StreamChannel:
        return StreamChannel(name, arity=arity)

    reference = ValueChannel("reference")
    add(PrepareReference, [wf.genome], [reference], use_bwa_mem2=use_bwa_mem2)

    reads_split = split(wf.reads, 2, name="reads.split")
    wf.nodes.append(reads_split)
    reads_qc, reads_trim = reads_split.outputs

    fastqc = stream("fastqc", arity=2)
    add(CollectFqMetricsWithFastqc, [reads_qc], [fastqc])
    trimmed = stream("trimmed", arity=2)
    add(TrimAdapters, [reads_trim], [trimmed])
    aligned = stream("aligned", arity=3)
    add(AlignReads, [trimmed, reference], [aligned], use_bwa_mem2=use_bwa_mem2)
    markdup = stream("markdup", arity=4)
    add(MarkDuplicates, [aligned, reference], [markdup])
    recal = stream("recal", arity=2)
    add(BaseRecalibrator, [markdup, reference], [recal])
    bqsr = stream("bqsr", arity=3)
    add(ApplyBqsr, [markdup, recal, reference], [bqsr])

    germline_raw = stream("germline_raw", arity=3)
    add(CallGermlineVariants, [bqsr, reference], [germline_raw])
    somatic_raw = stream("somatic_raw", arity=4)
    add(CallSomaticVariants, [bqsr, reference], [somatic_raw])
    germline = stream("germline", arity=3)
    add(FilterGermlineVariants, [germline_raw, reference], [germline])
    somatic = stream("somatic", arity=3)
    add(FilterSomaticVariants, [somatic_raw, reference], [somatic])

    calls = join(germline, somatic, name="germline.somatic")
    wf.nodes.append(calls)
    merged = stream("merged", arity=3)
    add(MergeVariants, [calls.outputs[0], reference], [merged])
    variant_stats = stream("variant_stats", arity=2)
    add(EvaluateVariants, [merged, reference], [variant_stats])
    add(AnnotateVariants, [merged, reference], [stream("annotated", arity=3)])
    sam_stats = stream("sam_stats")
    add(CollectSamMetricsWithSamtools, [bqsr, reference], [sam_stats])

    collected = [
        collect_all(c, name=f"{c.name}.all") for c in [fastqc, sam_stats, variant_stats]
    ]
    wf.nodes.extend(collected)
    add(
        SummarizeQcWithMultiqc,
        [c.outputs[0] for c in collected],
        [ValueChannel("multiqc")],
    )
    return wf

"""Core data types and the base stage class for humgen tasks.

This module provides the sample and reference data model that flows through
the task graph, and the HumgenStage base class shared by every stage that
wraps a command-line tool.
"""

import os
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..flow.node import ResourceProfile, TaskContext, TaskNode


@dataclass(frozen=True)
class Sample:
    """Sequenced sample discovered from the input directory.

    Attributes:
        sample_id: Identifier unique within a run; used as the join key.
        fq_paths: One (single-end) or two (paired-end) FASTQ file paths.
        gender: Optional gender annotation.
        status: Case/control flag (1 for case, 0 for control).
    """

    sample_id: str
    fq_paths: tuple[Path, ...]
    gender: str | None = None
    status: int = 0

    def __post_init__(self) -> None:
        if not 1 <= len(self.fq_paths) <= 2:
            msg = f"expected 1 or 2 FASTQ files for {self.sample_id}: {self.fq_paths}"
            raise ValueError(msg)

    @property
    def paired(self) -> bool:
        return len(self.fq_paths) == 2

    def paths(self) -> list[Path]:
        return list(self.fq_paths)


@dataclass(frozen=True)
class ReferenceBundle:
    """Reference genome artifacts shared read-only by every sample.

    Attributes:
        genome: Genome identifier (e.g. GRCh38).
        fasta: Reference FASTA file.
        known_sites: Known variant sites used for BQSR.
        population_panel: Population allele frequency panel for Mutect2.
        dbsnp: Optional dbSNP VCF used for germline annotation.
        vep_cache: Optional VEP cache directory.
        panel_of_normals: Optional panel of normals for Mutect2.
    """

    genome: str
    fasta: Path
    known_sites: tuple[Path, ...] = field(default_factory=tuple)
    population_panel: Path | None = None
    dbsnp: Path | None = None
    vep_cache: Path | None = None
    panel_of_normals: Path | None = None

    @property
    def fai(self) -> Path:
        return Path(f"{self.fasta}.fai")

    @property
    def sequence_dict(self) -> Path:
        return self.fasta.parent.joinpath(f"{self.fasta.stem}.dict")

    def bwa_indices(self, use_bwa_mem2: bool = False) -> list[Path]:
        return [
            Path(f"{self.fasta}.{s}")
            for s in (
                ["0123", "amb", "ann", "pac", "bwt.2bit.64"]
                if use_bwa_mem2
                else ["pac", "bwt", "ann", "amb", "sa"]
            )
        ]

    def paths(self) -> list[Path]:
        return [
            p
            for p in [
                self.fasta,
                *self.known_sites,
                self.population_panel,
                self.dbsnp,
                self.panel_of_normals,
            ]
            if p is not None
        ]


class HumgenStage(TaskNode):
    """Base class for stages that wrap command-line genomics tools.

    Tool executables are passed in the ``tools`` parameter (name to path);
    additional tool arguments are passed as ``add_<tool>_args`` parameters.

    Attributes:
        label: Resource label resolved by the workflow controller.
        tool_names: Executables whose versions are logged before running.
    """

    label: str = "process_low"
    tool_names: Sequence[str] = ()
    resources = ResourceProfile(n_cpu=1, memory_mb=2048)

    def tool(self, name: str) -> str:
        """Return the configured executable path of a tool."""
        return (self.params.get("tools") or {}).get(name, name)

    def add_args(self, name: str, default: Sequence[str] = ()) -> str:
        """Render additional arguments configured for a tool command."""
        args = self.params.get(f"add_{name}_args", default)
        return "".join(f" {a}" for a in args)

    @property
    def bwa(self) -> str:
        """BWA or BWA-MEM2 executable, following the ``use_bwa_mem2`` parameter."""
        return self.tool("bwa-mem2" if self.params.get("use_bwa_mem2") else "bwa")

    @property
    def commands(self) -> list[str]:
        return [self.bwa if t == "bwa" else self.tool(t) for t in self.tool_names]

    def dest_path(self, ctx: TaskContext, suffix: str) -> Path:
        """Return ``<work_dir>/<key>.<suffix>``."""
        return ctx.work_dir.joinpath(f"{ctx.key}.{suffix}")

    @staticmethod
    def reference(ctx: TaskContext) -> ReferenceBundle:
        """Return the reference bundle among the resolved inputs."""
        for i in ctx.inputs:
            if isinstance(i, ReferenceBundle):
                return i
        msg = f"no reference bundle bound to {ctx.node_name}"
        raise LookupError(msg)

    def samtools_index(self, sam_path: str | os.PathLike[str], n_cpu: int = 1) -> str:
        """Return a command that checks and indexes a BAM/CRAM file."""
        samtools = self.tool("samtools")
        return (
            f"set -e && {samtools} quickcheck -v {sam_path}"
            f" && {samtools} index -@ {n_cpu} {sam_path}"
        )

    def tabix_index(self, vcf_path: str | os.PathLike[str]) -> str:
        return f"set -e && {self.tool('tabix')} -f -p vcf {vcf_path}"

    @staticmethod
    def read_group(sample_id: str, platform: str = "ILLUMINA") -> str:
        """Return a SAM read group header line for a sample."""
        return "\\t".join([
            "@RG",
            f"ID:{sample_id}",
            f"SM:{sample_id}",
            f"PL:{platform}",
            f"LB:{sample_id}",
        ])

    def signature(self) -> dict[str, Any]:
        return {**super().signature(), "label": self.label}


def join_args(flag: str, paths: Iterable[str | os.PathLike[str]]) -> str:
    """Repeat a command-line flag for each path."""
    return "".join(f" {flag} {p}" for p in paths)


def strip_fq_suffix(fq_path: str | os.PathLike[str]) -> str:
    """Return the file name of a FASTQ without its compression and FASTQ suffixes."""
    return re.sub(r"\.(fastq|fq)(\.(gz|bz2))?$", "", Path(fq_path).name)


"""Dependency-driven germline and somatic variant workflow for human genomes.

humgen wires per-sample stages (QC, adapter trimming, alignment, duplicate
marking, BQSR, germline and somatic calling, filtering, merging, evaluation,
and annotation) into a task graph of typed data channels, and schedules the
resulting task instances against a bounded CPU/memory pool.
"""

from importlib.metadata import version

__version__ = version(__package__) if __package__ else None

__all__ = ["__version__"]

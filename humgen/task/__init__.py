"""Stage declarations for the humgen pipeline.

This package contains the sample and reference data model, the stages that
wrap QC, trimming, alignment, duplicate marking, BQSR, germline and somatic
calling, filtering, merging, evaluation and annotation tools, and the
controller that wires them into one workflow.
"""

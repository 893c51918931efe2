"""Constants used across humgen CLI modules.

This module contains shared defaults of the command-line interface, including
the resource labels, the cache settings, and the input discovery conventions.
"""

# Default resource profile per stage label
DEFAULT_RESOURCES = {
    "process_low": {"cpus": 1, "memory_mb": 2048},
    "process_medium": {"cpus": 4, "memory_mb": 8192},
    "process_high": {"cpus": 8, "memory_mb": 16384},
}

# Suffixes of discoverable FASTQ files
FQ_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq.bz2", ".fq.bz2", ".fastq", ".fq")

# Executables required by the local backend
REQUIRED_COMMANDS = (
    "bcftools",
    "cutadapt",
    "fastqc",
    "gatk",
    "multiqc",
    "samtools",
    "tabix",
    "trim_galore",
    "vep",
)

BACKENDS = ("local", "docker", "singularity", "slurm")
DEFAULT_CACHE_EPOCH = 1
DEFAULT_CACHE_MODE = "standard"

"""Pipeline orchestration and configuration management for humgen.

This module handles the high-level pipeline execution, including configuration
file parsing, reference resolution, input discovery, resource allocation, and
the coordination of the scheduler for the complete workflow.
"""

import logging
import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from pprint import pformat
from types import MappingProxyType
from typing import Any

from ..flow.backend import ContainerBackend, ExecutionBackend, ShellBackend, SlurmBackend
from ..flow.cache import CACHE_MODES, TaskCache
from ..flow.errors import ConfigurationError, InputDiscoveryError, UnknownGenome
from ..flow.ledger import ResourceLedger
from ..flow.node import ResourceProfile
from ..flow.publish import Publisher
from ..flow.report import RunReport
from ..flow.scheduler import FailurePolicy, RunSummary, Scheduler
from ..task.controller import build_humgen_nodes
from ..task.core import ReferenceBundle, Sample
from .constants import (
    BACKENDS,
    DEFAULT_CACHE_EPOCH,
    DEFAULT_CACHE_MODE,
    DEFAULT_RESOURCES,
    FQ_SUFFIXES,
    REQUIRED_COMMANDS,
)
from .util import configure_logging, fetch_executable, print_log, print_yml, read_yml


@dataclass(frozen=True)
class RunConfig:
    """Validated, immutable configuration of a run.

    Attributes:
        genome: Selected genome identifier.
        genomes: Reference file mapping per genome identifier.
        input_dir: Directory scanned for FASTQ files.
        samples: Optional ``gender``/``status`` annotations per sample.
        resources: Resource profile per stage label.
        failure_policy: Failure policy of the scheduler.
        cache_epoch: Cache epoch token.
        cache_mode: Input hashing mode of the cache.
        backend: ``local``, ``docker``, ``singularity`` or ``slurm``.
        image: Container image for the container backends.
        queue: Partition for the Slurm backend.
        stage_args: Additional parameters per stage class name.
    """

    genome: str
    genomes: Mapping[str, Mapping[str, Any]]
    input_dir: Path
    samples: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    resources: Mapping[str, ResourceProfile] = field(
        default_factory=lambda: MappingProxyType({})
    )
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    cache_epoch: str = str(DEFAULT_CACHE_EPOCH)
    cache_mode: str = DEFAULT_CACHE_MODE
    backend: str = "local"
    image: str | None = None
    queue: str | None = None
    stage_args: Mapping[str, Mapping[str, Any]] = field(
        default_factory=lambda: MappingProxyType({})
    )


def run_pipeline(
    config_yml_path: str | os.PathLike[str],
    dest_dir_path: str | os.PathLike[str] = ".",
    max_n_cpu: int | None = None,
    max_memory_mb: int | None = None,
    resume: bool = False,
    continue_on_error: bool = False,
    skip_cleaning: bool = False,
    print_subprocesses: bool = False,
    use_bwa_mem2: bool = False,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
    backend: ExecutionBackend | None = None,
) -> RunSummary:
    """Run the complete humgen workflow.

    Every configuration check (genome, input discovery, resource profiles,
    graph wiring) runs before the first task instance is dispatched.

    Args:
        config_yml_path: Path to the YAML configuration file
        dest_dir_path: Output directory path
        max_n_cpu: CPU capacity of the ledger (defaults to the CPU count)
        max_memory_mb: Memory capacity of the ledger in MB (defaults to half
            of the total memory)
        resume: Reuse cached results of previous runs
        continue_on_error: Keep running independent samples after a failure
        skip_cleaning: Keep incomplete outputs when a task fails
        print_subprocesses: Print subprocess outputs
        use_bwa_mem2: Use BWA-MEM2 instead of BWA
        console_log_level: Console logging level
        file_log_level: File logging level
        backend: Execution backend overriding the configured one

    Returns:
        Run summary with per-instance states

    Raises:
        ConfigurationError: If the configuration, the inputs or the workflow
            wiring are invalid
    """
    logger = logging.getLogger(__name__)
    logger.info("config_yml_path:\t%s", config_yml_path)
    config = read_run_config(path=config_yml_path)
    reference = resolve_reference(config=config)
    samples = discover_samples(
        input_dir_path=config.input_dir, sample_info=config.samples
    )
    dest_dir = Path(dest_dir_path).resolve()
    log_dir = dest_dir.joinpath("log")
    configure_logging(
        log_dir_path=log_dir,
        console_log_level=console_log_level,
        file_log_level=file_log_level,
    )
    policy = (
        FailurePolicy.CONTINUE_ON_ERROR if continue_on_error else config.failure_policy
    )

    if backend is None:
        tools = (
            _fetch_tools(use_bwa_mem2=use_bwa_mem2)
            if config.backend == "local"
            else {}
        )
        backend = build_backend(
            config=config,
            log_dir_path=log_dir,
            remove_if_failed=(not skip_cleaning),
            quiet=(not print_subprocesses),
        )
    else:
        tools = {}
    logger.debug("tools:%s%s", os.linesep, pformat(tools))

    workflow = build_humgen_nodes(
        resources=config.resources,
        tools=tools,
        use_bwa_mem2=use_bwa_mem2,
        stage_args=config.stage_args,
    )
    graph = workflow.graph()
    ledger = ResourceLedger(n_cpu=max_n_cpu, memory_mb=max_memory_mb)
    publisher = Publisher(dest_dir_path=dest_dir)
    report = RunReport()
    scheduler = Scheduler(
        graph=graph,
        backend=backend,
        ledger=ledger,
        cache=TaskCache(
            cache_dir_path=dest_dir.joinpath("cache"),
            epoch=config.cache_epoch,
            mode=config.cache_mode,
            resume=resume,
        ),
        policy=policy,
        work_dir_path=dest_dir.joinpath("work"),
        listeners=[publisher, report],
    )

    print_log(f"Run the humgen workflow:\t{dest_dir}")
    print_yml([
        {
            "config": [
                {"genome": config.genome},
                {"backend": config.backend},
                {"failure_policy": policy.value},
                {"cache": {"epoch": config.cache_epoch, "mode": config.cache_mode}},
                {"resume": resume},
                {"n_cpu": ledger.n_cpu},
                {"memory_mb": ledger.memory_mb},
            ]
        },
        {
            "input": [
                {"n_sample": len(samples)},
                {"samples": [s.sample_id for s in samples]},
            ]
        },
    ])
    workflow.feed(samples=samples, reference=reference)
    summary = scheduler.run()
    report_txt = report.write(summary, dest_dir.joinpath("humgen.summary.txt"))
    print(os.linesep + report_txt.read_text(encoding="utf-8"))
    print_log(f"Write a run summary:\t{report_txt}")
    return summary


def read_run_config(path: str | os.PathLike[str]) -> RunConfig:
    """Read and validate the YAML configuration file.

    Relative paths in the file are resolved against its directory.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the configuration is invalid or malformed
    """
    config_path = Path(path).resolve()
    if not config_path.is_file():
        msg = f"config file not found: {config_path}"
        raise ConfigurationError(msg)
    config = read_yml(path=config_path)
    base_dir = config_path.parent
    if not isinstance(config, dict):
        msg = f"Invalid config structure: {config}"
        raise ConfigurationError(msg)
    for k in ["genome", "input_dir"]:
        if not isinstance(config.get(k), str):
            msg = f"Expected string for {k}, got {type(config.get(k))}"
            raise ConfigurationError(msg)
    genomes = config.get("genomes")
    if not (isinstance(genomes, dict) and genomes):
        msg = f"Invalid genomes structure: {genomes}"
        raise ConfigurationError(msg)
    for g, d in genomes.items():
        _validate_genome(name=str(g), genome_dict=d)
    samples = config.get("samples") or {}
    if not isinstance(samples, dict):
        msg = f"Invalid samples structure: {samples}"
        raise ConfigurationError(msg)
    for s, d in samples.items():
        if not isinstance(d, dict):
            msg = f"Expected dict for samples.{s}, got {type(d)}"
            raise ConfigurationError(msg)
        if d.get("status", 0) not in {0, 1}:
            msg = f"Expected 0 or 1 for samples.{s}.status: {d['status']}"
            raise ConfigurationError(msg)
    failure_policy = config.get("failure_policy", FailurePolicy.FAIL_FAST.value)
    if failure_policy not in {p.value for p in FailurePolicy}:
        msg = f"Invalid failure_policy: {failure_policy}"
        raise ConfigurationError(msg)
    cache = config.get("cache") or {}
    if not isinstance(cache, dict):
        msg = f"Invalid cache structure: {cache}"
        raise ConfigurationError(msg)
    if cache.get("mode", DEFAULT_CACHE_MODE) not in CACHE_MODES:
        msg = f"Invalid cache.mode: {cache['mode']}"
        raise ConfigurationError(msg)
    backend = config.get("backend") or {}
    if isinstance(backend, str):
        backend = {"type": backend}
    elif not isinstance(backend, dict):
        msg = f"Invalid backend structure: {backend}"
        raise ConfigurationError(msg)
    if backend.get("type", "local") not in BACKENDS:
        msg = f"Invalid backend.type: {backend['type']}"
        raise ConfigurationError(msg)
    if backend.get("type") in {"docker", "singularity"} and not backend.get("image"):
        msg = f"backend.image is required for {backend['type']}"
        raise ConfigurationError(msg)
    stage_args = config.get("stage_args") or {}
    if not (
        isinstance(stage_args, dict)
        and all(isinstance(v, dict) for v in stage_args.values())
    ):
        msg = f"Invalid stage_args structure: {stage_args}"
        raise ConfigurationError(msg)
    return RunConfig(
        genome=config["genome"],
        genomes=MappingProxyType({
            str(g): MappingProxyType(_resolve_genome_paths(d, base_dir=base_dir))
            for g, d in genomes.items()
        }),
        input_dir=base_dir.joinpath(config["input_dir"]).resolve(),
        samples=MappingProxyType({
            str(k): MappingProxyType(dict(v)) for k, v in samples.items()
        }),
        resources=MappingProxyType(
            _parse_resources(config.get("resources") or {})
        ),
        failure_policy=FailurePolicy(failure_policy),
        cache_epoch=str(cache.get("epoch", DEFAULT_CACHE_EPOCH)),
        cache_mode=cache.get("mode", DEFAULT_CACHE_MODE),
        backend=backend.get("type", "local"),
        image=backend.get("image"),
        queue=backend.get("queue"),
        stage_args=MappingProxyType({
            str(k): MappingProxyType(dict(v)) for k, v in stage_args.items()
        }),
    )


def _validate_genome(name: str, genome_dict: object) -> None:
    if not isinstance(genome_dict, dict):
        msg = f"Invalid genomes.{name} structure: {genome_dict}"
        raise ConfigurationError(msg)
    if not isinstance(genome_dict.get("fasta"), str):
        msg = f"Expected string for genomes.{name}.fasta"
        raise ConfigurationError(msg)
    known_sites = genome_dict.get("known_sites")
    if not (isinstance(known_sites, list) and known_sites):
        msg = f"Expected non-empty list for genomes.{name}.known_sites"
        raise ConfigurationError(msg)
    if not _has_unique_elements(known_sites):
        msg = f"Duplicate elements found in genomes.{name}.known_sites"
        raise ConfigurationError(msg)
    for k in ["population_panel", "dbsnp", "vep_cache", "panel_of_normals"]:
        v = genome_dict.get(k)
        if v is not None and not isinstance(v, str):
            msg = f"Expected string for genomes.{name}.{k}, got {type(v)}"
            raise ConfigurationError(msg)


def _resolve_genome_paths(genome_dict: Mapping[str, Any], base_dir: Path) -> dict:
    return {
        k: (
            [str(base_dir.joinpath(s)) for s in v]
            if isinstance(v, list)
            else (str(base_dir.joinpath(v)) if isinstance(v, str) else v)
        )
        for k, v in genome_dict.items()
    }


def _parse_resources(resource_dict: Mapping[str, Any]) -> dict[str, ResourceProfile]:
    """Build the resource profile of every stage label.

    Raises:
        ConfigurationError: If a label is malformed
    """
    if not isinstance(resource_dict, Mapping):
        msg = f"Invalid resources structure: {resource_dict}"
        raise ConfigurationError(msg)
    profiles = {}
    for label, default in DEFAULT_RESOURCES.items():
        d = resource_dict.get(label) or {}
        if not isinstance(d, Mapping):
            msg = f"Invalid resources.{label} structure: {d}"
            raise ConfigurationError(msg)
        d = {**default, **d}
        try:
            profiles[label] = ResourceProfile(
                n_cpu=int(d["cpus"]),
                memory_mb=int(d["memory_mb"]),
                walltime=_parse_walltime(d.get("walltime")),
            )
        except (TypeError, ValueError) as e:
            msg = f"Invalid resources.{label}: {d} ({e})"
            raise ConfigurationError(msg) from e
    unknown = sorted(set(resource_dict) - set(DEFAULT_RESOURCES))
    if unknown:
        msg = f"Unknown resource labels: {', '.join(unknown)}"
        raise ConfigurationError(msg)
    return profiles


def _parse_walltime(value: object) -> timedelta | None:
    if value is None:
        return None
    elif isinstance(value, int):
        return timedelta(seconds=value)
    elif isinstance(value, str) and re.fullmatch(r"\d+:\d{2}:\d{2}", value):
        h, m, s = (int(i) for i in value.split(":"))
        return timedelta(hours=h, minutes=m, seconds=s)
    else:
        msg = f"invalid walltime: {value}"
        raise ValueError(msg)


def _has_unique_elements(elements: Sequence[object]) -> bool:
    """Check if all elements in a sequence are unique."""
    return len(set(elements)) == len(tuple(elements))


def resolve_reference(config: RunConfig) -> ReferenceBundle:
    """Resolve the configured genome into a reference bundle.

    Args:
        config: Validated configuration

    Returns:
        Reference bundle of the selected genome

    Raises:
        UnknownGenome: If the genome identifier is not configured
        ConfigurationError: If a reference file does not exist
    """
    if config.genome not in config.genomes:
        raise UnknownGenome(genome=config.genome, known=sorted(config.genomes))
    d = config.genomes[config.genome]
    bundle = ReferenceBundle(
        genome=config.genome,
        fasta=Path(d["fasta"]),
        known_sites=tuple(Path(p) for p in d["known_sites"]),
        **{
            k: (Path(d[k]) if d.get(k) else None)
            for k in ["population_panel", "dbsnp", "vep_cache", "panel_of_normals"]
        },
    )
    for p in [*bundle.paths(), *([bundle.vep_cache] if bundle.vep_cache else [])]:
        if not p.exists():
            msg = f"reference file not found for {config.genome}: {p}"
            raise ConfigurationError(msg)
    logging.getLogger(__name__).debug("reference:\t%s", bundle)
    return bundle


_FQ_NAME_PATTERN = re.compile(r"^(?P<sample_id>.+?)_R(?P<read>[12])(?:[._].*)?$")


def discover_samples(
    input_dir_path: str | os.PathLike[str],
    sample_info: Mapping[str, Mapping[str, Any]] | None = None,
) -> list[Sample]:
    """Discover samples from FASTQ file names.

    Files named ``<sampleId>_R1*`` and ``<sampleId>_R2*`` with a FASTQ suffix
    are grouped by sample identifier. A sample with only an R1 file is
    single-end.

    Args:
        input_dir_path: Directory containing the FASTQ files
        sample_info: Optional ``gender``/``status`` annotations per sample

    Returns:
        Samples sorted by identifier

    Raises:
        InputDiscoveryError: If the directory is missing, a sample has an
            ambiguous or incomplete set of files, or no sample is found
    """
    logger = logging.getLogger(__name__)
    input_dir = Path(input_dir_path).resolve()
    if not input_dir.is_dir():
        msg = f"input directory not found: {input_dir}"
        raise InputDiscoveryError(msg)
    reads: dict[str, dict[str, list[Path]]] = {}
    for p in sorted(input_dir.iterdir()):
        if not (p.is_file() and p.name.endswith(FQ_SUFFIXES)):
            continue
        m = _FQ_NAME_PATTERN.match(p.name)
        if m is None:
            logger.warning("skip a FASTQ file without a read tag:\t%s", p)
            continue
        reads.setdefault(m["sample_id"], {"1": [], "2": []})[m["read"]].append(p)
    samples = []
    info = sample_info or {}
    for sample_id, d in sorted(reads.items()):
        if len(d["1"]) > 1 or len(d["2"]) > 1:
            msg = f"multiple FASTQ files per read for {sample_id}: {d}"
            raise InputDiscoveryError(msg)
        elif not d["1"]:
            msg = f"R2 without R1 for {sample_id}: {d['2'][0]}"
            raise InputDiscoveryError(msg)
        fq_paths = tuple(d["1"] + d["2"])
        samples.append(
            Sample(
                sample_id=sample_id,
                fq_paths=fq_paths,
                gender=info.get(sample_id, {}).get("gender"),
                status=int(info.get(sample_id, {}).get("status", 0)),
            )
        )
    if not samples:
        msg = f"no FASTQ files matching <sampleId>_R1/_R2 in {input_dir}"
        raise InputDiscoveryError(msg)
    logger.debug("samples:%s%s", os.linesep, pformat(samples))
    return samples


def build_backend(
    config: RunConfig,
    log_dir_path: str | os.PathLike[str],
    remove_if_failed: bool = True,
    quiet: bool = True,
) -> ExecutionBackend:
    """Create the execution backend selected in the configuration."""
    sh_config = {
        "log_dir_path": str(log_dir_path),
        "remove_if_failed": remove_if_failed,
        "quiet": quiet,
        "executable": fetch_executable("bash"),
    }
    logging.getLogger(__name__).debug("sh_config:%s%s", os.linesep, pformat(sh_config))
    if config.backend == "local":
        return ShellBackend(**sh_config)
    elif config.backend == "slurm":
        return SlurmBackend(partition=config.queue, **sh_config)
    else:
        return ContainerBackend(image=config.image, engine=config.backend, **sh_config)


def _fetch_tools(use_bwa_mem2: bool = False) -> dict[str, str]:
    """Locate the executables of the local backend.

    Raises:
        ConfigurationError: If any executable is not found on PATH
    """
    commands = [*REQUIRED_COMMANDS, ("bwa-mem2" if use_bwa_mem2 else "bwa")]
    tools = {c: fetch_executable(c, ignore_errors=True) for c in commands}
    missing = sorted(k for k, v in tools.items() if v is None)
    if missing:
        msg = f"command not found: {', '.join(missing)}"
        raise ConfigurationError(msg)
    return tools

#!/usr/bin/env python
"""
Germline and Somatic Variant Workflow Executor for Human Genome Sequencing

Usage:
    humgen init [--debug|--info] [--yml=<path>]
    humgen run [--debug|--info] [--yml=<path>] [--cpus=<int>]
        [--memory-mb=<int>] [--resume] [--continue-on-error] [--skip-cleaning]
        [--print-subprocesses] [--use-bwa-mem2] [--dest-dir=<path>]
    humgen samples [--debug|--info] [--yml=<path>] [<input_dir>]
    humgen -h|--help
    humgen --version

Commands:
    init                    Create a config YAML template
    run                     Run the workflow from FASTQ files to annotated
                            germline and somatic variant calls
    samples                 Print the samples discovered in an input directory

Options:
    -h, --help              Print help and exit
    --version               Print version and exit
    --debug, --info         Execute a command with debug|info messages
    --yml=<path>            Specify a config YAML path [default: humgen.yml]
    --cpus=<int>            Limit CPU cores used
    --memory-mb=<int>       Limit memory used in MB
    --resume                Reuse cached results of previous runs
    --continue-on-error     Keep running independent samples after a failure
    --skip-cleaning         Skip incomplete file removal when a task fails
    --print-subprocesses    Print STDOUT/STDERR outputs from subprocesses
    --use-bwa-mem2          Use BWA-MEM2 for read alignment
    --dest-dir=<path>       Specify a destination directory path [default: .]

Args:
    <input_dir>             Path to a directory of <sampleId>_R1/_R2 FASTQ
                            files (defaults to input_dir in the config YAML)

Exit status:
    0                       Every task instance succeeded
    1                       One or more task instances failed
    2                       Invalid configuration, inputs or workflow wiring
"""

import logging
import os
import sys

from docopt import docopt

from .. import __version__
from ..flow.errors import HumgenError
from .pipeline import discover_samples, read_run_config, run_pipeline
from .util import print_yml, write_config_yml


def main(argv: list[str] | None = None) -> int:
    args = docopt(__doc__, argv=argv, version=__version__)
    if args["--debug"]:
        log_level = "DEBUG"
    elif args["--info"]:
        log_level = "INFO"
    else:
        log_level = "WARNING"
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        level=log_level,
    )
    logger = logging.getLogger(__name__)
    logger.debug(f"args:{os.linesep}{args}")
    try:
        if args["init"]:
            write_config_yml(path=args["--yml"])
        elif args["run"]:
            summary = run_pipeline(
                config_yml_path=args["--yml"],
                dest_dir_path=args["--dest-dir"],
                max_n_cpu=(int(args["--cpus"]) if args["--cpus"] else None),
                max_memory_mb=(
                    int(args["--memory-mb"]) if args["--memory-mb"] else None
                ),
                resume=args["--resume"],
                continue_on_error=args["--continue-on-error"],
                skip_cleaning=args["--skip-cleaning"],
                print_subprocesses=args["--print-subprocesses"],
                use_bwa_mem2=args["--use-bwa-mem2"],
                console_log_level=log_level,
            )
            return summary.exit_code
        elif args["samples"]:
            if args["<input_dir>"]:
                samples = discover_samples(input_dir_path=args["<input_dir>"])
            else:
                config = read_run_config(path=args["--yml"])
                samples = discover_samples(
                    input_dir_path=config.input_dir, sample_info=config.samples
                )
            print_yml([
                {
                    s.sample_id: {
                        "fq": [str(p) for p in s.fq_paths],
                        "gender": s.gender,
                        "status": s.status,
                    }
                }
                for s in samples
            ])
    except HumgenError as e:
        logger.error("%s: %s", e.__class__.__name__, e)
        print(f"humgen: {e.__class__.__name__}: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())

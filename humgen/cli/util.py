"""Shared helpers of the humgen command-line interface.

The helpers cover the package data shipped with humgen (the example config
and the Jinja2 templates), YAML input and output, executable lookup, and the
per-run logging configuration written under ``<dest_dir>/log``.
"""

import logging
import logging.config
import os
import shutil
from datetime import datetime
from pathlib import Path
from pprint import pformat
from typing import Any

import yaml
from jinja2 import Environment, FileSystemLoader

PACKAGE_DIR = Path(__file__).resolve().parent.parent


def write_config_yml(
    path: str | os.PathLike[str], src_yml: str = "example_humgen.yml"
) -> Path:
    """Copy the example run configuration unless the target already exists.

    Args:
        path: Destination of the configuration file
        src_yml: File name of the example under ``humgen/static``

    Returns:
        Resolved destination path
    """
    dest = Path(path).resolve()
    if dest.is_file():
        print_log(f"The file exists:\t{dest}")
        return dest
    dest.parent.mkdir(parents=True, exist_ok=True)
    print_log(f"Create a config YAML:\t{dest}")
    shutil.copyfile(PACKAGE_DIR.joinpath("static", src_yml), dest)
    return dest


def print_log(message: str) -> None:
    """Print a progress line to stdout and record it in the debug log."""
    logging.getLogger(__name__).debug(message)
    print(f">>\t{message}", flush=True)


def fetch_executable(cmd: str, ignore_errors: bool = False) -> str | None:
    """Locate an executable on PATH.

    Args:
        cmd: Command name
        ignore_errors: Return None instead of raising when it is missing

    Returns:
        Absolute path of the first match, or None

    Raises:
        RuntimeError: If the command is missing and ignore_errors is False
    """
    for d in os.environ.get("PATH", "").split(os.pathsep):
        candidate = Path(d).joinpath(cmd)
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    if ignore_errors:
        return None
    msg = f"command not found: {cmd}"
    raise RuntimeError(msg)


def read_yml(path: str | os.PathLike[str]) -> Any:
    """Load a YAML document; the result is whatever the document holds."""
    with Path(path).open(encoding="utf-8") as f:
        data = yaml.load(f, Loader=yaml.FullLoader)
    logging.getLogger(__name__).debug("%s:%s%s", path, os.linesep, pformat(data))
    return data


def print_yml(data: object) -> None:
    print(yaml.dump(data, default_flow_style=False, sort_keys=False))


def _render_template(name: str, **variables: object) -> str:
    env = Environment(
        loader=FileSystemLoader(str(PACKAGE_DIR.joinpath("template")), encoding="utf8"),
        keep_trailing_newline=True,
    )
    return env.get_template(name).render(variables)


def render_log_cfg(
    log_cfg_path: str | os.PathLike[str],
    log_dir_path: str | os.PathLike[str] | None = None,
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> Path:
    """Write the ``fileConfig`` logging configuration of a run.

    The log file name carries the file log level and the start time, so
    repeated runs into the same destination keep their logs apart.

    Args:
        log_cfg_path: Configuration file to write
        log_dir_path: Directory of the log text file (defaults to the
            directory of log_cfg_path)
        console_log_level: Level of the stderr handler
        file_log_level: Level of the file handler

    Returns:
        Path of the log text file used by the file handler
    """
    log_cfg = Path(log_cfg_path).resolve()
    log_dir = Path(log_dir_path).resolve() if log_dir_path else log_cfg.parent
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_txt = log_dir.joinpath(f"humgen.{file_log_level}.{stamp}.log.txt")
    for d in sorted({log_cfg.parent, log_dir}):
        if not d.is_dir():
            print_log(f"Make a directory:\t{d}")
            d.mkdir(parents=True, exist_ok=True)
    print_log(
        "{} a file:\t{}".format("Overwrite" if log_cfg.exists() else "Render", log_cfg)
    )
    log_cfg.write_text(
        _render_template(
            "humgen.log.cfg.j2",
            console_log_level=console_log_level,
            file_log_level=file_log_level,
            log_txt_path=str(log_txt),
        ),
        encoding="utf-8",
    )
    return log_txt


def configure_logging(
    log_dir_path: str | os.PathLike[str],
    console_log_level: str = "WARNING",
    file_log_level: str = "DEBUG",
) -> Path:
    """Render ``humgen.log.cfg`` into log_dir_path and apply it.

    Returns:
        Path of the log text file
    """
    log_cfg_path = Path(log_dir_path).joinpath("humgen.log.cfg")
    log_txt = render_log_cfg(
        log_cfg_path=log_cfg_path,
        console_log_level=console_log_level,
        file_log_level=file_log_level,
    )
    logging.config.fileConfig(str(log_cfg_path), disable_existing_loggers=False)
    return log_txt

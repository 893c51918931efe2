"""Publication of user-facing artifacts into the output directory tree."""

import logging
import os
import shutil
from collections.abc import Sequence
from pathlib import Path

import luigi

from .node import TaskState
from .scheduler import TaskEvent

PUBLISH_CATEGORIES = ("alignments", "analysis", "qc", "stats")


class Publisher:
    """Copy artifacts of succeeded instances to ``<dest>/<category>/<sample>/``.

    Publishing is a pure side effect and never feeds back into the graph.
    Copies are written through a temporary path and renamed, so a partially
    copied file is never visible under its final name.

    Args:
        dest_dir_path: Root of the output directory tree
        categories: Allowed category names
    """

    def __init__(
        self,
        dest_dir_path: str | os.PathLike[str],
        categories: Sequence[str] = PUBLISH_CATEGORIES,
    ) -> None:
        self.dest_dir = Path(dest_dir_path).resolve()
        self.categories = tuple(categories)
        self.published: list[Path] = []

    def __call__(self, event: TaskEvent) -> None:
        if event.state is not TaskState.SUCCEEDED or not event.publish_category:
            return
        elif event.publish_category not in self.categories:
            msg = f"unknown publish category: {event.publish_category}"
            raise ValueError(msg)
        dest_dir = self.dest_dir.joinpath(event.publish_category, event.key or "all")
        for src in event.artifacts:
            self.publish(src=src, dest=dest_dir.joinpath(src.name))

    def publish(self, src: Path, dest: Path) -> Path:
        """Copy one artifact unless an identical copy is already in place.

        An outdated copy from an earlier run is replaced.
        """
        logger = logging.getLogger(__name__)
        if dest.is_file() and _is_same_file(src, dest):
            logger.debug("already published:\t%s", dest)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            logger.info("publish:\t%s -> %s", src, dest)
            target = luigi.LocalTarget(str(dest))
            if target.exists():
                logger.debug("replace:\t%s", dest)
                target.remove()
            with target.temporary_path() as tmp_path:
                if src.is_dir():
                    shutil.copytree(src, tmp_path)
                else:
                    shutil.copy2(src, tmp_path)
        self.published.append(dest)
        return dest


def _is_same_file(src: Path, dest: Path) -> bool:
    s = src.stat()
    d = dest.stat()
    return s.st_size == d.st_size and int(s.st_mtime) == int(d.st_mtime)

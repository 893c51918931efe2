"""Resume cache keyed by task instance fingerprints.

A fingerprint covers the node identity, the resolved input artifacts, and the
resource profile. Entries are YAML files stored under a directory per cache
epoch; bumping the epoch in the run configuration makes every older entry
invisible without deleting it.
"""

import dataclasses
import hashlib
import json
import logging
import os
import threading
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import luigi
import yaml

from .node import TaskInstance

CACHE_MODES = ("standard", "lenient", "deep")


class TaskCache:
    """Fingerprint index of successfully completed task instances.

    Args:
        cache_dir_path: Root directory of the cache
        epoch: Cache epoch token; entries of other epochs are ignored
        mode: ``standard`` (path, size, mtime), ``lenient`` (path, size) or
            ``deep`` (content SHA-256) input hashing
        resume: Read existing entries; when False entries are only written
    """

    def __init__(
        self,
        cache_dir_path: str | os.PathLike[str],
        epoch: str | int = 1,
        mode: str = "standard",
        resume: bool = True,
    ) -> None:
        if mode not in CACHE_MODES:
            msg = f"invalid cache mode: {mode}"
            raise ValueError(msg)
        self.epoch = str(epoch)
        self.mode = mode
        self.resume = resume
        self.epoch_dir = Path(cache_dir_path).resolve().joinpath(f"epoch-{self.epoch}")
        self._lock = threading.Lock()
        self._claimed: set[str] = set()
        self._digests: dict[tuple[str, int, int], str] = {}

    def __repr__(self) -> str:
        return f"TaskCache({str(self.epoch_dir)!r}, mode={self.mode!r})"

    def fingerprint(self, instance: TaskInstance) -> str:
        """Compute the fingerprint of a task instance from its resolved inputs."""
        payload = {
            "node": instance.node.signature(),
            "key": instance.key,
            "inputs": [self._describe(s) for s in instance.slots],
            "resources": instance.node.resources.to_dict(),
        }
        return hashlib.sha256(
            json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        ).hexdigest()

    def _entry_path(self, fingerprint: str) -> Path:
        return self.epoch_dir.joinpath(fingerprint[:2], f"{fingerprint}.yml")

    def lookup(self, fingerprint: str) -> dict[str, Any] | None:
        """Return a valid cache entry, or None on a miss.

        An entry whose recorded artifacts are missing or changed is a miss.
        """
        if not self.resume:
            return None
        path = self._entry_path(fingerprint)
        if not path.is_file():
            return None
        logger = logging.getLogger(__name__)
        try:
            with path.open(encoding="utf-8") as f:
                entry = yaml.load(f, Loader=yaml.UnsafeLoader)
        except yaml.YAMLError as e:
            logger.warning("unreadable cache entry:\t%s (%s)", path, e)
            return None
        if not (isinstance(entry, dict) and entry.get("fingerprint") == fingerprint):
            logger.warning("corrupted cache entry:\t%s", path)
            return None
        for a in entry.get("artifacts", []):
            p = Path(a["path"])
            if not p.is_file() or p.stat().st_size == 0:
                logger.info("cached artifact is missing:\t%s", p)
                return None
            elif p.stat().st_size != a["size"] or (
                self.mode == "standard" and p.stat().st_mtime_ns != a["mtime_ns"]
            ):
                logger.warning("cached artifact has changed:\t%s", p)
                return None
        return entry

    def claim(self, fingerprint: str) -> bool:
        """Reserve the right to write an entry for a fingerprint.

        Returns:
            False if another instance of this run already holds the claim
        """
        with self._lock:
            if fingerprint in self._claimed:
                return False
            self._claimed.add(fingerprint)
            return True

    def record(self, instance: TaskInstance, artifacts: list[Path]) -> Path | None:
        """Commit the cache entry of a succeeded, claimed instance.

        Args:
            instance: Succeeded task instance with a fingerprint
            artifacts: Declared output artifacts to verify on later hits

        Returns:
            Path of the written entry, or None if the instance held no claim
        """
        fingerprint = instance.fingerprint
        with self._lock:
            if fingerprint not in self._claimed:
                return None
        entry = {
            "fingerprint": fingerprint,
            "epoch": self.epoch,
            "node": instance.node.name,
            "key": instance.key,
            "created": datetime.now(UTC).isoformat(),
            "outputs": list(instance.outputs),
            "artifacts": [
                {
                    "path": str(p),
                    "size": p.stat().st_size,
                    "mtime_ns": p.stat().st_mtime_ns,
                }
                for p in (Path(a) for a in artifacts)
            ],
        }
        path = self._entry_path(fingerprint)
        path.parent.mkdir(parents=True, exist_ok=True)
        target = luigi.LocalTarget(str(path))
        with target.open("w") as f:
            yaml.dump(entry, f, Dumper=yaml.Dumper, default_flow_style=False)
        logging.getLogger(__name__).debug("cache entry written:\t%s", path)
        return path

    def entries(self) -> Iterator[tuple[Path, dict[str, Any]]]:
        """Iterate over the entries of the current epoch."""
        if not self.epoch_dir.is_dir():
            return
        for p in sorted(self.epoch_dir.glob("*/*.yml")):
            with p.open(encoding="utf-8") as f:
                yield p, yaml.load(f, Loader=yaml.UnsafeLoader)

    def invalidate(self, node_name: str, key: str | None = None) -> list[Path]:
        """Delete the entries of a node (optionally for one sample key)."""
        removed = []
        for p, e in list(self.entries()):
            if e.get("node") == node_name and (key is None or e.get("key") == key):
                p.unlink()
                removed.append(p)
        return removed

    def _describe(self, obj: object) -> object:
        if isinstance(obj, Path):
            return self._describe_path(obj)
        elif dataclasses.is_dataclass(obj) and not isinstance(obj, type):
            return {
                "type": type(obj).__name__,
                **{
                    f.name: self._describe(getattr(obj, f.name))
                    for f in dataclasses.fields(obj)
                },
            }
        elif isinstance(obj, Mapping):
            return {str(k): self._describe(v) for k, v in sorted(obj.items())}
        elif isinstance(obj, (list, tuple)):
            return [self._describe(v) for v in obj]
        elif isinstance(obj, (str, int, float, bool)) or obj is None:
            return obj
        else:
            return repr(obj)

    def _describe_path(self, path: Path) -> dict[str, Any]:
        p = path.resolve()
        if not p.exists():
            return {"path": str(p), "missing": True}
        elif p.is_dir():
            return {"path": str(p), "dir": True}
        st = p.stat()
        if self.mode == "lenient":
            return {"path": str(p), "size": st.st_size}
        elif self.mode == "standard":
            return {"path": str(p), "size": st.st_size, "mtime_ns": st.st_mtime_ns}
        else:
            return {"path": str(p), "sha256": self._sha256(p, st)}

    def _sha256(self, path: Path, st: os.stat_result) -> str:
        k = (str(path), st.st_size, st.st_mtime_ns)
        with self._lock:
            if k in self._digests:
                return self._digests[k]
        h = hashlib.sha256()
        with path.open("rb") as f:
            for chunk in iter(lambda: f.read(1 << 20), b""):
                h.update(chunk)
        digest = h.hexdigest()
        with self._lock:
            self._digests[k] = digest
        return digest

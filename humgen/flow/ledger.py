"""Resource ledger shared by the scheduler and its completion callbacks."""

import logging
import threading
from dataclasses import dataclass
from itertools import count

from psutil import cpu_count, virtual_memory

from .errors import ResourceExceeded
from .node import ResourceProfile


@dataclass(frozen=True)
class Reservation:
    """Capacity held by one running task instance."""

    id: int
    holder: str
    n_cpu: int
    memory_mb: int


class ResourceLedger:
    """Track reserved versus available CPU and memory.

    Reservations are weighted: a light and a heavy task compete for the same
    pool by their declared profile, not by a fixed number of slots. Reserve
    and release are atomic under a lock so concurrent callers can never
    double-book capacity.

    Args:
        n_cpu: Total CPU cores (defaults to the host CPU count)
        memory_mb: Total memory in megabytes (defaults to half of host memory)
    """

    def __init__(self, n_cpu: int | None = None, memory_mb: int | None = None) -> None:
        self.n_cpu = int(n_cpu or cpu_count() or 1)
        self.memory_mb = int(memory_mb or virtual_memory().total / 1024 / 1024 / 2)
        self._lock = threading.Lock()
        self._ids = count(1)
        self._reservations: dict[int, Reservation] = {}
        self._used_cpu = 0
        self._used_memory_mb = 0
        self.peak_cpu = 0
        self.peak_memory_mb = 0

    def __repr__(self) -> str:
        return (
            f"ResourceLedger(cpu={self._used_cpu}/{self.n_cpu},"
            f" memory_mb={self._used_memory_mb}/{self.memory_mb})"
        )

    def validate(self, profile: ResourceProfile, holder: str = "") -> None:
        """Check that a profile can ever be satisfied.

        Raises:
            ResourceExceeded: If the profile exceeds total capacity
        """
        if not profile.fits_within(n_cpu=self.n_cpu, memory_mb=self.memory_mb):
            msg = (
                f"resource profile of {holder or 'task'} exceeds capacity:"
                f" {profile.n_cpu} CPU / {profile.memory_mb} MB requested,"
                f" {self.n_cpu} CPU / {self.memory_mb} MB configured"
            )
            raise ResourceExceeded(msg)

    def try_reserve(self, profile: ResourceProfile, holder: str = "") -> Reservation | None:
        """Reserve capacity for a profile if it fits in what remains.

        Args:
            profile: Requested resources
            holder: Identifier of the reserving task instance

        Returns:
            Reservation if capacity was available, else None
        """
        self.validate(profile, holder=holder)
        with self._lock:
            if (
                self._used_cpu + profile.n_cpu > self.n_cpu
                or self._used_memory_mb + profile.memory_mb > self.memory_mb
            ):
                return None
            r = Reservation(
                id=next(self._ids),
                holder=holder,
                n_cpu=profile.n_cpu,
                memory_mb=profile.memory_mb,
            )
            self._reservations[r.id] = r
            self._used_cpu += r.n_cpu
            self._used_memory_mb += r.memory_mb
            self.peak_cpu = max(self.peak_cpu, self._used_cpu)
            self.peak_memory_mb = max(self.peak_memory_mb, self._used_memory_mb)
        logging.getLogger(__name__).debug("reserve %s:\t%r", holder, self)
        return r

    def release(self, reservation: Reservation) -> None:
        """Return the capacity held by a reservation.

        Raises:
            KeyError: If the reservation was already released
        """
        with self._lock:
            r = self._reservations.pop(reservation.id)
            self._used_cpu -= r.n_cpu
            self._used_memory_mb -= r.memory_mb
        logging.getLogger(__name__).debug("release %s:\t%r", r.holder, self)

    @property
    def available(self) -> tuple[int, int]:
        """Free CPU cores and memory in megabytes."""
        with self._lock:
            return self.n_cpu - self._used_cpu, self.memory_mb - self._used_memory_mb

    @property
    def reserved(self) -> tuple[int, int]:
        """Reserved CPU cores and memory in megabytes."""
        with self._lock:
            return self._used_cpu, self._used_memory_mb

    def __len__(self) -> int:
        with self._lock:
            return len(self._reservations)

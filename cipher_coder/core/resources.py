"""
Admission control for local-model inference.

Local inference is computationally expensive, so the gate caps the number of
concurrent inferences and refuses work the machine cannot hold in memory.
Decisions are immediate: callers are told "busy" instead of being queued.

Lifecycle of a reservation:
1. Created speculatively by ``admit``
2. Marked allocated only if admission succeeds
3. Released unconditionally when the inference completes or fails
"""

import logging
import math
import os
import shutil
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

import psutil

from .errors import CapacityError

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


@dataclass(frozen=True)
class ResourceLimits:
    """Tunable admission limits.

    The defaults are heuristics; none of them is correctness-critical.
    """
    max_concurrent: int = 4
    memory_multiplier: float = 3.0
    minimum_memory_mb: float = 2048.0
    system_memory_buffer_mb: float = 1024.0
    max_cpu_usage_percent: float = 75.0

    def __post_init__(self):
        """Validate limit values."""
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.memory_multiplier < 1:
            raise ValueError("memory_multiplier must be >= 1")
        if self.minimum_memory_mb < 0:
            raise ValueError("minimum_memory_mb must be >= 0")
        if self.system_memory_buffer_mb < 0:
            raise ValueError("system_memory_buffer_mb must be >= 0")
        if not 0 < self.max_cpu_usage_percent <= 100:
            raise ValueError("max_cpu_usage_percent must be in (0, 100]")


@dataclass(frozen=True)
class ModelFootprint:
    """Size of the model an inference will run, as stored on disk."""
    size_bytes: int = 0
    name: str = "local-model"


@dataclass
class ResourceReservation:
    """Resources held by one local inference."""
    memory_mb: float
    cpu_cores: int
    uses_gpu: bool
    allocated: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class AdmissionRejection:
    """Refusal to start a local inference.

    ``busy`` is True for the concurrency cap (retry later) and False when the
    machine lacks the memory for the model.
    """
    reason: str
    busy: bool
    required_memory_mb: float = 0.0
    available_memory_mb: float = 0.0


AdmissionResult = Union[ResourceReservation, AdmissionRejection]


class SystemProbe:
    """Reads host resources through psutil."""

    def free_memory_mb(self) -> float:
        """Memory available to new processes, in MB."""
        return psutil.virtual_memory().available / BYTES_PER_MB

    def cpu_count(self) -> int:
        """Logical CPU count."""
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1

    def gpu_available(self) -> bool:
        """Advisory GPU detection; CPU fallback is always possible."""
        return shutil.which("nvidia-smi") is not None


def estimate_required_memory(footprint: ModelFootprint, limits: ResourceLimits) -> float:
    """Estimate live memory for a model in MB.

    Compressed on-disk size underestimates live memory, so the file size is
    scaled by ``memory_multiplier`` and floored at ``minimum_memory_mb``.
    """
    size_mb = footprint.size_bytes / BYTES_PER_MB
    return max(limits.minimum_memory_mb, size_mb * limits.memory_multiplier)


class ResourceGate:
    """Admits, tracks and releases local inference reservations.

    Thread-safe: the active count and reserved memory are mutated only while
    holding an internal lock, so admit and release are atomic with respect to
    each other from threads and coroutines alike.
    """

    def __init__(
        self,
        limits: Optional[ResourceLimits] = None,
        probe: Optional[SystemProbe] = None,
        prefer_gpu: bool = True,
    ):
        self.limits = limits or ResourceLimits()
        self.probe = probe or SystemProbe()
        self.prefer_gpu = prefer_gpu
        self._lock = threading.Lock()
        self._active = 0
        self._reserved_memory_mb = 0.0

    @property
    def active_count(self) -> int:
        """Number of currently allocated reservations."""
        with self._lock:
            return self._active

    def snapshot(self) -> dict:
        """Current allocation state."""
        with self._lock:
            return {
                "active": self._active,
                "max_concurrent": self.limits.max_concurrent,
                "reserved_memory_mb": self._reserved_memory_mb,
            }

    def _usable_cores(self) -> int:
        cores = math.floor(self.probe.cpu_count() * self.limits.max_cpu_usage_percent / 100)
        return max(1, cores)

    def admit(self, footprint: ModelFootprint) -> AdmissionResult:
        """Decide whether a local inference may start now.

        Never blocks waiting for capacity.

        Args:
            footprint: Size of the model to run

        Returns:
            An allocated ResourceReservation, or an AdmissionRejection
        """
        required_mb = estimate_required_memory(footprint, self.limits)
        reservation = ResourceReservation(
            memory_mb=required_mb,
            cpu_cores=self._usable_cores(),
            uses_gpu=self.prefer_gpu and self.probe.gpu_available(),
        )
        free_mb = self.probe.free_memory_mb()

        with self._lock:
            if self._active >= self.limits.max_concurrent:
                logger.warning(
                    "Rejecting local inference: %d/%d inferences active",
                    self._active, self.limits.max_concurrent
                )
                return AdmissionRejection(
                    reason=(
                        "Maximum concurrent inferences limit reached "
                        f"({self.limits.max_concurrent}). Please try again later."
                    ),
                    busy=True,
                    required_memory_mb=required_mb,
                )

            available_mb = free_mb - self.limits.system_memory_buffer_mb - self._reserved_memory_mb
            if available_mb < required_mb:
                logger.warning(
                    "Rejecting local inference for %s: %.0fMB available, %.0fMB required",
                    footprint.name, available_mb, required_mb
                )
                return AdmissionRejection(
                    reason=(
                        f"Insufficient memory: {round(available_mb)}MB available, "
                        f"{round(required_mb)}MB required"
                    ),
                    busy=False,
                    required_memory_mb=required_mb,
                    available_memory_mb=available_mb,
                )

            self._active += 1
            self._reserved_memory_mb += required_mb
            reservation.allocated = True

        logger.info(
            "Allocated resources: %.0fMB memory, %d CPU cores, GPU: %s",
            reservation.memory_mb, reservation.cpu_cores, reservation.uses_gpu
        )
        return reservation

    def release(self, reservation: Optional[ResourceReservation]) -> None:
        """Release a reservation.

        Releasing twice, or releasing a reservation that was never allocated,
        is a no-op.
        """
        if reservation is None:
            return
        with self._lock:
            if not reservation.allocated:
                logger.debug("No resources to release for reservation %s", reservation.id)
                return
            reservation.allocated = False
            self._active = max(0, self._active - 1)
            self._reserved_memory_mb = max(0.0, self._reserved_memory_mb - reservation.memory_mb)
        logger.info("Released resources for reservation %s", reservation.id)

    @contextmanager
    def reserve(self, footprint: ModelFootprint) -> Iterator[ResourceReservation]:
        """Admit a reservation for the duration of a ``with`` block.

        Raises:
            CapacityError: If admission is rejected
        """
        result = self.admit(footprint)
        if isinstance(result, AdmissionRejection):
            raise CapacityError(result.reason, busy=result.busy)
        try:
            yield result
        finally:
            self.release(result)

"""Compute context: logical devices, in-order streams and profiling.

A :class:`ComputeContext` is created once per training run and passed to
every component that launches work. Each logical device owns one stream, a
single-worker executor, so jobs submitted to the same device run in
submission order while different devices run concurrently. Callers never
block on submission; :meth:`ComputeContext.wait_complete` is the barrier that
must precede reading any value produced on a stream.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEVICES_ENV_VAR = "SYMBOOST_DEVICES"


class Profiler:
    """Accumulates wall time per label.

    Disabled profilers only yield; enabled ones log every section at DEBUG
    and keep totals in :attr:`totals`.
    """

    def __init__(self, enabled: bool = False):
        self.enabled = enabled
        self.totals: dict[str, float] = defaultdict(float)
        self.calls: dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    @contextmanager
    def profile(self, label: str) -> Iterator[None]:
        if not self.enabled:
            yield
            return
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            with self._lock:
                self.totals[label] += elapsed
                self.calls[label] += 1
            logger.debug("%s: %.6fs", label, elapsed)


class ComputeContext:
    """Set of logical devices with one in-order stream each.

    Args:
        n_devices: Number of logical devices (>= 1).
        profile: Enable the profiler.

    Example:
        >>> with ComputeContext(n_devices=2) as ctx:
        ...     fut = ctx.submit(0, np.sum, x)
        ...     ctx.wait_complete()
        ...     total = fut.result()
    """

    def __init__(self, n_devices: int = 1, *, profile: bool = False):
        if n_devices < 1:
            raise ValueError(f"n_devices must be >= 1, got {n_devices}")
        self.devices = tuple(range(n_devices))
        self.profiler = Profiler(enabled=profile)
        self._streams = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"symboost-dev{d}")
            for d in self.devices
        ]
        self._pending: list[Future] = []
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_env(cls, *, profile: bool = False) -> ComputeContext:
        """Create a context sized by the ``SYMBOOST_DEVICES`` environment variable."""
        raw = os.environ.get(DEVICES_ENV_VAR, "1")
        try:
            n_devices = int(raw)
        except ValueError:
            raise ValueError(
                f"{DEVICES_ENV_VAR} must be an integer, got {raw!r}"
            ) from None
        return cls(n_devices=n_devices, profile=profile)

    @property
    def n_devices(self) -> int:
        return len(self.devices)

    def submit(self, device: int, fn: Callable[..., Any], *args, **kwargs) -> Future:
        """Enqueue ``fn(*args, **kwargs)`` on the stream of ``device``."""
        if self._closed:
            raise RuntimeError("ComputeContext is closed")
        future = self._streams[device].submit(fn, *args, **kwargs)
        with self._lock:
            self._pending.append(future)
        return future

    def wait_complete(self) -> None:
        """Block until every submitted job finished; re-raise the first failure."""
        with self._lock:
            pending, self._pending = self._pending, []
        error: BaseException | None = None
        for future in pending:
            exc = future.exception()
            if exc is not None and error is None:
                error = exc
        if error is not None:
            raise error

    def device_slices(
        self, n_items: int, devices: Sequence[int] | None = None
    ) -> list[tuple[int, slice]]:
        """Split ``range(n_items)`` into contiguous chunks, one per device.

        Args:
            n_items: Number of items to shard.
            devices: Devices to shard over (default: every device).

        Devices that receive no items are omitted.
        """
        devices = self.devices if devices is None else tuple(devices)
        bounds = np.linspace(0, n_items, len(devices) + 1).astype(np.int64)
        return [
            (device, slice(int(bounds[i]), int(bounds[i + 1])))
            for i, device in enumerate(devices)
            if bounds[i + 1] > bounds[i]
        ]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for stream in self._streams:
            stream.shutdown(wait=True)

    def __enter__(self) -> ComputeContext:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"ComputeContext(n_devices={self.n_devices}, profile={self.profiler.enabled})"

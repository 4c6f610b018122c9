"""
Accelerator bridge for the sparse Life engine.

Runs the neighbor-count-and-classify pass over flat coordinate buffers
on a vectorized array backend instead of the per-cell Python loop.

Backends:
  numpy   always present; whole-batch vectorized kernels on the host.
  cupy    CUDA device via CuPy, probed lazily; absent hosts simply
          report it unavailable.

Pipeline per call (each stage timed in milliseconds):
  prepare   pack active cells into sorted 64-bit keys
  upload    move keys + candidate batch onto the backend
  dispatch  8-way neighbor lookup, classify, build neighbor hints
  download  copy states and hints back to host arrays

Every failure is turned into (used_accelerator=False, error=message).
Nothing in here raises to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from types import ModuleType
from typing import Any, Callable, Iterable

import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

INT32_MIN: int = -(2**31)
INT32_MAX: int = 2**31 - 1

# Key packing: y * 2^32 + (x + 2^31) is a bijection of the int32 plane
# onto int64 that preserves (y, x) lexicographic order.
KEY_SHIFT: int = 2**32
KEY_BIAS: int = 2**31

# Candidates may sit one step outside int32; anything this far out is junk
CANDIDATE_LIMIT: int = 2**62
MAX_BATCH: int = 2**32 - 1

HINTS_PER_CELL: int = 9

# Moore offsets (dx, dy), self excluded
NEIGHBOR_OFFSETS: NDArray[np.int64] = np.array(
    [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if dx or dy],
    dtype=np.int64,
)
# Full 3x3 block, self included
BLOCK_OFFSETS: NDArray[np.int64] = np.array(
    [(dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1)], dtype=np.int64
)

BACKEND_AUTO: str = "auto"
BACKEND_NUMPY: str = "numpy"
BACKEND_CUPY: str = "cupy"
BACKENDS: tuple[str, ...] = (BACKEND_AUTO, BACKEND_NUMPY, BACKEND_CUPY)

# ── Bridge stages (each has a matching <stage>_ms diagnostics field) ────
STAGE_PREPARE: str = "prepare"
STAGE_UPLOAD: str = "upload"
STAGE_DISPATCH: str = "dispatch"
STAGE_DOWNLOAD: str = "download"


# ═══════════════════════════════════════════════════════════════════════
#  Errors
# ═══════════════════════════════════════════════════════════════════════

class AcceleratorError(RuntimeError):
    """Base for recoverable accelerator problems."""


class BackendUnavailable(AcceleratorError):
    """The requested backend is not present or not usable on this host."""


class DispatchFailure(AcceleratorError):
    """The backend is present but this compute attempt failed."""


# ═══════════════════════════════════════════════════════════════════════
#  Result records
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class AccelerationDiagnostics:
    """Timing breakdown for one measurement window.

    Durations accumulate across calls until ``reset()``; a stage that raises
    keeps the time it spent. ``used_accelerator`` describes the latest step
    only; ``neighbor_overflow`` stays set once any call in the window
    overflowed the hint buffer.
    """

    prepare_ms: float = 0.0
    upload_ms: float = 0.0
    dispatch_ms: float = 0.0
    download_ms: float = 0.0
    total_ms: float = 0.0
    used_accelerator: bool = False
    neighbor_overflow: bool = False
    dispatches: int = 0

    def reset(self) -> None:
        self.prepare_ms = 0.0
        self.upload_ms = 0.0
        self.dispatch_ms = 0.0
        self.download_ms = 0.0
        self.total_ms = 0.0
        self.used_accelerator = False
        self.neighbor_overflow = False
        self.dispatches = 0

    def charge(self, stage: str, elapsed_ms: float) -> None:
        """Add elapsed time to one of prepare/upload/dispatch/download."""
        field_name = f"{stage}_ms"
        setattr(self, field_name, getattr(self, field_name) + elapsed_ms)

    def snapshot(self) -> AccelerationDiagnostics:
        return replace(self)


@dataclass
class Classification:
    """Per-candidate outcome of one accelerated generation.

    ``coords`` is an (N, 2) int64 array of (x, y); ``was_alive`` and
    ``will_be_alive`` are parallel boolean arrays. ``hints`` holds the 3x3
    neighborhoods of changed cells, possibly truncated when
    ``neighbor_overflow`` is set.
    """

    coords: NDArray[np.int64]
    was_alive: NDArray[np.bool_]
    will_be_alive: NDArray[np.bool_]
    hints: NDArray[np.int64]
    used_accelerator: bool = False
    error: str = ""
    neighbor_overflow: bool = False

    @classmethod
    def failed(cls, error: str) -> Classification:
        empty = np.empty((0, 2), dtype=np.int64)
        none = np.empty(0, dtype=np.bool_)
        return cls(empty, none, none, empty.copy(), False, error, False)

    @property
    def changed(self) -> NDArray[np.bool_]:
        return self.was_alive != self.will_be_alive

    @property
    def changed_count(self) -> int:
        return int(np.count_nonzero(self.changed))

    def __len__(self) -> int:
        return len(self.coords)


# ═══════════════════════════════════════════════════════════════════════
#  Backends
# ═══════════════════════════════════════════════════════════════════════

def _no_sync() -> None:
    pass


@dataclass
class ArrayBackend:
    """One array module plus its host<->device transfer functions."""

    name: str
    xp: ModuleType
    to_device: Callable[[NDArray[Any]], Any]
    to_host: Callable[[Any], NDArray[Any]]
    synchronize: Callable[[], None] = field(default=_no_sync)


def _numpy_backend() -> ArrayBackend:
    return ArrayBackend(
        name=BACKEND_NUMPY,
        xp=np,
        to_device=np.ascontiguousarray,
        to_host=np.asarray,
    )


def _cupy_backend() -> ArrayBackend:
    """Probe CuPy and a CUDA device, raising BackendUnavailable if absent."""
    try:
        import cupy
    except ImportError as exc:
        raise BackendUnavailable(f"CuPy not installed ({exc})") from exc

    try:
        devices = cupy.cuda.runtime.getDeviceCount()
    except Exception as exc:  # driver/runtime missing surfaces as assorted errors
        raise BackendUnavailable(f"CUDA runtime unavailable: {exc}") from exc
    if devices < 1:
        raise BackendUnavailable("No CUDA device present")

    return ArrayBackend(
        name=BACKEND_CUPY,
        xp=cupy,
        to_device=cupy.asarray,
        to_host=cupy.asnumpy,
        synchronize=cupy.cuda.Device().synchronize,
    )


def probe_backend(preference: str = BACKEND_AUTO) -> ArrayBackend:
    """Resolve a backend name to a usable ArrayBackend or raise."""
    if preference not in BACKENDS:
        raise BackendUnavailable(f"Unknown accelerator backend {preference!r}")
    if preference == BACKEND_NUMPY:
        return _numpy_backend()
    if preference == BACKEND_CUPY:
        return _cupy_backend()
    try:
        return _cupy_backend()
    except BackendUnavailable as exc:
        logger.debug("cupy backend skipped: %s", exc)
        return _numpy_backend()


# ═══════════════════════════════════════════════════════════════════════
#  Kernels (written against the array module, so they run on either backend)
# ═══════════════════════════════════════════════════════════════════════

def pack_keys(xy: Any) -> Any:
    """(N, 2) int64 (x, y) rows in int32 range → sorted-comparable int64 keys."""
    return xy[:, 1] * KEY_SHIFT + (xy[:, 0] + KEY_BIAS)


def _lookup(xp: ModuleType, sorted_keys: Any, probe: Any) -> Any:
    """Membership of each probe key in sorted_keys (boolean array)."""
    if sorted_keys.shape[0] == 0:
        return xp.zeros(probe.shape, dtype=xp.bool_)
    idx = xp.searchsorted(sorted_keys, probe)
    idx = xp.minimum(idx, sorted_keys.shape[0] - 1)
    return sorted_keys[idx] == probe


def classify_kernel(
    xp: ModuleType,
    sorted_keys: Any,
    candidates: Any,
    offsets: Any,
) -> tuple[Any, Any, Any]:
    """Count Moore neighbors per candidate and apply B3/S23.

    Returns (was_alive, will_be_alive, counts). Neighbors that fall outside
    the int32 plane are counted as dead.
    """
    in_range = (
        (candidates[:, 0] >= INT32_MIN) & (candidates[:, 0] <= INT32_MAX)
        & (candidates[:, 1] >= INT32_MIN) & (candidates[:, 1] <= INT32_MAX)
    )
    clipped = xp.clip(candidates, INT32_MIN, INT32_MAX)
    was_alive = _lookup(xp, sorted_keys, pack_keys(clipped)) & in_range

    counts = xp.zeros(candidates.shape[0], dtype=xp.int8)
    for k in range(offsets.shape[0]):
        shifted = candidates + offsets[k]
        valid = (
            (shifted[:, 0] >= INT32_MIN) & (shifted[:, 0] <= INT32_MAX)
            & (shifted[:, 1] >= INT32_MIN) & (shifted[:, 1] <= INT32_MAX)
        )
        shifted = xp.clip(shifted, INT32_MIN, INT32_MAX)
        hit = _lookup(xp, sorted_keys, pack_keys(shifted)) & valid
        counts += hit.astype(xp.int8)

    n_is_3 = counts == 3
    will_be_alive = n_is_3 | (was_alive & (counts == 2))
    return was_alive, will_be_alive, counts


def expand_kernel(xp: ModuleType, cells: Any, block: Any) -> Any:
    """3x3 neighborhoods of cells, flattened to (9 * N, 2)."""
    return (cells[:, None, :] + block[None, :, :]).reshape(-1, 2)


# ═══════════════════════════════════════════════════════════════════════
#  Flat host buffers
# ═══════════════════════════════════════════════════════════════════════

class FlatBuffer:
    """Grow-only (N, 2) int64 host scratch buffer for coordinate batches."""

    def __init__(self) -> None:
        self._data: NDArray[np.int64] = np.empty((0, 2), dtype=np.int64)

    @property
    def capacity(self) -> int:
        return self._data.shape[0]

    def fill(self, cells: Iterable[tuple[int, int]], count: int) -> NDArray[np.int64]:
        if count > self.capacity:
            self._data = np.empty((max(count, 2 * self.capacity), 2), dtype=np.int64)
        view = self._data[:count]
        if count:
            flat = np.fromiter(
                (v for cell in cells for v in cell), dtype=np.int64, count=2 * count
            )
            np.copyto(view, flat.reshape(count, 2))
        return view

    def release(self) -> None:
        self._data = np.empty((0, 2), dtype=np.int64)


# ═══════════════════════════════════════════════════════════════════════
#  Bridge
# ═══════════════════════════════════════════════════════════════════════

class AcceleratorBridge:
    """
    Flat-buffer front end to the vectorized classify pass.

    Availability is probed once and cached; ``reset_caches()`` drops the
    cached backend handle and scratch buffers so the next call starts cold.
    One caller at a time: scratch buffers are reused across calls.
    """

    def __init__(
        self,
        backend: str = BACKEND_AUTO,
        neighbor_buffer_cells: int | None = None,
    ) -> None:
        self.preference: str = backend
        self.neighbor_buffer_cells: int | None = neighbor_buffer_cells
        self.diagnostics: AccelerationDiagnostics = AccelerationDiagnostics()

        self._backend: ArrayBackend | None = None
        self._probe_error: str = ""
        self._probed: bool = False

        self._active_buf: FlatBuffer = FlatBuffer()
        self._candidate_buf: FlatBuffer = FlatBuffer()
        # Hint buffer grows with the batch unless a fixed size was configured
        self._hint_capacity: int = neighbor_buffer_cells or 0
        # Stage in progress; a failure charges its partial time here
        self._stage: str = STAGE_PREPARE

    # ── Availability ────────────────────────────────────────────────

    def _ensure_backend(self) -> ArrayBackend:
        if not self._probed:
            self._probed = True
            try:
                self._backend = probe_backend(self.preference)
                self._probe_error = ""
                logger.info("accelerator backend: %s", self._backend.name)
            except BackendUnavailable as exc:
                self._backend = None
                self._probe_error = str(exc)
                logger.info("accelerator unavailable: %s", exc)
        if self._backend is None:
            raise BackendUnavailable(self._probe_error or "Accelerator unavailable")
        return self._backend

    def is_available(self) -> bool:
        try:
            self._ensure_backend()
        except BackendUnavailable:
            return False
        return True

    @property
    def backend_name(self) -> str:
        return self._backend.name if self._backend is not None else ""

    @property
    def unavailable_reason(self) -> str:
        return self._probe_error

    @property
    def hint_capacity(self) -> int:
        return self._hint_capacity

    # ── Cache / diagnostics control ─────────────────────────────────

    def reset_caches(self) -> None:
        self._backend = None
        self._probed = False
        self._probe_error = ""
        self._active_buf.release()
        self._candidate_buf.release()
        self._hint_capacity = self.neighbor_buffer_cells or 0

    def reset_timings(self) -> None:
        self.diagnostics.reset()

    def timings(self) -> AccelerationDiagnostics:
        return self.diagnostics.snapshot()

    # ── Compute ─────────────────────────────────────────────────────

    def compute_classifications(
        self,
        active: Iterable[tuple[int, int]],
        candidates: Iterable[tuple[int, int]],
        active_count: int | None = None,
        candidate_count: int | None = None,
    ) -> Classification:
        """Classify every candidate against the active batch.

        Inputs are any iterables of (x, y) pairs; sets are the usual case.
        Counts may be passed to skip a len() on one-shot iterables.
        """
        diag = self.diagnostics
        diag.used_accelerator = False
        total_start = time.perf_counter()
        stage = [total_start]

        def lap() -> float:
            now = time.perf_counter()
            elapsed = (now - stage[0]) * 1000.0
            stage[0] = now
            return elapsed

        self._stage = STAGE_PREPARE
        try:
            backend = self._ensure_backend()
            result = self._run(backend, active, candidates, active_count,
                               candidate_count, lap)
        except AcceleratorError as exc:
            diag.charge(self._stage, lap())
            logger.debug("accelerator attempt failed during %s: %s", self._stage, exc)
            result = Classification.failed(str(exc))
        except Exception as exc:  # any backend fault is a recoverable dispatch failure
            diag.charge(self._stage, lap())
            message = f"Accelerator dispatch failed: {type(exc).__name__}: {exc}"
            logger.debug("%s (during %s)", message, self._stage)
            result = Classification.failed(message)

        diag.total_ms += (time.perf_counter() - total_start) * 1000.0
        diag.used_accelerator = result.used_accelerator
        return result

    def _run(
        self,
        backend: ArrayBackend,
        active: Iterable[tuple[int, int]],
        candidates: Iterable[tuple[int, int]],
        active_count: int | None,
        candidate_count: int | None,
        lap: Callable[[], float],
    ) -> Classification:
        diag = self.diagnostics

        # ── prepare ────────────────────────────────────────────────
        n_active = len(active) if active_count is None else active_count  # type: ignore[arg-type]
        n_cand = len(candidates) if candidate_count is None else candidate_count  # type: ignore[arg-type]
        if n_cand > MAX_BATCH:
            raise DispatchFailure("Too many candidate cells for accelerator dispatch")

        active_xy = self._active_buf.fill(active, n_active)
        cand_xy = self._candidate_buf.fill(candidates, n_cand)

        if n_active and (active_xy.min() < INT32_MIN or active_xy.max() > INT32_MAX):
            raise DispatchFailure("Active cell outside signed 32-bit range")
        if n_cand and (cand_xy.min() <= -CANDIDATE_LIMIT or cand_xy.max() >= CANDIDATE_LIMIT):
            raise DispatchFailure("Candidate cell outside representable range")

        host_keys = np.sort(pack_keys(active_xy))
        needed = n_cand * HINTS_PER_CELL
        if self.neighbor_buffer_cells is None and needed > self._hint_capacity:
            self._hint_capacity = needed
        capacity = self._hint_capacity
        diag.prepare_ms += lap()

        if n_cand == 0:
            diag.used_accelerator = True
            empty = np.empty((0, 2), dtype=np.int64)
            none = np.empty(0, dtype=np.bool_)
            return Classification(empty, none, none.copy(), empty.copy(), True)

        # ── upload ─────────────────────────────────────────────────
        self._stage = STAGE_UPLOAD
        dev_keys = backend.to_device(host_keys)
        dev_cand = backend.to_device(cand_xy)
        dev_offsets = backend.to_device(NEIGHBOR_OFFSETS)
        dev_block = backend.to_device(BLOCK_OFFSETS)
        backend.synchronize()
        diag.upload_ms += lap()

        # ── dispatch ───────────────────────────────────────────────
        self._stage = STAGE_DISPATCH
        was, will, dev_hints, raw_hints = self._dispatch(
            backend, dev_keys, dev_cand, dev_offsets, dev_block, capacity
        )
        backend.synchronize()
        diag.dispatch_ms += lap()
        diag.dispatches += 1

        # ── download ───────────────────────────────────────────────
        self._stage = STAGE_DOWNLOAD
        was_host = np.asarray(backend.to_host(was), dtype=np.bool_)
        will_host = np.asarray(backend.to_host(will), dtype=np.bool_)
        hints_host = np.asarray(backend.to_host(dev_hints), dtype=np.int64).reshape(-1, 2)
        overflow = raw_hints > capacity
        if overflow:
            diag.neighbor_overflow = True
            logger.debug(
                "neighbor hint buffer overflow: %d needed, %d available",
                raw_hints, capacity,
            )
        diag.download_ms += lap()

        return Classification(
            coords=cand_xy.copy(),
            was_alive=was_host,
            will_be_alive=will_host,
            hints=hints_host,
            used_accelerator=True,
            neighbor_overflow=overflow,
        )

    def _dispatch(
        self,
        backend: ArrayBackend,
        keys: Any,
        candidates: Any,
        offsets: Any,
        block: Any,
        capacity: int,
    ) -> tuple[Any, Any, Any, int]:
        """Classify and emit hints. Returns (was, will, hints, raw_hint_count)."""
        xp = backend.xp
        was, will, _ = classify_kernel(xp, keys, candidates, offsets)
        changed_cells = candidates[was != will]
        raw = int(changed_cells.shape[0]) * HINTS_PER_CELL
        # Fixed-size output: whatever does not fit is dropped
        if raw > capacity:
            keep = capacity // HINTS_PER_CELL
            hints = expand_kernel(xp, changed_cells[:keep], block)[:capacity]
        else:
            hints = expand_kernel(xp, changed_cells, block)
        return was, will, hints, raw

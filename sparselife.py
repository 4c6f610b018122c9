"""
  S P A R S E   L I F E
  Conway's Game of Life on an unbounded plane, stepped over sparse sets.

  Only two sets are kept per world: the cells that are alive, and the
  candidate cells whose state could change next generation. A step looks
  at candidates only, so cost follows activity, not area. Coordinates span
  the full signed 32-bit range in both axes with no wraparound.

  Stepping goes through a HybridStepper: the sequential set engine, or the
  vectorized accelerator bridge (sparselife_accel) with automatic fallback
  to the sequential engine on any accelerator problem. Both paths produce
  identical active and candidate sets.

  Per-generation telemetry can be written to CSV via StatsLogger.
"""

from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, ClassVar, Iterable, Iterator, NamedTuple

import numpy as np

from sparselife_accel import (
    BACKEND_AUTO,
    BACKENDS,
    HINTS_PER_CELL,
    INT32_MAX,
    INT32_MIN,
    AccelerationDiagnostics,
    AcceleratorBridge,
    Classification,
)

logger = logging.getLogger(__name__)

# ── Neighborhoods ───────────────────────────────────────────────────────
MOORE_OFFSETS: tuple[tuple[int, int], ...] = tuple(
    (dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1) if dx or dy
)
BLOCK_OFFSETS: tuple[tuple[int, int], ...] = tuple(
    (dx, dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1)
)

# ── B3/S23 ──────────────────────────────────────────────────────────────
BIRTH: frozenset[int] = frozenset({3})
SURVIVE: frozenset[int] = frozenset({2, 3})

# ── Stepper tags ────────────────────────────────────────────────────────
STEPPER_CPU = "cpu"
STEPPER_ACCELERATED = "accelerated"

# ── Pattern library (x, y) ──────────────────────────────────────────────
PATTERNS: dict[str, list[tuple[int, int]]] = {
    "block": [(0, 0), (1, 0), (0, 1), (1, 1)],
    "beehive": [(1, 0), (2, 0), (0, 1), (3, 1), (1, 2), (2, 2)],
    "blinker": [(0, 0), (1, 0), (2, 0)],
    "toad": [(1, 0), (2, 0), (3, 0), (0, 1), (1, 1), (2, 1)],
    "glider": [(1, 0), (2, 1), (0, 2), (1, 2), (2, 2)],
    "lwss": [
        (1, 0), (4, 0), (0, 1), (0, 2), (4, 2),
        (0, 3), (1, 3), (2, 3), (3, 3),
    ],
    "r_pentomino": [(1, 0), (2, 0), (0, 1), (1, 1), (1, 2)],
    "acorn": [(1, 0), (3, 1), (0, 2), (1, 2), (4, 2), (5, 2), (6, 2)],
    "diehard": [(6, 0), (0, 1), (1, 1), (1, 2), (5, 2), (6, 2), (7, 2)],
    "pulsar": [
        (2, 0), (3, 0), (4, 0), (8, 0), (9, 0), (10, 0),
        (0, 2), (5, 2), (7, 2), (12, 2),
        (0, 3), (5, 3), (7, 3), (12, 3),
        (0, 4), (5, 4), (7, 4), (12, 4),
        (2, 5), (3, 5), (4, 5), (8, 5), (9, 5), (10, 5),
        (2, 7), (3, 7), (4, 7), (8, 7), (9, 7), (10, 7),
        (0, 8), (5, 8), (7, 8), (12, 8),
        (0, 9), (5, 9), (7, 9), (12, 9),
        (0, 10), (5, 10), (7, 10), (12, 10),
        (2, 12), (3, 12), (4, 12), (8, 12), (9, 12), (10, 12),
    ],
}

STILL_LIFES = ["block", "beehive"]
OSCILLATORS = ["blinker", "toad", "pulsar"]
TRAVELLERS = ["glider", "lwss"]
METHUSELAHS = ["r_pentomino", "acorn", "diehard"]


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SimulationConfig:
    # Acceleration
    use_accelerator: bool = False
    backend: str = BACKEND_AUTO  # {"auto", "numpy", "cupy"}

    # Neighbor-hint buffer; None sizes it to 9 x candidates and grows it
    neighbor_buffer_cells: int | None = None
    # Trust hints only if len(hints) >= hint_coverage * changed * 9; never below 1.0
    hint_coverage: float = 1.0

    # Telemetry
    stats_log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.backend not in BACKENDS:
            raise ValueError(
                f"backend must be one of {', '.join(BACKENDS)}, got {self.backend!r}"
            )
        if self.neighbor_buffer_cells is not None and self.neighbor_buffer_cells < 0:
            raise ValueError("neighbor_buffer_cells must be >= 0")
        if not self.hint_coverage >= 1.0:
            raise ValueError("hint_coverage must be >= 1.0")


# ═══════════════════════════════════════════════════════════════════════
#  Coordinates and sparse sets
# ═══════════════════════════════════════════════════════════════════════

class Coordinate(NamedTuple):
    """Immutable (x, y) cell address. Hashes and compares like a plain tuple."""

    x: int
    y: int

    def offset(self, dx: int, dy: int) -> Coordinate:
        return Coordinate(self.x + dx, self.y + dy)

    def neighbors(self) -> Iterator[Coordinate]:
        """The 8 Moore neighbors."""
        x, y = self
        for dx, dy in MOORE_OFFSETS:
            yield Coordinate(x + dx, y + dy)

    def block(self) -> Iterator[Coordinate]:
        """The 3x3 neighborhood, self included."""
        x, y = self
        for dx, dy in BLOCK_OFFSETS:
            yield Coordinate(x + dx, y + dy)

    def in_int32(self) -> bool:
        return INT32_MIN <= self.x <= INT32_MAX and INT32_MIN <= self.y <= INT32_MAX


class CellSet:
    """Unordered set of coordinates. Iteration order means nothing."""

    __slots__ = ("_cells",)

    def __init__(self, cells: Iterable[tuple[int, int]] = ()) -> None:
        self._cells: set[tuple[int, int]] = {Coordinate(*c) for c in cells}

    def insert(self, cell: tuple[int, int]) -> None:
        self._cells.add(Coordinate(*cell))

    def discard(self, cell: tuple[int, int]) -> None:
        self._cells.discard(cell)

    def contains(self, cell: tuple[int, int]) -> bool:
        return cell in self._cells

    def clear(self) -> None:
        self._cells.clear()

    def size(self) -> int:
        return len(self._cells)

    def union_with(self, other: CellSet | Iterable[tuple[int, int]]) -> None:
        if isinstance(other, CellSet):
            self._cells |= other._cells
        else:
            self._cells.update(Coordinate(*c) for c in other)

    def copy(self) -> CellSet:
        dup = CellSet()
        dup._cells = set(self._cells)
        return dup

    def as_set(self) -> set[tuple[int, int]]:
        return set(self._cells)

    @classmethod
    def _wrap(cls, cells: set[tuple[int, int]]) -> CellSet:
        out = cls()
        out._cells = cells
        return out

    def __contains__(self, cell: object) -> bool:
        return cell in self._cells

    def __iter__(self) -> Iterator[tuple[int, int]]:
        return iter(self._cells)

    def __len__(self) -> int:
        return len(self._cells)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, CellSet):
            return self._cells == other._cells
        if isinstance(other, (set, frozenset)):
            return self._cells == other
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"CellSet({len(self._cells)} cells)"


def add_living_cell(active: CellSet, candidates: CellSet, cell: tuple[int, int]) -> None:
    """Make ``cell`` alive and mark its whole 3x3 block as candidates."""
    coord = Coordinate(*cell)
    active.insert(coord)
    candidates.union_with(coord.block())


# ═══════════════════════════════════════════════════════════════════════
#  Sequential engine
# ═══════════════════════════════════════════════════════════════════════

def cpu_step(active: CellSet, candidates: CellSet) -> tuple[CellSet, CellSet]:
    """Advance one generation, evaluating only the candidate cells.

    Returns fresh (next_active, next_candidates); the inputs are untouched.
    Every live cell stays a candidate, and any cell that is born or dies
    adds its 3x3 block to the next candidate set.
    """
    alive = active._cells
    next_alive: set[tuple[int, int]] = set()
    next_cand: set[tuple[int, int]] = set(alive)

    for cell in candidates._cells:
        x, y = cell
        n = 0
        for dx, dy in MOORE_OFFSETS:
            if (x + dx, y + dy) in alive:
                n += 1

        if cell in alive:
            if n in SURVIVE:
                next_alive.add(cell)
                continue
        elif n in BIRTH:
            next_alive.add(cell)
        else:
            continue
        # state flipped (death or birth)
        next_cand.update(Coordinate(x + dx, y + dy) for dx, dy in BLOCK_OFFSETS)

    return CellSet._wrap(next_alive), CellSet._wrap(next_cand)


def merge_classification(
    active: CellSet,
    result: Classification,
    hint_coverage: float = 1.0,
) -> tuple[CellSet, CellSet]:
    """Fold an accelerator classification into next-generation sets.

    Neighbor hints are used only when the buffer did not overflow and they
    cover every changed cell; otherwise the 3x3 expansion of the changed
    cells is rebuilt here.
    """
    coords = result.coords
    next_alive = {Coordinate(x, y) for x, y in coords[result.will_be_alive].tolist()}
    next_cand: set[tuple[int, int]] = set(active._cells)

    changed = result.changed
    n_changed = int(np.count_nonzero(changed))
    required = max(hint_coverage, 1.0) * n_changed * HINTS_PER_CELL
    if not result.neighbor_overflow and len(result.hints) >= required:
        next_cand.update(Coordinate(x, y) for x, y in result.hints.tolist())
    else:
        for x, y in coords[changed].tolist():
            next_cand.update(Coordinate(x + dx, y + dy) for dx, dy in BLOCK_OFFSETS)

    return CellSet._wrap(next_alive), CellSet._wrap(next_cand)


# ═══════════════════════════════════════════════════════════════════════
#  Hybrid orchestrator
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class AccelerationContext:
    """Toggle and last-step state, owned per stepper."""

    enabled: bool = False
    last_used_accelerator: bool = False
    last_error: str = ""
    last_stepper: str = ""
    fallbacks: int = 0


def _run_cpu(
    stepper: HybridStepper, active: CellSet, candidates: CellSet
) -> tuple[CellSet, CellSet]:
    stepper.context.last_used_accelerator = False
    stepper.context.last_stepper = STEPPER_CPU
    stepper.bridge.diagnostics.used_accelerator = False
    return cpu_step(active, candidates)


def _run_accelerated(
    stepper: HybridStepper, active: CellSet, candidates: CellSet
) -> tuple[CellSet, CellSet]:
    ctx = stepper.context
    result = stepper.bridge.compute_classifications(active, candidates)
    if not result.used_accelerator or result.error:
        stepper._record_fallback(result.error or "Accelerator reported no result")
        return _run_cpu(stepper, active, candidates)

    ctx.last_used_accelerator = True
    ctx.last_stepper = STEPPER_ACCELERATED
    return merge_classification(active, result, stepper.config.hint_coverage)


_STEPPERS: dict[str, Callable[[HybridStepper, CellSet, CellSet], tuple[CellSet, CellSet]]] = {
    STEPPER_CPU: _run_cpu,
    STEPPER_ACCELERATED: _run_accelerated,
}


class HybridStepper:
    """
    Picks the sequential or accelerated engine per step.

    The accelerated path falls back to the sequential engine on the same
    inputs whenever the bridge reports an error, so callers always get the
    sequential engine's answer.
    """

    def __init__(
        self,
        config: SimulationConfig | None = None,
        bridge: AcceleratorBridge | None = None,
    ) -> None:
        self.config: SimulationConfig = config or SimulationConfig()
        self.bridge: AcceleratorBridge = bridge or AcceleratorBridge(
            backend=self.config.backend,
            neighbor_buffer_cells=self.config.neighbor_buffer_cells,
        )
        self.context: AccelerationContext = AccelerationContext(
            enabled=self.config.use_accelerator
        )

    # ── Toggle / availability ───────────────────────────────────────

    def set_acceleration_enabled(self, enabled: bool) -> None:
        self.context.enabled = bool(enabled)

    @property
    def acceleration_enabled(self) -> bool:
        return self.context.enabled

    def accelerator_available(self) -> bool:
        return self.bridge.is_available()

    def select_stepper(self) -> str:
        if not self.context.enabled:
            return STEPPER_CPU
        if not self.bridge.is_available():
            self._record_fallback(self.bridge.unavailable_reason or "Accelerator unavailable")
            return STEPPER_CPU
        return STEPPER_ACCELERATED

    # ── Last-step state ─────────────────────────────────────────────

    @property
    def last_step_used_accelerator(self) -> bool:
        return self.context.last_used_accelerator

    @property
    def last_error(self) -> str:
        return self.context.last_error

    def clear_error(self) -> None:
        self.context.last_error = ""

    def _record_fallback(self, message: str) -> None:
        if message != self.context.last_error:
            logger.warning("accelerator fallback: %s", message)
        else:
            logger.debug("accelerator fallback: %s", message)
        self.context.last_used_accelerator = False
        self.context.last_error = message
        self.context.fallbacks += 1

    # ── Diagnostics ─────────────────────────────────────────────────

    def reset_diagnostics(self) -> None:
        self.bridge.reset_timings()

    def diagnostics(self) -> AccelerationDiagnostics:
        return self.bridge.timings()

    def reset_caches(self) -> None:
        self.bridge.reset_caches()

    # ── Stepping ────────────────────────────────────────────────────

    def calculate_next_generation(
        self, active: CellSet, candidates: CellSet
    ) -> tuple[CellSet, CellSet]:
        return _STEPPERS[self.select_stepper()](self, active, candidates)


# ═══════════════════════════════════════════════════════════════════════
#  Stats logger
# ═══════════════════════════════════════════════════════════════════════

class StatsLogger:
    """Writes per-generation engine telemetry to CSV."""

    HEADER: ClassVar[str] = (
        "gen,time_s,population,candidates,path,prepare_ms,upload_ms,"
        "dispatch_ms,download_ms,total_ms,overflow,event\n"
    )

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh: IO[str] | None = None
        self._t0: float = time.monotonic()

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    def open(self) -> None:
        try:
            self._fh = open(self._path, "w")
            self._fh.write(self.HEADER)
            self._fh.flush()
        except OSError as exc:
            logger.warning("stats log disabled (%s): %s", self._path, exc)
            self._fh = None

    def log(
        self,
        gen: int,
        pop: int,
        candidates: int,
        path: str,
        diag: AccelerationDiagnostics,
        event: str = "",
    ) -> None:
        if self._fh is None:
            return
        t = time.monotonic() - self._t0
        self._fh.write(
            f"{gen},{t:.3f},{pop},{candidates},{path},"
            f"{diag.prepare_ms:.3f},{diag.upload_ms:.3f},{diag.dispatch_ms:.3f},"
            f"{diag.download_ms:.3f},{diag.total_ms:.3f},"
            f"{int(diag.neighbor_overflow)},{event}\n"
        )
        if event or gen % 50 == 0:
            try:
                self._fh.flush()
            except OSError:
                pass

    def close(self) -> None:
        if self._fh is not None:
            try:
                self._fh.close()
            except OSError:
                pass
            self._fh = None


# ═══════════════════════════════════════════════════════════════════════
#  The world
# ═══════════════════════════════════════════════════════════════════════

class SparseWorld:
    """
    One simulation: the live/candidate pair plus its stepper.

    Each step builds fresh sets and swaps them in, so a failed accelerator
    attempt never leaves the world half-updated.
    """

    def __init__(
        self,
        config: SimulationConfig | None = None,
        stepper: HybridStepper | None = None,
    ) -> None:
        self.config: SimulationConfig = config or SimulationConfig()
        self.stepper: HybridStepper = stepper or HybridStepper(self.config)

        self.active: CellSet = CellSet()
        self.candidates: CellSet = CellSet()
        self.generation: int = 0

        self.pop_history: deque[int] = deque(maxlen=500)
        self.last_path: str = ""

        self.stats: StatsLogger | None = None
        if self.config.stats_log_path is not None:
            self.stats = StatsLogger(self.config.stats_log_path)
            self.stats.open()

    # ── Editing ─────────────────────────────────────────────────────

    def add_cell(self, cell: tuple[int, int]) -> None:
        add_living_cell(self.active, self.candidates, cell)

    def add_cells(self, cells: Iterable[tuple[int, int]]) -> None:
        for cell in cells:
            add_living_cell(self.active, self.candidates, cell)

    def remove_cell(self, cell: tuple[int, int]) -> None:
        coord = Coordinate(*cell)
        if coord in self.active:
            self.active.discard(coord)
            # a death is a state change: its neighbors need re-evaluation
            self.candidates.union_with(coord.block())

    def toggle_cell(self, cell: tuple[int, int]) -> None:
        if cell in self.active:
            self.remove_cell(cell)
        else:
            self.add_cell(cell)

    def clear(self) -> None:
        self.active.clear()
        self.candidates.clear()
        self.generation = 0
        self.pop_history.clear()

    # ── Queries ─────────────────────────────────────────────────────

    def is_alive(self, cell: tuple[int, int]) -> bool:
        return cell in self.active

    def population(self) -> int:
        return len(self.active)

    def bounds(self) -> tuple[int, int, int, int] | None:
        """(min_x, min_y, max_x, max_y) of live cells, or None when empty."""
        if not self.active:
            return None
        xs = [c[0] for c in self.active]
        ys = [c[1] for c in self.active]
        return min(xs), min(ys), max(xs), max(ys)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SparseWorld):
            return NotImplemented
        return self.active == other.active

    __hash__ = None  # type: ignore[assignment]

    # ── Simulation ──────────────────────────────────────────────────

    def step(self, event: str = "") -> str:
        """Advance one generation. Returns the stepper tag that ran."""
        self.active, self.candidates = self.stepper.calculate_next_generation(
            self.active, self.candidates
        )
        self.generation += 1
        self.last_path = self.stepper.context.last_stepper

        pop = len(self.active)
        self.pop_history.append(pop)
        if self.stats is not None:
            self.stats.log(
                self.generation, pop, len(self.candidates), self.last_path,
                self.stepper.diagnostics(), event,
            )
        return self.last_path

    def run(self, generations: int) -> None:
        for _ in range(generations):
            self.step()

    def close(self) -> None:
        if self.stats is not None:
            self.stats.close()


# ═══════════════════════════════════════════════════════════════════════
#  Seeding
# ═══════════════════════════════════════════════════════════════════════

def place_pattern(
    world: SparseWorld, name: str, x: int, y: int, rotation: int = 0
) -> None:
    """Stamp a named pattern with its origin at (x, y), rotated 90° ``rotation`` times."""
    cells = PATTERNS[name]
    for dx, dy in cells:
        for _ in range(rotation % 4):
            dx, dy = -dy, dx
        world.add_cell((x + dx, y + dy))


def paint_brush(world: SparseWorld, center: tuple[int, int], size: int) -> None:
    """Square brush: size 1 is one cell, size 2 a 3x3 square, and so on."""
    cx, cy = center
    for dy in range(-size + 1, size):
        for dx in range(-size + 1, size):
            world.add_cell((cx + dx, cy + dy))


def seed_random_cluster(
    world: SparseWorld,
    center: tuple[int, int],
    radius: int,
    seed: int | None = None,
    density: float = 1 / 3,
) -> int:
    """Randomly fill the (2r+1)^2 square around center. Returns cells added."""
    rng = random.Random(seed)
    cx, cy = center
    added = 0
    for dy in range(-radius, radius + 1):
        for dx in range(-radius, radius + 1):
            if rng.random() < density:
                world.add_cell((cx + dx, cy + dy))
                added += 1
    return added

from __future__ import annotations

import pytest

from sparselife import (
    INT32_MAX,
    INT32_MIN,
    PATTERNS,
    CellSet,
    Coordinate,
    SimulationConfig,
    SparseWorld,
    add_living_cell,
    cpu_step,
    paint_brush,
    place_pattern,
    seed_random_cluster,
)
from sparselife_bench import cells_to_dense, dense_step, dense_to_cells
from tests.conftest import make_world, random_cells


def block_of(cell):
    x, y = cell
    return {(x + dx, y + dy) for dy in (-1, 0, 1) for dx in (-1, 0, 1)}


def seeded(world: SparseWorld, cells) -> SparseWorld:
    world.add_cells(cells)
    return world


# ── Sparse sets ─────────────────────────────────────────────────────────

def test_cell_set_primitives() -> None:
    cells = CellSet()
    cells.insert((1, 2))
    cells.insert(Coordinate(1, 2))
    cells.insert((-5, INT32_MAX))

    assert cells.size() == 2
    assert cells.contains((1, 2))
    assert (-5, INT32_MAX) in cells
    assert not cells.contains((2, 1))

    other = CellSet([(0, 0), (1, 2)])
    cells.union_with(other)
    assert cells == {(1, 2), (-5, INT32_MAX), (0, 0)}

    cells.union_with([(9, 9)])
    assert len(cells) == 4

    cells.clear()
    assert cells.size() == 0


def test_coordinate_hash_and_order_cover_int32_extremes() -> None:
    corners = [
        Coordinate(INT32_MIN, INT32_MIN),
        Coordinate(INT32_MIN, INT32_MAX),
        Coordinate(INT32_MAX, INT32_MIN),
        Coordinate(INT32_MAX, INT32_MAX),
        Coordinate(0, 0),
        Coordinate(-1, -1),
    ]
    assert len(set(corners)) == len(corners)
    assert Coordinate(INT32_MAX, 0) == (INT32_MAX, 0)
    assert hash(Coordinate(-1, 7)) == hash((-1, 7))
    assert sorted(corners)[0] == (INT32_MIN, INT32_MIN)
    assert Coordinate(INT32_MAX, 0).offset(1, 0) == (INT32_MAX + 1, 0)


def test_add_living_cell_seeds_full_block() -> None:
    active, candidates = CellSet(), CellSet()
    add_living_cell(active, candidates, (4, -7))

    assert active == {(4, -7)}
    assert candidates == block_of((4, -7))


# ── Rules ───────────────────────────────────────────────────────────────

def test_isolated_cell_dies(world: SparseWorld) -> None:
    seeded(world, [(0, 0)]).step()
    assert world.population() == 0


def test_dead_cell_with_three_neighbors_is_born(world: SparseWorld) -> None:
    seeded(world, [(-1, 0), (1, 0), (0, 1)]).step()
    assert world.is_alive((0, 0))


def test_dead_cell_with_two_neighbors_stays_dead(world: SparseWorld) -> None:
    seeded(world, [(-1, 0), (1, 0)]).step()
    assert not world.is_alive((0, 0))


@pytest.mark.parametrize(
    "neighbors, survives",
    [
        ([(1, 0)], False),
        ([(-1, 0), (1, 0)], True),
        ([(-1, 0), (1, 0), (0, 1)], True),
        ([(-1, 0), (1, 0), (0, 1), (0, -1)], False),
        ([(-1, -1), (1, 1)], True),
    ],
)
def test_living_cell_survival(world: SparseWorld, neighbors, survives) -> None:
    seeded(world, [(0, 0), *neighbors]).step()
    assert world.is_alive((0, 0)) is survives


def test_fully_surrounded_cell_dies(world: SparseWorld) -> None:
    seeded(world, block_of((0, 0))).step()
    assert not world.is_alive((0, 0))


# ── Patterns ────────────────────────────────────────────────────────────

def test_block_is_stable(world: SparseWorld) -> None:
    block = {(0, 0), (1, 0), (0, 1), (1, 1)}
    seeded(world, block)
    for _ in range(5):
        world.step()
        assert world.active == block


def test_beehive_is_stable(world: SparseWorld) -> None:
    place_pattern(world, "beehive", 0, 0)
    start = world.active.as_set()
    world.run(3)
    assert world.active == start


def test_blinker_oscillates(world: SparseWorld) -> None:
    start = {(0, 0), (1, 0), (2, 0)}
    seeded(world, start)

    world.step()
    assert world.active == {(1, -1), (1, 0), (1, 1)}
    world.step()
    assert world.active == start
    world.run(2)
    assert world.active == start


def test_toad_has_period_two(world: SparseWorld) -> None:
    place_pattern(world, "toad", 0, 0)
    start = world.active.as_set()
    world.step()
    assert world.active != start
    world.step()
    assert world.active == start


def test_glider_translates(world: SparseWorld) -> None:
    start = [(1, 0), (2, 1), (0, 2), (1, 2), (2, 2)]
    seeded(world, start)
    world.run(4)

    assert world.active == {(x + 1, y + 1) for x, y in start}
    assert world.population() == 5


@pytest.mark.parametrize(
    "origin",
    [
        (INT32_MAX // 2, INT32_MAX // 2),
        (-(10**9), -(10**9)),
        (INT32_MIN + 3, INT32_MIN + 3),
        (INT32_MAX - 20, -5),
    ],
)
def test_extreme_coordinates_match_origin(origin) -> None:
    ox, oy = origin
    cells = [(1, 0), (2, 1), (0, 2), (1, 2), (2, 2), (10, 10), (11, 10), (12, 10)]

    for accelerated in (False, True):
        near = seeded(make_world(accelerated), cells)
        far = seeded(make_world(accelerated), [(x + ox, y + oy) for x, y in cells])
        for _ in range(8):
            near.step()
            far.step()
            assert far.active == {(x + ox, y + oy) for x, y in near.active}


def test_no_wraparound_at_int32_edges(world: SparseWorld) -> None:
    # Under wraparound (INT32_MIN, 1) would see three neighbors and be born
    seeded(world, [(INT32_MAX, 0), (INT32_MAX, 1), (INT32_MIN, 0)]).step()
    assert world.population() == 0


# ── Candidate bookkeeping ───────────────────────────────────────────────

def test_cpu_step_candidates_follow_construction_rule() -> None:
    world = seeded(make_world(False), random_cells(3, 120, 24))
    for _ in range(6):
        before = world.active.as_set()
        next_active, next_candidates = cpu_step(world.active, world.candidates)
        changed = before ^ next_active.as_set()

        expected = set(before)
        for cell in changed:
            expected |= block_of(cell)
        assert next_candidates == expected

        world.active, world.candidates = next_active, next_candidates


def test_cpu_step_does_not_mutate_inputs() -> None:
    active, candidates = CellSet(), CellSet()
    for cell in [(0, 0), (1, 0), (2, 0)]:
        add_living_cell(active, candidates, cell)
    active_before, candidates_before = active.as_set(), candidates.as_set()

    cpu_step(active, candidates)

    assert active == active_before
    assert candidates == candidates_before


def test_step_result_independent_of_insertion_order() -> None:
    cells = random_cells(11, 80, 16)
    forward_a, forward_c = CellSet(), CellSet()
    backward_a, backward_c = CellSet(), CellSet()
    for cell in cells:
        add_living_cell(forward_a, forward_c, cell)
    for cell in reversed(cells):
        add_living_cell(backward_a, backward_c, cell)

    assert cpu_step(forward_a, forward_c) == cpu_step(backward_a, backward_c)


def test_candidates_cover_every_change_against_dense_rescan(world: SparseWorld) -> None:
    size, steps = 40, 12
    seeded(world, random_cells(5, 300, size))
    pad = steps + 2
    origin, shape = (-pad, -pad), (size + 2 * pad, size + 2 * pad)

    for _ in range(steps):
        grid = cells_to_dense(world.active, origin, shape)
        truly_changed = dense_to_cells(grid ^ dense_step(grid), origin)
        assert truly_changed <= world.candidates.as_set()
        world.step()


# ── World editing ───────────────────────────────────────────────────────

def test_remove_cell_marks_neighborhood(cpu_world: SparseWorld) -> None:
    cpu_world.add_cells([(0, 0), (1, 0), (2, 0)])
    cpu_world.run(1)  # vertical blinker; candidates trimmed to the changes
    cpu_world.remove_cell((1, 1))

    assert not cpu_world.is_alive((1, 1))
    assert block_of((1, 1)) <= cpu_world.candidates.as_set()
    cpu_world.step()
    # two-cell remnant dies out
    assert cpu_world.population() == 0


def test_toggle_cell(cpu_world: SparseWorld) -> None:
    cpu_world.toggle_cell((3, 3))
    assert cpu_world.is_alive((3, 3))
    cpu_world.toggle_cell((3, 3))
    assert not cpu_world.is_alive((3, 3))


def test_clear_and_bounds(cpu_world: SparseWorld) -> None:
    assert cpu_world.bounds() is None
    cpu_world.add_cells([(-4, 2), (7, -3), (0, 0)])
    assert cpu_world.bounds() == (-4, -3, 7, 2)

    cpu_world.run(2)
    cpu_world.clear()
    assert cpu_world.population() == 0
    assert cpu_world.candidates.size() == 0
    assert cpu_world.generation == 0


def test_worlds_compare_by_active_cells() -> None:
    a = seeded(make_world(False), [(0, 0), (1, 1)])
    b = seeded(make_world(True), [(1, 1), (0, 0)])
    assert a == b


# ── Seeding ─────────────────────────────────────────────────────────────

def test_paint_brush_sizes(cpu_world: SparseWorld) -> None:
    paint_brush(cpu_world, (0, 0), 1)
    assert cpu_world.population() == 1

    cpu_world.clear()
    paint_brush(cpu_world, (0, 0), 2)
    assert cpu_world.active == block_of((0, 0))


def test_random_cluster_is_reproducible() -> None:
    a, b = make_world(False), make_world(False)
    added = seed_random_cluster(a, (0, 0), 5, seed=12345)
    seed_random_cluster(b, (0, 0), 5, seed=12345)

    assert a.active == b.active
    assert added == a.population()
    assert 0 < added <= 121


def test_place_pattern_rotation_keeps_shape(cpu_world: SparseWorld) -> None:
    for rotation in range(4):
        cpu_world.clear()
        place_pattern(cpu_world, "glider", 100, -100, rotation)
        assert cpu_world.population() == len(PATTERNS["glider"])
        cpu_world.run(4)
        assert cpu_world.population() == 5


def test_place_unknown_pattern(cpu_world: SparseWorld) -> None:
    with pytest.raises(KeyError):
        place_pattern(cpu_world, "no-such-thing", 0, 0)


# ── Config and telemetry ────────────────────────────────────────────────

@pytest.mark.parametrize(
    "kwargs",
    [
        {"backend": "opencl"},
        {"neighbor_buffer_cells": -1},
        {"hint_coverage": 0.0},
        {"hint_coverage": 0.5},
    ],
)
def test_config_rejects_bad_values(kwargs) -> None:
    with pytest.raises(ValueError):
        SimulationConfig(**kwargs)


def test_stats_log_records_each_generation(tmp_path) -> None:
    log_path = tmp_path / "stats.csv"
    world = SparseWorld(SimulationConfig(stats_log_path=log_path))
    place_pattern(world, "blinker", 0, 0)
    world.run(3)
    world.step(event="probe")
    world.close()

    lines = log_path.read_text().splitlines()
    assert lines[0].startswith("gen,time_s,population,candidates,path")
    assert len(lines) == 5
    fields = lines[1].split(",")
    assert fields[0] == "1"
    assert fields[2] == "3"
    assert fields[4] == "cpu"
    assert lines[-1].endswith(",probe")


def test_stats_log_tolerates_unwritable_path(tmp_path) -> None:
    world = SparseWorld(SimulationConfig(stats_log_path=tmp_path / "missing" / "x.csv"))
    assert world.stats is not None and not world.stats.is_open
    world.add_cell((0, 0))
    world.step()
    world.close()

from __future__ import annotations

import numpy as np
import pytest

from sparselife import HybridStepper, SimulationConfig, SparseWorld


def make_world(accelerated: bool, **overrides) -> SparseWorld:
    config = SimulationConfig(use_accelerator=accelerated, backend="numpy", **overrides)
    return SparseWorld(config, HybridStepper(config))


def random_cells(seed: int, count: int, size: int, origin: tuple[int, int] = (0, 0)):
    rng = np.random.default_rng(seed)
    flat = rng.choice(size * size, size=count, replace=False)
    ox, oy = origin
    return [(int(i % size) + ox, int(i // size) + oy) for i in flat]


@pytest.fixture
def cpu_world() -> SparseWorld:
    return make_world(False)


@pytest.fixture
def accel_world() -> SparseWorld:
    return make_world(True)


@pytest.fixture(params=["cpu", "accelerated"])
def world(request) -> SparseWorld:
    return make_world(request.param == "accelerated")

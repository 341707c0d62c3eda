import numpy as np
import pytest

from gridlocate.config import GridLocateConfig
from gridlocate.smoothing import (
    DirichletSmoothing,
    JelinekMercerSmoothing,
    PseudoGoodTuringSmoothing,
    smoothing_from_config,
)


def test_jelinek_mercer_constant_mass():
    assert JelinekMercerSmoothing(factor=0.3).unseen_mass(1000, [1, 2, 997]) == 0.3
    assert JelinekMercerSmoothing(factor=0.3).unseen_mass(0, []) == 1.0


def test_dirichlet_mass_shrinks_with_length():
    s = DirichletSmoothing(mu=500.0)
    assert s.unseen_mass(0, []) == 1.0
    assert s.unseen_mass(500, []) == pytest.approx(0.5)
    assert s.unseen_mass(5000, []) < s.unseen_mass(500, [])


@pytest.mark.parametrize(
    "num_tokens, counts, expected",
    [
        (0, [], 1.0),
        (10, [1, 1, 8], 0.2),
        (1000, [1000], 0.01),
        (4, [1, 1, 1, 1], 0.5),
    ],
)
def test_pseudo_good_turing(num_tokens, counts, expected):
    assert PseudoGoodTuringSmoothing().unseen_mass(num_tokens, counts) == pytest.approx(expected)


def test_combine_backoff():
    s = JelinekMercerSmoothing(factor=0.2)
    assert s.combine(0.5, 0.0, 0.2, True) == pytest.approx(0.4)
    assert s.combine(0.0, 0.1, 0.2, False) == pytest.approx(0.02)


def test_combine_interpolate():
    s = JelinekMercerSmoothing(interpolate=True, factor=0.2)
    assert s.combine(0.5, 0.1, 0.2, True) == pytest.approx(0.42)


def test_combine_arrays():
    s = DirichletSmoothing()
    out = s.combine(np.array([0.5, 0.0]), np.array([0.0, 0.3]), 0.1, np.array([True, False]))
    assert np.allclose(out, [0.45, 0.03])


def test_from_config():
    config = GridLocateConfig(smoothing="dirichlet", dirichlet_factor=100.0, interpolate=True)
    s = smoothing_from_config(config)
    assert isinstance(s, DirichletSmoothing)
    assert s.mu == 100.0
    assert s.interpolate

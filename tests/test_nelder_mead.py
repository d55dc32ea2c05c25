from __future__ import annotations

import numpy as np
import pytest

from cryofit.fitting.nelder_mead import nelder_mead, simplex_diameter


def _bowl(x: np.ndarray) -> float:
    return (x[0] - 3.0) ** 2 + 2.0 * (x[1] + 1.0) ** 2


def test_quadratic_bowl_converges() -> None:
    res = nelder_mead(_bowl, [0.0, 0.0], initial_step=1.0, tolerance=1e-6, max_iters=500)
    assert res.success
    assert res.nit < 500
    assert np.allclose(res.x, [3.0, -1.0], atol=1e-4)
    assert res.fun == pytest.approx(0.0, abs=1e-8)
    assert res.nfev > res.nit


def test_shrink_steps_never_grow_the_simplex() -> None:
    # only the starting point scores well, so every iteration has to shrink
    def spike(x: np.ndarray) -> float:
        return 0.0 if not np.any(x) else 1.0

    res = nelder_mead(spike, [0.0, 0.0], initial_step=1.0, tolerance=1e-3, max_iters=100)

    assert res.success
    assert np.array_equal(res.x, [0.0, 0.0])
    ops = [op for op, _ in res.history]
    assert set(ops) == {"shrink"}
    diameters = [np.sqrt(2.0)] + [d for _, d in res.history]
    assert all(b <= a for a, b in zip(diameters, diameters[1:]))
    assert diameters[-1] < 1e-3


def test_iteration_budget_is_respected() -> None:
    calls = []

    def objective(x: np.ndarray) -> float:
        calls.append(x.copy())
        return float(np.sum(x * x))

    res = nelder_mead(objective, [5.0, 5.0, 5.0], initial_step=1.0, tolerance=0.0, max_iters=3)
    assert not res.success
    assert res.nit == 3
    assert len(res.history) == 3
    assert res.nfev == len(calls)


def test_callback_sees_sorted_simplex() -> None:
    seen = []

    def callback(iteration, simplex, values):
        seen.append((iteration, values))
        assert simplex.shape == (3, 2)

    nelder_mead(_bowl, [0.0, 0.0], 0.5, 1e-2, 20, callback=callback)
    assert seen[0][0] == 0
    for _, values in seen:
        assert np.all(np.diff(values) >= 0.0)


def test_one_dimensional_problem() -> None:
    res = nelder_mead(lambda x: (x[0] + 2.5) ** 2, [10.0], 4.0, 1e-5, 200)
    assert res.success
    assert res.x[0] == pytest.approx(-2.5, abs=1e-4)


def test_simplex_diameter() -> None:
    simplex = np.array([[0.0, 0.0], [3.0, 0.0], [0.0, 4.0]])
    assert simplex_diameter(simplex) == pytest.approx(5.0)


def test_empty_start_point_raises() -> None:
    with pytest.raises(ValueError):
        nelder_mead(_bowl, [], 1.0, 1e-3, 10)

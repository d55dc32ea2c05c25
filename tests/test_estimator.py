from __future__ import annotations

import numpy as np
import pytest
from scipy.optimize import OptimizeResult

import cryofit.motion.estimator as estimator_mod
from conftest import FakeSolver, make_tables
from cryofit.config import ConfigurationError, MotionParamOptions
from cryofit.motion.estimator import (
    DISABLED_SIGMA,
    MotionParamEstimator,
    round_to_resolution,
    select_micrographs,
)
from cryofit.types import MotionParamResult, MotionSigmas

SEED = 23


def _expected_selection(counts, min_particles, seed):
    keys = np.random.default_rng(seed).random(len(counts))
    selected, total = [], 0
    for m in sorted(range(len(counts)), key=lambda i: keys[i]):
        if counts[m] < 2:
            continue
        selected.append(m)
        total += counts[m]
        if total >= min_particles:
            break
    return selected


def test_selection_excludes_single_particle_micrographs() -> None:
    counts = [1, 5, 10]
    selected, total = select_micrographs(counts, 12, np.random.default_rng(SEED))

    assert sorted(selected) == [1, 2]
    assert total == 15
    assert selected == _expected_selection(counts, 12, SEED)


def test_selection_is_reproducible_for_a_seed() -> None:
    counts = [4, 2, 7, 1, 3, 9, 5]
    first, _ = select_micrographs(counts, 10, np.random.default_rng(5))
    second, _ = select_micrographs(counts, 10, np.random.default_rng(5))
    assert first == second == _expected_selection(counts, 10, 5)


def test_selection_stops_once_quota_reached() -> None:
    selected, total = select_micrographs([1, 5, 10], 5, np.random.default_rng(SEED))
    assert len(selected) == 1
    assert total >= 5


def test_selection_exhausts_list_when_quota_unmet() -> None:
    selected, total = select_micrographs([1, 2, 3], 100, np.random.default_rng(0))
    assert sorted(selected) == [1, 2]
    assert total == 5


def test_round_to_resolution() -> None:
    rounded = round_to_resolution(MotionSigmas(0.6123, 3002.6, 5.00031), conv=10.0)
    assert rounded.s_vel == pytest.approx(0.61)
    assert rounded.s_div == pytest.approx(3005.0)
    assert rounded.s_acc == pytest.approx(5.0005)


def _options(**overrides) -> MotionParamOptions:
    values = dict(estimate_two=True, k_cutoff=3.0, min_particles=12, max_iters=4, max_range=4)
    values.update(overrides)
    return MotionParamOptions(**values)


def _initialised(options, solver, reference, obs_model, counts=(1, 5, 10)):
    estimator = MotionParamEstimator(options)
    estimator.init(make_tables(counts), solver, reference, obs_model, 16, solver.fc)
    return estimator


def test_init_selects_with_configured_seed(solver, reference, obs_model) -> None:
    estimator = _initialised(_options(), solver, reference, obs_model)
    assert estimator.selected == _expected_selection([1, 5, 10], 12, SEED)
    assert [len(t) for t in estimator.tables] == [[1, 5, 10][m] for m in estimator.selected]


def test_init_resolves_frequencies(solver, reference, obs_model) -> None:
    estimator = _initialised(_options(k_cutoff=-1.0, k_cutoff_angst=4.0), solver, reference, obs_model)
    assert estimator.k_cutoff == pytest.approx(4.0)
    assert estimator.k_eval == pytest.approx(4.0)

    estimator = _initialised(_options(k_eval_angst=8.0), solver, reference, obs_model)
    assert estimator.k_cutoff_angst == pytest.approx(16.0 / 3.0)
    assert estimator.k_eval == pytest.approx(2.0)


@pytest.mark.parametrize(
    "overrides",
    [
        {"estimate_three": True},
        {"k_cutoff": -1.0},
        {"k_cutoff_angst": 4.0},
        {"k_eval": 2.0, "k_eval_angst": 8.0},
    ],
)
def test_invalid_options_raise(overrides, solver, reference, obs_model) -> None:
    with pytest.raises(ConfigurationError):
        _initialised(_options(**overrides), solver, reference, obs_model)


def test_missing_collaborators_raise(reference, obs_model) -> None:
    not_ready = FakeSolver(reference, ready=False)
    with pytest.raises(ConfigurationError):
        _initialised(_options(), not_ready, reference, obs_model)
    with pytest.raises(ConfigurationError):
        MotionParamEstimator(_options()).init(make_tables([2]), None, reference, obs_model, 16, 3)
    with pytest.raises(ConfigurationError):
        _initialised(_options(), FakeSolver(reference), None, obs_model)


def test_run_requires_init() -> None:
    with pytest.raises(ConfigurationError):
        MotionParamEstimator(_options()).run()


def test_nothing_to_do_returns_none(solver, reference, obs_model) -> None:
    options = _options(estimate_two=False, k_cutoff=-1.0)
    estimator = _initialised(options, solver, reference, obs_model)
    assert not estimator.anything_to_do()
    assert estimator.run() is None
    assert solver.loaded == []


def _fake_search(x):
    def search(func, x0, initial_step, tolerance, max_iters, **kwargs):
        return OptimizeResult(x=np.asarray(x, dtype=float), fun=-0.5, nit=1, nfev=1, success=True)
    return search


def test_acceleration_disabled_when_optimum_not_positive(
    monkeypatch, solver, reference, obs_model
) -> None:
    monkeypatch.setattr(estimator_mod, "nelder_mead", _fake_search([612.3, 3002.6, -2000.0]))
    options = _options(estimate_two=False, estimate_three=True)
    result = _initialised(options, solver, reference, obs_model).run()

    assert result.sigmas.s_acc == DISABLED_SIGMA
    assert result.sigmas.s_vel == pytest.approx(0.61)
    assert result.sigmas.s_div == pytest.approx(3005.0)
    assert result.raw.s_acc == pytest.approx(-0.2)
    assert result.score == 0.5
    assert result.n_params == 3


def test_positive_acceleration_is_rounded(monkeypatch, solver, reference, obs_model) -> None:
    monkeypatch.setattr(estimator_mod, "nelder_mead", _fake_search([600.0, 3000.0, 51234.0]))
    options = _options(estimate_two=False, estimate_three=True)
    result = _initialised(options, solver, reference, obs_model).run()
    assert result.sigmas.s_acc == pytest.approx(5.1235)


@pytest.mark.parametrize("s_acc", [5.0, -1.0, -3.5])
def test_two_parameter_mode_reports_fixed_acceleration(
    monkeypatch, solver, reference, obs_model, s_acc
) -> None:
    monkeypatch.setattr(estimator_mod, "nelder_mead", _fake_search([600.0, 3000.0]))
    result = _initialised(_options(s_acc_0=s_acc), solver, reference, obs_model).run()
    assert result.sigmas.s_acc == s_acc
    assert result.n_params == 2


def test_two_parameter_search_end_to_end(solver, reference, obs_model) -> None:
    result = _initialised(_options(), solver, reference, obs_model).run()

    assert isinstance(result, MotionParamResult)
    assert result.n_params == 2
    assert result.n_evaluations >= 3
    assert result.sigmas.s_vel >= 0.0 and result.sigmas.s_div >= 0.0
    assert result.sigmas.s_acc == 5.0
    assert -1.0 <= result.score <= 1.0
    assert result.command_line().startswith("--s_vel ")
    assert sorted(set(solver.loaded)) == ["mic001.mrc", "mic002.mrc"]


def test_unloadable_micrographs_do_not_abort(reference, obs_model) -> None:
    solver = FakeSolver(reference, failing={"mic001.mrc", "mic002.mrc"})
    result = _initialised(_options(max_iters=2), solver, reference, obs_model).run()
    assert result.score == 0.0

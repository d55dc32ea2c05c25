from __future__ import annotations

import numpy as np
import pytest

from conftest import make_tables
from cryofit.motion.alignment_cache import AlignmentCache
from cryofit.motion.objective import (
    HyperparameterObjective,
    ThreeParameterObjective,
    TwoParameterObjective,
    evaluate_params,
    normalize_sigmas,
)
from cryofit.types import MotionSigmas, ScoreSums


def test_score_is_zero_without_self_energy() -> None:
    assert ScoreSums().score() == 0.0
    assert ScoreSums(cross=3.0, self1=0.0, self2=0.0).score() == 0.0
    assert ScoreSums(cross=3.0, self1=2.0, self2=0.0).score() == 0.0


def test_score_is_normalised_cross_term() -> None:
    total = ScoreSums(1.0, 4.0, 1.0)
    total += ScoreSums(2.0, 0.0, 8.0)
    assert (total.cross, total.self1, total.self2) == (3.0, 4.0, 9.0)
    assert total.score() == pytest.approx(0.5)
    assert (ScoreSums(1.0, 1.0, 1.0) + ScoreSums(1.0, 1.0, 1.0)).score() == pytest.approx(1.0)


def test_objective_on_empty_cache_returns_zero(solver) -> None:
    cache = AlignmentCache(16, 3, 4.0, 7.0)
    objective = TwoParameterObjective(cache, solver, s_acc=5.0)
    assert objective(np.array([600.0, 3000.0])) == 0.0
    assert objective.n_evaluations == 1
    assert np.array_equal(evaluate_params(cache, solver, [MotionSigmas(1.0, 1.0, 1.0)] * 2), [0, 0])


def test_two_parameter_mapping() -> None:
    x = TwoParameterObjective.motion_to_problem(0.6, 3000.0)
    assert np.allclose(x, [600.0, 3000.0])

    objective = TwoParameterObjective(None, None, s_acc=-2.0)
    sigmas = objective.problem_to_motion(np.array([-600.0, -1500.0]))
    assert sigmas == MotionSigmas(0.6, 1500.0, -2.0)
    assert objective.n_params == 2


def test_three_parameter_mapping_keeps_acceleration_sign() -> None:
    x = ThreeParameterObjective.motion_to_problem(0.6, 3000.0, 5.0)
    assert np.allclose(x, [600.0, 3000.0, 50000.0])

    objective = ThreeParameterObjective(None, None)
    sigmas = objective.problem_to_motion(np.array([-600.0, 3000.0, -20000.0]))
    assert sigmas.s_vel == pytest.approx(0.6)
    assert sigmas.s_acc == pytest.approx(-2.0)
    assert objective.n_params == 3


def test_base_objective_is_abstract() -> None:
    with pytest.raises(TypeError, match="problem_to_motion"):
        HyperparameterObjective(None, None)


def test_normalize_sigmas_uses_solver_units(solver) -> None:
    solver.normalize_sig_vel = lambda v: v * 2.0
    solver.normalize_sig_div = lambda d: d / 10.0
    solver.normalize_sig_acc = lambda a: a + 1.0
    assert normalize_sigmas(solver, MotionSigmas(1.0, 100.0, 3.0)) == MotionSigmas(2.0, 10.0, 4.0)


def test_better_tracks_score_higher(solver, reference, obs_model) -> None:
    cache = AlignmentCache(16, solver.fc, 4.0, reference.k_out)
    cache.build(make_tables([3, 4]), solver, reference, obs_model, 3.0, MotionSigmas(0.0, 0.0, 0.0))

    # the fake solver shifts every track by sig_vel pixels
    scores = evaluate_params(
        cache, solver, [MotionSigmas(0.0, 1.0, 1.0), MotionSigmas(0.5, 1.0, 1.0)]
    )
    assert scores[0] == pytest.approx(1.0)
    assert scores[1] < scores[0]

    objective = ThreeParameterObjective(cache, solver)
    assert objective(np.array([0.0, 1.0, 1.0])) == pytest.approx(-1.0)

"""Derivative-free Nelder-Mead simplex minimiser.

Unlike :func:`scipy.optimize.minimize` with ``method="Nelder-Mead"`` this
driver uses an axis-aligned initial simplex of a caller-chosen edge length and
stops on the simplex diameter, which is what the hyperparameter search needs
to bound the precision of its result.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

import numpy as np
from scipy.optimize import OptimizeResult

logger = logging.getLogger(__name__)


def simplex_diameter(simplex: np.ndarray) -> float:
    """Largest pairwise distance between the vertices of ``simplex``."""

    diff = simplex[:, None, :] - simplex[None, :, :]
    return float(np.sqrt((diff * diff).sum(axis=-1)).max())


def nelder_mead(
    func: Callable[[np.ndarray], float],
    x0: Sequence[float],
    initial_step: float,
    tolerance: float,
    max_iters: int,
    *,
    alpha: float = 1.0,
    gamma: float = 2.0,
    rho: float = 0.5,
    sigma: float = 0.5,
    callback: Optional[Callable[[int, np.ndarray, np.ndarray], None]] = None,
) -> OptimizeResult:
    """Minimise ``func`` starting from ``x0``.

    Parameters
    ----------
    func:
        Objective mapping an ``(n,)`` array to a float.
    x0:
        Initial point.  The initial simplex is ``x0`` plus ``x0`` displaced
        by ``initial_step`` along each axis.
    initial_step:
        Edge length of the initial simplex.
    tolerance:
        Stop once the simplex diameter falls below this value.
    max_iters:
        Iteration budget.  Every iteration replaces the worst vertex or
        shrinks the simplex.
    alpha, gamma, rho, sigma:
        Reflection, expansion, contraction and shrink coefficients.
    callback:
        Called as ``callback(iteration, simplex, values)`` at the start of
        every iteration with the vertices sorted by ascending value.

    Returns
    -------
    OptimizeResult
        ``x`` and ``fun`` of the best vertex, ``nit``, ``nfev``, ``success``
        (``True`` when the diameter criterion was met) and ``history``, a
        list of ``(operation, diameter)`` pairs recorded after each step.
    """

    x0 = np.asarray(x0, dtype=np.float64).ravel()
    n = x0.size
    if n == 0:
        raise ValueError("nelder_mead needs at least one dimension")

    nfev = 0

    def evaluate(x: np.ndarray) -> float:
        nonlocal nfev
        nfev += 1
        return float(func(x))

    simplex = np.tile(x0, (n + 1, 1))
    for j in range(n):
        simplex[j + 1, j] += initial_step
    values = np.array([evaluate(v) for v in simplex])

    history: list[tuple[str, float]] = []
    converged = False
    iteration = 0

    while iteration < max_iters:
        order = np.argsort(values, kind="stable")
        simplex = simplex[order]
        values = values[order]

        if callback is not None:
            callback(iteration, simplex.copy(), values.copy())

        if simplex_diameter(simplex) < tolerance:
            converged = True
            break

        iteration += 1
        best, worst = values[0], values[-1]
        centroid = simplex[:-1].mean(axis=0)

        reflected = centroid + alpha * (centroid - simplex[-1])
        f_reflected = evaluate(reflected)

        if best <= f_reflected < values[-2]:
            simplex[-1], values[-1] = reflected, f_reflected
            operation = "reflect"
        elif f_reflected < best:
            expanded = centroid + gamma * (reflected - centroid)
            f_expanded = evaluate(expanded)
            if f_expanded < f_reflected:
                simplex[-1], values[-1] = expanded, f_expanded
                operation = "expand"
            else:
                simplex[-1], values[-1] = reflected, f_reflected
                operation = "reflect"
        else:
            contracted = centroid + rho * (simplex[-1] - centroid)
            f_contracted = evaluate(contracted)
            if f_contracted < worst:
                simplex[-1], values[-1] = contracted, f_contracted
                operation = "contract"
            else:
                simplex[1:] = simplex[0] + sigma * (simplex[1:] - simplex[0])
                values[1:] = [evaluate(v) for v in simplex[1:]]
                operation = "shrink"

        history.append((operation, simplex_diameter(simplex)))
        logger.debug("iteration %d: %s, f = %.6g", iteration, operation, values.min())

    if not converged and simplex_diameter(simplex) < tolerance:
        converged = True

    i_best = int(np.argmin(values))
    message = (
        "Simplex diameter fell below tolerance."
        if converged
        else "Maximum number of iterations has been exceeded."
    )
    return OptimizeResult(
        x=simplex[i_best].copy(),
        fun=float(values[i_best]),
        nit=iteration,
        nfev=nfev,
        success=converged,
        message=message,
        history=history,
        final_simplex=(simplex.copy(), values.copy()),
    )

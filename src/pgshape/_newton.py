"""Gauss-Newton steps and backtracking line search."""

from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import torch

from .linalg import robust_inv


@dataclass(slots=True)
class LineSearchResult:
    """Outcome of a backtracking line search.

    - ok:      whether a strictly improving step was found
    - step:    accepted step length (0 on failure)
    - value:   objective at the accepted point (initial value on failure)
    - payload: whatever the objective returned with the accepted value
    - n_evals: number of objective evaluations
    """

    ok: bool
    step: float
    value: float
    payload: Any = None
    n_evals: int = 0


def newton_direction(hessian: torch.Tensor, gradient: torch.Tensor) -> torch.Tensor:
    """Descent direction ``-inv(H) g`` of a negative objective."""
    return -(robust_inv(hessian) @ gradient)


def backtracking_line_search(
    objective: Callable[[float], tuple[float, Any]],
    *,
    f0: float,
    max_iter: int,
    initial_step: float = 1.0,
    shrink: float = 0.5,
) -> LineSearchResult:
    """Halve the step until the objective strictly increases.

    Parameters
    ----------
    objective : callable
        ``objective(step) -> (value, payload)``. The value is maximised.
    f0 : float
        Objective at step 0.
    max_iter : int
        Maximum number of trial steps.
    initial_step : float
        First step tried.
    shrink : float
        Factor applied to the step after each rejection.

    Returns
    -------
    result : LineSearchResult
    """
    step = initial_step
    for i in range(max_iter):
        value, payload = objective(step)
        if math.isfinite(value) and value > f0:
            return LineSearchResult(ok=True, step=step, value=value, payload=payload, n_evals=i + 1)
        step *= shrink
    return LineSearchResult(ok=False, step=0.0, value=f0, payload=None, n_evals=max_iter)


__all__ = ["LineSearchResult", "newton_direction", "backtracking_line_search"]

"""Hierarchical activation of the model blocks and weight annealing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import math

import torch

from pgshape.constants import lb_threshold
from pgshape.utils import log, log_step


class Stage(IntEnum):
    """Activation stages, ordered from the least to the most dimensional block."""

    AFFINE = 1
    PG = 2
    RESIDUAL = 3
    CONVERGED = 4


@dataclass(slots=True)
class ActivationState:
    """Which blocks of the model are currently optimised.

    The affine block is always active. The principal geodesic block (subspace
    and latent coordinates) and the residual block are switched on, one at a
    time, when the relative gain of the lower bound between two outer loops
    falls below ``threshold``. Every activation halves the smoothing kernel
    used by the template update. Once all blocks are active, the next small
    gain sets the ``CONVERGED`` stage. Stages never regress.
    """

    stage: Stage = Stage.AFFINE
    threshold: float = lb_threshold
    fwhm: float = 3.0

    @property
    def affine(self) -> bool:
        return True

    @property
    def pg(self) -> bool:
        return self.stage >= Stage.PG

    @property
    def residual(self) -> bool:
        return self.stage >= Stage.RESIDUAL

    @property
    def converged(self) -> bool:
        return self.stage is Stage.CONVERGED

    def active_blocks(self) -> tuple[str, ...]:
        """Names of the active blocks, in update order."""
        blocks = ["affine"]
        if self.pg:
            blocks += ["subspace", "latent"]
        if self.residual:
            blocks.append("residual")
        return tuple(blocks)

    def advance(self, gain: float) -> Stage:
        """Move to the next stage if ``gain`` is below the threshold.

        Parameters
        ----------
        gain : float
            Relative gain of the lower bound over the last outer loop. A
            non-finite gain (e.g. before the second loop checkpoint) never
            triggers a transition.

        Returns
        -------
        stage : Stage
            The stage after the transition.
        """
        if self.converged or not (math.isfinite(gain) and gain < self.threshold):
            return self.stage
        self.stage = Stage(self.stage + 1)
        if self.converged:
            log("Converged", level="info", color="green", weight="bold")
        else:
            self.fwhm *= 0.5
            log_step(
                "Activate", f"{self.stage.name} (fwhm = {self.fwhm:g})",
                color="green", weight="bold",
            )
        return self.stage

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.name,
            "threshold": self.threshold,
            "fwhm": self.fwhm,
        }

    @classmethod
    def from_dict(cls, state: dict) -> ActivationState:
        return cls(
            stage=Stage[state["stage"]],
            threshold=float(state["threshold"]),
            fwhm=float(state["fwhm"]),
        )


def annealed_weights(
    wpz: tuple[float, float],
    wpz0: tuple[float, float],
    max_iter: int,
    *,
    dtype: torch.dtype = torch.float64,
) -> torch.Tensor:
    """Log-linear schedule of the two latent prior weights.

    The latent prior precision is ``wpz[0] * Az + wpz[1] * ww``. Early EM
    iterations use the (usually stronger) weights ``wpz0`` and the schedule
    reaches the target weights ``wpz`` at the last planned iteration.

    Parameters
    ----------
    wpz : tuple of float
        Final weights, strictly positive.
    wpz0 : tuple of float
        Initial weights, strictly positive.
    max_iter : int
        Number of planned EM iterations.

    Returns
    -------
    weights : torch.Tensor
        Shape (max_iter, 2). Row ``i`` holds the weights of iteration ``i``.
    """
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    target = torch.as_tensor(wpz, dtype=dtype)
    start = torch.as_tensor(wpz0, dtype=dtype)
    if torch.any(target <= 0) or torch.any(start <= 0):
        raise ValueError("Annealed weights must be strictly positive.")
    if max_iter == 1:
        return target[None, :].clone()
    exponents = torch.log10(start / target)
    steps = torch.linspace(0.0, 1.0, max_iter, dtype=dtype)
    scale = 10.0 ** (exponents[None, :] * (1.0 - steps[:, None]))
    return target[None, :] * scale


__all__ = ["Stage", "ActivationState", "annealed_weights"]

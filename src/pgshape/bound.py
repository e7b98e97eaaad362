"""Evidence lower bound: individual terms and their running aggregation."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

import torch

from pgshape._types import SquareMatrix
from pgshape.constants import LOG_2PI
from pgshape.linalg import logdet
from pgshape.utils import log_step

COMPONENTS = ("llm", "llw", "lbr", "lbz", "lbl", "lbaz", "lbq", "lbaq")
"""Names of the bound components.

- llm:  data log-likelihood
- llw:  log-prior of the principal subspace
- lbr:  -KL of the residual fields
- lbz:  -KL of the latent coordinates
- lbl:  -KL of the residual precision
- lbaz: -KL of the latent precision
- lbq:  -KL of the affine coordinates
- lbaq: -KL of the affine precision
"""


@dataclass(slots=True)
class BoundTracker:
    """Running sum of the lower bound components.

    Components that have not been computed yet are absent and contribute 0.
    Every call to :meth:`checkpoint` records the current total; loop
    checkpoints additionally update ``lbgain``, the relative change of the
    bound since the previous loop checkpoint, which drives the activation of
    the model blocks. :meth:`close_iteration` appends one total per EM
    iteration to ``history``.
    """

    values: dict[str, float] = field(default_factory=dict)
    components: dict[str, list[float]] = field(default_factory=dict)
    checkpoints: list[float] = field(default_factory=list)
    history: list[float] = field(default_factory=list)
    lbdiff: float = math.inf
    lbgain: float = math.inf
    last_loop: float | None = None

    def update(self, **terms: float) -> None:
        """Set the current value of one or more components."""
        for name, value in terms.items():
            if name not in COMPONENTS:
                raise KeyError(f"Unknown bound component {name!r}")
            self.values[name] = float(value)

    def get(self, name: str) -> float | None:
        return self.values.get(name)

    @property
    def total(self) -> float:
        return float(sum(self.values.values()))

    def checkpoint(self, label: str = "", *, loop: bool = False) -> float:
        """Record the current bound.

        Parameters
        ----------
        label : str
            Name of the block that just finished, for the log.
        loop : bool
            Whether this is an outer-loop checkpoint.

        Returns
        -------
        lb : float
            The current total.
        """
        lb = self.total
        for name, value in self.values.items():
            self.components.setdefault(name, []).append(value)
        if self.checkpoints:
            self.lbdiff = lb - self.checkpoints[-1]
            sign = "(+)" if self.lbdiff > 0 else "(-)" if self.lbdiff < 0 else "(=)"
        else:
            sign = ""
        self.checkpoints.append(lb)
        fields = [f"{label:>10}", f"{sign:>4} {lb:.6g}"]
        if loop:
            if self.last_loop is not None and math.isfinite(self.last_loop) and self.last_loop != 0:
                self.lbgain = abs((lb - self.last_loop) / self.last_loop)
            self.last_loop = lb
            fields.append(f"gain {self.lbgain:.3e}")
        color = "yellow" if self.lbdiff < 0 and not loop else None
        log_step("LB", *fields, color=color)
        return lb

    def close_iteration(self) -> float:
        """Append the current total to the per-iteration history."""
        lb = self.total
        self.history.append(lb)
        return lb

    def to_dict(self) -> dict:
        return {
            "values": dict(self.values),
            "components": {k: list(v) for k, v in self.components.items()},
            "checkpoints": list(self.checkpoints),
            "history": list(self.history),
            "lbdiff": self.lbdiff,
            "lbgain": self.lbgain,
            "last_loop": self.last_loop,
        }

    @classmethod
    def from_dict(cls, state: dict) -> BoundTracker:
        return cls(
            values={k: float(v) for k, v in state["values"].items()},
            components={k: [float(x) for x in v] for k, v in state["components"].items()},
            checkpoints=[float(x) for x in state["checkpoints"]],
            history=[float(x) for x in state["history"]],
            lbdiff=float(state["lbdiff"]),
            lbgain=float(state["lbgain"]),
            last_loop=None if state["last_loop"] is None else float(state["last_loop"]),
        )


# -----------------------------------------------------------------------------
# Bound terms
# -----------------------------------------------------------------------------
def lb_gaussian_coordinates(
    covariances: Sequence[SquareMatrix],
    ss: SquareMatrix,
    cov: SquareMatrix,
    precision: SquareMatrix,
    N: int,
) -> float:
    """-KL between Gaussian posteriors and a shared zero-mean Gaussian prior.

    Parameters
    ----------
    covariances : sequence of torch.Tensor, shape (K, K)
        Posterior covariance of every subject.
    ss : torch.Tensor, shape (K, K)
        Sum of the posterior mean outer products.
    cov : torch.Tensor, shape (K, K)
        Sum of the posterior covariances.
    precision : torch.Tensor, shape (K, K)
        Prior precision.
    N : int
        Number of subjects.
    """
    K = precision.shape[0]
    lb = 0.0
    for S in covariances:
        lb -= float(logdet(S))
    lb += float(torch.trace(ss @ precision))
    lb -= N * float(logdet(precision))
    lb -= N * K
    lb += float(torch.trace(cov @ precision))
    return -0.5 * lb


def lb_latent(covariances, zz, Sz, Az, N) -> float:
    """-KL of the latent coordinates."""
    return lb_gaussian_coordinates(covariances, zz, Sz, Az, N)


def lb_affine(covariances, qq, Sq, Aq, N, rind) -> float:
    """-KL of the regularised affine parameters (indices ``rind``)."""
    idx = torch.as_tensor(rind, dtype=torch.long)
    sub = [S[idx][:, idx] for S in covariances]
    return lb_gaussian_coordinates(sub, qq[idx][:, idx], Sq[idx][:, idx], Aq, N)


def _multidigamma(x: float, p: int) -> float:
    return float(sum(torch.special.digamma(torch.tensor(x - 0.5 * i, dtype=torch.float64)) for i in range(p)))


def _multigammaln(x: float, p: int) -> float:
    return float(torch.special.multigammaln(torch.tensor(x, dtype=torch.float64), p))


def lb_precision_matrix(A: SquareMatrix, N: int, n0: float) -> float:
    """-KL between the Wishart posterior of a precision matrix and its prior.

    The prior has ``n0`` degrees of freedom and expected value identity; the
    posterior has ``n0 + N`` degrees of freedom and expected value ``A``.
    An improper prior (``n0 == 0``) contributes 0.
    """
    if n0 == 0:
        return 0.0
    K = A.shape[0]
    n1 = n0 + N
    # Scale matrices: E[A] = n * S
    ld_ratio = float(logdet(A)) - K * math.log(n1) + K * math.log(n0)
    tr_ratio = n0 * float(torch.trace(A)) / n1
    kl = -0.5 * n0 * ld_ratio
    kl += 0.5 * n1 * (tr_ratio - K)
    kl += _multigammaln(0.5 * n0, K) - _multigammaln(0.5 * n1, K)
    kl += 0.5 * (n1 - n0) * _multidigamma(0.5 * n1, K)
    return -kl


def lb_precision_residual(
    lam: float,
    N: int,
    n0: float,
    lambda0: float,
    lattice: tuple[int, int, int],
) -> float:
    """-KL between the Gamma posterior of the residual precision and its prior."""
    if n0 == 0:
        return 0.0
    M = 3 * math.prod(lattice)
    a0 = 0.5 * n0 * M
    b0 = a0 / lambda0
    a1 = 0.5 * (n0 + N) * M
    b1 = a1 / lam
    kl = (a1 - a0) * float(torch.special.digamma(torch.tensor(a1, dtype=torch.float64)))
    kl += math.lgamma(a0) - math.lgamma(a1)
    kl += a0 * (math.log(b1) - math.log(b0))
    kl += a1 * (b0 - b1) / b1
    return -kl


def kl_residual(
    *,
    energy: float,
    trace: float,
    logdet_posterior: float,
    lam: float,
    logdet_operator: float,
    n_dof: int,
) -> float:
    """KL between the Laplace posterior of a residual field and its prior.

    Parameters
    ----------
    energy : float
        ``r' L r`` at the posterior mean.
    trace : float
        ``tr(lam L S)``, with ``S`` the posterior covariance.
    logdet_posterior : float
        ``logdet(inv(S))``. The Laplace posterior of a field fitted with
        data Hessian ``H`` has ``inv(S) = H + lam L``.
    lam : float
        Residual precision.
    logdet_operator : float
        ``logdet(L)``.
    n_dof : int
        Number of degrees of freedom of the field.
    """
    prior_logdet = n_dof * math.log(lam) + logdet_operator
    return 0.5 * (lam * energy + trace - n_dof + logdet_posterior - prior_logdet)


def ll_prior_subspace(ww: SquareMatrix, logdet_operator: float, n_dof: int) -> float:
    """Log-prior of the subspace, each mode following N(0, inv(L))."""
    K = ww.shape[0]
    return 0.5 * K * (logdet_operator - n_dof * LOG_2PI) - 0.5 * float(torch.trace(ww))


__all__ = [
    "COMPONENTS",
    "BoundTracker",
    "lb_gaussian_coordinates",
    "lb_latent",
    "lb_affine",
    "lb_precision_matrix",
    "lb_precision_residual",
    "kl_residual",
    "ll_prior_subspace",
]

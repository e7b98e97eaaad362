"""Small dense linear algebra: robust inverses, precision updates, subspace rotations."""

from __future__ import annotations

import math

import torch

from pgshape._types import SquareMatrix
from pgshape.constants import mineig, ridge, scale_iter, scale_tol
from pgshape.utils import logger


def symmetrize(A: SquareMatrix) -> SquareMatrix:
    """Return the symmetric part of ``A``."""
    return 0.5 * (A + A.transpose(-1, -2))


def _load_diagonal(A: SquareMatrix, scale: float = ridge) -> SquareMatrix:
    """Add a small multiple of the largest diagonal entry to the diagonal."""
    diag = torch.diagonal(A, dim1=-2, dim2=-1).abs()
    load = scale * max(float(diag.max()) if diag.numel() else 0.0, 1.0)
    eye = torch.eye(A.shape[-1], dtype=A.dtype, device=A.device)
    return A + load * eye


def robust_inv(A: SquareMatrix) -> SquareMatrix:
    """Inverse of a symmetric positive (semi-)definite matrix.

    A Cholesky factorisation is attempted first. If it fails, the diagonal is
    loaded by a small multiple of its largest entry, and as a last resort the
    inverse is computed from a clamped eigendecomposition.

    Parameters
    ----------
    A : torch.Tensor, shape (n, n)
        Symmetric matrix.

    Returns
    -------
    iA : torch.Tensor, shape (n, n)
        Symmetric inverse.
    """
    A = symmetrize(A)
    if A.shape[-1] == 0:
        return A.clone()
    L, info = torch.linalg.cholesky_ex(A)
    if int(info) != 0:
        L, info = torch.linalg.cholesky_ex(_load_diagonal(A))
    if int(info) == 0:
        return symmetrize(torch.cholesky_inverse(L))
    evals, evecs = torch.linalg.eigh(A)
    floor = max(float(evals.abs().max()), 1.0) * ridge
    evals = torch.clamp(evals, min=floor)
    return symmetrize((evecs / evals) @ evecs.T)


def logdet(A: SquareMatrix) -> torch.Tensor:
    """Log-determinant of a symmetric positive definite matrix.

    Falls back on clamped eigenvalues if ``A`` is not numerically positive
    definite, so that the result is always finite for finite inputs.
    """
    A = symmetrize(A)
    if A.shape[-1] == 0:
        return torch.zeros((), dtype=A.dtype)
    L, info = torch.linalg.cholesky_ex(A)
    if int(info) == 0:
        return 2.0 * torch.log(torch.diagonal(L)).sum()
    evals = torch.linalg.eigvalsh(A)
    floor = max(float(evals.abs().max()), 1.0) * ridge
    return torch.log(torch.clamp(evals, min=floor)).sum()


def is_spd(A: SquareMatrix) -> bool:
    """Whether ``A`` is symmetric and positive definite (within rounding)."""
    if not torch.all(torch.isfinite(A)):
        return False
    if not torch.allclose(A, A.T, rtol=1e-8, atol=1e-10 * float(A.abs().max())):
        return False
    _, info = torch.linalg.cholesky_ex(symmetrize(A))
    return int(info) == 0


# -----------------------------------------------------------------------------
# Conjugate precision updates
# -----------------------------------------------------------------------------
def precision_wishart(
    n0: float,
    ss: SquareMatrix,
    N: int,
    *,
    prior: SquareMatrix | None = None,
) -> SquareMatrix:
    """Posterior expected precision under a Wishart prior.

    Parameters
    ----------
    n0 : float
        Degrees of freedom of the prior. ``0`` means an improper prior and
        yields the maximum-likelihood precision ``N * inv(ss)``.
    ss : torch.Tensor, shape (K, K)
        Sum of the expected outer products ``sum_n E[x_n x_n']``.
    N : int
        Number of observations summed in ``ss``.
    prior : torch.Tensor, shape (K, K), optional
        Expected precision of the prior. Identity if None.

    Returns
    -------
    A : torch.Tensor, shape (K, K)
        ``(n0 + N) * inv(n0 * inv(prior) + ss)``.
    """
    ss = symmetrize(ss)
    if n0 == 0:
        return N * robust_inv(ss)
    if prior is None:
        prior_cov = torch.eye(ss.shape[-1], dtype=ss.dtype, device=ss.device)
    else:
        prior_cov = robust_inv(prior)
    return (n0 + N) * robust_inv(n0 * prior_cov + ss)


def precision_gamma(
    lambda0: float,
    n0: float,
    err: float,
    N: int,
    lattice: tuple[int, int, int],
) -> float:
    """Posterior expected precision of the residual fields under a Gamma prior.

    Parameters
    ----------
    lambda0 : float
        Expected precision of the prior.
    n0 : float
        Degrees of freedom of the prior, in number of fields. ``0`` gives
        the maximum-likelihood estimate.
    err : float
        Sum over subjects of the expected regularisation energy
        ``E[r' L r]``.
    N : int
        Number of subjects.
    lattice : tuple of int
        Shape of the template lattice. Each field has ``3 * prod(lattice)``
        degrees of freedom.

    Returns
    -------
    lam : float
        Strictly positive posterior expected precision.
    """
    M = 3 * math.prod(lattice)
    if n0 == 0:
        lam = N * M / max(err, torch.finfo(torch.float64).tiny)
    else:
        lam = (n0 + N) * M / (n0 * M / lambda0 + err)
    return float(lam)


# -----------------------------------------------------------------------------
# Non-finite substitution
# -----------------------------------------------------------------------------
def replace_nonfinite(
    values: torch.Tensor,
    *,
    fallback: str = "mean",
    name: str = "value",
) -> torch.Tensor:
    """Substitute non-finite per-subject contributions before reduction.

    Parameters
    ----------
    values : torch.Tensor, shape (n_subjects, ...)
        Stacked per-subject contributions.
    fallback : {"mean", "zero"}
        ``"mean"`` replaces a bad entry by the mean of the finite entries
        (zero if there are none); ``"zero"`` replaces it by zero.
    name : str
        Name of the quantity, used in the warning.
    """
    bad = ~torch.isfinite(values)
    if not bad.any():
        return values
    values = values.clone()
    if fallback == "mean":
        good = ~bad
        fill = values[good].mean() if good.any() else values.new_zeros(())
    elif fallback == "zero":
        fill = values.new_zeros(())
    else:
        raise ValueError(f"fallback must be 'mean' or 'zero', got {fallback!r}")
    values[bad] = fill
    logger.warning(
        f"{int(bad.sum())} non-finite entries of {name} replaced by {fallback}"
    )
    return values


# -----------------------------------------------------------------------------
# Orthogonalisation and rescaling of the principal subspace
# -----------------------------------------------------------------------------
def orthogonalization_matrix(
    zz: SquareMatrix,
    ww: SquareMatrix,
) -> tuple[SquareMatrix, SquareMatrix]:
    """Joint orthogonalisation of the latent and subspace statistics.

    Finds ``U`` such that ``U @ zz @ U.T`` is the identity and
    ``iU.T @ ww @ iU`` is diagonal, with ``iU = inv(U)``. Applying ``z -> U z``
    and ``W -> W iU`` leaves the model unchanged.

    Parameters
    ----------
    zz : torch.Tensor, shape (K, K)
        Sum of the latent outer products.
    ww : torch.Tensor, shape (K, K)
        Expected ``W' L W``.

    Returns
    -------
    U : torch.Tensor, shape (K, K)
        Rotation applied to the latent coordinates.
    iU : torch.Tensor, shape (K, K)
        Its inverse, applied to the subspace.
    """
    zz = symmetrize(zz)
    ww = symmetrize(ww)
    S, Vz = torch.linalg.eigh(zz)
    S = torch.clamp(S, min=mineig * max(float(S.max()), ridge))
    P = Vz.T / S.sqrt()[:, None]
    iP = Vz * S.sqrt()[None, :]
    D, E = torch.linalg.eigh(symmetrize(iP.T @ ww @ iP))
    order = torch.argsort(D, descending=True)
    E = E[:, order]
    U = E.T @ P
    iU = iP @ E
    return U, iU


def scale_fixed(N: int, K: int, *, dtype: torch.dtype = torch.float64):
    """Rescaling used with an improper latent prior: ``zz -> N * I``."""
    eye = torch.eye(K, dtype=dtype)
    return math.sqrt(N) * eye, eye / math.sqrt(N)


def scale_gauss_newton(
    ezz: SquareMatrix,
    ww: SquareMatrix,
    nz0: float,
    N: int,
) -> tuple[SquareMatrix, SquareMatrix]:
    """Optimal per-mode rescaling of orthogonalised latent coordinates.

    Each mode ``k`` is scaled by ``s_k`` (``z_k -> s_k z_k``,
    ``W_k -> W_k / s_k``). With ``x = s_k^2 ezz_kk`` and ``w = ww_kk`` the part
    of the lower bound that depends on ``t = ln s_k^2`` is::

        -0.5 (n0 + N) x / (n0 + x) - 0.5 N ln(n0 + x) + 0.5 N t - 0.5 w exp(-t)

    which is maximised by Newton's method on ``t``.

    Parameters
    ----------
    ezz : torch.Tensor, shape (K, K)
        Orthogonalised ``zz + Sz``.
    ww : torch.Tensor, shape (K, K)
        Orthogonalised ``W' L W`` (diagonal).
    nz0 : float
        Degrees of freedom of the latent Wishart prior, strictly positive.
    N : int
        Number of subjects.

    Returns
    -------
    Q, iQ : torch.Tensor, shape (K, K)
        Diagonal scaling and its inverse.
    """
    e = torch.diagonal(ezz).clone()
    w = torch.clamp(torch.diagonal(ww), min=0.0)
    scale = torch.ones_like(e)
    for k in range(e.numel()):
        ek, wk = float(e[k]), float(w[k])
        if not ek > ridge:
            continue
        t = math.log(N / ek)
        for _ in range(scale_iter):
            x = ek * math.exp(t)
            grad = 0.5 * nz0**2 * (N - x) / (nz0 + x) ** 2 + 0.5 * wk * math.exp(-t)
            curv = 0.5 * wk * math.exp(-t)
            curv += 0.5 * nz0**2 * x * max(nz0 + 2 * N - x, 0.0) / (nz0 + x) ** 3
            step = grad / max(curv, ridge)
            step = max(min(step, 2.0), -2.0)
            t += step
            if abs(step) < scale_tol:
                break
        scale[k] = math.exp(0.5 * t)
    return torch.diag(scale), torch.diag(1.0 / scale)


__all__ = [
    "symmetrize",
    "robust_inv",
    "logdet",
    "is_spd",
    "precision_wishart",
    "precision_gamma",
    "replace_nonfinite",
    "orthogonalization_matrix",
    "scale_fixed",
    "scale_gauss_newton",
]

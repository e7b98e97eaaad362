"""Per-subject forward model and chain rules.

A subject is matched to the template through ``psi = A o exp(v)`` where ``A``
is an affine matrix built from the parameters ``q`` and ``v = W z + r`` is the
velocity field made of the principal geodesic part ``W z`` and the residual
field ``r``. The template is sampled at ``psi(x)`` for every voxel ``x`` of
the subject.
"""

from __future__ import annotations

from dataclasses import dataclass

import torch

from pgshape._types import (
    AffineBasis,
    AffineMatrix,
    AffineVector,
    ImageTensor,
    LatentVector,
    SquareMatrix,
    SubspaceTensor,
    TemplateGradients,
    VectorField,
)
from pgshape.diffeo import (
    affine_matrix,
    apply_affine,
    exponentiate,
    lattice_center,
    sample,
)
from pgshape.noise import NoiseModel


@dataclass(slots=True)
class Transform:
    """Forward transform of one subject.

    - A:        (4, 4)        affine matrix
    - velocity: (3, D, H, W)  v = W z + r
    - phi:      (3, D, H, W)  exp(v)
    - psi:      (3, D, H, W)  A o exp(v), template coordinates of every voxel
    """

    A: AffineMatrix
    velocity: VectorField
    phi: VectorField
    psi: VectorField


def compose_velocity(
        *,
        latent: LatentVector | None,
        subspace: SubspaceTensor | None,
        residual: VectorField | None,
        lattice: tuple[int, int, int],
        dtype: torch.dtype = torch.float64,
) -> VectorField:
    """Velocity field ``v = sum_k z_k W_k + r``."""
    v = torch.zeros((3, *lattice), dtype=dtype)
    if latent is not None and subspace is not None and latent.numel():
        assert subspace.shape[0] == latent.shape[0], (
            f"{subspace.shape[0]} modes but {latent.shape[0]} latent coordinates"
        )
        v = v + torch.einsum("k,k...->...", latent, subspace)
    if residual is not None:
        v = v + residual
    return v


def subject_transform(
        *,
        affine: AffineVector,
        latent: LatentVector | None,
        residual: VectorField | None,
        subspace: SubspaceTensor | None,
        basis: AffineBasis,
        lattice: tuple[int, int, int],
        steps: int | None = None,
) -> Transform:
    """Build the forward transform of a subject from its parameters."""
    v = compose_velocity(
        latent=latent,
        subspace=subspace,
        residual=residual,
        lattice=lattice,
        dtype=basis.dtype,
    )
    phi = exponentiate(v, steps)
    A = affine_matrix(affine, basis)
    psi = apply_affine(A, phi, lattice_center(lattice))
    return Transform(A=A, velocity=v, phi=phi, psi=psi)


def warp_template(
        *,
        template: ImageTensor,
        coords: VectorField,
        gradients: TemplateGradients | None = None,
) -> tuple[ImageTensor, TemplateGradients | None]:
    """Sample the template (and optionally its gradients) at ``coords``."""
    warped = sample(template, coords)
    if gradients is None:
        return warped, None
    C = gradients.shape[0]
    flat = gradients.reshape(C * 3, *gradients.shape[2:])
    warped_gradients = sample(flat, coords).reshape(C, 3, *coords.shape[1:])
    return warped, warped_gradients


def match(
        *,
        noise: NoiseModel,
        image: ImageTensor,
        template: ImageTensor,
        gradients: TemplateGradients,
        transform: Transform,
        variance: torch.Tensor | None = None,
) -> tuple[float, VectorField, VectorField]:
    """Log-likelihood and its derivatives with respect to ``psi``."""
    warped, warped_gradients = warp_template(
        template=template, coords=transform.psi, gradients=gradients
    )
    return noise.grad_hess(image, warped, warped_gradients, variance)


def match_log_likelihood(
        *,
        noise: NoiseModel,
        image: ImageTensor,
        template: ImageTensor,
        transform: Transform,
        variance: torch.Tensor | None = None,
) -> float:
    """Log-likelihood of a subject image under its transform."""
    warped, _ = warp_template(template=template, coords=transform.psi)
    return noise.log_likelihood(image, warped, variance)


# -----------------------------------------------------------------------------
# Chain rules
# -----------------------------------------------------------------------------
def velocity_derivatives(
        *,
        A: AffineMatrix,
        gradient: VectorField,
        hessian: VectorField,
) -> tuple[VectorField, VectorField]:
    """Push derivatives w.r.t. ``psi`` to the velocity field.

    Uses the small-deformation approximation ``d psi / d v = A[:3, :3]`` and
    keeps the diagonal of the transformed Hessian.
    """
    lin = A[:3, :3]
    gv = torch.einsum("ed,e...->d...", lin, gradient)
    hv = torch.einsum("ed,e...->d...", lin**2, hessian)
    return gv, hv


def latent_derivatives(
        *,
        subspace: SubspaceTensor,
        gradient: VectorField,
        hessian: VectorField,
) -> tuple[LatentVector, SquareMatrix]:
    """Gradient and Gauss-Newton Hessian w.r.t. the latent coordinates.

    Parameters
    ----------
    subspace : torch.Tensor, shape (K, 3, D, H, W)
    gradient, hessian : torch.Tensor, shape (3, D, H, W)
        Derivatives w.r.t. the velocity field.

    Returns
    -------
    g : torch.Tensor, shape (K,)
    H : torch.Tensor, shape (K, K)
    """
    assert subspace.ndim == 5, f"subspace must be 5D, got {subspace.ndim}D"
    g = torch.einsum("k...,...->k", subspace, gradient)
    H = torch.einsum("k...,...,l...->kl", subspace, hessian, subspace)
    return g, 0.5 * (H + H.T)


def affine_derivatives(
        *,
        A: AffineMatrix,
        basis: AffineBasis,
        phi: VectorField,
        gradient: VectorField,
        hessian: VectorField,
) -> tuple[AffineVector, SquareMatrix]:
    """Gradient and Gauss-Newton Hessian w.r.t. the affine parameters.

    The derivative of ``expm(sum_j q_j B_j)`` along ``q_j`` is approximated by
    ``A @ B_j``.
    """
    center = torch.as_tensor(lattice_center(tuple(phi.shape[1:])), dtype=phi.dtype)
    centered = phi - center.reshape(3, 1, 1, 1)
    dA = A @ basis
    J = torch.einsum("jab,b...->ja...", dA[:, :3, :3], centered)
    J = J + dA[:, :3, 3].reshape(-1, 3, 1, 1, 1)
    g = torch.einsum("ja...,a...->j", J, gradient)
    H = torch.einsum("ia...,a...,ja...->ij", J, hessian, J)
    return g, 0.5 * (H + H.T)


def subspace_statistics(
        *,
        latent: LatentVector,
        latent_covariance: SquareMatrix,
        gradient: VectorField,
        hessian: VectorField,
) -> tuple[SubspaceTensor, SubspaceTensor]:
    """Contribution of a subject to the derivatives w.r.t. each mode.

    ``g_k = z_k gv`` and ``h_k = (z_k^2 + Sz_kk) hv``.
    """
    second = latent**2 + torch.diagonal(latent_covariance)
    g = latent.reshape(-1, 1, 1, 1, 1) * gradient[None]
    h = second.reshape(-1, 1, 1, 1, 1) * hessian[None]
    return g, h


__all__ = [
    "Transform",
    "compose_velocity",
    "subject_transform",
    "warp_template",
    "match",
    "match_log_likelihood",
    "velocity_derivatives",
    "latent_derivatives",
    "affine_derivatives",
    "subspace_statistics",
]

"""Deformation model: sampling, exponentiation, affine transforms and regulariser.

All coordinates are expressed in voxels of the template lattice and stored
channel-first, with shape (3, D, H, W) where channel ``d`` indexes spatial
axis ``d``. Fields are periodic for the regularisation operator and
replicated at the border when sampled.
"""

from __future__ import annotations

import math

import numpy as np
import torch
import torch.nn.functional as F
from scipy.ndimage import gaussian_filter

from pgshape._types import (
    AffineBasis,
    AffineMatrix,
    AffineVector,
    ImageTensor,
    TemplateGradients,
    VectorField,
)
from pgshape.constants import FWHM_TO_SIGMA, cg_tol

AFFINE_BASES = {"translation": 3, "rigid": 6, "similitude": 7, "affine": 12}
DEFAULT_PRM = (1e-4, 1e-3, 0.2, 0.05, 0.2)


# -----------------------------------------------------------------------------
# Grids and sampling
# -----------------------------------------------------------------------------
def identity_grid(
    lattice: tuple[int, int, int],
    *,
    dtype: torch.dtype = torch.float64,
) -> VectorField:
    """Voxel coordinates of every point of ``lattice``, shape (3, D, H, W)."""
    ranges = [torch.arange(n, dtype=dtype) for n in lattice]
    return torch.stack(torch.meshgrid(*ranges, indexing="ij"), dim=0)


def lattice_center(lattice: tuple[int, int, int]) -> tuple[float, float, float]:
    """Voxel coordinates of the centre of ``lattice``."""
    return tuple(0.5 * (n - 1) for n in lattice)


def _normalized_grid(coords: VectorField, shape: tuple[int, ...]) -> torch.Tensor:
    """Convert voxel coordinates to the (x, y, z) in [-1, 1] layout of grid_sample."""
    axes = []
    for d, n in enumerate(shape):
        if n > 1:
            axes.append(2.0 * coords[d] / (n - 1) - 1.0)
        else:
            axes.append(torch.zeros_like(coords[d]))
    return torch.stack(axes[::-1], dim=-1)[None]


def sample(field: torch.Tensor, coords: VectorField) -> torch.Tensor:
    """Trilinear interpolation of a multi-channel field at voxel coordinates.

    Parameters
    ----------
    field : torch.Tensor, shape (C, D, H, W)
        Field to sample. Non-finite values must have been masked by the
        caller.
    coords : torch.Tensor, shape (3, D', H', W')
        Sampling coordinates in voxels of ``field``.

    Returns
    -------
    sampled : torch.Tensor, shape (C, D', H', W')
    """
    if field.ndim != 4 or coords.ndim != 4 or coords.shape[0] != 3:
        raise ValueError(
            f"Expected a (C, D, H, W) field and (3, D, H, W) coordinates, got "
            f"{tuple(field.shape)} and {tuple(coords.shape)}"
        )
    grid = _normalized_grid(coords.to(field.dtype), tuple(field.shape[1:]))
    out = F.grid_sample(
        field[None],
        grid,
        mode="bilinear",
        padding_mode="border",
        align_corners=True,
    )
    return out[0]


def in_bounds(coords: VectorField, lattice: tuple[int, int, int]) -> torch.Tensor:
    """Mask of the coordinates that fall inside ``lattice`` (half a voxel margin)."""
    mask = torch.ones(coords.shape[1:], dtype=torch.bool)
    for d, n in enumerate(lattice):
        mask &= (coords[d] >= -0.5) & (coords[d] <= n - 0.5)
    return mask


def warp(image: ImageTensor, coords: VectorField) -> tuple[ImageTensor, torch.Tensor]:
    """Resample an image with missing values at voxel coordinates.

    Non-finite voxels of ``image`` and coordinates that fall outside its
    lattice do not contribute.

    Returns
    -------
    values : torch.Tensor, shape (C, D', H', W')
        Resampled observed values, zero where nothing was observed.
    weights : torch.Tensor, shape (D', H', W')
        Interpolated fraction of observed voxels behind every value.
    """
    mask = torch.isfinite(image).all(dim=0).to(image.dtype)
    f = torch.nan_to_num(image, nan=0.0, posinf=0.0, neginf=0.0) * mask
    inside = in_bounds(coords, tuple(image.shape[1:])).to(image.dtype)
    weights = sample(mask[None], coords)[0] * inside
    return sample(f, coords) * inside, weights


# -----------------------------------------------------------------------------
# Diffeomorphisms
# -----------------------------------------------------------------------------
def integration_steps(v: VectorField) -> int:
    """Number of squarings so that the initial step is below half a voxel."""
    vmax = float(torch.linalg.vector_norm(v, dim=0).max()) if v.numel() else 0.0
    if not math.isfinite(vmax) or vmax <= 0.5:
        return 1
    return min(int(math.ceil(math.log2(vmax / 0.5))) + 1, 16)


def exponentiate(v: VectorField, steps: int | None = None) -> VectorField:
    """Exponentiate a stationary velocity field by scaling and squaring.

    Parameters
    ----------
    v : torch.Tensor, shape (3, D, H, W)
        Velocity field in voxels.
    steps : int or None
        Number of squarings. Chosen from the maximum velocity if None.

    Returns
    -------
    phi : torch.Tensor, shape (3, D, H, W)
        Coordinates of the transformation ``exp(v)``.
    """
    if steps is None:
        steps = integration_steps(v)
    grid = identity_grid(tuple(v.shape[1:]), dtype=v.dtype)
    disp = v / (2.0**steps)
    for _ in range(steps):
        disp = disp + sample(disp, grid + disp)
    return grid + disp


def affine_basis(name: str = "affine", *, dtype: torch.dtype = torch.float64) -> AffineBasis:
    """Lie algebra basis of a group of 3D affine transforms.

    Parameters
    ----------
    name : {"translation", "rigid", "similitude", "affine"}
        ``translation`` has 3 elements, ``rigid`` adds 3 rotations,
        ``similitude`` adds an isotropic zoom and ``affine`` replaces it with
        3 zooms and 3 shears (12 elements).

    Returns
    -------
    basis : torch.Tensor, shape (n_affine, 4, 4)
    """
    if name not in AFFINE_BASES:
        raise ValueError(
            f"Unknown affine basis {name!r}, expected one of {sorted(AFFINE_BASES)}"
        )
    basis = []

    def element(entries):
        B = torch.zeros((4, 4), dtype=dtype)
        for (i, j), value in entries.items():
            B[i, j] = value
        basis.append(B)

    for i in range(3):
        element({(i, 3): 1.0})
    if name == "translation":
        return torch.stack(basis)
    for i, j in ((0, 1), (0, 2), (1, 2)):
        element({(i, j): 1.0, (j, i): -1.0})
    if name == "rigid":
        return torch.stack(basis)
    if name == "similitude":
        element({(0, 0): 1.0, (1, 1): 1.0, (2, 2): 1.0})
        return torch.stack(basis)
    for i in range(3):
        element({(i, i): 1.0})
    for i, j in ((0, 1), (0, 2), (1, 2)):
        element({(i, j): 1.0, (j, i): 1.0})
    return torch.stack(basis)


def affine_matrix(q: AffineVector, basis: AffineBasis) -> AffineMatrix:
    """Matrix exponential of ``sum_j q_j B_j``."""
    return torch.linalg.matrix_exp(torch.einsum("j,jab->ab", q.to(basis.dtype), basis))


def apply_affine(
    A: AffineMatrix,
    coords: VectorField,
    center: tuple[float, float, float],
) -> VectorField:
    """Apply ``A`` to coordinates expressed relative to ``center``."""
    c = torch.as_tensor(center, dtype=coords.dtype).reshape(3, 1, 1, 1)
    out = torch.einsum("ab,b...->a...", A[:3, :3], coords - c)
    return out + A[:3, 3].reshape(3, 1, 1, 1) + c


def inverse_coordinates(
    A: AffineMatrix,
    v: VectorField | None,
    lattice: tuple[int, int, int],
    *,
    steps: int | None = None,
) -> VectorField:
    """Subject coordinates of every template voxel, ``inv(exp(v)) o inv(A)``."""
    grid = identity_grid(lattice, dtype=A.dtype)
    coords = apply_affine(torch.linalg.inv(A), grid, lattice_center(lattice))
    if v is None or not torch.any(v != 0):
        return coords
    disp = exponentiate(-v, steps) - grid
    return coords + sample(disp, coords)


# -----------------------------------------------------------------------------
# Template helpers
# -----------------------------------------------------------------------------
def template_gradients(template: ImageTensor) -> TemplateGradients:
    """Central finite differences of a template along each spatial axis."""
    grads = []
    for d in range(3):
        if template.shape[d + 1] > 1:
            grads.append(torch.gradient(template, dim=d + 1)[0])
        else:
            grads.append(torch.zeros_like(template))
    return torch.stack(grads, dim=1)


def smooth(
    image: ImageTensor,
    fwhm: float,
    voxel_size: tuple[float, float, float] = (1.0, 1.0, 1.0),
) -> ImageTensor:
    """Gaussian smoothing of each channel, ``fwhm`` in the units of ``voxel_size``."""
    if fwhm <= 0:
        return image
    sigma = [fwhm * FWHM_TO_SIGMA / vs for vs in voxel_size]
    data = image.detach().cpu().numpy()
    out = np.stack([gaussian_filter(channel, sigma=sigma, mode="nearest") for channel in data])
    return torch.as_tensor(out, dtype=image.dtype)


# -----------------------------------------------------------------------------
# Regularisation operator
# -----------------------------------------------------------------------------
class RegularizationOperator:
    """Differential operator ``L`` defining the prior on velocity fields.

    The operator combines absolute, membrane, bending and linear-elastic
    (shear and divergence) energies, discretised with finite differences on a
    periodic lattice. It is diagonalised by the discrete Fourier transform:
    at every frequency it reduces to a 3 x 3 Hermitian matrix whose
    eigendecomposition is cached, which gives the log-determinant of ``L`` and
    the preconditioner of the conjugate gradient solver.

    Parameters
    ----------
    lattice : tuple of int
        Shape (D, H, W) of the velocity fields.
    voxel_size : tuple of float
        Voxel size along each axis.
    prm : tuple of float
        ``(absolute, membrane, bending, shear, divergence)`` weights.
    """

    def __init__(
        self,
        lattice: tuple[int, int, int],
        voxel_size: tuple[float, float, float] = (1.0, 1.0, 1.0),
        prm: tuple[float, float, float, float, float] = DEFAULT_PRM,
        *,
        dtype: torch.dtype = torch.float64,
    ):
        if len(prm) != 5:
            raise ValueError(f"prm must have 5 elements, got {len(prm)}")
        self.lattice = tuple(int(n) for n in lattice)
        self.voxel_size = tuple(float(vs) for vs in voxel_size)
        self.prm = tuple(float(p) for p in prm)
        self.dtype = dtype
        self._kernel = self._build_kernel()
        evals, evecs = torch.linalg.eigh(self._kernel)
        self._evals = torch.clamp(evals, min=0.0)
        self._evecs = evecs

    @property
    def n_dof(self) -> int:
        """Number of scalar degrees of freedom of a velocity field."""
        return 3 * math.prod(self.lattice)

    def _build_kernel(self) -> torch.Tensor:
        absolute, membrane, bending, shear, div = self.prm
        ctype = torch.complex128 if self.dtype == torch.float64 else torch.complex64
        lap = torch.zeros(self.lattice, dtype=self.dtype)
        g = torch.zeros((*self.lattice, 3), dtype=ctype)
        for d, (n, vs) in enumerate(zip(self.lattice, self.voxel_size)):
            omega = 2.0 * math.pi * torch.arange(n, dtype=self.dtype) / n
            shape = [1, 1, 1]
            shape[d] = n
            lap = lap + ((2.0 - 2.0 * torch.cos(omega)) / vs**2).reshape(shape)
            gd = (torch.exp(1j * omega.to(ctype)) - 1.0) / vs
            g[..., d] = gd.reshape(shape).expand(self.lattice)
        diag = absolute + membrane * lap + bending * lap**2 + 0.5 * shear * lap
        eye = torch.eye(3, dtype=ctype)
        kernel = diag.to(ctype)[..., None, None] * eye
        kernel = kernel + (0.5 * shear + div) * g.conj()[..., :, None] * g[..., None, :]
        return kernel

    def _fft(self, v: VectorField) -> torch.Tensor:
        return torch.fft.fftn(v, dim=(-3, -2, -1)).permute(1, 2, 3, 0)[..., None]

    def _ifft(self, vf: torch.Tensor) -> VectorField:
        vf = vf[..., 0].permute(3, 0, 1, 2)
        return torch.fft.ifftn(vf, dim=(-3, -2, -1)).real.to(self.dtype)

    def apply(self, v: VectorField, scale: float = 1.0) -> VectorField:
        """Momentum ``scale * L v`` of a velocity field."""
        return scale * self._ifft(self._kernel @ self._fft(v))

    def energy(self, v: VectorField) -> float:
        """Regularisation energy ``v' L v``."""
        return float(torch.sum(v * self.apply(v)))

    def logdet(self, scale: float = 1.0) -> float:
        """Log-determinant of ``scale * L``."""
        tiny = torch.finfo(self.dtype).tiny
        return float(torch.log(torch.clamp(scale * self._evals, min=tiny)).sum())

    def trace_approx(self, hmean: float, scale: float) -> float:
        """Approximate ``tr(scale L inv(H + scale L))`` for ``H = hmean I``."""
        tiny = torch.finfo(self.dtype).tiny
        se = scale * self._evals
        return float(torch.sum(se / torch.clamp(hmean + se, min=tiny)))

    def logdet_approx(self, hmean: float, scale: float) -> float:
        """Approximate ``logdet(H + scale L)`` for ``H = hmean I``."""
        tiny = torch.finfo(self.dtype).tiny
        return float(torch.log(torch.clamp(hmean + scale * self._evals, min=tiny)).sum())

    def precondition(self, r: VectorField, hmean: float, scale: float) -> VectorField:
        """Apply ``inv(hmean I + scale L)`` exactly in Fourier space."""
        tiny = torch.finfo(self.dtype).tiny
        rf = self._fft(r)
        V = self._evecs
        coef = V.conj().transpose(-1, -2) @ rf
        denom = torch.clamp(hmean + scale * self._evals, min=tiny)[..., None]
        return self._ifft(V @ (coef / denom))

    def solve(
        self,
        hessian: VectorField | None,
        gradient: VectorField,
        scale: float = 1.0,
        *,
        max_iter: int = 10,
        tol: float = cg_tol,
    ) -> VectorField:
        """Solve ``(diag(hessian) + scale L) x = gradient``.

        Preconditioned conjugate gradient, using the inverse of the operator
        with the Hessian replaced by its mean as preconditioner.

        Parameters
        ----------
        hessian : torch.Tensor, shape (3, D, H, W) or None
            Diagonal of the data Hessian. Treated as zero if None.
        gradient : torch.Tensor, shape (3, D, H, W)
            Right-hand side.
        scale : float
            Weight of the regulariser.
        max_iter : int
            Maximum number of conjugate gradient iterations.
        tol : float
            Relative tolerance on the residual norm.

        Returns
        -------
        x : torch.Tensor, shape (3, D, H, W)
        """
        if hessian is None:
            hessian = torch.zeros_like(gradient)
        hessian = torch.clamp(hessian, min=0.0)
        x = torch.zeros_like(gradient)
        gnorm = float(torch.linalg.vector_norm(gradient))
        if gnorm == 0.0 or not math.isfinite(gnorm):
            return x
        hmean = float(hessian.mean())

        r = gradient.clone()
        z = self.precondition(r, hmean, scale)
        p = z.clone()
        rz = float(torch.sum(r * z))
        for _ in range(max_iter):
            Ap = hessian * p + self.apply(p, scale)
            pAp = float(torch.sum(p * Ap))
            if not pAp > 0:
                break
            alpha = rz / pAp
            x = x + alpha * p
            r = r - alpha * Ap
            if float(torch.linalg.vector_norm(r)) <= tol * gnorm:
                break
            z = self.precondition(r, hmean, scale)
            rz_new = float(torch.sum(r * z))
            p = z + (rz_new / rz) * p
            rz = rz_new
        return x


__all__ = [
    "AFFINE_BASES",
    "DEFAULT_PRM",
    "identity_grid",
    "lattice_center",
    "sample",
    "in_bounds",
    "warp",
    "integration_steps",
    "exponentiate",
    "affine_basis",
    "affine_matrix",
    "apply_affine",
    "inverse_coordinates",
    "template_gradients",
    "smooth",
    "RegularizationOperator",
]

import math

import pytest
import torch
from numpy.testing import assert_allclose

from pgshape.diffeo import (
    AFFINE_BASES,
    RegularizationOperator,
    affine_basis,
    affine_matrix,
    apply_affine,
    exponentiate,
    identity_grid,
    in_bounds,
    integration_steps,
    inverse_coordinates,
    lattice_center,
    sample,
    smooth,
    template_gradients,
    warp,
)

torch.set_default_dtype(torch.float64)
LATTICE = (4, 5, 6)


def random_field(seed, scale=1.0, lattice=LATTICE):
    gen = torch.Generator().manual_seed(seed)
    return scale * torch.randn((3, *lattice), generator=gen, dtype=torch.float64)


def test_identity_grid_and_sampling():
    grid = identity_grid(LATTICE)
    assert grid.shape == (3, *LATTICE)
    assert_allclose(grid[:, 1, 2, 3], [1.0, 2.0, 3.0])
    field = random_field(0)
    # sampling at the identity returns the field itself
    assert_allclose(sample(field, grid), field, atol=1e-12)
    # halfway between two voxels along the last axis
    coords = grid.clone()
    coords[2] = coords[2] + 0.5
    expected = 0.5 * (field[:, 0, 0, 0] + field[:, 0, 0, 1])
    assert_allclose(sample(field, coords)[:, 0, 0, 0], expected, atol=1e-12)


def test_sample_rejects_bad_shapes():
    with pytest.raises(ValueError, match="Expected a"):
        sample(torch.zeros(LATTICE), identity_grid(LATTICE))
    with pytest.raises(ValueError, match="Expected a"):
        sample(torch.zeros((1, *LATTICE)), torch.zeros((2, *LATTICE)))


def test_in_bounds():
    grid = identity_grid(LATTICE)
    assert in_bounds(grid, LATTICE).all()
    shifted = grid.clone()
    shifted[0] = shifted[0] + 1.0
    mask = in_bounds(shifted, LATTICE)
    assert not mask[-1].any()
    assert mask[:-1].all()


def test_warp_masks_missing_and_outside():
    image = random_field(2)[:2]
    image[0, 1, 1, 1] = math.nan
    grid = identity_grid(LATTICE)
    values, weights = warp(image, grid)
    assert weights.shape == LATTICE
    assert_allclose(weights[1, 1, 1], 0.0, atol=1e-12)
    assert_allclose(values[:, 1, 1, 1], 0.0, atol=1e-12)
    assert_allclose(values[:, 0, 0, 0], image[:, 0, 0, 0], atol=1e-12)
    assert torch.isfinite(values).all()
    # everything falls outside the lattice
    values, weights = warp(image, grid + 10.0)
    assert torch.all(weights == 0)
    assert torch.all(values == 0)


def test_exponentiate_zero_is_identity():
    v = torch.zeros((3, *LATTICE))
    assert_allclose(exponentiate(v), identity_grid(LATTICE))
    assert integration_steps(v) == 1


def test_exponentiate_constant_velocity_is_translation():
    v = torch.zeros((3, *LATTICE))
    v[1] = 0.3
    phi = exponentiate(v, steps=4)
    assert_allclose(phi - identity_grid(LATTICE), v, atol=1e-10)
    assert integration_steps(10.0 * torch.ones((3, *LATTICE))) > 1


@pytest.mark.parametrize("name", sorted(AFFINE_BASES))
def test_affine_basis(name):
    basis = affine_basis(name)
    assert basis.shape == (AFFINE_BASES[name], 4, 4)
    # the last row of every element is zero
    assert torch.all(basis[:, 3] == 0)
    assert_allclose(affine_matrix(torch.zeros(basis.shape[0]), basis), torch.eye(4))


def test_affine_basis_unknown():
    with pytest.raises(ValueError, match="Unknown affine basis"):
        affine_basis("projective")


def test_rigid_transforms_are_orthogonal():
    basis = affine_basis("rigid")
    q = torch.tensor([1.0, -2.0, 0.5, 0.3, -0.2, 0.1])
    A = affine_matrix(q, basis)
    assert_allclose(A[:3, :3] @ A[:3, :3].T, torch.eye(3), atol=1e-12)
    assert_allclose(A[3], [0.0, 0.0, 0.0, 1.0], atol=1e-12)


def test_apply_affine_and_inverse():
    basis = affine_basis("translation")
    A = affine_matrix(torch.tensor([1.0, 0.0, -0.5]), basis)
    grid = identity_grid(LATTICE)
    center = lattice_center(LATTICE)
    moved = apply_affine(A, grid, center)
    assert_allclose(moved[0] - grid[0], 1.0)
    assert_allclose(moved[2] - grid[2], -0.5)
    back = inverse_coordinates(A, None, LATTICE)
    assert_allclose(back[0], grid[0] - 1.0, atol=1e-12)
    assert_allclose(back[2], grid[2] + 0.5, atol=1e-12)


def test_inverse_coordinates_undo_small_velocity():
    """exp(v) composed with exp(-v) is close to the identity for smooth v."""
    lattice = (8, 8, 8)
    v = smooth(random_field(3, scale=0.2, lattice=lattice), 4.0)
    A = torch.eye(4)
    phi = exponentiate(v)
    back = inverse_coordinates(A, v, lattice)
    composed = sample(phi - identity_grid(lattice), back) + back
    inner = (slice(None), slice(2, 6), slice(2, 6), slice(2, 6))
    assert_allclose(composed[inner], identity_grid(lattice)[inner], atol=1e-2)


def test_template_gradients():
    ramp = identity_grid(LATTICE)[1:2] * 2.0
    grads = template_gradients(ramp)
    assert grads.shape == (1, 3, *LATTICE)
    assert_allclose(grads[0, 0], 0.0)
    assert_allclose(grads[0, 1], 2.0)
    assert_allclose(grads[0, 2], 0.0)


def test_smooth():
    image = torch.full((2, *LATTICE), 3.0)
    assert smooth(image, 0.0) is image
    assert_allclose(smooth(image, 2.0), 3.0)
    spike = torch.zeros((1, 7, 7, 7))
    spike[0, 3, 3, 3] = 1.0
    out = smooth(spike, 2.0, voxel_size=(1.0, 1.0, 1.0))
    assert out[0, 3, 3, 3] < 1.0
    assert_allclose(out.sum(), 1.0, rtol=1e-3)


class TestRegularizationOperator:
    prm = (1e-2, 1e-1, 0.5, 0.1, 0.2)

    @pytest.fixture
    def operator(self):
        return RegularizationOperator(LATTICE, (1.0, 1.0, 1.0), self.prm)

    def test_operator_is_symmetric_positive(self, operator):
        u = random_field(0)
        v = random_field(1)
        assert_allclose(
            torch.sum(u * operator.apply(v)), torch.sum(operator.apply(u) * v), rtol=1e-10
        )
        assert operator.energy(u) > 0
        assert_allclose(operator.apply(u, 3.0), 3.0 * operator.apply(u), rtol=1e-12)
        assert operator.n_dof == 3 * math.prod(LATTICE)

    def test_constant_field(self, operator):
        """Only the absolute term acts on a constant field."""
        v = torch.ones((3, *LATTICE))
        assert_allclose(operator.apply(v), self.prm[0] * v, atol=1e-12)

    def test_logdet(self, operator):
        assert math.isfinite(operator.logdet())
        assert_allclose(
            operator.logdet(2.0), operator.logdet() + operator.n_dof * math.log(2.0), rtol=1e-10
        )
        # with no data, the trace of lam L inv(lam L) is the number of dofs
        assert_allclose(operator.trace_approx(0.0, 2.0), operator.n_dof, rtol=1e-10)
        assert 0 < operator.trace_approx(5.0, 2.0) < operator.n_dof
        assert_allclose(operator.logdet_approx(0.0, 2.0), operator.logdet(2.0), rtol=1e-10)

    @pytest.mark.parametrize("scale", [0.1, 1.0, 10.0])
    def test_solve(self, operator, scale):
        """(diag(h) + scale L) x = g is solved to a small relative residual."""
        g = random_field(5)
        h = torch.abs(random_field(6)) + 0.1
        x = operator.solve(h, g, scale, max_iter=200, tol=1e-10)
        residual = h * x + operator.apply(x, scale) - g
        assert torch.linalg.vector_norm(residual) < 1e-6 * torch.linalg.vector_norm(g)

    def test_solve_constant_hessian_is_exact(self, operator):
        g = random_field(7)
        h = torch.full_like(g, 2.0)
        x = operator.solve(h, g, 1.0, max_iter=1)
        assert_allclose(h * x + operator.apply(x), g, atol=1e-8)

    def test_solve_zero_gradient(self, operator):
        x = operator.solve(None, torch.zeros((3, *LATTICE)), 1.0)
        assert torch.all(x == 0)

    def test_bad_parameters(self):
        with pytest.raises(ValueError, match="5 elements"):
            RegularizationOperator(LATTICE, (1.0, 1.0, 1.0), (1.0, 2.0))

import math

import pytest
import torch
from numpy.testing import assert_allclose

from pgshape.linalg import (
    is_spd,
    logdet,
    orthogonalization_matrix,
    precision_gamma,
    precision_wishart,
    replace_nonfinite,
    robust_inv,
    scale_fixed,
    scale_gauss_newton,
    symmetrize,
)
from pgshape.utils import set_log_level


def random_spd(K, seed, scale=1.0):
    gen = torch.Generator().manual_seed(seed)
    X = torch.randn((K + 3, K), generator=gen, dtype=torch.float64)
    return scale * (X.T @ X) + 1e-3 * torch.eye(K, dtype=torch.float64)


def test_robust_inv():
    """The inverse of an SPD matrix, and something finite for a singular one."""
    A = random_spd(4, seed=0)
    iA = robust_inv(A)
    assert_allclose(A @ iA, torch.eye(4), atol=1e-8)
    assert torch.equal(iA, iA.T)

    singular = torch.zeros((3, 3), dtype=torch.float64)
    singular[0, 0] = 1.0
    iS = robust_inv(singular)
    assert torch.isfinite(iS).all()
    assert_allclose(iS[0, 0], 1.0, rtol=1e-6)


def test_logdet_and_is_spd():
    A = random_spd(3, seed=1)
    assert_allclose(float(logdet(A)), float(torch.logdet(A)), rtol=1e-10)
    assert is_spd(A)
    assert not is_spd(-A)
    assert not is_spd(torch.tensor([[1.0, 2.0], [0.0, 1.0]], dtype=torch.float64))


@pytest.mark.parametrize("K", [1, 2, 5])
@pytest.mark.parametrize("seed", [0, 1, 2])
def test_orthogonalization_round_trip(K, seed):
    """The rotation times its inverse is the identity."""
    zz = random_spd(K, seed=seed, scale=10.0)
    ww = random_spd(K, seed=seed + 100)
    U, iU = orthogonalization_matrix(zz, ww)
    assert_allclose(U @ iU, torch.eye(K), atol=1e-8)
    # latent coordinates are whitened and the subspace statistic diagonalised
    assert_allclose(U @ zz @ U.T, torch.eye(K), atol=1e-8)
    eww = iU.T @ ww @ iU
    assert_allclose(eww - torch.diag(torch.diagonal(eww)), 0.0, atol=1e-8)
    # sorted by decreasing subspace energy
    d = torch.diagonal(eww)
    assert torch.all(d[:-1] >= d[1:] - 1e-10)


def test_scale_fixed():
    Q, iQ = scale_fixed(9, 3)
    assert_allclose(Q, 3.0 * torch.eye(3))
    assert_allclose(Q @ iQ, torch.eye(3), atol=1e-12)


def test_scale_gauss_newton():
    """Diagonal, positive and invertible rescaling."""
    ezz = torch.diag(torch.tensor([0.5, 2.0, 8.0], dtype=torch.float64))
    ww = torch.diag(torch.tensor([4.0, 1.0, 0.0], dtype=torch.float64))
    Q, iQ = scale_gauss_newton(ezz, ww, nz0=3.0, N=6)
    assert torch.equal(Q, torch.diag(torch.diagonal(Q)))
    assert torch.all(torch.diagonal(Q) > 0)
    assert_allclose(Q @ iQ, torch.eye(3), atol=1e-12)


@pytest.mark.parametrize("n0", [0.0, 3.0, 10.0])
@pytest.mark.parametrize("seed", [0, 1])
def test_precision_wishart_is_spd(n0, seed):
    K = 3
    ss = random_spd(K, seed=seed)
    A = precision_wishart(n0, ss, N=5)
    assert A.shape == (K, K)
    assert_allclose(A, symmetrize(A), atol=1e-12)
    assert is_spd(A)


def test_precision_wishart_values():
    """Without data the prior expectation is recovered."""
    eye = torch.eye(2, dtype=torch.float64)
    assert_allclose(precision_wishart(4.0, torch.zeros((2, 2), dtype=torch.float64), 0), eye)
    # improper prior: maximum likelihood
    ss = 4.0 * eye
    assert_allclose(precision_wishart(0, ss, 8), 2.0 * eye)


@pytest.mark.parametrize("n0", [0.0, 1.0, 10.0])
@pytest.mark.parametrize("err", [0.0, 1.0, 1e6])
def test_precision_gamma_is_positive(n0, err):
    lam = precision_gamma(10.0, n0, err, N=3, lattice=(4, 4, 4))
    assert isinstance(lam, float)
    assert lam > 0
    assert math.isfinite(lam)


def test_precision_gamma_prior_limit():
    """With the prior energy as data, the prior precision is kept."""
    lattice = (2, 3, 4)
    M = 3 * math.prod(lattice)
    lam = precision_gamma(5.0, 2.0, err=3 * M / 5.0, N=3, lattice=lattice)
    assert_allclose(lam, 5.0)


def test_replace_nonfinite(capsys):
    set_log_level("WARNING")
    values = torch.tensor([1.0, math.nan, 3.0, math.inf], dtype=torch.float64)
    out = replace_nonfinite(values, fallback="mean", name="llm")
    assert_allclose(out, [1.0, 2.0, 3.0, 2.0])
    assert "2 non-finite entries of llm" in capsys.readouterr().out
    # the input is left untouched
    assert math.isnan(float(values[1]))

    out = replace_nonfinite(values, fallback="zero")
    assert_allclose(out, [1.0, 0.0, 3.0, 0.0])

    clean = torch.ones(3, dtype=torch.float64)
    assert replace_nonfinite(clean) is clean
    with pytest.raises(ValueError, match="fallback must be"):
        replace_nonfinite(values, fallback="median")
    set_log_level("INFO")

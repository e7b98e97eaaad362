import math

import pytest
import torch
from numpy.testing import assert_allclose

from pgshape.bound import (
    COMPONENTS,
    BoundTracker,
    kl_residual,
    lb_affine,
    lb_gaussian_coordinates,
    lb_latent,
    lb_precision_matrix,
    lb_precision_residual,
    ll_prior_subspace,
)
from pgshape.constants import LOG_2PI


def test_tracker_sums_defined_components():
    """Components that were never computed contribute 0."""
    tracker = BoundTracker()
    assert tracker.total == 0.0
    assert tracker.get("llm") is None
    tracker.update(llm=-10.0, lbz=-2.0)
    assert tracker.total == -12.0
    tracker.update(llm=-8.0)
    assert tracker.total == -10.0
    with pytest.raises(KeyError, match="Unknown bound component"):
        tracker.update(foo=1.0)
    assert set(COMPONENTS) == {"llm", "llw", "lbr", "lbz", "lbl", "lbaz", "lbq", "lbaq"}


def test_tracker_checkpoints():
    tracker = BoundTracker()
    tracker.update(llm=-100.0)
    tracker.checkpoint("Init", loop=True)
    assert tracker.checkpoints == [-100.0]
    # a single loop checkpoint does not define a gain
    assert tracker.lbgain == math.inf

    tracker.update(llm=-90.0)
    tracker.checkpoint("Affine")
    assert tracker.lbdiff == 10.0
    # intermediate checkpoints do not touch the gain
    assert tracker.lbgain == math.inf

    tracker.update(llm=-80.0)
    tracker.checkpoint("Template", loop=True)
    assert_allclose(tracker.lbgain, 0.2)
    assert tracker.components["llm"] == [-100.0, -90.0, -80.0]

    assert tracker.close_iteration() == -80.0
    assert tracker.history == [-80.0]


def test_tracker_round_trip():
    tracker = BoundTracker()
    tracker.update(llm=-3.0, lbq=-1.0)
    tracker.checkpoint("Init", loop=True)
    tracker.close_iteration()
    restored = BoundTracker.from_dict(tracker.to_dict())
    assert restored == tracker


def test_gaussian_coordinates_kl_is_zero_at_prior():
    """A posterior equal to the prior has zero KL."""
    A = torch.tensor([[2.0, 0.5], [0.5, 1.0]], dtype=torch.float64)
    S = torch.linalg.inv(A)
    lb = lb_gaussian_coordinates([S], torch.zeros((2, 2), dtype=torch.float64), S, A, N=1)
    assert_allclose(lb, 0.0, atol=1e-12)
    # moving the mean away from zero decreases the bound
    z = torch.tensor([1.0, -1.0], dtype=torch.float64)
    assert lb_latent([S], torch.outer(z, z), S, A, 1) < 0


def test_lb_affine_restricts_to_regularised_parameters():
    A = torch.eye(2, dtype=torch.float64)
    S = torch.eye(3, dtype=torch.float64)
    qq = torch.zeros((3, 3), dtype=torch.float64)
    qq[2, 2] = 100.0
    # the third parameter is not regularised: its large value does not count
    assert_allclose(lb_affine([S], qq, S, A, 1, [0, 1]), 0.0, atol=1e-12)


def test_precision_kl_is_zero_at_prior():
    eye = torch.eye(3, dtype=torch.float64)
    assert_allclose(lb_precision_matrix(eye, 0, 5.0), 0.0, atol=1e-10)
    assert_allclose(lb_precision_residual(10.0, 0, 4.0, 10.0, (2, 2, 2)), 0.0, atol=1e-6)
    # improper priors contribute nothing
    assert lb_precision_matrix(2.0 * eye, 4, 0) == 0.0
    assert lb_precision_residual(3.0, 4, 0, 10.0, (2, 2, 2)) == 0.0


@pytest.mark.parametrize("scale", [0.5, 2.0])
@pytest.mark.parametrize("N", [0, 3])
def test_precision_kl_is_non_positive(scale, N):
    eye = torch.eye(3, dtype=torch.float64)
    assert lb_precision_matrix(scale * eye, N, 5.0) <= 1e-10
    assert lb_precision_residual(10.0 * scale, N, 4.0, 10.0, (2, 2, 2)) <= 1e-6


def test_kl_residual():
    n_dof, lam, logdet_operator = 24, 2.0, -3.0
    prior_logdet = n_dof * math.log(lam) + logdet_operator
    kl = kl_residual(
        energy=0.0,
        trace=n_dof,
        logdet_posterior=prior_logdet,
        lam=lam,
        logdet_operator=logdet_operator,
        n_dof=n_dof,
    )
    assert_allclose(kl, 0.0, atol=1e-12)
    # a non-zero field costs 0.5 * lam * energy
    kl = kl_residual(
        energy=4.0,
        trace=n_dof,
        logdet_posterior=prior_logdet,
        lam=lam,
        logdet_operator=logdet_operator,
        n_dof=n_dof,
    )
    assert_allclose(kl, 4.0)


def test_ll_prior_subspace():
    ww = torch.diag(torch.tensor([1.0, 3.0], dtype=torch.float64))
    ll = ll_prior_subspace(ww, logdet_operator=2.0, n_dof=6)
    assert_allclose(ll, 0.5 * 2 * (2.0 - 6 * LOG_2PI) - 2.0)

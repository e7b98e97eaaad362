"""
End-to-end tests of the shape model fit.

A small population of blurred ellipsoids is fitted on a coarse lattice. With
``lb_threshold=1`` every finite gain triggers the next block, so three
iterations run the affine, principal geodesic and residual stages in turn and
the fourth one stops.
"""
import math

import numpy as np
import pytest
import torch
from numpy.testing import assert_allclose
from sklearn.base import clone
from sklearn.exceptions import NotFittedError

from pgshape import (
    CheckpointError,
    ConfigurationError,
    PGShapeModel,
    fit_shape_model,
    fit_subjects,
)
from pgshape.activation import Stage
from pgshape.linalg import is_spd
from pgshape.storage import DiskStore
from pgshape.utils import generate_toy_shapes

pytestmark = pytest.mark.timeout(300)

LATTICE = (6, 6, 6)
OPTIONS = {
    "pg": {"K": 2},
    "model": {"name": "categorical"},
    "q": {"basis": "rigid"},
    "tpl": {"fwhm": 1.0},
    "iter": {"gn": 1, "ls": 4, "solver": 5},
}


@pytest.fixture(scope="module")
def images():
    return generate_toy_shapes(n_subjects=4, lattice=LATTICE, n_classes=2, seed=0)


@pytest.fixture(scope="module")
def trained(images):
    return fit_shape_model(
        images, OPTIONS, max_iter=5, lb_threshold=1.0, random_state=0, verbose=False
    )


def test_fit_shape_model(trained):
    """Every block is activated in turn and the fit stops once all converged."""
    model = trained["model"]
    history = trained["history"]
    assert model.activation.stage is Stage.CONVERGED
    assert model.iteration == 3
    assert len(history) == model.iteration
    assert all(math.isfinite(lb) for lb in history)
    assert is_spd(model.affine_precision)
    assert is_spd(model.latent_precision)
    assert model.residual_precision > 0
    assert model.err is not None
    # the smoothing was halved when PG and then the residual fields were activated
    assert model.activation.fwhm == 0.25
    # every component of the bound has been computed
    assert set(model.bound.values) == {
        "llm", "llw", "lbr", "lbz", "lbl", "lbaz", "lbq", "lbaq"
    }

    subjects = trained["subjects"]
    assert len(subjects) == 4
    for subject in subjects:
        assert torch.isfinite(subject.latent).all()
        assert torch.isfinite(subject.residual).all()
        assert subject.affine.shape == (6,)
    assert_allclose(model.template.exp().sum(dim=0), 1.0, rtol=1e-10)


@pytest.fixture(scope="module")
def centred():
    return generate_toy_shapes(
        n_subjects=4, lattice=(4, 4, 4), n_classes=2, jitter=0.0, seed=0
    )


def test_small_synthetic_scenario(centred):
    """Five iterations with the default weights, priors and affine basis."""
    result = fit_shape_model(
        centred,
        n_modes=2,
        noise_model="categorical",
        max_iter=5,
        lb_threshold=1e-4,
        random_state=0,
        verbose=False,
    )
    model = result["model"]
    history = result["history"]
    assert result["config"].affine_basis == "affine"
    assert len(history) == 5
    assert model.iteration == 5
    assert all(math.isfinite(lb) for lb in history)
    assert is_spd(model.affine_precision)


def test_small_synthetic_scenario_activates_pg(centred):
    """Identical centred subjects: the affine block settles and PG is activated.

    By symmetry the rigid parameters stay at the identity, so only the
    affine precision moves and the relative gain quickly drops below the
    threshold.
    """
    result = fit_shape_model(
        centred,
        n_modes=2,
        noise_model="categorical",
        affine_basis="rigid",
        max_iter=5,
        lb_threshold=1e-4,
        random_state=0,
        verbose=False,
    )
    model = result["model"]
    assert len(result["history"]) == model.iteration <= 5
    assert model.activation.stage >= Stage.PG


def test_fit_stops_at_max_iter(images):
    result = fit_shape_model(images, OPTIONS, max_iter=2, random_state=0, verbose=False)
    model = result["model"]
    assert model.iteration == 2
    assert len(result["history"]) == 2
    assert not model.activation.converged


@pytest.mark.slow
def test_missing_subject_fails_every_affine_update(images):
    """A subject without any observed voxel keeps its identity transform."""
    images = images.copy()
    images[0] = np.nan
    result = fit_shape_model(
        images, OPTIONS, max_iter=3, lb_threshold=1.0, random_state=0, verbose=False
    )
    subject = result["subjects"][0]
    assert subject.affine_backoff.n_failures == 3
    assert subject.affine_backoff.ok2 == -3
    assert torch.all(subject.affine == 0)
    assert all(math.isfinite(lb) for lb in result["history"])


@pytest.mark.slow
def test_checkpoint_and_resume(images, tmp_path):
    first = fit_shape_model(
        images, OPTIONS, max_iter=2, lb_threshold=1.0, random_state=0,
        directory=tmp_path, verbose=False,
    )
    path = tmp_path / "pg_result.pt"
    assert path.exists()
    assert first["model"].iteration == 2

    resumed = fit_shape_model(resume=path, max_iter=3, verbose=False)
    model = resumed["model"]
    assert resumed["config"].max_iter == 3
    assert resumed["config"].n_modes == 2
    assert model.iteration == 3
    assert len(resumed["history"]) == 3
    assert_allclose(resumed["history"][:2], first["history"])
    assert model.activation.stage is Stage.RESIDUAL


def test_resume_errors(images, tmp_path):
    with pytest.raises(ConfigurationError, match="mutually exclusive"):
        fit_shape_model(images, resume=tmp_path / "pg_result.pt")
    with pytest.raises(CheckpointError, match="Cannot read checkpoint"):
        fit_shape_model(resume=tmp_path / "missing.pt")
    with pytest.raises(ConfigurationError, match="required"):
        fit_shape_model()


@pytest.fixture(scope="module")
def checkpoint(images, tmp_path_factory):
    directory = tmp_path_factory.mktemp("checkpoint")
    fit_shape_model(
        images, OPTIONS, max_iter=1, random_state=0, directory=directory, verbose=False
    )
    return directory / "pg_result.pt"


@pytest.mark.parametrize("changes, match", [
    ({"n_modes": 3}, "n_modes cannot be changed"),
    ({"noise_model": "bernoulli"}, "noise_name cannot be changed"),
    ({"affine_basis": "translation"}, "affine_basis cannot be changed"),
    ({"affine_rind": (0, 1, 2)}, "regularized_affine cannot be changed"),
    ({"lattice": (5, 5, 5)}, "lattice cannot be changed"),
    ({"dtype": "float32"}, "dtype cannot be changed"),
])
def test_resume_rejects_inconsistent_options(checkpoint, changes, match):
    with pytest.raises(ConfigurationError, match=match):
        fit_shape_model(resume=checkpoint, verbose=False, **changes)


def test_resume_updates_threshold(checkpoint):
    # unchanged structural options are accepted
    result = fit_shape_model(
        resume=checkpoint, n_modes=2, lattice=LATTICE, max_iter=1, lb_threshold=0.5,
        verbose=False,
    )
    model = result["model"]
    assert result["config"].lb_threshold == 0.5
    assert model.activation.threshold == 0.5
    # max_iter already reached: nothing to do
    assert model.iteration == 1


def test_ondisk(images, tmp_path):
    result = fit_shape_model(
        images, OPTIONS, max_iter=1, ondisk=True, directory=tmp_path, random_state=0,
        verbose=False,
    )
    store = result["store"]
    assert isinstance(store, DiskStore)
    assert (tmp_path / "images" / "image00003.pt").exists()
    assert_allclose(store.load("image00001"), images[1])
    assert result["model"].iteration == 1


def test_image_errors(images):
    with pytest.raises(ConfigurationError, match="lattice"):
        fit_shape_model(images, OPTIONS, lattice=(5, 5, 5), verbose=False)
    with pytest.raises(ConfigurationError, match="must have shape"):
        fit_shape_model(images[0], OPTIONS, verbose=False)
    with pytest.raises(ConfigurationError, match="Unknown option"):
        fit_shape_model(images, {"foo": 1})


def test_list_of_images(images):
    result = fit_shape_model(
        list(images), OPTIONS, max_iter=1, random_state=0, verbose=False
    )
    assert len(result["subjects"]) == 4


def test_fit_subjects(images, trained):
    model = trained["model"]
    config = trained["config"]
    template = model.template.clone()
    result = fit_subjects(images[:2], model, config, max_iter=3, verbose=False)
    frozen = result["model"]
    assert len(result["subjects"]) == 2
    assert frozen is not model
    # the trained population parameters are untouched
    assert torch.equal(model.template, template)
    assert torch.equal(frozen.template, template)
    assert torch.equal(frozen.subspace, model.subspace)
    assert torch.equal(frozen.latent_precision, model.latent_precision)
    assert frozen.residual_precision == model.residual_precision
    assert all(math.isfinite(lb) for lb in result["history"])
    for subject in result["subjects"]:
        assert subject.latent.shape == (2,)
        assert torch.isfinite(subject.latent).all()

    # fewer modes than trained
    result = fit_subjects(images[:1], model, config, n_modes=1, max_iter=1, verbose=False)
    assert result["subjects"][0].latent.shape == (1,)
    assert result["model"].subspace.shape[0] == 1


def test_fit_subjects_errors(images, trained):
    model = trained["model"]
    config = trained["config"]
    with pytest.raises(ConfigurationError, match="only has 2"):
        fit_subjects(images, model, config, n_modes=3)
    with pytest.raises(ConfigurationError, match="affine prior"):
        fit_subjects(images, model, config, affine_basis="affine")
    small = generate_toy_shapes(n_subjects=1, lattice=(5, 5, 5), seed=1)
    with pytest.raises(ConfigurationError, match="lattice"):
        fit_subjects(small, model, config)


@pytest.mark.sklearn_api
def test_estimator(images):
    estimator = PGShapeModel(
        n_modes=2,
        noise_model="categorical",
        max_iter=3,
        affine_basis="rigid",
        fwhm=1.0,
        lb_threshold=1.0,
        random_state=0,
        options={"iter": {"gn": 1, "ls": 4, "solver": 5}},
    )
    assert clone(estimator).get_params() == estimator.get_params()
    with pytest.raises(NotFittedError):
        estimator.transform(images)

    Z = estimator.fit_transform(images, verbose=False)
    assert Z.shape == (4, 2)
    assert np.isfinite(Z).all()
    assert estimator.template_.shape == (2, *LATTICE)
    assert estimator.subspace_.shape == (2, 3, *LATTICE)
    assert estimator.lattice_ == LATTICE
    assert len(estimator.lower_bound_) == estimator.n_iter_ == 3
    assert_allclose(Z, estimator.latent_)

    Z_new = estimator.transform(images[:2], verbose=False)
    assert Z_new.shape == (2, 2)

    V = estimator.inverse_transform(Z)
    assert V.shape == (4, 3, *LATTICE)
    assert_allclose(estimator.inverse_transform(np.zeros(2)), 0.0)
    with pytest.raises(ValueError, match="columns"):
        estimator.inverse_transform(np.zeros((1, 3)))

"""Scikit-learn class wrapper for principal geodesic shape models."""
import numpy as np
import torch
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

from .core import fit_shape_model, fit_subjects
from .kernels import compose_velocity


class PGShapeModel(TransformerMixin, BaseEstimator):
    """Principal geodesic shape model fitted by variational EM.

    Every subject image is explained as a template warped by an affine
    transform composed with a diffeomorphism, whose velocity field is a
    linear combination of ``n_modes`` principal geodesics plus a residual
    field. The latent coordinates of a subject along the principal geodesics
    are its low dimensional shape descriptor.

    Parameters
    ----------
    n_modes : int, default=32
        Number of principal geodesics.
    noise_model : {"normal", "categorical", "bernoulli"}, default="normal"
        Matching term between the warped template and the images. ``"gaussian"``
        and ``"l2"`` are aliases of ``"normal"``.
    max_iter : int, default=100
        Maximum number of EM iterations.
    affine_basis : {"affine", "similitude", "rigid", "translation"}, default="affine"
        Group of the affine part of the transform.
    fwhm : float, default=3.0
        Initial smoothing of the template, halved at every block activation.
    lb_threshold : float, default=1e-4
        Relative gain of the lower bound under which the next block is
        activated.
    n_jobs : int, default=1
        Number of threads processing subjects. ``-1`` uses all cores.
    random_state : int or None, default=None
        Seed of the random initialisation of the latent coordinates.
    options : dict or None, default=None
        Any other option of :class:`~pgshape.ShapeModelConfig`, either flat or
        as a nested option tree.

    Attributes
    ----------
    template_ : ndarray of shape (n_channels, D, H, W)
        Template, in the parameterisation of the noise model (log-probabilities,
        logits or means).
    subspace_ : ndarray of shape (``n_modes``, 3, D, H, W)
        Principal geodesics, as velocity fields in voxels.
    latent_ : ndarray of shape (n_subjects, ``n_modes``)
        Latent coordinates of the training subjects.
    lower_bound_ : ndarray of shape (``n_iter_``,)
        Lower bound after every EM iteration.
    n_iter_ : int
        Number of EM iterations run.
    lattice_ : tuple of int
        Lattice of the training images.
    model_ : ModelState
        Complete fitted model.
    config_ : ShapeModelConfig
        Configuration used for the fit.

    Examples
    --------
    >>> from pgshape import PGShapeModel
    >>> from pgshape.utils import generate_toy_shapes
    >>> X = generate_toy_shapes(n_subjects=6, lattice=(8, 8, 8), seed=0)
    >>> model = PGShapeModel(n_modes=2, noise_model="categorical", max_iter=3)
    >>> Z = model.fit_transform(X)
    >>> Z.shape
    (6, 2)
    """

    def __init__(
            self,
            n_modes=32,
            *,
            noise_model="normal",
            max_iter=100,
            affine_basis="affine",
            fwhm=3.0,
            lb_threshold=1e-4,
            n_jobs=1,
            random_state=None,
            options=None,
            ):
        super().__init__()
        self.n_modes = n_modes
        self.noise_model = noise_model
        self.max_iter = max_iter
        self.affine_basis = affine_basis
        self.fwhm = fwhm
        self.lb_threshold = lb_threshold
        self.n_jobs = n_jobs
        self.random_state = random_state
        self.options = options

    def _overrides(self):
        return dict(
            n_modes=self.n_modes,
            noise_model=self.noise_model,
            max_iter=self.max_iter,
            affine_basis=self.affine_basis,
            fwhm=self.fwhm,
            lb_threshold=self.lb_threshold,
            n_jobs=self.n_jobs,
            random_state=self.random_state,
        )

    def fit(self, X, y=None, verbose=None):
        """Fit the shape model to a population of images.

        Parameters
        ----------
        X : array-like of shape (n_subjects, n_channels, D, H, W)
            Training images. Non-finite voxels are treated as missing.
        y : Ignored
            Not used, present here for API consistency by convention.
        verbose : bool or str or int or None, default=None
            Control verbosity of the logging output. If a str, it can be either
            ``"DEBUG"``, ``"INFO"``, ``"WARNING"``, ``"ERROR"``, or ``"CRITICAL"``.
            For ``bool``, ``True`` is the same as ``"INFO"``, ``False`` is the
            same as ``"WARNING"``. If ``None``, the current level is kept.

        Returns
        -------
        self : object
            Fitted estimator.
        """
        result = fit_shape_model(X, self.options, verbose=verbose, **self._overrides())
        model = result["model"]
        self.model_ = model
        self.config_ = result["config"]
        self.lattice_ = tuple(model.lattice)
        self.template_ = model.template.cpu().numpy()
        self.subspace_ = model.subspace.cpu().numpy()
        self.latent_ = np.stack([s.latent.cpu().numpy() for s in result["subjects"]])
        self.lower_bound_ = np.asarray(result["history"])
        self.n_iter_ = model.iteration
        return self

    def transform(self, X, verbose=None):
        """Latent coordinates of new subjects under the fitted model.

        The template and the principal geodesics are kept fixed; the affine,
        latent and residual parameters of every subject are fitted.

        Parameters
        ----------
        X : array-like of shape (n_subjects, n_channels, D, H, W)
            Images on the training lattice.

        Returns
        -------
        Z : ndarray of shape (n_subjects, ``n_modes``)
        """
        check_is_fitted(self)
        result = fit_subjects(
            X, self.model_, self.config_, verbose=verbose, max_iter=self.max_iter
        )
        return np.stack([s.latent.cpu().numpy() for s in result["subjects"]])

    def fit_transform(self, X, y=None, verbose=None):
        """Fit the model and return the latent coordinates of the training subjects.

        Parameters
        ----------
        X : array-like of shape (n_subjects, n_channels, D, H, W)
            Training images.
        y : Ignored
            Not used, present here for API consistency by convention.

        Returns
        -------
        Z : ndarray of shape (n_subjects, ``n_modes``)
        """
        self.fit(X, verbose=verbose)
        return self.latent_.copy()

    def inverse_transform(self, Z):
        """Velocity fields of the given latent coordinates.

        Parameters
        ----------
        Z : array-like of shape (n_subjects, ``n_modes``)
            Latent coordinates.

        Returns
        -------
        V : ndarray of shape (n_subjects, 3, D, H, W)
            Velocity fields ``sum_k Z[:, k] W_k``, in voxels.
        """
        check_is_fitted(self)
        Z = torch.as_tensor(np.atleast_2d(np.asarray(Z, dtype=np.float64)))
        subspace = self.model_.subspace
        if Z.shape[1] != subspace.shape[0]:
            raise ValueError(
                f"Z has {Z.shape[1]} columns but the model has {subspace.shape[0]} modes"
            )
        Z = Z.to(subspace.dtype)
        fields = [
            compose_velocity(
                latent=z,
                subspace=subspace,
                residual=None,
                lattice=self.lattice_,
                dtype=subspace.dtype,
            )
            for z in Z
        ]
        return torch.stack(fields).cpu().numpy()

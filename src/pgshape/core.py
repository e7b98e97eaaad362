import math
import time
from pathlib import Path
from typing import Any

import numpy as np
import torch

from pgshape._batching import SubjectBatcher, choose_batch_size
from pgshape.activation import ActivationState, annealed_weights
from pgshape.blocks import (
    BlockContext,
    affine_bound,
    affine_prior,
    fit_template,
    latent_bound,
    reduce_affine_statistics,
    reduce_latent_statistics,
    refresh_log_likelihood,
    residual_statistics,
    total_residual_kl,
    update_affine,
    update_latent,
    update_noise_variance,
    update_residual,
    update_subspace,
    update_template,
)
from pgshape.bound import (
    BoundTracker,
    lb_precision_matrix,
    lb_precision_residual,
    ll_prior_subspace,
)
from pgshape.constants import latent_init_scale, mineig
from pgshape.diffeo import RegularizationOperator, affine_basis
from pgshape.kernels import affine_derivatives, velocity_derivatives
from pgshape.linalg import robust_inv
from pgshape.noise import get_noise_model
from pgshape.state import (
    ConfigurationError,
    ModelState,
    ShapeModelConfig,
    SubjectState,
    get_initial_model,
    init_subject,
)
from pgshape.storage import (
    DiskStore,
    MemoryStore,
    load_checkpoint,
    save_checkpoint,
)
from pgshape.utils import log, log_step, logger, set_log_level


def fit_shape_model(
        images=None,
        options=None,
        *,
        resume=None,
        verbose=None,
        **overrides,
):
    """Fit a principal geodesic shape model to a population of images.

    Parameters
    ----------
    images : array-like, shape (n_subjects, n_channels, D, H, W), optional
        Observed images, or a sequence of (n_channels, D, H, W) arrays.
        Non-finite voxels are treated as missing. Channels are class
        probabilities for the categorical and bernoulli models and
        intensities for the normal model. Must be omitted when resuming.
    options : dict or ShapeModelConfig, optional
        Options, see :meth:`ShapeModelConfig.from_options`. When resuming,
        they update the configuration stored in the checkpoint (for example
        to raise ``max_iter``).
    resume : str or Path, optional
        Checkpoint written by a previous call. The configuration, model,
        subjects, bound history and activation stage are restored and the
        optimisation continues at the next iteration.
    verbose : str or int or bool or None
        Forwarded to :func:`pgshape.utils.set_log_level`.
    **overrides
        Flat options applied after ``options``.

    Returns
    -------
    result : dict
        ``config`` (ShapeModelConfig), ``model`` (ModelState), ``subjects``
        (list of SubjectState), ``history`` (lower bound after every
        iteration) and ``store`` (the image store).

    Raises
    ------
    ConfigurationError
        On invalid options or images that do not match the configuration.
    CheckpointError
        If ``resume`` cannot be read.
    """
    if verbose is not None:
        set_log_level(verbose)

    if resume is not None:
        if images is not None:
            raise ConfigurationError("images and resume are mutually exclusive")
        checkpoint = load_checkpoint(resume)
        model = checkpoint["model"]
        config = _resume_config(checkpoint["config"], _flat_options(options, overrides), model)
        subjects = checkpoint["subjects"]
        store = checkpoint["store"]
        log(f"Resuming from {resume} at iteration {model.iteration}", level="info")
        ctx = _build_context(config, model.lattice, len(subjects), store)
    else:
        if images is None:
            raise ConfigurationError("images are required unless resuming")
        config = ShapeModelConfig.from_options(options, **overrides)
        images = _as_images(images, config.dtype)
        lattice = _check_lattice(config, images)
        store, keys = _store_images(config, images, "images")
        N = images.shape[0]
        ctx = _build_context(config, lattice, N, store)
        subjects = [init_subject(config, n, key, lattice) for n, key in enumerate(keys)]
        model = get_initial_model(config, lattice, N)
        log(
            f"Fitting {N} subjects on a {lattice} lattice with {config.n_modes} modes "
            f"({config.noise_name} noise, {config.affine_basis} basis)",
            level="info",
        )
        with torch.no_grad():
            initialize(ctx=ctx, model=model, subjects=subjects)

    weights = annealed_weights(config.wpz, config.wpz0, config.max_iter, dtype=config.dtype)
    with torch.no_grad():
        optimize(ctx=ctx, model=model, subjects=subjects, weights=weights)
    return {
        "config": config,
        "model": model,
        "subjects": subjects,
        "history": list(model.bound.history),
        "store": store,
    }


def fit_subjects(images, model, config=None, *, verbose=None, **overrides):
    """Fit new subjects to a trained shape model.

    The template, the principal subspace and every precision are kept fixed;
    only the affine parameters, the latent coordinates and the residual
    fields of the new subjects are optimised.

    Parameters
    ----------
    images : array-like, shape (n_subjects, n_channels, D, H, W)
        Images of the new subjects, on the lattice of the model.
    model : ModelState
        Trained model, as returned by :func:`fit_shape_model`. Not modified.
    config : dict or ShapeModelConfig, optional
        Options of the fit. ``n_modes`` may be smaller than the number of
        trained modes, in which case the leading modes are used.
    verbose : str or int or bool or None
        Forwarded to :func:`pgshape.utils.set_log_level`.

    Returns
    -------
    result : dict
        Same keys as :func:`fit_shape_model`; ``model`` is a frozen copy of
        the trained model holding the statistics of the new subjects.
    """
    if verbose is not None:
        set_log_level(verbose)
    flat = {"n_modes": model.n_modes}
    flat.update(_flat_options(config, overrides))
    config = ShapeModelConfig(**flat)
    if config.n_modes > model.n_modes:
        raise ConfigurationError(
            f"Requested {config.n_modes} modes but the model only has {model.n_modes}"
        )
    if len(config.regularized_affine) != model.affine_precision.shape[0]:
        raise ConfigurationError(
            f"The affine prior of the model has {model.affine_precision.shape[0]} "
            f"parameters but the {config.affine_basis!r} basis regularises "
            f"{len(config.regularized_affine)}"
        )
    if model.template is None:
        raise ConfigurationError("The model has no template; fit it first")
    images = _as_images(images, config.dtype)
    lattice = _check_lattice(config, images, expected=model.lattice)
    store, keys = _store_images(config, images, "fit_images")
    N = images.shape[0]

    frozen = _freeze(model, config, N)
    ctx = _build_context(config, lattice, N, store, frozen=True)
    subjects = [init_subject(config, n, key, lattice) for n, key in enumerate(keys)]
    log(f"Fitting {N} new subjects with {config.n_modes} frozen modes", level="info")
    with torch.no_grad():
        initialize(ctx=ctx, model=frozen, subjects=subjects)
        optimize(ctx=ctx, model=frozen, subjects=subjects, weights=None)
    return {
        "config": config,
        "model": frozen,
        "subjects": subjects,
        "history": list(frozen.bound.history),
        "store": store,
    }


def _freeze(model: ModelState, config: ShapeModelConfig, N: int) -> ModelState:
    """Copy of a trained model restricted to its leading modes, with fresh statistics."""
    K = config.n_modes
    n_affine = config.n_affine
    dtype = config.dtype
    frozen = ModelState.from_dict(model.to_dict())
    frozen.n_subjects = N
    frozen.subspace = model.subspace[:K].clone()
    frozen.subspace_covariance = model.subspace_covariance[:K, :K].clone()
    frozen.latent_precision = model.latent_precision[:K, :K].clone()
    frozen.zz = torch.zeros((K, K), dtype=dtype)
    frozen.Sz = torch.zeros((K, K), dtype=dtype)
    frozen.qq = torch.zeros((n_affine, n_affine), dtype=dtype)
    frozen.Sq = torch.zeros((n_affine, n_affine), dtype=dtype)
    frozen.iteration = 0
    frozen.bound = BoundTracker()
    frozen.activation = ActivationState(threshold=config.lb_threshold, fwhm=0.0)
    frozen.update_latent_regularization()
    return frozen


# -----------------------------------------------------------------------------
# Set up
# -----------------------------------------------------------------------------
def _flat_options(options, overrides) -> dict[str, Any]:
    """Options that were explicitly passed, keyed by field name."""
    if isinstance(options, ShapeModelConfig):
        options = options.to_options()
    flat: dict[str, Any] = {}
    for key, value in dict(options or {}).items():
        ShapeModelConfig._collect(key, value, flat)
    for key, value in overrides.items():
        ShapeModelConfig._collect(key, value, flat)
    return flat


# Options that define the parameter shapes or the model itself
_FIXED_ON_RESUME = (
    "n_modes",
    "noise_name",
    "affine_basis",
    "regularized_affine",
    "voxel_size",
    "prm",
    "dtype",
)


def _resume_config(config, changes, model) -> ShapeModelConfig:
    """Apply options to the configuration of a checkpoint."""
    if not changes:
        return config
    new = config.replace(**changes)
    for name in _FIXED_ON_RESUME:
        old, value = getattr(config, name), getattr(new, name)
        if value != old:
            raise ConfigurationError(
                f"{name} cannot be changed when resuming: the checkpoint has "
                f"{old!r}, got {value!r}"
            )
    if new.lattice is not None and tuple(new.lattice) != tuple(model.lattice):
        raise ConfigurationError(
            f"lattice cannot be changed when resuming: the checkpoint has "
            f"{tuple(model.lattice)!r}, got {tuple(new.lattice)!r}"
        )
    model.activation.threshold = new.lb_threshold
    return new


def _as_images(images, dtype: torch.dtype) -> torch.Tensor:
    if isinstance(images, (list, tuple)):
        images = torch.stack([torch.as_tensor(np.asarray(im), dtype=dtype) for im in images])
    else:
        images = torch.as_tensor(np.asarray(images), dtype=dtype)
    if images.ndim != 5:
        raise ConfigurationError(
            f"images must have shape (n_subjects, n_channels, D, H, W), got "
            f"{tuple(images.shape)}"
        )
    if images.shape[0] < 1:
        raise ConfigurationError("At least one subject is required")
    return images


def _check_lattice(config, images, expected=None) -> tuple[int, int, int]:
    lattice = tuple(int(n) for n in images.shape[2:])
    wanted = expected if expected is not None else config.lattice
    if wanted is not None and tuple(wanted) != lattice:
        raise ConfigurationError(
            f"The images have a {lattice} lattice but {tuple(wanted)} was requested"
        )
    return lattice


def _store_images(config, images, folder):
    if config.ondisk:
        store = DiskStore(Path(config.directory) / folder)
    else:
        store = MemoryStore()
    keys = []
    for n, image in enumerate(images):
        key = f"image{n:05d}"
        store.save(key, image.clone())
        keys.append(key)
    return store, keys


def _build_context(config, lattice, N, store, *, frozen=False) -> BlockContext:
    noise = get_noise_model(config.noise_name, sigma2=config.sigma2)
    operator = RegularizationOperator(
        lattice, config.voxel_size, config.prm, dtype=config.dtype
    )
    batch_size = config.batch_size
    if batch_size is None:
        n_channels = 1
        if isinstance(store, MemoryStore) and store.keys():
            n_channels = store.load(store.keys()[0]).shape[0]
        batch_size = choose_batch_size(
            N=N,
            lattice=lattice,
            n_channels=n_channels,
            n_modes=config.n_modes,
            dtype=np.float64 if config.dtype == torch.float64 else np.float32,
        )
    batcher = SubjectBatcher(n_jobs=config.n_jobs, batch_size=batch_size)
    logger.debug(f"Subjects processed by {batcher}")
    return BlockContext(
        config=config,
        noise=noise,
        operator=operator,
        basis=affine_basis(config.affine_basis, dtype=config.dtype),
        store=store,
        batcher=batcher,
        logdet_operator=operator.logdet(),
        frozen=frozen,
    )


def initialize(*, ctx: BlockContext, model: ModelState, subjects: list[SubjectState]):
    """Initial template, latent coordinates, residual statistics and bound."""
    cfg = ctx.config
    N = len(subjects)
    K = model.n_modes
    if not ctx.frozen:
        log("Initializing template ...", level="info")
        fit_template(ctx, model, subjects)
        update_noise_variance(ctx, model, subjects)
        _init_latent(cfg, subjects)

    latent_covariance = robust_inv(model.latent_regularization)
    for subject in subjects:
        subject.latent_covariance = latent_covariance.clone()
    reduce_latent_statistics(model, subjects)

    prior = affine_prior(ctx, model)

    def init_posteriors(subject):
        # Laplace approximations around the identity transform
        image = ctx.image(subject)
        transform = ctx.transform(model, subject)
        _, g, h = ctx.derivatives(model, subject, image, transform)
        _, Hq = affine_derivatives(
            A=transform.A, basis=ctx.basis, phi=transform.phi, gradient=g, hessian=h
        )
        subject.affine_covariance = robust_inv(Hq + prior)
        _, hv = velocity_derivatives(A=transform.A, gradient=g, hessian=h)
        residual_statistics(ctx, model, subject, hv)

    ctx.batcher.map(init_posteriors, subjects)
    reduce_affine_statistics(model, subjects)
    refresh_log_likelihood(ctx, model, subjects)

    model.bound.update(
        lbz=latent_bound(model, subjects),
        lbq=affine_bound(ctx, model, subjects),
        lbr=-total_residual_kl(subjects),
    )
    if not ctx.frozen:
        model.bound.update(
            llw=ll_prior_subspace(model.subspace_covariance, ctx.logdet_operator, ctx.n_dof),
            lbaz=lb_precision_matrix(model.latent_precision, N, cfg.latent_df),
            lbaq=lb_precision_matrix(model.affine_precision, N, cfg.affine_df),
            lbl=lb_precision_residual(
                model.residual_precision, N, cfg.nlambda0, cfg.lambda0, ctx.lattice
            ),
        )
    model.bound.checkpoint("Init", loop=True)
    logger.debug(f"Initialized {N} subjects and {K} modes")


def _init_latent(cfg: ShapeModelConfig, subjects: list[SubjectState]) -> None:
    """Random latent coordinates, orthogonalised so that ``zz = 0.01 N / K I``."""
    N = len(subjects)
    K = cfg.n_modes
    generator = torch.Generator()
    if cfg.random_state is None:
        generator.seed()
    else:
        generator.manual_seed(cfg.random_state)
    Z = torch.randn((N, K), generator=generator, dtype=torch.float64).to(cfg.dtype)
    S, V = torch.linalg.eigh(Z.T @ Z)
    S = torch.clamp(S, min=mineig * max(float(S.max()), 1.0))
    Rz = latent_init_scale * math.sqrt(N / K) * (V / S.sqrt()[None, :]).T
    for subject, z in zip(subjects, Z):
        subject.latent = Rz @ z


# -----------------------------------------------------------------------------
# Main loop
# -----------------------------------------------------------------------------
def optimize(
        *,
        ctx: BlockContext,
        model: ModelState,
        subjects: list[SubjectState],
        weights: torch.Tensor | None,
):
    """Variational EM loop.

    Every iteration first lets the activation state machine react to the
    relative gain of the previous iteration, then runs the active blocks in
    order (affine, principal subspace, latent coordinates, residual fields)
    and finally refits the template.
    """
    cfg = ctx.config
    c_start = time.time()
    for it in range(model.iteration, cfg.max_iter):
        c1 = time.time()
        model.activation.advance(model.bound.lbgain)
        if model.activation.converged:
            log(f"Stopping after {it} iterations", level="info")
            break
        if weights is not None:
            model.regularization_weights = tuple(float(w) for w in weights[it])
            model.update_latent_regularization()
        log_step("Iteration", f"{it + 1} / {cfg.max_iter}", weight="bold")

        update_affine(ctx, model, subjects)
        if model.activation.pg:
            if not ctx.frozen:
                update_subspace(ctx, model, subjects)
            update_latent(ctx, model, subjects)
        if model.activation.residual:
            update_residual(ctx, model, subjects)
        update_template(ctx, model, subjects)

        lb = model.bound.close_iteration()
        model.iteration = it + 1
        log_step(
            "Iteration", it + 1, f"LB = {lb:.6g}", f"took {time.time() - c1:.2f} seconds"
        )
        if cfg.directory is not None and not ctx.frozen:
            save_checkpoint(
                Path(cfg.directory) / cfg.result_file, cfg, model, subjects, ctx.store
            )
    log(f"Finished in {time.time() - c_start:.2f} seconds", level="info")
    return model


__all__ = ["fit_shape_model", "fit_subjects", "initialize", "optimize"]

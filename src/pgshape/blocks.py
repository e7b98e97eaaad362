"""Block updates of the variational EM algorithm.

Every block follows the same pattern: a per-subject phase, mapped over the
population by a :class:`~pgshape._batching.SubjectBatcher` (each call only
writes to the subject it receives), then a single-threaded reduction that
updates the population parameters, the bound and the activation signals.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import torch

from pgshape._batching import SubjectBatcher
from pgshape._newton import backtracking_line_search, newton_direction
from pgshape._types import AffineBasis, ImageTensor
from pgshape.bound import (
    kl_residual,
    lb_affine,
    lb_latent,
    lb_precision_matrix,
    lb_precision_residual,
    ll_prior_subspace,
)
from pgshape.diffeo import (
    RegularizationOperator,
    inverse_coordinates,
    smooth,
    template_gradients,
    warp,
)
from pgshape.kernels import (
    Transform,
    affine_derivatives,
    latent_derivatives,
    match,
    match_log_likelihood,
    subject_transform,
    subspace_statistics,
    velocity_derivatives,
    warp_template,
)
from pgshape.linalg import (
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
from pgshape.noise import NoiseModel
from pgshape.state import ModelState, ShapeModelConfig, SubjectState
from pgshape.storage import ArrayStore
from pgshape.utils import log_step, logger


@dataclass(slots=True)
class BlockContext:
    """Everything a block needs besides the model and the subjects.

    ``frozen`` is set when fitting new subjects to a trained model: the
    population parameters (template, subspace, precisions) are then left
    untouched.
    """

    config: ShapeModelConfig
    noise: NoiseModel
    operator: RegularizationOperator
    basis: AffineBasis
    store: ArrayStore
    batcher: SubjectBatcher
    logdet_operator: float
    frozen: bool = False

    @property
    def lattice(self) -> tuple[int, int, int]:
        return self.operator.lattice

    @property
    def n_dof(self) -> int:
        return self.operator.n_dof

    @property
    def rind(self) -> list[int]:
        return list(self.config.regularized_affine)

    def image(self, subject: SubjectState) -> ImageTensor:
        return self.store.load(subject.image_key)

    def variance(self, model: ModelState, subject: SubjectState) -> torch.Tensor | None:
        if subject.noise_variance is not None:
            return subject.noise_variance
        return model.noise_variance

    def transform(
        self,
        model: ModelState,
        subject: SubjectState,
        *,
        affine: torch.Tensor | None = None,
        latent: torch.Tensor | None = None,
        residual: torch.Tensor | None = None,
        subspace: torch.Tensor | None = None,
    ) -> Transform:
        """Forward transform of a subject, optionally with trial parameters."""
        return subject_transform(
            affine=subject.affine if affine is None else affine,
            latent=subject.latent if latent is None else latent,
            residual=subject.residual if residual is None else residual,
            subspace=model.subspace if subspace is None else subspace,
            basis=self.basis,
            lattice=self.lattice,
            steps=self.config.integration_steps,
        )

    def log_likelihood(self, model, subject, image, transform) -> float:
        return match_log_likelihood(
            noise=self.noise,
            image=image,
            template=model.template,
            transform=transform,
            variance=self.variance(model, subject),
        )

    def derivatives(self, model, subject, image, transform):
        return match(
            noise=self.noise,
            image=image,
            template=model.template,
            gradients=model.template_gradients,
            transform=transform,
            variance=self.variance(model, subject),
        )


def _sum_llm(model: ModelState, subjects: list[SubjectState]) -> float:
    values = torch.tensor(
        [math.nan if s.llm is None else s.llm for s in subjects], dtype=torch.float64
    )
    return float(replace_nonfinite(values, fallback="mean", name="llm").sum())


def _sum_outer(vectors: list[torch.Tensor], name: str) -> torch.Tensor:
    stacked = replace_nonfinite(torch.stack(vectors), fallback="zero", name=name)
    return stacked.T @ stacked


def _sum_matrices(matrices: list[torch.Tensor], name: str) -> torch.Tensor:
    stacked = replace_nonfinite(torch.stack(matrices), fallback="zero", name=name)
    return symmetrize(stacked.sum(dim=0))


def _gaussian_terms(x: torch.Tensor, S: torch.Tensor, precision: torch.Tensor) -> float:
    """Terms of the bound that depend on one subject's posterior ``N(x, S)``.

    Under a zero-mean prior of the given precision these are the subject's
    share of the -KL, up to terms that only depend on the prior.
    """
    return 0.5 * (
        float(logdet(S))
        - float(x @ precision @ x)
        - float(torch.trace(S @ precision))
    )


# -----------------------------------------------------------------------------
# Affine
# -----------------------------------------------------------------------------
def affine_prior(ctx: BlockContext, model: ModelState) -> torch.Tensor:
    n = ctx.config.n_affine
    idx = torch.as_tensor(ctx.rind, dtype=torch.long)
    prior = torch.zeros((n, n), dtype=ctx.config.dtype)
    prior[idx[:, None], idx[None, :]] = model.affine_precision
    return prior


def affine_terms(ctx: BlockContext, model: ModelState, q: torch.Tensor, S: torch.Tensor) -> float:
    """Share of ``lbq`` of one subject with affine posterior ``N(q, S)``."""
    idx = torch.as_tensor(ctx.rind, dtype=torch.long)
    return _gaussian_terms(q[idx], S[idx][:, idx], model.affine_precision)


def fit_affine(ctx: BlockContext, model: ModelState, subject: SubjectState) -> bool:
    """Gauss-Newton update of the affine parameters of one subject.

    A step is accepted if it increases the log-likelihood plus the subject's
    share of ``lbq``, with the Laplace covariance at the new parameters.
    The affine block is never skipped: failures only update the back-off
    counter and leave the posterior unchanged.
    """
    cfg = ctx.config
    image = ctx.image(subject)
    prior = affine_prior(ctx, model)
    q = subject.affine
    S = subject.affine_covariance
    transform = ctx.transform(model, subject)
    ll, g, h = ctx.derivatives(model, subject, image, transform)
    f0 = ll + affine_terms(ctx, model, q, S)

    cumok = False
    for _ in range(cfg.gn_iter):
        gq, Hq = affine_derivatives(
            A=transform.A, basis=ctx.basis, phi=transform.phi, gradient=g, hessian=h
        )
        dq = newton_direction(Hq + prior, gq + prior @ q)
        if not torch.any(dq != 0):
            break

        def objective(step, q=q, dq=dq):
            q_new = q + step * dq
            tr_new = ctx.transform(model, subject, affine=q_new)
            ll_new, g_new, h_new = ctx.derivatives(model, subject, image, tr_new)
            _, Hq_new = affine_derivatives(
                A=tr_new.A, basis=ctx.basis, phi=tr_new.phi, gradient=g_new, hessian=h_new
            )
            S_new = robust_inv(Hq_new + prior)
            value = ll_new + affine_terms(ctx, model, q_new, S_new)
            return value, (q_new, S_new, tr_new, ll_new, g_new, h_new)

        result = backtracking_line_search(objective, f0=f0, max_iter=cfg.ls_iter)
        if not result.ok:
            break
        cumok = True
        q, S, transform, ll, g, h = result.payload
        f0 = result.value

    if cumok:
        subject.affine = q
        subject.affine_covariance = S
        subject.llm = ll
        subject.affine_backoff.success()
    else:
        subject.affine_backoff.failure(cfg.penalize_failures)
        logger.debug(f"Subject {subject.index}: affine line search failed")
    return cumok


def update_affine(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Affine block: subject parameters, then the Wishart update of ``Aq``."""
    ctx.batcher.map(lambda s: fit_affine(ctx, model, s), subjects)
    reduce_affine_statistics(model, subjects)
    cfg = ctx.config
    N = len(subjects)
    if not ctx.frozen:
        rind = ctx.rind
        ss = model.qq[rind][:, rind] + model.Sq[rind][:, rind]
        model.affine_precision = precision_wishart(cfg.affine_df, ss, N)
        model.bound.update(lbaq=lb_precision_matrix(model.affine_precision, N, cfg.affine_df))
    model.bound.update(
        llm=_sum_llm(model, subjects),
        lbq=affine_bound(ctx, model, subjects),
    )
    model.bound.checkpoint("Affine")


def reduce_affine_statistics(model: ModelState, subjects: list[SubjectState]) -> None:
    model.qq = _sum_outer([s.affine for s in subjects], "q")
    model.Sq = _sum_matrices([s.affine_covariance for s in subjects], "Sq")


def affine_bound(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> float:
    return lb_affine(
        [s.affine_covariance for s in subjects],
        model.qq,
        model.Sq,
        model.affine_precision,
        len(subjects),
        ctx.rind,
    )


# -----------------------------------------------------------------------------
# Principal subspace
# -----------------------------------------------------------------------------
def _subspace_energy(ctx: BlockContext, W: torch.Tensor) -> torch.Tensor:
    """``WLW[k, l] = <W_k, L W_l>``."""
    LW = torch.stack([ctx.operator.apply(w) for w in W])
    WLW = torch.einsum("k...,l...->kl", W, LW)
    return symmetrize(WLW)


def update_subspace(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Principal subspace block: one regularised Gauss-Newton step on all modes.

    The step is accepted only if the joint objective (data term of every
    subject plus the subspace prior) improves; otherwise the subspace and its
    statistics are left unchanged.
    """
    cfg = ctx.config
    W = model.subspace
    K = W.shape[0]

    def statistics(subject):
        image = ctx.image(subject)
        transform = ctx.transform(model, subject)
        ll, g, h = ctx.derivatives(model, subject, image, transform)
        gv, hv = velocity_derivatives(A=transform.A, gradient=g, hessian=h)
        gw, hw = subspace_statistics(
            latent=subject.latent,
            latent_covariance=subject.latent_covariance,
            gradient=gv,
            hessian=hv,
        )
        return ll, gw, hw

    gW = torch.zeros_like(W)
    hW = torch.zeros_like(W)
    lls = []
    for ll, gw, hw in ctx.batcher.map(statistics, subjects):
        lls.append(ll)
        gW += torch.nan_to_num(gw, nan=0.0, posinf=0.0, neginf=0.0)
        hW += torch.nan_to_num(hw, nan=0.0, posinf=0.0, neginf=0.0)
    lls = replace_nonfinite(torch.tensor(lls, dtype=torch.float64), name="llm")

    w2 = model.regularization_weights[1]
    reg = w2 * (model.zz + model.Sz) + torch.eye(K, dtype=W.dtype)
    LW = torch.stack([ctx.operator.apply(w) for w in W])
    gW += torch.einsum("kl,l...->k...", reg, LW)
    dW = torch.stack([
        -ctx.operator.solve(hW[k], gW[k], float(reg[k, k]), max_iter=cfg.solver_iter)
        for k in range(K)
    ])

    def prior(W_):
        return -0.5 * float(torch.sum(reg * _subspace_energy(ctx, W_)))

    f0 = float(lls.sum()) + prior(W)

    def objective(step):
        W_new = W + step * dW

        def trial(subject):
            image = ctx.image(subject)
            transform = ctx.transform(model, subject, subspace=W_new)
            return ctx.log_likelihood(model, subject, image, transform)

        trial_lls = ctx.batcher.map(trial, subjects)
        value = sum(trial_lls) + prior(W_new)
        return value, (W_new, trial_lls)

    result = backtracking_line_search(
        objective, f0=f0, max_iter=cfg.ls_iter, initial_step=model.armijo
    )
    if result.ok:
        W_new, trial_lls = result.payload
        model.subspace = W_new
        for subject, ll in zip(subjects, trial_lls):
            subject.llm = ll
        model.armijo = min(1.0, 1.5 * result.step)
        uncertainty = torch.tensor(
            [
                ctx.operator.trace_approx(float(hW[k].mean()), float(reg[k, k])) / float(reg[k, k])
                for k in range(K)
            ],
            dtype=W.dtype,
        )
        model.subspace_covariance = _subspace_energy(ctx, W_new) + torch.diag(uncertainty)
        log_step("Subspace", f"step {result.step:.3g}")
    else:
        logger.warning("Subspace line search failed: subspace left unchanged")

    model.update_latent_regularization()
    model.bound.update(
        llm=_sum_llm(model, subjects),
        llw=ll_prior_subspace(model.subspace_covariance, ctx.logdet_operator, ctx.n_dof),
        lbz=latent_bound(model, subjects),
    )
    model.bound.checkpoint("Subspace")


# -----------------------------------------------------------------------------
# Latent coordinates
# -----------------------------------------------------------------------------
def fit_latent(ctx: BlockContext, model: ModelState, subject: SubjectState) -> bool | None:
    """Gauss-Newton update of the latent coordinates of one subject.

    The prior in use has precision ``regz``; steps must increase the
    log-likelihood plus the Gaussian terms of the posterior under that prior.
    Returns None if the subject was skipped by its back-off counter.
    """
    cfg = ctx.config
    if subject.latent_backoff.consume_skip(cfg.penalize_failures):
        return None
    image = ctx.image(subject)
    regz = model.latent_regularization
    z = subject.latent
    S = subject.latent_covariance
    transform = ctx.transform(model, subject)
    ll, g, h = ctx.derivatives(model, subject, image, transform)
    f0 = ll + _gaussian_terms(z, S, regz)

    def hessian(transform, g, h):
        gv, hv = velocity_derivatives(A=transform.A, gradient=g, hessian=h)
        return latent_derivatives(subspace=model.subspace, gradient=gv, hessian=hv)

    cumok = False
    for _ in range(cfg.gn_iter):
        gz, Hz = hessian(transform, g, h)
        dz = newton_direction(Hz + regz, gz + regz @ z)
        if not torch.any(dz != 0):
            break

        def objective(step, z=z, dz=dz):
            z_new = z + step * dz
            tr_new = ctx.transform(model, subject, latent=z_new)
            ll_new, g_new, h_new = ctx.derivatives(model, subject, image, tr_new)
            S_new = robust_inv(hessian(tr_new, g_new, h_new)[1] + regz)
            value = ll_new + _gaussian_terms(z_new, S_new, regz)
            return value, (z_new, S_new, tr_new, ll_new, g_new, h_new)

        result = backtracking_line_search(objective, f0=f0, max_iter=cfg.ls_iter)
        if not result.ok:
            break
        cumok = True
        z, S, transform, ll, g, h = result.payload
        f0 = result.value

    if cumok:
        subject.latent = z
        subject.latent_covariance = S
        subject.llm = ll
        subject.latent_backoff.success()
    else:
        subject.latent_backoff.failure(cfg.penalize_failures)
        logger.debug(f"Subject {subject.index}: latent line search failed")
    return cumok


def reduce_latent_statistics(model: ModelState, subjects: list[SubjectState]) -> None:
    model.zz = _sum_outer([s.latent for s in subjects], "z")
    model.Sz = _sum_matrices([s.latent_covariance for s in subjects], "Sz")


def latent_bound(model: ModelState, subjects: list[SubjectState]) -> float:
    return lb_latent(
        [s.latent_covariance for s in subjects],
        model.zz,
        model.Sz,
        model.latent_precision,
        len(subjects),
    )


def rotate_all(
    model: ModelState,
    subjects: list[SubjectState],
    Q: torch.Tensor,
    iQ: torch.Tensor,
) -> None:
    """Reparameterise ``z -> Q z`` and ``W -> W iQ``, leaving ``W z`` unchanged."""
    for subject in subjects:
        subject.latent = Q @ subject.latent
        subject.latent_covariance = symmetrize(Q @ subject.latent_covariance @ Q.T)
    model.zz = symmetrize(Q @ model.zz @ Q.T)
    model.Sz = symmetrize(Q @ model.Sz @ Q.T)
    model.subspace = torch.einsum("jk,j...->k...", iQ, model.subspace)
    model.subspace_covariance = symmetrize(iQ.T @ model.subspace_covariance @ iQ)
    model.latent_precision = symmetrize(iQ.T @ model.latent_precision @ iQ)


def update_latent(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Latent block: subject coordinates, then orthogonalisation and rescaling."""
    cfg = ctx.config
    N = len(subjects)
    ctx.batcher.map(lambda s: fit_latent(ctx, model, s), subjects)
    reduce_latent_statistics(model, subjects)
    model.bound.update(llm=_sum_llm(model, subjects), lbz=latent_bound(model, subjects))
    model.bound.checkpoint("Latent")
    if ctx.frozen:
        return

    U, iU = orthogonalization_matrix(model.zz, model.subspace_covariance)
    ezz = symmetrize(U @ (model.zz + model.Sz) @ U.T)
    if cfg.latent_df == 0:
        Q, iQ = scale_fixed(N, model.n_modes, dtype=cfg.dtype)
    else:
        eww = symmetrize(iU.T @ model.subspace_covariance @ iU)
        Q, iQ = scale_gauss_newton(ezz, eww, cfg.latent_df, N)
    rotate_all(model, subjects, Q @ U, iU @ iQ)

    model.latent_precision = precision_wishart(cfg.latent_df, model.zz + model.Sz, N)
    model.update_latent_regularization()
    model.bound.update(
        llw=ll_prior_subspace(model.subspace_covariance, ctx.logdet_operator, ctx.n_dof),
        lbaz=lb_precision_matrix(model.latent_precision, N, cfg.latent_df),
        lbz=latent_bound(model, subjects),
    )
    model.bound.checkpoint("Rescale")


# -----------------------------------------------------------------------------
# Residual field
# -----------------------------------------------------------------------------
def _residual_terms(ctx: BlockContext, lam: float, r: torch.Tensor, hessian: torch.Tensor) -> dict:
    """Laplace posterior of a residual field with mean ``r``, and its KL."""
    op = ctx.operator
    energy = op.energy(r)
    hmean = max(float(hessian.mean()), 0.0)
    trace = op.trace_approx(hmean, lam)
    logdet_posterior = op.logdet_approx(hmean, lam)
    return {
        "residual_energy": energy,
        "residual_hmean": hmean,
        "residual_trace": trace,
        "residual_logdet": logdet_posterior,
        "klr": kl_residual(
            energy=energy,
            trace=trace,
            logdet_posterior=logdet_posterior,
            lam=lam,
            logdet_operator=ctx.logdet_operator,
            n_dof=ctx.n_dof,
        ),
    }


def residual_statistics(
    ctx: BlockContext,
    model: ModelState,
    subject: SubjectState,
    hessian: torch.Tensor,
) -> None:
    """Laplace posterior of the residual field of a subject around its mean."""
    terms = _residual_terms(ctx, model.residual_precision, subject.residual, hessian)
    for name, value in terms.items():
        setattr(subject, name, value)


def rescale_residual_bound(
    ctx: BlockContext,
    model: ModelState,
    subject: SubjectState,
    previous: float,
) -> None:
    """KL of an unchanged residual posterior after the precision moved from ``previous``."""
    lam = model.residual_precision
    subject.residual_trace = subject.residual_trace * lam / previous
    subject.klr = kl_residual(
        energy=subject.residual_energy,
        trace=subject.residual_trace,
        logdet_posterior=subject.residual_logdet,
        lam=lam,
        logdet_operator=ctx.logdet_operator,
        n_dof=ctx.n_dof,
    )


def fit_residual(ctx: BlockContext, model: ModelState, subject: SubjectState) -> bool | None:
    """Regularised Gauss-Newton update of the residual field of one subject.

    Steps must increase the log-likelihood minus the KL of the residual
    posterior, refitted at the new field.
    Returns None if the subject was skipped by its back-off counter.
    """
    cfg = ctx.config
    if subject.residual_backoff.consume_skip(cfg.penalize_failures):
        return None
    image = ctx.image(subject)
    lam = model.residual_precision
    op = ctx.operator
    r = subject.residual
    transform = ctx.transform(model, subject)
    ll, g, h = ctx.derivatives(model, subject, image, transform)
    f0 = ll - subject.klr
    terms = None

    cumok = False
    for _ in range(cfg.gn_iter):
        gv, hv = velocity_derivatives(A=transform.A, gradient=g, hessian=h)
        dr = -op.solve(hv, gv + op.apply(r, lam), lam, max_iter=cfg.solver_iter)
        if not torch.any(dr != 0):
            break

        def objective(step, r=r, dr=dr):
            r_new = r + step * dr
            tr_new = ctx.transform(model, subject, residual=r_new)
            ll_new, g_new, h_new = ctx.derivatives(model, subject, image, tr_new)
            _, hv_new = velocity_derivatives(A=tr_new.A, gradient=g_new, hessian=h_new)
            terms_new = _residual_terms(ctx, lam, r_new, hv_new)
            return ll_new - terms_new["klr"], (r_new, terms_new, tr_new, ll_new, g_new, h_new)

        result = backtracking_line_search(objective, f0=f0, max_iter=cfg.ls_iter)
        if not result.ok:
            break
        cumok = True
        r, terms, transform, ll, g, h = result.payload
        f0 = result.value

    if cumok:
        subject.residual = r
        subject.llm = ll
        for name, value in terms.items():
            setattr(subject, name, value)
        subject.residual_backoff.success()
    else:
        subject.residual_backoff.failure(cfg.penalize_failures)
        logger.debug(f"Subject {subject.index}: residual line search failed")
    return cumok


def total_residual_kl(subjects: list[SubjectState]) -> float:
    values = torch.tensor(
        [math.nan if s.klr is None else s.klr for s in subjects], dtype=torch.float64
    )
    return float(replace_nonfinite(values, fallback="mean", name="klr").sum())


def update_residual(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Residual block: subject fields, then the Gamma update of their precision."""
    cfg = ctx.config
    N = len(subjects)
    ctx.batcher.map(lambda s: fit_residual(ctx, model, s), subjects)
    model.bound.update(llm=_sum_llm(model, subjects), lbr=-total_residual_kl(subjects))
    model.bound.checkpoint("Residual")
    if ctx.frozen:
        return

    lam = model.residual_precision
    errors = torch.tensor(
        [s.residual_energy + s.residual_trace / lam for s in subjects], dtype=torch.float64
    )
    model.err = float(replace_nonfinite(errors, fallback="mean", name="err").sum())
    model.residual_precision_prev = lam
    model.residual_precision = precision_gamma(
        cfg.lambda0, cfg.nlambda0, model.err, N, ctx.lattice
    )
    log_step("Lambda", f"{model.residual_precision:.6g}")

    for subject in subjects:
        rescale_residual_bound(ctx, model, subject, lam)
    model.bound.update(
        lbr=-total_residual_kl(subjects),
        lbl=lb_precision_residual(
            model.residual_precision, N, cfg.nlambda0, cfg.lambda0, ctx.lattice
        ),
    )
    model.bound.checkpoint("Lambda")


# -----------------------------------------------------------------------------
# Template
# -----------------------------------------------------------------------------
def pull_subject(
    ctx: BlockContext,
    model: ModelState,
    subject: SubjectState,
) -> tuple[ImageTensor, torch.Tensor]:
    """Subject image resampled to template space, with its observation count."""
    image = ctx.image(subject)
    transform = ctx.transform(model, subject)
    coords = inverse_coordinates(
        transform.A, transform.velocity, ctx.lattice, steps=ctx.config.integration_steps
    )
    return warp(image, coords)


def fit_template(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Maximum-likelihood template from all subjects, smoothed by the current fwhm."""
    sums = None
    counts = None
    for pulled, count in ctx.batcher.map(lambda s: pull_subject(ctx, model, s), subjects):
        pulled = torch.nan_to_num(pulled, nan=0.0, posinf=0.0, neginf=0.0)
        count = torch.nan_to_num(count, nan=0.0, posinf=0.0, neginf=0.0)
        sums = pulled if sums is None else sums + pulled
        counts = count if counts is None else counts + count
    fwhm = model.activation.fwhm
    vs = ctx.config.voxel_size
    sums = smooth(sums, fwhm, vs)
    counts = smooth(counts[None], fwhm, vs)[0]
    model.template = ctx.noise.fit_template(sums, counts)
    model.template_gradients = template_gradients(model.template)


def update_noise_variance(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Per-subject noise variances, falling back on the population mean."""
    if not ctx.noise.has_variance:
        return

    def estimate(subject):
        image = ctx.image(subject)
        warped, _ = warp_template(
            template=model.template, coords=ctx.transform(model, subject).psi
        )
        return ctx.noise.estimate_variance(image, warped)

    variances = torch.stack(ctx.batcher.map(estimate, subjects))
    variances = torch.where(variances > 0, variances, torch.full_like(variances, math.nan))
    variances = replace_nonfinite(variances, fallback="mean", name="noise variance")
    fallback = torch.full_like(variances, ctx.config.sigma2)
    variances = torch.where(variances > 0, variances, fallback)
    for subject, var in zip(subjects, variances):
        subject.noise_variance = var
    model.noise_variance = variances.mean(dim=0)


def refresh_log_likelihood(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    def compute(subject):
        image = ctx.image(subject)
        subject.llm = ctx.log_likelihood(model, subject, image, ctx.transform(model, subject))
        return subject.llm

    ctx.batcher.map(compute, subjects)
    model.bound.update(llm=_sum_llm(model, subjects))


def update_template(ctx: BlockContext, model: ModelState, subjects: list[SubjectState]) -> None:
    """Template block, run at every iteration. Ends the outer loop."""
    if not ctx.frozen:
        fit_template(ctx, model, subjects)
        update_noise_variance(ctx, model, subjects)
    refresh_log_likelihood(ctx, model, subjects)
    model.bound.checkpoint("Template", loop=True)


__all__ = [
    "BlockContext",
    "fit_affine",
    "fit_latent",
    "fit_residual",
    "update_affine",
    "update_subspace",
    "update_latent",
    "update_residual",
    "update_template",
    "rotate_all",
    "reduce_affine_statistics",
    "reduce_latent_statistics",
    "rescale_residual_bound",
    "affine_terms",
    "affine_prior",
    "residual_statistics",
    "fit_template",
    "update_noise_variance",
    "refresh_log_likelihood",
    "affine_bound",
    "latent_bound",
    "total_residual_kl",
]

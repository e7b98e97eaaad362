"""Generative noise models linking a warped template to an observed image.

Each model works on channel-first images of shape (C, D, H, W). Voxels where
any channel of the observed image is non-finite are treated as missing and
contribute neither to the log-likelihood nor to its derivatives.

The derivatives returned by :meth:`NoiseModel.grad_hess` are taken with
respect to the sampling coordinates of the template. They are the gradient of
the *negative* log-likelihood and a diagonal (per-voxel, per-axis)
Gauss-Newton approximation of its Hessian, both of shape (3, D, H, W).
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import ClassVar

import torch
import torch.nn.functional as F

from pgshape._types import ImageTensor, TemplateGradients, VectorField
from pgshape.constants import LOG_2PI, mineps


def observed_mask(image: ImageTensor) -> tuple[torch.Tensor, ImageTensor]:
    """Split an image into a (D, H, W) mask of observed voxels and finite values."""
    mask = torch.isfinite(image).all(dim=0).to(image.dtype)
    return mask, torch.nan_to_num(image, nan=0.0, posinf=0.0, neginf=0.0) * mask


class NoiseModel(ABC):
    """Interface of a per-subject matching term."""

    name: ClassVar[str]
    has_variance: ClassVar[bool] = False

    @abstractmethod
    def reconstruct(self, template: ImageTensor) -> ImageTensor:
        """Map the stored template (logits or means) to the data space."""

    @abstractmethod
    def log_likelihood(
        self,
        image: ImageTensor,
        warped: ImageTensor,
        variance: torch.Tensor | None = None,
    ) -> float:
        """Log-likelihood of ``image`` given the warped template."""

    @abstractmethod
    def grad_hess(
        self,
        image: ImageTensor,
        warped: ImageTensor,
        warped_gradients: TemplateGradients,
        variance: torch.Tensor | None = None,
    ) -> tuple[float, VectorField, VectorField]:
        """Log-likelihood, gradient and diagonal Hessian w.r.t. the coordinates."""

    @abstractmethod
    def fit_template(self, sums: ImageTensor, counts: torch.Tensor) -> ImageTensor:
        """Maximum-likelihood template from images pulled to template space.

        Parameters
        ----------
        sums : torch.Tensor, shape (C, D, H, W)
            Sum over subjects of the pulled (and smoothed) images.
        counts : torch.Tensor, shape (D, H, W)
            Number of observations that contributed to each voxel.
        """

    def estimate_variance(self, image: ImageTensor, warped: ImageTensor) -> torch.Tensor | None:
        """Per-channel noise variance, for models that have one."""
        return None


class CategoricalNoise(NoiseModel):
    """Categorical model: the template stores log-probabilities (up to a constant)."""

    name = "categorical"

    def reconstruct(self, template):
        return torch.softmax(template, dim=0)

    def log_likelihood(self, image, warped, variance=None):
        mask, f = observed_mask(image)
        logp = torch.log_softmax(warped, dim=0)
        return float(torch.sum(f * logp))

    def grad_hess(self, image, warped, warped_gradients, variance=None):
        mask, f = observed_mask(image)
        logp = torch.log_softmax(warped, dim=0)
        ll = float(torch.sum(f * logp))
        p = logp.exp()
        total = f.sum(dim=0)
        r = p * total - f
        g = torch.einsum("c...,cd...->d...", r, warped_gradients)
        pg = torch.einsum("c...,cd...->d...", p, warped_gradients)
        pgg = torch.einsum("c...,cd...->d...", p, warped_gradients**2)
        h = total * mask * torch.clamp(pgg - pg**2, min=0.0)
        return ll, g, h

    def fit_template(self, sums, counts):
        n_classes = sums.shape[0]
        observed = counts > mineps
        p = torch.full_like(sums, 1.0 / n_classes)
        p[:, observed] = sums[:, observed] / counts[observed]
        p = torch.clamp(p, min=mineps)
        p = p / p.sum(dim=0, keepdim=True)
        return torch.log(p)


class BernoulliNoise(NoiseModel):
    """Bernoulli model on a single channel: the template stores logits."""

    name = "bernoulli"

    def reconstruct(self, template):
        return torch.sigmoid(template)

    def log_likelihood(self, image, warped, variance=None):
        mask, f = observed_mask(image)
        return float(torch.sum(mask * (f * warped - F.softplus(warped))))

    def grad_hess(self, image, warped, warped_gradients, variance=None):
        mask, f = observed_mask(image)
        ll = float(torch.sum(mask * (f * warped - F.softplus(warped))))
        sig = torch.sigmoid(warped)
        r = mask * (sig - f)
        g = torch.einsum("c...,cd...->d...", r, warped_gradients)
        w = mask * sig * (1.0 - sig)
        h = torch.einsum("c...,cd...->d...", w, warped_gradients**2)
        return ll, g, h

    def fit_template(self, sums, counts):
        observed = counts > mineps
        p = torch.full_like(sums, 0.5)
        p[:, observed] = sums[:, observed] / counts[observed]
        p = torch.clamp(p, min=mineps, max=1.0 - mineps)
        return torch.log(p) - torch.log1p(-p)


class NormalNoise(NoiseModel):
    """Gaussian model with one variance per channel: the template stores means."""

    name = "normal"
    has_variance = True

    def __init__(self, sigma2: float = 1.0):
        self.sigma2 = float(sigma2)

    def _variance(self, variance, n_channels, dtype):
        if variance is None:
            return torch.full((n_channels,), self.sigma2, dtype=dtype)
        return torch.as_tensor(variance, dtype=dtype).reshape(n_channels)

    def reconstruct(self, template):
        return template

    def log_likelihood(self, image, warped, variance=None):
        mask, f = observed_mask(image)
        var = self._variance(variance, image.shape[0], image.dtype).reshape(-1, 1, 1, 1)
        res = (f - warped) ** 2 / var + torch.log(var) + LOG_2PI
        return float(-0.5 * torch.sum(mask * res))

    def grad_hess(self, image, warped, warped_gradients, variance=None):
        mask, f = observed_mask(image)
        var = self._variance(variance, image.shape[0], image.dtype).reshape(-1, 1, 1, 1)
        res = (f - warped) ** 2 / var + torch.log(var) + LOG_2PI
        ll = float(-0.5 * torch.sum(mask * res))
        r = mask * (warped - f) / var
        g = torch.einsum("c...,cd...->d...", r, warped_gradients)
        w = (mask / var).expand_as(warped)
        h = torch.einsum("c...,cd...->d...", w, warped_gradients**2)
        return ll, g, h

    def fit_template(self, sums, counts):
        observed = counts > mineps
        mu = torch.zeros_like(sums)
        if observed.any():
            mu[:, observed] = sums[:, observed] / counts[observed]
            fill = sums[:, observed].sum(dim=1) / counts[observed].sum()
            mu[:, ~observed] = fill[:, None]
        return mu

    def estimate_variance(self, image, warped):
        mask, f = observed_mask(image)
        n = float(mask.sum())
        if n == 0:
            return torch.full((image.shape[0],), math.nan, dtype=image.dtype)
        sse = torch.sum(mask * (f - warped) ** 2, dim=(1, 2, 3))
        return sse / n


_NOISE_MODELS = {
    "categorical": CategoricalNoise,
    "bernoulli": BernoulliNoise,
    "normal": NormalNoise,
    "gaussian": NormalNoise,
    "l2": NormalNoise,
}


def get_noise_model(name: str, *, sigma2: float = 1.0) -> NoiseModel:
    """Instantiate a noise model from its name."""
    key = name.lower()
    if key not in _NOISE_MODELS:
        raise ValueError(
            f"Unknown noise model {name!r}, expected one of {sorted(_NOISE_MODELS)}"
        )
    cls = _NOISE_MODELS[key]
    if cls is NormalNoise:
        return cls(sigma2=sigma2)
    return cls()


__all__ = [
    "NoiseModel",
    "CategoricalNoise",
    "BernoulliNoise",
    "NormalNoise",
    "get_noise_model",
    "observed_mask",
]

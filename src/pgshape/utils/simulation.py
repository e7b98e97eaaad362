"""Utility functions for simulating data."""
import numpy as np


def generate_toy_shapes(
        n_subjects=4,
        lattice=(16, 16, 16),
        n_classes=2,
        noise_model="categorical",
        radius=0.3,
        jitter=0.05,
        noise_factor=None,
        seed=None,
):
    """
    Generate a population of blurred ellipsoids with random radii and offsets.

    Parameters
    ----------
    n_subjects : int, optional
        The number of images to generate. Default is 4.
    lattice : tuple of int, optional
        Shape of each image lattice ``(D, H, W)``. Default is ``(16, 16, 16)``.
    n_classes : int, optional
        Number of classes of the categorical images (the background counts as one
        class). Ignored for the other noise models. Default is 2.
    noise_model : str, optional
        ``"categorical"`` returns one-hot-like responsibilities with ``n_classes``
        channels, ``"bernoulli"`` a single foreground probability channel and
        ``"normal"`` a single intensity channel.
    radius : float, optional
        Mean radius of the ellipsoid axes, as a fraction of the field of view.
    jitter : float, optional
        Standard deviation of the per-subject radii and centres, as a fraction of
        the field of view.
    noise_factor : float, optional
        If not None, Gaussian noise with this standard deviation is added to the
        intensities (``"normal"`` model only).

    Returns
    -------
    images : ndarray, shape (n_subjects, n_channels, D, H, W)
        The simulated images.
    """
    rng = np.random.default_rng(seed)
    lattice = tuple(int(n) for n in lattice)
    axes = [np.linspace(-0.5, 0.5, n) if n > 1 else np.zeros(1) for n in lattice]
    grid = np.stack(np.meshgrid(*axes, indexing="ij"))

    images = []
    for _ in range(n_subjects):
        radii = radius + jitter * rng.standard_normal(3)
        radii = np.clip(radii, 0.05, None)
        centre = jitter * rng.standard_normal(3)
        dist = np.sqrt(
            sum(((grid[d] - centre[d]) / radii[d]) ** 2 for d in range(3))
        )
        # soft boundary of roughly one voxel
        inside = 1.0 / (1.0 + np.exp((dist - 1.0) * 8.0))
        if noise_model == "categorical":
            layers = [inside]
            if n_classes > 2:
                # concentric shells for the extra classes
                for k in range(2, n_classes):
                    shell = 1.0 / (1.0 + np.exp((dist - k / n_classes) * 8.0))
                    layers[-1] = layers[-1] - shell
                    layers.append(shell)
            fg = np.stack(layers)
            fg = np.clip(fg, 0.0, 1.0)
            bg = np.clip(1.0 - fg.sum(0, keepdims=True), 0.0, 1.0)
            image = np.concatenate([bg, fg])
            image /= image.sum(0, keepdims=True)
        elif noise_model == "bernoulli":
            image = inside[None]
        else:
            image = 100.0 * inside[None]
            if noise_factor is not None:
                image = image + noise_factor * rng.standard_normal(image.shape)
        images.append(image)
    return np.stack(images)

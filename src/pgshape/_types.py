"""Type hints for pgshape arrays."""
from typing import Annotated, TypeAlias

import torch

ImageTensor: TypeAlias = Annotated[torch.Tensor, "(n_channels, D, H, W)", 4]
"""Alias for an observed image or a template, with shape (n_channels, D, H, W)."""

TemplateGradients: TypeAlias = Annotated[torch.Tensor, "(n_channels, 3, D, H, W)", 5]
"""Alias for the spatial gradients of a template, with shape (n_channels, 3, D, H, W)."""

VectorField: TypeAlias = Annotated[torch.Tensor, "(3, D, H, W)", 4]
"""Alias for a velocity, displacement or coordinate field, with shape (3, D, H, W)."""

SubspaceTensor: TypeAlias = Annotated[torch.Tensor, "(n_modes, 3, D, H, W)", 5]
"""Alias for the principal geodesic modes, with shape (n_modes, 3, D, H, W)."""

LatentVector: TypeAlias = Annotated[torch.Tensor, "(n_modes,)", 1]
"""Alias for the latent coordinates of one subject, with shape (n_modes,)."""

AffineVector: TypeAlias = Annotated[torch.Tensor, "(n_affine,)", 1]
"""Alias for the affine parameters of one subject, with shape (n_affine,)."""

AffineBasis: TypeAlias = Annotated[torch.Tensor, "(n_affine, 4, 4)", 3]
"""Alias for a Lie algebra basis of affine matrices, with shape (n_affine, 4, 4)."""

AffineMatrix: TypeAlias = Annotated[torch.Tensor, "(4, 4)", 2]
"""Alias for a homogeneous affine matrix, with shape (4, 4)."""

SquareMatrix: TypeAlias = Annotated[torch.Tensor, "(n, n)", 2]
"""Alias for a square (usually symmetric positive definite) matrix."""

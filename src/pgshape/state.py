"""
State management for principal geodesic shape models.

This module holds the immutable configuration, the population-level model
state and the per-subject records. Fields that have not been computed yet are
``None`` rather than missing, and every container can be converted to a plain
dictionary of tensors and scalars for checkpointing.
"""

from __future__ import annotations

import numbers
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from typing import Any

import torch

from pgshape.activation import ActivationState
from pgshape.bound import BoundTracker
from pgshape.constants import lb_threshold
from pgshape.diffeo import AFFINE_BASES, DEFAULT_PRM

NOISE_MODELS = ("categorical", "bernoulli", "normal", "gaussian", "l2")


class ConfigurationError(ValueError):
    """Unknown, mistyped or inconsistent option."""


# Original option tree -> field name
_NESTED_OPTIONS = {
    "model": {"name": "noise_model", "sigma2": "sigma2"},
    "pg": {"K": "n_modes", "prm": "prm"},
    "tpl": {"lat": "lattice", "vs": "voxel_size", "fwhm": "fwhm"},
    "iter": {
        "em": "max_iter",
        "gn": "gn_iter",
        "ls": "ls_iter",
        "itg": "integration_steps",
        "solver": "solver_iter",
        "pena": "penalize_failures",
    },
    "z": {"n0": "nz0", "wpz": "wpz", "wpz0": "wpz0"},
    "q": {"n0": "nq0", "basis": "affine_basis", "rind": "affine_rind"},
    "r": {"n0": "nlambda0", "lambda0": "lambda0"},
    "lb": {"threshold": "lb_threshold"},
    "par": {"n_jobs": "n_jobs", "batch": "batch_size"},
    "fnames": {"result": "result_file"},
}
_FLAT_ALIASES = {
    "K": "n_modes",
    "lat": "lattice",
    "vs": "voxel_size",
    "emit": "max_iter",
    "gnit": "gn_iter",
    "lsit": "ls_iter",
    "itgr": "integration_steps",
    "nlam0": "nlambda0",
    "batch": "batch_size",
    "par": "n_jobs",
    "model": "noise_model",
    "seed": "random_state",
}

# field name -> (kind, optional, length)
_KINDS: dict[str, tuple[str, bool, int | None]] = {
    "n_modes": ("int", False, None),
    "noise_model": ("str", False, None),
    "sigma2": ("float", False, None),
    "lattice": ("int_tuple", True, 3),
    "voxel_size": ("float_tuple", False, 3),
    "prm": ("float_tuple", False, 5),
    "max_iter": ("int", False, None),
    "gn_iter": ("int", False, None),
    "ls_iter": ("int", False, None),
    "integration_steps": ("int", True, None),
    "solver_iter": ("int", False, None),
    "armijo": ("float", False, None),
    "wpz": ("float_tuple", False, 2),
    "wpz0": ("float_tuple", False, 2),
    "nz0": ("float", True, None),
    "nq0": ("float", True, None),
    "lambda0": ("float", False, None),
    "nlambda0": ("float", False, None),
    "affine_basis": ("str", False, None),
    "affine_rind": ("int_tuple", True, None),
    "fwhm": ("float", False, None),
    "lb_threshold": ("float", False, None),
    "penalize_failures": ("bool", False, None),
    "n_jobs": ("int", False, None),
    "batch_size": ("int", True, None),
    "directory": ("str", True, None),
    "result_file": ("str", False, None),
    "ondisk": ("bool", False, None),
    "random_state": ("int", True, None),
    "dtype": ("dtype", False, None),
}


def _is_int(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _is_real(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _coerce(name: str, value: Any) -> Any:
    kind, optional, length = _KINDS[name]
    if value is None:
        if optional:
            return None
        raise ConfigurationError(f"Option {name!r} cannot be None")
    if isinstance(value, torch.Tensor):
        value = value.tolist()
    if kind == "int":
        if not _is_int(value):
            raise ConfigurationError(f"Option {name!r} expects an int, got {value!r}")
        return int(value)
    if kind == "float":
        if not _is_real(value):
            raise ConfigurationError(f"Option {name!r} expects a number, got {value!r}")
        return float(value)
    if kind == "bool":
        if not isinstance(value, bool):
            raise ConfigurationError(f"Option {name!r} expects a bool, got {value!r}")
        return value
    if kind == "str":
        if isinstance(value, os.PathLike):
            value = os.fspath(value)
        if not isinstance(value, str):
            raise ConfigurationError(f"Option {name!r} expects a str, got {value!r}")
        return value
    if kind == "dtype":
        if isinstance(value, str):
            value = getattr(torch, value.replace("torch.", ""), None)
        if not isinstance(value, torch.dtype):
            raise ConfigurationError(f"Option {name!r} expects a torch.dtype")
        return value
    # tuples
    if _is_real(value):
        value = (value,) * (length or 1)
    if isinstance(value, (str, bytes)) or not hasattr(value, "__iter__"):
        raise ConfigurationError(f"Option {name!r} expects a sequence, got {value!r}")
    value = tuple(value)
    check = _is_int if kind == "int_tuple" else _is_real
    if not all(check(v) for v in value):
        raise ConfigurationError(f"Option {name!r} has elements of the wrong type: {value!r}")
    if length is not None and len(value) != length:
        raise ConfigurationError(
            f"Option {name!r} expects {length} elements, got {len(value)}"
        )
    cast = int if kind == "int_tuple" else float
    return tuple(cast(v) for v in value)


@dataclass(slots=True, frozen=True)
class ShapeModelConfig:
    """Immutable configuration of a principal geodesic shape model.

    Every option has a default. Values are type-checked and validated at
    construction and a :class:`ConfigurationError` is raised before any
    computation starts.
    """

    # Model
    n_modes: int = 32                 # K - number of principal geodesics
    noise_model: str = "normal"
    sigma2: float = 1.0               # initial variance of the normal model
    lattice: tuple[int, int, int] | None = None  # taken from the images if None
    voxel_size: tuple[float, float, float] = (1.0, 1.0, 1.0)
    prm: tuple[float, float, float, float, float] = DEFAULT_PRM

    # Iterations
    max_iter: int = 100               # EM iterations
    gn_iter: int = 2                  # Gauss-Newton iterations per block
    ls_iter: int = 6                  # line search iterations
    integration_steps: int | None = None
    solver_iter: int = 10             # conjugate gradient iterations
    armijo: float = 1.0               # initial step of the subspace line search

    # Priors
    wpz: tuple[float, float] = (1.0, 1.0)
    wpz0: tuple[float, float] = (1.0, 5.0)
    nz0: float | None = None          # K if None
    nq0: float | None = None          # size of the affine basis if None
    lambda0: float = 10.0
    nlambda0: float = 10.0
    affine_basis: str = "affine"
    affine_rind: tuple[int, ...] | None = None  # all affine parameters if None

    # Schedule
    fwhm: float = 3.0
    lb_threshold: float = lb_threshold
    penalize_failures: bool = True

    # Execution
    n_jobs: int = 1
    batch_size: int | None = None
    directory: str | None = None
    result_file: str = "pg_result.pt"
    ondisk: bool = False
    random_state: int | None = None

    # Numeric
    dtype: torch.dtype = torch.float64

    def __post_init__(self):
        for f in fields(self):
            object.__setattr__(self, f.name, _coerce(f.name, getattr(self, f.name)))
        self._validate()

    def _validate(self) -> None:
        if self.n_modes < 1:
            raise ConfigurationError(f"n_modes must be >= 1, got {self.n_modes}")
        if self.noise_model.lower() not in NOISE_MODELS:
            raise ConfigurationError(
                f"Unknown noise model {self.noise_model!r}, expected one of {NOISE_MODELS}"
            )
        if self.sigma2 <= 0:
            raise ConfigurationError(f"sigma2 must be > 0, got {self.sigma2}")
        if self.lattice is not None and any(n < 1 for n in self.lattice):
            raise ConfigurationError(f"lattice must be positive, got {self.lattice}")
        if any(vs <= 0 for vs in self.voxel_size):
            raise ConfigurationError(f"voxel_size must be positive, got {self.voxel_size}")
        if any(p < 0 for p in self.prm) or self.prm[0] <= 0:
            raise ConfigurationError(
                f"prm must be non-negative with a positive absolute term, got {self.prm}"
            )
        for name in ("max_iter", "gn_iter", "ls_iter", "solver_iter"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {getattr(self, name)}")
        if self.integration_steps is not None and self.integration_steps < 0:
            raise ConfigurationError("integration_steps must be >= 0")
        if not 0 < self.armijo <= 1:
            raise ConfigurationError(f"armijo must be in (0, 1], got {self.armijo}")
        if any(w <= 0 for w in self.wpz + self.wpz0):
            raise ConfigurationError("wpz and wpz0 must be strictly positive")
        if self.affine_basis not in AFFINE_BASES:
            raise ConfigurationError(
                f"Unknown affine basis {self.affine_basis!r}, expected one of "
                f"{sorted(AFFINE_BASES)}"
            )
        n_affine = AFFINE_BASES[self.affine_basis]
        if self.affine_rind is not None:
            rind = self.affine_rind
            if len(rind) == 0 or len(set(rind)) != len(rind):
                raise ConfigurationError(f"affine_rind must be unique indices, got {rind}")
            if any(i < 0 or i >= n_affine for i in rind):
                raise ConfigurationError(
                    f"affine_rind {rind} out of range for the {self.affine_basis!r} "
                    f"basis with {n_affine} parameters"
                )
        if self.latent_df != 0 and self.latent_df <= self.n_modes - 1:
            raise ConfigurationError(
                f"nz0 must be 0 or larger than n_modes - 1, got {self.latent_df}"
            )
        if self.affine_df != 0 and self.affine_df <= len(self.regularized_affine) - 1:
            raise ConfigurationError(
                f"nq0 must be 0 or larger than the number of regularised affine "
                f"parameters - 1, got {self.affine_df}"
            )
        if self.lambda0 <= 0 or self.nlambda0 < 0:
            raise ConfigurationError("lambda0 must be > 0 and nlambda0 >= 0")
        if self.fwhm < 0:
            raise ConfigurationError(f"fwhm must be >= 0, got {self.fwhm}")
        if self.lb_threshold < 0:
            raise ConfigurationError(f"lb_threshold must be >= 0, got {self.lb_threshold}")
        if self.n_jobs < -1:
            raise ConfigurationError(f"n_jobs must be >= -1, got {self.n_jobs}")
        if self.batch_size is not None and self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.ondisk and self.directory is None:
            raise ConfigurationError("ondisk=True requires a directory")

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------
    @property
    def n_affine(self) -> int:
        return AFFINE_BASES[self.affine_basis]

    @property
    def regularized_affine(self) -> tuple[int, ...]:
        if self.affine_rind is None:
            return tuple(range(self.n_affine))
        return self.affine_rind

    @property
    def latent_df(self) -> float:
        return float(self.n_modes) if self.nz0 is None else self.nz0

    @property
    def affine_df(self) -> float:
        return float(self.n_affine) if self.nq0 is None else self.nq0

    @property
    def noise_name(self) -> str:
        name = self.noise_model.lower()
        return "normal" if name in ("gaussian", "l2") else name

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------
    @classmethod
    def from_options(
        cls,
        options: Mapping[str, Any] | ShapeModelConfig | None = None,
        **overrides: Any,
    ) -> ShapeModelConfig:
        """Build a configuration from an option tree and/or flat options.

        Parameters
        ----------
        options : dict or ShapeModelConfig or None
            Either flat field names (``{"n_modes": 8}``), the short names of
            the original option list (``{"K": 8, "emit": 50}``) or nested
            groups (``{"pg": {"K": 8}, "iter": {"em": 50}}``).
        **overrides
            Flat options applied last.

        Raises
        ------
        ConfigurationError
            On unknown keys, type mismatches or invalid values.
        """
        if isinstance(options, ShapeModelConfig):
            options = options.to_options()
        flat: dict[str, Any] = {}
        for key, value in dict(options or {}).items():
            cls._collect(key, value, flat)
        for key, value in overrides.items():
            cls._collect(key, value, flat)
        return cls(**flat)

    @staticmethod
    def _collect(key: str, value: Any, flat: dict[str, Any]) -> None:
        names = {f.name for f in fields(ShapeModelConfig)}
        if key in _NESTED_OPTIONS and isinstance(value, Mapping):
            group = _NESTED_OPTIONS[key]
            for sub, subvalue in value.items():
                if sub not in group:
                    raise ConfigurationError(f"Unknown option {key}.{sub}")
                flat[group[sub]] = subvalue
            return
        if key in names:
            flat[key] = value
            return
        if key in _FLAT_ALIASES:
            flat[_FLAT_ALIASES[key]] = value
            return
        raise ConfigurationError(f"Unknown option {key!r}")

    def to_options(self) -> dict[str, Any]:
        """Flat dictionary of plain Python values, suitable for checkpoints."""
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, torch.dtype):
                value = str(value).replace("torch.", "")
            out[f.name] = value
        return out

    def replace(self, **changes: Any) -> ShapeModelConfig:
        return replace(self, **changes)


# -----------------------------------------------------------------------------
# Back-off counters
# -----------------------------------------------------------------------------
@dataclass(slots=True)
class BackoffCounter:
    """Failure bookkeeping of one block for one subject.

    ``ok2`` counts consecutive failures (as a negative number). With
    penalisation, a failure sets ``ok`` to ``ok2`` and the block is then
    skipped for ``-ok`` calls. A success resets both.
    """

    ok: int = 0
    ok2: int = 0
    n_failures: int = 0

    def consume_skip(self, penalize: bool) -> bool:
        """Whether this call must be skipped; consumes one skip if so."""
        if penalize and self.ok < 0:
            self.ok += 1
            return True
        return False

    def success(self) -> None:
        self.ok = 1
        self.ok2 = 0

    def failure(self, penalize: bool) -> None:
        self.n_failures += 1
        if penalize:
            self.ok2 -= 1
            self.ok = self.ok2
        else:
            self.ok2 = 0
            self.ok = 0

    def to_dict(self) -> dict[str, int]:
        return {"ok": self.ok, "ok2": self.ok2, "n_failures": self.n_failures}

    @classmethod
    def from_dict(cls, state: Mapping[str, int]) -> BackoffCounter:
        return cls(ok=int(state["ok"]), ok2=int(state["ok2"]), n_failures=int(state["n_failures"]))


# -----------------------------------------------------------------------------
# Subjects
# -----------------------------------------------------------------------------
@dataclass(slots=True, repr=False)
class SubjectState:
    """Parameters and bound terms of one subject.

    Arrays:
    - affine:              (n_affine,)        q
    - affine_covariance:   (n_affine, n_affine)  Sq
    - latent:              (K,)               z
    - latent_covariance:   (K, K)             Sz
    - residual:            (3, D, H, W)       r
    - noise_variance:      (C,)               normal model only
    """

    index: int
    image_key: str
    affine: torch.Tensor
    affine_covariance: torch.Tensor
    latent: torch.Tensor
    latent_covariance: torch.Tensor
    residual: torch.Tensor
    affine_backoff: BackoffCounter = field(default_factory=BackoffCounter)
    latent_backoff: BackoffCounter = field(default_factory=BackoffCounter)
    residual_backoff: BackoffCounter = field(default_factory=BackoffCounter)
    llm: float | None = None
    klr: float | None = None
    residual_energy: float = 0.0
    residual_hmean: float = 0.0
    residual_trace: float = 0.0
    residual_logdet: float = 0.0
    noise_variance: torch.Tensor | None = None

    _TENSORS = (
        "affine",
        "affine_covariance",
        "latent",
        "latent_covariance",
        "residual",
        "noise_variance",
    )
    _SCALARS = (
        "index",
        "image_key",
        "llm",
        "klr",
        "residual_energy",
        "residual_hmean",
        "residual_trace",
        "residual_logdet",
    )

    def to_dict(self) -> dict[str, Any]:
        out = {name: getattr(self, name) for name in self._TENSORS + self._SCALARS}
        for name in ("affine_backoff", "latent_backoff", "residual_backoff"):
            out[name] = getattr(self, name).to_dict()
        return out

    @classmethod
    def from_dict(cls, state: Mapping[str, Any]) -> SubjectState:
        kwargs = {name: state[name] for name in cls._TENSORS + cls._SCALARS}
        for name in ("affine_backoff", "latent_backoff", "residual_backoff"):
            kwargs[name] = BackoffCounter.from_dict(state[name])
        return cls(**kwargs)

    def copy(self) -> SubjectState:
        state = self.to_dict()
        for name in self._TENSORS:
            if state[name] is not None:
                state[name] = state[name].clone()
        return SubjectState.from_dict(state)


def init_subject(
    cfg: ShapeModelConfig,
    index: int,
    image_key: str,
    lattice: tuple[int, int, int],
) -> SubjectState:
    """Identity transform, zero latent coordinates and zero residual."""
    dtype = cfg.dtype
    K = cfg.n_modes
    n_affine = cfg.n_affine
    return SubjectState(
        index=index,
        image_key=image_key,
        affine=torch.zeros(n_affine, dtype=dtype),
        affine_covariance=torch.zeros((n_affine, n_affine), dtype=dtype),
        latent=torch.zeros(K, dtype=dtype),
        latent_covariance=torch.zeros((K, K), dtype=dtype),
        residual=torch.zeros((3, *lattice), dtype=dtype),
    )


# -----------------------------------------------------------------------------
# Population model
# -----------------------------------------------------------------------------
@dataclass(slots=True, repr=False)
class ModelState:
    """Population-level parameters and sufficient statistics.

    Arrays follow these shapes:
    - template:            (C, D, H, W)     log-probabilities, logits or means
    - template_gradients:  (C, 3, D, H, W)
    - subspace:            (K, 3, D, H, W)  W
    - subspace_covariance: (K, K)           ww = E[W' L W]
    - latent_precision:    (K, K)           Az
    - latent_regularization: (K, K)         regz = wpz[0] Az + wpz[1] ww
    - affine_precision:    (R, R)           Aq, on the regularised affine parameters
    - zz, Sz:              (K, K)           sum of E[z] E[z]' and of Cov[z]
    - qq, Sq:              (n_affine, n_affine)
    - noise_variance:      (C,)             normal model only
    """

    lattice: tuple[int, int, int]
    n_subjects: int
    template: torch.Tensor | None
    template_gradients: torch.Tensor | None
    subspace: torch.Tensor
    subspace_covariance: torch.Tensor
    latent_precision: torch.Tensor
    latent_regularization: torch.Tensor
    affine_precision: torch.Tensor
    zz: torch.Tensor
    Sz: torch.Tensor
    qq: torch.Tensor
    Sq: torch.Tensor
    residual_precision: float
    residual_precision_prev: float
    regularization_weights: tuple[float, float]
    err: float | None = None
    noise_variance: torch.Tensor | None = None
    armijo: float = 1.0
    iteration: int = 0
    bound: BoundTracker = field(default_factory=BoundTracker)
    activation: ActivationState = field(default_factory=ActivationState)

    @property
    def n_modes(self) -> int:
        return self.subspace.shape[0]

    def update_latent_regularization(self) -> None:
        w1, w2 = self.regularization_weights
        self.latent_regularization = w1 * self.latent_precision + w2 * self.subspace_covariance

    _TENSORS = (
        "template",
        "template_gradients",
        "subspace",
        "subspace_covariance",
        "latent_precision",
        "latent_regularization",
        "affine_precision",
        "zz",
        "Sz",
        "qq",
        "Sq",
        "noise_variance",
    )

    def to_dict(self) -> dict[str, Any]:
        out = {name: getattr(self, name) for name in self._TENSORS}
        out.update(
            lattice=list(self.lattice),
            n_subjects=self.n_subjects,
            residual_precision=self.residual_precision,
            residual_precision_prev=self.residual_precision_prev,
            regularization_weights=list(self.regularization_weights),
            err=self.err,
            armijo=self.armijo,
            iteration=self.iteration,
            bound=self.bound.to_dict(),
            activation=self.activation.to_dict(),
        )
        return out

    def to_numpy(self) -> dict[str, Any]:
        """Return the array fields as numpy arrays."""
        return {
            k: v.cpu().numpy()
            for k, v in self.to_dict().items()
            if isinstance(v, torch.Tensor)
        }

    @classmethod
    def from_dict(cls, state: Mapping[str, Any]) -> ModelState:
        kwargs = {name: state[name] for name in cls._TENSORS}
        kwargs.update(
            lattice=tuple(int(n) for n in state["lattice"]),
            n_subjects=int(state["n_subjects"]),
            residual_precision=float(state["residual_precision"]),
            residual_precision_prev=float(state["residual_precision_prev"]),
            regularization_weights=tuple(float(w) for w in state["regularization_weights"]),
            err=None if state["err"] is None else float(state["err"]),
            armijo=float(state["armijo"]),
            iteration=int(state["iteration"]),
            bound=BoundTracker.from_dict(state["bound"]),
            activation=ActivationState.from_dict(state["activation"]),
        )
        return cls(**kwargs)


def get_initial_model(
    cfg: ShapeModelConfig,
    lattice: tuple[int, int, int],
    n_subjects: int,
) -> ModelState:
    """Create an initial ModelState.

    The subspace is zero, the latent and affine precisions are identity and
    the residual precision is ``lambda0``.
    """
    dtype = cfg.dtype
    K = cfg.n_modes
    n_affine = cfg.n_affine
    R = len(cfg.regularized_affine)
    eye_k = torch.eye(K, dtype=dtype)
    model = ModelState(
        lattice=tuple(lattice),
        n_subjects=n_subjects,
        template=None,
        template_gradients=None,
        subspace=torch.zeros((K, 3, *lattice), dtype=dtype),
        subspace_covariance=torch.zeros((K, K), dtype=dtype),
        latent_precision=eye_k.clone(),
        latent_regularization=eye_k.clone(),
        affine_precision=torch.eye(R, dtype=dtype),
        zz=torch.zeros((K, K), dtype=dtype),
        Sz=torch.zeros((K, K), dtype=dtype),
        qq=torch.zeros((n_affine, n_affine), dtype=dtype),
        Sq=torch.zeros((n_affine, n_affine), dtype=dtype),
        residual_precision=cfg.lambda0,
        residual_precision_prev=cfg.lambda0,
        regularization_weights=cfg.wpz0,
        armijo=cfg.armijo,
        activation=ActivationState(threshold=cfg.lb_threshold, fwhm=cfg.fwhm),
    )
    model.update_latent_regularization()
    return model


__all__ = [
    "ConfigurationError",
    "ShapeModelConfig",
    "BackoffCounter",
    "SubjectState",
    "ModelState",
    "init_subject",
    "get_initial_model",
]

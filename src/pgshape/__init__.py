from . import utils
from ._sklearn_interface import PGShapeModel
from .core import fit_shape_model, fit_subjects
from .state import ConfigurationError, ShapeModelConfig
from .storage import CheckpointError

__all__ = [
    'fit_shape_model',
    'fit_subjects',
    'PGShapeModel',
    'ShapeModelConfig',
    'ConfigurationError',
    'CheckpointError',
    'utils',
]

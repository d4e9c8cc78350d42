"""
transcp: Transductive Conformal Classification

Calibrated prediction sets for any scikit-learn classifier. For every
instance and candidate label a p-value is computed by refitting a
nonconformity function on the calibration set plus the hypothesized
example, so that labels can be rejected at a chosen significance level
with a guaranteed long-run error rate.
"""

from .version import __version__, __author__, __description__
from .exceptions import (
    IncompatibleClassifierError,
    ModelLoadError,
    NonconformityConfigurationError,
    UnsupportedNonconformityFunctionError
)
from .nc import NonconformityFunctionFactory, default_factory
from .cp import (
    ConformalClassification,
    EvaluationReport,
    TransductiveConformalClassifier,
    calculate_p_value
)
from .pipeline import Pipeline, load_model, save_model

__all__ = [
    'Pipeline',
    'TransductiveConformalClassifier',
    'ConformalClassification',
    'EvaluationReport',
    'NonconformityFunctionFactory',
    'default_factory',
    'calculate_p_value',
    'load_model',
    'save_model',
    'IncompatibleClassifierError',
    'ModelLoadError',
    'NonconformityConfigurationError',
    'UnsupportedNonconformityFunctionError',
    '__version__',
    '__author__',
    '__description__',
]

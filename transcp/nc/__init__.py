"""Nonconformity functions for classification"""

from .nonconformity import (
    ClassificationNonconformityFunction,
    HingeLossNonconformityFunction,
    SVMDistanceNonconformityFunction,
    AttributeAverageNonconformityFunction
)
from .factory import NonconformityFunctionFactory, default_factory

__all__ = [
    'ClassificationNonconformityFunction',
    'HingeLossNonconformityFunction',
    'SVMDistanceNonconformityFunction',
    'AttributeAverageNonconformityFunction',
    'NonconformityFunctionFactory',
    'default_factory'
]

"""Classifier capability contract and storage layouts"""

from .classifiers import ClassifierAdapter, PseudoProbabilityClassifier
from .storage import (
    AugmentedTrainingSet,
    as_native_storage,
    native_storage_template
)

__all__ = [
    'ClassifierAdapter',
    'PseudoProbabilityClassifier',
    'AugmentedTrainingSet',
    'as_native_storage',
    'native_storage_template'
]

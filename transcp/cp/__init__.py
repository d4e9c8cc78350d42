"""Transductive conformal classification"""

from .pvalue import calculate_p_value, calculate_p_values
from .classification import (
    ConformalClassification,
    MultiProbabilisticClassification
)
from .parallel import ParallelizedAction, get_default_executor
from .transductive import TransductiveConformalClassifier
from .measures import (
    AggregatedObservedMeasures,
    AggregatedPriorMeasures,
    ExcessCriterion,
    FuzzinessCriterion,
    MultipleCriterion,
    NumberCriterion,
    ObservedError,
    ObservedExcess,
    ObservedFuzziness,
    ObservedMultiple,
    ObservedUnconfidence,
    SumCriterion,
    UnconfidenceCriterion
)
from .evaluation import EvaluationReport, run_test

__all__ = [
    'calculate_p_value',
    'calculate_p_values',
    'ConformalClassification',
    'MultiProbabilisticClassification',
    'ParallelizedAction',
    'get_default_executor',
    'TransductiveConformalClassifier',
    'AggregatedObservedMeasures',
    'AggregatedPriorMeasures',
    'ExcessCriterion',
    'FuzzinessCriterion',
    'MultipleCriterion',
    'NumberCriterion',
    'ObservedError',
    'ObservedExcess',
    'ObservedFuzziness',
    'ObservedMultiple',
    'ObservedUnconfidence',
    'SumCriterion',
    'UnconfidenceCriterion',
    'EvaluationReport',
    'run_test'
]

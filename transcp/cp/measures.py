"""
Efficiency Criteria for Conformal Classifiers

Implements the prior and observed efficiency criteria from
V. Vovk, V. Fedorova, I. Nouretdinov and A. Gammerman, "Criteria of
Efficiency for Conformal Prediction", COPA 2016, LNAI 9653, pp. 23-39.

Prior measures depend only on the p-value vector; observed measures also
need the true label. For all of them smaller values are preferable.
Every measure is a streaming reducer: `add` folds one observation into
running totals, `compute` returns the mean over all observations so far.

"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional

import numpy as np

from .classification import ConformalClassification


def _check_significance(significance: float):
    if not 0 < significance <= 1:
        raise ValueError(f"significance must be in (0,1], got {significance}")


def _true_label_index(prediction: ConformalClassification, true_label: float) -> int:
    matches = np.flatnonzero(prediction.labels == float(true_label))
    if len(matches) == 0:
        raise ValueError(
            f"True label {true_label} is not in the label set "
            f"{prediction.labels.tolist()}"
        )
    return int(matches[0])


class _Measure(ABC):
    """Running mean of a per-prediction quantity."""

    name = "measure"

    def __init__(self):
        self._total = 0.0
        self._n = 0

    @property
    def n_observations(self) -> int:
        return self._n

    def compute(self) -> float:
        """Mean over all observations; NaN before the first `add`."""
        if self._n == 0:
            return float('nan')
        return self._total / self._n

    @property
    def label(self) -> str:
        return self.name

    def _accumulate(self, value: float):
        self._total += value
        self._n += 1

    def __str__(self):
        return f"{self.label}: {self.compute()}"

    def __repr__(self):
        return f"{type(self).__name__}(n={self._n}, value={self.compute()})"


class PriorMeasure(_Measure):
    """Efficiency criterion computed from the p-values alone."""

    @abstractmethod
    def evaluate(self, prediction: ConformalClassification) -> float:
        """Value of the criterion for one prediction."""

    def add(self, prediction: ConformalClassification):
        self._accumulate(self.evaluate(prediction))


class ObservedMeasure(_Measure):
    """Efficiency criterion that also uses the true label."""

    @abstractmethod
    def evaluate(self, prediction: ConformalClassification, true_label: float) -> float:
        """Value of the criterion for one prediction."""

    def add(self, prediction: ConformalClassification, true_label: float):
        self._accumulate(self.evaluate(prediction, true_label))


class _AtSignificance:
    """Mixin for criteria defined at a fixed significance level."""

    def _set_significance(self, significance: float):
        _check_significance(significance)
        self.significance = significance

    @property
    def label(self) -> str:
        return f"{self.name} (significance {self.significance})"


# ---- Prior criteria ----

class SumCriterion(PriorMeasure):
    """S criterion: sum of the p-values."""

    name = "Sum criterion"

    def evaluate(self, prediction):
        return float(prediction.p_values.sum())


class UnconfidenceCriterion(PriorMeasure):
    """U criterion: second largest p-value (1 - confidence)."""

    name = "Unconfidence criterion"

    def evaluate(self, prediction):
        return 1.0 - prediction.confidence


class FuzzinessCriterion(PriorMeasure):
    """F criterion: sum of the p-values minus the largest one."""

    name = "Fuzziness criterion"

    def evaluate(self, prediction):
        p_values = prediction.p_values
        return float(p_values.sum() - p_values.max())


class NumberCriterion(_AtSignificance, PriorMeasure):
    """N criterion: size of the prediction set."""

    name = "Number criterion"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction):
        return float(prediction.prediction_set_size(self.significance))


class MultipleCriterion(_AtSignificance, PriorMeasure):
    """M criterion: 1 if the prediction set has more than one label."""

    name = "Multiple criterion"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction):
        return float(prediction.prediction_set_size(self.significance) > 1)


class ExcessCriterion(_AtSignificance, PriorMeasure):
    """E criterion: labels in the prediction set beyond the first."""

    name = "Excess criterion"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction):
        return float(max(prediction.prediction_set_size(self.significance) - 1, 0))


# ---- Observed criteria ----

class ObservedUnconfidence(ObservedMeasure):
    """OU criterion: largest p-value among the false labels."""

    name = "Observed unconfidence"

    def evaluate(self, prediction, true_label):
        true_index = _true_label_index(prediction, true_label)
        false_p_values = np.delete(prediction.p_values, true_index)
        if len(false_p_values) == 0:
            return 0.0
        return float(false_p_values.max())


class ObservedFuzziness(ObservedMeasure):
    """OF criterion: sum of the p-values of the false labels."""

    name = "Observed fuzziness"

    def evaluate(self, prediction, true_label):
        true_index = _true_label_index(prediction, true_label)
        return float(np.delete(prediction.p_values, true_index).sum())


class ObservedMultiple(_AtSignificance, ObservedMeasure):
    """OM criterion: 1 if the prediction set contains a false label."""

    name = "Observed multiple"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction, true_label):
        true_index = _true_label_index(prediction, true_label)
        false_p_values = np.delete(prediction.p_values, true_index)
        return float(np.any(false_p_values >= self.significance))


class ObservedExcess(_AtSignificance, ObservedMeasure):
    """OE criterion: number of false labels in the prediction set."""

    name = "Observed excess"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction, true_label):
        true_index = _true_label_index(prediction, true_label)
        false_p_values = np.delete(prediction.p_values, true_index)
        return float(np.count_nonzero(false_p_values >= self.significance))


class ObservedError(_AtSignificance, ObservedMeasure):
    """Error rate: 1 if the true label is not in the prediction set."""

    name = "Observed error"

    def __init__(self, significance: float):
        super().__init__()
        self._set_significance(significance)

    def evaluate(self, prediction, true_label):
        true_index = _true_label_index(prediction, true_label)
        return float(prediction.p_values[true_index] < self.significance)


# ---- Aggregates ----

class _AggregatedMeasures:
    def __init__(self, measures: List[_Measure]):
        self._measures = measures

    def __len__(self):
        return len(self._measures)

    def __iter__(self) -> Iterator[_Measure]:
        return iter(self._measures)

    def get_measure(self, i: int) -> _Measure:
        return self._measures[i]

    @property
    def n_observations(self) -> int:
        return self._measures[0].n_observations if self._measures else 0

    def to_dict(self) -> Dict[str, float]:
        return {m.label: m.compute() for m in self._measures}

    def __str__(self):
        return '\n'.join(f"  {m}" for m in self._measures)


class AggregatedPriorMeasures(_AggregatedMeasures):
    """
    The prior criteria S, U and F, plus N, M and E when a significance
    level is given.

    Examples
    --------
    >>> measures = AggregatedPriorMeasures(significance=0.1)
    >>> for prediction in predictions:
    ...     measures.add(prediction)
    >>> print(measures)
    """

    def __init__(self, significance: Optional[float] = None):
        measures: List[_Measure] = [
            SumCriterion(),
            UnconfidenceCriterion(),
            FuzzinessCriterion(),
        ]
        if significance is not None:
            measures += [
                NumberCriterion(significance),
                MultipleCriterion(significance),
                ExcessCriterion(significance),
            ]
        super().__init__(measures)

    def add(self, prediction: ConformalClassification):
        for measure in self._measures:
            measure.add(prediction)


class AggregatedObservedMeasures(_AggregatedMeasures):
    """
    The observed criteria OU and OF, plus OM, OE and the error rate when
    a significance level is given.
    """

    def __init__(self, significance: Optional[float] = None):
        measures: List[_Measure] = [
            ObservedUnconfidence(),
            ObservedFuzziness(),
        ]
        if significance is not None:
            measures += [
                ObservedMultiple(significance),
                ObservedExcess(significance),
                ObservedError(significance),
            ]
        super().__init__(measures)

    def add(self, prediction: ConformalClassification, true_label: float):
        for measure in self._measures:
            measure.add(prediction, true_label)

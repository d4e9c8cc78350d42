"""
Conformal Classification Results

A `ConformalClassification` wraps the p-value vector produced for one
instance and derives the usual point-prediction summaries from it:

- label: the label with the unique largest p-value (None on ties)
- confidence: 1 - second largest p-value
- credibility: largest p-value
- prediction set: labels whose p-value is at least the significance level

"""

import weakref
from typing import Dict, List, Optional, Tuple

import numpy as np


class ConformalClassification:
    """
    Immutable result of one conformal classification.

    Parameters
    ----------
    source : conformal classifier
        The classifier that produced the p-values. Only a weak reference
        is kept, so results never extend the classifier's lifetime.
    p_values : array-like, shape (L,)
        One p-value per label, in the classifier's label order.
    labels : array-like, shape (L,), optional
        The label set. Defaults to `source.get_labels()`.

    Examples
    --------
    >>> result = ConformalClassification(None, [0.9, 0.3, 0.3], labels=[0, 1, 2])
    >>> result.label, result.confidence, result.credibility
    (0.0, 0.7, 0.9)
    >>> result.prediction_set(0.5)
    [0.0]
    >>> result.prediction_set(0.2)
    [0.0, 1.0, 2.0]
    """

    def __init__(self, source, p_values, labels=None):
        if labels is None:
            if source is None:
                raise ValueError("labels are required when source is None")
            labels = source.get_labels()

        p_values = np.array(p_values, dtype=float).ravel()
        labels = np.array(labels, dtype=float).ravel()
        if len(p_values) != len(labels):
            raise ValueError(
                f"Length mismatch: p_values ({len(p_values)}) vs "
                f"labels ({len(labels)})"
            )
        p_values.setflags(write=False)
        labels.setflags(write=False)

        self._p_values = p_values
        self._labels = labels
        self._source_ref = weakref.ref(source) if source is not None else None

    @property
    def p_values(self) -> np.ndarray:
        return self._p_values

    @property
    def labels(self) -> np.ndarray:
        return self._labels

    @property
    def source(self):
        """The producing classifier, or None if it no longer exists."""
        if self._source_ref is None:
            return None
        return self._source_ref()

    @property
    def label(self) -> Optional[float]:
        """Point prediction, or None when the largest p-value is shared."""
        largest = self._p_values.max()
        winners = np.flatnonzero(self._p_values == largest)
        if len(winners) != 1:
            return None
        return float(self._labels[winners[0]])

    @property
    def label_index(self) -> Optional[int]:
        largest = self._p_values.max()
        winners = np.flatnonzero(self._p_values == largest)
        return int(winners[0]) if len(winners) == 1 else None

    @property
    def credibility(self) -> float:
        return float(self._p_values.max())

    @property
    def confidence(self) -> float:
        if len(self._p_values) < 2:
            return 1.0 - float(self._p_values[0])
        second = np.sort(self._p_values)[-2]
        return 1.0 - float(second)

    @property
    def is_multi_probabilistic(self) -> bool:
        return False

    def probability_bounds(self) -> Optional[Tuple[float, float]]:
        """Lower/upper probability of the point label; None for plain results."""
        return None

    def prediction_set(self, significance: float) -> List[float]:
        """Labels that cannot be rejected at `significance` (p >= significance)."""
        return [
            float(label)
            for label, p in zip(self._labels, self._p_values)
            if p >= significance
        ]

    def prediction_set_size(self, significance: float) -> int:
        return int(np.count_nonzero(self._p_values >= significance))

    def to_dict(self) -> Dict:
        """Plain-data view for reporting layers."""
        result = {
            'p_values': {float(l): float(p) for l, p in zip(self._labels, self._p_values)},
            'label': self.label,
            'confidence': self.confidence,
            'credibility': self.credibility,
        }
        bounds = self.probability_bounds()
        if bounds is not None:
            result['lower_probability'], result['upper_probability'] = bounds
        return result

    def __getstate__(self):
        state = self.__dict__.copy()
        state['_source_ref'] = None
        return state

    def __setstate__(self, state):
        for key in ('_p_values', '_labels'):
            state[key] = np.array(state[key], dtype=float)
            state[key].setflags(write=False)
        self.__dict__.update(state)

    def __repr__(self):
        return (
            f"{type(self).__name__}(p_values={self._p_values.tolist()}, "
            f"label={self.label})"
        )


class MultiProbabilisticClassification(ConformalClassification):
    """
    Conformal classification with probability bounds for the point label.

    Produced by protocols that can estimate them (e.g. Venn-style inductive
    predictors); has the same interface as `ConformalClassification`.

    Parameters
    ----------
    source, p_values, labels
        As for `ConformalClassification`.
    lower_probability, upper_probability : float
        Bounds on the probability that the point label is correct.
    """

    def __init__(
        self,
        source,
        p_values,
        lower_probability: float,
        upper_probability: float,
        labels=None
    ):
        if not 0.0 <= lower_probability <= upper_probability <= 1.0:
            raise ValueError(
                f"Invalid probability bounds "
                f"[{lower_probability}, {upper_probability}]"
            )
        super().__init__(source, p_values, labels)
        self.lower_probability = float(lower_probability)
        self.upper_probability = float(upper_probability)

    @property
    def is_multi_probabilistic(self) -> bool:
        return True

    def probability_bounds(self) -> Tuple[float, float]:
        return (self.lower_probability, self.upper_probability)

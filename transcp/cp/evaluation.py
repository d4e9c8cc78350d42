"""
Batch Evaluation of Conformal Classifiers

Accumulates, over a labelled test set, the statistics a conformal
classifier is judged by at a given significance level:

- accuracy (true label inside the prediction set) and single-label accuracy
- prediction-set-size histogram with per-size accuracy
- per-true-class breakdown
- aggregated prior and observed efficiency criteria

Formatting is left to the caller; `set_size_table` and `class_table`
return DataFrames and `summary` a plain dict.

"""

import time
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .classification import ConformalClassification
from .measures import AggregatedObservedMeasures, AggregatedPriorMeasures


class EvaluationReport:
    """
    Streaming evaluation of conformal classifications.

    Parameters
    ----------
    labels : array-like
        The classifier's label set, in p-value order.
    significance : float
        Significance level in (0, 1]; labels with p >= significance form
        the prediction set.

    Attributes
    ----------
    predictions_at_size : np.ndarray, shape (L+1,)
        Number of predictions per prediction-set size.
    correct_at_size : np.ndarray, shape (L+1,)
        Number of those whose set contains the true label.
    predictions_for_class, correct_for_class : np.ndarray, shape (L,)
        The same, per true class.
    predictions_for_class_at_size, correct_for_class_at_size : np.ndarray, shape (L, L+1)
        Per true class and set size.
    prior_measures : AggregatedPriorMeasures
    observed_measures : AggregatedObservedMeasures
    """

    def __init__(self, labels, significance: float):
        if not 0 < significance <= 1:
            raise ValueError(f"significance must be in (0,1], got {significance}")

        self.labels = np.asarray(labels, dtype=float)
        self.significance = significance
        n_labels = len(self.labels)

        self.n_predictions = 0
        self.correct = 0
        self.predictions_at_size = np.zeros(n_labels + 1, dtype=int)
        self.correct_at_size = np.zeros(n_labels + 1, dtype=int)
        self.predictions_for_class = np.zeros(n_labels, dtype=int)
        self.correct_for_class = np.zeros(n_labels, dtype=int)
        self.predictions_for_class_at_size = np.zeros((n_labels, n_labels + 1), dtype=int)
        self.correct_for_class_at_size = np.zeros((n_labels, n_labels + 1), dtype=int)
        self.prior_measures = AggregatedPriorMeasures(significance)
        self.observed_measures = AggregatedObservedMeasures(significance)

    def add(self, prediction: ConformalClassification, true_label: float):
        """Fold one prediction and its true label into the report."""
        class_index = np.flatnonzero(self.labels == float(true_label))
        if len(class_index) == 0:
            raise ValueError(
                f"True label {true_label} is not in the label set "
                f"{self.labels.tolist()}"
            )
        class_index = int(class_index[0])
        size = prediction.prediction_set_size(self.significance)

        self.n_predictions += 1
        self.predictions_at_size[size] += 1
        self.predictions_for_class[class_index] += 1
        self.predictions_for_class_at_size[class_index, size] += 1

        if prediction.p_values[class_index] >= self.significance:
            self.correct += 1
            self.correct_at_size[size] += 1
            self.correct_for_class[class_index] += 1
            self.correct_for_class_at_size[class_index, size] += 1

        self.prior_measures.add(prediction)
        self.observed_measures.add(prediction, true_label)

    # ---- Derived statistics ----

    @property
    def accuracy(self) -> float:
        """Fraction of test instances whose prediction set holds the true label."""
        return self._ratio(self.correct, self.n_predictions)

    @property
    def error_rate(self) -> float:
        return 1.0 - self.accuracy if self.n_predictions else float('nan')

    @property
    def single_label_accuracy(self) -> float:
        """Fraction of test instances with a correct singleton prediction set."""
        return self._ratio(self.correct_at_size[1], self.n_predictions)

    @property
    def one_c_efficiency(self) -> float:
        """OneC: fraction of predictions with a single label."""
        return self._ratio(self.predictions_at_size[1], self.n_predictions)

    @property
    def avg_c_efficiency(self) -> float:
        """AvgC: average prediction-set size."""
        sizes = np.arange(len(self.predictions_at_size))
        return self._ratio(float((sizes * self.predictions_at_size).sum()), self.n_predictions)

    def set_size_table(self) -> pd.DataFrame:
        """One row per prediction-set size: count and accuracy."""
        return pd.DataFrame({
            'set_size': np.arange(len(self.predictions_at_size)),
            'n_predictions': self.predictions_at_size,
            'n_correct': self.correct_at_size,
            'accuracy': [
                self._ratio(c, n)
                for c, n in zip(self.correct_at_size, self.predictions_at_size)
            ],
        })

    def class_table(self) -> pd.DataFrame:
        """One row per (true class, set size), plus per-class totals."""
        rows = []
        for i, label in enumerate(self.labels):
            rows.append({
                'class_index': i,
                'label': float(label),
                'set_size': 'all',
                'n_predictions': int(self.predictions_for_class[i]),
                'accuracy': self._ratio(
                    self.correct_for_class[i], self.predictions_for_class[i]
                ),
            })
            for size in range(len(self.labels) + 1):
                rows.append({
                    'class_index': i,
                    'label': float(label),
                    'set_size': size,
                    'n_predictions': int(self.predictions_for_class_at_size[i, size]),
                    'accuracy': self._ratio(
                        self.correct_for_class_at_size[i, size],
                        self.predictions_for_class_at_size[i, size]
                    ),
                })
        return pd.DataFrame(rows)

    def summary(self) -> Dict:
        return {
            'n_predictions': self.n_predictions,
            'significance': self.significance,
            'accuracy': self.accuracy,
            'error_rate': self.error_rate,
            'single_label_accuracy': self.single_label_accuracy,
            'one_c_efficiency': self.one_c_efficiency,
            'avg_c_efficiency': self.avg_c_efficiency,
            'prior_measures': self.prior_measures.to_dict(),
            'observed_measures': self.observed_measures.to_dict(),
        }

    def print_report(self):
        """Print the report in human-readable form."""
        n = self.n_predictions
        print(f"\n{'='*60}")
        print(f"CONFORMAL EVALUATION (significance {self.significance})")
        print(f"{'='*60}")
        print(f"Test instances: {n}")
        print(f"Accuracy {self.accuracy:.4f}, "
              f"Single label prediction accuracy {self.single_label_accuracy:.4f}")
        print(f"OneC efficiency (fraction predictions with single label) "
              f"{self.one_c_efficiency:.4f}, "
              f"AvgC efficiency (average label set size) {self.avg_c_efficiency:.4f}")

        print("\nPer prediction set size:")
        for size, count in enumerate(self.predictions_at_size):
            accuracy = self._ratio(self.correct_at_size[size], count)
            print(f"  #predictions with {size} classes: {count}. "
                  f"Accuracy: {accuracy:.4f}")

        print("\nPer true class/label:")
        for i, label in enumerate(self.labels):
            accuracy = self._ratio(self.correct_for_class[i], self.predictions_for_class[i])
            print(f"  #instances with true class {i} (label '{label}'): "
                  f"{self.predictions_for_class[i]}. Accuracy: {accuracy:.4f}")
            for size in range(len(self.labels) + 1):
                count = self.predictions_for_class_at_size[i, size]
                accuracy = self._ratio(self.correct_for_class_at_size[i, size], count)
                print(f"    #predictions with {size} classes: {count}. "
                      f"Accuracy: {accuracy:.4f}")

        print(f"\nObserved measures over {self.observed_measures.n_observations} instances:")
        print(self.observed_measures)
        print(f"Prior efficiency measures over {self.prior_measures.n_observations} instances:")
        print(self.prior_measures)

        if n > 0 and self.error_rate > self.significance + 2 * np.sqrt(
            self.significance * (1 - self.significance) / n
        ):
            print(f"\n⚠ WARNING: Error rate {self.error_rate:.3f} exceeds "
                  f"significance {self.significance} beyond sampling tolerance")

    @staticmethod
    def _ratio(numerator, denominator) -> float:
        if denominator == 0:
            return float('nan')
        return float(numerator) / float(denominator)


def run_test(
    classifier,
    X_test,
    y_test,
    significance: float,
    verbose: bool = True
) -> EvaluationReport:
    """
    Predict a labelled test set and evaluate the predictions.

    Parameters
    ----------
    classifier : TransductiveConformalClassifier
        A fitted conformal classifier.
    X_test : array-like or scipy.sparse matrix, shape (n, d)
        Test instances.
    y_test : array-like, shape (n,)
        True labels.
    significance : float
        Significance level in (0, 1].
    verbose : bool, optional (default=True)
        Print timings and the full report.

    Returns
    -------
    report : EvaluationReport
    """
    y_test = np.asarray(y_test, dtype=float).ravel()
    report = EvaluationReport(classifier.get_labels(), significance)

    if verbose:
        print(f"Testing on {len(y_test)} instances at a significance level "
              f"of {significance}.")

    t1 = time.time()
    predictions: List[Optional[ConformalClassification]] = classifier.predict(X_test)
    t2 = time.time()

    if len(predictions) != len(y_test):
        raise ValueError(
            f"Length mismatch: X_test ({len(predictions)}) vs y_test ({len(y_test)})"
        )

    for prediction, true_label in zip(predictions, y_test):
        report.add(prediction, true_label)
    t3 = time.time()

    if verbose:
        print(f"Test Duration {t2 - t1:.3f} sec.")
        report.print_report()
        print(f"Evaluation Duration {t3 - t2:.3f} sec.")

    return report

"""
Classifier Capability Contract

The conformal layer never depends on a concrete classifier. It talks to
scikit-learn estimators through `ClassifierAdapter`, which resolves once,
at construction, what the estimator can do:

- class-probability output (`predict_proba`)
- decision-boundary distances (`decision_function`, SVM style)

Estimators without probability output can be wrapped in
`PseudoProbabilityClassifier`, which derives 0/1 pseudo-probabilities
from plain predictions.

"""

import numpy as np
from sklearn.base import clone
from sklearn.exceptions import NotFittedError
from sklearn.utils.validation import check_is_fitted

from .storage import native_storage_template


class ClassifierAdapter:
    """
    Capability-aware wrapper around a scikit-learn classifier.

    Parameters
    ----------
    estimator : sklearn classifier or ClassifierAdapter
        The classifier to wrap. An adapter is unwrapped first.

    Attributes
    ----------
    estimator : sklearn classifier
        The wrapped estimator.
    has_class_probabilities : bool
        True if the estimator exposes `predict_proba`.
    has_decision_function : bool
        True if the estimator exposes `decision_function`.

    Examples
    --------
    >>> from sklearn.svm import LinearSVC
    >>> clf = ClassifierAdapter(LinearSVC())
    >>> clf.has_class_probabilities, clf.has_decision_function
    (False, True)
    """

    def __init__(self, estimator):
        if isinstance(estimator, ClassifierAdapter):
            estimator = estimator.estimator
        if not hasattr(estimator, 'fit') or not hasattr(estimator, 'predict'):
            raise TypeError(
                f"{type(estimator).__name__} does not implement fit/predict"
            )

        self.estimator = estimator
        self.has_class_probabilities = hasattr(estimator, 'predict_proba')
        self.has_decision_function = hasattr(estimator, 'decision_function')

    @property
    def name(self) -> str:
        return type(self.estimator).__name__

    @property
    def classes_(self) -> np.ndarray:
        return self.estimator.classes_

    @property
    def is_fitted(self) -> bool:
        try:
            check_is_fitted(self.estimator)
        except NotFittedError:
            return False
        return True

    def fit(self, X, y) -> 'ClassifierAdapter':
        """Train the wrapped estimator in place."""
        self.estimator.fit(X, y)
        return self

    def fit_new(self, X, y) -> 'ClassifierAdapter':
        """
        Train a fresh clone of the estimator on (X, y).

        The receiver is left untouched, so concurrent calls on the same
        adapter do not interfere.
        """
        return ClassifierAdapter(clone(self.estimator).fit(X, y))

    def predict(self, X) -> np.ndarray:
        return self.estimator.predict(X)

    def predict_proba(self, X) -> np.ndarray:
        if not self.has_class_probabilities:
            raise AttributeError(
                f"{self.name} does not provide class probabilities"
            )
        return self.estimator.predict_proba(X)

    def decision_function(self, X) -> np.ndarray:
        if not self.has_decision_function:
            raise AttributeError(
                f"{self.name} does not provide a decision function"
            )
        return self.estimator.decision_function(X)

    def native_storage_template(self):
        """Empty matrix in the storage layout this estimator prefers."""
        return native_storage_template(self.estimator)

    def __repr__(self):
        return f"{type(self).__name__}({self.estimator!r})"


class PseudoProbabilityClassifier(ClassifierAdapter):
    """
    Class-probability adapter for classifiers that only predict labels.

    `predict_proba` returns a one-hot 0/1 indicator of the predicted label,
    with columns in the order of `labels`.

    Parameters
    ----------
    classifier : sklearn classifier or ClassifierAdapter
        Classifier without probability output.
    labels : array-like
        The label set; defines the probability columns.
    """

    def __init__(self, classifier, labels):
        super().__init__(classifier)
        self.labels = np.asarray(labels, dtype=float)
        self.has_class_probabilities = True

    @property
    def classes_(self) -> np.ndarray:
        return self.labels

    def fit_new(self, X, y) -> 'PseudoProbabilityClassifier':
        return PseudoProbabilityClassifier(
            clone(self.estimator).fit(X, y), self.labels
        )

    def predict_proba(self, X) -> np.ndarray:
        predictions = np.asarray(self.estimator.predict(X), dtype=float)
        return (predictions[:, None] == self.labels[None, :]).astype(float)

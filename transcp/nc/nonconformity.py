"""
Nonconformity Functions for Conformal Classification

A nonconformity function turns the output of a fitted classifier into a
per-instance "strangeness" score for a (instance, label) pair. Higher
scores mean the pair conforms less to the data the function was fitted on.

Three strategies are provided:

- HingeLossNonconformityFunction: 1 - P(y|x) from class probabilities
- SVMDistanceNonconformityFunction: signed distance to the decision boundary
- AttributeAverageNonconformityFunction: distance to the class feature mean

"""

import copy
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
import scipy.sparse as sp
from sklearn.exceptions import NotFittedError

from ..exceptions import IncompatibleClassifierError
from ..ml.classifiers import ClassifierAdapter, PseudoProbabilityClassifier
from ..ml.storage import as_native_storage, native_storage_template


class ClassificationNonconformityFunction(ABC):
    """
    Base class for classification nonconformity functions.

    Parameters
    ----------
    labels : array-like
        The fixed label set. Labels must be unique.
    classifier : sklearn classifier or ClassifierAdapter, optional
        The underlying classifier. It is never trained in place; fitting
        replaces it with a trained clone.

    Attributes
    ----------
    labels : np.ndarray
        Label set as floats, in the order given.
    classifier : ClassifierAdapter or None
        The (possibly trained) underlying classifier.
    is_trained : bool
        True once `fit` has been called.
    """

    name = "nonconformity function"

    def __init__(self, labels, classifier=None):
        labels = np.asarray(labels, dtype=float).ravel()
        if len(labels) == 0:
            raise ValueError("The label set must not be empty")
        if len(np.unique(labels)) != len(labels):
            raise ValueError(f"Labels must be unique, got {labels.tolist()}")

        self.labels = labels
        self.classifier = (
            ClassifierAdapter(classifier) if classifier is not None else None
        )
        self.is_trained = False

    def get_labels(self) -> np.ndarray:
        return self.labels

    def fit(self, X, y) -> 'ClassificationNonconformityFunction':
        """
        Fit this nonconformity function on (X, y).

        Parameters
        ----------
        X : np.ndarray or scipy.sparse matrix, shape (n, d)
            Training instances.
        y : array-like, shape (n,)
            Training labels.

        Returns
        -------
        self : ClassificationNonconformityFunction
        """
        y = np.asarray(y, dtype=float).ravel()
        if X.shape[0] != len(y):
            raise ValueError(
                f"Length mismatch: X ({X.shape[0]}) vs y ({len(y)})"
            )
        self._train(X, y)
        self.is_trained = True
        return self

    def fit_new(self, X, y) -> 'ClassificationNonconformityFunction':
        """
        Return a new nonconformity function fitted on (X, y).

        The receiver is not modified, so many threads may call `fit_new`
        on the same instance at once.
        """
        return copy.copy(self).fit(X, y)

    def calc_nc(self, X, y) -> np.ndarray:
        """
        Compute the nonconformity score of every row of (X, y).

        Parameters
        ----------
        X : np.ndarray or scipy.sparse matrix, shape (n, d)
            Instances.
        y : array-like, shape (n,)
            Labels, one per instance.

        Returns
        -------
        scores : np.ndarray, shape (n,)
            Nonconformity scores, higher is stranger.
        """
        if not self.is_trained:
            raise NotFittedError(
                f"The {self.name} is not trained. Call .fit() first."
            )
        y = np.asarray(y, dtype=float).ravel()
        if X.shape[0] != len(y):
            raise ValueError(
                f"Length mismatch: X ({X.shape[0]}) vs y ({len(y)})"
            )
        return self._scores(X, y)

    def calculate_nonconformity_score(self, instance, label: float) -> float:
        """
        Nonconformity score of a single (instance, label) pair.

        Convenience method for reporting and debugging; the conformal
        classifiers use the vectorised `calc_nc`.
        """
        row = as_native_storage(self.native_storage_template(), instance)
        return float(self.calc_nc(row, [label])[0])

    def native_storage_template(self):
        """Empty matrix in the storage layout the classifier prefers."""
        if self.classifier is not None:
            return self.classifier.native_storage_template()
        return native_storage_template(None)

    def _train(self, X, y):
        self.classifier = self.classifier.fit_new(X, y)

    @abstractmethod
    def _scores(self, X, y: np.ndarray) -> np.ndarray:
        """Scores for validated input; subclasses implement the rule."""

    def __repr__(self):
        return (
            f"{type(self).__name__}(labels={self.labels.tolist()}, "
            f"classifier={self.classifier!r})"
        )


class HingeLossNonconformityFunction(ClassificationNonconformityFunction):
    """
    Hinge-loss nonconformity: score = 1 - P(y_i | x_i).

    Classifiers without `predict_proba` are wrapped in a
    `PseudoProbabilityClassifier`, which gives a score of 0 when the
    classifier predicts y_i and 1 otherwise.

    Examples
    --------
    >>> from sklearn.linear_model import LogisticRegression
    >>> ncf = HingeLossNonconformityFunction([0, 1], LogisticRegression())
    >>> ncf = ncf.fit(X_train, y_train)
    >>> scores = ncf.calc_nc(X_test, y_test)
    """

    name = "hinge loss nonconformity function"

    def __init__(self, labels, classifier):
        super().__init__(labels, classifier)
        if self.classifier is None:
            raise IncompatibleClassifierError(
                f"The {self.name} requires a classifier"
            )
        if not self.classifier.has_class_probabilities:
            self.classifier = PseudoProbabilityClassifier(
                self.classifier, self.labels
            )

    def _scores(self, X, y):
        probabilities = self.classifier.predict_proba(X)
        classes = np.asarray(self.classifier.classes_, dtype=float)

        # Labels the classifier never saw get probability 0
        p = np.zeros(len(y), dtype=float)
        for j, c in enumerate(classes):
            mask = y == c
            p[mask] = probabilities[mask, j]

        return 1.0 - p


class SVMDistanceNonconformityFunction(ClassificationNonconformityFunction):
    """
    Decision-boundary distance nonconformity.

    For a binary classifier with decision value d (positive on the side of
    `classes_[1]`), the score is -d for the positive class and d for the
    negative class. For one-vs-rest decision values the score is minus the
    column of the row's label. Labels unknown to the fitted classifier
    score +inf.

    Raises
    ------
    IncompatibleClassifierError
        If the classifier has no `decision_function`, or is configured
        for one-vs-one decision values.
    """

    name = "SVM distance nonconformity function"

    def __init__(self, labels, classifier):
        super().__init__(labels, classifier)
        if self.classifier is None or not self.classifier.has_decision_function:
            classifier_name = (
                self.classifier.name if self.classifier is not None else 'None'
            )
            raise IncompatibleClassifierError(
                f"The selected classifier ({classifier_name}) does not "
                f"provide a decision function and, thus, cannot be used "
                f"with the {self.name}."
            )
        if getattr(self.classifier.estimator, 'decision_function_shape', None) == 'ovo':
            raise IncompatibleClassifierError(
                f"The selected classifier ({self.classifier.name}) produces "
                f"one-vs-one decision values, which the {self.name} cannot "
                f"map to labels. Use decision_function_shape='ovr'."
            )

    def _scores(self, X, y):
        decision = np.asarray(self.classifier.decision_function(X), dtype=float)
        classes = np.asarray(self.classifier.classes_, dtype=float)
        scores = np.full(len(y), np.inf)

        if decision.ndim == 1:
            negative = y == classes[0]
            positive = y == classes[-1]
            scores[negative] = decision[negative]
            scores[positive] = -decision[positive]
        else:
            if decision.shape[1] != len(classes):
                raise ValueError(
                    f"Expected one decision column per class ({len(classes)}), "
                    f"got {decision.shape[1]}"
                )
            for j, c in enumerate(classes):
                mask = y == c
                scores[mask] = -decision[mask, j]

        return scores


class AttributeAverageNonconformityFunction(ClassificationNonconformityFunction):
    """
    Model-free nonconformity based on per-class attribute averages.

    Fitting stores the mean feature vector of every label. The score of a
    row is its Euclidean distance to the mean of its label's class, or
    +inf if that class had no rows. The classifier, if given, is only used
    to choose the storage layout and is never trained.
    """

    name = "attribute average nonconformity function"

    def __init__(self, labels, classifier=None):
        super().__init__(labels, classifier)
        self.class_means_: Optional[np.ndarray] = None

    def _train(self, X, y):
        means = np.full((len(self.labels), X.shape[1]), np.nan)
        for j, label in enumerate(self.labels):
            mask = y == label
            if mask.any():
                means[j] = np.asarray(X[mask].mean(axis=0)).ravel()
        self.class_means_ = means

    def _scores(self, X, y):
        scores = np.full(len(y), np.inf)
        for j, label in enumerate(self.labels):
            mask = y == label
            if not mask.any() or np.isnan(self.class_means_[j]).any():
                continue
            rows = X[mask]
            if sp.issparse(rows):
                rows = rows.toarray()
            scores[mask] = np.linalg.norm(
                np.asarray(rows) - self.class_means_[j], axis=1
            )
        return scores

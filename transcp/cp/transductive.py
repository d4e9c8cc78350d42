"""
Transductive Conformal Classifier

For every test instance and every candidate label the classifier refits
its nonconformity function on the calibration set augmented with the
(instance, label) pair, scores all rows and ranks the instance's score
against the calibration scores:

1. Copy the calibration set into an (n+1)-row buffer, row n = instance
2. For each label, in label order:
   a. write the label into slot n
   b. fit_new + calc_nc on the augmented set
   c. test score = score n, calibration scores = scores 0..n-1
      (only rows with the hypothesized label in label-conditional mode)
   d. sort the calibration scores and compute the p-value

Cost is O(L) refits per instance, which is why batches are spread over a
worker pool (see `parallel.py`).

"""

import warnings
from typing import List, Optional, Tuple

import numpy as np
import scipy.sparse as sp
from sklearn.exceptions import NotFittedError

from ..ml.storage import AugmentedTrainingSet, as_native_storage, get_row, n_rows
from ..nc.nonconformity import ClassificationNonconformityFunction
from .classification import ConformalClassification
from .parallel import ParallelizedAction
from .pvalue import calculate_p_value


class TransductiveConformalClassifier:
    """
    Transductive (full) conformal classifier.

    Parameters
    ----------
    nc : ClassificationNonconformityFunction
        Nonconformity function; it is refitted for every hypothesis and
        is never modified itself.
    labels : array-like
        The label set. Stored sorted ascending; p-value vectors follow
        this order.
    label_conditional : bool, optional (default=False)
        Use label-conditional (Mondrian) conformal prediction: rank the
        test score only against calibration rows with the hypothesized
        label.
    parallel : bool, optional (default=True)
        Spread batch predictions over a worker pool.
    executor : concurrent.futures.Executor, optional
        Worker pool for batch predictions. Defaults to the shared pool.
    leaf_size : int, optional
        Maximum number of instances per worker task.

    Attributes
    ----------
    labels_ : np.ndarray
        Sorted label set.
    label_index_ : dict
        Label to index mapping.
    X_ : np.ndarray or scipy.sparse.csr_matrix
        Calibration instances in the nonconformity function's native layout.
    y_ : np.ndarray
        Calibration labels.

    Examples
    --------
    >>> from sklearn.linear_model import LogisticRegression
    >>> from transcp.nc import HingeLossNonconformityFunction
    >>> ncf = HingeLossNonconformityFunction([0, 1], LogisticRegression())
    >>> tcc = TransductiveConformalClassifier(ncf, [0, 1])
    >>> tcc.fit(X_cal, y_cal)
    >>> p_values = tcc.predict_p_values(X_test)   # shape (n_test, 2)
    >>> results = tcc.predict(X_test)             # list of ConformalClassification
    """

    def __init__(
        self,
        nc: ClassificationNonconformityFunction,
        labels,
        label_conditional: bool = False,
        parallel: bool = True,
        executor=None,
        leaf_size: Optional[int] = None
    ):
        labels = np.asarray(labels, dtype=float).ravel()
        if len(labels) == 0:
            raise ValueError("The label set must not be empty")
        if len(np.unique(labels)) != len(labels):
            raise ValueError(f"Labels must be unique, got {labels.tolist()}")
        if leaf_size is not None and leaf_size < 1:
            raise ValueError(f"leaf_size must be >= 1, got {leaf_size}")

        self.labels_ = np.sort(labels)
        self.label_index_ = {float(c): i for i, c in enumerate(self.labels_)}
        self.label_conditional = label_conditional
        self.parallel = parallel
        self.executor = executor
        self.leaf_size = leaf_size
        self.nonconformity_function = nc

        # Set during fit
        self.X_ = None
        self.y_ = None

    @property
    def is_trained(self) -> bool:
        return self.X_ is not None

    @property
    def attribute_count(self) -> int:
        """Number of features of the calibration set, -1 before fit."""
        if self.X_ is None:
            return -1
        return self.X_.shape[1]

    def get_labels(self) -> np.ndarray:
        return self.labels_

    def native_storage_template(self):
        if self.nonconformity_function is not None:
            return self.nonconformity_function.native_storage_template()
        return sp.csr_matrix((0, 0), dtype=float)

    def fit(self, X, y) -> 'TransductiveConformalClassifier':
        """
        Store the calibration set.

        Parameters
        ----------
        X : array-like or scipy.sparse matrix, shape (n, d)
            Calibration instances.
        y : array-like, shape (n,)
            Calibration labels; every value must be in the label set.

        Returns
        -------
        self : TransductiveConformalClassifier
        """
        X = as_native_storage(self.native_storage_template(), X)
        y = np.asarray(y, dtype=float).ravel()

        if n_rows(X) != len(y):
            raise ValueError(
                f"Length mismatch: X ({n_rows(X)}) vs y ({len(y)})"
            )
        unknown = np.setdiff1d(np.unique(y), self.labels_)
        if len(unknown) > 0:
            raise ValueError(
                f"Calibration labels {unknown.tolist()} are not in the "
                f"label set {self.labels_.tolist()}"
            )

        if self.label_conditional:
            missing = np.setdiff1d(self.labels_, y)
            if len(missing) > 0:
                warnings.warn(
                    f"Labels {missing.tolist()} have no calibration rows; in "
                    f"label-conditional mode their p-values will always be 1."
                )

        self.X_ = X
        self.y_ = y
        return self

    # ---- Prediction ----

    def predict_p_values(self, X) -> np.ndarray:
        """
        Conformal p-values for one instance or a batch of instances.

        Parameters
        ----------
        X : array-like or scipy.sparse matrix, shape (d,) or (n, d)
            A single instance (1-D) or a matrix of instances.

        Returns
        -------
        p_values : np.ndarray, shape (L,) or (n, L)
            p-values in label order.
        """
        self._check_trained()
        if self._is_single_instance(X):
            buffer = self._create_local_training_set()
            return self._predict_p_values(X, buffer)

        X = self._as_test_matrix(X)
        response = np.empty((n_rows(X), len(self.labels_)), dtype=float)
        action = ClassifyPValuesAction(
            self, X, response, 0, n_rows(X),
            executor=self.executor, threshold=self.leaf_size
        )
        self._run(action)
        return response

    def predict(self, X):
        """
        Conformal classification of one instance or a batch of instances.

        Returns
        -------
        result : ConformalClassification or list of ConformalClassification
            One result for a 1-D instance; a list, index-aligned with the
            rows of `X`, for a matrix.
        """
        self._check_trained()
        if self._is_single_instance(X):
            return ConformalClassification(self, self.predict_p_values(X))

        X = self._as_test_matrix(X)
        response: List[Optional[ConformalClassification]] = [None] * n_rows(X)
        action = ClassifyAllAction(
            self, X, response, 0, n_rows(X),
            executor=self.executor, threshold=self.leaf_size
        )
        self._run(action)
        return response

    def calculate_nonconformity_scores(
        self,
        buffer: AugmentedTrainingSet,
        label: float
    ) -> Tuple[float, np.ndarray]:
        """
        Score the hypothesis `label` for the instance held in `buffer`.

        Returns
        -------
        test_score : float
            Nonconformity score of the augmented row.
        calibration_scores : np.ndarray
            Sorted calibration scores the test score is ranked against.
        """
        buffer.set_label(label)
        ncf = self.nonconformity_function.fit_new(buffer.X, buffer.y)
        scores = ncf.calc_nc(buffer.X, buffer.y)

        test_score = scores[buffer.last]
        calibration_scores = scores[:buffer.last]
        if self.label_conditional:
            calibration_scores = calibration_scores[buffer.y[:buffer.last] == label]

        return test_score, np.sort(calibration_scores)

    def _predict_p_values(self, x, buffer: AugmentedTrainingSet,
                          out: Optional[np.ndarray] = None) -> np.ndarray:
        if out is None:
            out = np.empty(len(self.labels_), dtype=float)
        buffer.assign_instance(x)
        for i, label in enumerate(self.labels_):
            test_score, calibration_scores = self.calculate_nonconformity_scores(
                buffer, label
            )
            out[i] = calculate_p_value(test_score, calibration_scores)
        return out

    def _create_local_training_set(self) -> AugmentedTrainingSet:
        return AugmentedTrainingSet(self.X_, self.y_)

    def _run(self, action: ParallelizedAction):
        if self.parallel:
            action.run()
        else:
            action.run_sequential()

    def _check_trained(self):
        if not self.is_trained:
            raise NotFittedError(
                "The conformal classifier is not trained. Call .fit() first."
            )

    def _is_single_instance(self, X) -> bool:
        if sp.issparse(X):
            return False
        return np.ndim(X) == 1

    def _as_test_matrix(self, X):
        X = as_native_storage(self.native_storage_template(), X)
        if X.shape[1] != self.attribute_count:
            raise ValueError(
                f"Expected {self.attribute_count} attributes, got {X.shape[1]}"
            )
        return X

    # ---- Persistence ----

    def __getstate__(self):
        """
        Pickle state: the nonconformity function (with its classifier),
        the labels and label index, the mode flags and the calibration set.

        The calibration instances are stored as CSR sparse; the executor
        is not pickled.
        """
        return {
            'nonconformity_function': self.nonconformity_function,
            'labels': self.labels_,
            'label_index': self.label_index_,
            'label_conditional': self.label_conditional,
            'parallel': self.parallel,
            'leaf_size': self.leaf_size,
            'X': sp.csr_matrix(self.X_) if self.X_ is not None else None,
            'y': self.y_,
        }

    def __setstate__(self, state):
        self.nonconformity_function = state['nonconformity_function']
        self.labels_ = np.asarray(state['labels'], dtype=float)
        self.label_index_ = dict(state['label_index'])
        self.label_conditional = bool(state['label_conditional'])
        self.parallel = bool(state.get('parallel', True))
        self.leaf_size = state.get('leaf_size')
        self.executor = None

        # Back into the layout the classifier prefers
        X = state['X']
        self.X_ = (
            as_native_storage(self.native_storage_template(), X)
            if X is not None else None
        )
        self.y_ = state['y']

    def __repr__(self):
        return (
            f"{type(self).__name__}(nc={self.nonconformity_function!r}, "
            f"labels={self.labels_.tolist()}, "
            f"label_conditional={self.label_conditional})"
        )


class ClassifyAction(ParallelizedAction):
    """Batch action owning one augmented training set per leaf."""

    def __init__(self, classifier: TransductiveConformalClassifier, X,
                 first: int, last: int, executor=None, threshold=None):
        super().__init__(first, last, executor=executor, threshold=threshold)
        self.classifier = classifier
        self.X = X
        self.buffer: Optional[AugmentedTrainingSet] = None

    def initialize(self, first, last):
        self.buffer = self.classifier._create_local_training_set()

    def finalize(self, first, last):
        self.buffer = None


class ClassifyPValuesAction(ClassifyAction):
    """Writes the p-values of row i into row i of `response`."""

    def __init__(self, classifier, X, response, first, last,
                 executor=None, threshold=None):
        super().__init__(classifier, X, first, last, executor, threshold)
        self.response = response

    def compute(self, i):
        self.classifier._predict_p_values(
            get_row(self.X, i), self.buffer, out=self.response[i]
        )

    def create_subtask(self, first, last):
        return ClassifyPValuesAction(
            self.classifier, self.X, self.response, first, last,
            self.executor, self.threshold
        )


class ClassifyAllAction(ClassifyAction):
    """Stores a ConformalClassification for row i at `response[i]`."""

    def __init__(self, classifier, X, response, first, last,
                 executor=None, threshold=None):
        super().__init__(classifier, X, first, last, executor, threshold)
        self.response = response

    def compute(self, i):
        p_values = self.classifier._predict_p_values(get_row(self.X, i), self.buffer)
        self.response[i] = ConformalClassification(self.classifier, p_values)

    def create_subtask(self, first, last):
        return ClassifyAllAction(
            self.classifier, self.X, self.response, first, last,
            self.executor, self.threshold
        )

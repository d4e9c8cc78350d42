"""
Native Storage Layouts and Augmented Training Sets

Different scikit-learn back-ends prefer different matrix encodings. The
libsvm/liblinear based estimators work on CSR sparse matrices without a
conversion copy, while most other estimators expect dense arrays. This
module lets callers ask for an empty template of the preferred layout and
convert data into it once, ahead of the hot prediction loop.

"""

import numpy as np
import scipy.sparse as sp
from sklearn.linear_model import LogisticRegression
from sklearn.svm import SVC, NuSVC, LinearSVC


# Estimators backed by libsvm/liblinear accept CSR input natively
SPARSE_NATIVE_ESTIMATORS = (SVC, NuSVC, LinearSVC, LogisticRegression)


def native_storage_template(estimator=None):
    """
    Return an empty (0 x 0) matrix in the layout preferred by `estimator`.

    Parameters
    ----------
    estimator : sklearn estimator or None
        The estimator that will consume the data. None selects the
        dense layout.

    Returns
    -------
    template : np.ndarray or scipy.sparse.csr_matrix
        Empty container of the preferred storage layout.
    """
    if estimator is not None and isinstance(estimator, SPARSE_NATIVE_ESTIMATORS):
        return sp.csr_matrix((0, 0), dtype=float)
    return np.empty((0, 0), dtype=float)


def as_native_storage(template, X):
    """
    Convert `X` into the storage layout of `template`.

    Parameters
    ----------
    template : np.ndarray or scipy.sparse matrix
        Layout template, see `native_storage_template`.
    X : array-like or scipy.sparse matrix, shape (n, d)
        Data to convert. DataFrames and nested lists are accepted.

    Returns
    -------
    X_native : np.ndarray or scipy.sparse.csr_matrix, shape (n, d)
    """
    if sp.issparse(template):
        if sp.issparse(X):
            return sp.csr_matrix(X, dtype=float)
        return sp.csr_matrix(_as_dense_2d(X))
    if sp.issparse(X):
        return np.asarray(X.toarray(), dtype=float)
    return _as_dense_2d(X)


def _as_dense_2d(X):
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(1, -1)
    if X.ndim != 2:
        raise ValueError(f"Expected a 2-D matrix, got {X.ndim} dimensions")
    return X


def n_rows(X) -> int:
    """Number of rows of a dense or sparse matrix."""
    return X.shape[0]


def get_row(X, i):
    """Row `i` of `X`, as a 1-D array (dense) or a 1 x d CSR matrix (sparse)."""
    if sp.issparse(X):
        return sp.csr_matrix(X[i])
    return np.asarray(X)[i]


class AugmentedTrainingSet:
    """
    (n+1)-row copy of a calibration set with one free slot at the end.

    Row n holds the instance being predicted and `y[n]` the hypothesized
    label. A buffer is owned by exactly one worker and is reused for every
    instance that worker is assigned, so the O(n*d) copy is paid once per
    worker range rather than once per instance.

    Parameters
    ----------
    X : np.ndarray or scipy.sparse matrix, shape (n, d)
        Calibration instances, already in native storage layout.
    y : np.ndarray, shape (n,)
        Calibration labels.

    Attributes
    ----------
    X : np.ndarray or scipy.sparse.csr_matrix, shape (n+1, d)
        Augmented instances.
    y : np.ndarray, shape (n+1,)
        Augmented labels; `y[last]` is NaN until `set_label` is called.
    last : int
        Index of the free slot (equals n).
    """

    def __init__(self, X, y):
        n, d = X.shape
        self.last = n
        self.n_features = d
        self.sparse = sp.issparse(X)

        self.y = np.empty(n + 1, dtype=float)
        self.y[:n] = y
        self.y[n] = np.nan

        if self.sparse:
            # Row n stores all d entries explicitly so that it can be
            # overwritten in place without changing the sparsity structure
            calibration = sp.csr_matrix(X, dtype=float).sorted_indices()
            index_dtype = calibration.indices.dtype
            self.X = sp.csr_matrix(
                (
                    np.concatenate([calibration.data, np.zeros(d)]),
                    np.concatenate([calibration.indices, np.arange(d, dtype=index_dtype)]),
                    np.append(calibration.indptr, calibration.indptr[-1] + d).astype(index_dtype),
                ),
                shape=(n + 1, d)
            )
            self._slot = slice(int(self.X.indptr[n]), int(self.X.indptr[n + 1]))
        else:
            self.X = np.empty((n + 1, d), dtype=float)
            self.X[:n] = X
            self.X[n] = 0.0

    def assign_instance(self, x):
        """Write instance `x` into the free slot."""
        if sp.issparse(x):
            x = x.toarray()
        x = np.asarray(x, dtype=float).reshape(self.n_features)
        if self.sparse:
            self.X.data[self._slot] = x
        else:
            self.X[self.last] = x

    def set_label(self, label: float):
        """Write the hypothesized label into the free slot."""
        self.y[self.last] = label

"""transcp Pipeline - Main User Interface"""

import pickle
from pathlib import Path
from typing import Optional, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp
from sklearn.base import clone
from sklearn.exceptions import NotFittedError

from .cp.evaluation import EvaluationReport, run_test
from .cp.transductive import TransductiveConformalClassifier
from .exceptions import ModelLoadError
from .nc.factory import NonconformityFunctionFactory, default_factory


class Pipeline:
    """
    End-to-end transductive conformal classification.

    Combines a scikit-learn classifier, a nonconformity strategy and a
    transductive conformal classifier, and exposes the configuration
    surface in one place.

    Parameters
    ----------
    classifier : sklearn classifier
        Underlying classifier. It is cloned, never trained in place.
    nc_type : int or str, default='hinge'
        Nonconformity strategy: 'hinge' (0), 'svm_distance' (1) or
        'attribute_average' (2).
    significance : float, default=0.10
        Significance level in (0, 1] used for prediction sets and
        evaluation. Expected error rate is at most `significance`.
    label_conditional : bool, default=False
        Use label-conditional (Mondrian) conformal prediction.
    parallel : bool, default=True
        Spread batch predictions over the worker pool.
    random_seed : int, default=42
        Assigned to the classifier's `random_state` if it has one and it
        is unset, so that predictions are reproducible.
    factory : NonconformityFunctionFactory, optional
        Factory used to build the nonconformity function.

    Examples
    --------
    >>> from sklearn.linear_model import LogisticRegression
    >>> from transcp import Pipeline
    >>>
    >>> pipeline = Pipeline(LogisticRegression(), significance=0.1)
    >>> pipeline.fit(X_cal, y_cal)
    >>>
    >>> # p-values, point prediction and prediction sets per instance
    >>> predictions = pipeline.predict(X_new)
    >>>
    >>> # Accuracy, set-size histogram and efficiency criteria
    >>> report = pipeline.evaluate(X_test, y_test)
    """

    def __init__(
        self,
        classifier,
        nc_type: Union[int, str] = 'hinge',
        significance: float = 0.10,
        label_conditional: bool = False,
        parallel: bool = True,
        random_seed: int = 42,
        factory: Optional[NonconformityFunctionFactory] = None
    ):
        if not 0 < significance <= 1:
            raise ValueError(f"significance must be in (0,1], got {significance}")

        self.classifier = classifier
        self.nc_type = nc_type
        self.significance = significance
        self.label_conditional = label_conditional
        self.parallel = parallel
        self.random_seed = random_seed
        self.factory = factory if factory is not None else default_factory

        # Fail fast on an unknown or incompatible strategy
        self.factory.create_nonconformity_function(nc_type, [0, 1], classifier)

        # Will be initialized during fit()
        self.conformal_classifier = None
        self.labels = None
        self.feature_names = None

    def fit(
        self,
        X,
        y,
        labels=None,
        verbose: bool = True
    ) -> 'Pipeline':
        """
        Fit the pipeline on a calibration set.

        Parameters
        ----------
        X : array-like, DataFrame or scipy.sparse matrix, shape (n, d)
            Calibration instances.
        y : array-like, shape (n,)
            Calibration labels.
        labels : array-like, optional
            Full label set. Defaults to the labels seen in `y`.
        verbose : bool, default=True
            Print progress.

        Returns
        -------
        self : Pipeline
            Fitted pipeline.
        """
        if isinstance(X, pd.DataFrame):
            self.feature_names = list(X.columns)
            X = X.values
        y = np.asarray(y, dtype=float).ravel()
        if len(y) == 0:
            raise ValueError("The calibration set is empty")

        self.labels = np.sort(
            np.unique(np.asarray(labels if labels is not None else y, dtype=float))
        )

        ncf = self.factory.create_nonconformity_function(
            self.nc_type, self.labels, self._seeded_classifier()
        )
        self.conformal_classifier = TransductiveConformalClassifier(
            ncf,
            self.labels,
            label_conditional=self.label_conditional,
            parallel=self.parallel
        ).fit(X, y)

        if verbose:
            print(f"\n{'='*70}")
            print(f"transcp Pipeline: {len(y)} calibration instances, "
                  f"{len(self.labels)} labels")
            print(f"{'='*70}")
            print(f"  Nonconformity function: {ncf.name}")
            print(f"  Classifier: {type(self.classifier).__name__}")
            print(f"  Label-conditional: {self.label_conditional}")
            print(f"  Significance: {self.significance}")
            print("✓ Pipeline fitted")

        return self

    def predict_p_values(self, X) -> np.ndarray:
        """p-values, shape (n, L), columns in `self.labels` order."""
        self._check_fitted()
        return self.conformal_classifier.predict_p_values(self._features(X))

    def predict(self, X) -> pd.DataFrame:
        """
        Conformal predictions for a batch of instances.

        Returns
        -------
        predictions : pd.DataFrame
            One row per instance with columns:
            - p_value_<label>: p-value of each label
            - label: point prediction (NaN if the largest p-value is shared)
            - confidence: 1 - second largest p-value
            - credibility: largest p-value
            - prediction_set: labels with p-value >= significance
            - set_size: size of the prediction set
        """
        self._check_fitted()
        results = self.conformal_classifier.predict(self._features(X))

        predictions = pd.DataFrame(
            np.array([r.p_values for r in results]).reshape(len(results), len(self.labels)),
            columns=[f"p_value_{label:g}" for label in self.labels]
        )
        predictions['label'] = [
            r.label if r.label is not None else np.nan for r in results
        ]
        predictions['confidence'] = [r.confidence for r in results]
        predictions['credibility'] = [r.credibility for r in results]
        sets = [r.prediction_set(self.significance) for r in results]
        predictions['prediction_set'] = [str(s) for s in sets]
        predictions['set_size'] = [len(s) for s in sets]

        return predictions

    def evaluate(self, X_test, y_test, verbose: bool = True) -> EvaluationReport:
        """
        Evaluate on a labelled test set at `self.significance`.

        Returns
        -------
        report : EvaluationReport
            Accuracy, set-size histogram, per-class breakdown and the
            prior/observed efficiency criteria.
        """
        self._check_fitted()
        return run_test(
            self.conformal_classifier,
            self._features(X_test),
            np.asarray(y_test, dtype=float).ravel(),
            self.significance,
            verbose=verbose
        )

    def save(self, filepath: Union[str, Path]):
        """Save the fitted pipeline to disk."""
        save_model(self, filepath)

    @classmethod
    def load(cls, filepath: Union[str, Path]) -> 'Pipeline':
        """Load a fitted pipeline from disk."""
        return load_model(filepath, expected_type=cls)

    # ---- Private methods ----

    def _seeded_classifier(self):
        if self.classifier is None:
            return None
        classifier = clone(self.classifier)
        params = classifier.get_params()
        if 'random_state' in params and params['random_state'] is None:
            classifier.set_params(random_state=self.random_seed)
        return classifier

    def _features(self, X):
        if isinstance(X, pd.DataFrame):
            if self.feature_names is not None:
                X = X[self.feature_names]
            X = X.values
        if not sp.issparse(X) and np.ndim(X) == 1:
            X = np.asarray(X).reshape(1, -1)
        return X

    def _check_fitted(self):
        if self.conformal_classifier is None:
            raise NotFittedError("Pipeline not fitted. Call .fit() first.")


def save_model(model, filepath: Union[str, Path]):
    """
    Pickle a conformal classifier or pipeline to `filepath`.

    Parent directories are created as needed.
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    with open(filepath, 'wb') as f:
        pickle.dump(model, f)

    print(f"✓ Model saved to {filepath}")


def load_model(
    filepath: Union[str, Path],
    expected_type=(TransductiveConformalClassifier, Pipeline)
):
    """
    Load a model saved with `save_model`.

    Raises
    ------
    ModelLoadError
        If the file is missing, cannot be unpickled or does not hold an
        object of `expected_type`. The original exception is chained.
    """
    filepath = Path(filepath)

    try:
        with open(filepath, 'rb') as f:
            model = pickle.load(f)
    except Exception as e:
        raise ModelLoadError(
            f"Failed to load conformal classifier model from '{filepath}': {e}"
        ) from e

    if not isinstance(model, expected_type):
        raise ModelLoadError(
            f"'{filepath}' holds a {type(model).__name__}, "
            f"not a conformal classifier model"
        )

    print(f"✓ Model loaded from {filepath}")
    return model

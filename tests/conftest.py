"""Shared fixtures for the transcp test suite."""

import numpy as np
import pytest


def generate_blobs(n_per_class=30, n_classes=2, spread=1.5, seed=42):
    """Gaussian blobs, one per class, on a diagonal; rows shuffled."""
    rng = np.random.RandomState(seed)
    X, y = [], []
    for c in range(n_classes):
        center = np.full(2, (c - (n_classes - 1) / 2) * 2 * spread)
        X.append(rng.normal(loc=center, scale=1.0, size=(n_per_class, 2)))
        y.append(np.full(n_per_class, c, dtype=float))
    X = np.vstack(X)
    y = np.concatenate(y)
    perm = rng.permutation(len(y))
    return X[perm], y[perm]


@pytest.fixture
def binary_data():
    """Calibration and test sets for a two-class problem."""
    X_cal, y_cal = generate_blobs(n_per_class=30, seed=42)
    X_test, y_test = generate_blobs(n_per_class=8, seed=7)
    return {'X_cal': X_cal, 'y_cal': y_cal, 'X_test': X_test, 'y_test': y_test}


@pytest.fixture
def multiclass_data():
    """Calibration and test sets for a three-class problem."""
    X_cal, y_cal = generate_blobs(n_per_class=20, n_classes=3, seed=3)
    X_test, y_test = generate_blobs(n_per_class=5, n_classes=3, seed=11)
    return {'X_cal': X_cal, 'y_cal': y_cal, 'X_test': X_test, 'y_test': y_test}


@pytest.fixture
def overlapping_data():
    """Larger two-class problem with overlapping classes, for validity checks."""
    X_cal, y_cal = generate_blobs(n_per_class=60, spread=0.6, seed=5)
    X_test, y_test = generate_blobs(n_per_class=100, spread=0.6, seed=6)
    return {'X_cal': X_cal, 'y_cal': y_cal, 'X_test': X_test, 'y_test': y_test}

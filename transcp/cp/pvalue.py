"""
Conformal p-values

p = (#{i : calibration_scores[i] >= test_score} + 1) / (n + 1)

Ties count towards the numerator. Together with the +1 terms this is what
gives P(p <= alpha) <= alpha under exchangeability.

"""

import numpy as np


def calculate_p_value(test_score: float, calibration_scores) -> float:
    """
    Conformal p-value of one test score.

    Parameters
    ----------
    test_score : float
        Nonconformity score of the test instance.
    calibration_scores : array-like, shape (n,)
        Calibration nonconformity scores, sorted ascending.

    Returns
    -------
    p_value : float
        Value in (0, 1]. Equals 1 for an empty calibration set.

    Examples
    --------
    >>> calculate_p_value(2.0, [1.0, 2.0, 2.0, 3.0])
    0.8
    """
    calibration_scores = np.asarray(calibration_scores, dtype=float)
    n = len(calibration_scores)

    # First index with score >= test_score; everything from there on counts
    rank = int(np.searchsorted(calibration_scores, test_score, side='left'))
    n_greater_or_equal = n - rank

    return (n_greater_or_equal + 1) / (n + 1)


def calculate_p_values(test_scores, calibration_scores) -> np.ndarray:
    """Vectorised `calculate_p_value` over several test scores."""
    calibration_scores = np.asarray(calibration_scores, dtype=float)
    test_scores = np.asarray(test_scores, dtype=float)
    n = len(calibration_scores)

    ranks = np.searchsorted(calibration_scores, test_scores, side='left')
    return (n - ranks + 1) / (n + 1)

"""
Nonconformity Function Factory

Maps a strategy selector (index or short name) to a nonconformity
function constructor. The factory holds no mutable state; a module-level
instance, `default_factory`, is created at import time and callers may
pass it, or their own instance, to whatever needs one.

"""

from typing import Dict, List, Union

from ..exceptions import UnsupportedNonconformityFunctionError
from .nonconformity import (
    AttributeAverageNonconformityFunction,
    ClassificationNonconformityFunction,
    HingeLossNonconformityFunction,
    SVMDistanceNonconformityFunction,
)


_STRATEGIES = (
    ('hinge', HingeLossNonconformityFunction),
    ('svm_distance', SVMDistanceNonconformityFunction),
    ('attribute_average', AttributeAverageNonconformityFunction),
)


class NonconformityFunctionFactory:
    """
    Registry of the available classification nonconformity functions.

    Selectors are either the strategy index (0, 1, 2) or its short name
    ('hinge', 'svm_distance', 'attribute_average').

    Examples
    --------
    >>> from sklearn.svm import LinearSVC
    >>> factory = NonconformityFunctionFactory()
    >>> factory.get_nonconformity_functions()[1]
    'SVM distance nonconformity function'
    >>> ncf = factory.create_nonconformity_function(
    ...     'svm_distance', [0, 1], LinearSVC()
    ... )
    """

    def get_nonconformity_functions(self) -> List[str]:
        """Human-readable names, in selector order."""
        return [cls.name for _, cls in _STRATEGIES]

    def get_selectors(self) -> Dict[str, int]:
        """Short name to index mapping."""
        return {key: i for i, (key, _) in enumerate(_STRATEGIES)}

    def create_nonconformity_function(
        self,
        nc_type: Union[int, str],
        labels,
        classifier=None
    ) -> ClassificationNonconformityFunction:
        """
        Create an untrained nonconformity function.

        Parameters
        ----------
        nc_type : int or str
            Strategy selector.
        labels : array-like
            The label set.
        classifier : sklearn classifier or ClassifierAdapter
            Underlying classifier. Required for 'hinge' and 'svm_distance'.

        Returns
        -------
        ncf : ClassificationNonconformityFunction

        Raises
        ------
        UnsupportedNonconformityFunctionError
            If `nc_type` is not a known selector.
        IncompatibleClassifierError
            If the classifier cannot serve the selected strategy.
        """
        return self._lookup(nc_type)(labels, classifier)

    def _lookup(self, nc_type):
        if isinstance(nc_type, str):
            selectors = self.get_selectors()
            key = nc_type.strip().lower().replace(' ', '_').replace('-', '_')
            if key in selectors:
                return _STRATEGIES[selectors[key]][1]
        elif isinstance(nc_type, int) and not isinstance(nc_type, bool):
            if 0 <= nc_type < len(_STRATEGIES):
                return _STRATEGIES[nc_type][1]

        raise UnsupportedNonconformityFunctionError(
            f"Unknown nonconformity function type: {nc_type!r}. "
            f"Available: {self.get_selectors()}"
        )


default_factory = NonconformityFunctionFactory()

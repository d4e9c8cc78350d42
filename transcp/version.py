"""Version information for transcp."""

__version__ = "0.1.0"
__author__ = "transcp developers"
__email__ = "transcp@users.noreply.github.com"
__description__ = "Transductive conformal classification with scikit-learn classifiers"
__url__ = "https://github.com/transcp/transcp"

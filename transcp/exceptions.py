"""Exception types raised by transcp."""


class NonconformityConfigurationError(ValueError):
    """A nonconformity function cannot be built from the given parts."""


class IncompatibleClassifierError(NonconformityConfigurationError):
    """The classifier lacks a capability the nonconformity function needs."""


class UnsupportedNonconformityFunctionError(NotImplementedError):
    """Unknown nonconformity function selector."""


class ModelLoadError(OSError):
    """A saved conformal classifier could not be loaded."""

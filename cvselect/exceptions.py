"""
Exceptions
==========

Error types raised by the evaluation engine.
"""


class ConfigurationError(ValueError):
    """Invalid inputs detected before any model is fitted."""


class FittingError(RuntimeError):
    """A model could not be fitted or scored for one specification."""

    def __init__(self, message: str, specification: str = None, fold: int = None):
        super().__init__(message)
        self.specification = specification
        self.fold = fold

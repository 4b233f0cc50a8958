"""Errors and warnings raised by spanorm."""


class SpaNormError(Exception):
    """Base class for spanorm errors."""


class ConfigurationError(SpaNormError, ValueError):
    """Invalid option value, raised before any fitting starts."""


class AdjustmentError(SpaNormError, ValueError):
    """Unknown adjustment method, or adjustment requested without a valid fit."""


class FitMismatchError(SpaNormError):
    """A cached fit does not match the dataset it is being applied to.

    Only raised by the cache lookup; the normalisation workflow treats it as
    "no cached fit" and refits.
    """


class ConvergenceWarning(UserWarning):
    """One or more genes hit the iteration cap before reaching tolerance."""


class NumericInstabilityFallback(UserWarning):
    """One or more genes were refit with the intercept-only fallback model."""

"""Exceptions raised by the watershed package."""


class WatershedError(Exception):
    """Base class for all watershed errors."""

    pass


class ConfigurationError(WatershedError, ValueError):
    """Raised for an invalid connectivity, dimension, spacing or backend."""

    pass


class ShapeMismatchError(WatershedError, ValueError):
    """Raised when elevation and marker images differ in shape or dimensionality."""

    pass


class NoMarkersError(WatershedError, ValueError):
    """Raised when the marker image holds no label other than the background value."""

    pass

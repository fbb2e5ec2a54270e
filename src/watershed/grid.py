"""
Grid helpers shared by the flood backends.

Covers input validation, coordinate-level neighbour enumeration, and the
padded/raveled working representation used by the numba kernel: every
working array gets a one-pixel border so the hot loop never needs a bounds
check.
"""

import logging
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np

from src.watershed.connectivity import Connectivity, _as_spacing, make_connectivity
from src.watershed.errors import ConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)

Coordinate = Tuple[int, ...]


def resolve_connectivity(
    connectivity: Optional[Connectivity],
    ndim: int,
    fully_connected: bool = False,
) -> Connectivity:
    """
    Return a connectivity matching `ndim`.

    Args:
        connectivity: Explicit descriptor, or None to build one
        ndim: Image dimensionality
        fully_connected: Used only when `connectivity` is None

    Raises:
        ConfigurationError: If the descriptor's dimension differs from ndim
    """
    if connectivity is None:
        return make_connectivity(ndim, fully_connected)
    if not isinstance(connectivity, Connectivity):
        raise ConfigurationError(
            f"connectivity must be a Connectivity instance, got {type(connectivity).__name__}"
        )
    if connectivity.ndim != ndim:
        raise ConfigurationError(
            f"Connectivity is {connectivity.ndim}-D but the image is {ndim}-D"
        )
    return connectivity


def validate_inputs(
    elevation,
    markers,
    connectivity: Optional[Connectivity] = None,
    spacing: Optional[Sequence[float]] = None,
    background_value: int = 0,
    fully_connected: bool = False,
) -> Tuple[np.ndarray, np.ndarray, Connectivity]:
    """
    Check elevation/marker compatibility before any work is done.

    Args:
        elevation: Ordered scalar image (any real dtype)
        markers: Integer label image of the same shape
        connectivity: Neighbourhood descriptor (built from fully_connected if None)
        spacing: Optional per-axis pixel spacing
        background_value: Label reserved for "no region"
        fully_connected: Topology used when connectivity is None

    Returns:
        Tuple of (elevation array, markers array, connectivity)

    Raises:
        ConfigurationError: Zero-dimensional input, unordered elevation dtype,
            non-integer markers, bad spacing, or a background value the marker
            dtype cannot hold
        ShapeMismatchError: If elevation and markers differ in shape
    """
    elevation = np.asarray(elevation)
    markers = np.asarray(markers)

    if elevation.ndim == 0:
        raise ConfigurationError("Elevation image must have at least one axis")

    if elevation.ndim != markers.ndim:
        raise ShapeMismatchError(
            f"Elevation is {elevation.ndim}-D but markers are {markers.ndim}-D"
        )
    if elevation.shape != markers.shape:
        raise ShapeMismatchError(
            f"Elevation shape {elevation.shape} does not match marker shape {markers.shape}"
        )

    if not (np.issubdtype(elevation.dtype, np.integer)
            or np.issubdtype(elevation.dtype, np.floating)
            or elevation.dtype == np.bool_):
        raise ConfigurationError(f"Elevation dtype {elevation.dtype} is not an ordered scalar type")

    if not np.issubdtype(markers.dtype, np.integer):
        raise ConfigurationError(f"Markers must have an integer dtype, got {markers.dtype}")

    info = np.iinfo(markers.dtype)
    if not info.min <= background_value <= info.max:
        raise ConfigurationError(
            f"Background value {background_value} does not fit marker dtype {markers.dtype}"
        )

    connectivity = resolve_connectivity(connectivity, elevation.ndim, fully_connected)
    _as_spacing(spacing, elevation.ndim)

    return elevation, markers, connectivity


def in_bounds(coordinate: Sequence[int], shape: Sequence[int]) -> bool:
    return all(0 <= c < s for c, s in zip(coordinate, shape))


def neighbors(
    coordinate: Sequence[int],
    shape: Sequence[int],
    connectivity: Connectivity,
) -> Iterator[Coordinate]:
    """
    Yield in-bounds neighbour coordinates in raster order.

    Coordinates outside the domain are skipped (no wraparound, no padding).
    """
    if len(coordinate) != connectivity.ndim:
        raise ConfigurationError(
            f"Coordinate {tuple(coordinate)} has {len(coordinate)} axes, "
            f"connectivity expects {connectivity.ndim}"
        )
    for offset in connectivity.offsets:
        candidate = tuple(int(c + o) for c, o in zip(coordinate, offset))
        if in_bounds(candidate, shape):
            yield candidate


def pad_with_border(array: np.ndarray, value) -> np.ndarray:
    """Return a C-contiguous copy of `array` with a one-pixel border set to `value`."""
    return np.ascontiguousarray(np.pad(array, 1, mode="constant", constant_values=value))


def interior(ndim: int) -> Tuple[slice, ...]:
    """Slices that strip the one-pixel border added by pad_with_border."""
    return (slice(1, -1),) * ndim


def grow_region(
    region: Sequence[slice],
    shape: Sequence[int],
    radius: int = 1,
) -> Tuple[slice, ...]:
    """
    Enlarge a requested region by `radius` pixels on every side, clipped to the domain.

    A tile flooded on its own needs this margin of elevation and marker data
    around it so that pixels on its boundary see all of their neighbours.

    Args:
        region: One slice per axis (step must be 1 or None)
        shape: Full image shape
        radius: Margin width, see required_margin()

    Returns:
        Tuple of slices with explicit start/stop
    """
    if len(region) != len(shape):
        raise ShapeMismatchError(
            f"Region has {len(region)} axes but the image has {len(shape)}"
        )
    if radius < 0:
        raise ConfigurationError(f"radius must be non-negative, got {radius}")

    grown = []
    for sl, size in zip(region, shape):
        start, stop, step = sl.indices(size)
        if step != 1:
            raise ConfigurationError(f"Region slices must have unit step, got {sl}")
        grown.append(slice(max(start - radius, 0), min(stop + radius, size)))
    return tuple(grown)

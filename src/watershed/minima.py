"""
Seed-free (unmarked) watershed.

Derives one marker per regional minimum of the elevation surface and hands
the resulting label image to flood_from_markers(). A regional minimum is a
connected plateau of equal elevation with no strictly lower neighbour
anywhere on the plateau.

Comparisons are exact, so a float surface with noise-level variation yields
one minimum per noise dip. Quantize or smooth the surface first if that is
not wanted.
"""

import logging
from typing import Optional

import numpy as np
from scipy import ndimage

from src.config import (
    DEFAULT_BACKEND,
    DEFAULT_BACKGROUND_VALUE,
    DEFAULT_FULLY_CONNECTED,
    DEFAULT_MARK_WATERSHED_LINE,
)
from src.watershed.connectivity import Connectivity
from src.watershed.errors import ConfigurationError
from src.watershed.flooding import WatershedConfig, flood_from_markers
from src.watershed.grid import resolve_connectivity

logger = logging.getLogger(__name__)


def _offset_slices(offset):
    """(destination, source) slices pairing each pixel with its neighbour at `offset`."""
    dst, src = [], []
    for o in offset:
        if o > 0:
            dst.append(slice(0, -o))
            src.append(slice(o, None))
        elif o < 0:
            dst.append(slice(-o, None))
            src.append(slice(0, o))
        else:
            dst.append(slice(None))
            src.append(slice(None))
    return tuple(dst), tuple(src)


def _as_ordered(elevation) -> np.ndarray:
    elevation = np.asarray(elevation)
    if elevation.ndim == 0:
        raise ConfigurationError("Elevation image must have at least one axis")
    if elevation.dtype == np.bool_:
        return elevation.astype(np.uint8)
    if not (np.issubdtype(elevation.dtype, np.integer) or np.issubdtype(elevation.dtype, np.floating)):
        raise ConfigurationError(f"Elevation dtype {elevation.dtype} is not an ordered scalar type")
    return elevation


def regional_minima(
    elevation,
    connectivity: Optional[Connectivity] = None,
    fully_connected: bool = DEFAULT_FULLY_CONNECTED,
) -> np.ndarray:
    """
    Boolean mask of all pixels that belong to a regional minimum.

    Args:
        elevation: Ordered scalar image
        connectivity: Neighbourhood descriptor (built from fully_connected if None)
        fully_connected: Topology used when connectivity is None

    Returns:
        np.ndarray: bool mask, same shape as elevation
    """
    elevation = _as_ordered(elevation)
    connectivity = resolve_connectivity(connectivity, elevation.ndim, fully_connected)

    # Lowest value in each neighbourhood, centre included
    eroded = ndimage.grey_erosion(elevation, footprint=connectivity.structure, mode="nearest")
    candidate = eroded == elevation

    # A candidate touching an equal-valued non-candidate sits on a plateau
    # that drains somewhere else
    leaks = np.zeros(elevation.shape, dtype=bool)
    for offset in connectivity.offsets:
        dst, src = _offset_slices(offset)
        leaks[dst] |= (
            candidate[dst]
            & ~candidate[src]
            & (elevation[src] == elevation[dst])
        )

    plateaus, n_plateaus = ndimage.label(candidate, structure=connectivity.structure)
    leaking = np.unique(plateaus[leaks])
    minima = candidate & ~np.isin(plateaus, leaking[leaking > 0])

    logger.debug(
        f"{n_plateaus:,} candidate plateaus, {int(np.count_nonzero(leaking)):,} rejected"
    )
    return minima


def label_minima(
    elevation,
    connectivity: Optional[Connectivity] = None,
    fully_connected: bool = DEFAULT_FULLY_CONNECTED,
    background_value: int = DEFAULT_BACKGROUND_VALUE,
    dtype=np.int32,
) -> np.ndarray:
    """
    Give each regional minimum its own label.

    Labels are numbered 1, 2, ... in raster order of each minimum's first
    pixel, skipping background_value. Every other pixel holds background_value.

    Returns:
        np.ndarray: Marker image suitable for flood_from_markers()
    """
    elevation = _as_ordered(elevation)
    connectivity = resolve_connectivity(connectivity, elevation.ndim, fully_connected)

    minima = regional_minima(elevation, connectivity)
    labels, n_minima = ndimage.label(minima, structure=connectivity.structure)
    labels = labels.astype(dtype)

    if 1 <= background_value <= n_minima:
        labels[labels >= background_value] += 1
    labels[~minima] = background_value

    logger.info(f"Found {n_minima:,} regional minima")
    return labels


def morphological_watershed(
    elevation,
    connectivity: Optional[Connectivity] = None,
    *,
    fully_connected: bool = DEFAULT_FULLY_CONNECTED,
    mark_watershed_line: bool = DEFAULT_MARK_WATERSHED_LINE,
    background_value: int = DEFAULT_BACKGROUND_VALUE,
    backend: str = DEFAULT_BACKEND,
    config: Optional[WatershedConfig] = None,
) -> np.ndarray:
    """
    Watershed transform seeded from the regional minima of `elevation`.

    Labels come out in no particular size order; pass the result through
    relabel_sequential() for consecutive labels sorted by object size.

    Returns:
        np.ndarray: int32 label image
    """
    if config is not None:
        fully_connected = config.fully_connected
        mark_watershed_line = config.mark_watershed_line
        background_value = config.background_value
        backend = config.backend

    elevation = _as_ordered(elevation)
    connectivity = resolve_connectivity(connectivity, elevation.ndim, fully_connected)
    markers = label_minima(elevation, connectivity, background_value=background_value)

    return flood_from_markers(
        elevation,
        markers,
        connectivity,
        mark_watershed_line=mark_watershed_line,
        background_value=background_value,
        backend=backend,
    )


def relabel_sequential(
    labels,
    background_value: int = DEFAULT_BACKGROUND_VALUE,
    sort_by_size: bool = True,
) -> np.ndarray:
    """
    Renumber labels consecutively from 1, skipping background_value.

    Args:
        labels: Integer label image
        background_value: Value left untouched
        sort_by_size: Largest object gets label 1 (ties by original label).
            When False, the original label order is kept.

    Returns:
        np.ndarray: Relabelled image, same dtype and shape
    """
    labels = np.asarray(labels)
    if not np.issubdtype(labels.dtype, np.integer):
        raise ConfigurationError(f"Labels must have an integer dtype, got {labels.dtype}")

    foreground = labels != background_value
    values, counts = np.unique(labels[foreground], return_counts=True)
    n_objects = len(values)

    candidates = np.arange(1, n_objects + 2)
    new_ids = candidates[candidates != background_value][:n_objects]

    if sort_by_size:
        order = np.lexsort((values, -counts))
    else:
        order = np.arange(n_objects)
    mapping = np.empty(n_objects, dtype=np.int64)
    mapping[order] = new_ids

    relabelled = np.full_like(labels, background_value)
    relabelled[foreground] = mapping[np.searchsorted(values, labels[foreground])]
    return relabelled

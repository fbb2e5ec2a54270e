"""
Independent per-slice flooding of image stacks.

The drain loop is sequential, so the only parallelism available is across
independent floods. Each layer along `axis` is flooded on its own (2-D
neighbourhoods, nothing crosses between layers) on a thread pool; the numba
kernel releases the GIL, so layers really run concurrently.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional

import numpy as np
from tqdm.auto import tqdm

from src.config import DEFAULT_BACKGROUND_VALUE
from src.watershed.errors import ConfigurationError
from src.watershed.grid import validate_inputs
from src.watershed.flooding import flood_from_markers

logger = logging.getLogger(__name__)


def flood_slices(
    elevation,
    markers,
    axis: int = 0,
    max_workers: Optional[int] = None,
    show_progress: bool = False,
    **flood_kwargs,
) -> np.ndarray:
    """
    Flood every layer of a stack independently and restack the results.

    Args:
        elevation: Ordered scalar image with at least 2 axes
        markers: Integer marker image, same shape
        axis: Axis along which layers are taken
        max_workers: Thread pool size (None lets the executor decide)
        show_progress: Show a tqdm progress bar
        **flood_kwargs: Passed through to flood_from_markers(). A
            `connectivity`, if given, must match the layer dimensionality.

    Returns:
        np.ndarray: Label image, same shape and dtype as markers. Layers with
        no markers are entirely background.
    """
    background_value = flood_kwargs.get("background_value", DEFAULT_BACKGROUND_VALUE)
    config = flood_kwargs.get("config")
    if config is not None:
        background_value = config.background_value

    elevation, markers, _ = validate_inputs(
        elevation, markers, background_value=background_value
    )
    if elevation.ndim < 2:
        raise ConfigurationError(f"Need at least 2 axes to split into layers, got {elevation.ndim}")
    if not -elevation.ndim <= axis < elevation.ndim:
        raise ConfigurationError(f"axis {axis} out of range for {elevation.ndim}-D image")

    elevation_layers = np.moveaxis(elevation, axis, 0)
    marker_layers = np.moveaxis(markers, axis, 0)
    n_layers = elevation_layers.shape[0]

    output = np.full(marker_layers.shape, background_value, dtype=markers.dtype)
    seeded = [i for i in range(n_layers) if np.any(marker_layers[i] != background_value)]
    if len(seeded) < n_layers:
        logger.info(f"{n_layers - len(seeded)} of {n_layers} layers have no markers")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = {
            executor.submit(
                flood_from_markers, elevation_layers[i], marker_layers[i], **flood_kwargs
            ): i
            for i in seeded
        }
        with tqdm(total=len(futures), desc="Flooding layers", disable=not show_progress) as pbar:
            for future in as_completed(futures):
                output[futures[future]] = future.result()
                pbar.update(1)

    return np.moveaxis(output, 0, axis)

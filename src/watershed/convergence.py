"""
Run-until-convergence driver around the single-pass flood.

Flooding fixed markers over a fixed surface is already a fixed point, so
without a refine callback the loop stops after the second round confirms
it. The driver is useful when the caller updates the markers between rounds
(e.g. merging or pruning regions from the previous result).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np

from src.config import DEFAULT_MAX_ITERATIONS
from src.watershed.errors import ConfigurationError
from src.watershed.flooding import flood_from_markers

logger = logging.getLogger(__name__)

RefineFn = Callable[[np.ndarray, int], np.ndarray]


@dataclass
class ConvergenceResult:
    """Outcome of flood_until_convergence()."""

    labels: np.ndarray
    iterations: int
    converged: bool


def flood_until_convergence(
    elevation,
    markers,
    refine: Optional[RefineFn] = None,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    **flood_kwargs,
) -> ConvergenceResult:
    """
    Flood repeatedly until two successive label images are identical.

    Args:
        elevation: Ordered scalar image
        markers: Initial marker image
        refine: Optional callable(labels, iteration) returning the markers
            for the next round. Defaults to feeding the labels straight back.
        max_iterations: Upper bound on flood rounds (>= 1)
        **flood_kwargs: Passed through to flood_from_markers()

    Returns:
        ConvergenceResult with the last labels, rounds run and whether the
        labels stopped changing
    """
    if max_iterations < 1:
        raise ConfigurationError(f"max_iterations must be >= 1, got {max_iterations}")

    current = np.asarray(markers)
    previous = None

    for iteration in range(1, max_iterations + 1):
        labels = flood_from_markers(elevation, current, **flood_kwargs)

        if previous is not None and np.array_equal(labels, previous):
            logger.info(f"Labels converged after {iteration} rounds")
            return ConvergenceResult(labels, iteration, True)

        if previous is not None:
            changed = int(np.count_nonzero(labels != previous))
            logger.debug(f"Round {iteration}: {changed:,} pixels changed label")

        previous = labels
        current = refine(labels, iteration) if refine is not None else labels

    logger.warning(f"Labels did not converge within {max_iterations} rounds")
    return ConvergenceResult(previous, max_iterations, False)

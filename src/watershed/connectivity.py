"""
Neighbourhood topology for n-dimensional flooding.

A pixel's neighbours are either the 2*d pixels sharing a face with it
("face" connectivity) or all 3**d - 1 pixels sharing at least a vertex
("full" connectivity). Offsets are always listed in raster (C) order so that
queue insertion order, and therefore the flood result, is reproducible.

Neighbour geometry for 2-D full connectivity (offset index in parentheses):

    (0) (1) (2)
    (3)  x  (4)
    (5) (6) (7)

Face connectivity keeps (1), (3), (4), (6).
"""

import itertools
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage

from src.config import MAX_DIMENSION
from src.watershed.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Connectivity:
    """Immutable neighbourhood descriptor chosen once before flooding."""

    ndim: int
    """Number of image axes (>= 1)."""

    fully_connected: bool = False
    """False: face neighbours only. True: face, edge and vertex neighbours."""

    def __post_init__(self):
        if isinstance(self.ndim, bool) or not isinstance(self.ndim, (int, np.integer)):
            raise ConfigurationError(f"Connectivity dimension must be an integer, got {self.ndim!r}")
        if self.ndim < 1:
            raise ConfigurationError(f"Connectivity dimension must be >= 1, got {self.ndim}")
        if self.ndim > MAX_DIMENSION:
            raise ConfigurationError(
                f"Unsupported dimensionality {self.ndim} (maximum {MAX_DIMENSION})"
            )

    @property
    def rank(self) -> int:
        """Connectivity rank in the scipy.ndimage convention (1 = face, ndim = full)."""
        return self.ndim if self.fully_connected else 1

    @property
    def num_neighbors(self) -> int:
        return 3 ** self.ndim - 1 if self.fully_connected else 2 * self.ndim

    @property
    def offsets(self) -> np.ndarray:
        """
        Relative neighbour offsets in raster order.

        Returns:
            np.ndarray: int64 array of shape (num_neighbors, ndim)
        """
        rows = []
        for offset in itertools.product((-1, 0, 1), repeat=self.ndim):
            nonzero = sum(1 for o in offset if o != 0)
            if nonzero == 0 or nonzero > self.rank:
                continue
            rows.append(offset)
        return np.array(rows, dtype=np.int64).reshape(len(rows), self.ndim)

    @property
    def structure(self) -> np.ndarray:
        """Boolean 3x3x...x3 footprint (centre included) for scipy.ndimage."""
        return ndimage.generate_binary_structure(self.ndim, self.rank)

    def raveled_offsets(self, shape: Sequence[int]) -> np.ndarray:
        """
        Offsets converted to flat-index steps for a C-contiguous array of `shape`.

        Args:
            shape: Shape of the (usually padded) array being traversed

        Returns:
            np.ndarray: int64 array of shape (num_neighbors,)
        """
        if len(shape) != self.ndim:
            raise ConfigurationError(
                f"Shape {tuple(shape)} has {len(shape)} axes, connectivity expects {self.ndim}"
            )
        strides = np.ones(self.ndim, dtype=np.int64)
        for axis in range(self.ndim - 2, -1, -1):
            strides[axis] = strides[axis + 1] * shape[axis + 1]
        return self.offsets @ strides

    def step_lengths(self, spacing: Optional[Sequence[float]] = None) -> np.ndarray:
        """
        Physical length of each neighbour step.

        Args:
            spacing: Per-axis pixel spacing. None means unit spacing.

        Returns:
            np.ndarray: float64 array of shape (num_neighbors,)
        """
        weights = _as_spacing(spacing, self.ndim)
        return np.sqrt(((self.offsets * weights) ** 2).sum(axis=1))

    def effective_distance(
        self,
        axis: int,
        spacing: Optional[Sequence[float]] = None,
        use_spacing: bool = False,
    ) -> float:
        """
        Traversal cost of a unit step along `axis`.

        Returns the axis spacing when spacing-aware mode is on, else 1.0.
        """
        if not 0 <= axis < self.ndim:
            raise ConfigurationError(f"Axis {axis} out of range for {self.ndim}-D connectivity")
        if not use_spacing:
            return 1.0
        return float(_as_spacing(spacing, self.ndim)[axis])

    def describe(self) -> str:
        mode = "full" if self.fully_connected else "face"
        return f"{self.ndim}-D {mode} connectivity ({self.num_neighbors} neighbours)"


def _as_spacing(spacing: Optional[Sequence[float]], ndim: int) -> np.ndarray:
    """Validate per-axis spacing and return it as a float64 array."""
    if spacing is None:
        return np.ones(ndim, dtype=np.float64)

    weights = np.asarray(spacing, dtype=np.float64).ravel()
    if weights.shape[0] != ndim:
        raise ConfigurationError(f"Spacing needs {ndim} values, got {weights.shape[0]}")
    if not np.all(np.isfinite(weights)) or np.any(weights <= 0):
        raise ConfigurationError(f"Spacing values must be finite and positive, got {tuple(weights)}")
    return weights


def make_connectivity(ndim: int, fully_connected: bool = False) -> Connectivity:
    """Build a Connectivity, logging the chosen topology."""
    connectivity = Connectivity(ndim, fully_connected)
    logger.debug(f"Using {connectivity.describe()}")
    return connectivity


def required_margin(connectivity: Connectivity) -> int:
    """
    Halo width a tile needs around its boundary to flood like the full domain
    for one neighbourhood step. One ring under either connectivity mode.
    """
    return 1


def spacing_tuple(spacing: Optional[Sequence[float]], ndim: int) -> Tuple[float, ...]:
    return tuple(float(s) for s in _as_spacing(spacing, ndim))

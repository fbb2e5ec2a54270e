"""
Morphological watershed from markers.

Core functionality:
- flood_from_markers for marker-seeded flooding of n-dimensional images
- morphological_watershed for flooding from the regional minima
- Connectivity and WatershedConfig for neighbourhood and option handling
- Filter objects with lazy re-execution and an on-disk LabelCache
"""

from .errors import (
    WatershedError,
    ConfigurationError,
    ShapeMismatchError,
    NoMarkersError,
)
from .connectivity import Connectivity, required_margin
from .grid import neighbors, grow_region
from .flooding import WatershedConfig, FloodScheduler, flood_from_markers
from .minima import (
    regional_minima,
    label_minima,
    morphological_watershed,
    relabel_sequential,
)
from .convergence import ConvergenceResult, flood_until_convergence
from .slices import flood_slices
from .cache import LabelCache
from .filters import MarkerWatershedFilter, MorphologicalWatershedFilter

__all__ = [
    "WatershedError",
    "ConfigurationError",
    "ShapeMismatchError",
    "NoMarkersError",
    "Connectivity",
    "required_margin",
    "neighbors",
    "grow_region",
    "WatershedConfig",
    "FloodScheduler",
    "flood_from_markers",
    "regional_minima",
    "label_minima",
    "morphological_watershed",
    "relabel_sequential",
    "ConvergenceResult",
    "flood_until_convergence",
    "flood_slices",
    "LabelCache",
    "MarkerWatershedFilter",
    "MorphologicalWatershedFilter",
]

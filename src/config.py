"""Configuration module for marker-watershed project.

Centralizes default flood settings and cache paths.
"""
from pathlib import Path

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Cache directories (created on first use by LabelCache)
CACHE_DIR = PROJECT_ROOT / ".watershed_cache"

# Default flood settings
DEFAULT_BACKGROUND_VALUE = 0
DEFAULT_BACKEND = "numba"
DEFAULT_FULLY_CONNECTED = False
DEFAULT_MARK_WATERSHED_LINE = True
DEFAULT_MAX_ITERATIONS = 10

# numpy cannot represent arrays with more axes than this
MAX_DIMENSION = 32

DEFAULT_LOG_LEVEL = "INFO"

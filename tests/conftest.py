"""Pytest configuration and fixtures for marker-watershed tests."""
import sys
from pathlib import Path

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

import pytest
import numpy as np


@pytest.fixture
def valley_1d():
    """V-shaped 1-D profile seeded only at both ends."""
    elevation = np.array([5, 4, 3, 2, 1, 2, 3, 4, 5])
    markers = np.array([1, 0, 0, 0, 0, 0, 0, 0, 2])
    return elevation, markers


@pytest.fixture
def two_basins():
    """Two Gaussian pits on a 40x40 grid with one marker pixel in each."""
    x = np.linspace(-10, 10, 40)
    X, Y = np.meshgrid(x, x)
    Z = 100 - 50 * np.exp(-((X + 4) ** 2 + Y ** 2) / 8) - 50 * np.exp(-((X - 4) ** 2 + Y ** 2) / 8)
    markers = np.zeros(Z.shape, dtype=np.int32)
    markers[20, 12] = 1
    markers[20, 27] = 2
    return Z, markers


@pytest.fixture
def random_surface():
    """Coarsely quantized random surface (lots of ties) with sparse markers."""
    rng = np.random.default_rng(42)
    elevation = rng.integers(0, 6, size=(24, 24))
    markers = np.zeros(elevation.shape, dtype=np.int32)
    coords = rng.choice(elevation.size, size=8, replace=False)
    markers.ravel()[coords] = np.arange(1, 9)
    return elevation, markers


@pytest.fixture
def cache_dir(tmp_path):
    """Temporary cache directory for tests."""
    cache = tmp_path / "cache"
    cache.mkdir()
    return cache


@pytest.fixture
def project_root():
    """Get the project root directory."""
    return Path(__file__).parent.parent

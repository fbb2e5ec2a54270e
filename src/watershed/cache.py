"""
Label image caching for repeated watershed runs.

Implements .npz-based caching keyed by a hash of the input arrays and flood
parameters, so re-running a filter on unchanged data reads the labels back
instead of flooding again.
"""

import hashlib
import json
import logging
import time
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np

from src.config import CACHE_DIR

logger = logging.getLogger(__name__)


class LabelCache:
    """
    Manages caching of flood results with hash validation.

    The cache stores:
    - Label array as .npz file
    - Metadata including key, shape, dtype, parameters and timestamp

    Attributes:
        cache_dir: Directory where cache files are stored
        enabled: Whether caching is enabled
    """

    def __init__(self, cache_dir: Optional[Path] = None, enabled: bool = True):
        """
        Initialize label cache.

        Args:
            cache_dir: Directory for cache files. If None, uses config.CACHE_DIR
            enabled: Whether caching is enabled (default: True)
        """
        if cache_dir is None:
            cache_dir = CACHE_DIR

        self.cache_dir = Path(cache_dir)
        self.enabled = enabled

        if self.enabled:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Label cache initialized at: {self.cache_dir}")

    @staticmethod
    def compute_key(
        elevation: np.ndarray,
        markers: Optional[np.ndarray],
        params: Dict[str, Any],
    ) -> str:
        """
        SHA256 over array bytes, shapes, dtypes and flood parameters.

        Args:
            elevation: Elevation image
            markers: Marker image (None for the unmarked watershed)
            params: JSON-serialisable flood parameters

        Returns:
            64-character hex digest
        """
        hash_obj = hashlib.sha256()
        for array in (elevation, markers):
            if array is None:
                hash_obj.update(b"none")
                continue
            array = np.ascontiguousarray(array)
            hash_obj.update(str(array.shape).encode())
            hash_obj.update(str(array.dtype).encode())
            hash_obj.update(array.tobytes())
        hash_obj.update(json.dumps(params, sort_keys=True, default=str).encode())
        return hash_obj.hexdigest()

    def get_cache_path(self, key: str, cache_name: str = "labels") -> Path:
        return self.cache_dir / f"{cache_name}_{key}.npz"

    def get_metadata_path(self, key: str, cache_name: str = "labels") -> Path:
        return self.cache_dir / f"{cache_name}_{key}_meta.json"

    def save_cache(
        self,
        labels: np.ndarray,
        key: str,
        params: Optional[Dict[str, Any]] = None,
        cache_name: str = "labels",
    ) -> Tuple[Optional[Path], Optional[Path]]:
        """
        Save a label image to the cache.

        Args:
            labels: Flood output
            key: Key from compute_key()
            params: Flood parameters, stored for inspection only
            cache_name: Name of cache item (default: "labels")

        Returns:
            Tuple of (cache_file_path, metadata_file_path), or (None, None) when disabled
        """
        if not self.enabled:
            return None, None

        cache_path = self.get_cache_path(key, cache_name)
        metadata_path = self.get_metadata_path(key, cache_name)

        start_time = time.time()
        np.savez_compressed(cache_path, labels=labels)

        metadata = {
            "key": key,
            "shape": list(labels.shape),
            "dtype": str(labels.dtype),
            "n_labels": int(len(np.unique(labels))),
            "params": params or {},
            "cache_time": time.time(),
        }
        with open(metadata_path, "w") as f:
            json.dump(metadata, f, indent=2, default=str)

        elapsed = time.time() - start_time
        logger.info(f"Cached labels to {cache_path.name} ({elapsed:.2f}s)")
        return cache_path, metadata_path

    def load_cache(self, key: str, cache_name: str = "labels") -> Optional[np.ndarray]:
        """
        Load cached labels.

        Returns:
            Label array, or None on a miss or unreadable file
        """
        if not self.enabled:
            return None

        cache_path = self.get_cache_path(key, cache_name)
        if not cache_path.exists():
            logger.debug(f"Cache miss: {cache_path.name}")
            return None

        try:
            with np.load(cache_path) as cache_data:
                labels = cache_data["labels"]
            logger.info(f"Loaded labels from cache {cache_path.name}")
            logger.debug(f"Labels shape: {labels.shape}, dtype: {labels.dtype}")
            return labels
        except (OSError, KeyError, ValueError, zipfile.BadZipFile) as e:
            logger.warning(f"Failed to load cache {cache_path.name}: {e}")
            logger.debug("Cache will be regenerated")
            return None

    def clear_cache(self, cache_name: str = "labels") -> int:
        """
        Delete all cached files for a given cache name.

        Returns:
            Number of files deleted
        """
        if not self.enabled:
            return 0

        deleted_count = 0
        for cache_file in self.cache_dir.glob(f"{cache_name}_*"):
            try:
                cache_file.unlink()
                deleted_count += 1
                logger.debug(f"Deleted: {cache_file.name}")
            except OSError as e:
                logger.warning(f"Failed to delete {cache_file.name}: {e}")

        logger.info(f"Cleared {deleted_count} cache files for '{cache_name}'")
        return deleted_count

    def get_cache_stats(self) -> dict:
        """Count and size of cached files."""
        stats = {
            "cache_dir": str(self.cache_dir),
            "enabled": self.enabled,
            "cache_files": 0,
            "total_size_mb": 0,
            "files": [],
        }

        if not self.cache_dir.exists():
            return stats

        for cache_file in self.cache_dir.glob("*"):
            if cache_file.is_file():
                size_bytes = cache_file.stat().st_size
                stats["cache_files"] += 1
                stats["total_size_mb"] += size_bytes / (1024 * 1024)
                stats["files"].append({
                    "name": cache_file.name,
                    "size_mb": size_bytes / (1024 * 1024),
                    "mtime": cache_file.stat().st_mtime,
                })

        return stats

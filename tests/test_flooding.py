"""
Tests for the marker watershed flood.

Tests cover:
- Pinned small examples (valley profile, flat Voronoi split, walled-off pixels)
- Label conservation, seed stability, determinism and idempotence
- Flood order (monotonic frontier) through FloodScheduler.steps()
- Watershed-line toggle, background value, spacing-aware tie-breaking
- Numba/python backend parity
- Validation errors raised before any work
"""

import numpy as np
import pytest

from src.watershed.connectivity import Connectivity
from src.watershed.errors import ConfigurationError, NoMarkersError, ShapeMismatchError
from src.watershed.flooding import (
    BACKENDS,
    FloodScheduler,
    WatershedConfig,
    flood_from_markers,
)

backends = pytest.mark.parametrize("backend", BACKENDS)


def _neighbour_label_sets(labels, connectivity, background_value=0):
    """Map each pixel to the set of non-background labels among its neighbours."""
    from src.watershed.grid import neighbors

    result = {}
    for coord in np.ndindex(labels.shape):
        result[coord] = {
            int(labels[nb])
            for nb in neighbors(coord, labels.shape, connectivity)
            if labels[nb] != background_value
        }
    return result


class TestPinnedExamples:
    """Small inputs with hand-traced expected output."""

    @backends
    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_valley_without_line(self, valley_1d, backend, fully_connected):
        """The tied minimum joins the flood that queued it first (the left seed)."""
        elevation, markers = valley_1d
        labels = flood_from_markers(
            elevation,
            markers,
            fully_connected=fully_connected,
            mark_watershed_line=False,
            backend=backend,
        )
        np.testing.assert_array_equal(labels, [1, 1, 1, 1, 1, 2, 2, 2, 2])

    @backends
    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_valley_with_line(self, valley_1d, backend, fully_connected):
        """Both floods reach the minimum, which becomes a watershed pixel."""
        elevation, markers = valley_1d
        labels = flood_from_markers(
            elevation,
            markers,
            fully_connected=fully_connected,
            mark_watershed_line=True,
            backend=backend,
        )
        np.testing.assert_array_equal(labels, [1, 1, 1, 1, 0, 2, 2, 2, 2])

    @backends
    def test_flat_surface_splits_by_flood_rounds(self, backend):
        """On a constant surface each pixel goes to the seed fewer queue rounds away."""
        elevation = np.zeros(7)
        markers = np.array([1, 0, 0, 0, 0, 0, 2])

        with_line = flood_from_markers(elevation, markers, backend=backend)
        without_line = flood_from_markers(
            elevation, markers, mark_watershed_line=False, backend=backend
        )

        np.testing.assert_array_equal(with_line, [1, 1, 1, 0, 2, 2, 2])
        np.testing.assert_array_equal(without_line, [1, 1, 1, 1, 2, 2, 2])

    @backends
    def test_walled_off_pixels_stay_background(self, backend):
        """Pixels surrounded by watershed pixels are unreachable, not an error."""
        elevation = np.zeros((3, 3))
        markers = np.array([
            [0, 0, 1],
            [0, 2, 0],
            [1, 0, 0],
        ])

        labels = flood_from_markers(elevation, markers, backend=backend)

        np.testing.assert_array_equal(labels, markers)

    @backends
    def test_walled_off_example_without_line(self, backend):
        """Without lines every collision pixel takes its first flood."""
        elevation = np.zeros((3, 3))
        markers = np.array([
            [0, 0, 1],
            [0, 2, 0],
            [1, 0, 0],
        ])

        labels = flood_from_markers(
            elevation, markers, mark_watershed_line=False, backend=backend
        )

        np.testing.assert_array_equal(labels, [
            [1, 1, 1],
            [2, 2, 1],
            [1, 2, 1],
        ])

    @backends
    def test_spacing_changes_tie_breaking(self, backend):
        """A large spacing along rows makes floods spread along columns first."""
        elevation = np.zeros((3, 3))
        markers = np.zeros((3, 3), dtype=np.int32)
        markers[0, 0] = 1
        markers[2, 2] = 2

        fifo = flood_from_markers(
            elevation, markers, mark_watershed_line=False, backend=backend
        )
        weighted = flood_from_markers(
            elevation,
            markers,
            mark_watershed_line=False,
            use_image_spacing=True,
            spacing=(10.0, 1.0),
            backend=backend,
        )

        np.testing.assert_array_equal(fifo, [[1, 1, 1], [1, 1, 2], [1, 2, 2]])
        np.testing.assert_array_equal(weighted, [[1, 1, 1], [1, 1, 2], [2, 2, 2]])

    def test_spacing_ignored_when_disabled(self):
        elevation = np.zeros((3, 3))
        markers = np.zeros((3, 3), dtype=np.int32)
        markers[0, 0] = 1
        markers[2, 2] = 2

        plain = flood_from_markers(elevation, markers, mark_watershed_line=False)
        spaced = flood_from_markers(
            elevation, markers, mark_watershed_line=False, spacing=(10.0, 1.0)
        )

        np.testing.assert_array_equal(plain, spaced)


class TestFloodProperties:
    """Invariants that hold for any input."""

    @backends
    @pytest.mark.parametrize("mark_line", [False, True])
    def test_label_conservation(self, random_surface, backend, mark_line):
        elevation, markers = random_surface
        labels = flood_from_markers(
            elevation, markers, mark_watershed_line=mark_line, backend=backend
        )

        out_labels = set(np.unique(labels)) - {0}
        in_labels = set(np.unique(markers)) - {0}
        assert out_labels <= in_labels

    @backends
    @pytest.mark.parametrize("mark_line", [False, True])
    def test_seed_stability(self, random_surface, backend, mark_line):
        elevation, markers = random_surface
        labels = flood_from_markers(
            elevation, markers, mark_watershed_line=mark_line, backend=backend
        )

        seeded = markers != 0
        np.testing.assert_array_equal(labels[seeded], markers[seeded])

    @backends
    def test_determinism(self, random_surface, backend):
        elevation, markers = random_surface
        first = flood_from_markers(elevation, markers, fully_connected=True, backend=backend)
        second = flood_from_markers(elevation, markers, fully_connected=True, backend=backend)
        np.testing.assert_array_equal(first, second)

    @backends
    @pytest.mark.parametrize("mark_line", [False, True])
    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_relabeling_is_idempotent(self, random_surface, backend, mark_line, fully_connected):
        """Flooding again from the output reproduces the output."""
        elevation, markers = random_surface
        options = dict(
            mark_watershed_line=mark_line, fully_connected=fully_connected, backend=backend
        )

        first = flood_from_markers(elevation, markers, **options)
        second = flood_from_markers(elevation, first, **options)

        np.testing.assert_array_equal(first, second)

    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_line_off_leaves_no_background_on_connected_grid(self, random_surface, fully_connected):
        elevation, markers = random_surface
        labels = flood_from_markers(
            elevation, markers, mark_watershed_line=False, fully_connected=fully_connected
        )
        assert np.all(labels != 0)

    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_line_on_separates_regions(self, random_surface, fully_connected):
        """Flooded pixels never touch a different label; line pixels touch at least two."""
        elevation, markers = random_surface
        connectivity = Connectivity(2, fully_connected)
        labels = flood_from_markers(elevation, markers, connectivity, mark_watershed_line=True)

        neighbour_labels = _neighbour_label_sets(labels, connectivity)
        for coord, found in neighbour_labels.items():
            if markers[coord] != 0:
                continue
            if labels[coord] == 0:
                assert len(found) >= 2 or len(found) == 0
            else:
                assert found <= {int(labels[coord])}

    def test_two_basins_split_between_pits(self, two_basins):
        elevation, markers = two_basins
        labels = flood_from_markers(elevation, markers, mark_watershed_line=False)

        assert np.all(labels[:, :18] == 1)
        assert np.all(labels[:, 22:] == 2)

    def test_three_dimensional_flood(self):
        rng = np.random.default_rng(7)
        elevation = rng.random((6, 7, 8))
        markers = np.zeros(elevation.shape, dtype=np.uint16)
        markers[0, 0, 0] = 3
        markers[5, 6, 7] = 9

        numba_labels = flood_from_markers(elevation, markers, fully_connected=True)
        python_labels = flood_from_markers(
            elevation, markers, fully_connected=True, backend="python"
        )

        assert numba_labels.dtype == np.uint16
        assert set(np.unique(numba_labels)) <= {0, 3, 9}
        np.testing.assert_array_equal(numba_labels, python_labels)


class TestFloodOrder:
    """Processing order exposed by the reference scheduler."""

    def test_levels_never_decrease(self, random_surface):
        elevation, markers = random_surface
        scheduler = FloodScheduler.from_images(elevation, markers, fully_connected=True)

        levels = [step.level for step in scheduler.steps()]

        assert len(levels) > 0
        assert all(a <= b for a, b in zip(levels, levels[1:]))

    def test_every_queued_pixel_processed_once(self, random_surface):
        elevation, markers = random_surface
        scheduler = FloodScheduler.from_images(elevation, markers)

        coords = [step.coordinate for step in scheduler.steps()]

        assert len(coords) == len(set(coords))
        assert len(coords) == scheduler.n_labeled + scheduler.n_lines

    def test_seed_is_idempotent(self, valley_1d):
        elevation, markers = valley_1d
        scheduler = FloodScheduler.from_images(elevation, markers)

        assert scheduler.seed() == 2
        assert scheduler.seed() == 0

    def test_valley_processing_order(self, valley_1d):
        """Both floods advance alternately at the seeds' level."""
        elevation, markers = valley_1d
        scheduler = FloodScheduler.from_images(elevation, markers)

        steps = list(scheduler.steps())

        assert [s.coordinate for s in steps] == [(1,), (7,), (2,), (6,), (3,), (5,), (4,)]
        assert all(s.level == 5 for s in steps)
        assert steps[-1].label == 0

    def test_scheduler_does_not_touch_markers(self, valley_1d):
        elevation, markers = valley_1d
        original = markers.copy()

        FloodScheduler.from_images(elevation, markers).run()

        np.testing.assert_array_equal(markers, original)


class TestBackendParity:
    """The numba kernel and the reference scheduler agree exactly."""

    @pytest.mark.parametrize("seed", [0, 1, 2])
    @pytest.mark.parametrize("mark_line", [False, True])
    @pytest.mark.parametrize("fully_connected", [False, True])
    def test_random_inputs(self, seed, mark_line, fully_connected):
        rng = np.random.default_rng(seed)
        elevation = rng.integers(0, 4, size=(15, 17)).astype(np.float64)
        markers = np.zeros(elevation.shape, dtype=np.int64)
        markers.ravel()[rng.choice(elevation.size, size=6, replace=False)] = rng.integers(1, 4, size=6)

        options = dict(mark_watershed_line=mark_line, fully_connected=fully_connected)
        np.testing.assert_array_equal(
            flood_from_markers(elevation, markers, backend="numba", **options),
            flood_from_markers(elevation, markers, backend="python", **options),
        )

    def test_spacing_aware(self, random_surface):
        elevation, markers = random_surface
        options = dict(use_image_spacing=True, spacing=(2.5, 1.0), fully_connected=True)
        np.testing.assert_array_equal(
            flood_from_markers(elevation, markers, backend="numba", **options),
            flood_from_markers(elevation, markers, backend="python", **options),
        )


class TestOptions:
    """Background value, dtypes and configuration objects."""

    @backends
    def test_custom_background_value(self, backend):
        elevation = np.array([5, 4, 3, 2, 1, 2, 3, 4, 5])
        markers = np.array([0, -1, -1, -1, -1, -1, -1, -1, 2])

        labels = flood_from_markers(elevation, markers, background_value=-1, backend=backend)

        np.testing.assert_array_equal(labels, [0, 0, 0, 0, -1, 2, 2, 2, 2])

    def test_output_keeps_marker_dtype(self, valley_1d):
        elevation, markers = valley_1d
        labels = flood_from_markers(elevation, markers.astype(np.uint8))
        assert labels.dtype == np.uint8

    def test_markers_not_modified(self, random_surface):
        elevation, markers = random_surface
        original = markers.copy()
        flood_from_markers(elevation, markers)
        np.testing.assert_array_equal(markers, original)

    @pytest.mark.parametrize("dtype", [np.uint8, np.int16, np.float32, np.float64, np.uint64])
    def test_elevation_dtypes_agree(self, valley_1d, dtype):
        elevation, markers = valley_1d
        expected = flood_from_markers(elevation, markers)
        np.testing.assert_array_equal(
            flood_from_markers(elevation.astype(dtype), markers), expected
        )

    def test_bool_elevation(self):
        elevation = np.array([True, False, False, True, False])
        markers = np.array([1, 0, 0, 0, 2])
        labels = flood_from_markers(elevation, markers, mark_watershed_line=False)
        assert set(np.unique(labels)) <= {1, 2}

    def test_config_overrides_keywords(self, valley_1d):
        elevation, markers = valley_1d
        config = WatershedConfig(mark_watershed_line=False, backend="python")

        labels = flood_from_markers(elevation, markers, mark_watershed_line=True, config=config)

        np.testing.assert_array_equal(labels, [1, 1, 1, 1, 1, 2, 2, 2, 2])

    def test_config_flood_kwargs_round_trip(self, valley_1d):
        elevation, markers = valley_1d
        config = WatershedConfig(fully_connected=True, spacing=(2,))
        kwargs = config.flood_kwargs()

        assert kwargs["spacing"] == (2.0,)
        np.testing.assert_array_equal(
            flood_from_markers(elevation, markers, **kwargs),
            flood_from_markers(elevation, markers, config=config),
        )

    def test_config_rejects_unknown_backend(self):
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            WatershedConfig(backend="cuda")

    def test_config_is_frozen(self):
        config = WatershedConfig()
        with pytest.raises(Exception):
            config.background_value = 3


class TestValidation:
    """Errors surface before flooding starts."""

    def test_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError, match="does not match"):
            flood_from_markers(np.zeros((3, 3)), np.ones((3, 4), dtype=int))

    def test_dimension_mismatch(self):
        with pytest.raises(ShapeMismatchError, match="1-D"):
            flood_from_markers(np.zeros((3, 3)), np.ones(9, dtype=int))

    def test_connectivity_dimension_mismatch(self):
        with pytest.raises(ConfigurationError, match="3-D"):
            flood_from_markers(np.zeros((3, 3)), np.ones((3, 3), dtype=int), Connectivity(3))

    def test_zero_dimensional_input(self):
        with pytest.raises(ConfigurationError):
            flood_from_markers(np.float64(1.0), np.int64(1))

    def test_float_markers_rejected(self):
        with pytest.raises(ConfigurationError, match="integer dtype"):
            flood_from_markers(np.zeros(4), np.array([1.0, 0.0, 0.0, 2.0]))

    def test_complex_elevation_rejected(self):
        with pytest.raises(ConfigurationError, match="ordered scalar"):
            flood_from_markers(np.zeros(4, dtype=complex), np.array([1, 0, 0, 2]))

    def test_background_value_must_fit_dtype(self):
        with pytest.raises(ConfigurationError, match="does not fit"):
            flood_from_markers(np.zeros(4), np.array([1, 0, 0, 2], dtype=np.uint8), background_value=-1)

    def test_unknown_backend(self, valley_1d):
        elevation, markers = valley_1d
        with pytest.raises(ConfigurationError, match="Unknown backend"):
            flood_from_markers(elevation, markers, backend="opencl")

    @pytest.mark.parametrize("spacing", [(1.0, 2.0), (0.0,), (-1.0,)])
    def test_bad_spacing(self, valley_1d, spacing):
        elevation, markers = valley_1d
        with pytest.raises(ConfigurationError):
            flood_from_markers(elevation, markers, spacing=spacing)

    def test_no_markers(self):
        with pytest.raises(NoMarkersError):
            flood_from_markers(np.arange(5), np.zeros(5, dtype=int))

    def test_markers_equal_to_custom_background(self):
        with pytest.raises(NoMarkersError, match="background value 7"):
            flood_from_markers(np.arange(5), np.full(5, 7), background_value=7)

    def test_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            flood_from_markers(np.arange(5), np.zeros(5, dtype=int))

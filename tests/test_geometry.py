"""
Tests for electrode distance matrices.
"""

import numpy as np
import pytest

from chanqc.dataset import ChannelInfo, ChannelSubset, Dataset, InvalidSelection
from chanqc.geometry import distance_matrices


def make_dataset(channels):
    return Dataset(data=np.zeros((len(channels), 10)), sfreq=100.0, channels=tuple(channels))


@pytest.fixture
def dataset():
    return make_dataset(
        [
            ChannelInfo("A", theta=0.0, radius=0.5, x=1.0, y=0.0, z=0.0),
            ChannelInfo("B", theta=90.0, radius=0.5, x=0.0, y=1.0, z=0.0),
            ChannelInfo("C", theta=0.0, radius=0.0, x=0.0, y=0.0, z=1.0),
            ChannelInfo("D"),
        ]
    )


def test_polar_distance_law_of_cosines(dataset):
    """Polar distance follows the law of cosines on the unit disk."""
    dm = distance_matrices(dataset, ChannelSubset((1, 2, 3)))

    assert dm.polar[0, 1] == pytest.approx(np.sqrt(0.5))
    assert dm.polar[0, 2] == pytest.approx(0.5)
    np.testing.assert_allclose(np.diag(dm.polar)[:3], 0.0, atol=1e-12)
    np.testing.assert_allclose(dm.polar[:3, :3], dm.polar[:3, :3].T)


def test_matrices_are_full_size_with_nan_outside_subset(dataset):
    """Matrices cover every channel; pairs outside the subset are NaN."""
    dm = distance_matrices(dataset, ChannelSubset((1, 2)))

    assert dm.polar.shape == (4, 4)
    assert np.isnan(dm.polar[2, 0])
    assert np.isnan(dm.cartesian[3, 3])


def test_missing_polar_geometry_gives_nan(dataset):
    dm = distance_matrices(dataset, ChannelSubset((1, 4)))
    assert np.isnan(dm.polar[0, 3])


def test_cartesian_is_city_block(dataset):
    """Cartesian distance is the sum of absolute coordinate differences."""
    dm = distance_matrices(dataset, ChannelSubset((1, 2, 3)))
    assert dm.cartesian[0, 1] == pytest.approx(2.0)
    assert dm.cartesian[1, 2] == pytest.approx(2.0)


def test_missing_cartesian_coordinates_count_as_zero(dataset):
    dm = distance_matrices(dataset, ChannelSubset((1, 4)))
    assert dm.cartesian[0, 3] == pytest.approx(1.0)


def test_projected_distance(dataset):
    dm = distance_matrices(dataset, ChannelSubset((1, 2)))

    # Maximal distance maps to half the circumference of the projection
    assert dm.projected[0, 1] == pytest.approx(np.pi)
    assert dm.projected[0, 0] == pytest.approx(0.0)


def test_projected_undefined_when_all_positions_coincide():
    """Coincident positions leave nothing to scale the projection by."""
    ds = make_dataset([ChannelInfo("A", x=1.0, y=1.0, z=1.0), ChannelInfo("B", x=1.0, y=1.0, z=1.0)])
    dm = distance_matrices(ds, ChannelSubset((1, 2)))

    assert np.all(np.isnan(dm.projected))
    assert dm.cartesian[0, 1] == 0.0


def test_row_follows_subset_order(dataset):
    """Distances from a reference are returned in subset order."""
    subset = ChannelSubset((3, 1, 2))
    dm = distance_matrices(dataset, subset)
    row = dm.row(1, subset)

    np.testing.assert_allclose(row, [0.5, 0.0, np.sqrt(0.5)], atol=1e-12)
    with pytest.raises(ValueError):
        dm.row(1, subset, kind="geodesic")


def test_row_rejects_reference_outside_dataset(dataset):
    """A reference id beyond the montage is an invalid selection."""
    subset = ChannelSubset((1, 2))
    dm = distance_matrices(dataset, subset)

    with pytest.raises(InvalidSelection, match="out of range"):
        dm.row(5, subset)

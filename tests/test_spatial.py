"""
Tests for distance-from-reference detrending.
"""

import numpy as np
import pytest

from chanqc.spatial import correct_for_distance


def test_no_reference_is_identity():
    """Without a reference the values are returned as a copy."""
    values = np.array([3.0, 1.0, np.nan, 7.5])
    corrected = correct_for_distance(values, None, None)

    np.testing.assert_array_equal(corrected, values)
    assert corrected is not values


def test_no_reference_ignores_distances():
    values = np.array([1.0, 2.0, 3.0, 4.0])
    corrected = correct_for_distance(values, np.array([0.1, 0.2, 0.3, 0.4]), None)
    np.testing.assert_array_equal(corrected, values)


def test_quadratic_trend_is_removed():
    """A pure quadratic trend leaves zero residuals."""
    distances = np.array([0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6])
    values = 2.0 * distances**2 - 3.0 * distances + 1.0

    corrected = correct_for_distance(values, distances, reference=1)
    np.testing.assert_allclose(corrected, 0.0, atol=1e-9)


def test_residuals_stay_on_their_channel():
    """Sorting by distance does not move residuals between channels."""
    rng = np.random.default_rng(3)
    distances = rng.permutation(np.linspace(0.0, 1.0, 12))
    values = 5.0 * distances**2 + 1.0
    values[4] += 10.0

    corrected = correct_for_distance(values, distances, reference=1)

    assert int(np.argmax(np.abs(corrected))) == 4


def test_nan_entries_are_left_out_of_fit():
    """Undefined values or distances stay NaN and do not bias the fit."""
    distances = np.array([0.0, 0.2, 0.4, np.nan, 0.8, 1.0])
    values = distances * 3.0
    values[1] = np.nan

    corrected = correct_for_distance(values, distances, reference=2)

    assert np.isnan(corrected[1])
    assert np.isnan(corrected[3])
    np.testing.assert_allclose(corrected[[0, 2, 4, 5]], 0.0, atol=1e-9)


def test_too_few_points_returns_input():
    """Fewer than three usable points cannot fit a quadratic."""
    values = np.array([1.0, 2.0, np.nan])
    corrected = correct_for_distance(values, np.array([0.0, 0.5, 1.0]), reference=1)
    np.testing.assert_array_equal(corrected, values)


def test_reference_requires_distances():
    with pytest.raises(ValueError, match="distances"):
        correct_for_distance(np.ones(4), None, reference=1)
    with pytest.raises(ValueError, match="shape"):
        correct_for_distance(np.ones(4), np.ones(3), reference=1)

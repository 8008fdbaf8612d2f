"""
Spatial Detrending of Channel Measures.

Channel statistics such as variance and mean correlation fall off smoothly
with distance from the reference electrode. Before anomaly scoring, a
quadratic trend of the measure against distance-from-reference is fitted and
removed so that this expected falloff does not show up as an outlier.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

POLY_DEGREE = 2


def correct_for_distance(
    values: np.ndarray,
    distances: np.ndarray | None,
    reference: int | None,
) -> np.ndarray:
    """
    Remove a quadratic distance-from-reference trend from a measure vector.

    Algorithm:
        1. Sort channels by ascending distance from the reference
        2. Fit a degree-2 polynomial of the measure against sorted distances
        3. Evaluate the fit and subtract it from the measure
        4. Return the residuals in the original (subset) order

    Args:
        values: Measure per subset channel, in subset order
        distances: Distance from the reference to each subset channel, in
            subset order (ignored when reference is None)
        reference: Absolute id of the single reference channel, or None

    Returns:
        Corrected measure in subset order. Without a reference the input is
        returned unchanged (as a copy).

    Notes:
        - Channels with a NaN measure or NaN distance are left out of the fit
          and stay NaN in the output
        - With fewer than 3 usable channels no fit is possible and the input
          is returned unchanged
    """
    values = np.asarray(values, dtype=float)

    if reference is None:
        logger.debug("No reference channel configured; spatial correction skipped")
        return values.copy()

    if distances is None:
        raise ValueError("distances are required when a reference channel is set")
    distances = np.asarray(distances, dtype=float)
    if distances.shape != values.shape:
        raise ValueError(
            f"distances shape {distances.shape} does not match values shape {values.shape}"
        )

    usable = np.isfinite(values) & np.isfinite(distances)
    if usable.sum() <= POLY_DEGREE:
        logger.warning(
            f"Only {int(usable.sum())} channels with finite measure and distance; "
            f"spatial correction against reference {reference} skipped"
        )
        return values.copy()

    order = np.argsort(distances[usable], kind="stable")
    sorted_dist = distances[usable][order]
    sorted_vals = values[usable][order]
    coeffs = np.polyfit(sorted_dist, sorted_vals, POLY_DEGREE)
    fitted_sorted = np.polyval(coeffs, sorted_dist)

    # Undo the sort so each residual lands back on its own channel
    fitted = np.empty_like(fitted_sorted)
    fitted[order] = fitted_sorted

    corrected = np.full_like(values, np.nan)
    corrected[usable] = values[usable] - fitted

    logger.debug(
        f"Spatial correction vs. reference {reference}: "
        f"coefficients={np.round(coeffs, 6).tolist()}"
    )
    return corrected

"""
Electrode Geometry and Inter-Channel Distances.

Computes pairwise electrode distance matrices used to order channels by their
distance from a reference electrode:
- polar: law of cosines on topographic (theta, radius) pairs
- cartesian: sum of absolute per-axis differences (city-block distance)
- projected: cartesian distance rescaled onto a spherical projection

All matrices are N x N over the full dataset (rows and columns follow
dataset.channel_row) and only populated for the requested subset (NaN
elsewhere).

References:
    - Nolan, Whelan & Reilly (2010). FASTER: Fully Automated Statistical
      Thresholding for EEG artifact Rejection. J Neurosci Methods 192(1).
"""

import logging
from dataclasses import dataclass

import numpy as np

from chanqc.dataset import ChannelSubset, Dataset, channel_row

logger = logging.getLogger(__name__)

# Coordinates are rounded before differencing to suppress float noise
COORDINATE_DECIMALS = 6


@dataclass(frozen=True)
class DistanceMatrices:
    """Pairwise distance matrices with one row and column per dataset channel."""

    polar: np.ndarray
    cartesian: np.ndarray
    projected: np.ndarray

    def row(self, reference: int, subset: ChannelSubset, kind: str = "polar") -> np.ndarray:
        """
        Distances from `reference` to every subset channel, in subset order.

        Args:
            reference: Absolute id of the reference channel
            subset: Channels to report distances for
            kind: "polar", "cartesian" or "projected"

        Returns:
            1D array aligned with subset order
        """
        matrix = {"polar": self.polar, "cartesian": self.cartesian, "projected": self.projected}.get(kind)
        if matrix is None:
            raise ValueError(f"Unknown distance kind '{kind}'")
        n = matrix.shape[0]
        cols = [channel_row(idx, n) for idx in subset]
        return matrix[channel_row(reference, n), cols].copy()


def distance_matrices(dataset: Dataset, subset: ChannelSubset) -> DistanceMatrices:
    """
    Compute polar, Cartesian and projected distance matrices over a subset.

    Args:
        dataset: Dataset with per-channel geometry
        subset: Channels to compute distances between

    Returns:
        DistanceMatrices with N x N arrays (N = dataset.n_channels); entries
        outside subset x subset are NaN

    Notes:
        - theta is in degrees (EEGLAB chanlocs convention)
        - Polar distance is NaN for any pair where theta or radius is missing
        - Missing Cartesian coordinates count as 0
        - The projected matrix is all-NaN when the maximal Cartesian distance
          in the subset is not positive
    """
    n = dataset.n_channels
    rows = np.array([dataset.position(idx) for idx in subset], dtype=int)
    infos = [dataset.channels[r] for r in rows]

    theta = np.array([np.nan if ch.theta is None else ch.theta for ch in infos], dtype=float)
    radius = np.array([np.nan if ch.radius is None else ch.radius for ch in infos], dtype=float)
    cos_diff = np.cos(np.radians(theta[:, None] - theta[None, :]))
    polar_sq = radius[:, None] ** 2 + radius[None, :] ** 2 - 2 * radius[:, None] * radius[None, :] * cos_diff
    # Rounding can push the identity diagonal slightly negative
    polar_sub = np.sqrt(np.clip(polar_sq, 0.0, None))

    xyz = np.array(
        [[0.0 if v is None else v for v in (ch.x, ch.y, ch.z)] for ch in infos],
        dtype=float,
    )
    xyz = np.round(xyz, COORDINATE_DECIMALS)
    cart_sub = np.abs(xyz[:, None, :] - xyz[None, :, :]).sum(axis=2)

    d_max = float(cart_sub.max()) if cart_sub.size else 0.0
    if d_max > 0:
        ratio = np.clip(cart_sub / d_max, -1.0, 1.0)
        proj_sub = (np.pi - 2 * np.arccos(ratio)) * (d_max / 2)
    else:
        logger.warning(
            "Maximal Cartesian distance in subset is 0; projected distances undefined"
        )
        proj_sub = np.full_like(cart_sub, np.nan)

    n_missing_polar = int(np.sum(np.isnan(theta) | np.isnan(radius)))
    if n_missing_polar:
        logger.debug(f"{n_missing_polar}/{len(infos)} subset channels lack polar geometry")

    return DistanceMatrices(
        polar=_embed(polar_sub, rows, n),
        cartesian=_embed(cart_sub, rows, n),
        projected=_embed(proj_sub, rows, n),
    )


def _embed(sub: np.ndarray, rows: np.ndarray, n: int) -> np.ndarray:
    full = np.full((n, n), np.nan)
    full[np.ix_(rows, rows)] = sub
    return full

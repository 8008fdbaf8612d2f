"""
Z-Score Anomaly Scoring of Channel Measures.

Turns a measure vector into a bad/good partition:
NaN fill -> median centering -> z-normalization -> |z| > threshold.

Normalization can be switched off, in which case the (NaN-filled) measure
itself is compared against the threshold. One-sided scoring flags only
values above the threshold.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from scipy import stats

from chanqc.dataset import AbsoluteIndex, ChannelSubset
from chanqc.measures import MeasureVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnomalyScores:
    """
    Result of z-score thresholding.

    Attributes:
        z_scores: Score per channel (subset order) compared against the
            threshold; z-scores when normalized, undefined z-scores are 0
        flags: True where the score exceeds the threshold
        bad_indices: Absolute ids of flagged channels, in subset order
            (empty if scoring was done without a subset)
        threshold: Threshold applied to the score
        filled: Subset positions whose NaN measure was replaced by the mean
    """

    z_scores: np.ndarray
    flags: np.ndarray
    bad_indices: tuple[AbsoluteIndex, ...]
    threshold: float
    filled: tuple[int, ...] = ()

    @property
    def n_flagged(self) -> int:
        return int(np.sum(self.flags))


def score_anomalies(
    measure: MeasureVector | Sequence[float] | np.ndarray,
    threshold: float,
    subset: ChannelSubset | None = None,
    normalize: bool = True,
    two_sided: bool = True,
) -> AnomalyScores:
    """
    Flag channels whose measure deviates strongly from the group.

    Algorithm:
        1. Replace NaN entries with the mean of the non-NaN entries
        2. Subtract the median (removes a common offset)
        3. z = (x - mean) / std with NaN-ignoring statistics (ddof=1)
        4. Force any NaN z-score (e.g. zero spread) to 0
        5. Flag channels with |z| > threshold (z > threshold if one-sided)

    Steps 2-4 are skipped when normalize is False.

    Args:
        measure: MeasureVector or plain array of measure values
        threshold: Non-negative z-score threshold (caller configuration)
        subset: Channels the values belong to; taken from the MeasureVector
            when not given. Used to report flagged channels as absolute ids.
        normalize: z-score the measure before thresholding
        two_sided: Flag both tails; otherwise only high values

    Returns:
        AnomalyScores

    Raises:
        ValueError: If threshold is negative or not finite, or the subset
            length does not match the measure

    Notes:
        - Zero standard deviation means "nothing anomalous": all z are 0
        - With n channels, |z| can never exceed (n - 1) / sqrt(n), so small
          subsets need proportionally small thresholds
    """
    if not np.isfinite(threshold) or threshold < 0:
        raise ValueError(f"threshold must be finite and >= 0, got {threshold}")

    if isinstance(measure, MeasureVector):
        values = np.array(measure.values, dtype=float)
        if subset is None:
            subset = measure.subset
    else:
        values = np.asarray(measure, dtype=float).ravel().copy()

    if subset is not None and len(subset) != values.size:
        raise ValueError(
            f"subset length ({len(subset)}) does not match measure length ({values.size})"
        )

    nan_mask = np.isnan(values)
    filled = tuple(int(i) for i in np.flatnonzero(nan_mask))
    if filled and not nan_mask.all():
        values[nan_mask] = np.mean(values[~nan_mask])
        logger.debug(f"Filled {len(filled)} undefined measure values with the mean")

    if normalize:
        if not nan_mask.all():
            values = values - np.median(values)
        with np.errstate(invalid="ignore", divide="ignore"):
            z_scores = np.asarray(stats.zscore(values, ddof=1, nan_policy="omit"), dtype=float)
    else:
        z_scores = values
    z_scores[np.isnan(z_scores)] = 0.0

    flags = (np.abs(z_scores) if two_sided else z_scores) > threshold
    bad = ()
    if subset is not None:
        bad = tuple(subset.indices[i] for i in np.flatnonzero(flags))

    logger.debug(
        f"Anomaly scoring: {int(flags.sum())}/{values.size} channels above {threshold} "
        f"({'z-scored' if normalize else 'raw'}, {'two' if two_sided else 'one'}-sided)"
    )
    return AnomalyScores(
        z_scores=z_scores,
        flags=flags,
        bad_indices=bad,
        threshold=float(threshold),
        filled=filled,
    )

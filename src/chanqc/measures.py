"""
Channel Measure Computation.

This module computes one scalar statistic per analyzed channel, the inputs to
z-score based bad-channel detection:
- variance: sample variance over time
- mean_correlation: mean absolute correlation with the other channels
- hurst: Hurst exponent estimated by dispersional analysis
- kurtosis: excess kurtosis of the sample distribution
- probability: joint log-probability of the samples under the channel's own
  amplitude histogram (improbable data gives low values)
- spectrum: mean log power (dB) inside a frequency band

Degenerate channels (all-zero, constant, or otherwise undefined statistics)
never abort a computation. They are reported with a DegenerateSignal warning
and carried as NaN or an explicit neutral fill value, so that callers can tell
"intentionally neutral" from "computation failed".

References:
    - Nolan, Whelan & Reilly (2010). FASTER: Fully Automated Statistical
      Thresholding for EEG artifact Rejection. J Neurosci Methods 192(1).
    - Blok (2000). On the nature of the stock market: simulations and
      experiments. PhD thesis, University of British Columbia (dispersional
      analysis).
    - Delorme, Sejnowski & Makeig (2007). Enhanced detection of artifacts
      in EEG data using higher-order statistics and independent component
      analysis. NeuroImage 34(4).
"""

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

import numpy as np
from joblib import Parallel, delayed
from scipy import linalg, stats

from chanqc.dataset import AbsoluteIndex, ChannelSubset, Dataset, resolve_subset
from chanqc.geometry import distance_matrices
from chanqc.spatial import POLY_DEGREE, correct_for_distance

logger = logging.getLogger(__name__)

# Hurst estimation stops once fewer than this many samples remain
HURST_MIN_SAMPLES = 5

# Amplitude histogram resolution for the joint probability measure
PROBABILITY_BINS = 1000

DEFAULT_FREQ_RANGE = (1.0, 50.0)

# Covariance eigenvalues above this fraction of the largest count toward the rank
RANK_TOLERANCE = 1e-7


class DegenerateSignal(UserWarning):
    """A channel has zero or undefined variance; a fallback value is used."""


class RankMismatch(UserWarning):
    """Two independent rank estimates disagree; the lower one is used."""


class MeasureKind(str, Enum):
    """Statistic computed per channel."""

    VARIANCE = "variance"
    MEAN_CORRELATION = "mean_correlation"
    HURST = "hurst"
    KURTOSIS = "kurtosis"
    PROBABILITY = "probability"
    SPECTRUM = "spectrum"


# Measures whose falloff with distance from the reference is removed
DISTANCE_CORRECTED = (MeasureKind.VARIANCE, MeasureKind.MEAN_CORRELATION)


@dataclass(frozen=True)
class MeasureVector:
    """
    One measure value per subset channel, aligned with subset order.

    Attributes:
        kind: Statistic that was computed
        subset: Channels the values belong to
        values: Measure per channel; NaN marks an undefined statistic
        flat: Absolute ids of all-zero channels excluded from computation
        reference: Reference channel used for spatial correction (or None)
        corrected: Whether the distance trend was removed
        warnings: Messages of non-fatal conditions met during computation
    """

    kind: MeasureKind
    subset: ChannelSubset
    values: np.ndarray
    flat: tuple[AbsoluteIndex, ...] = ()
    reference: AbsoluteIndex | None = None
    corrected: bool = False
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        values = np.array(self.values, dtype=float, copy=True)
        if values.shape != (len(self.subset),):
            raise ValueError(
                f"values shape {values.shape} does not match subset length {len(self.subset)}"
            )
        values.setflags(write=False)
        object.__setattr__(self, "values", values)

    def __len__(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class RankEstimate:
    """Rank of a data matrix from two independent estimates."""

    rank: int
    matrix_rank: int
    eigen_rank: int

    @property
    def mismatch(self) -> bool:
        return self.matrix_rank != self.eigen_rank


def _report_degenerate(messages: list[str], message: str) -> None:
    logger.warning(message)
    warnings.warn(message, DegenerateSignal, stacklevel=3)
    messages.append(message)


def is_flat(samples: np.ndarray) -> bool:
    """All-zero channel (max == min == 0), a proxy for a disconnected input."""
    return bool(np.max(samples) == 0 and np.min(samples) == 0)


def hurst_exponent(samples: np.ndarray) -> float:
    """
    Estimate the Hurst exponent of a single series by dispersional analysis.

    Algorithm:
        1. Record binsize * std(series) as one log-log observation
        2. Halve the series by averaging adjacent sample pairs
        3. Double binsize
        4. Repeat while at least 5 samples remain
        5. Fit a line to log(binsize) vs. log(binsize * std); the slope is H

    Args:
        samples: 1D sample sequence of one channel

    Returns:
        Estimated Hurst exponent, or NaN if the series is too short or has
        zero/undefined dispersion at any scale

    Notes:
        - White noise gives H close to 0.5, a random walk close to 1.0
        - Runs independently per channel and is deterministic for given input
    """
    data = np.asarray(samples, dtype=float).ravel()
    npoints = data.size
    xvals: list[float] = []
    yvals: list[float] = []
    binsize = 1

    while npoints >= HURST_MIN_SAMPLES:
        xvals.append(float(binsize))
        yvals.append(binsize * float(np.std(data, ddof=1)))

        npoints //= 2
        binsize *= 2
        data = (data[1 : 2 * npoints : 2] + data[0 : 2 * npoints : 2]) * 0.5

    yarr = np.asarray(yvals)
    if len(xvals) < 2 or not np.all(np.isfinite(yarr)) or np.any(yarr <= 0):
        return float("nan")

    slope, _ = np.polyfit(np.log(xvals), np.log(yarr), 1)
    return float(slope)


def channel_variance(data: np.ndarray, messages: list[str], ids: Sequence[int]) -> tuple[np.ndarray, list[int]]:
    """
    Sample variance per row; all-zero rows are excluded and left as NaN.

    Constant non-zero rows keep their variance of 0 (an extreme low value
    the scorer can still flag) but are reported as degenerate.

    Returns:
        (variances, positions of flat rows)
    """
    variances = np.full(data.shape[0], np.nan)
    flat_pos = [i for i in range(data.shape[0]) if is_flat(data[i])]
    calc_pos = [i for i in range(data.shape[0]) if i not in flat_pos]

    if calc_pos:
        variances[calc_pos] = np.var(data[calc_pos], axis=1, ddof=1)

    for i in flat_pos:
        _report_degenerate(messages, f"Channel {ids[i]} is flat (all zeros); variance not computed")
    for i in calc_pos:
        if not np.isfinite(variances[i]):
            variances[i] = np.nan
            _report_degenerate(messages, f"Channel {ids[i]} has undefined variance")
        elif np.ptp(data[i]) == 0:
            _report_degenerate(messages, f"Channel {ids[i]} is constant; variance is 0")
    return variances, flat_pos


def mean_correlation(data: np.ndarray, messages: list[str], ids: Sequence[int]) -> tuple[np.ndarray, list[int]]:
    """
    Mean absolute correlation of each row with all non-flat rows.

    All-zero rows are left out of the correlation matrix and receive the mean
    of the computed statistics, a neutral value that keeps disconnected
    channels from standing out here (the flatline detector covers them).

    Returns:
        (mean correlations, positions of flat rows)
    """
    n = data.shape[0]
    flat_pos = [i for i in range(n) if is_flat(data[i])]
    calc_pos = [i for i in range(n) if i not in flat_pos]
    result = np.full(n, np.nan)

    if calc_pos:
        with np.errstate(invalid="ignore", divide="ignore"):
            corrs = np.abs(np.atleast_2d(np.corrcoef(data[calc_pos])))
        for row, pos in enumerate(calc_pos):
            if np.all(np.isnan(corrs[row])):
                _report_degenerate(
                    messages, f"Channel {ids[pos]} is constant; correlation undefined"
                )
                continue
            result[pos] = np.nanmean(corrs[row])

    computed = result[calc_pos] if calc_pos else np.array([])
    finite = computed[np.isfinite(computed)]
    fill = float(np.mean(finite)) if finite.size else np.nan
    for pos in flat_pos:
        result[pos] = fill
        _report_degenerate(
            messages,
            f"Channel {ids[pos]} is flat (all zeros); assigned neutral mean correlation {fill:.4f}",
        )
    return result, flat_pos


def channel_kurtosis(data: np.ndarray, messages: list[str], ids: Sequence[int]) -> np.ndarray:
    """Excess kurtosis per row; constant rows are undefined (NaN)."""
    result = np.full(data.shape[0], np.nan)
    varying = np.ptp(data, axis=1) > 0
    if varying.any():
        result[varying] = stats.kurtosis(data[varying], axis=1, fisher=True, bias=True)
    for pos in np.flatnonzero(~varying):
        _report_degenerate(messages, f"Channel {ids[pos]} is constant; kurtosis undefined")
    return result


def joint_log_probability(samples: np.ndarray, n_bins: int = PROBABILITY_BINS) -> float:
    """
    Negative summed log-probability of a series under its own histogram.

    Each sample is assigned to one of `n_bins` equal-width amplitude bins
    spanning [min, max]; its probability is the bin's share of all samples.
    A channel whose samples pile up in few bins (e.g. one huge spike
    compressing everything else) scores far below its neighbours.

    Returns:
        -sum(log p), or NaN for a constant series
    """
    data = np.asarray(samples, dtype=float).ravel()
    lo, hi = float(np.min(data)), float(np.max(data))
    if hi == lo:
        return float("nan")
    bins = np.floor((data - lo) / (hi - lo) * (n_bins - 1)).astype(int)
    counts = np.bincount(bins, minlength=n_bins)
    proba = counts[bins] / data.size
    return float(-np.sum(np.log(proba)))


def band_power(
    dataset: Dataset,
    subset: ChannelSubset,
    freq_range: tuple[float, float],
    messages: list[str],
) -> np.ndarray:
    """
    Mean Welch log power (dB) per subset channel inside `freq_range`.

    The upper edge is clipped to the Nyquist frequency. Welch segments are
    one second long (or the whole recording if shorter). Channels without
    power in the band are undefined (NaN).
    """
    fmin, fmax = float(freq_range[0]), float(freq_range[1])
    nyquist = dataset.sfreq / 2
    if fmax > nyquist:
        message = f"Spectrum band upper edge {fmax} Hz clipped to Nyquist ({nyquist} Hz)"
        logger.warning(message)
        messages.append(message)
        fmax = nyquist
    if not 0 <= fmin < fmax:
        raise ValueError(f"Invalid spectrum band [{fmin}, {fmax}] Hz")

    n_fft = min(dataset.n_times, int(round(dataset.sfreq)))
    view = dataset.select(subset).to_raw()
    spectrum = view.compute_psd(
        method="welch", fmin=fmin, fmax=fmax, n_fft=n_fft, picks="all", verbose=False
    )
    psd, freqs = spectrum.get_data(return_freqs=True)
    if freqs.size == 0:
        raise ValueError(
            f"No frequency bins in [{fmin}, {fmax}] Hz with a resolution of "
            f"{dataset.sfreq / n_fft:.2f} Hz"
        )

    with np.errstate(divide="ignore"):
        power_db = 10 * np.log10(psd)
    values = power_db.mean(axis=1)
    for pos in np.flatnonzero(~np.isfinite(values)):
        values[pos] = np.nan
        _report_degenerate(
            messages, f"Channel {subset.indices[pos]} has no power in {fmin}-{fmax} Hz"
        )
    return values


def _per_channel(func, data: np.ndarray, n_jobs: int) -> np.ndarray:
    if n_jobs == 1:
        return np.array([func(row) for row in data])
    return np.array(Parallel(n_jobs=n_jobs)(delayed(func)(row) for row in data))


def compute_measure(
    dataset: Dataset,
    subset: ChannelSubset | Sequence[int] | np.ndarray | None,
    kind: MeasureKind | str,
    reference: int | Sequence[int] | None = None,
    n_jobs: int = 1,
    freq_range: tuple[float, float] = DEFAULT_FREQ_RANGE,
) -> MeasureVector:
    """
    Compute one statistic per subset channel, optionally distance-corrected.

    Args:
        dataset: Read-only input dataset
        subset: ChannelSubset, absolute ids, boolean mask, or None for all
        kind: "variance", "mean_correlation", "hurst", "kurtosis",
            "probability" or "spectrum"
        reference: Absolute id of a single reference channel. When set,
            variance and mean correlation are detrended against polar
            distance from it. A sequence of more than one id disables the
            correction (recorded in the vector's warnings).
        n_jobs: Parallel workers for per-channel Hurst and probability
            estimation (joblib)
        freq_range: (fmin, fmax) band in Hz for the spectrum measure

    Returns:
        MeasureVector aligned with the subset order

    Raises:
        InvalidSelection: Empty subset or ids outside [1, n_channels], raised
            before any statistic is computed
        ValueError: Unknown measure kind

    Example:
        >>> mv = compute_measure(ds, None, "variance")
        >>> mv.values.shape
        (64,)
    """
    kind = MeasureKind(kind)
    if not isinstance(subset, ChannelSubset):
        subset = resolve_subset(dataset, subset, strict=True)
    else:
        for idx in subset:
            dataset.position(idx)

    messages: list[str] = []
    ref = _single_reference(reference, messages)
    if ref is not None:
        dataset.position(ref)

    ids = list(subset.indices)
    data = np.asarray(dataset.data[[dataset.position(i) for i in ids]], dtype=float)
    flat_pos: list[int] = []

    logger.info(f"Computing {kind.value} for {len(ids)} channels")

    if kind is MeasureKind.VARIANCE:
        values, flat_pos = channel_variance(data, messages, ids)
    elif kind is MeasureKind.MEAN_CORRELATION:
        values, flat_pos = mean_correlation(data, messages, ids)
    elif kind is MeasureKind.KURTOSIS:
        values = channel_kurtosis(data, messages, ids)
    elif kind is MeasureKind.SPECTRUM:
        values = band_power(dataset, subset, freq_range, messages)
    else:
        func = hurst_exponent if kind is MeasureKind.HURST else joint_log_probability
        values = _per_channel(func, data, n_jobs)
        for pos in np.flatnonzero(~np.isfinite(values)):
            _report_degenerate(messages, f"Channel {ids[pos]}: {kind.value} undefined")

    corrected = False
    if ref is not None and kind in DISTANCE_CORRECTED:
        geometry_subset = subset if ref in subset else ChannelSubset(subset.indices + (AbsoluteIndex(ref),))
        distances = distance_matrices(dataset, geometry_subset).row(ref, subset, "polar")
        usable = int(np.sum(np.isfinite(values) & np.isfinite(distances)))
        corrected = usable > POLY_DEGREE
        if not corrected:
            messages.append(
                f"Only {usable} channels with finite {kind.value} and distance to "
                f"reference {ref}; spatial correction skipped"
            )
        values = correct_for_distance(values, distances, ref)
    elif ref is not None:
        logger.info(f"{kind.value} is not distance-dependent; correction not applied")
    else:
        values = correct_for_distance(values, None, None)

    return MeasureVector(
        kind=kind,
        subset=subset,
        values=values,
        flat=tuple(AbsoluteIndex(ids[p]) for p in flat_pos),
        reference=AbsoluteIndex(ref) if ref is not None else None,
        corrected=corrected,
        warnings=tuple(messages),
    )


def _single_reference(
    reference: int | Sequence[int] | None, messages: list[str]
) -> int | None:
    if reference is None:
        return None
    if isinstance(reference, (int, np.integer)):
        return int(reference)
    refs = list(reference)
    if len(refs) == 1:
        return int(refs[0])
    if refs:
        message = (
            f"Spatial correction needs exactly one reference channel, got {refs}; skipped"
        )
        logger.warning(message)
        messages.append(message)
    return None


def estimate_rank(data: np.ndarray, tol: float = RANK_TOLERANCE) -> RankEstimate:
    """
    Estimate the numerical rank of a channels x samples matrix.

    Two estimates are computed: the SVD-based matrix rank and the number of
    eigenvalues of the biased covariance matrix above `tol` times the
    largest eigenvalue (scale-free, so volts and microvolts agree). When they
    disagree a RankMismatch warning is issued and the lower value is used.

    Args:
        data: (n_channels, n_times) data matrix
        tol: Relative eigenvalue tolerance for the covariance-based estimate

    Returns:
        RankEstimate with the conservative rank and both raw estimates
    """
    data = np.asarray(data, dtype=float)
    if data.ndim != 2 or data.shape[0] == 0:
        raise ValueError(f"data must be a non-empty 2D array, got shape {data.shape}")

    matrix_rank = int(np.linalg.matrix_rank(data))
    covariance = np.atleast_2d(np.cov(data, bias=True))
    eigenvalues = linalg.eigvalsh(covariance)
    eigen_rank = int(np.sum(eigenvalues > tol * max(float(eigenvalues.max()), 0.0)))

    estimate = RankEstimate(
        rank=min(matrix_rank, eigen_rank),
        matrix_rank=matrix_rank,
        eigen_rank=eigen_rank,
    )
    if estimate.mismatch:
        message = (
            f"Rank estimates differ (matrix rank {matrix_rank}, covariance "
            f"eigenvalues {eigen_rank}); using {estimate.rank}"
        )
        logger.warning(message)
        warnings.warn(message, RankMismatch, stacklevel=2)
    return estimate


def amplitude_spread(dataset: Dataset, max_points: int = 1000) -> float:
    """
    Rough amplitude-spread index of a recording.

    Mean of the per-channel standard deviations over the first `max_points`
    samples, with the lowest and highest channel trimmed, times 3. Larger
    values usually mean noisier data.
    """
    n_points = min(max_points, dataset.n_times)
    stds = np.std(dataset.data[:, :n_points], axis=1, ddof=1)
    if np.any(np.isnan(stds)) or np.any(stds == 0):
        logger.warning("Some channels have zero or NaN spread; check for flatlines")

    sorted_stds = np.sort(stds)
    trimmed = sorted_stds[1:-1] if sorted_stds.size > 2 else sorted_stds
    spread = float(np.mean(trimmed)) * 3
    if spread > 10:
        spread = float(round(spread))
    logger.info(f"Amplitude spread index: {spread:.2f}")
    return spread

"""
Detector Delegates for Bad-Channel Detection.

The detection adapter does not implement drift removal, flatline detection or
correlation/noise detection itself. It receives these capabilities as plain
callables bundled in a Delegates record, so that any implementation with the
same contract can be injected (and faked in tests).

Contracts (the view is an MNE Raw restricted to the analyzed subset, channel
k of the view being subset position k):
    - DriftRemover(raw, (low_hz, high_hz)) -> raw
    - FlatlineDetector(raw, max_flat_sec) -> keep mask (True = kept) or None
    - NoiseDetector(raw, corr_cutoff, line_noise_cutoff, window_sec,
      max_bad_time_fraction, min_samples) -> removed mask (bool), 0-based
      view positions, or None

Default implementations:
    - highpass_drift_remover: MNE FIR high-pass with an explicit transition
      band, as clean_drifts does
    - flatline_keep_mask: run-length flatline detection (clean_flatlines)
    - pyprep_noise_detector: pyprep NoisyChannels (flat/NaN, HF noise,
      windowed correlation, RANSAC when sensor positions are available)

References:
    - Kothe, C. A. (2012). clean_rawdata [Software].
      https://github.com/sccn/clean_rawdata
    - Bigdely-Shamlo et al. (2015). The PREP pipeline. Front Neuroinform 9:16.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import mne
import numpy as np

logger = logging.getLogger(__name__)

DriftRemover = Callable[[mne.io.BaseRaw, tuple[float, float]], mne.io.BaseRaw]
FlatlineDetector = Callable[[mne.io.BaseRaw, float], "np.ndarray | None"]
NoiseDetector = Callable[
    [mne.io.BaseRaw, float, float, float, float, int],
    "np.ndarray | Sequence[int] | None",
]

# Samples differing by less than this many machine epsilons count as flat
FLATLINE_MAX_JITTER = 20


class MissingDependency(RuntimeError):
    """A configured detector capability is not available."""

    pass


class DelegateTimeout(MissingDependency):
    """A detector delegate did not finish within the caller's time limit."""

    pass


def highpass_drift_remover(
    raw: mne.io.BaseRaw, band: tuple[float, float]
) -> mne.io.BaseRaw:
    """
    Remove slow drifts with an FIR high-pass filter.

    The transition band runs from band[0] (stop) to band[1] (pass), matching
    clean_drifts. The input Raw is not modified.

    Args:
        raw: View to filter
        band: (low_hz, high_hz) transition band

    Returns:
        Filtered copy of the view

    Raises:
        ValueError: If the band is not 0 <= low < high
    """
    low, high = float(band[0]), float(band[1])
    if not 0 <= low < high:
        raise ValueError(f"highpass band must satisfy 0 <= low < high, got {band}")

    logger.debug(f"Removing drifts: FIR high-pass, transition {low}-{high} Hz")
    return raw.copy().filter(
        l_freq=high,
        h_freq=None,
        l_trans_bandwidth=high - low,
        method="fir",
        fir_design="firwin",
        picks="all",
        verbose=False,
    )


def flatline_keep_mask(
    raw: mne.io.BaseRaw,
    max_flat_sec: float,
    max_jitter: float = FLATLINE_MAX_JITTER,
) -> np.ndarray:
    """
    Flag channels holding a constant value longer than `max_flat_sec`.

    A sample pair is flat when its absolute difference is below
    max_jitter * eps. Runs of flat samples are found by run-length encoding;
    a channel is rejected when its longest run exceeds max_flat_sec * sfreq.
    Channels containing NaN are always rejected.

    Args:
        raw: View to inspect
        max_flat_sec: Maximum tolerated flatline duration in seconds
        max_jitter: Tolerance as a multiple of float epsilon

    Returns:
        Boolean keep mask over the view's channels (True = kept). When every
        channel would be rejected, nothing is rejected and a warning is
        logged, since that points to a data problem rather than bad channels.
    """
    if max_flat_sec < 0:
        raise ValueError(f"max_flat_sec must be non-negative, got {max_flat_sec}")

    data = raw.get_data()
    sfreq = raw.info["sfreq"]
    max_run = max_flat_sec * sfreq
    tolerance = max_jitter * np.finfo(float).eps

    keep = np.ones(data.shape[0], dtype=bool)
    for ch_idx, samples in enumerate(data):
        if np.any(np.isnan(samples)):
            logger.warning(f"Channel {raw.ch_names[ch_idx]} contains NaN values")
            keep[ch_idx] = False
            continue

        is_flat = np.abs(np.diff(samples)) < tolerance
        padded = np.concatenate(([False], is_flat, [False])).astype(np.int8)
        transitions = np.diff(padded)
        starts = np.flatnonzero(transitions == 1)
        ends = np.flatnonzero(transitions == -1)
        if starts.size == 0:
            continue

        # A run of k flat differences spans k + 1 identical samples
        longest = int((ends - starts).max()) + 1
        if longest > max_run:
            keep[ch_idx] = False
            logger.debug(
                f"Channel {raw.ch_names[ch_idx]}: flat for {longest / sfreq:.2f} s "
                f"(limit {max_flat_sec} s)"
            )

    if not keep.any():
        logger.warning(
            "All channels have a flat-line portion; not flagging any of them"
        )
        keep[:] = True

    return keep


def pyprep_noise_detector(
    raw: mne.io.BaseRaw,
    corr_cutoff: float,
    line_noise_cutoff: float,
    window_sec: float,
    max_bad_time_fraction: float,
    min_samples: int,
    random_state: int = 42,
) -> np.ndarray:
    """
    Detect noisy channels with pyprep's NoisyChannels.

    Criteria (a channel failing any is removed):
        - NaN or flat signal
        - high-frequency noise robust z-score above line_noise_cutoff
        - windowed correlation below corr_cutoff in more than
          max_bad_time_fraction of windows
        - RANSAC predictability below corr_cutoff (only when the view has
          sensor positions), using min_samples RANSAC samples

    Returns:
        Boolean removed mask over the view's channels

    Raises:
        MissingDependency: If pyprep cannot be imported
    """
    try:
        from pyprep import NoisyChannels
    except ImportError as exc:
        raise MissingDependency(
            "Correlation/noise detection requires pyprep (pip install pyprep)"
        ) from exc

    nc = NoisyChannels(raw.copy(), do_detrend=True, random_state=random_state)
    nc.find_bad_by_nan_flat()
    nc.find_bad_by_hfnoise(HF_zscore_threshold=line_noise_cutoff)
    nc.find_bad_by_correlation(
        correlation_secs=window_sec,
        correlation_threshold=corr_cutoff,
        frac_bad=max_bad_time_fraction,
    )
    if raw.get_montage() is not None:
        nc.find_bad_by_ransac(
            n_samples=min_samples,
            corr_thresh=corr_cutoff,
            frac_bad=max_bad_time_fraction,
            corr_window_secs=window_sec,
        )
    else:
        logger.info("No sensor positions in view; RANSAC criterion skipped")

    bads = set(nc.get_bads())
    logger.debug(f"pyprep flagged: {sorted(bads) or 'none'}")
    return np.array([name in bads for name in raw.ch_names], dtype=bool)


@dataclass(frozen=True)
class Delegates:
    """
    Detector capabilities injected into the detection adapter.

    Any field left as None is unavailable; asking for it raises
    MissingDependency instead of silently skipping the step.
    """

    drift_remover: DriftRemover | None = None
    flatline_detector: FlatlineDetector | None = None
    noise_detector: NoiseDetector | None = None

    @classmethod
    def default(cls) -> "Delegates":
        """Delegates backed by MNE, numpy and pyprep."""
        return cls(
            drift_remover=highpass_drift_remover,
            flatline_detector=flatline_keep_mask,
            noise_detector=pyprep_noise_detector,
        )

    def require(self, name: str) -> Callable:
        """
        Return the delegate stored under `name`.

        Raises:
            MissingDependency: If the delegate is not configured
        """
        delegate = getattr(self, name, None)
        if delegate is None:
            raise MissingDependency(f"Detector delegate '{name}' is not available")
        return delegate

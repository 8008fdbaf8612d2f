"""
Bad-Channel Detection.

Single entry point `detect_bad_channels` for all detector measures:

- Statistical measures (variance, mean_correlation, hurst, kurtosis,
  probability, spectrum):
  compute_measure -> spatial correction -> z-score anomaly scoring
- External measures (flatline, correlation_noise): ExternalDetectorAdapter,
  which runs injected delegates on a copy of the analyzed channels

Index spaces are kept apart: configuration and results use absolute channel
ids (1-based); delegates see a view whose channel k is subset position k
(0-based SubsetIndex). Conversion between the two happens only through
ChannelSubset.to_absolute / to_relative.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from chanqc.channels import resolve_labels
from chanqc.config import NORMALIZABLE_MEASURES, ONE_SIDED_MEASURES, DetectionConfig
from chanqc.dataset import (
    AbsoluteIndex,
    ChannelSubset,
    Dataset,
    SubsetIndex,
    resolve_subset,
)
from chanqc.delegates import DelegateTimeout, Delegates
from chanqc.measures import compute_measure
from chanqc.reporting import format_status
from chanqc.scoring import score_anomalies

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DetectionResult:
    """
    Outcome of one detector run.

    Attributes:
        measure: Detector measure name
        config: Full configuration used (plain dict)
        subset: Channels that were analyzed
        bad_indices: Absolute ids of rejected channels (first-seen order)
        bad_relative: Subset positions of rejected channels
        kept_mask: True per subset channel that was kept
        bad_labels: Labels of rejected channels ("#<id>" when unlabelled)
        z_scores: Per-channel z-scores (statistical measures only)
        values: Per-channel measure values (statistical measures only)
        warnings: Non-fatal conditions met during detection
    """

    measure: str
    config: dict
    subset: ChannelSubset
    bad_indices: tuple[AbsoluteIndex, ...]
    bad_relative: tuple[SubsetIndex, ...]
    kept_mask: np.ndarray
    bad_labels: tuple[str, ...]
    z_scores: np.ndarray | None = None
    values: np.ndarray | None = None
    warnings: tuple[str, ...] = ()

    @property
    def n_bad(self) -> int:
        return len(self.bad_indices)

    def to_dict(self) -> dict:
        """JSON-friendly representation (numpy types converted)."""
        return {
            "measure": self.measure,
            "config": self.config,
            "subset": [int(i) for i in self.subset],
            "bad_indices": [int(i) for i in self.bad_indices],
            "bad_relative": [int(i) for i in self.bad_relative],
            "kept_mask": [bool(k) for k in self.kept_mask],
            "bad_labels": list(self.bad_labels),
            "z_scores": _float_list(self.z_scores),
            "values": _float_list(self.values),
            "warnings": list(self.warnings),
        }


class ExternalDetectorAdapter:
    """
    Run flatline or correlation/noise detection through injected delegates.

    Args:
        delegates: Detector capabilities. Defaults to Delegates.default()
            (MNE drift removal, run-length flatlines, pyprep noise detection).

    Example:
        >>> adapter = ExternalDetectorAdapter(Delegates.default())
        >>> result = adapter.detect(ds, DetectionConfig(measure="flatline"))
        >>> result.bad_labels
        ('Cz',)
    """

    def __init__(self, delegates: Delegates | None = None):
        self.delegates = delegates if delegates is not None else Delegates.default()

    def detect(self, dataset: Dataset, config: DetectionConfig) -> DetectionResult:
        """
        Detect bad channels with an external detector.

        Steps:
            1. Resolve the channel subset (out-of-range ids dropped)
            2. Build a Raw view of a copy of the subset channels
            3. Remove drifts when a highpass band is configured
            4. Run the flatline or correlation/noise delegate
            5. Map view positions back to absolute channel ids
            6. Assemble the result with labels of rejected channels

        Raises:
            InvalidSelection: If no channel remains after bounds-checking
            MissingDependency: If a delegate needed by the configuration is
                not available
            ValueError: If the measure is not external, or a delegate returns
                a mask or index list that does not fit the view
        """
        if not config.is_external:
            raise ValueError(
                f"Measure '{config.measure}' is not handled by external detectors"
            )

        # All required capabilities are checked before any work is done
        drift_remover = None
        if config.highpass_band is not None:
            drift_remover = self.delegates.require("drift_remover")
        if config.measure == "flatline":
            detector = self.delegates.require("flatline_detector")
        else:
            detector = self.delegates.require("noise_detector")

        subset = resolve_subset(dataset, config.channel_subset)
        n_sub = len(subset)
        view = dataset.select(subset).to_raw()
        logger.info(f"Running {config.measure} detector on {n_sub} channels")

        if drift_remover is not None:
            view = drift_remover(view, config.highpass_band)

        if config.measure == "flatline":
            keep = detector(view, config.threshold)
            if keep is None:
                logger.info("Flatline detector returned no mask; no channel flagged")
                removed = np.zeros(n_sub, dtype=bool)
            else:
                removed = ~_as_mask(keep, n_sub, "keep mask")
            relative = [SubsetIndex(int(i)) for i in np.flatnonzero(removed)]
        else:
            indicator = detector(
                view,
                config.correlation_cutoff,
                config.line_noise_cutoff,
                config.window_sec,
                config.max_bad_time_fraction,
                config.min_correlation_samples,
            )
            relative = _removed_positions(indicator, n_sub)

        absolute = list(dict.fromkeys(subset.to_absolute(relative)))
        relative = subset.to_relative(absolute)
        kept_mask = np.ones(n_sub, dtype=bool)
        kept_mask[list(relative)] = False

        result = DetectionResult(
            measure=config.measure,
            config=config.to_dict(),
            subset=subset,
            bad_indices=tuple(absolute),
            bad_relative=tuple(relative),
            kept_mask=kept_mask,
            bad_labels=tuple(resolve_labels(dataset, absolute, on_missing="index")),
        )
        _log_result(result, dataset, config.verbose)
        return result


def detect_bad_channels(
    dataset: Dataset,
    config: DetectionConfig,
    delegates: Delegates | None = None,
    timeout_sec: float | None = None,
) -> DetectionResult:
    """
    Detect bad channels with the configured measure.

    Args:
        dataset: Read-only input dataset
        config: Detector configuration
        delegates: Capabilities for external measures (default delegates
            when None). Unused by statistical measures.
        timeout_sec: Upper bound on the call duration. The detection then
            runs in a worker thread; the thread is not interrupted on expiry
            but its result is discarded.

    Returns:
        DetectionResult

    Raises:
        InvalidSelection: Empty channel selection after bounds-checking
        MissingDependency: Missing delegate for a configured step
        DelegateTimeout: The call did not finish within timeout_sec

    Example:
        >>> cfg = DetectionConfig(measure="variance", threshold=3.0)
        >>> detect_bad_channels(ds, cfg).bad_labels
        ('T7',)
    """
    if timeout_sec is None:
        return _run_detection(dataset, config, delegates)

    if timeout_sec <= 0:
        raise ValueError(f"timeout_sec must be positive, got {timeout_sec}")

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="chanqc-detect")
    future = executor.submit(_run_detection, dataset, config, delegates)
    try:
        return future.result(timeout=timeout_sec)
    except FutureTimeout as exc:
        future.cancel()
        raise DelegateTimeout(
            f"{config.measure} detection did not finish within {timeout_sec} s"
        ) from exc
    finally:
        executor.shutdown(wait=False)


def _run_detection(
    dataset: Dataset, config: DetectionConfig, delegates: Delegates | None
) -> DetectionResult:
    if config.is_external:
        return ExternalDetectorAdapter(delegates).detect(dataset, config)

    subset = resolve_subset(dataset, config.channel_subset)
    measure = compute_measure(
        dataset,
        subset,
        config.measure,
        reference=config.reference_channel if config.uses_reference else None,
        n_jobs=config.n_jobs,
        freq_range=config.spectrum_band,
    )
    scores = score_anomalies(
        measure,
        config.threshold,
        normalize=config.normalize or config.measure not in NORMALIZABLE_MEASURES,
        two_sided=config.measure not in ONE_SIDED_MEASURES,
    )

    absolute = list(scores.bad_indices)
    result = DetectionResult(
        measure=config.measure,
        config=config.to_dict(),
        subset=subset,
        bad_indices=tuple(absolute),
        bad_relative=tuple(subset.to_relative(absolute)),
        kept_mask=~scores.flags,
        bad_labels=tuple(resolve_labels(dataset, absolute, on_missing="index")),
        z_scores=scores.z_scores,
        values=np.array(measure.values),
        warnings=measure.warnings,
    )
    _log_result(result, dataset, config.verbose)
    return result


def _as_mask(mask: np.ndarray | Sequence[bool], n: int, what: str) -> np.ndarray:
    arr = np.asarray(mask).ravel()
    if arr.size != n:
        raise ValueError(f"Delegate {what} has {arr.size} entries, view has {n} channels")
    return arr.astype(bool)


def _removed_positions(
    indicator: np.ndarray | Sequence[int] | None, n: int
) -> list[SubsetIndex]:
    """Normalize a removed-channel indicator (bool mask or positions)."""
    if indicator is None:
        return []
    arr = np.asarray(indicator).ravel()
    if arr.dtype == bool:
        return [SubsetIndex(int(i)) for i in np.flatnonzero(_as_mask(arr, n, "removed mask"))]
    if arr.size == 0:
        return []
    if not np.issubdtype(arr.dtype, np.integer):
        raise ValueError(
            f"Delegate removed-channel indicator must be a bool mask or integer "
            f"positions, got dtype {arr.dtype}"
        )
    positions = [int(i) for i in arr]
    invalid = [p for p in positions if not 0 <= p < n]
    if invalid:
        raise ValueError(f"Delegate returned positions outside the view [0, {n}): {invalid}")
    return [SubsetIndex(p) for p in dict.fromkeys(positions)]


def _log_result(result: DetectionResult, dataset: Dataset, verbose: bool) -> None:
    status = format_status(result, dataset)
    if verbose:
        logger.info(f"\n{status}")
    else:
        logger.debug(f"\n{status}")
    logger.info(
        f"{result.measure}: {result.n_bad}/{len(result.subset)} channels flagged"
    )


def _float_list(values: np.ndarray | None) -> list | None:
    if values is None:
        return None
    return [None if np.isnan(v) else float(v) for v in values]

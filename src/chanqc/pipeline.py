"""
Quality-Control Orchestration over Several Detectors.

Runs a sequence of bad-channel detectors on one dataset and merges their
verdicts:
    1. Resolve excluded and known-bad channel labels
    2. Run every configured detector on its subset minus excluded channels
    3. Drop the reference channel from variance, mean-correlation and
       Hurst bad lists
    4. Union all bad channels (detector order, then known-bad) without
       duplicates
    5. Estimate the data rank left after removing the bad channels
    6. Optionally save the report (TSV + JSON)

The merged verdict can then be applied to an MNE Raw (flag or remove).
"""

import logging
from dataclasses import dataclass, field, replace

import mne
import numpy as np

from chanqc.channels import resolve_indices, resolve_labels
from chanqc.config import QCConfig
from chanqc.dataset import AbsoluteIndex, Dataset, resolve_subset
from chanqc.delegates import Delegates
from chanqc.detection import DetectionResult, detect_bad_channels
from chanqc.measures import RankEstimate, estimate_rank
from chanqc.reporting import save_report

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QualityControlReport:
    """
    Merged outcome of a quality-control run.

    Attributes:
        per_detector: Result of each detector, in configuration order
        bad_indices: Union of bad channel ids (first-seen order)
        bad_labels: Labels of bad channels
        known_bad_indices: Channels reported bad by configuration
        excluded_indices: Channels left out of detection
        labels: Labels of all dataset channels
        summary: Bad-channel count per detector, "known" and "total"
        rank_after_removal: Rank of the data over the kept channels
            (None when no channel is kept)
        action: Action to apply ("flag" or "remove")
        warnings: Non-fatal conditions met during the run
    """

    per_detector: tuple[DetectionResult, ...]
    bad_indices: tuple[AbsoluteIndex, ...]
    bad_labels: tuple[str, ...]
    known_bad_indices: tuple[AbsoluteIndex, ...]
    excluded_indices: tuple[AbsoluteIndex, ...]
    labels: tuple[str, ...]
    summary: dict[str, int]
    rank_after_removal: RankEstimate | None = None
    action: str = "flag"
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def n_bad(self) -> int:
        return len(self.bad_indices)

    def to_dict(self) -> dict:
        rank = None
        if self.rank_after_removal is not None:
            rank = {
                "rank": self.rank_after_removal.rank,
                "matrix_rank": self.rank_after_removal.matrix_rank,
                "eigen_rank": self.rank_after_removal.eigen_rank,
            }
        return {
            "action": self.action,
            "bad_indices": [int(i) for i in self.bad_indices],
            "bad_labels": list(self.bad_labels),
            "known_bad_indices": [int(i) for i in self.known_bad_indices],
            "excluded_indices": [int(i) for i in self.excluded_indices],
            "summary": dict(self.summary),
            "rank_after_removal": rank,
            "detectors": [result.to_dict() for result in self.per_detector],
            "warnings": list(self.warnings),
        }


def run_quality_control(
    dataset: Dataset,
    qc_config: QCConfig | None = None,
    delegates: Delegates | None = None,
) -> QualityControlReport:
    """
    Run all configured detectors and merge their bad-channel lists.

    Args:
        dataset: Read-only input dataset
        qc_config: Quality-control configuration (defaults when None)
        delegates: Capabilities for external detectors (defaults when None)

    Returns:
        QualityControlReport

    Raises:
        InvalidSelection: If excluding channels leaves a detector nothing to
            analyze
        MissingDependency: If an external detector lacks its delegate

    Example:
        >>> report = run_quality_control(ds, QCConfig(known_bad_labels=("M1",)))
        >>> report.summary["total"]
        3
    """
    if qc_config is None:
        logger.info("Using default quality-control configuration")
        qc_config = QCConfig.default()

    messages: list[str] = []

    excluded, missing = resolve_indices(dataset, list(qc_config.exclude_labels))
    if missing:
        _note(messages, f"Excluded labels not found: {missing}")
    known_bad, missing = resolve_indices(dataset, list(qc_config.known_bad_labels))
    if missing:
        _note(messages, f"Known-bad labels not found: {missing}")

    logger.info(
        f"Quality control on {dataset.n_channels} channels: "
        f"{len(qc_config.detectors)} detectors, {len(excluded)} excluded, "
        f"{len(known_bad)} known bad"
    )

    results: list[DetectionResult] = []
    summary: dict[str, int] = {}
    excluded_set = set(excluded)
    for det_config in qc_config.detectors:
        base = resolve_subset(dataset, det_config.channel_subset)
        ids = tuple(int(i) for i in base if i not in excluded_set)
        result = detect_bad_channels(
            dataset, replace(det_config, channel_subset=ids), delegates=delegates
        )

        ref = det_config.reference_channel
        if det_config.uses_reference and ref is not None and ref in result.bad_indices:
            logger.info(f"{result.measure}: reference channel {ref} removed from bad list")
            result = _without_channel(result, dataset, ref)

        results.append(result)
        summary[_summary_key(summary, result.measure)] = result.n_bad
        messages.extend(result.warnings)

    bad = list(dict.fromkeys(
        [idx for result in results for idx in result.bad_indices] + list(known_bad)
    ))
    summary["known"] = len(known_bad)
    summary["total"] = len(bad)
    logger.info(f"Total bad channels identified: {len(bad)}")

    bad_set = set(bad)
    kept_rows = [
        dataset.position(i) for i in dataset.channel_ids if i not in bad_set
    ]
    rank = None
    if kept_rows:
        rank = estimate_rank(dataset.data[kept_rows])
        if rank.mismatch:
            messages.append(
                f"Rank estimates differ (matrix rank {rank.matrix_rank}, covariance "
                f"eigenvalues {rank.eigen_rank}); using {rank.rank}"
            )
        logger.info(f"Data rank after removing bad channels: {rank.rank}")
    else:
        _note(messages, "Every channel was marked bad; rank not estimated")

    report = QualityControlReport(
        per_detector=tuple(results),
        bad_indices=tuple(bad),
        bad_labels=tuple(resolve_labels(dataset, bad, on_missing="index")),
        known_bad_indices=tuple(known_bad),
        excluded_indices=tuple(excluded),
        labels=dataset.labels,
        summary=summary,
        rank_after_removal=rank,
        action=qc_config.action,
        warnings=tuple(messages),
    )

    if qc_config.output_dir is not None:
        save_report(report, qc_config.output_dir)

    return report


def apply_to_raw(
    raw: mne.io.BaseRaw,
    report: QualityControlReport,
    action: str | None = None,
) -> mne.io.BaseRaw:
    """
    Apply a quality-control verdict to an MNE Raw.

    Args:
        raw: Recording the report was computed from (not modified)
        report: Quality-control report
        action: "flag" adds bad channels to raw.info["bads"]; "remove" drops
            them. Defaults to the report's action.

    Returns:
        Modified copy of raw
    """
    action = action or report.action
    if action not in ("flag", "remove"):
        raise ValueError(f"action must be 'flag' or 'remove', got '{action}'")

    names = [label for label in report.bad_labels if label in raw.ch_names]
    skipped = [label for label in report.bad_labels if label not in raw.ch_names]
    if skipped:
        logger.warning(f"Bad channels not present in raw, skipped: {skipped}")

    raw = raw.copy()
    if not names:
        logger.info("No bad channels to apply")
        return raw

    if action == "remove":
        logger.info(f"Removing {len(names)} bad channels: {names}")
        raw.drop_channels(names)
    else:
        logger.info(f"Flagging {len(names)} bad channels: {names}")
        raw.info["bads"] = list(dict.fromkeys(list(raw.info["bads"]) + names))
    return raw


def _without_channel(
    result: DetectionResult, dataset: Dataset, channel: int
) -> DetectionResult:
    bad = tuple(i for i in result.bad_indices if i != channel)
    kept = np.array(result.kept_mask, dtype=bool)
    kept[result.subset.to_relative([channel])] = True
    return replace(
        result,
        bad_indices=bad,
        bad_relative=tuple(result.subset.to_relative(bad)),
        kept_mask=kept,
        bad_labels=tuple(resolve_labels(dataset, bad, on_missing="index")),
    )


def _summary_key(summary: dict[str, int], measure: str) -> str:
    key, n = measure, 2
    while key in summary:
        key = f"{measure}_{n}"
        n += 1
    return key


def _note(messages: list[str], message: str) -> None:
    logger.warning(message)
    messages.append(message)

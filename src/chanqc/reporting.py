"""
Reporting for Bad-Channel Detection.

This module renders detection outcomes for operators and for storage:
- plain-text status table per detector run (logged when verbose)
- per-channel pandas tables
- TSV channel table + JSON sidecar for a full quality-control run

Status output is a side channel for operator visibility; it never changes
detection results.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np
import pandas as pd

from chanqc.dataset import Dataset, channel_id

if TYPE_CHECKING:
    from chanqc.detection import DetectionResult
    from chanqc.pipeline import QualityControlReport

logger = logging.getLogger(__name__)

BAD_MARK = "*Bad*"


def format_status(result: DetectionResult, dataset: Dataset | None = None) -> str:
    """
    Render a detection result as a text table.

    Format:
        #   Channel   Measure(z)   Status
        one row per analyzed channel (# is the absolute channel id),
        followed by a summary line
        "Bad channels (<measure>): A, B" or "No bad channels detected (<measure>)."

    Args:
        result: Detection result to render
        dataset: Dataset for channel labels; absolute ids are shown without it

    Returns:
        Multi-line string
    """
    lines = ["#\tChannel\tMeasure(z)\tStatus", "-" * 36]
    bad = set(result.bad_indices)
    for pos, idx in enumerate(result.subset):
        name = str(idx)
        if dataset is not None and dataset.label(idx):
            name = dataset.label(idx)
        z_text = "-" if result.z_scores is None else f"{result.z_scores[pos]:.3f}"
        status = BAD_MARK if idx in bad else ""
        lines.append(f"{int(idx)}\t{name}\t{z_text}\t{status}")

    if result.bad_labels:
        lines.append(f"Bad channels ({result.measure}): {', '.join(result.bad_labels)}")
    else:
        lines.append(f"No bad channels detected ({result.measure}).")
    return "\n".join(lines)


def detection_table(result: DetectionResult, dataset: Dataset) -> pd.DataFrame:
    """
    Per-channel table of one detection result.

    Columns: position (0-based within the subset), channel_id (1-based),
    label, value, z_score, is_bad. value and z_score are NaN for external
    detectors.
    """
    n = len(result.subset)
    values = result.values if result.values is not None else np.full(n, np.nan)
    z_scores = result.z_scores if result.z_scores is not None else np.full(n, np.nan)
    return pd.DataFrame(
        {
            "position": np.arange(n),
            "channel_id": [int(i) for i in result.subset],
            "label": [dataset.label(i) for i in result.subset],
            "value": np.asarray(values, dtype=float),
            "z_score": np.asarray(z_scores, dtype=float),
            "is_bad": ~np.asarray(result.kept_mask, dtype=bool),
        }
    )


def channel_summary(report: QualityControlReport) -> pd.DataFrame:
    """
    One row per dataset channel with the detectors that flagged it.

    Columns: channel_id, label, status ("good"/"bad"/"excluded"), flagged_by
    (comma-separated detector names, "known" for known-bad channels).
    """
    flagged_by: dict[int, list[str]] = {}
    for result in report.per_detector:
        for idx in result.bad_indices:
            flagged_by.setdefault(int(idx), []).append(result.measure)
    for idx in report.known_bad_indices:
        flagged_by.setdefault(int(idx), []).append("known")

    bad = {int(i) for i in report.bad_indices}
    excluded = {int(i) for i in report.excluded_indices}
    rows = []
    for row, label in enumerate(report.labels):
        idx = int(channel_id(row))
        if idx in bad:
            status = "bad"
        elif idx in excluded:
            status = "excluded"
        else:
            status = "good"
        rows.append(
            {
                "channel_id": idx,
                "label": label,
                "status": status,
                "flagged_by": ",".join(flagged_by.get(idx, [])),
            }
        )
    return pd.DataFrame(rows, columns=["channel_id", "label", "status", "flagged_by"])


def save_report(
    report: QualityControlReport, output_dir: Path, stem: str = "chanqc"
) -> tuple[Path, Path]:
    """
    Save a quality-control report as TSV channel table + JSON sidecar.

    Files:
        {stem}_channels.tsv: channel_summary table
        {stem}_report.json: full report (per-detector results, summary,
        rank estimate, warnings)

    Args:
        report: Quality-control report
        output_dir: Output directory (created if missing)
        stem: Filename prefix

    Returns:
        Tuple of (tsv_path, json_path)
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    tsv_path = output_dir / f"{stem}_channels.tsv"
    json_path = output_dir / f"{stem}_report.json"

    channel_summary(report).to_csv(tsv_path, sep="\t", index=False)

    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(convert_numpy_types(report.to_dict()), f, indent=2)

    logger.info(f"Saved channel table to {tsv_path}")
    logger.info(f"Saved report to {json_path}")
    return tsv_path, json_path


def convert_numpy_types(obj: Any) -> Any:
    """Recursively convert numpy types to Python native types."""
    if isinstance(obj, dict):
        return {k: convert_numpy_types(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_numpy_types(item) for item in obj]
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return None if np.isnan(obj) else float(obj)
    elif isinstance(obj, np.ndarray):
        return convert_numpy_types(obj.tolist())
    elif isinstance(obj, float) and np.isnan(obj):
        return None
    elif isinstance(obj, Path):
        return str(obj)
    else:
        return obj

"""
chanqc: Channel Quality and Bad-Channel Detection for EEG.

This package identifies defective channels in multichannel recordings using
statistical outlier detection (variance, mean correlation, Hurst exponent,
with optional distance-from-reference detrending) and delegated detectors
(flatline, correlation/noise), and merges several detectors into one
quality-control verdict.
"""

from chanqc.channels import LabelNotFound, resolve_indices, resolve_labels
from chanqc.config import DetectionConfig, QCConfig
from chanqc.dataset import (
    AbsoluteIndex,
    ChannelInfo,
    ChannelSubset,
    Dataset,
    InvalidSelection,
    SubsetIndex,
    channel_id,
    channel_row,
    resolve_subset,
    to_absolute,
    to_relative,
)
from chanqc.delegates import (
    DelegateTimeout,
    Delegates,
    MissingDependency,
    flatline_keep_mask,
    highpass_drift_remover,
    pyprep_noise_detector,
)
from chanqc.detection import (
    DetectionResult,
    ExternalDetectorAdapter,
    detect_bad_channels,
)
from chanqc.geometry import DistanceMatrices, distance_matrices
from chanqc.measures import (
    DegenerateSignal,
    MeasureKind,
    MeasureVector,
    RankMismatch,
    amplitude_spread,
    compute_measure,
    estimate_rank,
    hurst_exponent,
    joint_log_probability,
)
from chanqc.pipeline import QualityControlReport, apply_to_raw, run_quality_control
from chanqc.reporting import detection_table, format_status, save_report
from chanqc.scoring import AnomalyScores, score_anomalies
from chanqc.spatial import correct_for_distance

__version__ = "0.1.0"

# Public API
__all__ = [
    # Data model
    "AbsoluteIndex",
    "SubsetIndex",
    "ChannelInfo",
    "ChannelSubset",
    "Dataset",
    "InvalidSelection",
    "channel_id",
    "channel_row",
    "resolve_subset",
    "to_absolute",
    "to_relative",
    # Channel identity
    "LabelNotFound",
    "resolve_indices",
    "resolve_labels",
    # Geometry and measures
    "DistanceMatrices",
    "distance_matrices",
    "MeasureKind",
    "MeasureVector",
    "DegenerateSignal",
    "RankMismatch",
    "compute_measure",
    "hurst_exponent",
    "joint_log_probability",
    "estimate_rank",
    "amplitude_spread",
    "correct_for_distance",
    "AnomalyScores",
    "score_anomalies",
    # Detection
    "DetectionConfig",
    "DetectionResult",
    "Delegates",
    "MissingDependency",
    "DelegateTimeout",
    "highpass_drift_remover",
    "flatline_keep_mask",
    "pyprep_noise_detector",
    "ExternalDetectorAdapter",
    "detect_bad_channels",
    # Quality control
    "QCConfig",
    "QualityControlReport",
    "run_quality_control",
    "apply_to_raw",
    "format_status",
    "detection_table",
    "save_report",
]

"""
Detection Configuration for Bad-Channel Quality Control.

Every detector call takes one explicit, fully enumerated configuration record.
Records are frozen dataclasses validated once on construction, with named
defaults for every optional field, and round-trip through plain dicts and
YAML files for reproducibility.

Default values follow clean_rawdata (flatline, drift band, channel
correlation), FASTER (z-score threshold of 3) and EEGLAB channel rejection
(kurtosis, probability and spectrum thresholds of 5, band 1-50 Hz).
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal, Sequence

import numpy as np
import yaml

DetectorMeasure = Literal[
    "flatline",
    "correlation_noise",
    "variance",
    "mean_correlation",
    "hurst",
    "kurtosis",
    "probability",
    "spectrum",
]

EXTERNAL_MEASURES = ("flatline", "correlation_noise")
STATISTICAL_MEASURES = (
    "variance",
    "mean_correlation",
    "hurst",
    "kurtosis",
    "probability",
    "spectrum",
)

# Distance-from-reference family; the reference channel is never reported bad
REFERENCE_MEASURES = ("variance", "mean_correlation", "hurst")

# Measures whose z-normalization can be switched off
NORMALIZABLE_MEASURES = ("kurtosis", "probability", "spectrum")

# Only excess band power is flagged
ONE_SIDED_MEASURES = ("spectrum",)

# Flatline threshold is a duration (s); the others are score thresholds
DEFAULT_THRESHOLDS = {
    "flatline": 5.0,
    "correlation_noise": 3.0,
    "variance": 3.0,
    "mean_correlation": 3.0,
    "hurst": 3.0,
    "kurtosis": 5.0,
    "probability": 5.0,
    "spectrum": 5.0,
}


@dataclass(frozen=True)
class DetectionConfig:
    """
    Configuration of a single bad-channel detector run.

    Attributes:
        measure: Detector to run. "flatline" and "correlation_noise" are
            delegated to external detectors; "variance", "mean_correlation",
            "hurst", "kurtosis", "probability" and "spectrum" are scored
            channel statistics.
        threshold: Flatline duration in seconds, or score threshold for the
            statistical measures (|z|, or z for spectrum). None selects the
            measure default.
        correlation_cutoff: Minimum acceptable correlation with neighbouring
            channels (correlation_noise)
        line_noise_cutoff: Maximum acceptable high-frequency noise z-score
            (correlation_noise)
        channel_subset: Absolute channel ids (1-based) or boolean mask of the
            channels to analyze; None analyzes all channels
        highpass_band: (low_hz, high_hz) drift-removal transition band applied
            before external detectors; None disables drift removal
        max_bad_time_fraction: Fraction of time windows a channel may fail
            the correlation criterion before it is rejected (0-1)
        min_correlation_samples: RANSAC sample count passed to the noise
            detector
        window_sec: Correlation window length (s) passed to the noise detector
        reference_channel: Absolute id of the reference electrode used to
            remove the distance trend from variance and mean correlation
        normalize: z-score kurtosis, probability and spectrum before
            thresholding; when False the raw measure is compared
        spectrum_band: (fmin_hz, fmax_hz) band averaged by the spectrum
            measure
        verbose: Log a per-channel status table at INFO level
        n_jobs: Parallel workers for per-channel statistics (joblib)
    """

    measure: DetectorMeasure = "variance"
    threshold: float | None = None
    correlation_cutoff: float = 0.8
    line_noise_cutoff: float = 4.0
    channel_subset: tuple[int, ...] | tuple[bool, ...] | None = None
    highpass_band: tuple[float, float] | None = (0.25, 0.75)
    max_bad_time_fraction: float = 0.5
    min_correlation_samples: int = 50
    window_sec: float = 5.0
    reference_channel: int | None = None
    normalize: bool = True
    spectrum_band: tuple[float, float] = (1.0, 50.0)
    verbose: bool = False
    n_jobs: int = 1

    def __post_init__(self) -> None:
        """Normalize sequences to tuples and validate parameters."""
        if self.measure not in DEFAULT_THRESHOLDS:
            raise ValueError(
                f"measure must be one of {list(DEFAULT_THRESHOLDS)}, got '{self.measure}'"
            )

        if self.threshold is None:
            object.__setattr__(self, "threshold", DEFAULT_THRESHOLDS[self.measure])
        else:
            object.__setattr__(self, "threshold", float(self.threshold))
        if not np.isfinite(self.threshold) or self.threshold < 0:
            raise ValueError(
                f"threshold must be finite and non-negative, got {self.threshold}"
            )

        if self.channel_subset is not None:
            subset = np.asarray(self.channel_subset).ravel()
            if subset.dtype == bool:
                normalized = tuple(bool(v) for v in subset)
            elif np.issubdtype(subset.dtype, np.integer) or subset.size == 0:
                normalized = tuple(int(v) for v in subset)
            else:
                raise ValueError(
                    "channel_subset must hold integer channel ids or booleans, "
                    f"got dtype {subset.dtype}"
                )
            object.__setattr__(self, "channel_subset", normalized)

        if self.highpass_band is not None:
            band = tuple(float(v) for v in self.highpass_band)
            if len(band) != 2 or not 0 <= band[0] < band[1]:
                raise ValueError(
                    f"highpass_band must be (low, high) with 0 <= low < high, "
                    f"got {self.highpass_band}"
                )
            object.__setattr__(self, "highpass_band", band)

        spectrum_band = tuple(float(v) for v in self.spectrum_band)
        if len(spectrum_band) != 2 or not 0 <= spectrum_band[0] < spectrum_band[1]:
            raise ValueError(
                f"spectrum_band must be (fmin, fmax) with 0 <= fmin < fmax, "
                f"got {self.spectrum_band}"
            )
        object.__setattr__(self, "spectrum_band", spectrum_band)

        if not 0 <= self.max_bad_time_fraction <= 1:
            raise ValueError(
                f"max_bad_time_fraction must be in [0, 1], got {self.max_bad_time_fraction}"
            )
        if not -1 <= self.correlation_cutoff <= 1:
            raise ValueError(
                f"correlation_cutoff must be in [-1, 1], got {self.correlation_cutoff}"
            )
        if self.line_noise_cutoff <= 0:
            raise ValueError(
                f"line_noise_cutoff must be positive, got {self.line_noise_cutoff}"
            )
        if self.min_correlation_samples < 1:
            raise ValueError(
                f"min_correlation_samples must be >= 1, got {self.min_correlation_samples}"
            )
        if self.window_sec <= 0:
            raise ValueError(f"window_sec must be positive, got {self.window_sec}")
        if self.reference_channel is not None and self.reference_channel < 1:
            raise ValueError(
                f"reference_channel must be a 1-based channel id, got {self.reference_channel}"
            )
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero (use -1 for all cores)")

    @property
    def is_external(self) -> bool:
        """Whether the measure is computed by an external detector delegate."""
        return self.measure in EXTERNAL_MEASURES

    @property
    def uses_reference(self) -> bool:
        """Whether reference_channel applies to this measure."""
        return self.measure in REFERENCE_MEASURES

    def to_dict(self) -> dict:
        """
        Convert configuration to a plain dictionary (YAML/JSON friendly).

        Returns:
            Dictionary with lists in place of tuples.
        """
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result

    @classmethod
    def from_dict(cls, config_dict: dict) -> "DetectionConfig":
        """
        Create configuration from dictionary.

        Raises:
            ValueError: If the dictionary holds unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(config_dict) - known
        if unknown:
            raise ValueError(f"Unknown detection parameters: {sorted(unknown)}")
        return cls(**config_dict)


@dataclass(frozen=True)
class QCConfig:
    """
    Quality-control run combining several detectors.

    Attributes:
        detectors: Detector configurations, run in order
        exclude_labels: Channel labels left out of every detector's subset
        known_bad_labels: Channel labels always reported as bad
        action: "flag" marks bad channels, "remove" drops them
        output_dir: Directory for saved reports (None disables saving)
    """

    detectors: tuple[DetectionConfig, ...] = field(
        default_factory=lambda: (
            DetectionConfig(measure="flatline"),
            DetectionConfig(measure="variance"),
            DetectionConfig(measure="mean_correlation"),
            DetectionConfig(measure="hurst"),
        )
    )
    exclude_labels: tuple[str, ...] = ()
    known_bad_labels: tuple[str, ...] = ()
    action: Literal["flag", "remove"] = "flag"
    output_dir: Path | None = None

    def __post_init__(self) -> None:
        """Normalize containers and paths, then validate."""
        detectors = tuple(
            d if isinstance(d, DetectionConfig) else DetectionConfig.from_dict(d)
            for d in self.detectors
        )
        object.__setattr__(self, "detectors", detectors)
        object.__setattr__(self, "exclude_labels", _as_labels(self.exclude_labels))
        object.__setattr__(self, "known_bad_labels", _as_labels(self.known_bad_labels))
        if isinstance(self.output_dir, str):
            object.__setattr__(self, "output_dir", Path(self.output_dir))

        if self.action not in ("flag", "remove"):
            raise ValueError(f"action must be 'flag' or 'remove', got '{self.action}'")

    def to_dict(self) -> dict:
        """
        Convert configuration to dictionary for serialization.

        Returns:
            Dictionary representation of the configuration.
        """
        return {
            "detectors": [d.to_dict() for d in self.detectors],
            "exclude_labels": list(self.exclude_labels),
            "known_bad_labels": list(self.known_bad_labels),
            "action": self.action,
            "output_dir": str(self.output_dir) if self.output_dir else None,
        }

    def to_yaml(self, file_path: Path) -> None:
        """
        Save configuration to YAML file.

        Args:
            file_path: Path to save the YAML configuration.
        """
        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as yaml_file:
            yaml.dump(
                self.to_dict(),
                yaml_file,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

    @classmethod
    def from_dict(cls, config_dict: dict) -> "QCConfig":
        """
        Create configuration from dictionary.

        Missing keys take their defaults; an explicit empty "detectors" list
        runs no detectors (only known-bad channels are reported).

        Raises:
            ValueError: If values are invalid.
        """
        kwargs = dict(config_dict)
        if "detectors" in kwargs:
            kwargs["detectors"] = tuple(
                DetectionConfig.from_dict(d) for d in (kwargs["detectors"] or [])
            )
        unknown = set(kwargs) - {f.name for f in fields(cls)}
        if unknown:
            raise ValueError(f"Unknown quality-control parameters: {sorted(unknown)}")
        return cls(**kwargs)

    @classmethod
    def from_yaml(cls, file_path: Path) -> "QCConfig":
        """
        Load configuration from YAML file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the YAML content is invalid.
        """
        file_path = Path(file_path)
        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(file_path, "r", encoding="utf-8") as yaml_file:
            config_dict = yaml.safe_load(yaml_file)

        if not isinstance(config_dict, dict):
            raise ValueError(f"Empty or invalid YAML file: {file_path}")

        return cls.from_dict(config_dict)

    @classmethod
    def default(cls) -> "QCConfig":
        """Configuration with all default values."""
        return cls()


def _as_labels(labels: str | Sequence[str] | None) -> tuple[str, ...]:
    if labels is None:
        return ()
    if isinstance(labels, str):
        return (labels,)
    return tuple(str(label) for label in labels)

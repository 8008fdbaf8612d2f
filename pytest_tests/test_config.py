"""
Tests for detection and quality-control configuration.

Checks immutability, defaults, validation and YAML round-trips.
"""

from pathlib import Path

import pytest

from chanqc.config import DEFAULT_THRESHOLDS, DetectionConfig, QCConfig


def test_detection_config_default_values():
    """DetectionConfig defaults match the documented detector defaults."""
    config = DetectionConfig()

    assert config.measure == "variance"
    assert config.threshold == 3.0
    assert config.correlation_cutoff == 0.8
    assert config.line_noise_cutoff == 4.0
    assert config.highpass_band == (0.25, 0.75)
    assert config.max_bad_time_fraction == 0.5
    assert config.min_correlation_samples == 50
    assert config.channel_subset is None
    assert config.reference_channel is None
    assert config.normalize is True
    assert config.spectrum_band == (1.0, 50.0)
    assert config.verbose is False


def test_detection_config_is_immutable():
    """Frozen configurations reject attribute assignment."""
    config = DetectionConfig()

    with pytest.raises(AttributeError):
        config.threshold = 1.0


@pytest.mark.parametrize("measure", list(DEFAULT_THRESHOLDS))
def test_threshold_default_depends_on_measure(measure):
    """An unset threshold takes the measure's default."""
    config = DetectionConfig(measure=measure)
    assert config.threshold == DEFAULT_THRESHOLDS[measure]


def test_flatline_threshold_is_five_seconds():
    assert DetectionConfig(measure="flatline").threshold == 5.0
    assert DetectionConfig(measure="flatline").is_external
    assert not DetectionConfig(measure="hurst").is_external


def test_channel_subset_normalized_to_tuple():
    """Lists become tuples of ids or booleans."""
    assert DetectionConfig(channel_subset=[3, 1]).channel_subset == (3, 1)
    assert DetectionConfig(channel_subset=[True, False]).channel_subset == (True, False)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"measure": "entropy"}, "measure"),
        ({"spectrum_band": (50.0, 1.0)}, "spectrum_band"),
        ({"spectrum_band": (-1.0, 40.0)}, "spectrum_band"),
        ({"threshold": -1.0}, "threshold"),
        ({"highpass_band": (1.0, 0.5)}, "highpass_band"),
        ({"max_bad_time_fraction": 1.5}, "max_bad_time_fraction"),
        ({"correlation_cutoff": 2.0}, "correlation_cutoff"),
        ({"window_sec": 0.0}, "window_sec"),
        ({"reference_channel": 0}, "reference_channel"),
        ({"channel_subset": [1.5, 2.0]}, "channel_subset"),
        ({"n_jobs": 0}, "n_jobs"),
    ],
)
def test_detection_config_validation(kwargs, message):
    """Out-of-range parameters are rejected on construction."""
    with pytest.raises(ValueError, match=message):
        DetectionConfig(**kwargs)


def test_detection_config_dict_round_trip():
    """to_dict and from_dict restore an equal configuration."""
    config = DetectionConfig(measure="hurst", channel_subset=(1, 2, 3), reference_channel=2)
    restored = DetectionConfig.from_dict(config.to_dict())

    assert restored == config
    assert config.to_dict()["channel_subset"] == [1, 2, 3]


def test_detection_config_rejects_unknown_keys():
    """Misspelled parameters are not silently ignored."""
    with pytest.raises(ValueError, match="Unknown"):
        DetectionConfig.from_dict({"measure": "variance", "refchan": 3})


def test_qc_config_defaults():
    """The default run uses the four clean_rawdata/FASTER detectors."""
    config = QCConfig.default()

    assert [d.measure for d in config.detectors] == [
        "flatline",
        "variance",
        "mean_correlation",
        "hurst",
    ]
    assert config.action == "flag"
    assert config.output_dir is None


def test_qc_config_normalizes_labels_and_paths():
    config = QCConfig(exclude_labels="EOG", known_bad_labels=["M1", "M2"], output_dir="out")

    assert config.exclude_labels == ("EOG",)
    assert config.known_bad_labels == ("M1", "M2")
    assert config.output_dir == Path("out")


def test_qc_config_invalid_action():
    with pytest.raises(ValueError, match="action"):
        QCConfig(action="interpolate")


def test_qc_config_yaml_round_trip(tmp_path):
    """A saved YAML file loads back into an equal configuration."""
    config = QCConfig(
        detectors=(
            DetectionConfig(measure="flatline", threshold=2.0, highpass_band=None),
            DetectionConfig(measure="variance", reference_channel=1),
        ),
        exclude_labels=("EOG",),
        action="remove",
        output_dir=tmp_path / "reports",
    )
    yaml_path = tmp_path / "configs" / "qc.yml"

    config.to_yaml(yaml_path)
    restored = QCConfig.from_yaml(yaml_path)

    assert restored == config


def test_qc_config_from_partial_dict():
    """Missing keys take their defaults."""
    config = QCConfig.from_dict({"detectors": [{"measure": "hurst", "threshold": 2.0}]})

    assert len(config.detectors) == 1
    assert config.detectors[0].threshold == 2.0
    assert config.action == "flag"


def test_qc_config_empty_detector_list():
    assert QCConfig.from_dict({"detectors": None}).detectors == ()


def test_qc_config_rejects_unknown_keys():
    with pytest.raises(ValueError, match="Unknown"):
        QCConfig.from_dict({"LogPath": "x"})


def test_qc_config_from_yaml_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        QCConfig.from_yaml(tmp_path / "missing.yml")


def test_qc_config_from_empty_yaml(tmp_path):
    """An empty YAML file is an invalid configuration."""
    yaml_path = tmp_path / "empty.yml"
    yaml_path.write_text("")

    with pytest.raises(ValueError, match="Empty"):
        QCConfig.from_yaml(yaml_path)


def test_distribution_measure_defaults():
    """Kurtosis, probability and spectrum default to a threshold of 5."""
    for measure in ("kurtosis", "probability", "spectrum"):
        config = DetectionConfig(measure=measure)
        assert config.threshold == 5.0
        assert config.normalize is True
        assert not config.is_external
        assert not config.uses_reference
    assert DetectionConfig(measure="variance").uses_reference


def test_spectrum_band_normalized_to_float_tuple():
    config = DetectionConfig(measure="spectrum", spectrum_band=[2, 30])
    assert config.spectrum_band == (2.0, 30.0)
    assert config.to_dict()["spectrum_band"] == [2.0, 30.0]


def test_distribution_detectors_yaml_round_trip(tmp_path):
    """normalize and spectrum_band survive a YAML round trip."""
    config = QCConfig(
        detectors=(
            DetectionConfig(measure="kurtosis", normalize=False, threshold=8.0),
            DetectionConfig(measure="spectrum", spectrum_band=(4.0, 30.0)),
        )
    )
    yaml_path = tmp_path / "rejchan.yml"

    config.to_yaml(yaml_path)
    restored = QCConfig.from_yaml(yaml_path)

    assert restored == config
    assert restored.detectors[0].normalize is False
    assert restored.detectors[1].spectrum_band == (4.0, 30.0)

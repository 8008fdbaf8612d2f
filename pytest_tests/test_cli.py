"""
Tests for the chanqc command-line interface.
"""

import json
import sys
from pathlib import Path
from unittest.mock import patch

import mne
import numpy as np
import pytest

from chanqc.cli import build_parser, main
from chanqc.config import DetectionConfig, QCConfig


@pytest.fixture
def recording(tmp_path):
    rng = np.random.default_rng(4)
    data = rng.standard_normal((20, 3000)) * 1e-5
    data[4] *= 1000.0
    info = mne.create_info([f"E{i}" for i in range(1, 21)], 100.0, "eeg")
    raw = mne.io.RawArray(data, info, verbose=False)
    path = tmp_path / "sub-01_raw.fif"
    raw.save(path, verbose=False)
    return path


def test_parse_args_input_required():
    """--input is mandatory."""
    with patch("sys.argv", ["chanqc"]):
        with pytest.raises(SystemExit):
            build_parser().parse_args()


def test_parse_args_defaults():
    """Optional flags default to off."""
    with patch("sys.argv", ["chanqc", "--input", "data/rec.fif"]):
        args = build_parser().parse_args()

    assert args.input == Path("data/rec.fif")
    assert args.config is None
    assert args.output is None
    assert args.save_raw is False
    assert args.verbose is False


def test_parse_args_all_options():
    argv = ["--input", "rec.set", "--config", "qc.yml", "--output", "out", "--save-raw", "--verbose"]
    args = build_parser().parse_args(argv)

    assert args.config == Path("qc.yml")
    assert args.output == Path("out")
    assert args.save_raw is True
    assert args.verbose is True


def test_missing_input_exits_with_error(tmp_path):
    """A missing recording exits with status 1."""
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(tmp_path / "missing.fif")])
    assert excinfo.value.code == 1


def test_save_raw_requires_output(recording):
    """--save-raw without --output exits with status 1."""
    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(recording), "--save-raw"])
    assert excinfo.value.code == 1


def test_invalid_config_exits_with_error(recording, tmp_path):
    """An invalid configuration file exits with status 1."""
    config_path = tmp_path / "bad.yml"
    config_path.write_text("action: interpolate\n")

    with pytest.raises(SystemExit) as excinfo:
        main(["--input", str(recording), "--config", str(config_path)])
    assert excinfo.value.code == 1


def test_end_to_end_writes_reports_and_raw(recording, tmp_path):
    """A full run saves the report and the flagged recording."""
    config_path = tmp_path / "qc.yml"
    QCConfig(detectors=(DetectionConfig(measure="variance"),)).to_yaml(config_path)
    out_dir = tmp_path / "derivatives"

    with pytest.raises(SystemExit) as excinfo:
        main(
            [
                "--input", str(recording),
                "--config", str(config_path),
                "--output", str(out_dir),
                "--save-raw",
            ]
        )
    assert excinfo.value.code == 0

    with open(out_dir / "chanqc_report.json") as f:
        payload = json.load(f)
    assert payload["bad_labels"] == ["E5"]

    cleaned = mne.io.read_raw_fif(out_dir / "sub-01_raw_chanqc_raw.fif", verbose=False)
    assert cleaned.info["bads"] == ["E5"]


def test_module_entry_point_uses_cli_main():
    """python -m chanqc dispatches to the CLI main."""
    import chanqc.__main__ as entry

    assert entry.main is main
    assert "chanqc" in sys.modules

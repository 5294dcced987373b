from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from camrig.cli.main import main


def test_synth_samples_writes_observations(tmp_path: Path) -> None:
    out = tmp_path / "obs.npz"
    rc = main(["synth-samples", "--out", str(out), "--cameras", "3", "--poses", "4", "--seed", "1"])
    assert rc == 0
    with np.load(out) as data:
        assert data["image_size"].tolist() == [640, 480]
        assert data["target"].tolist() == [9.0, 6.0, 25.0]
        for cid in range(3):
            assert data[f"cam{cid}"].shape == (4, 54, 2)


@pytest.mark.integration
def test_calibrate_then_reconstruct(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    obs = tmp_path / "obs.npz"
    frames = tmp_path / "frames"
    model = tmp_path / "model"
    assert main(["synth-samples", "--out", str(obs), "--poses", "12", "--frames-out", str(frames)]) == 0
    assert (frames / "cam0.png").exists() and (frames / "cam1.png").exists()
    capsys.readouterr()

    assert main(["calibrate", str(obs), "--out", str(model), "--bundle"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["calibration"]["success"]
    assert report["calibration"]["calibrated_cameras"] == [0, 1]
    assert "bundle_adjustment" in report
    assert (model / "calibration.json").exists()
    assert (model / "weights.npz").exists()

    assert main(["reconstruct", "--model", str(model), str(frames / "cam0.png"), str(frames / "cam1.png")]) == 0
    result = json.loads(capsys.readouterr().out)
    assert result["camera_ids"] == [0, 1]
    assert result["pair"] == [0, 1]
    assert "depth" in result
    assert abs(result["depth_summary_mm"]["mean"] - 600.0) < 0.05 * 600.0


def test_calibrate_fails_without_enough_samples(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    obs = tmp_path / "obs.npz"
    assert main(["synth-samples", "--out", str(obs), "--poses", "3"]) == 0
    capsys.readouterr()
    assert main(["calibrate", str(obs), "--out", str(tmp_path / "model")]) == 1
    report = json.loads(capsys.readouterr().out)
    assert not report["calibration"]["success"]
    assert not (tmp_path / "model").exists()

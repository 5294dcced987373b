from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest

from camrig.calib.model_io import load_calibration, save_calibration
from camrig.calib.state import build_calibration_state
from camrig.sim.rig import make_rig


def test_save_load_calibration(tmp_path: Path) -> None:
    rig = make_rig(3, (320, 240), toe_in_rad=0.02, distortion_strength=0.3, rng=np.random.default_rng(0))
    state = build_calibration_state(rig.image_size, rig.profiles, generation=4)

    json_path = save_calibration(tmp_path / "model", state)
    assert json_path.name == "calibration.json"
    assert (tmp_path / "model" / "weights.npz").exists()
    meta = json.loads(json_path.read_text(encoding="utf-8"))
    assert meta["schema_version"] == "camrig.calibration.v0"
    assert meta["cameras"][0]["rms_px"] is None

    loaded = load_calibration(tmp_path / "model")
    assert loaded.image_size == (320, 240)
    assert loaded.generation == 4
    assert loaded.camera_ids == [0, 1, 2]
    assert loaded.pairs == [(0, 1), (0, 2)]
    for cid in loaded.camera_ids:
        a = loaded.profiles[cid]
        b = rig.profiles[cid]
        assert np.allclose(a.K(), b.K())
        assert np.allclose(a.dist(), b.dist())
        assert np.allclose(a.rotation, b.rotation)
        assert np.allclose(a.translation, b.translation)
        assert np.isnan(a.rms_px)
    assert np.allclose(loaded.rig(0, 2).Q, state.rig(0, 2).Q)
    assert np.allclose(loaded.rig(0, 1).map_b.map_x, state.rig(0, 1).map_b.map_x)


def test_load_rejects_unknown_schema(tmp_path: Path) -> None:
    rig = make_rig(2, (160, 120), rng=np.random.default_rng(1))
    path = save_calibration(tmp_path, build_calibration_state(rig.image_size, rig.profiles))
    meta = json.loads(path.read_text(encoding="utf-8"))
    meta["schema_version"] = "camrig.calibration.v99"
    path.write_text(json.dumps(meta), encoding="utf-8")
    with pytest.raises(ValueError):
        load_calibration(tmp_path)


def test_load_rejects_non_finite_extrinsics(tmp_path: Path) -> None:
    rig = make_rig(2, (160, 120), rng=np.random.default_rng(2))
    save_calibration(tmp_path, build_calibration_state(rig.image_size, rig.profiles))
    with np.load(tmp_path / "weights.npz") as w:
        arrays = {k: w[k] for k in w.files}
    arrays["t_1"] = np.array([np.nan, 0.0, 0.0])
    np.savez_compressed(tmp_path / "weights.npz", **arrays)
    with pytest.raises(ValueError):
        load_calibration(tmp_path)


def test_reference_and_unposed_cameras_survive_save_load(tmp_path: Path) -> None:
    rig = make_rig(3, (160, 120), rng=np.random.default_rng(3))
    state = build_calibration_state(rig.image_size, rig.profiles, reference_camera=1, unposed=[0])
    assert state.pairs == [(1, 2)]

    json_path = save_calibration(tmp_path, state)
    meta = json.loads(json_path.read_text(encoding="utf-8"))
    assert meta["reference_camera"] == 1
    assert [c["posed"] for c in meta["cameras"]] == [False, True, True]

    loaded = load_calibration(tmp_path)
    assert loaded.reference_camera == 1
    assert loaded.unposed == {0}
    assert loaded.camera_ids == [0, 1, 2]
    assert loaded.posed_camera_ids == [1, 2]
    assert loaded.pairs == [(1, 2)]
    assert np.allclose(loaded.profiles[0].K(), rig.profiles[0].K())


def test_load_rejects_pair_with_unposed_camera(tmp_path: Path) -> None:
    rig = make_rig(2, (160, 120), rng=np.random.default_rng(4))
    path = save_calibration(tmp_path, build_calibration_state(rig.image_size, rig.profiles))
    meta = json.loads(path.read_text(encoding="utf-8"))
    meta["cameras"][1]["posed"] = False
    path.write_text(json.dumps(meta), encoding="utf-8")
    with pytest.raises(ValueError):
        load_calibration(tmp_path)

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
import pytest

from camrig.calib.bundle import bundle_adjust
from camrig.calib.model_io import save_calibration
from camrig.calib.state import build_calibration_state
from camrig.calib.stereo import relative_extrinsics
from camrig.config import PipelineConfig, TargetConfig
from camrig.core.image_io import encode_png
from camrig.errors import CalibrationDegenerateError, PipelineStateError
from camrig.pipeline import MultiCameraPipeline
from camrig.sim.rig import (
    make_rig,
    make_texture,
    observe_targets,
    render_target_view,
    render_textured_plane,
    sample_target_poses,
)

W, H = 640, 480


def _observations(n_cameras: int, n_poses: int, *, noise_px: float = 0.0, seed: int = 0):
    rng = np.random.default_rng(seed)
    rig = make_rig(n_cameras, (W, H), distortion_strength=0.3, rng=rng)
    poses = sample_target_poses(rig, TargetConfig(), n_poses, rng)
    return rig, observe_targets(rig, TargetConfig(), poses, noise_px=noise_px, rng=rng)


def _pipeline_with_ground_truth(tmp_path: Path, n_cameras: int = 2, seed: int = 0):
    rig = make_rig(n_cameras, (W, H), rng=np.random.default_rng(seed))
    save_calibration(tmp_path / "gt", build_calibration_state(rig.image_size, rig.profiles))
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, n_cameras)
    pipe.load_calibration(tmp_path / "gt")
    return rig, pipe


def _small_frame(value: int) -> bytes:
    img = np.full((48, 64, 3), value, dtype=np.uint8)
    return encode_png(img)


def test_calls_before_initialize_raise() -> None:
    pipe = MultiCameraPipeline()
    with pytest.raises(PipelineStateError):
        pipe.submit_frame(0, b"", 0.0)
    with pytest.raises(PipelineStateError):
        pipe.run_calibration()
    with pytest.raises(PipelineStateError):
        pipe.process_frame_set()


def test_initialize_validates_arguments() -> None:
    pipe = MultiCameraPipeline()
    with pytest.raises(ValueError):
        pipe.initialize(W, H, 0)
    with pytest.raises(ValueError):
        pipe.initialize(0, H, 2)
    pipe.initialize(W, H, 2)
    with pytest.raises(ValueError):
        pipe.add_calibration_sample(2, np.zeros((54, 2)))


def test_shutdown_releases_state_and_blocks_calls() -> None:
    _rig, obs = _observations(1, 10)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 1)
    for uv in obs[0]:
        pipe.add_calibration_sample(0, uv)
    assert pipe.run_calibration().success
    pipe.shutdown()
    pipe.shutdown()
    with pytest.raises(PipelineStateError):
        _ = pipe.calibration
    with pytest.raises(PipelineStateError):
        pipe.add_calibration_sample(0, obs[0][0])
    with pytest.raises(PipelineStateError):
        pipe.initialize(W, H, 1)


@pytest.mark.integration
def test_calibration_recovers_rig() -> None:
    rig, obs = _observations(2, 12)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    for cid, uvs in obs.items():
        for uv in uvs:
            pipe.add_calibration_sample(cid, uv)

    report = pipe.run_calibration()
    assert report.success
    assert report.calibrated_cameras == [0, 1]
    assert report.issues == []
    assert report.generation == 0
    assert all(v < 1e-3 for v in report.intrinsics_rms_px.values())
    assert report.stereo_rms_px[(0, 1)] < 1e-3

    state = pipe.calibration
    assert state is not None
    for cid in (0, 1):
        K_err = np.abs(state.profiles[cid].K() - rig.profiles[cid].K()) / rig.profiles[cid].fx
        assert np.max(K_err) < 1e-3
    assert np.allclose(state.profiles[1].translation, rig.profiles[1].translation, atol=0.05)
    assert state.rig(0, 1).baseline_mm == pytest.approx(60.0, rel=1e-3)


@pytest.mark.integration
def test_insufficient_samples_only_affects_that_camera() -> None:
    _rig, obs = _observations(2, 12, seed=1)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    for uv in obs[0]:
        pipe.add_calibration_sample(0, uv)
    for uv in obs[1][:5]:
        pipe.add_calibration_sample(1, uv)

    report = pipe.run_calibration()
    assert report.success
    assert report.calibrated_cameras == [0]
    kinds = [(i.kind, i.camera_id) for i in report.issues]
    assert ("InsufficientSamples", 1) in kinds
    assert pipe.calibration.camera_ids == [0]
    assert pipe.calibration.pairs == []


def test_no_calibrated_camera_publishes_nothing() -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    report = pipe.run_calibration()
    assert not report.success
    assert {i.kind for i in report.issues} == {"InsufficientSamples", "StageSkipped"}
    assert pipe.calibration is None


@pytest.mark.integration
def test_reference_moves_to_lowest_calibrated_camera(caplog) -> None:
    rig, obs = _observations(3, 12, seed=5)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 3)
    for cid, uvs in obs.items():
        for uv in uvs if cid else uvs[:5]:
            pipe.add_calibration_sample(cid, uv)

    with caplog.at_level(logging.WARNING, logger="camrig.pipeline"):
        report = pipe.run_calibration()
    assert report.success
    assert report.calibrated_cameras == [1, 2]
    assert report.reference_camera == 1
    assert report.posed_cameras == [1, 2]
    assert [(i.kind, i.camera_id) for i in report.issues] == [("InsufficientSamples", 0)]
    # the exception text is logged once, without a repeated camera prefix
    messages = [r.getMessage() for r in caplog.records if "calibration samples" in r.getMessage()]
    assert messages == ["camera 0: 5 calibration samples, need >= 10"]

    state = pipe.calibration
    assert state.reference_camera == 1
    assert state.pairs == [(1, 2)]
    _R, T = relative_extrinsics(rig.profiles[1], rig.profiles[2])
    assert np.allclose(state.rig(1, 2).T, T, atol=0.05)
    assert np.allclose(state.profiles[1].translation, 0.0)


@pytest.mark.integration
def test_failed_stereo_pair_keeps_intrinsics(monkeypatch) -> None:
    _rig, obs = _observations(2, 12, seed=6)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    for cid, uvs in obs.items():
        for uv in uvs:
            pipe.add_calibration_sample(cid, uv)

    def fail(*args, **kwargs):
        raise CalibrationDegenerateError("rank-deficient stereo system")

    monkeypatch.setattr("camrig.pipeline.calibrate_stereo_pair", fail)
    report = pipe.run_calibration()
    assert report.success
    assert report.calibrated_cameras == [0, 1]
    assert report.posed_cameras == [0]
    assert [(i.kind, i.stage, i.camera_id) for i in report.issues] == [("CalibrationDegenerate", "stereo", 1)]

    state = pipe.calibration
    assert state.camera_ids == [0, 1]
    assert state.unposed == {1}
    assert state.pairs == []

    pipe.submit_frame(0, _small_frame(10), 1.0)
    pipe.submit_frame(1, _small_frame(20), 1.0)
    res = pipe.process_frame_set(timeout=0.0)
    assert res.pair == (0, 1)
    assert res.depth is None
    assert "no extrinsics" in res.skipped["depth"]
    assert "no extrinsics" in res.skipped["triangulation"]


def test_sync_tolerance_is_a_soft_check() -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(64, 48, 2)

    pipe.submit_frame(0, _small_frame(10), 100.000)
    pipe.submit_frame(1, _small_frame(20), 100.004)
    res = pipe.process_frame_set(timeout=0.0)
    assert res.camera_ids == [0, 1]
    assert "SynchronizationWarning" not in res.issue_kinds()

    pipe.submit_frame(0, _small_frame(10), 200.000)
    pipe.submit_frame(1, _small_frame(20), 200.050)
    res = pipe.process_frame_set(timeout=0.0)
    assert res.camera_ids == [0, 1]
    assert "SynchronizationWarning" in res.issue_kinds()
    # no calibration yet: geometric stages are skipped, not failed
    assert set(res.skipped) == {"depth", "triangulation"}


def test_decode_failure_drops_one_camera() -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(64, 48, 3)
    assert pipe.submit_frame(0, _small_frame(10), 1.0)
    assert not pipe.submit_frame(1, b"\x00garbage", 1.0)
    assert pipe.submit_frame(2, _small_frame(30), 1.0)
    res = pipe.process_frame_set(timeout=0.0)
    assert res.camera_ids == [0, 2]
    failures = [i for i in res.issues if i.kind == "DecodeFailure"]
    assert len(failures) == 1 and failures[0].camera_id == 1


def test_single_frame_skips_pair_stages() -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(64, 48, 2)
    pipe.submit_frame(0, _small_frame(10), 1.0)
    res = pipe.process_frame_set(timeout=0.0)
    assert res.camera_ids == [0]
    assert set(res.skipped) == {"depth", "features", "triangulation"}
    assert res.depth is None and res.triangulation is None


@pytest.mark.integration
def test_few_correspondences_still_give_depth(tmp_path: Path) -> None:
    _rig, pipe = _pipeline_with_ground_truth(tmp_path)
    flat = encode_png(np.full((H, W, 3), 128, dtype=np.uint8))
    pipe.submit_frame(0, flat, 0.0)
    pipe.submit_frame(1, flat, 0.0)
    res = pipe.process_frame_set(timeout=0.0)

    assert res.pair == (0, 1)
    assert "InsufficientCorrespondences" in res.issue_kinds()
    assert "triangulation" in res.skipped
    assert res.triangulation is None
    assert res.depth is not None
    assert "depth" not in res.skipped
    assert res.n_correspondences < 8


@pytest.mark.integration
def test_textured_scene_end_to_end(tmp_path: Path) -> None:
    rig, pipe = _pipeline_with_ground_truth(tmp_path, seed=3)
    texture = make_texture(1024, np.random.default_rng(7))
    for cid in (0, 1):
        img = render_textured_plane(rig, cid, texture, distance_mm=600.0)
        pipe.submit_frame(cid, encode_png(img), 5.0 + 0.001 * cid)

    res = pipe.process_frame_set(timeout=1.0)
    assert res.pair == (0, 1)
    assert res.skipped == {}
    assert res.depth is not None and res.depth.valid_fraction > 0.3
    assert res.depth_summary is not None
    assert abs(res.depth_summary.mean - 600.0) < 0.05 * 600.0
    assert res.n_correspondences >= 8
    assert res.triangulation is not None
    assert abs(float(np.median(res.points[:, 2])) - 600.0) < 0.02 * 600.0
    assert res.point_summary is not None and res.point_summary.count == len(res.triangulation)
    d = res.to_dict()
    assert d["pair"] == [0, 1]
    assert "depth_summary_mm" in d and "triangulation" in d


@pytest.mark.integration
def test_pair_without_stored_rig_uses_derived_extrinsics(tmp_path: Path) -> None:
    rig, pipe = _pipeline_with_ground_truth(tmp_path, n_cameras=3, seed=3)
    assert pipe.calibration.pairs == [(0, 1), (0, 2)]
    texture = make_texture(1024, np.random.default_rng(7))
    assert not pipe.submit_frame(0, b"\x00garbage", 5.0)
    for cid in (1, 2):
        img = render_textured_plane(rig, cid, texture, distance_mm=600.0)
        pipe.submit_frame(cid, encode_png(img), 5.0)

    res = pipe.process_frame_set(timeout=1.0)
    assert res.camera_ids == [1, 2]
    assert res.pair == (1, 2)
    assert res.skipped == {}
    assert res.depth is not None
    assert res.triangulation is not None
    assert abs(float(np.median(res.points[:, 2])) - 600.0) < 0.02 * 600.0


@pytest.mark.integration
def test_bundle_adjustment_publishes_new_generation() -> None:
    _rig, obs = _observations(3, 12, noise_px=0.2, seed=2)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 3)
    for cid, uvs in obs.items():
        for uv in uvs:
            pipe.add_calibration_sample(cid, uv)
    assert pipe.run_calibration().success
    before = pipe.calibration

    report = pipe.run_bundle_adjustment()
    assert report.optimized_cameras == [0, 1, 2]
    assert report.final_rms_px <= report.initial_rms_px
    after = pipe.calibration
    assert after is not before
    assert after.generation == before.generation + 1
    assert after.pairs == before.pairs
    # the old snapshot is untouched
    assert before.rig(0, 1).map_a.map_x is not after.rig(0, 1).map_a.map_x


@pytest.mark.integration
def test_bundle_adjustment_does_not_overwrite_newer_calibration(monkeypatch) -> None:
    _rig, obs = _observations(3, 12, noise_px=0.2, seed=2)
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 3)
    for cid, uvs in obs.items():
        for uv in uvs:
            pipe.add_calibration_sample(cid, uv)
    assert pipe.run_calibration().success

    recalibrated = []

    def recalibrate_then_adjust(state, samples, config):
        recalibrated.append(pipe.run_calibration().generation)
        return bundle_adjust(state, samples, config)

    monkeypatch.setattr("camrig.pipeline.bundle_adjust", recalibrate_then_adjust)
    report = pipe.run_bundle_adjustment()
    assert recalibrated == [1]
    assert "StageSkipped" in [i.kind for i in report.issues]
    assert pipe.calibration.generation == 1


def test_bundle_adjustment_without_calibration_is_skipped() -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    report = pipe.run_bundle_adjustment()
    assert not report.success
    assert [i.kind for i in report.issues] == ["StageSkipped"]


def test_calibration_images_are_detected() -> None:
    rig = make_rig(1, (W, H), rng=np.random.default_rng(0))
    target = TargetConfig()
    pose = sample_target_poses(rig, target, 1, np.random.default_rng(4), max_tilt_rad=0.2)[0]
    img = render_target_view(rig, 0, pose, target)

    pipe = MultiCameraPipeline(PipelineConfig(target=target))
    pipe.initialize(W, H, 1)
    assert pipe.add_calibration_image(0, encode_png(img))
    assert not pipe.add_calibration_image(0, encode_png(np.full((H, W, 3), 200, dtype=np.uint8)))
    assert not pipe.add_calibration_image(0, b"not an image")
    assert pipe.sample_counts() == {0: 1}


def test_save_without_calibration_raises(tmp_path: Path) -> None:
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    with pytest.raises(PipelineStateError):
        pipe.save_calibration(tmp_path / "m")


def test_load_rejects_mismatched_image_size(tmp_path: Path) -> None:
    rig = make_rig(2, (320, 240), rng=np.random.default_rng(0))
    save_calibration(tmp_path, build_calibration_state(rig.image_size, rig.profiles))
    pipe = MultiCameraPipeline()
    pipe.initialize(W, H, 2)
    with pytest.raises(ValueError):
        pipe.load_calibration(tmp_path)

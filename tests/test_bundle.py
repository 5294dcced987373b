import numpy as np
import pytest

from camrig.calib.bundle import Observation, ParameterLayout, bundle_adjust, bundle_residuals
from camrig.calib.state import CalibrationState
from camrig.config import BundleConfig, TargetConfig
from camrig.core.camera import CameraProfile
from camrig.core.geometry import matrix_to_rotvec
from camrig.sim.rig import make_rig, make_samples, sample_target_poses


def _perturbed(profile: CameraProfile, rng: np.random.Generator) -> CameraProfile:
    return CameraProfile(
        fx=profile.fx * 1.01,
        fy=profile.fy * 0.99,
        cx=profile.cx + 2.0,
        cy=profile.cy - 2.0,
        distortion=profile.distortion,
        rotation=profile.rotation,
        translation=profile.translation + rng.normal(0.0, 1.0, size=3),
    )


def _setup(n_cameras: int = 3, n_poses: int = 12, noise_px: float = 0.1, seed: int = 0):
    rng = np.random.default_rng(seed)
    target = TargetConfig()
    rig = make_rig(n_cameras, (640, 480), distortion_strength=0.3, rng=rng)
    poses = sample_target_poses(rig, target, n_poses, rng)
    samples = make_samples(rig, target, poses, noise_px=noise_px, rng=rng)
    profiles: dict[int, CameraProfile] = {}
    for cid in range(1, n_cameras):
        profiles[cid] = _perturbed(rig.profiles[cid], rng)
    profiles[0] = CameraProfile(
        fx=rig.profiles[0].fx * 1.01,
        fy=rig.profiles[0].fy * 1.01,
        cx=rig.profiles[0].cx,
        cy=rig.profiles[0].cy,
        distortion=rig.profiles[0].distortion,
    )
    state = CalibrationState(image_size=rig.image_size, profiles=profiles)
    return rig, state, samples


def test_residuals_are_pure_and_zero_at_truth():
    rig = make_rig(1, (640, 480), distortion_strength=0.3, rng=np.random.default_rng(0))
    target = TargetConfig()
    poses = sample_target_poses(rig, target, 1, np.random.default_rng(1))
    smp = make_samples(rig, target, poses)[0][0]
    layout = ParameterLayout(
        intrinsics={0: slice(0, 9)},
        camera_pose={},
        target_pose={0: slice(9, 15)},
        fixed={},
        size=15,
    )
    x = np.concatenate([rig.profiles[0].params(), matrix_to_rotvec(poses[0].R), poses[0].t])
    obs = [Observation(0, 0, smp.object_points, smp.image_points)]

    r1 = bundle_residuals(x, layout, obs)
    r2 = bundle_residuals(x.copy(), layout, obs)
    assert r1.shape == (2 * smp.n_points,)
    assert np.array_equal(r1, r2)
    assert np.max(np.abs(r1)) < 1e-9

    x_bad = x.copy()
    x_bad[0] += 5.0
    assert np.max(np.abs(bundle_residuals(x_bad, layout, obs))) > 0.1

    with pytest.raises(ValueError):
        bundle_residuals(x[:-1], layout, obs)


def test_bundle_adjustment_reduces_error_and_recovers_rig():
    rig, state, samples = _setup()
    profiles, report = bundle_adjust(state, samples, BundleConfig())

    assert report.success
    assert report.optimized_cameras == [0, 1, 2]
    assert report.fixed_cameras == []
    assert report.final_rms_px < report.initial_rms_px
    assert report.final_rms_px < 0.3
    assert set(report.per_camera_rms_px) == {0, 1, 2}
    assert report.n_parameters == 9 + 2 * 15 + 12 * 6

    assert np.allclose(profiles[0].rotation, np.eye(3))
    assert np.allclose(profiles[0].translation, 0.0)
    for cid in (0, 1, 2):
        assert abs(profiles[cid].fx - rig.profiles[cid].fx) / rig.profiles[cid].fx < 5e-3
        assert np.max(np.abs(profiles[cid].translation - rig.profiles[cid].translation)) < 2.0


def test_under_observed_camera_is_held_fixed():
    rig, state, samples = _setup(seed=1)
    samples = dict(samples)
    samples[2] = samples[2][:5]
    profiles, report = bundle_adjust(state, samples, BundleConfig(min_samples=10))

    assert report.fixed_cameras == [2]
    assert report.optimized_cameras == [0, 1]
    assert profiles[2] is state.profiles[2]
    assert [i.kind for i in report.issues] == ["InsufficientSamples"]
    assert report.issues[0].camera_id == 2
    assert report.final_rms_px <= report.initial_rms_px

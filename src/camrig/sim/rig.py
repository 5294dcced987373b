"""
Synthetic multi-camera rigs: ground-truth profiles, target poses that every
camera sees, projected observations and simple ray-plane renders.
"""
from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from camrig.calib.target import CalibrationSample, planar_target_points
from camrig.config import TargetConfig
from camrig.core.camera import CameraProfile
from camrig.core.distortion import BrownDistortion
from camrig.core.geometry import invert_pose, transform_points


@dataclass(frozen=True)
class SyntheticRig:
    image_size: tuple[int, int]
    profiles: dict[int, CameraProfile]

    @property
    def camera_ids(self) -> list[int]:
        return sorted(self.profiles)


@dataclass(frozen=True)
class TargetPose:
    """Target frame -> reference camera frame: X_ref = R X_target + t."""

    R: np.ndarray
    t: np.ndarray


def _rot_x(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[1, 0, 0], [0, ca, -sa], [0, sa, ca]], dtype=np.float64)


def _rot_y(a: float) -> np.ndarray:
    ca, sa = np.cos(a), np.sin(a)
    return np.array([[ca, 0, sa], [0, 1, 0], [-sa, 0, ca]], dtype=np.float64)


def _make_distortion(strength: float, rng: np.random.Generator) -> BrownDistortion:
    s = float(strength)
    if s <= 0.0:
        return BrownDistortion()
    return BrownDistortion(
        k1=float(rng.uniform(-0.25, 0.25) * s),
        k2=float(rng.uniform(-0.15, 0.15) * s),
        p1=float(rng.uniform(-0.02, 0.02) * s),
        p2=float(rng.uniform(-0.02, 0.02) * s),
        k3=0.0,
    )


def make_rig(
    camera_count: int = 2,
    image_size: tuple[int, int] = (640, 480),
    *,
    focal_px: float = 800.0,
    baseline_mm: float = 60.0,
    toe_in_rad: float = 0.0,
    distortion_strength: float = 0.0,
    rng: np.random.Generator | None = None,
) -> SyntheticRig:
    """
    Cameras on a horizontal line, `baseline_mm` apart, camera 0 as reference.
    Focal length and principal point are jittered per camera.
    """
    if camera_count < 1:
        raise ValueError("camera_count must be >= 1")
    rng = np.random.default_rng(0) if rng is None else rng
    w, h = int(image_size[0]), int(image_size[1])
    profiles: dict[int, CameraProfile] = {}
    for k in range(int(camera_count)):
        fx = float(focal_px * rng.uniform(0.97, 1.03))
        fy = float(fx * rng.uniform(0.995, 1.005))
        cx = float((w - 1) / 2.0 + rng.uniform(-8.0, 8.0))
        cy = float((h - 1) / 2.0 + rng.uniform(-6.0, 6.0))
        if k == 0:
            R = np.eye(3, dtype=np.float64)
            t = np.zeros((3,), dtype=np.float64)
        else:
            # camera k sits at +k*baseline along x of the reference frame
            R = _rot_y(float(toe_in_rad) * k)
            t = -R @ np.array([k * float(baseline_mm), 0.0, 0.0], dtype=np.float64)
        profiles[k] = CameraProfile(
            fx=fx,
            fy=fy,
            cx=cx,
            cy=cy,
            distortion=_make_distortion(distortion_strength, rng),
            rotation=R,
            translation=t,
        )
    return SyntheticRig(image_size=(w, h), profiles=profiles)


def _in_image(uv: np.ndarray, w: int, h: int, margin: float = 0.0) -> np.ndarray:
    return (
        np.isfinite(uv).all(axis=1)
        & (uv[:, 0] >= margin)
        & (uv[:, 0] <= (w - 1) - margin)
        & (uv[:, 1] >= margin)
        & (uv[:, 1] <= (h - 1) - margin)
    )


def sample_target_poses(
    rig: SyntheticRig,
    target: TargetConfig,
    n_poses: int,
    rng: np.random.Generator,
    *,
    distance_mm: float = 600.0,
    max_tilt_rad: float = 0.45,
    margin_px: float = 10.0,
) -> list[TargetPose]:
    """
    Random target poses in front of the rig, rejection-sampled until every
    target corner is inside every camera's image.
    """
    w, h = rig.image_size
    obj = planar_target_points(target)
    centre = obj.mean(axis=0)
    rig_centre_x = float(np.mean([invert_pose(p.rotation, p.translation)[1][0] for p in rig.profiles.values()]))

    poses: list[TargetPose] = []
    attempts = 0
    while len(poses) < int(n_poses):
        attempts += 1
        if attempts > 200 * max(int(n_poses), 1):
            raise RuntimeError("could not sample target poses visible in every camera")
        tz = float(distance_mm * rng.uniform(0.8, 1.2))
        tx = rig_centre_x + float(rng.uniform(-0.1, 0.1) * tz)
        ty = float(rng.uniform(-0.08, 0.08) * tz)
        tilt_x = float(rng.uniform(-max_tilt_rad, max_tilt_rad))
        tilt_y = float(rng.uniform(-max_tilt_rad, max_tilt_rad))
        R = _rot_y(tilt_y) @ _rot_x(tilt_x)
        # rotate about the target centre
        t = np.array([tx, ty, tz], dtype=np.float64) - R @ centre
        P_ref = transform_points(R, t, obj)
        ok = True
        for prof in rig.profiles.values():
            P_cam = transform_points(prof.rotation, prof.translation, P_ref)
            if np.any(P_cam[:, 2] <= 0.0) or not np.all(_in_image(prof.project(P_ref), w, h, margin_px)):
                ok = False
                break
        if ok:
            poses.append(TargetPose(R=R, t=t))
    return poses


def observe_targets(
    rig: SyntheticRig,
    target: TargetConfig,
    poses: list[TargetPose],
    *,
    noise_px: float = 0.0,
    rng: np.random.Generator | None = None,
) -> dict[int, list[np.ndarray]]:
    """Projected corner pixels (N,2) per camera per pose, optionally with Gaussian noise."""
    rng = np.random.default_rng(0) if rng is None else rng
    obj = planar_target_points(target)
    out: dict[int, list[np.ndarray]] = {cid: [] for cid in rig.camera_ids}
    for pose in poses:
        P_ref = transform_points(pose.R, pose.t, obj)
        for cid in rig.camera_ids:
            uv = rig.profiles[cid].project(P_ref)
            if noise_px > 0.0:
                uv = uv + rng.normal(0.0, float(noise_px), size=uv.shape)
            out[cid].append(uv)
    return out


def make_samples(
    rig: SyntheticRig,
    target: TargetConfig,
    poses: list[TargetPose],
    *,
    noise_px: float = 0.0,
    rng: np.random.Generator | None = None,
) -> dict[int, list[CalibrationSample]]:
    obj = planar_target_points(target)
    obs = observe_targets(rig, target, poses, noise_px=noise_px, rng=rng)
    return {cid: [CalibrationSample(object_points=obj, image_points=uv) for uv in uvs] for cid, uvs in obs.items()}


def _pixel_rays(profile: CameraProfile, image_size: tuple[int, int]) -> tuple[np.ndarray, np.ndarray]:
    """Camera centre and per-pixel ray directions (H,W,3), both in the reference frame."""
    w, h = int(image_size[0]), int(image_size[1])
    uu, vv = np.meshgrid(np.arange(w, dtype=np.float64), np.arange(h, dtype=np.float64))
    uv = np.stack([uu.reshape(-1), vv.reshape(-1)], axis=1)
    ideal = profile.undistort_pixels(uv)
    d_cam = np.stack(
        [(ideal[:, 0] - profile.cx) / profile.fx, (ideal[:, 1] - profile.cy) / profile.fy, np.ones(ideal.shape[0])],
        axis=1,
    )
    R_inv, centre = invert_pose(profile.rotation, profile.translation)
    d_ref = d_cam @ R_inv.T
    return centre, d_ref.reshape(h, w, 3)


def _plane_coords(
    profile: CameraProfile, image_size: tuple[int, int], R_plane: np.ndarray, t_plane: np.ndarray
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Intersect every pixel ray with the plane Z=0 of the frame X_ref = R_plane X + t_plane.
    Returns plane-local (x, y) in mm and a validity mask.
    """
    centre, d = _pixel_rays(profile, image_size)
    n = R_plane @ np.array([0.0, 0.0, 1.0], dtype=np.float64)
    denom = d @ n
    denom = np.where(np.abs(denom) < 1e-9, np.nan, denom)
    s = ((t_plane - centre) @ n) / denom
    X = centre[None, None, :] + s[..., None] * d
    Xp = (X - t_plane[None, None, :]) @ R_plane
    valid = np.isfinite(s) & (s > 0)
    return Xp[..., 0], Xp[..., 1], valid


def render_target_view(
    rig: SyntheticRig, camera_id: int, pose: TargetPose, target: TargetConfig, *, blur_sigma_px: float = 0.7
) -> np.ndarray:
    """
    Render the chessboard seen by one camera as an (H,W,3) uint8 BGR image.
    The board has one extra square on every side plus a one-square white border,
    so `cv2.findChessboardCorners` finds exactly `cols x rows` internal corners.
    """
    s = float(target.spacing_mm)
    xp, yp, valid = _plane_coords(rig.profiles[camera_id], rig.image_size, pose.R, pose.t)
    board = valid & (xp >= -s) & (xp <= target.cols * s) & (yp >= -s) & (yp <= target.rows * s)
    border = valid & (xp >= -2 * s) & (xp <= (target.cols + 1) * s) & (yp >= -2 * s) & (yp <= (target.rows + 1) * s)
    with np.errstate(invalid="ignore"):
        parity = (np.floor(np.nan_to_num(xp) / s) + np.floor(np.nan_to_num(yp) / s)).astype(np.int64) % 2
    img = np.full(xp.shape, 110.0, dtype=np.float32)
    img[border] = 255.0
    img[board & (parity == 0)] = 20.0
    img[board & (parity == 1)] = 235.0
    if blur_sigma_px > 0:
        img = cv2.GaussianBlur(img, ksize=(0, 0), sigmaX=float(blur_sigma_px))
    gray = np.clip(img + 0.5, 0, 255).astype(np.uint8)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)


def make_texture(size_px: int, rng: np.random.Generator, *, cell_px: int = 8) -> np.ndarray:
    """Random blob texture (uint8) rich in corners and gradients."""
    coarse = rng.uniform(0.0, 255.0, size=(size_px // cell_px, size_px // cell_px)).astype(np.float32)
    tex = cv2.resize(coarse, (size_px, size_px), interpolation=cv2.INTER_CUBIC)
    fine = rng.uniform(-40.0, 40.0, size=(size_px, size_px)).astype(np.float32)
    tex = cv2.GaussianBlur(tex + fine, ksize=(0, 0), sigmaX=1.0)
    return np.clip(tex, 0, 255).astype(np.uint8)


def render_textured_plane(
    rig: SyntheticRig,
    camera_id: int,
    texture: np.ndarray,
    *,
    distance_mm: float = 600.0,
    extent_mm: float = 1200.0,
) -> np.ndarray:
    """
    Fronto-parallel textured plane at Z=`distance_mm` of the reference frame,
    centred on the rig, rendered by ray casting into one camera (H,W,3 BGR).
    """
    centres = [invert_pose(p.rotation, p.translation)[1] for p in rig.profiles.values()]
    cx_mm = float(np.mean([c[0] for c in centres]))
    t_plane = np.array([cx_mm - 0.5 * extent_mm, -0.5 * extent_mm, float(distance_mm)], dtype=np.float64)
    xp, yp, valid = _plane_coords(rig.profiles[camera_id], rig.image_size, np.eye(3), t_plane)
    th, tw = texture.shape[:2]
    map_x = np.where(valid, xp / float(extent_mm) * (tw - 1), -1.0).astype(np.float32)
    map_y = np.where(valid, yp / float(extent_mm) * (th - 1), -1.0).astype(np.float32)
    gray = cv2.remap(texture, map_x, map_y, interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT, borderValue=0)
    return cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)

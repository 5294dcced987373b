from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np
from scipy.optimize import least_squares
from scipy.spatial.transform import Rotation

from camrig.calib.target import CalibrationSample
from camrig.config import StereoConfig
from camrig.core.camera import CameraProfile, project_with_params
from camrig.core.geometry import essential_matrix, fundamental_matrix, rotvec_to_matrix, transform_points
from camrig.errors import CalibrationDegenerateError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RectificationMap:
    """
    Remap LUT for one camera of a stereo pair: rectified pixel (u,v) samples
    the distorted source image at (map_x[v,u], map_y[v,u]).
    """

    camera_id: int
    map_x: np.ndarray  # (H,W) float32
    map_y: np.ndarray  # (H,W) float32
    rect_rotation: np.ndarray  # (3,3)
    rect_projection: np.ndarray  # (3,4)

    def apply(self, img: np.ndarray) -> np.ndarray:
        return cv2.remap(img, self.map_x, self.map_y, interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_CONSTANT)


@dataclass(frozen=True)
class StereoRig:
    """
    Calibrated pair (a, b), convention X_b = R X_a + T.

    Q maps (u, v, disparity, 1) in rectified camera-a pixels to homogeneous
    metric 3D in the rectified camera-a frame.
    """

    camera_a: int
    camera_b: int
    R: np.ndarray  # (3,3)
    T: np.ndarray  # (3,)
    E: np.ndarray  # (3,3)
    F: np.ndarray  # (3,3)
    Q: np.ndarray  # (4,4)
    map_a: RectificationMap
    map_b: RectificationMap
    rms_px: float = float("nan")
    condition_number: float = float("nan")
    diagnostics: dict[str, float] = field(default_factory=dict)

    @property
    def pair(self) -> tuple[int, int]:
        return (self.camera_a, self.camera_b)

    @property
    def baseline_mm(self) -> float:
        return float(np.linalg.norm(self.T))


def build_stereo_rig(
    camera_a: int,
    camera_b: int,
    profile_a: CameraProfile,
    profile_b: CameraProfile,
    R: np.ndarray,
    T: np.ndarray,
    image_size: tuple[int, int],
    *,
    alpha: float = 1.0,
    rms_px: float = float("nan"),
    condition_number: float = float("nan"),
    diagnostics: dict[str, float] | None = None,
) -> StereoRig:
    """
    Derive E/F, rectifying rotations (Bouguet's split of R into two half
    rotations followed by alignment of the baseline with the x axis), P1/P2, Q
    and both remap LUTs. Deterministic in its inputs.
    """
    w, h = int(image_size[0]), int(image_size[1])
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    T = np.asarray(T, dtype=np.float64).reshape(3)
    K_a, d_a = profile_a.K(), profile_a.dist()
    K_b, d_b = profile_b.K(), profile_b.dist()

    E = essential_matrix(R, T)
    F = fundamental_matrix(K_a, K_b, E)

    R1, R2, P1, P2, Q, _roi1, _roi2 = cv2.stereoRectify(
        K_a,
        d_a,
        K_b,
        d_b,
        (w, h),
        R,
        T.reshape(3, 1),
        flags=cv2.CALIB_ZERO_DISPARITY,
        alpha=float(alpha),
        newImageSize=(w, h),
    )
    mx_a, my_a = cv2.initUndistortRectifyMap(K_a, d_a, R1, P1, (w, h), cv2.CV_32FC1)
    mx_b, my_b = cv2.initUndistortRectifyMap(K_b, d_b, R2, P2, (w, h), cv2.CV_32FC1)

    return StereoRig(
        camera_a=int(camera_a),
        camera_b=int(camera_b),
        R=R,
        T=T,
        E=E,
        F=F,
        Q=np.asarray(Q, dtype=np.float64),
        map_a=RectificationMap(int(camera_a), mx_a, my_a, np.asarray(R1, dtype=np.float64), np.asarray(P1, dtype=np.float64)),
        map_b=RectificationMap(int(camera_b), mx_b, my_b, np.asarray(R2, dtype=np.float64), np.asarray(P2, dtype=np.float64)),
        rms_px=float(rms_px),
        condition_number=float(condition_number),
        diagnostics=dict(diagnostics or {}),
    )


def relative_extrinsics(profile_a: CameraProfile, profile_b: CameraProfile) -> tuple[np.ndarray, np.ndarray]:
    """(R, T) with X_b = R X_a + T from two reference-relative profiles."""
    R = profile_b.rotation @ profile_a.rotation.T
    T = profile_b.translation - R @ profile_a.translation
    return R, T


def rectify_points(profile: CameraProfile, rect: RectificationMap, uv_px: np.ndarray) -> np.ndarray:
    """Distorted source pixels -> rectified pixels of the same camera."""
    uv = np.asarray(uv_px, dtype=np.float64).reshape(-1, 1, 2)
    out = cv2.undistortPoints(uv, profile.K(), profile.dist(), R=rect.rect_rotation, P=rect.rect_projection)
    return np.asarray(out, dtype=np.float64).reshape(-1, 2)


def _solve_pnp(profile: CameraProfile, smp: CalibrationSample) -> tuple[np.ndarray, np.ndarray]:
    ok, rvec, tvec = cv2.solvePnP(smp.object_points, smp.image_points, profile.K(), profile.dist(), flags=cv2.SOLVEPNP_ITERATIVE)
    if not ok:
        raise CalibrationDegenerateError("solvePnP failed on a stereo sample")
    return np.asarray(rvec, dtype=np.float64).reshape(3), np.asarray(tvec, dtype=np.float64).reshape(3)


def _column_normalized_condition(J: np.ndarray) -> float:
    J = np.asarray(J, dtype=np.float64)
    norms = np.linalg.norm(J, axis=0)
    if np.any(norms < 1e-12):
        return float("inf")
    return float(np.linalg.cond(J / norms))


def calibrate_stereo_pair(
    camera_a: int,
    camera_b: int,
    profile_a: CameraProfile,
    profile_b: CameraProfile,
    samples_a: list[CalibrationSample],
    samples_b: list[CalibrationSample],
    image_size: tuple[int, int],
    config: StereoConfig,
) -> StereoRig:
    """
    Estimate (R, T) for a pair with both intrinsics held fixed.

    Samples are synchronized by index: sample i of camera a and sample i of
    camera b see the same target pose. Minimizes the combined reprojection
    error of both cameras over (R, T) and every target pose.
    """
    n = min(len(samples_a), len(samples_b))
    if n < 1:
        raise CalibrationDegenerateError(f"no shared samples for pair ({camera_a}, {camera_b})")
    pairs = list(zip(samples_a[:n], samples_b[:n], strict=True))
    for sa, sb in pairs:
        if sa.object_points.shape != sb.object_points.shape or not np.allclose(sa.object_points, sb.object_points):
            raise ValueError("stereo samples must observe the same target layout")

    poses_a = [_solve_pnp(profile_a, sa) for sa, _sb in pairs]
    poses_b = [_solve_pnp(profile_b, sb) for _sa, sb in pairs]
    rel_R = []
    rel_T = []
    for (rva, tva), (rvb, tvb) in zip(poses_a, poses_b, strict=True):
        Ra = rotvec_to_matrix(rva)
        Rb = rotvec_to_matrix(rvb)
        Rab = Rb @ Ra.T
        rel_R.append(Rab)
        rel_T.append(tvb - Rab @ tva)
    R0 = Rotation.from_matrix(np.asarray(rel_R)).mean().as_rotvec()
    T0 = np.median(np.asarray(rel_T), axis=0)

    intr_a = profile_a.params()
    intr_b = profile_b.params()
    p0 = np.concatenate([R0, T0] + [np.concatenate([rv, tv]) for rv, tv in poses_a])

    def fun(p: np.ndarray) -> np.ndarray:
        R = rotvec_to_matrix(p[:3])
        T = p[3:6]
        poses = p[6:].reshape(-1, 6)
        res_parts: list[np.ndarray] = []
        for (sa, sb), pose in zip(pairs, poses, strict=True):
            P_a = transform_points(rotvec_to_matrix(pose[:3]), pose[3:], sa.object_points)
            P_b = transform_points(R, T, P_a)
            res_parts.append(np.nan_to_num(project_with_params(intr_a, P_a) - sa.image_points, nan=1e3).reshape(-1))
            res_parts.append(np.nan_to_num(project_with_params(intr_b, P_b) - sb.image_points, nan=1e3).reshape(-1))
        return np.concatenate(res_parts, axis=0)

    sol = least_squares(
        fun,
        p0,
        method="trf",
        x_scale="jac",
        ftol=float(config.rel_tolerance),
        xtol=float(config.rel_tolerance) * 1e-3,
        max_nfev=int(config.max_iterations),
    )

    cond = _column_normalized_condition(sol.jac)
    if not np.isfinite(cond) or cond > float(config.max_condition_number):
        raise CalibrationDegenerateError(
            f"ill-conditioned stereo solve for pair ({camera_a}, {camera_b})", condition_number=cond
        )

    R = rotvec_to_matrix(sol.x[:3])
    T = sol.x[3:6].copy()
    residuals = sol.fun.reshape(-1, 2)
    rms = float(np.sqrt(np.mean(np.sum(residuals * residuals, axis=1))))
    logger.info(
        "stereo pair (%d, %d): RMS %.4f px, baseline %.2f mm, cond %.3g",
        camera_a,
        camera_b,
        rms,
        float(np.linalg.norm(T)),
        cond,
    )

    diag = {
        "opt_cost": float(sol.cost),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_samples": float(n),
    }
    return build_stereo_rig(
        camera_a,
        camera_b,
        profile_a,
        profile_b,
        R,
        T,
        image_size,
        alpha=config.alpha,
        rms_px=rms,
        condition_number=cond,
        diagnostics=diag,
    )

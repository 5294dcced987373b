"""
Single-camera intrinsic calibration from views of a planar target (Zhang).

1. one homography per view (normalized DLT),
2. closed-form K from the stack of homographies (B = K^-T K^-1, zero skew),
3. per-view pose from H and K,
4. joint least-squares refinement of K, distortion and all poses on
   reprojection error.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
from scipy.optimize import least_squares

from camrig.calib.target import CalibrationSample
from camrig.config import IntrinsicsConfig
from camrig.core.camera import CameraProfile, project_with_params
from camrig.core.geometry import matrix_to_rotvec, rotvec_to_matrix, transform_points
from camrig.errors import InsufficientSamplesError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntrinsicsResult:
    camera_id: int
    profile: CameraProfile
    rvecs: list[np.ndarray]  # per sample, target -> camera
    tvecs: list[np.ndarray]
    rms_px: float
    suspect: bool
    diagnostics: dict[str, float] = field(default_factory=dict)


def _normalizing_transform(pts: np.ndarray) -> np.ndarray:
    c = pts.mean(axis=0)
    d = np.sqrt(np.sum((pts - c) ** 2, axis=1)).mean()
    s = np.sqrt(2.0) / d if d > 0 else 1.0
    return np.array([[s, 0.0, -s * c[0]], [0.0, s, -s * c[1]], [0.0, 0.0, 1.0]], dtype=np.float64)


def estimate_homography(obj_xy: np.ndarray, uv: np.ndarray) -> np.ndarray:
    """
    Normalized DLT homography H with [u v 1]^T ~ H [X Y 1]^T, scaled so H[2,2] = 1.
    """
    obj_xy = np.asarray(obj_xy, dtype=np.float64).reshape(-1, 2)
    uv = np.asarray(uv, dtype=np.float64).reshape(-1, 2)
    if obj_xy.shape[0] < 4:
        raise ValueError("homography needs >= 4 points")
    T_obj = _normalizing_transform(obj_xy)
    T_img = _normalizing_transform(uv)
    a = (np.column_stack([obj_xy, np.ones(obj_xy.shape[0])]) @ T_obj.T)[:, :2]
    b = (np.column_stack([uv, np.ones(uv.shape[0])]) @ T_img.T)[:, :2]

    n = a.shape[0]
    A = np.zeros((2 * n, 9), dtype=np.float64)
    X, Y = a[:, 0], a[:, 1]
    u, v = b[:, 0], b[:, 1]
    A[0::2, 0] = X
    A[0::2, 1] = Y
    A[0::2, 2] = 1.0
    A[0::2, 6] = -u * X
    A[0::2, 7] = -u * Y
    A[0::2, 8] = -u
    A[1::2, 3] = X
    A[1::2, 4] = Y
    A[1::2, 5] = 1.0
    A[1::2, 6] = -v * X
    A[1::2, 7] = -v * Y
    A[1::2, 8] = -v
    _u, _s, vt = np.linalg.svd(A)
    Hn = vt[-1].reshape(3, 3)
    H = np.linalg.inv(T_img) @ Hn @ T_obj
    return H / H[2, 2]


def _v(H: np.ndarray, i: int, j: int) -> np.ndarray:
    hi = H[:, i]
    hj = H[:, j]
    return np.array(
        [
            hi[0] * hj[0],
            hi[0] * hj[1] + hi[1] * hj[0],
            hi[1] * hj[1],
            hi[2] * hj[0] + hi[0] * hj[2],
            hi[2] * hj[1] + hi[1] * hj[2],
            hi[2] * hj[2],
        ],
        dtype=np.float64,
    )


def intrinsics_from_homographies(
    homographies: list[np.ndarray],
    image_size: tuple[int, int],
    *,
    fix_principal_point: bool = False,
) -> np.ndarray:
    """
    Closed-form zero-skew K from planar homographies.

    Pixel coordinates are first mapped by a similarity N centred on the image,
    which keeps the B system well scaled; K = N^-1 K_n. With
    `fix_principal_point`, the principal point is pinned at the image centre.
    """
    w, h = int(image_size[0]), int(image_size[1])
    c_u = (w - 1) / 2.0
    c_v = (h - 1) / 2.0
    s = 1.0 / float(max(w, h))
    N = np.array([[s, 0.0, -s * c_u], [0.0, s, -s * c_v], [0.0, 0.0, 1.0]], dtype=np.float64)

    rows: list[np.ndarray] = []
    for H in homographies:
        Hn = N @ np.asarray(H, dtype=np.float64).reshape(3, 3)
        Hn = Hn / np.linalg.norm(Hn)
        rows.append(_v(Hn, 0, 1))
        rows.append(_v(Hn, 0, 0) - _v(Hn, 1, 1))
    V = np.asarray(rows, dtype=np.float64)

    # b = (B11, B12, B22, B13, B23, B33); zero skew removes B12.
    if fix_principal_point:
        cols = [0, 2, 5]
    else:
        cols = [0, 2, 3, 4, 5]
    _u, _s, vt = np.linalg.svd(V[:, cols])
    b_red = vt[-1]
    b = np.zeros((6,), dtype=np.float64)
    b[cols] = b_red
    if b[0] < 0:
        b = -b
    B11, _B12, B22, B13, B23, B33 = b.tolist()
    if B11 <= 0 or B22 <= 0:
        raise ValueError("closed-form intrinsics failed: B is not positive definite")

    v0 = -B23 / B22
    u0 = -B13 / B11
    lam = B33 - B13 * B13 / B11 - B23 * B23 / B22
    if lam <= 0:
        raise ValueError("closed-form intrinsics failed: negative scale")
    alpha = np.sqrt(lam / B11)
    beta = np.sqrt(lam / B22)
    K_n = np.array([[alpha, 0.0, u0], [0.0, beta, v0], [0.0, 0.0, 1.0]], dtype=np.float64)
    K = np.linalg.inv(N) @ K_n
    return K / K[2, 2]


def pose_from_homography(K: np.ndarray, H: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Target->camera (rvec, tvec) from a planar homography, target in front of the camera."""
    Kinv = np.linalg.inv(K)
    h1, h2, h3 = (Kinv @ H[:, i] for i in range(3))
    lam = 1.0 / np.linalg.norm(h1)
    r1 = lam * h1
    r2 = lam * h2
    t = lam * h3
    if t[2] < 0:
        r1, r2, t = -r1, -r2, -t
    R = np.column_stack([r1, r2, np.cross(r1, r2)])
    U, _s, Vt = np.linalg.svd(R)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        R = U @ np.diag([1.0, 1.0, -1.0]) @ Vt
    return matrix_to_rotvec(R), t


def reprojection_rms(intr: np.ndarray, samples: list[CalibrationSample], rvecs, tvecs) -> float:
    sq = 0.0
    n = 0
    for smp, rv, tv in zip(samples, rvecs, tvecs, strict=True):
        uv = project_with_params(intr, transform_points(rotvec_to_matrix(rv), tv, smp.object_points))
        e = uv - smp.image_points
        sq += float(np.nansum(e * e))
        n += smp.n_points
    return float(np.sqrt(sq / max(n, 1)))


def calibrate_intrinsics(
    camera_id: int,
    samples: list[CalibrationSample],
    image_size: tuple[int, int],
    config: IntrinsicsConfig,
) -> IntrinsicsResult:
    if len(samples) < int(config.min_samples):
        raise InsufficientSamplesError(camera_id, len(samples), int(config.min_samples))

    w, h = int(image_size[0]), int(image_size[1])
    Hs = [estimate_homography(s.object_points[:, :2], s.image_points) for s in samples]
    K0 = intrinsics_from_homographies(Hs, (w, h), fix_principal_point=config.fix_principal_point)
    poses0 = [pose_from_homography(K0, H) for H in Hs]
    logger.debug("camera %d: closed-form K\n%s", camera_id, K0)

    intr0 = np.array([K0[0, 0], K0[1, 1], K0[0, 2], K0[1, 2], 0.0, 0.0, 0.0, 0.0, 0.0], dtype=np.float64)
    if config.fix_principal_point:
        intr0[2] = (w - 1) / 2.0
        intr0[3] = (h - 1) / 2.0

    free = [0, 1, 4, 5, 8]
    if not config.fix_principal_point:
        free += [2, 3]
    if not config.zero_tangent_dist:
        free += [6, 7]
    free = sorted(free)
    n_free = len(free)

    p0 = np.concatenate([intr0[free]] + [np.concatenate([rv, tv]) for rv, tv in poses0])

    def unpack(p: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        intr = intr0.copy()
        intr[free] = p[:n_free]
        return intr, p[n_free:].reshape(-1, 6)

    def fun(p: np.ndarray) -> np.ndarray:
        intr, poses = unpack(p)
        res_parts: list[np.ndarray] = []
        for smp, pose in zip(samples, poses, strict=True):
            P_cam = transform_points(rotvec_to_matrix(pose[:3]), pose[3:], smp.object_points)
            uv = project_with_params(intr, P_cam)
            res_parts.append(np.nan_to_num(uv - smp.image_points, nan=1e3).reshape(-1))
        return np.concatenate(res_parts, axis=0)

    sol = least_squares(
        fun,
        p0,
        method="trf",
        x_scale="jac",
        ftol=1e-12,
        xtol=1e-12,
        gtol=1e-12,
        max_nfev=int(config.max_nfev),
    )

    intr, poses = unpack(sol.x)
    rvecs = [pose[:3].copy() for pose in poses]
    tvecs = [pose[3:].copy() for pose in poses]
    rms = reprojection_rms(intr, samples, rvecs, tvecs)
    suspect = bool(rms > float(config.suspect_rms_px))
    profile = CameraProfile.from_params(intr, rms_px=rms)

    if suspect:
        logger.warning("camera %d: calibration RMS %.3f px above %.2f px, suspect", camera_id, rms, config.suspect_rms_px)
    else:
        logger.info("camera %d calibrated: RMS %.4f px over %d samples", camera_id, rms, len(samples))

    diag = {
        "opt_cost": float(sol.cost),
        "opt_nfev": float(sol.nfev),
        "opt_success": float(bool(sol.success)),
        "n_samples": float(len(samples)),
    }
    return IntrinsicsResult(
        camera_id=int(camera_id),
        profile=profile,
        rvecs=rvecs,
        tvecs=tvecs,
        rms_px=rms,
        suspect=suspect,
        diagnostics=diag,
    )

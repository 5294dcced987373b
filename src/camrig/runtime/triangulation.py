from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

import numpy as np

from camrig.config import TriangulationConfig
from camrig.core.camera import CameraProfile
from camrig.core.geometry import triangulate_dlt
from camrig.errors import InsufficientCorrespondencesError

logger = logging.getLogger(__name__)

Quality = Literal["high", "degraded", "unreliable"]


@dataclass(frozen=True)
class TriangulationResult:
    """
    Sparse 3D points in the camera-a frame.

    `errors_px` is the per-point mean of both views' reprojection errors,
    measured through the full camera models (with distortion).
    """

    camera_a: int
    camera_b: int
    points: np.ndarray  # (N,3) mm
    errors_px: np.ndarray  # (N,)
    mean_error_px: float
    quality: Quality

    def __len__(self) -> int:
        return int(self.points.shape[0])


def classify_error(mean_error_px: float, config: TriangulationConfig) -> Quality:
    if mean_error_px < float(config.high_quality_px):
        return "high"
    if mean_error_px < float(config.degraded_px):
        return "degraded"
    return "unreliable"


def triangulate_pair(
    profile_a: CameraProfile,
    profile_b: CameraProfile,
    R: np.ndarray,
    T: np.ndarray,
    uv_a: np.ndarray,
    uv_b: np.ndarray,
    config: TriangulationConfig,
    *,
    camera_a: int = 0,
    camera_b: int = 1,
) -> TriangulationResult:
    """
    Triangulate matched (distorted) pixels of a calibrated pair with
    X_b = R X_a + T.

    Observations are undistorted first, so the DLT works on ideal pinhole
    pixels with P_a = K_a [I | 0] and P_b = K_b [R | T].
    """
    uv_a = np.asarray(uv_a, dtype=np.float64).reshape(-1, 2)
    uv_b = np.asarray(uv_b, dtype=np.float64).reshape(-1, 2)
    if uv_a.shape[0] != uv_b.shape[0]:
        raise ValueError("uv_a and uv_b must have the same length")
    n = uv_a.shape[0]
    if n < int(config.min_correspondences):
        raise InsufficientCorrespondencesError(n, int(config.min_correspondences))

    # both cameras expressed in camera-a coordinates, independent of where a sits in the rig
    a_local = profile_a.with_extrinsics(np.eye(3), np.zeros(3))
    b_local = profile_b.with_extrinsics(R, T)
    X = triangulate_dlt(
        a_local.projection_matrix(),
        b_local.projection_matrix(),
        profile_a.undistort_pixels(uv_a),
        profile_b.undistort_pixels(uv_b),
    )

    err_a = np.linalg.norm(a_local.project(X) - uv_a, axis=1)
    err_b = np.linalg.norm(b_local.project(X) - uv_b, axis=1)
    errors = 0.5 * (err_a + err_b)
    errors = np.where(np.isfinite(errors), errors, np.inf)

    mean_err = float(np.mean(errors)) if n else float("nan")
    quality = classify_error(mean_err, config)
    logger.info("triangulated %d points (%d, %d): mean error %.3f px, %s", n, camera_a, camera_b, mean_err, quality)
    return TriangulationResult(
        camera_a=int(camera_a),
        camera_b=int(camera_b),
        points=X,
        errors_px=errors,
        mean_error_px=mean_err,
        quality=quality,
    )

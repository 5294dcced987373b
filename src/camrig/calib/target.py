from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from camrig.config import TargetConfig


@dataclass(frozen=True)
class CalibrationSample:
    """
    One view of the planar target by one camera.

    - `object_points`: target corners in the target frame (N,3), Z=0, mm
    - `image_points`: observed pixels, same order (N,2)
    """

    object_points: np.ndarray  # (N,3)
    image_points: np.ndarray  # (N,2)

    def __post_init__(self) -> None:
        obj = np.asarray(self.object_points, dtype=np.float64).reshape(-1, 3)
        img = np.asarray(self.image_points, dtype=np.float64).reshape(-1, 2)
        if obj.shape[0] != img.shape[0]:
            raise ValueError(f"object/image point counts differ: {obj.shape[0]} vs {img.shape[0]}")
        if obj.shape[0] < 4:
            raise ValueError("a calibration sample needs at least 4 points")
        if not np.all(np.isfinite(img)):
            raise ValueError("non-finite observed points")
        object.__setattr__(self, "object_points", obj)
        object.__setattr__(self, "image_points", img)

    @property
    def n_points(self) -> int:
        return int(self.object_points.shape[0])


def planar_target_points(target: TargetConfig) -> np.ndarray:
    """
    Internal-corner layout of the chessboard, row-major (rows outer, cols inner),
    matching the ordering of cv2.findChessboardCorners.
    """
    jj, ii = np.meshgrid(np.arange(target.cols, dtype=np.float64), np.arange(target.rows, dtype=np.float64))
    xy = np.stack([jj.reshape(-1), ii.reshape(-1)], axis=1) * float(target.spacing_mm)
    return np.concatenate([xy, np.zeros((xy.shape[0], 1), dtype=np.float64)], axis=1)


def make_sample(target: TargetConfig, observed_points: np.ndarray) -> CalibrationSample:
    obj = planar_target_points(target)
    img = np.asarray(observed_points, dtype=np.float64).reshape(-1, 2)
    if img.shape[0] != obj.shape[0]:
        raise ValueError(
            f"expected {obj.shape[0]} observed corners for a {target.cols}x{target.rows} target, got {img.shape[0]}"
        )
    return CalibrationSample(object_points=obj, image_points=img)


def detect_target_corners(gray: np.ndarray, target: TargetConfig) -> np.ndarray | None:
    """
    Locate the internal chessboard corners with sub-pixel refinement.

    Returns (N,2) pixels in `planar_target_points` order, or None if the full
    grid was not found.
    """
    gray = np.asarray(gray, dtype=np.uint8)
    pattern = (int(target.cols), int(target.rows))
    flags = cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
    found, corners = cv2.findChessboardCorners(gray, pattern, flags=flags)
    if not found or corners is None:
        return None
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 50, 1e-3)
    corners = cv2.cornerSubPix(gray, corners.astype(np.float32), (5, 5), (-1, -1), criteria)
    return np.asarray(corners, dtype=np.float64).reshape(-1, 2)

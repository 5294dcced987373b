from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from camrig.calib.stereo import StereoRig
from camrig.config import DepthConfig
from camrig.core.image_io import to_gray_u8

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepthResult:
    """
    Dense output of one rectified pair, in camera-a rectified pixels.

    - `disparity`: (H,W) float32 px, NaN where matching failed
    - `depth`: (H,W) float32 mm (Z in the rectified camera-a frame), smoothed, NaN where invalid
    - `valid_fraction`: share of pixels carrying a depth value
    """

    camera_a: int
    camera_b: int
    disparity: np.ndarray
    depth: np.ndarray
    valid_fraction: float

    def valid_depths(self) -> np.ndarray:
        d = self.depth[np.isfinite(self.depth)]
        return d.astype(np.float64, copy=False)


def create_matcher(config: DepthConfig) -> cv2.StereoSGBM:
    return cv2.StereoSGBM_create(
        minDisparity=int(config.min_disparity),
        numDisparities=int(config.num_disparities),
        blockSize=int(config.block_size),
        P1=int(config.p1),
        P2=int(config.p2),
        disp12MaxDiff=int(config.lr_max_diff_px),
        preFilterCap=int(config.pre_filter_cap),
        uniquenessRatio=int(config.uniqueness_ratio),
        speckleWindowSize=int(config.speckle_window_size),
        speckleRange=int(config.speckle_range),
        mode=cv2.STEREO_SGBM_MODE_SGBM_3WAY,
    )


def compute_disparity(rect_a: np.ndarray, rect_b: np.ndarray, config: DepthConfig) -> np.ndarray:
    """
    Semi-global matching on two rectified grayscale images.

    SGBM returns fixed-point disparities scaled by 16; pixels rejected by the
    left-right or uniqueness checks come back below `min_disparity`.
    """
    gray_a = to_gray_u8(rect_a)
    gray_b = to_gray_u8(rect_b)
    if gray_a.shape != gray_b.shape:
        raise ValueError(f"rectified images differ in shape: {gray_a.shape} vs {gray_b.shape}")
    raw = create_matcher(config).compute(gray_a, gray_b)
    disp = raw.astype(np.float32) / 16.0
    disp[disp < float(config.min_disparity)] = np.nan
    return disp


def disparity_to_depth(disparity: np.ndarray, Q: np.ndarray) -> np.ndarray:
    """Z of `cv2.reprojectImageTo3D`; NaN where disparity <= 0 or not finite."""
    disp = np.asarray(disparity, dtype=np.float32)
    good = np.isfinite(disp) & (disp > 0.0)
    filled = np.where(good, disp, 0.0).astype(np.float32)
    xyz = cv2.reprojectImageTo3D(filled, np.asarray(Q, dtype=np.float64), handleMissingValues=False)
    z = xyz[:, :, 2].astype(np.float32)
    good &= np.isfinite(z)
    return np.where(good, z, np.nan).astype(np.float32)


def smooth_depth(depth: np.ndarray, config: DepthConfig) -> np.ndarray:
    """Edge-preserving bilateral filter; invalid pixels stay NaN."""
    depth = np.asarray(depth, dtype=np.float32)
    valid = np.isfinite(depth)
    if not np.any(valid):
        return depth.copy()
    filled = np.where(valid, depth, 0.0).astype(np.float32)
    out = cv2.bilateralFilter(
        filled,
        int(config.bilateral_diameter),
        float(config.bilateral_sigma_color),
        float(config.bilateral_sigma_space),
    )
    return np.where(valid, out, np.nan).astype(np.float32)


def compute_depth(rig: StereoRig, img_a: np.ndarray, img_b: np.ndarray, config: DepthConfig) -> DepthResult:
    """Rectify both frames with the rig's maps, then disparity, depth and smoothing."""
    rect_a = rig.map_a.apply(img_a)
    rect_b = rig.map_b.apply(img_b)
    disparity = compute_disparity(rect_a, rect_b, config)
    depth = smooth_depth(disparity_to_depth(disparity, rig.Q), config)
    valid_fraction = float(np.count_nonzero(np.isfinite(depth))) / float(depth.size) if depth.size else 0.0
    logger.info(
        "dense depth (%d, %d): %.1f%% valid pixels", rig.camera_a, rig.camera_b, 100.0 * valid_fraction
    )
    return DepthResult(
        camera_a=rig.camera_a,
        camera_b=rig.camera_b,
        disparity=disparity,
        depth=depth,
        valid_fraction=valid_fraction,
    )

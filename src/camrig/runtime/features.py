from __future__ import annotations

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from camrig.config import FeatureConfig
from camrig.core.image_io import to_gray_u8

logger = logging.getLogger(__name__)

DESCRIPTOR_SIZE = 128


@dataclass(frozen=True)
class FeatureSet:
    """
    Keypoints of one frame.

    - `points`: (N,2) pixel locations (distorted source image)
    - `scales`: (N,) keypoint diameter in px
    - `orientations`: (N,) degrees
    - `descriptors`: (N,128) float32
    """

    camera_id: int
    points: np.ndarray
    scales: np.ndarray
    orientations: np.ndarray
    descriptors: np.ndarray

    def __len__(self) -> int:
        return int(self.points.shape[0])


@dataclass(frozen=True)
class CorrespondenceSet:
    """One-to-one index pairs into two FeatureSets, with descriptor distances."""

    camera_a: int
    camera_b: int
    index_a: np.ndarray  # (M,) int
    index_b: np.ndarray  # (M,) int
    distances: np.ndarray  # (M,) float

    def __len__(self) -> int:
        return int(self.index_a.shape[0])


def create_detector(config: FeatureConfig) -> cv2.SIFT:
    return cv2.SIFT_create(
        nfeatures=int(config.n_features),
        nOctaveLayers=int(config.n_octave_layers),
        contrastThreshold=float(config.contrast_threshold),
        edgeThreshold=float(config.edge_threshold),
        sigma=float(config.sigma),
    )


def detect_features(camera_id: int, img: np.ndarray, config: FeatureConfig) -> FeatureSet:
    gray = to_gray_u8(img)
    keypoints, desc = create_detector(config).detectAndCompute(gray, None)
    n = len(keypoints)
    if n == 0 or desc is None:
        return FeatureSet(
            camera_id=int(camera_id),
            points=np.zeros((0, 2), dtype=np.float64),
            scales=np.zeros((0,), dtype=np.float64),
            orientations=np.zeros((0,), dtype=np.float64),
            descriptors=np.zeros((0, DESCRIPTOR_SIZE), dtype=np.float32),
        )
    pts = np.array([kp.pt for kp in keypoints], dtype=np.float64).reshape(n, 2)
    logger.debug("camera %d: %d keypoints", camera_id, n)
    return FeatureSet(
        camera_id=int(camera_id),
        points=pts,
        scales=np.array([kp.size for kp in keypoints], dtype=np.float64),
        orientations=np.array([kp.angle for kp in keypoints], dtype=np.float64),
        descriptors=np.asarray(desc, dtype=np.float32),
    )


def match_features(fa: FeatureSet, fb: FeatureSet, config: FeatureConfig) -> CorrespondenceSet:
    """
    Brute-force L2 matching with cross-check, distance gate, then a final
    one-to-one pass keeping the closest match per keypoint on either side.
    """
    empty = CorrespondenceSet(
        camera_a=fa.camera_id,
        camera_b=fb.camera_id,
        index_a=np.zeros((0,), dtype=np.int64),
        index_b=np.zeros((0,), dtype=np.int64),
        distances=np.zeros((0,), dtype=np.float64),
    )
    if len(fa) == 0 or len(fb) == 0:
        return empty

    matcher = cv2.BFMatcher(cv2.NORM_L2, crossCheck=True)
    matches = matcher.match(fa.descriptors, fb.descriptors)
    matches = [m for m in matches if m.distance < float(config.max_match_distance)]
    matches.sort(key=lambda m: m.distance)

    used_a: set[int] = set()
    used_b: set[int] = set()
    ia: list[int] = []
    ib: list[int] = []
    dist: list[float] = []
    for m in matches:
        if m.queryIdx in used_a or m.trainIdx in used_b:
            continue
        used_a.add(m.queryIdx)
        used_b.add(m.trainIdx)
        ia.append(int(m.queryIdx))
        ib.append(int(m.trainIdx))
        dist.append(float(m.distance))
    if not ia:
        return empty

    logger.debug("matched %d/%d keypoints between cameras %d and %d", len(ia), len(fa), fa.camera_id, fb.camera_id)
    return CorrespondenceSet(
        camera_a=fa.camera_id,
        camera_b=fb.camera_id,
        index_a=np.asarray(ia, dtype=np.int64),
        index_b=np.asarray(ib, dtype=np.int64),
        distances=np.asarray(dist, dtype=np.float64),
    )

import numpy as np
import pytest

from camrig.config import FeatureConfig
from camrig.runtime.features import DESCRIPTOR_SIZE, detect_features, match_features
from camrig.sim.rig import make_texture


def _require_sift():
    cv2 = pytest.importorskip("cv2")
    if not hasattr(cv2, "SIFT_create"):
        pytest.skip("cv2.SIFT_create not available (need OpenCV >= 4.4)")


def test_detect_and_match_shifted_texture():
    _require_sift()
    rng = np.random.default_rng(0)
    img_a = make_texture(400, rng)
    img_b = np.roll(img_a, 12, axis=1)

    cfg = FeatureConfig()
    fa = detect_features(0, img_a, cfg)
    fb = detect_features(1, img_b, cfg)
    assert len(fa) > 50 and len(fb) > 50
    assert fa.descriptors.shape == (len(fa), DESCRIPTOR_SIZE)
    assert fa.descriptors.dtype == np.float32
    assert fa.scales.shape == (len(fa),)
    assert fa.orientations.shape == (len(fa),)

    corr = match_features(fa, fb, cfg)
    assert len(corr) > 20
    assert len(set(corr.index_a.tolist())) == len(corr)
    assert len(set(corr.index_b.tolist())) == len(corr)
    assert np.all(corr.distances < cfg.max_match_distance)

    shift = fb.points[corr.index_b] - fa.points[corr.index_a]
    assert abs(float(np.median(shift[:, 0])) - 12.0) < 0.5
    assert abs(float(np.median(shift[:, 1]))) < 0.5


def test_featureless_frame_gives_empty_sets():
    _require_sift()
    flat = np.full((120, 160, 3), 90, dtype=np.uint8)
    fa = detect_features(0, flat, FeatureConfig())
    assert len(fa) == 0
    assert fa.descriptors.shape == (0, DESCRIPTOR_SIZE)
    corr = match_features(fa, fa, FeatureConfig())
    assert len(corr) == 0
    assert (corr.camera_a, corr.camera_b) == (0, 0)


def test_distance_gate_rejects_all_matches():
    _require_sift()
    rng = np.random.default_rng(1)
    fa = detect_features(0, make_texture(256, rng), FeatureConfig())
    fb = detect_features(1, make_texture(256, np.random.default_rng(2)), FeatureConfig())
    corr = match_features(fa, fb, FeatureConfig(max_match_distance=1e-3))
    assert len(corr) == 0

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from camrig.errors import ConfigValidationError


@dataclass(frozen=True)
class TargetConfig:
    """Planar chessboard target: internal corner grid and spacing."""

    cols: int = 9
    rows: int = 6
    spacing_mm: float = 25.0


@dataclass(frozen=True)
class SyncConfig:
    tolerance_s: float = 0.016667
    drain_timeout_s: float = 0.1


@dataclass(frozen=True)
class IntrinsicsConfig:
    min_samples: int = 10
    fix_principal_point: bool = False
    zero_tangent_dist: bool = False
    suspect_rms_px: float = 1.0
    max_nfev: int = 400


@dataclass(frozen=True)
class StereoConfig:
    max_iterations: int = 100
    rel_tolerance: float = 1e-5
    max_condition_number: float = 1e8
    alpha: float = 1.0


@dataclass(frozen=True)
class DepthConfig:
    min_disparity: int = 0
    num_disparities: int = 128
    block_size: int = 9
    p1: int = 600
    p2: int = 2400
    lr_max_diff_px: int = 20
    pre_filter_cap: int = 16
    uniqueness_ratio: int = 2
    speckle_window_size: int = 200
    speckle_range: int = 25
    bilateral_diameter: int = 9
    bilateral_sigma_color: float = 75.0
    bilateral_sigma_space: float = 75.0


@dataclass(frozen=True)
class FeatureConfig:
    n_features: int = 0
    n_octave_layers: int = 4
    contrast_threshold: float = 0.03
    edge_threshold: float = 10.0
    sigma: float = 1.6
    max_match_distance: float = 80.0


@dataclass(frozen=True)
class TriangulationConfig:
    min_correspondences: int = 8
    high_quality_px: float = 1.0
    degraded_px: float = 2.0


@dataclass(frozen=True)
class BundleConfig:
    min_samples: int = 10
    ftol: float = 1e-8
    max_nfev: int = 200


@dataclass(frozen=True)
class PipelineConfig:
    target: TargetConfig = field(default_factory=TargetConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    intrinsics: IntrinsicsConfig = field(default_factory=IntrinsicsConfig)
    stereo: StereoConfig = field(default_factory=StereoConfig)
    depth: DepthConfig = field(default_factory=DepthConfig)
    features: FeatureConfig = field(default_factory=FeatureConfig)
    triangulation: TriangulationConfig = field(default_factory=TriangulationConfig)
    bundle: BundleConfig = field(default_factory=BundleConfig)


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    sec = data.get(name, {})
    _require(isinstance(sec, dict), f"{name} must be an object")
    return sec


def _build(cls, sec: dict[str, Any], name: str):
    defaults = cls()
    known = set(defaults.__dataclass_fields__)
    unknown = sorted(set(sec) - known)
    _require(not unknown, f"{name}: unknown keys {unknown}")
    values = {}
    for key in known:
        default = getattr(defaults, key)
        raw = sec.get(key, default)
        if isinstance(default, bool):
            _require(isinstance(raw, bool), f"{name}.{key} must be a boolean")
            values[key] = raw
        elif isinstance(default, int):
            _require(isinstance(raw, (int, float)) and float(raw).is_integer(), f"{name}.{key} must be an integer")
            values[key] = int(raw)
        else:
            _require(isinstance(raw, (int, float)), f"{name}.{key} must be a number")
            values[key] = float(raw)
    return cls(**values)


def parse_pipeline_config(data: dict[str, Any]) -> PipelineConfig:
    _require(isinstance(data, dict), "config must be an object")
    unknown = sorted(set(data) - set(PipelineConfig.__dataclass_fields__))
    _require(not unknown, f"unknown config sections {unknown}")

    target = _build(TargetConfig, _section(data, "target"), "target")
    _require(target.cols >= 2 and target.rows >= 2, "target grid must be at least 2x2 corners")
    _require(target.spacing_mm > 0.0, "target.spacing_mm must be > 0")

    sync = _build(SyncConfig, _section(data, "sync"), "sync")
    _require(sync.tolerance_s >= 0.0, "sync.tolerance_s must be >= 0")
    _require(sync.drain_timeout_s >= 0.0, "sync.drain_timeout_s must be >= 0")

    intrinsics = _build(IntrinsicsConfig, _section(data, "intrinsics"), "intrinsics")
    _require(intrinsics.min_samples >= 3, "intrinsics.min_samples must be >= 3 (Zhang needs 3 views)")
    _require(intrinsics.suspect_rms_px > 0.0, "intrinsics.suspect_rms_px must be > 0")

    stereo = _build(StereoConfig, _section(data, "stereo"), "stereo")
    _require(stereo.max_iterations >= 1, "stereo.max_iterations must be >= 1")
    _require(stereo.rel_tolerance > 0.0, "stereo.rel_tolerance must be > 0")
    _require(stereo.max_condition_number > 1.0, "stereo.max_condition_number must be > 1")
    _require(-1.0 <= stereo.alpha <= 1.0, "stereo.alpha must be in [-1, 1]")

    depth = _build(DepthConfig, _section(data, "depth"), "depth")
    _require(depth.num_disparities > 0 and depth.num_disparities % 16 == 0, "depth.num_disparities must be a positive multiple of 16")
    _require(depth.block_size % 2 == 1 and 3 <= depth.block_size <= 11, "depth.block_size must be odd and in [3, 11]")
    _require(0 < depth.p1 < depth.p2, "depth penalties must satisfy 0 < p1 < p2")

    features = _build(FeatureConfig, _section(data, "features"), "features")
    _require(features.contrast_threshold > 0.0, "features.contrast_threshold must be > 0")
    _require(features.max_match_distance > 0.0, "features.max_match_distance must be > 0")

    triangulation = _build(TriangulationConfig, _section(data, "triangulation"), "triangulation")
    _require(triangulation.min_correspondences >= 1, "triangulation.min_correspondences must be >= 1")
    _require(
        0.0 < triangulation.high_quality_px <= triangulation.degraded_px,
        "triangulation thresholds must satisfy 0 < high_quality_px <= degraded_px",
    )

    bundle = _build(BundleConfig, _section(data, "bundle"), "bundle")
    _require(bundle.min_samples >= 1, "bundle.min_samples must be >= 1")
    _require(bundle.ftol > 0.0, "bundle.ftol must be > 0")

    return PipelineConfig(
        target=target,
        sync=sync,
        intrinsics=intrinsics,
        stereo=stereo,
        depth=depth,
        features=features,
        triangulation=triangulation,
        bundle=bundle,
    )


def load_pipeline_config(path: Path) -> PipelineConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_pipeline_config(data)

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

import cv2
import numpy as np
from scipy.optimize import least_squares

from camrig.calib.state import CalibrationState
from camrig.calib.target import CalibrationSample
from camrig.config import BundleConfig
from camrig.core.camera import CameraProfile, project_with_params
from camrig.core.geometry import matrix_to_rotvec, rotvec_to_matrix, transform_points
from camrig.errors import Issue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Observation:
    camera_id: int
    sample_index: int
    object_points: np.ndarray  # (N,3) target frame
    image_points: np.ndarray  # (N,2)


@dataclass(frozen=True)
class ParameterLayout:
    """
    Which slice of the flat parameter vector belongs to what.

    - `intrinsics[c]`: 9 values (fx, fy, cx, cy, k1, k2, p1, p2, k3) of a free camera
    - `camera_pose[c]`: 6 values (rvec, tvec) ref->camera of a free non-reference camera
    - `target_pose[s]`: 6 values (rvec, tvec) target->reference for sample index s
    - `fixed[c]`: packed (intr 9, rvec 3, tvec 3) of a camera held fixed
    """

    intrinsics: Mapping[int, slice]
    camera_pose: Mapping[int, slice]
    target_pose: Mapping[int, slice]
    fixed: Mapping[int, np.ndarray]
    size: int


@dataclass(frozen=True)
class OptimizationReport:
    success: bool
    initial_rms_px: float
    final_rms_px: float
    per_camera_rms_px: dict[int, float]
    optimized_cameras: list[int]
    fixed_cameras: list[int]
    n_parameters: int
    n_residuals: int
    nfev: int
    message: str
    issues: list[Issue] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "initial_rms_px": self.initial_rms_px,
            "final_rms_px": self.final_rms_px,
            "per_camera_rms_px": {str(k): v for k, v in self.per_camera_rms_px.items()},
            "optimized_cameras": self.optimized_cameras,
            "fixed_cameras": self.fixed_cameras,
            "n_parameters": self.n_parameters,
            "n_residuals": self.n_residuals,
            "nfev": self.nfev,
            "message": self.message,
            "issues": [i.to_dict() for i in self.issues],
        }


def _camera_params(x: np.ndarray, layout: ParameterLayout, cid: int) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    if cid in layout.fixed:
        packed = layout.fixed[cid]
        return packed[:9], rotvec_to_matrix(packed[9:12]), packed[12:15]
    intr = x[layout.intrinsics[cid]]
    if cid in layout.camera_pose:
        pose = x[layout.camera_pose[cid]]
        return intr, rotvec_to_matrix(pose[:3]), pose[3:]
    return intr, np.eye(3, dtype=np.float64), np.zeros((3,), dtype=np.float64)


def bundle_residuals(x: np.ndarray, layout: ParameterLayout, observations: list[Observation]) -> np.ndarray:
    """
    Stacked 2D reprojection errors over every (camera, sample, point).

    Pure in (x, layout, observations): nothing is cached between calls.
    """
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    if x.size != layout.size:
        raise ValueError(f"parameter vector has {x.size} entries, layout expects {layout.size}")
    res_parts: list[np.ndarray] = []
    for obs in observations:
        intr, R_c, t_c = _camera_params(x, layout, obs.camera_id)
        tp = x[layout.target_pose[obs.sample_index]]
        P_ref = transform_points(rotvec_to_matrix(tp[:3]), tp[3:], obs.object_points)
        uv = project_with_params(intr, transform_points(R_c, t_c, P_ref))
        res_parts.append(np.nan_to_num(uv - obs.image_points, nan=1e3).reshape(-1))
    if not res_parts:
        return np.zeros((0,), dtype=np.float64)
    return np.concatenate(res_parts, axis=0)


def _pack(profile: CameraProfile) -> np.ndarray:
    return np.concatenate([profile.params(), matrix_to_rotvec(profile.rotation), profile.translation])


def _initial_target_pose(profile: CameraProfile, smp: CalibrationSample) -> np.ndarray:
    ok, rvec, tvec = cv2.solvePnP(smp.object_points, smp.image_points, profile.K(), profile.dist())
    if not ok:
        raise ValueError("solvePnP failed")
    R_tc = rotvec_to_matrix(np.asarray(rvec).reshape(3))
    t_tc = np.asarray(tvec, dtype=np.float64).reshape(3)
    # target -> camera, then camera -> reference
    R_ref = profile.rotation.T @ R_tc
    t_ref = profile.rotation.T @ (t_tc - profile.translation)
    return np.concatenate([matrix_to_rotvec(R_ref), t_ref])


def _rms(residuals: np.ndarray) -> float:
    if residuals.size == 0:
        return float("nan")
    r = residuals.reshape(-1, 2)
    return float(np.sqrt(np.mean(np.sum(r * r, axis=1))))


def bundle_adjust(
    state: CalibrationState,
    samples: Mapping[int, list[CalibrationSample]],
    config: BundleConfig,
) -> tuple[dict[int, CameraProfile], OptimizationReport]:
    """
    Jointly refine every sufficiently observed camera (intrinsics, distortion,
    pose relative to the reference camera) and every target pose.

    Samples are synchronized by index across cameras. Cameras with fewer than
    `config.min_samples` samples are held fixed. The reference camera's pose is
    the gauge and stays at identity. Cameras without extrinsics
    (`state.unposed`) take no part and are returned unchanged.
    """
    reference = state.reference_camera
    cameras = state.posed_camera_ids
    issues: list[Issue] = []
    optimized: list[int] = []
    fixed: list[int] = []
    for cid in cameras:
        n = len(samples.get(cid, []))
        if n >= int(config.min_samples):
            optimized.append(cid)
        else:
            fixed.append(cid)
            issues.append(
                Issue(
                    kind="InsufficientSamples",
                    stage="bundle_adjustment",
                    message=f"{n} samples < {config.min_samples}, parameters held fixed",
                    camera_id=cid,
                )
            )
            logger.warning("bundle adjustment: camera %d held fixed (%d samples)", cid, n)

    observations: list[Observation] = []
    for cid in cameras:
        for s, smp in enumerate(samples.get(cid, [])):
            observations.append(Observation(cid, s, smp.object_points, smp.image_points))
    sample_ids = sorted({o.sample_index for o in observations})

    intr_sl: dict[int, slice] = {}
    pose_sl: dict[int, slice] = {}
    target_sl: dict[int, slice] = {}
    chunks: list[np.ndarray] = []
    pos = 0
    for cid in optimized:
        prof = state.profiles[cid]
        intr_sl[cid] = slice(pos, pos + 9)
        chunks.append(prof.params())
        pos += 9
        if cid != reference:
            pose_sl[cid] = slice(pos, pos + 6)
            chunks.append(np.concatenate([matrix_to_rotvec(prof.rotation), prof.translation]))
            pos += 6
    for s in sample_ids:
        # initialize from the first camera (reference first) that saw this sample
        owner = next(o for o in sorted(observations, key=lambda o: (o.camera_id != reference, o.camera_id)) if o.sample_index == s)
        target_sl[s] = slice(pos, pos + 6)
        chunks.append(_initial_target_pose(state.profiles[owner.camera_id], samples[owner.camera_id][s]))
        pos += 6

    layout = ParameterLayout(
        intrinsics=intr_sl,
        camera_pose=pose_sl,
        target_pose=target_sl,
        fixed={cid: _pack(state.profiles[cid]) for cid in fixed},
        size=pos,
    )
    x0 = np.concatenate(chunks) if chunks else np.zeros((0,), dtype=np.float64)
    r0 = bundle_residuals(x0, layout, observations)
    initial_rms = _rms(r0)

    if not optimized or not observations:
        report = OptimizationReport(
            success=False,
            initial_rms_px=initial_rms,
            final_rms_px=initial_rms,
            per_camera_rms_px={},
            optimized_cameras=[],
            fixed_cameras=fixed,
            n_parameters=layout.size,
            n_residuals=int(r0.size),
            nfev=0,
            message="nothing to optimize",
            issues=issues,
        )
        return dict(state.profiles), report

    sol = least_squares(
        bundle_residuals,
        x0,
        args=(layout, observations),
        method="trf",
        x_scale="jac",
        ftol=float(config.ftol),
        max_nfev=int(config.max_nfev),
    )

    final_res = bundle_residuals(sol.x, layout, observations)
    per_camera: dict[int, float] = {}
    offset = 0
    by_camera: dict[int, list[np.ndarray]] = {}
    for obs in observations:
        n = 2 * obs.image_points.shape[0]
        by_camera.setdefault(obs.camera_id, []).append(final_res[offset : offset + n])
        offset += n
    for cid, parts in by_camera.items():
        per_camera[cid] = _rms(np.concatenate(parts))

    new_profiles: dict[int, CameraProfile] = {}
    for cid in state.camera_ids:
        if cid in fixed or cid in state.unposed:
            new_profiles[cid] = state.profiles[cid]
            continue
        intr, R_c, t_c = _camera_params(sol.x, layout, cid)
        new_profiles[cid] = CameraProfile.from_params(
            intr, rotation=R_c, translation=t_c, rms_px=per_camera.get(cid, float("nan"))
        )

    final_rms = _rms(final_res)
    logger.info(
        "bundle adjustment: RMS %.4f -> %.4f px (%d params, %d residuals, nfev %d)",
        initial_rms,
        final_rms,
        layout.size,
        final_res.size,
        sol.nfev,
    )
    report = OptimizationReport(
        success=bool(sol.success),
        initial_rms_px=initial_rms,
        final_rms_px=final_rms,
        per_camera_rms_px=per_camera,
        optimized_cameras=optimized,
        fixed_cameras=fixed,
        n_parameters=layout.size,
        n_residuals=int(final_res.size),
        nfev=int(sol.nfev),
        message=str(sol.message),
        issues=issues,
    )
    return new_profiles, report

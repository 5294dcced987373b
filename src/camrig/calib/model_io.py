from __future__ import annotations

import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import numpy as np

from camrig.calib.state import CalibrationState, build_calibration_state
from camrig.core.camera import CameraProfile
from camrig.core.distortion import brown_from_dict, brown_to_dict

SCHEMA_VERSION = "camrig.calibration.v0"


def _to_float_matrix(x: np.ndarray, shape: tuple[int, ...]) -> np.ndarray:
    x = np.asarray(x, dtype=np.float64)
    x = x.reshape(shape)
    if not np.all(np.isfinite(x)):
        raise ValueError("non-finite values")
    return x


def save_calibration(model_dir: Path, state: CalibrationState) -> Path:
    """
    Save a calibration snapshot into a directory:

      calibration.json + weights.npz

    The JSON holds scalar intrinsics, distortion and per-pair quality; the NPZ
    holds the extrinsic matrices. Rectification maps are not stored: they are
    rebuilt from the profiles on load.
    """
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)

    arrays: dict[str, np.ndarray] = {}
    cameras: list[dict[str, Any]] = []
    for cid in state.camera_ids:
        prof = state.profiles[cid]
        arrays[f"R_{cid}"] = np.asarray(prof.rotation, dtype=np.float64)
        arrays[f"t_{cid}"] = np.asarray(prof.translation, dtype=np.float64)
        cameras.append(
            {
                "camera_id": int(cid),
                "fx": float(prof.fx),
                "fy": float(prof.fy),
                "cx": float(prof.cx),
                "cy": float(prof.cy),
                "distortion": brown_to_dict(prof.distortion),
                "rms_px": float(prof.rms_px),
                "posed": cid not in state.unposed,
                "weights": {"R": f"R_{cid}", "t": f"t_{cid}"},
            }
        )

    pairs: list[dict[str, Any]] = []
    for a, b in state.pairs:
        rig = state.rigs[(a, b)]
        pairs.append(
            {
                "camera_a": int(a),
                "camera_b": int(b),
                "rms_px": float(rig.rms_px),
                "condition_number": float(rig.condition_number),
                "baseline_mm": rig.baseline_mm,
            }
        )

    weights_path = model_dir / "weights.npz"
    np.savez_compressed(weights_path, **arrays)

    meta: dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "image": {"width_px": int(state.image_size[0]), "height_px": int(state.image_size[1])},
        "generation": int(state.generation),
        "reference_camera": int(state.reference_camera),
        "cameras": cameras,
        "pairs": pairs,
        "weights": {"format": "npz", "path": weights_path.name},
    }
    json_path = model_dir / "calibration.json"
    # NaN RMS (e.g. ground-truth profiles) is written as JSON null.
    json_path.write_text(json.dumps(_nan_to_none(meta), indent=2, sort_keys=True), encoding="utf-8")
    return json_path


def _nan_to_none(obj: Any) -> Any:
    if isinstance(obj, float) and not np.isfinite(obj):
        return None
    if isinstance(obj, dict):
        return {k: _nan_to_none(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_nan_to_none(v) for v in obj]
    return obj


def _opt_float(v: Any) -> float:
    return float("nan") if v is None else float(v)


def load_calibration(model_dir: Path, *, alpha: float = 1.0) -> CalibrationState:
    model_dir = Path(model_dir)
    meta = json.loads((model_dir / "calibration.json").read_text(encoding="utf-8"))
    if str(meta.get("schema_version")) != SCHEMA_VERSION:
        raise ValueError("unsupported calibration schema")

    image = meta["image"]
    image_size = (int(image["width_px"]), int(image["height_px"]))
    if image_size[0] <= 0 or image_size[1] <= 0:
        raise ValueError("invalid image size")

    with np.load(str(model_dir / str(meta["weights"]["path"]))) as w:
        profiles: dict[int, CameraProfile] = {}
        for cam in meta["cameras"]:
            cid = int(cam["camera_id"])
            intr = _to_float_matrix(np.array([cam["fx"], cam["fy"], cam["cx"], cam["cy"]]), (4,))
            profiles[cid] = CameraProfile(
                fx=float(intr[0]),
                fy=float(intr[1]),
                cx=float(intr[2]),
                cy=float(intr[3]),
                distortion=brown_from_dict(cam["distortion"]),
                rotation=_to_float_matrix(w[str(cam["weights"]["R"])], (3, 3)),
                translation=_to_float_matrix(w[str(cam["weights"]["t"])], (3,)),
                rms_px=_opt_float(cam.get("rms_px")),
            )

    pairs = [(int(p["camera_a"]), int(p["camera_b"])) for p in meta.get("pairs", [])]
    for a, b in pairs:
        if a not in profiles or b not in profiles:
            raise ValueError(f"pair ({a}, {b}) references an unknown camera")
    unposed = [int(c["camera_id"]) for c in meta["cameras"] if not bool(c.get("posed", True))]
    reference = int(meta.get("reference_camera", min(profiles) if profiles else 0))
    if reference not in profiles or reference in unposed:
        raise ValueError(f"reference camera {reference} has no posed profile")
    for a, b in pairs:
        if a in unposed or b in unposed:
            raise ValueError(f"pair ({a}, {b}) references a camera without extrinsics")
    state = build_calibration_state(
        image_size,
        profiles,
        pairs,
        alpha=alpha,
        generation=int(meta.get("generation", 0)),
        reference_camera=reference,
        unposed=unposed,
    )
    # carry the stored per-pair quality onto the rebuilt rigs
    rigs = dict(state.rigs)
    for p in meta.get("pairs", []):
        key = (int(p["camera_a"]), int(p["camera_b"]))
        rigs[key] = replace(
            rigs[key],
            rms_px=_opt_float(p.get("rms_px")),
            condition_number=_opt_float(p.get("condition_number")),
        )
    return replace(state, rigs=rigs)

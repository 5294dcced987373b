from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from pathlib import Path

import numpy as np

from camrig.config import PipelineConfig, TargetConfig, load_pipeline_config
from camrig.core.image_io import encode_png
from camrig.pipeline import MultiCameraPipeline
from camrig.sim.rig import make_rig, make_texture, observe_targets, render_textured_plane, sample_target_poses


def _load_config(path: Path | None) -> PipelineConfig:
    return load_pipeline_config(path) if path is not None else PipelineConfig()


def run_synth_samples(
    out: Path,
    cameras: int,
    poses: int,
    width: int,
    height: int,
    noise_px: float,
    distort_strength: float,
    seed: int,
    target: TargetConfig,
    frames_out: Path | None = None,
) -> Path:
    """
    Write synthetic corner observations to an NPZ (`cam<k>`: (poses, N, 2))
    and, optionally, one textured frame per camera as PNG.
    """
    rng = np.random.default_rng(seed)
    rig = make_rig(cameras, (width, height), distortion_strength=distort_strength, rng=rng)
    target_poses = sample_target_poses(rig, target, poses, rng)
    obs = observe_targets(rig, target, target_poses, noise_px=noise_px, rng=rng)

    out = Path(out)
    out.parent.mkdir(parents=True, exist_ok=True)
    arrays = {f"cam{cid}": np.asarray(uvs, dtype=np.float64) for cid, uvs in obs.items()}
    np.savez_compressed(
        out,
        image_size=np.array([width, height], dtype=np.int64),
        target=np.array([target.cols, target.rows, target.spacing_mm], dtype=np.float64),
        **arrays,
    )

    if frames_out is not None:
        frames_out = Path(frames_out)
        frames_out.mkdir(parents=True, exist_ok=True)
        texture = make_texture(1024, rng)
        for cid in rig.camera_ids:
            img = render_textured_plane(rig, cid, texture)
            (frames_out / f"cam{cid}.png").write_bytes(encode_png(img))
    return out


def run_calibrate(samples_path: Path, out: Path, config: PipelineConfig, bundle: bool) -> dict:
    with np.load(str(samples_path)) as data:
        w, h = (int(v) for v in data["image_size"].tolist())
        cams = sorted(int(k[3:]) for k in data.files if k.startswith("cam"))
        obs = {cid: np.asarray(data[f"cam{cid}"], dtype=np.float64) for cid in cams}
        cols, rows, spacing = data["target"].tolist()
    config = replace(config, target=TargetConfig(cols=int(cols), rows=int(rows), spacing_mm=float(spacing)))

    pipe = MultiCameraPipeline(config)
    pipe.initialize(w, h, len(cams))
    for cid in cams:
        for uv in obs[cid]:
            pipe.add_calibration_sample(cid, uv)

    report: dict = {"calibration": pipe.run_calibration().to_dict()}
    if bundle and pipe.calibration is not None:
        report["bundle_adjustment"] = pipe.run_bundle_adjustment().to_dict()
    if pipe.calibration is not None:
        report["model"] = str(pipe.save_calibration(out))
    pipe.shutdown()
    return report


def run_reconstruct(model_dir: Path, images: list[Path], config: PipelineConfig) -> dict:
    meta = json.loads((Path(model_dir) / "calibration.json").read_text(encoding="utf-8"))
    w, h = int(meta["image"]["width_px"]), int(meta["image"]["height_px"])

    pipe = MultiCameraPipeline(config)
    pipe.initialize(w, h, len(images))
    pipe.load_calibration(model_dir)
    for cid, path in enumerate(images):
        pipe.submit_frame(cid, Path(path).read_bytes(), 0.0)
    result = pipe.process_frame_set(timeout=0.0)
    pipe.shutdown()
    return result.to_dict()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="camrig")
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (stderr).",
    )
    sub = parser.add_subparsers(dest="cmd", required=True)

    syn = sub.add_parser("synth-samples", help="Write synthetic chessboard observations for a simulated rig.")
    syn.add_argument("--out", type=Path, required=True, help="Output .npz path.")
    syn.add_argument("--cameras", type=int, default=2)
    syn.add_argument("--poses", type=int, default=15)
    syn.add_argument("--width", type=int, default=640)
    syn.add_argument("--height", type=int, default=480)
    syn.add_argument("--noise-px", type=float, default=0.0, help="Gaussian corner noise (px).")
    syn.add_argument("--distort-strength", type=float, default=0.0, help="Strength for random Brown coefficients.")
    syn.add_argument("--cols", type=int, default=9, help="Internal corners along x.")
    syn.add_argument("--rows", type=int, default=6, help="Internal corners along y.")
    syn.add_argument("--spacing-mm", type=float, default=25.0)
    syn.add_argument("--frames-out", type=Path, default=None, help="Also render one textured frame per camera here.")
    syn.add_argument("--seed", type=int, default=0)

    cal = sub.add_parser("calibrate", help="Calibrate a rig from an observations .npz and save the model.")
    cal.add_argument("samples", type=Path)
    cal.add_argument("--out", type=Path, required=True, help="Model directory.")
    cal.add_argument("--config", type=Path, default=None, help="Pipeline config JSON.")
    cal.add_argument("--bundle", action="store_true", help="Refine with bundle adjustment.")

    rec = sub.add_parser("reconstruct", help="Run one frame set (one image per camera, in camera order).")
    rec.add_argument("--model", type=Path, required=True, help="Model directory written by `calibrate`.")
    rec.add_argument("images", type=Path, nargs="+")
    rec.add_argument("--config", type=Path, default=None, help="Pipeline config JSON.")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s %(name)s: %(message)s")

    if args.cmd == "synth-samples":
        path = run_synth_samples(
            out=args.out,
            cameras=args.cameras,
            poses=args.poses,
            width=args.width,
            height=args.height,
            noise_px=args.noise_px,
            distort_strength=args.distort_strength,
            seed=args.seed,
            target=TargetConfig(cols=args.cols, rows=args.rows, spacing_mm=args.spacing_mm),
            frames_out=args.frames_out,
        )
        print(f"Wrote {path}")
        return 0

    if args.cmd == "calibrate":
        report = run_calibrate(args.samples, args.out, _load_config(args.config), args.bundle)
        print(json.dumps(report, indent=2, sort_keys=True))
        return 0 if report["calibration"]["success"] else 1

    if args.cmd == "reconstruct":
        result = run_reconstruct(args.model, args.images, _load_config(args.config))
        print(json.dumps(result, indent=2, sort_keys=True))
        return 0

    raise AssertionError(f"Unhandled cmd: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())

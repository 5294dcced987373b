"""
Multi-camera pipeline facade.

Calibration side: samples are accumulated per camera, then
`run_calibration` estimates intrinsics per camera and extrinsics for every
pair (reference, k), the reference being camera 0 or, when camera 0 failed,
the lowest calibrated camera; `run_bundle_adjustment` refines the whole rig.
Each success publishes a new immutable CalibrationState.

Runtime side: producers call `submit_frame` (possibly from several threads);
`process_frame_set` drains one synchronized set and runs dense depth, sparse
matching, triangulation and the uncertainty summary on the calibration
snapshot current at the start of the pass. Two present cameras with
extrinsics but no stored rig get one derived from their profiles.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import numpy as np

from camrig.calib import model_io
from camrig.calib.bundle import OptimizationReport, bundle_adjust
from camrig.calib.intrinsics import calibrate_intrinsics
from camrig.calib.state import (
    REFERENCE_CAMERA,
    CalibrationState,
    CalibrationStore,
    build_calibration_state,
    derive_rig,
)
from camrig.calib.stereo import StereoRig, calibrate_stereo_pair
from camrig.calib.target import CalibrationSample, detect_target_corners, make_sample
from camrig.config import PipelineConfig
from camrig.core.camera import CameraProfile
from camrig.core.image_io import decode_image, to_gray_u8
from camrig.errors import (
    CalibrationDegenerateError,
    DecodeError,
    InsufficientCorrespondencesError,
    InsufficientSamplesError,
    Issue,
    PipelineStateError,
)
from camrig.runtime.depth import DepthResult, compute_depth
from camrig.runtime.features import detect_features, match_features
from camrig.runtime.measurement import UncertaintySummary, summarize_depth, summarize_points
from camrig.runtime.sync import Decoder, FrameSyncBuffer
from camrig.runtime.triangulation import TriangulationResult, triangulate_pair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CalibrationReport:
    success: bool
    calibrated_cameras: list[int]
    intrinsics_rms_px: dict[int, float]
    stereo_rms_px: dict[tuple[int, int], float]
    issues: list[Issue] = field(default_factory=list)
    generation: int | None = None
    reference_camera: int | None = None
    posed_cameras: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "calibrated_cameras": self.calibrated_cameras,
            "reference_camera": self.reference_camera,
            "posed_cameras": self.posed_cameras,
            "intrinsics_rms_px": {str(k): v for k, v in self.intrinsics_rms_px.items()},
            "stereo_rms_px": {f"{a}-{b}": v for (a, b), v in self.stereo_rms_px.items()},
            "issues": [i.to_dict() for i in self.issues],
            "generation": self.generation,
        }


@dataclass(frozen=True)
class FrameResult:
    """
    Outcome of one pass over a synchronized frame set.

    Stages that could not run are listed in `skipped` (stage -> reason);
    everything that degraded the result is in `issues`.
    """

    camera_ids: list[int]
    timestamp_spread_s: float
    pair: tuple[int, int] | None = None
    depth: DepthResult | None = None
    depth_summary: UncertaintySummary | None = None
    n_features: dict[int, int] = field(default_factory=dict)
    n_correspondences: int = 0
    triangulation: TriangulationResult | None = None
    point_summary: UncertaintySummary | None = None
    skipped: dict[str, str] = field(default_factory=dict)
    issues: list[Issue] = field(default_factory=list)
    calibration_generation: int | None = None

    @property
    def points(self) -> np.ndarray:
        if self.triangulation is None:
            return np.zeros((0, 3), dtype=np.float64)
        return self.triangulation.points

    def issue_kinds(self) -> set[str]:
        return {i.kind for i in self.issues}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "camera_ids": self.camera_ids,
            "timestamp_spread_s": self.timestamp_spread_s,
            "pair": list(self.pair) if self.pair is not None else None,
            "n_features": {str(k): v for k, v in self.n_features.items()},
            "n_correspondences": self.n_correspondences,
            "skipped": dict(self.skipped),
            "issues": [i.to_dict() for i in self.issues],
            "calibration_generation": self.calibration_generation,
        }
        if self.depth is not None:
            out["depth"] = {"valid_fraction": self.depth.valid_fraction}
        if self.depth_summary is not None:
            out["depth_summary_mm"] = self.depth_summary.to_dict()
        if self.triangulation is not None:
            out["triangulation"] = {
                "n_points": len(self.triangulation),
                "mean_error_px": self.triangulation.mean_error_px,
                "quality": self.triangulation.quality,
            }
        if self.point_summary is not None:
            out["point_depth_summary_mm"] = self.point_summary.to_dict()
        return out


class MultiCameraPipeline:
    def __init__(self, config: PipelineConfig | None = None, decoder: Decoder = decode_image) -> None:
        self.config = config if config is not None else PipelineConfig()
        self._decoder = decoder
        self._store = CalibrationStore()
        self._lock = threading.Lock()
        self._samples: dict[int, list[CalibrationSample]] = {}
        self._buffer: FrameSyncBuffer | None = None
        self._image_size: tuple[int, int] | None = None
        self._camera_count = 0
        self._shut_down = False
        self._derived_for: CalibrationState | None = None
        self._derived_rigs: dict[tuple[int, int], StereoRig] = {}

    # -- lifecycle -----------------------------------------------------------

    def _require_ready(self) -> None:
        if self._shut_down:
            raise PipelineStateError("pipeline has been shut down")
        if self._buffer is None:
            raise PipelineStateError("pipeline is not initialized; call initialize() first")

    def _check_camera(self, camera_id: int) -> int:
        cid = int(camera_id)
        if not 0 <= cid < self._camera_count:
            raise ValueError(f"unknown camera id {camera_id} (rig has {self._camera_count} cameras)")
        return cid

    def initialize(self, image_width: int, image_height: int, camera_count: int) -> None:
        if self._shut_down:
            raise PipelineStateError("pipeline has been shut down")
        if int(image_width) <= 0 or int(image_height) <= 0:
            raise ValueError(f"image size must be positive, got {image_width}x{image_height}")
        if int(camera_count) < 1:
            raise ValueError(f"camera_count must be >= 1, got {camera_count}")
        with self._lock:
            self._image_size = (int(image_width), int(image_height))
            self._camera_count = int(camera_count)
            self._samples = {cid: [] for cid in range(self._camera_count)}
            self._buffer = FrameSyncBuffer(self._camera_count, self._decoder, tolerance_s=self.config.sync.tolerance_s)
        self._store.clear()
        logger.info("pipeline initialized: %d cameras, %dx%d", camera_count, image_width, image_height)

    def shutdown(self) -> None:
        """Release frames, samples and calibration. Safe to call twice."""
        with self._lock:
            if self._buffer is not None:
                self._buffer.clear()
            self._buffer = None
            self._samples = {}
            self._derived_for = None
            self._derived_rigs = {}
            self._shut_down = True
        self._store.clear()
        logger.info("pipeline shut down")

    @property
    def image_size(self) -> tuple[int, int]:
        self._require_ready()
        assert self._image_size is not None
        return self._image_size

    @property
    def camera_count(self) -> int:
        self._require_ready()
        return self._camera_count

    @property
    def calibration(self) -> CalibrationState | None:
        self._require_ready()
        return self._store.current()

    # -- ingest --------------------------------------------------------------

    def submit_frame(self, camera_id: int, encoded_bytes: bytes, timestamp_s: float) -> bool:
        self._require_ready()
        assert self._buffer is not None
        return self._buffer.submit(camera_id, encoded_bytes, timestamp_s)

    def add_calibration_sample(self, camera_id: int, observed_points: np.ndarray) -> None:
        """Append one view of the configured planar target (corners in target order)."""
        self._require_ready()
        cid = self._check_camera(camera_id)
        sample = make_sample(self.config.target, observed_points)
        with self._lock:
            self._samples[cid].append(sample)

    def add_calibration_image(self, camera_id: int, encoded_bytes: bytes) -> bool:
        """
        Detect the chessboard in an encoded image and append it as a sample.
        Returns False when the image cannot be decoded or the board is not found.
        """
        self._require_ready()
        cid = self._check_camera(camera_id)
        try:
            img = self._decoder(encoded_bytes)
        except DecodeError as e:
            logger.warning("camera %d: calibration image failed to decode: %s", cid, e)
            return False
        corners = detect_target_corners(to_gray_u8(img), self.config.target)
        if corners is None:
            logger.info("camera %d: calibration target not found", cid)
            return False
        self.add_calibration_sample(cid, corners)
        return True

    def sample_counts(self) -> dict[int, int]:
        self._require_ready()
        with self._lock:
            return {cid: len(s) for cid, s in self._samples.items()}

    def _snapshot_samples(self) -> dict[int, list[CalibrationSample]]:
        with self._lock:
            return {cid: list(s) for cid, s in self._samples.items()}

    # -- calibration ---------------------------------------------------------

    def run_calibration(self) -> CalibrationReport:
        """
        Intrinsics for every camera, then stereo for each pair (reference, k).

        The reference is camera 0, or the lowest-numbered camera whose
        intrinsics succeeded when camera 0 failed. A camera whose stereo solve
        fails keeps its intrinsics but gets no extrinsics. Nothing is published
        only when no camera calibrated at all.
        """
        self._require_ready()
        image_size = self.image_size
        samples = self._snapshot_samples()
        issues: list[Issue] = []
        intrinsics: dict[int, CameraProfile] = {}
        rms: dict[int, float] = {}

        for cid in range(self._camera_count):
            try:
                res = calibrate_intrinsics(cid, samples[cid], image_size, self.config.intrinsics)
            except InsufficientSamplesError as e:
                logger.warning("%s", e)
                issues.append(Issue(kind="InsufficientSamples", stage="intrinsics", message=str(e), camera_id=cid))
                continue
            except (CalibrationDegenerateError, ValueError, np.linalg.LinAlgError) as e:
                logger.warning("camera %d: intrinsic calibration failed: %s", cid, e)
                issues.append(Issue(kind="CalibrationDegenerate", stage="intrinsics", message=str(e), camera_id=cid))
                continue
            intrinsics[cid] = res.profile
            rms[cid] = res.rms_px
            if res.suspect:
                issues.append(
                    Issue(
                        kind="SuspectCalibration",
                        stage="intrinsics",
                        message=f"RMS {res.rms_px:.3f} px above {self.config.intrinsics.suspect_rms_px} px",
                        camera_id=cid,
                    )
                )

        if not intrinsics:
            issues.append(Issue(kind="StageSkipped", stage="stereo", message="no camera calibrated"))
            logger.warning("calibration not published: no camera calibrated")
            return CalibrationReport(
                success=False,
                calibrated_cameras=[],
                intrinsics_rms_px=rms,
                stereo_rms_px={},
                issues=issues,
            )

        reference = REFERENCE_CAMERA if REFERENCE_CAMERA in intrinsics else min(intrinsics)
        if reference != REFERENCE_CAMERA:
            logger.warning("camera %d not calibrated; camera %d is the rig reference", REFERENCE_CAMERA, reference)
        profiles: dict[int, CameraProfile] = {reference: intrinsics[reference]}
        rigs: dict[tuple[int, int], StereoRig] = {}
        unposed: list[int] = []
        for cid in sorted(intrinsics):
            if cid == reference:
                continue
            try:
                rig = calibrate_stereo_pair(
                    reference,
                    cid,
                    intrinsics[reference],
                    intrinsics[cid],
                    samples[reference],
                    samples[cid],
                    image_size,
                    self.config.stereo,
                )
            except (CalibrationDegenerateError, ValueError, np.linalg.LinAlgError) as e:
                logger.warning("pair (%d, %d): stereo calibration failed: %s", reference, cid, e)
                issues.append(Issue(kind="CalibrationDegenerate", stage="stereo", message=str(e), camera_id=cid))
                profiles[cid] = intrinsics[cid]
                unposed.append(cid)
                continue
            profiles[cid] = intrinsics[cid].with_extrinsics(rig.R, rig.T)
            rigs[rig.pair] = rig

        state = self._store.advance(
            CalibrationState(
                image_size=image_size,
                profiles=profiles,
                rigs=rigs,
                reference_camera=reference,
                unposed=frozenset(unposed),
            )
        )
        logger.info(
            "calibration generation %d published: cameras %s, pairs %s, reference %d",
            state.generation,
            state.camera_ids,
            state.pairs,
            reference,
        )
        return CalibrationReport(
            success=True,
            calibrated_cameras=state.camera_ids,
            intrinsics_rms_px=rms,
            stereo_rms_px={pair: rig.rms_px for pair, rig in rigs.items()},
            issues=issues,
            generation=state.generation,
            reference_camera=reference,
            posed_cameras=state.posed_camera_ids,
        )

    def run_bundle_adjustment(self) -> OptimizationReport:
        self._require_ready()
        state = self._store.current()
        if state is None:
            nan = float("nan")
            return OptimizationReport(
                success=False,
                initial_rms_px=nan,
                final_rms_px=nan,
                per_camera_rms_px={},
                optimized_cameras=[],
                fixed_cameras=[],
                n_parameters=0,
                n_residuals=0,
                nfev=0,
                message="no calibration to refine",
                issues=[Issue(kind="StageSkipped", stage="bundle_adjustment", message="run_calibration has not succeeded")],
            )

        samples = self._snapshot_samples()
        # only cameras with extrinsics take part
        samples = {cid: samples.get(cid, []) for cid in state.posed_camera_ids}
        profiles, report = bundle_adjust(state, samples, self.config.bundle)
        if not report.optimized_cameras or not np.isfinite(report.final_rms_px):
            return report
        if report.final_rms_px > report.initial_rms_px:
            logger.warning(
                "bundle adjustment increased RMS (%.4f -> %.4f px); calibration kept",
                report.initial_rms_px,
                report.final_rms_px,
            )
            return report

        new_state = build_calibration_state(
            state.image_size,
            profiles,
            state.pairs,
            alpha=self.config.stereo.alpha,
            reference_camera=state.reference_camera,
            unposed=state.unposed,
        )
        rigs = dict(new_state.rigs)
        for (a, b), rig in rigs.items():
            pair_rms = [report.per_camera_rms_px.get(c, float("nan")) for c in (a, b)]
            rigs[(a, b)] = replace(
                rig,
                rms_px=float(np.sqrt(np.mean(np.square(pair_rms)))),
                condition_number=state.rigs[(a, b)].condition_number,
            )
        published = self._store.advance_from(state, replace(new_state, rigs=rigs))
        if published is None:
            logger.warning("calibration changed during bundle adjustment; refined result discarded")
            return replace(
                report,
                issues=report.issues
                + [
                    Issue(
                        kind="StageSkipped",
                        stage="bundle_adjustment",
                        message=f"calibration generation {state.generation} was replaced while optimizing",
                    )
                ],
            )
        logger.info("bundle-adjusted calibration generation %d published", published.generation)
        return report

    def load_calibration(self, model_dir: Path) -> CalibrationState:
        self._require_ready()
        loaded = model_io.load_calibration(Path(model_dir), alpha=self.config.stereo.alpha)
        if tuple(loaded.image_size) != self.image_size:
            raise ValueError(f"calibration is for {loaded.image_size}, pipeline runs at {self.image_size}")
        for cid in loaded.camera_ids:
            self._check_camera(cid)
        return self._store.advance(loaded)

    def save_calibration(self, model_dir: Path) -> Path:
        self._require_ready()
        state = self._store.current()
        if state is None:
            raise PipelineStateError("no calibration to save")
        return model_io.save_calibration(Path(model_dir), state)

    # -- runtime -------------------------------------------------------------

    def _rig_for(self, state: CalibrationState, camera_a: int, camera_b: int) -> StereoRig:
        """Stored rig, or one derived from the two profiles and cached for this snapshot."""
        stored = state.rig(camera_a, camera_b)
        if stored is not None:
            return stored
        key = (camera_a, camera_b)
        with self._lock:
            if self._derived_for is not state:
                self._derived_for = state
                self._derived_rigs = {}
            rig = self._derived_rigs.get(key)
        if rig is None:
            rig = derive_rig(state, camera_a, camera_b, alpha=self.config.stereo.alpha)
            logger.info("derived rectification for pair (%d, %d) from calibration generation %d", camera_a, camera_b, state.generation)
            with self._lock:
                if self._derived_for is state:
                    self._derived_rigs[key] = rig
        return rig

    def _select_pair(
        self, state: CalibrationState | None, present: list[int]
    ) -> tuple[tuple[int, int] | None, StereoRig | None, str]:
        """
        Pick the pair for this pass: a stored calibrated pair if both cameras
        are present, else the two lowest present cameras with extrinsics, else
        the two lowest present cameras without a rig. The string is the reason
        when no rig is available.
        """
        if len(present) < 2:
            return None, None, f"{len(present)} frame(s) in set, need 2"
        if state is None:
            return (present[0], present[1]), None, "rig is not calibrated"
        for a, b in state.pairs:
            if a in present and b in present:
                return (a, b), state.rigs[(a, b)], ""
        posed = [cid for cid in present if cid in state.posed_camera_ids]
        if len(posed) >= 2:
            a, b = posed[0], posed[1]
            return (a, b), self._rig_for(state, a, b), ""
        missing = [cid for cid in present if cid not in state.posed_camera_ids]
        return (present[0], present[1]), None, f"cameras {missing} have no extrinsics in calibration generation {state.generation}"

    def process_frame_set(self, timeout: float | None = None) -> FrameResult:
        self._require_ready()
        assert self._buffer is not None
        wait = self.config.sync.drain_timeout_s if timeout is None else float(timeout)
        fs = self._buffer.drain(wait)
        # one snapshot for the whole pass
        state = self._store.current()
        issues = list(fs.issues)
        skipped: dict[str, str] = {}
        present = fs.camera_ids

        def skip(stage: str, reason: str) -> None:
            skipped[stage] = reason
            issues.append(Issue(kind="StageSkipped", stage=stage, message=reason))
            logger.info("%s skipped: %s", stage, reason)

        pair, rig, no_rig_reason = self._select_pair(state, present)
        depth: DepthResult | None = None
        depth_summary: UncertaintySummary | None = None
        n_features: dict[int, int] = {}
        n_corr = 0
        tri: TriangulationResult | None = None
        point_summary: UncertaintySummary | None = None

        if pair is None:
            for stage in ("depth", "features", "triangulation"):
                skip(stage, no_rig_reason)
        else:
            a, b = pair
            img_a = fs.frames[a].pixels
            img_b = fs.frames[b].pixels

            if rig is None:
                skip("depth", no_rig_reason)
            else:
                depth = compute_depth(rig, img_a, img_b, self.config.depth)
                depth_summary = summarize_depth(depth.depth)

            fa = detect_features(a, img_a, self.config.features)
            fb = detect_features(b, img_b, self.config.features)
            n_features = {a: len(fa), b: len(fb)}
            corr = match_features(fa, fb, self.config.features)
            n_corr = len(corr)

            if rig is None or state is None:
                skip("triangulation", no_rig_reason)
            else:
                try:
                    tri = triangulate_pair(
                        state.profiles[a],
                        state.profiles[b],
                        rig.R,
                        rig.T,
                        fa.points[corr.index_a],
                        fb.points[corr.index_b],
                        self.config.triangulation,
                        camera_a=a,
                        camera_b=b,
                    )
                except InsufficientCorrespondencesError as e:
                    skipped["triangulation"] = str(e)
                    issues.append(Issue(kind="InsufficientCorrespondences", stage="triangulation", message=str(e)))
                    logger.info("triangulation skipped: %s", e)
                else:
                    point_summary = summarize_points(tri.points)
                    if tri.quality == "unreliable":
                        issues.append(
                            Issue(
                                kind="UnreliableTriangulation",
                                stage="triangulation",
                                message=f"mean reprojection error {tri.mean_error_px:.3f} px",
                            )
                        )

        return FrameResult(
            camera_ids=present,
            timestamp_spread_s=fs.spread_s,
            pair=pair,
            depth=depth,
            depth_summary=depth_summary,
            n_features=n_features,
            n_correspondences=n_corr,
            triangulation=tri,
            point_summary=point_summary,
            skipped=skipped,
            issues=issues,
            calibration_generation=None if state is None else state.generation,
        )

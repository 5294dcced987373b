from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

IssueKind = Literal[
    "InsufficientSamples",
    "CalibrationDegenerate",
    "DecodeFailure",
    "InsufficientCorrespondences",
    "SynchronizationWarning",
    "UnreliableTriangulation",
    "SuspectCalibration",
    "StageSkipped",
]


class CamRigError(Exception):
    pass


class ConfigValidationError(CamRigError, ValueError):
    pass


class PipelineStateError(CamRigError, RuntimeError):
    """Raised for calls on an uninitialized or shut-down pipeline."""


class DecodeError(CamRigError):
    pass


class InsufficientSamplesError(CamRigError):
    def __init__(self, camera_id: int, n_samples: int, required: int):
        self.camera_id = camera_id
        self.n_samples = n_samples
        self.required = required
        super().__init__(f"camera {camera_id}: {n_samples} calibration samples, need >= {required}")


class CalibrationDegenerateError(CamRigError):
    def __init__(self, message: str, condition_number: float = float("nan")):
        self.condition_number = condition_number
        super().__init__(f"{message} (condition number {condition_number:.3g})")


class InsufficientCorrespondencesError(CamRigError):
    def __init__(self, n_found: int, required: int):
        self.n_found = n_found
        self.required = required
        super().__init__(f"{n_found} correspondences, need >= {required}")


@dataclass(frozen=True)
class Issue:
    """
    One non-fatal problem reported by a stage.

    Stages never swallow a failure: anything that degrades an output ends up
    as an Issue in the returned report.
    """

    kind: IssueKind
    stage: str
    message: str
    camera_id: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "stage": self.stage, "message": self.message, "camera_id": self.camera_id}

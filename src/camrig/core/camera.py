from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np

from camrig.core.distortion import BrownDistortion
from camrig.core.geometry import projection_matrix, transform_points


def project_with_params(intr: np.ndarray, XYZ_cam: np.ndarray) -> np.ndarray:
    """
    Project camera-frame points with a packed parameter vector
    (fx, fy, cx, cy, k1, k2, p1, p2, k3).

    This is the projection used inside every least-squares residual, so it
    takes plain arrays rather than a CameraProfile. Points at Z<=0 give NaN.
    """
    intr = np.asarray(intr, dtype=np.float64).reshape(9)
    XYZ_cam = np.asarray(XYZ_cam, dtype=np.float64).reshape(-1, 3)
    Z = XYZ_cam[:, 2]
    uv = np.full((XYZ_cam.shape[0], 2), np.nan, dtype=np.float64)
    good = np.isfinite(Z) & (Z > 1e-12)
    if not np.any(good):
        return uv
    x = XYZ_cam[good, 0] / Z[good]
    y = XYZ_cam[good, 1] / Z[good]
    xd, yd = BrownDistortion.from_vector(intr[4:]).distort(x, y)
    uv[good, 0] = intr[0] * xd + intr[2]
    uv[good, 1] = intr[1] * yd + intr[3]
    return uv


@dataclass(frozen=True)
class CameraProfile:
    """
    Calibrated pinhole + Brown distortion camera.

    `rotation`/`translation` map reference-camera coordinates into this
    camera: X_cam = R X_ref + t. The reference camera carries the identity.
    """

    fx: float
    fy: float
    cx: float
    cy: float
    distortion: BrownDistortion = field(default_factory=BrownDistortion)
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    translation: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))
    rms_px: float = float("nan")

    def __post_init__(self) -> None:
        if not (np.isfinite(self.fx) and np.isfinite(self.fy) and self.fx > 0.0 and self.fy > 0.0):
            raise ValueError(f"focal lengths must be finite and > 0 (fx={self.fx}, fy={self.fy})")
        R = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        t = np.asarray(self.translation, dtype=np.float64).reshape(3)
        if not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
            raise ValueError("non-finite extrinsics")
        object.__setattr__(self, "rotation", R)
        object.__setattr__(self, "translation", t)

    @classmethod
    def from_params(cls, intr: np.ndarray, **kwargs) -> "CameraProfile":
        intr = np.asarray(intr, dtype=np.float64).reshape(9)
        fx, fy, cx, cy = (float(v) for v in intr[:4].tolist())
        return cls(fx=fx, fy=fy, cx=cx, cy=cy, distortion=BrownDistortion.from_vector(intr[4:]), **kwargs)

    def params(self) -> np.ndarray:
        return np.concatenate([[self.fx, self.fy, self.cx, self.cy], self.distortion.as_vector()])

    def K(self) -> np.ndarray:
        return np.array(
            [[float(self.fx), 0.0, float(self.cx)], [0.0, float(self.fy), float(self.cy)], [0.0, 0.0, 1.0]],
            dtype=np.float64,
        )

    def dist(self) -> np.ndarray:
        return self.distortion.as_vector()

    def projection_matrix(self) -> np.ndarray:
        """P = K [R | t], reference frame -> undistorted pixels."""
        return projection_matrix(self.K(), self.rotation, self.translation)

    def with_extrinsics(self, rotation: np.ndarray, translation: np.ndarray) -> "CameraProfile":
        return replace(self, rotation=rotation, translation=translation)

    def project(self, XYZ_ref: np.ndarray) -> np.ndarray:
        """Reference-frame points -> distorted pixels (N,2)."""
        return project_with_params(self.params(), transform_points(self.rotation, self.translation, XYZ_ref))

    def undistort_pixels(self, uv_px: np.ndarray) -> np.ndarray:
        """Distorted pixels -> ideal pinhole pixels with the same K."""
        uv_px = np.asarray(uv_px, dtype=np.float64).reshape(-1, 2)
        xd = (uv_px[:, 0] - self.cx) / self.fx
        yd = (uv_px[:, 1] - self.cy) / self.fy
        x, y = self.distortion.undistort(xd, yd)
        return np.stack([self.fx * x + self.cx, self.fy * y + self.cy], axis=1)

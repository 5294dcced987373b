from __future__ import annotations

from dataclasses import dataclass

import numpy as np

DIST_KEYS = ("k1", "k2", "p1", "p2", "k3")


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady lens distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Coefficient order is OpenCV's: (k1, k2, p1, p2, k3).
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @classmethod
    def from_vector(cls, coeffs: np.ndarray) -> "BrownDistortion":
        c = np.asarray(coeffs, dtype=np.float64).reshape(-1)
        if c.size != 5:
            raise ValueError(f"distortion vector must have 5 coefficients, got {c.size}")
        return cls(*(float(v) for v in c.tolist()))

    def as_vector(self) -> np.ndarray:
        return np.array([self.k1, self.k2, self.p1, self.p2, self.k3], dtype=np.float64)

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        radial = 1.0 + r2 * (self.k1 + r2 * (self.k2 + r2 * self.k3))
        two_xy = 2.0 * x * y
        xd = x * radial + self.p1 * two_xy + self.p2 * (r2 + 2.0 * x * x)
        yd = y * radial + self.p1 * (r2 + 2.0 * y * y) + self.p2 * two_xy
        return xd, yd

    def undistort(
        self, xd: np.ndarray, yd: np.ndarray, iterations: int = 20, tol: float = 1e-12
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Fixed-point inverse of `distort`, valid for small/moderate distortion.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x = xd.copy()
        y = yd.copy()
        for _ in range(int(iterations)):
            x_est, y_est = self.distort(x, y)
            ex = xd - x_est
            ey = yd - y_est
            x += ex
            y += ey
            if float(np.max(np.abs(ex), initial=0.0)) < tol and float(np.max(np.abs(ey), initial=0.0)) < tol:
                break
        return x, y

    @property
    def is_zero(self) -> bool:
        return not np.any(self.as_vector())


def brown_from_dict(d: dict) -> BrownDistortion:
    return BrownDistortion(**{k: float(d.get(k, 0.0)) for k in DIST_KEYS})


def brown_to_dict(m: BrownDistortion) -> dict[str, float]:
    return {k: float(getattr(m, k)) for k in DIST_KEYS}

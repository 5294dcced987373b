from __future__ import annotations

from dataclasses import dataclass

import numpy as np

Z_95 = 1.96


@dataclass(frozen=True)
class UncertaintySummary:
    """Mean, standard deviation and normal 95% band of one set of measurements."""

    count: int
    mean: float
    std: float
    band_95: float
    interval_95: tuple[float, float]

    def to_dict(self) -> dict[str, object]:
        return {
            "count": self.count,
            "mean": self.mean,
            "std": self.std,
            "band_95": self.band_95,
            "interval_95": list(self.interval_95),
        }


def summarize(values: np.ndarray) -> UncertaintySummary:
    """
    Summary of the finite entries of `values`. Population standard deviation;
    an empty input gives count 0 and NaN statistics.
    """
    v = np.asarray(values, dtype=np.float64).reshape(-1)
    v = v[np.isfinite(v)]
    if v.size == 0:
        nan = float("nan")
        return UncertaintySummary(count=0, mean=nan, std=nan, band_95=nan, interval_95=(nan, nan))
    mean = float(np.mean(v))
    std = float(np.std(v))
    band = Z_95 * std
    return UncertaintySummary(count=int(v.size), mean=mean, std=std, band_95=band, interval_95=(mean - band, mean + band))


def summarize_depth(depth: np.ndarray) -> UncertaintySummary:
    return summarize(depth)


def summarize_points(points: np.ndarray) -> UncertaintySummary:
    """Summary of point depths (Z in the camera-a frame)."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return summarize(pts[:, 2])

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation


def rotvec_to_matrix(rvec: np.ndarray) -> np.ndarray:
    return Rotation.from_rotvec(np.asarray(rvec, dtype=np.float64).reshape(3)).as_matrix()


def matrix_to_rotvec(R: np.ndarray) -> np.ndarray:
    return Rotation.from_matrix(np.asarray(R, dtype=np.float64).reshape(3, 3)).as_rotvec()


def transform_points(R: np.ndarray, t: np.ndarray, XYZ: np.ndarray) -> np.ndarray:
    """Apply X' = R X + t to an (N,3) array."""
    XYZ = np.asarray(XYZ, dtype=np.float64).reshape(-1, 3)
    return XYZ @ np.asarray(R, dtype=np.float64).reshape(3, 3).T + np.asarray(t, dtype=np.float64).reshape(1, 3)


def compose_poses(
    R_ab: np.ndarray, t_ab: np.ndarray, R_bc: np.ndarray, t_bc: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """
    Chain X_b = R_ab X_a + t_ab and X_c = R_bc X_b + t_bc into X_c = R_ac X_a + t_ac.
    """
    R_ab = np.asarray(R_ab, dtype=np.float64).reshape(3, 3)
    R_bc = np.asarray(R_bc, dtype=np.float64).reshape(3, 3)
    R_ac = R_bc @ R_ab
    t_ac = R_bc @ np.asarray(t_ab, dtype=np.float64).reshape(3) + np.asarray(t_bc, dtype=np.float64).reshape(3)
    return R_ac, t_ac


def invert_pose(R: np.ndarray, t: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    return R.T, -R.T @ np.asarray(t, dtype=np.float64).reshape(3)


def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = (float(c) for c in np.asarray(v, dtype=np.float64).reshape(3))
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def essential_matrix(R: np.ndarray, T: np.ndarray) -> np.ndarray:
    """E = [T]x R for the convention X_b = R X_a + T."""
    return skew(T) @ np.asarray(R, dtype=np.float64).reshape(3, 3)


def fundamental_matrix(K_a: np.ndarray, K_b: np.ndarray, E: np.ndarray) -> np.ndarray:
    """
    F = K_b^-T E K_a^-1, normalized so that ||F||_F = 1.

    Satisfies x_b^T F x_a = 0 for corresponding (undistorted) pixels.
    """
    F = np.linalg.inv(K_b).T @ E @ np.linalg.inv(K_a)
    n = np.linalg.norm(F)
    return F / n if n > 0 else F


def projection_matrix(K: np.ndarray, R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """P = K [R | t] (3,4)."""
    Rt = np.hstack([np.asarray(R, dtype=np.float64).reshape(3, 3), np.asarray(t, dtype=np.float64).reshape(3, 1)])
    return np.asarray(K, dtype=np.float64).reshape(3, 3) @ Rt


def triangulate_dlt(P_a: np.ndarray, P_b: np.ndarray, uv_a: np.ndarray, uv_b: np.ndarray) -> np.ndarray:
    """
    Linear two-view triangulation.

    For each correspondence, the cross-product constraint x × (P X) = 0 gives
    four rows (two per view); X is the right singular vector with the
    smallest singular value, dehomogenized by its last coordinate.
    Returns (N,3); rows with a vanishing homogeneous coordinate are NaN.
    """
    P_a = np.asarray(P_a, dtype=np.float64).reshape(3, 4)
    P_b = np.asarray(P_b, dtype=np.float64).reshape(3, 4)
    uv_a = np.asarray(uv_a, dtype=np.float64).reshape(-1, 2)
    uv_b = np.asarray(uv_b, dtype=np.float64).reshape(-1, 2)
    if uv_a.shape[0] != uv_b.shape[0]:
        raise ValueError("uv_a and uv_b must have the same length")
    n = uv_a.shape[0]
    if n == 0:
        return np.zeros((0, 3), dtype=np.float64)

    A = np.empty((n, 4, 4), dtype=np.float64)
    A[:, 0] = uv_a[:, 0:1] * P_a[2] - P_a[0]
    A[:, 1] = uv_a[:, 1:2] * P_a[2] - P_a[1]
    A[:, 2] = uv_b[:, 0:1] * P_b[2] - P_b[0]
    A[:, 3] = uv_b[:, 1:2] * P_b[2] - P_b[1]
    # Row scaling does not change the solution but keeps the SVD well balanced.
    A /= np.linalg.norm(A, axis=2, keepdims=True) + 1e-300

    _u, _s, vt = np.linalg.svd(A)
    Xh = vt[:, -1, :]
    w = Xh[:, 3]
    out = np.full((n, 3), np.nan, dtype=np.float64)
    good = np.abs(w) > 1e-12
    out[good] = Xh[good, :3] / w[good, None]
    return out

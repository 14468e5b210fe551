"""Similarity transform (Sim3) estimation between two sets of 3D points.

The closed-form solution uses unit quaternions: the rotation is the
eigenvector of the largest eigenvalue of a symmetric 4x4 matrix built from
the cross-covariance of the centred point sets.  A RANSAC solver draws
minimal sets of three correspondences.  It scores each hypothesis by how well
each set reprojects into the other camera's image.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

__all__ = [
    "Sim3Estimate",
    "Sim3Result",
    "Sim3Solver",
    "compute_sim3",
    "project_to_image",
]

# Chi-square value at 99% for two degrees of freedom.
_CHI2_99_2DOF = 9.210
_MIN_SET = 3


@dataclass(frozen=True)
class Sim3Estimate:
    """A similarity transform mapping set 2 into set 1: ``p1 = s * R @ p2 + t``.

    ``t12`` is the 4x4 matrix of that transform and ``t21`` its inverse.
    """

    rotation: np.ndarray
    translation: np.ndarray
    scale: float
    t12: np.ndarray
    t21: np.ndarray


@dataclass(frozen=True)
class Sim3Result:
    """Outcome of a RANSAC run.

    ``pose`` is the 4x4 transform ``T12``, or None when nothing was accepted.
    ``inliers`` flags every correspondence. ``no_more`` is True once the
    iteration budget is used up.
    """

    pose: np.ndarray | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self):
        """True when a transform was accepted."""
        return self.pose is not None


def _as_points(points, name):
    arr = np.asarray(points, dtype=float)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must have shape (n, 3)")
    return arr


def _quaternion_to_rotation(q):
    norm = np.linalg.norm(q)
    if norm == 0.0 or not np.isfinite(norm):
        return np.eye(3)
    w, x, y, z = q / norm
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def compute_sim3(points1, points2, fix_scale=True):
    """Fit the similarity transform taking ``points2`` onto ``points1``.

    Both arguments hold corresponding points as rows.  With ``fix_scale`` the
    scale is held at 1.
    """
    p1 = _as_points(points1, "points1")
    p2 = _as_points(points2, "points2")
    if len(p1) != len(p2):
        raise ValueError("points1 and points2 must have the same length")
    if len(p1) == 0:
        raise ValueError("at least one correspondence is needed")

    o1 = p1.mean(axis=0)
    o2 = p2.mean(axis=0)
    pr1 = p1 - o1
    pr2 = p2 - o2

    m = pr2.T @ pr1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array([
        [n11, n12, n13, n14],
        [n12, n22, n23, n24],
        [n13, n23, n33, n34],
        [n14, n24, n34, n44],
    ])

    _, eigenvectors = np.linalg.eigh(n)
    rotation = _quaternion_to_rotation(eigenvectors[:, -1])

    p3 = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        den = float(np.sum(p3 * p3))
        scale = float(np.sum(pr1 * p3)) / den if den != 0.0 else 1.0

    translation = o1 - scale * rotation @ o2

    t12 = np.eye(4)
    t12[:3, :3] = scale * rotation
    t12[:3, 3] = translation

    s_r_inv = rotation.T / scale
    t21 = np.eye(4)
    t21[:3, :3] = s_r_inv
    t21[:3, 3] = -s_r_inv @ translation

    return Sim3Estimate(rotation, translation, scale, t12, t21)


def project_to_image(points, k):
    """Project camera-frame points through the intrinsic matrix ``k``."""
    pts = _as_points(points, "points")
    k = np.asarray(k, dtype=float)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_z = 1.0 / pts[:, 2]
        x = pts[:, 0] * inv_z
        y = pts[:, 1] * inv_z
    return np.column_stack([fx * x + cx, fy * y + cy])


def _transform(points, t):
    return points @ t[:3, :3].T + t[:3, 3]


def _ransac_iterations(probability, epsilon):
    try:
        value = math.log(1.0 - probability) / math.log(1.0 - epsilon ** 3)
    except (ValueError, ZeroDivisionError):
        return 1
    if not math.isfinite(value):
        return 1
    return math.ceil(value)


class Sim3Solver:
    """RANSAC estimation of the Sim3 between two cameras' views of shared points.

    ``points1`` and ``points2`` are the matched points in the frames of
    camera 1 and camera 2.  ``sigma2_1`` and ``sigma2_2`` are the squared
    measurement uncertainties of each point in its image, and ``k1`` and
    ``k2`` the cameras' intrinsic matrices.
    """

    def __init__(self, points1, points2, sigma2_1=None, sigma2_2=None, k1=None, k2=None,
                 fix_scale=True, rng=None):
        self._x3dc1 = _as_points(points1, "points1")
        self._x3dc2 = _as_points(points2, "points2")
        if len(self._x3dc1) != len(self._x3dc2):
            raise ValueError("points1 and points2 must have the same length")
        self.n = len(self._x3dc1)

        self._max_error1 = _CHI2_99_2DOF * self._sigmas(sigma2_1, "sigma2_1")
        self._max_error2 = _CHI2_99_2DOF * self._sigmas(sigma2_2, "sigma2_2")

        self._k1 = np.eye(3) if k1 is None else np.asarray(k1, dtype=float)
        self._k2 = np.eye(3) if k2 is None else np.asarray(k2, dtype=float)
        self.fix_scale = bool(fix_scale)
        self._rng = np.random.default_rng(rng)

        self._p1im1 = project_to_image(self._x3dc1, self._k1) if self.n else np.empty((0, 2))
        self._p2im2 = project_to_image(self._x3dc2, self._k2) if self.n else np.empty((0, 2))

        self._best_count = 0
        self._best = None
        self.set_ransac_parameters()

    def _sigmas(self, values, name):
        if values is None:
            return np.ones(self.n)
        arr = np.asarray(values, dtype=float).reshape(-1)
        if len(arr) != self.n:
            raise ValueError(f"{name} must have one entry per correspondence")
        return arr

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300):
        """Configure RANSAC and reset the iteration count."""
        self.probability = float(probability)
        self.min_inliers = int(min_inliers)
        n = self.n

        if self.min_inliers == n:
            n_iterations = 1
        elif n == 0:
            n_iterations = 1
        else:
            n_iterations = _ransac_iterations(self.probability, self.min_inliers / n)
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))
        self.iterations = 0

    def find(self):
        """Run RANSAC up to the configured iteration limit."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations):
        """Run at most ``n_iterations`` more RANSAC iterations."""
        no_inliers = [False] * self.n
        if self.n < self.min_inliers or self.n < _MIN_SET:
            return Sim3Result(None, no_inliers, 0, True)

        current = 0
        while self.iterations < self.max_iterations and current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.choice(self.n, size=_MIN_SET, replace=False)
            with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
                estimate = compute_sim3(self._x3dc1[sample], self._x3dc2[sample], self.fix_scale)
            mask = self._check_inliers(estimate)
            count = int(mask.sum())

            if count >= self._best_count:
                self._best_count = count
                self._best = estimate
                if count > self.min_inliers:
                    return Sim3Result(estimate.t12.copy(), mask.tolist(), count, False)

        no_more = self.iterations >= self.max_iterations
        return Sim3Result(None, no_inliers, 0, no_more)

    def _check_inliers(self, estimate):
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            p2im1 = project_to_image(_transform(self._x3dc2, estimate.t12), self._k1)
            p1im2 = project_to_image(_transform(self._x3dc1, estimate.t21), self._k2)
            err1 = np.sum((self._p1im1 - p2im1) ** 2, axis=1)
            err2 = np.sum((p1im2 - self._p2im2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def estimated_rotation(self):
        """Rotation of the best hypothesis so far, or None."""
        return None if self._best is None else self._best.rotation.copy()

    def estimated_translation(self):
        """Offset vector t of the best hypothesis so far, or None."""
        return None if self._best is None else self._best.translation.copy()

    def estimated_scale(self):
        """Scale of the best hypothesis so far, or None."""
        return None if self._best is None else self._best.scale
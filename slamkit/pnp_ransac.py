"""RANSAC wrapper around EPnP for robust camera pose estimation.

Minimal sets of 2D-3D correspondences are drawn at random, a pose is computed
for each with EPnP, and correspondences are scored by their reprojection
error against a per-point threshold.  When a hypothesis gathers enough
inliers it is refined using all of its inliers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from slamkit.epnp import EPnP

__all__ = ["PnPResult", "PnPSolver"]


@dataclass(frozen=True)
class PnPResult:
    """Outcome of a RANSAC run.

    ``pose`` is a 4x4 world-to-camera transform, or None when no pose was
    accepted.  ``inliers`` flags each correspondence (empty without a pose).
    ``no_more`` is True once the solver has used up its iteration budget.
    """

    pose: np.ndarray | None
    inliers: list[bool] = field(default_factory=list)
    n_inliers: int = 0
    no_more: bool = False

    @property
    def found(self):
        """True when a pose was accepted."""
        return self.pose is not None


def _pose_matrix(rotation, translation):
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = rotation
    pose[:3, 3] = translation
    return pose


def _ransac_iterations(probability, epsilon):
    try:
        value = math.log(1.0 - probability) / math.log(1.0 - epsilon ** 3)
    except (ValueError, ZeroDivisionError):
        return 1
    if not math.isfinite(value):
        return 1
    return math.ceil(value)


class PnPSolver:
    """Robust Perspective-n-Point solver over a fixed set of correspondences."""

    def __init__(self, points_2d, points_3d, sigma2=None, fu=1.0, fv=1.0, uc=0.0, vc=0.0, rng=None):
        self._p2d = np.asarray(points_2d, dtype=float).reshape(-1, 2)
        self._p3d = np.asarray(points_3d, dtype=float).reshape(-1, 3)
        if len(self._p2d) != len(self._p3d):
            raise ValueError("points_2d and points_3d must have the same length")
        n = len(self._p2d)
        if sigma2 is None:
            self._sigma2 = np.ones(n)
        else:
            self._sigma2 = np.asarray(sigma2, dtype=float).reshape(-1)
            if len(self._sigma2) != n:
                raise ValueError("sigma2 must have one entry per correspondence")
        self.n = n
        self._epnp = EPnP(fu, fv, uc, vc)
        self._rng = np.random.default_rng(rng)

        self.iterations = 0
        self._best_count = 0
        self._best_mask = np.zeros(n, dtype=bool)
        self._best_pose = None

        self.set_ransac_parameters()

    def set_ransac_parameters(self, probability=0.99, min_inliers=8, max_iterations=300,
                              min_set=4, epsilon=0.4, th2=5.991):
        """Configure RANSAC; the thresholds are adapted to the number of points."""
        self.probability = float(probability)
        self.min_set = int(min_set)
        n = self.n

        n_min = max(int(n * epsilon), int(min_inliers), self.min_set)
        self.min_inliers = n_min

        eps = float(epsilon)
        if n > 0 and eps < n_min / n:
            eps = n_min / n
        self.epsilon = eps

        if n_min == n:
            n_iterations = 1
        else:
            n_iterations = _ransac_iterations(self.probability, eps)
        self.max_iterations = max(1, min(n_iterations, int(max_iterations)))

        self._max_error = self._sigma2 * float(th2)

    def find(self):
        """Run RANSAC up to the configured iteration limit."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations):
        """Run at least ``n_iterations`` more RANSAC iterations."""
        if self.n < self.min_inliers:
            return PnPResult(None, [], 0, True)

        current = 0
        while self.iterations < self.max_iterations or current < n_iterations:
            current += 1
            self.iterations += 1

            sample = self._rng.choice(self.n, size=self.min_set, replace=False)
            solution = self._solve(sample)
            if solution is None:
                continue
            rotation, translation = solution
            mask = self._check_inliers(rotation, translation)
            count = int(mask.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_mask = mask
                    self._best_count = count
                    self._best_pose = _pose_matrix(rotation, translation)

                refined = self._refine()
                if refined is not None:
                    pose, refined_mask, refined_count = refined
                    return PnPResult(pose.copy(), refined_mask.tolist(), refined_count, False)

        no_more = False
        if self.iterations >= self.max_iterations:
            no_more = True
            if self._best_count >= self.min_inliers:
                return PnPResult(self._best_pose.copy(), self._best_mask.tolist(),
                                 self._best_count, True)
        return PnPResult(None, [], 0, no_more)

    def _solve(self, indices):
        try:
            rotation, translation, _ = self._epnp.compute_pose(self._p3d[indices], self._p2d[indices])
        except (np.linalg.LinAlgError, ValueError):
            return None
        return rotation, translation

    def _refine(self):
        indices = np.flatnonzero(self._best_mask)
        solution = self._solve(indices)
        if solution is None:
            return None
        rotation, translation = solution
        mask = self._check_inliers(rotation, translation)
        count = int(mask.sum())
        if count > self.min_inliers:
            return _pose_matrix(rotation, translation), mask, count
        return None

    def _check_inliers(self, rotation, translation):
        e = self._epnp
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            pcs = self._p3d @ np.asarray(rotation).T + np.asarray(translation).reshape(3)
            inv_z = 1.0 / pcs[:, 2]
            ue = e.uc + e.fu * pcs[:, 0] * inv_z
            ve = e.vc + e.fv * pcs[:, 1] * inv_z
            error2 = (self._p2d[:, 0] - ue) ** 2 + (self._p2d[:, 1] - ve) ** 2
            return error2 < self._max_error
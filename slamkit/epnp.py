"""Efficient Perspective-n-Point (EPnP) camera pose estimation.

The pose of a calibrated pinhole camera is recovered from correspondences
between 3D world points and their 2D image projections.  Every world point is
expressed as a weighted sum of four control points.  The camera-frame control
points are found from the null space of a linear system and refined with
Gauss-Newton.
"""

from __future__ import annotations

import math

import numpy as np

__all__ = ["EPnP", "qr_solve", "mat_to_quat", "relative_error"]

# Pairs of control points, in the order used by the distance constraints.
_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_GAUSS_NEWTON_ITERATIONS = 5


def qr_solve(a, b):
    """Solve ``a @ x = b`` in the least-squares sense by Householder QR.

    ``a`` must have at least as many rows as columns.  Raises ``ValueError``
    when a column of the reduced matrix is entirely zero.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    if a.ndim != 2 or a.shape[0] != b.shape[0]:
        raise ValueError("a must be a matrix with as many rows as b has entries")
    nr, nc = a.shape
    if nr < nc:
        raise ValueError("a must have at least as many rows as columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        eta = float(np.max(np.abs(a[k:, k])))
        if eta == 0.0:
            raise ValueError("matrix is singular")
        a[k:, k] /= eta
        sigma = math.sqrt(float(a[k:, k] @ a[k:, k]))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        if k + 1 < nc:
            tau = (a[k:, k] @ a[k:, k + 1:]) / a1[k]
            a[k:, k + 1:] -= np.outer(a[k:, k], tau)

    # b <- Q^T b
    for j in range(nc):
        tau = (a[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    # x <- R^-1 b
    x = np.zeros(nc)
    for i in reversed(range(nc)):
        x[i] = (b[i] - a[i, i + 1:] @ x[i + 1:]) / a2[i]
    return x


def mat_to_quat(rotation):
    """Return the quaternion of a rotation matrix as ``[x, y, z, w]``."""
    r = np.asarray(rotation, dtype=float)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / math.sqrt(n4))


def relative_error(rotation_true, translation_true, rotation_est, translation_est):
    """Return ``(rotation_error, translation_error)`` relative to the true pose."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    q_norm = np.linalg.norm(q_true)
    rot_err = min(
        np.linalg.norm(q_true - q_est) / q_norm,
        np.linalg.norm(q_true + q_est) / q_norm,
    )
    t_true = np.asarray(translation_true, dtype=float).reshape(3)
    t_est = np.asarray(translation_est, dtype=float).reshape(3)
    transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def _choose_control_points(pws):
    centroid = pws.mean(axis=0)
    centred = pws - centroid
    u, dc, _ = np.linalg.svd(centred.T @ centred)
    uct = u.T
    n = len(pws)
    cws = np.empty((4, 3))
    cws[0] = centroid
    for i in range(1, 4):
        cws[i] = centroid + math.sqrt(dc[i - 1] / n) * uct[i - 1]
    return cws


def _barycentric_coordinates(pws, cws):
    cc_inv = np.linalg.pinv((cws[1:] - cws[0]).T)
    alphas = np.empty((len(pws), 4))
    alphas[:, 1:] = (pws - cws[0]) @ cc_inv.T
    alphas[:, 0] = 1.0 - alphas[:, 1:].sum(axis=1)
    return alphas


def _compute_l_6x10(ut):
    vs = [ut[11 - i].reshape(4, 3) for i in range(4)]
    dv = [np.array([v[a] - v[b] for a, b in _PAIRS]) for v in vs]

    def d(p, q):
        return np.sum(dv[p] * dv[q], axis=1)

    return np.column_stack([
        d(0, 0), 2.0 * d(0, 1), d(1, 1), 2.0 * d(0, 2), 2.0 * d(1, 2),
        d(2, 2), 2.0 * d(0, 3), 2.0 * d(1, 3), 2.0 * d(2, 3), d(3, 3),
    ])


def _compute_rho(cws):
    return np.array([float(np.sum((cws[a] - cws[b]) ** 2)) for a, b in _PAIRS])


# betas10        = [B11 B12 B22 B13 B23 B33 B14 B24 B34 B44]
# betas_approx_1 = [B11 B12     B13         B14]
def _betas_approx_1(l_6x10, rho):
    b4 = np.linalg.lstsq(l_6x10[:, [0, 1, 3, 6]], rho, rcond=None)[0]
    betas = np.zeros(4)
    if b4[0] < 0:
        betas[0] = math.sqrt(-b4[0])
        betas[1:] = -b4[1:] / betas[0]
    else:
        betas[0] = math.sqrt(b4[0])
        betas[1:] = b4[1:] / betas[0]
    return betas


# betas_approx_2 = [B11 B12 B22                            ]
def _betas_approx_2(l_6x10, rho):
    b3 = np.linalg.lstsq(l_6x10[:, :3], rho, rcond=None)[0]
    betas = np.zeros(4)
    if b3[0] < 0:
        betas[0] = math.sqrt(-b3[0])
        betas[1] = math.sqrt(-b3[2]) if b3[2] < 0 else 0.0
    else:
        betas[0] = math.sqrt(b3[0])
        betas[1] = math.sqrt(b3[2]) if b3[2] > 0 else 0.0
    if b3[1] < 0:
        betas[0] = -betas[0]
    return betas


# betas_approx_3 = [B11 B12 B22 B13 B23                    ]
def _betas_approx_3(l_6x10, rho):
    b5 = np.linalg.lstsq(l_6x10[:, :5], rho, rcond=None)[0]
    betas = np.zeros(4)
    if b5[0] < 0:
        betas[0] = math.sqrt(-b5[0])
        betas[1] = math.sqrt(-b5[2]) if b5[2] < 0 else 0.0
    else:
        betas[0] = math.sqrt(b5[0])
        betas[1] = math.sqrt(b5[2]) if b5[2] > 0 else 0.0
    if b5[1] < 0:
        betas[0] = -betas[0]
    betas[2] = np.float64(b5[3]) / np.float64(betas[0])
    return betas


def _gauss_newton(l_6x10, rho, betas):
    betas = np.array(betas, dtype=float)
    lm = l_6x10
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        b0, b1, b2, b3 = betas
        a = np.column_stack([
            2 * lm[:, 0] * b0 + lm[:, 1] * b1 + lm[:, 3] * b2 + lm[:, 6] * b3,
            lm[:, 1] * b0 + 2 * lm[:, 2] * b1 + lm[:, 4] * b2 + lm[:, 7] * b3,
            lm[:, 3] * b0 + lm[:, 4] * b1 + 2 * lm[:, 5] * b2 + lm[:, 8] * b3,
            lm[:, 6] * b0 + lm[:, 7] * b1 + lm[:, 8] * b2 + 2 * lm[:, 9] * b3,
        ])
        products = np.array([
            b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
            b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
        ])
        residual = rho - lm @ products
        try:
            step = qr_solve(a, residual)
        except ValueError:
            break
        betas += step
    return betas


class EPnP:
    """Pose solver for a pinhole camera with the given intrinsics."""

    def __init__(self, fu, fv, uc, vc):
        self.fu = float(fu)
        self.fv = float(fv)
        self.uc = float(uc)
        self.vc = float(vc)

    @staticmethod
    def _correspondences(points_3d, points_2d):
        pws = np.asarray(points_3d, dtype=float)
        us = np.asarray(points_2d, dtype=float)
        if pws.ndim != 2 or pws.shape[1] != 3:
            raise ValueError("points_3d must have shape (n, 3)")
        if us.ndim != 2 or us.shape[1] != 2:
            raise ValueError("points_2d must have shape (n, 2)")
        if len(pws) != len(us):
            raise ValueError("points_3d and points_2d must have the same length")
        return pws, us

    def compute_pose(self, points_3d, points_2d):
        """Estimate the pose; return ``(rotation, translation, error)``.

        ``rotation`` is 3x3 and ``translation`` has three entries, mapping
        world points into the camera frame; ``error`` is the mean
        reprojection error in pixels.
        """
        pws, us = self._correspondences(points_3d, points_2d)
        if len(pws) < 4:
            raise ValueError("at least four correspondences are needed")

        with np.errstate(divide="ignore", invalid="ignore"):
            cws = _choose_control_points(pws)
            alphas = _barycentric_coordinates(pws, cws)
            m = self._build_m(alphas, us)
            u, _, _ = np.linalg.svd(m.T @ m)
            ut = u.T
            l_6x10 = _compute_l_6x10(ut)
            rho = _compute_rho(cws)

            candidates = []
            for approx in (_betas_approx_1, _betas_approx_2, _betas_approx_3):
                betas = _gauss_newton(l_6x10, rho, approx(l_6x10, rho))
                candidates.append(self._rotation_and_translation(ut, betas, alphas, pws, us))

        best = 0
        if candidates[1][2] < candidates[0][2]:
            best = 1
        if candidates[2][2] < candidates[best][2]:
            best = 2
        return candidates[best]

    def reprojection_error(self, rotation, translation, points_3d, points_2d):
        """Mean pixel distance between observed and reprojected points."""
        pws, us = self._correspondences(points_3d, points_2d)
        r = np.asarray(rotation, dtype=float)
        t = np.asarray(translation, dtype=float).reshape(3)
        pcs = pws @ r.T + t
        inv_z = 1.0 / pcs[:, 2]
        ue = self.uc + self.fu * pcs[:, 0] * inv_z
        ve = self.vc + self.fv * pcs[:, 1] * inv_z
        dist = np.sqrt((us[:, 0] - ue) ** 2 + (us[:, 1] - ve) ** 2)
        return float(dist.sum() / len(pws))

    def _build_m(self, alphas, us):
        m = np.zeros((2 * len(alphas), 12))
        m[0::2, 0::3] = alphas * self.fu
        m[0::2, 2::3] = alphas * (self.uc - us[:, 0:1])
        m[1::2, 1::3] = alphas * self.fv
        m[1::2, 2::3] = alphas * (self.vc - us[:, 1:2])
        return m

    def _rotation_and_translation(self, ut, betas, alphas, pws, us):
        ccs = sum(betas[i] * ut[11 - i].reshape(4, 3) for i in range(4))
        pcs = alphas @ ccs
        if pcs[0, 2] < 0.0:
            pcs = -pcs

        pc0 = pcs.mean(axis=0)
        pw0 = pws.mean(axis=0)
        abt = (pcs - pc0).T @ (pws - pw0)
        u, _, vt = np.linalg.svd(abt)
        r = u @ vt
        if np.linalg.det(r) < 0:
            r[2] = -r[2]
        t = pc0 - r @ pw0
        return r, t, self.reprojection_error(r, t, pws, us)
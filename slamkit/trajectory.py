"""Camera trajectory export in the TUM and KITTI text formats.

Each tracked frame is stored as a pose relative to a reference keyframe
together with that keyframe's pose.  Both formats write the camera-to-world
transform of every frame, one frame per line.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path

import numpy as np

__all__ = [
    "TrajectoryEntry",
    "rotation_to_quaternion",
    "camera_to_world",
    "format_tum_line",
    "format_kitti_line",
    "save_trajectory_tum",
    "save_trajectory_kitti",
]

_log = logging.getLogger(__name__)


def _as_pose(tcw):
    pose = np.asarray(tcw, dtype=float)
    if pose.shape != (4, 4):
        raise ValueError("a pose must be a 4x4 matrix")
    return pose


@dataclass(frozen=True)
class TrajectoryEntry:
    """One tracked frame.

    ``relative_pose`` is the frame pose relative to its reference keyframe
    (``Tcr``) and ``reference_pose`` the world-to-camera pose of that keyframe
    (``Trw``), already expressed relative to the trajectory origin.  ``lost``
    marks frames where tracking failed.
    """

    timestamp: float
    relative_pose: np.ndarray
    reference_pose: np.ndarray
    lost: bool = False

    @property
    def pose(self):
        """World-to-camera pose of the frame, ``Tcr @ Trw``."""
        return _as_pose(self.relative_pose) @ _as_pose(self.reference_pose)


def rotation_to_quaternion(rotation):
    """Return the unit quaternion of a rotation matrix as ``[x, y, z, w]``."""
    m = np.asarray(rotation, dtype=float)
    if m.shape != (3, 3):
        raise ValueError("rotation must be a 3x3 matrix")
    q = np.zeros(4)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (m[2, 1] - m[1, 2]) * t
        q[1] = (m[0, 2] - m[2, 0]) * t
        q[2] = (m[1, 0] - m[0, 1]) * t
    else:
        i = 0
        if m[1, 1] > m[0, 0]:
            i = 1
        if m[2, 2] > m[i, i]:
            i = 2
        j = (i + 1) % 3
        k = (j + 1) % 3
        t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
        q[i] = 0.5 * t
        t = 0.5 / t
        q[3] = (m[k, j] - m[j, k]) * t
        q[j] = (m[j, i] + m[i, j]) * t
        q[k] = (m[k, i] + m[i, k]) * t
    return q


def camera_to_world(tcw):
    """Invert a rigid world-to-camera pose into the camera-to-world pose."""
    pose = _as_pose(tcw)
    rwc = pose[:3, :3].T
    twc = -rwc @ pose[:3, 3] + 0.0
    twc = twc + 0.0
    result = np.eye(4)
    result[:3, :3] = rwc
    result[:3, 3] = twc
    return result


def _f32(value):
    return float(np.float32(value)) + 0.0


def format_tum_line(timestamp, tcw):
    """Format ``timestamp tx ty tz qx qy qz qw`` for a world-to-camera pose."""
    twc = camera_to_world(tcw)
    q = rotation_to_quaternion(twc[:3, :3])
    values = [_f32(v) for v in twc[:3, 3]] + [_f32(v) for v in q]
    return f"{float(timestamp):.6f} " + " ".join(f"{v:.9f}" for v in values)


def format_kitti_line(tcw):
    """Format the top three rows of the camera-to-world pose, row by row."""
    twc = camera_to_world(tcw)
    return " ".join(f"{_f32(v):.9f}" for v in twc[:3].reshape(-1))


def save_trajectory_tum(path, entries):
    """Write the frames that were not lost in TUM format."""
    path = Path(path)
    _log.info("Saving camera trajectory to %s", path)
    with path.open("w", encoding="ascii") as f:
        for entry in entries:
            if entry.lost:
                continue
            f.write(format_tum_line(entry.timestamp, entry.pose) + "\n")
    _log.info("trajectory saved")


def save_trajectory_kitti(path, entries):
    """Write every frame in KITTI format."""
    path = Path(path)
    _log.info("Saving camera trajectory to %s", path)
    with path.open("w", encoding="ascii") as f:
        for entry in entries:
            f.write(format_kitti_line(entry.pose) + "\n")
    _log.info("trajectory saved")
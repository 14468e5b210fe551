# slamkit

Geometric building blocks for visual SLAM pipelines, written in Python
on top of NumPy.

## Modules

### `slamkit.epnp`

- `EPnP(fu, fv, uc, vc)` is a pose solver for a pinhole camera.
  - `compute_pose(points_3d, points_2d)` takes at least four correspondences,
    with shapes `(n, 3)` and `(n, 2)`. It returns `(rotation, translation, error)`.
    The rotation and translation map world points into the camera frame, and
    `error` is the mean reprojection error in pixels. Fewer than four points or
    mismatched shapes raise `ValueError`.
  - `reprojection_error(rotation, translation, points_3d, points_2d)` returns
    the mean pixel distance between the observed points and the reprojected
    points.
- `qr_solve(a, b)` solves a least-squares system by Householder QR. It raises
  `ValueError` for a singular matrix or when `a` has fewer rows than columns.
- `mat_to_quat(rotation)` returns a quaternion as `[x, y, z, w]`.
- `relative_error(rotation_true, translation_true, rotation_est, translation_est)`
  returns `(rotation_error, translation_error)` relative to the true pose.

### `slamkit.pnp_ransac`

`PnPSolver(points_2d, points_3d, sigma2=None, fu=1.0, fv=1.0, uc=0.0, vc=0.0, rng=None)`
runs RANSAC over EPnP.

- `set_ransac_parameters(probability=0.99, min_inliers=8, max_iterations=300, min_set=4, epsilon=0.4, th2=5.991)`
  sets the RANSAC parameters. The minimum inlier count and the iteration
  budget are adapted to the number of correspondences. A point is an inlier
  when its squared reprojection error is below `sigma2 * th2`.
- `find()` runs up to the iteration budget.
- `iterate(n_iterations)` runs at least `n_iterations` more iterations.

Both return a `PnPResult` with these fields:

- `pose`: a 4x4 float32 world-to-camera matrix, or `None`.
- `inliers`: one flag per correspondence.
- `n_inliers`
- `no_more`: True once the iteration budget is used up.
- `found`: a property that is True when a pose was accepted.

When a hypothesis gathers enough inliers, the solver refines it using all
of its inliers.

### `slamkit.sim3`

- `compute_sim3(points1, points2, fix_scale=True)` fits `p1 = s * R @ p2 + t`
  in closed form, using the unit-quaternion method. It returns a
  `Sim3Estimate` with `rotation`, `translation`, `scale`, `t12` (4x4) and
  `t21` (the inverse of `t12`).
- `project_to_image(points, k)` projects camera-frame points through the
  intrinsic matrix `k`.
- `Sim3Solver(points1, points2, sigma2_1=None, sigma2_2=None, k1=None, k2=None, fix_scale=True, rng=None)`
  runs RANSAC on minimal sets of three points. It checks each hypothesis by
  reprojecting each point set into the other camera's image. The error
  threshold is `9.210 * sigma2`.
  - `set_ransac_parameters(probability=0.99, min_inliers=6, max_iterations=300)`
    sets the parameters and resets the iteration count.
  - `find()` and `iterate(n_iterations)` return a `Sim3Result`.
    `iterate` runs at most `n_iterations` more iterations.
    The result holds `pose` (T12 or `None`), `inliers`, `n_inliers`,
    `no_more` and `found`.
  - `estimated_rotation()`, `estimated_translation()` and `estimated_scale()`
    give the best hypothesis so far, or `None` if there is none.

### `slamkit.sgfilter`

`SGFilter(poly_order, filter_size)` is a causal Savitzky-Golay filter over a
sliding window of timed samples. It raises `ValueError` when
`poly_order + 1 > filter_size`.

`update(time, value)` returns `None` for the first `filter_size + 1` samples.
After that it returns `(y, y_dot)`, the fitted value and its derivative at
the newest sample. These values are also kept as the attributes `y`,
`y_dot`, `y_raw` and `coefficients`. `design_matrix()` returns a copy of the
current least-squares matrix.

### `slamkit.trajectory`

`TrajectoryEntry(timestamp, relative_pose, reference_pose, lost=False)`
describes one tracked frame. Its `pose` property is
`relative_pose @ reference_pose`.

- `save_trajectory_tum(path, entries)` writes one line per frame that was not
  lost: `timestamp tx ty tz qx qy qz qw`.
- `save_trajectory_kitti(path, entries)` writes every frame as the top three
  rows of the camera-to-world matrix.

The helpers `rotation_to_quaternion`, `camera_to_world`, `format_tum_line` and
`format_kitti_line` produce the individual pieces.

### `slamkit.viewer_control`

- `read_settings(path)` reads a YAML camera settings file and returns
  `ViewerSettings`. A leading `%YAML:1.0` line and the matrix tags of such
  files are accepted.
- `viewer_settings_from_mapping(values)` builds the settings from a mapping.
  Missing values count as zero. A frame rate below 1 becomes 30. A width or
  height below 1 makes the image size 640x480.
- `ViewerControl` holds the thread-safe pause and finish flags of a viewer
  loop:
  - `start`
  - `request_finish`, `check_finish`, `set_finish`, `is_finished`
  - `request_stop`, `stop`, `is_stopped`, `release`

  A new control reports itself finished. `stop()` does not pause when an end
  has been requested.

## What this package does not do

slamkit contains no tracking pipeline, feature extraction, map or keyframe
database, and no loop closing. It opens no viewer window and draws nothing.
`ViewerControl` only manages the flags of such a loop. There is no
command-line program. Everything here is a library to call from your own
code.

## Installation

```
pip install .
```

To install the test dependencies as well:

```
pip install .[test]
```

## Example

```python
import numpy as np
from slamkit.epnp import EPnP

solver = EPnP(fu=500.0, fv=500.0, uc=320.0, vc=240.0)
points_3d = np.random.default_rng(0).uniform(-1, 1, size=(8, 3)) + [0, 0, 5]
points_2d = np.column_stack([
    320.0 + 500.0 * points_3d[:, 0] / points_3d[:, 2],
    240.0 + 500.0 * points_3d[:, 1] / points_3d[:, 2],
])
rotation, translation, error = solver.compute_pose(points_3d, points_2d)
```

## Running the tests

```
pytest
```
import math

import numpy as np
import pytest

from slamkit.pnp_ransac import PnPResult, PnPSolver

FU, FV, UC, VC = 500.0, 500.0, 320.0, 240.0


def _rotation(ax, ay, az):
    rx = np.array([[1, 0, 0], [0, math.cos(ax), -math.sin(ax)], [0, math.sin(ax), math.cos(ax)]])
    ry = np.array([[math.cos(ay), 0, math.sin(ay)], [0, 1, 0], [-math.sin(ay), 0, math.cos(ay)]])
    rz = np.array([[math.cos(az), -math.sin(az), 0], [math.sin(az), math.cos(az), 0], [0, 0, 1]])
    return rz @ ry @ rx


def _scene(n, seed=0):
    gen = np.random.default_rng(seed)
    points = gen.uniform([-1.0, -1.0, -0.5], [1.0, 1.0, 0.5], size=(n, 3))
    rotation = _rotation(0.1, -0.05, 0.2)
    translation = np.array([0.1, -0.2, 4.0])
    cam = points @ rotation.T + translation
    uv = np.column_stack([UC + FU * cam[:, 0] / cam[:, 2], VC + FV * cam[:, 1] / cam[:, 2]])
    return points, uv, rotation, translation


def _solver(uv, points, rng=1):
    return PnPSolver(uv, points, None, FU, FV, UC, VC, rng)


def test_find_recovers_pose_without_noise():
    points, uv, rotation, translation = _scene(50)
    result = _solver(uv, points).find()
    assert result.found
    assert np.allclose(result.pose[:3, :3], rotation, atol=1e-4)
    assert np.allclose(result.pose[:3, 3], translation, atol=1e-3)
    assert np.allclose(result.pose[3], [0, 0, 0, 1])
    assert result.n_inliers == 50
    assert all(result.inliers)


def test_outliers_are_rejected():
    points, uv, rotation, translation = _scene(60, seed=3)
    corrupted = list(range(0, 60, 6))
    uv = uv.copy()
    uv[corrupted] += 50.0
    result = _solver(uv, points, rng=7).find()
    assert result.found
    assert result.n_inliers == 50
    assert [i for i, flag in enumerate(result.inliers) if not flag] == corrupted
    assert np.allclose(result.pose[:3, 3], translation, atol=1e-3)


def test_inlier_count_matches_flags():
    points, uv, _, _ = _scene(30, seed=5)
    result = _solver(uv, points).find()
    assert result.n_inliers == sum(result.inliers)
    assert len(result.inliers) == 30


def test_too_few_correspondences_gives_no_pose():
    points, uv, _, _ = _scene(3)
    solver = _solver(uv, points)
    assert solver.min_inliers >= solver.min_set
    result = solver.iterate(5)
    assert result.pose is None
    assert result.no_more is True
    assert result.inliers == []


def test_parameters_adapt_to_number_of_points():
    points, uv, _, _ = _scene(100)
    solver = _solver(uv, points)
    solver.set_ransac_parameters(0.99, 10, 300, 4, 0.5, 5.991)
    assert solver.min_inliers == int(100 * 0.5)
    assert 1 <= solver.max_iterations <= 300
    assert solver.epsilon >= solver.min_inliers / 100


def test_single_iteration_when_all_points_required():
    points, uv, _, _ = _scene(10)
    solver = _solver(uv, points)
    solver.set_ransac_parameters(0.99, 10, 300, 4, 0.1, 5.991)
    assert solver.min_inliers == 10
    assert solver.max_iterations == 1


def test_max_iterations_cap():
    points, uv, _, _ = _scene(100)
    solver = _solver(uv, points)
    solver.set_ransac_parameters(0.99, 8, 5, 4, 0.01, 5.991)
    assert solver.max_iterations == 5


def test_same_seed_is_reproducible():
    points, uv, _, _ = _scene(40, seed=9)
    uv = uv.copy()
    uv[::4] += 30.0
    a = _solver(uv, points, rng=11).find()
    b = _solver(uv, points, rng=11).find()
    assert a.inliers == b.inliers
    assert np.array_equal(a.pose, b.pose)


def test_exhausted_budget_without_pose_reports_no_more():
    gen = np.random.default_rng(2)
    points = gen.uniform(-1, 1, size=(20, 3)) + [0, 0, 5]
    uv = gen.uniform(0, 640, size=(20, 2))
    solver = _solver(uv, points)
    solver.set_ransac_parameters(0.99, 18, 10, 4, 0.9, 5.991)
    result = solver.find()
    assert result.no_more is True
    assert solver.iterations >= solver.max_iterations
    assert result.pose is None or result.n_inliers >= solver.min_inliers


def test_mismatched_lengths_raise():
    points, uv, _, _ = _scene(10)
    with pytest.raises(ValueError):
        PnPSolver(uv[:5], points, None, FU, FV, UC, VC, 0)


def test_sigma2_length_checked():
    points, uv, _, _ = _scene(10)
    with pytest.raises(ValueError):
        PnPSolver(uv, points, [1.0, 2.0], FU, FV, UC, VC, 0)


def test_result_found_property():
    assert PnPResult(None).found is False
    assert PnPResult(np.eye(4), [True], 1).found is True
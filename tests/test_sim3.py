import numpy as np
import pytest

from slamkit.sim3 import Sim3Solver, compute_sim3, project_to_image


def _axis_angle(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    kx = np.array([[0, -axis[2], axis[1]], [axis[2], 0, -axis[0]], [-axis[1], axis[0], 0]])
    return np.eye(3) + np.sin(angle) * kx + (1 - np.cos(angle)) * kx @ kx


K = np.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])


@pytest.fixture
def cloud():
    rng = np.random.default_rng(7)
    pts = rng.uniform(-1.0, 1.0, size=(25, 3))
    pts[:, 2] = rng.uniform(2.0, 5.0, size=25)
    return pts


def test_compute_sim3_recovers_similarity(cloud):
    rotation = _axis_angle([0.3, 1.0, 0.2], 0.4)
    translation = np.array([0.5, -0.2, 1.0])
    scale = 1.7
    points1 = scale * cloud @ rotation.T + translation
    est = compute_sim3(points1, cloud, fix_scale=False)
    np.testing.assert_allclose(est.rotation, rotation, atol=1e-9)
    np.testing.assert_allclose(est.translation, translation, atol=1e-9)
    assert est.scale == pytest.approx(scale)


def test_compute_sim3_fixed_scale(cloud):
    rotation = _axis_angle([1.0, 0.0, 0.0], -0.3)
    translation = np.array([0.1, 0.2, 0.3])
    points1 = 2.0 * cloud @ rotation.T + translation
    est = compute_sim3(points1, cloud, fix_scale=True)
    assert est.scale == 1.0
    np.testing.assert_allclose(est.rotation, rotation, atol=1e-9)


def test_compute_sim3_t21_inverts_t12(cloud):
    points1 = 0.5 * cloud @ _axis_angle([0, 0, 1], 1.0).T + np.array([1.0, 2.0, 3.0])
    est = compute_sim3(points1, cloud, fix_scale=False)
    np.testing.assert_allclose(est.t12 @ est.t21, np.eye(4), atol=1e-9)
    np.testing.assert_allclose(est.rotation @ est.rotation.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(est.rotation) == pytest.approx(1.0)


def test_compute_sim3_identity(cloud):
    est = compute_sim3(cloud, cloud, fix_scale=False)
    np.testing.assert_allclose(est.t12, np.eye(4), atol=1e-9)


def test_compute_sim3_length_mismatch():
    with pytest.raises(ValueError):
        compute_sim3(np.zeros((3, 3)), np.zeros((4, 3)))


def test_project_principal_point():
    uv = project_to_image([[0.0, 0.0, 1.0]], K)
    np.testing.assert_allclose(uv, [[320.0, 240.0]])


def test_project_back_projection_round_trip(cloud):
    uv = project_to_image(cloud, K)
    x = (uv[:, 0] - K[0, 2]) / K[0, 0] * cloud[:, 2]
    y = (uv[:, 1] - K[1, 2]) / K[1, 1] * cloud[:, 2]
    np.testing.assert_allclose(np.column_stack([x, y]), cloud[:, :2], atol=1e-12)


def _scene(cloud, n_outliers):
    rotation = _axis_angle([0.0, 1.0, 0.0], 0.1)
    translation = np.array([0.1, 0.0, 0.05])
    points1 = cloud @ rotation.T + translation
    points1[:n_outliers, 0] += 1.0
    expected = [i >= n_outliers for i in range(len(cloud))]
    return points1, rotation, translation, expected


def test_solver_finds_transform_and_inliers(cloud):
    points1, rotation, translation, expected = _scene(cloud, 5)
    solver = Sim3Solver(points1, cloud, None, None, K, K, True, 0)
    result = solver.find()
    assert result.found
    assert result.inliers == expected
    assert result.n_inliers == 20
    np.testing.assert_allclose(solver.estimated_rotation(), rotation, atol=1e-6)
    np.testing.assert_allclose(solver.estimated_translation(), translation, atol=1e-6)
    assert solver.estimated_scale() == 1.0
    np.testing.assert_allclose(result.pose[:3, 3], translation, atol=1e-6)


def test_solver_too_few_points():
    pts = np.array([[0.0, 0.0, 2.0], [1.0, 0.0, 3.0], [0.0, 1.0, 4.0]])
    solver = Sim3Solver(pts, pts, None, None, K, K, True, 0)
    result = solver.find()
    assert result.pose is None
    assert result.no_more is True
    assert result.inliers == [False, False, False]


def test_solver_no_consistent_transform_exhausts_budget():
    rng = np.random.default_rng(3)
    p1 = rng.uniform(-1, 1, size=(12, 3))
    p1[:, 2] = rng.uniform(2, 5, size=12)
    p2 = rng.uniform(-1, 1, size=(12, 3))
    p2[:, 2] = rng.uniform(2, 5, size=12)
    solver = Sim3Solver(p1, p2, None, None, K, K, True, 1)
    solver.set_ransac_parameters(0.99, 10, 20)
    result = solver.find()
    assert result.pose is None
    assert result.no_more is True
    assert solver.iterations == solver.max_iterations


def test_iterate_is_bounded_by_request(cloud):
    rng = np.random.default_rng(5)
    p2 = rng.uniform(-1, 1, size=(25, 3))
    p2[:, 2] = rng.uniform(2, 5, size=25)
    solver = Sim3Solver(cloud, p2, None, None, K, K, True, 2)
    result = solver.iterate(2)
    assert solver.iterations == 2
    assert result.no_more is False


def test_estimates_before_run_are_none(cloud):
    solver = Sim3Solver(cloud, cloud, None, None, K, K, True, 0)
    assert solver.estimated_rotation() is None
    assert solver.estimated_scale() is None


def test_solver_rejects_mismatched_inputs(cloud):
    with pytest.raises(ValueError):
        Sim3Solver(cloud, cloud[:-1], None, None, K, K, True, 0)
    with pytest.raises(ValueError):
        Sim3Solver(cloud, cloud, [1.0, 2.0], None, K, K, True, 0)
"""Tests for the sphere and cylinder estimators and classifiers."""

import numpy as np

from primitives import (
    SphereParam,
    CylinderParam,
    estimate_sphere_ransac,
    estimate_cylinder_ransac,
    sphere_point_differences,
    cylinder_point_differences,
)


def _make_sphere_points(
    *,
    center: np.ndarray,
    radius: float,
    n: int,
) -> np.ndarray:
    """Generate evenly spread points on a sphere surface (Fibonacci lattice)."""
    i = np.arange(n, dtype=float) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / n)
    theta = np.pi * (1.0 + 5.0 ** 0.5) * i
    unit = np.column_stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)])
    return center + radius * unit


def _make_cylinder_grid_points(
    *,
    axis_point: np.ndarray,
    axis_dir: np.ndarray,
    radius: float,
    length: float,
    n_theta: int,
    n_t: int,
) -> np.ndarray:
    """Generate a regular grid of points on a cylinder surface."""
    axis_dir = axis_dir / np.linalg.norm(axis_dir)
    if abs(axis_dir[2]) < 0.9:
        u = np.cross(axis_dir, np.array([0.0, 0.0, 1.0]))
    else:
        u = np.cross(axis_dir, np.array([1.0, 0.0, 0.0]))
    u = u / np.linalg.norm(u)
    v = np.cross(axis_dir, u)

    theta = np.linspace(0.0, 2 * np.pi, n_theta, endpoint=False)
    t = np.linspace(-length / 2, length / 2, n_t)
    theta_grid, t_grid = np.meshgrid(theta, t)
    theta_flat = theta_grid.ravel()
    t_flat = t_grid.ravel()

    return (
        axis_point
        + np.outer(t_flat, axis_dir)
        + np.outer(radius * np.cos(theta_flat), u)
        + np.outer(radius * np.sin(theta_flat), v)
    )


def test_sphere_five_points_on_unit_sphere():
    points = np.array(
        [
            [1.0, 0.0, 0.0],
            [-1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [0.0, 0.0, 1.0],
            [0.0, 0.0, -1.0],
        ],
        dtype=np.float32,
    )

    sphere = estimate_sphere_ransac(points, 0.01, 100, seed=0)

    assert sphere is not None
    assert sphere.is_valid()
    np.testing.assert_allclose(sphere.as_array(), [0.0, 0.0, 0.0, 1.0], atol=1e-6)
    assert sphere.inlier_count == 5


def test_sphere_ignores_outliers():
    rng = np.random.default_rng(7)
    center = np.array([2.0, -1.0, 0.5])
    radius = 0.8
    surface = _make_sphere_points(center=center, radius=radius, n=300)

    outliers = []
    while len(outliers) < 60:
        p = rng.uniform(center - 2.0, center + 2.0)
        if abs(np.linalg.norm(p - center) - radius) > 0.2:
            outliers.append(p)
    points = np.vstack([surface, np.array(outliers)])

    sphere = estimate_sphere_ransac(points, 0.005, 300, seed=1)

    assert sphere is not None
    np.testing.assert_allclose(sphere.center, center, atol=1e-4)
    assert abs(sphere.radius - radius) < 1e-4
    assert sphere.inlier_count == 300


def test_sphere_too_few_points_returns_none():
    points = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    assert estimate_sphere_ransac(points, 0.01, 100, seed=0) is None
    assert estimate_sphere_ransac(np.empty((0, 3)), 0.01, 100, seed=0) is None


def test_sphere_coplanar_points_return_none():
    rng = np.random.default_rng(3)
    points = np.column_stack([rng.uniform(-1, 1, 50), rng.uniform(-1, 1, 50), np.zeros(50)])
    assert estimate_sphere_ransac(points, 0.01, 50, seed=0) is None


def test_sphere_estimate_is_reproducible_with_seed():
    rng = np.random.default_rng(11)
    points = np.vstack([
        _make_sphere_points(center=np.zeros(3), radius=1.0, n=100) + rng.normal(scale=0.01, size=(100, 3)),
        rng.uniform(-2.0, 2.0, size=(40, 3)),
    ])

    first = estimate_sphere_ransac(points, 0.02, 50, seed=42)
    second = estimate_sphere_ransac(points, 0.02, 50, seed=42)

    assert first is not None and second is not None
    np.testing.assert_array_equal(first.as_array(), second.as_array())
    assert first.inlier_count == second.inlier_count


def test_sphere_classifier_signed_distances():
    sphere = SphereParam(center=np.zeros(3), radius=1.0)
    points = np.array([[1.0, 0.0, 0.0], [0.0, 1.5, 0.0], [0.0, 0.0, 0.995], [0.2, 0.0, 0.0]])

    differences = sphere_point_differences(points, sphere, 0.01)

    np.testing.assert_allclose(differences.distances, [0.0, 0.5, -0.005, -0.8], atol=1e-12)
    assert differences.inlier_mask.tolist() == [True, False, True, False]
    assert differences.inlier_count == 2


def test_classification_is_idempotent():
    rng = np.random.default_rng(5)
    points = rng.uniform(-2.0, 2.0, size=(500, 3))
    cylinder = CylinderParam(
        axis_point=np.array([0.1, -0.2, 0.0]),
        axis_direction=np.array([0.0, 0.0, 1.0]),
        radius=1.0,
    )

    first = cylinder_point_differences(points, cylinder, 0.1)
    second = cylinder_point_differences(points, cylinder, 0.1)

    np.testing.assert_array_equal(first.inlier_mask, second.inlier_mask)
    np.testing.assert_array_equal(first.distances, second.distances)
    assert len(first.inlier_mask) == len(points)


def test_cylinder_classifier_uses_perpendicular_distance():
    cylinder = CylinderParam(
        axis_point=np.zeros(3),
        axis_direction=np.array([1.0, 0.0, 0.0]),
        radius=0.5,
    )
    points = np.array([[10.0, 0.5, 0.0], [-3.0, 0.0, 0.52], [0.0, 0.0, 0.0], [0.0, 2.0, 0.0]])

    differences = cylinder_point_differences(points, cylinder, 0.05)

    np.testing.assert_allclose(differences.distances, [0.0, 0.02, -0.5, 1.5], atol=1e-12)
    assert differences.inlier_mask.tolist() == [True, True, False, False]


def test_cylinder_recovers_axis_and_radius():
    radius = 0.5
    axis_point = np.array([1.0, 2.0, 0.0])
    points = _make_cylinder_grid_points(
        axis_point=axis_point,
        axis_dir=np.array([0.0, 0.0, 1.0]),
        radius=radius,
        length=2.0,
        n_theta=36,
        n_t=20,
    )

    cylinder = estimate_cylinder_ransac(points, 0.02, 200, seed=0)

    assert cylinder is not None
    assert cylinder.is_valid()
    assert abs(cylinder.radius - radius) < 0.02
    assert abs(cylinder.axis_direction[2]) > 0.99
    np.testing.assert_allclose(cylinder.axis_point[:2], axis_point[:2], atol=0.02)
    assert abs(cylinder.length - 2.0) < 0.05
    assert cylinder.inlier_count > 0.95 * len(points)


def test_cylinder_with_tilted_axis_and_given_normals():
    axis_dir = np.array([1.0, 1.0, 0.5])
    axis_dir = axis_dir / np.linalg.norm(axis_dir)
    axis_point = np.array([0.0, 0.0, 3.0])
    radius = 0.3
    points = _make_cylinder_grid_points(
        axis_point=axis_point,
        axis_dir=axis_dir,
        radius=radius,
        length=1.5,
        n_theta=30,
        n_t=15,
    )
    diff = points - axis_point
    radial = diff - np.outer(diff @ axis_dir, axis_dir)
    normals = radial / np.linalg.norm(radial, axis=1, keepdims=True)

    cylinder = estimate_cylinder_ransac(points, 0.01, 50, normals=normals, seed=2)

    assert cylinder is not None
    assert abs(cylinder.radius - radius) < 1e-6
    assert abs(abs(cylinder.axis_direction @ axis_dir) - 1.0) < 1e-6
    assert cylinder.inlier_count == len(points)


def test_cylinder_radius_max_rejects_large_hypotheses():
    points = _make_cylinder_grid_points(
        axis_point=np.zeros(3),
        axis_dir=np.array([0.0, 0.0, 1.0]),
        radius=2.0,
        length=2.0,
        n_theta=36,
        n_t=10,
    )
    assert estimate_cylinder_ransac(points, 0.02, 100, radius_max=0.5, seed=0) is None


def test_cylinder_too_few_points_returns_none():
    points = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    assert estimate_cylinder_ransac(points, 0.01, 10, seed=0) is None


def test_parameter_validity_checks():
    assert not SphereParam(center=np.zeros(3), radius=0.0).is_valid()
    assert not SphereParam(center=np.array([np.nan, 0.0, 0.0]), radius=1.0).is_valid()
    assert not CylinderParam(
        axis_point=np.zeros(3), axis_direction=np.array([0.0, 0.0, 2.0]), radius=1.0
    ).is_valid()
    assert not CylinderParam(
        axis_point=np.zeros(3), axis_direction=np.array([0.0, 0.0, 1.0]), radius=-1.0
    ).is_valid()
    assert CylinderParam(
        axis_point=np.zeros(3), axis_direction=np.array([0.0, 1.0, 0.0]), radius=0.1
    ).is_valid()

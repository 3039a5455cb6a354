"""
primitives.py - Robust single-model estimators and classifiers for sphere and cylinder
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np
import open3d as o3d


SPHERE_SAMPLE_SIZE = 4
CYLINDER_SAMPLE_SIZE = 2
# Normal estimation needs a neighbourhood of at least 3 points to span a plane.
CYLINDER_MIN_POINTS = 3


@dataclass(frozen=True)
class SphereParam:
    """Parameters for a fitted sphere."""
    center: np.ndarray        # (cx, cy, cz)
    radius: float
    inlier_count: int = 0

    def as_array(self) -> np.ndarray:
        """Return the 4-scalar vector (cx, cy, cz, r)."""
        return np.array([self.center[0], self.center[1], self.center[2], self.radius], dtype=float)

    def is_valid(self) -> bool:
        center = np.asarray(self.center, dtype=float)
        return (
            center.shape == (3,)
            and bool(np.all(np.isfinite(center)))
            and np.isfinite(self.radius)
            and self.radius > 0
        )


@dataclass(frozen=True)
class CylinderParam:
    """Parameters for a fitted cylinder."""
    axis_point: np.ndarray      # (ax, ay, az) - point on axis
    axis_direction: np.ndarray  # (dx, dy, dz) - normalized axis direction
    radius: float
    length: float = 0.0
    inlier_count: int = 0

    def is_valid(self) -> bool:
        point = np.asarray(self.axis_point, dtype=float)
        direction = np.asarray(self.axis_direction, dtype=float)
        if point.shape != (3,) or direction.shape != (3,):
            return False
        if not (np.all(np.isfinite(point)) and np.all(np.isfinite(direction))):
            return False
        if abs(float(np.linalg.norm(direction)) - 1.0) > 1e-6:
            return False
        return bool(np.isfinite(self.radius) and self.radius > 0)


@dataclass(frozen=True)
class ModelDifferences:
    """Per-point signed distances to a model and the derived inlier flags."""
    distances: np.ndarray
    inlier_mask: np.ndarray

    @property
    def inlier_count(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))


def _orient_direction(vec: np.ndarray) -> np.ndarray:
    """Return vec or -vec so that its dominant component is positive."""
    vec = np.asarray(vec, dtype=float).reshape(3)
    dominant = int(np.argmax(np.abs(vec)))
    return vec if vec[dominant] >= 0 else -vec


def _resolve_rng(rng: Optional[np.random.Generator], seed: Optional[int]) -> np.random.Generator:
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def _as_points(points: np.ndarray) -> np.ndarray:
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        return pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"Expected (N, 3) points, got shape {pts.shape}")
    return pts


def _valid_threshold(distance_threshold: float) -> bool:
    return bool(np.isfinite(distance_threshold) and distance_threshold > 0)


# =============================================================================
# Sphere
# =============================================================================

def _sphere_from_4pts(sample: np.ndarray) -> Optional[Tuple[np.ndarray, float]]:
    """Compute the sphere through 4 points, or None if they are coplanar."""
    origin = sample[0]
    q = sample[1:] - origin
    scale = float(np.prod(np.linalg.norm(q, axis=1)))
    if scale < 1e-12:
        return None
    det = float(np.linalg.det(q))
    if abs(det) / scale < 1e-9:
        return None
    b = 0.5 * np.einsum("ij,ij->i", q, q)
    try:
        offset = np.linalg.solve(q, b)
    except np.linalg.LinAlgError:
        return None
    radius = float(np.linalg.norm(offset))
    if not np.isfinite(radius) or radius <= 0:
        return None
    return origin + offset, radius


def _fit_sphere_least_squares(points: np.ndarray) -> Optional[Tuple[np.ndarray, float]]:
    """Algebraic least-squares sphere fit."""
    pts = np.asarray(points, dtype=float)
    if len(pts) < SPHERE_SAMPLE_SIZE:
        return None
    mean = pts.mean(axis=0)
    centered = pts - mean
    A = np.column_stack([2.0 * centered, np.ones(len(centered))])
    b = np.einsum("ij,ij->i", centered, centered)
    try:
        sol, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    except np.linalg.LinAlgError:
        return None
    if rank < 4:
        return None
    center_local = sol[:3]
    r_sq = sol[3] + center_local @ center_local
    if not np.isfinite(r_sq) or r_sq <= 0:
        return None
    return mean + center_local, float(np.sqrt(r_sq))


def _sphere_residuals(points: np.ndarray, center: np.ndarray, radius: float) -> np.ndarray:
    return np.linalg.norm(points - center, axis=1) - radius


def estimate_sphere_ransac(
    points: np.ndarray,
    distance_threshold: float,
    num_iterations: int,
    *,
    rng: Optional[np.random.Generator] = None,
    seed: Optional[int] = None,
) -> Optional[SphereParam]:
    """
    Fit a sphere to the given points using RANSAC.

    Args:
        points: (N, 3) array of 3D points
        distance_threshold: Maximum distance from sphere surface for inliers
        num_iterations: Number of RANSAC iterations
        rng: Random generator to draw samples from (takes precedence over seed)
        seed: Seed for a fresh generator when rng is not given

    Returns:
        SphereParam of the best-scoring candidate, or None if fitting fails
    """
    pts = _as_points(points)
    if len(pts) < SPHERE_SAMPLE_SIZE or not _valid_threshold(distance_threshold):
        return None

    num_iterations = int(max(1, num_iterations))
    generator = _resolve_rng(rng, seed)

    best_count = 0
    best_center: Optional[np.ndarray] = None
    best_radius = 0.0

    for _ in range(num_iterations):
        sample = generator.choice(len(pts), size=SPHERE_SAMPLE_SIZE, replace=False)
        candidate = _sphere_from_4pts(pts[sample])
        if candidate is None:
            continue
        center, radius = candidate
        count = int(np.count_nonzero(np.abs(_sphere_residuals(pts, center, radius)) <= distance_threshold))
        if count > best_count:
            best_count = count
            best_center = center
            best_radius = radius

    if best_center is None:
        return None

    # Least-squares refinement over the consensus set
    inliers = np.abs(_sphere_residuals(pts, best_center, best_radius)) <= distance_threshold
    refined = _fit_sphere_least_squares(pts[inliers])
    if refined is not None:
        center, radius = refined
        count = int(np.count_nonzero(np.abs(_sphere_residuals(pts, center, radius)) <= distance_threshold))
        if count >= best_count:
            best_count = count
            best_center = center
            best_radius = radius

    return SphereParam(center=np.asarray(best_center, dtype=float), radius=float(best_radius), inlier_count=best_count)


def sphere_point_differences(points: np.ndarray, sphere: SphereParam, threshold: float) -> ModelDifferences:
    """Signed distance of each point to the sphere surface and its inlier flag."""
    pts = _as_points(points)
    distances = _sphere_residuals(pts, np.asarray(sphere.center, dtype=float), float(sphere.radius))
    return ModelDifferences(distances=distances, inlier_mask=np.abs(distances) <= threshold)


# =============================================================================
# Cylinder
# =============================================================================

def estimate_normals(points: np.ndarray, knn: int = 10) -> np.ndarray:
    """Estimate unit surface normals with a KNN neighbourhood."""
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64))
    pcd.estimate_normals(search_param=o3d.geometry.KDTreeSearchParamKNN(knn=int(knn)))
    return np.asarray(pcd.normals, dtype=float)


def _radial_distances(points: np.ndarray, axis_point: np.ndarray, axis_dir: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    diff = points - axis_point
    projections = diff @ axis_dir
    radial_vec = diff - np.outer(projections, axis_dir)
    return projections, np.linalg.norm(radial_vec, axis=1)


def _cylinder_from_2pts(
    p0: np.ndarray,
    n0: np.ndarray,
    p1: np.ndarray,
    n1: np.ndarray,
) -> Optional[Tuple[np.ndarray, np.ndarray, float]]:
    """Compute axis point, axis direction and radius from two oriented points."""
    axis_dir = np.cross(n0, n1)
    axis_norm = np.linalg.norm(axis_dir)
    if not np.isfinite(axis_norm) or axis_norm < 1e-6:
        return None
    axis_dir = axis_dir / axis_norm

    # Closest points between the two normal lines p0 + s*n0 and p1 + t*n1
    w0 = p0 - p1
    a = n0 @ n0
    b = n0 @ n1
    c = n1 @ n1
    d = n0 @ w0
    e = n1 @ w0
    denom = a * c - b * b
    if abs(denom) < 1e-12:
        return None
    s = (b * e - c * d) / denom
    t = (a * e - b * d) / denom
    axis_point = 0.5 * ((p0 + s * n0) + (p1 + t * n1))

    diff = p0 - axis_point
    radial = diff - (diff @ axis_dir) * axis_dir
    radius = float(np.linalg.norm(radial))
    if not np.isfinite(radius) or radius <= 0:
        return None
    return axis_point, axis_dir, radius


def estimate_cylinder_ransac(
    points: np.ndarray,
    distance_threshold: float,
    num_iterations: int,
    *,
    normals: Optional[np.ndarray] = None,
    radius_max: Optional[float] = None,
    normal_knn: int = 10,
    rng: Optional[np.random.Generator] = None,
    seed: Optional[int] = None,
) -> Optional[CylinderParam]:
    """
    Fit a cylinder to the given points using RANSAC.

    Each hypothesis is built from two points and their surface normals: the
    axis is perpendicular to both normals and passes through the closest
    point of the two normal lines.

    Args:
        points: (N, 3) array of 3D points
        distance_threshold: Maximum distance from cylinder surface for inliers
        num_iterations: Number of RANSAC iterations
        normals: (N, 3) surface normals (estimated with open3d if omitted)
        radius_max: Reject hypotheses with a larger radius
        normal_knn: Neighbourhood size for normal estimation
        rng: Random generator to draw samples from (takes precedence over seed)
        seed: Seed for a fresh generator when rng is not given

    Returns:
        CylinderParam of the best-scoring candidate, or None if fitting fails
    """
    pts = _as_points(points)
    if len(pts) < CYLINDER_MIN_POINTS or not _valid_threshold(distance_threshold):
        return None

    normals_valid = (
        normals is not None and
        len(normals) == len(pts) and
        np.all(np.isfinite(normals))
    )
    if normals_valid:
        normals_unit = np.asarray(normals, dtype=float)
    else:
        normals_unit = estimate_normals(pts, knn=normal_knn)
    normals_unit = normals_unit / np.maximum(np.linalg.norm(normals_unit, axis=1, keepdims=True), 1e-8)

    num_iterations = int(max(1, num_iterations))
    generator = _resolve_rng(rng, seed)

    best_count = 0
    best_model: Optional[Tuple[np.ndarray, np.ndarray, float]] = None

    for _ in range(num_iterations):
        i, j = generator.choice(len(pts), size=CYLINDER_SAMPLE_SIZE, replace=False)
        candidate = _cylinder_from_2pts(pts[i], normals_unit[i], pts[j], normals_unit[j])
        if candidate is None:
            continue
        axis_point, axis_dir, radius = candidate
        if radius_max is not None and radius > radius_max:
            continue
        _, radial = _radial_distances(pts, axis_point, axis_dir)
        count = int(np.count_nonzero(np.abs(radial - radius) <= distance_threshold))
        if count > best_count:
            best_count = count
            best_model = candidate

    if best_model is None:
        return None

    axis_point, axis_dir, radius = best_model
    axis_dir = _orient_direction(axis_dir)
    projections, radial = _radial_distances(pts, axis_point, axis_dir)
    inliers = np.abs(radial - radius) <= distance_threshold

    # Re-centre the axis point on the inlier extent
    t = projections[inliers]
    t_min = float(np.min(t))
    t_max = float(np.max(t))
    axis_point = axis_point + axis_dir * (0.5 * (t_min + t_max))

    return CylinderParam(
        axis_point=axis_point,
        axis_direction=axis_dir,
        radius=float(radius),
        length=t_max - t_min,
        inlier_count=best_count,
    )


def cylinder_point_differences(points: np.ndarray, cylinder: CylinderParam, threshold: float) -> ModelDifferences:
    """Signed distance of each point to the cylinder surface and its inlier flag."""
    pts = _as_points(points)
    axis_dir = np.asarray(cylinder.axis_direction, dtype=float)
    _, radial = _radial_distances(pts, np.asarray(cylinder.axis_point, dtype=float), axis_dir)
    distances = radial - float(cylinder.radius)
    return ModelDifferences(distances=distances, inlier_mask=np.abs(distances) <= threshold)

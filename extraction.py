"""
extraction.py - Sequential RANSAC extraction of spheres and cylinders

Drives the single-model estimators in primitives.py over a point cloud and
assigns a color to every point according to the model it belongs to.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union
import numpy as np

from primitives import (
    SphereParam, CylinderParam, ModelDifferences,
    SPHERE_SAMPLE_SIZE, CYLINDER_MIN_POINTS,
    estimate_sphere_ransac, sphere_point_differences,
    estimate_cylinder_ransac, cylinder_point_differences,
)

Color = Tuple[int, int, int]

UNCLASSIFIED_COLOR: Color = (255, 0, 0)   # red
INLIER_COLOR: Color = (0, 255, 0)         # green
CENTER_MARKER_COLOR: Color = (0, 0, 255)  # blue

INSTANCE_PALETTE: Tuple[Color, ...] = (
    (160, 32, 240),   # purple
    (255, 192, 203),  # pink
    (255, 255, 0),    # yellow
    (0, 0, 255),      # blue
)

PRIMITIVE_KINDS = ("cylinder", "sphere")

# Stop reasons of the sequential loop
STOP_MAX_INSTANCES = "max_instances"
STOP_EXHAUSTED = "exhausted"
STOP_INSUFFICIENT_POINTS = "insufficient_points"
STOP_NO_MODEL = "no_model"
STOP_DEGENERATE_MODEL = "degenerate_model"
STOP_TOO_FEW_INLIERS = "too_few_inliers"

Model = Union[SphereParam, CylinderParam]
Estimator = Callable[[np.ndarray, "ExtractionConfig", np.random.Generator], Optional[Model]]
Classifier = Callable[[np.ndarray, Model, float], ModelDifferences]


class InsufficientDataError(RuntimeError):
    """Raised when a fit cannot be produced from the available points."""


@dataclass
class ExtractionConfig:
    """
    Run-wide tunables of the extraction engine.

    Attributes:
        distance_threshold: Maximum surface distance for a point to be an inlier
        num_iterations: RANSAC iterations per round
        max_instances: Maximum number of instances in multi-instance mode
        min_inliers: Stop the sequential loop when a round finds fewer inliers
        cylinder_radius_max: Reject cylinder hypotheses above this radius
        normal_knn: Neighbourhood size for normal estimation
        palette: One color per instance, in extraction order
        min_origin_distance: Pre-filter distance from the sensor origin
        seed: Seed for the random generator shared by all rounds
    """
    distance_threshold: float = 2.0
    num_iterations: int = 3000
    max_instances: int = 4
    min_inliers: int = 0
    cylinder_radius_max: Optional[float] = None
    normal_knn: int = 10
    palette: Tuple[Color, ...] = INSTANCE_PALETTE
    min_origin_distance: float = 0.3
    seed: Optional[int] = None

    def validate(self) -> "ExtractionConfig":
        if not np.isfinite(self.distance_threshold) or self.distance_threshold <= 0:
            raise ValueError(f"distance_threshold must be positive, got {self.distance_threshold}")
        if self.num_iterations < 1:
            raise ValueError(f"num_iterations must be at least 1, got {self.num_iterations}")
        if self.max_instances < 0:
            raise ValueError(f"max_instances must be non-negative, got {self.max_instances}")
        if self.max_instances > len(self.palette):
            raise ValueError(
                f"max_instances={self.max_instances} exceeds the palette size ({len(self.palette)})"
            )
        if self.min_inliers < 0:
            raise ValueError(f"min_inliers must be non-negative, got {self.min_inliers}")
        if self.cylinder_radius_max is not None and self.cylinder_radius_max <= 0:
            raise ValueError(f"cylinder_radius_max must be positive, got {self.cylinder_radius_max}")
        if self.normal_knn < 3:
            raise ValueError(f"normal_knn must be at least 3, got {self.normal_knn}")
        if self.min_origin_distance < 0:
            raise ValueError(f"min_origin_distance must be non-negative, got {self.min_origin_distance}")
        for color in self.palette:
            if len(color) != 3 or any(not 0 <= int(c) <= 255 for c in color):
                raise ValueError(f"Invalid palette color {color}")
        return self


@dataclass
class RoundRecord:
    """Outcome of one round of the sequential loop."""
    index: int
    model: Model
    inlier_count: int
    remaining_count: int
    color: Color


@dataclass
class ExtractionResult:
    """Annotated point cloud produced by the engine."""
    points: np.ndarray          # (M, 3) float32 - input order, plus marker in sphere mode
    colors: np.ndarray          # (M, 3) uint8
    models: List[Model]
    rounds: List[RoundRecord] = field(default_factory=list)
    remaining_indices: np.ndarray = field(default_factory=lambda: np.empty((0,), dtype=int))
    stop_reason: Optional[str] = None


def _as_cloud(points: np.ndarray) -> np.ndarray:
    cloud = np.asarray(points, dtype=np.float32)
    if cloud.size == 0:
        return cloud.reshape(0, 3)
    if cloud.ndim != 2 or cloud.shape[1] != 3:
        raise ValueError(f"Expected (N, 3) points, got shape {cloud.shape}")
    return cloud


def _initial_colors(n: int) -> np.ndarray:
    return np.tile(np.array(UNCLASSIFIED_COLOR, dtype=np.uint8), (n, 1))


def _default_cylinder_estimator(points: np.ndarray, config: ExtractionConfig, rng: np.random.Generator):
    return estimate_cylinder_ransac(
        points,
        config.distance_threshold,
        config.num_iterations,
        radius_max=config.cylinder_radius_max,
        normal_knn=config.normal_knn,
        rng=rng,
    )


def describe_model(model: Model) -> str:
    """One-line console description of a fitted model."""
    if isinstance(model, SphereParam):
        px, py, pz, r = model.as_array()
        return f"px:{px:f} py:{py:f} pz:{pz:f} r:{r:f}"
    axis_point = np.round(np.asarray(model.axis_point, dtype=float), 4).tolist()
    axis_dir = np.round(np.asarray(model.axis_direction, dtype=float), 4).tolist()
    return (
        f"axis_point={axis_point}, axis_dir={axis_dir}, "
        f"radius={model.radius:.4f}, length={model.length:.4f}"
    )


# =============================================================================
# Single-instance mode
# =============================================================================

def extract_single_sphere(
    points: np.ndarray,
    config: ExtractionConfig,
    *,
    verbose: bool = True,
) -> ExtractionResult:
    """
    Fit one sphere to the whole cloud and color it.

    Inliers are colored green and outliers red. A blue marker point at the
    fitted center is appended as the last element of the output.

    Raises:
        InsufficientDataError: if no valid sphere could be estimated
    """
    config.validate()
    cloud = _as_cloud(points)
    if len(cloud) < SPHERE_SAMPLE_SIZE:
        raise InsufficientDataError(
            f"Sphere fitting needs at least {SPHERE_SAMPLE_SIZE} points, got {len(cloud)}"
        )

    rng = np.random.default_rng(config.seed)
    params = estimate_sphere_ransac(cloud, config.distance_threshold, config.num_iterations, rng=rng)
    if params is None:
        raise InsufficientDataError("Sphere estimation found no valid candidate")
    if not params.is_valid():
        raise InsufficientDataError(f"Sphere estimation returned a degenerate model: {describe_model(params)}")

    if verbose:
        print("Sphere params RANSAC:")
        print(f" {describe_model(params)}")

    differences = sphere_point_differences(cloud, params, config.distance_threshold)

    colors = _initial_colors(len(cloud))
    colors[differences.inlier_mask] = INLIER_COLOR

    out_points = np.vstack([cloud, np.asarray(params.center, dtype=np.float32).reshape(1, 3)])
    out_colors = np.vstack([colors, np.array([CENTER_MARKER_COLOR], dtype=np.uint8)])

    if verbose:
        print(f"  Inliers: {differences.inlier_count} / {len(cloud)}")

    record = RoundRecord(
        index=0,
        model=params,
        inlier_count=differences.inlier_count,
        remaining_count=len(cloud) - differences.inlier_count,
        color=INLIER_COLOR,
    )
    return ExtractionResult(
        points=out_points,
        colors=out_colors,
        models=[params],
        rounds=[record],
        remaining_indices=np.flatnonzero(~differences.inlier_mask).astype(int),
        stop_reason=None,
    )


# =============================================================================
# Multi-instance mode
# =============================================================================

def extract_sequential_cylinders(
    points: np.ndarray,
    config: ExtractionConfig,
    *,
    verbose: bool = True,
    estimator: Optional[Estimator] = None,
    classifier: Optional[Classifier] = None,
    min_points: int = CYLINDER_MIN_POINTS,
) -> ExtractionResult:
    """
    Extract up to config.max_instances cylinders with sequential RANSAC.

    Each round fits a model to the remaining points, colors its inliers with
    the next palette color at their original indices, and carries the
    outliers into the next round. The loop stops when the instance budget is
    spent, no points remain, or a round fails to produce a usable model;
    points never claimed keep the unclassified color.

    Args:
        points: (N, 3) array of 3D points
        config: Extraction configuration
        verbose: If True, print per-round progress
        estimator: Callable (points, config, rng) -> model or None
        classifier: Callable (points, model, threshold) -> ModelDifferences
        min_points: Smallest working set the estimator can handle

    Returns:
        ExtractionResult with the input points in their original order
    """
    config.validate()
    cloud = _as_cloud(points)
    if estimator is None:
        estimator = _default_cylinder_estimator
    if classifier is None:
        classifier = cylinder_point_differences

    rng = np.random.default_rng(config.seed)
    colors = _initial_colors(len(cloud))
    models: List[Model] = []
    rounds: List[RoundRecord] = []

    remaining_points = cloud
    original_indices = np.arange(len(cloud), dtype=int)
    instance_count = 0

    while instance_count < config.max_instances:
        if len(remaining_points) == 0:
            stop_reason = STOP_EXHAUSTED
            break
        if len(remaining_points) < min_points:
            stop_reason = STOP_INSUFFICIENT_POINTS
            if verbose:
                print(f"  Stopping: only {len(remaining_points)} points remaining (< {min_points})")
            break

        params = estimator(remaining_points, config, rng)
        if params is None:
            stop_reason = STOP_NO_MODEL
            if verbose:
                print(f"  Stopping: round {instance_count} found no model")
            break
        if not params.is_valid():
            stop_reason = STOP_DEGENERATE_MODEL
            if verbose:
                print(f"  Stopping: round {instance_count} produced a degenerate model")
            break

        differences = classifier(remaining_points, params, config.distance_threshold)
        inlier_mask = np.asarray(differences.inlier_mask, dtype=bool)
        if inlier_mask.shape != (len(remaining_points),):
            raise ValueError(
                f"Classifier returned {inlier_mask.shape[0]} flags for {len(remaining_points)} points"
            )

        inlier_count = int(np.count_nonzero(inlier_mask))
        if inlier_count == 0 or inlier_count < config.min_inliers:
            stop_reason = STOP_TOO_FEW_INLIERS
            if verbose:
                print(
                    f"  Stopping: round {instance_count} has only {inlier_count} inliers "
                    f"(< {max(config.min_inliers, 1)})"
                )
            break

        color = tuple(int(c) for c in config.palette[instance_count])
        colors[original_indices[inlier_mask]] = color

        remaining_points = remaining_points[~inlier_mask]
        original_indices = original_indices[~inlier_mask]

        models.append(params)
        rounds.append(RoundRecord(
            index=instance_count,
            model=params,
            inlier_count=inlier_count,
            remaining_count=len(remaining_points),
            color=color,
        ))
        if verbose:
            print(
                f"  Cylinder {instance_count}: {inlier_count} inliers, "
                f"{len(remaining_points)} remaining, {describe_model(params)}"
            )

        instance_count += 1
    else:
        stop_reason = STOP_EXHAUSTED if len(remaining_points) == 0 else STOP_MAX_INSTANCES

    return ExtractionResult(
        points=cloud,
        colors=colors,
        models=models,
        rounds=rounds,
        remaining_indices=original_indices,
        stop_reason=stop_reason,
    )


def extract_primitives(
    kind: str,
    points: np.ndarray,
    config: ExtractionConfig,
    *,
    verbose: bool = True,
) -> ExtractionResult:
    """Run the extraction mode that matches the primitive kind."""
    if kind == "sphere":
        return extract_single_sphere(points, config, verbose=verbose)
    if kind == "cylinder":
        return extract_sequential_cylinders(points, config, verbose=verbose)
    raise ValueError(f"Unknown primitive kind '{kind}', expected one of {PRIMITIVE_KINDS}")

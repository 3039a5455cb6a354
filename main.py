#!/usr/bin/env python3
"""
main.py - Sequential primitive extraction for range-sensor point clouds

CLI tool that fits a sphere, or several cylinders, to a point cloud and
writes the points colored by model membership to a PLY file.
"""

import argparse
import sys
from pathlib import Path
from typing import Optional, List

import numpy as np
import open3d as o3d

from extraction import (
    ExtractionConfig, ExtractionResult, InsufficientDataError,
    PRIMITIVE_KINDS, extract_primitives, describe_model,
)

# Extensions open3d can read with format inference; everything else is x y z text
NATIVE_CLOUD_SUFFIXES = (".ply", ".pcd", ".pts", ".xyzn", ".xyzrgb")


# =============================================================================
# Point Cloud I/O and Preprocessing
# =============================================================================

def load_point_cloud(filepath: str) -> np.ndarray:
    """Load points from a PLY/PCD file or a whitespace separated x y z table."""
    path = Path(filepath)
    if not path.is_file():
        raise FileNotFoundError(f"Input file not found: {filepath}")

    cloud_format = "auto" if path.suffix.lower() in NATIVE_CLOUD_SUFFIXES else "xyz"
    pcd = o3d.io.read_point_cloud(str(path), format=cloud_format)
    if pcd.is_empty():
        raise ValueError(f"Failed to load point cloud from {filepath}")

    points = np.asarray(pcd.points, dtype=np.float64)
    print(f"Loaded {len(points)} points from {filepath}")
    return points


def filter_by_origin_distance(points: np.ndarray, min_distance: float) -> np.ndarray:
    """
    Drop points within min_distance of the sensor origin.

    Args:
        points: (N, 3) array of 3D points
        min_distance: Points with |p| <= min_distance are removed

    Returns:
        (M, 3) float32 array of the kept points, in input order
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    keep = np.linalg.norm(pts, axis=1) > min_distance
    return pts[keep].astype(np.float32)


def write_colored_ply(filepath: str, points: np.ndarray, colors: np.ndarray) -> None:
    """
    Write points with 8-bit RGB colors to a PLY file.

    Raises:
        IOError: if the cloud is empty or open3d fails to write it
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    rgb = np.asarray(colors).reshape(-1, 3)
    if len(pts) != len(rgb):
        raise ValueError(f"Got {len(pts)} points but {len(rgb)} colors")
    if len(pts) == 0:
        raise IOError(f"Refusing to write an empty point cloud to {filepath}")

    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(pts)
    pcd.colors = o3d.utility.Vector3dVector(rgb.astype(np.float64) / 255.0)
    if not o3d.io.write_point_cloud(str(filepath), pcd):
        raise IOError(f"Failed to write point cloud to {filepath}")
    print(f"Wrote {len(pts)} points to {filepath}")


# =============================================================================
# Configuration
# =============================================================================

def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    defaults = ExtractionConfig()
    parser = argparse.ArgumentParser(
        description="Extract a sphere or up to four cylinders from a point cloud with RANSAC",
    )
    parser.add_argument("input", help="Input point cloud (x y z text, PLY or PCD)")
    parser.add_argument("output", help="Output PLY file with per-point colors")
    parser.add_argument("kind", choices=PRIMITIVE_KINDS, help="Primitive kind to extract")

    ransac_group = parser.add_argument_group("RANSAC Options")
    ransac_group.add_argument(
        "--threshold",
        type=float,
        default=None,
        help=f"Inlier distance threshold (default: {defaults.distance_threshold})"
    )
    ransac_group.add_argument(
        "--iterations",
        type=int,
        default=None,
        help=f"RANSAC iterations per round (default: {defaults.num_iterations})"
    )
    ransac_group.add_argument(
        "--max-instances",
        type=int,
        default=None,
        help=f"Maximum cylinders to extract (default: {defaults.max_instances})"
    )
    ransac_group.add_argument(
        "--min-inliers",
        type=int,
        default=None,
        help=f"Stop when a round finds fewer inliers (default: {defaults.min_inliers})"
    )
    ransac_group.add_argument(
        "--radius-max",
        type=float,
        default=None,
        help="Reject cylinder hypotheses with a larger radius (default: unbounded)"
    )
    ransac_group.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible runs"
    )

    parser.add_argument(
        "--min-distance",
        type=float,
        default=None,
        help=f"Drop points this close to the origin (default: {defaults.min_origin_distance})"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Only print errors and the final summary"
    )
    return parser.parse_args(argv)


def build_effective_config(args: argparse.Namespace) -> ExtractionConfig:
    """
    Build effective configuration by merging CLI overrides over the defaults.

    Raises:
        ValueError: if the merged configuration is invalid
    """
    config = ExtractionConfig()

    if args.threshold is not None:
        config.distance_threshold = args.threshold
    if args.iterations is not None:
        config.num_iterations = args.iterations
    if args.max_instances is not None:
        config.max_instances = args.max_instances
    if args.min_inliers is not None:
        config.min_inliers = args.min_inliers
    if args.radius_max is not None:
        config.cylinder_radius_max = args.radius_max
    if args.min_distance is not None:
        config.min_origin_distance = args.min_distance
    if args.seed is not None:
        config.seed = args.seed

    config.validate()

    if not args.quiet:
        print("\nEffective configuration:")
        print(f"  Primitive: {args.kind}")
        print(f"  RANSAC: threshold={config.distance_threshold}, iters={config.num_iterations}, "
              f"seed={config.seed}")
        if args.kind == "cylinder":
            print(f"  Instances: max={config.max_instances}, min_inliers={config.min_inliers}, "
                  f"radius_max={config.cylinder_radius_max}")
        print(f"  Pre-filter: min distance from origin={config.min_origin_distance}")

    return config


# =============================================================================
# Main Application
# =============================================================================

def print_summary(kind: str, result: ExtractionResult, output: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {kind.upper()} EXTRACTION COMPLETE")
    print("=" * 60)
    for record in result.rounds:
        print(f"  [{record.index}] inliers={record.inlier_count}, color={record.color}")
        print(f"      {describe_model(record.model)}")
    if kind == "cylinder":
        print(f"Stop reason: {result.stop_reason}")
        print(f"Unclassified points: {len(result.remaining_indices)}")
    print(f"\nResults saved to: {output}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    verbose = not args.quiet

    try:
        config = build_effective_config(args)

        print(f"\nLoading point cloud from {args.input}...")
        raw_points = load_point_cloud(args.input)
        points = filter_by_origin_distance(raw_points, config.min_origin_distance)
        print(f"After origin filter: {len(points)} points")

        result = extract_primitives(args.kind, points, config, verbose=verbose)
        write_colored_ply(args.output, result.points, result.colors)
    except (InsufficientDataError, ValueError, IOError) as exc:
        print(f"Error: {exc}")
        return 1

    print_summary(args.kind, result, args.output)
    return 0


if __name__ == "__main__":
    sys.exit(main())

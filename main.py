#!/usr/bin/env python3
"""
main.py - Dominant plane extraction tool for point clouds

CLI tool that peels the dominant planes off a point cloud with concurrent
RANSAC and writes each plane's supporting points plus the residual cloud.
"""

import argparse
import colorsys
import json
import logging
import signal
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, List, Sequence, Tuple

import numpy as np

from primitives import InvalidParameterError, PointCloud
from ransac import (
    CancelToken,
    DominantPlanesResult,
    RansacConfig,
    RoundEvent,
    SegmentationState,
    extract_dominant_planes,
)

RESULTS_VERSION = 1
XYZ_SUFFIXES = (".xyz", ".txt", ".csv", ".pts")


# =============================================================================
# RANSAC Profile System
# =============================================================================

@dataclass
class RansacProfile:
    """
    Preset parameters for a kind of point cloud.

    Attributes:
        name: Human-readable profile name
        confidence: Probability that some trial samples only inliers
        inlier_fraction: Expected share of points on each dominant plane
        eps: Inlier distance tolerance
        num_planes: Number of dominant planes to extract
    """
    name: str
    confidence: float = 0.99
    inlier_fraction: float = 0.3
    eps: float = 0.01
    num_planes: int = 3


# Built-in profiles
RANSAC_PROFILES: Dict[str, RansacProfile] = {
    "default": RansacProfile(
        name="Default",
        confidence=0.99,
        inlier_fraction=0.3,
        eps=0.01,
        num_planes=3,
    ),
    "indoor": RansacProfile(
        name="Indoor scan (floor, walls, ceiling)",
        confidence=0.999,
        inlier_fraction=0.2,
        eps=0.02,
        num_planes=6,
    ),
    "lidar_map": RansacProfile(
        name="LiDAR map (sparse, noisy)",
        confidence=0.99,
        inlier_fraction=0.15,
        eps=0.05,
        num_planes=3,
    ),
}

# open3d availability check (lazy import)
_OPEN3D_AVAILABLE: Optional[bool] = None


def _check_open3d() -> bool:
    """Check if open3d is available."""
    global _OPEN3D_AVAILABLE
    if _OPEN3D_AVAILABLE is None:
        try:
            import open3d  # noqa: F401
            _OPEN3D_AVAILABLE = True
        except ImportError:
            _OPEN3D_AVAILABLE = False
    return _OPEN3D_AVAILABLE


# =============================================================================
# Point Cloud I/O
# =============================================================================

@dataclass
class XYZFormat:
    """
    Layout of a delimited XYZ text file.

    Attributes:
        separator: Field separator (None splits on any whitespace)
        has_header: Whether the first line holds coordinate labels
        header: Labels written when no header was read from the input
    """
    separator: Optional[str] = None
    has_header: bool = True
    header: str = "x y z"


def _parse_xyz_line(line: str, separator: Optional[str]) -> Tuple[float, float, float]:
    fields = line.split(separator) if separator else line.split()
    fields = [f.strip() for f in fields]
    if len(fields) != 3:
        raise ValueError(f"expected 3 coordinates, got {len(fields)}: {line!r}")
    x, y, z = (float(f) for f in fields)
    if not all(np.isfinite((x, y, z))):
        raise ValueError(f"non-finite coordinate: {line!r}")
    return x, y, z


def read_xyz(filepath: str, fmt: Optional[XYZFormat] = None) -> Tuple[PointCloud, Optional[str]]:
    """
    Read points from a delimited text file.

    Args:
        filepath: Path to the file
        fmt: File layout (defaults to whitespace-separated with a header)

    Returns:
        Tuple of (point cloud, header line or None)

    Raises:
        ValueError: If a record is malformed or the file holds no points
    """
    fmt = fmt or XYZFormat()
    header: Optional[str] = None
    rows: List[Tuple[float, float, float]] = []

    with open(filepath, "r") as f:
        for lineno, raw in enumerate(f, start=1):
            line = raw.strip()
            if lineno == 1 and fmt.has_header:
                header = line
                continue
            if not line:
                continue
            try:
                rows.append(_parse_xyz_line(line, fmt.separator))
            except ValueError as exc:
                raise ValueError(f"{filepath}:{lineno}: {exc}") from exc

    if not rows:
        raise ValueError(f"No points found in {filepath}")
    return PointCloud(np.asarray(rows, dtype=float)), header


def write_xyz(
    filepath: str,
    points: PointCloud,
    fmt: Optional[XYZFormat] = None,
    header: Optional[str] = None,
):
    """Write points with a header line, one point per line."""
    fmt = fmt or XYZFormat()
    sep = fmt.separator or " "
    with open(filepath, "w") as f:
        f.write((header if header is not None else fmt.header) + "\n")
        for x, y, z in points.points:
            f.write(f"{x:f}{sep}{y:f}{sep}{z:f}\n")


def load_point_cloud(filepath: str, fmt: Optional[XYZFormat] = None) -> Tuple[PointCloud, Optional[str]]:
    """Load a point cloud from an XYZ text file, or PCD/PLY through open3d."""
    if Path(filepath).suffix.lower() in XYZ_SUFFIXES:
        cloud, header = read_xyz(filepath, fmt)
    else:
        if not _check_open3d():
            raise RuntimeError(
                f"open3d is required to read {filepath}; install it or convert the file to .xyz"
            )
        import open3d as o3d
        pcd = o3d.io.read_point_cloud(filepath)
        if pcd.is_empty():
            raise ValueError(f"Failed to load point cloud from {filepath}")
        cloud, header = PointCloud(np.asarray(pcd.points)), None
    print(f"Loaded {len(cloud)} points from {filepath}")
    return cloud, header


def output_prefix(input_path: str, output_dir: Optional[str] = None) -> Path:
    """<output_dir>/<input stem>_p; planes go to ..._p1.xyz, the residual to ..._p0.xyz."""
    src = Path(input_path)
    out_dir = Path(output_dir) if output_dir else src.parent
    return out_dir / f"{src.stem}_p"


def save_segmentation(
    result: DominantPlanesResult,
    prefix: Path,
    fmt: Optional[XYZFormat] = None,
    header: Optional[str] = None,
) -> List[Path]:
    """Write each plane's support and the residual cloud. Returns written paths."""
    prefix.parent.mkdir(parents=True, exist_ok=True)
    written = []
    for i, plane in enumerate(result.planes, start=1):
        path = Path(f"{prefix}{i}.xyz")
        write_xyz(str(path), plane.support, fmt, header)
        print(f"  Plane {i}: {plane.support_size} points -> {path}")
        written.append(path)
    residual_path = Path(f"{prefix}0.xyz")
    write_xyz(str(residual_path), result.residual, fmt, header)
    print(f"  Residual: {len(result.residual)} points -> {residual_path}")
    written.append(residual_path)
    return written


# =============================================================================
# Results
# =============================================================================

def build_results(
    result: DominantPlanesResult,
    *,
    input_path: str,
    config: RansacConfig,
    files: Optional[List[Path]] = None,
) -> dict:
    """Summary dictionary for JSON export."""
    planes = []
    for i, scored in enumerate(result.planes):
        entry = {
            "id": i + 1,
            "found": scored.found,
            "support_size": scored.support_size,
        }
        if scored.found:
            unit, offset = scored.plane.unit_normal()
            entry["coefficients"] = [scored.plane.a, scored.plane.b, scored.plane.c, scored.plane.d]
            entry["normal"] = unit.tolist()
            entry["offset"] = offset
        if files is not None:
            entry["file"] = str(files[i])
        planes.append(entry)

    return {
        "version": RESULTS_VERSION,
        "input": input_path,
        "parameters": asdict(config),
        "num_trials": result.num_trials,
        "planes": planes,
        "residual_count": len(result.residual),
        "residual_file": str(files[-1]) if files else None,
        "total_points": result.original_size,
        "consistent": result.is_consistent,
    }


def save_results(results: dict, filepath: str):
    """Save results to JSON file."""
    with open(filepath, 'w') as f:
        json.dump(results, f, indent=2)
    print(f"Results saved to {filepath}")


# =============================================================================
# Visualization
# =============================================================================

def generate_plane_colors(n: int) -> List[np.ndarray]:
    """One RGB color per extracted plane, evenly spaced around the hue wheel."""
    return [np.array(colorsys.hsv_to_rgb(i / max(n, 1), 0.8, 0.9)) for i in range(n)]


def visualize_dominant_planes(result: DominantPlanesResult):
    """Show each plane's support in its own color and the residual in gray."""
    import open3d as o3d

    geometries = []
    colors = generate_plane_colors(len(result.planes))
    for i, (plane, color) in enumerate(zip(result.planes, colors), start=1):
        if plane.support_size == 0:
            print(f"  [{i:02d}] no support, nothing to draw")
            continue
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(plane.support.points)
        pcd.paint_uniform_color(color)
        geometries.append(pcd)

    if len(result.residual) > 0:
        residual = o3d.geometry.PointCloud()
        residual.points = o3d.utility.Vector3dVector(result.residual.points)
        residual.paint_uniform_color([0.6, 0.6, 0.6])
        geometries.append(residual)

    if not geometries:
        print("Nothing to visualize")
        return

    print("  - Colored points: dominant plane support")
    print("  - Gray points: residual cloud")
    o3d.visualization.draw_geometries(
        geometries,
        window_name=f"Dominant Planes ({sum(p.found for p in result.planes)} found)"
    )


# =============================================================================
# Main Application
# =============================================================================

def list_ransac_profiles() -> str:
    """Return a formatted string listing available RANSAC profiles."""
    lines = ["Available RANSAC profiles:"]
    for key, profile in RANSAC_PROFILES.items():
        lines.append(f"  {key}: {profile.name}")
        lines.append(f"      confidence={profile.confidence}, inlier_fraction={profile.inlier_fraction}, "
                     f"eps={profile.eps}, planes={profile.num_planes}")
    return "\n".join(lines)


def parse_args(argv: Optional[Sequence[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Dominant plane extraction for point clouds (concurrent RANSAC)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=list_ransac_profiles()
    )
    parser.add_argument(
        "--input", "-i",
        type=str,
        required=True,
        help="Path to input XYZ text file (or PCD/PLY when open3d is installed)"
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Optional JSON file for the run summary"
    )
    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory for <stem>_pN.xyz files (default: next to the input)"
    )
    parser.add_argument(
        "--profile",
        type=str,
        default=None,
        choices=list(RANSAC_PROFILES.keys()),
        metavar="PROFILE",
        help=f"RANSAC profile to use. Available: {', '.join(RANSAC_PROFILES.keys())}"
    )

    ransac_group = parser.add_argument_group("RANSAC Options")
    ransac_group.add_argument(
        "--confidence",
        type=float,
        default=None,
        help="Probability of sampling an all-inlier triple, in (0, 1)"
    )
    ransac_group.add_argument(
        "--inlier-fraction",
        type=float,
        default=None,
        help="Expected fraction of points on a dominant plane, in (0, 1)"
    )
    ransac_group.add_argument(
        "--eps",
        type=float,
        default=None,
        help="Inlier distance tolerance (> 0)"
    )
    ransac_group.add_argument(
        "--planes",
        type=int,
        default=None,
        help="Number of dominant planes to extract"
    )
    ransac_group.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Cap on the per-plane trial count"
    )
    ransac_group.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible runs"
    )
    ransac_group.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop sampling after this many seconds (partial results are kept)"
    )

    perf_group = parser.add_argument_group("Parallelism Options")
    perf_group.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Number of scoring workers (default: min(4, CPU count))"
    )
    perf_group.add_argument(
        "--partition-size",
        type=int,
        default=None,
        help="Points per scoring partition for large clouds"
    )

    io_group = parser.add_argument_group("XYZ Format Options")
    io_group.add_argument(
        "--separator",
        type=str,
        default=None,
        help="Field separator (default: any whitespace)"
    )
    io_group.add_argument(
        "--no-header",
        action="store_true",
        help="Input has no coordinate-label header line"
    )
    io_group.add_argument(
        "--no-save-xyz",
        action="store_true",
        help="Do not write per-plane and residual XYZ files"
    )

    parser.add_argument(
        "--check",
        action="store_true",
        help="Verify that plane supports and residual add up to the input size"
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Show the result in an Open3D window"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        help="Logging level for the RANSAC engine (default: WARNING)"
    )
    return parser.parse_args(argv)


def build_effective_config(args) -> RansacConfig:
    """
    Build effective configuration by merging profile defaults with CLI overrides.

    Args:
        args: Parsed command line arguments

    Returns:
        RansacConfig for the run
    """
    if args.profile:
        profile = RANSAC_PROFILES[args.profile]
        print(f"Using RANSAC profile: {profile.name}")
    else:
        profile = RANSAC_PROFILES["default"]

    config = RansacConfig(
        confidence=profile.confidence,
        inlier_fraction=profile.inlier_fraction,
        eps=profile.eps,
        num_planes=profile.num_planes,
    )

    # Apply CLI overrides
    if args.confidence is not None:
        config.confidence = args.confidence
    if args.inlier_fraction is not None:
        config.inlier_fraction = args.inlier_fraction
    if args.eps is not None:
        config.eps = args.eps
    if args.planes is not None:
        config.num_planes = args.planes
    if args.max_iterations is not None:
        config.max_iterations = args.max_iterations
    if args.workers is not None:
        config.num_workers = args.workers
    if args.partition_size is not None:
        config.partition_size = args.partition_size
    config.seed = args.seed
    config.timeout = args.timeout

    print("\nEffective configuration:")
    print(f"  Confidence: {config.confidence}, inlier fraction: {config.inlier_fraction}")
    print(f"  Epsilon: {config.eps}, planes: {config.num_planes}")
    if config.max_iterations is not None:
        print(f"  Max iterations: {config.max_iterations}")
    print(f"  Workers: {config.resolved_workers()}, partition size: {config.partition_size}")
    if config.seed is not None:
        print(f"  Seed: {config.seed}")
    if config.timeout is not None:
        print(f"  Timeout: {config.timeout}s")

    return config


def _print_round(event: RoundEvent):
    if event.state is SegmentationState.SAMPLING:
        print(f"\nPlane {event.round_index + 1}: sampling {event.cloud_size} points...")
    elif event.state is SegmentationState.REMOVING and event.plane is not None:
        if event.plane.found:
            print(f"  support={event.plane.support_size}, remaining={event.cloud_size}, {event.plane.plane}")
        else:
            print(f"  no plane found, remaining={event.cloud_size}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.WARNING))

    config = build_effective_config(args)
    try:
        config.validate()
        num_trials = config.num_trials()
    except InvalidParameterError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    print(f"  Trials per plane: {num_trials}")

    fmt = XYZFormat(separator=args.separator, has_header=not args.no_header)
    print(f"\nLoading point cloud from {args.input}...")
    try:
        cloud, header = load_point_cloud(args.input, fmt)
    except (OSError, ValueError, RuntimeError) as exc:
        print(f"Error: Unable to get point cloud: {exc}", file=sys.stderr)
        return 1

    # First Ctrl-C stops sampling; the rounds drain and partial results are kept.
    token = CancelToken(timeout=config.timeout)

    def _on_sigint(signum, frame):
        print("\nInterrupted: finishing in-flight work...", file=sys.stderr)
        token.cancel()

    previous_handler = None
    try:
        previous_handler = signal.signal(signal.SIGINT, _on_sigint)
    except ValueError:
        # Not on the main thread.
        pass
    try:
        result = extract_dominant_planes(cloud, config, cancel_token=token, on_round=_print_round)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGINT, previous_handler)

    if token.timed_out:
        print(f"\nWARNING: timeout of {config.timeout}s reached; later planes may be missing.")
    elif token.cancelled:
        print("\nWARNING: extraction cancelled; later planes may be missing.")

    files = None
    if not args.no_save_xyz:
        prefix = output_prefix(args.input, args.output_dir)
        print("\nSaving segmentation...")
        files = save_segmentation(result, prefix, fmt, header)

    if args.output:
        save_results(build_results(result, input_path=args.input, config=config, files=files), args.output)

    if args.visualize:
        if _check_open3d():
            print("\nVisualization:")
            visualize_dominant_planes(result)
        else:
            print("Warning: open3d is not available; skipping visualization.", file=sys.stderr)

    # Summary
    print("\n" + "=" * 60)
    print("  DOMINANT PLANES COMPLETE")
    print("=" * 60)
    for i, plane in enumerate(result.planes, start=1):
        print(f"  [{i}] support={plane.support_size}{'' if plane.found else ' (no plane found)'}")
    print(f"Points covered by dominant planes: {result.total_support}")
    print(f"Points not covered by dominant planes: {len(result.residual)}")
    print(f"Total number of points: {result.original_size}")

    if args.check:
        if not result.is_consistent:
            print("Error: plane supports and residual do not add up to the input size", file=sys.stderr)
            return 1
        print("Check passed: supports + residual == input size")

    return 0


if __name__ == "__main__":
    sys.exit(main())

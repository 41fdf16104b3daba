#!/usr/bin/env python3
"""Write a synthetic XYZ point cloud made of planar patches plus outliers.

Usage:
  ./scripts/generate_synthetic_cloud.py --output data/room.xyz
  ./scripts/generate_synthetic_cloud.py --output box.xyz --planes 5 --points-per-plane 2000 --seed 7
"""

from __future__ import annotations

import argparse
from pathlib import Path

import numpy as np

# (axis, offset) for axis-aligned patches: floor, two walls, ceiling, two more walls.
_PATCHES = [(2, 0.0), (0, 0.0), (1, 0.0), (2, 3.0), (0, 4.0), (1, 5.0)]


def _make_patch_points(
    *,
    axis: int,
    offset: float,
    extent: float,
    n: int,
    noise_std: float,
    rng: np.random.Generator,
) -> np.ndarray:
    points = rng.uniform(0.0, extent, size=(n, 3))
    points[:, axis] = offset + rng.normal(scale=noise_std, size=n)
    return points


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a synthetic multi-plane XYZ cloud.")
    parser.add_argument("--output", "-o", required=True, help="Output .xyz path")
    parser.add_argument("--planes", type=int, default=3, help=f"Number of patches (1-{len(_PATCHES)})")
    parser.add_argument("--points-per-plane", type=int, default=1000)
    parser.add_argument("--outliers", type=int, default=200)
    parser.add_argument("--extent", type=float, default=3.0, help="Patch side length")
    parser.add_argument("--noise", type=float, default=0.002, help="Std-dev of off-plane noise")
    parser.add_argument("--seed", type=int, default=0)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    if not 1 <= args.planes <= len(_PATCHES):
        raise SystemExit(f"--planes must be between 1 and {len(_PATCHES)}")

    rng = np.random.default_rng(args.seed)
    # Later patches get fewer points so the extraction order is predictable.
    chunks = []
    for i, (axis, offset) in enumerate(_PATCHES[: args.planes]):
        n = max(3, int(args.points_per_plane * (1.0 - 0.15 * i)))
        chunks.append(
            _make_patch_points(
                axis=axis,
                offset=offset,
                extent=args.extent,
                n=n,
                noise_std=args.noise,
                rng=rng,
            )
        )
    chunks.append(rng.uniform(-1.0, args.extent + 1.0, size=(args.outliers, 3)))
    points = np.vstack(chunks)
    rng.shuffle(points)

    out = Path(args.output)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w") as f:
        f.write("x y z\n")
        for x, y, z in points:
            f.write(f"{x:f} {y:f} {z:f}\n")
    print(f"Wrote {len(points)} points ({args.planes} planes, {args.outliers} outliers) to {out}")


if __name__ == "__main__":
    main()

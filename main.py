"""Ambient Occlusion Baker — CLI entry point.

Bakes ambient occlusion for one of the built-in test scenes into
per-primitive AO textures or per-vertex buffers.

Usage
-----
    python main.py --scene-preset cube_over_ground --resolution 256
    python main.py --scene-preset tetrahedron --to-vertex --rays 64
    python main.py --config config/default_config.yaml --ground-plane
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

DEFAULT_CONFIG = "config/default_config.yaml"


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    fmt = "%(name)s [%(levelname)s] %(message)s"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=fmt,
        stream=sys.stdout,
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="aobake",
        description="Ambient Occlusion Baker — offline AO for triangle scenes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python main.py --scene-preset cube_over_ground\n"
            "  python main.py --scene-preset unit_square --resolution 10 --rays 64\n"
            "  python main.py --scene-preset tetrahedron --to-vertex\n"
            "  python main.py --ground-plane --ray-distance 2.5 --output output\n"
        ),
    )
    parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG,
        help=f"Path to bake config YAML (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--scene-preset",
        type=str,
        default="cube_over_ground",
        choices=["cube_over_ground", "tetrahedron", "open_tetrahedron", "unit_square"],
        help="Built-in scene to bake (default: cube_over_ground)",
    )
    parser.add_argument(
        "--to-vertex",
        action="store_true",
        default=False,
        help="Bake per-vertex occlusion instead of textures",
    )
    parser.add_argument(
        "--resolution",
        type=int,
        default=None,
        help="AO texture size in texels (default: from config)",
    )
    parser.add_argument(
        "--rays",
        type=int,
        default=None,
        help="Rays per sample point, rounded down to a square (default: from config)",
    )
    parser.add_argument(
        "--ray-distance",
        type=float,
        default=None,
        help="Maximum occluder distance (default: from config)",
    )
    parser.add_argument(
        "--ground-plane",
        action="store_true",
        default=False,
        help="Add an occluding ground plane under the scene",
    )
    parser.add_argument(
        "--output",
        type=str,
        default="output",
        help="Output directory for plots and data (default: output/)",
    )
    parser.add_argument(
        "--no-plots",
        action="store_true",
        default=False,
        help="Skip plot generation",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace):
    """Load the YAML config and apply command-line overrides."""
    from ao_engine.constants import BakeConfig, load_config, validate_config

    logger = logging.getLogger("aobake")
    config_path = Path(args.config)
    if config_path.exists() or args.config != DEFAULT_CONFIG:
        config = load_config(config_path)
    else:
        logger.warning("Config %s not found; using built-in defaults", config_path)
        config = BakeConfig()

    overrides = {}
    if args.to_vertex:
        overrides.update(to_texture=False, to_vertex=True)
    if args.resolution is not None:
        overrides["resolution"] = args.resolution
    if args.rays is not None:
        overrides["number_rays"] = args.rays
    if args.ray_distance is not None:
        overrides["ray_distance"] = args.ray_distance
    if args.ground_plane:
        overrides["ground_plane"] = True

    if overrides:
        config = dataclasses.replace(
            config, bake=dataclasses.replace(config.bake, **overrides)
        )
    validate_config(config)
    return config


def main(argv: list[str] | None = None) -> int:
    """Main bake entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    logger = logging.getLogger("aobake")
    logger.info("=" * 60)
    logger.info("  Ambient Occlusion Baker")
    logger.info("=" * 60)

    from ao_engine.constants import ConfigurationError
    from pipeline.runner import BakeRunner

    try:
        config = build_config(args)
    except (ConfigurationError, FileNotFoundError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    output_dir = Path(args.output)
    runner = BakeRunner(config)
    result = runner.run(
        args.scene_preset,
        output_dir=output_dir,
        save_data=True,
        plots=not args.no_plots,
    )

    # Summary
    logger.info("=" * 60)
    logger.info("  BAKE COMPLETE")
    logger.info("=" * 60)
    logger.info("  Scene: %s (%s mode)", result.metadata.get("scene_id"), result.mode)
    logger.info("  Wall time: %.2f s", result.metadata.get("wall_time_s", 0.0))
    logger.info(
        "  Occlusion: mean=%.3f, fully occluded=%.1f%%, unoccluded=%.1f%%",
        result.stats["mean_occlusion"],
        result.stats["fully_occluded_fraction"] * 100.0,
        result.stats["unoccluded_fraction"] * 100.0,
    )
    for primitive_id, buffer in result.buffers.items():
        logger.info(
            "    → %s: %d slots, %d sampled",
            primitive_id,
            buffer.size,
            int(buffer.sampled_mask().sum()),
        )
    logger.info("  Output: %s/", output_dir)
    logger.info("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())

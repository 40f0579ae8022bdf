"""Bake parameters, raytracer constants, and configuration loader.

Every tunable of a bake is read from a YAML configuration file (or a
plain dictionary with the same layout) into frozen dataclasses. Missing
keys fall back to the defaults below so a partial file is valid.

Configuration problems are reported as :class:`ConfigurationError`
before any ray is traced.
"""

from __future__ import annotations

import hashlib
import logging
import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numba
import numpy as np
import yaml

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Engine Constants
# ---------------------------------------------------------------------------

# Möller-Trumbore determinant tolerance
EPSILON: float = 1e-6

# UV-space tolerance admitting texel centers that lie exactly on an edge
BARYCENTRIC_EPSILON: float = 1e-10

# Ground plane sits this many near-cull distances below the scene
GROUND_PLANE_OFFSET: float = 1.5

# glTF primitive draw mode for plain triangle lists
TRIANGLES_MODE: int = 4

_ACCELERATORS = ("grid", "brute_force")


class ConfigurationError(ValueError):
    """A bake was requested with settings or inputs it cannot satisfy."""


# ---------------------------------------------------------------------------
# Configuration Data Classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BakeSettings:
    """What to bake and how densely.

    Attributes
    ----------
    to_texture : bool
        Bake into a per-primitive texel raster.
    to_vertex : bool
        Bake into per-vertex slots. Mutually exclusive with ``to_texture``.
    resolution : int
        Texel grid size per primitive (texture mode).
    number_rays : int
        Requested rays per sample point; reduced to a perfect square.
    ray_distance : float
        Hits farther than this do not occlude.
    near_cull : float
        Hits at or closer than this are treated as self-intersection.
    ground_plane : bool
        Add an occluding plane under the scene.
    density : float
        Supplemental samples per unit length in vertex mode.
    triangle_center_only : bool
        Vertex mode samples triangle centroids only.
    scene : str or None
        Scene id to bake; None selects the default scene.
    seed : int
        Seed for the jitter random stream.
    """

    to_texture: bool = True
    to_vertex: bool = False
    resolution: int = 128
    number_rays: int = 16
    ray_distance: float = 1.0
    near_cull: float = 0.0001
    ground_plane: bool = False
    density: float = 1.0
    triangle_center_only: bool = True
    scene: str | None = None
    seed: int = 42

    @property
    def mode(self) -> str:
        """'texture' or 'vertex'."""
        return "texture" if self.to_texture else "vertex"


@dataclass(frozen=True)
class GridSettings:
    """Uniform grid construction parameters.

    Attributes
    ----------
    cell_width : float or None
        Fixed cell width; None derives one from the scene.
    density : float
        Target number of cells per triangle when deriving the width.
    max_cells : int
        Upper bound on the total cell count.
    """

    cell_width: float | None = None
    density: float = 2.0
    max_cells: int = 1 << 24


@dataclass(frozen=True)
class RaytracerConfig:
    """Ray casting configuration.

    Attributes
    ----------
    epsilon : float
        Zero-test epsilon for Möller-Trumbore algorithm.
    cull_back_faces : bool
        Ignore triangles facing away from the ray.
    accelerator : str
        'grid' (uniform grid traversal) or 'brute_force'.
    grid : GridSettings
        Grid construction parameters.
    chunk_size : int
        Sample points traced per kernel launch.
    """

    epsilon: float = EPSILON
    cull_back_faces: bool = False
    accelerator: str = "grid"
    grid: GridSettings = GridSettings()
    chunk_size: int = 65536


@dataclass(frozen=True)
class BakeConfig:
    """Top-level configuration of one bake.

    Attributes
    ----------
    bake : BakeSettings
        Sampling and occlusion parameters.
    raytracer : RaytracerConfig
        Intersection and acceleration parameters.
    """

    bake: BakeSettings = BakeSettings()
    raytracer: RaytracerConfig = RaytracerConfig()


# ---------------------------------------------------------------------------
# Configuration Loader
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path) -> BakeConfig:
    """Load and validate a bake configuration from a YAML file.

    Parameters
    ----------
    config_path : str or Path
        Path to the YAML configuration file.

    Returns
    -------
    BakeConfig
        Fully populated, typed configuration object.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    ConfigurationError
        If values are invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        raw: dict[str, Any] = yaml.safe_load(f) or {}

    logger.info("Loading configuration from: %s", config_path)
    config = config_from_dict(raw)
    logger.info(
        "Configuration loaded: mode=%s, rays=%d, ray_distance=%g, accelerator=%s",
        config.bake.mode,
        config.bake.number_rays,
        config.bake.ray_distance,
        config.raytracer.accelerator,
    )
    return config


def config_from_dict(raw: dict[str, Any]) -> BakeConfig:
    """Build a validated :class:`BakeConfig` from a nested dictionary.

    Parameters
    ----------
    raw : dict
        Mapping with optional ``bake`` and ``raytracer`` sections.

    Returns
    -------
    BakeConfig
        Configuration with defaults filled in.
    """
    defaults = BakeSettings()
    bk = raw.get("bake") or {}
    scene = bk.get("scene", defaults.scene)
    bake = BakeSettings(
        to_texture=bool(bk.get("to_texture", defaults.to_texture)),
        to_vertex=bool(bk.get("to_vertex", defaults.to_vertex)),
        resolution=int(bk.get("resolution", defaults.resolution)),
        number_rays=int(bk.get("number_rays", defaults.number_rays)),
        ray_distance=float(bk.get("ray_distance", defaults.ray_distance)),
        near_cull=float(bk.get("near_cull", defaults.near_cull)),
        ground_plane=bool(bk.get("ground_plane", defaults.ground_plane)),
        density=float(bk.get("density", defaults.density)),
        triangle_center_only=bool(
            bk.get("triangle_center_only", defaults.triangle_center_only)
        ),
        scene=None if scene is None else str(scene),
        seed=int(bk.get("seed", defaults.seed)),
    )

    rt_defaults = RaytracerConfig()
    rt = raw.get("raytracer") or {}
    grid_cfg = rt.get("grid") or {}
    cell_width = grid_cfg.get("cell_width", rt_defaults.grid.cell_width)
    raytracer = RaytracerConfig(
        epsilon=float(rt.get("epsilon", rt_defaults.epsilon)),
        cull_back_faces=bool(rt.get("cull_back_faces", rt_defaults.cull_back_faces)),
        accelerator=str(rt.get("accelerator", rt_defaults.accelerator)),
        grid=GridSettings(
            cell_width=None if cell_width is None else float(cell_width),
            density=float(grid_cfg.get("density", rt_defaults.grid.density)),
            max_cells=int(grid_cfg.get("max_cells", rt_defaults.grid.max_cells)),
        ),
        chunk_size=int(rt.get("chunk_size", rt_defaults.chunk_size)),
    )

    config = BakeConfig(bake=bake, raytracer=raytracer)
    validate_config(config)
    return config


def validate_config(config: BakeConfig) -> None:
    """Check bake settings for values no bake can run with.

    Parameters
    ----------
    config : BakeConfig
        Configuration to validate.

    Raises
    ------
    ConfigurationError
        If any value is invalid.
    """
    bake = config.bake
    if bake.to_texture == bake.to_vertex:
        raise ConfigurationError(
            "Exactly one of to_texture / to_vertex must be enabled, got "
            f"to_texture={bake.to_texture}, to_vertex={bake.to_vertex}"
        )
    if bake.resolution < 1:
        raise ConfigurationError(f"resolution must be >= 1, got {bake.resolution}")
    if bake.number_rays < 1:
        raise ConfigurationError(f"number_rays must be >= 1, got {bake.number_rays}")
    if bake.ray_distance <= 0.0:
        raise ConfigurationError(f"ray_distance must be > 0, got {bake.ray_distance}")
    if bake.near_cull < 0.0:
        raise ConfigurationError(f"near_cull cannot be negative, got {bake.near_cull}")
    if bake.near_cull >= bake.ray_distance:
        raise ConfigurationError(
            f"near_cull ({bake.near_cull}) must be smaller than "
            f"ray_distance ({bake.ray_distance})"
        )
    if bake.to_vertex and not bake.triangle_center_only and bake.density <= 0.0:
        raise ConfigurationError(f"density must be > 0, got {bake.density}")
    if bake.seed < 0:
        raise ConfigurationError(f"seed cannot be negative, got {bake.seed}")

    rt = config.raytracer
    if rt.epsilon <= 0.0:
        raise ConfigurationError("Raytracer epsilon must be positive.")
    if rt.accelerator not in _ACCELERATORS:
        raise ConfigurationError(
            f"Unknown accelerator '{rt.accelerator}', expected one of {_ACCELERATORS}"
        )
    if rt.grid.cell_width is not None and rt.grid.cell_width <= 0.0:
        raise ConfigurationError(
            f"Grid cell width must be positive, got {rt.grid.cell_width}"
        )
    if rt.grid.density <= 0.0:
        raise ConfigurationError("Grid density must be positive.")
    if rt.grid.max_cells < 1:
        raise ConfigurationError("Grid max_cells must be >= 1.")
    if rt.chunk_size < 1:
        raise ConfigurationError("chunk_size must be >= 1.")

    logger.debug("Configuration validation passed.")


def log_platform_info() -> None:
    """Log platform and library version information for reproducibility."""
    logger.info("=" * 70)
    logger.info("PLATFORM INFORMATION (for reproducibility)")
    logger.info("=" * 70)
    logger.info("  Python:    %s", sys.version)
    logger.info("  Platform:  %s", platform.platform())
    logger.info("  Processor: %s", platform.processor())
    logger.info("  NumPy:     %s", np.__version__)
    logger.info("  Numba:     %s (%d threads)", numba.__version__, numba.get_num_threads())
    logger.info("=" * 70)


def hash_array(arr: np.ndarray) -> str:
    """Compute SHA-256 hash of a NumPy array for reproducibility verification.

    Parameters
    ----------
    arr : np.ndarray
        Array to hash.

    Returns
    -------
    str
        Hex digest of the SHA-256 hash.
    """
    return hashlib.sha256(np.ascontiguousarray(arr).tobytes()).hexdigest()

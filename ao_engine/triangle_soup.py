"""Triangle soup extraction from decoded scene primitives.

Every triangle of every triangle-mode primitive is transformed to world
space and appended to one flat ``(N, 3, 3)`` array. The soup has no
topology; it exists only to be intersected. Optionally two extra
triangles form a ground plane under the scene:

    (min.x - 2d, y_g, max.z + 2d) ---- (max.x + 2d, y_g, max.z + 2d)
              |                 \\                 |
              |                    \\              |
    (min.x - 2d, y_g, min.z - 2d) ---- (max.x + 2d, y_g, min.z - 2d)

with ``d = ray_distance`` and ``y_g = min.y - 1.5 * near_cull``, wound so
that the plane faces +Y.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

import numpy as np

from ao_engine.constants import GROUND_PLANE_OFFSET, TRIANGLES_MODE, ConfigurationError
from scene_ingestion.scene_graph import ScenePrimitive

logger = logging.getLogger(__name__)


@dataclass
class TriangleSoup:
    """World-space triangles of one bake.

    Attributes
    ----------
    triangles : np.ndarray
        Vertex positions. Shape: (num_triangles, 3, 3), dtype: float64.
        Read-only once built.
    bounds_min : np.ndarray
        Scene AABB minimum (scene primitives only). Shape: (3,).
    bounds_max : np.ndarray
        Scene AABB maximum (scene primitives only). Shape: (3,).
    num_scene_triangles : int
        Triangles that came from scene primitives; the rest is ground plane.
    metadata : dict
        Build statistics.
    """

    triangles: np.ndarray
    bounds_min: np.ndarray
    bounds_max: np.ndarray
    num_scene_triangles: int
    metadata: dict = field(default_factory=dict)

    def __len__(self) -> int:
        return int(self.triangles.shape[0])

    @property
    def has_ground_plane(self) -> bool:
        return len(self) > self.num_scene_triangles


def require_positions(primitive: ScenePrimitive) -> np.ndarray:
    """Return the primitive's POSITION array or fail the bake."""
    if primitive.positions is None:
        raise ConfigurationError(
            f"Primitive '{primitive.primitive_id}' has no POSITION attribute"
        )
    return primitive.positions


def primitive_world_triangles(primitive: ScenePrimitive) -> np.ndarray:
    """World-space vertices of a primitive's triangles. Shape: (n, 3, 3)."""
    require_positions(primitive)
    world = primitive.world_positions()
    return world[primitive.triangle_indices()]


def build_triangle_soup(
    primitives: Iterable[ScenePrimitive],
    ground_plane: bool = False,
    ray_distance: float = 1.0,
    near_cull: float = 0.0001,
) -> TriangleSoup:
    """Collect the world-space triangles of all primitives.

    Parameters
    ----------
    primitives : iterable of ScenePrimitive
        Decoded primitives with world transforms.
    ground_plane : bool
        Append a two-triangle plane under the scene.
    ray_distance : float
        Far bound of the bake; sizes the ground plane.
    near_cull : float
        Near bound of the bake; offsets the ground plane downward.

    Returns
    -------
    TriangleSoup
        The frozen soup.

    Raises
    ------
    ConfigurationError
        If a triangle primitive has no positions.
    """
    chunks: list[np.ndarray] = []
    skipped = 0
    for prim in primitives:
        if prim.mode != TRIANGLES_MODE:
            skipped += 1
            logger.debug(
                "Skipping primitive '%s' with draw mode %d", prim.primitive_id, prim.mode
            )
            continue
        chunks.append(primitive_world_triangles(prim))

    if chunks:
        triangles = np.concatenate(chunks, axis=0).astype(np.float64)
    else:
        triangles = np.empty((0, 3, 3), dtype=np.float64)
    num_scene_triangles = triangles.shape[0]

    if num_scene_triangles > 0:
        flat = triangles.reshape(-1, 3)
        bounds_min = flat.min(axis=0)
        bounds_max = flat.max(axis=0)
    else:
        bounds_min = np.zeros(3, dtype=np.float64)
        bounds_max = np.zeros(3, dtype=np.float64)

    # Check for degenerate triangles (zero area)
    areas = 0.5 * np.linalg.norm(
        np.cross(triangles[:, 1] - triangles[:, 0], triangles[:, 2] - triangles[:, 0]),
        axis=1,
    )
    degenerate_count = int(np.sum(areas < 1e-20))
    if degenerate_count > 0:
        logger.warning(
            "  %d degenerate triangles in soup (area < 1e-20); they never occlude",
            degenerate_count,
        )

    if ground_plane:
        plane = ground_plane_triangles(bounds_min, bounds_max, ray_distance, near_cull)
        triangles = np.concatenate([triangles, plane], axis=0)

    triangles.flags.writeable = False

    metadata = {
        "num_triangles": int(triangles.shape[0]),
        "num_scene_triangles": int(num_scene_triangles),
        "skipped_primitives": skipped,
        "degenerate_triangles": degenerate_count,
        "ground_plane": bool(ground_plane),
        "total_surface_area": float(areas.sum()),
        "memory_estimate_MB": triangles.nbytes / 1e6,
    }

    logger.info(
        "Triangle soup built: %d triangles (%d from scene%s), extent %s",
        triangles.shape[0],
        num_scene_triangles,
        ", +2 ground plane" if ground_plane else "",
        np.array2string(bounds_max - bounds_min, precision=3),
    )

    return TriangleSoup(
        triangles=triangles,
        bounds_min=bounds_min,
        bounds_max=bounds_max,
        num_scene_triangles=int(num_scene_triangles),
        metadata=metadata,
    )


def ground_plane_triangles(
    bounds_min: np.ndarray,
    bounds_max: np.ndarray,
    ray_distance: float,
    near_cull: float,
) -> np.ndarray:
    """Two upward-facing triangles under the scene. Shape: (2, 3, 3)."""
    pad = 2.0 * ray_distance
    y = bounds_min[1] - GROUND_PLANE_OFFSET * near_cull
    x0 = bounds_min[0] - pad
    x1 = bounds_max[0] + pad
    z0 = bounds_min[2] - pad
    z1 = bounds_max[2] + pad

    c00 = [x0, y, z0]
    c10 = [x1, y, z0]
    c11 = [x1, y, z1]
    c01 = [x0, y, z1]
    # (c01 - c00) × (c11 - c00) points along +Y
    return np.array([[c00, c01, c11], [c00, c11, c10]], dtype=np.float64)

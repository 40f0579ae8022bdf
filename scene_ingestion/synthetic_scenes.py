"""Procedural test scenes for validating the AO baker.

Small scenes whose occlusion can be reasoned about by hand, used by the
test suite and by the command-line presets before real assets are fed in.

Presets
-------
- ``tetrahedron``: four faces enclosing the origin. A sample at the
  origin is fully occluded in every direction.
- ``open_tetrahedron``: the same solid with its bottom face removed, so
  the scene opens downward.
- ``unit_square``: a unit quad in the z=0 plane with UVs covering the
  center half of the texture, drawn through a node scaled by 2.
- ``cube_over_ground``: a unit cube floating 0.25 above a 6×6 ground quad.
  The ground darkens under the cube, the cube's bottom face is occluded
  by the ground.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

import numpy as np

from ao_engine.constants import ConfigurationError
from scene_ingestion.scene_graph import (
    MeshPrimitive,
    Scene,
    SceneCollection,
    SceneNode,
    flatten_scene,
)

logger = logging.getLogger(__name__)

TETRAHEDRON_POINTS = np.array(
    [
        [0.0, -1.0, 1.0],
        [1.0, -1.0, -1.0],
        [-1.0, -1.0, -1.0],
        [0.0, 1.0, 0.0],
    ],
    dtype=np.float64,
)

# Counter-clockwise seen from outside; face 0 is the bottom (y = -1)
TETRAHEDRON_FACES = np.array(
    [
        [0, 2, 1],
        [0, 1, 3],
        [1, 2, 3],
        [2, 0, 3],
    ],
    dtype=np.int64,
)


def _atlas_tile(index: int, cols: int, rows: int, margin: float = 0.05) -> tuple[np.ndarray, np.ndarray]:
    """Lower-left corner and size of an inset tile in a cols × rows UV atlas."""
    size = np.array([1.0 / cols, 1.0 / rows])
    origin = np.array([index % cols, index // cols], dtype=np.float64) * size
    return origin + margin * size, (1.0 - 2.0 * margin) * size


def tetrahedron_triangles(open_bottom: bool = False) -> np.ndarray:
    """World-space tetrahedron faces. Shape: (3 or 4, 3, 3)."""
    faces = TETRAHEDRON_FACES[1:] if open_bottom else TETRAHEDRON_FACES
    return TETRAHEDRON_POINTS[faces]


def make_tetrahedron_mesh(open_bottom: bool = False) -> MeshPrimitive:
    """Tetrahedron with unshared vertices and one atlas tile per face."""
    faces = TETRAHEDRON_FACES[1:] if open_bottom else TETRAHEDRON_FACES
    positions = TETRAHEDRON_POINTS[faces].reshape(-1, 3)
    uvs = np.empty((positions.shape[0], 2), dtype=np.float64)
    for k in range(faces.shape[0]):
        lo, size = _atlas_tile(k, 2, 2)
        uvs[3 * k + 0] = lo
        uvs[3 * k + 1] = lo + [size[0], 0.0]
        uvs[3 * k + 2] = lo + [0.0, size[1]]
    return MeshPrimitive(
        name="tetrahedron",
        indices=np.arange(positions.shape[0], dtype=np.int64),
        positions=positions,
        uvs=uvs,
    )


def make_unit_square_mesh() -> MeshPrimitive:
    """Unit quad in z=0 facing +Z; UVs span [0.25, 0.75]²."""
    return MeshPrimitive(
        name="square",
        indices=np.array([0, 1, 2, 0, 2, 3], dtype=np.int64),
        positions=np.array(
            [[0.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0], [1.0, 0.0, 0.0]]
        ),
        normals=np.array([[0.0, 0.0, 1.0]] * 4),
        uvs=np.array([[0.25, 0.25], [0.75, 0.25], [0.75, 0.75], [0.25, 0.75]]),
    )


# (normal, u, v) with u × v = normal
_CUBE_FACES = (
    ((1, 0, 0), (0, 1, 0), (0, 0, 1)),
    ((-1, 0, 0), (0, 0, 1), (0, 1, 0)),
    ((0, 1, 0), (0, 0, 1), (1, 0, 0)),
    ((0, -1, 0), (1, 0, 0), (0, 0, 1)),
    ((0, 0, 1), (1, 0, 0), (0, 1, 0)),
    ((0, 0, -1), (0, 1, 0), (1, 0, 0)),
)


def make_cube_mesh(size: float = 1.0) -> MeshPrimitive:
    """Axis-aligned cube centered at the origin, outward normals, 3×2 UV atlas."""
    half = 0.5 * size
    positions, normals, uvs, indices = [], [], [], []
    corners = ((-1, -1), (1, -1), (1, 1), (-1, 1))
    for k, (n, u, v) in enumerate(_CUBE_FACES):
        n, u, v = np.array(n, float), np.array(u, float), np.array(v, float)
        lo, tile = _atlas_tile(k, 3, 2)
        base = len(positions)
        for su, sv in corners:
            positions.append(half * (n + su * u + sv * v))
            normals.append(n)
            uvs.append(lo + tile * [0.5 * (su + 1), 0.5 * (sv + 1)])
        indices.extend([base, base + 1, base + 2, base, base + 2, base + 3])
    return MeshPrimitive(
        name="cube",
        indices=np.array(indices, dtype=np.int64),
        positions=np.array(positions),
        normals=np.array(normals),
        uvs=np.array(uvs),
    )


def make_ground_mesh(half_extent: float = 3.0) -> MeshPrimitive:
    """Square quad in y=0 facing +Y."""
    e = half_extent
    return MeshPrimitive(
        name="ground",
        indices=np.array([0, 1, 2, 0, 2, 3], dtype=np.int64),
        positions=np.array([[-e, 0.0, -e], [-e, 0.0, e], [e, 0.0, e], [e, 0.0, -e]]),
        normals=np.array([[0.0, 1.0, 0.0]] * 4),
        uvs=np.array([[0.0, 0.0], [0.0, 1.0], [1.0, 1.0], [1.0, 0.0]]),
    )


def _translation(x: float, y: float, z: float) -> np.ndarray:
    m = np.eye(4)
    m[:3, 3] = (x, y, z)
    return m


def tetrahedron_scene(open_bottom: bool = False) -> Scene:
    name = "open_tetrahedron" if open_bottom else "tetrahedron"
    node = SceneNode(name=name, primitives=[make_tetrahedron_mesh(open_bottom)])
    return flatten_scene([node], scene_id=name)


def unit_square_scene() -> Scene:
    node = SceneNode(
        name="quad",
        matrix=np.diag([2.0, 2.0, 2.0, 1.0]),
        primitives=[make_unit_square_mesh()],
    )
    return flatten_scene([node], scene_id="unit_square")


def cube_over_ground_scene(gap: float = 0.25) -> Scene:
    ground = SceneNode(name="ground", primitives=[make_ground_mesh()])
    cube = SceneNode(
        name="cube",
        matrix=_translation(0.0, 0.5 + gap, 0.0),
        primitives=[make_cube_mesh()],
    )
    return flatten_scene([ground, cube], scene_id="cube_over_ground")


PRESETS: dict[str, Callable[[], Scene]] = {
    "cube_over_ground": cube_over_ground_scene,
    "tetrahedron": tetrahedron_scene,
    "open_tetrahedron": lambda: tetrahedron_scene(open_bottom=True),
    "unit_square": unit_square_scene,
}


def build_preset(name: str) -> Scene:
    """Build a named test scene.

    Raises
    ------
    ConfigurationError
        If the preset name is unknown.
    """
    if name not in PRESETS:
        raise ConfigurationError(f"Unknown scene preset '{name}'; available: {sorted(PRESETS)}")
    scene = PRESETS[name]()
    logger.info(
        "Generated preset scene '%s': %d primitives, %d triangles",
        name,
        len(scene.items),
        sum(p.num_triangles for p in scene.items),
    )
    return scene


def preset_collection(default_scene: str = "cube_over_ground") -> SceneCollection:
    """All presets as one collection."""
    return SceneCollection(
        scenes={name: factory() for name, factory in PRESETS.items()},
        default_scene=default_scene,
    )

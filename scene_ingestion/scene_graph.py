"""Decoded scene description consumed by the AO engine.

The baker does not read any asset format. Callers hand it primitives
whose attribute buffers are already decoded into NumPy arrays, together
with the world transform of the node instance that draws them. Scene
graphs given as nested nodes with local matrices are flattened here.

Notes
-----
A primitive drawn by two node instances is emitted twice, with distinct
ids (``<node path>/<mesh>/<primitive>``), and gets its own AO buffer per
instance.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field

import numpy as np

from ao_engine.constants import TRIANGLES_MODE, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass
class ScenePrimitive:
    """One drawable primitive with decoded attributes.

    Attributes
    ----------
    primitive_id : str
        Stable identifier; keys the primitive's AO buffer.
    indices : np.ndarray
        Triangle list indices. Shape: (3 * num_triangles,), dtype: int64.
    positions : np.ndarray or None
        Local-space vertex positions. Shape: (num_vertices, 3).
    normals : np.ndarray or None
        Local-space vertex normals. Shape: (num_vertices, 3).
    uvs : np.ndarray or None
        TEXCOORD_0 values. Shape: (num_vertices, 2).
    world_transform : np.ndarray
        Flattened node transform (column-vector convention). Shape: (4, 4).
    mode : int
        Draw mode; only 4 (triangles) is baked.
    """

    primitive_id: str
    indices: np.ndarray
    positions: np.ndarray | None
    normals: np.ndarray | None = None
    uvs: np.ndarray | None = None
    world_transform: np.ndarray = field(default_factory=lambda: np.eye(4))
    mode: int = TRIANGLES_MODE

    @property
    def num_vertices(self) -> int:
        return 0 if self.positions is None else int(self.positions.shape[0])

    @property
    def num_triangles(self) -> int:
        return int(self.indices.shape[0]) // 3

    def triangle_indices(self) -> np.ndarray:
        """Index triplets. Shape: (num_triangles, 3)."""
        n = self.num_triangles
        return np.asarray(self.indices[: 3 * n], dtype=np.int64).reshape(n, 3)

    def world_positions(self) -> np.ndarray:
        """Vertex positions transformed by the world matrix. Shape: (num_vertices, 3)."""
        return transform_points(self.world_transform, self.positions)


@dataclass
class MeshPrimitive:
    """Primitive data attached to a node, before flattening (no transform)."""

    name: str
    indices: np.ndarray
    positions: np.ndarray | None
    normals: np.ndarray | None = None
    uvs: np.ndarray | None = None
    mode: int = TRIANGLES_MODE


@dataclass
class SceneNode:
    """A scene-graph node with a local matrix, primitives, and children."""

    name: str
    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))
    primitives: list[MeshPrimitive] = field(default_factory=list)
    children: list[SceneNode] = field(default_factory=list)


@dataclass
class Scene:
    """A flattened scene: primitives with world transforms.

    Attributes
    ----------
    scene_id : str
        Scene identifier.
    items : list[ScenePrimitive]
        Primitives in traversal order.
    """

    scene_id: str
    items: list[ScenePrimitive] = field(default_factory=list)

    def primitives(self) -> Iterator[ScenePrimitive]:
        yield from self.items

    def bounds(self) -> tuple[np.ndarray, np.ndarray]:
        """World-space AABB of all triangle primitives with positions."""
        lo = np.full(3, np.inf)
        hi = np.full(3, -np.inf)
        for prim in self.items:
            if prim.positions is None or prim.num_vertices == 0:
                continue
            pts = prim.world_positions()
            lo = np.minimum(lo, pts.min(axis=0))
            hi = np.maximum(hi, pts.max(axis=0))
        return lo, hi


@dataclass
class SceneCollection:
    """Several scenes plus the one baked by default."""

    scenes: dict[str, Scene]
    default_scene: str | None = None

    def resolve(self, scene_id: str | None = None) -> Scene:
        """Pick a scene by id, falling back to the default and then the first one.

        Raises
        ------
        ConfigurationError
            If no scene can be resolved.
        """
        if scene_id is not None:
            if scene_id not in self.scenes:
                raise ConfigurationError(
                    f"Scene '{scene_id}' not found; available: {sorted(self.scenes)}"
                )
            return self.scenes[scene_id]
        if self.default_scene is not None and self.default_scene in self.scenes:
            return self.scenes[self.default_scene]
        if self.scenes:
            return next(iter(self.scenes.values()))
        raise ConfigurationError("No scene to bake: the scene collection is empty.")


def resolve_scene(source: Scene | SceneCollection, scene_id: str | None = None) -> Scene:
    """Accept either a single scene or a collection."""
    if isinstance(source, SceneCollection):
        return source.resolve(scene_id)
    if isinstance(source, Scene):
        if scene_id is not None and scene_id != source.scene_id:
            raise ConfigurationError(
                f"Scene '{scene_id}' requested but only '{source.scene_id}' is available"
            )
        return source
    raise ConfigurationError(f"Cannot resolve a scene from {type(source).__name__}")


def transform_points(matrix: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4×4 affine matrix to points. Shape: (N, 3) → (N, 3)."""
    points = np.asarray(points, dtype=np.float64)
    m = np.asarray(matrix, dtype=np.float64)
    return points @ m[:3, :3].T + m[:3, 3]


def normal_matrix(matrix: np.ndarray) -> np.ndarray:
    """Inverse-transpose of the upper 3×3 block, for transforming normals."""
    m = np.asarray(matrix, dtype=np.float64)[:3, :3]
    return np.linalg.inv(m).T


def flatten_scene(
    root_nodes: list[SceneNode],
    scene_id: str = "scene",
) -> Scene:
    """Compute world transforms depth-first and emit one primitive per instance.

    Parameters
    ----------
    root_nodes : list[SceneNode]
        Root nodes of the scene graph.
    scene_id : str
        Identifier of the resulting scene.

    Returns
    -------
    Scene
        Flattened scene.
    """
    scene = Scene(scene_id=scene_id)
    stack: list[tuple[SceneNode, np.ndarray, str]] = [
        (node, np.eye(4), node.name) for node in reversed(root_nodes)
    ]
    while stack:
        node, parent, path = stack.pop()
        world = parent @ np.asarray(node.matrix, dtype=np.float64)
        for mesh_prim in node.primitives:
            scene.items.append(
                ScenePrimitive(
                    primitive_id=f"{path}/{mesh_prim.name}",
                    indices=np.asarray(mesh_prim.indices, dtype=np.int64),
                    positions=None if mesh_prim.positions is None
                    else np.asarray(mesh_prim.positions, dtype=np.float64),
                    normals=None if mesh_prim.normals is None
                    else np.asarray(mesh_prim.normals, dtype=np.float64),
                    uvs=None if mesh_prim.uvs is None
                    else np.asarray(mesh_prim.uvs, dtype=np.float64),
                    world_transform=world,
                    mode=mesh_prim.mode,
                )
            )
        for child in reversed(node.children):
            stack.append((child, world, f"{path}/{child.name}"))

    logger.debug(
        "Flattened scene '%s': %d primitive instances", scene_id, len(scene.items)
    )
    return scene

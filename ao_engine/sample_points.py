"""Sample point generation for texture and vertex baking.

Texture mode ("pixel march")
----------------------------
For each triangle, the texel centers ``((i + 0.5) / res, (j + 0.5) / res)``
inside the UV bounding box are tested against the triangle's UVs with
barycentric coordinates. Centers inside the triangle get a world position
and normal interpolated from the vertex attributes and write to slot
``i + j * res``. UV islands that overlap sample the same texel more than
once; the contributions simply add up.

Vertex mode
-----------
Each triangle contributes a sample at its centroid to the slots of its
three vertices. Optionally the triangle is flattened into its own plane
and pixel-marched at ``density`` samples per unit length; those
supplemental samples go to the same three slots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from ao_engine.constants import BARYCENTRIC_EPSILON, BakeSettings, ConfigurationError
from ao_engine.triangle_soup import require_positions
from scene_ingestion.scene_graph import ScenePrimitive, normal_matrix

logger = logging.getLogger(__name__)

_MIN_NORMAL_LENGTH: float = 1e-12


@dataclass
class SampleSet:
    """Sample points of one primitive.

    Attributes
    ----------
    positions : np.ndarray
        World-space positions. Shape: (M, 3).
    normals : np.ndarray
        Unit world-space normals. Shape: (M, 3).
    targets : np.ndarray
        AO buffer slots each sample adds to; -1 marks an unused column.
        Shape: (M, 3), dtype: int64.
    """

    positions: np.ndarray
    normals: np.ndarray
    targets: np.ndarray

    def __len__(self) -> int:
        return int(self.positions.shape[0])

    @classmethod
    def empty(cls) -> SampleSet:
        return cls(
            positions=np.empty((0, 3), dtype=np.float64),
            normals=np.empty((0, 3), dtype=np.float64),
            targets=np.empty((0, 3), dtype=np.int64),
        )

    @classmethod
    def concatenate(cls, parts: list[SampleSet]) -> SampleSet:
        parts = [p for p in parts if len(p) > 0]
        if not parts:
            return cls.empty()
        return cls(
            positions=np.concatenate([p.positions for p in parts], axis=0),
            normals=np.concatenate([p.normals for p in parts], axis=0),
            targets=np.concatenate([p.targets for p in parts], axis=0),
        )


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------


def barycentric_2d(
    points: np.ndarray,
    a: np.ndarray,
    b: np.ndarray,
    c: np.ndarray,
) -> np.ndarray | None:
    """Barycentric weights of 2D points w.r.t. triangle (a, b, c).

    Parameters
    ----------
    points : np.ndarray
        Query points. Shape: (K, 2).
    a, b, c : np.ndarray
        Triangle corners. Shape: (2,) each.

    Returns
    -------
    weights : np.ndarray or None
        Weights for (a, b, c). Shape: (K, 3). None if the triangle is
        degenerate.
    """
    v0 = b - a
    v1 = c - a
    d00 = float(v0 @ v0)
    d01 = float(v0 @ v1)
    d11 = float(v1 @ v1)
    denom = d00 * d11 - d01 * d01
    if denom <= 1e-12 * d00 * d11 or denom == 0.0:
        return None

    v2 = points - a
    d20 = v2 @ v0
    d21 = v2 @ v1
    wb = (d11 * d20 - d01 * d21) / denom
    wc = (d00 * d21 - d01 * d20) / denom
    return np.column_stack([1.0 - wb - wc, wb, wc])


def world_vertex_normals(primitive: ScenePrimitive) -> np.ndarray | None:
    """Vertex normals carried to world space by the inverse-transpose matrix."""
    if primitive.normals is None:
        return None
    return np.asarray(primitive.normals, dtype=np.float64) @ normal_matrix(
        primitive.world_transform
    ).T


def _normalize_rows(vectors: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Normalize rows; returns (unit rows, mask of rows that had a length)."""
    lengths = np.linalg.norm(vectors, axis=1)
    valid = lengths > _MIN_NORMAL_LENGTH
    safe = np.where(valid, lengths, 1.0)
    return vectors / safe[:, None], valid


def _interpolate(
    weights: np.ndarray,
    tri_world: np.ndarray,
    tri_normals: np.ndarray | None,
    face_normal: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Positions and unit normals at barycentric weights; plus validity mask."""
    positions = weights @ tri_world
    if tri_normals is None:
        normals = np.broadcast_to(face_normal, positions.shape).copy()
    else:
        normals = weights @ tri_normals
    normals, valid = _normalize_rows(normals)
    if tri_normals is not None and not np.all(valid) and np.any(face_normal):
        # Opposing vertex normals cancelled out
        normals[~valid] = face_normal
        valid[:] = True
    return positions, normals, valid


def _face_normal(tri_world: np.ndarray) -> np.ndarray:
    cross = np.cross(tri_world[1] - tri_world[0], tri_world[2] - tri_world[0])
    length = np.linalg.norm(cross)
    if length <= _MIN_NORMAL_LENGTH:
        return np.zeros(3, dtype=np.float64)
    return cross / length


def _march_cells(lo: np.ndarray, hi: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """All integer (i, j) pairs in an inclusive 2D index range, flattened."""
    ii, jj = np.meshgrid(
        np.arange(lo[0], hi[0] + 1, dtype=np.int64),
        np.arange(lo[1], hi[1] + 1, dtype=np.int64),
        indexing="ij",
    )
    return ii.ravel(), jj.ravel()


# ---------------------------------------------------------------------------
# Texture mode
# ---------------------------------------------------------------------------


def texel_samples(primitive: ScenePrimitive, resolution: int) -> SampleSet:
    """Pixel-march every triangle of a primitive over its UV footprint.

    Parameters
    ----------
    primitive : ScenePrimitive
        Primitive with POSITION and TEXCOORD_0.
    resolution : int
        AO texture size in texels per side.

    Returns
    -------
    SampleSet
        One sample per (triangle, covered texel); target column 0 holds the
        texel index ``i + j * resolution``.

    Raises
    ------
    ConfigurationError
        If the primitive lacks positions or texture coordinates.
    """
    require_positions(primitive)
    if primitive.uvs is None:
        raise ConfigurationError(
            f"Texture baking requires TEXCOORD_0, but primitive "
            f"'{primitive.primitive_id}' has none"
        )

    uvs = np.asarray(primitive.uvs, dtype=np.float64)
    world = primitive.world_positions()
    normals = world_vertex_normals(primitive)
    pixel_width = 1.0 / resolution
    last = resolution - 1

    parts: list[SampleSet] = []
    skipped = 0
    for tri in primitive.triangle_indices():
        uv = uvs[tri]
        lo = np.clip(np.floor(uv.min(axis=0) / pixel_width), 0, last).astype(np.int64)
        hi = np.clip(np.floor(uv.max(axis=0) / pixel_width), 0, last).astype(np.int64)
        ii, jj = _march_cells(lo, hi)
        centers = (np.column_stack([ii, jj]) + 0.5) * pixel_width

        weights = barycentric_2d(centers, uv[0], uv[1], uv[2])
        if weights is None:
            skipped += 1
            continue
        inside = np.all(weights >= -BARYCENTRIC_EPSILON, axis=1)
        if not np.any(inside):
            continue

        tri_world = world[tri]
        positions, unit_normals, valid = _interpolate(
            weights[inside],
            tri_world,
            None if normals is None else normals[tri],
            _face_normal(tri_world),
        )
        slots = (ii + jj * resolution)[inside]
        targets = np.full((slots.shape[0], 3), -1, dtype=np.int64)
        targets[:, 0] = slots
        parts.append(SampleSet(positions[valid], unit_normals[valid], targets[valid]))

    samples = SampleSet.concatenate(parts)
    if skipped:
        logger.warning(
            "  Primitive '%s': %d triangles with degenerate UVs produced no texels",
            primitive.primitive_id,
            skipped,
        )
    logger.debug(
        "Primitive '%s': %d texel samples from %d triangles at %dx%d",
        primitive.primitive_id,
        len(samples),
        primitive.num_triangles,
        resolution,
        resolution,
    )
    return samples


# ---------------------------------------------------------------------------
# Vertex mode
# ---------------------------------------------------------------------------


def flatten_triangle(tri_world: np.ndarray) -> tuple[np.ndarray, np.ndarray] | None:
    """Express a triangle in 2D coordinates of its own plane.

    Parameters
    ----------
    tri_world : np.ndarray
        Triangle vertices. Shape: (3, 3).

    Returns
    -------
    corners : np.ndarray
        2D corners; the first vertex is the origin and the first edge runs
        along +x. Shape: (3, 2).
    frame : np.ndarray
        Rows are the in-plane x and y axes in world space. Shape: (2, 3).
    None
        If the triangle has zero area.
    """
    e0 = tri_world[1] - tri_world[0]
    e1 = tri_world[2] - tri_world[0]
    n = np.cross(e0, e1)
    n_len = np.linalg.norm(n)
    e0_len = np.linalg.norm(e0)
    if n_len <= _MIN_NORMAL_LENGTH or e0_len <= _MIN_NORMAL_LENGTH:
        return None
    x_axis = e0 / e0_len
    y_axis = np.cross(n / n_len, x_axis)
    frame = np.vstack([x_axis, y_axis])
    corners = (tri_world - tri_world[0]) @ frame.T
    return corners, frame


def _triangle_area_samples(
    tri: np.ndarray,
    tri_world: np.ndarray,
    tri_normals: np.ndarray | None,
    density: float,
) -> SampleSet:
    """Supplemental samples over the flattened triangle, ``density`` per unit length."""
    flattened = flatten_triangle(tri_world)
    if flattened is None:
        return SampleSet.empty()
    corners, _ = flattened

    pixel_width = 1.0 / density
    lo = np.floor(corners.min(axis=0) / pixel_width).astype(np.int64)
    hi = np.floor(corners.max(axis=0) / pixel_width).astype(np.int64)
    ii, jj = _march_cells(lo, hi)
    centers = (np.column_stack([ii, jj]) + 0.5) * pixel_width

    weights = barycentric_2d(centers, corners[0], corners[1], corners[2])
    if weights is None:
        return SampleSet.empty()
    inside = np.all(weights >= -BARYCENTRIC_EPSILON, axis=1)
    if not np.any(inside):
        return SampleSet.empty()

    positions, normals, valid = _interpolate(
        weights[inside], tri_world, tri_normals, _face_normal(tri_world)
    )
    targets = np.broadcast_to(tri, (positions.shape[0], 3)).astype(np.int64)
    return SampleSet(positions[valid], normals[valid], targets[valid])


def vertex_samples(
    primitive: ScenePrimitive,
    density: float = 1.0,
    triangle_center_only: bool = True,
) -> SampleSet:
    """Centroid (and optional area) samples targeting each triangle's vertices.

    Parameters
    ----------
    primitive : ScenePrimitive
        Primitive with POSITION.
    density : float
        Supplemental samples per unit length along the flattened triangle.
    triangle_center_only : bool
        Skip the supplemental samples.

    Returns
    -------
    SampleSet
        Samples whose three target columns are the triangle's vertex indices.
    """
    require_positions(primitive)
    world = primitive.world_positions()
    normals = world_vertex_normals(primitive)
    tris = primitive.triangle_indices()

    tri_world = world[tris]  # (n, 3, 3)
    centroids = tri_world.mean(axis=1)
    face = np.cross(tri_world[:, 1] - tri_world[:, 0], tri_world[:, 2] - tri_world[:, 0])
    face_unit, has_area = _normalize_rows(face)
    if normals is None:
        centroid_normals, valid = face_unit, has_area
    else:
        centroid_normals, valid = _normalize_rows(normals[tris].mean(axis=1))
        cancelled = ~valid & has_area
        centroid_normals[cancelled] = face_unit[cancelled]
        valid |= cancelled
    valid &= has_area

    degenerate = int(np.sum(~has_area))
    if degenerate:
        logger.warning(
            "  Primitive '%s': %d zero-area triangles produced no samples",
            primitive.primitive_id,
            degenerate,
        )

    parts = [SampleSet(centroids[valid], centroid_normals[valid], tris[valid].copy())]

    if not triangle_center_only:
        for k in np.flatnonzero(has_area):
            parts.append(
                _triangle_area_samples(
                    tris[k],
                    tri_world[k],
                    None if normals is None else normals[tris[k]],
                    density,
                )
            )

    samples = SampleSet.concatenate(parts)
    logger.debug(
        "Primitive '%s': %d vertex samples from %d triangles",
        primitive.primitive_id,
        len(samples),
        primitive.num_triangles,
    )
    return samples


def generate_sample_set(primitive: ScenePrimitive, settings: BakeSettings) -> SampleSet:
    """Sample points of a primitive for the configured bake mode."""
    if settings.to_texture:
        return texel_samples(primitive, settings.resolution)
    return vertex_samples(
        primitive,
        density=settings.density,
        triangle_center_only=settings.triangle_center_only,
    )

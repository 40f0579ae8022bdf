"""Uniform grid spatial index over the triangle soup.

Triangles are binned into a regular 3D grid of cubic cells laid over the
scene's bounding volume. A triangle is stored in every cell it actually
overlaps (separating-axis test), not in every cell its bounding box
touches. Rays walk the grid front to back with a 3D DDA and only test the
triangles of the cells they pass through.

Design Notes
------------
- **Compacted buckets**: cell membership lives in one flat ``items`` array
  of triangle indices. Cell ``i`` owns ``items[cell_start[i]:
  cell_start[i] + cell_count[i]]``. Construction runs twice over the
  triangles (count, then fill) so no per-cell Python lists are needed.
- **Cell index**: ``x + y * res_x + z * res_x * res_y``.
- **Centering**: the grid is centered on the data AABB center and padded
  so ``resolution * cell_width`` covers the extent exactly.

References
----------
- Akenine-Möller, T. (2001). "Fast 3D Triangle-Box Overlap Testing."
  J. Graphics Tools, 6(1), 29-33.
- Amanatides, J. & Woo, A. (1987). "A Fast Voxel Traversal Algorithm
  for Ray Tracing." Eurographics '87, pp. 3-10.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass

import numpy as np
from numba import njit

from ao_engine.intersector import moller_trumbore

logger = logging.getLogger(__name__)

_INF: float = np.inf

# Relative growth of the cell half-width in the overlap test so that
# triangles touching a cell face are binned on both sides.
_OVERLAP_SLACK: float = 1e-6

# Traversal states
_ADVANCING = 0
_HIT_FOUND = 1
_EXHAUSTED = 2


@dataclass
class UniformGrid:
    """A static uniform grid over a triangle soup.

    Attributes
    ----------
    bounds_min : np.ndarray
        Minimum corner of the grid. Shape: (3,).
    bounds_max : np.ndarray
        Maximum corner of the grid. Shape: (3,).
    cell_width : float
        Edge length of one cubic cell.
    resolution : np.ndarray
        Cell count per axis. Shape: (3,), dtype: int64.
    cell_start : np.ndarray
        Offset of each cell's bucket in ``items``. Shape: (num_cells,).
    cell_count : np.ndarray
        Number of triangles in each cell. Shape: (num_cells,).
    items : np.ndarray
        Triangle indices, bucketed by cell. Shape: (sum(cell_count),).
    """

    bounds_min: np.ndarray
    bounds_max: np.ndarray
    cell_width: float
    resolution: np.ndarray
    cell_start: np.ndarray
    cell_count: np.ndarray
    items: np.ndarray

    @property
    def num_cells(self) -> int:
        return int(np.prod(self.resolution))

    @property
    def center(self) -> np.ndarray:
        return 0.5 * (self.bounds_min + self.bounds_max)

    def cell_items(self, cell_index: int) -> np.ndarray:
        """Triangle indices stored in one cell."""
        start = self.cell_start[cell_index]
        return self.items[start : start + self.cell_count[cell_index]]


# ===================================================================
# TRIANGLE / BOX OVERLAP: Separating Axis Test (Numba JIT)
# ===================================================================


@njit(cache=True, fastmath=False)
def _axis_separates(
    ax: float,
    ay: float,
    az: float,
    v0x: float,
    v0y: float,
    v0z: float,
    v1x: float,
    v1y: float,
    v1z: float,
    v2x: float,
    v2y: float,
    v2z: float,
    half: float,
) -> bool:
    """True if the axis separates the (box-centered) triangle from the box."""
    p0 = ax * v0x + ay * v0y + az * v0z
    p1 = ax * v1x + ay * v1y + az * v1z
    p2 = ax * v2x + ay * v2y + az * v2z
    p_min = min(p0, min(p1, p2))
    p_max = max(p0, max(p1, p2))
    r = half * (abs(ax) + abs(ay) + abs(az))
    return p_min > r or p_max < -r


@njit(cache=True, fastmath=False)
def tri_box_overlap(
    box_center: np.ndarray,
    half_width: float,
    v0: np.ndarray,
    v1: np.ndarray,
    v2: np.ndarray,
) -> bool:
    """Test whether a triangle overlaps an axis-aligned cube.

    Parameters
    ----------
    box_center : np.ndarray
        Cube center. Shape: (3,).
    half_width : float
        Half of the cube's edge length.
    v0, v1, v2 : np.ndarray
        Triangle vertices. Shape: (3,) each.

    Returns
    -------
    bool
        False only if a separating axis exists.
    """
    # Move the box to the origin
    a_x = v0[0] - box_center[0]
    a_y = v0[1] - box_center[1]
    a_z = v0[2] - box_center[2]
    b_x = v1[0] - box_center[0]
    b_y = v1[1] - box_center[1]
    b_z = v1[2] - box_center[2]
    c_x = v2[0] - box_center[0]
    c_y = v2[1] - box_center[1]
    c_z = v2[2] - box_center[2]

    # Box face normals: compare the triangle's AABB with the box
    if min(a_x, min(b_x, c_x)) > half_width or max(a_x, max(b_x, c_x)) < -half_width:
        return False
    if min(a_y, min(b_y, c_y)) > half_width or max(a_y, max(b_y, c_y)) < -half_width:
        return False
    if min(a_z, min(b_z, c_z)) > half_width or max(a_z, max(b_z, c_z)) < -half_width:
        return False

    # Triangle plane
    e0_x = b_x - a_x
    e0_y = b_y - a_y
    e0_z = b_z - a_z
    e1_x = c_x - b_x
    e1_y = c_y - b_y
    e1_z = c_z - b_z
    n_x = e0_y * e1_z - e0_z * e1_y
    n_y = e0_z * e1_x - e0_x * e1_z
    n_z = e0_x * e1_y - e0_y * e1_x
    plane_dist = n_x * a_x + n_y * a_y + n_z * a_z
    if abs(plane_dist) > half_width * (abs(n_x) + abs(n_y) + abs(n_z)):
        return False

    # Nine cross products of the box axes with the triangle edges
    e2_x = a_x - c_x
    e2_y = a_y - c_y
    e2_z = a_z - c_z
    edges = (
        (e0_x, e0_y, e0_z),
        (e1_x, e1_y, e1_z),
        (e2_x, e2_y, e2_z),
    )
    for edge in edges:
        ex, ey, ez = edge
        # X × e
        if _axis_separates(0.0, -ez, ey, a_x, a_y, a_z, b_x, b_y, b_z,
                           c_x, c_y, c_z, half_width):
            return False
        # Y × e
        if _axis_separates(ez, 0.0, -ex, a_x, a_y, a_z, b_x, b_y, b_z,
                           c_x, c_y, c_z, half_width):
            return False
        # Z × e
        if _axis_separates(-ey, ex, 0.0, a_x, a_y, a_z, b_x, b_y, b_z,
                           c_x, c_y, c_z, half_width):
            return False

    return True


# ===================================================================
# GRID CONSTRUCTION
# ===================================================================


@njit(cache=True, fastmath=False)
def _cell_range(
    box_min: np.ndarray,
    box_max: np.ndarray,
    grid_min: np.ndarray,
    cell_width: float,
    resolution: np.ndarray,
) -> tuple[int, int, int, int, int, int]:
    """Inclusive cell coordinate range covered by a box, clamped to the grid."""
    lo = np.empty(3, dtype=np.int64)
    hi = np.empty(3, dtype=np.int64)
    for axis in range(3):
        a = int(np.floor((box_min[axis] - grid_min[axis]) / cell_width))
        b = int(np.floor((box_max[axis] - grid_min[axis]) / cell_width))
        last = resolution[axis] - 1
        lo[axis] = min(max(a, 0), last)
        hi[axis] = min(max(b, 0), last)
    return lo[0], lo[1], lo[2], hi[0], hi[1], hi[2]


@njit(cache=True, fastmath=False)
def _bin_triangles(
    tri_verts: np.ndarray,
    grid_min: np.ndarray,
    cell_width: float,
    resolution: np.ndarray,
    cell_count: np.ndarray,
    cell_start: np.ndarray,
    items: np.ndarray,
    fill: bool,
) -> None:
    """Bounding-box march over every triangle, binning it into overlapped cells.

    With ``fill=False`` only ``cell_count`` is accumulated. With
    ``fill=True`` the triangle indices are written into ``items`` using
    ``cell_start`` as bucket offsets (``cell_count`` is used as a cursor
    and ends up equal to the counts again).
    """
    half = 0.5 * cell_width * (1.0 + _OVERLAP_SLACK)
    res_x = resolution[0]
    res_xy = resolution[0] * resolution[1]
    box_min = np.empty(3, dtype=np.float64)
    box_max = np.empty(3, dtype=np.float64)
    center = np.empty(3, dtype=np.float64)

    if fill:
        cell_count[:] = 0

    for i in range(tri_verts.shape[0]):
        v0 = tri_verts[i, 0]
        v1 = tri_verts[i, 1]
        v2 = tri_verts[i, 2]
        for axis in range(3):
            box_min[axis] = min(v0[axis], min(v1[axis], v2[axis]))
            box_max[axis] = max(v0[axis], max(v1[axis], v2[axis]))

        x0, y0, z0, x1, y1, z1 = _cell_range(
            box_min, box_max, grid_min, cell_width, resolution
        )
        for z in range(z0, z1 + 1):
            center[2] = grid_min[2] + (z + 0.5) * cell_width
            for y in range(y0, y1 + 1):
                center[1] = grid_min[1] + (y + 0.5) * cell_width
                for x in range(x0, x1 + 1):
                    center[0] = grid_min[0] + (x + 0.5) * cell_width
                    if not tri_box_overlap(center, half, v0, v1, v2):
                        continue
                    idx = x + y * res_x + z * res_xy
                    if fill:
                        items[cell_start[idx] + cell_count[idx]] = i
                    cell_count[idx] += 1


def _auto_cell_width(extent: np.ndarray, num_triangles: int, density: float) -> float:
    """Cell width giving roughly ``density * num_triangles`` cells."""
    max_extent = float(extent.max())
    if max_extent <= 0.0 or num_triangles == 0:
        return 1.0
    return max_extent / max(1.0, (density * num_triangles) ** (1.0 / 3.0))


def _grid_resolution(extent: np.ndarray, cell_width: float) -> np.ndarray:
    return np.maximum(np.ceil(extent / cell_width), 1.0).astype(np.int64)


def build_uniform_grid(
    tri_verts: np.ndarray,
    cell_width: float | None = None,
    density: float = 2.0,
    max_cells: int = 1 << 24,
) -> UniformGrid:
    """Build a uniform grid over a set of world-space triangles.

    Parameters
    ----------
    tri_verts : np.ndarray
        Triangle vertices. Shape: (num_triangles, 3, 3).
    cell_width : float, optional
        Edge length of a cell. Derived from the scene if None.
    density : float
        Target cells per triangle when deriving the cell width.
    max_cells : int
        Maximum total cell count. Larger grids are coarsened.

    Returns
    -------
    UniformGrid
        The populated grid.

    Raises
    ------
    ValueError
        If ``cell_width`` is not positive.
    """
    tri_verts = np.ascontiguousarray(tri_verts, dtype=np.float64)
    num_triangles = tri_verts.shape[0]

    if num_triangles > 0:
        flat = tri_verts.reshape(-1, 3)
        data_min = flat.min(axis=0)
        data_max = flat.max(axis=0)
    else:
        data_min = np.zeros(3, dtype=np.float64)
        data_max = np.zeros(3, dtype=np.float64)
    extent = data_max - data_min
    center = 0.5 * (data_min + data_max)

    if cell_width is None:
        cell_width = _auto_cell_width(extent, num_triangles, density)
    elif cell_width <= 0.0:
        raise ValueError(f"cell_width must be positive, got {cell_width}")
    cell_width = float(cell_width)

    resolution = _grid_resolution(extent, cell_width)
    total = int(np.prod(resolution))
    if total > max_cells:
        requested = cell_width
        while total > max_cells:
            cell_width *= max(1.01, (total / max_cells) ** (1.0 / 3.0))
            resolution = _grid_resolution(extent, cell_width)
            total = int(np.prod(resolution))
        logger.warning(
            "Grid of cell width %.4g exceeds %d cells; coarsened to %.4g (%s cells)",
            requested,
            max_cells,
            cell_width,
            "x".join(str(r) for r in resolution),
        )

    half_size = 0.5 * resolution.astype(np.float64) * cell_width
    bounds_min = center - half_size
    bounds_max = center + half_size

    logger.info(
        "Building uniform grid for %d triangles (cell_width=%.4g, resolution=%dx%dx%d)...",
        num_triangles,
        cell_width,
        resolution[0],
        resolution[1],
        resolution[2],
    )

    cell_count = np.zeros(total, dtype=np.int64)
    cell_start = np.zeros(total, dtype=np.int64)
    placeholder = np.empty(0, dtype=np.int64)

    # Pass 1: count
    _bin_triangles(
        tri_verts, bounds_min, cell_width, resolution,
        cell_count, cell_start, placeholder, False,
    )
    # Compaction offsets
    if total > 1:
        np.cumsum(cell_count[:-1], out=cell_start[1:])
    items = np.empty(int(cell_count.sum()), dtype=np.int64)
    # Pass 2: fill
    _bin_triangles(
        tri_verts, bounds_min, cell_width, resolution,
        cell_count, cell_start, items, True,
    )

    occupied = int(np.count_nonzero(cell_count))
    logger.info(
        "Grid built: %d cells (%d occupied), %d triangle references "
        "(%.2f per triangle)",
        total,
        occupied,
        items.shape[0],
        items.shape[0] / num_triangles if num_triangles else 0.0,
    )

    return UniformGrid(
        bounds_min=bounds_min,
        bounds_max=bounds_max,
        cell_width=cell_width,
        resolution=resolution,
        cell_start=cell_start,
        cell_count=cell_count,
        items=items,
    )


# ===================================================================
# CELL LOOKUP
# ===================================================================


def cell_coordinates(grid: UniformGrid, position: np.ndarray) -> np.ndarray | None:
    """Integer (x, y, z) cell coordinates of a position, or None if outside."""
    coords = np.floor(
        (np.asarray(position, dtype=np.float64) - grid.bounds_min) / grid.cell_width
    ).astype(np.int64)
    if np.any(coords < 0) or np.any(coords >= grid.resolution):
        return None
    return coords


def index_of_position(grid: UniformGrid, position: np.ndarray) -> int:
    """Flat cell index containing a position, or -1 outside the grid."""
    coords = cell_coordinates(grid, position)
    if coords is None:
        return -1
    res = grid.resolution
    return int(coords[0] + coords[1] * res[0] + coords[2] * res[0] * res[1])


def bounding_box_march(
    grid: UniformGrid,
    box_min: np.ndarray,
    box_max: np.ndarray,
) -> Iterator[tuple[int, np.ndarray]]:
    """Yield ``(cell_index, cell_min)`` for every cell a box spans."""
    x0, y0, z0, x1, y1, z1 = _cell_range(
        np.asarray(box_min, dtype=np.float64),
        np.asarray(box_max, dtype=np.float64),
        grid.bounds_min,
        grid.cell_width,
        grid.resolution,
    )
    res = grid.resolution
    for z in range(z0, z1 + 1):
        for y in range(y0, y1 + 1):
            for x in range(x0, x1 + 1):
                cell_min = grid.bounds_min + np.array([x, y, z]) * grid.cell_width
                yield int(x + y * res[0] + z * res[0] * res[1]), cell_min


# ===================================================================
# RAY TRAVERSAL: 3D DDA (Numba JIT)
# ===================================================================


@njit(cache=True, fastmath=False)
def _clip_ray_to_box(
    origin: np.ndarray,
    direction: np.ndarray,
    box_min: np.ndarray,
    box_max: np.ndarray,
    t_limit: float,
) -> tuple[float, float]:
    """Slab test. Returns (t_enter, t_exit); t_enter > t_exit means a miss."""
    t_enter = 0.0
    t_exit = t_limit
    for axis in range(3):
        if direction[axis] == 0.0:
            if origin[axis] < box_min[axis] or origin[axis] > box_max[axis]:
                return 1.0, 0.0
            continue
        inv = 1.0 / direction[axis]
        t1 = (box_min[axis] - origin[axis]) * inv
        t2 = (box_max[axis] - origin[axis]) * inv
        if t1 > t2:
            t1, t2 = t2, t1
        if t1 > t_enter:
            t_enter = t1
        if t2 < t_exit:
            t_exit = t2
    return t_enter, t_exit


@njit(cache=True, fastmath=False)
def _axis_setup(
    origin: float,
    direction: float,
    grid_min: float,
    cell_width: float,
    res: int,
    t_enter: float,
) -> tuple[int, int, float, float]:
    """Starting cell, step, first boundary distance and boundary spacing."""
    p = origin + t_enter * direction
    cell = int(np.floor((p - grid_min) / cell_width))
    cell = min(max(cell, 0), res - 1)
    if direction > 0.0:
        return cell, 1, (grid_min + (cell + 1) * cell_width - origin) / direction, cell_width / direction
    if direction < 0.0:
        return cell, -1, (grid_min + cell * cell_width - origin) / direction, -cell_width / direction
    return cell, 0, _INF, _INF


@njit(cache=True, fastmath=False)
def grid_nearest_hit(
    origin: np.ndarray,
    direction: np.ndarray,
    tri_verts: np.ndarray,
    grid_min: np.ndarray,
    grid_max: np.ndarray,
    cell_width: float,
    resolution: np.ndarray,
    cell_start: np.ndarray,
    cell_count: np.ndarray,
    items: np.ndarray,
    near_cull: float,
    max_distance: float,
    cull_back_faces: bool,
    epsilon: float,
) -> float:
    """Nearest hit in ``(near_cull, max_distance]`` found by walking the grid.

    The walk is a small state machine: ``ADVANCING`` tests the triangles
    of the current cell and steps to the neighbor across the closest cell
    boundary; ``HIT_FOUND`` ends the walk once the best hit lies inside the
    cells already visited; ``EXHAUSTED`` ends it when the ray leaves the
    grid or passes ``max_distance``.

    Returns
    -------
    float
        Distance of the nearest qualifying hit, or +inf.
    """
    t_enter, t_exit = _clip_ray_to_box(origin, direction, grid_min, grid_max, max_distance)
    if t_enter > t_exit:
        return _INF

    cx, sx, nx, dx = _axis_setup(origin[0], direction[0], grid_min[0], cell_width, resolution[0], t_enter)
    cy, sy, ny, dy = _axis_setup(origin[1], direction[1], grid_min[1], cell_width, resolution[1], t_enter)
    cz, sz, nz, dz = _axis_setup(origin[2], direction[2], grid_min[2], cell_width, resolution[2], t_enter)

    res_x = resolution[0]
    res_xy = resolution[0] * resolution[1]
    best = _INF
    state = _ADVANCING

    while state == _ADVANCING:
        idx = cx + cy * res_x + cz * res_xy
        start = cell_start[idx]
        for k in range(start, start + cell_count[idx]):
            tri = items[k]
            t = moller_trumbore(
                origin, direction,
                tri_verts[tri, 0], tri_verts[tri, 1], tri_verts[tri, 2],
                cull_back_faces, epsilon,
            )
            if t > near_cull and t <= max_distance and t < best:
                best = t

        cell_exit = min(nx, min(ny, nz))
        if best <= cell_exit:
            state = _HIT_FOUND
        elif cell_exit > t_exit:
            state = _EXHAUSTED
        elif nx <= ny and nx <= nz:
            cx += sx
            nx += dx
            if cx < 0 or cx >= resolution[0]:
                state = _EXHAUSTED
        elif ny <= nz:
            cy += sy
            ny += dy
            if cy < 0 or cy >= resolution[1]:
                state = _EXHAUSTED
        else:
            cz += sz
            nz += dz
            if cz < 0 or cz >= resolution[2]:
                state = _EXHAUSTED

    return best


@njit(cache=True, fastmath=False)
def soup_nearest_hit(
    origin: np.ndarray,
    direction: np.ndarray,
    tri_verts: np.ndarray,
    near_cull: float,
    max_distance: float,
    cull_back_faces: bool,
    epsilon: float,
) -> float:
    """Brute-force nearest hit in ``(near_cull, max_distance]`` over every triangle."""
    best = _INF
    for tri in range(tri_verts.shape[0]):
        t = moller_trumbore(
            origin, direction,
            tri_verts[tri, 0], tri_verts[tri, 1], tri_verts[tri, 2],
            cull_back_faces, epsilon,
        )
        if t > near_cull and t <= max_distance and t < best:
            best = t
    return best


@njit(cache=True, fastmath=False)
def traverse_cells(
    origin: np.ndarray,
    direction: np.ndarray,
    grid_min: np.ndarray,
    grid_max: np.ndarray,
    cell_width: float,
    resolution: np.ndarray,
    max_distance: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Cells pierced by a ray, front to back.

    Returns
    -------
    cells : np.ndarray
        Flat cell indices in visiting order. dtype: int64.
    exits : np.ndarray
        Ray distance at which each cell is left. dtype: float64.
    """
    capacity = resolution[0] + resolution[1] + resolution[2] + 3
    cells = np.empty(capacity, dtype=np.int64)
    exits = np.empty(capacity, dtype=np.float64)

    t_enter, t_exit = _clip_ray_to_box(origin, direction, grid_min, grid_max, max_distance)
    if t_enter > t_exit:
        return cells[:0], exits[:0]

    cx, sx, nx, dx = _axis_setup(origin[0], direction[0], grid_min[0], cell_width, resolution[0], t_enter)
    cy, sy, ny, dy = _axis_setup(origin[1], direction[1], grid_min[1], cell_width, resolution[1], t_enter)
    cz, sz, nz, dz = _axis_setup(origin[2], direction[2], grid_min[2], cell_width, resolution[2], t_enter)

    res_x = resolution[0]
    res_xy = resolution[0] * resolution[1]
    n = 0
    while n < capacity:
        cell_exit = min(nx, min(ny, nz))
        cells[n] = cx + cy * res_x + cz * res_xy
        exits[n] = min(cell_exit, t_exit)
        n += 1
        if cell_exit > t_exit:
            break
        if nx <= ny and nx <= nz:
            cx += sx
            nx += dx
            if cx < 0 or cx >= resolution[0]:
                break
        elif ny <= nz:
            cy += sy
            ny += dy
            if cy < 0 or cy >= resolution[1]:
                break
        else:
            cz += sz
            nz += dz
            if cz < 0 or cz >= resolution[2]:
                break
    return cells[:n], exits[:n]


def for_each_neighbor(
    grid: UniformGrid,
    origin: np.ndarray,
    direction: np.ndarray,
    visit_fn: Callable[[int], bool],
    max_distance: float = _INF,
) -> bool:
    """Visit the triangles bucketed in the cells along a ray, front to back.

    Parameters
    ----------
    grid : UniformGrid
        The spatial index.
    origin, direction : np.ndarray
        The ray. Shape: (3,) each.
    visit_fn : callable
        Called with each candidate triangle index. Returning True stops
        the traversal. A triangle spanning several cells may be visited
        more than once.
    max_distance : float
        Cells beyond this distance along the ray are not visited.

    Returns
    -------
    bool
        True if ``visit_fn`` stopped the traversal.
    """
    cells, _ = traverse_cells(
        np.asarray(origin, dtype=np.float64),
        np.asarray(direction, dtype=np.float64),
        grid.bounds_min,
        grid.bounds_max,
        grid.cell_width,
        grid.resolution,
        float(max_distance),
    )
    for cell in cells:
        for tri in grid.cell_items(int(cell)):
            if visit_fn(int(tri)):
                return True
    return False


def describe_grid(grid: UniformGrid) -> dict[str, float]:
    """Occupancy statistics of a grid, for logging and metadata."""
    occupied = grid.cell_count[grid.cell_count > 0]
    return {
        "num_cells": grid.num_cells,
        "occupied_cells": int(occupied.shape[0]),
        "triangle_references": int(grid.items.shape[0]),
        "max_cell_count": int(occupied.max()) if occupied.size else 0,
        "mean_occupied_count": float(occupied.mean()) if occupied.size else 0.0,
        "cell_width": float(grid.cell_width),
        "log2_cells": math.log2(grid.num_cells),
    }

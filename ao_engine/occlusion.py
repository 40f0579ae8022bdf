"""Occlusion engine: hemisphere rays from sample points into the triangle soup.

For each sample point the engine casts ``floor(sqrt(n))²`` stratified,
cosine-weighted rays around the surface normal and counts those whose
nearest hit lies in ``(near_cull, ray_distance]``. Hit counts are added
to the AO buffer slots the sample targets, together with the number of
rays cast, so ``samples / count`` is the occluded fraction of a slot.

Pipeline
--------
1. Draw the jitter offsets of a chunk of sample points from the
   primitive's random stream.
2. Trace the chunk with :func:`trace_hemisphere_rays` (parallel over
   sample points, grid traversal or brute force).
3. Merge the per-sample hit counts into the buffer with ``np.add.at``.

Notes
-----
The kernel writes only to its own output row, so sample points that share
a vertex slot never race. All accumulation happens after the kernel
returns.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numba import njit, prange

from ao_engine.constants import BakeConfig
from ao_engine.hemisphere import (
    build_orthonormal_basis,
    hemisphere_direction,
    strata_per_axis,
)
from ao_engine.sample_points import SampleSet
from ao_engine.triangle_soup import TriangleSoup
from ao_engine.uniform_grid import (
    UniformGrid,
    build_uniform_grid,
    grid_nearest_hit,
    soup_nearest_hit,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# AO Buffer
# ---------------------------------------------------------------------------


@dataclass
class AOBuffer:
    """Accumulated occlusion of one primitive.

    Attributes
    ----------
    primitive_id : str
        Owner primitive.
    mode : str
        'texture' (slot = ``y * resolution + x``) or 'vertex' (slot = vertex index).
    samples : np.ndarray
        Occluded ray count per slot. Shape: (num_slots,).
    count : np.ndarray
        Cast ray count per slot. Shape: (num_slots,).
    resolution : int or None
        Texture size; None in vertex mode.
    """

    primitive_id: str
    mode: str
    samples: np.ndarray
    count: np.ndarray
    resolution: int | None = None

    @classmethod
    def for_texture(cls, primitive_id: str, resolution: int) -> AOBuffer:
        size = resolution * resolution
        return cls(
            primitive_id=primitive_id,
            mode="texture",
            samples=np.zeros(size, dtype=np.float64),
            count=np.zeros(size, dtype=np.float64),
            resolution=resolution,
        )

    @classmethod
    def for_vertices(cls, primitive_id: str, num_vertices: int) -> AOBuffer:
        return cls(
            primitive_id=primitive_id,
            mode="vertex",
            samples=np.zeros(num_vertices, dtype=np.float64),
            count=np.zeros(num_vertices, dtype=np.float64),
        )

    @property
    def size(self) -> int:
        return int(self.samples.shape[0])

    def occlusion(self) -> np.ndarray:
        """Occluded fraction per slot; 0.0 where nothing was sampled."""
        out = np.zeros_like(self.samples)
        np.divide(self.samples, self.count, out=out, where=self.count > 0)
        return out

    def visibility(self) -> np.ndarray:
        """Unoccluded fraction per slot (1 - occlusion)."""
        return 1.0 - self.occlusion()

    def sampled_mask(self) -> np.ndarray:
        return self.count > 0

    def to_texture_image(self) -> np.ndarray:
        """Visibility as a (resolution, resolution) image, row = texel y.

        Raises
        ------
        ValueError
            If the buffer holds per-vertex data.
        """
        if self.mode != "texture" or self.resolution is None:
            raise ValueError(
                f"Buffer '{self.primitive_id}' is a {self.mode} buffer, not a texture"
            )
        return self.visibility().reshape(self.resolution, self.resolution)


# ===================================================================
# BATCH KERNEL (Numba JIT, parallel over sample points)
# ===================================================================


@njit(cache=True, parallel=True, fastmath=False)
def trace_hemisphere_rays(
    positions: np.ndarray,
    normals: np.ndarray,
    jitter: np.ndarray,
    sqrt_n: int,
    tri_verts: np.ndarray,
    use_grid: bool,
    grid_min: np.ndarray,
    grid_max: np.ndarray,
    cell_width: float,
    resolution: np.ndarray,
    cell_start: np.ndarray,
    cell_count: np.ndarray,
    items: np.ndarray,
    near_cull: float,
    ray_distance: float,
    cull_back_faces: bool,
    epsilon: float,
) -> np.ndarray:
    """Count occluded hemisphere rays for a batch of sample points.

    Parameters
    ----------
    positions : np.ndarray
        Ray origins. Shape: (M, 3).
    normals : np.ndarray
        Unit surface normals. Shape: (M, 3).
    jitter : np.ndarray
        Stratum offsets in [0, 1). Shape: (M, sqrt_n², 2).
    sqrt_n : int
        Strata per axis.
    tri_verts : np.ndarray
        Triangle soup. Shape: (N, 3, 3).
    use_grid : bool
        Walk the grid; otherwise test every triangle.
    grid_min ... items
        Uniform grid arrays (ignored when ``use_grid`` is False).
    near_cull, ray_distance : float
        Hits count only in ``(near_cull, ray_distance]``.
    cull_back_faces : bool
        Ignore back-facing triangles.
    epsilon : float
        Intersector tolerance.

    Returns
    -------
    hits : np.ndarray
        Occluded ray count per sample point. Shape: (M,), dtype: int64.
    """
    num_points = positions.shape[0]
    num_rays = sqrt_n * sqrt_n
    hits = np.zeros(num_points, dtype=np.int64)

    for i in prange(num_points):
        basis = build_orthonormal_basis(normals[i])
        direction = np.empty(3, dtype=np.float64)
        origin = positions[i]
        occluded = 0

        for j in range(num_rays):
            hemisphere_direction(basis, j, sqrt_n, jitter[i, j, 0], jitter[i, j, 1], direction)
            if use_grid:
                t = grid_nearest_hit(
                    origin, direction, tri_verts,
                    grid_min, grid_max, cell_width, resolution,
                    cell_start, cell_count, items,
                    near_cull, ray_distance, cull_back_faces, epsilon,
                )
            else:
                t = soup_nearest_hit(
                    origin, direction, tri_verts,
                    near_cull, ray_distance, cull_back_faces, epsilon,
                )
            if t < np.inf:
                occluded += 1

        hits[i] = occluded

    return hits


# ---------------------------------------------------------------------------
# Occlusion Engine
# ---------------------------------------------------------------------------


class OcclusionEngine:
    """Casts AO rays against one triangle soup.

    Parameters
    ----------
    soup : TriangleSoup
        Occluding geometry (read-only).
    config : BakeConfig
        Bake and raytracer settings.
    grid : UniformGrid, optional
        Pre-built grid over ``soup``. Built on construction when the
        'grid' accelerator is selected and none is given.
    """

    def __init__(
        self,
        soup: TriangleSoup,
        config: BakeConfig,
        grid: UniformGrid | None = None,
    ) -> None:
        self._soup = soup
        self._config = config
        self._sqrt_n = strata_per_axis(config.bake.number_rays)

        use_grid = config.raytracer.accelerator == "grid" and len(soup) > 0
        if use_grid and grid is None:
            grid_cfg = config.raytracer.grid
            grid = build_uniform_grid(
                soup.triangles,
                cell_width=grid_cfg.cell_width,
                density=grid_cfg.density,
                max_cells=grid_cfg.max_cells,
            )
        self._grid = grid if use_grid else None

        logger.info(
            "OcclusionEngine initialized: %d triangles, accelerator=%s, "
            "rays/sample=%d, ray_distance=%g, near_cull=%g",
            len(soup),
            "grid" if self._grid is not None else "brute_force",
            self.rays_per_sample,
            config.bake.ray_distance,
            config.bake.near_cull,
        )

    @property
    def grid(self) -> UniformGrid | None:
        return self._grid

    @property
    def rays_per_sample(self) -> int:
        """Rays actually cast per sample point."""
        return self._sqrt_n * self._sqrt_n

    def trace(
        self,
        positions: np.ndarray,
        normals: np.ndarray,
        rng: np.random.Generator,
        sqrt_n: int | None = None,
    ) -> np.ndarray:
        """Occluded ray counts for a batch of sample points. Shape: (M,)."""
        sqrt_n = self._sqrt_n if sqrt_n is None else sqrt_n
        num_rays = sqrt_n * sqrt_n
        positions = np.ascontiguousarray(positions, dtype=np.float64)
        normals = np.ascontiguousarray(normals, dtype=np.float64)
        num_points = positions.shape[0]
        hits = np.zeros(num_points, dtype=np.int64)
        if num_points == 0:
            return hits

        bake = self._config.bake
        rt = self._config.raytracer
        grid = self._grid
        if grid is not None:
            grid_arrays = (
                grid.bounds_min, grid.bounds_max, grid.cell_width, grid.resolution,
                grid.cell_start, grid.cell_count, grid.items,
            )
        else:
            empty_i = np.zeros(1, dtype=np.int64)
            grid_arrays = (
                np.zeros(3), np.zeros(3), 1.0, np.ones(3, dtype=np.int64),
                empty_i, empty_i, empty_i,
            )

        chunk = rt.chunk_size
        for start in range(0, num_points, chunk):
            stop = min(start + chunk, num_points)
            # Jitter is drawn in chunk order so results do not depend on threading
            jitter = rng.random((stop - start, num_rays, 2))
            if len(self._soup) == 0:
                continue
            hits[start:stop] = trace_hemisphere_rays(
                positions[start:stop],
                normals[start:stop],
                jitter,
                sqrt_n,
                self._soup.triangles,
                grid is not None,
                *grid_arrays,
                bake.near_cull,
                bake.ray_distance,
                rt.cull_back_faces,
                rt.epsilon,
            )
        return hits

    def compute_occlusion_at(
        self,
        position: np.ndarray,
        normal: np.ndarray,
        number_rays: int | None = None,
        rng: np.random.Generator | None = None,
    ) -> int:
        """Number of occluded hemisphere rays at one surface point.

        Parameters
        ----------
        position : np.ndarray
            Sample point. Shape: (3,).
        normal : np.ndarray
            Surface normal; normalized here. Shape: (3,).
        number_rays : int, optional
            Requested ray count; defaults to the configured one.
        rng : np.random.Generator, optional
            Jitter source; seeded from the bake seed if None.

        Returns
        -------
        int
            Hits in ``[0, floor(sqrt(number_rays))²]``.

        Raises
        ------
        ValueError
            If the normal has zero length.
        """
        normal = np.asarray(normal, dtype=np.float64)
        length = np.linalg.norm(normal)
        if length == 0.0:
            raise ValueError("Cannot build a hemisphere around a zero-length normal.")
        sqrt_n = self._sqrt_n if number_rays is None else strata_per_axis(number_rays)
        if rng is None:
            rng = np.random.default_rng(self._config.bake.seed)
        hits = self.trace(
            np.asarray(position, dtype=np.float64).reshape(1, 3),
            (normal / length).reshape(1, 3),
            rng,
            sqrt_n=sqrt_n,
        )
        return int(hits[0])

    def accumulate(
        self,
        sample_set: SampleSet,
        buffer: AOBuffer,
        rng: np.random.Generator | None = None,
    ) -> np.ndarray:
        """Trace a primitive's sample points and add the results to its buffer.

        Every target slot of every sample receives the sample's hit count
        in ``samples`` and the rays cast in ``count``.

        Returns
        -------
        hits : np.ndarray
            Per-sample occluded ray counts. Shape: (M,).
        """
        if rng is None:
            rng = np.random.default_rng(self._config.bake.seed)
        hits = self.trace(sample_set.positions, sample_set.normals, rng)
        rays = float(self.rays_per_sample)

        for column in range(sample_set.targets.shape[1]):
            slots = sample_set.targets[:, column]
            used = slots >= 0
            if not np.any(used):
                continue
            np.add.at(buffer.samples, slots[used], hits[used].astype(np.float64))
            np.add.at(buffer.count, slots[used], rays)

        logger.debug(
            "Primitive '%s': %d samples traced, %d of %d rays occluded",
            buffer.primitive_id,
            len(sample_set),
            int(hits.sum()),
            len(sample_set) * self.rays_per_sample,
        )
        return hits


def compute_buffer_stats(buffers: list[AOBuffer]) -> dict[str, float]:
    """Summary statistics over the sampled slots of all buffers."""
    total = sum(b.size for b in buffers)
    if total == 0:
        return {
            "mean_occlusion": 0.0,
            "fully_occluded_fraction": 0.0,
            "unoccluded_fraction": 0.0,
            "unsampled_fraction": 1.0,
        }

    sampled = [b.occlusion()[b.sampled_mask()] for b in buffers]
    values = np.concatenate(sampled) if sampled else np.empty(0)
    num_sampled = values.shape[0]
    if num_sampled == 0:
        return {
            "mean_occlusion": 0.0,
            "fully_occluded_fraction": 0.0,
            "unoccluded_fraction": 0.0,
            "unsampled_fraction": 1.0,
        }

    return {
        "mean_occlusion": float(values.mean()),
        "fully_occluded_fraction": float(np.sum(values == 1.0)) / num_sampled,
        "unoccluded_fraction": float(np.sum(values == 0.0)) / num_sampled,
        "unsampled_fraction": 1.0 - num_sampled / total,
    }

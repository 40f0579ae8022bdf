"""Bake orchestration: scene → raytracer scene → AO buffers.

A bake runs in two phases:

1. :func:`generate_raytracer_scene` validates the configuration, builds
   the triangle soup and its grid, generates the sample points of every
   primitive and allocates its AO buffer. Every configuration problem is
   raised here, before a single ray is cast.
2. :func:`generate_occlusion_data` traces each primitive's sample points
   and fills its buffer.

:func:`bake_ambient_occlusion` runs both and wraps the buffers in a
:class:`BakeResult`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from ao_engine.constants import (
    TRIANGLES_MODE,
    BakeConfig,
    ConfigurationError,
    config_from_dict,
    validate_config,
)
from ao_engine.hemisphere import effective_ray_count
from ao_engine.occlusion import AOBuffer, OcclusionEngine, compute_buffer_stats
from ao_engine.sample_points import SampleSet, generate_sample_set
from ao_engine.triangle_soup import TriangleSoup, build_triangle_soup
from ao_engine.uniform_grid import describe_grid
from scene_ingestion.scene_graph import Scene, SceneCollection, ScenePrimitive, resolve_scene

logger = logging.getLogger(__name__)


@dataclass
class PrimitiveEntry:
    """One row of the primitive table."""

    handle: int
    primitive: ScenePrimitive
    sample_set: SampleSet
    buffer: AOBuffer

    @property
    def primitive_id(self) -> str:
        return self.primitive.primitive_id


@dataclass
class RaytracerScene:
    """Everything needed to trace one bake.

    Attributes
    ----------
    soup : TriangleSoup
        World-space occluders.
    engine : OcclusionEngine
        Ray caster over ``soup`` (owns the grid).
    config : BakeConfig
        Validated configuration.
    entries : list[PrimitiveEntry]
        Primitive table, indexed by handle.
    handles : dict[str, int]
        Primitive id → handle.
    """

    soup: TriangleSoup
    engine: OcclusionEngine
    config: BakeConfig
    entries: list[PrimitiveEntry] = field(default_factory=list)
    handles: dict[str, int] = field(default_factory=dict)

    def entry(self, primitive_id: str) -> PrimitiveEntry:
        return self.entries[self.handles[primitive_id]]

    @property
    def num_samples(self) -> int:
        return sum(len(e.sample_set) for e in self.entries)


@dataclass
class BakeResult:
    """Output of a bake.

    Attributes
    ----------
    buffers : dict[str, AOBuffer]
        AO buffer per primitive id.
    resolution : int or None
        Texture size (texture mode) or None (vertex mode).
    stats : dict[str, float]
        Mean occlusion and slot fractions over all buffers.
    metadata : dict
        Settings and build statistics of the bake.
    """

    buffers: dict[str, AOBuffer]
    resolution: int | None
    stats: dict[str, float]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def mode(self) -> str:
        return "texture" if self.resolution is not None else "vertex"


def _coerce_config(config: BakeConfig | dict | None) -> BakeConfig:
    if config is None:
        config = BakeConfig()
    elif isinstance(config, dict):
        return config_from_dict(config)
    validate_config(config)
    return config


def generate_raytracer_scene(
    scene: Scene,
    config: BakeConfig | dict | None = None,
) -> RaytracerScene:
    """Prepare a scene for tracing.

    Parameters
    ----------
    scene : Scene
        Flattened scene to bake.
    config : BakeConfig or dict, optional
        Bake configuration; defaults apply when omitted.

    Returns
    -------
    RaytracerScene
        Soup, grid, sample sets and empty buffers.

    Raises
    ------
    ConfigurationError
        On invalid settings, duplicate primitive ids, or primitives that
        lack the attributes the bake mode needs.
    """
    config = _coerce_config(config)
    bake = config.bake
    primitives = list(scene.primitives())

    soup = build_triangle_soup(
        primitives,
        ground_plane=bake.ground_plane,
        ray_distance=bake.ray_distance,
        near_cull=bake.near_cull,
    )

    entries: list[PrimitiveEntry] = []
    handles: dict[str, int] = {}
    for prim in primitives:
        if prim.mode != TRIANGLES_MODE:
            continue
        if prim.primitive_id in handles:
            raise ConfigurationError(f"Duplicate primitive id '{prim.primitive_id}'")

        sample_set = generate_sample_set(prim, bake)
        if bake.to_texture:
            buffer = AOBuffer.for_texture(prim.primitive_id, bake.resolution)
        else:
            buffer = AOBuffer.for_vertices(prim.primitive_id, prim.num_vertices)

        handles[prim.primitive_id] = len(entries)
        entries.append(
            PrimitiveEntry(
                handle=len(entries),
                primitive=prim,
                sample_set=sample_set,
                buffer=buffer,
            )
        )

    engine = OcclusionEngine(soup, config)
    raytracer_scene = RaytracerScene(
        soup=soup, engine=engine, config=config, entries=entries, handles=handles
    )
    logger.info(
        "Raytracer scene '%s' ready: %d primitives, %d sample points (%s mode)",
        scene.scene_id,
        len(entries),
        raytracer_scene.num_samples,
        bake.mode,
    )
    return raytracer_scene


def generate_occlusion_data(raytracer_scene: RaytracerScene) -> dict[str, AOBuffer]:
    """Trace every primitive of a prepared scene into its AO buffer.

    Each primitive draws its jitter from a generator seeded with
    ``(seed, handle)``, so a primitive's result does not depend on the
    order or number of other primitives traced before it.
    """
    seed = raytracer_scene.config.bake.seed
    engine = raytracer_scene.engine
    buffers: dict[str, AOBuffer] = {}
    for entry in raytracer_scene.entries:
        rng = np.random.default_rng([seed, entry.handle])
        engine.accumulate(entry.sample_set, entry.buffer, rng=rng)
        buffers[entry.primitive_id] = entry.buffer
    return buffers


def bake_ambient_occlusion(
    scene_source: Scene | SceneCollection,
    config: BakeConfig | dict | None = None,
) -> BakeResult:
    """Bake ambient occlusion for a scene.

    Parameters
    ----------
    scene_source : Scene or SceneCollection
        Scene to bake, or a collection resolved with ``config.bake.scene``.
    config : BakeConfig or dict, optional
        Bake configuration; defaults apply when omitted.

    Returns
    -------
    BakeResult
        AO buffers keyed by primitive id with summary statistics.
    """
    config = _coerce_config(config)
    scene = resolve_scene(scene_source, config.bake.scene)

    t0 = time.perf_counter()
    raytracer_scene = generate_raytracer_scene(scene, config)
    t_prepare = time.perf_counter() - t0

    t0 = time.perf_counter()
    buffers = generate_occlusion_data(raytracer_scene)
    t_trace = time.perf_counter() - t0

    stats = compute_buffer_stats(list(buffers.values()))
    grid = raytracer_scene.engine.grid
    metadata: dict[str, Any] = {
        "scene_id": scene.scene_id,
        "mode": config.bake.mode,
        "resolution": config.bake.resolution if config.bake.to_texture else None,
        "number_rays": config.bake.number_rays,
        "effective_rays": effective_ray_count(config.bake.number_rays),
        "ray_distance": config.bake.ray_distance,
        "near_cull": config.bake.near_cull,
        "ground_plane": config.bake.ground_plane,
        "seed": config.bake.seed,
        "accelerator": "grid" if grid is not None else "brute_force",
        "num_primitives": len(raytracer_scene.entries),
        "num_samples": raytracer_scene.num_samples,
        "soup": raytracer_scene.soup.metadata,
        "grid": describe_grid(grid) if grid is not None else None,
        "prepare_time_s": t_prepare,
        "trace_time_s": t_trace,
    }

    logger.info(
        "AO bake complete: %d buffers, mean occlusion=%.3f, fully occluded=%.1f%%, "
        "unoccluded=%.1f%% (prepare %.2fs, trace %.2fs)",
        len(buffers),
        stats["mean_occlusion"],
        stats["fully_occluded_fraction"] * 100.0,
        stats["unoccluded_fraction"] * 100.0,
        t_prepare,
        t_trace,
    )

    return BakeResult(
        buffers=buffers,
        resolution=config.bake.resolution if config.bake.to_texture else None,
        stats=stats,
        metadata=metadata,
    )

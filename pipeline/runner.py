"""Bake Runner — end-to-end AO bake with persistence and plots.

Orchestrates one bake:
1. Resolve the scene (direct scene, collection, or preset name)
2. Prepare the raytracer scene (soup → grid → sample points)
3. Trace every primitive into its AO buffer
4. Save raw buffers and render plots on request
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from ao_engine.bake import BakeResult, bake_ambient_occlusion
from ao_engine.constants import BakeConfig, log_platform_info, validate_config
from scene_ingestion.scene_graph import Scene, SceneCollection, resolve_scene
from scene_ingestion.synthetic_scenes import build_preset

logger = logging.getLogger(__name__)


class BakeRunner:
    """Runs a configured AO bake.

    Parameters
    ----------
    config : BakeConfig
        Validated bake configuration.
    """

    def __init__(self, config: BakeConfig) -> None:
        validate_config(config)
        self._config = config
        logger.info(
            "BakeRunner initialized: mode=%s, rays=%d, ray_distance=%g, ground_plane=%s",
            config.bake.mode,
            config.bake.number_rays,
            config.bake.ray_distance,
            config.bake.ground_plane,
        )

    @property
    def config(self) -> BakeConfig:
        return self._config

    def run(
        self,
        scene_source: Scene | SceneCollection | str,
        output_dir: Path | str | None = None,
        save_data: bool = False,
        plots: bool = False,
    ) -> BakeResult:
        """Execute the bake.

        Parameters
        ----------
        scene_source : Scene, SceneCollection or str
            Scene to bake; a string names a preset scene.
        output_dir : Path or str, optional
            Where results and plots go. Required for ``save_data``/``plots``.
        save_data : bool
            Persist the raw AO buffers.
        plots : bool
            Render AO textures / vertex scatter plots.

        Returns
        -------
        BakeResult
            AO buffers and statistics.
        """
        if isinstance(scene_source, str):
            scene_source = build_preset(scene_source)
        scene = resolve_scene(scene_source, self._config.bake.scene)

        log_platform_info()
        wall_start = time.perf_counter()
        result = bake_ambient_occlusion(scene, self._config)
        wall_elapsed = time.perf_counter() - wall_start
        result.metadata["wall_time_s"] = wall_elapsed

        num_samples = result.metadata.get("num_samples", 0)
        rays = num_samples * result.metadata.get("effective_rays", 0)
        logger.info(
            "Bake complete: %.2f seconds wall time (%d sample points, %.0f rays/s)",
            wall_elapsed,
            num_samples,
            rays / wall_elapsed if wall_elapsed > 0 else 0.0,
        )

        if (save_data or plots) and output_dir is None:
            logger.warning("No output directory given; skipping save and plots.")
            return result

        if save_data:
            from pipeline.io_manager import save_results

            save_results(output_dir, result)

        if plots:
            from visualization.plotter import generate_all_plots

            generate_all_plots(result, scene, output_dir)

        return result

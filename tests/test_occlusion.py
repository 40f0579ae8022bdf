"""Tests for the occlusion engine and AO buffers.

Analytical cases
----------------
- A point inside a closed tetrahedron is occluded in every direction.
- At the center of the missing base of an open tetrahedron, rays into the
  upper half space always hit, rays into the lower half space never do.
- An isolated plane never occludes itself.
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from ao_engine.constants import config_from_dict
from ao_engine.occlusion import AOBuffer, OcclusionEngine, compute_buffer_stats
from ao_engine.sample_points import SampleSet
from ao_engine.triangle_soup import TriangleSoup, build_triangle_soup
from scene_ingestion.synthetic_scenes import unit_square_scene

AXIS_NORMALS = [
    [1.0, 0.0, 0.0],
    [-1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, -1.0, 0.0],
    [0.0, 0.0, 1.0],
    [0.0, 0.0, -1.0],
]


def _soup(triangles: np.ndarray) -> TriangleSoup:
    triangles = np.array(triangles, dtype=np.float64)
    flat = triangles.reshape(-1, 3)
    if flat.shape[0] == 0:
        flat = np.zeros((1, 3))
    return TriangleSoup(
        triangles=triangles,
        bounds_min=flat.min(axis=0),
        bounds_max=flat.max(axis=0),
        num_scene_triangles=triangles.shape[0],
    )


def _with_accelerator(config, accelerator: str):
    return dataclasses.replace(
        config, raytracer=dataclasses.replace(config.raytracer, accelerator=accelerator)
    )


# ===================================================================
# TETRAHEDRON CASES
# ===================================================================


class TestTetrahedron:

    @pytest.mark.parametrize("accelerator", ["grid", "brute_force"])
    @pytest.mark.parametrize("normal", AXIS_NORMALS)
    def test_closed_fully_occluded(
        self, closed_tetrahedron, tetrahedron_config, accelerator, normal
    ) -> None:
        engine = OcclusionEngine(
            _soup(closed_tetrahedron), _with_accelerator(tetrahedron_config, accelerator)
        )

        hits = engine.compute_occlusion_at(np.zeros(3), np.array(normal), number_rays=16)

        assert hits == 16

    @pytest.mark.parametrize("accelerator", ["grid", "brute_force"])
    def test_open_upward_fully_occluded(
        self, open_tetrahedron, tetrahedron_config, accelerator
    ) -> None:
        engine = OcclusionEngine(
            _soup(open_tetrahedron), _with_accelerator(tetrahedron_config, accelerator)
        )

        hits = engine.compute_occlusion_at(
            np.array([0.0, -1.0, 0.0]), np.array([0.0, 1.0, 0.0]), number_rays=16
        )

        assert hits == 16

    @pytest.mark.parametrize("accelerator", ["grid", "brute_force"])
    def test_open_downward_unoccluded(
        self, open_tetrahedron, tetrahedron_config, accelerator
    ) -> None:
        engine = OcclusionEngine(
            _soup(open_tetrahedron), _with_accelerator(tetrahedron_config, accelerator)
        )

        hits = engine.compute_occlusion_at(
            np.array([0.0, -1.0, 0.0]), np.array([0.0, -1.0, 0.0]), number_rays=16
        )

        assert hits == 0

    @pytest.mark.parametrize("accelerator", ["grid", "brute_force"])
    def test_open_sideways_half_occluded(
        self, open_tetrahedron, tetrahedron_config, accelerator
    ) -> None:
        engine = OcclusionEngine(
            _soup(open_tetrahedron), _with_accelerator(tetrahedron_config, accelerator)
        )

        hits = engine.compute_occlusion_at(
            np.array([0.0, -1.0, 0.0]), np.array([1.0, 0.0, 0.0]), number_rays=16
        )

        assert 6 <= hits <= 10

    def test_ray_count_rounded_down(self, closed_tetrahedron, tetrahedron_config) -> None:
        engine = OcclusionEngine(_soup(closed_tetrahedron), tetrahedron_config)

        assert engine.compute_occlusion_at(np.zeros(3), np.array([0.0, 1.0, 0.0]), 20) == 16

    def test_short_rays_escape(self, closed_tetrahedron, tetrahedron_config) -> None:
        """With a ray distance below the inradius nothing occludes."""
        config = dataclasses.replace(
            tetrahedron_config,
            bake=dataclasses.replace(tetrahedron_config.bake, ray_distance=0.1),
        )
        engine = OcclusionEngine(_soup(closed_tetrahedron), config)

        assert engine.compute_occlusion_at(np.zeros(3), np.array([0.0, 1.0, 0.0])) == 0

    def test_unnormalized_normal_accepted(self, closed_tetrahedron, tetrahedron_config) -> None:
        engine = OcclusionEngine(_soup(closed_tetrahedron), tetrahedron_config)

        assert engine.compute_occlusion_at(np.zeros(3), np.array([0.0, 5.0, 0.0])) == 16

    def test_zero_normal_rejected(self, closed_tetrahedron, tetrahedron_config) -> None:
        engine = OcclusionEngine(_soup(closed_tetrahedron), tetrahedron_config)

        with pytest.raises(ValueError, match="zero-length"):
            engine.compute_occlusion_at(np.zeros(3), np.zeros(3))


# ===================================================================
# AO BUFFER
# ===================================================================


class TestAOBuffer:

    def test_occlusion_and_visibility_sum_to_one(self) -> None:
        buf = AOBuffer.for_vertices("p", 4)
        buf.samples[:] = [0.0, 4.0, 16.0, 0.0]
        buf.count[:] = [16.0, 16.0, 16.0, 0.0]

        np.testing.assert_allclose(buf.occlusion(), [0.0, 0.25, 1.0, 0.0])
        np.testing.assert_allclose(buf.occlusion() + buf.visibility(), 1.0)

    def test_zero_count_reads_zero(self) -> None:
        buf = AOBuffer.for_texture("p", 4)

        occ = buf.occlusion()

        assert not np.any(np.isnan(occ))
        np.testing.assert_array_equal(occ, 0.0)
        np.testing.assert_array_equal(buf.visibility(), 1.0)

    def test_texture_image_layout(self) -> None:
        buf = AOBuffer.for_texture("p", 4)
        # texel (x=1, y=2)
        buf.samples[1 + 2 * 4] = 8.0
        buf.count[1 + 2 * 4] = 16.0

        image = buf.to_texture_image()

        assert image.shape == (4, 4)
        assert image[2, 1] == pytest.approx(0.5)
        assert image.sum() == pytest.approx(15.5)

    def test_vertex_buffer_has_no_image(self) -> None:
        with pytest.raises(ValueError, match="not a texture"):
            AOBuffer.for_vertices("p", 3).to_texture_image()


# ===================================================================
# ACCUMULATION
# ===================================================================


class TestAccumulate:

    def test_shared_vertex_slots_merge(self, closed_tetrahedron, tetrahedron_config) -> None:
        """Two samples targeting the same vertex both land in its slot."""
        engine = OcclusionEngine(_soup(closed_tetrahedron), tetrahedron_config)
        samples = SampleSet(
            positions=np.zeros((2, 3)),
            normals=np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0]]),
            targets=np.array([[0, 1, 2], [0, 2, 3]], dtype=np.int64),
        )
        buf = AOBuffer.for_vertices("tet", 4)

        hits = engine.accumulate(samples, buf, rng=np.random.default_rng(0))

        np.testing.assert_array_equal(hits, [16, 16])
        np.testing.assert_array_equal(buf.count, [32.0, 16.0, 32.0, 16.0])
        np.testing.assert_array_equal(buf.samples, buf.count)
        np.testing.assert_array_equal(buf.occlusion(), 1.0)

    def test_unused_target_columns_ignored(self, open_tetrahedron, tetrahedron_config) -> None:
        engine = OcclusionEngine(_soup(open_tetrahedron), tetrahedron_config)
        samples = SampleSet(
            positions=np.array([[0.0, -1.0, 0.0]]),
            normals=np.array([[0.0, -1.0, 0.0]]),
            targets=np.array([[5, -1, -1]], dtype=np.int64),
        )
        buf = AOBuffer.for_texture("t", 4)

        engine.accumulate(samples, buf)

        assert buf.count[5] == 16.0
        assert buf.samples[5] == 0.0
        assert buf.count.sum() == 16.0

    def test_isolated_plane_unoccluded(self) -> None:
        scene = unit_square_scene()
        config = config_from_dict({"bake": {"resolution": 10}})
        engine = OcclusionEngine(build_triangle_soup(scene.primitives()), config)
        samples = SampleSet(
            positions=np.array([[1.0, 1.0, 0.0], [0.5, 1.5, 0.0]]),
            normals=np.array([[0.0, 0.0, 1.0], [0.0, 0.0, -1.0]]),
            targets=np.array([[0, -1, -1], [1, -1, -1]], dtype=np.int64),
        )
        buf = AOBuffer.for_texture("square", 10)

        hits = engine.accumulate(samples, buf)

        np.testing.assert_array_equal(hits, [0, 0])

    def test_chunking_does_not_change_results(self, open_tetrahedron, tetrahedron_config) -> None:
        rng = np.random.default_rng(11)
        normals = rng.normal(size=(40, 3))
        normals /= np.linalg.norm(normals, axis=1, keepdims=True)
        positions = np.tile([0.0, -0.5, 0.0], (40, 1))

        small = dataclasses.replace(
            tetrahedron_config,
            raytracer=dataclasses.replace(tetrahedron_config.raytracer, chunk_size=7),
        )
        hits_big = OcclusionEngine(_soup(open_tetrahedron), tetrahedron_config).trace(
            positions, normals, np.random.default_rng(5)
        )
        hits_small = OcclusionEngine(_soup(open_tetrahedron), small).trace(
            positions, normals, np.random.default_rng(5)
        )

        # Jitter is drawn chunk by chunk from one stream in sample order
        np.testing.assert_array_equal(hits_big, hits_small)

    def test_grid_and_brute_force_agree(self, open_tetrahedron, tetrahedron_config) -> None:
        rng = np.random.default_rng(3)
        normals = rng.normal(size=(64, 3))
        normals /= np.linalg.norm(normals, axis=1, keepdims=True)
        positions = rng.uniform(-0.3, 0.3, size=(64, 3))

        grid_engine = OcclusionEngine(_soup(open_tetrahedron), tetrahedron_config)
        brute_engine = OcclusionEngine(
            _soup(open_tetrahedron), _with_accelerator(tetrahedron_config, "brute_force")
        )

        assert grid_engine.grid is not None
        assert brute_engine.grid is None
        np.testing.assert_array_equal(
            grid_engine.trace(positions, normals, np.random.default_rng(9)),
            brute_engine.trace(positions, normals, np.random.default_rng(9)),
        )

    def test_empty_soup_never_occludes(self, tetrahedron_config) -> None:
        engine = OcclusionEngine(_soup(np.empty((0, 3, 3))), tetrahedron_config)

        assert engine.grid is None
        assert engine.compute_occlusion_at(np.zeros(3), np.array([0.0, 1.0, 0.0])) == 0


class TestBufferStats:

    def test_stats(self) -> None:
        a = AOBuffer.for_vertices("a", 4)
        a.samples[:] = [16.0, 0.0, 8.0, 0.0]
        a.count[:] = [16.0, 16.0, 16.0, 0.0]

        stats = compute_buffer_stats([a])

        assert stats["mean_occlusion"] == pytest.approx(0.5)
        assert stats["fully_occluded_fraction"] == pytest.approx(1 / 3)
        assert stats["unoccluded_fraction"] == pytest.approx(1 / 3)
        assert stats["unsampled_fraction"] == pytest.approx(0.25)

    def test_no_buffers(self) -> None:
        assert compute_buffer_stats([])["unsampled_fraction"] == 1.0

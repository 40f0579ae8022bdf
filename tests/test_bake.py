"""End-to-end bake tests on the synthetic scenes."""

from __future__ import annotations

import numpy as np
import pytest

from ao_engine.bake import (
    bake_ambient_occlusion,
    generate_occlusion_data,
    generate_raytracer_scene,
)
from ao_engine.constants import ConfigurationError, config_from_dict
from scene_ingestion.scene_graph import Scene, SceneCollection, ScenePrimitive
from scene_ingestion.synthetic_scenes import (
    build_preset,
    cube_over_ground_scene,
    preset_collection,
    unit_square_scene,
)

VERTEX_MODE = {"to_texture": False, "to_vertex": True}


def _downward_quad(primitive_id: str = "ceiling") -> ScenePrimitive:
    """Unit quad in y=0 facing -Y with UVs over the whole texture."""
    positions = np.array(
        [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 0.0, 1.0], [0.0, 0.0, 1.0]]
    )
    return ScenePrimitive(
        primitive_id=primitive_id,
        indices=np.array([0, 1, 2, 0, 2, 3]),
        positions=positions,
        normals=np.array([[0.0, -1.0, 0.0]] * 4),
        uvs=positions[:, [0, 2]],
    )


# ===================================================================
# TEXTURE MODE
# ===================================================================


class TestUnitSquareBake:

    @pytest.fixture
    def result(self):
        return bake_ambient_occlusion(unit_square_scene(), {"bake": {"resolution": 10}})

    def test_single_buffer(self, result) -> None:
        assert list(result.buffers) == ["quad/square"]
        assert result.mode == "texture"
        assert result.resolution == 10

    def test_sampled_texels(self, result) -> None:
        buf = result.buffers["quad/square"]

        assert buf.size == 100
        assert int(buf.sampled_mask().sum()) == 36

    def test_diagonal_texels_sampled_twice(self, result) -> None:
        buf = result.buffers["quad/square"]
        diagonal = [i + i * 10 for i in range(2, 8)]

        np.testing.assert_array_equal(buf.count[diagonal], 32.0)
        assert buf.count[23] == 16.0

    def test_flat_quad_unoccluded(self, result) -> None:
        buf = result.buffers["quad/square"]

        np.testing.assert_array_equal(buf.occlusion(), 0.0)
        np.testing.assert_array_equal(buf.to_texture_image(), 1.0)

    def test_stats_and_metadata(self, result) -> None:
        assert result.stats["unsampled_fraction"] == pytest.approx(0.64)
        assert result.stats["unoccluded_fraction"] == 1.0
        assert result.metadata["scene_id"] == "unit_square"
        assert result.metadata["num_samples"] == 42
        assert result.metadata["effective_rays"] == 16
        assert result.metadata["accelerator"] == "grid"


class TestGroundPlane:

    def test_ground_plane_occludes_downward_faces(self) -> None:
        scene = Scene("ceiling", items=[_downward_quad()])

        with_plane = bake_ambient_occlusion(
            scene, {"bake": {"resolution": 8, "ground_plane": True}}
        )
        without = bake_ambient_occlusion(scene, {"bake": {"resolution": 8}})

        occ = with_plane.buffers["ceiling"].occlusion()
        mask = with_plane.buffers["ceiling"].sampled_mask()
        assert mask.sum() > 0
        assert occ[mask].mean() > 0.9
        np.testing.assert_array_equal(without.buffers["ceiling"].occlusion(), 0.0)
        assert with_plane.metadata["soup"]["ground_plane"] is True

    def test_cube_darkens_ground(self) -> None:
        result = bake_ambient_occlusion(
            cube_over_ground_scene(), {"bake": {"resolution": 32}}
        )

        ground = result.buffers["ground/ground"].to_texture_image()
        # Texture rows follow v (= world z), columns follow u (= world x)
        center = ground[16, 16]
        corner = ground[1, 1]
        assert center < corner
        assert corner == pytest.approx(1.0)


class TestReproducibility:

    def test_same_seed_same_buffers(self) -> None:
        config = {"bake": {"resolution": 16, "seed": 7}}

        a = bake_ambient_occlusion(cube_over_ground_scene(), config)
        b = bake_ambient_occlusion(cube_over_ground_scene(), config)

        assert a.buffers.keys() == b.buffers.keys()
        for key in a.buffers:
            assert np.array_equal(a.buffers[key].samples, b.buffers[key].samples)
            assert np.array_equal(a.buffers[key].count, b.buffers[key].count)

    def test_grid_matches_brute_force(self) -> None:
        grid = bake_ambient_occlusion(cube_over_ground_scene(), {"bake": {"resolution": 16}})
        brute = bake_ambient_occlusion(
            cube_over_ground_scene(),
            {"bake": {"resolution": 16}, "raytracer": {"accelerator": "brute_force"}},
        )

        for key in grid.buffers:
            np.testing.assert_array_equal(grid.buffers[key].samples, brute.buffers[key].samples)


# ===================================================================
# VERTEX MODE
# ===================================================================


class TestVertexBake:

    def test_convex_solid_unoccluded(self) -> None:
        result = bake_ambient_occlusion(build_preset("tetrahedron"), {"bake": VERTEX_MODE})

        buf = result.buffers["tetrahedron/tetrahedron"]
        assert result.mode == "vertex"
        assert result.resolution is None
        assert buf.size == 12
        np.testing.assert_array_equal(buf.count, 16.0)
        np.testing.assert_array_equal(buf.occlusion(), 0.0)

    def test_open_solid_still_unoccluded(self) -> None:
        """Removing the bottom face changes nothing for outward normals."""
        result = bake_ambient_occlusion(
            build_preset("open_tetrahedron"), {"bake": VERTEX_MODE}
        )

        buf = result.buffers["open_tetrahedron/tetrahedron"]
        assert buf.size == 9
        np.testing.assert_array_equal(buf.occlusion(), 0.0)

    def test_cube_bottom_vertices_darker(self) -> None:
        result = bake_ambient_occlusion(
            cube_over_ground_scene(), {"bake": dict(VERTEX_MODE, ray_distance=1.0)}
        )
        buf = result.buffers["cube/cube"]

        # Face order of the cube mesh: +X, -X, +Y, -Y, +Z, -Z; 4 vertices each
        top = buf.occlusion()[8:12]
        bottom = buf.occlusion()[12:16]
        assert bottom.mean() > top.mean()


# ===================================================================
# PREPARATION AND ERRORS
# ===================================================================


class TestPreparation:

    def test_raytracer_scene_tables(self) -> None:
        rs = generate_raytracer_scene(cube_over_ground_scene(), {"bake": {"resolution": 8}})

        assert [e.handle for e in rs.entries] == [0, 1]
        assert rs.entry("cube/cube").handle == 1
        assert len(rs.soup) == 14
        assert rs.num_samples > 0

    def test_primitive_result_independent_of_others(self) -> None:
        """A primitive's buffer depends only on the seed and its handle."""
        config = {"bake": {"resolution": 8, "ground_plane": True}}
        alone = generate_raytracer_scene(Scene("s", items=[_downward_quad("a")]), config)
        pair = generate_raytracer_scene(
            Scene("s", items=[_downward_quad("a"), _downward_quad("b")]), config
        )

        buf_alone = generate_occlusion_data(alone)["a"]
        buf_pair = generate_occlusion_data(pair)["a"]

        assert buf_alone.samples.sum() > 0
        np.testing.assert_array_equal(buf_alone.samples, buf_pair.samples)
        np.testing.assert_array_equal(buf_alone.count, buf_pair.count)

    def test_collection_uses_configured_scene(self) -> None:
        result = bake_ambient_occlusion(
            preset_collection(), {"bake": {"resolution": 10, "scene": "unit_square"}}
        )

        assert result.metadata["scene_id"] == "unit_square"

    def test_missing_uvs_rejected(self) -> None:
        prim = ScenePrimitive(
            primitive_id="bare",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
        )

        with pytest.raises(ConfigurationError, match="TEXCOORD_0"):
            bake_ambient_occlusion(Scene("bare", items=[prim]))

    def test_missing_uvs_fine_in_vertex_mode(self) -> None:
        prim = ScenePrimitive(
            primitive_id="bare",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
        )

        result = bake_ambient_occlusion(Scene("bare", items=[prim]), {"bake": VERTEX_MODE})

        assert result.buffers["bare"].size == 3

    def test_empty_collection_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            bake_ambient_occlusion(SceneCollection(scenes={}))

    def test_duplicate_ids_rejected(self) -> None:
        scene = Scene("dup", items=[_downward_quad("x"), _downward_quad("x")])

        with pytest.raises(ConfigurationError, match="Duplicate"):
            bake_ambient_occlusion(scene, {"bake": {"resolution": 4}})

    def test_invalid_config_rejected(self) -> None:
        with pytest.raises(ConfigurationError):
            bake_ambient_occlusion(unit_square_scene(), {"bake": {"number_rays": 0}})

    def test_validated_config_object_accepted(self) -> None:
        config = config_from_dict({"bake": {"resolution": 4, "number_rays": 4}})

        result = bake_ambient_occlusion(unit_square_scene(), config)

        assert result.metadata["effective_rays"] == 4

"""Tests for texel (pixel-march) and vertex sample generation."""

from __future__ import annotations

import numpy as np
import pytest

from ao_engine.constants import BakeSettings, ConfigurationError
from ao_engine.sample_points import (
    SampleSet,
    barycentric_2d,
    flatten_triangle,
    generate_sample_set,
    texel_samples,
    vertex_samples,
)
from scene_ingestion.scene_graph import ScenePrimitive
from scene_ingestion.synthetic_scenes import unit_square_scene


@pytest.fixture
def unit_square() -> ScenePrimitive:
    """Unit quad drawn through a node scaled by 2."""
    return unit_square_scene().items[0]


@pytest.fixture
def right_triangle() -> ScenePrimitive:
    """One triangle in the y=0 plane with flat +Y normals and no UVs."""
    return ScenePrimitive(
        primitive_id="right",
        indices=np.array([0, 1, 2]),
        positions=np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 3.0], [3.0, 0.0, 0.0]]),
        normals=np.array([[0.0, 1.0, 0.0]] * 3),
    )


class TestBarycentric:

    def test_corners_and_center(self) -> None:
        a, b, c = np.array([0.0, 0.0]), np.array([1.0, 0.0]), np.array([0.0, 1.0])
        pts = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [1 / 3, 1 / 3]])

        w = barycentric_2d(pts, a, b, c)

        np.testing.assert_allclose(w[:3], np.eye(3), atol=1e-15)
        np.testing.assert_allclose(w[3], [1 / 3, 1 / 3, 1 / 3])

    def test_degenerate_returns_none(self) -> None:
        a, b, c = np.array([0.0, 0.0]), np.array([1.0, 1.0]), np.array([2.0, 2.0])

        assert barycentric_2d(np.zeros((1, 2)), a, b, c) is None


class TestTexelSamples:
    """Pixel march over the unit square at 10x10 texels."""

    def test_sample_count(self, unit_square: ScenePrimitive) -> None:
        samples = texel_samples(unit_square, 10)

        # 6x6 texels per half, the 6 diagonal centers belong to both halves
        assert 36 <= len(samples) <= 46
        assert len(samples) == 42

    def test_texel_range(self, unit_square: ScenePrimitive) -> None:
        samples = texel_samples(unit_square, 10)
        slots = samples.targets[:, 0]

        assert slots.min() == 22
        assert slots.max() == 77
        assert len(np.unique(slots)) == 36
        assert np.all(samples.targets[:, 1:] == -1)

    def test_normals_follow_transform(self, unit_square: ScenePrimitive) -> None:
        samples = texel_samples(unit_square, 10)

        np.testing.assert_allclose(
            samples.normals, np.tile([0.0, 0.0, 1.0], (len(samples), 1)), atol=1e-7
        )

    def test_positions_in_world_space(self, unit_square: ScenePrimitive) -> None:
        samples = texel_samples(unit_square, 10)

        assert samples.positions[:, :2].min() >= 0.0
        assert samples.positions[:, :2].max() <= 2.0
        np.testing.assert_allclose(samples.positions[:, 2], 0.0)
        # UV (0.25, 0.25) is the quad's corner at the origin
        corner = samples.targets[:, 0] == 22
        np.testing.assert_allclose(samples.positions[corner][0], [0.0, 0.0, 0.0], atol=1e-12)

    def test_uvs_outside_unit_square_dropped(self) -> None:
        prim = ScenePrimitive(
            primitive_id="wide",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
            uvs=np.array([[-1.0, -1.0], [3.0, -1.0], [-1.0, 3.0]]),
        )

        samples = texel_samples(prim, 4)

        assert samples.targets[:, 0].min() >= 0
        assert samples.targets[:, 0].max() < 16

    def test_missing_uvs(self, right_triangle: ScenePrimitive) -> None:
        with pytest.raises(ConfigurationError, match="TEXCOORD_0"):
            texel_samples(right_triangle, 8)

    def test_missing_normals_use_face_normal(self) -> None:
        prim = ScenePrimitive(
            primitive_id="no_normals",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
            uvs=np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
        )

        samples = texel_samples(prim, 4)

        assert len(samples) > 0
        np.testing.assert_allclose(samples.normals, np.tile([0.0, 0.0, 1.0], (len(samples), 1)))

    def test_degenerate_uv_triangle(self) -> None:
        prim = ScenePrimitive(
            primitive_id="flat_uv",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
            uvs=np.array([[0.5, 0.5], [0.5, 0.5], [0.5, 0.5]]),
        )

        assert len(texel_samples(prim, 4)) == 0


class TestVertexSamples:

    def test_centroid_targets_vertices(self, right_triangle: ScenePrimitive) -> None:
        samples = vertex_samples(right_triangle)

        assert len(samples) == 1
        np.testing.assert_allclose(samples.positions[0], [1.0, 0.0, 1.0])
        np.testing.assert_allclose(samples.normals[0], [0.0, 1.0, 0.0])
        np.testing.assert_array_equal(samples.targets[0], [0, 1, 2])

    def test_supplemental_samples(self, right_triangle: ScenePrimitive) -> None:
        center_only = vertex_samples(right_triangle, density=2.0, triangle_center_only=True)
        dense = vertex_samples(right_triangle, density=2.0, triangle_center_only=False)

        assert len(dense) > len(center_only)
        assert np.all(dense.targets == [0, 1, 2])
        # Every supplemental sample lies on the triangle
        pos = dense.positions
        assert np.all(np.abs(pos[:, 1]) < 1e-12)
        assert np.all(pos[:, 0] + pos[:, 2] <= 3.0 + 1e-9)
        assert np.all(pos[:, [0, 2]] >= -1e-9)

    def test_density_scales_sample_count(self, right_triangle: ScenePrimitive) -> None:
        coarse = vertex_samples(right_triangle, density=1.0, triangle_center_only=False)
        fine = vertex_samples(right_triangle, density=4.0, triangle_center_only=False)

        assert len(fine) > 4 * len(coarse) - 8

    def test_missing_normals_use_face_normal(self) -> None:
        prim = ScenePrimitive(
            primitive_id="ccw",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]),
        )

        samples = vertex_samples(prim)

        np.testing.assert_allclose(samples.normals[0], [0.0, 0.0, 1.0])

    def test_degenerate_triangle_produces_nothing(self) -> None:
        prim = ScenePrimitive(
            primitive_id="line",
            indices=np.array([0, 1, 2]),
            positions=np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0]]),
        )

        assert len(vertex_samples(prim, triangle_center_only=False)) == 0

    def test_flatten_triangle_preserves_lengths(self) -> None:
        tri = np.array([[1.0, 1.0, 1.0], [1.0, 1.0, 4.0], [5.0, 1.0, 1.0]])

        corners, frame = flatten_triangle(tri)

        np.testing.assert_allclose(corners[0], [0.0, 0.0])
        np.testing.assert_allclose(corners[1], [3.0, 0.0], atol=1e-12)
        assert np.linalg.norm(corners[2]) == pytest.approx(4.0)
        np.testing.assert_allclose(frame @ frame.T, np.eye(2), atol=1e-12)


class TestDispatch:

    def test_mode_selects_generator(self, unit_square: ScenePrimitive) -> None:
        texture = generate_sample_set(unit_square, BakeSettings(resolution=10))
        vertex = generate_sample_set(unit_square, BakeSettings(to_texture=False, to_vertex=True))

        assert len(texture) == 42
        assert len(vertex) == 2
        assert vertex.targets.max() == 3

    def test_concatenate_empty(self) -> None:
        merged = SampleSet.concatenate([SampleSet.empty(), SampleSet.empty()])

        assert len(merged) == 0
        assert merged.targets.shape == (0, 3)

"""Pytest configuration and shared fixtures for the AO baker tests."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import numpy as np
import pytest


# Add project root to path so imports work
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def pytest_configure(config: pytest.Config) -> None:
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s [%(levelname)s] %(message)s",
    )


@pytest.fixture
def closed_tetrahedron() -> np.ndarray:
    """Four faces enclosing the origin. Shape: (4, 3, 3)."""
    from scene_ingestion.synthetic_scenes import tetrahedron_triangles

    return tetrahedron_triangles(open_bottom=False)


@pytest.fixture
def open_tetrahedron() -> np.ndarray:
    """Tetrahedron without its bottom (y = -1) face. Shape: (3, 3, 3)."""
    from scene_ingestion.synthetic_scenes import tetrahedron_triangles

    return tetrahedron_triangles(open_bottom=True)


@pytest.fixture
def tetrahedron_config():
    """Settings of the tetrahedron occlusion checks."""
    from ao_engine.constants import config_from_dict

    return config_from_dict(
        {"bake": {"ray_distance": 10.0, "near_cull": 0.001, "number_rays": 16}}
    )

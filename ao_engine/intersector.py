"""Möller-Trumbore ray-triangle intersection.

The kernel is compiled with Numba ``@njit(cache=True)`` so the grid
traversal and the occlusion kernels can call it from their inner loops.
It works on scalars only and allocates nothing.

References
----------
- Möller, T. & Trumbore, B. (1997). "Fast, Minimum Storage Ray-Triangle
  Intersection." J. Graphics Tools, 2(1), 21-28.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from numba import njit

from ao_engine.constants import EPSILON

logger = logging.getLogger(__name__)


@dataclass
class Ray:
    """A ray ``R(t) = origin + t * direction``.

    Attributes
    ----------
    origin : np.ndarray
        Ray origin [x, y, z]. Shape: (3,).
    direction : np.ndarray
        Ray direction. Shape: (3,). Not normalized implicitly.
    """

    origin: np.ndarray
    direction: np.ndarray


@njit(cache=True, fastmath=False)
def moller_trumbore(
    ray_origin: np.ndarray,
    ray_dir: np.ndarray,
    v0: np.ndarray,
    v1: np.ndarray,
    v2: np.ndarray,
    cull_back_faces: bool,
    epsilon: float,
) -> float:
    """Möller-Trumbore ray-triangle intersection test.

    Parameters
    ----------
    ray_origin : np.ndarray
        Ray origin point [x, y, z]. Shape: (3,).
    ray_dir : np.ndarray
        Ray direction vector [dx, dy, dz]. Shape: (3,). Need not be normalized.
    v0, v1, v2 : np.ndarray
        Triangle vertex positions. Shape: (3,) each.
    cull_back_faces : bool
        If True, triangles whose winding faces away from the ray are missed.
    epsilon : float
        Determinant tolerance for parallel rays and degenerate triangles.

    Returns
    -------
    float
        Signed parametric distance t of the hit, or NaN if there is none.
        Near and far bounds are left to the caller.

    Notes
    -----
    ``fastmath=False`` keeps the determinant and barycentric comparisons
    in IEEE order; reordering them lets rays slip between adjacent
    triangles.
    """
    # Edge vectors
    e0_x = v1[0] - v0[0]
    e0_y = v1[1] - v0[1]
    e0_z = v1[2] - v0[2]

    e1_x = v2[0] - v0[0]
    e1_y = v2[1] - v0[1]
    e1_z = v2[2] - v0[2]

    # P = ray_dir × e1
    p_x = ray_dir[1] * e1_z - ray_dir[2] * e1_y
    p_y = ray_dir[2] * e1_x - ray_dir[0] * e1_z
    p_z = ray_dir[0] * e1_y - ray_dir[1] * e1_x

    # Determinant = e0 · P
    det = e0_x * p_x + e0_y * p_y + e0_z * p_z

    if cull_back_faces:
        if det < epsilon:
            return np.nan
    elif det > -epsilon and det < epsilon:
        return np.nan

    inv_det = 1.0 / det

    # T = ray_origin - v0
    t_x = ray_origin[0] - v0[0]
    t_y = ray_origin[1] - v0[1]
    t_z = ray_origin[2] - v0[2]

    u = (t_x * p_x + t_y * p_y + t_z * p_z) * inv_det
    if u < 0.0 or u > 1.0:
        return np.nan

    # Q = T × e0
    q_x = t_y * e0_z - t_z * e0_y
    q_y = t_z * e0_x - t_x * e0_z
    q_z = t_x * e0_y - t_y * e0_x

    v = (ray_dir[0] * q_x + ray_dir[1] * q_y + ray_dir[2] * q_z) * inv_det
    if v < 0.0 or u + v > 1.0:
        return np.nan

    return (e1_x * q_x + e1_y * q_y + e1_z * q_z) * inv_det


def intersect(
    ray: Ray,
    p0: np.ndarray,
    p1: np.ndarray,
    p2: np.ndarray,
    cull_back_faces: bool = False,
    epsilon: float = EPSILON,
) -> float | None:
    """Intersect a ray with one triangle.

    Parameters
    ----------
    ray : Ray
        The ray to test.
    p0, p1, p2 : array_like
        Triangle vertices. Shape: (3,) each.
    cull_back_faces : bool
        Reject back-facing triangles.
    epsilon : float
        Determinant tolerance.

    Returns
    -------
    float or None
        Signed distance along the ray, or None if there is no intersection.
    """
    t = moller_trumbore(
        np.asarray(ray.origin, dtype=np.float64),
        np.asarray(ray.direction, dtype=np.float64),
        np.asarray(p0, dtype=np.float64),
        np.asarray(p1, dtype=np.float64),
        np.asarray(p2, dtype=np.float64),
        cull_back_faces,
        epsilon,
    )
    if np.isnan(t):
        return None
    return float(t)

"""Stratified cosine-weighted hemisphere sampling.

Rays for one sample point are drawn on a ``sqrt_n × sqrt_n`` grid of
strata over the unit square, one jittered sample per stratum, and mapped
to a cosine-weighted direction on a +Y-up hemisphere. The canonical
direction is then carried into world space through an orthonormal basis
built around the surface normal.

Algorithm
---------
For sample ``j`` with strata per axis ``m``:

    s = (j mod m + ξ₁) / m
    t = (j div m + ξ₂) / m
    u = 2π s,   v = √(1 − t)
    canonical = (v cos u,  √t,  v sin u)
    world = canonical.x · tangent + canonical.y · normal + canonical.z · bitangent

The squared radius ``v²`` of the projection onto the tangent plane is
uniform, so directions are lifted from a uniformly sampled disk (Malley's
method): unit length, with density proportional to the cosine of the angle
to the normal.

References
----------
- Shirley, P. & Chiu, K. (1997). "A Low Distortion Map Between Disk and
  Square." J. Graphics Tools, 2(3), 45-52.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from numba import njit

from ao_engine.intersector import Ray

logger = logging.getLogger(__name__)

_TWO_PI: float = 2.0 * np.pi


def strata_per_axis(number_rays: int) -> int:
    """Strata per axis for a requested ray count: ``floor(sqrt(n))``."""
    return max(1, math.isqrt(int(number_rays)))


def effective_ray_count(number_rays: int) -> int:
    """Rays actually cast per sample point: the largest square <= ``number_rays``."""
    sqrt_n = strata_per_axis(number_rays)
    effective = sqrt_n * sqrt_n
    if effective != number_rays:
        logger.debug(
            "Ray count %d is not a perfect square; casting %d rays per sample",
            number_rays,
            effective,
        )
    return effective


@njit(cache=True, fastmath=False)
def build_orthonormal_basis(normal: np.ndarray) -> np.ndarray:
    """Rows ``(tangent, normal, bitangent)`` of a frame around a unit normal.

    Parameters
    ----------
    normal : np.ndarray
        Unit surface normal. Shape: (3,).

    Returns
    -------
    basis : np.ndarray
        Shape: (3, 3). Row 0 is the tangent, row 1 the normal, row 2 the
        bitangent.
    """
    basis = np.empty((3, 3), dtype=np.float64)
    nx = normal[0]
    ny = normal[1]
    nz = normal[2]

    # Helper axis that is never close to parallel with the normal
    if abs(nx) > 0.9:
        hx, hy, hz = 0.0, 1.0, 0.0
    else:
        hx, hy, hz = 1.0, 0.0, 0.0

    # tangent = helper × normal
    tx = hy * nz - hz * ny
    ty = hz * nx - hx * nz
    tz = hx * ny - hy * nx
    inv_len = 1.0 / np.sqrt(tx * tx + ty * ty + tz * tz)
    tx *= inv_len
    ty *= inv_len
    tz *= inv_len

    basis[0, 0] = tx
    basis[0, 1] = ty
    basis[0, 2] = tz
    basis[1, 0] = nx
    basis[1, 1] = ny
    basis[1, 2] = nz
    # bitangent = normal × tangent
    basis[2, 0] = ny * tz - nz * ty
    basis[2, 1] = nz * tx - nx * tz
    basis[2, 2] = nx * ty - ny * tx
    return basis


@njit(cache=True, fastmath=False)
def hemisphere_direction(
    basis: np.ndarray,
    sample_index: int,
    sqrt_n: int,
    jitter_s: float,
    jitter_t: float,
    out: np.ndarray,
) -> None:
    """Write the world-space direction of one stratified sample into ``out``.

    Parameters
    ----------
    basis : np.ndarray
        Frame from :func:`build_orthonormal_basis`. Shape: (3, 3).
    sample_index : int
        Sample number in ``[0, sqrt_n²)``.
    sqrt_n : int
        Strata per axis.
    jitter_s, jitter_t : float
        Uniform offsets in [0, 1) inside the stratum.
    out : np.ndarray
        Output direction. Shape: (3,).
    """
    cell = 1.0 / sqrt_n
    s = (sample_index % sqrt_n) * cell + jitter_s * cell
    t = (sample_index // sqrt_n) * cell + jitter_t * cell

    u = _TWO_PI * s
    v = np.sqrt(1.0 - t)
    cx = v * np.cos(u)
    cy = np.sqrt(t)
    cz = v * np.sin(u)

    for k in range(3):
        out[k] = cx * basis[0, k] + cy * basis[1, k] + cz * basis[2, k]


def generate_jittered_ray(
    origin: np.ndarray,
    normal: np.ndarray,
    sample_index: int,
    sqrt_n: int,
    rng: np.random.Generator,
) -> Ray:
    """Generate one stratified, cosine-weighted ray around a surface normal.

    Parameters
    ----------
    origin : np.ndarray
        Sample point position. Shape: (3,).
    normal : np.ndarray
        Unit surface normal. Shape: (3,).
    sample_index : int
        Index of the stratum, in ``[0, sqrt_n²)``.
    sqrt_n : int
        Strata per axis.
    rng : np.random.Generator
        Source of the jitter offsets.

    Returns
    -------
    Ray
        Ray starting at ``origin``.
    """
    basis = build_orthonormal_basis(np.asarray(normal, dtype=np.float64))
    direction = np.empty(3, dtype=np.float64)
    jitter = rng.random(2)
    hemisphere_direction(basis, sample_index, sqrt_n, jitter[0], jitter[1], direction)
    return Ray(origin=np.array(origin, dtype=np.float64), direction=direction)


def stratified_directions(
    normal: np.ndarray,
    number_rays: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """All stratified directions for one sample point.

    Parameters
    ----------
    normal : np.ndarray
        Unit surface normal. Shape: (3,).
    number_rays : int
        Requested ray count (reduced to a perfect square).
    rng : np.random.Generator
        Source of the jitter offsets.

    Returns
    -------
    directions : np.ndarray
        Unit directions. Shape: (effective_ray_count, 3).
    """
    sqrt_n = strata_per_axis(number_rays)
    count = sqrt_n * sqrt_n
    basis = build_orthonormal_basis(np.asarray(normal, dtype=np.float64))
    jitter = rng.random((count, 2))
    directions = np.empty((count, 3), dtype=np.float64)
    for j in range(count):
        hemisphere_direction(basis, j, sqrt_n, jitter[j, 0], jitter[j, 1], directions[j])
    return directions

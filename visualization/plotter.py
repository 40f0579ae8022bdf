"""Visualization module for baked ambient occlusion.

Generates figures using matplotlib:
- AO textures (grayscale visibility, texel (0, 0) at the bottom left)
- Per-vertex occlusion scatter plots (top view, Y up)
- Histogram of occlusion over all sampled slots
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

import matplotlib

matplotlib.use("Agg")  # Non-interactive backend for headless rendering

import matplotlib.pyplot as plt
import numpy as np

from ao_engine.bake import BakeResult
from ao_engine.occlusion import AOBuffer
from scene_ingestion.scene_graph import Scene

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Color Configuration
# ---------------------------------------------------------------------------

_VISIBILITY_CMAP = "gray"
_OCCLUSION_CMAP = "magma_r"
_FACE_COLOR = "#1a1a2e"
_DPI = 150


def _style_axes(fig: plt.Figure, ax: plt.Axes, title: str, mappable=None, label: str = "") -> None:
    ax.set_title(title, fontsize=14, fontweight="bold", color="white")
    ax.tick_params(colors="white")
    for spine in ax.spines.values():
        spine.set_edgecolor("#444")
    if mappable is not None:
        cbar = fig.colorbar(mappable, ax=ax, label=label, shrink=0.8)
        cbar.ax.yaxis.label.set_color("white")
        cbar.ax.tick_params(colors="white")


def _save(fig: plt.Figure, output_path: Path | str | None, dpi: int, what: str) -> None:
    fig.tight_layout()
    if output_path is not None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(output_path, dpi=dpi, facecolor=fig.get_facecolor())
        logger.info("%s saved: %s", what, output_path)
    plt.close(fig)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def plot_ao_texture(
    buffer: AOBuffer,
    title: str | None = None,
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Plot a texture-mode AO buffer as a grayscale visibility image.

    Unsampled texels are shown white (visibility 1).

    Parameters
    ----------
    buffer : AOBuffer
        Texture-mode buffer.
    title : str, optional
        Figure title; defaults to the primitive id.
    output_path : Path or str, optional
        If provided, save figure to this path.
    dpi : int
        Figure resolution.

    Returns
    -------
    matplotlib.figure.Figure
        The generated figure.
    """
    image = buffer.to_texture_image()

    fig, ax = plt.subplots(1, 1, figsize=(8, 8), facecolor=_FACE_COLOR)
    ax.set_facecolor(_FACE_COLOR)
    im = ax.imshow(
        image,
        cmap=_VISIBILITY_CMAP,
        vmin=0.0,
        vmax=1.0,
        origin="lower",
        extent=(0.0, 1.0, 0.0, 1.0),
        interpolation="nearest",
    )
    ax.set_xlabel("U", color="white")
    ax.set_ylabel("V", color="white")
    _style_axes(fig, ax, title or f"AO: {buffer.primitive_id}", im, "Visibility")
    _save(fig, output_path, dpi, "AO texture")
    return fig


def plot_vertex_occlusion(
    positions: np.ndarray,
    buffer: AOBuffer,
    title: str | None = None,
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Scatter world-space vertices (top view, X vs. Z) colored by occlusion.

    Parameters
    ----------
    positions : np.ndarray
        World-space vertex positions. Shape: (num_vertices, 3).
    buffer : AOBuffer
        Vertex-mode buffer with one slot per vertex.
    title : str, optional
        Figure title; defaults to the primitive id.
    output_path : Path or str, optional
        If provided, save figure to this path.
    dpi : int
        Figure resolution.

    Returns
    -------
    matplotlib.figure.Figure
        The generated figure.
    """
    fig, ax = plt.subplots(1, 1, figsize=(10, 8), facecolor=_FACE_COLOR)
    ax.set_facecolor(_FACE_COLOR)

    scatter = ax.scatter(
        positions[:, 0],
        positions[:, 2],
        c=buffer.occlusion(),
        cmap=_OCCLUSION_CMAP,
        s=12.0,
        vmin=0.0,
        vmax=1.0,
        edgecolors="none",
    )
    ax.set_xlabel("X", color="white")
    ax.set_ylabel("Z", color="white")
    ax.set_aspect("equal")
    _style_axes(fig, ax, title or f"Vertex AO: {buffer.primitive_id}", scatter, "Occlusion")
    _save(fig, output_path, dpi, "Vertex occlusion")
    return fig


def plot_occlusion_histogram(
    buffers: list[AOBuffer],
    title: str = "Occlusion Distribution",
    output_path: Path | str | None = None,
    dpi: int = _DPI,
) -> plt.Figure:
    """Histogram of occlusion over the sampled slots of all buffers."""
    values = [b.occlusion()[b.sampled_mask()] for b in buffers]
    values = np.concatenate(values) if values else np.empty(0)

    fig, ax = plt.subplots(1, 1, figsize=(10, 6), facecolor="#0f0f1a")
    ax.set_facecolor("#0f0f1a")
    ax.hist(values, bins=32, range=(0.0, 1.0), color="#748ffc", alpha=0.9)
    ax.set_xlabel("Occluded fraction", color="white", fontsize=12)
    ax.set_ylabel("Slots", color="white", fontsize=12)
    ax.grid(True, alpha=0.2, color="white")
    _style_axes(fig, ax, title)
    _save(fig, output_path, dpi, "Occlusion histogram")
    return fig


def generate_all_plots(
    result: BakeResult,
    scene: Scene,
    output_dir: Path | str = "output",
    dpi: int = _DPI,
) -> list[Path]:
    """Generate all standard plots for a bake.

    Parameters
    ----------
    result : BakeResult
        Bake output.
    scene : Scene
        The baked scene; supplies vertex positions in vertex mode.
    output_dir : Path or str
        Directory for output plots.
    dpi : int
        Figure resolution.

    Returns
    -------
    list[Path]
        Paths to all generated plot files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    saved: list[Path] = []
    primitives = {p.primitive_id: p for p in scene.primitives()}

    for primitive_id, buffer in result.buffers.items():
        stem = re.sub(r"[^A-Za-z0-9_.-]+", "_", primitive_id).strip("_")
        if buffer.mode == "texture":
            p = output_dir / f"ao_texture_{stem}.png"
            plot_ao_texture(buffer, output_path=p, dpi=dpi)
            saved.append(p)
        elif primitive_id in primitives:
            p = output_dir / f"ao_vertices_{stem}.png"
            plot_vertex_occlusion(
                primitives[primitive_id].world_positions(), buffer, output_path=p, dpi=dpi
            )
            saved.append(p)

    if result.buffers:
        p = output_dir / "occlusion_histogram.png"
        plot_occlusion_histogram(list(result.buffers.values()), output_path=p, dpi=dpi)
        saved.append(p)

    logger.info("Generated %d plots in %s", len(saved), output_dir)
    return saved

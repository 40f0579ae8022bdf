"""Data I/O manager — persist bake results as NumPy arrays.

Saves and loads AO buffers so textures and plots can be regenerated
without re-tracing the scene.

File layout under output_dir/:
    ao_buffers.npz          — Raw accumulators, ``<key>_samples`` and ``<key>_count``
    occlusion_<key>.npy     — Occluded fraction per slot, shape (resolution, resolution)
                              in texture mode or (num_vertices,) in vertex mode
    metadata.json           — Bake metadata, stats, and the key → primitive id table

Primitive ids may contain characters that are unsafe in file names
(``/`` from node paths), so every buffer is stored under a sanitized key.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import numpy as np

from ao_engine.bake import BakeResult
from ao_engine.constants import hash_array
from ao_engine.occlusion import AOBuffer

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def buffer_key(primitive_id: str, taken: set[str] | None = None) -> str:
    """File-name-safe key for a primitive id, unique within ``taken``."""
    key = _UNSAFE.sub("_", primitive_id).strip("_") or "primitive"
    if taken is not None:
        base, n = key, 1
        while key in taken:
            key = f"{base}_{n}"
            n += 1
        taken.add(key)
    return key


def save_results(output_dir: Path | str, result: BakeResult) -> list[Path]:
    """Save all AO buffers of a bake to disk as NumPy arrays + JSON.

    Parameters
    ----------
    output_dir : Path or str
        Output directory (created if needed).
    result : BakeResult
        Bake output.

    Returns
    -------
    list[Path]
        Paths to all saved files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    saved: list[Path] = []
    taken: set[str] = set()
    arrays: dict[str, np.ndarray] = {}
    table: dict[str, dict] = {}

    for primitive_id, buffer in result.buffers.items():
        key = buffer_key(primitive_id, taken)
        arrays[f"{key}_samples"] = buffer.samples
        arrays[f"{key}_count"] = buffer.count
        table[key] = {
            "primitive_id": primitive_id,
            "mode": buffer.mode,
            "resolution": buffer.resolution,
            "size": buffer.size,
            "samples_sha256": hash_array(buffer.samples),
        }

        occlusion = buffer.occlusion()
        if buffer.mode == "texture":
            occlusion = occlusion.reshape(buffer.resolution, buffer.resolution)
        path = output_dir / f"occlusion_{key}.npy"
        np.save(path, occlusion)
        saved.append(path)
        logger.debug("Saved %s: shape=%s", path.name, occlusion.shape)

    npz_path = output_dir / "ao_buffers.npz"
    np.savez_compressed(npz_path, **arrays)
    saved.append(npz_path)

    meta_path = output_dir / "metadata.json"
    safe_meta = _sanitize_for_json(
        {
            "resolution": result.resolution,
            "stats": result.stats,
            "buffers": table,
            "bake": result.metadata,
        }
    )
    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(safe_meta, f, indent=2, ensure_ascii=False)
    saved.append(meta_path)

    logger.info("Saved %d files to %s (%d buffers)", len(saved), output_dir, len(table))
    return saved


def load_results(output_dir: Path | str) -> BakeResult:
    """Load previously saved bake results.

    Parameters
    ----------
    output_dir : Path or str
        Directory containing saved results.

    Returns
    -------
    BakeResult
        Buffers keyed by their original primitive ids.

    Raises
    ------
    FileNotFoundError
        If the directory or its metadata is missing.
    """
    output_dir = Path(output_dir)
    if not output_dir.exists():
        raise FileNotFoundError(f"Output directory not found: {output_dir}")

    meta_path = output_dir / "metadata.json"
    if not meta_path.exists():
        raise FileNotFoundError(f"Missing metadata file: {meta_path}")
    with open(meta_path, "r", encoding="utf-8") as f:
        meta = json.load(f)

    buffers: dict[str, AOBuffer] = {}
    npz_path = output_dir / "ao_buffers.npz"
    if npz_path.exists():
        with np.load(npz_path) as npz:
            for key, info in meta.get("buffers", {}).items():
                buffers[info["primitive_id"]] = AOBuffer(
                    primitive_id=info["primitive_id"],
                    mode=info["mode"],
                    samples=npz[f"{key}_samples"],
                    count=npz[f"{key}_count"],
                    resolution=info.get("resolution"),
                )
    else:
        logger.warning("Missing file: %s", npz_path)

    logger.info("Loaded results from %s (%d buffers)", output_dir, len(buffers))
    return BakeResult(
        buffers=buffers,
        resolution=meta.get("resolution"),
        stats=meta.get("stats", {}),
        metadata=meta.get("bake", {}),
    )


def _sanitize_for_json(obj: object) -> object:
    """Recursively convert NumPy types and other non-JSON types to Python natives."""
    if isinstance(obj, dict):
        return {str(k): _sanitize_for_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_sanitize_for_json(v) for v in obj]
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, float) and not np.isfinite(obj):
        return None
    return obj

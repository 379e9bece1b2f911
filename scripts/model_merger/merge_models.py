#!/usr/bin/env python3
"""
merge_models.py
===============

Merge several partial SEModel files (each a skeleton plus skinned meshes)
into a single model whose skeleton is the union of all inputs.

Usage:
    python3 merge_models.py body.semodel arm.semodel hand_prop.semodel \\
        --output-dir "Merged Models" \\
        --format semodel \\
        --shape-keys merge \\
        --check-textures \\
        --report merged_report.json --verbose
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from PIL import Image

from merge_engine import MergeError, MergeResult, ShapeKeyPolicy, merge_models
from model_data import DIFFUSE_MAP, GLOSS_MAP, NORMAL_MAP, SPECULAR_MAP, HierarchyError, Model
from model_export import save_model
from semodel_codec import SEModelFormatError, read_semodel

DEFAULT_OUTPUT_DIR = Path("Merged Models")

MODEL_LOADERS: Dict[str, Callable[[Path], Model]] = {
    ".semodel": read_semodel,
}

TEXTURE_KEYS = (DIFFUSE_MAP, NORMAL_MAP, SPECULAR_MAP, GLOSS_MAP)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

@dataclass
class LoadStats:
    total_found: int = 0
    loaded: int = 0
    skipped_unsupported: int = 0
    skipped_corrupt: int = 0
    failures: List[Dict] = field(default_factory=list)


def load_model(path: Path) -> Optional[Model]:
    """Load one partial model, or None when the extension is not supported."""
    loader = MODEL_LOADERS.get(path.suffix.lower())
    if loader is None:
        return None
    logging.info("Loading %s", path.stem)
    model = loader(path)
    logging.info(
        "Loaded %s (bones=%d, meshes=%d, materials=%d)",
        model.name, len(model.bones), len(model.meshes), len(model.materials),
    )
    return model


def load_models(paths: Sequence[Path], stats: Optional[LoadStats] = None) -> List[Model]:
    """Load every supported file, in path order, skipping the ones that fail."""
    stats = stats if stats is not None else LoadStats()
    models: List[Model] = []

    for path in sorted(paths, key=str):
        stats.total_found += 1
        try:
            model = load_model(path)
        except (OSError, SEModelFormatError) as exc:
            stats.skipped_corrupt += 1
            stats.failures.append({"source": str(path), "error": str(exc), "type": "parse"})
            logging.error("Cannot load %s: %s", path, exc)
            continue

        if model is None:
            stats.skipped_unsupported += 1
            stats.failures.append({
                "source": str(path), "error": "unsupported extension", "type": "format",
            })
            logging.error("Invalid file: %s", path.name)
            continue

        stats.loaded += 1
        models.append(model)

    return models


# ---------------------------------------------------------------------------
# Texture references
# ---------------------------------------------------------------------------

def validate_texture(path: Path) -> Tuple[bool, str]:
    """Check that *path* opens as an image with non-zero dimensions."""
    try:
        with Image.open(path) as img:
            w, h = img.size
            if w <= 0 or h <= 0:
                return False, f"zero dimensions ({w}x{h})"
            img.verify()
        return True, "ok"
    except FileNotFoundError:
        return False, "missing"
    except Exception as exc:
        return False, f"invalid image: {exc}"


def resolve_texture(reference: str, search_dirs: Sequence[Path]) -> Path:
    candidate = Path(reference)
    if candidate.is_absolute():
        return candidate
    for directory in search_dirs:
        resolved = directory / candidate
        if resolved.exists():
            return resolved
    return (search_dirs[0] / candidate) if search_dirs else candidate


def check_textures(model: Model, search_dirs: Sequence[Path]) -> List[Dict]:
    """Validate every texture referenced by the model's materials."""
    results: List[Dict] = []
    for material in model.materials:
        for key in TEXTURE_KEYS:
            reference = material.get_image(key)
            if not reference:
                continue
            path = resolve_texture(reference, search_dirs)
            ok, reason = validate_texture(path)
            results.append({
                "material": material.name, "map": key, "path": str(path),
                "ok": ok, "reason": reason,
            })
            if not ok:
                logging.warning("Texture %s of %s: %s (%s)", key, material.name, reason, path)
    return results


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def write_report(
    report_path: Path,
    stats: LoadStats,
    result: Optional[MergeResult],
    output_path: Optional[Path],
    textures: Optional[List[Dict]],
) -> None:
    report: Dict[str, object] = {
        "total_found": stats.total_found,
        "loaded": stats.loaded,
        "skipped_unsupported": stats.skipped_unsupported,
        "skipped_corrupt": stats.skipped_corrupt,
        "failures": stats.failures,
        "root_model": result.root_name if result else None,
        "fold_order": result.fold_order if result else [],
        "output": str(output_path) if output_path else None,
    }
    if result:
        report["bones"] = len(result.model.bones)
        report["meshes"] = len(result.model.meshes)
        report["materials"] = len(result.model.materials)
        report["shapes"] = len(result.model.shapes)
    if textures is not None:
        report["textures"] = textures
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2))
    logging.info("Report written to %s", report_path)


def run(
    inputs: Sequence[Path],
    output_dir: Path,
    fmt: str = "semodel",
    shape_policy: ShapeKeyPolicy = ShapeKeyPolicy.MERGE_BY_NAME,
    write_vertex_colors: bool = False,
    texture_check: bool = False,
    report_path: Optional[Path] = None,
) -> Optional[Path]:
    """Load, merge and save. Returns the written path, or None when nothing was loaded.

    Structural errors (HierarchyError, MergeError) propagate to the caller.
    """
    start_time = time.time()
    stats = LoadStats()
    models = load_models(inputs, stats)
    logging.info(
        "Loaded %d of %d files (unsupported=%d, corrupt=%d)",
        stats.loaded, stats.total_found, stats.skipped_unsupported, stats.skipped_corrupt,
    )

    if not models:
        if report_path:
            write_report(report_path, stats, None, None, None)
        return None

    result = merge_models(models, shape_policy=shape_policy)
    merged = result.model

    output_path = output_dir / f"{merged.name}.{fmt}"
    logging.info("Saving %s", merged.name)
    save_model(merged, output_path, write_vertex_colors=write_vertex_colors)
    logging.info("Saved %s -> %s", merged.name, output_path)

    textures = None
    if texture_check:
        search_dirs = []
        for path in sorted(inputs, key=str):
            if path.parent not in search_dirs:
                search_dirs.append(path.parent)
        textures = check_textures(merged, search_dirs)
        bad = sum(1 for entry in textures if not entry["ok"])
        logging.info("Texture check: %d referenced, %d problems", len(textures), bad)

    if report_path:
        write_report(report_path, stats, result, output_path, textures)

    logging.info(
        "Merge complete in %.1fs: %d models -> %d bones, %d meshes, %d materials",
        time.time() - start_time, len(result.fold_order),
        len(merged.bones), len(merged.meshes), len(merged.materials),
    )
    return output_path


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Merge partial SEModel files into a single model."
    )
    parser.add_argument(
        "inputs", nargs="*", type=Path,
        help="Partial model files to merge (.semodel)",
    )
    parser.add_argument(
        "--output-dir", type=Path, default=DEFAULT_OUTPUT_DIR,
        help=f"Directory for the merged model (default: {DEFAULT_OUTPUT_DIR})",
    )
    parser.add_argument(
        "--format", choices=["semodel", "obj", "smd", "ascii"], default="semodel",
        help="Output format (default: semodel)",
    )
    parser.add_argument(
        "--shape-keys",
        choices=[policy.value for policy in ShapeKeyPolicy],
        default=ShapeKeyPolicy.MERGE_BY_NAME.value,
        help=(
            "How same-named shape keys from different files are combined: "
            "'merge' collapses them into one key, 'distinct' keeps one per file "
            "(default: merge)"
        ),
    )
    parser.add_argument(
        "--write-vertex-colors", action="store_true",
        help="Encode real vertex colors instead of the constant white placeholder",
    )
    parser.add_argument(
        "--check-textures", action="store_true",
        help="Validate texture files referenced by the merged materials",
    )
    parser.add_argument(
        "--report", type=Path, default=None,
        help="Path for JSON merge report",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.inputs:
        logging.error("No input files given; pass one or more .semodel files")
        return 1

    try:
        output_path = run(
            inputs=args.inputs,
            output_dir=args.output_dir,
            fmt=args.format,
            shape_policy=ShapeKeyPolicy(args.shape_keys),
            write_vertex_colors=args.write_vertex_colors,
            texture_check=args.check_textures,
            report_path=args.report,
        )
    except (HierarchyError, MergeError, SEModelFormatError, ValueError) as exc:
        logging.error("Merge failed: %s", exc)
        return 1

    if output_path is None:
        logging.error("No supported model files were loaded")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

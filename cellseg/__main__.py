# cellseg/__main__.py
# Entry point for running cellseg as a module: python -m cellseg
"""
cellseg - Edge-based cell segmentation for microscopy images

Usage:
    python -m cellseg segment IMAGE --out DIR [options]
    python -m cellseg batch SEG [SEG ...] --out DIR [--meas MEAS ...] [options]
    python -m cellseg --help
"""
from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from .core.batch import SaveOptions, process_batch, units_from_paths
from .core.edges import EdgeDetector
from .core.errors import CellSegError, RunCancelled
from .core.measurement import save_props_csv
from .core.overlay import createLabelOverlay
from .core.params import THRESHOLD_METHODS, SegmentationParams, load_params
from .core.preprocessing import loadImage
from .core.processing import runSegmentationPipeline

logger = logging.getLogger("cellseg")

EXIT_OK = 0
EXIT_UNIT_FAILED = 1
EXIT_SETUP = 2


def _consoleThresholdAck(img8: np.ndarray, autoThresh: float) -> Optional[float]:
    """Ask on stdin whether to keep the auto threshold. 'q' (or EOF) cancels."""
    while True:
        try:
            answer = input(f"Auto threshold {autoThresh:.1f} [Enter=keep, number=override, q=cancel]: ")
        except EOFError:
            raise RunCancelled("Threshold acknowledgment cancelled (EOF)") from None
        answer = answer.strip()
        if not answer:
            return None
        if answer.lower() in ("q", "quit"):
            raise RunCancelled("Threshold acknowledgment cancelled by user")
        try:
            return float(answer)
        except ValueError:
            print(f"Not a number: {answer!r}")


def _addParamOptions(p: argparse.ArgumentParser) -> None:
    g = p.add_argument_group("segmentation parameters")
    g.add_argument("--config", help="JSON parameter file, applied before the options below")
    g.add_argument("--min-area", type=int, help="Drop regions smaller than this (px)")
    g.add_argument("--threshold-method", choices=THRESHOLD_METHODS)
    g.add_argument("--dark-objects", action=argparse.BooleanOptionalAction, default=None,
                   help="Keep the upper threshold range (default) or the lower one")
    g.add_argument("--edge-method", choices=[e.value for e in EdgeDetector])
    g.add_argument("--min-border-count", type=int, choices=(1, 2, 3, 4),
                   help="Background components touching this many image edges are removed")
    g.add_argument("--connectivity", type=int, choices=(4, 8))
    g.add_argument("--watershed", action=argparse.BooleanOptionalAction, default=None)
    g.add_argument("--peak-min-distance", type=int)
    g.add_argument("--overlay-alpha", type=float)
    g.add_argument("--colormap", dest="label_colormap")


def _paramsFromArgs(args: argparse.Namespace) -> SegmentationParams:
    params = load_params(args.config) if args.config else SegmentationParams()
    overrides: Dict[str, Any] = {
        "min_area": args.min_area,
        "threshold_method": args.threshold_method,
        "dark_objects": args.dark_objects,
        "edge_method": args.edge_method,
        "min_border_count": args.min_border_count,
        "connectivity": args.connectivity,
        "watershed": args.watershed,
        "peak_min_distance": args.peak_min_distance,
        "overlay_alpha": args.overlay_alpha,
        "label_colormap": args.label_colormap,
    }
    return params.replace(**overrides)


def _buildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cellseg",
        description="Edge-based cell segmentation: edges -> threshold -> hole fill -> watershed -> labels",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    seg = sub.add_parser("segment", help="Segment a single image")
    seg.add_argument("image")
    seg.add_argument("--out", required=True, help="Output directory")
    seg.add_argument("--pause", action="store_true",
                     help="Confirm or override the auto threshold on the console")
    seg.add_argument("--no-overlay", action="store_true")
    seg.add_argument("--no-measure", action="store_true")
    _addParamOptions(seg)

    bat = sub.add_parser("batch", help="Segment many images; failures do not stop the batch")
    bat.add_argument("seg", nargs="+", help="Images to segment")
    bat.add_argument("--meas", nargs="+", help="Images to measure on (1:1 with the segmented ones)")
    bat.add_argument("--out", required=True, help="Output directory")
    bat.add_argument("--all-timepoints", action="store_true")
    bat.add_argument("--overlay", action="store_true", help="Also write an overlay per unit")
    bat.add_argument("--no-measure", action="store_true")
    _addParamOptions(bat)
    return parser


def _runSegment(args: argparse.Namespace, params: SegmentationParams) -> int:
    params = params.replace(pause_for_threshold=bool(args.pause), measure=not args.no_measure)
    image = loadImage(args.image, asGray=True, keepDepth=True)
    result = runSegmentationPipeline(
        image, params, thresholdAck=_consoleThresholdAck if args.pause else None)
    if result.no_image:
        logger.error("No image data in %s", args.image)
        return EXIT_SETUP

    os.makedirs(args.out, exist_ok=True)
    stem = os.path.splitext(os.path.basename(args.image))[0]
    base = os.path.join(args.out, stem)
    written: List[str] = []
    for suffix, img in (("_mask.tif", result.mask), ("_labels.tif", result.labels)):
        if not cv2.imwrite(base + suffix, img):
            raise OSError(f"Could not write image: {base + suffix}")
        written.append(base + suffix)
    if not args.no_overlay:
        overlay = createLabelOverlay(image, result.labels, params.label_colormap, params.overlay_alpha)
        if not cv2.imwrite(base + "_overlay.tif", overlay):
            raise OSError(f"Could not write image: {base}_overlay.tif")
        written.append(base + "_overlay.tif")
    if result.measurements is not None:
        save_props_csv(base + "_measurements.csv", result.measurements)
        written.append(base + "_measurements.csv")

    logger.info("%d regions; wrote %s", result.region_count, ", ".join(os.path.basename(p) for p in written))
    return EXIT_OK


def _runBatch(args: argparse.Namespace, params: SegmentationParams) -> int:
    units = units_from_paths(args.seg, args.meas, all_timepoints=args.all_timepoints)
    save = SaveOptions(overlay=bool(args.overlay), measurements=not args.no_measure)

    def _progress(done: int, total: int) -> None:
        logger.info("Progress: %d/%d", done, total)

    summary = process_batch(units, params, args.out, save=save, progress_callback=_progress)
    print(f"processed={summary.processed} skipped={summary.skipped} failed={summary.failed}")
    return EXIT_UNIT_FAILED if summary.failed else EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = _buildParser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        params = _paramsFromArgs(args)
        if args.command == "segment":
            return _runSegment(args, params)
        return _runBatch(args, params)
    except RunCancelled as e:
        logger.warning("Cancelled: %s", e)
        return EXIT_SETUP
    except (CellSegError, OSError) as e:
        logger.error("%s", e)
        return EXIT_SETUP


if __name__ == "__main__":
    sys.exit(main())

# cellseg/core/batch.py
# Sequential batch segmentation with per-unit failure isolation
#
# A unit pairs one segmentation plane with the frames its regions are
# measured on. Units run one after another; a failing unit is logged,
# counted and its partial outputs removed before the next unit starts.

from __future__ import annotations

import logging
import os
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from .errors import (
    FatalSetupError,
    InvalidInputError,
    PerUnitProcessingError,
    RunCancelled,
)
from .measurement import measure_regions, save_props_csv
from .overlay import createLabelOverlay
from .params import SegmentationParams, coerce_params
from .preprocessing import ImagePlaneReader, SeriesMetadata, checkReadable, plane_shape
from .processing import runSegmentationPipeline

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]  # (completed, total) -> None


class PlaneReader(Protocol):
    """Plane source for a batch. A reader passed to process_batch stays owned
    by the caller and is not closed by the batch."""

    def series_metadata(self, path: str, series: int = 0) -> SeriesMetadata: ...
    def open_plane(self, path: str, series: int = 0, channel: int = 0, time: int = 0) -> np.ndarray: ...
    def close(self) -> None: ...


# ---------- Units ----------

@dataclass(frozen=True)
class FrameSpec:
    channel: int
    time: int


@dataclass(frozen=True)
class SegUnit:
    source: str
    series: int = 0
    channel: int = 0


@dataclass(frozen=True)
class MeasUnit:
    source: str
    series: int = 0
    channels: Optional[Tuple[int, ...]] = None  # None = every channel of the series
    all_timepoints: bool = False


@dataclass(frozen=True)
class PairedUnit:
    seg: SegUnit
    meas: Optional[MeasUnit] = None  # None = measure on the segmentation plane


@dataclass
class SaveOptions:
    mask: bool = True
    labels: bool = True
    overlay: bool = False
    measurements: bool = True


@dataclass
class BatchSummary:
    total: int
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    outputs: Dict[int, List[str]] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)


def units_from_paths(
    seg_paths: Sequence[str],
    meas_paths: Optional[Sequence[str]] = None,
    all_timepoints: bool = False,
) -> List[PairedUnit]:
    """Pair segmentation files with measurement files 1:1 (all channels measured)."""
    seg = [p for p in seg_paths if p]
    if not meas_paths:
        return [PairedUnit(SegUnit(p)) for p in seg]
    meas = [p for p in meas_paths if p]
    if len(seg) != len(meas):
        raise InvalidInputError(
            f"File count mismatch: {len(seg)} segmentation vs {len(meas)} measurement files")
    return [PairedUnit(SegUnit(s), MeasUnit(m, all_timepoints=all_timepoints)) for s, m in zip(seg, meas)]


def plan_frames(meas: MeasUnit, metadata: SeriesMetadata) -> List[FrameSpec]:
    """(channel, time) frames to measure: every selected channel x (all | first) timepoints."""
    size_c = max(1, metadata.size_c)
    channels = tuple(range(size_c)) if meas.channels is None else tuple(meas.channels)
    if not channels:
        raise InvalidInputError("No measurement channels selected.")
    t_end = max(1, metadata.size_t) if meas.all_timepoints else 1
    frames: List[FrameSpec] = []
    for c in channels:
        if c < 0 or c >= size_c:
            raise InvalidInputError(f"Measurement channel index out of range: {c + 1}")
        for t in range(t_end):
            frames.append(FrameSpec(c, t))
    return frames


def _stem(path: str) -> str:
    name = os.path.basename(path)
    dot = name.rfind(".")
    return name[:dot] if dot > 0 else (name or "image")


def _measUnitFor(unit: PairedUnit) -> MeasUnit:
    if unit.meas is not None:
        return unit.meas
    return MeasUnit(unit.seg.source, unit.seg.series, (unit.seg.channel,), False)


def build_unit_base_name(unit: PairedUnit, index: int) -> str:
    """Deterministic output prefix for a unit (index is 0-based)."""
    seg = unit.seg
    meas = _measUnitFor(unit)
    seg_base = f"{_stem(seg.source)}_S{seg.series + 1}"
    same_source = os.path.abspath(seg.source) == os.path.abspath(meas.source)
    if same_source and seg.series == meas.series:
        return seg_base
    return f"pair{index + 1}_{seg_base}__{_stem(meas.source)}_S{meas.series + 1}"


# ---------- Output bookkeeping ----------

class _UnitOutputs:
    """Paths written for one unit; discard() removes them all."""

    def __init__(self, output_dir: str, base: str):
        self.output_dir = output_dir
        self.base = base
        self.paths: List[str] = []

    def path(self, suffix: str) -> str:
        p = os.path.join(self.output_dir, self.base + suffix)
        self.paths.append(p)
        return p

    def write_image(self, suffix: str, img: np.ndarray) -> str:
        p = self.path(suffix)
        if not cv2.imwrite(p, img):
            raise OSError(f"Could not write image: {p}")
        return p

    def discard(self) -> None:
        for p in self.paths:
            if os.path.exists(p):
                os.remove(p)
        self.paths = []


# ---------- Worker ----------

def _process_unit(
    index: int,
    total: int,
    unit: PairedUnit,
    params: SegmentationParams,
    reader: PlaneReader,
    output_dir: str,
    save: SaveOptions,
) -> Optional[List[str]]:
    """
    Segment one unit and write its outputs. Returns the written paths, or
    None when the segmentation plane is empty (unit skipped).
    """
    seg = unit.seg
    meas = _measUnitFor(unit)
    outputs = _UnitOutputs(output_dir, build_unit_base_name(unit, index))

    try:
        logger.info("Unit %d/%d seg=%s S%d C%d meas=%s S%d",
                    index + 1, total, os.path.basename(seg.source), seg.series + 1,
                    seg.channel + 1, os.path.basename(meas.source), meas.series + 1)

        seg_img = reader.open_plane(seg.source, seg.series, seg.channel, 0)
        if seg_img is None or np.asarray(seg_img).size == 0:
            logger.warning("Unit %d/%d: empty segmentation plane, skipping", index + 1, total)
            return None

        frames: List[FrameSpec] = []
        if save.measurements:
            meas_meta = reader.series_metadata(meas.source, meas.series)
            if plane_shape(meas_meta) != seg_img.shape[:2]:
                raise InvalidInputError(
                    f"XY size mismatch: seg={os.path.basename(seg.source)} "
                    f"{seg_img.shape[1]}x{seg_img.shape[0]} vs meas={os.path.basename(meas.source)} "
                    f"{meas_meta.size_x}x{meas_meta.size_y}")
            frames = plan_frames(meas, meas_meta)

        result = runSegmentationPipeline(seg_img, params)

        if save.mask:
            outputs.write_image("_mask.tif", result.mask)
        if save.labels:
            outputs.write_image("_labels.tif", result.labels)
        if save.overlay:
            overlay = createLabelOverlay(seg_img, result.labels, params.label_colormap, params.overlay_alpha)
            outputs.write_image("_overlay.tif", overlay)

        single = len(frames) == 1
        for frame in frames:
            logger.debug("Measure unit=%d file=%s S%d C%d T%d", index + 1,
                         os.path.basename(meas.source), meas.series + 1,
                         frame.channel + 1, frame.time + 1)
            plane = reader.open_plane(meas.source, meas.series, frame.channel, frame.time)
            props = measure_regions(result.labels, plane, image_index=index)
            suffix = ("_measurements.csv" if single
                      else f"_C{frame.channel + 1}_T{frame.time + 1}_measurements.csv")
            save_props_csv(outputs.path(suffix), props)

        logger.info("Unit %d/%d: %d regions", index + 1, total, result.region_count)
        return list(outputs.paths)
    except RunCancelled:
        outputs.discard()
        raise
    except Exception as e:
        outputs.discard()
        raise PerUnitProcessingError(index, str(e)) from e


# ---------- Public API ----------

def process_batch(
    units: Sequence[PairedUnit],
    params: SegmentationParams | Dict[str, Any] | None = None,
    output_dir: Optional[str] = None,
    reader: Optional[PlaneReader] = None,
    save: Optional[SaveOptions] = None,
    progress_callback: Optional[ProgressCallback] = None,
) -> BatchSummary:
    """
    Segment every unit in order and write its outputs to `output_dir`.

    Setup problems (no output dir, no units, unreadable container formats,
    bad params) raise before any unit runs. Per-unit failures are logged and
    counted; the batch continues with the next unit.
    """
    if not output_dir:
        raise FatalSetupError("No output directory selected.")
    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as e:
        raise FatalSetupError(f"Could not create output directory: {output_dir}") from e
    if not os.path.isdir(output_dir):
        raise FatalSetupError(f"Output path is not a directory: {output_dir}")
    if not units:
        raise FatalSetupError("No input units provided.")

    # batch runs never pause, and measure per frame below instead of in the pipeline
    p = coerce_params(params).replace(pause_for_threshold=False, measure=False)
    save = save or SaveOptions()

    if reader is None:
        for unit in units:
            checkReadable(unit.seg.source)
            if unit.meas is not None:
                checkReadable(unit.meas.source)

    n = len(units)
    summary = BatchSummary(total=n)
    logger.info("Starting batch: units=%d", n)
    logger.info("Output dir: %s", os.path.abspath(output_dir))

    with ExitStack() as stack:
        if reader is None:
            reader = stack.enter_context(ImagePlaneReader())
        for i, unit in enumerate(units):
            try:
                written = _process_unit(i, n, unit, p, reader, output_dir, save)
            except PerUnitProcessingError as e:
                summary.failed += 1
                summary.errors[i] = str(e)
                logger.exception("Unit %d/%d failed: %s", i + 1, n, e)
            else:
                if written is None:
                    summary.skipped += 1
                else:
                    summary.processed += 1
                    summary.outputs[i] = written

            if progress_callback:
                progress_callback(i + 1, n)

    logger.info("Done. processed=%d skipped=%d failed=%d",
                summary.processed, summary.skipped, summary.failed)
    return summary

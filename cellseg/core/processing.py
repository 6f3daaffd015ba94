# cellseg/core/processing.py
# Core segmentation algorithms - pure callables with no GUI dependencies
# Safe for headless testing and batch use

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .components import Component, ComponentStats, ComponentView, findForegroundComponents, forEachForegroundComponent
from .edges import EdgeDetector, computeEdges
from .errors import InvalidInputError
from .measurement import CellProps, measure_regions
from .params import SegmentationParams, coerce_params, resolveThresholdMethod

logger = logging.getLogger(__name__)

# (img8, auto_threshold) -> None to keep it, or a replacement threshold.
# May block indefinitely; raise RunCancelled to abort the run.
ThresholdAck = Callable[[np.ndarray, float], Optional[float]]

LABEL_MAX = int(np.iinfo(np.uint16).max)

# --------------------- Internal helpers ---------------------------

def _forceOdd(k: int) -> int:
    k = int(max(1, k))
    return k if k % 2 == 1 else k + 1


def _prepGray(src) -> np.ndarray:
    img = src
    if img.ndim == 3:
        img = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    if img.dtype != np.uint8:
        img = cv2.normalize(img.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return img


def _asMask(binary: np.ndarray) -> np.ndarray:
    """0/1 uint8 copy of a binary raster (nonzero = foreground)."""
    if binary.ndim != 2:
        raise InvalidInputError(f"binary raster must be 2-D, got shape {binary.shape}")
    return (binary != 0).astype(np.uint8)


def _localMaxima(dist: np.ndarray, minDist: int, minVal: float, tolerance: float = 0.5) -> np.ndarray:
    """Binary map of local maxima using dilation-and-compare with min distance suppression.
    Pixels within `tolerance` of the neighbourhood maximum count as peak, so
    near-flat crests merge into one marker."""
    if minDist < 1:
        minDist = 1
    k = int(minDist)
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (k, k))
    dil = cv2.dilate(dist, kernel)
    peaks = (dist >= dil - max(0.0, float(tolerance))) & (dist >= minVal)
    return peaks.astype(np.uint8)


# --------------------- Thresholding -------------------------------

def autoThreshold(img8: np.ndarray, method: str = "Default") -> float:
    """Global auto-threshold level for an 8-bit image."""
    m = resolveThresholdMethod(method)
    if m in ("Default", "Otsu"):
        t, _ = cv2.threshold(img8, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    elif m == "Triangle":
        t, _ = cv2.threshold(img8, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_TRIANGLE)
    elif m == "Mean":
        t = float(np.mean(img8))
    else:  # Percentile: half of the pixels end up above the level
        t = float(np.percentile(img8, 50.0))
    return float(t)


def thresholdImage(
    img: np.ndarray,
    method: str = "Default",
    darkObjects: bool = True,
    thresholdAck: Optional[ThresholdAck] = None,
) -> Tuple[np.ndarray, Dict[str, Any]]:
    """
    Binarize with a named global auto-threshold.
    Returns (binary_uint8, meta). Foreground = 255.

    darkObjects=True keeps the upper range (pixel > level); False keeps
    the lower range (pixel <= level).
    """
    img8 = _prepGray(img)
    m = resolveThresholdMethod(method)
    t = autoThreshold(img8, m)
    meta: Dict[str, Any] = {"method": m, "darkObjects": bool(darkObjects), "autoThresh": t}

    if thresholdAck is not None:
        logger.info("Waiting for threshold acknowledgment (auto level %.1f)", t)
        adjusted = thresholdAck(img8, t)
        if adjusted is not None:
            t = float(np.clip(float(adjusted), 0, 255))
            logger.info("Threshold adjusted to %.1f", t)

    meta["thresh"] = t
    if darkObjects:
        binary = (img8 > t)
    else:
        binary = (img8 <= t)
    return (binary.astype(np.uint8) * 255), meta


# -------------------------- Hole filling --------------------------

def fillHoles(binary: np.ndarray) -> np.ndarray:
    """Fill internal holes in a binary mask (255=FG).
    Background not 4-connected to the image border becomes foreground."""
    mask = _asMask(binary)
    h, w = mask.shape
    flood = mask.copy()
    pad = cv2.copyMakeBorder(flood, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
    cv2.floodFill(pad, None, (0, 0), 1)  # fill from padded corner
    bg = pad[1:h+1, 1:w+1]
    holes = (bg == 0) & (mask == 0)
    out = mask.copy()
    out[holes] = 1
    return (out * 255).astype(np.uint8)


def closeBinary(binary: np.ndarray, pad: int = 1) -> np.ndarray:
    """Morphological close (3x3 square) on a canvas padded with background, cropped back."""
    mask = _asMask(binary) * 255
    h, w = mask.shape
    padded = cv2.copyMakeBorder(mask, pad, pad, pad, pad, cv2.BORDER_CONSTANT, value=0)
    krn = np.ones((3, 3), np.uint8)
    closed = cv2.morphologyEx(padded, cv2.MORPH_CLOSE, krn,
                              borderType=cv2.BORDER_CONSTANT, borderValue=0)
    return closed[pad:pad+h, pad:pad+w].copy()


def invertBinary(binary: np.ndarray) -> np.ndarray:
    return ((_asMask(binary) == 0).astype(np.uint8) * 255)


def orBinary(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Pixelwise OR of two binary rasters (nonzero => 255)."""
    if a.shape != b.shape:
        raise InvalidInputError(f"orBinary shape mismatch: {a.shape} vs {b.shape}")
    return (((a != 0) | (b != 0)).astype(np.uint8) * 255)


def removeBorderComponents(binary: np.ndarray, minBorderCount: int = 3) -> np.ndarray:
    """Clear 4-connected components touching at least `minBorderCount` image edges."""
    if not 1 <= int(minBorderCount) <= 4:
        raise InvalidInputError(f"minBorderCount must be in [1,4], got {minBorderCount}")
    pix = _asMask(binary) * 255  # private copy, cleared in place

    def _handle(c: ComponentView) -> None:
        if c.stats.border_count >= minBorderCount:
            c.clear()

    forEachForegroundComponent(pix, _handle, connectivity=4)
    return pix


def fillEdgeOpenHolesHybrid(edgeMask: np.ndarray, minBorderCount: int = 3) -> np.ndarray:
    """
    Close cell interiors in an edge mask, including cells whose outline is
    open towards the image border.

    I1 = close(edgeMask) on a 1px padded canvas
    I2 = fillHoles(I1)
    I3 = invert(I2); I4 = fillHoles(I3)
    I5 = I4 without components touching >= minBorderCount edges (outer background)
    out = I2 OR I5
    """
    if not 1 <= int(minBorderCount) <= 4:
        raise InvalidInputError(f"minBorderCount must be in [1,4], got {minBorderCount}")

    I1 = closeBinary(edgeMask, pad=1)
    I2 = fillHoles(I1)
    del I1
    I3 = invertBinary(I2)
    I4 = fillHoles(I3)
    del I3
    I5 = removeBorderComponents(I4, minBorderCount)
    del I4
    return orBinary(I2, I5)


# -------------------------- Separation ----------------------------

def watershedSeparate(
    binary: np.ndarray,
    distanceBlurK: int = 3,
    peakMinDistance: int = 9,
    peakRelThreshold: float = 0.2,
    connectivity: int = 8,
    peakTolerance: float = 0.5,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Watershed separation on binary FG. Returns (labels, watershed_input8u_for_debug).
    labels: int32, 0=background, 1..N objects.

    Only connected blobs holding two or more distance peaks are flooded;
    a blob with a single peak (or none) keeps one label.
    """
    # Distance transform inside FG
    fg = _asMask(binary)
    dist = cv2.distanceTransform(fg, cv2.DIST_L2, 5)
    if distanceBlurK and distanceBlurK >= 3:
        dist = cv2.GaussianBlur(dist, (_forceOdd(distanceBlurK), _forceOdd(distanceBlurK)), 0)

    # Handle NaN/Inf and normalize for thresholds
    dist = np.nan_to_num(dist, nan=0.0, posinf=0.0, neginf=0.0)
    dist_max = float(dist.max()) if dist.size else 0.0
    if dist_max > 1e-9:
        distNorm = dist / dist_max
    else:
        distNorm = np.zeros_like(dist, dtype=np.float32)

    minVal = float(np.clip(peakRelThreshold, 0.0, 1.0)) * max(dist_max, 1e-9)
    peaks = _localMaxima(dist, minDist=max(1, int(peakMinDistance)), minVal=minVal,
                         tolerance=peakTolerance)
    peaks[fg == 0] = 0

    # One label per FG blob; blobs with a single marker are final
    nBlobs, blobs = cv2.connectedComponents(fg, connectivity=connectivity)
    blobs = blobs.astype(np.int32)
    num, markers = cv2.connectedComponents(peaks, connectivity=connectivity)
    markers = markers.astype(np.int32)

    # Inverted normalized distance in 0..127 inside FG, background 255.
    # Every FG step is below the FG->background step, so basins fill their
    # blob before flooding can cross the background.
    invDist8u = np.full(fg.shape, 255, dtype=np.uint8)
    invDist8u[fg > 0] = (127.0 * (1.0 - distNorm[fg > 0])).astype(np.uint8)

    if num <= 2:
        return blobs, invDist8u

    onPeak = peaks > 0
    pairs = np.unique(np.stack([markers[onPeak], blobs[onPeak]], axis=1), axis=0)
    markersPerBlob = np.bincount(pairs[:, 1], minlength=nBlobs)
    markersPerBlob[0] = 0
    splitBlob = markersPerBlob >= 2
    if not splitBlob.any():
        return blobs, invDist8u

    inSplit = splitBlob[blobs]
    markers[~(inSplit & onPeak)] = 0

    # cv2.watershed marks the outermost pixel ring as boundary; pad so objects
    # touching the image edge keep their edge pixels
    h, w = fg.shape
    wsImage = cv2.cvtColor(invDist8u, cv2.COLOR_GRAY2BGR)
    wsPad = cv2.copyMakeBorder(wsImage, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=(255, 255, 255))
    markersPad = cv2.copyMakeBorder(markers, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
    cv2.watershed(wsPad, markersPad)  # modifies markers in place; -1 are boundaries
    flooded = markersPad[1:h+1, 1:w+1]

    # split blobs take watershed labels, offset past the blob ids
    labels = blobs.copy()
    labels[inSplit] = np.where(flooded[inSplit] > 0, flooded[inSplit] + nBlobs, 0)
    labels[fg == 0] = 0
    return labels.astype(np.int32), invDist8u


def separateTouchingLabels(labels: np.ndarray) -> np.ndarray:
    """
    Binary mask (0/255) of `labels` with a background ridge wherever two
    different labels meet, so they stay apart under 4- and 8-connectivity.
    """
    labs = labels.astype(np.int32, copy=False)
    cut = np.zeros(labs.shape, dtype=bool)
    fg = labs > 0

    def _mark(a: np.ndarray, b: np.ndarray, fa: np.ndarray, fb: np.ndarray) -> np.ndarray:
        return fa & fb & (a != b)

    cut[:, :-1] |= _mark(labs[:, :-1], labs[:, 1:], fg[:, :-1], fg[:, 1:])
    cut[:-1, :] |= _mark(labs[:-1, :], labs[1:, :], fg[:-1, :], fg[1:, :])
    cut[:-1, :-1] |= _mark(labs[:-1, :-1], labs[1:, 1:], fg[:-1, :-1], fg[1:, 1:])
    cut[:-1, 1:] |= _mark(labs[:-1, 1:], labs[1:, :-1], fg[:-1, 1:], fg[1:, :-1])

    return ((fg & ~cut).astype(np.uint8) * 255)


def watershedSplit(
    binary: np.ndarray,
    distanceBlurK: int = 3,
    peakMinDistance: int = 9,
    peakRelThreshold: float = 0.2,
    connectivity: int = 8
) -> np.ndarray:
    """Split touching blobs; returns a binary mask with separating ridge lines."""
    labels, _ = watershedSeparate(
        binary,
        distanceBlurK=distanceBlurK,
        peakMinDistance=peakMinDistance,
        peakRelThreshold=peakRelThreshold,
        connectivity=connectivity,
    )
    return separateTouchingLabels(labels)


# -------------------------- Regions & labels ----------------------

@dataclass(frozen=True, eq=False)
class RegionRecord:
    """A retained component and its 1-based label id."""

    label: int
    component: Component

    @property
    def stats(self) -> ComponentStats:
        return self.component.stats

    @property
    def area(self) -> int:
        return self.component.area


def filterRegions(components: Sequence[Component], minArea: int = 0) -> List[RegionRecord]:
    """Drop components with area < minArea; label the rest 1..N in discovery order."""
    if int(minArea) < 0:
        raise InvalidInputError(f"minArea must be >= 0, got {minArea}")
    kept = [c for c in components if c.area >= minArea]
    return [RegionRecord(label=i + 1, component=c) for i, c in enumerate(kept)]


def buildLabelImage(regions: Sequence[RegionRecord], shape: Tuple[int, int]) -> np.ndarray:
    """uint16 label image: each region painted with its id, 0 elsewhere."""
    h, w = int(shape[0]), int(shape[1])
    if len(regions) > LABEL_MAX:
        raise InvalidInputError(f"Too many regions for a 16-bit label image: {len(regions)}")
    labels = np.zeros((h, w), dtype=np.uint16)
    flat = labels.reshape(-1)
    for r in regions:
        if r.component.width != w or r.component.height != h:
            raise InvalidInputError(
                f"Region {r.label} comes from a {r.component.width}x{r.component.height} raster, "
                f"expected {w}x{h}")
        flat[r.component.pixels] = r.label
    return labels


def labelRegions(binary: np.ndarray, minArea: int = 0, connectivity: int = 4) -> Tuple[np.ndarray, List[RegionRecord]]:
    """Components of `binary` -> area filter -> (uint16 labels, regions)."""
    comps = findForegroundComponents(np.ascontiguousarray(binary), connectivity=connectivity)
    regions = filterRegions(comps, minArea)
    return buildLabelImage(regions, binary.shape[:2]), regions


# -------------------------- Pipeline ------------------------------

@dataclass
class SegmentationResult:
    mask: Optional[np.ndarray]
    labels: Optional[np.ndarray]
    region_count: int
    regions: List[RegionRecord] = field(default_factory=list)
    measurements: Optional[List[CellProps]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    steps: Dict[str, np.ndarray] = field(default_factory=dict)
    no_image: bool = False

    @classmethod
    def empty(cls) -> "SegmentationResult":
        return cls(mask=None, labels=None, region_count=0, no_image=True)


def runSegmentationPipeline(
    image: Optional[np.ndarray],
    params: SegmentationParams | Dict[str, Any] | None = None,
    thresholdAck: Optional[ThresholdAck] = None,
    measureSource: Optional[np.ndarray] = None,
    keepSteps: bool = False,
) -> SegmentationResult:
    """
    Edge filter -> threshold -> hybrid hole fill -> watershed -> labels.

    The input image is never modified. With keepSteps=True, copies of the
    intermediate rasters are returned in result.steps for display.
    """
    p = coerce_params(params)

    if image is None or np.asarray(image).size == 0:
        logger.warning("No image provided; nothing to segment")
        return SegmentationResult.empty()
    img = np.asarray(image)
    if img.ndim not in (2, 3):
        raise InvalidInputError(f"Expected a 2-D grayscale or 3-D color image, got shape {img.shape}")
    if p.pause_for_threshold and thresholdAck is None:
        raise InvalidInputError("pause_for_threshold requires a thresholdAck callback")

    steps: Dict[str, np.ndarray] = {}
    detector = EdgeDetector.fromLabel(p.edge_method)

    # 1) Edge detection
    gradient = computeEdges(img, detector)
    if keepSteps:
        steps["gradient"] = gradient.copy()

    # 2) Threshold (+ optional blocking acknowledgment)
    binary, meta = thresholdImage(
        gradient, p.threshold_method, p.dark_objects,
        thresholdAck if p.pause_for_threshold else None)
    del gradient
    if keepSteps:
        steps["edge_mask"] = binary.copy()

    # 3) Hybrid hole fill
    filled = fillEdgeOpenHolesHybrid(binary, p.min_border_count)
    del binary
    if keepSteps:
        steps["filled"] = filled.copy()

    # 4) Watershed
    if p.watershed:
        mask = watershedSplit(
            filled,
            distanceBlurK=int(p.distance_blur_k),
            peakMinDistance=int(p.peak_min_distance),
            peakRelThreshold=float(p.peak_rel_threshold),
            connectivity=int(p.connectivity),
        )
    else:
        mask = filled
    del filled
    if keepSteps:
        steps["watershed"] = mask.copy()

    # 5) Components -> area filter -> labels
    labels, regions = labelRegions(mask, minArea=int(p.min_area), connectivity=int(p.connectivity))

    measurements = None
    if measureSource is not None or p.measure:
        source = img if measureSource is None else np.asarray(measureSource)
        measurements = measure_regions(labels, source)

    meta["edgeMethod"] = detector.label
    logger.info("Segmented %dx%d image: %d regions (edge=%s, method=%s, thresh=%.1f)",
                img.shape[1], img.shape[0], len(regions), detector.label,
                meta["method"], meta["thresh"])

    return SegmentationResult(
        mask=mask,
        labels=labels,
        region_count=len(regions),
        regions=regions,
        measurements=measurements,
        meta=meta,
        steps=steps,
    )

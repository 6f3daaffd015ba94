# cellseg/core/measurement.py
# Per-cell measurements on a measurement source + region boundaries + CSV export
# Pure callables with no GUI dependencies

from __future__ import annotations

import csv
import math
from dataclasses import asdict, dataclass, fields
from typing import Dict, Iterable, List, Optional

import cv2
import numpy as np

from .errors import InvalidInputError

# ---------- Data Model ----------

@dataclass
class CellProps:
    # identity
    image_index: int
    label: int

    # pixel-space geometry
    area_px: int
    perimeter_px: float
    centroid_x: float
    centroid_y: float
    bbox_x0: int
    bbox_y0: int
    bbox_x1: int  # exclusive
    bbox_y1: int  # exclusive
    touches_border: bool

    # intensity on the measurement source
    mean: float
    std_dev: float
    min: float
    max: float
    int_den: float       # area * mean
    raw_int_den: float   # sum of pixel values

    # shape descriptors (pixels)
    eq_diam_px: float                 # sqrt(4A/pi)
    circularity: float                # 4*pi*A / P^2  (1.0 => circle)
    major_axis_px: Optional[float]    # from fitEllipse if available
    minor_axis_px: Optional[float]
    aspect_ratio: Optional[float]     # major/minor
    orientation_deg: Optional[float]  # ellipse major-axis angle
    feret_max_px: Optional[float]     # max caliper (approx via hull)
    feret_min_px: Optional[float]     # min caliper (approx via minAreaRect)

    # scaled (optional)
    units_per_px: Optional[float] = None
    area_units2: Optional[float] = None
    perimeter_units: Optional[float] = None
    eq_diam_units: Optional[float] = None
    feret_max_units: Optional[float] = None
    feret_min_units: Optional[float] = None
    unit_name: Optional[str] = None


# ---------- Helpers ----------

def _sourceGray(source: np.ndarray) -> np.ndarray:
    src = np.asarray(source)
    if src.ndim == 3:
        if src.shape[2] == 1:
            src = src[:, :, 0]
        else:
            src = cv2.cvtColor(src.astype(np.float32), cv2.COLOR_BGR2GRAY)
    return src.astype(np.float64, copy=False)


def _scaleFrom(scale: Optional[Dict[str, float | str]]):
    if not isinstance(scale, dict) or "unitsPerPx" not in scale:
        return None, None
    try:
        upx = float(scale["unitsPerPx"])
    except (TypeError, ValueError):
        upx = None
    return upx, str(scale.get("unitName", "") or "")


def _ellipseAxes(pts: np.ndarray):
    """(major, minor, orientation_deg) from contour points, best effort."""
    if pts.shape[0] >= 5:
        (_, _), (w, h), angle = cv2.fitEllipse(pts)
        if w >= h:
            return float(w), float(h), float(angle)
        return float(h), float(w), float((angle + 90.0) % 180.0)
    if pts.shape[0] < 2:
        return None, None, None
    # PCA fallback for tiny contours
    mean, eigvecs, eigvals = cv2.PCACompute2(pts.astype(np.float32), mean=None)
    d1 = 4.0 * float(np.sqrt(max(eigvals[0, 0], 0.0)))
    d2 = 4.0 * float(np.sqrt(max(eigvals[1, 0], 0.0))) if eigvals.shape[0] > 1 else 0.0
    vx, vy = eigvecs[0]
    return max(d1, d2), min(d1, d2), float((math.degrees(math.atan2(vy, vx)) + 360.0) % 180.0)


def _feret(pts: np.ndarray):
    """(max caliper, min caliper) from the convex hull."""
    if pts.shape[0] < 2:
        return None, None
    hull = cv2.convexHull(pts).reshape(-1, 2)
    (_, _), (w_rect, h_rect), _ = cv2.minAreaRect(hull)
    feret_min = float(min(w_rect, h_rect))
    # if hull is huge, sub-sample for speed
    if len(hull) > 1200:
        hull = hull[np.linspace(0, len(hull) - 1, 600, dtype=int)]
    diffs = hull[None, :, :].astype(np.float64) - hull[:, None, :].astype(np.float64)
    d2 = diffs[:, :, 0] ** 2 + diffs[:, :, 1] ** 2
    return float(np.sqrt(d2.max())), feret_min


# ---------- Public API ----------

def region_boundaries(labels: np.ndarray) -> Dict[int, np.ndarray]:
    """
    Outer boundary of every label > 0 as an (N,2) int array of (x, y) points.
    Multi-part labels return the points of all parts stacked.
    """
    if labels is None:
        return {}
    if labels.ndim != 2:
        raise InvalidInputError("labels must be HxW")
    out: Dict[int, np.ndarray] = {}
    scratch = np.zeros(labels.shape, dtype=np.uint8)
    for lbl in np.unique(labels):
        if lbl <= 0:
            continue
        np.equal(labels, lbl, out=scratch.view(bool))
        cnts, _ = cv2.findContours(scratch, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
        if cnts:
            out[int(lbl)] = np.vstack(cnts).reshape(-1, 2)
    return out


def measure_regions(
    labels: np.ndarray,
    source: np.ndarray,
    image_index: int = 0,
    scale: Optional[Dict[str, float | str]] = None
) -> List[CellProps]:
    """
    Per-cell metrics for a label image, intensities read from `source`.
    - labels: HxW int labels, 0 = background, >0 = cell id
    - source: HxW (or HxWx3) raster of the same size, e.g. the segmented image
    - scale: optionally {"unitsPerPx": float, "unitName": str}
    Returns one CellProps per label>0, in label order.
    """
    if labels is None:
        return []
    if labels.ndim != 2:
        raise InvalidInputError("labels must be HxW")
    src = _sourceGray(source)
    if src.shape != labels.shape:
        raise InvalidInputError(
            f"Measurement source shape {src.shape} does not match labels {labels.shape}")

    H, W = labels.shape
    units_per_px, unit_name = _scaleFrom(scale)

    props: List[CellProps] = []
    labs = np.unique(labels)
    labs = labs[labs > 0]
    if labs.size == 0:
        return props

    # pre-alloc a uint8 scratch for contours
    scratch = np.zeros(labels.shape, dtype=np.uint8)

    for lbl in labs:
        np.equal(labels, lbl, out=scratch.view(bool))  # scratch is 0/1
        sel = scratch.view(bool)
        area = int(np.count_nonzero(sel))
        if area == 0:
            continue

        vals = src[sel]
        mean = float(vals.mean())
        raw = float(vals.sum())

        # perimeter via external contours (holes ignored)
        cnts, _ = cv2.findContours(scratch, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_NONE)
        perimeter = float(sum(cv2.arcLength(c, True) for c in cnts))

        ys, xs = np.nonzero(sel)
        cx = float(xs.mean())
        cy = float(ys.mean())
        x0 = int(xs.min()); x1 = int(xs.max()) + 1  # exclusive
        y0 = int(ys.min()); y1 = int(ys.max()) + 1
        touches_border = (x0 == 0) or (y0 == 0) or (x1 >= W) or (y1 >= H)

        eq_d = math.sqrt((4.0 * area) / math.pi)
        circ = (4.0 * math.pi * area) / (perimeter * perimeter) if perimeter > 0 else float("nan")

        major = minor = orient = None
        feret_max = feret_min = None
        if cnts:
            pts = np.vstack(cnts).reshape(-1, 2)
            major, minor, orient = _ellipseAxes(pts)
            feret_max, feret_min = _feret(pts)
        aspect = float(major / minor) if (major and minor and minor > 0) else None

        rec = CellProps(
            image_index=image_index,
            label=int(lbl),
            area_px=area,
            perimeter_px=perimeter,
            centroid_x=cx, centroid_y=cy,
            bbox_x0=x0, bbox_y0=y0, bbox_x1=x1, bbox_y1=y1,
            touches_border=bool(touches_border),
            mean=mean,
            std_dev=float(vals.std(ddof=1)) if area > 1 else 0.0,
            min=float(vals.min()),
            max=float(vals.max()),
            int_den=float(area) * mean,
            raw_int_den=raw,
            eq_diam_px=eq_d,
            circularity=circ,
            major_axis_px=major, minor_axis_px=minor,
            aspect_ratio=aspect,
            orientation_deg=orient,
            feret_max_px=feret_max,
            feret_min_px=feret_min,
            units_per_px=units_per_px,
            unit_name=unit_name,
        )

        if units_per_px and units_per_px > 0:
            upx = float(units_per_px)
            rec.area_units2 = float(area) * (upx ** 2)
            rec.perimeter_units = perimeter * upx
            rec.eq_diam_units = eq_d * upx
            if rec.feret_max_px:   rec.feret_max_units = rec.feret_max_px * upx
            if rec.feret_min_px:   rec.feret_min_units = rec.feret_min_px * upx

        props.append(rec)

    return props


def save_props_csv(path: str, props: Iterable[CellProps]) -> None:
    """
    Write all properties to a CSV (flat columns, no nesting).
    An empty list still writes the header row.
    """
    header = [f.name for f in fields(CellProps)]
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=header)
        writer.writeheader()
        for p in props:
            writer.writerow(asdict(p))

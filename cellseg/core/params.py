# cellseg/core/params.py
# Parameter bundle for one segmentation run + JSON config loading

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from .errors import InvalidInputError
from .overlay import resolveColormap

THRESHOLD_METHODS = ("Default", "Otsu", "Triangle", "Mean", "Percentile")

# --------------------- Defaults (edit freely) ---------------------
DEFAULTS: Dict[str, Dict[str, float | int | bool | str]] = {
    "segmentation": {
        "min_area": 500,                   # px; smaller regions are dropped
        "threshold_method": "Default",     # see THRESHOLD_METHODS
        "dark_objects": True,
        "pause_for_threshold": False,      # needs a thresholdAck callback
        "edge_method": "Sobel (Gradient)",
        "min_border_count": 3,             # 1..4 image edges
        "connectivity": 4,                 # 4 or 8 for labeling
        "measure": True,
    },
    "watershed": {
        "watershed": True,
        "distance_blur_k": 3,    # 0=off; smoothing for distance
        "peak_min_distance": 9,  # local-max suppression radius (px)
        "peak_rel_threshold": 0.2,  # 0..1 relative to max distance
    },
    "output": {
        "overlay_alpha": 0.5,
        "label_colormap": "Rainbow RGB",
    },
}
# ------------------------------------------------------------------


def _flatDefaults() -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for section in DEFAULTS.values():
        flat.update(section)
    return flat


def resolveThresholdMethod(method: Optional[str]) -> str:
    """Canonical threshold method name; empty means "Default", matching ignores case."""
    if method is None or not str(method).strip():
        return "Default"
    key = str(method).strip().lower()
    for m in THRESHOLD_METHODS:
        if m.lower() == key:
            return m
    raise InvalidInputError(
        f"Unknown threshold method: {method!r} (expected one of {', '.join(THRESHOLD_METHODS)})")


@dataclass
class SegmentationParams:
    min_area: int = 500
    threshold_method: str = "Default"
    dark_objects: bool = True
    pause_for_threshold: bool = False
    edge_method: str = "Sobel (Gradient)"
    min_border_count: int = 3
    connectivity: int = 4
    measure: bool = True

    watershed: bool = True
    distance_blur_k: int = 3
    peak_min_distance: int = 9
    peak_rel_threshold: float = 0.2

    overlay_alpha: float = 0.5
    label_colormap: str = "Rainbow RGB"

    def validate(self) -> "SegmentationParams":
        """Raise InvalidInputError on the first out-of-range field."""
        if int(self.min_area) < 0:
            raise InvalidInputError(f"min_area must be >= 0, got {self.min_area}")
        if not 1 <= int(self.min_border_count) <= 4:
            raise InvalidInputError(
                f"min_border_count must be in [1,4], got {self.min_border_count}")
        if int(self.connectivity) not in (4, 8):
            raise InvalidInputError(f"connectivity must be 4 or 8, got {self.connectivity}")
        if not 0.0 <= float(self.overlay_alpha) <= 1.0:
            raise InvalidInputError(f"overlay_alpha must be in [0,1], got {self.overlay_alpha}")
        if not 0.0 <= float(self.peak_rel_threshold) <= 1.0:
            raise InvalidInputError(
                f"peak_rel_threshold must be in [0,1], got {self.peak_rel_threshold}")
        if int(self.peak_min_distance) < 1:
            raise InvalidInputError(
                f"peak_min_distance must be >= 1, got {self.peak_min_distance}")
        if int(self.distance_blur_k) < 0:
            raise InvalidInputError(
                f"distance_blur_k must be >= 0, got {self.distance_blur_k}")
        resolveThresholdMethod(self.threshold_method)
        resolveColormap(self.label_colormap)
        return self

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]] = None) -> "SegmentationParams":
        """Build params from DEFAULTS overlaid with `values`.

        `values` may be flat ({"min_area": 10}) or sectioned like DEFAULTS
        ({"segmentation": {"min_area": 10}}). Unknown keys are rejected.
        """
        merged = _flatDefaults()
        known = {f.name for f in fields(cls)}
        for key, val in (values or {}).items():
            if key in DEFAULTS and isinstance(val, dict):
                items = val.items()
            else:
                items = [(key, val)]
            for k, v in items:
                if k not in known:
                    raise InvalidInputError(f"Unknown parameter: {k}")
                merged[k] = v
        return cls(**merged).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes: Any) -> "SegmentationParams":
        values = self.to_dict()
        values.update({k: v for k, v in changes.items() if v is not None})
        return SegmentationParams.from_dict(values)


def load_params(path: str) -> SegmentationParams:
    """Load a JSON parameter file (flat or sectioned) into SegmentationParams."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise InvalidInputError(f"Invalid parameter file {path}: {e}") from e
    if not isinstance(data, dict):
        raise InvalidInputError(f"Parameter file {path} must contain a JSON object")
    return SegmentationParams.from_dict(data)


def coerce_params(params: SegmentationParams | Dict[str, Any] | None) -> SegmentationParams:
    if params is None:
        return SegmentationParams().validate()
    if isinstance(params, SegmentationParams):
        return params.validate()
    if isinstance(params, dict):
        return SegmentationParams.from_dict(params)
    raise InvalidInputError(f"Unsupported params type: {type(params).__name__}")

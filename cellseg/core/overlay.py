# cellseg/core/overlay.py
# Label colorization + alpha compositing for visualization
# Color rasters are (H,W,3) uint8 in OpenCV BGR order

from __future__ import annotations

from typing import Optional

import cv2
import numpy as np

from .errors import InvalidInputError

DEFAULT_COLORMAP = "Rainbow RGB"

# display name -> OpenCV colormap id; None means a generated palette
COLORMAPS = {
    "rainbow rgb": cv2.COLORMAP_RAINBOW,
    "16_colors": cv2.COLORMAP_JET,
    "glasbey": None,
    "fire": cv2.COLORMAP_HOT,
    "ice": cv2.COLORMAP_OCEAN,
    "grays": None,
    "spectrum": cv2.COLORMAP_HSV,
}


def _toBgr8(img: np.ndarray) -> np.ndarray:
    """Gray/BGR raster of any depth -> BGR uint8 (non-8-bit is min-max stretched)."""
    a = np.asarray(img)
    if a.dtype != np.uint8:
        a = cv2.normalize(a.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    if a.ndim == 2:
        return cv2.cvtColor(a, cv2.COLOR_GRAY2BGR)
    if a.ndim == 3 and a.shape[2] == 1:
        return cv2.cvtColor(a[:, :, 0], cv2.COLOR_GRAY2BGR)
    if a.ndim == 3 and a.shape[2] == 4:
        return cv2.cvtColor(a, cv2.COLOR_BGRA2BGR)
    if a.ndim == 3 and a.shape[2] == 3:
        return a.copy()
    raise InvalidInputError(f"Unsupported raster shape for color conversion: {a.shape}")


def _glasbeyPalette(n: int, seed: int = 12345) -> np.ndarray:
    # Stable random palette, index 0 black
    rng = np.random.default_rng(seed)
    palette = (rng.random((n + 1, 3)) * 255).astype(np.uint8)
    palette[0] = (0, 0, 0)
    return palette


def resolveColormap(name: Optional[str]) -> str:
    if name is None or not str(name).strip():
        return DEFAULT_COLORMAP.lower()
    key = str(name).strip().lower()
    if key not in COLORMAPS:
        raise InvalidInputError(
            f"Unknown label colormap: {name!r} (expected one of Rainbow RGB, 16_colors, "
            f"Glasbey, Fire, Ice, Grays, Spectrum)")
    return key


def colorizeLabels(labels: np.ndarray, colormap: Optional[str] = DEFAULT_COLORMAP) -> np.ndarray:
    """
    Colorize an indexed label raster. Label values are stretched over the
    colormap range (label * 255 / max) before lookup.
    Returns BGR uint8. Label 0 gets the colormap's first entry, not
    necessarily black.
    """
    if labels.ndim != 2:
        raise InvalidInputError("labels must be HxW")
    key = resolveColormap(colormap)
    lab = labels.astype(np.int64, copy=False)
    n = int(lab.max()) if lab.size else 0

    if key == "glasbey":
        return _glasbeyPalette(max(n, 0))[np.clip(lab, 0, None)]

    if n > 0:
        idx = np.clip(lab, 0, None) * 255 // n
    else:
        idx = np.zeros_like(lab)
    idx8 = idx.astype(np.uint8)
    if key == "grays":
        return cv2.cvtColor(idx8, cv2.COLOR_GRAY2BGR)
    return cv2.applyColorMap(idx8, COLORMAPS[key])


def alphaBlendRgb(
    base: np.ndarray,
    overlay: np.ndarray,
    zeroMaskSource: Optional[np.ndarray] = None,
    alpha: float = 0.5,
    transparentZeroOverlay: bool = True,
) -> np.ndarray:
    """
    out = base*(1-alpha) + overlay*alpha per channel, rounded.

    With transparentZeroOverlay, pixels where `zeroMaskSource` is 0 keep the
    base color. Without a zero-mask source, pure-black overlay pixels count
    as zero.
    """
    a = float(alpha)
    if not 0.0 <= a <= 1.0:
        raise InvalidInputError(f"alpha must be in [0,1], got {alpha}")
    b = _toBgr8(base)
    o = _toBgr8(overlay)
    if b.shape != o.shape:
        raise InvalidInputError(f"base {b.shape[:2]} and overlay {o.shape[:2]} sizes differ")

    blended = np.floor(b.astype(np.float32) * (1.0 - a) + o.astype(np.float32) * a + 0.5)
    out = np.clip(blended, 0, 255).astype(np.uint8)

    if transparentZeroOverlay:
        if zeroMaskSource is not None:
            z = np.asarray(zeroMaskSource)
            if z.shape[:2] != b.shape[:2]:
                raise InvalidInputError(
                    f"zero-mask source {z.shape[:2]} and base {b.shape[:2]} sizes differ")
            if z.ndim == 3:
                zero = ~np.any(z != 0, axis=2)
            elif np.issubdtype(z.dtype, np.floating):
                zero = np.rint(z) == 0
            else:
                zero = z == 0
        else:
            zero = ~np.any(o != 0, axis=2)
        out[zero] = b[zero]
    return out


def createLabelOverlay(
    image: np.ndarray,
    labels: np.ndarray,
    colormap: Optional[str] = DEFAULT_COLORMAP,
    alpha: float = 0.5,
) -> np.ndarray:
    """Colorize `labels` and blend over `image`; label-0 pixels show the image unchanged."""
    color = colorizeLabels(labels, colormap)
    return alphaBlendRgb(image, color, zeroMaskSource=labels, alpha=alpha, transparentZeroOverlay=True)

# cellseg/core/edges.py
# Edge emphasis filters applied before thresholding - pure callables

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Union

import cv2
import numpy as np

logger = logging.getLogger(__name__)


class EdgeDetector(Enum):
    """Supported edge detectors and their display labels."""

    SOBEL = "Sobel (Gradient)"
    PREWITT = "Prewitt"
    SCHARR = "Scharr"
    LAPLACIAN_3X3 = "Laplacian (3x3)"
    NONE = "None"

    @property
    def label(self) -> str:
        return self.value

    def __str__(self) -> str:
        return self.value

    @classmethod
    def fromLabel(cls, s: Optional[Union[str, "EdgeDetector"]]) -> "EdgeDetector":
        """Resolve a label or enum name case-insensitively.

        Unrecognized input falls back to SOBEL (with a warning), so older
        parameter files keep working.
        """
        if isinstance(s, EdgeDetector):
            return s
        if s is None or not str(s).strip():
            return cls.SOBEL
        key = str(s).strip().lower()
        compact = key.replace("_", "").replace(" ", "")
        for e in cls:
            if key == e.value.lower() or key == e.name.lower() or compact == e.name.lower().replace("_", ""):
                return e
        logger.warning("Unknown edge method %r; using %s", s, cls.SOBEL.value)
        return cls.SOBEL


# 3x3 kernels, all zero-sum
SOBEL_X = np.array([[-1, 0, 1],
                    [-2, 0, 2],
                    [-1, 0, 1]], dtype=np.float32)
PREWITT_X = np.array([[-1, 0, 1],
                      [-1, 0, 1],
                      [-1, 0, 1]], dtype=np.float32)
SCHARR_X = np.array([[-3, 0, 3],
                     [-10, 0, 10],
                     [-3, 0, 3]], dtype=np.float32)
LAPLACIAN_3X3 = np.array([[0, -1, 0],
                          [-1, 4, -1],
                          [0, -1, 0]], dtype=np.float32)

_GRADIENT_KERNELS = {
    EdgeDetector.SOBEL: SOBEL_X,
    EdgeDetector.PREWITT: PREWITT_X,
    EdgeDetector.SCHARR: SCHARR_X,
}


def _toFloatGray(src: np.ndarray) -> np.ndarray:
    img = np.asarray(src)
    if img.ndim == 3:
        if img.shape[2] == 1:
            img = img[:, :, 0]
        else:
            img = cv2.cvtColor(img.astype(np.float32), cv2.COLOR_BGR2GRAY)
    return img.astype(np.float32, copy=True)


def _convolve(img: np.ndarray, kernel: np.ndarray) -> np.ndarray:
    # filter2D correlates; flipping makes it a true convolution
    k = cv2.flip(kernel, -1)
    return cv2.filter2D(img, cv2.CV_32F, k, borderType=cv2.BORDER_REPLICATE)


def applyGradientMagnitude(img: np.ndarray, kx: np.ndarray, ky: Optional[np.ndarray] = None) -> np.ndarray:
    """hypot(img*kx, img*ky). ky defaults to the transpose of kx."""
    if ky is None:
        ky = np.ascontiguousarray(kx.T)
    base = _toFloatGray(img)
    gx = _convolve(base, kx)
    gy = _convolve(base, ky)
    return cv2.magnitude(gx, gy)


def applyLaplacian(img: np.ndarray, kernel: np.ndarray = LAPLACIAN_3X3) -> np.ndarray:
    base = _toFloatGray(img)
    return np.abs(_convolve(base, kernel))


def computeEdges(gray: np.ndarray, detector: Union[EdgeDetector, str, None] = EdgeDetector.SOBEL) -> np.ndarray:
    """
    Edge-emphasis raster for thresholding. Returns float32 (H,W).
    Borders use edge replication for every detector. NONE returns the input values.
    """
    det = EdgeDetector.fromLabel(detector)
    if det is EdgeDetector.NONE:
        return _toFloatGray(gray)
    if det is EdgeDetector.LAPLACIAN_3X3:
        return applyLaplacian(gray, LAPLACIAN_3X3)
    return applyGradientMagnitude(gray, _GRADIENT_KERNELS[det])

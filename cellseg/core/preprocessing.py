# cellseg/core/preprocessing.py
# Image loading and plane access - pure callables with no GUI dependencies

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Tuple

import cv2
import numpy as np

from .errors import InvalidInputError, UnavailableCapabilityError

logger = logging.getLogger(__name__)

# Type aliases for clarity
ImageArray = np.ndarray  # (H,W) grayscale, uint8/uint16/float32

# Vendor containers that need a Bio-Formats style reader
PROPRIETARY_EXTENSIONS = (".nd2", ".czi", ".lif", ".lsm", ".oib", ".oif", ".vsi", ".ims")


def checkReadable(path: str) -> None:
    ext = os.path.splitext(path)[1].lower()
    if ext in PROPRIETARY_EXTENSIONS:
        raise UnavailableCapabilityError(
            f"Cannot read {os.path.basename(path)}: {ext} containers need a Bio-Formats "
            f"capable reader. Export the planes to TIFF first, or pass a reader that "
            f"implements series_metadata() and open_plane().")


def loadImage(path: str, asGray: bool = True, keepDepth: bool = False) -> ImageArray:
    """Load an image with OpenCV.
    If asGray=True, loads grayscale; else returns BGR color. 16-bit data is
    kept as-is with keepDepth=True, otherwise normalized to uint8."""
    checkReadable(path)
    flag = (cv2.IMREAD_GRAYSCALE if asGray else cv2.IMREAD_COLOR) | cv2.IMREAD_ANYDEPTH
    img = cv2.imread(path, flag)
    if img is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    if not keepDepth and img.dtype != np.uint8:
        img = cv2.normalize(img.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return img


@dataclass(frozen=True)
class SeriesMetadata:
    size_x: int
    size_y: int
    size_c: int
    size_t: int


class ImagePlaneReader:
    """
    Plane reader for standard image files. Every page of a (multi-page)
    file is a channel; files hold one series and one timepoint.

    Pages of the most recently used files are cached; call close() (or use
    as a context manager) to release them.
    """

    def __init__(self, maxCached: int = 2):
        self.maxCached = max(1, int(maxCached))
        self._pages: Dict[str, List[np.ndarray]] = {}

    def __enter__(self) -> "ImagePlaneReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._pages.clear()

    def _readPages(self, path: str) -> List[np.ndarray]:
        key = os.path.abspath(path)
        if key in self._pages:
            return self._pages[key]
        checkReadable(path)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Could not read image: {path}")
        ok, pages = cv2.imreadmulti(path, flags=cv2.IMREAD_ANYDEPTH)
        if not ok or not pages:
            raise FileNotFoundError(f"Could not read image: {path}")
        pages = [p if p.ndim == 2 else cv2.cvtColor(p, cv2.COLOR_BGR2GRAY) for p in pages]
        shapes = {p.shape for p in pages}
        if len(shapes) != 1:
            raise InvalidInputError(f"Pages of {path} have different sizes: {sorted(shapes)}")
        while len(self._pages) >= self.maxCached:
            self._pages.pop(next(iter(self._pages)))
        self._pages[key] = list(pages)
        logger.debug("Read %d page(s) from %s", len(pages), path)
        return self._pages[key]

    def series_metadata(self, path: str, series: int = 0) -> SeriesMetadata:
        pages = self._readPages(path)
        if series != 0:
            raise InvalidInputError(f"Series index out of range for {os.path.basename(path)}: S{series + 1}")
        h, w = pages[0].shape[:2]
        return SeriesMetadata(size_x=w, size_y=h, size_c=len(pages), size_t=1)

    def open_plane(self, path: str, series: int = 0, channel: int = 0, time: int = 0) -> ImageArray:
        meta = self.series_metadata(path, series)
        if not 0 <= channel < meta.size_c:
            raise InvalidInputError(
                f"Channel index out of range for {os.path.basename(path)}: C{channel + 1} but sizeC={meta.size_c}")
        if not 0 <= time < meta.size_t:
            raise InvalidInputError(
                f"Timepoint out of range for {os.path.basename(path)}: T{time + 1} but sizeT={meta.size_t}")
        return self._readPages(path)[channel].copy()


def plane_shape(meta: SeriesMetadata) -> Tuple[int, int]:
    return (meta.size_y, meta.size_x)

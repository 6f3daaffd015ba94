# cellseg/core/components.py
# Single-pass connected-component discovery with per-component statistics
#
# Components are found by BFS flood fill from each unvisited foreground seed,
# scanned row-major. Area, bounding box, coordinate sums and border touches
# accumulate during the BFS, so no second pass over the raster is needed.

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import numpy as np

from .errors import InvalidInputError

# Border bit flags (use with border_mask)
TOP = 1
BOTTOM = 1 << 1
LEFT = 1 << 2
RIGHT = 1 << 3


@dataclass(frozen=True)
class ComponentStats:
    """Measurement bundle computed during the BFS."""

    area: int
    border_mask: int
    min_x: int
    min_y: int
    max_x: int  # inclusive
    max_y: int  # inclusive
    sum_x: int
    sum_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x + 1

    @property
    def height(self) -> int:
        return self.max_y - self.min_y + 1

    @property
    def bounding_box(self) -> Tuple[int, int, int, int]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @property
    def border_count(self) -> int:
        return bin(self.border_mask).count("1")

    @property
    def touches_top(self) -> bool:
        return bool(self.border_mask & TOP)

    @property
    def touches_bottom(self) -> bool:
        return bool(self.border_mask & BOTTOM)

    @property
    def touches_left(self) -> bool:
        return bool(self.border_mask & LEFT)

    @property
    def touches_right(self) -> bool:
        return bool(self.border_mask & RIGHT)

    @property
    def centroid(self) -> Tuple[float, float]:
        """(x, y) in pixel coordinates, pixel centers at integer x/y."""
        if self.area == 0:
            return (float("nan"), float("nan"))
        return (self.sum_x / self.area, self.sum_y / self.area)


def _frozen(pixels: np.ndarray) -> np.ndarray:
    pixels.setflags(write=False)
    return pixels


@dataclass(frozen=True, eq=False)
class Component:
    """Collected component: linear pixel indices (idx = y*width + x) + stats."""

    width: int
    height: int
    pixels: np.ndarray
    stats: ComponentStats

    @property
    def area(self) -> int:
        return self.stats.area

    @property
    def border_mask(self) -> int:
        return self.stats.border_mask

    @property
    def border_count(self) -> int:
        return self.stats.border_count

    def coords(self) -> Tuple[np.ndarray, np.ndarray]:
        """(ys, xs) arrays for fancy indexing a (H,W) raster."""
        return np.divmod(self.pixels, self.width)

    def clear(self, raster: np.ndarray) -> None:
        self.paint(raster, 0)

    def paint(self, raster: np.ndarray, value: int) -> None:
        flat = _flatView(raster, self.width, self.height)
        if flat.size != self.width * self.height:
            raise InvalidInputError("raster size does not match the component's raster")
        flat[self.pixels] = value


class ComponentView:
    """
    Streaming view of one component, valid only inside the handler call.
    `clear()` and `paint()` write straight into the raster being scanned.
    """

    __slots__ = ("_width", "_height", "_pixels", "_stats", "_raster")

    def __init__(self, width: int, height: int, pixels: List[int], stats: ComponentStats, raster: np.ndarray):
        self._width = width
        self._height = height
        self._pixels = pixels
        self._stats = stats
        self._raster = raster

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def stats(self) -> ComponentStats:
        return self._stats

    @property
    def area(self) -> int:
        return self._stats.area

    @property
    def pixels(self) -> np.ndarray:
        """Read-only copy of the linear pixel indices."""
        return _frozen(np.array(self._pixels, dtype=np.intp))

    def clear(self) -> None:
        self._raster[self._pixels] = 0

    def paint(self, value: int) -> None:
        self._raster[self._pixels] = value

    def freeze(self) -> Component:
        return Component(self._width, self._height, self.pixels, self._stats)


ComponentHandler = Callable[[ComponentView], None]


def _flatView(pix: np.ndarray, width: Optional[int], height: Optional[int]) -> np.ndarray:
    if not isinstance(pix, np.ndarray):
        raise InvalidInputError("raster must be a numpy array")
    if pix.ndim == 2:
        h, w = pix.shape
        if (width is not None and width != w) or (height is not None and height != h):
            raise InvalidInputError(
                f"raster shape {pix.shape} does not match width={width} height={height}")
    elif pix.ndim == 1:
        if width is None or height is None:
            raise InvalidInputError("width and height are required for a flat raster")
    else:
        raise InvalidInputError(f"raster must be 1-D or 2-D, got {pix.ndim}-D")
    if not pix.flags.c_contiguous:
        raise InvalidInputError("raster must be C-contiguous")
    return pix.reshape(-1)


def _resolveShape(pix: np.ndarray, width: Optional[int], height: Optional[int]) -> Tuple[int, int]:
    if pix.ndim == 2:
        return pix.shape[1], pix.shape[0]
    w, h = int(width), int(height)  # type: ignore[arg-type]
    if w < 0 or h < 0 or pix.size != w * h:
        raise InvalidInputError(f"pix must be length w*h ({w}*{h}), got {pix.size}")
    return w, h


def forEachForegroundComponent(
    pix: np.ndarray,
    handler: ComponentHandler,
    width: Optional[int] = None,
    height: Optional[int] = None,
    connectivity: int = 4,
) -> int:
    """
    Streaming style: call `handler(view)` once per foreground (nonzero)
    component, in row-major seed order. Returns the number of components.

    The handler may call view.clear()/view.paint(v) to mutate `pix` in place;
    it must not touch pixels of other components.
    """
    if handler is None or not callable(handler):
        raise InvalidInputError("handler must be a callable")
    if connectivity not in (4, 8):
        raise InvalidInputError(f"connectivity must be 4 or 8, got {connectivity}")
    flat = _flatView(pix, width, height)
    w, h = _resolveShape(pix, width, height)
    n = w * h
    if n == 0:
        return 0

    fg = (flat != 0).tolist()
    visited = bytearray(n)
    eight = connectivity == 8
    q: deque = deque()
    count = 0

    for seed in np.flatnonzero(flat).tolist():
        if visited[seed]:
            continue

        comp: List[int] = []
        visited[seed] = 1
        q.append(seed)

        border = 0
        minX = minY = n
        maxX = maxY = -1
        sumX = sumY = 0

        # BFS flood fill of the current component
        while q:
            p = q.popleft()
            comp.append(p)
            py, px = divmod(p, w)

            sumX += px
            sumY += py
            if px < minX: minX = px
            if py < minY: minY = py
            if px > maxX: maxX = px
            if py > maxY: maxY = py

            if py == 0:     border |= TOP
            if py == h - 1: border |= BOTTOM
            if px == 0:     border |= LEFT
            if px == w - 1: border |= RIGHT

            up = py > 0
            dn = py < h - 1
            lt = px > 0
            rt = px < w - 1

            if up:
                nb = p - w
                if fg[nb] and not visited[nb]:
                    visited[nb] = 1; q.append(nb)
            if dn:
                nb = p + w
                if fg[nb] and not visited[nb]:
                    visited[nb] = 1; q.append(nb)
            if lt:
                nb = p - 1
                if fg[nb] and not visited[nb]:
                    visited[nb] = 1; q.append(nb)
            if rt:
                nb = p + 1
                if fg[nb] and not visited[nb]:
                    visited[nb] = 1; q.append(nb)

            if eight:
                if up and lt:
                    nb = p - w - 1
                    if fg[nb] and not visited[nb]:
                        visited[nb] = 1; q.append(nb)
                if up and rt:
                    nb = p - w + 1
                    if fg[nb] and not visited[nb]:
                        visited[nb] = 1; q.append(nb)
                if dn and lt:
                    nb = p + w - 1
                    if fg[nb] and not visited[nb]:
                        visited[nb] = 1; q.append(nb)
                if dn and rt:
                    nb = p + w + 1
                    if fg[nb] and not visited[nb]:
                        visited[nb] = 1; q.append(nb)

        stats = ComponentStats(
            area=len(comp), border_mask=border,
            min_x=minX, min_y=minY, max_x=maxX, max_y=maxY,
            sum_x=sumX, sum_y=sumY,
        )
        handler(ComponentView(w, h, comp, stats, flat))
        count += 1

    return count


def findForegroundComponents(
    pix: np.ndarray,
    width: Optional[int] = None,
    height: Optional[int] = None,
    connectivity: int = 4,
) -> List[Component]:
    """Collect style: ordered list of all foreground components."""
    out: List[Component] = []
    forEachForegroundComponent(pix, lambda c: out.append(c.freeze()),
                               width=width, height=height, connectivity=connectivity)
    return out

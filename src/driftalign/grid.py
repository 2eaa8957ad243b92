"""
Channel-indexed sample grids.

A Grid is one scalar plane of an Image, addressed by (x, y) with
x in [0, width) and y in [0, height). Region arrays are returned in
numpy order: shape (rows, columns) = (h, w).

Two backings are provided:
- ArrayGrid: an in-memory float32 numpy array
- MappedGrid: one plane of a HugeFloatArray (out-of-core)

Author: driftalign developers
"""

from __future__ import annotations

from enum import Enum

import numpy as np

from .huge import HugeFloatArray

DTYPE = np.float32


class Channel(Enum):
    """Identity of one scalar plane of an Image."""

    RED = "red"
    GREEN = "green"
    BLUE = "blue"
    GRAY = "gray"
    LUMINANCE = "luminance"
    ALPHA = "alpha"


RGB = (Channel.RED, Channel.GREEN, Channel.BLUE)


class Grid:
    """
    Base class for a fixed-size 2D plane of float samples.

    Subclasses implement ``region``, ``write_region`` and ``accumulate``.
    """

    def __init__(self, width: int, height: int):
        if width < 0 or height < 0:
            raise ValueError(f"Grid size must be non-negative, got {width}x{height}")
        self._width = int(width)
        self._height = int(height)

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    def is_inside(self, x: int, y: int) -> bool:
        return 0 <= x < self._width and 0 <= y < self._height

    def get(self, x: int, y: int) -> float:
        return float(self.region(x, y, 1, 1)[0, 0])

    def set(self, x: int, y: int, value: float) -> None:
        self.write_region(x, y, np.full((1, 1), value, dtype=DTYPE))

    def to_array(self) -> np.ndarray:
        """Return a copy of the full plane, shape (height, width)."""
        return self.region(0, 0, self._width, self._height)

    def region(self, x: int, y: int, w: int, h: int) -> np.ndarray:
        raise NotImplementedError

    def write_region(self, x: int, y: int, values: np.ndarray) -> None:
        raise NotImplementedError

    def accumulate(self, values: np.ndarray) -> None:
        raise NotImplementedError

    def _check_region(self, x: int, y: int, w: int, h: int) -> None:
        if w < 0 or h < 0 or x < 0 or y < 0 or x + w > self._width or y + h > self._height:
            raise IndexError(
                f"Region ({x}, {y}, {w}x{h}) outside grid {self._width}x{self._height}"
            )

    def _check_full(self, values: np.ndarray) -> None:
        if values.shape != (self._height, self._width):
            raise ValueError(
                f"Shape mismatch: grid is {self._width}x{self._height}, "
                f"values have shape {values.shape}"
            )


class ArrayGrid(Grid):
    """Grid stored in an in-memory float32 array of shape (height, width)."""

    def __init__(self, data: np.ndarray, copy: bool = True):
        data = np.array(data, dtype=DTYPE) if copy else np.asarray(data, dtype=DTYPE)
        if data.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {data.shape}")
        super().__init__(data.shape[1], data.shape[0])
        self._data = data

    @classmethod
    def zeros(cls, width: int, height: int) -> "ArrayGrid":
        return cls(np.zeros((height, width), dtype=DTYPE), copy=False)

    @property
    def data(self) -> np.ndarray:
        """The backing array (not a copy)."""
        return self._data

    def get(self, x: int, y: int) -> float:
        if not self.is_inside(x, y):
            raise IndexError(f"({x}, {y}) outside grid {self.width}x{self.height}")
        return float(self._data[y, x])

    def set(self, x: int, y: int, value: float) -> None:
        if not self.is_inside(x, y):
            raise IndexError(f"({x}, {y}) outside grid {self.width}x{self.height}")
        self._data[y, x] = value

    def region(self, x: int, y: int, w: int, h: int) -> np.ndarray:
        self._check_region(x, y, w, h)
        return self._data[y:y + h, x:x + w].copy()

    def write_region(self, x: int, y: int, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=DTYPE)
        h, w = values.shape
        self._check_region(x, y, w, h)
        self._data[y:y + h, x:x + w] = values

    def accumulate(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=DTYPE)
        self._check_full(values)
        np.add(self._data, values, out=self._data)


class MappedGrid(Grid):
    """
    Grid addressing one plane of a HugeFloatArray.

    The store's first two dimensions must be (width, height); ``plane`` is
    the flat index over the remaining dimensions, so sample (x, y) lives at
    ``x + y * width + plane * width * height``. Each grid row is a
    contiguous run in the store.
    """

    def __init__(self, store: HugeFloatArray, plane: int = 0):
        width, height = store.dimensions[0], store.dimensions[1]
        n_planes = store.size // (width * height)
        if not 0 <= plane < n_planes:
            raise ValueError(f"Plane {plane} outside [0, {n_planes})")
        super().__init__(width, height)
        self.store = store
        self.plane = plane
        self._base = plane * width * height

    def region(self, x: int, y: int, w: int, h: int) -> np.ndarray:
        self._check_region(x, y, w, h)
        if x == 0 and w == self.width:
            start = self._base + y * self.width
            return self.store.read_flat(start, w * h).reshape(h, w)
        out = np.empty((h, w), dtype=DTYPE)
        for row in range(h):
            start = self._base + (y + row) * self.width + x
            out[row] = self.store.read_flat(start, w)
        return out

    def write_region(self, x: int, y: int, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=DTYPE)
        h, w = values.shape
        self._check_region(x, y, w, h)
        if x == 0 and w == self.width:
            # Full-width rows are one contiguous run
            self.store.write_flat(self._base + y * self.width, values)
            return
        for row in range(h):
            start = self._base + (y + row) * self.width + x
            self.store.write_flat(start, values[row])

    def accumulate(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=DTYPE)
        self._check_full(values)
        for row in range(self.height):
            start = self._base + row * self.width
            current = self.store.read_flat(start, self.width)
            self.store.write_flat(start, current + values[row])

"""
Out-of-core float arrays backed by memory-mapped scratch files.

A HugeFloatArray addresses a logical N-dimensional array (2 to 4 dimensions)
whose storage is split across one or more equally sized numpy memmap
segments. The flat index of a coordinate is row-major with the first
declared dimension varying fastest:

    flat = i0 + i1 * d0 + i2 * d0 * d1 + i3 * d0 * d1 * d2

and maps to segment ``flat // segment_size`` at offset ``flat % segment_size``.

Backing files are scratch storage. They are removed by ``close()`` or, at
the latest, when the interpreter exits.

Not thread-safe for concurrent writes.

Author: driftalign developers
"""

from __future__ import annotations

import logging
import math
import os
import tempfile
import weakref
from pathlib import Path

import numpy as np

logger = logging.getLogger(__name__)

# Largest element count per mapping (signed 32-bit element index)
DEFAULT_SEGMENT_LIMIT = 2**31 - 1

MIN_DIMENSIONS = 2
MAX_DIMENSIONS = 4

_DTYPE = np.float32


def _release_segments(segments: list, paths: list[str]) -> None:
    """Drop the mappings and delete their backing files."""
    # Clearing drops the last reference, which unmaps the segment
    segments.clear()
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
    paths.clear()


class HugeFloatArray:
    """
    Flat float32 array spanning several memory-mapped scratch segments.

    Parameters
    ----------
    *dimensions : int
        Logical dimension sizes, first dimension varying fastest.
    scratch_dir : str or Path, optional
        Directory for backing files. Defaults to the system temp directory.
    segment_limit : int, default DEFAULT_SEGMENT_LIMIT
        Maximum number of elements per mapped segment.

    Raises
    ------
    ValueError
        If the dimension count is outside 2..4 or a dimension is not positive.
    OSError
        If a backing segment cannot be created. Segments created before the
        failure are released.

    Examples
    --------
    >>> with HugeFloatArray(1000, 1000, 3) as huge:
    ...     huge.set(10, 20, 1, 0.5)
    ...     huge.get(10, 20, 1)
    0.5
    """

    def __init__(
        self,
        *dimensions: int,
        scratch_dir: str | Path | None = None,
        segment_limit: int = DEFAULT_SEGMENT_LIMIT,
    ):
        if not MIN_DIMENSIONS <= len(dimensions) <= MAX_DIMENSIONS:
            raise ValueError(
                f"Expected {MIN_DIMENSIONS} to {MAX_DIMENSIONS} dimensions, got {len(dimensions)}"
            )
        if any(int(d) <= 0 for d in dimensions):
            raise ValueError(f"Dimensions must be positive, got {dimensions}")
        if segment_limit <= 0:
            raise ValueError(f"segment_limit must be positive, got {segment_limit}")

        self.dimensions = tuple(int(d) for d in dimensions)

        # Python ints do not overflow
        self.size = math.prod(self.dimensions)
        self.n_segments = -(-self.size // segment_limit)
        self.segment_size = -(-self.size // self.n_segments)

        self._strides = [1]
        for d in self.dimensions[:-1]:
            self._strides.append(self._strides[-1] * d)

        self._segments: list[np.memmap] = []
        self._paths: list[str] = []
        self._finalizer = weakref.finalize(
            self, _release_segments, self._segments, self._paths
        )

        try:
            for _ in range(self.n_segments):
                fd, path = tempfile.mkstemp(
                    prefix="driftalign-", suffix=".f32", dir=scratch_dir
                )
                os.close(fd)
                self._paths.append(path)
                self._segments.append(
                    np.memmap(path, dtype=_DTYPE, mode="w+", shape=(self.segment_size,))
                )
        except OSError:
            self._finalizer()
            raise

        logger.debug(
            "Mapped %d elements %s in %d segment(s) of %d",
            self.size,
            self.dimensions,
            self.n_segments,
            self.segment_size,
        )

    @property
    def paths(self) -> list[Path]:
        """Backing file paths (empty once closed)."""
        return [Path(p) for p in self._paths]

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def close(self) -> None:
        """Unmap all segments and delete the backing files."""
        self._finalizer()

    def __enter__(self) -> "HugeFloatArray":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        return (
            f"HugeFloatArray(dimensions={self.dimensions}, "
            f"segments={self.n_segments}x{self.segment_size})"
        )

    def flat_index(self, *coords: int) -> int:
        """Row-major flat index with the first dimension varying fastest."""
        if len(coords) != len(self.dimensions):
            raise ValueError(
                f"Expected {len(self.dimensions)} coordinates, got {len(coords)}"
            )
        index = 0
        for coord, dim, stride in zip(coords, self.dimensions, self._strides):
            if not 0 <= coord < dim:
                raise IndexError(f"Coordinate {coord} out of range [0, {dim})")
            index += coord * stride
        return index

    def get(self, *coords: int) -> float:
        """Read one element. Unwritten elements read as 0.0."""
        self._check_open()
        index = self.flat_index(*coords)
        segment, offset = divmod(index, self.segment_size)
        return float(self._segments[segment][offset])

    def set(self, *args: float) -> None:
        """Write one element: ``set(*coords, value)``."""
        self._check_open()
        if not args:
            raise ValueError("Expected coordinates and a value")
        *coords, value = args
        index = self.flat_index(*coords)
        segment, offset = divmod(index, self.segment_size)
        self._segments[segment][offset] = value

    def read_flat(self, start: int, count: int) -> np.ndarray:
        """
        Read ``count`` consecutive elements starting at flat index ``start``.

        The run may straddle segment boundaries; the result is always a copy.
        """
        self._check_open()
        self._check_run(start, count)
        out = np.empty(count, dtype=_DTYPE)
        done = 0
        while done < count:
            segment, offset = divmod(start + done, self.segment_size)
            n = min(count - done, self.segment_size - offset)
            out[done:done + n] = self._segments[segment][offset:offset + n]
            done += n
        return out

    def write_flat(self, start: int, values: np.ndarray) -> None:
        """Write a contiguous run of values starting at flat index ``start``."""
        self._check_open()
        values = np.asarray(values, dtype=_DTYPE).ravel()
        count = values.size
        self._check_run(start, count)
        done = 0
        while done < count:
            segment, offset = divmod(start + done, self.segment_size)
            n = min(count - done, self.segment_size - offset)
            self._segments[segment][offset:offset + n] = values[done:done + n]
            done += n

    def _check_run(self, start: int, count: int) -> None:
        if count < 0 or start < 0 or start + count > self.size:
            raise IndexError(
                f"Run [{start}, {start + count}) outside array of size {self.size}"
            )

    def _check_open(self) -> None:
        if self.closed:
            raise ValueError("HugeFloatArray is closed")

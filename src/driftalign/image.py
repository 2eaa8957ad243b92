"""
Multi-channel images built from co-registered grids.

An Image owns one Grid per Channel, all with the same width and height.
Operations return new in-memory Images; only ``accumulate`` (and ``+=``)
mutates the receiver, adding in place without reallocating its storage.

Out-of-range samples in ``crop`` follow an explicit BoundaryPolicy:
- CLAMP: repeat the nearest edge sample (default)
- FILL: use a constant fill value (0.0 unless given)

Author: driftalign developers
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, Mapping, Sequence

import numpy as np
from scipy import ndimage

from .grid import DTYPE, RGB, ArrayGrid, Channel, Grid, MappedGrid
from .huge import DEFAULT_SEGMENT_LIMIT, HugeFloatArray

logger = logging.getLogger(__name__)

# Rec.709 luminance weights
LUMINANCE_WEIGHTS = (0.2126, 0.7152, 0.0722)


class BoundaryPolicy(Enum):
    """How ``crop`` resolves samples outside the source bounds."""

    CLAMP = "clamp"
    FILL = "fill"


class ImageValues:
    """
    Lazy, restartable iteration over every sample of an Image.

    Order is channel, then row, then column. Each ``iter()`` starts over.
    """

    def __init__(self, image: "Image", channels: Sequence[Channel]):
        self._image = image
        self._channels = tuple(channels)

    def __iter__(self) -> Iterator[float]:
        for channel in self._channels:
            grid = self._image.grid(channel)
            for y in range(grid.height):
                for value in grid.region(0, y, grid.width, 1)[0]:
                    yield float(value)

    def __len__(self) -> int:
        return len(self._channels) * self._image.width * self._image.height


class Image:
    """
    A named set of co-registered channel grids.

    Parameters
    ----------
    grids : Mapping[Channel, Grid]
        One grid per channel, insertion order is the channel order.

    Raises
    ------
    ValueError
        If no grid is given or grid sizes differ.
    """

    def __init__(self, grids: Mapping[Channel, Grid]):
        if not grids:
            raise ValueError("An image needs at least one channel")
        sizes = {(g.width, g.height) for g in grids.values()}
        if len(sizes) != 1:
            raise ValueError(f"Channel grids differ in size: {sorted(sizes)}")
        self._grids = dict(grids)
        self._width, self._height = sizes.pop()
        self._store: HugeFloatArray | None = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_array(
        cls,
        data: np.ndarray,
        channels: Sequence[Channel] | None = None,
    ) -> "Image":
        """
        Build an in-memory Image from a numpy array.

        Parameters
        ----------
        data : np.ndarray
            Shape (height, width) for a single channel or
            (height, width, n_channels).
        channels : sequence of Channel, optional
            Channel tags. Defaults to GRAY for 2D data, RGB for 3 planes.
        """
        data = np.asarray(data)
        if data.ndim == 2:
            data = data[:, :, np.newaxis]
        if data.ndim != 3:
            raise ValueError(f"Expected 2D or 3D array, got shape {data.shape}")
        n = data.shape[2]
        if channels is None:
            if n == 1:
                channels = (Channel.GRAY,)
            elif n == 3:
                channels = RGB
            elif n == 4:
                channels = RGB + (Channel.ALPHA,)
            else:
                raise ValueError(f"Cannot infer channels for {n} planes")
        if len(channels) != n:
            raise ValueError(f"{len(channels)} channels given for {n} planes")
        return cls({ch: ArrayGrid(data[:, :, i]) for i, ch in enumerate(channels)})

    @classmethod
    def zeros(
        cls,
        width: int,
        height: int,
        channels: Sequence[Channel] = (Channel.GRAY,),
    ) -> "Image":
        return cls({ch: ArrayGrid.zeros(width, height) for ch in channels})

    @classmethod
    def mapped(
        cls,
        width: int,
        height: int,
        channels: Sequence[Channel] = (Channel.GRAY,),
        scratch_dir: str | Path | None = None,
        segment_limit: int = DEFAULT_SEGMENT_LIMIT,
    ) -> "Image":
        """
        Create a zero-initialised Image backed by an out-of-core store.

        All channels share one HugeFloatArray of dimensions
        (width, height, n_channels). Call ``close()`` to release it early.
        """
        store = HugeFloatArray(
            width, height, len(channels),
            scratch_dir=scratch_dir,
            segment_limit=segment_limit,
        )
        image = cls({ch: MappedGrid(store, i) for i, ch in enumerate(channels)})
        image._store = store
        logger.debug("Created out-of-core image %dx%d %s", width, height, store)
        return image

    def close(self) -> None:
        """Release the out-of-core store, if this image owns one."""
        if self._store is not None:
            self._store.close()

    def __enter__(self) -> "Image":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def width(self) -> int:
        return self._width

    @property
    def height(self) -> int:
        return self._height

    @property
    def channels(self) -> tuple[Channel, ...]:
        return tuple(self._grids)

    @property
    def is_mapped(self) -> bool:
        return self._store is not None

    def has_channel(self, channel: Channel) -> bool:
        return channel in self._grids

    def grid(self, channel: Channel) -> Grid:
        try:
            return self._grids[channel]
        except KeyError:
            raise ValueError(
                f"Image has no {channel.name} channel (has {[c.name for c in self.channels]})"
            ) from None

    def __getitem__(self, channel: Channel) -> np.ndarray:
        """Copy of one channel plane, shape (height, width)."""
        return self.grid(channel).to_array()

    def get_pixel(self, x: int, y: int, channel: Channel | None = None) -> float | tuple[float, ...]:
        if channel is not None:
            return self.grid(channel).get(x, y)
        return tuple(g.get(x, y) for g in self._grids.values())

    def set_pixel(self, x: int, y: int, channel: Channel, value: float) -> None:
        self.grid(channel).set(x, y, value)

    def to_array(self, channels: Sequence[Channel] | None = None) -> np.ndarray:
        """Stack channel planes into shape (height, width, n_channels)."""
        channels = self.channels if channels is None else channels
        return np.stack([self[ch] for ch in channels], axis=-1)

    def copy(self) -> "Image":
        return Image({ch: ArrayGrid(g.to_array(), copy=False) for ch, g in self._grids.items()})

    def __repr__(self) -> str:
        kind = "mapped" if self.is_mapped else "memory"
        names = ",".join(c.name for c in self.channels)
        return f"Image({self._width}x{self._height}, {names}, {kind})"

    # ------------------------------------------------------------------
    # Cropping and resampling
    # ------------------------------------------------------------------

    def crop_array(
        self,
        x: int,
        y: int,
        w: int,
        h: int,
        boundary: BoundaryPolicy = BoundaryPolicy.CLAMP,
        fill_value: float = 0.0,
        channels: Sequence[Channel] | None = None,
    ) -> np.ndarray:
        """
        Read a rectangle as an array of shape (n_channels, h, w).

        Always succeeds for any integer (x, y); out-of-range samples follow
        ``boundary``.
        """
        if w < 0 or h < 0:
            raise ValueError(f"Crop size must be non-negative, got {w}x{h}")
        channels = self.channels if channels is None else tuple(channels)
        out = np.empty((len(channels), h, w), dtype=DTYPE)
        if w == 0 or h == 0:
            return out

        if boundary is BoundaryPolicy.CLAMP:
            xs = np.clip(np.arange(x, x + w), 0, self._width - 1)
            ys = np.clip(np.arange(y, y + h), 0, self._height - 1)
            x0, y0 = int(xs[0]), int(ys[0])
            span_w, span_h = int(xs[-1]) - x0 + 1, int(ys[-1]) - y0 + 1
            for i, ch in enumerate(channels):
                block = self.grid(ch).region(x0, y0, span_w, span_h)
                out[i] = block[np.ix_(ys - y0, xs - x0)]
            return out

        if boundary is not BoundaryPolicy.FILL:
            raise ValueError(f"Unknown boundary policy: {boundary}")

        out.fill(fill_value)
        ix0, iy0 = max(x, 0), max(y, 0)
        ix1, iy1 = min(x + w, self._width), min(y + h, self._height)
        if ix0 < ix1 and iy0 < iy1:
            for i, ch in enumerate(channels):
                out[i, iy0 - y:iy1 - y, ix0 - x:ix1 - x] = self.grid(ch).region(
                    ix0, iy0, ix1 - ix0, iy1 - iy0
                )
        return out

    def crop(
        self,
        x: int,
        y: int,
        w: int,
        h: int,
        boundary: BoundaryPolicy = BoundaryPolicy.CLAMP,
        fill_value: float = 0.0,
    ) -> "Image":
        """
        Return a new in-memory Image of exactly ``w`` x ``h``.

        The source rectangle has its top-left corner at (x, y).
        """
        data = self.crop_array(x, y, w, h, boundary, fill_value)
        return Image({ch: ArrayGrid(data[i], copy=False) for i, ch in enumerate(self.channels)})

    def crop_center(
        self,
        radius_x: int,
        radius_y: int,
        center_x: int,
        center_y: int,
        boundary: BoundaryPolicy = BoundaryPolicy.CLAMP,
        fill_value: float = 0.0,
    ) -> "Image":
        """Crop a (2*radius_x+1) x (2*radius_y+1) window around a center."""
        return self.crop(
            center_x - radius_x,
            center_y - radius_y,
            2 * radius_x + 1,
            2 * radius_y + 1,
            boundary,
            fill_value,
        )

    def shifted(self, fx: float, fy: float, order: int = 3) -> "Image":
        """
        Resample at a fractional offset.

        The result samples this image at (x + fx, y + fy), using spline
        interpolation of the given order and edge-clamped borders.
        """
        grids = {}
        for ch, g in self._grids.items():
            plane = ndimage.shift(
                g.to_array(), shift=(-fy, -fx), order=order, mode="nearest"
            )
            grids[ch] = ArrayGrid(plane, copy=False)
        return Image(grids)

    def convert(self, channel: Channel) -> "Image":
        """
        Single-channel image for ``channel``.

        GRAY and LUMINANCE are derived from RGB when not stored.
        """
        if channel in self._grids:
            return Image({channel: ArrayGrid(self[channel], copy=False)})
        if not all(c in self._grids for c in RGB):
            raise ValueError(f"Cannot derive {channel.name} without RGB channels")
        r, g, b = (self[c].astype(np.float64) for c in RGB)
        if channel is Channel.GRAY:
            plane = (r + g + b) / 3.0
        elif channel is Channel.LUMINANCE:
            wr, wg, wb = LUMINANCE_WEIGHTS
            plane = wr * r + wg * g + wb * b
        else:
            raise ValueError(f"Cannot derive {channel.name} from RGB")
        return Image({channel: ArrayGrid(plane)})

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def values(self, channels: Sequence[Channel] | None = None) -> ImageValues:
        """All samples, channel then row then column."""
        return ImageValues(self, self.channels if channels is None else channels)

    def mean(self) -> float:
        if self._width == 0 or self._height == 0:
            return math.nan
        return float(np.mean([np.mean(g.to_array(), dtype=np.float64) for g in self._grids.values()]))

    def stddev(self) -> float:
        """Population standard deviation over all samples of all channels."""
        if self._width == 0 or self._height == 0:
            return math.nan
        data = np.stack([g.to_array() for g in self._grids.values()])
        return float(np.std(data, dtype=np.float64))

    def average_error(
        self,
        other: "Image",
        channel: Channel | Iterable[Channel] | None = None,
    ) -> float:
        """
        Mean squared difference to ``other``.

        Computed per channel, then averaged over the channels compared
        (all of this image's channels unless ``channel`` restricts them).

        Raises
        ------
        ValueError
            If the images differ in size or a channel is missing.
        """
        self._check_same_size(other)
        if channel is None:
            channels = self.channels
        elif isinstance(channel, Channel):
            channels = (channel,)
        else:
            channels = tuple(channel)
        total = 0.0
        for ch in channels:
            delta = self[ch].astype(np.float64) - other[ch].astype(np.float64)
            total += float(np.mean(delta * delta))
        return total / len(channels)

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check_same_size(self, other: "Image") -> None:
        if (self._width, self._height) != (other.width, other.height):
            raise ValueError(
                f"Image size mismatch: {self._width}x{self._height} vs {other.width}x{other.height}"
            )

    def _check_compatible(self, other: "Image") -> None:
        self._check_same_size(other)
        if set(self.channels) != set(other.channels):
            raise ValueError(
                f"Channel mismatch: {[c.name for c in self.channels]} vs "
                f"{[c.name for c in other.channels]}"
            )

    def _combine(self, other, op) -> "Image":
        if isinstance(other, Image):
            self._check_compatible(other)
            return Image({
                ch: ArrayGrid(op(g.to_array(), other[ch]), copy=False)
                for ch, g in self._grids.items()
            })
        return Image({
            ch: ArrayGrid(op(g.to_array(), DTYPE(other)), copy=False)
            for ch, g in self._grids.items()
        })

    def __add__(self, other) -> "Image":
        return self._combine(other, np.add)

    def __sub__(self, other) -> "Image":
        return self._combine(other, np.subtract)

    def __mul__(self, other) -> "Image":
        return self._combine(other, np.multiply)

    def __truediv__(self, other) -> "Image":
        return self._combine(other, np.divide)

    def __radd__(self, other) -> "Image":
        return self._combine(other, np.add)

    def __rmul__(self, other) -> "Image":
        return self._combine(other, np.multiply)

    def accumulate(self, other: "Image") -> "Image":
        """Add ``other`` into this image in place. Returns self."""
        self._check_compatible(other)
        for ch, g in self._grids.items():
            g.accumulate(other[ch])
        return self

    def __iadd__(self, other: "Image") -> "Image":
        return self.accumulate(other)

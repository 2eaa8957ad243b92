"""
Stacking of aligned frames.

- average_stack: running sum accumulated in place, then divided
- median_stack, max_stack, min_stack and sigma_clip_stack: frames are
  copied into one out-of-core HugeFloatArray and reduced in chunks of rows,
  so only one chunk of all frames is resident at a time

Author: driftalign developers
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
from astropy.stats import sigma_clip

from .grid import ArrayGrid, MappedGrid
from .huge import DEFAULT_SEGMENT_LIMIT, HugeFloatArray
from .image import Image

logger = logging.getLogger(__name__)


def _check_frames(images: Sequence[Image]) -> Image:
    if len(images) == 0:
        raise ValueError("Empty frame list")
    first = images[0]
    for i, image in enumerate(images[1:], start=1):
        if (image.width, image.height) != (first.width, first.height):
            raise ValueError(
                f"Frame {i} is {image.width}x{image.height}, expected {first.width}x{first.height}"
            )
        if set(image.channels) != set(first.channels):
            raise ValueError(f"Frame {i} has channels {image.channels}, expected {first.channels}")
    return first


def average_stack(images: Sequence[Image]) -> Image:
    """
    Mean of aligned frames.

    The frames are added one by one into a single accumulator image.
    """
    first = _check_frames(images)
    total = Image.zeros(first.width, first.height, first.channels)
    for image in images:
        total += image
    return total / float(len(images))


def _reduce_out_of_core(
    images: Sequence[Image],
    reduce: Callable[[np.ndarray], tuple[np.ndarray, np.ndarray]],
    chunk_rows: int,
    scratch_dir: str | Path | None,
    segment_limit: int,
) -> tuple[Image, np.ndarray]:
    """
    Copy frames into a (width, height, n_channels, n_frames) store and
    reduce each chunk cube of shape (n_frames, rows, width).
    """
    first = _check_frames(images)
    if chunk_rows <= 0:
        raise ValueError(f"chunk_rows must be positive, got {chunk_rows}")
    width, height = first.width, first.height
    channels = first.channels
    n_frames = len(images)

    with HugeFloatArray(
        width, height, len(channels), n_frames,
        scratch_dir=scratch_dir,
        segment_limit=segment_limit,
    ) as store:
        for i, image in enumerate(images):
            for c, ch in enumerate(channels):
                MappedGrid(store, c + i * len(channels)).write_region(0, 0, image[ch])

        planes = {}
        counts = np.zeros((height, width), dtype=np.int16)
        for c, ch in enumerate(channels):
            grids = [MappedGrid(store, c + i * len(channels)) for i in range(n_frames)]
            out = np.zeros((height, width), dtype=np.float32)
            for row_start in range(0, height, chunk_rows):
                rows = min(chunk_rows, height - row_start)
                chunk = slice(row_start, row_start + rows)
                cube = np.stack([g.region(0, row_start, width, rows) for g in grids])
                out[chunk], count = reduce(cube)
                counts[chunk] = count if c == 0 else np.minimum(counts[chunk], count)
            planes[ch] = ArrayGrid(out, copy=False)

    return Image(planes), counts


def _statistic_stack(
    images: Sequence[Image],
    statistic: Callable[..., np.ndarray],
    chunk_rows: int,
    scratch_dir: str | Path | None,
    segment_limit: int,
) -> Image:
    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        return statistic(cube, axis=0), np.full(cube.shape[1:], cube.shape[0])

    stacked, _ = _reduce_out_of_core(images, reduce, chunk_rows, scratch_dir, segment_limit)
    return stacked


def median_stack(
    images: Sequence[Image],
    chunk_rows: int = 64,
    scratch_dir: str | Path | None = None,
    segment_limit: int = DEFAULT_SEGMENT_LIMIT,
) -> Image:
    """
    Per-pixel median of aligned frames, computed out of core.

    Parameters
    ----------
    images : sequence of Image
        Aligned frames of identical size and channels.
    chunk_rows : int, default 64
        Rows reduced at a time.
    scratch_dir : str or Path, optional
        Directory for the backing store.
    segment_limit : int
        Maximum elements per mapped segment.
    """
    logger.info("Median stacking %d frames", len(images))
    return _statistic_stack(images, np.median, chunk_rows, scratch_dir, segment_limit)


def max_stack(
    images: Sequence[Image],
    chunk_rows: int = 64,
    scratch_dir: str | Path | None = None,
    segment_limit: int = DEFAULT_SEGMENT_LIMIT,
) -> Image:
    """Per-pixel maximum of aligned frames (star trails, meteors)."""
    logger.info("Max stacking %d frames", len(images))
    return _statistic_stack(images, np.max, chunk_rows, scratch_dir, segment_limit)


def min_stack(
    images: Sequence[Image],
    chunk_rows: int = 64,
    scratch_dir: str | Path | None = None,
    segment_limit: int = DEFAULT_SEGMENT_LIMIT,
) -> Image:
    """Per-pixel minimum of aligned frames."""
    logger.info("Min stacking %d frames", len(images))
    return _statistic_stack(images, np.min, chunk_rows, scratch_dir, segment_limit)


def sigma_clip_stack(
    images: Sequence[Image],
    sigma: float = 3.0,
    maxiters: int = 5,
    combine: str = "mean",
    chunk_rows: int = 64,
    scratch_dir: str | Path | None = None,
    segment_limit: int = DEFAULT_SEGMENT_LIMIT,
) -> tuple[Image, np.ndarray]:
    """
    Sigma-clipped mean or median of aligned frames, computed out of core.

    Parameters
    ----------
    images : sequence of Image
        Aligned frames of identical size and channels.
    sigma : float, default 3.0
        Number of standard deviations for clipping threshold.
    maxiters : int, default 5
        Maximum number of clipping iterations.
    combine : {"mean", "median"}, default "mean"
        How the surviving values of each pixel are combined.
    chunk_rows : int, default 64
        Rows reduced at a time.

    Returns
    -------
    tuple[Image, np.ndarray]
        (stacked image, contributing frame count per pixel, minimum over channels)

    Notes
    -----
    Sigma clipping iteratively rejects outliers (cosmic rays, satellites,
    hot pixels) that deviate more than ``sigma`` standard deviations from
    the mean at each pixel position.
    """
    if combine not in ("mean", "median"):
        raise ValueError(f"combine must be 'mean' or 'median', got {combine!r}")
    n_frames = len(images)
    logger.info(
        "Stacking %d frames with sigma=%.1f, maxiters=%d, combine=%s, chunk_rows=%d",
        n_frames, sigma, maxiters, combine, chunk_rows,
    )
    combine_func = np.ma.mean if combine == "mean" else np.ma.median

    def reduce(cube: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        clipped = sigma_clip(cube, sigma=sigma, maxiters=maxiters, axis=0, masked=True, copy=False)
        value = np.ma.asarray(combine_func(clipped, axis=0)).filled(np.nan)
        count = cube.shape[0] - np.sum(np.ma.getmaskarray(clipped), axis=0)
        return value, count

    stacked, counts = _reduce_out_of_core(images, reduce, chunk_rows, scratch_dir, segment_limit)

    logger.info(
        "Stack complete. Mean contributing frames: %.1f, min: %d, max: %d",
        np.mean(counts), np.min(counts), np.max(counts),
    )
    return stacked, counts

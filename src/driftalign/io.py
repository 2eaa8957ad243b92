"""
Reading and writing images.

Handles:
- Discovery of input frames in a directory
- FITS via astropy (2D mono or 3-plane RGB cube)
- PNG/TIFF/JPEG via imageio

Integer samples are normalized to [0, 1] by the dtype maximum; float
samples are kept as stored.

Author: driftalign developers
"""

from __future__ import annotations

import logging
from pathlib import Path

import imageio.v3 as iio
import numpy as np
from astropy.io import fits

from .grid import RGB, Channel
from .image import Image
from .utils import quantize

logger = logging.getLogger(__name__)

FITS_SUFFIXES = (".fits", ".fit", ".fts")
IMAGE_SUFFIXES = FITS_SUFFIXES + (".png", ".tif", ".tiff", ".jpg", ".jpeg")


def list_images(directory: str | Path, pattern: str = "*") -> list[Path]:
    """
    Discover image files in a directory.

    Parameters
    ----------
    directory : str or Path
        Folder to scan.
    pattern : str, default "*"
        Glob pattern; only files with a known image suffix are kept.

    Returns
    -------
    list[Path]
        Sorted list of paths.
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ValueError(f"Not a directory: {directory}")

    paths = sorted(
        p for p in directory.glob(pattern)
        if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES
    )
    logger.info("Discovered %d images in %s", len(paths), directory)
    return paths


def _normalize(data: np.ndarray) -> np.ndarray:
    if np.issubdtype(data.dtype, np.integer):
        return data.astype(np.float32) / np.float32(np.iinfo(data.dtype).max)
    return data.astype(np.float32)


def read_image(path: str | Path) -> Image:
    """
    Decode an image file.

    Returns
    -------
    Image
        GRAY for single-plane data, RED/GREEN/BLUE (+ALPHA) otherwise.
    """
    path = Path(path)
    if path.suffix.lower() in FITS_SUFFIXES:
        with fits.open(path) as hdul:
            data = _normalize(np.asarray(hdul[0].data))
        if data.ndim == 3:
            # FITS cubes are (plane, row, column)
            data = np.moveaxis(data, 0, -1)
    else:
        data = _normalize(np.asarray(iio.imread(path)))

    if data.ndim == 3 and data.shape[2] == 2:
        # Gray + alpha
        image = Image.from_array(data, (Channel.GRAY, Channel.ALPHA))
    else:
        image = Image.from_array(data)
    logger.debug("Read %s: %s", path.name, image)
    return image


def write_image(path: str | Path, image: Image, overwrite: bool = True) -> None:
    """
    Encode an image file; the format follows the suffix.

    FITS is written as float32 (RGB as a channel-first cube), PNG as 8-bit,
    TIFF as 16-bit; other suffixes use 8-bit.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if all(image.has_channel(c) for c in RGB):
        channels = RGB
        if image.has_channel(Channel.ALPHA) and path.suffix.lower() not in FITS_SUFFIXES:
            channels = RGB + (Channel.ALPHA,)
    else:
        channels = (image.channels[0],)
    data = image.to_array(channels)
    if data.shape[2] == 1:
        data = data[:, :, 0]

    suffix = path.suffix.lower()
    if suffix in FITS_SUFFIXES:
        if data.ndim == 3:
            data = np.moveaxis(data, -1, 0)
        fits.PrimaryHDU(data=data.astype(np.float32)).writeto(path, overwrite=overwrite)
    else:
        if path.exists() and not overwrite:
            raise FileExistsError(f"File exists: {path}")
        if suffix in (".tif", ".tiff"):
            iio.imwrite(path, quantize(data, np.uint16))
        else:
            iio.imwrite(path, quantize(data, np.uint8))
    logger.info("Wrote %s", path)

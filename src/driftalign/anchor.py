"""
Anchor selection: find a high-contrast window to align on.

Aligning on a flat region (empty sky) gives no usable signal. The anchor
search scores candidate centers on a regular grid inside an inset border
by the standard deviation of the window around them and keeps the best.

Author: driftalign developers
"""

from __future__ import annotations

import logging

from .config import AnchorConfig
from .image import BoundaryPolicy, Image

logger = logging.getLogger(__name__)


def find_anchor(image: Image, config: AnchorConfig | None = None) -> tuple[int, int]:
    """
    Return the center (x, y) of the highest-contrast window.

    Parameters
    ----------
    image : Image
        Image to scan (typically the reference frame).
    config : AnchorConfig, optional
        Inset fraction, step factor and window radii.

    Returns
    -------
    tuple[int, int]
        Center of the window with the strictly greatest standard deviation.

    Notes
    -----
    Candidates are scanned rows outer, columns inner, spaced by
    max(radius / step_factor, 1) on each axis; ties keep the first found.
    If no window has a standard deviation above 0 (an all-flat image) the
    result is (0, 0), which callers must treat as "no anchor found".
    """
    if config is None:
        config = AnchorConfig()
    config.validate()

    inset_x = int(image.width * config.inset)
    inset_y = int(image.height * config.inset)
    step_x = max(int(config.radius_x / config.step_factor), 1)
    step_y = max(int(config.radius_y / config.step_factor), 1)

    best_stddev = 0.0
    best_x = 0
    best_y = 0
    n_candidates = 0

    for y in range(inset_y, image.height - inset_y, step_y):
        for x in range(inset_x, image.width - inset_x, step_x):
            window = image.crop_center(
                config.radius_x, config.radius_y, x, y, BoundaryPolicy.CLAMP
            )
            stddev = window.stddev()
            n_candidates += 1
            if stddev > best_stddev:
                best_stddev = stddev
                best_x = x
                best_y = y

    if best_stddev > 0:
        logger.info(
            "Anchor at (%d, %d), stddev=%.6f (%d candidates)",
            best_x, best_y, best_stddev, n_candidates,
        )
    else:
        logger.warning("No contrast found in %d candidate windows; anchor defaults to (0, 0)", n_candidates)

    return best_x, best_y

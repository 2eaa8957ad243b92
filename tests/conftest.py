"""
Pytest configuration and fixtures.

Author: driftalign developers
"""

import numpy as np
import pytest
from scipy import ndimage

from driftalign.image import Image


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(1234)


@pytest.fixture
def patch_array():
    """Create a flat background with a random-valued square patch."""
    def _create(width=64, height=64, size=21, center=None, background=0.5, seed=7):
        data = np.full((height, width), background, dtype=np.float32)
        cx, cy = center if center is not None else (width // 2, height // 2)
        half = size // 2
        patch = np.random.default_rng(seed).uniform(0.0, 1.0, (size, size))
        data[cy - half:cy - half + size, cx - half:cx - half + size] = patch
        return data

    return _create


@pytest.fixture
def checkerboard_array():
    """Create a constant field with a centered 0/1 checkerboard."""
    def _create(width=64, height=64, size=21, background=0.0):
        data = np.full((height, width), background, dtype=np.float32)
        cx, cy = width // 2, height // 2
        half = size // 2
        board = np.indices((size, size)).sum(axis=0) % 2
        data[cy - half:cy - half + size, cx - half:cx - half + size] = board
        return data

    return _create


@pytest.fixture
def shifted_pair(patch_array):
    """Reference and candidate images where the candidate is rolled by (tx, ty)."""
    def _create(tx=3, ty=-2, **kwargs):
        data = patch_array(**kwargs)
        moved = np.roll(data, shift=(ty, tx), axis=(0, 1))
        return Image.from_array(data), Image.from_array(moved)

    return _create


@pytest.fixture
def smooth_array():
    """Create a smooth random field scaled to [0, 1]."""
    def _create(width=64, height=64, sigma=2.0, seed=11):
        noise = np.random.default_rng(seed).normal(size=(height, width))
        field = ndimage.gaussian_filter(noise, sigma)
        field -= field.min()
        field /= field.max()
        return field.astype(np.float32)

    return _create

"""
driftalign - Translation alignment of drifting astronomical exposures.

Frames of the same field drift between exposures. driftalign finds the
integer (and optionally subpixel) translation that superimposes each
frame onto a base frame with a staged correlation search, writes the
aligned frames, and stacks them. Large frames can live in out-of-core,
memory-mapped storage.

Example
-------
>>> from driftalign import AlignConfig, HierarchicalAligner, apply_alignment, find_anchor, read_image
>>> base, frame = read_image("m31_001.fits"), read_image("m31_002.fits")
>>> cx, cy = find_anchor(base)
>>> aligner = HierarchicalAligner(AlignConfig(radius_x=30, radius_y=30, max_offset=60))
>>> alignment = aligner.align(base, frame, cx, cy)
>>> aligned = apply_alignment(frame, alignment, base.width, base.height)

Author: driftalign developers
"""

from .utils import __version__, __version_info__, get_version

# Configuration
from .config import AlignConfig, AnchorConfig, ConfigError, RunConfig, parse_parameters

# Storage
from .huge import HugeFloatArray
from .grid import RGB, ArrayGrid, Channel, Grid, MappedGrid

# Images
from .image import BoundaryPolicy, Image

# I/O functions
from .io import list_images, read_image, write_image

# Alignment
from .anchor import find_anchor
from .align import (
    Alignment,
    HierarchicalAligner,
    ImageAligner,
    SimpleAligner,
    apply_alignment,
    load_alignments,
    save_alignments,
)

# Stacking
from .stack import average_stack, max_stack, median_stack, min_stack, sigma_clip_stack

# Command-line drivers
from .cli import align_files, stack_files

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version",
    # Config
    "AlignConfig",
    "AnchorConfig",
    "RunConfig",
    "ConfigError",
    "parse_parameters",
    # Storage
    "HugeFloatArray",
    "Grid",
    "ArrayGrid",
    "MappedGrid",
    "Channel",
    "RGB",
    # Images
    "Image",
    "BoundaryPolicy",
    # I/O
    "list_images",
    "read_image",
    "write_image",
    # Alignment
    "find_anchor",
    "Alignment",
    "ImageAligner",
    "HierarchicalAligner",
    "SimpleAligner",
    "apply_alignment",
    "save_alignments",
    "load_alignments",
    # Stacking
    "average_stack",
    "max_stack",
    "median_stack",
    "min_stack",
    "sigma_clip_stack",
    # Drivers
    "align_files",
    "stack_files",
]

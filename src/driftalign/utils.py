"""
Small helpers shared by the driftalign modules.

Includes:
- Version info
- Quantization of [0, 1] samples to unsigned integer types
- Duration formatting for command summaries

Author: driftalign developers
"""

from __future__ import annotations

from datetime import datetime, timezone

import numpy as np

__version__ = "0.3.0"
__version_info__ = {
    "major": 0,
    "minor": 3,
    "patch": 0,
    "status": "beta",
}


def get_version() -> str:
    return __version__


def get_timestamp_iso() -> str:
    """Current UTC time, ISO 8601, second precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def quantize(data: np.ndarray, dtype: type = np.uint8) -> np.ndarray:
    """
    Map normalized samples onto the full range of an unsigned integer type.

    Values are clipped to [0, 1] and rounded to the nearest level.

    Parameters
    ----------
    data : np.ndarray
        Samples nominally in [0, 1].
    dtype : numpy unsigned integer type, default np.uint8
        Target type, e.g. np.uint8 for PNG or np.uint16 for TIFF.
    """
    if not np.issubdtype(dtype, np.unsignedinteger):
        raise ValueError(f"Expected an unsigned integer dtype, got {np.dtype(dtype)}")
    top = np.iinfo(dtype).max
    return np.round(np.clip(data, 0.0, 1.0) * top).astype(dtype)


def format_duration(seconds: float) -> str:
    """'4.2s', '3m 07s' or '1h 02m 03s'."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m {secs:02d}s"

"""
Translation alignment of a candidate frame onto a reference frame.

Two aligners share one contract, ``align(reference, candidate, center_x,
center_y, max_offset) -> Alignment``:

- HierarchicalAligner: brute-force search over every integer offset with
  |dx|, |dy| <= max_offset, pruned by a three-stage early-rejection funnel
  (single sample, narrow strip, full window), followed by an optional
  subpixel refinement around the best integer offset.
- SimpleAligner: scores every offset with the full-window error on a
  single channel. Slower, but the reference the hierarchical result must
  agree with.

An alignment (x, y) means ``candidate.crop(x, y, w, h)`` superimposes the
candidate onto the reference. Errors are mean squared differences.

Author: driftalign developers
"""

from __future__ import annotations

import json
import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy import ndimage

from .config import AlignConfig
from .grid import Channel
from .image import BoundaryPolicy, Image

logger = logging.getLogger(__name__)

# Extra samples around the subpixel patch so spline edges stay outside the window
SUBPIXEL_MARGIN = 4

ALIGNMENTS_FORMAT_VERSION = "1.0"


@dataclass(frozen=True)
class Alignment:
    """Result of aligning one candidate frame."""

    x: int
    y: int
    error: float
    """Error of the finest stage evaluated (sentinel if nothing improved)."""

    subpixel_x: float = 0.0
    subpixel_y: float = 0.0

    # Diagnostics: offsets that passed each stage's gate
    stage0_hits: int = 0
    stage1_hits: int = 0
    stage2_hits: int = 0

    improvements: tuple[tuple[int, int, float], ...] = ()
    """Accepted (dx, dy, error) updates, in acceptance order."""

    @property
    def improved(self) -> bool:
        """True if some offset beat the initial best error."""
        return self.stage2_hits > 0

    @property
    def offset(self) -> tuple[float, float]:
        """Total offset including the subpixel part."""
        return self.x + self.subpixel_x, self.y + self.subpixel_y

    def to_dict(self) -> dict:
        """Convert to a JSON-serializable dict."""
        return {
            "x": self.x,
            "y": self.y,
            "error": self.error,
            "subpixel_x": self.subpixel_x,
            "subpixel_y": self.subpixel_y,
            "stage0_hits": self.stage0_hits,
            "stage1_hits": self.stage1_hits,
            "stage2_hits": self.stage2_hits,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Alignment":
        """Rebuild from ``to_dict`` output."""
        return cls(
            x=int(d["x"]),
            y=int(d["y"]),
            error=float(d["error"]),
            subpixel_x=float(d.get("subpixel_x", 0.0)),
            subpixel_y=float(d.get("subpixel_y", 0.0)),
            stage0_hits=int(d.get("stage0_hits", 0)),
            stage1_hits=int(d.get("stage1_hits", 0)),
            stage2_hits=int(d.get("stage2_hits", 0)),
        )


IDENTITY = Alignment(0, 0, 0.0)


def _mse(a: np.ndarray, b: np.ndarray) -> float:
    d = a - b
    return float(np.mean(d * d))


class ImageAligner:
    """
    Base class for aligners.

    Parameters
    ----------
    config : AlignConfig, optional
        Search parameters. Validated on construction.
    """

    def __init__(self, config: AlignConfig | None = None):
        self.config = config if config is not None else AlignConfig()
        self.config.validate()

    def align(
        self,
        reference: Image,
        candidate: Image,
        center_x: int | None = None,
        center_y: int | None = None,
        max_offset: int | None = None,
    ) -> Alignment:
        """
        Find the translation of ``candidate`` that best matches ``reference``.

        Parameters
        ----------
        reference, candidate : Image
            Frames to compare. Only read.
        center_x, center_y : int, optional
            Anchor center in the reference (default: image center).
        max_offset : int, optional
            Largest |dx|, |dy| searched (default: ``config.max_offset``).

        Returns
        -------
        Alignment
            The identity if ``reference`` and ``candidate`` are the same object.
        """
        if reference is candidate:
            return IDENTITY
        if center_x is None:
            center_x = reference.width // 2
        if center_y is None:
            center_y = reference.height // 2
        if max_offset is None:
            max_offset = self.config.max_offset
        if max_offset < 0:
            raise ValueError(f"max_offset must be >= 0, got {max_offset}")
        return self._search(reference, candidate, center_x, center_y, max_offset)

    def _search(
        self,
        reference: Image,
        candidate: Image,
        center_x: int,
        center_y: int,
        max_offset: int,
    ) -> Alignment:
        raise NotImplementedError


class _SearchState:
    """
    Best offset and the (stage 0, stage 1, stage 2) best errors.

    The triple and the offset change together under one lock, and readers
    take a snapshot under the same lock, so no reader sees a partial update.
    """

    def __init__(self, initial_error: float):
        self._lock = threading.Lock()
        self._errors = (initial_error, initial_error, initial_error)
        self._best = (0, 0)
        self._best_index: int | None = None
        self.improvements: list[tuple[int, int, float]] = []

    def snapshot(self) -> tuple[float, float, float]:
        with self._lock:
            return self._errors

    def offer(self, index: int, dx: int, dy: int, e0: float, e1: float, e2: float) -> bool:
        """Accept the offset if its stage 2 error beats the current best."""
        with self._lock:
            best = self._errors[2]
            if e2 < best:
                self.improvements.append((dx, dy, e2))
            elif e2 == best and self._best_index is not None and index < self._best_index:
                # equal error from an earlier raster index (parallel scans) replaces the last entry
                self.improvements[-1] = (dx, dy, e2)
            else:
                return False
            self._errors = (e0, e1, e2)
            self._best = (dx, dy)
            self._best_index = index
            return True

    @property
    def best(self) -> tuple[int, int]:
        with self._lock:
            return self._best

    @property
    def best_error(self) -> float:
        with self._lock:
            return self._errors[2]


class HierarchicalAligner(ImageAligner):
    """
    Staged coarse-to-fine correlation search with subpixel refinement.

    Offsets are visited in raster order (dy outer, dx inner, ascending).
    Each passes up to three stages, each gated on the best errors so far:

    - Stage 0: squared error of the single anchor sample; continue if
      ``e0 <= fast_error_threshold * best0``
    - Stage 1: error over the fast window (``fast_radius_x`` x
      ``fast_radius_y``); continue if ``e1 <= fast_error_threshold * best1``
    - Stage 2: error over the full window; if ``e2 < best2`` the offset
      becomes the best and (best0, best1, best2) are replaced together

    The gates are inclusive, so a best of exactly 0 at a wrong offset still
    lets every later zero-error offset through. An exact match therefore
    always reaches Stage 2.

    With ``config.workers > 1`` the dy rows run on a thread pool sharing one
    locked search state. Each row gates against the best it sees at that
    moment, so hit counts and the improvement sequence depend on scheduling.
    The winner equals the sequential one when the optimum is unique and
    passes the gates, and equal errors go to the lower raster index.

    Examples
    --------
    >>> aligner = HierarchicalAligner(AlignConfig(radius_x=20, radius_y=20, max_offset=10))
    >>> alignment = aligner.align(reference, candidate, 120, 80)
    >>> aligned = apply_alignment(candidate, alignment, reference.width, reference.height)
    """

    def _channels(self, reference: Image, candidate: Image) -> tuple[Channel, ...]:
        channels = self.config.channels or reference.channels
        missing = [c.name for c in channels if not (reference.has_channel(c) and candidate.has_channel(c))]
        if missing:
            raise ValueError(f"Channel(s) {missing} missing from reference or candidate")
        return tuple(channels)

    def _search(self, reference, candidate, center_x, center_y, max_offset):
        cfg = self.config
        channels = self._channels(reference, candidate)
        rx, ry = cfg.radius_x, cfg.radius_y
        frx, fry = cfg.effective_fast_radius_x, cfg.fast_radius_y
        margin = SUBPIXEL_MARGIN if cfg.subpixel_step > 0 else 0

        fill = BoundaryPolicy.FILL
        ref0 = reference.crop_array(center_x, center_y, 1, 1, fill, channels=channels)
        ref1 = reference.crop_array(
            center_x - frx, center_y - fry, 2 * frx + 1, 2 * fry + 1, fill, channels=channels
        )
        ref2 = reference.crop_array(
            center_x - rx, center_y - ry, 2 * rx + 1, 2 * ry + 1, fill, channels=channels
        )
        ref0, ref1, ref2 = (a.astype(np.float64) for a in (ref0, ref1, ref2))

        # One candidate read covering every window of every offset
        reach_x = max_offset + max(rx, frx) + margin
        reach_y = max_offset + max(ry, fry) + margin
        region = candidate.crop_array(
            center_x - reach_x, center_y - reach_y,
            2 * reach_x + 1, 2 * reach_y + 1,
            fill, channels=channels,
        ).astype(np.float64)

        state = _SearchState(cfg.initial_error)
        threshold = cfg.fast_error_threshold
        side = 2 * max_offset + 1

        def scan_row(dy: int) -> tuple[int, int, int]:
            hits0 = hits1 = hits2 = 0
            y = reach_y + dy
            row_base = (dy + max_offset) * side
            for dx in range(-max_offset, max_offset + 1):
                best0, best1, _ = state.snapshot()
                x = reach_x + dx

                e0 = _mse(ref0, region[:, y:y + 1, x:x + 1])
                if not e0 <= threshold * best0:
                    continue
                hits0 += 1

                e1 = _mse(ref1, region[:, y - fry:y + fry + 1, x - frx:x + frx + 1])
                if not e1 <= threshold * best1:
                    continue
                hits1 += 1

                e2 = _mse(ref2, region[:, y - ry:y + ry + 1, x - rx:x + rx + 1])
                if state.offer(row_base + dx + max_offset, dx, dy, e0, e1, e2):
                    hits2 += 1
                    logger.debug("Stage 2: %d, %d : %.8g", dx, dy, e2)
            return hits0, hits1, hits2

        rows = range(-max_offset, max_offset + 1)
        if cfg.workers > 1:
            with ThreadPoolExecutor(max_workers=cfg.workers) as executor:
                counts = list(executor.map(scan_row, rows))
        else:
            counts = [scan_row(dy) for dy in rows]
        hits0, hits1, hits2 = (sum(c) for c in zip(*counts))

        best_x, best_y = state.best
        error = state.best_error

        sub_x = sub_y = 0.0
        if cfg.subpixel_step > 0 and hits2 > 0:
            sub_x, sub_y, error = self._refine(
                region, ref2, reach_x + best_x, reach_y + best_y, error
            )

        logger.info(
            "Aligned: offset=(%d, %d) subpixel=(%.2f, %.2f) error=%.6g hits=%d/%d/%d of %d",
            best_x, best_y, sub_x, sub_y, error, hits0, hits1, hits2, side * side,
        )

        return Alignment(
            x=best_x,
            y=best_y,
            error=error,
            subpixel_x=sub_x,
            subpixel_y=sub_y,
            stage0_hits=hits0,
            stage1_hits=hits1,
            stage2_hits=hits2,
            improvements=tuple(state.improvements),
        )

    def _refine(
        self,
        region: np.ndarray,
        ref2: np.ndarray,
        x: int,
        y: int,
        best_error: float,
    ) -> tuple[float, float, float]:
        """
        Search fractional offsets in [-1, 1) around region position (x, y).

        Only offsets strictly better than ``best_error`` are kept.
        """
        step = self.config.subpixel_step
        rx, ry = self.config.radius_x, self.config.radius_y
        m = SUBPIXEL_MARGIN
        patch = region[:, y - ry - m:y + ry + m + 1, x - rx - m:x + rx + m + 1]

        k_min = math.ceil(-1.0 / step - 1e-9)
        k_max = math.ceil(1.0 / step - 1e-9)

        best_fx = best_fy = 0.0
        for ky in range(k_min, k_max):
            fy = ky * step
            for kx in range(k_min, k_max):
                if kx == 0 and ky == 0:
                    continue
                fx = kx * step
                window = np.stack([
                    ndimage.shift(plane, shift=(-fy, -fx), order=3, mode="nearest")[m:-m, m:-m]
                    for plane in patch
                ])
                error = _mse(ref2, window)
                if error < best_error:
                    best_error = error
                    best_fx, best_fy = fx, fy
        return best_fx, best_fy, best_error


class SimpleAligner(ImageAligner):
    """
    Exhaustive single-channel aligner.

    Scores every offset of the raster with the full-window error on
    ``config.channel`` (or the reference's first channel when it has no
    such channel). No staging and no subpixel refinement.
    """

    def _channel(self, reference: Image, candidate: Image) -> Channel:
        channel = self.config.channel
        if not reference.has_channel(channel):
            channel = reference.channels[0]
        if not candidate.has_channel(channel):
            raise ValueError(f"Candidate has no {channel.name} channel")
        return channel

    def _search(self, reference, candidate, center_x, center_y, max_offset):
        channel = self._channel(reference, candidate)
        rx, ry = self.config.radius_x, self.config.radius_y
        fill = BoundaryPolicy.FILL

        base = reference.crop_array(
            center_x - rx, center_y - ry, 2 * rx + 1, 2 * ry + 1, fill, channels=(channel,)
        ).astype(np.float64)

        best_error = self.config.initial_error
        best_x = best_y = 0
        for dy in range(-max_offset, max_offset + 1):
            for dx in range(-max_offset, max_offset + 1):
                window = candidate.crop_array(
                    center_x + dx - rx, center_y + dy - ry, 2 * rx + 1, 2 * ry + 1,
                    fill, channels=(channel,),
                ).astype(np.float64)
                error = _mse(base, window)
                if error < best_error:
                    logger.debug("Error: %d, %d : %.8g", dx, dy, error)
                    best_error = error
                    best_x, best_y = dx, dy

        logger.info("Simple alignment: offset=(%d, %d) error=%.6g", best_x, best_y, best_error)
        return Alignment(best_x, best_y, best_error)


def apply_alignment(
    image: Image,
    alignment: Alignment,
    width: int | None = None,
    height: int | None = None,
    boundary: BoundaryPolicy = BoundaryPolicy.CLAMP,
) -> Image:
    """
    Produce the aligned frame.

    Resamples by the subpixel offset when it is non-zero, then crops at
    the integer offset.

    Parameters
    ----------
    image : Image
        Candidate frame that was aligned.
    alignment : Alignment
        Result of ``align``.
    width, height : int, optional
        Output size (typically the reference size). Defaults to the image size.
    boundary : BoundaryPolicy, default CLAMP
        Policy for samples shifted in from outside the frame.
    """
    width = image.width if width is None else width
    height = image.height if height is None else height
    source = image
    if alignment.subpixel_x != 0.0 or alignment.subpixel_y != 0.0:
        source = image.shifted(alignment.subpixel_x, alignment.subpixel_y)
    return source.crop(alignment.x, alignment.y, width, height, boundary)


def save_alignments(
    alignments: dict[str, Alignment],
    output_path: str | Path,
    reference_path: str = "",
    metadata: dict | None = None,
) -> None:
    """
    Save alignments to a JSON file.

    Parameters
    ----------
    alignments : dict[str, Alignment]
        Alignment per source path.
    output_path : str or Path
        Output JSON file path.
    reference_path : str, optional
        Path to the reference frame.
    metadata : dict, optional
        Additional metadata to include (e.g. the configuration).
    """
    output_path = Path(output_path)

    data = {
        "version": ALIGNMENTS_FORMAT_VERSION,
        "reference_path": reference_path,
        "n_alignments": len(alignments),
        "metadata": metadata or {},
        "alignments": [
            {"source_path": path, **alignment.to_dict()}
            for path, alignment in alignments.items()
        ],
    }

    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)

    logger.info("Saved %d alignments to %s", len(alignments), output_path)


def load_alignments(input_path: str | Path) -> tuple[dict[str, Alignment], str, dict]:
    """
    Load alignments saved by ``save_alignments``.

    Returns
    -------
    tuple
        (alignments by source path, reference_path, metadata)
    """
    input_path = Path(input_path)

    with open(input_path) as f:
        data = json.load(f)

    alignments = {d["source_path"]: Alignment.from_dict(d) for d in data["alignments"]}

    logger.info("Loaded %d alignments from %s", len(alignments), input_path)

    return alignments, data.get("reference_path", ""), data.get("metadata", {})

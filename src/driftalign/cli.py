"""
Command-line interface for driftalign.

Usage:
    python -m driftalign align <base> [files ...] [options]
    driftalign stack <base> [files ...] --method median --out master.fits
    driftalign anchor <file>

Author: driftalign developers
"""

from __future__ import annotations

import argparse
import logging
import math
import time
from dataclasses import replace
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from .align import Alignment, HierarchicalAligner, ImageAligner, SimpleAligner, apply_alignment, save_alignments
from .anchor import find_anchor
from .cli_output import (
    print_alignment_table,
    print_banner,
    print_box,
    print_error,
    print_field,
    print_info,
    print_section,
    print_success,
    print_warning,
    progress,
    setup_terminal,
)
from .config import AlignConfig, AnchorConfig, ConfigError, RunConfig, parse_parameters
from .image import Image
from .io import read_image, write_image
from .stack import average_stack, max_stack, median_stack, min_stack, sigma_clip_stack
from .utils import format_duration, get_timestamp_iso, get_version

logger = logging.getLogger(__name__)

RADIUS_KEYS = frozenset({"radius", "checkRadius", "radius_x", "radius_y"})
SEARCH_KEYS = frozenset({"max_offset", "searchRadius"})

STACK_METHODS = ("sigma-clip-median", "sigma-clip", "average", "median", "max", "min")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_set_options(entries: Iterable[str] | None) -> dict[str, str]:
    """
    Turn ``key=value`` entries into a parameter mapping.

    Raises
    ------
    ConfigError
        If an entry has no ``=`` or an empty key.
    """
    params: dict[str, str] = {}
    for entry in entries or ():
        key, sep, value = entry.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ConfigError(f"Expected key=value, got {entry!r}")
        params[key] = value.strip()
    return params


def derive_defaults(
    base: Image,
    align_config: AlignConfig,
    anchor_config: AnchorConfig,
    params: dict[str, str],
) -> tuple[AlignConfig, AnchorConfig]:
    """
    Fill window and search sizes the user did not give from the base image.

    radius = floor(sqrt(min(width, height))), search radius =
    min(min(width, height), 4 * radius). The anchor window follows the
    alignment window.
    """
    min_size = min(base.width, base.height)
    if not RADIUS_KEYS & params.keys():
        radius = math.isqrt(min_size)
        align_config = align_config.with_radius(radius)
        anchor_config = replace(anchor_config, radius_x=radius, radius_y=radius)
        logger.info("Derived window radius %d from %dx%d base", radius, base.width, base.height)
    if not SEARCH_KEYS & params.keys():
        search = min(min_size, 4 * max(align_config.radius_x, align_config.radius_y))
        align_config = replace(align_config, max_offset=search)
        logger.info("Derived search radius %d", search)
    return align_config, anchor_config


def output_name(path: Path, frame_error: float, run_config: RunConfig) -> str | None:
    """
    Output filename for an aligned frame, or None if it is not written.

    Frames whose error to the base frame is above ``error_threshold`` use
    ``prefix_bad`` and are only written when ``save_bad`` is set.
    """
    if frame_error <= run_config.error_threshold:
        return f"{run_config.prefix}_{path.name}"
    if run_config.save_bad:
        return f"{run_config.prefix_bad}_{path.name}"
    return None


def iter_alignments(
    base_path: Path,
    paths: Sequence[Path],
    aligner: ImageAligner,
    center: tuple[int, int],
    run_config: RunConfig,
    base: Image,
    quiet: bool = False,
) -> Iterator[tuple[Path, Alignment, Image, float]]:
    """
    Align each file onto the base and yield (path, alignment, aligned frame,
    frame error).

    The frame error is ``base.average_error(aligned)`` over the whole frame,
    unlike ``alignment.error`` which only covers the anchor window. The base
    file itself is aligned as the same object, which yields the identity.
    """
    base_key = base_path.resolve()
    pbar = progress(len(paths), "Aligning", quiet)
    try:
        for path in paths:
            candidate = base if path.resolve() == base_key else read_image(path)
            alignment = aligner.align(base, candidate, center[0], center[1])
            aligned = apply_alignment(candidate, alignment, base.width, base.height, run_config.boundary)
            frame_error = base.average_error(aligned)
            pbar.set_postfix_str(f"{path.name}: ({alignment.x}, {alignment.y}) {frame_error:.3g}")
            pbar.update(1)
            yield path, alignment, aligned, frame_error
    finally:
        pbar.close()


def _prepare(
    base_path: Path,
    params: dict[str, str],
    simple: bool,
    workers: int | None,
    center: tuple[int, int] | None,
    quiet: bool,
) -> tuple[Image, ImageAligner, tuple[int, int], RunConfig]:
    align_config, anchor_config, run_config = parse_parameters(params)
    if workers is not None:
        align_config = replace(align_config, workers=workers)
        align_config.validate()

    base = read_image(base_path)
    align_config, anchor_config = derive_defaults(base, align_config, anchor_config, params)

    if center is None:
        center = find_anchor(base, anchor_config)
    aligner = SimpleAligner(align_config) if simple else HierarchicalAligner(align_config)

    if not quiet:
        print_section(f"Base {base_path.name}")
        print_field("Size", f"{base.width} x {base.height}")
        print_field("Channels", ", ".join(c.name for c in base.channels))
        print_field("Aligner", type(aligner).__name__)
        print_field("Window radius", f"{align_config.radius_x} x {align_config.radius_y}")
        print_field("Search radius", align_config.max_offset)
        print_field("Anchor", f"({center[0]}, {center[1]})")
    return base, aligner, center, run_config


def align_files(
    base_path: str | Path,
    paths: Sequence[str | Path],
    params: dict[str, str] | None = None,
    output_dir: str | Path | None = None,
    simple: bool = False,
    workers: int | None = None,
    center: tuple[int, int] | None = None,
    save_alignments_path: str | Path | None = None,
    quiet: bool = False,
) -> list[tuple[Path, Alignment, float]]:
    """
    Align files onto a base frame and write the aligned frames.

    Parameters
    ----------
    base_path : str or Path
        Reference frame.
    paths : sequence of str or Path
        Frames to align. The base is aligned too when listed.
    params : dict[str, str], optional
        Parameters as accepted by ``parse_parameters``.
    output_dir : str or Path, optional
        Where aligned frames go (default: next to each input).
    simple : bool, default False
        Use the exhaustive single-channel aligner.
    workers : int, optional
        Worker threads for the hierarchical search.
    center : tuple[int, int], optional
        Anchor center. Found with ``find_anchor`` when not given.
    save_alignments_path : str or Path, optional
        Write all alignments to this JSON file.
    quiet : bool, default False
        If True, suppress colored output (use logging only).

    Returns
    -------
    list[tuple[Path, Alignment, float]]
        (path, alignment, error of the aligned frame to the base) per input,
        sorted by that error when ``sort`` is set.
    """
    start_time = time.time()
    params = dict(params or {})
    base_path = Path(base_path)
    paths = [Path(p) for p in paths]

    base, aligner, center, run_config = _prepare(base_path, params, simple, workers, center, quiet)

    results: list[tuple[Path, Alignment, float]] = []
    n_bad = 0
    for path, alignment, aligned, frame_error in iter_alignments(
        base_path, paths, aligner, center, run_config, base, quiet
    ):
        results.append((path, alignment, frame_error))
        if frame_error > run_config.error_threshold:
            n_bad += 1
            logger.warning("Bad alignment for %s: error %.6g", path.name, frame_error)
        name = output_name(path, frame_error, run_config)
        if name is not None:
            out_dir = Path(output_dir) if output_dir is not None else path.parent
            write_image(out_dir / name, aligned)

    if save_alignments_path is not None:
        save_alignments(
            {str(p): a for p, a, _ in results},
            save_alignments_path,
            reference_path=str(base_path),
            metadata={
                "created": get_timestamp_iso(),
                "aligner": type(aligner).__name__,
                "center": list(center),
                "radius_x": aligner.config.radius_x,
                "radius_y": aligner.config.radius_y,
                "max_offset": aligner.config.max_offset,
                "frame_errors": {str(p): e for p, _, e in results},
            },
        )

    if run_config.sort:
        results.sort(key=lambda item: item[2])

    if not quiet:
        print_section("Alignments")
        print_alignment_table([(p.name, a, e) for p, a, e in results], run_config.error_threshold)
        if save_alignments_path is not None:
            print_field("Alignments", save_alignments_path, path=True)
        print_box(
            "Alignment complete",
            [
                f"Frames aligned: {len(results)}",
                f"Bad alignments: {n_bad}",
                f"Time: {format_duration(time.time() - start_time)}",
            ],
        )
    return results


def stack_files(
    base_path: str | Path,
    paths: Sequence[str | Path],
    output_path: str | Path,
    method: str = "sigma-clip-median",
    params: dict[str, str] | None = None,
    simple: bool = False,
    workers: int | None = None,
    center: tuple[int, int] | None = None,
    sigma: float = 3.0,
    maxiters: int = 5,
    quiet: bool = False,
) -> Image:
    """
    Align files onto a base frame and stack the good ones.

    Frames whose error to the base frame exceeds ``error_threshold`` are
    left out.

    Returns
    -------
    Image
        The stacked frame, also written to ``output_path``.
    """
    if method not in STACK_METHODS:
        raise ValueError(f"Unknown stack method {method!r}, expected one of {STACK_METHODS}")
    start_time = time.time()
    params = dict(params or {})
    base_path = Path(base_path)
    paths = [Path(p) for p in paths]

    base, aligner, center, run_config = _prepare(base_path, params, simple, workers, center, quiet)

    frames = []
    for path, _, aligned, frame_error in iter_alignments(
        base_path, paths, aligner, center, run_config, base, quiet
    ):
        if frame_error > run_config.error_threshold:
            logger.warning("Skipping %s: error %.6g", path.name, frame_error)
            continue
        frames.append(aligned)
    if not frames:
        raise ValueError("No frame aligned within error_threshold")

    if not quiet:
        print_info(f"Stacking {len(frames)}/{len(paths)} frames ({method})")
    if method == "average":
        stacked = average_stack(frames)
    elif method == "median":
        stacked = median_stack(frames)
    elif method == "max":
        stacked = max_stack(frames)
    elif method == "min":
        stacked = min_stack(frames)
    else:
        combine = "median" if method == "sigma-clip-median" else "mean"
        stacked, _ = sigma_clip_stack(frames, sigma=sigma, maxiters=maxiters, combine=combine)

    write_image(output_path, stacked)
    if not quiet:
        print_field("Stack", output_path, path=True)
        print_box(
            "Stacking complete",
            [
                f"Frames stacked: {len(frames)} of {len(paths)}",
                f"Method: {method}",
                f"Time: {format_duration(time.time() - start_time)}",
            ],
        )
    return stacked


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--set",
        dest="params",
        action="append",
        metavar="KEY=VALUE",
        help="Set a parameter (repeatable), e.g. --set radius=20 --set searchRadius=50",
    )
    parser.add_argument(
        "--simple",
        action="store_true",
        help="Use the exhaustive single-channel aligner",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Worker threads for the offset search (default: 1)",
    )
    parser.add_argument(
        "--center",
        type=int,
        nargs=2,
        metavar=("X", "Y"),
        default=None,
        help="Anchor center in the base frame (default: highest-contrast window)",
    )
    _add_verbosity(parser)


def _add_verbosity(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress colored output (use logging only)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="driftalign",
        description="Translation alignment and stacking of drifting astronomical exposures",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"driftalign {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Align command
    align_parser = subparsers.add_parser(
        "align",
        help="Align frames onto a base frame",
    )
    align_parser.add_argument("base", type=str, help="Base (reference) frame")
    align_parser.add_argument("files", type=str, nargs="*", help="Frames to align")
    align_parser.add_argument(
        "--out",
        type=str,
        default=None,
        help="Output directory (default: next to each input)",
    )
    align_parser.add_argument(
        "--save-alignments",
        type=str,
        default=None,
        metavar="JSON",
        help="Save alignments to a JSON file",
    )
    _add_common(align_parser)

    # Stack command
    stack_parser = subparsers.add_parser(
        "stack",
        help="Align frames onto a base frame and stack them",
    )
    stack_parser.add_argument("base", type=str, help="Base (reference) frame")
    stack_parser.add_argument("files", type=str, nargs="*", help="Frames to align and stack")
    stack_parser.add_argument(
        "--out",
        type=str,
        required=True,
        help="Output file (format from suffix)",
    )
    stack_parser.add_argument(
        "--method",
        choices=STACK_METHODS,
        default="sigma-clip-median",
        help="Stacking method (default: sigma-clip-median)",
    )
    stack_parser.add_argument(
        "--sigma",
        type=float,
        default=3.0,
        help="Sigma for the sigma-clip methods (default: 3.0)",
    )
    stack_parser.add_argument(
        "--maxiters",
        type=int,
        default=5,
        help="Max iterations for sigma clipping (default: 5)",
    )
    _add_common(stack_parser)

    # Anchor command
    anchor_parser = subparsers.add_parser(
        "anchor",
        help="Print the highest-contrast anchor center of a frame",
    )
    anchor_parser.add_argument("file", type=str, help="Frame to scan")
    anchor_parser.add_argument(
        "--set",
        dest="params",
        action="append",
        metavar="KEY=VALUE",
        help="Set an anchor parameter (repeatable)",
    )
    _add_verbosity(anchor_parser)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.quiet)
    if not args.quiet:
        setup_terminal()
        print_banner(get_version())

    try:
        params = parse_set_options(args.params)

        if args.command == "align":
            files = args.files or [args.base]
            results = align_files(
                args.base,
                files,
                params=params,
                output_dir=args.out,
                simple=args.simple,
                workers=args.workers,
                center=tuple(args.center) if args.center else None,
                save_alignments_path=args.save_alignments,
                quiet=args.quiet,
            )
            if not args.quiet:
                print_success(f"Aligned {len(results)} frame(s)")
            return 0

        if args.command == "stack":
            files = args.files or [args.base]
            stack_files(
                args.base,
                files,
                args.out,
                method=args.method,
                params=params,
                simple=args.simple,
                workers=args.workers,
                center=tuple(args.center) if args.center else None,
                sigma=args.sigma,
                maxiters=args.maxiters,
                quiet=args.quiet,
            )
            if not args.quiet:
                print_success(f"Stack written to {args.out}")
            return 0

        if args.command == "anchor":
            align_config, anchor_config, _ = parse_parameters(params)
            image = read_image(args.file)
            _, anchor_config = derive_defaults(image, align_config, anchor_config, params)
            x, y = find_anchor(image, anchor_config)
            if (x, y) == (0, 0):
                print_warning("No high-contrast window found")
            print(f"{x} {y}")
            if not args.quiet:
                print_info(f"Anchor of {Path(args.file).name}: ({x}, {y})")
            return 0

    except Exception as e:
        print_error(f"{args.command} failed: {e}")
        logger.exception("%s failed: %s", args.command, e)
        return 1

    parser.print_help()
    return 1

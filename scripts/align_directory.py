#!/usr/bin/env python3
"""
Align every frame of an observing directory onto one base frame.

The base is the first frame in name order unless --base is given. Aligned
frames and an alignments.json report go to the output directory.

Usage:
    python scripts/align_directory.py rawData/M42 --out processedData/M42
    python scripts/align_directory.py rawData/M42 --base rawData/M42/m42_017.fits --set radius=25

Author: driftalign developers
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from driftalign.cli import align_files, parse_set_options
from driftalign.io import list_images

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def align_directory(
    directory: Path,
    output_dir: Path,
    base: Path | None = None,
    pattern: str = "*",
    params: dict[str, str] | None = None,
    workers: int | None = None,
) -> dict:
    """Align the frames of ``directory`` and return a small summary."""
    frames = list_images(directory, pattern)
    if not frames:
        raise ValueError(f"No frames in {directory}")
    base = base if base is not None else frames[0]
    output_dir.mkdir(parents=True, exist_ok=True)

    results = align_files(
        base,
        frames,
        params=params,
        output_dir=output_dir,
        workers=workers,
        save_alignments_path=output_dir / "alignments.json",
        quiet=True,
    )
    errors = [frame_error for _, _, frame_error in results]
    summary = {
        "base": str(base),
        "n_frames": len(results),
        "best_error": min(errors),
        "worst_error": max(errors),
    }
    logger.info(
        "Aligned %d frames onto %s (error %.3g .. %.3g)",
        summary["n_frames"], Path(base).name, summary["best_error"], summary["worst_error"],
    )
    return summary


def main():
    parser = argparse.ArgumentParser(
        description="Align all frames of a directory onto a base frame",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Align on the first frame, default window and search sizes
  python scripts/align_directory.py rawData/M42

  # Larger window, four search threads
  python scripts/align_directory.py rawData/M42 --set radius=40 --workers 4
        """,
    )
    parser.add_argument("directory", type=Path, help="Folder holding the frames")
    parser.add_argument("--out", type=Path, default=None,
                        help="Output directory (default: <directory>/aligned)")
    parser.add_argument("--base", type=Path, default=None,
                        help="Base frame (default: first frame by name)")
    parser.add_argument("--pattern", type=str, default="*",
                        help="Glob pattern for frames (default: *)")
    parser.add_argument("--set", dest="params", action="append", metavar="KEY=VALUE",
                        help="Set a parameter (repeatable)")
    parser.add_argument("--workers", type=int, default=None,
                        help="Worker threads for the offset search")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.directory.is_dir():
        print(f"Error: Directory does not exist: {args.directory}")
        sys.exit(1)

    output_dir = args.out if args.out is not None else args.directory / "aligned"
    try:
        summary = align_directory(
            args.directory,
            output_dir,
            base=args.base,
            pattern=args.pattern,
            params=parse_set_options(args.params),
            workers=args.workers,
        )
        print(f"\nAligned {summary['n_frames']} frames onto {summary['base']}")
        print(f"  - {output_dir / 'alignments.json'}")

    except Exception as e:
        logger.exception("Alignment failed: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()

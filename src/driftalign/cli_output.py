"""
Terminal output for the driftalign commands.

Colors come from colorama, progress bars from tqdm. Core modules never
print; everything a user reads on the terminal goes through here.

Author: driftalign developers
"""

from __future__ import annotations

import os
import sys
from typing import Sequence

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .align import Alignment

colorama_init(autoreset=True)


class Palette:
    """Color codes used by the commands."""

    TITLE = Fore.CYAN + Style.BRIGHT
    GOOD = Fore.GREEN + Style.BRIGHT
    WARN = Fore.YELLOW
    BAD = Fore.RED + Style.BRIGHT
    LABEL = Fore.MAGENTA
    VALUE = Fore.YELLOW + Style.BRIGHT
    PATH = Fore.CYAN
    DIM = Style.DIM
    RESET = Style.RESET_ALL


class Glyphs:
    """Status glyphs, downgraded to ASCII on terminals without unicode."""

    OK = "✔"
    FAIL = "✘"
    NOTE = "•"
    TARGET = "◎"
    RULE = "─"

    @classmethod
    def use_ascii(cls) -> None:
        cls.OK = "[ok]"
        cls.FAIL = "[x]"
        cls.NOTE = "*"
        cls.TARGET = "(o)"
        cls.RULE = "-"


def print_banner(version: str) -> None:
    print(f"{Palette.TITLE}{Glyphs.TARGET} driftalign {version}{Palette.RESET}")


def print_section(title: str) -> None:
    """Title line followed by a rule of the same length."""
    print(f"\n{Palette.TITLE}{title}\n{Glyphs.RULE * len(title)}{Palette.RESET}")


def print_field(label: str, value: object, path: bool = False) -> None:
    """One ``label: value`` line; paths get their own color."""
    color = Palette.PATH if path else Palette.VALUE
    print(f"  {Palette.LABEL}{label:<14}{Palette.RESET}{color}{value}{Palette.RESET}")


def print_success(text: str) -> None:
    print(f"{Palette.GOOD}{Glyphs.OK} {text}{Palette.RESET}")


def print_warning(text: str) -> None:
    print(f"{Palette.WARN}! {text}{Palette.RESET}")


def print_error(text: str) -> None:
    print(f"{Palette.BAD}{Glyphs.FAIL} {text}{Palette.RESET}", file=sys.stderr)


def print_info(text: str) -> None:
    print(f"{Glyphs.NOTE} {text}")


def print_alignment_table(
    rows: Sequence[tuple[str, Alignment, float]],
    error_threshold: float,
) -> None:
    """
    Tabulate alignments, one frame per line.

    ``error`` is the anchor window error of the search, ``frame`` the error
    of the aligned frame to the base. Frames whose frame error exceeds
    ``error_threshold`` are highlighted.

    Parameters
    ----------
    rows : sequence of (name, Alignment, frame error)
        Frames in display order.
    error_threshold : float
        Largest error still considered a good alignment.
    """
    if not rows:
        return
    width = max(len(name) for name, _, _ in rows)
    header = (
        f"{'file':<{width}}  {'dx':>5} {'dy':>5} {'fx':>6} {'fy':>6}  "
        f"{'error':>11} {'frame':>11}  hits"
    )
    print(f"  {Palette.DIM}{header}{Palette.RESET}")
    for name, a, frame_error in rows:
        color = Palette.VALUE if frame_error <= error_threshold else Palette.WARN
        hits = f"{a.stage0_hits}/{a.stage1_hits}/{a.stage2_hits}"
        print(
            f"  {name:<{width}}  {color}{a.x:>5d} {a.y:>5d} "
            f"{a.subpixel_x:>6.2f} {a.subpixel_y:>6.2f}  {a.error:>11.4g} {frame_error:>11.4g}{Palette.RESET}  {hits}"
        )


def print_box(title: str, lines: Sequence[str]) -> None:
    """Framed block closing a command."""
    inner = max([len(title)] + [len(line) for line in lines]) + 2
    print(f"\n{Palette.GOOD}+{'=' * inner}+")
    print(f"| {title.center(inner - 2)} |")
    print(f"+{'-' * inner}+")
    for line in lines:
        print(f"| {line.ljust(inner - 2)} |")
    print(f"+{'=' * inner}+{Palette.RESET}")


def progress(total: int, desc: str, quiet: bool = False) -> tqdm:
    """
    Progress bar over frames.

    Parameters
    ----------
    total : int
        Number of frames.
    desc : str
        Label shown left of the bar.
    quiet : bool, default False
        Disable the bar.
    """
    return tqdm(
        total=total,
        desc=desc,
        unit="frame",
        bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}]{postfix}",
        colour="green",
        dynamic_ncols=True,
        disable=quiet,
    )


def setup_terminal() -> bool:
    """
    Pick unicode or ASCII glyphs for the current stdout.

    Returns
    -------
    bool
        True if unicode glyphs are kept.
    """
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    unicode = os.environ.get("TERM") != "dumb" and (not encoding or "utf" in encoding)
    if not unicode:
        Glyphs.use_ascii()
    return unicode

"""
Configuration dataclasses for driftalign.

Parameters arrive from the command line or a scripting layer as a
string-keyed mapping. They are parsed and validated once, here, and the
resulting frozen dataclasses are passed by value into the core.

Author: driftalign developers
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Mapping

from .grid import Channel
from .image import BoundaryPolicy


class ConfigError(ValueError):
    """Invalid configuration text or value."""


def _parse_int(key: str, text: str) -> int:
    try:
        return int(text.strip())
    except ValueError:
        raise ConfigError(f"{key}: expected an integer, got {text!r}") from None


def _parse_optional_int(key: str, text: str) -> int | None:
    if text.strip().lower() in ("", "none", "auto"):
        return None
    return _parse_int(key, text)


def _parse_float(key: str, text: str) -> float:
    try:
        return float(text.strip())
    except ValueError:
        raise ConfigError(f"{key}: expected a number, got {text!r}") from None


def _parse_bool(key: str, text: str) -> bool:
    value = text.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key}: expected a boolean, got {text!r}")


def _parse_str(key: str, text: str) -> str:
    return text


def _parse_channel(key: str, text: str) -> Channel:
    try:
        return Channel[text.strip().upper()]
    except KeyError:
        names = ", ".join(c.name.lower() for c in Channel)
        raise ConfigError(f"{key}: unknown channel {text!r} (one of {names})") from None


def _parse_channels(key: str, text: str) -> tuple[Channel, ...]:
    return tuple(_parse_channel(key, part) for part in text.split(",") if part.strip())


def _parse_boundary(key: str, text: str) -> BoundaryPolicy:
    try:
        return BoundaryPolicy(text.strip().lower())
    except ValueError:
        raise ConfigError(f"{key}: expected 'clamp' or 'fill', got {text!r}") from None


Parser = Callable[[str, str], object]

_ALIGN_PARSERS: dict[str, Parser] = {
    "radius_x": _parse_int,
    "radius_y": _parse_int,
    "fast_radius_x": _parse_optional_int,
    "fast_radius_y": _parse_int,
    "max_offset": _parse_int,
    "fast_error_threshold": _parse_float,
    "initial_error": _parse_float,
    "subpixel_step": _parse_float,
    "channel": _parse_channel,
    "channels": _parse_channels,
    "workers": _parse_int,
}
_ALIGN_ALIASES = {
    "radius": ("radius_x", "radius_y"),
    "checkRadius": ("radius_x", "radius_y"),
    "searchRadius": ("max_offset",),
    "subPixelStep": ("subpixel_step",),
    "fastErrorThreshold": ("fast_error_threshold",),
}

_ANCHOR_PARSERS: dict[str, Parser] = {
    "inset": _parse_float,
    "step_factor": _parse_float,
    "radius_x": _parse_int,
    "radius_y": _parse_int,
}
_ANCHOR_ALIASES = {
    "radius": ("radius_x", "radius_y"),
    "checkRadius": ("radius_x", "radius_y"),
    "anchor_inset": ("inset",),
    "anchor_step_factor": ("step_factor",),
}

_RUN_PARSERS: dict[str, Parser] = {
    "error_threshold": _parse_float,
    "prefix": _parse_str,
    "save_bad": _parse_bool,
    "prefix_bad": _parse_str,
    "sort": _parse_bool,
    "boundary": _parse_boundary,
}
_RUN_ALIASES = {
    "errorThreshold": ("error_threshold",),
    "saveBad": ("save_bad",),
    "prefixBad": ("prefix_bad",),
}


def _accepted(parsers: dict, aliases: dict) -> frozenset[str]:
    return frozenset(parsers) | frozenset(aliases)


def _from_mapping(cls, mapping: Mapping[str, str], parsers: dict, aliases: dict):
    """Parse, build and validate; later keys override earlier ones."""
    values = {}
    for key, text in mapping.items():
        targets = aliases.get(key, (key,))
        parser = parsers.get(targets[0])
        if parser is None:
            raise ConfigError(f"Unknown parameter: {key}")
        value = parser(key, str(text))
        for target in targets:
            values[target] = value
    config = cls(**values)
    try:
        config.validate()
    except ConfigError:
        raise
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return config


@dataclass(frozen=True)
class AlignConfig:
    """
    Parameters of the correlation search.

    Radii are half-extents: a radius r covers a window of 2r+1 samples.
    """

    # --- Windows ---
    radius_x: int = 100
    """Half-width of the full (Stage 2) comparison window."""

    radius_y: int = 100
    """Half-height of the full (Stage 2) comparison window."""

    fast_radius_x: int | None = None
    """Half-width of the fast (Stage 1) window. None = radius_x."""

    fast_radius_y: int = 0
    """Half-height of the fast (Stage 1) window (default: a one-row strip)."""

    # --- Search ---
    max_offset: int = 200
    """Largest |dx| and |dy| searched."""

    fast_error_threshold: float = 1.1
    """Early-rejection gate: a stage passes if error < threshold * best error."""

    initial_error: float = 1.0
    """Starting best error (largest squared error for samples in [0, 1])."""

    subpixel_step: float = 0.1
    """Step of the subpixel refinement over [-1, 1). 0 disables it."""

    # --- Channels ---
    channel: Channel = Channel.GRAY
    """Channel compared by the simple aligner (first channel if absent)."""

    channels: tuple[Channel, ...] | None = None
    """Channels compared by the hierarchical aligner. None = all reference channels."""

    # --- Parallelism ---
    workers: int = 1
    """Worker threads for the offset search. 1 = sequential."""

    KEYS = _accepted(_ALIGN_PARSERS, _ALIGN_ALIASES)

    @property
    def effective_fast_radius_x(self) -> int:
        return self.radius_x if self.fast_radius_x is None else self.fast_radius_x

    def with_radius(self, radius: int) -> "AlignConfig":
        """Copy with a square full window of the given radius."""
        return replace(self, radius_x=radius, radius_y=radius)

    def validate(self) -> None:
        """Validate configuration parameters."""
        for name in ("radius_x", "radius_y", "fast_radius_y", "max_offset"):
            value = getattr(self, name)
            if value < 0:
                raise ValueError(f"{name} must be >= 0, got {value}")
        if self.fast_radius_x is not None and self.fast_radius_x < 0:
            raise ValueError(f"fast_radius_x must be >= 0, got {self.fast_radius_x}")
        if self.fast_error_threshold < 1.0:
            raise ValueError(
                f"fast_error_threshold must be >= 1.0, got {self.fast_error_threshold}"
            )
        if self.initial_error <= 0:
            raise ValueError(f"initial_error must be positive, got {self.initial_error}")
        if not 0.0 <= self.subpixel_step < 1.0:
            raise ValueError(f"subpixel_step must be in [0, 1), got {self.subpixel_step}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.channels is not None and len(self.channels) == 0:
            raise ValueError("channels must not be empty")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "AlignConfig":
        """
        Parse string parameters.

        Keys are field names, plus ``radius`` (sets both radii) and the
        script names ``checkRadius``, ``searchRadius``, ``subPixelStep``
        and ``fastErrorThreshold``.

        Raises
        ------
        ConfigError
            Unknown key, unparseable value, or a value failing validation.
        """
        return _from_mapping(cls, mapping, _ALIGN_PARSERS, _ALIGN_ALIASES)


@dataclass(frozen=True)
class AnchorConfig:
    """Parameters of the anchor (high-contrast window) search."""

    inset: float = 0.25
    """Fraction of width/height excluded at each border."""

    step_factor: float = 1.0
    """Candidate spacing is max(radius / step_factor, 1)."""

    radius_x: int = 100
    """Half-width of the scored window."""

    radius_y: int = 100
    """Half-height of the scored window."""

    KEYS = _accepted(_ANCHOR_PARSERS, _ANCHOR_ALIASES)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if not 0.0 <= self.inset < 0.5:
            raise ValueError(f"inset must be in [0, 0.5), got {self.inset}")
        if self.step_factor <= 0:
            raise ValueError(f"step_factor must be positive, got {self.step_factor}")
        if self.radius_x < 0 or self.radius_y < 0:
            raise ValueError(f"radii must be >= 0, got {self.radius_x}, {self.radius_y}")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "AnchorConfig":
        """Parse string parameters (field names, ``radius``, ``anchor_inset``, ``anchor_step_factor``)."""
        return _from_mapping(cls, mapping, _ANCHOR_PARSERS, _ANCHOR_ALIASES)


@dataclass(frozen=True)
class RunConfig:
    """What to do with each aligned frame."""

    error_threshold: float = 1e-3
    """Frames with alignment error above this are 'bad'."""

    prefix: str = "aligned"
    """Filename prefix for well aligned outputs."""

    save_bad: bool = True
    """Also write badly aligned frames (with prefix_bad)."""

    prefix_bad: str = "badaligned"
    """Filename prefix for badly aligned outputs."""

    sort: bool = True
    """Report frames sorted by error (best first)."""

    boundary: BoundaryPolicy = BoundaryPolicy.CLAMP
    """Out-of-range policy when cropping the aligned frame."""

    KEYS = _accepted(_RUN_PARSERS, _RUN_ALIASES)

    def validate(self) -> None:
        """Validate configuration parameters."""
        if self.error_threshold < 0:
            raise ValueError(f"error_threshold must be >= 0, got {self.error_threshold}")
        if not self.prefix:
            raise ValueError("prefix must not be empty")
        if self.save_bad and not self.prefix_bad:
            raise ValueError("prefix_bad must not be empty when save_bad is set")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "RunConfig":
        """Parse string parameters (field names and the script's camelCase names)."""
        return _from_mapping(cls, mapping, _RUN_PARSERS, _RUN_ALIASES)


def parse_parameters(
    mapping: Mapping[str, str],
) -> tuple[AlignConfig, AnchorConfig, RunConfig]:
    """
    Route one flat parameter mapping to the three configurations.

    Keys understood by several configurations (e.g. ``radius``) go to each.

    Raises
    ------
    ConfigError
        If a key is understood by none of them.
    """
    unknown = [k for k in mapping if not (k in AlignConfig.KEYS or k in AnchorConfig.KEYS or k in RunConfig.KEYS)]
    if unknown:
        raise ConfigError(f"Unknown parameter(s): {', '.join(unknown)}")

    def pick(keys: frozenset[str]) -> dict[str, str]:
        return {k: v for k, v in mapping.items() if k in keys}

    return (
        AlignConfig.from_mapping(pick(AlignConfig.KEYS)),
        AnchorConfig.from_mapping(pick(AnchorConfig.KEYS)),
        RunConfig.from_mapping(pick(RunConfig.KEYS)),
    )

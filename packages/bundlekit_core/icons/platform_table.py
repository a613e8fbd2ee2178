"""Platform-mandated icon sizes and container type codes.

Sizes are expressed in points with a scale factor; the pixel dimension of a
representation is ``points * scale``. Type codes follow the ICNS family
layout (PNG payloads), with one nested family per non-default appearance.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .appearance import AppearanceTag

ICON_SIZE_RE = re.compile(r"^\s*(\d+)\s*x\s*(\d+)\s*(?:@\s*(\d+)\s*x)?\s*$", re.IGNORECASE)


@dataclass(frozen=True, order=True)
class IconSize:
    points: int
    scale: int = 1

    @property
    def pixels(self) -> int:
        return self.points * self.scale

    @property
    def label(self) -> str:
        base = f"{self.points}x{self.points}"
        return base if self.scale == 1 else f"{base}@{self.scale}x"


@dataclass(frozen=True, order=True)
class IconCell:
    """One (appearance, size) slot the container has to fill."""

    appearance: AppearanceTag
    size: IconSize

    @property
    def label(self) -> str:
        return f"{self.appearance.label} {self.size.label}"


REPRESENTATION_TYPE_BY_SIZE: dict[IconSize, bytes] = {
    IconSize(16, 1): b"icp4",
    IconSize(16, 2): b"ic11",
    IconSize(32, 1): b"icp5",
    IconSize(32, 2): b"ic12",
    IconSize(64, 1): b"icp6",
    IconSize(128, 1): b"ic07",
    IconSize(128, 2): b"ic13",
    IconSize(256, 1): b"ic08",
    IconSize(256, 2): b"ic14",
    IconSize(512, 1): b"ic09",
    IconSize(512, 2): b"ic10",
}
SIZE_BY_REPRESENTATION_TYPE: dict[bytes, IconSize] = {
    code: size for size, code in REPRESENTATION_TYPE_BY_SIZE.items()
}

PLATFORM_ICON_SIZES: tuple[IconSize, ...] = tuple(sorted(REPRESENTATION_TYPE_BY_SIZE))

# The iconset slots required for a complete application icon.
DEFAULT_REQUIRED_SIZES: tuple[IconSize, ...] = tuple(
    IconSize(points, scale) for points in (16, 32, 128, 256, 512) for scale in (1, 2)
)

CONTAINER_MAGIC = b"icns"
TOC_TYPE = b"TOC "
APPEARANCE_CHUNK_TYPES: dict[AppearanceTag, bytes] = {
    AppearanceTag.DARK: b"\xfd\xd9\x2f\xa8",
    AppearanceTag.TINTED: b"tint",
}
APPEARANCE_BY_CHUNK_TYPE: dict[bytes, AppearanceTag] = {
    code: tag for tag, code in APPEARANCE_CHUNK_TYPES.items()
}


def is_platform_size(size: IconSize) -> bool:
    return size in REPRESENTATION_TYPE_BY_SIZE


def representation_type(size: IconSize) -> bytes:
    try:
        return REPRESENTATION_TYPE_BY_SIZE[size]
    except KeyError:
        raise ValueError(f"No container representation for {size.label}") from None


def parse_icon_size(value: str) -> IconSize:
    match = ICON_SIZE_RE.match(str(value or ""))
    if not match:
        raise ValueError(f"Invalid icon size: {value!r} (expected e.g. 128x128@2x)")
    width, height = int(match.group(1)), int(match.group(2))
    if width != height:
        raise ValueError(f"Icon sizes must be square: {value!r}")
    size = IconSize(width, int(match.group(3) or 1))
    if not is_platform_size(size):
        raise ValueError(f"Not a platform icon size: {size.label}")
    return size


def icon_size_for_pixels(pixels: int, scale: int | None = None) -> IconSize | None:
    """Map a square pixel dimension onto a platform size, preferring 1x."""

    scales = (scale,) if scale else (1, 2)
    for candidate_scale in scales:
        if pixels % candidate_scale:
            continue
        size = IconSize(pixels // candidate_scale, candidate_scale)
        if is_platform_size(size):
            return size
    return None

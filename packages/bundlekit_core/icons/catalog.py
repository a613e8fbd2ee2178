"""Icon source catalog: discovers source images and indexes them by cell."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from PIL import Image

from .appearance import (
    APPEARANCE_ALIASES,
    APPEARANCE_ORDER,
    AppearanceTag,
    sort_appearance_tags,
)
from .errors import (
    DuplicateCellError,
    IconConfigError,
    SizeMismatchError,
    UnreadableSourceError,
    UnsupportedIconSizeError,
)
from .platform_table import IconCell, IconSize, icon_size_for_pixels, is_platform_size

logger = logging.getLogger("bundlekit_core.icons.catalog")

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif")
CONTAINER_SUFFIX = ".icns"
ASSET_CATALOG_SUFFIX = ".car"

_APPEARANCE_SUFFIX_RE = re.compile(
    r"[~_.\-](" + "|".join(sorted(APPEARANCE_ALIASES, key=len, reverse=True)) + r")$"
)
_DECLARED_SIZE_RE = re.compile(r"(\d+)x(\d+)(?:@(\d+)x)?$")
_SCALE_ONLY_RE = re.compile(r"@(\d+)x$")


@dataclass(frozen=True)
class ParsedIconName:
    appearance: AppearanceTag | None
    declared_pixels: tuple[int, int] | None
    scale: int | None


@dataclass(frozen=True)
class SourceImage:
    path: Path
    appearance: AppearanceTag
    size: IconSize
    width: int
    height: int
    mode: str
    bits_per_pixel: int

    @property
    def pixels(self) -> int:
        return self.width

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "appearance": self.appearance.value,
            "size": self.size.label,
            "width": self.width,
            "height": self.height,
            "mode": self.mode,
            "bits_per_pixel": self.bits_per_pixel,
        }


@dataclass(frozen=True)
class IconCatalog:
    """Read-only index of source images keyed by (appearance, size)."""

    images: Mapping[tuple[AppearanceTag, IconSize], SourceImage]
    prebuilt_containers: tuple[Path, ...] = ()
    asset_catalogs: tuple[Path, ...] = ()
    skipped_images: tuple[Path, ...] = ()

    def get(self, appearance: AppearanceTag, size: IconSize) -> SourceImage | None:
        return self.images.get((appearance, size))

    def images_for(self, appearance: AppearanceTag) -> tuple[SourceImage, ...]:
        found = [img for (tag, _), img in self.images.items() if tag == appearance]
        return tuple(sorted(found, key=lambda img: img.size))

    def tags(self) -> tuple[AppearanceTag, ...]:
        return sort_appearance_tags(tag for tag, _ in self.images)

    def __len__(self) -> int:
        return len(self.images)

    def __iter__(self) -> Iterator[SourceImage]:
        for tag in APPEARANCE_ORDER:
            yield from self.images_for(tag)

    def summary(self) -> dict[str, Any]:
        return {
            "images": len(self.images),
            "appearances": {tag.value: [img.size.label for img in self.images_for(tag)] for tag in self.tags()},
            "prebuilt_containers": [str(p) for p in self.prebuilt_containers],
            "asset_catalogs": [str(p) for p in self.asset_catalogs],
            "skipped_images": len(self.skipped_images),
        }


def _appearance_from_dir(path: Path) -> AppearanceTag | None:
    return APPEARANCE_ALIASES.get(path.parent.name.strip().lower())


def parse_icon_filename(path: Path) -> ParsedIconName:
    """Infer appearance and declared size from names like ``icon_128x128@2x~dark.png``."""

    stem = path.stem.strip().lower()
    appearance = None
    match = _APPEARANCE_SUFFIX_RE.search(stem)
    if match:
        appearance = APPEARANCE_ALIASES[match.group(1)]
        stem = stem[: match.start()]
    elif stem in APPEARANCE_ALIASES:
        appearance = APPEARANCE_ALIASES[stem]
        stem = ""

    if appearance is None:
        appearance = _appearance_from_dir(path)

    declared = None
    scale = None
    match = _DECLARED_SIZE_RE.search(stem)
    if match:
        scale = int(match.group(3) or 1)
        declared = (int(match.group(1)) * scale, int(match.group(2)) * scale)
    else:
        match = _SCALE_ONLY_RE.search(stem)
        if match:
            scale = int(match.group(1))

    return ParsedIconName(appearance=appearance, declared_pixels=declared, scale=scale)


def _bits_per_pixel(mode: str, bands: int) -> int:
    if mode == "1":
        return 1
    if mode.startswith("I;16"):
        return 16
    if mode in ("I", "F"):
        return 32
    return bands * 8


def load_source_image(path: Path) -> SourceImage:
    parsed = parse_icon_filename(path)

    try:
        with Image.open(path) as img:
            width, height = img.size
            mode = img.mode
            bands = len(img.getbands())
    except (OSError, Image.DecompressionBombError) as exc:
        raise UnreadableSourceError(path, exc) from exc

    if parsed.declared_pixels is not None:
        declared_w, declared_h = parsed.declared_pixels
        if declared_w != declared_h:
            raise UnsupportedIconSizeError(f"{path.name} declares a non-square icon size", path=path)
        scale = parsed.scale or 1
        size = IconSize(declared_w // scale, scale)
        if not is_platform_size(size):
            raise UnsupportedIconSizeError(f"{path.name} declares {size.label}, which is not a platform icon size", path=path)
        if (width, height) != parsed.declared_pixels:
            raise SizeMismatchError(path, declared=parsed.declared_pixels, actual=(width, height))
    else:
        if width != height:
            raise UnsupportedIconSizeError(f"{path.name} is not square ({width}x{height} px)", path=path)
        inferred = icon_size_for_pixels(width, parsed.scale)
        if inferred is None:
            raise UnsupportedIconSizeError(f"{path.name} is {width}x{height} px, which matches no platform icon size", path=path)
        size = inferred

    return SourceImage(
        path=path,
        appearance=parsed.appearance or AppearanceTag.DEFAULT,
        size=size,
        width=width,
        height=height,
        mode=mode,
        bits_per_pixel=_bits_per_pixel(mode, bands),
    )


def discover_source_files(source_directory: Path) -> tuple[list[Path], list[Path], list[Path]]:
    """Return (images, prebuilt containers, compiled asset catalogs) found in a source directory.

    Appearance-named subdirectories (``dark/``, ``tinted/``...) are scanned one level deep.
    """

    if not source_directory.is_dir():
        raise IconConfigError(f"Icon source directory not found: {source_directory}", path=source_directory)

    images: list[Path] = []
    containers: list[Path] = []
    asset_catalogs: list[Path] = []

    def visit(directory: Path, *, nested: bool) -> None:
        for child in sorted(directory.iterdir()):
            if child.name.startswith("."):
                continue
            if child.is_dir():
                if not nested and child.name.strip().lower() in APPEARANCE_ALIASES:
                    visit(child, nested=True)
                else:
                    logger.debug("[CATALOG] Skipping directory: %s", child)
                continue
            suffix = child.suffix.lower()
            if suffix in IMAGE_SUFFIXES:
                images.append(child)
            elif suffix == CONTAINER_SUFFIX:
                containers.append(child)
            elif suffix == ASSET_CATALOG_SUFFIX:
                logger.info("[CATALOG] Found compiled asset catalog: %s", child)
                asset_catalogs.append(child)
            else:
                logger.debug("[CATALOG] Skipping non-image file: %s", child)

    visit(source_directory, nested=False)
    return images, containers, asset_catalogs


def build_catalog(sources: Iterable[SourceImage], **extra: Any) -> IconCatalog:
    indexed: dict[tuple[AppearanceTag, IconSize], SourceImage] = {}
    for source in sources:
        key = (source.appearance, source.size)
        existing = indexed.get(key)
        if existing is not None:
            raise DuplicateCellError(IconCell(source.appearance, source.size), (existing.path, source.path))
        indexed[key] = source
    return IconCatalog(images=MappingProxyType(indexed), **extra)


def load_catalog(
    source_directory: Path | None = None,
    files: Iterable[Path] = (),
    *,
    prefer_prebuilt: bool = False,
) -> IconCatalog:
    """Index the icon sources in ``source_directory`` plus any explicit ``files``.

    With ``prefer_prebuilt`` set and a ``.icns`` among the sources, loose images
    are listed in ``skipped_images`` without being opened.
    """

    logger.info("[CATALOG] Loading icon sources: directory='%s'", source_directory)
    candidates: list[Path] = []
    containers: list[Path] = []
    asset_catalogs: list[Path] = []

    if source_directory is not None:
        candidates, containers, asset_catalogs = discover_source_files(Path(source_directory))

    for path in files:
        path = Path(path)
        suffix = path.suffix.lower()
        if suffix == CONTAINER_SUFFIX:
            containers.append(path)
        elif suffix == ASSET_CATALOG_SUFFIX:
            asset_catalogs.append(path)
        else:
            candidates.append(path)

    if prefer_prebuilt and containers:
        logger.info(
            "[CATALOG] Prebuilt container present; not decoding %d loose image(s)",
            len(candidates),
        )
        return build_catalog(
            (),
            prebuilt_containers=tuple(containers),
            asset_catalogs=tuple(asset_catalogs),
            skipped_images=tuple(candidates),
        )

    catalog = build_catalog(
        (load_source_image(path) for path in candidates),
        prebuilt_containers=tuple(containers),
        asset_catalogs=tuple(asset_catalogs),
    )
    logger.info(
        "[CATALOG] Indexed %d source image(s) across %d appearance(s)",
        len(catalog),
        len(catalog.tags()),
    )
    return catalog

"""Variant resolution: binds every required icon cell to one source image.

Lookup order for a cell is the exact (appearance, size) source, then the
appearance fallback chain at the same size, then the nearest larger source
along the same chain for downscaling. Smaller sources are never upscaled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping

from .appearance import (
    APPEARANCE_ORDER,
    AppearanceTag,
    os_version_floor,
    resolve_fallback_chain,
    sort_appearance_tags,
)
from .catalog import IconCatalog, SourceImage
from .errors import IncompleteIconSetError, NoSuitableSourceError
from .platform_table import DEFAULT_REQUIRED_SIZES, IconCell, IconSize

logger = logging.getLogger("bundlekit_core.icons.resolver")

FallbackChains = Mapping[AppearanceTag, tuple[AppearanceTag, ...]]


@dataclass(frozen=True)
class Provenance:
    kind: str  # exact | fallback
    from_tag: AppearanceTag | None = None
    resample: bool = False

    @classmethod
    def exact(cls) -> "Provenance":
        return cls(kind="exact")

    @classmethod
    def fallback(cls, from_tag: AppearanceTag, *, resample: bool = False) -> "Provenance":
        return cls(kind="fallback", from_tag=from_tag, resample=resample)

    @property
    def is_exact(self) -> bool:
        return self.kind == "exact"

    @property
    def label(self) -> str:
        if self.is_exact:
            return "exact"
        suffix = ", downscaled" if self.resample else ""
        return f"fallback<{self.from_tag.value}{suffix}>"


@dataclass(frozen=True)
class ResolvedCell:
    cell: IconCell
    source: SourceImage
    provenance: Provenance

    def as_dict(self) -> dict[str, Any]:
        return {
            "cell": self.cell.label,
            "source": str(self.source.path),
            "source_size": self.source.size.label,
            "provenance": self.provenance.label,
        }


@dataclass(frozen=True)
class ResolvedIconSet:
    """Resolution result in required-cell order; one entry per cell."""

    cells: tuple[ResolvedCell, ...]

    def __iter__(self) -> Iterator[ResolvedCell]:
        return iter(self.cells)

    def __len__(self) -> int:
        return len(self.cells)

    def for_appearance(self, appearance: AppearanceTag) -> tuple[ResolvedCell, ...]:
        return tuple(rc for rc in self.cells if rc.cell.appearance == appearance)

    def appearances(self) -> tuple[AppearanceTag, ...]:
        return sort_appearance_tags(rc.cell.appearance for rc in self.cells)

    def embedded_source_tags(self) -> tuple[AppearanceTag, ...]:
        """Appearances whose cells embed at least one source of that same appearance."""

        return sort_appearance_tags(
            rc.cell.appearance
            for rc in self.cells
            if rc.cell.appearance != AppearanceTag.DEFAULT and rc.source.appearance != AppearanceTag.DEFAULT
        )

    def required_os_floor(self) -> str | None:
        return os_version_floor(self.embedded_source_tags())


def required_cells(
    enabled_tags: Iterable[AppearanceTag],
    sizes: Iterable[IconSize] = DEFAULT_REQUIRED_SIZES,
) -> tuple[IconCell, ...]:
    tags = set(enabled_tags) | {AppearanceTag.DEFAULT}
    ordered_sizes = sorted(set(sizes))
    return tuple(
        IconCell(tag, size)
        for tag in APPEARANCE_ORDER
        if tag in tags
        for size in ordered_sizes
    )


def _downscale_candidate(images: tuple[SourceImage, ...], cell: IconCell) -> SourceImage | None:
    # Same pixel dimension at another scale counts as the nearest candidate.
    candidates = [img for img in images if img.pixels >= cell.size.pixels and img.size != cell.size]
    if not candidates:
        return None
    return min(candidates, key=lambda img: (img.pixels, img.size.scale, img.size.points))


def resolve_cell(
    catalog: IconCatalog,
    cell: IconCell,
    *,
    fallback_chains: FallbackChains | None = None,
    allow_downscale: bool = True,
) -> ResolvedCell:
    chain = resolve_fallback_chain(cell.appearance, fallback_chains)

    for tag in chain:
        source = catalog.get(tag, cell.size)
        if source is None:
            continue
        if tag == cell.appearance:
            return ResolvedCell(cell, source, Provenance.exact())
        return ResolvedCell(cell, source, Provenance.fallback(tag))

    if allow_downscale:
        for tag in chain:
            source = _downscale_candidate(catalog.images_for(tag), cell)
            if source is not None:
                return ResolvedCell(
                    cell,
                    source,
                    Provenance.fallback(tag, resample=source.pixels != cell.size.pixels),
                )

    chain_text = " -> ".join(tag.value for tag in chain)
    has_smaller = any(
        img.pixels < cell.size.pixels for tag in chain for img in catalog.images_for(tag)
    )
    if has_smaller:
        reason = f"only smaller sources exist along {chain_text}; upscaling is not allowed"
    elif not allow_downscale and any(catalog.images_for(tag) for tag in chain):
        reason = f"no exact source along {chain_text} and downscaling is disabled"
    else:
        reason = f"no source image along {chain_text}"
    raise NoSuitableSourceError(cell, reason)


def resolve_icon_set(
    catalog: IconCatalog,
    cells: Iterable[IconCell],
    *,
    fallback_chains: FallbackChains | None = None,
    allow_downscale: bool = True,
) -> ResolvedIconSet:
    unique_cells = tuple(dict.fromkeys(cells))
    logger.info("[RESOLVER] Resolving %d required cell(s) from %d source(s)", len(unique_cells), len(catalog))

    resolved: list[ResolvedCell] = []
    failures: list[NoSuitableSourceError] = []
    for cell in unique_cells:
        try:
            item = resolve_cell(
                catalog,
                cell,
                fallback_chains=fallback_chains,
                allow_downscale=allow_downscale,
            )
        except NoSuitableSourceError as exc:
            failures.append(exc)
            continue
        if not item.provenance.is_exact:
            logger.debug("[RESOLVER] %s <- %s (%s)", cell.label, item.source.path.name, item.provenance.label)
        resolved.append(item)

    if failures:
        logger.warning("[RESOLVER] Resolution failed - %d unresolved cell(s)", len(failures))
        raise IncompleteIconSetError(failures)

    fallbacks = sum(1 for rc in resolved if not rc.provenance.is_exact)
    logger.info("[RESOLVER] Resolved %d cell(s), %d via fallback", len(resolved), fallbacks)
    return ResolvedIconSet(cells=tuple(resolved))

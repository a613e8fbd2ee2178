"""Appearance tags, their fallback chains and OS-version requirements."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Mapping


class AppearanceTag(str, Enum):
    DEFAULT = "default"
    DARK = "dark"
    TINTED = "tinted"

    @property
    def label(self) -> str:
        return self.value.capitalize()


APPEARANCE_ORDER: tuple[AppearanceTag, ...] = tuple(AppearanceTag)

APPEARANCE_ALIASES: dict[str, AppearanceTag] = {
    "default": AppearanceTag.DEFAULT,
    "light": AppearanceTag.DEFAULT,
    "any": AppearanceTag.DEFAULT,
    "dark": AppearanceTag.DARK,
    "tinted": AppearanceTag.TINTED,
    "clear": AppearanceTag.TINTED,
}

FALLBACK_CHAIN_BY_TAG: dict[AppearanceTag, tuple[AppearanceTag, ...]] = {
    AppearanceTag.TINTED: (AppearanceTag.TINTED, AppearanceTag.DARK, AppearanceTag.DEFAULT),
    AppearanceTag.DARK: (AppearanceTag.DARK, AppearanceTag.DEFAULT),
    AppearanceTag.DEFAULT: (AppearanceTag.DEFAULT,),
}

# First OS release that selects the variant at render time.
MIN_OS_VERSION_BY_TAG: dict[AppearanceTag, str | None] = {
    AppearanceTag.DEFAULT: None,
    AppearanceTag.DARK: "10.14",
    AppearanceTag.TINTED: "26.0",
}


def normalize_appearance_tag(value: AppearanceTag | str) -> AppearanceTag:
    if isinstance(value, AppearanceTag):
        return value
    key = str(value or "").strip().lower()
    if key not in APPEARANCE_ALIASES:
        raise ValueError(f"Unsupported appearance tag: {value}")
    return APPEARANCE_ALIASES[key]


def normalize_appearance_tags(values: Iterable[AppearanceTag | str]) -> frozenset[AppearanceTag]:
    tags = {normalize_appearance_tag(v) for v in values}
    tags.add(AppearanceTag.DEFAULT)
    return frozenset(tags)


def sort_appearance_tags(tags: Iterable[AppearanceTag]) -> tuple[AppearanceTag, ...]:
    present = set(tags)
    return tuple(tag for tag in APPEARANCE_ORDER if tag in present)


def normalize_fallback_chains(
    raw: Mapping[AppearanceTag | str, Iterable[AppearanceTag | str]],
) -> dict[AppearanceTag, tuple[AppearanceTag, ...]]:
    """Build a full chain table from overrides, keeping defaults for unnamed tags.

    Each chain starts with its own tag; duplicate entries are dropped.
    """

    chains = dict(FALLBACK_CHAIN_BY_TAG)
    for key, values in raw.items():
        tag = normalize_appearance_tag(key)
        ordered = [tag] + [normalize_appearance_tag(v) for v in values]
        chains[tag] = tuple(dict.fromkeys(ordered))
    return chains


def resolve_fallback_chain(
    tag: AppearanceTag | str,
    chains: Mapping[AppearanceTag, tuple[AppearanceTag, ...]] | None = None,
) -> tuple[AppearanceTag, ...]:
    appearance = normalize_appearance_tag(tag)
    table = chains if chains is not None else FALLBACK_CHAIN_BY_TAG
    return table.get(appearance, (appearance,))


def parse_os_version(value: str) -> tuple[int, ...]:
    text = str(value or "").strip()
    if not text:
        raise ValueError("Empty OS version")
    try:
        parts = tuple(int(part) for part in text.split("."))
    except ValueError as exc:
        raise ValueError(f"Invalid OS version: {value}") from exc
    # 10.14 and 10.14.0 compare equal
    while len(parts) > 1 and parts[-1] == 0:
        parts = parts[:-1]
    return parts


def max_os_version(*versions: str | None) -> str | None:
    present = [v for v in versions if v]
    if not present:
        return None
    return max(present, key=parse_os_version)


def os_version_floor(tags: Iterable[AppearanceTag]) -> str | None:
    return max_os_version(*(MIN_OS_VERSION_BY_TAG.get(tag) for tag in tags))

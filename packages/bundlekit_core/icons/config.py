"""Icon bundling configuration.

A target's settings come from a JSON file validated by ``IconBundleSettings``
and can be overridden per environment with ``BUNDLEKIT_ICONS_*`` variables.
The validated settings are frozen into an ``IconBundleConfig`` that the
pipeline stages consume.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .appearance import (
    FALLBACK_CHAIN_BY_TAG,
    AppearanceTag,
    normalize_appearance_tags,
    normalize_fallback_chains,
    parse_os_version,
    sort_appearance_tags,
)
from .assembler import DEFAULT_RESAMPLE_FILTER, normalize_resample_filter
from .errors import IconConfigError
from .integrator import MAIN_ICON_KEY
from .platform_table import DEFAULT_REQUIRED_SIZES, IconSize, parse_icon_size

ENV_PREFIX = "BUNDLEKIT_ICONS_"
DEFAULT_CONTAINER_NAME = "AppIcon.icns"
DEFAULT_MIN_OS_VERSION = "10.13"


def _truthy_env(name: str, default: bool = False, env: Mapping[str, str] | None = None) -> bool:
    raw = (env if env is not None else os.environ).get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _first_non_empty(*values: str | None) -> str | None:
    for value in values:
        if value and value.strip():
            return value.strip()
    return None


class IconBundleSettings(BaseModel):
    name: str = Field(default="app", description="Icon set name used in logs and results")
    source_directory: Optional[str] = Field(
        default=None,
        description="Directory of source images; relative paths resolve against the config file",
    )
    source_files: list[str] = Field(default_factory=list, description="Explicit source image paths")
    enabled_appearance_tags: list[str] = Field(
        default_factory=lambda: [AppearanceTag.DEFAULT.value],
        description="Appearances to embed (default, dark, tinted); default is always included",
    )
    min_os_version: str = Field(default=DEFAULT_MIN_OS_VERSION, description="Deployment target OS version")
    required_sizes: Optional[list[str]] = Field(
        default=None,
        description="Required sizes such as 128x128@2x; defaults to the full platform iconset",
    )
    fallback_chains: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Per-appearance fallback overrides, e.g. {\"tinted\": [\"default\"]}",
    )
    allow_downscale: bool = True
    resample_filter: str = DEFAULT_RESAMPLE_FILTER
    convert_palette_images: bool = True
    container_name: str = DEFAULT_CONTAINER_NAME
    manifest_icon_key: Optional[str] = MAIN_ICON_KEY
    use_prebuilt_container: bool = True


@dataclass(frozen=True)
class IconBundleConfig:
    source_directory: Path | None = None
    source_files: tuple[Path, ...] = ()
    enabled_appearance_tags: frozenset[AppearanceTag] = frozenset({AppearanceTag.DEFAULT})
    min_os_version: str = DEFAULT_MIN_OS_VERSION
    required_sizes: tuple[IconSize, ...] = DEFAULT_REQUIRED_SIZES
    fallback_chains: Mapping[AppearanceTag, tuple[AppearanceTag, ...]] = field(
        default_factory=lambda: dict(FALLBACK_CHAIN_BY_TAG)
    )
    allow_downscale: bool = True
    resample_filter: str = DEFAULT_RESAMPLE_FILTER
    convert_palette_images: bool = True
    container_name: str = DEFAULT_CONTAINER_NAME
    manifest_icon_key: str | None = MAIN_ICON_KEY
    use_prebuilt_container: bool = True
    name: str = "app"

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source_directory": str(self.source_directory) if self.source_directory else None,
            "source_files": [str(p) for p in self.source_files],
            "enabled_appearance_tags": [tag.value for tag in sort_appearance_tags(self.enabled_appearance_tags)],
            "min_os_version": self.min_os_version,
            "required_sizes": [size.label for size in self.required_sizes],
            "fallback_chains": {
                tag.value: [t.value for t in chain] for tag, chain in self.fallback_chains.items()
            },
            "allow_downscale": self.allow_downscale,
            "resample_filter": self.resample_filter,
            "convert_palette_images": self.convert_palette_images,
            "container_name": self.container_name,
            "manifest_icon_key": self.manifest_icon_key,
            "use_prebuilt_container": self.use_prebuilt_container,
        }


def _resolve_path(raw: str, base_dir: Path | None) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    return path


def _validate_container_name(name: str) -> str:
    candidate = str(name or "").strip()
    if not candidate or Path(candidate).name != candidate or candidate in {".", ".."}:
        raise IconConfigError(f"container_name must be a plain file name: {name!r}")
    if not candidate.lower().endswith(".icns"):
        raise IconConfigError(f"container_name must end with .icns: {name!r}")
    return candidate


def config_from_settings(settings: IconBundleSettings, *, base_dir: Path | None = None) -> IconBundleConfig:
    try:
        tags = normalize_appearance_tags(settings.enabled_appearance_tags)
        parse_os_version(settings.min_os_version)
        sizes = (
            tuple(sorted({parse_icon_size(s) for s in settings.required_sizes}))
            if settings.required_sizes
            else DEFAULT_REQUIRED_SIZES
        )
        chains = normalize_fallback_chains(settings.fallback_chains)
        resample = normalize_resample_filter(settings.resample_filter)
    except ValueError as exc:
        raise IconConfigError(f"Invalid icon config '{settings.name}': {exc}") from exc

    source_directory = (
        _resolve_path(settings.source_directory, base_dir) if settings.source_directory else None
    )
    source_files = tuple(_resolve_path(p, base_dir) for p in settings.source_files)
    if source_directory is None and not source_files:
        raise IconConfigError(f"Icon config '{settings.name}' names no source_directory or source_files")

    return IconBundleConfig(
        name=settings.name,
        source_directory=source_directory,
        source_files=source_files,
        enabled_appearance_tags=tags,
        min_os_version=settings.min_os_version.strip(),
        required_sizes=sizes,
        fallback_chains=chains,
        allow_downscale=settings.allow_downscale,
        resample_filter=resample,
        convert_palette_images=settings.convert_palette_images,
        container_name=_validate_container_name(settings.container_name),
        manifest_icon_key=_first_non_empty(settings.manifest_icon_key),
        use_prebuilt_container=settings.use_prebuilt_container,
    )


def apply_env_overrides(raw: dict[str, Any], env: Mapping[str, str] | None = None) -> dict[str, Any]:
    env = env if env is not None else os.environ
    out = dict(raw)

    source_dir = _first_non_empty(env.get(f"{ENV_PREFIX}SOURCE_DIR"))
    if source_dir:
        out["source_directory"] = source_dir

    appearances = _first_non_empty(env.get(f"{ENV_PREFIX}APPEARANCES"))
    if appearances:
        out["enabled_appearance_tags"] = [v.strip() for v in appearances.split(",") if v.strip()]

    min_os = _first_non_empty(env.get(f"{ENV_PREFIX}MIN_OS_VERSION"))
    if min_os:
        out["min_os_version"] = min_os

    resample = _first_non_empty(env.get(f"{ENV_PREFIX}RESAMPLE"))
    if resample:
        out["resample_filter"] = resample

    if f"{ENV_PREFIX}ALLOW_DOWNSCALE" in env:
        out["allow_downscale"] = _truthy_env(f"{ENV_PREFIX}ALLOW_DOWNSCALE", True, env)

    return out


def parse_icon_config(
    raw: dict[str, Any],
    *,
    base_dir: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> IconBundleConfig:
    if not isinstance(raw, dict):
        raise IconConfigError("Icon config must be a JSON object")
    try:
        settings = IconBundleSettings.model_validate(apply_env_overrides(raw, env))
    except ValidationError as exc:
        raise IconConfigError(f"Invalid icon config: {exc}") from exc
    return config_from_settings(settings, base_dir=base_dir)


def load_icon_config(path: Path, *, env: Mapping[str, str] | None = None) -> IconBundleConfig:
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise IconConfigError(f"Cannot read icon config {path}: {exc}", path=path) from exc
    except json.JSONDecodeError as exc:
        raise IconConfigError(f"Icon config {path} is not valid JSON: {exc}", path=path) from exc
    if isinstance(raw, dict):
        raw.setdefault("name", path.stem)
    return parse_icon_config(raw, base_dir=path.parent, env=env)

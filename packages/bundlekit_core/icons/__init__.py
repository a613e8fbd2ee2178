"""Appearance-variant icon bundling for BundleKit."""

from .appearance import AppearanceTag
from .catalog import IconCatalog, load_catalog
from .config import IconBundleConfig, load_icon_config, parse_icon_config
from .errors import IconBundleError
from .resolver import resolve_icon_set
from .assembler import assemble_container, read_container
from .integrator import integrate_container
from .pipeline import (
    IconBundleTarget,
    PackagingMode,
    bundle_icon_sets,
    bundle_icons,
    bundle_requires_os_floor,
)

__all__ = [
    "AppearanceTag",
    "IconCatalog",
    "load_catalog",
    "IconBundleConfig",
    "load_icon_config",
    "parse_icon_config",
    "IconBundleError",
    "resolve_icon_set",
    "assemble_container",
    "read_container",
    "integrate_container",
    "IconBundleTarget",
    "PackagingMode",
    "bundle_icon_sets",
    "bundle_icons",
    "bundle_requires_os_floor",
]

"""Bundle integration: places the container in the bundle and records the manifest entry.

The bundle skeleton (``Contents/``, ``Contents/Resources/``) belongs to the
external bundler; missing directories are reported, never created here.
The manifest is read and validated before any resource is placed, and placed
resources are restored if the manifest write fails.
"""

from __future__ import annotations

import logging
import plistlib
import threading
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .appearance import AppearanceTag, max_os_version, normalize_appearance_tag, os_version_floor
from .assembler import write_bytes_atomic
from .errors import BundleWriteError
from .resolver import ResolvedIconSet

logger = logging.getLogger("bundlekit_core.icons.integrator")

CONTENTS_DIR = Path("Contents")
RESOURCES_DIR = CONTENTS_DIR / "Resources"
MANIFEST_PATH = CONTENTS_DIR / "Info.plist"
REQUIRED_BUNDLE_DIRS = (CONTENTS_DIR, RESOURCES_DIR)
ASSET_CATALOG_NAME = "Assets.car"

MANIFEST_CONTAINERS_KEY = "BundlekitIconContainers"
MANIFEST_MIN_VERSION_KEY = "MinimumSystemVersion"
MANIFEST_APPEARANCES_KEY = "Appearances"
MANIFEST_ASSET_CATALOG_KEY = "AssetCatalog"
MAIN_ICON_KEY = "CFBundleIconFile"

# Entries drop out once no caller holds the lock.
_path_locks: weakref.WeakValueDictionary[Path, threading.Lock] = weakref.WeakValueDictionary()
_path_locks_guard = threading.Lock()


def path_lock(path: Path) -> threading.Lock:
    """Return the process-wide lock that serialises writes to ``path``.

    Callers must hold on to the returned lock while they use it.
    """

    key = Path(path).resolve()
    with _path_locks_guard:
        lock = _path_locks.get(key)
        if lock is None:
            lock = threading.Lock()
            _path_locks[key] = lock
        return lock


@dataclass(frozen=True)
class BundleManifestEntry:
    resource_path: str
    appearances: tuple[AppearanceTag, ...]
    minimum_system_version: str | None = None
    asset_catalog: str | None = None

    def as_plist_value(self) -> dict[str, Any]:
        value: dict[str, Any] = {
            MANIFEST_APPEARANCES_KEY: [tag.value for tag in self.appearances],
        }
        if self.minimum_system_version:
            value[MANIFEST_MIN_VERSION_KEY] = self.minimum_system_version
        if self.asset_catalog:
            value[MANIFEST_ASSET_CATALOG_KEY] = self.asset_catalog
        return value

    def as_dict(self) -> dict[str, Any]:
        return {
            "resource_path": self.resource_path,
            "appearances": [tag.value for tag in self.appearances],
            "minimum_system_version": self.minimum_system_version,
            "asset_catalog": self.asset_catalog,
        }


def manifest_entry_for(
    container_name: str,
    appearances: tuple[AppearanceTag, ...],
    *,
    asset_catalog_name: str | None = None,
) -> BundleManifestEntry:
    return BundleManifestEntry(
        resource_path=(RESOURCES_DIR / container_name).as_posix(),
        appearances=appearances,
        minimum_system_version=os_version_floor(appearances),
        asset_catalog=(RESOURCES_DIR / asset_catalog_name).as_posix() if asset_catalog_name else None,
    )


class BundleManifest:
    """Handle on a bundle's ``Info.plist`` used to append icon entries."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("rb") as f:
                data = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException, ValueError) as exc:
            raise BundleWriteError(self.path, f"unreadable manifest: {exc}") from exc
        if not isinstance(data, dict):
            raise BundleWriteError(self.path, "manifest root is not a dictionary")
        return data

    def entries(self) -> dict[str, dict[str, Any]]:
        raw = self.read().get(MANIFEST_CONTAINERS_KEY, {})
        return dict(raw) if isinstance(raw, dict) else {}

    def render_icon_entry(self, entry: BundleManifestEntry, *, icon_key: str | None = None) -> bytes | None:
        """Return the manifest bytes with ``entry`` applied, or None if nothing would change.

        Raises BundleWriteError when the current manifest cannot be read.
        """

        data = self.read()
        before = plistlib.dumps(data, sort_keys=True) if data else b""

        containers = data.get(MANIFEST_CONTAINERS_KEY)
        if not isinstance(containers, dict):
            containers = {}
        containers[entry.resource_path] = entry.as_plist_value()
        data[MANIFEST_CONTAINERS_KEY] = containers
        if icon_key:
            data[icon_key] = Path(entry.resource_path).name

        after = plistlib.dumps(data, fmt=plistlib.FMT_XML, sort_keys=True)
        return None if after == before else after

    def write(self, payload: bytes) -> None:
        try:
            write_bytes_atomic(payload, self.path)
        except OSError as exc:
            raise BundleWriteError(self.path, exc) from exc

    def upsert_icon_entry(self, entry: BundleManifestEntry, *, icon_key: str | None = None) -> bool:
        """Write ``entry`` (and the main icon key) if it differs from what is on disk.

        Returns True when the manifest was rewritten.
        """

        with path_lock(self.path):
            payload = self.render_icon_entry(entry, icon_key=icon_key)
            if payload is None:
                logger.debug("[INTEGRATOR] Manifest already up to date: %s", self.path)
                return False
            self.write(payload)
            return True


@dataclass(frozen=True)
class IntegrationResult:
    container_path: Path
    manifest_path: Path
    entry: BundleManifestEntry
    manifest_changed: bool
    asset_catalog_path: Path | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "container_path": str(self.container_path),
            "manifest_path": str(self.manifest_path),
            "entry": self.entry.as_dict(),
            "manifest_changed": self.manifest_changed,
            "asset_catalog_path": str(self.asset_catalog_path) if self.asset_catalog_path else None,
        }


@dataclass(frozen=True)
class _Placement:
    destination: Path
    previous: bytes | None


def check_bundle_skeleton(bundle_dir: Path) -> None:
    for rel in REQUIRED_BUNDLE_DIRS:
        required = bundle_dir / rel
        if not required.is_dir():
            raise BundleWriteError(required, "required bundle directory is missing (created by the bundler)")


def _place_resource(staged: Path, destination: Path) -> _Placement | None:
    """Copy ``staged`` over ``destination``; None when the bytes are already in place."""

    with path_lock(destination):
        try:
            data = staged.read_bytes()
            previous = destination.read_bytes() if destination.exists() else None
            if previous == data:
                logger.debug("[INTEGRATOR] Resource unchanged: %s", destination)
                return None
            write_bytes_atomic(data, destination)
        except OSError as exc:
            raise BundleWriteError(destination, exc) from exc
    return _Placement(destination=destination, previous=previous)


def _roll_back(placements: list[_Placement]) -> None:
    for placement in reversed(placements):
        with path_lock(placement.destination):
            try:
                if placement.previous is None:
                    placement.destination.unlink(missing_ok=True)
                else:
                    write_bytes_atomic(placement.previous, placement.destination)
            except OSError as exc:
                logger.error("[INTEGRATOR] Could not restore %s: %s", placement.destination, exc)
            else:
                logger.info("[INTEGRATOR] Restored %s", placement.destination)


def integrate_container(
    staged_container: Path,
    bundle_dir: Path,
    *,
    container_name: str,
    appearances: tuple[AppearanceTag, ...],
    icon_key: str | None = MAIN_ICON_KEY,
    asset_catalog: Path | None = None,
) -> IntegrationResult:
    """Place the container (and an optional compiled asset catalog) and record them.

    The manifest lock is always taken before any resource lock.
    """

    bundle_dir = Path(bundle_dir)
    logger.info("[INTEGRATOR] Integrating %s into bundle '%s'", container_name, bundle_dir)
    check_bundle_skeleton(bundle_dir)

    destination = bundle_dir / RESOURCES_DIR / container_name
    catalog_destination = bundle_dir / RESOURCES_DIR / ASSET_CATALOG_NAME if asset_catalog is not None else None
    entry = manifest_entry_for(
        container_name,
        appearances,
        asset_catalog_name=ASSET_CATALOG_NAME if asset_catalog is not None else None,
    )
    manifest = BundleManifest(bundle_dir / MANIFEST_PATH)

    with path_lock(manifest.path):
        payload = manifest.render_icon_entry(entry, icon_key=icon_key)
        placements: list[_Placement] = []
        try:
            placed = _place_resource(staged_container, destination)
            if placed is not None:
                placements.append(placed)
            if asset_catalog is not None:
                placed = _place_resource(asset_catalog, catalog_destination)
                if placed is not None:
                    placements.append(placed)
            if payload is not None:
                manifest.write(payload)
            else:
                logger.debug("[INTEGRATOR] Manifest already up to date: %s", manifest.path)
        except BundleWriteError:
            _roll_back(placements)
            raise

    if entry.minimum_system_version:
        logger.info(
            "[INTEGRATOR] %s requires OS %s for themed appearances (%s)",
            entry.resource_path,
            entry.minimum_system_version,
            ",".join(tag.value for tag in appearances if tag != AppearanceTag.DEFAULT),
        )
    return IntegrationResult(
        container_path=destination,
        manifest_path=manifest.path,
        entry=entry,
        manifest_changed=payload is not None,
        asset_catalog_path=catalog_destination,
    )



def required_os_floor(resolved_set: ResolvedIconSet) -> str | None:
    """OS version the themed families embedded from ``resolved_set`` require, or None."""

    return resolved_set.required_os_floor()


def bundle_requires_os_floor(bundle_dir: Path) -> str | None:
    """Return the OS version themed icons in this bundle require, or None."""

    manifest = BundleManifest(Path(bundle_dir) / MANIFEST_PATH)
    versions: list[str | None] = []
    for value in manifest.entries().values():
        if not isinstance(value, dict):
            continue
        versions.append(value.get(MANIFEST_MIN_VERSION_KEY))
        for raw in value.get(MANIFEST_APPEARANCES_KEY, []):
            try:
                versions.append(os_version_floor([normalize_appearance_tag(raw)]))
            except ValueError:
                logger.warning("[INTEGRATOR] Unknown appearance in manifest %s: %s", manifest.path, raw)
    return max_os_version(*versions)

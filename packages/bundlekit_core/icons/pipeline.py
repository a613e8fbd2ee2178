"""Build-stage icon bundling pipeline.

``bundle_icons`` is the single call the packager makes per icon set during a
``build``. ``dev`` runs return a skipped outcome without touching any file,
so appearance variants only exist in built bundles.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from .appearance import AppearanceTag, parse_os_version
from .assembler import (
    assemble_container,
    read_container_file,
    write_container_atomic,
)
from .catalog import IconCatalog, load_catalog
from .config import IconBundleConfig
from .errors import BuildCancelledError, BundleWriteError, IconBundleError, IconConfigError
from .integrator import (
    ASSET_CATALOG_NAME,
    MANIFEST_PATH,
    RESOURCES_DIR,
    BundleManifestEntry,
    bundle_requires_os_floor,
    integrate_container,
)
from .resolver import ResolvedIconSet, required_cells, resolve_icon_set

logger = logging.getLogger("bundlekit_core.icons.pipeline")

DEFAULT_MAX_WORKERS = 4


class PackagingMode(str, Enum):
    BUILD = "build"
    DEV = "dev"


class PipelineState(str, Enum):
    IDLE = "idle"
    CATALOGING = "cataloging"
    RESOLVING = "resolving"
    ASSEMBLING = "assembling"
    INTEGRATING = "integrating"
    DONE = "done"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.CATALOGING, PipelineState.FAILED}),
    PipelineState.CATALOGING: frozenset({PipelineState.RESOLVING, PipelineState.FAILED}),
    PipelineState.RESOLVING: frozenset({PipelineState.ASSEMBLING, PipelineState.FAILED}),
    PipelineState.ASSEMBLING: frozenset({PipelineState.INTEGRATING, PipelineState.FAILED}),
    PipelineState.INTEGRATING: frozenset({PipelineState.DONE, PipelineState.FAILED}),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class IconBundleTarget:
    bundle_dir: Path
    config: IconBundleConfig

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def container_path(self) -> Path:
        return Path(self.bundle_dir) / RESOURCES_DIR / self.config.container_name


@dataclass(frozen=True)
class IconBundleOutcome:
    target: str
    state: PipelineState
    skipped: bool = False
    failed_stage: PipelineState | None = None
    error: IconBundleError | None = None
    container_path: Path | None = None
    container_sha256: str | None = None
    manifest_entry: BundleManifestEntry | None = None
    resolved_cells: tuple[dict[str, Any], ...] = ()
    prebuilt: bool = False
    asset_catalog_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def required_os_floor(self) -> str | None:
        return self.manifest_entry.minimum_system_version if self.manifest_entry else None

    def as_dict(self) -> dict[str, Any]:
        return {
            "target": self.target,
            "ok": self.ok,
            "state": self.state.value,
            "skipped": self.skipped,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error.as_dict() if self.error else None,
            "container_path": str(self.container_path) if self.container_path else None,
            "container_sha256": self.container_sha256,
            "manifest_entry": self.manifest_entry.as_dict() if self.manifest_entry else None,
            "resolved_cells": list(self.resolved_cells),
            "prebuilt": self.prebuilt,
            "asset_catalog_path": str(self.asset_catalog_path) if self.asset_catalog_path else None,
        }


class IconBundlePipeline:
    """Runs Cataloging -> Resolving -> Assembling -> Integrating for one icon set."""

    def __init__(
        self,
        target: IconBundleTarget,
        *,
        cancel_event: threading.Event | None = None,
        staging_root: Path | None = None,
    ) -> None:
        self.target = target
        self._cancel_event = cancel_event
        self._staging_root = staging_root
        self._state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    @property
    def state(self) -> PipelineState:
        return self._state

    def _transition(self, state: PipelineState) -> None:
        if state not in _ALLOWED_TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal pipeline transition: {self._state.value} -> {state.value}")
        logger.debug("[PIPELINE] %s: %s -> %s", self.target.name, self._state.value, state.value)
        self._state = state
        self.history.append(state)

    def _cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self._cancelled():
            raise BuildCancelledError(f"Build cancelled before {self._state.value} finished for '{self.target.name}'")

    def _prebuilt_container(self, catalog: IconCatalog) -> Path | None:
        if not self.target.config.use_prebuilt_container or not catalog.prebuilt_containers:
            return None
        if len(catalog.prebuilt_containers) > 1:
            names = ", ".join(p.name for p in catalog.prebuilt_containers)
            raise IconConfigError(f"Multiple prebuilt icon containers for '{self.target.name}': {names}")
        prebuilt = catalog.prebuilt_containers[0]
        if catalog.skipped_images:
            logger.info(
                "[PIPELINE] Using prebuilt container %s; ignoring %d source image(s)",
                prebuilt,
                len(catalog.skipped_images),
            )
        return prebuilt

    def _asset_catalog(self, catalog: IconCatalog) -> Path | None:
        if not catalog.asset_catalogs:
            return None
        if len(catalog.asset_catalogs) > 1:
            names = ", ".join(p.name for p in catalog.asset_catalogs)
            raise IconConfigError(f"Multiple compiled asset catalogs for '{self.target.name}': {names}")
        return catalog.asset_catalogs[0]

    def _warn_on_os_floor(self, floor: str | None) -> None:
        configured = self.target.config.min_os_version
        if floor and parse_os_version(floor) > parse_os_version(configured):
            logger.warning(
                "[PIPELINE] '%s' embeds themed icons that need OS %s; deployment target is %s",
                self.target.name,
                floor,
                configured,
            )

    def run(self) -> IconBundleOutcome:
        if self._state != PipelineState.IDLE:
            raise RuntimeError("IconBundlePipeline instances run once")

        config = self.target.config
        resolved: ResolvedIconSet | None = None
        try:
            self._transition(PipelineState.CATALOGING)
            catalog = load_catalog(
                config.source_directory,
                config.source_files,
                prefer_prebuilt=config.use_prebuilt_container,
            )
            prebuilt = self._prebuilt_container(catalog)
            asset_catalog = self._asset_catalog(catalog)
            self._check_cancelled()

            self._transition(PipelineState.RESOLVING)
            if prebuilt is None:
                cells = required_cells(config.enabled_appearance_tags, config.required_sizes)
                resolved = resolve_icon_set(
                    catalog,
                    cells,
                    fallback_chains=config.fallback_chains,
                    allow_downscale=config.allow_downscale,
                )
            self._check_cancelled()

            self._transition(PipelineState.ASSEMBLING)
            if self._staging_root is not None:
                self._staging_root.mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(prefix="bundlekit_icons_", dir=self._staging_root) as staging:
                staged = Path(staging) / config.container_name
                if prebuilt is not None:
                    parsed = read_container_file(prebuilt)
                    appearances = parsed.appearances or (AppearanceTag.DEFAULT,)
                    sha256 = None
                    try:
                        shutil.copyfile(prebuilt, staged)
                    except OSError as exc:
                        raise BundleWriteError(staged, exc) from exc
                else:
                    container = assemble_container(
                        resolved,
                        resample=config.resample_filter,
                        convert_palette=config.convert_palette_images,
                        should_cancel=self._cancelled,
                    )
                    try:
                        write_container_atomic(container, staged)
                    except OSError as exc:
                        raise BundleWriteError(staged, exc) from exc
                    appearances = container.appearances
                    sha256 = container.sha256
                staged_catalog = None
                if asset_catalog is not None:
                    staged_catalog = Path(staging) / ASSET_CATALOG_NAME
                    try:
                        shutil.copyfile(asset_catalog, staged_catalog)
                    except OSError as exc:
                        raise BundleWriteError(staged_catalog, exc) from exc
                self._check_cancelled()

                self._transition(PipelineState.INTEGRATING)
                integration = integrate_container(
                    staged,
                    self.target.bundle_dir,
                    container_name=config.container_name,
                    appearances=appearances,
                    icon_key=config.manifest_icon_key,
                    asset_catalog=staged_catalog,
                )

            self._warn_on_os_floor(integration.entry.minimum_system_version)
            self._transition(PipelineState.DONE)
        except IconBundleError as exc:
            failed_stage = self._state
            self._transition(PipelineState.FAILED)
            logger.error("[PIPELINE] '%s' failed while %s: %s", self.target.name, failed_stage.value, exc)
            return IconBundleOutcome(
                target=self.target.name,
                state=self._state,
                failed_stage=failed_stage,
                error=exc,
            )

        logger.info(
            "[PIPELINE] '%s' bundled: %s (os floor: %s)",
            self.target.name,
            integration.container_path,
            integration.entry.minimum_system_version or "none",
        )
        return IconBundleOutcome(
            target=self.target.name,
            state=self._state,
            container_path=integration.container_path,
            container_sha256=sha256,
            manifest_entry=integration.entry,
            resolved_cells=tuple(rc.as_dict() for rc in resolved) if resolved is not None else (),
            prebuilt=prebuilt is not None,
            asset_catalog_path=integration.asset_catalog_path,
        )


def bundle_icons(
    target: IconBundleTarget,
    *,
    mode: PackagingMode | str = PackagingMode.BUILD,
    cancel_event: threading.Event | None = None,
    staging_root: Path | None = None,
) -> IconBundleOutcome:
    """Bundle one icon set into ``target.bundle_dir``; a no-op outside build mode."""

    if PackagingMode(mode) != PackagingMode.BUILD:
        logger.info("[PIPELINE] %s mode: skipping icon bundling for '%s'", PackagingMode(mode).value, target.name)
        return IconBundleOutcome(target=target.name, state=PipelineState.IDLE, skipped=True)
    pipeline = IconBundlePipeline(target, cancel_event=cancel_event, staging_root=staging_root)
    return pipeline.run()


def check_icon_key_conflicts(targets: Iterable[IconBundleTarget]) -> None:
    """Reject sets that would point one manifest icon key at different containers.

    Concurrent sets would otherwise race for the key and the last writer wins.
    """

    claimed: dict[tuple[Path, str], IconBundleTarget] = {}
    for target in targets:
        icon_key = target.config.manifest_icon_key
        if not icon_key:
            continue
        manifest = (Path(target.bundle_dir) / MANIFEST_PATH).resolve()
        owner = claimed.setdefault((manifest, icon_key), target)
        if owner.config.container_name != target.config.container_name:
            raise IconConfigError(
                f"'{owner.name}' and '{target.name}' both set {icon_key} in {manifest}; "
                "set manifest_icon_key to null on all but one icon set",
                path=manifest,
            )


def bundle_icon_sets(
    targets: Iterable[IconBundleTarget],
    *,
    mode: PackagingMode | str = PackagingMode.BUILD,
    cancel_event: threading.Event | None = None,
    max_workers: int = DEFAULT_MAX_WORKERS,
    staging_root: Path | None = None,
) -> list[IconBundleOutcome]:
    """Bundle independent icon sets on worker threads, returning outcomes in input order."""

    target_list = list(targets)
    if PackagingMode(mode) == PackagingMode.BUILD:
        check_icon_key_conflicts(target_list)
    seen: dict[Path, str] = {}
    for target in target_list:
        key = target.container_path.resolve()
        if key in seen:
            logger.warning(
                "[PIPELINE] '%s' and '%s' write the same container %s; writes will be serialised",
                seen[key],
                target.name,
                key,
            )
        seen.setdefault(key, target.name)

    results: list[IconBundleOutcome | None] = [None] * len(target_list)
    slots = threading.Semaphore(max(1, int(max_workers)))

    def worker(index: int, target: IconBundleTarget) -> None:
        with slots:
            try:
                results[index] = bundle_icons(
                    target,
                    mode=mode,
                    cancel_event=cancel_event,
                    staging_root=staging_root,
                )
            except Exception as exc:
                logger.exception("[PIPELINE] Unexpected failure bundling '%s'", target.name)
                results[index] = IconBundleOutcome(
                    target=target.name,
                    state=PipelineState.FAILED,
                    error=IconBundleError(f"Unexpected failure: {exc}"),
                )

    threads = [
        threading.Thread(
            target=worker,
            args=(index, target),
            name=f"bundlekit-icons-{target.name}",
            daemon=True,
        )
        for index, target in enumerate(target_list)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    return [outcome for outcome in results if outcome is not None]


__all__ = [
    "DEFAULT_MAX_WORKERS",
    "IconBundleOutcome",
    "IconBundlePipeline",
    "IconBundleTarget",
    "PackagingMode",
    "PipelineState",
    "bundle_icon_sets",
    "bundle_icons",
    "bundle_requires_os_floor",
    "check_icon_key_conflicts",
]

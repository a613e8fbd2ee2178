#!/usr/bin/env python3
"""Bundle appearance-variant app icons into a built application bundle."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
import signal
import sys
import threading

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from packages.bundlekit_core.icons.config import load_icon_config, parse_icon_config
from packages.bundlekit_core.icons.errors import IconBundleError
from packages.bundlekit_core.icons.pipeline import (
    DEFAULT_MAX_WORKERS,
    IconBundleOutcome,
    IconBundleTarget,
    PackagingMode,
    bundle_icon_sets,
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


def _build_targets(args: argparse.Namespace) -> list[IconBundleTarget]:
    if args.config:
        return [IconBundleTarget(bundle_dir=args.bundle, config=load_icon_config(path)) for path in args.config]

    raw: dict[str, object] = {"name": args.name, "source_directory": str(args.source_dir)}
    if args.appearance:
        raw["enabled_appearance_tags"] = args.appearance
    if args.min_os:
        raw["min_os_version"] = args.min_os
    if args.no_downscale:
        raw["allow_downscale"] = False
    return [IconBundleTarget(bundle_dir=args.bundle, config=parse_icon_config(raw, base_dir=Path.cwd()))]


def _print_outcome(outcome: IconBundleOutcome) -> None:
    if outcome.skipped:
        print(f"SKIP: {outcome.target}: icon bundling only runs for build packaging")
        return
    if outcome.ok:
        print(f"OK: {outcome.target}: wrote {outcome.container_path}")
        entry = outcome.manifest_entry
        if entry is not None:
            print(f"  appearances: {', '.join(tag.value for tag in entry.appearances)}")
            if entry.minimum_system_version:
                print(f"  requires OS {entry.minimum_system_version}")
        if outcome.asset_catalog_path is not None:
            print(f"  asset catalog: {outcome.asset_catalog_path}")
        return
    error = outcome.error
    stage = outcome.failed_stage.value if outcome.failed_stage else "unknown"
    print(f"ERROR: {outcome.target}: failed while {stage}")
    print(f"ERR: {error}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Bundle appearance-variant icons into an app bundle")
    parser.add_argument(
        "mode",
        choices=[mode.value for mode in PackagingMode],
        help="Packaging mode; icons are only bundled for build",
    )
    parser.add_argument("--bundle", type=Path, required=True, help="Path to the .app bundle directory")
    sources = parser.add_mutually_exclusive_group(required=True)
    sources.add_argument(
        "--config",
        type=Path,
        action="append",
        help="Icon set config JSON (repeat for several icon sets)",
    )
    sources.add_argument("--source-dir", type=Path, help="Directory of source icon images")
    parser.add_argument("--name", default="app", help="Icon set name when using --source-dir")
    parser.add_argument(
        "--appearance",
        action="append",
        default=[],
        help="Enable an appearance (dark, tinted); default is always enabled",
    )
    parser.add_argument("--min-os", default=None, help="Deployment target OS version")
    parser.add_argument("--no-downscale", action="store_true", help="Only accept exact-size sources")
    parser.add_argument("--workers", type=int, default=DEFAULT_MAX_WORKERS, help="Concurrent icon sets")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")
    parser.add_argument("--verbose", action="store_true", help="Log pipeline progress to stderr")
    args = parser.parse_args()

    _configure_logging(args.verbose)

    cancel_event = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: cancel_event.set())

    try:
        targets = _build_targets(args)
        outcomes = bundle_icon_sets(
            targets,
            mode=args.mode,
            cancel_event=cancel_event,
            max_workers=args.workers,
        )
    except IconBundleError as exc:
        if args.json:
            print(json.dumps({"ok": False, "error": exc.as_dict(), "outcomes": []}, indent=2))
        else:
            print(f"ERROR: {exc}")
        return 1

    ok = all(outcome.ok for outcome in outcomes)

    if args.json:
        print(json.dumps({"ok": ok, "outcomes": [outcome.as_dict() for outcome in outcomes]}, indent=2))
    else:
        for outcome in outcomes:
            _print_outcome(outcome)

    return 0 if ok else 1


if __name__ == "__main__":
    raise SystemExit(main())

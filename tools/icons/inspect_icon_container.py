#!/usr/bin/env python3
"""Inspect an appearance-tagged icon container and verify its representations."""

from __future__ import annotations

import argparse
import io
import json
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from PIL import Image

from packages.bundlekit_core.icons.appearance import os_version_floor
from packages.bundlekit_core.icons.assembler import read_container_file
from packages.bundlekit_core.icons.errors import ContainerFormatError


def _verify_payload(payload: bytes, expected: int) -> str | None:
    try:
        with Image.open(io.BytesIO(payload)) as img:
            img.load()
            size = img.size
    except (OSError, SyntaxError) as exc:
        return f"undecodable representation: {exc}"
    if size != (expected, expected):
        return f"decodes to {size[0]}x{size[1]} px, expected {expected}x{expected} px"
    return None


def main() -> int:
    parser = argparse.ArgumentParser(description="Inspect an .icns icon container")
    parser.add_argument("container", type=Path, help="Path to the .icns file")
    parser.add_argument("--json", action="store_true", help="Emit machine-readable JSON output")
    args = parser.parse_args()

    try:
        parsed = read_container_file(args.container)
    except ContainerFormatError as exc:
        if args.json:
            print(json.dumps({"ok": False, "errors": [str(exc)]}, indent=2))
        else:
            print(f"ERROR: {exc}")
        return 1

    errors: list[str] = []
    families: dict[str, list[str]] = {}
    for tag in parsed.appearances:
        families[tag.value] = []
        for size in parsed.sizes(tag):
            families[tag.value].append(size.label)
            problem = _verify_payload(parsed.families[tag][size], size.pixels)
            if problem:
                errors.append(f"{tag.label} {size.label}: {problem}")

    payload = {
        "ok": not errors,
        "errors": errors,
        "summary": {
            "appearances": families,
            "representations": parsed.representation_count(),
            "toc_entries": len(parsed.toc),
            "unknown_chunks": [code.decode("latin-1") for code in parsed.unknown_chunks],
            "minimum_system_version": os_version_floor(parsed.themed_appearances),
        },
    }

    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        print("OK: container is well formed" if payload["ok"] else "ERROR: container has bad representations")
        for error in errors:
            print(f"ERR: {error}")
        print("Summary:")
        print(json.dumps(payload["summary"], indent=2))

    return 0 if payload["ok"] else 1


if __name__ == "__main__":
    raise SystemExit(main())

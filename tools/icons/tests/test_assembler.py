#!/usr/bin/env python3

from __future__ import annotations

import io
import struct
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from PIL import Image
from PIL.PngImagePlugin import PngInfo

from packages.bundlekit_core.icons.appearance import AppearanceTag
from packages.bundlekit_core.icons.assembler import (
    assemble_container,
    encode_representation,
    read_container,
    write_bytes_atomic,
)
from packages.bundlekit_core.icons.catalog import load_catalog
from packages.bundlekit_core.icons.errors import (
    BuildCancelledError,
    ContainerEncodingError,
    ContainerFormatError,
)
from packages.bundlekit_core.icons.platform_table import IconSize
from packages.bundlekit_core.icons.resolver import required_cells, resolve_icon_set

SMALL_SIZES = (IconSize(16), IconSize(32), IconSize(128))


def _write_png(path: Path, pixels: int, color: tuple[int, ...] = (200, 40, 40, 255), mode: str = "RGBA") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new(mode, (pixels, pixels), color).save(path)
    return path


def _write_set(root: Path, sizes, appearance: str | None = None, color=(200, 40, 40, 255)) -> None:
    suffix = f"~{appearance}" if appearance else ""
    for size in sizes:
        scale = f"@{size.scale}x" if size.scale > 1 else ""
        _write_png(root / f"icon_{size.points}x{size.points}{scale}{suffix}.png", size.pixels, color)


def _resolve(root: Path, tags, sizes=SMALL_SIZES):
    return resolve_icon_set(load_catalog(root), required_cells(tags, sizes))


class AssembleContainerTests(unittest.TestCase):
    def test_default_and_dark_produce_six_exact_representations(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            _write_set(root, SMALL_SIZES, "dark", color=(20, 20, 20, 255))

            container = assemble_container(_resolve(root, {AppearanceTag.DARK}))

            self.assertEqual(len(container.representations), 6)
            self.assertTrue(all(rep.provenance == "exact" for rep in container.representations))
            self.assertEqual(container.appearances, (AppearanceTag.DEFAULT, AppearanceTag.DARK))
            self.assertEqual(container.required_os_floor, "10.14")

            parsed = read_container(container.data)
            self.assertEqual(parsed.appearances, (AppearanceTag.DEFAULT, AppearanceTag.DARK))
            self.assertEqual(parsed.sizes(AppearanceTag.DARK), SMALL_SIZES)
            self.assertEqual([code for code, _ in parsed.toc], [b"icp4", b"icp5", b"ic07", b"\xfd\xd9\x2f\xa8"])
            self.assertEqual(parsed.unknown_chunks, ())

            magic, length = struct.unpack(">4sI", container.data[:8])
            self.assertEqual(magic, b"icns")
            self.assertEqual(length, len(container.data))

    def test_payloads_match_their_cell_size(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            parsed = read_container(assemble_container(_resolve(root, set())).data)
            for size, payload in parsed.families[AppearanceTag.DEFAULT].items():
                with Image.open(io.BytesIO(payload)) as img:
                    self.assertEqual(img.size, (size.pixels, size.pixels))
                    self.assertEqual(img.mode, "RGBA")

    def test_rebuilds_are_byte_identical(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            _write_set(root, SMALL_SIZES[:1], "tinted", color=(90, 90, 200, 255))
            tags = {AppearanceTag.DARK, AppearanceTag.TINTED}

            first = assemble_container(_resolve(root, tags))
            second = assemble_container(_resolve(root, tags))
            self.assertEqual(first.data, second.data)
            self.assertEqual(first.sha256, second.sha256)

    def test_default_only_sources_omit_themed_families(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            container = assemble_container(_resolve(root, {AppearanceTag.DARK, AppearanceTag.TINTED}))

            self.assertEqual(container.appearances, (AppearanceTag.DEFAULT,))
            self.assertEqual(container.omitted_appearances, (AppearanceTag.DARK, AppearanceTag.TINTED))
            self.assertIsNone(container.required_os_floor)
            self.assertEqual(read_container(container.data).themed_appearances, ())

    def test_fallback_only_families_are_never_encoded(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            resolved = _resolve(root, {AppearanceTag.DARK, AppearanceTag.TINTED})
            self.assertEqual(len(resolved), 9)

            with patch(
                "packages.bundlekit_core.icons.assembler.encode_representation",
                wraps=encode_representation,
            ) as encode:
                container = assemble_container(resolved)

            self.assertEqual(encode.call_count, 3)
            self.assertTrue(all(call.args[0].cell.appearance == AppearanceTag.DEFAULT for call in encode.call_args_list))
            self.assertEqual(len(container.representations), 3)

    def test_larger_source_is_downscaled(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_png(root / "icon_256x256.png", 256)
            container = assemble_container(_resolve(root, set(), sizes=(IconSize(128),)))

            self.assertEqual(container.representations[0].provenance, "fallback<default, downscaled>")
            payload = read_container(container.data).families[AppearanceTag.DEFAULT][IconSize(128)]
            with Image.open(io.BytesIO(payload)) as img:
                self.assertEqual(img.size, (128, 128))

    def test_source_metadata_is_not_copied(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            info = PngInfo()
            info.add_text("Comment", "secret-author-note")
            Image.new("RGBA", (16, 16), (1, 2, 3, 255)).save(root / "icon_16x16.png", pnginfo=info)
            container = assemble_container(_resolve(root, set(), sizes=(IconSize(16),)))
            self.assertNotIn(b"secret-author-note", container.data)

    def test_palette_sources_follow_conversion_setting(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_png(root / "icon_16x16.png", 16, color=3, mode="P")
            resolved = _resolve(root, set(), sizes=(IconSize(16),))

            with self.assertRaises(ContainerEncodingError) as ctx:
                assemble_container(resolved, convert_palette=False)
            self.assertIn("Default 16x16", str(ctx.exception))

            container = assemble_container(resolved, convert_palette=True)
            self.assertEqual(len(container.representations), 1)

    def test_unsupported_color_mode_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            Image.new("CMYK", (16, 16), (0, 0, 0, 0)).save(root / "icon_16x16.jpg")
            with self.assertRaises(ContainerEncodingError) as ctx:
                assemble_container(_resolve(root, set(), sizes=(IconSize(16),)))
            self.assertIn("CMYK", str(ctx.exception))

    def test_cancellation_stops_between_representations(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_set(root, SMALL_SIZES)
            with self.assertRaises(BuildCancelledError):
                assemble_container(_resolve(root, set()), should_cancel=lambda: True)


class ReadContainerTests(unittest.TestCase):
    def test_bad_magic_and_truncation_are_rejected(self) -> None:
        with self.assertRaises(ContainerFormatError):
            read_container(b"nope\x00\x00\x00\x08")
        with self.assertRaises(ContainerFormatError):
            read_container(b"icns\x00\x00\x00\x20" + b"\x00" * 4)
        with self.assertRaises(ContainerFormatError):
            read_container(b"icns\x00\x00\x00\x10ic07\x00\x00\x00\x40")

    def test_unknown_chunks_are_reported(self) -> None:
        body = b"zzzz\x00\x00\x00\x0aok"
        data = b"icns" + struct.pack(">I", 8 + len(body)) + body
        parsed = read_container(data)
        self.assertEqual(parsed.unknown_chunks, (b"zzzz",))
        self.assertEqual(parsed.representation_count(), 0)


class AtomicWriteTests(unittest.TestCase):
    def test_write_replaces_without_leftovers(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            out = Path(td) / "AppIcon.icns"
            out.write_bytes(b"old")
            write_bytes_atomic(b"new", out)
            self.assertEqual(out.read_bytes(), b"new")
            self.assertEqual([p.name for p in Path(td).iterdir()], ["AppIcon.icns"])


if __name__ == "__main__":
    unittest.main()

#!/usr/bin/env python3

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from PIL import Image

from packages.bundlekit_core.icons.appearance import AppearanceTag
from packages.bundlekit_core.icons.catalog import (
    discover_source_files,
    load_catalog,
    load_source_image,
    parse_icon_filename,
)
from packages.bundlekit_core.icons.errors import (
    DuplicateCellError,
    IconConfigError,
    SizeMismatchError,
    UnreadableSourceError,
    UnsupportedIconSizeError,
)
from packages.bundlekit_core.icons.platform_table import IconSize


def _write_png(path: Path, width: int, height: int | None = None, mode: str = "RGBA") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new(mode, (width, height or width)).save(path)
    return path


class IconFilenameTests(unittest.TestCase):
    def test_size_scale_and_appearance_suffix(self) -> None:
        parsed = parse_icon_filename(Path("icon_128x128@2x~dark.png"))
        self.assertEqual(parsed.appearance, AppearanceTag.DARK)
        self.assertEqual(parsed.declared_pixels, (256, 256))
        self.assertEqual(parsed.scale, 2)

    def test_underscore_suffix_and_aliases(self) -> None:
        self.assertEqual(parse_icon_filename(Path("icon_16x16_tinted.png")).appearance, AppearanceTag.TINTED)
        self.assertEqual(parse_icon_filename(Path("icon_16x16-clear.png")).appearance, AppearanceTag.TINTED)
        self.assertEqual(parse_icon_filename(Path("icon_16x16~light.png")).appearance, AppearanceTag.DEFAULT)

    def test_appearance_from_parent_directory(self) -> None:
        parsed = parse_icon_filename(Path("icons/dark/icon_32x32.png"))
        self.assertEqual(parsed.appearance, AppearanceTag.DARK)
        self.assertEqual(parsed.declared_pixels, (32, 32))

    def test_filename_suffix_wins_over_directory(self) -> None:
        parsed = parse_icon_filename(Path("icons/dark/icon_32x32~tinted.png"))
        self.assertEqual(parsed.appearance, AppearanceTag.TINTED)

    def test_untagged_name_has_no_appearance(self) -> None:
        parsed = parse_icon_filename(Path("master.png"))
        self.assertIsNone(parsed.appearance)
        self.assertIsNone(parsed.declared_pixels)


class SourceImageTests(unittest.TestCase):
    def test_declared_size_is_checked_against_pixels(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = _write_png(Path(td) / "icon_32x32.png", 16)
            with self.assertRaises(SizeMismatchError) as ctx:
                load_source_image(path)
            self.assertEqual(ctx.exception.declared, (32, 32))
            self.assertEqual(ctx.exception.actual, (16, 16))

    def test_retina_declaration_uses_pixel_dimension(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            source = load_source_image(_write_png(Path(td) / "icon_128x128@2x.png", 256))
            self.assertEqual(source.size, IconSize(128, 2))
            self.assertEqual(source.appearance, AppearanceTag.DEFAULT)
            self.assertEqual(source.bits_per_pixel, 32)

    def test_master_image_size_is_inferred(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_source_image(_write_png(Path(td) / "master.png", 1024)).size, IconSize(512, 2))
            self.assertEqual(load_source_image(_write_png(Path(td) / "small.png", 64)).size, IconSize(64, 1))

    def test_non_square_and_unknown_sizes_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(UnsupportedIconSizeError):
                load_source_image(_write_png(Path(td) / "wide.png", 32, 16))
            with self.assertRaises(UnsupportedIconSizeError):
                load_source_image(_write_png(Path(td) / "odd.png", 100))
            with self.assertRaises(UnsupportedIconSizeError):
                load_source_image(_write_png(Path(td) / "icon_100x100.png", 100))

    def test_corrupt_file_is_unreadable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "icon_16x16.png"
            path.write_bytes(b"not an image")
            with self.assertRaises(UnreadableSourceError) as ctx:
                load_source_image(path)
            self.assertEqual(ctx.exception.path, path)


class CatalogTests(unittest.TestCase):
    def test_discovery_sorts_files_by_kind(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_png(root / "icon_16x16.png", 16)
            _write_png(root / "dark" / "icon_16x16.png", 16)
            (root / "Assets.car").write_bytes(b"car")
            (root / "AppIcon.icns").write_bytes(b"icns")
            (root / "README.txt").write_text("notes", encoding="utf-8")
            (root / ".hidden.png").write_bytes(b"")
            _write_png(root / "unrelated" / "icon_32x32.png", 32)

            images, containers, asset_catalogs = discover_source_files(root)
            self.assertEqual(images, [root / "dark" / "icon_16x16.png", root / "icon_16x16.png"])
            self.assertEqual(containers, [root / "AppIcon.icns"])
            self.assertEqual(asset_catalogs, [root / "Assets.car"])

    def test_catalog_indexes_by_appearance_and_size(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            _write_png(root / "icon_16x16.png", 16)
            _write_png(root / "icon_16x16@2x.png", 32)
            _write_png(root / "icon_32x32.png", 32)
            _write_png(root / "dark" / "icon_16x16.png", 16)

            catalog = load_catalog(root)
            self.assertEqual(len(catalog), 4)
            self.assertEqual(catalog.tags(), (AppearanceTag.DEFAULT, AppearanceTag.DARK))
            self.assertIsNotNone(catalog.get(AppearanceTag.DEFAULT, IconSize(16, 2)))
            self.assertIsNone(catalog.get(AppearanceTag.TINTED, IconSize(16, 1)))
            self.assertEqual(
                [img.size for img in catalog.images_for(AppearanceTag.DEFAULT)],
                [IconSize(16, 1), IconSize(16, 2), IconSize(32, 1)],
            )
            self.assertEqual(catalog.summary()["appearances"]["dark"], ["16x16"])

    def test_duplicate_cell_names_both_files(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            first = _write_png(root / "dark" / "icon_32x32.png", 32)
            second = _write_png(root / "icon_32x32~dark.png", 32)
            with self.assertRaises(DuplicateCellError) as ctx:
                load_catalog(root)
            self.assertEqual(set(ctx.exception.paths), {first, second})
            self.assertEqual(ctx.exception.cell.appearance, AppearanceTag.DARK)

    def test_explicit_files_are_added(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            path = _write_png(root / "anywhere" / "icon_512x512@2x~tinted.png", 1024)
            catalog = load_catalog(files=[path, root / "prebuilt.icns"])
            self.assertIsNotNone(catalog.get(AppearanceTag.TINTED, IconSize(512, 2)))
            self.assertEqual(catalog.prebuilt_containers, (root / "prebuilt.icns",))

    def test_prebuilt_container_skips_decoding_loose_images(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            (root / "AppIcon.icns").write_bytes(b"icns")
            (root / "icon_16x16.png").write_bytes(b"not a png")
            _write_png(root / "icon_32x32.png", 32)
            (root / "Assets.car").write_bytes(b"car")

            catalog = load_catalog(root, prefer_prebuilt=True)
            self.assertEqual(len(catalog), 0)
            self.assertEqual(catalog.prebuilt_containers, (root / "AppIcon.icns",))
            self.assertEqual(catalog.asset_catalogs, (root / "Assets.car",))
            self.assertEqual(catalog.skipped_images, (root / "icon_16x16.png", root / "icon_32x32.png"))

            with self.assertRaises(UnreadableSourceError):
                load_catalog(root)

    def test_missing_directory_is_a_config_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(IconConfigError):
                load_catalog(Path(td) / "missing")


if __name__ == "__main__":
    unittest.main()

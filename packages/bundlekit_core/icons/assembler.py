"""Container assembly: encodes resolved cells into one appearance-tagged icon family.

Layout (all lengths big-endian u32 and inclusive of the 8-byte header)::

    'icns' <total>
      'TOC ' <len> (<type> <len>)*        entries for every chunk that follows
      <type> <len> <png>                  Default representations, platform order
      <appearance> <len> 'icns' <len> ... one nested family per themed appearance

Output is a pure function of the resolved set and encoder settings, so two
builds from the same sources produce byte-identical containers.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import struct
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from PIL import Image

from .appearance import APPEARANCE_ORDER, AppearanceTag, os_version_floor, sort_appearance_tags
from .errors import BuildCancelledError, ContainerEncodingError, ContainerFormatError
from .platform_table import (
    APPEARANCE_BY_CHUNK_TYPE,
    APPEARANCE_CHUNK_TYPES,
    CONTAINER_MAGIC,
    SIZE_BY_REPRESENTATION_TYPE,
    TOC_TYPE,
    IconCell,
    IconSize,
    representation_type,
)
from .resolver import ResolvedCell, ResolvedIconSet

logger = logging.getLogger("bundlekit_core.icons.assembler")

RESAMPLE_FILTERS: dict[str, Image.Resampling] = {
    "box": Image.Resampling.BOX,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}
DEFAULT_RESAMPLE_FILTER = "bicubic"

INTERNAL_MODE = "RGBA"
DIRECT_MODES = ("RGBA", "RGB", "LA", "L", "1")
PALETTE_MODES = ("P", "PA")
PNG_COMPRESS_LEVEL = 9

_HEADER = struct.Struct(">4sI")

CancelCheck = Callable[[], bool]


@dataclass(frozen=True)
class Representation:
    cell: IconCell
    type_code: bytes
    data: bytes
    provenance: str

    @property
    def chunk(self) -> bytes:
        return _chunk(self.type_code, self.data)


@dataclass(frozen=True)
class IconContainer:
    representations: tuple[Representation, ...]
    appearances: tuple[AppearanceTag, ...]
    data: bytes = field(repr=False)
    omitted_appearances: tuple[AppearanceTag, ...] = ()

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.data).hexdigest()

    @property
    def required_os_floor(self) -> str | None:
        return os_version_floor(self.appearances)

    def summary(self) -> dict[str, Any]:
        return {
            "bytes": len(self.data),
            "sha256": self.sha256,
            "appearances": [tag.value for tag in self.appearances],
            "omitted_appearances": [tag.value for tag in self.omitted_appearances],
            "representations": [
                {
                    "cell": rep.cell.label,
                    "type": rep.type_code.decode("latin-1"),
                    "bytes": len(rep.data),
                    "provenance": rep.provenance,
                }
                for rep in self.representations
            ],
        }


@dataclass(frozen=True)
class ParsedContainer:
    """Decoded view of a container: PNG payloads per appearance and size."""

    families: dict[AppearanceTag, dict[IconSize, bytes]]
    toc: tuple[tuple[bytes, int], ...] = ()
    unknown_chunks: tuple[bytes, ...] = ()

    @property
    def appearances(self) -> tuple[AppearanceTag, ...]:
        return sort_appearance_tags(self.families)

    @property
    def themed_appearances(self) -> tuple[AppearanceTag, ...]:
        return tuple(tag for tag in self.appearances if tag != AppearanceTag.DEFAULT)

    def sizes(self, appearance: AppearanceTag) -> tuple[IconSize, ...]:
        return tuple(sorted(self.families.get(appearance, {})))

    def representation_count(self) -> int:
        return sum(len(reps) for reps in self.families.values())


def normalize_resample_filter(name: str) -> str:
    key = str(name or "").strip().lower()
    if key not in RESAMPLE_FILTERS:
        raise ValueError(f"Unsupported resample filter: {name} (expected one of {', '.join(RESAMPLE_FILTERS)})")
    return key


def _chunk(type_code: bytes, payload: bytes) -> bytes:
    return _HEADER.pack(type_code, _HEADER.size + len(payload)) + payload


def _family(chunks: list[bytes]) -> bytes:
    body = b"".join(chunks)
    return _HEADER.pack(CONTAINER_MAGIC, _HEADER.size + len(body)) + body


def _to_internal_format(img: Image.Image, resolved: ResolvedCell, *, convert_palette: bool) -> Image.Image:
    mode = img.mode
    if mode in PALETTE_MODES:
        if not convert_palette:
            raise ContainerEncodingError(
                resolved.cell,
                f"indexed palette image ({mode}) and palette conversion is disabled",
                path=resolved.source.path,
            )
        logger.warning("[ASSEMBLER] Converting palette image to RGBA: %s", resolved.source.path)
    elif mode not in DIRECT_MODES:
        raise ContainerEncodingError(
            resolved.cell,
            f"unsupported color mode {mode}",
            path=resolved.source.path,
        )
    rgba = img.convert(INTERNAL_MODE) if mode != INTERNAL_MODE else img
    # Rebuild from raw pixels so no source metadata (ICC, dpi, text) leaks into the output.
    return Image.frombytes(INTERNAL_MODE, rgba.size, rgba.tobytes())


def encode_representation(
    resolved: ResolvedCell,
    *,
    resample: str = DEFAULT_RESAMPLE_FILTER,
    convert_palette: bool = True,
) -> Representation:
    cell = resolved.cell
    target = cell.size.pixels
    resample_filter = RESAMPLE_FILTERS[normalize_resample_filter(resample)]

    try:
        with Image.open(resolved.source.path) as img:
            img.load()
            pixels = _to_internal_format(img, resolved, convert_palette=convert_palette)
    except ContainerEncodingError:
        raise
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise ContainerEncodingError(cell, exc, path=resolved.source.path) from exc

    if pixels.size != (target, target):
        if resolved.provenance.is_exact:
            raise ContainerEncodingError(
                cell,
                f"exact source is {pixels.size[0]}x{pixels.size[1]} px, expected {target}x{target} px",
                path=resolved.source.path,
            )
        pixels = pixels.resize((target, target), resample=resample_filter)

    buffer = io.BytesIO()
    try:
        pixels.save(buffer, format="PNG", optimize=False, compress_level=PNG_COMPRESS_LEVEL)
    except (OSError, ValueError) as exc:
        raise ContainerEncodingError(cell, exc, path=resolved.source.path) from exc

    return Representation(
        cell=cell,
        type_code=representation_type(cell.size),
        data=buffer.getvalue(),
        provenance=resolved.provenance.label,
    )


def assemble_container(
    resolved_set: ResolvedIconSet,
    *,
    resample: str = DEFAULT_RESAMPLE_FILTER,
    convert_palette: bool = True,
    should_cancel: CancelCheck | None = None,
) -> IconContainer:
    logger.info("[ASSEMBLER] Encoding %d representation(s) with %s resampling", len(resolved_set), resample)

    themed = set(resolved_set.embedded_source_tags())
    requested: set[AppearanceTag] = set()
    encoded: dict[AppearanceTag, list[Representation]] = {}
    for resolved in resolved_set:
        tag = resolved.cell.appearance
        requested.add(tag)
        if tag != AppearanceTag.DEFAULT and tag not in themed:
            continue
        if should_cancel is not None and should_cancel():
            raise BuildCancelledError("Build cancelled during container assembly", cell=resolved.cell)
        rep = encode_representation(resolved, resample=resample, convert_palette=convert_palette)
        encoded.setdefault(tag, []).append(rep)

    chunks: list[bytes] = []
    representations: list[Representation] = []
    appearances: list[AppearanceTag] = []
    omitted: list[AppearanceTag] = []

    for tag in APPEARANCE_ORDER:
        if tag not in requested:
            continue
        if tag != AppearanceTag.DEFAULT and tag not in themed:
            # Every cell fell back to Default sources; the OS falls back the same way.
            logger.info("[ASSEMBLER] Omitting %s family - no themed sources", tag.label)
            omitted.append(tag)
            continue
        reps = sorted(encoded.get(tag, []), key=lambda rep: rep.cell.size)
        if tag == AppearanceTag.DEFAULT:
            chunks.extend(rep.chunk for rep in reps)
        else:
            chunks.append(_chunk(APPEARANCE_CHUNK_TYPES[tag], _family([rep.chunk for rep in reps])))
        appearances.append(tag)
        representations.extend(reps)

    toc = b"".join(chunk[: _HEADER.size] for chunk in chunks)
    data = _family([_chunk(TOC_TYPE, toc)] + chunks)

    container = IconContainer(
        representations=tuple(representations),
        appearances=tuple(appearances),
        data=data,
        omitted_appearances=tuple(omitted),
    )
    logger.info(
        "[ASSEMBLER] Container assembled: %d bytes, %d representation(s), appearances=%s",
        len(data),
        len(representations),
        ",".join(tag.value for tag in appearances),
    )
    return container


def write_bytes_atomic(data: bytes, out_path: Path) -> Path:
    """Write bytes next to ``out_path`` and rename into place; never leaves a partial file."""

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{out_path.name}.", suffix=".tmp", dir=out_path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, out_path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.debug("[ASSEMBLER] Wrote %d bytes to %s", len(data), out_path)
    return out_path


def write_container_atomic(container: IconContainer, out_path: Path) -> Path:
    return write_bytes_atomic(container.data, out_path)


def _iter_chunks(data: bytes, *, context: str):
    offset = 0
    while offset < len(data):
        if len(data) - offset < _HEADER.size:
            raise ContainerFormatError(f"Truncated chunk header in {context} at offset {offset}")
        type_code, length = _HEADER.unpack_from(data, offset)
        if length < _HEADER.size or offset + length > len(data):
            raise ContainerFormatError(
                f"Invalid chunk length {length} for {type_code!r} in {context} at offset {offset}"
            )
        yield type_code, data[offset + _HEADER.size : offset + length]
        offset += length


def _unwrap_family(data: bytes, *, context: str) -> bytes:
    if len(data) < _HEADER.size:
        raise ContainerFormatError(f"{context} is too short to be an icon container")
    magic, length = _HEADER.unpack_from(data, 0)
    if magic != CONTAINER_MAGIC:
        raise ContainerFormatError(f"{context} has bad magic {magic!r}")
    if length != len(data):
        raise ContainerFormatError(f"{context} declares {length} bytes but holds {len(data)}")
    return data[_HEADER.size :]


def _read_family(body: bytes, *, context: str) -> tuple[dict[IconSize, bytes], list[tuple[bytes, bytes]]]:
    reps: dict[IconSize, bytes] = {}
    others: list[tuple[bytes, bytes]] = []
    for type_code, payload in _iter_chunks(body, context=context):
        size = SIZE_BY_REPRESENTATION_TYPE.get(type_code)
        if size is not None:
            reps[size] = payload
        else:
            others.append((type_code, payload))
    return reps, others


def read_container(data: bytes) -> ParsedContainer:
    body = _unwrap_family(data, context="container")
    default_reps, others = _read_family(body, context="container")

    families: dict[AppearanceTag, dict[IconSize, bytes]] = {}
    if default_reps:
        families[AppearanceTag.DEFAULT] = default_reps
    toc: list[tuple[bytes, int]] = []
    unknown: list[bytes] = []

    for type_code, payload in others:
        if type_code == TOC_TYPE:
            if len(payload) % _HEADER.size:
                raise ContainerFormatError("TOC length is not a multiple of the entry size")
            toc = [_HEADER.unpack_from(payload, i) for i in range(0, len(payload), _HEADER.size)]
            continue
        tag = APPEARANCE_BY_CHUNK_TYPE.get(type_code)
        if tag is None:
            unknown.append(type_code)
            continue
        context = f"{tag.label} family"
        nested, nested_other = _read_family(_unwrap_family(payload, context=context), context=context)
        if nested:
            families[tag] = nested
        unknown.extend(code for code, _ in nested_other)

    return ParsedContainer(families=families, toc=tuple(toc), unknown_chunks=tuple(unknown))


def read_container_file(path: Path) -> ParsedContainer:
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ContainerFormatError(f"Cannot read icon container {path}: {exc}", path=path) from exc
    try:
        return read_container(data)
    except ContainerFormatError as exc:
        raise ContainerFormatError(f"{path.name}: {exc}", path=path) from exc

"""Typed failures raised by the icon bundling stages.

Every error carries a stable ``error_code`` plus the cell or path needed to
fix the source set. None of them are transient, so nothing here is retried.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from .platform_table import IconCell


class IconBundleError(RuntimeError):
    error_code = "icon_bundle_error"

    def __init__(
        self,
        message: str,
        *,
        cell: IconCell | None = None,
        path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.cell = cell
        self.path = path

    def as_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": str(self),
            "cell": self.cell.label if self.cell is not None else None,
            "path": str(self.path) if self.path is not None else None,
        }


class IconConfigError(IconBundleError):
    error_code = "invalid_config"


class UnreadableSourceError(IconBundleError):
    error_code = "unreadable_source"

    def __init__(self, path: Path, cause: BaseException) -> None:
        super().__init__(f"Cannot read icon source {path}: {cause}", path=path)
        self.cause = cause


class UnsupportedIconSizeError(IconBundleError):
    error_code = "unsupported_icon_size"


class SizeMismatchError(IconBundleError):
    error_code = "size_mismatch"

    def __init__(self, path: Path, *, declared: tuple[int, int], actual: tuple[int, int]) -> None:
        super().__init__(
            f"{path.name} declares {declared[0]}x{declared[1]} px but decodes to {actual[0]}x{actual[1]} px",
            path=path,
        )
        self.declared = declared
        self.actual = actual


class DuplicateCellError(IconBundleError):
    error_code = "duplicate_cell"

    def __init__(self, cell: IconCell, paths: Iterable[Path]) -> None:
        self.paths = tuple(paths)
        names = ", ".join(str(p) for p in self.paths)
        super().__init__(f"Multiple sources map to {cell.label}: {names}", cell=cell, path=self.paths[0])


class NoSuitableSourceError(IconBundleError):
    error_code = "no_suitable_source"

    def __init__(self, cell: IconCell, reason: str) -> None:
        super().__init__(f"No suitable source for {cell.label}: {reason}", cell=cell)
        self.reason = reason


class IncompleteIconSetError(IconBundleError):
    error_code = "incomplete_icon_set"

    def __init__(self, failures: Iterable[NoSuitableSourceError]) -> None:
        self.failures = tuple(failures)
        lines = "\n".join(f"  - {failure.cell.label}: {failure.reason}" for failure in self.failures)
        super().__init__(f"Icon set is missing {len(self.failures)} required cell(s):\n{lines}")

    @property
    def cells(self) -> tuple[IconCell, ...]:
        return tuple(failure.cell for failure in self.failures)

    def as_dict(self) -> dict[str, Any]:
        out = super().as_dict()
        out["cells"] = [
            {"cell": failure.cell.label, "reason": failure.reason} for failure in self.failures
        ]
        return out


class ContainerEncodingError(IconBundleError):
    error_code = "encoding_error"

    def __init__(self, cell: IconCell, cause: BaseException | str, *, path: Path | None = None) -> None:
        super().__init__(f"Cannot encode {cell.label}: {cause}", cell=cell, path=path)
        self.cause = cause


class ContainerFormatError(IconBundleError):
    error_code = "invalid_container"


class BundleWriteError(IconBundleError):
    error_code = "bundle_write_error"

    def __init__(self, path: Path, cause: BaseException | str) -> None:
        super().__init__(f"Cannot write bundle path {path}: {cause}", path=path)
        self.cause = cause


class BuildCancelledError(IconBundleError):
    error_code = "cancelled"

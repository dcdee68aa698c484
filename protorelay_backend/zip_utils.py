from __future__ import annotations

import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Protocol

from .config import SCHEMA_SUFFIX
from .errors import (
    DuplicateEntry,
    InvalidArchive,
    SizeLimitExceeded,
    TooManyEntries,
)
from .security import safe_join


logger = logging.getLogger(__name__)

_COPY_CHUNK = 64 * 1024

# Errors zipfile/zlib raise for corrupt, encrypted or unsupported members.
_UNREADABLE_MEMBER_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError)


class DirectoryAllocator(Protocol):
    def allocate(self) -> Path: ...


@dataclass(frozen=True)
class ExtractionLimits:
    max_entries: int
    max_uncompressed_bytes: int

    def __post_init__(self) -> None:
        if self.max_entries <= 0 or self.max_uncompressed_bytes <= 0:
            raise ValueError("Extraction limits must be positive")


@dataclass(frozen=True)
class ArchiveEntry:
    """Read-only view of one archive member. ``name`` is untrusted."""

    name: str
    is_dir: bool
    size: int
    opener: Callable[[], IO[bytes]] = field(repr=False, compare=False)

    def open(self) -> IO[bytes]:
        return self.opener()


@dataclass(frozen=True)
class ExtractionResult:
    output_directory: Path
    schema_files: tuple[str, ...]


def is_schema_file(name: str, suffix: str = SCHEMA_SUFFIX) -> bool:
    return name.lower().endswith(suffix.lower())


class ArchiveExtractor:
    """Extract an untrusted ZIP into a fresh scratch directory.

    Rules:
    - entry count bounded before anything is written
    - no Zip Slip (every destination must stay strictly inside the output dir)
    - cumulative uncompressed size bounded (declared sizes and bytes actually inflated)
    - exclusive-create writes, so duplicate/colliding names cannot overwrite content

    Cleanup of the output directory belongs to whoever owns ``storage``.
    """

    def __init__(self, schema_suffix: str = SCHEMA_SUFFIX) -> None:
        self.schema_suffix = schema_suffix

    def extract(
        self,
        archive_bytes: bytes,
        limits: ExtractionLimits,
        storage: DirectoryAllocator,
    ) -> ExtractionResult:
        try:
            zf = zipfile.ZipFile(io.BytesIO(archive_bytes))
        except (zipfile.BadZipFile, OSError, ValueError) as exc:
            raise InvalidArchive(f"Invalid ZIP: {exc}") from exc

        with zf:
            entries = self.read_entries(zf)
            if len(entries) > limits.max_entries:
                raise TooManyEntries("Too many zip entries")

            out_dir = storage.allocate().resolve()
            logger.debug("Extracting %d entries into %s", len(entries), out_dir)
            return self._extract_all(entries, out_dir, limits)

    def read_entries(self, zf: zipfile.ZipFile) -> list[ArchiveEntry]:
        """Index pass over the central directory; nothing is inflated here."""
        return [
            ArchiveEntry(
                name=info.filename,
                is_dir=info.is_dir(),
                size=info.file_size,
                opener=lambda info=info: zf.open(info),
            )
            for info in zf.infolist()
        ]

    def _extract_all(
        self,
        entries: list[ArchiveEntry],
        out_dir: Path,
        limits: ExtractionLimits,
    ) -> ExtractionResult:
        total = 0
        schema_files: list[str] = []

        for entry in entries:
            dest = safe_join(out_dir, entry.name)

            if entry.is_dir:
                self._ensure_dir(dest, entry.name)
                continue

            if total + entry.size > limits.max_uncompressed_bytes:
                raise SizeLimitExceeded("Uncompressed size limit exceeded")
            written = self._write_file(dest, entry, budget=limits.max_uncompressed_bytes - total)
            total += max(entry.size, written)

            if is_schema_file(entry.name, self.schema_suffix):
                schema_files.append(dest.relative_to(out_dir).as_posix())

        return ExtractionResult(output_directory=out_dir, schema_files=tuple(sorted(schema_files)))

    @staticmethod
    def _ensure_dir(dest: Path, name: str) -> None:
        try:
            dest.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as exc:
            raise DuplicateEntry(f"Entry collides with an existing file: {name}") from exc
        except OSError as exc:
            raise InvalidArchive(f"Cannot extract {name}: {exc}") from exc

    @staticmethod
    def _write_file(dest: Path, entry: ArchiveEntry, budget: int) -> int:
        """Stream one member to disk; returns the number of bytes written.

        The member's size header is not trusted: inflation stops as soon as the
        remaining budget is exhausted.
        """
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
        except (FileExistsError, NotADirectoryError) as exc:
            raise DuplicateEntry(f"Entry collides with an existing file: {entry.name}") from exc
        except OSError as exc:
            raise InvalidArchive(f"Cannot extract {entry.name}: {exc}") from exc

        try:
            out = open(dest, "xb")
        except (FileExistsError, IsADirectoryError) as exc:
            raise DuplicateEntry(f"Duplicate entry in ZIP: {entry.name}") from exc
        except OSError as exc:
            raise InvalidArchive(f"Cannot extract {entry.name}: {exc}") from exc

        written = 0
        with out:
            try:
                with entry.open() as src:
                    while True:
                        chunk = src.read(_COPY_CHUNK)
                        if not chunk:
                            break
                        written += len(chunk)
                        if written > budget:
                            raise SizeLimitExceeded("Uncompressed size limit exceeded")
                        out.write(chunk)
            except _UNREADABLE_MEMBER_ERRORS as exc:
                raise InvalidArchive(f"Unreadable entry {entry.name}: {exc}") from exc
        return written

"""Streaming extraction of gzipped tar bundles into a flat scratch directory."""

from __future__ import annotations

import gzip
import logging
import os
import tarfile
import zlib
from pathlib import Path, PurePosixPath
from typing import BinaryIO, List

from .errors import (
    ARCHIVE_CHMOD,
    ARCHIVE_MALFORMED,
    ARCHIVE_NOT_GZIP,
    ARCHIVE_UNKNOWN_ENTRY,
    ARCHIVE_WRITE,
    ProcessingError,
)

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024
_READ_ERRORS = (tarfile.TarError, OSError, EOFError, zlib.error)


def _open_gzip(stream: BinaryIO) -> gzip.GzipFile:
    """Open the gzip layer and validate its header before tar parsing starts."""
    compressed = gzip.GzipFile(fileobj=stream, mode="rb")
    try:
        compressed.peek(1)
    except (OSError, EOFError, zlib.error) as error:
        raise ProcessingError(
            f"Could not decompress file, err: {error}", ARCHIVE_NOT_GZIP
        ) from error
    return compressed


def _entry_name(member: tarfile.TarInfo) -> str:
    """Reduce an entry name to its base name, dropping any directory part."""
    return PurePosixPath(member.name).name


def _materialize(archive: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
    source = archive.extractfile(member)
    try:
        handle = target.open("wb")
    except OSError as error:
        raise ProcessingError(
            f"Could not decompress file, got error {error}", ARCHIVE_WRITE
        ) from error
    with handle:
        while True:
            try:
                chunk = source.read(COPY_CHUNK_SIZE) if source is not None else b""
            except _READ_ERRORS as error:
                raise ProcessingError(
                    f"Could not decompress, got error {error}", ARCHIVE_MALFORMED
                ) from error
            if not chunk:
                break
            try:
                handle.write(chunk)
            except OSError as error:
                raise ProcessingError(
                    f"Could not decompress file, got error {error}", ARCHIVE_WRITE
                ) from error
    try:
        os.chmod(target, member.mode & 0o7777)
    except OSError as error:
        raise ProcessingError(
            f"Could not change permissions got error {error}", ARCHIVE_CHMOD
        ) from error


def extract_archive(stream: BinaryIO, target_dir: Path) -> List[Path]:
    """
    Stream a ``.tar.gz`` archive into ``target_dir``.

    Directory entries are skipped and regular files land flat under their base
    name with their permission bits reapplied; a later entry with the same
    base name replaces the earlier one. Any other entry type aborts the job.

    Parameters:
        stream (BinaryIO): Readable compressed archive; only read forwards.
        target_dir (Path): Existing directory receiving the files.

    Returns:
        list[Path]: Materialized files in the order the archive emitted them.

    Raises:
        ProcessingError: Codes 530-534 for decompression, entry type, read,
        write and permission failures.
    """
    compressed = _open_gzip(stream)
    try:
        archive = tarfile.open(fileobj=compressed, mode="r|")
    except _READ_ERRORS as error:
        raise ProcessingError(
            f"Could not decompress, got error {error}", ARCHIVE_MALFORMED
        ) from error

    files: List[Path] = []
    with archive:
        while True:
            try:
                member = archive.next()
            except _READ_ERRORS as error:
                raise ProcessingError(
                    f"Could not decompress, got error {error}", ARCHIVE_MALFORMED
                ) from error
            if member is None:
                break
            if member.isdir():
                continue
            if not member.isfile():
                raise ProcessingError(
                    f"Unknown file type {member.type!r} for {member.name}",
                    ARCHIVE_UNKNOWN_ENTRY,
                )
            name = _entry_name(member)
            if name in ("", ".", ".."):
                logger.warning("Skipping archive entry without a usable name: %s", member.name)
                continue
            target = target_dir / name
            _materialize(archive, member, target)
            if target in files:
                logger.warning("%s replaced by a later archive entry", name)
                files.remove(target)
            files.append(target)
    logger.info("Extracted %d files", len(files))
    return files

"""Zip packing and unpacking of catalog objects.

``ArchiveBuilder`` exports the current revision of several objects as one zip
file. Each requested name is resolved on its own; names that do not resolve
are reported as missing instead of failing the export.
"""
import io
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable, List, Optional

from catalog.exceptions import (
    ArchiveBuildCancelled,
    ArchiveBuildFailure,
    CatalogObjectNotFound,
    InvalidArchive,
)

logger = logging.getLogger(__name__)

ZIP_CONTENT_TYPE = "application/zip"


@dataclass
class ArchiveEntry:
    name: str
    content: bytes


@dataclass
class ArchiveContent:
    content: bytes
    found: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.found) and bool(self.missing)

    @property
    def is_empty(self) -> bool:
        return not self.found


def entry_object_name(path: str) -> str:
    """Catalog name of an archive member: file name without folders or extension."""
    return PurePosixPath(path).stem


def extract_archive(archive_bytes: bytes) -> List[ArchiveEntry]:
    """Read every file member of a zip archive, in archive order."""
    try:
        with zipfile.ZipFile(io.BytesIO(archive_bytes)) as zf:
            entries = []
            for info in zf.infolist():
                if info.is_dir():
                    continue
                name = entry_object_name(info.filename)
                if not name:
                    continue
                entries.append(ArchiveEntry(name=name, content=zf.read(info)))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError) as exc:
        raise InvalidArchive(f"Invalid archive content: {exc}") from exc

    if not entries:
        raise InvalidArchive("Archive does not contain any file")
    return entries


class ArchiveBuilder:
    def __init__(self, store):
        self.store = store

    def build_archive(
        self,
        bucket: str,
        names: List[str],
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> ArchiveContent:
        result = ArchiveContent(content=b"")
        hits = []
        seen = set()
        for name in names:
            if is_cancelled is not None and is_cancelled():
                logger.info("Archive build for bucket %s cancelled after %d entries", bucket, len(seen))
                raise ArchiveBuildCancelled(f"Archive build for bucket '{bucket}' was cancelled")
            if name in seen:
                continue
            seen.add(name)
            try:
                raw = self.store.get_raw_content(bucket, name)
            except CatalogObjectNotFound:
                result.missing.append(name)
                continue
            except OSError as exc:
                raise ArchiveBuildFailure(f"Could not read content of '{name}': {exc}") from exc
            hits.append(raw)
            result.found.append(name)

        buffer = io.BytesIO()
        try:
            with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
                for raw in hits:
                    zf.writestr(raw.name, raw.content)
        except (OSError, zipfile.LargeZipFile) as exc:
            raise ArchiveBuildFailure(f"Could not pack archive: {exc}") from exc

        result.content = buffer.getvalue()
        logger.info(
            "Built archive for bucket %s: %d found, %d missing",
            bucket, len(result.found), len(result.missing),
        )
        return result

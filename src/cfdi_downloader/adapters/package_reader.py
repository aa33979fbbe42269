"""
Package reader — list the XML documents inside a downloaded zip package.

Implements the PackageExtractor port with the standard zipfile module.
Members are returned in archive order; directories and non-XML members
(the metadata .txt of a Metadata request, stray files) are skipped.
"""

from __future__ import annotations

import io
import zipfile

import structlog

from cfdi_downloader.domain.errors import InvalidPackageFormatError

log = structlog.get_logger()


class ZipPackageReader:
    """Read ``.xml`` members (case-insensitive) from a zip package."""

    def extract(self, package: bytes) -> list[tuple[str, bytes]]:
        try:
            with zipfile.ZipFile(io.BytesIO(package)) as archive:
                members = [
                    (info.filename, archive.read(info))
                    for info in archive.infolist()
                    if not info.is_dir() and info.filename.lower().endswith(".xml")
                ]
        except zipfile.BadZipFile as e:
            raise InvalidPackageFormatError(f"Package is not a readable zip archive: {e}") from e
        log.debug("package.extracted", documents=len(members))
        return members

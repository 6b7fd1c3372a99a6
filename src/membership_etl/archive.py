"""membership_etl.archive

Keep a copy of every uploaded member spreadsheet.

SupabaseStorageArchiver uploads to a Storage bucket; LocalArchiver writes
under a directory (tests / offline runs); NullArchiver does nothing.
"""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import requests

ARCHIVE_PREFIX = "imports"

_XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


class ArchiveError(Exception):
    """Raised when an upload to the archive fails."""


class Archiver(Protocol):
    def archive(self, run_id: str, filename: str, content: bytes) -> str:
        """Return the object path (or local path) written."""
        ...


def _object_path(run_id: str, filename: str) -> str:
    return f"{ARCHIVE_PREFIX}/{run_id}/{Path(filename).name}"


def _content_type(filename: str) -> str:
    if filename.lower().endswith(".xlsx"):
        return _XLSX_MIME
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


@dataclass
class SupabaseStorageArchiver:
    """Upload source files to a Supabase Storage bucket."""

    base_url: str
    service_key: str
    bucket: str
    timeout: int = 60
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def archive(self, run_id: str, filename: str, content: bytes) -> str:
        obj_path = _object_path(run_id, filename)
        url = f"{self.base_url.rstrip('/')}/storage/v1/object/{self.bucket}/{obj_path}"
        headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": _content_type(filename),
            "x-upsert": "true",
        }
        try:
            resp = self.session.post(url, data=content, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ArchiveError(f"upload failed: {exc}") from exc
        if resp.status_code >= 400:
            raise ArchiveError(f"upload failed: HTTP {resp.status_code} {resp.text[:200]}")
        return f"{self.bucket}/{obj_path}"


@dataclass
class LocalArchiver:
    """Write source files under a local directory."""

    base_dir: Path

    def archive(self, run_id: str, filename: str, content: bytes) -> str:
        dest = self.base_dir / _object_path(run_id, filename)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return str(dest)


@dataclass
class NullArchiver:
    """No-op archiver."""

    def archive(self, run_id: str, filename: str, content: bytes) -> str:
        return f"null://{_object_path(run_id, filename)}"

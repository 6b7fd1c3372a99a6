"""Unit tests for membership_etl.archive."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from membership_etl.archive import (
    ArchiveError,
    LocalArchiver,
    NullArchiver,
    SupabaseStorageArchiver,
)


class TestLocalArchiver:
    def test_writes_under_run_prefix(self, tmp_path):
        path = LocalArchiver(base_dir=tmp_path).archive("run-1", "uploads/SOOOP.xlsx", b"xlsx")
        assert (tmp_path / "imports" / "run-1" / "SOOOP.xlsx").read_bytes() == b"xlsx"
        assert path.endswith("SOOOP.xlsx")


class TestNullArchiver:
    def test_returns_placeholder(self):
        assert NullArchiver().archive("run-1", "m.csv", b"") == "null://imports/run-1/m.csv"


class TestSupabaseStorageArchiver:
    def _archiver(self, session):
        return SupabaseStorageArchiver(
            base_url="https://proj.supabase.co/",
            service_key="k",
            bucket="member-imports",
            session=session,
        )

    def test_uploads_with_upsert(self):
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=200)
        path = self._archiver(session).archive("run-1", "SOOOP.xlsx", b"data")

        assert path == "member-imports/imports/run-1/SOOOP.xlsx"
        args, kwargs = session.post.call_args
        assert args[0] == (
            "https://proj.supabase.co/storage/v1/object/member-imports/imports/run-1/SOOOP.xlsx"
        )
        assert kwargs["data"] == b"data"
        assert kwargs["headers"]["x-upsert"] == "true"
        assert kwargs["headers"]["Content-Type"].startswith("application/vnd.openxmlformats")

    def test_http_error(self):
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=403, text="forbidden")
        with pytest.raises(ArchiveError, match="HTTP 403"):
            self._archiver(session).archive("run-1", "m.csv", b"")

    def test_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("timed out")
        with pytest.raises(ArchiveError, match="timed out"):
            self._archiver(session).archive("run-1", "m.csv", b"")

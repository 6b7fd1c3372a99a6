"""CLI tests: click CliRunner with the store and identity provider swapped for fakes."""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from click.testing import CliRunner

import membership_etl.cli as cli
from membership_etl.store import StoreError

HEADERS = ["Timestamp", "Username", "Name", "Gender"]
ROWS = [
    [45000, "one@x.com", "One", "m"],
    [45001, "ONE@x.com", "One Again", "m"],
    [45002, "three@x.com", None, "f"],
]


@pytest.fixture
def workbook(tmp_path, make_xlsx):
    path = tmp_path / "SOOOP.xlsx"
    path.write_bytes(make_xlsx(HEADERS, ROWS))
    return path


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://proj.supabase.co")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")


@pytest.fixture
def wired(monkeypatch, tmp_path, store, identity_provider):
    """Route the CLI to the in-memory fakes and run it inside tmp_path."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "PostgresStore", SimpleNamespace(connect=lambda dsn: store))
    monkeypatch.setattr(cli, "SupabaseIdentityProvider", lambda **kwargs: identity_provider)
    return store, identity_provider


def _invoke(*args: str):
    return CliRunner().invoke(cli.main, list(args))


# ---------------------------------------------------------------------------
# inspect_sheet
# ---------------------------------------------------------------------------

class TestInspectSheet:
    def test_prints_headers_and_resolution(self, workbook):
        result = _invoke("--mode", "inspect_sheet", "--file", str(workbook), "--run-id", "r1")
        assert result.exit_code == 0, result.output
        assert "Headers: ['Timestamp', 'Username', 'Name', 'Gender']" in result.output
        assert "Total Rows: 3" in result.output
        assert "'Username'" in result.output
        assert "cnic" in result.output and "MISSING" in result.output

    def test_no_file(self):
        result = _invoke("--mode", "inspect_sheet", "--run-id", "r1")
        assert result.exit_code == 1
        assert "FATAL: No file provided" in result.output

    def test_bad_column_map(self, workbook, tmp_path):
        bad = tmp_path / "bad.yml"
        bad.write_text("fields: {}\n", encoding="utf-8")
        result = _invoke(
            "--mode", "inspect_sheet", "--file", str(workbook), "--column-map", str(bad)
        )
        assert result.exit_code == 1
        assert "FATAL: column map" in result.output


# ---------------------------------------------------------------------------
# member_import
# ---------------------------------------------------------------------------

class TestMemberImport:
    def test_requires_dsn(self, workbook, env):
        result = _invoke("--file", str(workbook))
        assert result.exit_code == 1
        assert "--db-dsn is required" in result.output

    def test_requires_env_credentials(self, workbook, monkeypatch):
        monkeypatch.delenv("SUPABASE_URL", raising=False)
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
        result = _invoke("--file", str(workbook), "--db-dsn", "postgresql://x")
        assert result.exit_code == 1
        assert "SUPABASE_URL" in result.output

    def test_full_run(self, workbook, env, wired, tmp_path):
        store, identity_provider = wired
        result = _invoke(
            "--file", str(workbook),
            "--db-dsn", "postgresql://x",
            "--run-id", "cli-run",
            "--archive-local-dir", str(tmp_path / "archive"),
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--performed-by", "admin@society.org",
        )
        assert result.exit_code == 0, result.output
        assert "success : 1" in result.output
        assert "Row 4: Missing Name or Email." in result.output
        assert [p["email"] for p in store.profiles] == ["one@x.com"]
        assert store.closed
        assert (tmp_path / "archive" / "imports" / "cli-run" / "SOOOP.xlsx").exists()
        assert (tmp_path / "rejects.csv").exists()

        report = json.loads((tmp_path / "artifacts" / "reports" / "cli-run.json").read_text())
        assert report["result"]["success"] == 1
        assert report["result"]["skipped"] == 1
        assert report["column_map_version"] == "builtin"

    def test_dry_run(self, workbook, env, wired):
        store, identity_provider = wired
        result = _invoke("--file", str(workbook), "--db-dsn", "postgresql://x", "--dry-run")
        assert result.exit_code == 0, result.output
        assert identity_provider.created == []
        assert store.profiles == []
        assert store.tables["audit_logs"] == {}

    def test_empty_sheet_is_fatal(self, tmp_path, env, wired, make_xlsx):
        path = tmp_path / "empty.xlsx"
        path.write_bytes(make_xlsx(["Email", "Name"], []))
        result = _invoke("--file", str(path), "--db-dsn", "postgresql://x")
        assert result.exit_code == 1
        assert "FATAL: Sheet contains no data rows" in result.output

    def test_seed_read_failure_is_fatal(self, workbook, env, wired):
        store, _ = wired

        def broken(*args, **kwargs):
            raise StoreError("relation \"profiles\" does not exist")

        store.bulk_read = broken
        result = _invoke("--file", str(workbook), "--db-dsn", "postgresql://x")
        assert result.exit_code == 1
        assert "could not read existing members" in result.output
        assert store.closed

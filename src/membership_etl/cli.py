"""membership_etl.cli

Member import CLI.

  membership-import --mode member_import --file SOOOP.xlsx --db-dsn ...
  membership-import --mode inspect_sheet --file SOOOP.xlsx

Credentials are read from the environment variables named by
--supabase-url-env / --service-key-env, never from arguments.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click

from membership_etl.archive import LocalArchiver, NullArchiver, SupabaseStorageArchiver
from membership_etl.column_map import (
    KNOWN_FIELDS,
    ColumnMap,
    ColumnMapValidationError,
    default_column_map,
    load_column_map,
)
from membership_etl.identity import DEFAULT_PASSWORD_PREFIX, SupabaseIdentityProvider
from membership_etl.import_members import (
    ImportInputError,
    MemberImporter,
    build_import_report,
    import_member_file,
)
from membership_etl.sheet import SheetFormatError, read_sheet, resolve_header
from membership_etl.shared import RejectWriter, write_run_report
from membership_etl.store import PostgresStore, StoreError


def _load_column_map_or_exit(column_map_path: str | None, run_id: str) -> ColumnMap:
    if not column_map_path:
        return default_column_map()
    try:
        return load_column_map(Path(column_map_path))
    except (ColumnMapValidationError, FileNotFoundError) as exc:
        click.echo(f"[{run_id}] FATAL: column map {column_map_path}: {exc}", err=True)
        sys.exit(1)


def _read_file_or_exit(file_path: str | None, run_id: str) -> bytes:
    if not file_path:
        click.echo(f"[{run_id}] FATAL: No file provided (--file)", err=True)
        sys.exit(1)
    path = Path(file_path)
    if not path.is_file():
        click.echo(f"[{run_id}] FATAL: file not found: {file_path}", err=True)
        sys.exit(1)
    return path.read_bytes()


def _inspect_sheet(content: bytes, filename: str, column_map: ColumnMap, run_id: str) -> None:
    try:
        rows = read_sheet(content, filename)
    except SheetFormatError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    if not rows:
        click.echo(f"[{run_id}] Sheet contains no data rows")
        return
    headers = rows[0].headers
    click.echo(f"Headers: {headers}")
    click.echo(f"First Row: {rows[0].as_text_dict()}")
    click.echo(f"Total Rows: {len(rows)}")
    click.echo("")
    click.echo("Field resolution:")
    for name in sorted(KNOWN_FIELDS):
        header = resolve_header(headers, column_map.aliases(name))
        click.echo(f"  {name:<26}: {header!r}" if header else f"  {name:<26}: MISSING")


@click.command()
@click.option(
    "--mode",
    default="member_import",
    type=click.Choice(["member_import", "inspect_sheet"]),
    show_default=True,
    help="Run mode",
)
@click.option("--file", "file_path", default=None, type=click.Path(), help="Input .xlsx/.xlsm/.csv")
@click.option("--db-dsn", default=None, help="[member_import] PostgreSQL DSN of the member store")
@click.option("--supabase-url-env", default="SUPABASE_URL", show_default=True, help="[member_import] Env var name holding the Supabase project URL")
@click.option("--service-key-env", default="SUPABASE_SERVICE_ROLE_KEY", show_default=True, help="[member_import] Env var name holding the service-role key")
@click.option("--column-map", "column_map_path", default=None, type=click.Path(), help="YAML header-alias override file")
@click.option("--password-prefix", default=DEFAULT_PASSWORD_PREFIX, show_default=True, help="[member_import] Prefix of generated temporary passwords")
@click.option("--performed-by", default="system", show_default=True, help="[member_import] Actor recorded on the audit entry")
@click.option("--archive-bucket", default=None, help="[member_import] Storage bucket to archive the source file into")
@click.option("--archive-local-dir", default=None, type=click.Path(), help="[member_import] Archive the source file to a local dir instead")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/member_import_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    file_path: str | None,
    db_dsn: str | None,
    supabase_url_env: str,
    service_key_env: str,
    column_map_path: str | None,
    password_prefix: str,
    performed_by: str,
    archive_bucket: str | None,
    archive_local_dir: str | None,
    dry_run: bool,
    rejects_path: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Bulk member import CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    column_map = _load_column_map_or_exit(column_map_path, run_id)
    content = _read_file_or_exit(file_path, run_id)
    filename = Path(file_path).name  # type: ignore[arg-type]

    if mode == "inspect_sheet":
        _inspect_sheet(content, filename, column_map, run_id)
        return

    if not db_dsn:
        click.echo(f"[{run_id}] FATAL: --db-dsn is required for member_import", err=True)
        sys.exit(1)

    # Credentials from env only
    supabase_url = os.environ.get(supabase_url_env, "")
    service_key = os.environ.get(service_key_env, "")
    if not supabase_url or not service_key:
        click.echo(
            f"[{run_id}] FATAL: env vars {supabase_url_env} and {service_key_env} must be set",
            err=True,
        )
        sys.exit(1)

    if archive_local_dir:
        archiver = LocalArchiver(base_dir=Path(archive_local_dir))
    elif archive_bucket:
        archiver = SupabaseStorageArchiver(
            base_url=supabase_url, service_key=service_key, bucket=archive_bucket
        )
    else:
        archiver = NullArchiver()

    click.echo(f"[{run_id}] Starting {mode} run file={filename} (dry_run={dry_run})")

    try:
        store = PostgresStore.connect(db_dsn)
    except StoreError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    rejects = RejectWriter(Path(rejects_path))
    identity_provider = SupabaseIdentityProvider(base_url=supabase_url, service_key=service_key)
    importer = MemberImporter(
        identity_provider,
        store,
        column_map=column_map,
        password_prefix=password_prefix,
        rejects=rejects,
        dry_run=dry_run,
    )
    try:
        result = import_member_file(
            content, filename, importer, store,
            run_id=run_id,
            archiver=archiver,
            performed_by=performed_by,
        )
    except ImportInputError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    except StoreError as exc:
        click.echo(f"[{run_id}] FATAL: could not read existing members: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()
        store.close()

    click.echo(build_import_report(result, dry_run=dry_run))
    if rejects.count:
        click.echo(f"[{run_id}] {rejects.count} rejected row(s) written to {rejects_path}")

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {
            "file": str(file_path),
            "column_map_version": column_map.version,
            "column_map_hash": column_map.yaml_hash,
        },
        result,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")


if __name__ == "__main__":
    main()

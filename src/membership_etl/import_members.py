"""membership_etl.import_members

Bulk member import: spreadsheet rows → identity + approved profile.

Processing order per row (strictly sequential, spreadsheet order):
  1.  Extract email / full name / CNIC and the remaining profile fields
      through the column map.  Missing email or name → FAILED
      ("Row {n}: Missing Name or Email.").
  2.  De-duplicate against the index seeded from every profile email in
      the store.  Hit → SKIPPED, silently.
  3.  Create a pre-verified identity with a temporary password.  Provider
      says "already registered" → SKIPPED (and indexed); other error → FAILED.
  4.  Derive and upsert the profile (approved, one-year subscription).
      Upsert failure → delete the new identity, then FAILED.  A failed
      delete is recorded as a warning: the identity is orphaned.
  5.  DONE: count success, index the email.

Row numbers in messages are 1-based sheet rows: data index + 2 (header).
Nothing row-level escapes run(); only missing input or an empty sheet
raise ImportInputError.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from dateutil.relativedelta import relativedelta

from membership_etl.archive import Archiver, NullArchiver
from membership_etl.column_map import ColumnMap, default_column_map
from membership_etl.identity import (
    DEFAULT_PASSWORD_PREFIX,
    IdentityAlreadyRegisteredError,
    IdentityProvider,
    generate_temporary_password,
)
from membership_etl.normalize import (
    classify_membership,
    coerce_date,
    coerce_timestamp,
    format_iso_utc,
    normalize_blood_group,
    normalize_cnic,
    normalize_email,
    normalize_gender,
    normalize_phone,
    normalize_space,
)
from membership_etl.sheet import (
    MISSING,
    ImportRow,
    SheetFormatError,
    read_sheet,
    resolve_field,
    resolve_text,
)
from membership_etl.shared import DeduplicationIndex, ImportResult, NullRejectWriter
from membership_etl.store import AUDIT_LOGS_TABLE, PROFILES_TABLE, RelationalStore

log = logging.getLogger(__name__)

AUDIT_ACTION = "import_members"
IMPORTED_MEMBERSHIP_STATUS = "approved"
SUBSCRIPTION_PERIOD = relativedelta(years=1)

# Data index 0 is sheet row 2
HEADER_ROW_OFFSET = 2


# ---------------------------------------------------------------------------
# Exceptions / states
# ---------------------------------------------------------------------------

class ImportInputError(Exception):
    """Raised when the whole run cannot start: no file, unreadable or empty sheet."""


class RowState(enum.Enum):
    START = "start"
    EXTRACTED = "extracted"
    VALIDATED = "validated"
    IDENTITY_CREATED = "identity_created"
    PROFILE_PERSISTED = "profile_persisted"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Candidate record
# ---------------------------------------------------------------------------

@dataclass
class MemberRecord:
    """Normalized projection of one ImportRow."""

    email: str
    full_name: str
    cnic: str | None = None
    father_name: str | None = None
    contact_number: str | None = None
    gender: str | None = None
    date_of_birth: date | None = None
    membership_type_raw: str | None = None
    created_at_raw: Any = None
    qualification: str | None = None
    city: str | None = None
    province: str | None = None
    designation: str | None = None
    institution: str | None = None
    residential_address: str | None = None
    blood_group: str | None = None
    transaction_id: str | None = None


def _raw_value(row: ImportRow, aliases: Sequence[str]) -> Any:
    cell = resolve_field(row, aliases)
    if cell is MISSING or cell.is_blank:  # type: ignore[union-attr]
        return None
    return cell.value  # type: ignore[union-attr]


def extract_record(row: ImportRow, column_map: ColumnMap) -> MemberRecord | None:
    """Project *row* onto a MemberRecord; None when email or name is absent/blank."""
    email = resolve_text(row, column_map.aliases("email"))
    full_name = normalize_space(resolve_text(row, column_map.aliases("full_name")))
    if not email or not full_name:
        return None

    def text(name: str) -> str | None:
        return normalize_space(resolve_text(row, column_map.aliases(name)))

    return MemberRecord(
        email=email,
        full_name=full_name,
        cnic=normalize_cnic(resolve_text(row, column_map.aliases("cnic"))),
        father_name=text("father_name"),
        contact_number=normalize_phone(resolve_text(row, column_map.aliases("contact_number"))),
        gender=text("gender"),
        date_of_birth=coerce_date(_raw_value(row, column_map.aliases("date_of_birth"))),
        membership_type_raw=text("membership_type"),
        created_at_raw=_raw_value(row, column_map.aliases("created_at")),
        qualification=text("qualification"),
        city=text("city"),
        province=text("province"),
        designation=text("designation"),
        institution=text("postgraduate_institution") or text("college_attended"),
        residential_address=text("residential_address"),
        blood_group=normalize_blood_group(resolve_text(row, column_map.aliases("blood_group"))),
        transaction_id=text("transaction_id"),
    )


def build_profile(record: MemberRecord, identity_id: str, now: datetime) -> dict[str, Any]:
    """Profile row for an imported member.

    Imported members skip review: status is forced to approved and the
    subscription runs one year from *now*, whatever the sheet says.
    """
    role, membership_type = classify_membership(record.membership_type_raw)
    now_iso = format_iso_utc(now)
    return {
        "id": identity_id,
        "email": normalize_email(record.email),
        "full_name": record.full_name,
        "father_name": record.father_name,
        "cnic": record.cnic,
        "contact_number": record.contact_number,
        "gender": normalize_gender(record.gender),
        "date_of_birth": record.date_of_birth,
        "qualification": record.qualification,
        "city": record.city,
        "province": record.province,
        "designation": record.designation,
        "institution": record.institution,
        "residential_address": record.residential_address,
        "blood_group": record.blood_group,
        "transaction_id": record.transaction_id,
        "membership_type": membership_type,
        "membership_status": IMPORTED_MEMBERSHIP_STATUS,
        "role": role,
        "is_active": True,
        "subscription_start_date": now_iso,
        "subscription_end_date": format_iso_utc(now + SUBSCRIPTION_PERIOD),
        "created_at": coerce_timestamp(record.created_at_raw) or now_iso,
        "updated_at": now_iso,
    }


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemberImporter:
    """Drives the per-row pipeline for one import call.

    The de-duplication index and result live only for the duration of
    run(); the importer holds no state between calls.
    """

    def __init__(
        self,
        identity_provider: IdentityProvider,
        store: RelationalStore,
        *,
        column_map: ColumnMap | None = None,
        password_prefix: str = DEFAULT_PASSWORD_PREFIX,
        password_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        rejects: Any = None,
        dry_run: bool = False,
    ) -> None:
        self._identity = identity_provider
        self._store = store
        self.column_map = column_map or default_column_map()
        self._password_factory = password_factory or (
            lambda: generate_temporary_password(password_prefix)
        )
        self._clock = clock
        self._rejects = rejects or NullRejectWriter()
        self.dry_run = dry_run

    def seed_index(self) -> DeduplicationIndex:
        """One bulk read of every known profile email."""
        rows = self._store.bulk_read(PROFILES_TABLE, ["email"])
        index = DeduplicationIndex(r.get("email") for r in rows)
        log.info("Seeded de-duplication index with %d email(s)", len(index))
        return index

    def run(
        self,
        rows: Sequence[ImportRow],
        index: DeduplicationIndex | None = None,
    ) -> ImportResult:
        """Import *rows* in order.  Seeds the index unless one is passed in."""
        if not rows:
            raise ImportInputError("Sheet contains no data rows")

        if index is None:
            index = self.seed_index()
        result = ImportResult(total=len(rows), dry_run=self.dry_run)
        for idx, row in enumerate(rows):
            self._process_row(row, idx + HEADER_ROW_OFFSET, index, result)
        log.info(
            "Import finished: %d success, %d skipped, %d failed of %d",
            result.success, result.skipped, result.failed, result.total,
        )
        return result

    def _process_row(
        self,
        row: ImportRow,
        row_num: int,
        index: DeduplicationIndex,
        result: ImportResult,
    ) -> RowState:
        email: str | None = None
        try:
            # START → EXTRACTED
            record = extract_record(row, self.column_map)
            if record is None:
                return self._fail(row, f"Row {row_num}: Missing Name or Email.", result)
            email = record.email

            if email in index:
                log.debug("Row %d: %s already registered; skipping", row_num, email)
                result.skipped += 1
                return RowState.SKIPPED

            # VALIDATED
            if self.dry_run:
                result.success += 1
                index.add(email)
                return RowState.DONE

            # VALIDATED → IDENTITY_CREATED
            try:
                identity = self._identity.create_identity(
                    email, self._password_factory(), {"full_name": record.full_name}
                )
            except IdentityAlreadyRegisteredError:
                log.debug("Row %d: provider reports %s already registered", row_num, email)
                result.skipped += 1
                index.add(email)
                return RowState.SKIPPED

            # IDENTITY_CREATED → PROFILE_PERSISTED
            try:
                profile = build_profile(record, identity.id, self._clock())
                self._store.upsert(PROFILES_TABLE, profile)
            except Exception as exc:
                self._compensate(identity.id, row_num, email, result)
                return self._fail(
                    row,
                    f"Row {row_num} ({email}): Profile creation failed: {exc}",
                    result,
                )

            # PROFILE_PERSISTED → DONE
            result.success += 1
            index.add(email)
            log.info("Row %d: imported %s", row_num, email)
            return RowState.DONE

        except Exception as exc:
            prefix = f"Row {row_num} ({email})" if email else f"Row {row_num}"
            return self._fail(row, f"{prefix}: {exc}", result)

    def _compensate(
        self,
        identity_id: str,
        row_num: int,
        email: str,
        result: ImportResult,
    ) -> None:
        try:
            self._identity.delete_identity(identity_id)
        except Exception as exc:
            message = (
                f"Row {row_num} ({email}): rollback of identity {identity_id} failed: {exc}"
            )
            log.warning(message)
            result.warnings.append(message)

    def _fail(self, row: ImportRow, message: str, result: ImportResult) -> RowState:
        log.warning(message)
        result.failed += 1
        result.errors.append(message)
        self._rejects.write(row.as_text_dict(), message)
        return RowState.FAILED


# ---------------------------------------------------------------------------
# File-level entry point
# ---------------------------------------------------------------------------

def record_audit(
    store: RelationalStore,
    details: dict[str, Any],
    performed_by: str,
    action: str = AUDIT_ACTION,
) -> None:
    store.insert(
        AUDIT_LOGS_TABLE,
        {"action": action, "details": details, "performed_by": performed_by},
    )


def import_member_file(
    content: bytes | None,
    filename: str | None,
    importer: MemberImporter,
    store: RelationalStore,
    *,
    run_id: str,
    archiver: Archiver | None = None,
    performed_by: str = "system",
) -> ImportResult:
    """Parse an uploaded spreadsheet and import its rows.

    Raises ImportInputError before any row is processed when there is no
    file, the file cannot be parsed, or the first sheet has no data rows.
    """
    if not content or not filename:
        raise ImportInputError("No file provided")
    try:
        rows = read_sheet(content, filename)
    except SheetFormatError as exc:
        raise ImportInputError(str(exc)) from exc
    if not rows:
        raise ImportInputError("Sheet contains no data rows")

    # Seed before archiving: a failed read aborts with nothing written
    index = importer.seed_index()

    archive_path: str | None = None
    archive_warning: str | None = None
    if not importer.dry_run:
        try:
            archive_path = (archiver or NullArchiver()).archive(run_id, filename, content)
        except Exception as exc:
            archive_warning = f"Source archive failed: {exc}"
            log.warning(archive_warning)

    result = importer.run(rows, index=index)
    if archive_warning:
        result.warnings.append(archive_warning)

    if not importer.dry_run:
        details = {
            "run_id": run_id,
            "file": filename,
            "archive_path": archive_path,
            "success": result.success,
            "failed": result.failed,
            "skipped": result.skipped,
            "total": result.total,
        }
        try:
            record_audit(store, details, performed_by)
        except Exception as exc:
            message = f"Audit log write failed: {exc}"
            log.warning(message)
            result.warnings.append(message)
    return result


# ---------------------------------------------------------------------------
# Report builder
# ---------------------------------------------------------------------------

def build_import_report(result: ImportResult, dry_run: bool) -> str:
    lines = [
        "=== Member Import Run Report ===",
        f"dry_run : {dry_run}",
        "",
        "--- Rows ---",
        f"total   : {result.total}",
        f"success : {result.success}",
        f"skipped : {result.skipped}",
        f"failed  : {result.failed}",
    ]
    if result.errors:
        lines += ["", "--- Errors (first 10) ---"]
        lines += [f"  {e}" for e in result.errors[:10]]
        if len(result.errors) > 10:
            lines.append(f"  ... {len(result.errors) - 10} more")
    if result.warnings:
        lines += ["", "--- Warnings ---"]
        lines += [f"  {w}" for w in result.warnings]
    return "\n".join(lines)

"""membership_etl.shared

Run-scoped accumulators and output writers shared by the importer and the
CLI: ImportResult, DeduplicationIndex, RejectWriter and the JSON run report.
"""

from __future__ import annotations

import csv
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from membership_etl.normalize import normalize_email


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    """Summary of one import call.

    errors holds one human-readable line per failed row; warnings holds
    operationally relevant facts that did not fail a row (orphaned
    identities after a failed rollback, audit/archive write failures).
    """

    success: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "dry_run": self.dry_run,
        }


# ---------------------------------------------------------------------------
# DeduplicationIndex
# ---------------------------------------------------------------------------

class DeduplicationIndex:
    """Grow-only set of normalized (trimmed, lower-cased) emails."""

    def __init__(self, emails: Iterable[str | None] = ()) -> None:
        self._emails: set[str] = set()
        for email in emails:
            self.add(email)

    def add(self, email: str | None) -> None:
        key = normalize_email(email)
        if key is not None:
            self._emails.add(key)

    def __contains__(self, email: object) -> bool:
        if not isinstance(email, str):
            return False
        return normalize_email(email) in self._emails

    def __len__(self) -> int:
        return len(self._emails)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

REJECT_REASON_COLUMN = "_reject_reason"


class RejectWriter:
    """Lazy-open CSV writer for rejected rows.

    Nothing is created until the first reject.  The header is fixed by that
    row; columns first seen later are dropped.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer: csv.DictWriter | None = None
        self.count = 0

    def _open(self, columns: list[str]) -> csv.DictWriter:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self._path, "w", newline="", encoding="utf-8")
        writer = csv.DictWriter(
            self._fh, fieldnames=[*columns, REJECT_REASON_COLUMN], extrasaction="ignore"
        )
        writer.writeheader()
        return writer

    def write(self, row: dict[str, str], reason: str) -> None:
        if self._writer is None:
            self._writer = self._open(list(row))
        self._writer.writerow({**row, REJECT_REASON_COLUMN: reason})
        self._fh.flush()  # type: ignore[union-attr]
        self.count += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._writer = None


class NullRejectWriter:
    """Discards rejects; used when no rejects file is wanted."""

    count = 0

    def write(self, row: dict[str, str], reason: str) -> None:
        return None

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str | None],
    result: ImportResult,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "result": result.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path

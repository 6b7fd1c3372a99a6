"""membership_etl.column_map

Logical member fields and the spreadsheet header aliases that feed them.

The built-in map covers the society's registration-form exports.  A YAML
file can override or extend it per upload:

    version: "2025-01"
    fields:
      email: ["Username", "Email Address", "Email", "e-mail"]
      cnic: ["CNIC Number", "CNIC", "National ID"]

Aliases are listed in priority order; see membership_etl.sheet.resolve_field.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_FIELDS = ("email", "full_name")
REQUIRED_YAML_KEYS = frozenset({"version", "fields"})

DEFAULT_ALIASES: dict[str, tuple[str, ...]] = {
    "email": ("Email Address", "Email", "Username", "e-mail"),
    "full_name": ("Name", "Full Name", "Member Name"),
    "cnic": ("CNIC Number", "CNIC", "National ID"),
    "father_name": ("Father's Name", "Father Name"),
    "contact_number": ("Contact Number", "Phone", "Mobile"),
    "gender": ("Gender", "Sex"),
    "date_of_birth": ("Date of Birth", "DOB"),
    "membership_type": ("Membership Type", "Membership"),
    "created_at": ("Timestamp", "Submission Date", "Registration Date"),
    "qualification": ("Qualification",),
    "city": ("Employement City", "Employment City", "City"),
    "province": ("Province",),
    "designation": ("Designation",),
    "postgraduate_institution": ("Postgraduate Institution",),
    "college_attended": ("College Attended for Graduation", "College Attended"),
    "residential_address": ("Residential Address", "Address"),
    "blood_group": ("Blood Group",),
    "transaction_id": ("Transaction ID",),
}

KNOWN_FIELDS = frozenset(DEFAULT_ALIASES)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ColumnMapValidationError(ValueError):
    """Raised when a column-map YAML file fails validation."""


# ---------------------------------------------------------------------------
# Data class
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnMap:
    """Field → alias lists, plus provenance of any override file."""

    fields: dict[str, tuple[str, ...]] = field(default_factory=lambda: dict(DEFAULT_ALIASES))
    version: str = "builtin"
    yaml_hash: str | None = None

    def aliases(self, name: str) -> tuple[str, ...]:
        return self.fields.get(name, ())


def default_column_map() -> ColumnMap:
    return ColumnMap()


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def validate_column_map(data: Any) -> None:
    """Raise ColumnMapValidationError when *data* is not a valid override."""
    if not isinstance(data, dict):
        raise ColumnMapValidationError("column map must be a YAML mapping")

    missing = REQUIRED_YAML_KEYS - set(data)
    if missing:
        raise ColumnMapValidationError(f"missing required keys: {sorted(missing)}")

    fields = data["fields"]
    if not isinstance(fields, dict) or not fields:
        raise ColumnMapValidationError("'fields' must be a non-empty mapping")

    unknown = set(fields) - KNOWN_FIELDS
    if unknown:
        raise ColumnMapValidationError(f"unknown fields: {sorted(unknown)}")

    for name, aliases in fields.items():
        if (
            not isinstance(aliases, list)
            or not aliases
            or not all(isinstance(a, str) and a.strip() for a in aliases)
        ):
            raise ColumnMapValidationError(
                f"field {name!r} must be a non-empty list of non-blank strings"
            )


def load_column_map(yaml_path: Path) -> ColumnMap:
    """Load a YAML override and merge it over the built-in aliases.

    Raises:
        ColumnMapValidationError: If the file content is invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ColumnMapValidationError(f"invalid YAML: {exc}") from exc
    validate_column_map(data)

    merged = dict(DEFAULT_ALIASES)
    for name, aliases in data["fields"].items():
        merged[name] = tuple(a.strip() for a in aliases)

    for name in REQUIRED_FIELDS:
        if not merged.get(name):
            raise ColumnMapValidationError(f"required field {name!r} has no aliases")

    return ColumnMap(
        fields=merged,
        version=str(data["version"]),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )

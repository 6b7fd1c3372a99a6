"""Normalization functions for member spreadsheet ingestion.

Text normalizers accept str | None and return str | None.  The coercion
helpers accept any raw cell value and never raise.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from dateutil import parser as dateparser

# Spreadsheet serial day number of 1970-01-01 (1900 date system)
SERIAL_EPOCH_OFFSET = 25569
SECONDS_PER_DAY = 86400

_NUMERIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?$")
_SCIENTIFIC_RE = re.compile(r"^[+-]?\d+(\.\d+)?[eE][+-]?\d+$")
_YEAR_RE = re.compile(r"^(19|20)\d{2}$")
_GMT_OFFSET_RE = re.compile(r"\b(?:GMT|UTC)\s*([+-])(\d{1,2})(?::?(\d{2}))?\b", re.IGNORECASE)
_BLOOD_GROUP_RE = re.compile(r"(?<![a-z])(ab|a|b|o)\s*(\+|-|pos|neg)")
_UNIX_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: expand_scientific
# ---------------------------------------------------------------------------

def expand_scientific(value: str | None) -> str | None:
    """Expand '3.52014E+12' style values back to a plain integer string.

    Spreadsheets silently turn long digit strings (CNIC, phone numbers) into
    floats; the precision already lost cannot be recovered.
    """
    v = trim(value)
    if v is None:
        return None
    if not _SCIENTIFIC_RE.match(v):
        return v
    try:
        return f"{Decimal(v):.0f}"
    except InvalidOperation:
        return v


# ---------------------------------------------------------------------------
# Rule 5: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: str | None) -> str | None:
    """Return a local-format mobile number or None.

    Handles '3259129090', '0305 4337799', '0308-6214848', '+92 300 1234567'.
    Keeps digits only; drops a leading 92 country code when more than ten
    digits remain; prefixes '0' onto bare ten-digit numbers.
    """
    v = expand_scientific(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if digits.startswith("92") and len(digits) > 10:
        return digits[2:]
    if len(digits) == 10 and not digits.startswith("0"):
        return "0" + digits
    return digits or v


# ---------------------------------------------------------------------------
# Rule 6: normalize_cnic
# ---------------------------------------------------------------------------

def normalize_cnic(value: str | None) -> str | None:
    """Format a 13-digit national ID as XXXXX-XXXXXXX-X.

    Values that do not reduce to exactly 13 digits are returned trimmed.
    """
    v = expand_scientific(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 13:
        return f"{digits[:5]}-{digits[5:12]}-{digits[12:]}"
    return v


# ---------------------------------------------------------------------------
# Rule 7: normalize_gender
# ---------------------------------------------------------------------------

def normalize_gender(value: str | None) -> str | None:
    """'m…' → 'Male', 'f…' → 'Female'; anything else passes through unchanged."""
    if value is None:
        return None
    key = value.strip().lower()
    if key.startswith("m"):
        return "Male"
    if key.startswith("f"):
        return "Female"
    return value


# ---------------------------------------------------------------------------
# Rule 8: classify_membership
# ---------------------------------------------------------------------------

def classify_membership(value: str | None) -> tuple[str, str]:
    """Return (role, membership_type) inferred from free-text membership type.

    The checks are independent and applied in order: 'student' sets both the
    role and the type, 'associate' and 'life' only overwrite the type.
    """
    role = "member"
    membership_type = "Full Member"
    text = (value or "").lower()
    if "student" in text:
        role = "student"
        membership_type = "Student Member"
    if "associate" in text:
        membership_type = "Associate Member"
    if "life" in text:
        membership_type = "Life Member"
    return role, membership_type


# ---------------------------------------------------------------------------
# Rule 9: coerce_timestamp
# ---------------------------------------------------------------------------

def format_iso_utc(value: datetime) -> str:
    """Serialize as 'YYYY-MM-DDTHH:MM:SS.mmmZ'.  Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def serial_to_datetime(serial: float) -> datetime:
    """Convert a spreadsheet serial day number to an aware UTC datetime.

    Serial 25569 is 1970-01-01T00:00:00Z.  Raises OverflowError or
    ValueError for values outside the datetime range.
    """
    if not math.isfinite(serial):
        raise ValueError(f"non-finite serial date: {serial!r}")
    seconds = (serial - SERIAL_EPOCH_OFFSET) * SECONDS_PER_DAY
    return _UNIX_EPOCH + timedelta(seconds=seconds)


def _iso_offsets(text: str) -> str:
    """Rewrite 'GMT+5' / 'UTC-03:30' as '+05:00' / '-03:30'.

    dateutil reads a signed GMT offset with POSIX semantics (GMT+5 is five
    hours west); form exports mean the opposite.
    """
    def repl(m: re.Match[str]) -> str:
        return f"{m.group(1)}{int(m.group(2)):02d}:{m.group(3) or '00'}"

    return _GMT_OFFSET_RE.sub(repl, text)


def coerce_datetime(value: Any) -> datetime | None:
    """Return an aware UTC datetime for a raw cell value, or None.

    Accepts, in order: native date/datetime values, numeric serial dates,
    bare four-digit year strings (January 1 of that year), other numeric
    strings as serial dates, and strings understood by dateutil.
    """
    try:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return serial_to_datetime(float(value))
        if isinstance(value, str):
            v = trim(value)
            if v is None:
                return None
            if _YEAR_RE.match(v):
                return datetime(int(v), 1, 1, tzinfo=timezone.utc)
            if _NUMERIC_RE.match(v):
                return serial_to_datetime(float(v))
            parsed = dateparser.parse(_iso_offsets(v))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError, TypeError):
        return None
    return None


def coerce_timestamp(value: Any) -> str | None:
    """Return an ISO-8601 UTC timestamp string for a raw cell value, or None."""
    dt = coerce_datetime(value)
    if dt is None:
        return None
    try:
        return format_iso_utc(dt)
    except (ValueError, OverflowError):
        return None


def coerce_date(value: Any) -> date | None:
    """Date portion of coerce_datetime(), or None."""
    dt = coerce_datetime(value)
    return dt.date() if dt is not None else None


# ---------------------------------------------------------------------------
# Rule 10: normalize_blood_group
# ---------------------------------------------------------------------------

def normalize_blood_group(value: str | None) -> str | None:
    """Canonical ABO/Rh group: 'o positive', 'O+ve', 'b neg', 'AB -' → 'O+', 'O+', 'B-', 'AB-'.

    Unrecognized values are returned trimmed and upper-cased.
    """
    v = trim(value)
    if v is None:
        return None
    m = _BLOOD_GROUP_RE.search(v.lower())
    if m is None:
        return v.upper()
    sign = "+" if m.group(2) in ("+", "pos") else "-"
    return f"{m.group(1).upper()}{sign}"

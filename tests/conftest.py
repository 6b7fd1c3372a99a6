"""Shared test fixtures: in-memory identity provider and relational store."""

from __future__ import annotations

import io
import uuid
from typing import Any

import pytest
from openpyxl import Workbook

from membership_etl.identity import (
    Identity,
    IdentityAlreadyRegisteredError,
    IdentityProviderError,
)
from membership_etl.store import StoreError


class FakeIdentityProvider:
    """Identities in a dict; failures injected per email."""

    def __init__(self) -> None:
        self.identities: dict[str, Identity] = {}
        self.created: list[tuple[str, str, dict[str, Any]]] = []
        self.deleted: list[str] = []
        self.create_errors: dict[str, Exception] = {}
        self.fail_delete = False

    def create_identity(self, email: str, credential: str, metadata: dict[str, Any]) -> Identity:
        key = email.strip().lower()
        if key in self.create_errors:
            raise self.create_errors[key]
        if any(i.email.lower() == key for i in self.identities.values()):
            raise IdentityAlreadyRegisteredError(
                "A user with this email address has already been registered",
                status=422,
                error_code="email_exists",
            )
        identity = Identity(id=str(uuid.uuid4()), email=email)
        self.identities[identity.id] = identity
        self.created.append((email, credential, metadata))
        return identity

    def delete_identity(self, identity_id: str) -> None:
        if self.fail_delete:
            raise IdentityProviderError("delete refused", status=500)
        self.identities.pop(identity_id, None)
        self.deleted.append(identity_id)


class FakeStore:
    """Tables as dicts of rows keyed by their conflict key."""

    def __init__(self) -> None:
        self.tables: dict[str, dict[Any, dict[str, Any]]] = {"profiles": {}, "audit_logs": {}}
        self.bulk_reads: list[str] = []
        self.fail_upsert_for: set[str] = set()
        self.fail_insert = False
        self.closed = False

    def bulk_read(self, table, columns, filters=None):
        self.bulk_reads.append(table)
        rows = self.tables.get(table, {}).values()
        return [{c: r.get(c) for c in columns} for r in rows]

    def upsert(self, table, record, conflict_key="id"):
        if (record.get("email") or "").lower() in self.fail_upsert_for:
            raise StoreError('duplicate key value violates unique constraint "profiles_email_key"')
        self.tables.setdefault(table, {})[record[conflict_key]] = dict(record)

    def insert(self, table, record):
        if self.fail_insert:
            raise StoreError("permission denied for table audit_logs")
        rows = self.tables.setdefault(table, {})
        rows[len(rows)] = dict(record)

    def close(self) -> None:
        self.closed = True

    @property
    def profiles(self) -> list[dict[str, Any]]:
        return list(self.tables["profiles"].values())

    def seed_profile(self, email: str, **extra: Any) -> None:
        pid = str(uuid.uuid4())
        self.tables["profiles"][pid] = {"id": pid, "email": email, **extra}


def build_xlsx(headers: list[str], rows: list[list[Any]]) -> bytes:
    """Serialize a single-sheet workbook to bytes."""
    wb = Workbook()
    ws = wb.active
    ws.append(headers)
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


@pytest.fixture
def identity_provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def make_xlsx():
    return build_xlsx

"""membership_etl.identity

Identity Provider interface and the Supabase (GoTrue admin API)
implementation.

Providers report the "already registered" condition as a distinct
exception type.  GoTrue exposes it as error_code 'email_exists' /
'user_already_exists'; older deployments only send a message, so message
matching is confined to this module.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

log = logging.getLogger(__name__)

DEFAULT_PASSWORD_PREFIX = "Member@"

_ALREADY_REGISTERED_CODES = frozenset({"email_exists", "user_already_exists"})
_ALREADY_REGISTERED_PHRASES = ("already registered", "already been registered")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class IdentityProviderError(Exception):
    """Raised when the identity provider rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        error_code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.error_code = error_code


class IdentityAlreadyRegisteredError(IdentityProviderError):
    """Raised by create_identity() when the email already has an identity."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Identity:
    id: str
    email: str


class IdentityProvider(Protocol):
    def create_identity(
        self,
        email: str,
        credential: str,
        metadata: dict[str, Any],
    ) -> Identity:
        """Create a pre-verified identity.

        Raises IdentityAlreadyRegisteredError for a known email and
        IdentityProviderError for anything else.  An error raised after the
        request was accepted (unreadable or id-less success body) does not
        guarantee that no identity was created.
        """
        ...

    def delete_identity(self, identity_id: str) -> None:
        """Delete an identity.  Raises IdentityProviderError on failure."""
        ...


def generate_temporary_password(prefix: str = DEFAULT_PASSWORD_PREFIX) -> str:
    """Fixed prefix + random 4-digit suffix (1000–9999)."""
    return f"{prefix}{secrets.randbelow(9000) + 1000}"


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------

def _error_details(resp: requests.Response) -> tuple[str, str | None]:
    """Return (message, error_code) from a GoTrue error response."""
    try:
        body = resp.json()
    except ValueError:
        return (resp.text or f"HTTP {resp.status_code}").strip(), None
    if not isinstance(body, dict):
        return str(body), None
    message = (
        body.get("msg")
        or body.get("message")
        or body.get("error_description")
        or body.get("error")
        or f"HTTP {resp.status_code}"
    )
    code = body.get("error_code") or body.get("code")
    return str(message), (str(code) if code is not None else None)


def _is_already_registered(message: str, error_code: str | None) -> bool:
    if error_code in _ALREADY_REGISTERED_CODES:
        return True
    lowered = message.lower()
    return any(phrase in lowered for phrase in _ALREADY_REGISTERED_PHRASES)


@dataclass
class SupabaseIdentityProvider:
    """Admin-side user management against a Supabase project.

    Requires the service-role key; never construct this with an anon key.
    """

    base_url: str
    service_key: str
    timeout: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        self.session.headers.update({
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        })

    @property
    def _users_url(self) -> str:
        return f"{self.base_url}/auth/v1/admin/users"

    def create_identity(
        self,
        email: str,
        credential: str,
        metadata: dict[str, Any],
    ) -> Identity:
        payload = {
            "email": email,
            "password": credential,
            "email_confirm": True,
            "user_metadata": metadata,
        }
        try:
            resp = self.session.post(self._users_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise IdentityProviderError(f"create_identity request failed: {exc}") from exc

        if resp.status_code >= 400:
            message, code = _error_details(resp)
            if _is_already_registered(message, code):
                raise IdentityAlreadyRegisteredError(
                    message, status=resp.status_code, error_code=code
                )
            raise IdentityProviderError(message, status=resp.status_code, error_code=code)

        # The user may exist even though the response is unreadable
        try:
            body = resp.json()
        except ValueError as exc:
            raise IdentityProviderError(
                f"create_identity returned HTTP {resp.status_code} with an unreadable body; "
                f"the identity for {email} may already exist",
                status=resp.status_code,
            ) from exc
        user = body.get("user", body) if isinstance(body, dict) else {}
        identity_id = user.get("id") if isinstance(user, dict) else None
        if not identity_id:
            raise IdentityProviderError(
                "create_identity response carried no user id", status=resp.status_code
            )
        return Identity(id=str(identity_id), email=str(user.get("email") or email))

    def delete_identity(self, identity_id: str) -> None:
        try:
            resp = self.session.delete(
                f"{self._users_url}/{identity_id}", timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise IdentityProviderError(f"delete_identity request failed: {exc}") from exc
        if resp.status_code >= 400:
            message, code = _error_details(resp)
            raise IdentityProviderError(message, status=resp.status_code, error_code=code)
        log.debug("Deleted identity %s", identity_id)

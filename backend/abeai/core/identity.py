"""Resolve which stored record a request belongs to."""

import re
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Response

from abeai.config import get_settings

# Identifiers end up inside store keys and cookies
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_.@:\-]{1,128}$")


class InvalidIdentifierError(ValueError):
    """Raised for identifiers that cannot be used as store keys."""


@dataclass(frozen=True)
class Identity:
    """A resolved caller identity."""
    identifier: str
    kind: str  # "user" or "session"
    minted: bool = False

    @property
    def key(self) -> str:
        """Key of the record in the key-value store."""
        return f"{self.kind}:{self.identifier}"


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if not _IDENTIFIER_RE.match(value):
        raise InvalidIdentifierError(f"Invalid identifier: {value[:32]!r}")
    return value


def resolve_identity(
    user_id: Optional[str],
    session_id: Optional[str] = None,
    cookie_session_id: Optional[str] = None,
) -> Identity:
    """
    Derive a stable identity for a request.

    Precedence: explicit user_id, then a session id from the body, then the
    session cookie. Without any of these a new random session id is minted.
    """
    explicit_user = _clean(user_id)
    if explicit_user:
        return Identity(identifier=explicit_user, kind="user")

    session = _clean(session_id)
    if not session and cookie_session_id:
        try:
            session = _clean(cookie_session_id)
        except InvalidIdentifierError:
            # A tampered cookie is treated like no cookie
            session = None
    if session:
        return Identity(identifier=session, kind="session")

    return Identity(identifier=str(uuid.uuid4()), kind="session", minted=True)


def set_session_cookie(response: Response, identity: Identity) -> None:
    """Attach the session cookie for a newly minted session."""
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=identity.identifier,
        max_age=settings.session_cookie_max_age,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )

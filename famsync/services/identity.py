"""Identity provider boundary.

The engine never stores the raw subject identifier, only its SHA-256 hash.
"""

import hashlib
from dataclasses import dataclass
from typing import Protocol

DEFAULT_DISPLAY_NAME = "Family Member"


@dataclass(frozen=True)
class Identity:
    subject: str
    display_name: str | None = None

    @property
    def identity_hash(self) -> str:
        return hash_subject(self.subject)

    @property
    def name_or_default(self) -> str:
        name = (self.display_name or "").strip()
        return name[:50] if name else DEFAULT_DISPLAY_NAME


def hash_subject(subject: str) -> str:
    return hashlib.sha256(subject.encode("utf-8")).hexdigest()


class IdentityProvider(Protocol):
    def current_identity(self) -> Identity | None:
        """The signed-in identity, or None when nobody is signed in."""
        ...


class SessionIdentityProvider:
    """Holds the identity of the current sign-in session."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity

    def current_identity(self) -> Identity | None:
        return self._identity

    def sign_in(self, subject: str, display_name: str | None = None) -> Identity:
        self._identity = Identity(subject=subject, display_name=display_name)
        return self._identity

    def sign_out(self) -> None:
        self._identity = None

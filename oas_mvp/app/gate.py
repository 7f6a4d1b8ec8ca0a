"""Session gate: decide whether a resolved session may proceed.

The gate never talks to the identity provider itself. Callers resolve the
session token first (see `main.resolve_session`) and hand the result in:

  - a `Session` when the token maps to a known user
  - `PENDING` while the provider has not answered yet
  - `None` when there is no session at all

`check_access` is pure; mapping a decision to a redirect / 401 / 403 / spinner
is the caller's job.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Union

RequiredRole = Literal["none", "admin"]
DenialReason = Literal["unauthenticated", "forbidden"]


@dataclass(frozen=True)
class Session:
    subject_id: str | None
    is_admin: bool = False
    username: str = ""
    token: str = ""

    @property
    def authenticated(self) -> bool:
        return bool((self.subject_id or "").strip())


class _Pending:
    _instance: "_Pending | None" = None

    def __new__(cls) -> "_Pending":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "PENDING"

    def __bool__(self) -> bool:
        return False


PENDING = _Pending()

SessionLookup = Union[Session, _Pending, None]


@dataclass(frozen=True)
class Allowed:
    subject_id: str


@dataclass(frozen=True)
class Denied:
    reason: DenialReason


@dataclass(frozen=True)
class Pending:
    pass


Decision = Union[Allowed, Denied, Pending]


def check_access(session: SessionLookup, required_role: RequiredRole = "none") -> Decision:
    if required_role not in ("none", "admin"):
        raise ValueError(f"unknown required role: {required_role!r}")

    if session is PENDING:
        return Pending()

    if not isinstance(session, Session) or not session.authenticated:
        return Denied("unauthenticated")

    if required_role == "admin" and not session.is_admin:
        return Denied("forbidden")

    return Allowed(str(session.subject_id))


def is_admin(session: SessionLookup) -> bool:
    return isinstance(check_access(session, "admin"), Allowed)

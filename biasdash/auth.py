"""
biasdash.auth — Credential store, password verification, server-side sessions.

Password verification has exactly two branches:
    hashed  — werkzeug hash (pbkdf2/scrypt prefix) → check_password_hash
    legacy  — anything else is a pre-hashing plaintext row → constant-time
              comparison, logged as ``legacy_plaintext_credential``
New rows are always hashed; nothing here writes plaintext.

Sessions live in the auth_sessions table. The browser holds
``<token>.<hmac>``; the server stores only sha256(token). A cookie
whose HMAC does not verify under SESSION_SECRET is no session at all.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from biasdash.constants import ROLES
from biasdash.db import AuthSession, Database, User

logger = logging.getLogger("biasdash.auth")

PASSWORD_HASH_METHOD = "pbkdf2:sha256:600000"
_HASH_PREFIXES: tuple[str, ...] = ("pbkdf2:", "scrypt:")


class UsernameTakenError(Exception):
    def __init__(self, username: str) -> None:
        self.username = username
        super().__init__(f"Username '{username}' is already taken.")


@dataclass(frozen=True, slots=True)
class SessionUser:
    username: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def normalize_username(username: str) -> str:
    return username.strip().lower()


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------

def hash_password(password: str) -> str:
    return generate_password_hash(password, method=PASSWORD_HASH_METHOD)


def is_hashed(stored: str) -> bool:
    return "$" in stored and stored.startswith(_HASH_PREFIXES)


def verify_password(stored: str, password: str) -> bool:
    if is_hashed(stored):
        return check_password_hash(stored, password)

    matched = hmac.compare_digest(stored.encode("utf-8"), password.encode("utf-8"))
    if matched:
        logger.warning(json.dumps({"event": "legacy_plaintext_credential"}))
    return matched


# ---------------------------------------------------------------------------
# UserStore
# ---------------------------------------------------------------------------

class UserStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_user(self, username: str, password: str, role: str = "user") -> SessionUser:
        """Insert a hashed credential row.

        Raises UsernameTakenError on a unique-constraint violation and
        ValueError for an unknown role or a blank username.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role '{role}'.")
        username = normalize_username(username)
        if not username:
            raise ValueError("Username must not be blank.")
        try:
            with self._db.session_scope() as session:
                session.add(User(username=username, password_hash=hash_password(password), role=role))
        except IntegrityError:
            raise UsernameTakenError(username)
        logger.info(json.dumps({"event": "user_created", "username": username, "role": role}))
        return SessionUser(username=username, role=role)

    def ensure_user(self, username: str, password: str, role: str = "admin") -> bool:
        """Create the account unless the username already exists. True if created."""
        try:
            self.create_user(username, password, role)
        except UsernameTakenError:
            return False
        return True

    def authenticate(self, username: str, password: str) -> SessionUser | None:
        """Return the user on a credential match, else None."""
        username = normalize_username(username)
        with self._db.session_scope() as session:
            user = session.execute(
                select(User).where(User.username == username).limit(1)
            ).scalars().first()
            if user is None:
                return None
            if not verify_password(user.password_hash, password):
                return None
            return SessionUser(username=user.username, role=user.role)


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionStore:
    def __init__(self, db: Database, secret: str) -> None:
        self._db = db
        self._key = secret.encode("utf-8")

    def _sign(self, token: str) -> str:
        return hmac.new(self._key, token.encode("utf-8"), hashlib.sha256).hexdigest()

    def _unsign(self, cookie: str | None) -> str | None:
        if not cookie or "." not in cookie:
            return None
        token, signature = cookie.rsplit(".", 1)
        # Cookie headers arrive latin-1 decoded; compare bytes so any
        # non-ASCII junk is simply a mismatch.
        if not hmac.compare_digest(signature.encode("utf-8"), self._sign(token).encode("ascii")):
            return None
        return token

    def create(self, user: SessionUser) -> str:
        """Persist a new session and return the signed cookie value."""
        token = secrets.token_urlsafe(32)
        with self._db.session_scope() as session:
            session.add(AuthSession(
                token_hash=_token_digest(token),
                username=user.username,
                role=user.role,
            ))
        return f"{token}.{self._sign(token)}"

    def resolve(self, cookie: str | None) -> SessionUser | None:
        token = self._unsign(cookie)
        if token is None:
            return None
        with self._db.session_scope() as session:
            row = session.execute(
                select(AuthSession).where(AuthSession.token_hash == _token_digest(token)).limit(1)
            ).scalars().first()
            if row is None:
                return None
            return SessionUser(username=row.username, role=row.role)

    def destroy(self, cookie: str | None) -> None:
        """Delete the session row if there is one. Idempotent."""
        token = self._unsign(cookie)
        if token is None:
            return
        with self._db.session_scope() as session:
            session.execute(
                delete(AuthSession).where(AuthSession.token_hash == _token_digest(token))
            )

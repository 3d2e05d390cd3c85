from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import threading
from dataclasses import dataclass
from typing import Dict, List

from .errors import (
    AuthError,
    BannedError,
    ConflictError,
    PermissionDenied,
    ProtectedAccount,
    ValidationError,
)

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 200_000
GENERIC_AUTH_FAILURE = "Invalid username or password"
BANNED_MESSAGE = "This account has been banned"


def hash_password(password: str, *, salt: str | None = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Return ``pbkdf2_sha256$<iterations>$<salt>$<hex digest>`` for ``password``."""

    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, _ = encoded.split("$", 3)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    candidate = hash_password(password, salt=salt, iterations=int(iterations))
    return hmac.compare_digest(candidate, encoded)


@dataclass
class User:
    username: str
    password_hash: str
    is_admin: bool = False
    is_banned: bool = False

    def view(self) -> dict:
        return {"username": self.username, "isBanned": self.is_banned}


class AccountStore:
    """In-memory credential store keyed by username."""

    def __init__(self, *, iterations: int = PBKDF2_ITERATIONS) -> None:
        self._lock = threading.Lock()
        self._iterations = iterations
        # dicts keep insertion order, which is the creation order of accounts
        self._users: Dict[str, User] = {}
        self._primary_admin: str | None = None
        # unknown usernames are checked against this so both failures cost one hash
        self._decoy_hash = hash_password(secrets.token_hex(16), iterations=iterations)

    def hash(self, password: str) -> str:
        return hash_password(password, iterations=self._iterations)

    @property
    def primary_admin(self) -> str | None:
        return self._primary_admin

    def seed_admin(self, username: str, password: str) -> User:
        """Create (or return) the primary admin account."""

        with self._lock:
            existing = self._users.get(username)
            if existing is not None:
                existing.is_admin = True
                self._primary_admin = username
                return existing
            user = User(
                username=username,
                password_hash=self.hash(password),
                is_admin=True,
            )
            self._users[username] = user
            self._primary_admin = username
        logger.info("seeded admin account %s", username)
        return user

    def create_account(self, username: str, password: str, *, password_hash: str | None = None) -> User:
        """Store a new account.

        ``password_hash`` lets callers do the hashing ahead of time, away from
        any lock; it must come from :meth:`hash` for the same ``password``.
        """

        username = (username or "").strip()
        if not username or not password or not password.strip():
            raise ValidationError("Username and password are required")
        password_hash = password_hash or self.hash(password)
        with self._lock:
            if username in self._users:
                raise ConflictError("Username is already taken")
            user = User(username=username, password_hash=password_hash)
            self._users[username] = user
        logger.info("created account %s", username)
        return user

    def authenticate(self, username: str, password: str) -> User:
        username = (username or "").strip()
        with self._lock:
            user = self._users.get(username)
        if user is None:
            verify_password(password or "", self._decoy_hash)
            raise AuthError(GENERIC_AUTH_FAILURE)
        if not verify_password(password or "", user.password_hash):
            raise AuthError(GENERIC_AUTH_FAILURE)
        if user.is_banned:
            raise BannedError(BANNED_MESSAGE)
        return user

    def get(self, username: str) -> User | None:
        with self._lock:
            return self._users.get(username)

    def set_ban(self, actor: User, target_username: str, banned: bool) -> User:
        if not actor.is_admin:
            raise PermissionDenied("Admin privileges required")
        with self._lock:
            target = self._users.get(target_username)
            if target is None:
                raise ValidationError("Unknown user")
            if target_username in (self._primary_admin, actor.username):
                raise ProtectedAccount("This account cannot be banned")
            target.is_banned = banned
        logger.info("%s %s %s", actor.username, "banned" if banned else "unbanned", target_username)
        return target

    def list_all(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

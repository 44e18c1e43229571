from __future__ import annotations

import dataclasses
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from novachat.logging import get_logger
from novachat.storage.errors import ConstraintViolation
from novachat.storage.models import User, utcnow

_SNAPSHOT_VERSION = 1
_DATETIME_FIELDS = ("created_at", "last_login_at")


def _user_to_record(user: User, password: Optional[tuple[str, str]]) -> Dict[str, Any]:
    record = dataclasses.asdict(user)
    for name in _DATETIME_FIELDS:
        value = record[name]
        record[name] = value.isoformat() if value else None
    record["password"] = list(password) if password else None
    return record


def _user_from_record(record: Dict[str, Any]) -> tuple[User, Optional[tuple[str, str]]]:
    record = dict(record)
    password = record.pop("password", None)
    for name in _DATETIME_FIELDS:
        raw = record.get(name)
        record[name] = datetime.fromisoformat(raw) if raw else None
    record["created_at"] = record["created_at"] or utcnow()
    known = {f.name for f in dataclasses.fields(User)}
    user = User(**{k: v for k, v in record.items() if k in known})
    return user, (tuple(password) if password else None)


class MemoryStore:
    """Single-process user registry for development and tests.

    Every write is mirrored to ``<fs_root>/state/memory_store.json`` so a
    restart keeps accounts and the current session of each user. Not safe to
    share between processes.
    """

    def __init__(self, fs_root: str = "/tmp/novachat") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, tuple[str, str]] = {}
        self._lock = threading.RLock()
        self.snapshot_path = Path(fs_root) / "state" / "memory_store.json"
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        if not self._restore():
            self._snapshot()

    def _find(self, attr: str, value: Any) -> Optional[User]:
        return next((u for u in self.users.values() if getattr(u, attr) == value), None)

    def _commit(self, undo: Callable[[], None]) -> None:
        """Persist the mutation just applied, or run ``undo`` and re-raise."""
        try:
            self._snapshot()
        except Exception:
            undo()
            raise

    def create_user(
        self,
        email: str,
        full_name: str = "",
        *,
        google_id: Optional[str] = None,
        profile_pic: str = "",
        is_admin: bool = False,
        password: Optional[tuple[str, str]] = None,
    ) -> User:
        """Insert the account, and its password record when given, as one write."""
        with self._lock:
            if self._find("email", email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and self._find("google_id", google_id):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                full_name=full_name,
                profile_pic=profile_pic,
                google_id=google_id,
                is_admin=is_admin,
            )
            self.users[user.id] = user
            if password is not None:
                self.passwords[user.id] = (password[0], password[1])

            def undo() -> None:
                self.users.pop(user.id, None)
                self.passwords.pop(user.id, None)

            self._commit(undo)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            return self._find("email", email)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._lock:
            return self._find("google_id", google_id)

    def _require(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._lock:
            self._require(user_id)
            previous = self.passwords.get(user_id)
            self.passwords[user_id] = (password_hash, password_algo)

            def undo() -> None:
                if previous is None:
                    self.passwords.pop(user_id, None)
                else:
                    self.passwords[user_id] = previous

            self._commit(undo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._lock:
            return self.passwords.get(user_id)

    def set_current_session(
        self,
        user_id: str,
        session_id: Optional[str],
        *,
        last_login_at: Optional[datetime] = None,
    ) -> User:
        with self._lock:
            user = self._require(user_id)
            previous = (user.current_session_id, user.last_login_at)
            user.current_session_id = session_id
            if last_login_at is not None:
                user.last_login_at = last_login_at

            def undo() -> None:
                user.current_session_id, user.last_login_at = previous

            self._commit(undo)
            return user

    def clear_current_session(
        self, user_id: str, *, expected_session_id: Optional[str] = None
    ) -> bool:
        """Compare-and-clear: returns False when a newer session already took over."""
        with self._lock:
            user = self.users.get(user_id)
            if user is None or user.current_session_id is None:
                return False
            if expected_session_id not in (None, user.current_session_id):
                return False
            previous = user.current_session_id
            user.current_session_id = None

            def undo() -> None:
                user.current_session_id = previous

            self._commit(undo)
            return True

    def _snapshot(self) -> None:
        payload = {
            "version": _SNAPSHOT_VERSION,
            "users": {
                uid: _user_to_record(user, self.passwords.get(uid))
                for uid, user in self.users.items()
            },
        }
        staging = self.snapshot_path.with_suffix(".json.tmp")
        try:
            staging.write_text(json.dumps(payload, indent=2))
            # readers never see a half-written snapshot
            os.replace(staging, self.snapshot_path)
        except OSError as exc:
            raise RuntimeError(f"failed to write memory store snapshot: {exc}") from exc

    def _restore(self) -> bool:
        try:
            payload = json.loads(self.snapshot_path.read_text())
            records = payload["users"]
            loaded = [_user_from_record(record) for record in records.values()]
        except FileNotFoundError:
            return False
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            self.logger.warning(
                "memory_snapshot_unreadable", path=str(self.snapshot_path), error=str(exc)
            )
            return False
        for user, password in loaded:
            self.users[user.id] = user
            if password:
                self.passwords[user.id] = password
        self.logger.info("memory_snapshot_loaded", users=len(self.users))
        return True

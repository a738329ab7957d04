from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from haroval.logging import get_logger
from haroval.storage.errors import ConstraintViolation
from haroval.storage.models import LOCAL_PROVIDER, User


class MemoryStore:
    """Dict-backed credential store for tests and local development.

    When ``fs_root`` is given the user table is written to
    ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _check_unique(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        google_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})
            if email and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and existing.google_id == google_id:
                raise ConstraintViolation("google account already linked", {"field": "google_id"})

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        auth_provider: str = LOCAL_PROVIDER,
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> User:
        with self._data_lock:
            self._check_unique(username=username, email=email, google_id=google_id)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo if password_hash else None,
                auth_provider=auth_provider,
                google_id=google_id,
                avatar_url=avatar_url,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_email(self, email: str) -> Optional[User]:
        if not email:
            return None
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        if not google_id:
            return None
        with self._data_lock:
            return next((u for u in self.users.values() if u.google_id == google_id), None)

    def link_google_account(
        self, user_id: str, google_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(google_id=google_id, exclude_id=user_id)
            updated = replace(
                user,
                google_id=google_id,
                avatar_url=avatar_url or user.avatar_url,
                updated_at=datetime.utcnow(),
            )
            self.users[user_id] = updated
            self._persist_state()
            return updated

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            changes: dict = {"updated_at": datetime.utcnow()}
            if username is not None and username != user.username:
                self._check_unique(username=username, exclude_id=user_id)
                changes["username"] = username
            if password_hash is not None:
                changes["password_hash"] = password_hash
                changes["password_algo"] = password_algo
            updated = replace(user, **changes)
            self.users[user_id] = updated
            self._persist_state()
            return updated

    def verify_connection(self) -> None:
        """Always reachable; present for parity with PostgresStore."""

    def close(self) -> None:
        """Nothing to release."""

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path: Optional[str] = None
        try:
            # Password hashes live in this file, so it is owner-only like .jwt_secret
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".memory_store_", suffix=".tmp"
            )
            try:
                os.fchmod(fd, 0o600)
                os.write(fd, json.dumps(state, indent=2).encode())
            finally:
                os.close(fd)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_user(user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "auth_provider": user.auth_provider,
            "google_id": user.google_id,
            "avatar_url": user.avatar_url,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_user(data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data.get("email"),
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            auth_provider=data.get("auth_provider", LOCAL_PROVIDER),
            google_id=data.get("google_id"),
            avatar_url=data.get("avatar_url"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data.get("updated_at") or data["created_at"]),
        )


__all__ = ["MemoryStore"]

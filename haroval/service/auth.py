from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from haroval.config import Settings
from haroval.logging import get_logger
from haroval.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from haroval.service.oauth import GoogleIdentity
from haroval.service.passwords import CredentialVerifier
from haroval.service.token_service import EncryptedTokenService
from haroval.storage.cache import invalidate_user, user_key
from haroval.storage.errors import ConstraintViolation
from haroval.storage.models import GOOGLE_PROVIDER, LOCAL_PROVIDER, User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"
INVALID_REFRESH = "Invalid refresh token"


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def link_google_account(
        self, user_id: str, google_id: str, *, avatar_url: Optional[str] = None
    ) -> Optional[User]: ...

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
    ) -> Optional[User]: ...


@dataclass
class AuthContext:
    """Identity recovered from a valid access envelope."""

    user_id: str
    username: str


@dataclass
class IssuedSession:
    user: User
    access_token: str
    refresh_token: str


class AuthService:
    """Login, registration, Google sign-in, refresh and the access check.

    Tokens live only in the envelopes handed back to the caller; there is no
    server-side session table. Password hashing and envelope crypto run in
    worker threads so they never stall the event loop.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: EncryptedTokenService,
        verifier: CredentialVerifier,
        settings: Settings,
        *,
        cache: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.verifier = verifier
        self.settings = settings
        self.cache = cache
        self.logger = logger

    async def _issue(self, user: User) -> IssuedSession:
        access, refresh = await asyncio.to_thread(self._issue_pair, user)
        return IssuedSession(user=user, access_token=access, refresh_token=refresh)

    def _issue_pair(self, user: User) -> tuple[str, str]:
        return (
            self.tokens.issue_access(user.id, user.username),
            self.tokens.issue_refresh(user.id),
        )

    def _check_password_length(self, password: str) -> None:
        minimum = self.settings.min_password_length
        if len(password) < minimum:
            raise ValidationError(
                f"Password must be at least {minimum} characters long",
                detail={"field": "password"},
            )

    async def login(self, username: str, password: str) -> IssuedSession:
        if not username or not password:
            raise ValidationError("Username and password are required")
        user = self.store.get_user_by_username(username)
        if user is None or not user.has_password:
            # Same hashing cost as a wrong password so timing reveals nothing
            await asyncio.to_thread(self.verifier.verify_dummy, password)
            self.logger.info(
                "login_rejected", reason="no_user" if user is None else "no_local_password"
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        valid = await asyncio.to_thread(
            self.verifier.verify, password, user.password_hash, user.password_algo
        )
        if not valid:
            self.logger.info("login_rejected", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        self.logger.info("login_succeeded", user_id=user.id)
        return await self._issue(user)

    async def register(
        self, username: str, password: str, confirm_password: str
    ) -> IssuedSession:
        if not username or not password or not confirm_password:
            raise ValidationError("Username, password, and confirm password are required")
        if password != confirm_password:
            raise ValidationError("Passwords do not match", detail={"field": "confirmPassword"})
        self._check_password_length(password)
        if self.store.get_user_by_username(username) is not None:
            raise ConflictError("Username already exists", detail={"field": "username"})

        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        try:
            user = self.store.create_user(
                username,
                password_hash=password_hash,
                password_algo=self.verifier.algorithm,
                auth_provider=LOCAL_PROVIDER,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same name
            raise ConflictError("Username already exists", detail={"field": "username"}) from exc
        self.logger.info("user_registered", user_id=user.id)
        return await self._issue(user)

    async def complete_google_login(self, identity: GoogleIdentity) -> IssuedSession:
        """Link the Google identity to an existing account or create one.

        Lookup order is Google subject, then email. A matching local account
        keeps its password and provider; it just gains the Google id. Tokens
        are issued only after the record is saved.
        """
        try:
            user = self.store.get_user_by_google_id(identity.subject)
            if user is None:
                existing = self.store.get_user_by_email(identity.email)
                if existing is not None:
                    user = self.store.link_google_account(
                        existing.id, identity.subject, avatar_url=identity.picture
                    )
                    if user is None:
                        raise ServerError("Failed to complete Google sign-in")
                    await invalidate_user(self.cache, user.id)
                    self.logger.info("google_account_linked", user_id=user.id)
                else:
                    username = self._unused_username(identity)
                    user = self.store.create_user(
                        username,
                        email=identity.email,
                        auth_provider=GOOGLE_PROVIDER,
                        google_id=identity.subject,
                        avatar_url=identity.picture,
                    )
                    self.logger.info("google_account_created", user_id=user.id)
        except ConstraintViolation as exc:
            self.logger.error("google_account_persist_failed", field=exc.detail.get("field"))
            raise ServerError("Failed to complete Google sign-in") from exc
        return await self._issue(user)

    def _unused_username(self, identity: GoogleIdentity) -> str:
        """Pick the display name, else the email local part, else a numbered variant."""
        local_part = identity.email.split("@")[0]
        candidates = [c for c in (identity.name, local_part) if c]
        for candidate in candidates:
            if self.store.get_user_by_username(candidate) is None:
                return candidate
        base = candidates[0]
        suffix = 2
        while self.store.get_user_by_username(f"{base}{suffix}") is not None:
            suffix += 1
        return f"{base}{suffix}"

    async def refresh(self, refresh_envelope: Optional[str]) -> IssuedSession:
        if not refresh_envelope:
            raise AuthenticationError("Refresh token not found")
        identity = await asyncio.to_thread(self.tokens.redeem_refresh, refresh_envelope)
        if identity is None:
            raise AuthenticationError(INVALID_REFRESH)
        # Refresh claims carry no username, so the record is the source of truth
        user = self.store.get_user(identity.user_id)
        if user is None:
            self.logger.warning("refresh_user_missing", user_id=identity.user_id)
            raise AuthenticationError(INVALID_REFRESH)
        return await self._issue(user)

    async def authenticate(self, access_envelope: Optional[str]) -> AuthContext:
        if not access_envelope:
            raise AuthenticationError("Authentication required")
        identity = await asyncio.to_thread(self.tokens.redeem_access, access_envelope)
        if identity is None:
            raise AuthenticationError("Invalid or expired token")
        return AuthContext(user_id=identity.user_id, username=identity.username)

    async def get_current_user(self, user_id: str) -> User:
        if self.cache is not None:
            cached = await self.cache.get(user_key(user_id))
            if cached:
                return _user_from_cache(cached)
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if self.cache is not None:
            await self.cache.set(
                user_key(user_id), _user_to_cache(user), self.settings.user_cache_ttl_seconds
            )
        return user

    async def update_profile(
        self,
        user_id: str,
        username: str,
        current_password: str,
        new_password: Optional[str] = None,
    ) -> IssuedSession:
        if not username or not current_password:
            raise ValidationError("Username and current password are required")
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        valid = await asyncio.to_thread(
            self.verifier.verify, current_password, user.password_hash, user.password_algo
        )
        if not valid:
            raise ValidationError(
                "Current password is incorrect", detail={"field": "currentPassword"}
            )
        if username != user.username and self.store.get_user_by_username(username):
            raise ValidationError("Username already exists", detail={"field": "username"})

        password_hash = None
        if new_password:
            self._check_password_length(new_password)
            password_hash = await asyncio.to_thread(self.verifier.hash, new_password)
        try:
            updated = self.store.update_user(
                user_id,
                username=username,
                password_hash=password_hash,
                password_algo=self.verifier.algorithm if password_hash else None,
            )
        except ConstraintViolation as exc:
            raise ValidationError(
                "Username already exists", detail={"field": "username"}
            ) from exc
        if updated is None:
            raise NotFoundError("User not found")
        await invalidate_user(self.cache, user_id)
        self.logger.info(
            "profile_updated", user_id=user_id, password_changed=password_hash is not None
        )
        return await self._issue(updated)


def _user_to_cache(user: User) -> dict:
    # Credential material stays out of the cache
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "auth_provider": user.auth_provider,
        "google_id": user.google_id,
        "avatar_url": user.avatar_url,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
    }


def _user_from_cache(data: dict) -> User:
    return User(
        id=data["id"],
        username=data["username"],
        email=data.get("email"),
        auth_provider=data.get("auth_provider", LOCAL_PROVIDER),
        google_id=data.get("google_id"),
        avatar_url=data.get("avatar_url"),
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


__all__ = [
    "AuthContext",
    "AuthService",
    "CredentialStore",
    "IssuedSession",
]

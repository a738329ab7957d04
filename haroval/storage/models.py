from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

LOCAL_PROVIDER = "local"
GOOGLE_PROVIDER = "google"


@dataclass
class User:
    """Credential record.

    ``password_hash`` is absent for accounts created through Google sign-in.
    ``username`` is mutable; ``id`` is the identity carried in tokens.
    """

    id: str
    username: str
    email: Optional[str] = None
    password_hash: Optional[str] = field(default=None, repr=False)
    password_algo: Optional[str] = None
    auth_provider: str = LOCAL_PROVIDER
    google_id: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def public_dict(self) -> dict:
        return {"id": self.id, "username": self.username}


__all__ = ["GOOGLE_PROVIDER", "LOCAL_PROVIDER", "User"]

"""
Identity collaborator. Bearer tokens map to a session record holding the
subject id and whether its email address has been verified; the booking core
trusts both as given.
"""
import secrets
from dataclasses import dataclass
from typing import Optional

from kv_store import SESSION_PREFIX, KVStore
from utils import utc_now_iso


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    name: str = ""
    email_verified: bool = False


class SessionStore:
    def __init__(self, store: KVStore):
        self.store = store

    def issue(self, user_id: str, email: str, name: str = "", email_verified: bool = True) -> str:
        token = secrets.token_urlsafe(32)
        self.store.set(
            SESSION_PREFIX + token,
            {
                "userId": user_id,
                "email": email,
                "name": name,
                "emailVerified": email_verified,
                "createdAt": utc_now_iso(),
            },
        )
        return token

    def revoke(self, token: str) -> None:
        self.store.delete(SESSION_PREFIX + token)

    def resolve(self, token: str) -> Optional[Principal]:
        if not token:
            return None
        record = self.store.get(SESSION_PREFIX + token)
        if record is None:
            return None
        return Principal(
            id=record["userId"],
            email=record["email"],
            name=record.get("name", ""),
            email_verified=bool(record.get("emailVerified")),
        )

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Protocol


@dataclass(frozen=True)
class UserContact:
    user_id: str
    email: str | None = None
    phone: str | None = None


class ContactDirectory(Protocol):
    """Resolves authenticated user references to deliverable contacts."""

    def lookup(self, user_id: str) -> UserContact | None: ...


class InMemoryContactDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._contacts: dict[str, UserContact] = {}

    def reset(self) -> None:
        with self._lock:
            self._contacts.clear()

    def register(self, user_id: str, *, email: str | None = None, phone: str | None = None) -> UserContact:
        contact = UserContact(user_id=user_id, email=email, phone=phone)
        with self._lock:
            self._contacts[user_id] = contact
        return contact

    def lookup(self, user_id: str) -> UserContact | None:
        with self._lock:
            return self._contacts.get(user_id)

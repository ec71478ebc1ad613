from __future__ import annotations

import hashlib
import hmac
import re
import secrets

from .store import AlertNotFoundError, AlertStore

# 24 random bytes -> 192 bits, rendered as 32 url-safe characters.
UNSUB_TOKEN_BYTES = 24
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class UnsubscribeTokenError(ValueError):
    """Raised when an unsubscribe token is malformed."""


def generate_unsub_token() -> str:
    return secrets.token_urlsafe(UNSUB_TOKEN_BYTES)


def hash_unsub_token(token: str) -> str:
    if not _TOKEN_RE.match(token):
        raise UnsubscribeTokenError("invalid unsubscribe token format")
    return hashlib.sha256(token.encode("ascii")).hexdigest()


class UnsubscribeTokenService:
    """Issues and resolves opaque unsubscribe tokens.

    Tokens are pure randomness and carry no subscriber data. Lookups go through
    the SHA-256 index so the database never compares raw tokens, and the final
    equality check uses ``hmac.compare_digest``.
    """

    def __init__(self, store: AlertStore) -> None:
        self._store = store

    def generate(self) -> tuple[str, str]:
        token = generate_unsub_token()
        return token, hash_unsub_token(token)

    def validate(self, token: str) -> str:
        try:
            token_hash = hash_unsub_token(token)
        except UnsubscribeTokenError as exc:
            raise AlertNotFoundError("unsubscribe token") from exc
        record = self._store.find_alert_by_token_hash(token_hash)
        if record is None:
            raise AlertNotFoundError("unsubscribe token")
        if not hmac.compare_digest(record.unsub_token.encode("ascii"), token.encode("ascii")):
            raise AlertNotFoundError("unsubscribe token")
        return record.alert_id

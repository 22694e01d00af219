"""
Access token guard.

Stateless checks over recipient rows: a presented token is hashed and looked
up; only SHA-256 digests are ever stored. Expiry is checked before the
revocation flag, so an expired document reports ``TokenExpired``.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from signing.exceptions.errors import TokenExpired, TokenInvalid, TokenRevoked
from signing.logic.clock import Clock, utc_now
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenGrant:
    doc_id: str
    recipient_id: str


class TokenGuard:
    def __init__(self, repo: SigningRepository, clock: Clock = utc_now) -> None:
        self._repo = repo
        self._clock = clock

    def authorize(self, token: str) -> TokenGrant:
        """Resolve ``token`` to its (document, recipient) pair or raise a TokenError."""
        if not isinstance(token, str) or not token.strip():
            raise TokenInvalid("Empty token")
        digest = hash_token(token)
        entry = self._repo.find_recipient_by_token_hash(digest)
        if entry is None:
            retired = self._repo.find_retired_token(digest)
            if retired is not None:
                raise TokenRevoked(
                    "Token was rotated",
                    doc_id=retired["doc_id"],
                    recipient_id=retired["recipient_id"],
                )
            raise TokenInvalid("Unknown token")

        if entry.token_expires_at is None or self._clock() >= entry.token_expires_at:
            raise TokenExpired(
                f"Token of {entry.recipient_id} expired",
                doc_id=entry.doc_id, recipient_id=entry.recipient_id,
            )
        if entry.token_revoked:
            raise TokenRevoked(
                f"Token of {entry.recipient_id} revoked",
                doc_id=entry.doc_id, recipient_id=entry.recipient_id,
            )
        return TokenGrant(doc_id=entry.doc_id, recipient_id=entry.recipient_id)

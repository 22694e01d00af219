"""Persistence for the signing feature (DB only, no business rules)."""

from signing.repository.signing_repository import SigningRepository

__all__ = ["SigningRepository"]

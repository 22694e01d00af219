"""Signing feature exceptions.

Four families, handled differently by callers:

- ``SigningValidationError``: bad input or wrong lifecycle state. Surfaced to
  the caller, never retried, nothing is mutated.
- ``AccessDeniedError``: a recipient action that is not allowed right now.
  Surfaced to the caller and recorded as an ACCESS_DENIED audit entry when
  the document is known.
- ``TransientError``: infrastructure hiccups. Only the composition job runner
  retries these.
- ``InvariantViolation``: a broken engine invariant. Never caught to repair.
"""
from __future__ import annotations

from typing import Iterable, Optional

LINK_INVALID_MESSAGE = "This link is no longer valid."


class SigningError(Exception):
    """Base exception for the signing feature."""


# --------------------------------------------------------------------------- #
#  Validation
# --------------------------------------------------------------------------- #

class SigningValidationError(SigningError):
    """Input or state validation failed; no state was changed."""


class DocumentNotFound(SigningValidationError):
    def __init__(self, doc_id: str) -> None:
        super().__init__(f"Document {doc_id!r} not found")
        self.doc_id = doc_id


class DocumentNotEditable(SigningValidationError):
    def __init__(self, doc_id: str, status: object) -> None:
        super().__init__(f"Document {doc_id!r} is {getattr(status, 'value', status)}; layout is frozen")
        self.doc_id = doc_id
        self.status = status


class InvalidTransition(SigningValidationError):
    def __init__(self, doc_id: str, current: object, target: object) -> None:
        super().__init__(
            f"Document {doc_id!r}: no transition "
            f"{getattr(current, 'value', current)} -> {getattr(target, 'value', target)}"
        )
        self.doc_id = doc_id
        self.current = current
        self.target = target


class DocumentNotPending(SigningValidationError):
    def __init__(self, doc_id: str, status: object) -> None:
        super().__init__(f"Document {doc_id!r} is {getattr(status, 'value', status)}, not PENDING")
        self.doc_id = doc_id
        self.status = status


class DocumentNotCompleted(SigningValidationError):
    def __init__(self, doc_id: str, status: object) -> None:
        super().__init__(f"Document {doc_id!r} is {getattr(status, 'value', status)}; no final artifact")
        self.doc_id = doc_id
        self.status = status


class InvalidSourceDocument(SigningValidationError):
    """The uploaded bytes are not a readable PDF."""


class InvalidGeometry(SigningValidationError):
    pass


class PageOutOfRange(SigningValidationError):
    pass


class UnknownField(SigningValidationError):
    pass


class UnknownRecipient(SigningValidationError):
    pass


class InvalidRecipient(SigningValidationError):
    """Malformed or duplicate contact, or a recipient that cannot take the request."""


class InvalidDeadline(SigningValidationError):
    pass


class DuplicateSigningOrder(SigningValidationError):
    pass


class InvalidFieldValue(SigningValidationError):
    pass


class IncompleteFields(SigningValidationError):
    def __init__(self, message: str, field_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.field_ids = tuple(field_ids)


# --------------------------------------------------------------------------- #
#  Authorization
# --------------------------------------------------------------------------- #

class AccessDeniedError(SigningError):
    """A recipient-facing action was refused.

    ``public_message`` is what a recipient may be shown; ``str(exc)`` is for
    logs and issuers.
    """

    public_message = "This action is not available right now."

    def __init__(self, message: str, *, doc_id: Optional[str] = None,
                 recipient_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.doc_id = doc_id
        self.recipient_id = recipient_id


class TokenError(AccessDeniedError):
    public_message = LINK_INVALID_MESSAGE


class TokenInvalid(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class TokenRevoked(TokenError):
    pass


class OutOfOrder(AccessDeniedError):
    public_message = "It is not your turn to sign yet."


class DocumentLocked(AccessDeniedError):
    public_message = "This document is being finalised."


class RecipientNotActive(AccessDeniedError):
    public_message = "You have already finished with this document."


# --------------------------------------------------------------------------- #
#  Infrastructure
# --------------------------------------------------------------------------- #

class TransientError(SigningError):
    """Retryable infrastructure failure."""


class StoreUnavailable(TransientError):
    pass


class CompositionTimeout(TransientError):
    pass


# --------------------------------------------------------------------------- #
#  Defects
# --------------------------------------------------------------------------- #

class InvariantViolation(SigningError):
    """An engine invariant does not hold. Fail loudly."""


class ArtifactNotFound(SigningError):
    """The store has no artifact under the given reference."""

    def __init__(self, ref: str) -> None:
        super().__init__(f"No artifact stored under {ref!r}")
        self.ref = ref

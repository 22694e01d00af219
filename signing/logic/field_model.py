"""Field layout: placement, validation and recipient binding (DRAFT only)."""
from __future__ import annotations

import logging
from typing import List, Sequence

from signing.enum.field_type import FieldType
from signing.exceptions.errors import (
    InvalidFieldValue,
    InvalidGeometry,
    PageOutOfRange,
    UnknownField,
    UnknownRecipient,
)
from signing.logic.document_lock import DocumentLocks
from signing.logic.workflow_engine import WorkflowEngine
from signing.models.document import Document
from signing.models.field_definition import FieldDefinition, FieldSpec
from signing.models.ids import new_id
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


class FieldModel:
    def __init__(self, repo: SigningRepository, locks: DocumentLocks) -> None:
        self._repo = repo
        self._locks = locks

    def fields(self, doc_id: str) -> List[FieldDefinition]:
        return self._repo.list_fields(doc_id)

    def define_fields(self, doc_id: str, specs: Sequence[FieldSpec]) -> List[FieldDefinition]:
        """
        Add fields to a draft. Either every spec is valid and all are stored,
        or nothing is stored.

        Raises:
            DocumentNotEditable: document left DRAFT
            PageOutOfRange: page index outside the source PDF
            InvalidGeometry: fraction outside [0, 1] or box leaves the page
            UnknownRecipient: bound recipient is not on this document
        """
        specs = list(specs)
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            WorkflowEngine.ensure_editable(doc)
            recipient_ids = {r.recipient_id for r in self._repo.list_recipients(doc_id)}
            checked = [self._check(doc, spec, idx, recipient_ids) for idx, spec in enumerate(specs)]

            created: List[FieldDefinition] = []
            with self._repo.db.transaction():
                for spec, field_type in checked:
                    definition = FieldDefinition(
                        field_id=new_id("fld"),
                        doc_id=doc_id,
                        field_type=field_type,
                        page_index=spec.page_index,
                        geometry=spec.geometry,
                        required=bool(spec.required),
                        recipient_id=spec.recipient_id,
                        label=spec.label,
                    )
                    self._repo.insert_field(definition)
                    created.append(definition)
        logger.info("Defined %d field(s) on %s", len(created), doc_id)
        return created

    @staticmethod
    def _check(doc: Document, spec: FieldSpec, idx: int, recipient_ids: set) -> tuple[FieldSpec, FieldType]:
        try:
            field_type = FieldType(spec.field_type)
        except ValueError as ex:
            raise InvalidFieldValue(f"Field #{idx}: unknown field type {spec.field_type!r}") from ex
        page = spec.page_index
        if not isinstance(page, int) or isinstance(page, bool) or not 0 <= page < doc.page_count:
            raise PageOutOfRange(
                f"Field #{idx}: page {page!r} not in 0..{doc.page_count - 1} of {doc.doc_id}"
            )
        problems = spec.geometry.problems()
        if problems:
            raise InvalidGeometry(f"Field #{idx}: " + "; ".join(problems))
        if spec.recipient_id is not None and spec.recipient_id not in recipient_ids:
            raise UnknownRecipient(f"Field #{idx}: recipient {spec.recipient_id!r} not on {doc.doc_id}")
        return spec, field_type

    def assign_recipient(self, field_id: str, recipient_id: str) -> FieldDefinition:
        definition = self._repo.get_field(field_id)
        if definition is None:
            raise UnknownField(f"Field {field_id!r} not found")
        with self._locks.hold(definition.doc_id):
            doc = self._repo.require_document(definition.doc_id)
            WorkflowEngine.ensure_editable(doc)
            recipient = self._repo.get_recipient(recipient_id)
            if recipient is None or recipient.doc_id != definition.doc_id:
                raise UnknownRecipient(
                    f"Recipient {recipient_id!r} does not belong to {definition.doc_id}"
                )
            self._repo.set_field_recipient(field_id, recipient_id)
        definition.recipient_id = recipient_id
        logger.info("Field %s assigned to %s", field_id, recipient_id)
        return definition

    def remove_field(self, field_id: str) -> None:
        definition = self._repo.get_field(field_id)
        if definition is None:
            raise UnknownField(f"Field {field_id!r} not found")
        with self._locks.hold(definition.doc_id):
            doc = self._repo.require_document(definition.doc_id)
            WorkflowEngine.ensure_editable(doc)
            self._repo.delete_field(field_id)
        logger.info("Field %s removed from %s", field_id, definition.doc_id)

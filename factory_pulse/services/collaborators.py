"""
Read-only queries against domain-rule collaborators.

Prerequisite rules never touch the ORM directly; they ask one of these
query objects whether a requirement is satisfied for a project. Each query
opens no transaction of its own and never writes.

Tests substitute plain fakes with the same method names.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select

from factory_pulse.models import db
from factory_pulse.models.collaborators import ProjectDocument, ProjectReview, SupplierQuote

logger = logging.getLogger(__name__)

# Documents in these statuses do not count towards a requirement
_INACTIVE_DOCUMENT_STATUSES = ("rejected", "archived")


class DocumentQuery:
    """Uploaded documents for a project."""

    def list_documents(self, project_id: str) -> list[dict]:
        stmt = (
            select(ProjectDocument)
            .where(
                ProjectDocument.project_id == project_id,
                ProjectDocument.status.notin_(_INACTIVE_DOCUMENT_STATUSES),
            )
            .order_by(ProjectDocument.id)
        )
        return [d.to_dict() for d in db.session.execute(stmt).scalars()]

    def has_document(self, project_id: str, document_type: str) -> bool:
        """True when a document of ``document_type`` is on file.

        A file whose name mentions the type (e.g. ``customer_po_2025.pdf`` for
        ``po``) also counts, matching how documents were tagged before typed
        uploads existed.
        """
        needle = document_type.lower()
        for doc in self.list_documents(project_id):
            if doc["document_type"] == document_type:
                return True
            if needle in (doc["file_name"] or "").lower():
                return True
        return False


class ReviewQuery:
    """Engineering / quality reviews for a project."""

    def review_summary(self, project_id: str) -> dict:
        stmt = (
            select(ProjectReview.status, func.count(ProjectReview.id))
            .where(ProjectReview.project_id == project_id)
            .group_by(ProjectReview.status)
        )
        by_status = {status: count for status, count in db.session.execute(stmt)}
        total = sum(by_status.values())
        approved = by_status.get("approved", 0)
        return {
            "total": total,
            "approved": approved,
            "rejected": by_status.get("rejected", 0),
            "open": total - approved - by_status.get("rejected", 0),
            "by_status": by_status,
        }


class SupplierQuoteQuery:
    """Supplier RFQ responses for a project."""

    def quote_summary(self, project_id: str) -> dict:
        stmt = (
            select(SupplierQuote.status, func.count(SupplierQuote.id))
            .where(SupplierQuote.project_id == project_id)
            .group_by(SupplierQuote.status)
        )
        by_status = {status: count for status, count in db.session.execute(stmt)}
        received = by_status.get("received", 0) + by_status.get("accepted", 0)
        return {
            "requested": sum(by_status.values()),
            "received": received,
            "outstanding": by_status.get("requested", 0),
            "by_status": by_status,
        }


@dataclass
class Collaborators:
    """Bundle handed to the prerequisite checker."""

    documents: DocumentQuery
    reviews: ReviewQuery
    supplier_quotes: SupplierQuoteQuery


def sql_collaborators() -> Collaborators:
    return Collaborators(
        documents=DocumentQuery(),
        reviews=ReviewQuery(),
        supplier_quotes=SupplierQuoteQuery(),
    )

"""
Factory Pulse Workflow Engine
Domain-rule collaborator models.

These tables are owned by other parts of the platform (document uploads,
engineering reviews, procurement). The workflow engine reads them to
evaluate stage prerequisites and never writes to them.

Models:
    - ProjectDocument: uploaded file attached to a project, typed by purpose
    - ProjectReview: engineering/quality review of a project
    - SupplierQuote: a supplier's answer to an RFQ for a project
"""

from datetime import datetime, timezone

from factory_pulse.models import db

# ── Constants ────────────────────────────────────────────────────────────────

DOCUMENT_TYPES = (
    "rfq", "drawing", "bom", "specification", "quote", "supplier_quote",
    "po", "contract", "work_order", "quality_plan", "shipping_doc",
    "delivery_confirmation", "other",
)
DOCUMENT_STATUSES = ("uploaded", "approved", "rejected", "archived")

REVIEW_TYPES = ("engineering", "quality", "production", "costing")
REVIEW_STATUSES = ("pending", "in_progress", "approved", "rejected", "changes_requested")

QUOTE_STATUSES = ("requested", "received", "accepted", "declined", "expired")


def _utcnow():
    return datetime.now(timezone.utc)


class ProjectDocument(db.Model):
    __tablename__ = "project_documents"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    document_type = db.Column(db.String(40), nullable=False, default="other")
    file_name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="uploaded",
                       comment="uploaded | approved | rejected | archived")
    uploaded_by = db.Column(db.String(150), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "document_type": self.document_type,
            "file_name": self.file_name,
            "status": self.status,
            "uploaded_by": self.uploaded_by,
        }

    def __repr__(self):
        return f"<ProjectDocument {self.id}: {self.document_type} {self.file_name}>"


class ProjectReview(db.Model):
    __tablename__ = "project_reviews"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    review_type = db.Column(db.String(30), nullable=False, default="engineering")
    reviewer_id = db.Column(db.String(150), nullable=True)
    status = db.Column(db.String(30), nullable=False, default="pending",
                       comment="pending | in_progress | approved | rejected | changes_requested")
    comments = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "review_type": self.review_type,
            "reviewer_id": self.reviewer_id,
            "status": self.status,
        }

    def __repr__(self):
        return f"<ProjectReview {self.id}: {self.review_type} {self.status}>"


class SupplierQuote(db.Model):
    __tablename__ = "supplier_quotes"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False)
    project_id = db.Column(db.String(36), nullable=False, index=True)
    supplier_id = db.Column(db.String(36), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="requested",
                       comment="requested | received | accepted | declined | expired")
    amount = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "supplier_id": self.supplier_id,
            "status": self.status,
            "amount": self.amount,
        }

    def __repr__(self):
        return f"<SupplierQuote {self.id}: {self.supplier_id} {self.status}>"

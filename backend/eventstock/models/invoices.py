from __future__ import annotations

from ..extensions import db
from eventstock.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Settlement document derived from an event's dispatch and return history.

    Totals (all cents):
        grand_total = sub_total - discount + adjustments_total
        pending     = max(0, grand_total - paid)

    Building an invoice never mutates the event or its return records.
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("number", name="uq_invoices_number"),
        db.Index("ix_invoices_event_status", "event_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(32), nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=True, index=True)

    # DRAFT or FINAL
    status = db.Column(db.String(16), nullable=False, default="DRAFT", index=True)

    # Discount percentage in basis points (1250 = 12.5%)
    discount_bps = db.Column(db.Integer, nullable=False, default=0)
    include_security = db.Column(db.Boolean, nullable=False, default=False)

    sub_total_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    adjustments_total_cents = db.Column(db.Integer, nullable=False, default=0)
    grand_total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    pending_cents = db.Column(db.Integer, nullable=False, default=0)

    issued_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship(
        "InvoiceLine",
        backref="invoice",
        lazy=True,
        order_by="InvoiceLine.position",
    )

    def __repr__(self) -> str:
        return f"<Invoice id={self.id} number={self.number!r} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "client_id": self.client_id,
            "event_id": self.event_id,
            "status": self.status,
            "discount_bps": self.discount_bps,
            "include_security": self.include_security,
            "totals": {
                "sub_total_cents": self.sub_total_cents,
                "discount_cents": self.discount_cents,
                "adjustments_total_cents": self.adjustments_total_cents,
                "grand_total_cents": self.grand_total_cents,
                "paid_cents": self.paid_cents,
                "pending_cents": self.pending_cents,
            },
            "lines": [line.to_dict() for line in self.lines],
            "issued_at": to_utc_z(self.issued_at),
            "created_at": to_utc_z(self.created_at),
        }


class InvoiceLine(db.Model):
    """Invoice line. kind is BASE (dispatch), ADJUSTMENT (return charges) or MANUAL."""
    __tablename__ = "invoice_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    kind = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    unit_type = db.Column(db.String(16), nullable=False, default="pcs")
    qty = db.Column(db.Integer, nullable=False)
    rate_cents = db.Column(db.Integer, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "product_id": self.product_id,
            "kind": self.kind,
            "description": self.description,
            "unit_type": self.unit_type,
            "qty": self.qty,
            "rate_cents": self.rate_cents,
            "amount_cents": self.amount_cents,
        }


class DocumentSequence(db.Model):
    """
    Per-prefix document counters (invoice numbers are allocated per month).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", "prefix", name="uq_document_sequences_type_prefix"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    prefix = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "prefix": self.prefix,
            "next_number": self.next_number,
        }

from __future__ import annotations

from ..extensions import db
from eventstock.time_utils import to_utc_z


class StockLedgerEntry(db.Model):
    """
    Append-only record of every stock pool mutation.

    pool is PRIMARY (products.stock_qty) or B2B (b2b_stock.quantity_available).
    Rows are never updated or deleted; return repayment of B2B allocations is
    derived by summing RETURN rows for a dispatch line.
    """
    __tablename__ = "stock_ledger"
    __table_args__ = (
        db.Index("ix_stock_ledger_product_occurred", "product_id", "occurred_at"),
        db.Index("ix_stock_ledger_dispatch_line_reason", "dispatch_line_id", "reason"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    pool = db.Column(db.String(16), nullable=False)
    b2b_stock_id = db.Column(db.Integer, db.ForeignKey("b2b_stock.id"), nullable=True, index=True)
    qty_change = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False, index=True)

    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=True, index=True)
    dispatch_line_id = db.Column(db.Integer, db.ForeignKey("event_dispatch_lines.id"), nullable=True)
    note = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "pool": self.pool,
            "b2b_stock_id": self.b2b_stock_id,
            "qty_change": self.qty_change,
            "reason": self.reason,
            "event_id": self.event_id,
            "dispatch_line_id": self.dispatch_line_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }


class AuditEvent(db.Model):
    """
    Append-only audit trail written in the same DB transaction as the action.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(64), nullable=False, index=True)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    payload = db.Column(db.JSON, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }

from __future__ import annotations

from ..extensions import db
from eventstock.references import ref_to
from eventstock.time_utils import to_utc_z


class Event(db.Model):
    """
    Rental engagement (aggregate root for dispatch/return settlement).

    LIFECYCLE (see services/event_state.py):
        DRAFT -> DISPATCHED -> PARTIALLY_RETURNED -> CLOSED

    return_closed is true iff every line of the latest dispatch is settled.
    version_id guards concurrent settlement passes (optimistic locking).
    """
    __tablename__ = "events"
    __table_args__ = (
        db.Index("ix_events_status_date_from", "status", "date_from"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    location = db.Column(db.String(255), nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("clients.id"), nullable=True, index=True)

    date_from = db.Column(db.DateTime(timezone=True), nullable=False)
    date_to = db.Column(db.DateTime(timezone=True), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    advance_cents = db.Column(db.Integer, nullable=False, default=0)
    security_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(24), nullable=False, default="DRAFT", index=True)
    return_closed = db.Column(db.Boolean, nullable=False, default=False)

    agreement_terms = db.Column(db.Text, nullable=True)
    # {items, advance_cents, security_cents, terms, grand_total_cents, saved_at}
    agreement_snapshot = db.Column(db.JSON, nullable=True)

    last_dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_returned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    dispatches = db.relationship(
        "EventDispatch",
        backref="event",
        lazy=True,
        order_by="EventDispatch.id",
    )
    returns = db.relationship(
        "EventReturn",
        backref="event",
        lazy=True,
        order_by="EventReturn.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Event id={self.id} name={self.name!r} status={self.status}>"

    @property
    def client_ref(self):
        return ref_to(self.client_id)

    @property
    def latest_dispatch(self) -> "EventDispatch | None":
        return self.dispatches[-1] if self.dispatches else None

    def returns_for(self, dispatch: "EventDispatch | None") -> list["EventReturn"]:
        if dispatch is None:
            return []
        return [r for r in self.returns if r.dispatch_id == dispatch.id]

    def to_dict(self, client: dict | None = None) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "location": self.location,
            "client_id": self.client_id,
            "client": client,
            "date_from": to_utc_z(self.date_from),
            "date_to": to_utc_z(self.date_to),
            "notes": self.notes,
            "advance_cents": self.advance_cents,
            "security_cents": self.security_cents,
            "status": self.status,
            "return_closed": self.return_closed,
            "agreement_terms": self.agreement_terms,
            "agreement_snapshot": self.agreement_snapshot,
            "dispatches": [d.to_dict() for d in self.dispatches],
            "returns": [r.to_dict() for r in self.returns],
            "last_dispatched_at": to_utc_z(self.last_dispatched_at),
            "last_returned_at": to_utc_z(self.last_returned_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class EventDispatch(db.Model):
    """
    Stock Out snapshot. IMMUTABLE once created.

    Prices are copied onto the lines so later product edits never change
    settlement math for this dispatch. Units still outstanding on the
    previous dispatch are carried onto this one (carried_qty).
    """
    __tablename__ = "event_dispatches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    note = db.Column(db.String(255), nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship(
        "EventDispatchLine",
        backref="dispatch",
        lazy=True,
        order_by="EventDispatchLine.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "total_cents": self.total_cents,
            "note": self.note,
            "dispatched_at": to_utc_z(self.dispatched_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class EventDispatchLine(db.Model):
    __tablename__ = "event_dispatch_lines"
    __table_args__ = (
        db.UniqueConstraint("dispatch_id", "product_id", name="uq_dispatch_lines_dispatch_product"),
        db.CheckConstraint("qty_to_send > 0", name="ck_dispatch_lines_qty_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    dispatch_id = db.Column(db.Integer, db.ForeignKey("event_dispatches.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Snapshot of product data at dispatch time
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(64), nullable=True)
    unit_type = db.Column(db.String(16), nullable=False)

    qty_to_send = db.Column(db.Integer, nullable=False)
    rate_cents = db.Column(db.Integer, nullable=False, default=0)
    buy_price_cents = db.Column(db.Integer, nullable=True)
    loss_price_cents = db.Column(db.Integer, nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False, default=0)

    # Source split: primary_qty + b2b_qty + carried_qty == qty_to_send
    primary_qty = db.Column(db.Integer, nullable=False, default=0)
    b2b_qty = db.Column(db.Integer, nullable=False, default=0)
    # Units still out from the previous dispatch; no pool was touched for them
    carried_qty = db.Column(db.Integer, nullable=False, default=0)

    allocations = db.relationship(
        "DispatchAllocation",
        backref="dispatch_line",
        lazy=True,
        order_by="DispatchAllocation.id",
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatch_id": self.dispatch_id,
            "product_id": self.product_id,
            "name": self.name,
            "sku": self.sku,
            "unit_type": self.unit_type,
            "qty_to_send": self.qty_to_send,
            "rate_cents": self.rate_cents,
            "buy_price_cents": self.buy_price_cents,
            "loss_price_cents": self.loss_price_cents,
            "amount_cents": self.amount_cents,
            "primary_qty": self.primary_qty,
            "b2b_qty": self.b2b_qty,
            "carried_qty": self.carried_qty,
            "allocations": [a.to_dict() for a in self.allocations],
        }


class DispatchAllocation(db.Model):
    """Units of a dispatch line drawn from a specific B2B pool."""
    __tablename__ = "dispatch_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    dispatch_line_id = db.Column(db.Integer, db.ForeignKey("event_dispatch_lines.id"), nullable=False, index=True)
    b2b_stock_id = db.Column(db.Integer, db.ForeignKey("b2b_stock.id"), nullable=False, index=True)
    supplier_name = db.Column(db.String(255), nullable=True)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    quantity = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "dispatch_line_id": self.dispatch_line_id,
            "b2b_stock_id": self.b2b_stock_id,
            "supplier_name": self.supplier_name,
            "unit_price_cents": self.unit_price_cents,
            "quantity": self.quantity,
        }


class EventReturn(db.Model):
    """
    One Stock In settlement pass against a dispatch. IMMUTABLE once created.

    declared_return_due_cents is what the caller believed was due; the
    authoritative figure is return_due_cents, computed server-side.
    """
    __tablename__ = "event_returns"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey("events.id"), nullable=False, index=True)
    dispatch_id = db.Column(db.Integer, db.ForeignKey("event_dispatches.id"), nullable=False, index=True)

    shortage_units = db.Column(db.Integer, nullable=False, default=0)
    shortage_cents = db.Column(db.Integer, nullable=False, default=0)
    damage_cents = db.Column(db.Integer, nullable=False, default=0)
    late_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    return_due_cents = db.Column(db.Integer, nullable=False, default=0)
    declared_return_due_cents = db.Column(db.Integer, nullable=True)
    all_completed = db.Column(db.Boolean, nullable=False, default=False)

    returned_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lines = db.relationship(
        "EventReturnLine",
        backref="event_return",
        lazy=True,
        order_by="EventReturnLine.id",
    )

    def totals_dict(self) -> dict:
        return {
            "shortage_units": self.shortage_units,
            "shortage_cents": self.shortage_cents,
            "damage_cents": self.damage_cents,
            "late_fee_cents": self.late_fee_cents,
            "return_due_cents": self.return_due_cents,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "dispatch_id": self.dispatch_id,
            "totals": self.totals_dict(),
            "declared_return_due_cents": self.declared_return_due_cents,
            "all_completed": self.all_completed,
            "returned_at": to_utc_z(self.returned_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class EventReturnLine(db.Model):
    __tablename__ = "event_return_lines"
    __table_args__ = (
        db.CheckConstraint("returned >= 0", name="ck_return_lines_returned_non_negative"),
        db.CheckConstraint("shortage >= 0", name="ck_return_lines_shortage_non_negative"),
        db.CheckConstraint(
            "already_returned + returned + shortage <= expected",
            name="ck_return_lines_within_expected",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("event_returns.id"), nullable=False, index=True)
    dispatch_line_id = db.Column(db.Integer, db.ForeignKey("event_dispatch_lines.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    unit_type = db.Column(db.String(16), nullable=False)

    expected = db.Column(db.Integer, nullable=False)
    # Units returned before this pass
    already_returned = db.Column(db.Integer, nullable=False, default=0)
    returned = db.Column(db.Integer, nullable=False, default=0)
    shortage = db.Column(db.Integer, nullable=False, default=0)
    close_out = db.Column(db.Boolean, nullable=False, default=False)

    rate_cents = db.Column(db.Integer, nullable=False, default=0)
    buy_price_cents = db.Column(db.Integer, nullable=True)
    # Effective loss price after fallback
    loss_price_cents = db.Column(db.Integer, nullable=False, default=0)

    damage_cents = db.Column(db.Integer, nullable=False, default=0)
    late_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    shortage_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    line_adjust_cents = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "dispatch_line_id": self.dispatch_line_id,
            "product_id": self.product_id,
            "name": self.name,
            "unit_type": self.unit_type,
            "expected": self.expected,
            "already_returned": self.already_returned,
            "returned": self.returned,
            "shortage": self.shortage,
            "close_out": self.close_out,
            "rate_cents": self.rate_cents,
            "buy_price_cents": self.buy_price_cents,
            "loss_price_cents": self.loss_price_cents,
            "damage_cents": self.damage_cents,
            "late_fee_cents": self.late_fee_cents,
            "shortage_cost_cents": self.shortage_cost_cents,
            "line_adjust_cents": self.line_adjust_cents,
        }

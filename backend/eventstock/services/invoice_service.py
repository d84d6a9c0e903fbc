# Overview: Service-layer operations for invoices; numbering, preview and persistence.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence, Invoice, InvoiceLine
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, parse_bool
from .concurrency import run_with_retry
from .event_service import get_event
from .ledger_service import append_audit_event
from .settlement import Settlement, calculate_settlement, parse_discount_bps, parse_manual_lines

INVOICE_STATUS_DRAFT = "DRAFT"
INVOICE_STATUS_FINAL = "FINAL"
VALID_INVOICE_STATUSES = (INVOICE_STATUS_DRAFT, INVOICE_STATUS_FINAL)

INVOICE_DOCUMENT_TYPE = "INVOICE"


def next_invoice_number(now=None, *, pad: int = 4) -> str:
    """
    Allocate the next invoice number for the month (YYYYMM-NNNN).

    The counter row is bumped with a single UPDATE so concurrent callers never
    share a number. Call it before adding other rows to the session: losing
    the race to create the month's row rolls the session back.
    """
    prefix = (now or utcnow()).strftime("%Y%m")
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.document_type == INVOICE_DOCUMENT_TYPE,
            DocumentSequence.prefix == prefix,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    def _current() -> int:
        return (
            db.session.query(DocumentSequence.next_number)
            .filter_by(document_type=INVOICE_DOCUMENT_TYPE, prefix=prefix)
            .scalar()
        ) - 1

    if db.session.execute(stmt).rowcount:
        number = _current()
    else:
        db.session.add(DocumentSequence(document_type=INVOICE_DOCUMENT_TYPE, prefix=prefix, next_number=2))
        try:
            db.session.flush()
            number = 1
        except IntegrityError:
            # Another caller created the month's row first.
            db.session.rollback()
            if not db.session.execute(stmt).rowcount:
                raise
            number = _current()

    return f"{prefix}-{number:0{pad}d}"


def _parse_options(options: dict) -> tuple:
    if options is None:
        options = {}
    if not isinstance(options, dict):
        raise ValidationError("Invalid JSON payload")
    manual = parse_manual_lines(options.get("manual_lines"))
    discount_bps = parse_discount_bps(options.get("discount_pct"))
    include_security = parse_bool(options.get("include_security", False), "include_security")
    status = str(options.get("status") or INVOICE_STATUS_DRAFT).strip().upper()
    if status not in VALID_INVOICE_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(VALID_INVOICE_STATUSES)}")
    return manual, discount_bps, include_security, status


def preview_invoice(event_id: int, options: dict | None = None) -> Settlement:
    """Settlement numbers for the event without persisting anything."""
    manual, discount_bps, include_security, _ = _parse_options(options)
    event = get_event(event_id)
    return calculate_settlement(
        event,
        manual_lines=manual,
        discount_bps=discount_bps,
        include_security=include_security,
    )


def build_invoice(event_id: int, options: dict | None = None, *, now=None) -> Invoice:
    """
    Persist an invoice for the event with a freshly allocated number.

    options: manual_lines, discount_pct, include_security, status (DRAFT|FINAL).
    The event and its return records are read, never changed.
    """
    manual, discount_bps, include_security, status = _parse_options(options)

    def _op() -> Invoice:
        when = now or utcnow()
        event = get_event(event_id)
        settlement = calculate_settlement(
            event,
            manual_lines=manual,
            discount_bps=discount_bps,
            include_security=include_security,
        )

        invoice = Invoice(
            number=next_invoice_number(when),
            client_id=event.client_id,
            event_id=event.id,
            status=status,
            discount_bps=settlement.discount_bps,
            include_security=include_security,
            sub_total_cents=settlement.sub_total_cents,
            discount_cents=settlement.discount_cents,
            adjustments_total_cents=settlement.adjustments_total_cents,
            grand_total_cents=settlement.grand_total_cents,
            paid_cents=settlement.paid_cents,
            pending_cents=settlement.pending_cents,
            issued_at=when,
        )
        db.session.add(invoice)
        db.session.flush()

        for position, line in enumerate(settlement.lines, start=1):
            db.session.add(InvoiceLine(
                invoice_id=invoice.id,
                position=position,
                product_id=line.product_id,
                kind=line.kind,
                description=line.description,
                unit_type=line.unit_type,
                qty=line.qty,
                rate_cents=line.rate_cents,
                amount_cents=line.amount_cents,
            ))

        append_audit_event(
            action="INVOICE_CREATED",
            entity_type="invoice",
            entity_id=invoice.id,
            payload={"number": invoice.number, "event_id": event.id, "grand_total_cents": invoice.grand_total_cents},
            occurred_at=when,
        )
        db.session.commit()
        return invoice

    invoice = run_with_retry(_op)
    current_app.logger.info(
        "Invoice %s created for event %s: grand_total_cents=%s pending_cents=%s",
        invoice.number, event_id, invoice.grand_total_cents, invoice.pending_cents,
    )
    return invoice


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError(f"Invoice {invoice_id} not found")
    return invoice


def list_event_invoices(event_id: int) -> list[Invoice]:
    get_event(event_id)
    return (
        db.session.query(Invoice)
        .filter_by(event_id=event_id)
        .order_by(Invoice.id.asc())
        .all()
    )

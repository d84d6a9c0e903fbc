# backend/eventstock/routes/events.py
"""
Event API routes: creation, agreement, Stock Out, Stock In and invoicing.
"""
from flask import Blueprint, request, jsonify

from eventstock.decorators import handle_service_errors
from eventstock.services import dispatch_service, event_service, invoice_service, ledger_service, return_service
from eventstock.validation import ValidationError, parse_bool


events_bp = Blueprint("events", __name__, url_prefix="/api/events")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@events_bp.route("", methods=["POST"])
@handle_service_errors
def create_event():
    """
    Create an event.

    Request body:
    {
        "name": str,
        "date_from": ISO-8601,
        "date_to": ISO-8601,
        "location", "client_id", "notes", "advance_cents", "security_cents" (optional)
    }
    """
    event = event_service.create_event(_json_body())
    return jsonify(event_service.event_to_dict(event)), 201


@events_bp.route("/<int:event_id>", methods=["GET"])
@handle_service_errors
def get_event(event_id: int):
    """?expand=client resolves the client reference into the full record."""
    expand = {part.strip() for part in request.args.get("expand", "").split(",")}
    event = event_service.get_event(event_id)
    return jsonify(event_service.event_to_dict(event, expand_client="client" in expand)), 200


@events_bp.route("/<int:event_id>/agreement", methods=["PUT"])
@handle_service_errors
def save_agreement(event_id: int):
    """
    Request body:
    {
        "items": [{"product_id": int, "qty": int, "rate_cents": int (optional)}],
        "advance_cents": int, "security_cents": int, "terms": str
    }
    """
    event = event_service.save_agreement(event_id, _json_body())
    return jsonify(event_service.event_to_dict(event)), 200


@events_bp.route("/<int:event_id>/dispatch", methods=["POST"])
@handle_service_errors
def dispatch_event(event_id: int):
    """
    Record a Stock Out. With "dry_run": true only the allocation plan is returned.

    Request body:
    {
        "items": [{"product_id": int, "quantity": int,
                   "source": "primary" | "b2b" | "auto",
                   "b2b_stock_id": int (optional), "rate_cents": int (optional)}],
        "note": str (optional),
        "dry_run": bool (optional)
    }

    Returns:
        201: Dispatch recorded
        200: Dry-run plan
        400: Invalid request / insufficient stock
        404: Event or product not found
        409: Event closed
    """
    data = _json_body()
    if parse_bool(data.get("dry_run", False), "dry_run"):
        return jsonify(dispatch_service.preview_dispatch(event_id, data.get("items"))), 200

    record = dispatch_service.dispatch(event_id, data.get("items"), note=data.get("note"))
    return jsonify(record.to_dict()), 201


@events_bp.route("/<int:event_id>/return-form", methods=["GET"])
@handle_service_errors
def return_form(event_id: int):
    return jsonify(return_service.return_form(event_id)), 200


@events_bp.route("/<int:event_id>/return", methods=["POST"])
@handle_service_errors
def submit_return(event_id: int):
    """
    Record a Stock In pass.

    Request body:
    {
        "items": [{"product_id": int, "returned": int,
                   "damage_cents": int, "late_fee_cents": int (optional),
                   "already_returned": int (optional), "close_out": bool}],
        "return_due_cents": int (optional, informational)
    }

    Returns:
        201: Return recorded
        400: Invalid request
        403: Return already completed
        409: Lines already returned by another submission
    """
    data = _json_body()
    result = return_service.submit_return(
        event_id,
        data.get("items"),
        return_due_cents=data.get("return_due_cents"),
    )
    return jsonify({
        "event": event_service.event_to_dict(result["event"]),
        "summary": result["summary"],
    }), 201


@events_bp.route("/<int:event_id>/return-summary", methods=["GET"])
@handle_service_errors
def return_summary(event_id: int):
    return jsonify({"summary": return_service.last_return_summary(event_id)}), 200


@events_bp.route("/<int:event_id>/invoice/preview", methods=["POST"])
@handle_service_errors
def preview_invoice(event_id: int):
    settlement = invoice_service.preview_invoice(event_id, _json_body())
    return jsonify(settlement.to_dict()), 200


@events_bp.route("/<int:event_id>/invoice", methods=["POST"])
@handle_service_errors
def build_invoice(event_id: int):
    """
    Request body:
    {
        "manual_lines": [{"description": str, "qty": int, "rate_cents": int,
                          "unit_type": str, "product_id": int (optional)}],
        "discount_pct": number (0-100),
        "include_security": bool,
        "status": "DRAFT" | "FINAL"
    }
    """
    invoice = invoice_service.build_invoice(event_id, _json_body())
    return jsonify(invoice.to_dict()), 201


@events_bp.route("/<int:event_id>/invoices", methods=["GET"])
@handle_service_errors
def list_invoices(event_id: int):
    invoices = invoice_service.list_event_invoices(event_id)
    return jsonify({"invoices": [inv.to_dict() for inv in invoices]}), 200


@events_bp.route("/<int:event_id>/audit", methods=["GET"])
@handle_service_errors
def event_audit(event_id: int):
    """Dispatch and return audit entries for the event, oldest first."""
    event = event_service.get_event(event_id)
    trail = ledger_service.get_audit_trail("event", event.id)
    return jsonify({"event_id": event.id, "audit": [entry.to_dict() for entry in trail]}), 200

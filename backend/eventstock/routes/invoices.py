# backend/eventstock/routes/invoices.py
from flask import Blueprint, jsonify

from eventstock.decorators import handle_service_errors
from eventstock.services import invoice_service


invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@handle_service_errors
def get_invoice(invoice_id: int):
    return jsonify(invoice_service.get_invoice(invoice_id).to_dict()), 200

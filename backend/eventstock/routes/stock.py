# backend/eventstock/routes/stock.py
"""
Stock pool API routes: B2B purchases, transfers between pools and the stock ledger.
"""
from flask import Blueprint, request, jsonify

from eventstock.decorators import handle_service_errors
from eventstock.services import stock_service
from eventstock.validation import ValidationError, parse_bool, parse_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@stock_bp.route("/products/<int:product_id>/transfer-to-b2b", methods=["POST"])
@handle_service_errors
def transfer_to_b2b(product_id: int):
    """
    Move units from the product's primary pool to a B2B pool.

    Request body:
    {
        "quantity": int,
        "b2b_stock_id": int (optional)
    }

    Returns:
        200: Updated B2B pool and product
        400: Invalid request / insufficient primary stock
        404: Product or pool not found
    """
    data = _json_body()
    b2b_stock_id = data.get("b2b_stock_id")
    target = stock_service.transfer_to_b2b(
        product_id,
        data.get("quantity"),
        b2b_stock_id=parse_int(b2b_stock_id, "b2b_stock_id", minimum=1) if b2b_stock_id is not None else None,
    )
    product = stock_service.get_product(product_id)
    return jsonify({"b2b_stock": target.to_dict(), "product": product.to_dict()}), 200


@stock_bp.route("/b2b/<int:b2b_stock_id>/transfer-to-primary", methods=["POST"])
@handle_service_errors
def transfer_to_primary(b2b_stock_id: int):
    """Request body: {"quantity": int}"""
    source = stock_service.transfer_from_b2b(b2b_stock_id, _json_body().get("quantity"))
    product = stock_service.get_product(source.product_id)
    return jsonify({"b2b_stock": source.to_dict(), "product": product.to_dict()}), 200


@stock_bp.route("/b2b", methods=["GET"])
@handle_service_errors
def list_b2b_stock():
    product_id = request.args.get("product_id")
    stocks = stock_service.list_b2b_stock(
        product_id=parse_int(product_id, "product_id", minimum=1) if product_id else None,
        include_logs=parse_bool(request.args.get("include_logs", "false"), "include_logs"),
    )
    return jsonify({"b2b_stock": stocks}), 200


@stock_bp.route("/b2b", methods=["POST"])
@handle_service_errors
def create_b2b_stock():
    """
    Record a supplier purchase; merges into an existing pool with the same item name.

    Request body:
    {
        "item_name": str,
        "supplier_name": str,
        "quantity": int,
        "price_cents": int,
        "product_id": int (optional)
    }
    """
    data = _json_body()
    product_id = data.get("product_id")
    stock, merged = stock_service.create_b2b_stock(
        data.get("item_name"),
        data.get("supplier_name"),
        data.get("quantity"),
        data.get("price_cents"),
        product_id=parse_int(product_id, "product_id", minimum=1) if product_id is not None else None,
    )
    return jsonify({"b2b_stock": stock.to_dict(include_logs=True), "merged": merged}), 200 if merged else 201


@stock_bp.route("/b2b/<int:b2b_stock_id>/purchases", methods=["POST"])
@handle_service_errors
def record_b2b_purchase(b2b_stock_id: int):
    """Request body: {"quantity": int, "price_cents": int, "supplier_name": str}"""
    data = _json_body()
    stock = stock_service.record_b2b_purchase(
        b2b_stock_id,
        data.get("quantity"),
        data.get("price_cents"),
        data.get("supplier_name"),
    )
    return jsonify({"b2b_stock": stock.to_dict(include_logs=True)}), 201


@stock_bp.route("/products/<int:product_id>/ledger", methods=["GET"])
@handle_service_errors
def product_ledger(product_id: int):
    limit = parse_int(request.args.get("limit", "100"), "limit", minimum=1)
    entries = stock_service.get_stock_ledger(product_id, limit=min(limit, 500))
    return jsonify({"entries": [e.to_dict() for e in entries]}), 200

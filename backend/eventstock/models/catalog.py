from __future__ import annotations

from ..extensions import db
from eventstock.time_utils import to_utc_z


def normalize_item_name(name: str | None) -> str:
    return (name or "").strip().lower()


class Client(db.Model):
    """
    Client master data (managed elsewhere; kept minimal for event references).
    """
    __tablename__ = "clients"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Client id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "phone": self.phone,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Rental product and its PRIMARY stock pool.

    stock_qty is the authoritative primary counter. It is only changed through
    stock_service (single conditional UPDATE), never by read-modify-write.

    PRICING:
    - rate_cents: rental rate charged per unit on dispatch
    - buy_price_cents: purchase cost
    - loss_price_cents: optional valuation for lost units; shortage costing
      falls back to buy price, then rate, when it is not set
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("stock_qty >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_name", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(64), nullable=False, default="general")
    unit_type = db.Column(db.String(16), nullable=False, default="pcs")

    # Authoritative storage in cents (frontend may only format for display)
    buy_price_cents = db.Column(db.Integer, nullable=True)
    rate_cents = db.Column(db.Integer, nullable=True)
    loss_price_cents = db.Column(db.Integer, nullable=True)

    stock_qty = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r} stock_qty={self.stock_qty}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "category": self.category,
            "unit_type": self.unit_type,
            "buy_price_cents": self.buy_price_cents,
            "rate_cents": self.rate_cents,
            "loss_price_cents": self.loss_price_cents,
            "stock_qty": self.stock_qty,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class B2BStock(db.Model):
    """
    Supplier-sourced (B2B) stock pool, optionally linked to a Product.

    quantity_available is never negative. Purchases add to it and append a
    B2BPurchaseLog row; it only decreases through dispatch allocation or an
    explicit transfer back to the primary pool.
    """
    __tablename__ = "b2b_stock"
    __table_args__ = (
        db.CheckConstraint("quantity_available >= 0", name="ck_b2b_stock_non_negative"),
        db.Index("ix_b2b_stock_product_last_used", "product_id", "last_used_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    item_name = db.Column(db.String(255), nullable=False)
    normalized_item_name = db.Column(db.String(255), nullable=False, index=True)
    supplier_name = db.Column(db.String(255), nullable=False)
    quantity_available = db.Column(db.Integer, nullable=False, default=0)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    product = db.relationship("Product", backref=db.backref("b2b_pools", lazy=True))
    purchase_logs = db.relationship(
        "B2BPurchaseLog",
        backref="b2b_stock",
        lazy=True,
        order_by="B2BPurchaseLog.id",
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<B2BStock id={self.id} item={self.item_name!r} qty={self.quantity_available}>"

    def to_dict(self, include_logs: bool = False) -> dict:
        data = {
            "id": self.id,
            "item_name": self.item_name,
            "supplier_name": self.supplier_name,
            "quantity_available": self.quantity_available,
            "unit_price_cents": self.unit_price_cents,
            "product_id": self.product_id,
            "last_used_at": to_utc_z(self.last_used_at),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_logs:
            data["purchase_logs"] = [log.to_dict() for log in self.purchase_logs]
        return data


class B2BPurchaseLog(db.Model):
    """One supplier purchase into a B2B pool. Append-only."""
    __tablename__ = "b2b_purchase_logs"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_b2b_purchase_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    b2b_stock_id = db.Column(db.Integer, db.ForeignKey("b2b_stock.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    price_cents = db.Column(db.Integer, nullable=False)
    supplier_name = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "b2b_stock_id": self.b2b_stock_id,
            "quantity": self.quantity,
            "price_cents": self.price_cents,
            "supplier_name": self.supplier_name,
            "created_at": to_utc_z(self.created_at),
        }

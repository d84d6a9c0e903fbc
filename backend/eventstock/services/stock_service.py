# backend/eventstock/services/stock_service.py
"""
Stock pools: PRIMARY (products.stock_qty) and B2B (b2b_stock.quantity_available).

INVARIANTS:
- No pool counter ever goes below zero. Every decrement is a single
  conditional UPDATE (qty = qty - n WHERE qty >= n); a lost race surfaces as
  InsufficientStockError / InsufficientPrimaryStockError, never as a negative count.
- Every pool mutation appends one StockLedgerEntry in the same transaction.
- Allocation is planned in full before any pool is touched.

B2B pools linked to a product are drawn in least-recently-used order
(last_used_at, then creation order) so supplier stock rotates evenly.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import or_

from ..extensions import db
from ..models import Product, B2BStock, B2BPurchaseLog, StockLedgerEntry, normalize_item_name
from ..signals import notify_stock_changed
from ..time_utils import utcnow
from ..validation import NotFoundError, ValidationError, parse_int, parse_cents
from .concurrency import apply_counter_delta, lock_for_update, run_with_retry
from .ledger_service import (
    POOL_PRIMARY,
    POOL_B2B,
    REASON_DISPATCH,
    REASON_PURCHASE,
    REASON_TRANSFER_IN,
    REASON_TRANSFER_OUT,
    append_audit_event,
    append_stock_entry,
    get_product_ledger,
)

SOURCE_PRIMARY = "primary"
SOURCE_B2B = "b2b"
SOURCE_AUTO = "auto"
VALID_SOURCES = (SOURCE_PRIMARY, SOURCE_B2B, SOURCE_AUTO)

INTERNAL_SUPPLIER = "Internal Transfer"


class StockError(Exception):
    """Raised when a stock pool operation fails."""
    code = "STOCK_ERROR"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.details = details


class InsufficientStockError(StockError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock for product {product_id}: requested {requested}, available {available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InsufficientPrimaryStockError(InsufficientStockError):
    code = "INSUFFICIENT_PRIMARY_STOCK"


@dataclass(frozen=True)
class PoolDraw:
    pool: str
    quantity: int
    b2b_stock_id: int | None = None
    supplier_name: str | None = None
    unit_price_cents: int = 0

    def to_dict(self) -> dict:
        return {
            "pool": self.pool,
            "quantity": self.quantity,
            "b2b_stock_id": self.b2b_stock_id,
            "supplier_name": self.supplier_name,
            "unit_price_cents": self.unit_price_cents,
        }


@dataclass(frozen=True)
class AllocationPlan:
    product_id: int
    requested: int
    draws: tuple[PoolDraw, ...] = field(default_factory=tuple)

    @property
    def primary_qty(self) -> int:
        return sum(d.quantity for d in self.draws if d.pool == POOL_PRIMARY)

    @property
    def b2b_qty(self) -> int:
        return sum(d.quantity for d in self.draws if d.pool == POOL_B2B)

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "primary_qty": self.primary_qty,
            "b2b_qty": self.b2b_qty,
            "draws": [d.to_dict() for d in self.draws],
        }


# =============================================================================
# Lookups
# =============================================================================

def get_product(product_id: int, *, lock: bool = False) -> Product:
    query = db.session.query(Product).filter_by(id=product_id)
    if lock:
        query = lock_for_update(query)
    product = query.first()
    if not product:
        raise NotFoundError(f"Product {product_id} not found")
    return product


def get_b2b_stock(b2b_stock_id: int, *, lock: bool = False) -> B2BStock:
    query = db.session.query(B2BStock).filter_by(id=b2b_stock_id)
    if lock:
        query = lock_for_update(query)
    stock = query.first()
    if not stock:
        raise NotFoundError(f"B2B stock {b2b_stock_id} not found")
    return stock


def linked_b2b_pools(product: Product, *, only_available: bool = True) -> list[B2BStock]:
    """
    B2B pools serving a product, least recently used first.

    A pool serves a product when it is linked by product_id, or when it is
    unlinked and its normalized item name equals the product name.
    """
    query = db.session.query(B2BStock).filter(
        or_(
            B2BStock.product_id == product.id,
            (B2BStock.product_id.is_(None))
            & (B2BStock.normalized_item_name == normalize_item_name(product.name)),
        )
    )
    if only_available:
        query = query.filter(B2BStock.quantity_available > 0)
    return query.order_by(
        B2BStock.last_used_at.is_(None).desc(),
        B2BStock.last_used_at.asc(),
        B2BStock.created_at.asc(),
        B2BStock.id.asc(),
    ).all()


def list_b2b_stock(product_id: int | None = None, include_logs: bool = False) -> list[dict]:
    query = db.session.query(B2BStock)
    if product_id is not None:
        query = query.filter(B2BStock.product_id == product_id)
    return [s.to_dict(include_logs=include_logs) for s in query.order_by(B2BStock.item_name.asc(), B2BStock.id.asc()).all()]


def get_stock_ledger(product_id: int, limit: int = 100) -> list[StockLedgerEntry]:
    get_product(product_id)
    return get_product_ledger(product_id, limit=limit)


# =============================================================================
# Allocation (dispatch)
# =============================================================================

def _draw_from_b2b(pools: list[B2BStock], needed: int) -> list[PoolDraw]:
    draws = []
    for pool in pools:
        if needed <= 0:
            break
        take = min(pool.quantity_available, needed)
        if take <= 0:
            continue
        draws.append(PoolDraw(
            pool=POOL_B2B,
            quantity=take,
            b2b_stock_id=pool.id,
            supplier_name=pool.supplier_name,
            unit_price_cents=pool.unit_price_cents or 0,
        ))
        needed -= take
    return draws


def plan_allocation(
    product: Product,
    quantity: int,
    source: str = SOURCE_PRIMARY,
    b2b_stock_id: int | None = None,
) -> AllocationPlan:
    """
    Decide which pools cover ``quantity`` units of ``product``. Reads only.

    Raises InsufficientStockError when the chosen source(s) cannot cover it.
    """
    if source not in VALID_SOURCES:
        raise ValidationError(f"source must be one of {', '.join(VALID_SOURCES)}")

    if b2b_stock_id is not None:
        if source == SOURCE_PRIMARY:
            raise ValidationError("b2b_stock_id is only valid with source b2b or auto")
        pool = get_b2b_stock(b2b_stock_id)
        if pool.product_id not in (None, product.id):
            raise ValidationError(f"B2B stock {b2b_stock_id} is not linked to product {product.id}")
        pools = [pool] if pool.quantity_available > 0 else []
    else:
        pools = linked_b2b_pools(product) if source != SOURCE_PRIMARY else []

    primary_available = product.stock_qty or 0
    pooled_available = sum(p.quantity_available for p in pools)

    draws: list[PoolDraw] = []
    if source == SOURCE_PRIMARY:
        if quantity > primary_available:
            raise InsufficientStockError(product.id, quantity, primary_available)
        draws.append(PoolDraw(pool=POOL_PRIMARY, quantity=quantity))

    elif source == SOURCE_B2B:
        if quantity > pooled_available:
            raise InsufficientStockError(product.id, quantity, pooled_available)
        draws.extend(_draw_from_b2b(pools, quantity))

    else:
        available = primary_available + pooled_available
        if quantity > available:
            raise InsufficientStockError(product.id, quantity, available)
        from_primary = min(primary_available, quantity)
        if from_primary:
            draws.append(PoolDraw(pool=POOL_PRIMARY, quantity=from_primary))
        draws.extend(_draw_from_b2b(pools, quantity - from_primary))

    return AllocationPlan(product_id=product.id, requested=quantity, draws=tuple(draws))


def apply_allocation(plan: AllocationPlan, *, event_id: int, dispatch_line_id: int, now=None) -> None:
    """
    Apply a planned allocation with conditional decrements.

    Must run inside the caller's unit of work: on a lost race this raises and
    the caller's rollback undoes any draws already applied.
    """
    now = now or utcnow()
    for draw in plan.draws:
        if draw.pool == POOL_PRIMARY:
            ok = apply_counter_delta(Product.stock_qty, row_id=plan.product_id, delta=-draw.quantity)
            if not ok:
                available = db.session.query(Product.stock_qty).filter_by(id=plan.product_id).scalar() or 0
                raise InsufficientStockError(plan.product_id, plan.requested, available)
        else:
            ok = apply_counter_delta(
                B2BStock.quantity_available,
                row_id=draw.b2b_stock_id,
                delta=-draw.quantity,
                extra_values={"last_used_at": now},
            )
            if not ok:
                available = (
                    db.session.query(B2BStock.quantity_available).filter_by(id=draw.b2b_stock_id).scalar() or 0
                )
                raise InsufficientStockError(plan.product_id, plan.requested, available)

        append_stock_entry(
            product_id=plan.product_id,
            pool=draw.pool,
            b2b_stock_id=draw.b2b_stock_id,
            qty_change=-draw.quantity,
            reason=REASON_DISPATCH,
            event_id=event_id,
            dispatch_line_id=dispatch_line_id,
            occurred_at=now,
        )


def restock(
    *,
    product_id: int,
    quantity: int,
    pool: str,
    reason: str,
    b2b_stock_id: int | None = None,
    event_id: int | None = None,
    dispatch_line_id: int | None = None,
    now=None,
) -> None:
    """Add units back to a pool (caller's unit of work)."""
    if quantity <= 0:
        return
    if pool == POOL_PRIMARY:
        ok = apply_counter_delta(Product.stock_qty, row_id=product_id, delta=quantity)
    else:
        ok = apply_counter_delta(B2BStock.quantity_available, row_id=b2b_stock_id, delta=quantity)
    if not ok:
        raise NotFoundError(f"Stock pool for product {product_id} not found")

    append_stock_entry(
        product_id=product_id,
        pool=pool,
        b2b_stock_id=b2b_stock_id,
        qty_change=quantity,
        reason=reason,
        event_id=event_id,
        dispatch_line_id=dispatch_line_id,
        occurred_at=now,
    )


# =============================================================================
# Transfers between pools
# =============================================================================

def _transfer_target(product: Product, b2b_stock_id: int | None) -> B2BStock:
    if b2b_stock_id is not None:
        target = get_b2b_stock(b2b_stock_id, lock=True)
        if target.product_id is None:
            target.product_id = product.id
        elif target.product_id != product.id:
            raise ValidationError(f"B2B stock {b2b_stock_id} is not linked to product {product.id}")
        return target

    linked = (
        db.session.query(B2BStock)
        .filter(B2BStock.product_id == product.id)
        .order_by(B2BStock.id.asc())
        .first()
    )
    if linked:
        return linked

    target = B2BStock(
        item_name=product.name,
        normalized_item_name=normalize_item_name(product.name),
        supplier_name=INTERNAL_SUPPLIER,
        quantity_available=0,
        unit_price_cents=product.buy_price_cents or 0,
        product_id=product.id,
    )
    db.session.add(target)
    db.session.flush()
    return target


def transfer_to_b2b(product_id: int, quantity, b2b_stock_id: int | None = None) -> B2BStock:
    """
    Move units from a product's primary pool into a B2B pool.

    With no b2b_stock_id the product's first linked pool is used, created on
    demand. Fails with InsufficientPrimaryStockError and leaves both pools
    unchanged when the primary pool cannot cover the quantity.
    """
    qty = parse_int(quantity, "quantity", minimum=1)

    def _op() -> B2BStock:
        product = get_product(product_id, lock=True)
        target = _transfer_target(product, b2b_stock_id)

        if not apply_counter_delta(Product.stock_qty, row_id=product.id, delta=-qty):
            available = db.session.query(Product.stock_qty).filter_by(id=product.id).scalar() or 0
            raise InsufficientPrimaryStockError(product.id, qty, available)
        apply_counter_delta(B2BStock.quantity_available, row_id=target.id, delta=qty)

        now = utcnow()
        append_stock_entry(
            product_id=product.id, pool=POOL_PRIMARY, qty_change=-qty,
            reason=REASON_TRANSFER_OUT, occurred_at=now,
        )
        append_stock_entry(
            product_id=product.id, pool=POOL_B2B, b2b_stock_id=target.id, qty_change=qty,
            reason=REASON_TRANSFER_IN, occurred_at=now,
        )
        append_audit_event(
            action="STOCK_TRANSFER_TO_B2B",
            entity_type="b2b_stock",
            entity_id=target.id,
            payload={"product_id": product.id, "quantity": qty},
            occurred_at=now,
        )
        db.session.commit()
        return target

    target = run_with_retry(_op)
    notify_stock_changed([product_id], reason="transfer_to_b2b", b2b_stock_id=target.id)
    return target


def transfer_from_b2b(b2b_stock_id: int, quantity) -> B2BStock:
    """Move units from a linked B2B pool back into its product's primary pool."""
    qty = parse_int(quantity, "quantity", minimum=1)

    def _op() -> B2BStock:
        source = get_b2b_stock(b2b_stock_id, lock=True)
        if source.product_id is None:
            raise StockError(f"B2B stock {b2b_stock_id} is not linked to a product")

        if not apply_counter_delta(B2BStock.quantity_available, row_id=source.id, delta=-qty):
            available = db.session.query(B2BStock.quantity_available).filter_by(id=source.id).scalar() or 0
            raise InsufficientStockError(source.product_id, qty, available)
        apply_counter_delta(Product.stock_qty, row_id=source.product_id, delta=qty)

        now = utcnow()
        append_stock_entry(
            product_id=source.product_id, pool=POOL_B2B, b2b_stock_id=source.id, qty_change=-qty,
            reason=REASON_TRANSFER_OUT, occurred_at=now,
        )
        append_stock_entry(
            product_id=source.product_id, pool=POOL_PRIMARY, qty_change=qty,
            reason=REASON_TRANSFER_IN, occurred_at=now,
        )
        append_audit_event(
            action="STOCK_TRANSFER_TO_PRIMARY",
            entity_type="b2b_stock",
            entity_id=source.id,
            payload={"product_id": source.product_id, "quantity": qty},
            occurred_at=now,
        )
        db.session.commit()
        return source

    source = run_with_retry(_op)
    notify_stock_changed([source.product_id], reason="transfer_from_b2b", b2b_stock_id=source.id)
    return source


# =============================================================================
# B2B purchases
# =============================================================================

def _match_product_by_name(item_name: str) -> Product | None:
    return (
        db.session.query(Product)
        .filter(db.func.lower(Product.name) == normalize_item_name(item_name))
        .order_by(Product.id.asc())
        .first()
    )


def _record_purchase(stock: B2BStock, qty: int, price_cents: int, supplier_name: str, now) -> None:
    apply_counter_delta(
        B2BStock.quantity_available,
        row_id=stock.id,
        delta=qty,
        extra_values={"unit_price_cents": price_cents, "supplier_name": supplier_name},
    )
    db.session.add(B2BPurchaseLog(
        b2b_stock_id=stock.id,
        quantity=qty,
        price_cents=price_cents,
        supplier_name=supplier_name,
        created_at=now,
    ))
    append_stock_entry(
        product_id=stock.product_id,
        pool=POOL_B2B,
        b2b_stock_id=stock.id,
        qty_change=qty,
        reason=REASON_PURCHASE,
        note=supplier_name,
        occurred_at=now,
    )


def _require_text(value, field_name: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(f"{field_name} is required")
    if len(text) > 255:
        raise ValidationError(f"{field_name} exceeds max length 255")
    return text


def create_b2b_stock(
    item_name,
    supplier_name,
    quantity,
    price_cents,
    product_id: int | None = None,
) -> tuple[B2BStock, bool]:
    """
    Register a supplier purchase as B2B stock.

    Purchases of an item already held (same normalized name) merge into the
    existing pool. A new pool links to product_id, or to the product whose
    name matches case-insensitively. Returns (stock, merged).
    """
    name = _require_text(item_name, "item_name")
    supplier = _require_text(supplier_name, "supplier_name")
    qty = parse_int(quantity, "quantity", minimum=1)
    price = parse_cents(price_cents, "price_cents")

    def _op() -> tuple[B2BStock, bool]:
        product = get_product(product_id) if product_id is not None else None
        now = utcnow()

        existing = (
            lock_for_update(db.session.query(B2BStock))
            .filter(B2BStock.normalized_item_name == normalize_item_name(name))
            .order_by(B2BStock.id.asc())
            .first()
        )
        merged = existing is not None
        if existing:
            stock = existing
            if stock.product_id is None:
                linked = product or _match_product_by_name(name)
                stock.product_id = linked.id if linked else None
        else:
            linked = product or _match_product_by_name(name)
            stock = B2BStock(
                item_name=name,
                normalized_item_name=normalize_item_name(name),
                supplier_name=supplier,
                quantity_available=0,
                unit_price_cents=price,
                product_id=linked.id if linked else None,
            )
            db.session.add(stock)
        db.session.flush()

        _record_purchase(stock, qty, price, supplier, now)
        append_audit_event(
            action="B2B_PURCHASE",
            entity_type="b2b_stock",
            entity_id=stock.id,
            payload={"quantity": qty, "price_cents": price, "supplier_name": supplier, "merged": merged},
            occurred_at=now,
        )
        db.session.commit()
        return stock, merged

    stock, merged = run_with_retry(_op)
    notify_stock_changed([stock.product_id], reason="b2b_purchase", b2b_stock_id=stock.id)
    return stock, merged


def record_b2b_purchase(b2b_stock_id: int, quantity, price_cents, supplier_name) -> B2BStock:
    """Add a purchase to an existing B2B pool (updates unit price and supplier)."""
    supplier = _require_text(supplier_name, "supplier_name")
    qty = parse_int(quantity, "quantity", minimum=1)
    price = parse_cents(price_cents, "price_cents")

    def _op() -> B2BStock:
        stock = get_b2b_stock(b2b_stock_id, lock=True)
        now = utcnow()
        _record_purchase(stock, qty, price, supplier, now)
        append_audit_event(
            action="B2B_PURCHASE",
            entity_type="b2b_stock",
            entity_id=stock.id,
            payload={"quantity": qty, "price_cents": price, "supplier_name": supplier, "merged": True},
            occurred_at=now,
        )
        db.session.commit()
        return stock

    stock = run_with_retry(_op)
    notify_stock_changed([stock.product_id], reason="b2b_purchase", b2b_stock_id=stock.id)
    return stock

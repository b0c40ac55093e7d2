from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import update

from app.extensions import db
from app.models import Order, OrderItem, Product
from app.utils.errors import InsufficientStock, NotFoundError


@dataclass
class StockIssue:
    product_id: int
    required: int
    available: int

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "required": self.required, "available": self.available}


@dataclass
class StockCheckResult:
    available: bool
    issues: list[StockIssue] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"available": self.available, "issues": [i.to_dict() for i in self.issues]}


def _required_by_product(items: list[OrderItem]) -> dict[int, int]:
    required: dict[int, int] = {}
    for item in items:
        if item.stock_reserved:
            continue
        pid = int(item.product_id)
        required[pid] = required.get(pid, 0) + max(0, int(item.quantity or 0))
    return required


def check_availability(order_id: int) -> StockCheckResult:
    """Re-check current stock for every unreserved line of an order.

    Lines reserved at order creation already hold their units. Missing or
    inactive products report zero available.
    """
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    issues: list[StockIssue] = []
    for pid, qty in _required_by_product(list(order.items)).items():
        product = db.session.get(Product, pid)
        on_hand = int(product.stock_quantity or 0) if product is not None and product.is_active else 0
        if qty > on_hand:
            issues.append(StockIssue(product_id=pid, required=qty, available=max(0, on_hand)))
    return StockCheckResult(available=not issues, issues=issues)


def _decrement(product_id: int, quantity: int) -> bool:
    result = db.session.execute(
        update(Product)
        .where(
            Product.id == int(product_id),
            Product.is_active.is_(True),
            Product.stock_quantity >= int(quantity),
        )
        .values(stock_quantity=Product.stock_quantity - int(quantity))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _increment(product_id: int, quantity: int) -> None:
    db.session.execute(
        update(Product)
        .where(Product.id == int(product_id))
        .values(stock_quantity=Product.stock_quantity + int(quantity))
        .execution_options(synchronize_session=False)
    )


def commit_stock(order: Order) -> None:
    """Decrement stock for unreserved lines inside the caller's transaction.

    A guarded UPDATE per product means a concurrent buyer that took the last
    units makes this raise InsufficientStock, aborting the caller's commit.
    """
    for pid, qty in _required_by_product(list(order.items)).items():
        if qty <= 0:
            continue
        if not _decrement(pid, qty):
            raise InsufficientStock(
                f"product {pid} no longer has {qty} units",
                details={"product_id": pid, "required": qty},
            )
    for item in order.items:
        item.stock_reserved = False
    order.stock_reserved = False


def reserve_stock(order: Order) -> bool:
    """Provisionally hold stock for a pending order. All lines or none."""
    taken: list[tuple[int, int]] = []
    for item in order.items:
        qty = max(0, int(item.quantity or 0))
        if qty and not _decrement(int(item.product_id), qty):
            for pid, q in taken:
                _increment(pid, q)
            return False
        taken.append((int(item.product_id), qty))
    for item in order.items:
        item.stock_reserved = True
    order.stock_reserved = True
    return True


def release_reserved_stock(order: Order) -> int:
    """Return provisionally held units to stock; returns units restored."""
    restored = 0
    for item in order.items:
        if not item.stock_reserved:
            continue
        qty = max(0, int(item.quantity or 0))
        if qty:
            _increment(int(item.product_id), qty)
            restored += qty
        item.stock_reserved = False
    order.stock_reserved = False
    return restored

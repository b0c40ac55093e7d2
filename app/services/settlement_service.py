from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime

from flask import current_app
from sqlalchemy import func, update

from app.extensions import db
from app.models import (
    Delivery,
    DeliveryFeeTransaction,
    DeliveryStatus,
    Escrow,
    EscrowStatus,
    Order,
    Payout,
    PayoutStatus,
    Product,
    WalletOwner,
    WalletTxnType,
)
from app.utils.commission import line_commission_minor, split_delivery_fee_minor
from app.utils.errors import EscrowAlreadyReleased, EscrowNotFound, NotFoundError
from app.utils.wallets import get_or_create_wallet, post_txn


@dataclass
class SettlementBreakdown:
    order_id: int
    escrow_amount_minor: int
    merchant_earnings_minor: int
    commission_minor: int
    delivery_fee_minor: int
    rider_amount_minor: int
    platform_delivery_minor: int
    rider_id: int | None = None

    @property
    def platform_total_minor(self) -> int:
        return int(self.commission_minor) + int(self.platform_delivery_minor)

    def to_dict(self) -> dict:
        payload = asdict(self)
        payload["platform_total_minor"] = self.platform_total_minor
        return payload


def _line_wholesale_minor(item) -> int:
    if item.wholesale_price_minor is not None:
        return int(item.wholesale_price_minor)
    # Orders captured before wholesale snapshots existed fall back to the live price.
    product = db.session.get(Product, int(item.product_id))
    if product is None:
        return int(item.unit_price_minor or 0)
    return int(product.price_minor or 0)


def compute_settlement(order: Order, escrow: Escrow, *, rider_id: int | None = None) -> SettlementBreakdown:
    merchant_minor = 0
    commission_minor = 0
    for item in order.items:
        qty = max(0, int(item.quantity or 0))
        wholesale = _line_wholesale_minor(item)
        merchant_minor += wholesale * qty
        commission_minor += line_commission_minor(
            retail_minor=int(item.unit_price_minor or 0),
            wholesale_minor=wholesale,
            quantity=qty,
        )

    fee = int(escrow.delivery_fee_minor or 0)
    if rider_id is None:
        rider_minor, platform_delivery_minor = 0, fee
    else:
        rider_minor, platform_delivery_minor = split_delivery_fee_minor(fee)

    return SettlementBreakdown(
        order_id=int(order.id),
        escrow_amount_minor=int(escrow.amount_minor or 0),
        merchant_earnings_minor=int(merchant_minor),
        commission_minor=int(commission_minor),
        delivery_fee_minor=fee,
        rider_amount_minor=int(rider_minor),
        platform_delivery_minor=int(platform_delivery_minor),
        rider_id=int(rider_id) if rider_id is not None else None,
    )


def hold_escrow(order: Order) -> Escrow:
    """Stage the HELD escrow row inside the caller's confirmation transaction."""
    escrow = Escrow(
        order_id=int(order.id),
        merchant_id=int(order.merchant_id),
        amount_minor=int(order.total_amount_minor or 0),
        delivery_fee_minor=int(order.delivery_fee_minor or 0),
        status=EscrowStatus.HELD.value,
        held_at=datetime.utcnow(),
    )
    db.session.add(escrow)
    return escrow


def _claim_release(escrow_id: int, source: str) -> bool:
    result = db.session.execute(
        update(Escrow)
        .where(Escrow.id == int(escrow_id), Escrow.status == EscrowStatus.HELD.value)
        .values(status=EscrowStatus.RELEASED.value, released_at=datetime.utcnow(), released_by=(source or "system")[:32])
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _earning_rider_id(delivery: Delivery | None) -> int | None:
    # Only a completed drop earns the rider share; cancelled or in-flight
    # deliveries settle like an unassigned one.
    if delivery is None or delivery.rider_id is None:
        return None
    if (delivery.status or "") != DeliveryStatus.DELIVERED.value:
        return None
    return int(delivery.rider_id)


def release_escrow(order_id: int, *, source: str = "system") -> SettlementBreakdown:
    """Release a HELD escrow into payout and wallets in one transaction.

    The HELD -> RELEASED flip is a conditional UPDATE, so two concurrent
    callers cannot both credit wallets: the loser sees rowcount 0 and gets
    EscrowAlreadyReleased with nothing written.
    """
    escrow = Escrow.query.filter_by(order_id=int(order_id)).first()
    if escrow is None:
        raise EscrowNotFound(f"no escrow for order {order_id}")
    if (escrow.status or "") != EscrowStatus.HELD.value:
        raise EscrowAlreadyReleased(f"escrow for order {order_id} already released")
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError(f"order {order_id} not found")

    delivery = Delivery.query.filter_by(order_id=int(order.id)).first()
    rider_id = _earning_rider_id(delivery)
    breakdown = compute_settlement(order, escrow, rider_id=rider_id)

    try:
        if not _claim_release(int(escrow.id), source):
            raise EscrowAlreadyReleased(f"escrow for order {order_id} already released")

        if breakdown.merchant_earnings_minor > 0:
            db.session.add(
                Payout(
                    order_id=int(order.id),
                    merchant_id=int(order.merchant_id),
                    amount_minor=breakdown.merchant_earnings_minor,
                    status=PayoutStatus.PENDING.value,
                )
            )

        if rider_id is not None and breakdown.rider_amount_minor > 0:
            rider_wallet = get_or_create_wallet(WalletOwner.RIDER, rider_id)
            post_txn(
                rider_wallet,
                WalletTxnType.CREDIT,
                breakdown.rider_amount_minor,
                reference=f"order:{int(order.id)}:rider_fee",
                kind="delivery_fee",
                order_id=int(order.id),
                description=f"Delivery fee for {order.order_number}",
            )
        if rider_id is not None and delivery is not None:
            db.session.add(
                DeliveryFeeTransaction(
                    delivery_id=int(delivery.id),
                    rider_id=rider_id,
                    order_id=int(order.id),
                    total_fee_minor=breakdown.delivery_fee_minor,
                    rider_amount_minor=breakdown.rider_amount_minor,
                    platform_amount_minor=breakdown.platform_delivery_minor,
                )
            )

        if breakdown.platform_total_minor > 0:
            platform_wallet = get_or_create_wallet(WalletOwner.PLATFORM)
            post_txn(
                platform_wallet,
                WalletTxnType.CREDIT,
                breakdown.platform_total_minor,
                reference=f"order:{int(order.id)}:platform_revenue",
                kind="platform_revenue",
                order_id=int(order.id),
                description=(
                    f"Commission {breakdown.commission_minor} + delivery share "
                    f"{breakdown.platform_delivery_minor} for {order.order_number}"
                ),
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    current_app.logger.info(json.dumps({"event": "escrow_released", "source": source, **breakdown.to_dict()}))
    return breakdown


def release_if_held(order_id: int, *, source: str = "system") -> SettlementBreakdown | None:
    """Release entry point for callers that may race each other.

    Customer confirmation, the auto-release sweep and the admin button all
    land here; losing the race is a no-op instead of an error.
    """
    try:
        return release_escrow(order_id, source=source)
    except EscrowAlreadyReleased:
        current_app.logger.info("escrow_release_skipped order_id=%s source=%s reason=already_released", order_id, source)
        return None


def process_merchant_payouts(merchant_id: int) -> dict:
    """Settle all PENDING payouts for a merchant into its wallet."""
    payouts = (
        Payout.query.filter_by(merchant_id=int(merchant_id), status=PayoutStatus.PENDING.value)
        .order_by(Payout.id.asc())
        .all()
    )
    if not payouts:
        return {"merchant_id": int(merchant_id), "processed": 0, "amount_minor": 0}
    total = 0
    processed = 0
    try:
        wallet = get_or_create_wallet(WalletOwner.MERCHANT, int(merchant_id))
        now = datetime.utcnow()
        for payout in payouts:
            result = db.session.execute(
                update(Payout)
                .where(Payout.id == int(payout.id), Payout.status == PayoutStatus.PENDING.value)
                .values(status=PayoutStatus.COMPLETED.value, processed_at=now)
                .execution_options(synchronize_session=False)
            )
            if int(result.rowcount or 0) != 1:
                continue
            post_txn(
                wallet,
                WalletTxnType.CREDIT,
                int(payout.amount_minor or 0),
                reference=f"payout:{int(payout.id)}",
                kind="merchant_payout",
                order_id=int(payout.order_id),
                description=f"Payout for order {int(payout.order_id)}",
            )
            total += int(payout.amount_minor or 0)
            processed += 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"merchant_id": int(merchant_id), "processed": processed, "amount_minor": total}


def merchant_balances(merchant_id: int) -> dict:
    held = (
        db.session.query(func.coalesce(func.sum(Escrow.amount_minor), 0))
        .filter(Escrow.merchant_id == int(merchant_id), Escrow.status == EscrowStatus.HELD.value)
        .scalar()
    )
    pending = (
        db.session.query(func.coalesce(func.sum(Payout.amount_minor), 0))
        .filter(Payout.merchant_id == int(merchant_id), Payout.status == PayoutStatus.PENDING.value)
        .scalar()
    )
    paid = (
        db.session.query(func.coalesce(func.sum(Payout.amount_minor), 0))
        .filter(Payout.merchant_id == int(merchant_id), Payout.status == PayoutStatus.COMPLETED.value)
        .scalar()
    )
    return {
        "merchant_id": int(merchant_id),
        "escrow_held_minor": int(held or 0),
        "payout_pending_minor": int(pending or 0),
        "payout_completed_minor": int(paid or 0),
    }


from __future__ import annotations

import json
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.integrations.messaging.base import PromptButton
from app.models import (
    Delivery,
    DeliveryEvent,
    DeliveryStatus,
    Order,
    OrderStatus,
    Rider,
    RiderApproval,
    RiderStatus,
    Severity,
)
from app.services import notification_service
from app.services.settlement_service import release_if_held
from app.utils.commission import format_naira
from app.utils.env import env_int
from app.utils.errors import (
    DeliveryAlreadyExists,
    InvalidTransition,
    MerchantLocationMissing,
    NotFoundError,
    OrderNotPaid,
    RiderUnavailable,
    ValidationError,
)
from app.utils.events import log_event
from app.utils.sequences import DELIVERY_PREFIX, next_number

_CANDIDATE_LIMIT = 10

_TIMESTAMP_FIELDS = {
    DeliveryStatus.PICKED_UP: "picked_up_at",
    DeliveryStatus.IN_TRANSIT: "in_transit_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.CANCELLED: "cancelled_at",
}

_ORDER_STATUS_MIRROR = {
    DeliveryStatus.PICKED_UP: OrderStatus.SHIPPED,
    DeliveryStatus.DELIVERED: OrderStatus.DELIVERED,
    DeliveryStatus.CANCELLED: OrderStatus.CANCELLED,
}

_CUSTOMER_MESSAGES = {
    DeliveryStatus.PICKED_UP: "Your order {order_number} has been picked up by the rider.",
    DeliveryStatus.IN_TRANSIT: "Your order {order_number} is on its way to you.",
}

CONFIRM_BUTTON_PREFIX = "confirm_delivery:"
REPORT_BUTTON_PREFIX = "report_issue:"


def auto_release_hours() -> int:
    return env_int("AUTO_RELEASE_HOURS", 48, minimum=1, maximum=24 * 30)


# -------------------------
# helpers
# -------------------------


def _get_delivery(delivery_id: int) -> Delivery:
    delivery = db.session.get(Delivery, int(delivery_id))
    if delivery is None:
        raise NotFoundError(f"delivery {delivery_id} not found")
    return delivery


def _claim_rider(rider_id: int) -> bool:
    result = db.session.execute(
        update(Rider)
        .where(
            Rider.id == int(rider_id),
            Rider.status == RiderStatus.AVAILABLE.value,
            Rider.approval_status == RiderApproval.APPROVED.value,
        )
        .values(status=RiderStatus.BUSY.value, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _free_rider(rider_id: int | None, *, completed: bool = False) -> None:
    if rider_id is None:
        return
    values = {"status": RiderStatus.AVAILABLE.value, "updated_at": datetime.utcnow()}
    if completed:
        values["total_deliveries"] = Rider.total_deliveries + 1
    db.session.execute(
        update(Rider)
        .where(Rider.id == int(rider_id), Rider.status == RiderStatus.BUSY.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def claim_available_rider(*, exclude_ids: list[int] | None = None) -> Rider | None:
    """Flip the first AVAILABLE approved rider to BUSY.

    First-found, no ranking. A candidate grabbed by a concurrent caller
    between the read and the conditional UPDATE is skipped.
    """
    q = Rider.query.filter(
        Rider.status == RiderStatus.AVAILABLE.value,
        Rider.approval_status == RiderApproval.APPROVED.value,
    )
    exclude = [int(x) for x in (exclude_ids or []) if x is not None]
    if exclude:
        q = q.filter(~Rider.id.in_(exclude))
    for rider in q.order_by(Rider.id.asc()).limit(_CANDIDATE_LIMIT).all():
        if _claim_rider(int(rider.id)):
            db.session.expire(rider)
            return rider
    return None


def _guarded_update(delivery_id: int, expected: DeliveryStatus, *, expect_rider=..., **values) -> bool:
    conditions = [Delivery.id == int(delivery_id), Delivery.status == expected.value]
    if expect_rider is not ...:
        conditions.append(
            Delivery.rider_id.is_(None) if expect_rider is None else Delivery.rider_id == int(expect_rider)
        )
    values["updated_at"] = datetime.utcnow()
    result = db.session.execute(
        update(Delivery).where(*conditions).values(**values).execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0) == 1


def _add_event(delivery_id: int, status: DeliveryStatus, description: str = "", rider_id: int | None = None) -> None:
    db.session.add(
        DeliveryEvent(
            delivery_id=int(delivery_id),
            status=status.value,
            description=(description or "").strip()[:240] or None,
            rider_id=int(rider_id) if rider_id is not None else None,
        )
    )


def _mirror_order_status(order_id: int, status: OrderStatus, *, reason: str | None = None) -> None:
    values = {"status": status.value, "updated_at": datetime.utcnow()}
    if reason:
        values["cancel_reason"] = reason[:240]
    db.session.execute(
        update(Order)
        .where(Order.id == int(order_id), Order.status != OrderStatus.CANCELLED.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def _notify(recipient: str | None, body: str, *, purpose: str) -> None:
    if not recipient:
        return
    try:
        notification_service.send_text(recipient, body, purpose=purpose)
    except Exception:
        current_app.logger.exception("delivery_notify_failed purpose=%s", purpose)


def _rider_job_text(delivery: Delivery) -> str:
    return (
        f"New delivery {delivery.delivery_number}\n"
        f"Pickup: {delivery.pickup_address or '-'}\n"
        f"Drop-off: {delivery.delivery_address or '-'}\n"
        f"Recipient: {delivery.recipient_phone or '-'}\n"
        f"Fee: {format_naira(delivery.delivery_fee_minor)}"
    )


def _log(event: str, **fields) -> None:
    current_app.logger.info(json.dumps({"event": event, **fields}, default=str))


# -------------------------
# operations
# -------------------------


def create_delivery(order_id: int) -> Delivery:
    """Create the delivery for a paid order and try to dispatch a rider.

    No free rider is not an error: the delivery stays PENDING, an alert is
    raised and the stuck-delivery sweep retries assignment later.
    """
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    if not order.is_paid:
        raise OrderNotPaid(f"order {order.order_number} is not paid")
    if Delivery.query.filter_by(order_id=int(order.id)).first() is not None:
        raise DeliveryAlreadyExists(f"order {order.order_number} already has a delivery")
    merchant = order.merchant
    if merchant is None or not merchant.has_pickup_location:
        raise MerchantLocationMissing(f"merchant {order.merchant_id} has no pickup location")

    now = datetime.utcnow()
    try:
        rider = claim_available_rider()
        rider_id = int(rider.id) if rider is not None else None
        status = DeliveryStatus.ASSIGNED if rider_id is not None else DeliveryStatus.PENDING
        delivery = Delivery(
            delivery_number=next_number(DELIVERY_PREFIX),
            order_id=int(order.id),
            rider_id=rider_id,
            status=status.value,
            pickup_address=merchant.pickup_address,
            pickup_latitude=merchant.latitude,
            pickup_longitude=merchant.longitude,
            delivery_address=order.delivery_address,
            delivery_latitude=order.delivery_latitude,
            delivery_longitude=order.delivery_longitude,
            recipient_phone=order.customer_phone,
            delivery_fee_minor=int(order.delivery_fee_minor or 0),
            assigned_at=now if rider_id is not None else None,
        )
        db.session.add(delivery)
        db.session.flush()
        _add_event(
            int(delivery.id),
            status,
            "Delivery created and rider assigned" if rider_id is not None else "Delivery created, awaiting rider",
            rider_id,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise DeliveryAlreadyExists(f"order {order_id} already has a delivery") from None
    except Exception:
        db.session.rollback()
        raise

    _log("delivery_created", delivery_id=delivery.id, order_id=order_id, rider_id=rider_id, status=status.value)
    if rider_id is not None:
        _notify(rider.phone, _rider_job_text(delivery), purpose="rider_assigned")
        _notify(
            order.customer_phone,
            f"A rider has been assigned to your order {order.order_number}.",
            purpose="delivery_assigned",
        )
    else:
        log_event(
            "no_rider_available",
            severity=Severity.HIGH,
            message=f"no rider available for delivery {delivery.delivery_number}",
            subject_type="delivery",
            subject_id=delivery.id,
            metadata={"order_id": int(order_id)},
        )
        _notify(
            order.customer_phone,
            f"Your order {order.order_number} is confirmed. We are finding a rider, delivery may take a little longer.",
            purpose="delivery_delayed",
        )
    return delivery


def assign_rider(delivery_id: int, rider_id: int | None = None) -> Delivery:
    """Move a PENDING delivery to ASSIGNED with a specific or the first free rider."""
    delivery = _get_delivery(delivery_id)
    if delivery.status_enum is not DeliveryStatus.PENDING:
        raise InvalidTransition(f"delivery {delivery.delivery_number} is {delivery.status}, not PENDING")

    try:
        if rider_id is not None:
            rider = db.session.get(Rider, int(rider_id))
            if rider is None:
                raise NotFoundError(f"rider {rider_id} not found")
            if not _claim_rider(int(rider.id)):
                raise RiderUnavailable(f"rider {rider_id} is not available")
            db.session.expire(rider)
        else:
            rider = claim_available_rider()
            if rider is None:
                raise RiderUnavailable("no rider available")
        if not _guarded_update(
            int(delivery.id),
            DeliveryStatus.PENDING,
            status=DeliveryStatus.ASSIGNED.value,
            rider_id=int(rider.id),
            assigned_at=datetime.utcnow(),
        ):
            raise InvalidTransition(f"delivery {delivery.delivery_number} changed concurrently")
        _add_event(int(delivery.id), DeliveryStatus.ASSIGNED, "Rider assigned", int(rider.id))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(delivery)
    _log("delivery_assigned", delivery_id=delivery.id, rider_id=rider.id)
    _notify(rider.phone, _rider_job_text(delivery), purpose="rider_assigned")
    _notify(
        delivery.recipient_phone,
        f"A rider has been assigned to your order {delivery.order.order_number}.",
        purpose="delivery_assigned",
    )
    return delivery


def update_status(delivery_id: int, status, description: str | None = None) -> Delivery:
    """Advance a delivery along the transition table.

    Assignment and cancellation have their own operations because they move
    riders; this handles PICKED_UP, IN_TRANSIT and DELIVERED.
    """
    try:
        target = DeliveryStatus.parse(status)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    if target is DeliveryStatus.ASSIGNED:
        raise InvalidTransition("use assign or reassign to set ASSIGNED")
    if target is DeliveryStatus.CANCELLED:
        return cancel_delivery(delivery_id, description or "cancelled")

    delivery = _get_delivery(delivery_id)
    current = delivery.status_enum
    if not current.can_transition_to(target):
        raise InvalidTransition(f"cannot move delivery {delivery.delivery_number} from {current.value} to {target.value}")

    now = datetime.utcnow()
    values = {"status": target.value, _TIMESTAMP_FIELDS[target]: now}
    if target is DeliveryStatus.DELIVERED:
        values["auto_release_at"] = now + timedelta(hours=auto_release_hours())
    rider_id = int(delivery.rider_id) if delivery.rider_id is not None else None
    try:
        if not _guarded_update(int(delivery.id), current, **values):
            raise InvalidTransition(f"delivery {delivery.delivery_number} changed concurrently")
        mirrored = _ORDER_STATUS_MIRROR.get(target)
        if mirrored is not None:
            _mirror_order_status(int(delivery.order_id), mirrored)
        if target is DeliveryStatus.DELIVERED:
            _free_rider(rider_id, completed=True)
        _add_event(int(delivery.id), target, description or f"Status changed to {target.value}", rider_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(delivery)
    _log("delivery_status_changed", delivery_id=delivery.id, from_status=current.value, to_status=target.value)
    order = delivery.order
    message = _CUSTOMER_MESSAGES.get(target)
    if message:
        _notify(delivery.recipient_phone, message.format(order_number=order.order_number), purpose="delivery_status")
    if target is DeliveryStatus.DELIVERED:
        request_customer_confirmation(delivery)
    return delivery


def request_customer_confirmation(delivery: Delivery) -> bool:
    order = delivery.order
    body = (
        f"Your order {order.order_number} has been delivered. "
        f"Please confirm you received it. If we do not hear from you in {auto_release_hours()} hours "
        "we will treat it as received."
    )
    buttons = [
        PromptButton(id=f"{CONFIRM_BUTTON_PREFIX}{int(delivery.id)}", title="Confirm receipt"),
        PromptButton(id=f"{REPORT_BUTTON_PREFIX}{int(delivery.id)}", title="Report an issue"),
    ]
    try:
        return notification_service.send_interactive_prompt(
            delivery.recipient_phone or order.customer_phone,
            body,
            buttons,
            purpose="delivery_confirmation",
        )
    except Exception:
        current_app.logger.exception("confirmation_prompt_failed delivery_id=%s", delivery.id)
        return False


def confirm_delivery(delivery_id: int, *, source: str = "customer") -> dict:
    """Record proof of receipt and release escrow.

    Re-confirming an already confirmed delivery retries the release, which
    is a no-op when the escrow is already RELEASED.
    """
    delivery = _get_delivery(delivery_id)
    if delivery.status_enum is not DeliveryStatus.DELIVERED:
        raise InvalidTransition(f"delivery {delivery.delivery_number} is {delivery.status}, not DELIVERED")

    newly_confirmed = False
    if not delivery.customer_confirmed:
        now = datetime.utcnow()
        try:
            result = db.session.execute(
                update(Delivery)
                .where(
                    Delivery.id == int(delivery.id),
                    Delivery.status == DeliveryStatus.DELIVERED.value,
                    Delivery.customer_confirmed.is_(False),
                )
                .values(customer_confirmed=True, customer_confirmed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            newly_confirmed = int(result.rowcount or 0) == 1
            if newly_confirmed:
                db.session.execute(
                    update(Order)
                    .where(Order.id == int(delivery.order_id))
                    .values(delivery_confirmed=True, delivery_confirmed_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                _add_event(int(delivery.id), DeliveryStatus.DELIVERED, f"Receipt confirmed ({source})", delivery.rider_id)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    breakdown = release_if_held(int(delivery.order_id), source=source)
    db.session.refresh(delivery)
    _log("delivery_confirmed", delivery_id=delivery.id, source=source, released=breakdown is not None)
    if newly_confirmed and source == "customer":
        _notify(
            delivery.recipient_phone,
            f"Thanks for confirming order {delivery.order.order_number}.",
            purpose="delivery_confirmed",
        )
    return {
        "delivery": delivery.to_dict(),
        "newly_confirmed": newly_confirmed,
        "settlement": breakdown.to_dict() if breakdown is not None else None,
    }


def reassign_delivery(delivery_id: int, reason: str = "rider not responding") -> Delivery | None:
    """Hand an ASSIGNED delivery to a different free rider.

    Returns None and leaves the current rider in place when nobody else is
    free, so the delivery is never orphaned.
    """
    delivery = _get_delivery(delivery_id)
    current = delivery.status_enum
    if not (current is DeliveryStatus.ASSIGNED and current.can_transition_to(DeliveryStatus.ASSIGNED)):
        raise InvalidTransition(f"delivery {delivery.delivery_number} is {delivery.status}, cannot reassign")
    old_rider_id = int(delivery.rider_id) if delivery.rider_id is not None else None

    try:
        new_rider = claim_available_rider(exclude_ids=[old_rider_id] if old_rider_id is not None else None)
        if new_rider is None:
            db.session.rollback()
        else:
            if not _guarded_update(
                int(delivery.id),
                DeliveryStatus.ASSIGNED,
                expect_rider=old_rider_id,
                rider_id=int(new_rider.id),
                assigned_at=datetime.utcnow(),
                reassign_count=Delivery.reassign_count + 1,
            ):
                raise InvalidTransition(f"delivery {delivery.delivery_number} changed concurrently")
            _free_rider(old_rider_id)
            _add_event(
                int(delivery.id),
                DeliveryStatus.ASSIGNED,
                f"Reassigned from rider {old_rider_id}: {reason}",
                int(new_rider.id),
            )
            db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if new_rider is None:
        current_app.logger.warning("reassign_no_rider delivery_id=%s reason=%s", delivery.id, reason)
        log_event(
            "reassign_no_rider",
            severity=Severity.HIGH,
            message=f"no other rider free to take over delivery {delivery.delivery_number}",
            subject_type="delivery",
            subject_id=delivery.id,
            metadata={"reason": reason, "rider_id": old_rider_id},
        )
        return None

    db.session.refresh(delivery)
    _log("delivery_reassigned", delivery_id=delivery.id, old_rider_id=old_rider_id, new_rider_id=new_rider.id, reason=reason)
    old_rider = db.session.get(Rider, old_rider_id) if old_rider_id is not None else None
    _notify(new_rider.phone, _rider_job_text(delivery), purpose="rider_assigned")
    if old_rider is not None:
        _notify(
            old_rider.phone,
            f"Delivery {delivery.delivery_number} has been reassigned ({reason}).",
            purpose="rider_unassigned",
        )
    _notify(
        delivery.recipient_phone,
        f"A new rider has been assigned to your order {delivery.order.order_number}.",
        purpose="delivery_reassigned",
    )
    return delivery


def cancel_delivery(delivery_id: int, reason: str = "cancelled by admin") -> Delivery:
    """Administrative cancellation. The escrow stays HELD for a manual refund decision."""
    delivery = _get_delivery(delivery_id)
    current = delivery.status_enum
    if not current.can_transition_to(DeliveryStatus.CANCELLED):
        raise InvalidTransition(f"cannot cancel delivery {delivery.delivery_number} in {current.value}")
    rider_id = int(delivery.rider_id) if delivery.rider_id is not None else None
    try:
        if not _guarded_update(
            int(delivery.id),
            current,
            status=DeliveryStatus.CANCELLED.value,
            cancelled_at=datetime.utcnow(),
        ):
            raise InvalidTransition(f"delivery {delivery.delivery_number} changed concurrently")
        if current.holds_rider:
            _free_rider(rider_id)
        _mirror_order_status(int(delivery.order_id), OrderStatus.CANCELLED, reason=reason)
        _add_event(int(delivery.id), DeliveryStatus.CANCELLED, reason, rider_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    db.session.refresh(delivery)
    log_event(
        "delivery_cancelled",
        severity=Severity.HIGH,
        message=f"delivery {delivery.delivery_number} cancelled: {reason}; escrow needs a refund decision",
        subject_type="delivery",
        subject_id=delivery.id,
        metadata={"order_id": int(delivery.order_id), "rider_id": rider_id},
    )
    _notify(
        delivery.recipient_phone,
        f"Delivery for your order {delivery.order.order_number} was cancelled. Our team will contact you.",
        purpose="delivery_cancelled",
    )
    if rider_id is not None and current.holds_rider:
        rider = db.session.get(Rider, rider_id)
        if rider is not None:
            _notify(rider.phone, f"Delivery {delivery.delivery_number} was cancelled.", purpose="rider_unassigned")
    return delivery


def set_rider_status(
    rider_id: int,
    status,
    *,
    latitude: float | None = None,
    longitude: float | None = None,
) -> Rider:
    """Rider goes online or offline. BUSY is only ever set by assignment."""
    try:
        target = RiderStatus(str(status or "").strip().upper())
    except ValueError:
        raise ValidationError(f"unknown rider status {status!r}") from None
    if target is RiderStatus.BUSY:
        raise ValidationError("BUSY is set by delivery assignment only")
    rider = db.session.get(Rider, int(rider_id))
    if rider is None:
        raise NotFoundError(f"rider {rider_id} not found")
    if target is RiderStatus.AVAILABLE and not rider.is_approved:
        raise RiderUnavailable(f"rider {rider_id} is not approved")

    now = datetime.utcnow()
    values = {"status": target.value, "updated_at": now}
    if latitude is not None and longitude is not None:
        values.update(current_latitude=float(latitude), current_longitude=float(longitude), last_location_at=now)
    try:
        result = db.session.execute(
            update(Rider)
            .where(Rider.id == int(rider.id), Rider.status != RiderStatus.BUSY.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if int(result.rowcount or 0) != 1:
            raise InvalidTransition(f"rider {rider_id} is on an active delivery")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.refresh(rider)
    return rider

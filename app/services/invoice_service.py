from __future__ import annotations

import time
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.extensions import db
from app.models import Invoice, Order, Severity
from app.services import notification_service
from app.utils.env import env_float, env_int, env_str
from app.utils.errors import NotFoundError
from app.utils.events import log_event
from app.utils.invoice_pdf import render_invoice_pdf
from app.utils.sequences import INVOICE_PREFIX, next_number


def invoice_max_attempts() -> int:
    return env_int("INVOICE_MAX_ATTEMPTS", 3, minimum=1, maximum=10)


def invoice_backoff_seconds() -> float:
    return env_float("INVOICE_RETRY_BACKOFF_SECONDS", 2.0, minimum=0.0)


def public_base_url() -> str:
    return env_str("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/")


def invoice_url(invoice_number: str) -> str:
    return f"{public_base_url()}/api/invoices/{invoice_number}/pdf"


def get_or_create_invoice(order_id: int) -> Invoice:
    existing = Invoice.query.filter_by(order_id=int(order_id)).first()
    if existing is not None:
        return existing
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise NotFoundError(f"order {order_id} not found")
    try:
        number = next_number(INVOICE_PREFIX, period_format="%Y")
        invoice = Invoice(
            invoice_number=number,
            order_id=int(order.id),
            amount_minor=int(order.total_amount_minor or 0),
            document_url=invoice_url(number),
        )
        db.session.add(invoice)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        invoice = Invoice.query.filter_by(order_id=int(order_id)).first()
        if invoice is None:
            raise
    except Exception:
        db.session.rollback()
        raise
    return invoice


def invoice_payload(invoice: Invoice) -> dict:
    order = invoice.order
    merchant = order.merchant if order is not None else None
    return {
        "invoice_number": invoice.invoice_number,
        "order_number": order.order_number if order is not None else "",
        "created_at": invoice.created_at.strftime("%Y-%m-%d %H:%M") if invoice.created_at else "",
        "customer_phone": order.customer_phone if order is not None else "",
        "merchant_name": merchant.business_name if merchant is not None else "",
        "items": [item.to_dict() for item in order.items] if order is not None else [],
        "subtotal_minor": int(order.subtotal_minor or 0) if order is not None else 0,
        "delivery_fee_minor": int(order.delivery_fee_minor or 0) if order is not None else 0,
        "total_amount_minor": int(invoice.amount_minor or 0),
        "payment_reference": order.payment_reference if order is not None else "",
    }


def render_invoice(invoice_number: str) -> bytes:
    invoice = Invoice.query.filter_by(invoice_number=(invoice_number or "").strip()).first()
    if invoice is None:
        raise NotFoundError(f"invoice {invoice_number} not found")
    return render_invoice_pdf(invoice_payload(invoice))


def deliver_invoice(order_id: int, *, sleep=time.sleep) -> bool:
    """Generate the invoice and send it as a document, retrying with linear backoff.

    Returns False after the last attempt fails; the payment stays confirmed
    either way.
    """
    attempts = invoice_max_attempts()
    backoff = invoice_backoff_seconds()
    last_error = ""
    for attempt in range(1, attempts + 1):
        try:
            invoice = get_or_create_invoice(order_id)
            render_invoice_pdf(invoice_payload(invoice))
            order = invoice.order
            sent = notification_service.send_document(
                order.customer_phone,
                invoice.document_url or invoice_url(invoice.invoice_number),
                caption=f"Invoice {invoice.invoice_number} for order {order.order_number}",
                filename=f"{invoice.invoice_number}.pdf",
                purpose="invoice",
            )
            if sent:
                invoice.delivered_at = datetime.utcnow()
                db.session.commit()
                return True
            last_error = "document_send_failed"
        except Exception as e:
            db.session.rollback()
            last_error = f"{type(e).__name__}: {e}"
            current_app.logger.warning("invoice_attempt_failed order_id=%s attempt=%s error=%s", order_id, attempt, last_error)
        if attempt < attempts and backoff > 0:
            sleep(backoff * attempt)

    log_event(
        "invoice_delivery_failed",
        severity=Severity.MEDIUM,
        message=f"invoice for order {order_id} failed after {attempts} attempts",
        subject_type="order",
        subject_id=order_id,
        metadata={"error": last_error[:400], "attempts": attempts},
    )
    return False

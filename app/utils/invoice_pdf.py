from __future__ import annotations

import io
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.utils.commission import money_minor_to_major


def _naira(minor: int | None) -> str:
    # Base-14 fonts have no naira glyph.
    return f"NGN {money_minor_to_major(minor):,.2f}"


def _text(value) -> str:
    return escape(str(value or ""))


def _item_rows(invoice: dict, cell) -> list[list]:
    rows = [["Item", "Qty", "Unit price", "Line total"]]
    for item in invoice.get("items") or []:
        name = item.get("product_name") or f"Product #{item.get('product_id')}"
        rows.append(
            [
                cell(name),
                str(int(item.get("quantity") or 0)),
                _naira(item.get("unit_price_minor")),
                _naira(item.get("line_total_minor")),
            ]
        )
    rows.append(["", "", "Subtotal", _naira(invoice.get("subtotal_minor"))])
    rows.append(["", "", "Delivery fee", _naira(invoice.get("delivery_fee_minor"))])
    rows.append(["", "", "Total paid", _naira(invoice.get("total_amount_minor"))])
    return rows


def render_invoice_pdf(invoice: dict) -> bytes:
    """Render an invoice payload (see ``invoice_service.invoice_payload``) to PDF bytes."""
    styles = getSampleStyleSheet()
    body = styles["BodyText"]
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=f"Invoice {invoice.get('invoice_number', '')}",
        author="SwiftCart",
    )

    header = [
        Paragraph("SwiftCart Invoice", styles["Title"]),
        Paragraph(f"<b>Invoice:</b> {_text(invoice.get('invoice_number'))}", body),
        Paragraph(f"<b>Order:</b> {_text(invoice.get('order_number'))}", body),
        Paragraph(f"<b>Date:</b> {_text(invoice.get('created_at'))}", body),
        Paragraph(f"<b>Customer:</b> {_text(invoice.get('customer_phone'))}", body),
        Paragraph(f"<b>Merchant:</b> {_text(invoice.get('merchant_name'))}", body),
        Spacer(1, 6 * mm),
    ]

    rows = _item_rows(invoice, lambda name: Paragraph(_text(name), body))
    table = Table(rows, colWidths=[80 * mm, 15 * mm, 40 * mm, 40 * mm], repeatRows=1)
    totals_from = len(rows) - 3
    table.setStyle(
        TableStyle(
            [
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#EEEEEE")),
                ("LINEBELOW", (0, 0), (-1, 0), 0.5, colors.grey),
                ("LINEABOVE", (2, totals_from), (-1, totals_from), 0.5, colors.grey),
                ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )

    footer = [
        Spacer(1, 6 * mm),
        Paragraph(f"<b>Payment reference:</b> {_text(invoice.get('payment_reference'))}", body),
    ]
    doc.build(header + [table] + footer)
    return buf.getvalue()

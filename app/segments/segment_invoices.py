from __future__ import annotations

import io

from flask import Blueprint, send_file

from app.services.invoice_service import render_invoice

invoices_bp = Blueprint("invoices_bp", __name__, url_prefix="/api/invoices")


@invoices_bp.get("/<string:invoice_number>/pdf")
def invoice_pdf(invoice_number: str):
    pdf_bytes = render_invoice(invoice_number)
    return send_file(
        io.BytesIO(pdf_bytes),
        mimetype="application/pdf",
        as_attachment=False,
        download_name=f"swiftcart_invoice_{invoice_number}.pdf",
    )

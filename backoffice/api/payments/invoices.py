# Invoice lookup and payment for checked-out appointments
from flask import Blueprint, g

from backoffice.auth import require_capability
from backoffice.services.checkout import (
    get_invoice,
    serialize_invoice,
    settle_invoice,
    void_invoice,
)
from backoffice.utils.http import json_body, ok

invoices_bp = Blueprint("invoices", __name__, url_prefix="/api/invoices")


@invoices_bp.route("/<int:invoice_id>", methods=["GET"])
@require_capability("invoices", "view")
def get_one(invoice_id):
    return ok(serialize_invoice(get_invoice(g.auth.tenant_id, invoice_id)))


@invoices_bp.route("/<int:invoice_id>/pay", methods=["POST"])
@require_capability("pos", "checkout")
def pay(invoice_id):
    """
    Record a payment against an invoice
    ---
    tags:
      - Checkout
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            payment_method:
              type: string
              enum: [cash, card, gift_card]
            gift_card_code:
              type: string
            amount:
              type: number
              description: Defaults to the outstanding balance
    responses:
      200:
        description: Payment recorded; paying a paid invoice returns it unchanged
      400:
        description: Invalid amount, void invoice or gift card failure
    """
    data = json_body()
    invoice = settle_invoice(
        g.auth.tenant_id,
        invoice_id,
        payment_method=data.get("payment_method") or "cash",
        gift_card_code=data.get("gift_card_code"),
        amount=data.get("amount"),
    )
    return ok(serialize_invoice(invoice))


@invoices_bp.route("/<int:invoice_id>/void", methods=["POST"])
@require_capability("pos", "checkout")
def void(invoice_id):
    """
    Void an unpaid invoice
    ---
    tags:
      - Checkout
    parameters:
      - name: body
        in: body
        schema:
          type: object
          properties:
            reason:
              type: string
    responses:
      200:
        description: Invoice voided; the appointment can be checked out again
      400:
        description: The invoice already has payments recorded
    """
    data = json_body()
    invoice = void_invoice(g.auth.tenant_id, invoice_id, reason=data.get("reason"))
    return ok(serialize_invoice(invoice), message="Invoice voided")

# Discount code preview for the POS and booking screens
from flask import Blueprint, g

from backoffice.auth import require_capability
from backoffice.errors import ValidationError
from backoffice.services.pricing import preview_code
from backoffice.utils.http import current_zone, int_arg, json_body, ok

promotions_bp = Blueprint("promotions", __name__, url_prefix="/api/promotions")


@promotions_bp.route("/validate", methods=["POST"])
@require_capability("promotions", "view")
def validate_code():
    """
    Check a discount code against a subtotal
    ---
    tags:
      - Promotions
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          required: [code, subtotal]
          properties:
            code:
              type: string
            subtotal:
              type: number
            service_id:
              type: integer
    responses:
      200:
        description: Discount preview
      400:
        description: Code exists but does not apply
      404:
        description: Invalid discount code
    """
    data = json_body()
    if not data.get("code"):
        raise ValidationError("code is required")
    if data.get("subtotal") is None:
        raise ValidationError("subtotal is required")
    preview = preview_code(
        g.auth.tenant_id,
        data["code"],
        data["subtotal"],
        service_id=int_arg(data, "service_id"),
        tz=current_zone(),
    )
    return ok(preview)

# Online booking policy for the caller's business
from flask import Blueprint, g

from backoffice.auth import require_capability
from backoffice.services.booking_policy import get_settings, settings_to_dict, update_settings
from backoffice.utils.http import json_body, ok

booking_settings_bp = Blueprint(
    "booking_settings", __name__, url_prefix="/api/booking-settings"
)


@booking_settings_bp.route("", methods=["GET"])
@require_capability("settings", "view")
def get_booking_settings():
    """
    GET /api/booking-settings
    Purpose: Current online booking policy. A business that never saved its
    settings gets the defaults.
    """
    return ok(settings_to_dict(get_settings(g.auth.tenant_id)))


@booking_settings_bp.route("", methods=["PATCH"])
@require_capability("settings", "edit")
def patch_booking_settings():
    """
    PATCH /api/booking-settings
    Purpose: Partial update. Takes effect on the next availability or
    booking-link request.
    """
    settings = update_settings(g.auth.tenant_id, json_body())
    return ok(settings_to_dict(settings))

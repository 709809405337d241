# Request parsing and the {success, data} response envelope
from flask import g, jsonify, request

from backoffice.errors import ValidationError
from backoffice.extensions import db
from backoffice.models import Tenant
from backoffice.utils.timeutils import UTC, parse_date, tenant_zone, to_utc


def ok(data=None, status=200, **extra):
    body = {"success": True, "data": data}
    body.update(extra)
    return jsonify(body), status


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def int_arg(source, name, required=False, default=None):
    value = source.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def bool_arg(source, name, default=False):
    value = source.get(name)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be true or false")
    return value


def date_arg(source, name="date"):
    value = source.get(name)
    if not value:
        raise ValidationError(f"{name} is required")
    try:
        return parse_date(value)
    except ValueError:
        raise ValidationError(f"{name} must be a date (YYYY-MM-DD)")


def datetime_arg(source, name, tz=UTC, required=False):
    value = source.get(name)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return None
    try:
        return to_utc(value, tz)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an ISO-8601 datetime")


def current_zone():
    """Timezone of the authenticated user's tenant."""
    tenant = db.session.get(Tenant, g.auth.tenant_id)
    return tenant_zone(tenant.timezone if tenant else None)

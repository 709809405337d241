"""
Bearer-token authentication and role capabilities.

Token issuance belongs to the identity service; this module only decodes the
claims it needs (user, tenant, role) and turns the role into a fixed set of
capabilities. The resolved AuthContext is stored on flask.g for the duration
of the request and handlers pass tenant/actor values into the services
explicitly.
"""

import datetime
from dataclasses import dataclass
from functools import wraps
from typing import FrozenSet, Optional

import jwt
from flask import current_app, g, request

from backoffice.errors import AuthenticationError, PermissionDeniedError


@dataclass(frozen=True)
class Capability:
    module: str
    action: str


def _caps(*pairs):
    return frozenset(Capability(module, action) for module, action in pairs)


_FRONT_DESK = (
    ("appointments", "view"),
    ("appointments", "create"),
    ("appointments", "edit"),
    ("appointments", "cancel"),
    ("pos", "checkout"),
    ("invoices", "view"),
    ("promotions", "view"),
    ("settings", "view"),
)

ROLE_CAPABILITIES = {
    "owner": _caps(*_FRONT_DESK, ("settings", "edit"), ("promotions", "edit")),
    "admin": _caps(*_FRONT_DESK, ("settings", "edit"), ("promotions", "edit")),
    "manager": _caps(*_FRONT_DESK, ("settings", "edit")),
    "receptionist": _caps(*_FRONT_DESK),
    "staff": _caps(
        ("appointments", "view"),
        ("appointments", "edit"),
        ("pos", "checkout"),
        ("invoices", "view"),
    ),
}


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    tenant_id: int
    role: str
    capabilities: FrozenSet[Capability]
    staff_id: Optional[int] = None

    def can(self, module: str, action: str) -> bool:
        return Capability(module, action) in self.capabilities


def issue_token(user_id, tenant_id, role, staff_id=None, expires_in_hours=12):
    payload = {
        "sub": str(user_id),
        "tenant_id": tenant_id,
        "role": role,
        "exp": datetime.datetime.now(datetime.timezone.utc)
        + datetime.timedelta(hours=expires_in_hours),
    }
    if staff_id is not None:
        payload["staff_id"] = staff_id
    return jwt.encode(
        payload,
        current_app.config["SECRET_KEY"],
        algorithm=current_app.config.get("JWT_ALGORITHM", "HS256"),
    )


def resolve_auth_context() -> AuthContext:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise AuthenticationError("Unauthorized")

    token = header.split(" ", 1)[1].strip()
    try:
        claims = jwt.decode(
            token,
            current_app.config["SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    try:
        user_id = int(claims["sub"])
        tenant_id = int(claims["tenant_id"])
    except (KeyError, TypeError, ValueError):
        raise AuthenticationError("Invalid token")

    role = claims.get("role", "staff")
    staff_id = claims.get("staff_id")
    return AuthContext(
        user_id=user_id,
        tenant_id=tenant_id,
        role=role,
        capabilities=ROLE_CAPABILITIES.get(role, frozenset()),
        staff_id=int(staff_id) if staff_id is not None else None,
    )


def require_capability(module, action):
    """Authenticate the request and check a single capability."""

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            auth = resolve_auth_context()
            g.auth = auth
            if not auth.can(module, action):
                raise PermissionDeniedError()
            return view(*args, **kwargs)

        return wrapped

    return decorator

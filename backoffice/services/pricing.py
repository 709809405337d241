"""
Pricing & discount resolution.

All money is Decimal rounded half-up to cents. The tip is folded into the
subtotal, percentage discounts are taken from the service lines only, and tax
is charged on what remains after the discount:

    subtotal = services + tip
    total    = subtotal - discount + tax
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional, Tuple

from sqlalchemy import select, update

from backoffice.errors import NotFoundError, PolicyViolationError, ValidationError
from backoffice.extensions import db
from backoffice.models import DiscountCode, DiscountUsage, Promotion, Service
from backoffice.utils.timeutils import UTC, utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

DISCOUNT_TYPES = ("fixed", "percentage")


def to_money(value, field="amount") -> Decimal:
    if value is None or value == "":
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_discount(base: Decimal, discount_type: str, value) -> Decimal:
    """Discount amount for `base`, never negative and never more than `base`."""
    if discount_type not in DISCOUNT_TYPES:
        raise ValidationError("discount_type must be 'fixed' or 'percentage'")
    value = Decimal(str(value or 0))
    if discount_type == "percentage":
        amount = base * value / HUNDRED
    else:
        amount = value
    amount = max(ZERO, min(amount, base))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PriceBreakdown:
    service_subtotal: Decimal
    tip: Decimal
    subtotal: Decimal
    discount_amount: Decimal
    discount_type: Optional[str]
    taxable: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total: Decimal

    def to_dict(self):
        return {
            "service_subtotal": float(self.service_subtotal),
            "tip": float(self.tip),
            "subtotal": float(self.subtotal),
            "discount_amount": float(self.discount_amount),
            "discount_type": self.discount_type,
            "taxable": float(self.taxable),
            "tax_rate": float(self.tax_rate),
            "tax_amount": float(self.tax_amount),
            "total": float(self.total),
        }


def price_breakdown(
    service_subtotal,
    tip=0,
    tax_rate=0,
    discounts: Iterable[Tuple[str, object]] = (),
) -> PriceBreakdown:
    """
    Combine service lines, tip, discounts and tax.

    `discounts` is a sequence of (type, value) pairs; each is evaluated
    against the service subtotal and the amounts are summed, then clamped so
    the services never go below zero.
    """
    service_subtotal = to_money(service_subtotal, "subtotal")
    tip = to_money(tip, "tip")
    rate = Decimal(str(tax_rate or 0))
    if service_subtotal < 0 or tip < 0 or rate < 0:
        raise ValidationError("Amounts cannot be negative")

    applied = []
    for discount_type, value in discounts:
        amount = compute_discount(service_subtotal, discount_type, value)
        if amount > 0:
            applied.append((discount_type, amount))

    discount = sum((amount for _, amount in applied), ZERO)
    discount = min(discount, service_subtotal)
    if len(applied) == 1:
        discount_type = applied[0][0]
    elif applied:
        discount_type = "fixed"
    else:
        discount_type = None

    subtotal = service_subtotal + tip
    taxable = subtotal - discount
    tax = (taxable * rate / HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    return PriceBreakdown(
        service_subtotal=service_subtotal,
        tip=tip,
        subtotal=subtotal,
        discount_amount=discount,
        discount_type=discount_type,
        taxable=taxable,
        tax_rate=rate,
        tax_amount=tax,
        total=taxable + tax,
    )


@dataclass(frozen=True)
class CodeResolution:
    code: DiscountCode
    promotion: Promotion
    discount_type: str
    value: Decimal
    discount_amount: Decimal

    def to_dict(self):
        return {
            "code": self.code.code,
            "promotion_id": self.promotion.id,
            "promotion_name": self.promotion.name,
            "discount_type": self.discount_type,
            "discount_value": float(self.value),
            "discount_amount": float(self.discount_amount),
        }


def _in_scope(promotion, service):
    if promotion.applies_to in (None, "all_services") or service is None:
        return True
    if promotion.applies_to == "specific_services":
        return service.id in (promotion.service_ids or [])
    if promotion.applies_to == "specific_categories":
        return service.category_id in (promotion.category_ids or [])
    return False


def _check_code(code, promotion, subtotal, service, today):
    """Returns a rejection (exception) or None when the code applies."""
    if not code.is_active or not promotion.is_active:
        return PolicyViolationError("This discount code is no longer active")
    if promotion.start_date and today < promotion.start_date:
        return PolicyViolationError("This promotion has not started yet")
    if promotion.end_date and today > promotion.end_date:
        return PolicyViolationError("This promotion has expired")
    if code.max_uses is not None and code.used_count >= code.max_uses:
        return PolicyViolationError("Code usage limit reached")
    if (
        promotion.usage_limit is not None
        and promotion.used_count >= promotion.usage_limit
    ):
        return PolicyViolationError("Promotion usage limit reached")
    if promotion.type not in DISCOUNT_TYPES:
        return PolicyViolationError("This promotion cannot be applied to a booking")
    if not _in_scope(promotion, service):
        return PolicyViolationError("This code does not apply to the selected service")
    if promotion.min_spend is not None and subtotal < promotion.min_spend:
        return PolicyViolationError(
            f"Minimum spend of {to_money(promotion.min_spend)} required"
        )
    return None


def resolve_code(
    tenant_id,
    code,
    subtotal,
    service_id=None,
    now=None,
    tz=UTC,
    strict=False,
    lock=False,
) -> Optional[CodeResolution]:
    """
    Resolve a discount code against a subtotal.

    In lenient mode (the booking and checkout paths) any failure yields None
    and the caller proceeds without a discount. In strict mode (the "apply
    code" UX) the rejection is raised for the user. With lock=True the code
    and promotion rows stay locked until the caller's transaction ends, so
    usage caps cannot be overrun between resolution and record_usage.
    """
    if not code or not str(code).strip():
        if strict:
            raise ValidationError("Discount code is required")
        return None

    subtotal = to_money(subtotal, "subtotal")
    today = (now or utcnow()).astimezone(tz).date()

    stmt = select(DiscountCode).where(
        DiscountCode.tenant_id == tenant_id,
        DiscountCode.code == str(code).strip().upper(),
    )
    if lock:
        stmt = stmt.with_for_update()
    discount_code = db.session.scalar(stmt)
    if discount_code is None:
        if strict:
            raise NotFoundError("Invalid discount code")
        return None

    promo_stmt = select(Promotion).where(Promotion.id == discount_code.promotion_id)
    if lock:
        promo_stmt = promo_stmt.with_for_update()
    promotion = db.session.scalar(promo_stmt)
    if promotion is None or promotion.tenant_id != tenant_id:
        if strict:
            raise NotFoundError("Invalid discount code")
        return None

    service = db.session.get(Service, service_id) if service_id else None
    rejection = _check_code(discount_code, promotion, subtotal, service, today)
    if rejection is not None:
        if strict:
            raise rejection
        logger.info(
            "Discount code %s not applied: %s", discount_code.code, rejection.message
        )
        return None

    value = Decimal(str(promotion.discount_value))
    return CodeResolution(
        code=discount_code,
        promotion=promotion,
        discount_type=promotion.type,
        value=value,
        discount_amount=compute_discount(subtotal, promotion.type, value),
    )


def record_usage(
    tenant_id,
    resolution: CodeResolution,
    amount,
    customer_id=None,
    appointment_id=None,
    invoice_id=None,
):
    """
    Count one use of the code and its promotion in the caller's transaction.

    The counters are bumped with guarded UPDATEs so they never pass their caps
    even when two writers race on an engine without row locks.
    """
    code = resolution.code
    promotion = resolution.promotion

    code_stmt = (
        update(DiscountCode)
        .where(DiscountCode.id == code.id)
        .where(
            (DiscountCode.max_uses.is_(None))
            | (DiscountCode.used_count < DiscountCode.max_uses)
        )
        .values(used_count=DiscountCode.used_count + 1)
    )
    if db.session.execute(code_stmt).rowcount != 1:
        raise PolicyViolationError("Code usage limit reached")

    promo_stmt = (
        update(Promotion)
        .where(Promotion.id == promotion.id)
        .where(
            (Promotion.usage_limit.is_(None))
            | (Promotion.used_count < Promotion.usage_limit)
        )
        .values(used_count=Promotion.used_count + 1)
    )
    if db.session.execute(promo_stmt).rowcount != 1:
        raise PolicyViolationError("Promotion usage limit reached")

    db.session.add(
        DiscountUsage(
            tenant_id=tenant_id,
            discount_code_id=code.id,
            promotion_id=promotion.id,
            customer_id=customer_id,
            appointment_id=appointment_id,
            invoice_id=invoice_id,
            discount_amount=to_money(amount),
        )
    )
    # Keep the loaded objects in step with the UPDATEs above
    db.session.expire(code, ["used_count"])
    db.session.expire(promotion, ["used_count"])


def preview_code(tenant_id, code, subtotal, service_id=None, now=None, tz=UTC, tax_rate=0):
    """Strict validation used by the apply-code endpoints."""
    resolution = resolve_code(
        tenant_id, code, subtotal, service_id=service_id, now=now, tz=tz, strict=True
    )
    breakdown = price_breakdown(
        subtotal, tax_rate=tax_rate, discounts=[(resolution.discount_type, resolution.value)]
    )
    data = resolution.to_dict()
    data["final_price"] = float(breakdown.subtotal - breakdown.discount_amount)
    data["pricing"] = breakdown.to_dict()
    return data

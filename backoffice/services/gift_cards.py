"""
Gift card redemption.

Redemption works inside the caller's transaction and never commits, so the
balance change lands together with whatever the caller is paying for. A failed
redemption is reported through the result rather than raised.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select

from backoffice.extensions import db
from backoffice.models import GiftCard, GiftCardTransaction
from backoffice.services.pricing import ZERO, to_money
from backoffice.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedemptionResult:
    success: bool
    message: str
    gift_card_id: Optional[int] = None
    remaining_balance: Optional[Decimal] = None
    status: Optional[str] = None


def redeem_gift_card(tenant_id, code, amount, meta=None, now=None) -> RedemptionResult:
    meta = meta or {}
    amount = to_money(amount)
    if not code or amount <= ZERO:
        return RedemptionResult(False, "Gift card code and valid amount are required")

    card = db.session.scalar(
        select(GiftCard)
        .where(
            GiftCard.tenant_id == tenant_id,
            GiftCard.code == str(code).strip(),
            GiftCard.status == "active",
        )
        .with_for_update()
    )
    if card is None:
        return RedemptionResult(False, "Gift card not found or not active")

    if card.expires_at and card.expires_at < (now or utcnow()):
        card.status = "expired"
        db.session.flush()
        return RedemptionResult(False, "Gift card has expired", gift_card_id=card.id)

    balance = to_money(card.balance)
    if amount > balance:
        return RedemptionResult(
            False,
            f"Insufficient gift card balance. Available: {balance}",
            gift_card_id=card.id,
            remaining_balance=balance,
        )

    new_balance = balance - amount
    card.balance = new_balance
    card.status = "redeemed" if new_balance <= ZERO else "active"
    db.session.add(
        GiftCardTransaction(
            tenant_id=tenant_id,
            gift_card_id=card.id,
            type="redeem",
            amount=amount,
            balance_after=new_balance,
            reference_type=meta.get("reference_type"),
            reference_id=meta.get("reference_id"),
            notes=meta.get("notes"),
        )
    )
    db.session.flush()
    logger.info("Gift card %s redeemed %s, balance %s", card.id, amount, new_balance)
    return RedemptionResult(
        True,
        f"Gift card redeemed: {amount} deducted. Remaining balance: {new_balance}",
        gift_card_id=card.id,
        remaining_balance=new_balance,
        status=card.status,
    )

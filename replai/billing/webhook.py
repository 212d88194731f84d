# replai/billing/webhook.py
"""
Callback de resultado de la pasarela (ResultURL).

El UPDATE condicional pending -> completed es el punto de serialización:
solo la entrega que lo gana (rowcount == 1) acredita tokens, dentro de la
misma transacción. El resto de entregas responde OK sin efectos.
"""
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import update
from sqlalchemy.orm import Session

from replai.billing import ledger
from replai.billing.payments import sign
from replai.config import Settings
from replai.errors import ConfigurationError, NotFound, SignatureMismatch, ValidationFailed
from replai.models import Payment, PaymentStatus, TransactionType
from replai.utils import utcnow

logger = logging.getLogger(__name__)


class PaymentCallback(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    out_sum: Optional[str] = Field(default=None, alias="OutSum")
    inv_id: Optional[str] = Field(default=None, alias="InvId")
    signature: Optional[str] = Field(default=None, alias="SignatureValue")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PaymentCallback":
        return cls.model_validate({k: data.get(k) for k in ("OutSum", "InvId", "SignatureValue")})


def ok_response(inv_id) -> str:
    return f"OK{inv_id}"


def handle_payment_callback(db: Session, callback: PaymentCallback, settings: Settings) -> str:
    if not settings.robokassa_password2:
        raise ConfigurationError("Configuration error")

    out_sum = (callback.out_sum or "").strip()
    raw_inv = (callback.inv_id or "").strip()
    signature = (callback.signature or "").strip()
    if not out_sum or not raw_inv or not signature:
        raise ValidationFailed("bad request")

    try:
        inv_id = int(raw_inv)
    except ValueError:
        raise ValidationFailed("bad request")

    # se firma el OutSum tal cual llegó, sin reformatear
    expected = sign(out_sum, raw_inv, settings.robokassa_password2, algo=settings.robokassa_hash_algo)
    if signature.lower() != expected.lower():
        logger.error("[webhook] invalid signature InvId=%s", raw_inv)
        raise SignatureMismatch("bad sign")

    payment = db.get(Payment, inv_id)
    if payment is None:
        raise NotFound("payment not found")

    try:
        if Decimal(out_sum) != Decimal(payment.amount):
            logger.warning("[webhook] InvId=%s OutSum=%s differs from requested %s", inv_id, out_sum, payment.amount)
    except InvalidOperation:
        raise ValidationFailed("bad request")

    res = db.execute(
        update(Payment)
        .where(Payment.inv_id == inv_id, Payment.status == PaymentStatus.pending)
        .values(status=PaymentStatus.completed, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        logger.info("[webhook] InvId=%s already completed, duplicate delivery ignored", inv_id)
        return ok_response(inv_id)

    balance = ledger.credit(
        db,
        user_id=payment.user_id,
        amount=payment.tokens,
        type=TransactionType.purchase,
        description=f"Покупка {payment.tokens} токенов ({out_sum} руб)",
        payment_inv_id=inv_id,
        commit=False,
    )
    db.commit()

    logger.info(
        "[webhook] InvId=%s completed: +%d tokens to user=%s (balance=%d)",
        inv_id, payment.tokens, payment.user_id, balance,
    )
    return ok_response(inv_id)

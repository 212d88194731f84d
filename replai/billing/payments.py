# replai/billing/payments.py
from __future__ import annotations

import hashlib
import logging
import urllib.parse
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from sqlalchemy.orm import Session

from replai.config import Settings
from replai.errors import AuthorizationError, ConfigurationError, ValidationFailed
from replai.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

SUPPORTED_HASH_ALGOS = ("md5", "sha1", "sha256", "sha384", "sha512")


@dataclass
class PaymentLink:
    url: str
    inv_id: int


def sign(*parts, algo: str = "md5") -> str:
    """hash('a:b:c') en hex. El algoritmo lo fija la configuración de la pasarela."""
    algo = (algo or "md5").lower()
    if algo not in SUPPORTED_HASH_ALGOS:
        raise ConfigurationError(f"ROBOKASSA_HASH_ALGO no soportado: {algo}")
    raw = ":".join(str(p) for p in parts)
    return hashlib.new(algo, raw.encode("utf-8")).hexdigest()


def format_out_sum(amount) -> str:
    """990 -> '990.00'"""
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("amount must be a number")
    if not value.is_finite() or value <= 0:
        raise ValidationFailed("amount must be positive")
    return value


def _parse_tokens(tokens) -> int:
    if isinstance(tokens, int) and not isinstance(tokens, bool):
        value = tokens
    elif isinstance(tokens, str) and tokens.strip().isdigit():
        value = int(tokens.strip())
    else:
        raise ValidationFailed("tokens must be a positive integer")
    if value <= 0:
        raise ValidationFailed("tokens must be a positive integer")
    return value


def build_payment_url(settings: Settings, *, out_sum: str, inv_id: int) -> str:
    signature = sign(
        settings.robokassa_login, out_sum, inv_id, settings.robokassa_password1,
        algo=settings.robokassa_hash_algo,
    )
    params = {
        "MerchantLogin": settings.robokassa_login,
        "OutSum": out_sum,
        "InvId": inv_id,
        "SignatureValue": signature,
        "IsTest": 1 if settings.robokassa_is_test else 0,
    }
    return f"{settings.robokassa_url}?{urllib.parse.urlencode(params)}"


def create_payment(db: Session, user_id: str, amount, tokens, settings: Settings) -> PaymentLink:
    if not user_id:
        raise AuthorizationError("Falta usuario autenticado")

    # antes de escribir nada
    if not settings.robokassa_login or not settings.robokassa_password1:
        raise ConfigurationError("Оплата пока не настроена. Ключи Робокассы не добавлены.")

    if amount is None or tokens is None:
        raise ValidationFailed("amount and tokens are required")
    value = _parse_amount(amount)
    token_count = _parse_tokens(tokens)
    out_sum = format_out_sum(value)

    payment = Payment(
        user_id=user_id,
        amount=Decimal(out_sum),
        tokens=token_count,
        status=PaymentStatus.pending,
    )
    db.add(payment)
    db.commit()
    db.refresh(payment)

    url = build_payment_url(settings, out_sum=out_sum, inv_id=payment.inv_id)
    logger.info(
        "[payments] created inv_id=%s user=%s amount=%s tokens=%d",
        payment.inv_id, user_id, out_sum, token_count,
    )
    return PaymentLink(url=url, inv_id=payment.inv_id)

# replai/reviews/dispatcher.py
"""
Envío de respuestas al marketplace.

Orden fijo: validar -> enviar -> UNA escritura atómica del estado -> cobrar.
Nunca se cobra un envío fallido; si el cobro falla tras un envío correcto
queda como anomalía en `replai.ledger.anomaly` (charged=False).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replai.billing import ledger
from replai.cabinets import reply_mode_for, resolve_api_key, revoke_on_unauthorized
from replai.config import Settings
from replai.errors import InsufficientBalance, NotFound, UpstreamError, ValidationFailed
from replai.marketplace.client import MarketplaceClient
from replai.models import Cabinet, Review, ReviewStatus, TransactionType
from replai.reviews.state import REPLIED, SENDABLE
from replai.utils import pause, utcnow

logger = logging.getLogger(__name__)
anomaly_logger = logging.getLogger("replai.ledger.anomaly")

MAX_REPLY_LENGTH = 5000


@dataclass
class DispatchResult:
    review_id: int
    status: ReviewStatus
    charged: bool
    already_replied: bool = False
    balance: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "success": True,
            "review_id": self.review_id,
            "status": self.status.value,
            "charged": self.charged,
            "already_replied": self.already_replied,
            "balance": self.balance,
        }


def _reply_text(review: Review, text: Optional[str]) -> str:
    out = (text or "").strip() or (review.ai_draft or "").strip()
    if not out:
        raise ValidationFailed("No answer text provided")
    if len(out) > MAX_REPLY_LENGTH:
        raise ValidationFailed(f"Ответ не должен превышать {MAX_REPLY_LENGTH} символов")
    return out


def _require_balance(db: Session, user_id: str, cost: int) -> None:
    balance = ledger.get_balance(db, user_id=user_id)
    if balance < cost:
        raise InsufficientBalance(user_id, balance, cost)


def _deliver(
    db: Session,
    client: MarketplaceClient,
    review: Review,
    *,
    api_key: str,
    text: str,
    target: ReviewStatus,
    settings: Settings,
    description: str,
) -> DispatchResult:
    # 1) red primero: si falla no se toca nada y el UpstreamError sube tal cual
    client.send_reply_to_review(api_key, review.external_id, text)

    # 2) una sola escritura, condicionada a que siga sin responder
    res = db.execute(
        update(Review)
        .where(Review.id == review.id, Review.status.in_(SENDABLE))
        .values(
            status=target,
            sent_answer=text,
            is_edited=text != (review.ai_draft or "").strip(),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        db.refresh(review)
        logger.warning(
            "[dispatcher] review=%s replied concurrently (status=%s), not charging", review.id, review.status
        )
        return DispatchResult(review.id, ReviewStatus(review.status), charged=False, already_replied=True)
    db.commit()
    db.refresh(review)

    # 3) cobro
    try:
        balance = ledger.debit(
            db,
            user_id=review.user_id,
            amount=settings.reply_cost_tokens,
            type=TransactionType.usage,
            description=description,
            review_id=review.id,
        )
    except (InsufficientBalance, SQLAlchemyError) as e:
        db.rollback()
        anomaly_logger.error(
            "[ledger-anomaly] review=%s user=%s sent but not charged (%d tokens): %s",
            review.id, review.user_id, settings.reply_cost_tokens, e,
        )
        return DispatchResult(review.id, target, charged=False)

    logger.info("[dispatcher] review=%s -> %s balance=%d", review.id, target.value, balance)
    return DispatchResult(review.id, target, charged=True, balance=balance)


def send_reply(
    db: Session,
    client: MarketplaceClient,
    review_id: int,
    user_id: str,
    settings: Settings,
    text: Optional[str] = None,
) -> DispatchResult:
    review = db.get(Review, review_id)
    if not review or review.user_id != user_id:
        raise NotFound("Review not found")

    if ReviewStatus(review.status) in REPLIED:
        # idempotente: ni se reenvía ni se cobra
        return DispatchResult(review.id, ReviewStatus(review.status), charged=False, already_replied=True)

    reply = _reply_text(review, text)
    cabinet = db.get(Cabinet, review.cabinet_id)
    api_key = resolve_api_key(cabinet)
    _require_balance(db, user_id, settings.reply_cost_tokens)

    try:
        return _deliver(
            db, client, review,
            api_key=api_key,
            text=reply,
            target=ReviewStatus.sent,
            settings=settings,
            description="Отправка ответа на отзыв",
        )
    except UpstreamError as e:
        revoke_on_unauthorized(db, cabinet, e)
        raise


@dataclass
class AutoReplyResult:
    sent: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)


def auto_reply_pending(
    db: Session,
    client: MarketplaceClient,
    cabinet: Cabinet,
    settings: Settings,
) -> AutoReplyResult:
    """Borradores pendientes cuya valoración está en modo auto -> status auto."""
    api_key = resolve_api_key(cabinet)
    result = AutoReplyResult()

    reviews = db.execute(
        select(Review)
        .where(Review.cabinet_id == cabinet.id)
        .where(Review.status == ReviewStatus.pending)
        .where(Review.ai_draft.is_not(None))
        .order_by(Review.id.asc())
    ).scalars().all()

    for review in reviews:
        if reply_mode_for(cabinet, review.rating) != "auto":
            continue

        text = (review.ai_draft or "").strip()
        if not text or len(text) > MAX_REPLY_LENGTH:
            result.skipped += 1
            continue

        if ledger.get_balance(db, user_id=cabinet.user_id) < settings.reply_cost_tokens:
            logger.info("[auto-reply] cabinet=%s balance exhausted, stopping", cabinet.id)
            break

        if result.sent or result.errors:
            pause(settings.sync_page_delay_seconds)

        try:
            out = _deliver(
                db, client, review,
                api_key=api_key,
                text=text,
                target=ReviewStatus.auto,
                settings=settings,
                description="Автоответ на отзыв",
            )
        except UpstreamError as e:
            logger.warning("[auto-reply] review=%s send failed: %s", review.id, e)
            result.errors.append(f"Auto-reply error for {review.external_id}: {e}")
            if e.status == 401:
                revoke_on_unauthorized(db, cabinet, e)
                break
            continue

        if out.already_replied:
            result.skipped += 1
        else:
            result.sent += 1

    logger.info(
        "[auto-reply] cabinet=%s sent=%d skipped=%d errors=%d",
        cabinet.id, result.sent, result.skipped, len(result.errors),
    )
    return result

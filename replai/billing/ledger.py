# replai/billing/ledger.py
"""
Ledger de tokens.

token_transactions es append-only y es la fuente de verdad; token_balances es
una proyección. Cada mutación es un UPDATE atómico condicional
(balance = balance + delta WHERE balance + delta >= 0) más el INSERT de la
transacción, en la misma transacción de BD. Nunca read-then-write.
"""
from __future__ import annotations

import logging
from typing import Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replai.errors import InsufficientBalance, ValidationFailed
from replai.models import TokenBalance, TokenTransaction, TransactionType
from replai.utils import utcnow

logger = logging.getLogger(__name__)
admin_logger = logging.getLogger("replai.admin")

ADMIN_TYPES = (TransactionType.admin_topup, TransactionType.admin_deduct)


def _ensure_balance_row(db: Session, user_id: str) -> bool:
    """Inserta la fila de saldo si no existe. Devuelve True si la creó esta llamada."""
    exists = db.execute(
        select(TokenBalance.user_id).where(TokenBalance.user_id == user_id)
    ).first()
    if exists:
        return False

    try:
        with db.begin_nested():
            db.add(TokenBalance(user_id=user_id, balance=0))
    except IntegrityError:
        # otra invocación la creó entre el SELECT y el INSERT
        return False
    return True


def _current(db: Session, user_id: str) -> int:
    v = db.execute(
        select(TokenBalance.balance).where(TokenBalance.user_id == user_id)
    ).scalar()
    return int(v or 0)


def _apply(
    db: Session,
    *,
    user_id: str,
    delta: int,
    type: TransactionType,
    description: str,
    review_id: Optional[int],
    payment_inv_id: Optional[int],
    commit: bool,
) -> int:
    _ensure_balance_row(db, user_id)

    res = db.execute(
        update(TokenBalance)
        .where(TokenBalance.user_id == user_id)
        .where(TokenBalance.balance + delta >= 0)
        .values(balance=TokenBalance.balance + delta, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        balance = _current(db, user_id)
        if commit:
            db.rollback()
        raise InsufficientBalance(user_id, balance, -delta)

    db.add(
        TokenTransaction(
            user_id=user_id,
            amount=delta,
            type=type,
            description=description,
            review_id=review_id,
            payment_inv_id=payment_inv_id,
        )
    )
    db.flush()
    new_balance = _current(db, user_id)

    if commit:
        db.commit()

    logger.info("[ledger] user=%s %s %+d -> %d", user_id, type.value, delta, new_balance)
    return new_balance


def _check_amount(amount: int) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationFailed("amount debe ser un entero positivo")
    return amount


def credit(
    db: Session,
    *,
    user_id: str,
    amount: int,
    type: TransactionType = TransactionType.purchase,
    description: str = "",
    review_id: Optional[int] = None,
    payment_inv_id: Optional[int] = None,
    commit: bool = True,
) -> int:
    """Suma `amount` tokens. Devuelve el saldo resultante."""
    return _apply(
        db,
        user_id=user_id,
        delta=_check_amount(amount),
        type=type,
        description=description,
        review_id=review_id,
        payment_inv_id=payment_inv_id,
        commit=commit,
    )


def debit(
    db: Session,
    *,
    user_id: str,
    amount: int,
    type: TransactionType = TransactionType.usage,
    description: str = "",
    review_id: Optional[int] = None,
    commit: bool = True,
) -> int:
    """Resta `amount` tokens o lanza InsufficientBalance sin tocar nada."""
    return _apply(
        db,
        user_id=user_id,
        delta=-_check_amount(amount),
        type=type,
        description=description,
        review_id=review_id,
        payment_inv_id=None,
        commit=commit,
    )


def get_balance(db: Session, *, user_id: str) -> int:
    return _current(db, user_id)


def list_transactions(
    db: Session,
    *,
    user_id: str,
    type_filter: Union[TransactionType, str, None] = None,
    limit: int = 100,
) -> list[TokenTransaction]:
    stmt = select(TokenTransaction).where(TokenTransaction.user_id == user_id)

    if type_filter:
        try:
            t = TransactionType(type_filter)
        except ValueError:
            raise ValidationFailed(f"Tipo de transacción desconocido: {type_filter}")
        stmt = stmt.where(TokenTransaction.type == t)

    stmt = stmt.order_by(TokenTransaction.created_at.desc(), TokenTransaction.id.desc()).limit(limit)
    return list(db.execute(stmt).scalars().all())


def recompute_balance(db: Session, *, user_id: str, repair: bool = False) -> int:
    """
    Saldo como fold sobre token_transactions.
    Con repair=True reescribe la proyección si difiere (y lo deja en el log).
    """
    total = db.execute(
        select(func.coalesce(func.sum(TokenTransaction.amount), 0)).where(
            TokenTransaction.user_id == user_id
        )
    ).scalar()
    total = int(total or 0)

    if repair:
        projected = _current(db, user_id)
        if projected != total:
            logger.warning(
                "[ledger] projection drift user=%s projected=%d folded=%d", user_id, projected, total
            )
            _ensure_balance_row(db, user_id)
            db.execute(
                update(TokenBalance)
                .where(TokenBalance.user_id == user_id)
                .values(balance=total, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()

    return total


def grant_signup_bonus(db: Session, *, user_id: str, amount: int) -> Optional[int]:
    """Bonus de bienvenida, una sola vez por usuario. None si ya se dio o amount=0."""
    if amount <= 0:
        return None

    already = db.execute(
        select(TokenTransaction.id)
        .where(TokenTransaction.user_id == user_id)
        .where(TokenTransaction.type == TransactionType.bonus)
        .limit(1)
    ).first()
    if already:
        return None

    return credit(
        db,
        user_id=user_id,
        amount=amount,
        type=TransactionType.bonus,
        description="Бонус при регистрации",
    )


def admin_adjust(
    db: Session,
    *,
    actor_id: str,
    user_id: str,
    amount: int,
    type: Union[TransactionType, str],
    description: str = "",
) -> int:
    try:
        t = TransactionType(type)
    except ValueError:
        t = None
    if t not in ADMIN_TYPES:
        raise ValidationFailed("type debe ser admin_topup o admin_deduct")

    if t == TransactionType.admin_topup:
        new_balance = credit(
            db, user_id=user_id, amount=amount, type=t, description=description or "Admin top-up"
        )
    else:
        new_balance = debit(
            db, user_id=user_id, amount=amount, type=t, description=description or "Admin deduction"
        )

    admin_logger.info(
        "[admin] actor=%s %s user=%s amount=%d balance=%d", actor_id, t.value, user_id, amount, new_balance
    )
    return new_balance

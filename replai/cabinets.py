# replai/cabinets.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from replai.errors import ConfigurationError, NotFound, UpstreamError
from replai.marketplace.client import MarketplaceClient
from replai.models import Cabinet, Review
from replai.utils import mask_api_key

logger = logging.getLogger(__name__)

MIN_API_KEY_LENGTH = 10
DEFAULT_REPLY_MODE = "manual"


def resolve_api_key(cabinet: Optional[Cabinet]) -> str:
    """Credencial del marketplace del cabinet o ConfigurationError. Nunca se loguea en claro."""
    key = ((cabinet.api_key if cabinet else None) or "").strip()
    if not key:
        raise ConfigurationError("Ключ API Wildberries не настроен. Добавьте его в настройках.")
    if not cabinet.api_key_valid:
        raise ConfigurationError("Ключ API Wildberries недействителен. Проверьте его в настройках.")
    return key


def revoke_on_unauthorized(db: Session, cabinet: Optional[Cabinet], error: UpstreamError) -> None:
    """Un 401 del marketplace con la clave guardada la marca como no válida."""
    if cabinet is None or error.status != 401 or not cabinet.api_key_valid:
        return
    cabinet.api_key_valid = False
    db.commit()
    logger.warning("[cabinets] key revoked cabinet=%s key=%s", cabinet.id, mask_api_key(cabinet.api_key or ""))


def reply_mode_for(cabinet: Cabinet, rating: int) -> str:
    modes = cabinet.reply_modes or {}
    return modes.get(str(rating)) or DEFAULT_REPLY_MODE


def get_cabinet(db: Session, *, cabinet_id: int, user_id: str) -> Cabinet:
    cabinet = db.get(Cabinet, cabinet_id)
    if not cabinet or cabinet.user_id != user_id:
        raise NotFound("Cabinet not found")
    return cabinet


def get_active_cabinet(db: Session, *, user_id: str) -> Cabinet:
    cabinet = db.execute(
        select(Cabinet)
        .where(Cabinet.user_id == user_id, Cabinet.is_active.is_(True))
        .order_by(Cabinet.id.asc())
        .limit(1)
    ).scalars().first()
    if not cabinet:
        raise NotFound("Нет активного кабинета")
    return cabinet


def resolve_cabinet(db: Session, *, user_id: str, cabinet_id: Optional[int] = None) -> Cabinet:
    if cabinet_id is not None:
        return get_cabinet(db, cabinet_id=cabinet_id, user_id=user_id)
    return get_active_cabinet(db, user_id=user_id)


def list_cabinets_with_key(db: Session) -> list[Cabinet]:
    stmt = (
        select(Cabinet)
        .where(Cabinet.api_key.is_not(None), Cabinet.api_key_valid.is_(True))
        .order_by(Cabinet.id.asc())
    )
    return [c for c in db.execute(stmt).scalars().all() if (c.api_key or "").strip()]


def count_reviews(db: Session, *, cabinet_id: int) -> int:
    return int(
        db.execute(select(func.count(Review.id)).where(Review.cabinet_id == cabinet_id)).scalar() or 0
    )


@dataclass
class KeyValidation:
    valid: bool
    masked_key: str = ""
    chat_access: bool = False
    first_setup: bool = False
    error: Optional[str] = None


def validate_api_key(
    db: Session,
    client: MarketplaceClient,
    *,
    cabinet: Cabinet,
    api_key: str,
) -> KeyValidation:
    """
    Prueba la credencial contra el marketplace (take=1) y, si responde 2xx,
    la guarda en el cabinet. Una clave rechazada no es un error HTTP: valid=False.
    """
    key = (api_key or "").strip()
    if len(key) < MIN_API_KEY_LENGTH:
        return KeyValidation(valid=False, error="Некорректный API-ключ")

    try:
        client.ping(key)
    except UpstreamError as e:
        logger.info("[cabinets] key rejected cabinet=%s status=%s", cabinet.id, e.status)
        if e.status == 401:
            # la clave guardada ya no sirve: no se vuelve a usar hasta revalidar
            if (cabinet.api_key or "").strip() == key:
                revoke_on_unauthorized(db, cabinet, e)
            return KeyValidation(valid=False, error="Неверный API-ключ")
        if e.status is None:
            raise
        return KeyValidation(valid=False, error=f"Ошибка WB API: {e.status}")

    cabinet.api_key = key
    cabinet.api_key_valid = True
    db.commit()

    chat_access = False
    try:
        client.fetch_chats_page(key)
        chat_access = True
    except UpstreamError as e:
        logger.info("[cabinets] no chat access cabinet=%s: %s", cabinet.id, e)

    first_setup = count_reviews(db, cabinet_id=cabinet.id) == 0
    logger.info(
        "[cabinets] key validated cabinet=%s key=%s chat_access=%s first_setup=%s",
        cabinet.id, mask_api_key(key), chat_access, first_setup,
    )
    return KeyValidation(
        valid=True,
        masked_key=mask_api_key(key),
        chat_access=chat_access,
        first_setup=first_setup,
    )


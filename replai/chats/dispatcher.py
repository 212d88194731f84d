# replai/chats/dispatcher.py
from __future__ import annotations

import logging
import secrets
import time

from sqlalchemy import select
from sqlalchemy.orm import Session

from replai.cabinets import resolve_api_key, revoke_on_unauthorized
from replai.chats.reconciler import SYNTHETIC_PREFIX
from replai.errors import NotFound, UpstreamError, ValidationFailed
from replai.marketplace.client import MarketplaceClient
from replai.models import Cabinet, Chat, ChatMessage
from replai.utils import utcnow

logger = logging.getLogger(__name__)

MAX_CHAT_MESSAGE_LENGTH = 1000


def synthetic_event_id() -> str:
    """Id local hasta que el feed de eventos devuelva el del proveedor."""
    return f"{SYNTHETIC_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(3)}"


def get_chat(db: Session, *, user_id: str, chat_id) -> Chat:
    """Acepta el id interno o el id del marketplace."""
    stmt = select(Chat).where(Chat.user_id == user_id)
    if isinstance(chat_id, int) or str(chat_id).isdigit():
        chat = db.execute(stmt.where(Chat.id == int(chat_id))).scalars().first()
        if chat:
            return chat
    chat = db.execute(stmt.where(Chat.external_id == str(chat_id))).scalars().first()
    if not chat:
        raise NotFound("Чат не найден")
    return chat


def send_chat_message(db: Session, client: MarketplaceClient, chat_id, user_id: str, message: str) -> ChatMessage:
    text = (message or "").strip()
    if not text:
        raise ValidationFailed("message is required")
    if len(text) > MAX_CHAT_MESSAGE_LENGTH:
        raise ValidationFailed(f"Сообщение не должно превышать {MAX_CHAT_MESSAGE_LENGTH} символов")

    chat = get_chat(db, user_id=user_id, chat_id=chat_id)
    if not chat.reply_sign:
        raise ValidationFailed("Нет подписи для ответа (reply_sign). Синхронизируйте чаты.")

    cabinet = db.get(Cabinet, chat.cabinet_id)
    api_key = resolve_api_key(cabinet)

    # UpstreamError sube sin tocar los mensajes
    try:
        client.send_chat_message(api_key, chat.reply_sign, text)
    except UpstreamError as e:
        revoke_on_unauthorized(db, cabinet, e)
        raise

    now = utcnow()
    msg = ChatMessage(
        chat_id=chat.id,
        event_id=synthetic_event_id(),
        sender="seller",
        text=text,
        attachments=[],
        sent_at=now,
    )
    db.add(msg)
    chat.last_message_text = text
    chat.last_message_at = now
    chat.is_read = True
    db.commit()
    db.refresh(msg)

    logger.info("[chat-dispatcher] chat=%s message=%s sent", chat.id, msg.event_id)
    return msg

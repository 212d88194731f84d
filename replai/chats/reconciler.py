# replai/chats/reconciler.py
"""
Espejo de chats: lista de chats + feed de eventos paginado por cursor `next`.
Mensajes keyed en (chat_id, event_id), insert-if-absent. Un mensaje del
vendedor guardado localmente con id sintético `seller_...` adopta el id del
proveedor cuando el feed lo devuelve (mismo texto, ±120 s).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replai.cabinets import resolve_api_key, revoke_on_unauthorized
from replai.config import Settings
from replai.errors import SyncAborted, UpstreamError
from replai.marketplace.client import MarketplaceClient
from replai.marketplace.dto import ChatDTO, ChatEventDTO
from replai.models import Cabinet, Chat, ChatMessage
from replai.utils import as_utc, pause, utcnow

logger = logging.getLogger(__name__)

SYNTHETIC_PREFIX = "seller_"
SELLER_MATCH_WINDOW = timedelta(seconds=120)
ATTACHMENT_PLACEHOLDER = "Вложение"


@dataclass
class ChatSyncResult:
    chats: int = 0
    inserted_chats: int = 0
    fetched_events: int = 0
    inserted_messages: int = 0
    adopted_messages: int = 0
    pages: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _chats_by_external_id(db: Session, cabinet_id: int) -> dict[str, Chat]:
    rows = db.execute(select(Chat).where(Chat.cabinet_id == cabinet_id)).scalars().all()
    return {c.external_id: c for c in rows}


def upsert_chats(db: Session, cabinet: Cabinet, items: list[ChatDTO], result: ChatSyncResult) -> dict[str, Chat]:
    known = _chats_by_external_id(db, cabinet.id)

    for item in items:
        if not item.chat_id:
            continue
        result.chats += 1

        chat = known.get(item.chat_id)
        if chat is not None:
            # reply_sign caduca: siempre el último que da el proveedor
            if item.reply_sign:
                chat.reply_sign = item.reply_sign
            if item.client_name:
                chat.client_name = item.client_name
            if item.product_name:
                chat.product_name = item.product_name
            if item.product_nm_id:
                chat.product_nm_id = item.product_nm_id
            continue

        try:
            with db.begin_nested():
                chat = Chat(
                    external_id=item.chat_id,
                    user_id=cabinet.user_id,
                    cabinet_id=cabinet.id,
                    reply_sign=item.reply_sign,
                    client_name=item.client_name or "Покупатель",
                    product_nm_id=item.product_nm_id,
                    product_name=item.product_name or "",
                )
                db.add(chat)
            known[item.chat_id] = chat
            result.inserted_chats += 1
        except IntegrityError:
            logger.info("[chat-sync] chat %s inserted concurrently", item.chat_id)

    db.commit()
    return _chats_by_external_id(db, cabinet.id)


def _find_synthetic_seller_message(db: Session, chat: Chat, text: str, sent_at) -> Optional[ChatMessage]:
    candidates = db.execute(
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat.id)
        .where(ChatMessage.sender == "seller")
        .where(ChatMessage.text == text)
        .where(ChatMessage.event_id.startswith(SYNTHETIC_PREFIX))
    ).scalars().all()
    for m in candidates:
        if abs(as_utc(m.sent_at) - sent_at) <= SELLER_MATCH_WINDOW:
            return m
    return None


def _message_exists(db: Session, chat_id: int, event_id: str) -> bool:
    return db.execute(
        select(ChatMessage.id).where(ChatMessage.chat_id == chat_id, ChatMessage.event_id == event_id)
    ).first() is not None


def apply_event(db: Session, chat: Chat, event: ChatEventDTO, result: ChatSyncResult) -> Optional[str]:
    """Aplica un evento. Devuelve el sender si insertó un mensaje nuevo."""
    event_id = str(event.event_id)
    if _message_exists(db, chat.id, event_id):
        return None

    sender = event.sender_role
    text = event.message_text
    sent_at = as_utc(event.created_at) or utcnow()

    if sender == "seller" and text:
        local = _find_synthetic_seller_message(db, chat, text, sent_at)
        if local is not None:
            local.event_id = event_id
            result.adopted_messages += 1
            return None

    try:
        with db.begin_nested():
            db.add(
                ChatMessage(
                    chat_id=chat.id,
                    event_id=event_id,
                    sender=sender,
                    text=text,
                    attachments=event.attachment_list(),
                    sent_at=sent_at,
                )
            )
    except IntegrityError:
        return None

    result.inserted_messages += 1
    return sender


def refresh_last_message(db: Session, chat: Chat, *, mark_unread: bool) -> None:
    last = db.execute(
        select(ChatMessage)
        .where(ChatMessage.chat_id == chat.id)
        .order_by(ChatMessage.sent_at.desc(), ChatMessage.id.desc())
        .limit(1)
    ).scalars().first()
    if last is None:
        return
    chat.last_message_text = last.text or ATTACHMENT_PLACEHOLDER
    chat.last_message_at = last.sent_at
    if mark_unread:
        chat.is_read = False


def run_chat_sync(db: Session, client: MarketplaceClient, cabinet: Cabinet, settings: Settings) -> ChatSyncResult:
    api_key = resolve_api_key(cabinet)
    result = ChatSyncResult()

    try:
        items = client.fetch_chats_page(api_key)
    except UpstreamError as e:
        logger.error("[chat-sync] cabinet=%s chat list failed: %s", cabinet.id, e)
        revoke_on_unauthorized(db, cabinet, e)
        raise SyncAborted(0, 0, e) from e

    chats = upsert_chats(db, cabinet, items, result)

    touched: set[int] = set()
    unread: set[int] = set()
    cursor = None

    while result.pages < settings.chat_events_max_pages:
        pause(settings.sync_page_delay_seconds)
        try:
            events, cursor = client.fetch_chat_events_page(api_key, cursor)
        except UpstreamError as e:
            logger.error(
                "[chat-sync] cabinet=%s events aborted page=%d inserted=%d: %s",
                cabinet.id, result.pages, result.inserted_messages, e,
            )
            raise SyncAborted(result.fetched_events, result.inserted_messages, e) from e

        result.pages += 1
        if not events:
            break
        result.fetched_events += len(events)

        for event in events:
            if not event.event_id or not event.chat_id:
                continue
            chat = chats.get(event.chat_id)
            if chat is None:
                continue
            sender = apply_event(db, chat, event, result)
            touched.add(chat.id)
            if sender == "client":
                unread.add(chat.id)
        db.commit()

        if not cursor:
            break

    for chat in chats.values():
        if chat.id in touched:
            refresh_last_message(db, chat, mark_unread=chat.id in unread)
    db.commit()

    logger.info(
        "[chat-sync] cabinet=%s chats=%d new_chats=%d events=%d messages=%d adopted=%d",
        cabinet.id, result.chats, result.inserted_chats, result.fetched_events,
        result.inserted_messages, result.adopted_messages,
    )
    return result

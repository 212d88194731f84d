# replai/chats/router.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from replai import cabinets
from replai.config import Settings, get_settings
from replai.db import get_db
from replai.deps import get_current_user_id, get_marketplace_client
from replai.marketplace.client import MarketplaceClient
from replai.schemas import CabinetRef, ChatSyncOut, SendChatMessageIn, SendChatMessageOut
from .dispatcher import send_chat_message
from .reconciler import run_chat_sync

router = APIRouter(prefix="/api/functions", tags=["chats"])


@router.post("/sync-chats", response_model=ChatSyncOut)
def sync_chats(
    payload: Optional[CabinetRef] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
    settings: Settings = Depends(get_settings),
):
    cabinet = cabinets.resolve_cabinet(db, user_id=user_id, cabinet_id=payload.cabinet_id if payload else None)
    return run_chat_sync(db, client, cabinet, settings).as_dict()


@router.post("/send-chat-message", response_model=SendChatMessageOut)
def send_chat_message_route(
    payload: SendChatMessageIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
):
    msg = send_chat_message(db, client, payload.chat_id, user_id, payload.message)
    return {"message": msg}

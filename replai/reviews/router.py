# replai/reviews/router.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from replai import cabinets
from replai.config import Settings, get_settings
from replai.db import get_db
from replai.deps import (
    get_completion_client,
    get_current_user_id,
    get_marketplace_client,
    get_optional_completion_client,
)
from replai.errors import SyncAborted
from replai.marketplace.client import MarketplaceClient
from replai.schemas import (
    ArchiveOut,
    CabinetRef,
    CabinetRequired,
    GenerateReplyIn,
    GenerateReplyOut,
    SendReplyIn,
    SendReplyOut,
    SyncOut,
    ValidateApiKeyIn,
    ValidateApiKeyOut,
)
from .dispatcher import auto_reply_pending, send_reply
from .drafts import CompletionClient, generate_draft
from .reconciler import draft_new_reviews, run_archive_sync, run_review_sync

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/functions", tags=["reviews"])


@router.post("/sync-reviews", response_model=SyncOut)
def sync_reviews(
    payload: Optional[CabinetRef] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
    completion: Optional[CompletionClient] = Depends(get_optional_completion_client),
    settings: Settings = Depends(get_settings),
):
    cabinet = cabinets.resolve_cabinet(db, user_id=user_id, cabinet_id=payload.cabinet_id if payload else None)

    # SyncAborted sube: 502 con los contadores parciales
    result = run_review_sync(db, client, cabinet, settings)

    drafted, errors = 0, []
    if completion is not None:
        drafted, errors = draft_new_reviews(db, completion, cabinet, settings)
    else:
        errors.append("OPENROUTER_API_KEY не настроен: черновики не сгенерированы")

    auto = auto_reply_pending(db, client, cabinet, settings)

    return {
        "fetched": result.fetched,
        "inserted": result.inserted,
        "drafted": drafted,
        "auto_sent": auto.sent,
        "errors": errors + auto.errors,
    }


@router.post("/fetch-archive", response_model=ArchiveOut)
def fetch_archive(
    payload: CabinetRequired,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
    settings: Settings = Depends(get_settings),
):
    cabinet = cabinets.get_cabinet(db, cabinet_id=payload.cabinet_id, user_id=user_id)
    return run_archive_sync(db, client, cabinet, settings).as_dict()


@router.post("/generate-reply", response_model=GenerateReplyOut)
def generate_reply(
    payload: GenerateReplyIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    completion: CompletionClient = Depends(get_completion_client),
    settings: Settings = Depends(get_settings),
):
    draft = generate_draft(db, completion, payload.review_id, user_id, settings)
    return {"draft": draft}


@router.post("/send-reply", response_model=SendReplyOut)
def send_reply_route(
    payload: SendReplyIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
    settings: Settings = Depends(get_settings),
):
    result = send_reply(db, client, payload.review_id, user_id, settings, text=payload.answer_text)
    return result.as_dict()


@router.post("/validate-api-key", response_model=ValidateApiKeyOut)
def validate_api_key(
    payload: ValidateApiKeyIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    client: MarketplaceClient = Depends(get_marketplace_client),
    settings: Settings = Depends(get_settings),
):
    cabinet = cabinets.get_cabinet(db, cabinet_id=payload.cabinet_id, user_id=user_id)
    check = cabinets.validate_api_key(db, client, cabinet=cabinet, api_key=payload.api_key)
    if not check.valid:
        return {"valid": False, "error": check.error}

    out = {
        "valid": True,
        "masked_key": check.masked_key,
        "chat_access": check.chat_access,
        "archive_imported": False,
    }

    # ✅ primer alta del cabinet: importa el histórico ya respondido
    if check.first_setup:
        try:
            archive = run_archive_sync(db, client, cabinet, settings)
            out["archive_imported"] = True
            out["archive"] = archive.as_dict()
        except SyncAborted as e:
            db.rollback()
            logger.error("[validate-api-key] archive import failed cabinet=%s: %s", cabinet.id, e)
            out["archive"] = {"success": False, "fetched": e.fetched, "inserted": e.inserted}

    return out

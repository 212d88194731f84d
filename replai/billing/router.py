# replai/billing/router.py
from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from replai.config import Settings, get_settings
from replai.db import get_db
from replai.deps import get_current_user_id
from replai.errors import ReplaiError
from replai.schemas import BalanceOut, CreatePaymentIn, CreatePaymentOut, TransactionListOut
from . import ledger
from .payments import create_payment
from .webhook import PaymentCallback, handle_payment_callback

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


@router.post("/api/functions/create-payment", response_model=CreatePaymentOut)
def create_payment_route(
    payload: CreatePaymentIn,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    link = create_payment(db, user_id, payload.amount, payload.tokens, settings)
    return {"url": link.url, "inv_id": link.inv_id}


async def read_payment_callback(request: Request) -> PaymentCallback:
    """form-urlencoded, JSON o query string, según lo mande la pasarela."""
    content_type = request.headers.get("content-type", "")

    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return PaymentCallback.from_mapping(form)

    if "application/json" in content_type:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            body = {}
        if isinstance(body, dict):
            return PaymentCallback.from_mapping(body)
        return PaymentCallback()

    return PaymentCallback.from_mapping(request.query_params)


@router.api_route("/api/functions/robokassa-webhook", methods=["GET", "POST"], response_class=PlainTextResponse)
def robokassa_webhook(
    callback: PaymentCallback = Depends(read_payment_callback),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # la pasarela espera texto plano, no el JSON de error del resto de la API
    try:
        return PlainTextResponse(handle_payment_callback(db, callback, settings))
    except ReplaiError as e:
        db.rollback()
        return PlainTextResponse(e.message, status_code=e.status_code)


@router.get("/api/balance/tokens", response_model=BalanceOut)
def get_token_balance(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    # primer acceso del usuario: bonus de bienvenida (no-op si ya se dio o es 0)
    ledger.grant_signup_bonus(db, user_id=user_id, amount=settings.signup_bonus_tokens)
    return {"balance": ledger.get_balance(db, user_id=user_id)}


@router.get("/api/transactions", response_model=TransactionListOut)
def list_transactions(
    type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    items = ledger.list_transactions(db, user_id=user_id, type_filter=type, limit=limit)
    return {"items": items}

# replai/deps.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.orm import Session

from replai.config import Settings, get_settings
from replai.db import get_db
from replai.errors import AuthorizationError, ConfigurationError, Forbidden
from replai.marketplace.client import MarketplaceClient
from replai.models import UserRole
from replai.reviews.drafts import CompletionClient

ADMIN_ROLE = "admin"


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    El front envía X-User-Id con el id del usuario ya autenticado.
    La validación de la sesión vive fuera de este servicio.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthorizationError("Falta X-User-Id")
    return user_id


def is_admin(db: Session, user_id: str) -> bool:
    row = db.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == ADMIN_ROLE)
    ).first()
    return row is not None


def require_admin(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> str:
    if not is_admin(db, user_id):
        raise Forbidden("Admin access required")
    return user_id


def get_marketplace_client(settings: Settings = Depends(get_settings)) -> MarketplaceClient:
    return MarketplaceClient.from_settings(settings)


def get_completion_client(settings: Settings = Depends(get_settings)) -> CompletionClient:
    return CompletionClient.from_settings(settings)


def get_optional_completion_client(settings: Settings = Depends(get_settings)) -> Optional[CompletionClient]:
    try:
        return CompletionClient.from_settings(settings)
    except ConfigurationError:
        return None

# replai/admin_router.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from replai.billing import ledger
from replai.config import Settings, get_settings
from replai.db import get_db
from replai.deps import require_admin
from replai.errors import NotFound
from replai.models import Review
from replai.reviews.archival import archive_stale_reviews
from replai.reviews.state import force_status
from replai.schemas import (
    AdminBalanceIn,
    AdminBalanceOut,
    AdminStatusIn,
    AdminStatusOut,
    ArchiveRunOut,
    RecomputeOut,
)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/balance/tokens", response_model=AdminBalanceOut)
def adjust_token_balance(
    payload: AdminBalanceIn,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    new_balance = ledger.admin_adjust(
        db,
        actor_id=admin_id,
        user_id=payload.user_id,
        amount=payload.amount,
        type=payload.type,
        description=payload.description or "",
    )
    return {"new_balance": new_balance}


@router.post("/balance/tokens/{user_id}/recompute", response_model=RecomputeOut)
def recompute_token_balance(
    user_id: str,
    repair: bool = Query(False),
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    folded = ledger.recompute_balance(db, user_id=user_id, repair=repair)
    return {"user_id": user_id, "balance": ledger.get_balance(db, user_id=user_id), "folded": folded}


@router.patch("/reviews/{review_id}/status", response_model=AdminStatusOut)
def override_review_status(
    review_id: int,
    payload: AdminStatusIn,
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
):
    review = db.get(Review, review_id)
    if not review:
        raise NotFound("Review not found")
    force_status(review, payload.status, actor=admin_id)
    db.commit()
    db.refresh(review)
    return {"review_id": review.id, "status": review.status}


@router.post("/archive-reviews", response_model=ArchiveRunOut)
def run_archival(
    admin_id: str = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return {"archived": archive_stale_reviews(db, settings)}

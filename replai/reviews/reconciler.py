# replai/reviews/reconciler.py
"""
Espejo de reseñas del marketplace.

Bucle de páginas común a la sync de pendientes y a la importación del archivo:
  fetch (skip += take) -> dedup contra lo que ya hay para el cabinet -> insert
  del complemento -> commit por página -> pausa.
Si una página falla se aborta todo (SyncAborted con los contadores). Relanzar
desde cero es seguro: la dedup por (cabinet_id, external_id) evita duplicados.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, asdict
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replai.cabinets import resolve_api_key, revoke_on_unauthorized
from replai.chats.reconciler import run_chat_sync
from replai.config import Settings
from replai.errors import ReplaiError, SyncAborted, UpstreamError
from replai.marketplace.client import MarketplaceClient
from replai.marketplace.dto import FeedbackDTO
from replai.models import Cabinet, Review, ReviewStatus
from replai.reviews.dispatcher import auto_reply_pending
from replai.reviews.drafts import CompletionClient, generate_draft
from replai.utils import as_utc, pause, utcnow

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    fetched: int = 0
    inserted: int = 0
    pages: int = 0

    def as_dict(self) -> dict:
        return {"fetched": self.fetched, "inserted": self.inserted}


def review_from_feedback(fb: FeedbackDTO, cabinet: Cabinet, status: ReviewStatus) -> Review:
    return Review(
        external_id=fb.id,
        user_id=cabinet.user_id,
        cabinet_id=cabinet.id,
        rating=fb.rating,
        author_name=fb.user_name or "Покупатель",
        brand_name=fb.brand_name,
        product_name=fb.product_name,
        product_article=fb.product_article,
        text=fb.text or None,
        pros=fb.pros or None,
        cons=fb.cons or None,
        photo_links=[p.model_dump(by_alias=True) for p in (fb.photo_links or [])],
        has_video=fb.has_video,
        status=status,
        sent_answer=fb.answer_text if status == ReviewStatus.answered else None,
        created_date=as_utc(fb.created_date),
    )


def _known_ids(db: Session, cabinet_id: int, external_ids: Iterable[str]) -> set[str]:
    ids = list(external_ids)
    if not ids:
        return set()
    rows = db.execute(
        select(Review.external_id)
        .where(Review.cabinet_id == cabinet_id)
        .where(Review.external_id.in_(ids))
    ).scalars()
    return set(rows)


def insert_page(db: Session, cabinet: Cabinet, feedbacks: list[FeedbackDTO], status: ReviewStatus) -> int:
    """Inserta las reseñas de la página que no existan. Devuelve cuántas insertó."""
    # duplicados dentro de la misma página: gana el primero
    by_id: dict[str, FeedbackDTO] = {}
    for fb in feedbacks:
        by_id.setdefault(fb.id, fb)

    known = _known_ids(db, cabinet.id, by_id.keys())
    fresh = [fb for eid, fb in by_id.items() if eid not in known]
    if not fresh:
        return 0

    try:
        db.add_all([review_from_feedback(fb, cabinet, status) for fb in fresh])
        db.commit()
        return len(fresh)
    except IntegrityError:
        # otra sync concurrente insertó alguna entre el SELECT y el INSERT
        db.rollback()
        logger.info("[reconciler] concurrent insert on cabinet=%s, retrying row by row", cabinet.id)

    inserted = 0
    for fb in fresh:
        try:
            with db.begin_nested():
                db.add(review_from_feedback(fb, cabinet, status))
            inserted += 1
        except IntegrityError:
            continue
    db.commit()
    return inserted


def _run_pages(
    db: Session,
    client: MarketplaceClient,
    cabinet: Cabinet,
    settings: Settings,
    *,
    is_answered: bool,
    status: ReviewStatus,
    max_pages: Optional[int],
    tag: str,
) -> SyncResult:
    api_key = resolve_api_key(cabinet)
    take = settings.sync_page_size
    result = SyncResult()
    skip = 0

    while max_pages is None or result.pages < max_pages:
        if result.pages:
            pause(settings.sync_page_delay_seconds)

        try:
            page = client.fetch_reviews_page(api_key, skip=skip, take=take, is_answered=is_answered)
        except UpstreamError as e:
            logger.error(
                "[%s] aborted cabinet=%s page=%d fetched=%d inserted=%d: %s",
                tag, cabinet.id, result.pages, result.fetched, result.inserted, e,
            )
            revoke_on_unauthorized(db, cabinet, e)
            raise SyncAborted(result.fetched, result.inserted, e) from e

        result.pages += 1
        raw_count = getattr(page, "raw_count", len(page))
        if raw_count == 0:
            break

        result.fetched += len(page)
        result.inserted += insert_page(db, cabinet, page, status)

        if raw_count < take:
            break
        skip += take

    logger.info(
        "[%s] cabinet=%s user=%s fetched=%d inserted=%d pages=%d",
        tag, cabinet.id, cabinet.user_id, result.fetched, result.inserted, result.pages,
    )
    return result


def run_review_sync(db: Session, client: MarketplaceClient, cabinet: Cabinet, settings: Settings) -> SyncResult:
    """Reseñas sin responder -> status new."""
    result = _run_pages(
        db, client, cabinet, settings,
        is_answered=False,
        status=ReviewStatus.new,
        max_pages=None,
        tag="reconciler",
    )
    cabinet.last_sync_at = utcnow()
    db.commit()
    return result


def run_archive_sync(db: Session, client: MarketplaceClient, cabinet: Cabinet, settings: Settings) -> SyncResult:
    """Reseñas ya respondidas fuera del sistema -> status answered (máx. ARCHIVE_MAX_PAGES páginas)."""
    return _run_pages(
        db, client, cabinet, settings,
        is_answered=True,
        status=ReviewStatus.answered,
        max_pages=settings.archive_max_pages,
        tag="archive-import",
    )


# ---------------------------
# Sync completa de un cabinet (worker / endpoint sync)
# ---------------------------
@dataclass
class CabinetSyncReport:
    cabinet_id: int
    fetched: int = 0
    inserted: int = 0
    drafted: int = 0
    auto_sent: int = 0
    chats: Optional[dict] = None
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def draft_new_reviews(
    db: Session, completion: CompletionClient, cabinet: Cabinet, settings: Settings, *, limit: int = 100
) -> tuple[int, list[str]]:
    ids = db.execute(
        select(Review.id)
        .where(Review.cabinet_id == cabinet.id, Review.status == ReviewStatus.new)
        .order_by(Review.created_date.asc(), Review.id.asc())
        .limit(limit)
    ).scalars().all()

    drafted = 0
    errors: list[str] = []
    for review_id in ids:
        try:
            generate_draft(db, completion, review_id, cabinet.user_id, settings)
            drafted += 1
        except ReplaiError as e:
            db.rollback()
            logger.warning("[reconciler] draft failed review=%s: %s", review_id, e)
            errors.append(f"AI error for review {review_id}: {e}")
    return drafted, errors


def sync_cabinet(
    db: Session,
    client: MarketplaceClient,
    completion: Optional[CompletionClient],
    cabinet: Cabinet,
    settings: Settings,
) -> CabinetSyncReport:
    """
    Reseñas -> borradores para las nuevas -> autorespuestas -> chats.
    El fallo de una etapa queda en `errors` y no corta las siguientes.
    """
    report = CabinetSyncReport(cabinet_id=cabinet.id)

    try:
        r = run_review_sync(db, client, cabinet, settings)
        report.fetched, report.inserted = r.fetched, r.inserted
    except ReplaiError as e:
        db.rollback()
        report.errors.append(str(e))
        if isinstance(e, SyncAborted):
            report.fetched, report.inserted = e.fetched, e.inserted

    if completion is not None:
        drafted, errors = draft_new_reviews(db, completion, cabinet, settings)
        report.drafted = drafted
        report.errors.extend(errors)

    try:
        auto = auto_reply_pending(db, client, cabinet, settings)
        report.auto_sent = auto.sent
        report.errors.extend(auto.errors)
    except ReplaiError as e:
        db.rollback()
        report.errors.append(str(e))

    try:
        report.chats = run_chat_sync(db, client, cabinet, settings).as_dict()
    except ReplaiError as e:
        db.rollback()
        report.errors.append(str(e))

    logger.info(
        "[reconciler] cabinet=%s sync done inserted=%d drafted=%d auto=%d errors=%d",
        cabinet.id, report.inserted, report.drafted, report.auto_sent, len(report.errors),
    )
    return report

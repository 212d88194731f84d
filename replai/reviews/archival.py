# replai/reviews/archival.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from replai.config import Settings
from replai.errors import ArchivalAborted
from replai.models import Review, ReviewStatus
from replai.reviews.state import ARCHIVABLE
from replai.utils import utcnow

logger = logging.getLogger(__name__)


def archive_stale_reviews(db: Session, settings: Settings, now: Optional[datetime] = None) -> int:
    """
    sent|auto con updated_at anterior a ARCHIVE_AFTER_DAYS -> archived.
    Lotes de ARCHIVE_BATCH_SIZE, cada uno con su commit. Un lote fallido corta
    la ejecución sin deshacer los anteriores.
    """
    cutoff = (now or utcnow()) - timedelta(days=settings.archive_after_days)
    statuses = tuple(ARCHIVABLE)

    ids = list(
        db.execute(
            select(Review.id)
            .where(Review.status.in_(statuses))
            .where(Review.updated_at < cutoff)
            .order_by(Review.id.asc())
        ).scalars()
    )
    if not ids:
        logger.info("[archival] nothing to archive (cutoff=%s)", cutoff.isoformat())
        return 0

    size = max(1, settings.archive_batch_size)
    archived = 0

    for start in range(0, len(ids), size):
        batch = ids[start:start + size]
        try:
            # el filtro de estado se repite: otro proceso pudo tocar la fila
            res = db.execute(
                update(Review)
                .where(Review.id.in_(batch))
                .where(Review.status.in_(statuses))
                .values(status=ReviewStatus.archived, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("[archival] batch at offset %d failed after %d archived: %s", start, archived, e)
            raise ArchivalAborted(archived, e) from e
        archived += res.rowcount or 0

    logger.info("[archival] archived %d reviews (cutoff=%s)", archived, cutoff.isoformat())
    return archived

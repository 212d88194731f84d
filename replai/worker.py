# replai/worker.py
"""
Worker de fondo: cada WORKER_POLL_SECONDS sincroniza todos los cabinets con
credencial y pasa el archivado. Cada tick es independiente; todo el estado
vive en la BD, así que se puede parar y relanzar en cualquier momento.

    python -m replai.worker          # bucle
    python -m replai.worker --once   # un tick y salir
"""
from __future__ import annotations

import argparse
import logging
import time
from typing import Optional

from replai.cabinets import list_cabinets_with_key
from replai.config import Settings, get_settings
from replai.db import SessionLocal, init_db
from replai.errors import ReplaiError
from replai.marketplace.client import MarketplaceClient
from replai.reviews.archival import archive_stale_reviews
from replai.reviews.drafts import CompletionClient
from replai.reviews.reconciler import sync_cabinet
from replai.utils import pause

logger = logging.getLogger(__name__)

CABINET_DELAY_SECONDS = 2


def run_tick(
    settings: Settings,
    *,
    session_factory=SessionLocal,
    client: Optional[MarketplaceClient] = None,
    completion: Optional[CompletionClient] = None,
) -> dict:
    client = client or MarketplaceClient.from_settings(settings)
    if completion is None:
        try:
            completion = CompletionClient.from_settings(settings)
        except ReplaiError as e:
            logger.warning("[worker] drafts disabled: %s", e)

    reports = []
    archived = 0

    db = session_factory()
    try:
        cabinets = list_cabinets_with_key(db)
        logger.info("[worker] tick: %d cabinets", len(cabinets))

        for i, cabinet in enumerate(cabinets):
            if i:
                pause(CABINET_DELAY_SECONDS)
            report = sync_cabinet(db, client, completion, cabinet, settings)
            reports.append(report.as_dict())

        try:
            archived = archive_stale_reviews(db, settings)
        except ReplaiError as e:
            logger.error("[worker] archival failed: %s", e)
    finally:
        db.close()

    return {"cabinets": reports, "archived": archived}


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Sync + archivado periódico")
    parser.add_argument("--once", action="store_true", help="un solo tick")
    args = parser.parse_args(argv)

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    init_db()
    logger.info("[worker] started. poll=%ss", settings.worker_poll_seconds)

    while True:
        try:
            run_tick(settings)
        except Exception:
            # un tick roto no para el worker; el siguiente reintenta desde cero
            logger.exception("[worker] tick failed")

        if args.once:
            break
        time.sleep(settings.worker_poll_seconds)


if __name__ == "__main__":
    main()

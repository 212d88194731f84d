"""
Tick del worker: sync de todos los cabinets con credencial + archivado.
"""
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from replai import worker
from replai.models import Cabinet, Review, ReviewStatus
from replai.utils import utcnow

from conftest import FakeCompletion, feedback


def _factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


class TestRunTick:
    """run_tick

    El worker abre su propia sesión sobre la misma conexión (StaticPool): la
    sesión del test tiene que cerrar su transacción antes de cada tick.
    """

    def test_syncs_every_cabinet_with_key(self, engine, db, settings, cabinet, marketplace, monkeypatch):
        pauses = []
        monkeypatch.setattr(worker, "pause", pauses.append)

        db.add(Cabinet(user_id="user-2", name="second", api_key="second-key-123456", api_key_valid=True))
        db.add(Cabinet(user_id="user-3", name="no key", api_key=None))
        db.commit()
        marketplace.feedbacks = [feedback(1)]

        out = worker.run_tick(
            settings,
            session_factory=_factory(engine),
            client=marketplace,
            completion=FakeCompletion(),
        )

        assert len(out["cabinets"]) == 2
        assert all(c["inserted"] == 1 for c in out["cabinets"])
        assert pauses == [worker.CABINET_DELAY_SECONDS]
        assert db.execute(select(func.count(Review.id)).where(Review.status == ReviewStatus.pending)).scalar() == 2

    def test_archives_stale_reviews(self, engine, db, settings, marketplace, make_review):
        make_review(status=ReviewStatus.sent, updated_at=utcnow() - timedelta(days=30))
        db.commit()

        out = worker.run_tick(
            settings,
            session_factory=_factory(engine),
            client=marketplace,
            completion=FakeCompletion(),
        )

        assert out["archived"] == 1

    def test_cabinet_errors_do_not_stop_the_tick(self, engine, db, settings, cabinet, marketplace):
        marketplace.fail_at_skip = 0
        db.commit()

        out = worker.run_tick(
            settings,
            session_factory=_factory(engine),
            client=marketplace,
            completion=FakeCompletion(),
        )

        report = out["cabinets"][0]
        assert report["inserted"] == 0
        assert report["errors"]

    def test_drafts_disabled_without_completion_key(self, engine, db, settings, cabinet, marketplace):
        settings.openrouter_api_key = ""
        marketplace.feedbacks = [feedback(1)]
        db.commit()

        out = worker.run_tick(settings, session_factory=_factory(engine), client=marketplace)

        assert out["cabinets"][0]["inserted"] == 1
        assert out["cabinets"][0]["drafted"] == 0

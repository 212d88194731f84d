"""
Fixtures compartidas: SQLite en memoria (StaticPool), settings sin .env y
clientes falsos de marketplace / completion inyectados por parámetro o por
app.dependency_overrides.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from replai.config import Settings  # noqa: E402
from replai.db import Base, init_db, make_engine  # noqa: E402
from replai.errors import UpstreamError  # noqa: E402
from replai.marketplace.dto import ChatDTO, ChatEventDTO, FeedbackDTO  # noqa: E402
from replai.models import Cabinet, Review, ReviewStatus, UserRole  # noqa: E402

WB_KEY = "wb-test-key-0123456789"


# ---------------------------
# Fakes
# ---------------------------
class FakeMarketplace:
    """Marketplace en memoria con la misma interfaz que MarketplaceClient."""

    def __init__(self, feedbacks=None, archive=None, chats=None, event_pages=None):
        self.feedbacks = list(feedbacks or [])
        self.archive = list(archive or [])
        self.chats = list(chats or [])
        # cursor -> (events, next)
        self.event_pages = dict(event_pages or {})

        self.fail_at_skip: Optional[int] = None
        self.send_error: Optional[Exception] = None
        self.ping_error: Optional[Exception] = None
        self.chats_error: Optional[Exception] = None

        self.fetch_calls = []
        self.sent_replies = []
        self.sent_chat_messages = []

    def fetch_reviews_page(self, api_key, skip=0, take=50, *, is_answered=False):
        self.fetch_calls.append((skip, take, is_answered))
        if self.fail_at_skip is not None and skip >= self.fail_at_skip:
            raise UpstreamError(500, "page failed", source="marketplace")
        source = self.archive if is_answered else self.feedbacks
        return [FeedbackDTO.model_validate(x) for x in source[skip:skip + take]]

    def send_reply_to_review(self, api_key, external_id, text):
        if self.send_error:
            raise self.send_error
        self.sent_replies.append((external_id, text))

    def ping(self, api_key):
        if self.ping_error:
            raise self.ping_error

    def fetch_chats_page(self, api_key):
        if self.chats_error:
            raise self.chats_error
        return [ChatDTO.model_validate(c) for c in self.chats]

    def fetch_chat_events_page(self, api_key, next_cursor=None):
        events, nxt = self.event_pages.get(next_cursor, ([], None))
        return [ChatEventDTO.model_validate(e) for e in events], nxt

    def send_chat_message(self, api_key, reply_sign, text):
        if self.send_error:
            raise self.send_error
        self.sent_chat_messages.append((reply_sign, text))


class FakeCompletion:
    def __init__(self, reply="Спасибо за ваш отзыв!", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, *, model, messages, max_tokens, temperature):
        self.calls.append(
            {"model": model, "messages": messages, "max_tokens": max_tokens, "temperature": temperature}
        )
        if self.error:
            raise self.error
        return self.reply


def feedback(n, **overrides):
    data = {
        "id": f"fb-{n}",
        "text": f"Отзыв номер {n}",
        "productValuation": 5,
        "createdDate": "2026-01-10T10:00:00Z",
        "userName": "Анна",
        "productDetails": {"nmId": 123456, "productName": "Платье", "brandName": "Lumi"},
        "photoLinks": [],
    }
    data.update(overrides)
    return data


# ---------------------------
# DB / settings
# ---------------------------
@pytest.fixture
def engine():
    eng = make_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        SYNC_PAGE_DELAY_SECONDS=0,
        SYNC_PAGE_SIZE=50,
        OPENROUTER_API_KEY="sk-test",
        ROBOKASSA_LOGIN="shop",
        ROBOKASSA_PASSWORD1="pass1",
        ROBOKASSA_PASSWORD2="pass2",
        ROBOKASSA_IS_TEST=True,
        ROBOKASSA_HASH_ALGO="md5",
    )


@pytest.fixture
def marketplace():
    return FakeMarketplace()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def cabinet(db):
    cab = Cabinet(
        user_id="user-1",
        name="Основной",
        brand_name="Lumi",
        api_key=WB_KEY,
        api_key_valid=True,
        is_active=True,
        reply_modes={"1": "manual", "2": "manual", "3": "manual", "4": "manual", "5": "manual"},
    )
    db.add(cab)
    db.commit()
    db.refresh(cab)
    return cab


@pytest.fixture
def make_review(db, cabinet):
    counter = {"n": 0}

    def _make(status=ReviewStatus.new, **kw):
        counter["n"] += 1
        data = dict(
            external_id=f"ext-{counter['n']}",
            user_id=cabinet.user_id,
            cabinet_id=cabinet.id,
            rating=5,
            author_name="Анна",
            product_name="Платье",
            product_article="123456",
            text="Отличное платье",
            status=status,
            created_date=datetime(2026, 1, 10, tzinfo=timezone.utc),
        )
        data.update(kw)
        review = Review(**data)
        db.add(review)
        db.commit()
        db.refresh(review)
        return review

    return _make


@pytest.fixture
def admin(db):
    db.add(UserRole(user_id="admin-1", role="admin"))
    db.commit()
    return "admin-1"


# ---------------------------
# FastAPI
# ---------------------------
@pytest.fixture
def api(db, settings, marketplace, completion):
    from fastapi.testclient import TestClient

    from main import app
    from replai.config import get_settings
    from replai.db import get_db
    from replai.deps import get_completion_client, get_marketplace_client, get_optional_completion_client

    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_marketplace_client] = lambda: marketplace
    app.dependency_overrides[get_completion_client] = lambda: completion
    app.dependency_overrides[get_optional_completion_client] = lambda: completion

    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()

"""
Envío de respuestas: validar -> enviar -> escribir estado -> cobrar.
Un envío fallido no cobra; un cobro fallido tras enviar queda como anomalía.
"""
import logging

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from replai.billing import ledger
from replai.errors import ConfigurationError, InsufficientBalance, NotFound, UpstreamError, ValidationFailed
from replai.models import ReviewStatus, TokenTransaction, TransactionType
from replai.reviews import dispatcher
from replai.reviews.dispatcher import MAX_REPLY_LENGTH, auto_reply_pending, send_reply


def _usage_count(db):
    return db.execute(
        select(func.count(TokenTransaction.id)).where(TokenTransaction.type == TransactionType.usage)
    ).scalar()


@pytest.fixture
def funded(db, cabinet):
    ledger.credit(db, user_id=cabinet.user_id, amount=5)
    return cabinet


class TestSendReply:
    """send_reply"""

    def test_sends_draft_and_charges(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо за отзыв!")

        result = send_reply(db, marketplace, review.id, "user-1", settings)

        assert result.charged is True
        assert result.status == ReviewStatus.sent
        assert result.balance == 4
        assert marketplace.sent_replies == [(review.external_id, "Спасибо за отзыв!")]

        db.refresh(review)
        assert review.status == ReviewStatus.sent
        assert review.sent_answer == "Спасибо за отзыв!"
        assert review.is_edited is False

        tx = db.execute(select(TokenTransaction).where(TokenTransaction.type == TransactionType.usage)).scalars().one()
        assert tx.amount == -1
        assert tx.review_id == review.id

    def test_edited_text(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Черновик")

        send_reply(db, marketplace, review.id, "user-1", settings, text="  Своя версия  ")

        db.refresh(review)
        assert review.sent_answer == "Своя версия"
        assert review.is_edited is True

    def test_new_review_with_manual_text(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.new)
        result = send_reply(db, marketplace, review.id, "user-1", settings, text="Спасибо")
        assert result.status == ReviewStatus.sent

    def test_upstream_failure_changes_nothing(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")
        marketplace.send_error = UpstreamError(500, "boom", source="marketplace")

        with pytest.raises(UpstreamError):
            send_reply(db, marketplace, review.id, "user-1", settings)

        db.refresh(review)
        assert review.status == ReviewStatus.pending
        assert review.sent_answer is None
        assert ledger.get_balance(db, user_id="user-1") == 5
        assert _usage_count(db) == 0

    def test_insufficient_balance_before_sending(self, db, settings, cabinet, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")

        with pytest.raises(InsufficientBalance):
            send_reply(db, marketplace, review.id, "user-1", settings)

        assert marketplace.sent_replies == []
        db.refresh(review)
        assert review.status == ReviewStatus.pending

    @pytest.mark.parametrize("status", [ReviewStatus.sent, ReviewStatus.auto, ReviewStatus.answered, ReviewStatus.archived])
    def test_already_replied_is_idempotent(self, db, settings, funded, marketplace, make_review, status):
        review = make_review(status=status, ai_draft="x", sent_answer="x")

        result = send_reply(db, marketplace, review.id, "user-1", settings)

        assert result.already_replied is True
        assert result.charged is False
        assert marketplace.sent_replies == []
        assert ledger.get_balance(db, user_id="user-1") == 5

    def test_second_send_does_not_charge_twice(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")

        send_reply(db, marketplace, review.id, "user-1", settings)
        send_reply(db, marketplace, review.id, "user-1", settings)

        assert len(marketplace.sent_replies) == 1
        assert ledger.get_balance(db, user_id="user-1") == 4

    def test_concurrent_send_detected_by_conditional_update(self, db, settings, funded, marketplace, make_review, monkeypatch):
        """Si otra petición respondió durante el envío, no se cobra"""
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")
        original = marketplace.send_reply_to_review

        def racing_send(api_key, external_id, text):
            original(api_key, external_id, text)
            db.execute(
                review.__table__.update().where(review.__table__.c.id == review.id).values(status=ReviewStatus.sent)
            )

        monkeypatch.setattr(marketplace, "send_reply_to_review", racing_send)

        result = send_reply(db, marketplace, review.id, "user-1", settings)

        # el rollback del conflicto descarta también la escritura simulada
        assert result.already_replied is True
        assert result.charged is False
        assert _usage_count(db) == 0

    def test_not_found_for_other_user(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="x")
        with pytest.raises(NotFound):
            send_reply(db, marketplace, review.id, "someone-else", settings)

    def test_empty_text(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.new, ai_draft=None)
        with pytest.raises(ValidationFailed):
            send_reply(db, marketplace, review.id, "user-1", settings, text="   ")

    def test_text_too_long(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="x")
        with pytest.raises(ValidationFailed):
            send_reply(db, marketplace, review.id, "user-1", settings, text="a" * (MAX_REPLY_LENGTH + 1))
        assert marketplace.sent_replies == []

    def test_missing_credential(self, db, settings, funded, marketplace, make_review):
        funded.api_key = None
        db.commit()
        review = make_review(status=ReviewStatus.pending, ai_draft="x")
        with pytest.raises(ConfigurationError):
            send_reply(db, marketplace, review.id, "user-1", settings)

    def test_key_flagged_invalid_is_not_used(self, db, settings, funded, marketplace, make_review):
        funded.api_key_valid = False
        db.commit()
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")

        with pytest.raises(ConfigurationError):
            send_reply(db, marketplace, review.id, "user-1", settings)

        assert marketplace.sent_replies == []
        assert ledger.get_balance(db, user_id="user-1") == 5

    def test_unauthorized_send_revokes_key(self, db, settings, funded, marketplace, make_review):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")
        marketplace.send_error = UpstreamError(401, "unauthorized", source="marketplace")

        with pytest.raises(UpstreamError):
            send_reply(db, marketplace, review.id, "user-1", settings)

        db.refresh(funded)
        assert funded.api_key_valid is False
        db.refresh(review)
        assert review.status == ReviewStatus.pending

    def test_charge_failure_after_send_is_logged_as_anomaly(
        self, db, settings, funded, marketplace, make_review, monkeypatch, caplog
    ):
        review = make_review(status=ReviewStatus.pending, ai_draft="Спасибо")

        def broken_debit(*args, **kwargs):
            raise OperationalError("UPDATE token_balances", {}, Exception("db down"))

        monkeypatch.setattr(dispatcher.ledger, "debit", broken_debit)

        with caplog.at_level(logging.ERROR, logger="replai.ledger.anomaly"):
            result = send_reply(db, marketplace, review.id, "user-1", settings)

        assert result.charged is False
        assert result.status == ReviewStatus.sent
        db.refresh(review)
        assert review.status == ReviewStatus.sent, "El envío ya ocurrió: el estado se conserva"
        assert any(
            r.name == "replai.ledger.anomaly" and "[ledger-anomaly]" in r.message for r in caplog.records
        )


class TestAutoReply:
    """auto_reply_pending"""

    def _auto(self, db, cabinet, *ratings):
        modes = dict(cabinet.reply_modes)
        for r in ratings:
            modes[str(r)] = "auto"
        cabinet.reply_modes = modes
        db.commit()

    def test_only_auto_ratings_are_sent(self, db, settings, funded, marketplace, make_review):
        self._auto(db, funded, 5)
        five = make_review(status=ReviewStatus.pending, ai_draft="A", rating=5)
        two = make_review(status=ReviewStatus.pending, ai_draft="B", rating=2)

        result = auto_reply_pending(db, marketplace, funded, settings)

        assert result.sent == 1
        db.refresh(five)
        db.refresh(two)
        assert five.status == ReviewStatus.auto
        assert two.status == ReviewStatus.pending
        assert ledger.get_balance(db, user_id="user-1") == 4

    def test_stops_when_balance_runs_out(self, db, settings, cabinet, marketplace, make_review):
        self._auto(db, cabinet, 5)
        ledger.credit(db, user_id="user-1", amount=2)
        for _ in range(4):
            make_review(status=ReviewStatus.pending, ai_draft="A", rating=5)

        result = auto_reply_pending(db, marketplace, cabinet, settings)

        assert result.sent == 2
        assert len(marketplace.sent_replies) == 2
        assert ledger.get_balance(db, user_id="user-1") == 0

    def test_upstream_errors_are_collected(self, db, settings, funded, marketplace, make_review):
        self._auto(db, funded, 5)
        make_review(status=ReviewStatus.pending, ai_draft="A", rating=5)
        marketplace.send_error = UpstreamError(503, "busy", source="marketplace")

        result = auto_reply_pending(db, marketplace, funded, settings)

        assert result.sent == 0
        assert len(result.errors) == 1
        assert ledger.get_balance(db, user_id="user-1") == 5

    def test_unauthorized_stops_the_loop(self, db, settings, funded, marketplace, make_review):
        self._auto(db, funded, 5)
        for _ in range(3):
            make_review(status=ReviewStatus.pending, ai_draft="A", rating=5)
        marketplace.send_error = UpstreamError(401, "unauthorized", source="marketplace")

        result = auto_reply_pending(db, marketplace, funded, settings)

        assert len(result.errors) == 1
        db.refresh(funded)
        assert funded.api_key_valid is False

    def test_skips_reviews_without_draft(self, db, settings, funded, marketplace, make_review):
        self._auto(db, funded, 5)
        make_review(status=ReviewStatus.new, rating=5)

        result = auto_reply_pending(db, marketplace, funded, settings)

        assert result.sent == 0
        assert marketplace.sent_replies == []

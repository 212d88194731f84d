"""
Webhook de la pasarela: verificación de firma y acreditación exactamente una vez.
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from replai.billing import ledger
from replai.billing.payments import sign
from replai.billing.webhook import PaymentCallback, handle_payment_callback
from replai.errors import ConfigurationError, NotFound, SignatureMismatch, ValidationFailed
from replai.models import Payment, PaymentStatus, TokenTransaction, TransactionType


@pytest.fixture
def payment(db):
    p = Payment(inv_id=1001, user_id="user-1", amount=Decimal("990.00"), tokens=200, status=PaymentStatus.pending)
    db.add(p)
    db.commit()
    return p


def callback(out_sum="990.00", inv_id="1001", password="pass2", signature=None):
    return PaymentCallback(
        out_sum=out_sum,
        inv_id=inv_id,
        signature=signature or sign(out_sum, inv_id, password).upper(),
    )


def purchases(db, user_id="user-1"):
    return db.execute(
        select(TokenTransaction)
        .where(TokenTransaction.user_id == user_id, TokenTransaction.type == TransactionType.purchase)
    ).scalars().all()


class TestHandlePaymentCallback:
    """handle_payment_callback"""

    def test_credits_tokens_once(self, db, settings, payment):
        assert handle_payment_callback(db, callback(), settings) == "OK1001"

        db.refresh(payment)
        assert payment.status == PaymentStatus.completed
        assert ledger.get_balance(db, user_id="user-1") == 200

        txs = purchases(db)
        assert len(txs) == 1
        assert txs[0].amount == 200
        assert txs[0].payment_inv_id == 1001
        assert "200" in txs[0].description and "990.00" in txs[0].description

    def test_redelivery_is_a_noop(self, db, settings, payment):
        """N entregas del mismo callback acreditan una sola vez"""
        for _ in range(5):
            assert handle_payment_callback(db, callback(), settings) == "OK1001"

        assert ledger.get_balance(db, user_id="user-1") == 200
        assert len(purchases(db)) == 1

    def test_bad_signature_mutates_nothing(self, db, settings, payment):
        with pytest.raises(SignatureMismatch):
            handle_payment_callback(db, callback(password="wrong"), settings)

        db.refresh(payment)
        assert payment.status == PaymentStatus.pending
        assert ledger.get_balance(db, user_id="user-1") == 0

    def test_signature_over_raw_out_sum(self, db, settings, payment):
        """'990' firmado tal cual es válido aunque el pago guardó 990.00"""
        assert handle_payment_callback(db, callback(out_sum="990"), settings) == "OK1001"
        assert ledger.get_balance(db, user_id="user-1") == 200

    def test_unknown_invoice(self, db, settings):
        with pytest.raises(NotFound):
            handle_payment_callback(db, callback(inv_id="4242"), settings)

    def test_missing_password2(self, db, settings, payment):
        settings.robokassa_password2 = ""
        with pytest.raises(ConfigurationError):
            handle_payment_callback(db, callback(), settings)

    @pytest.mark.parametrize(
        "cb",
        [
            PaymentCallback(out_sum="990.00", inv_id="1001"),
            PaymentCallback(inv_id="1001", signature="x"),
            PaymentCallback(out_sum="990.00", signature="x"),
        ],
    )
    def test_missing_fields(self, db, settings, payment, cb):
        with pytest.raises(ValidationFailed):
            handle_payment_callback(db, cb, settings)

    def test_non_numeric_inv_id(self, db, settings):
        with pytest.raises(ValidationFailed):
            handle_payment_callback(db, callback(inv_id="abc"), settings)

    def test_from_mapping_uses_gateway_names(self):
        cb = PaymentCallback.from_mapping({"OutSum": "10.00", "InvId": 7, "SignatureValue": "AB", "Shp_x": "1"})
        assert (cb.out_sum, cb.inv_id, cb.signature) == ("10.00", "7", "AB")


class TestWebhookRoute:
    """Endpoint HTTP: texto plano en todos los casos"""

    def test_form_post(self, api, db, payment):
        cb = callback()
        r = api.post(
            "/api/functions/robokassa-webhook",
            data={"OutSum": cb.out_sum, "InvId": cb.inv_id, "SignatureValue": cb.signature},
        )
        assert r.status_code == 200
        assert r.text == "OK1001"
        assert ledger.get_balance(db, user_id="user-1") == 200

    def test_json_post(self, api, db, payment):
        cb = callback()
        r = api.post(
            "/api/functions/robokassa-webhook",
            json={"OutSum": cb.out_sum, "InvId": 1001, "SignatureValue": cb.signature},
        )
        assert r.status_code == 200
        assert r.text == "OK1001"

    def test_query_string_get(self, api, db, payment):
        cb = callback()
        r = api.get(
            "/api/functions/robokassa-webhook",
            params={"OutSum": cb.out_sum, "InvId": cb.inv_id, "SignatureValue": cb.signature},
        )
        assert r.status_code == 200
        assert r.text == "OK1001"

    def test_bad_sign_is_plain_text_400(self, api, db, payment):
        r = api.post(
            "/api/functions/robokassa-webhook",
            data={"OutSum": "990.00", "InvId": "1001", "SignatureValue": "deadbeef"},
        )
        assert r.status_code == 400
        assert r.text == "bad sign"
        assert r.headers["content-type"].startswith("text/plain")
        assert ledger.get_balance(db, user_id="user-1") == 0

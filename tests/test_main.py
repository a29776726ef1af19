import base64
import hashlib
import hmac
import json
import re
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

import database
import khqr_utils
import main
from conftest import ORDER_ID
from exceptions import GatewayUnreachable
from gateways import PayWayClient


def sign(*parts):
    digest = hmac.new(b"test-api-key", "".join(parts).encode(), hashlib.sha512).digest()
    return base64.b64encode(digest).decode()


def order_md5(settings, order_id=ORDER_ID, amount="12.50"):
    request = khqr_utils.build_payment_request(order_id, amount, settings)
    return khqr_utils.assemble(request).reference_hash


@pytest.fixture
def bakong(make_gateway):
    return make_gateway(name="Bakong")


@pytest.fixture
def payway(settings):
    return PayWayClient.from_settings(settings, session=MagicMock())


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def services(settings, store, bakong, payway, notifier):
    return main.PaymentServices(settings, store, bakong, payway, notifier)


@pytest.fixture
def client(services):
    main.app.dependency_overrides[main.get_services] = lambda: services
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


class TestGenerateBakong:
    def test_returns_khqr_payload(self, client, order):
        response = client.post("/api/payment/generate-bakong", json={"order_id": ORDER_ID})

        assert response.status_code == 200
        body = response.json()
        khqr = body["khqr_string"]
        assert body["order_id"] == ORDER_ID
        assert body["amount"] == "12.50"
        assert body["currency"] == "USD"
        assert body["md5"] == hashlib.md5(khqr.encode()).hexdigest()
        assert body["expires_at"].endswith("Z")
        assert "5303840" in khqr
        assert "540512.50" in khqr
        assert "5909GenZStore" in khqr
        assert re.search(r"6304[0-9A-F]{4}$", khqr)

    def test_unknown_order(self, client):
        response = client.post("/api/payment/generate-bakong", json={"order_id": "missing"})
        assert response.status_code == 404

    def test_paid_order(self, client, store):
        store.create("5.00", status=database.PAID, order_id=ORDER_ID)
        response = client.post("/api/payment/generate-bakong", json={"order_id": ORDER_ID})
        assert response.status_code == 409

    def test_assembly_failure_is_a_single_clear_error(self, settings, store, bakong, payway, order):
        services = main.PaymentServices(replace(settings, khqr_merchant_id=""), store, bakong, payway)
        main.app.dependency_overrides[main.get_services] = lambda: services
        try:
            response = TestClient(main.app).post("/api/payment/generate-bakong", json={"order_id": ORDER_ID})
        finally:
            main.app.dependency_overrides.clear()

        assert response.status_code == 400
        assert response.json() == {"error": "Merchant account id is not configured"}

    def test_watch_polls_in_background(self, client, order, store, bakong, notifier):
        bakong.answers = [True]
        response = client.post("/api/payment/generate-bakong?watch=true", json={"order_id": ORDER_ID})

        assert response.status_code == 200
        assert bakong.calls == [response.json()["md5"]]
        assert store.get(ORDER_ID).status == database.PAID
        notifier.assert_called_once()

    def test_watch_is_not_scheduled_twice(self, client, order, store, services, bakong, monkeypatch):
        monkeypatch.setattr(services.bakong_reconciler, "is_polling", lambda order_id: True)
        bakong.answers = [True]

        response = client.post("/api/payment/generate-bakong?watch=true", json={"order_id": ORDER_ID})

        assert response.status_code == 200
        assert bakong.calls == []
        assert store.get(ORDER_ID).status == database.PENDING


class TestCheckBakongStatus:
    def test_pending_then_paid(self, client, settings, order, store, bakong, notifier):
        bakong.answers = [False, True]
        md5 = order_md5(settings)

        first = client.get(f"/api/payment/check-status/{ORDER_ID}/{md5}")
        second = client.get(f"/api/payment/check-status/{ORDER_ID}/{md5}")

        assert first.json() == {"status": "PENDING"}
        assert second.json() == {"status": "PAID"}
        assert store.get(ORDER_ID).status == database.PAID
        assert bakong.calls == [md5, md5]
        assert len(store.transactions_for(ORDER_ID)) == 1
        notifier.assert_called_once()

    def test_paid_order_skips_gateway(self, client, store, bakong):
        store.create("12.50", status=database.PAID, order_id=ORDER_ID)
        response = client.get(f"/api/payment/check-status/{ORDER_ID}/abc123")
        assert response.json() == {"status": "PAID"}
        assert bakong.calls == []

    def test_unreachable_gateway_reads_as_pending(self, client, settings, order, store, bakong):
        bakong.answers = [GatewayUnreachable("timed out")]
        response = client.get(f"/api/payment/check-status/{ORDER_ID}/{order_md5(settings)}")
        assert response.status_code == 200
        assert response.json() == {"status": "PENDING"}
        assert store.get(ORDER_ID).status == database.PENDING

    def test_unknown_order(self, client):
        assert client.get("/api/payment/check-status/missing/abc123").status_code == 404

    def test_md5_of_another_order_is_rejected(self, client, settings, order, store, bakong):
        other = store.create("500.00")
        bakong.answers = [True]

        response = client.get(f"/api/payment/check-status/{other.id}/{order_md5(settings)}")

        assert response.status_code == 400
        assert response.json() == {"error": "md5 does not match this order"}
        assert bakong.calls == []
        assert store.get(other.id).status == database.PENDING
        assert store.transactions_for(other.id) == []

    def test_md5_is_rebuilt_from_the_order(self, client, settings, store, bakong):
        other = store.create("500.00")
        bakong.answers = [True]
        md5 = order_md5(settings, other.id, "500.00")

        response = client.get(f"/api/payment/check-status/{other.id}/{md5.upper()}")

        assert response.json() == {"status": "PAID"}
        assert bakong.calls == [md5]


class TestPayWay:
    def test_generate(self, client, order, payway):
        response = MagicMock(status_code=200)
        response.content = json.dumps({
            "status": {"code": "00"},
            "qr_string": "00020101021230510016abaakhppxxx@abaa6304ABCD",
            "abapay_deeplink": "abamobilebank://ababank.com?qrcode=xyz",
            "checkout_qr_url": "https://checkout.payway.com.kh/qr/xyz",
        }).encode()
        payway.session.request.return_value = response

        result = client.post("/api/payment/generate-payway", json={"order_id": ORDER_ID})

        assert result.status_code == 200
        assert result.json()["tran_id"] == "3f2504e04f8911d39a0c"
        assert result.json()["khqr_string"].endswith("6304ABCD")

    def test_generate_gateway_failure(self, client, order, payway):
        response = MagicMock(status_code=200)
        response.content = json.dumps({"status": {"code": "1", "message": "Wrong hash"}}).encode()
        payway.session.request.return_value = response

        result = client.post("/api/payment/generate-payway", json={"order_id": ORDER_ID})

        assert result.status_code == 502
        assert "Wrong hash" in result.json()["error"]

    def test_check_status(self, client, order, payway, store):
        response = MagicMock(status_code=200)
        response.content = json.dumps({
            "status": {"code": "00"},
            "data": {"payment_status": "APPROVED"},
        }).encode()
        payway.session.request.return_value = response

        result = client.get(f"/api/payment/payway/check-status/{ORDER_ID}")

        assert result.json() == {"status": "PAID"}
        assert store.get(ORDER_ID).payment_method == "ABA"


class TestPayWayCallback:
    def test_signed_callback_marks_order_paid(self, client, order, store, notifier):
        tran_id = "3f2504e04f8911d39a0c"
        payload = {"tran_id": tran_id, "status": 0, "hash": sign(tran_id, "0")}

        first = client.post("/api/payment/payway/callback", json=payload)
        replay = client.post("/api/payment/payway/callback", json=payload)

        assert first.json() == {"status": "ok", "updated": True}
        assert replay.json() == {"status": "ok", "updated": False}
        assert store.get(ORDER_ID).status == database.PAID
        assert len(store.transactions_for(ORDER_ID)) == 1
        notifier.assert_called_once()

    def test_forged_callback_is_rejected(self, client, order, store):
        payload = {"tran_id": "3f2504e04f8911d39a0c", "status": 0, "hash": sign("other", "0")}
        response = client.post("/api/payment/payway/callback", json=payload)

        assert response.status_code == 403
        assert store.get(ORDER_ID).status == database.PENDING

    def test_unknown_reference_is_ignored(self, client, order):
        tran_id = "ffffffffffffffffffff"
        payload = {"tran_id": tran_id, "status": 0, "hash": sign(tran_id, "0")}
        response = client.post("/api/payment/payway/callback", json=payload)

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

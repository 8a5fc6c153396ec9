"""GET /escrow/breakdown and POST /payments/escrow/initiate"""

from decimal import Decimal
from uuid import uuid4

from escrow_kernel.domain.dtos import Actor
from escrow_kernel.domain.lifecycle import ActorRole, OrderStage
from escrow_kernel.models.order import OrderModel

from tests.api.conftest import auth_headers
from tests.conftest import CUSTOMER_PHONE


class TestBreakdown:

    def test_standard_split_with_estimates(self, client):
        response = client.get("/escrow/breakdown", params={"totalAmount": "100"})

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["depositAmount"]) == Decimal("25.00")
        assert Decimal(body["fittingAmount"]) == Decimal("50.00")
        assert Decimal(body["finalAmount"]) == Decimal("25.00")
        assert Decimal(body["totalAmount"]) == Decimal("100.00")
        assert Decimal(body["platformCommission"]) == Decimal("20.00")
        assert Decimal(body["tailorEarnings"]) == Decimal("80.00")
        assert Decimal(body["processingFee"]) == Decimal("2.50")
        assert Decimal(body["minAmount"]) == Decimal("10.00")
        assert Decimal(body["maxAmount"]) == Decimal("10000.00")
        assert body["paymentMethods"] == ["MTN_MOMO", "VODAFONE_CASH", "AIRTELTIGO_MONEY"]

    def test_uneven_total_absorbs_remainder_in_final(self, client):
        body = client.get("/escrow/breakdown", params={"totalAmount": "33.33"}).json()
        assert Decimal(body["depositAmount"]) == Decimal("8.33")
        assert Decimal(body["fittingAmount"]) == Decimal("16.67")
        assert Decimal(body["finalAmount"]) == Decimal("8.33")

    def test_out_of_bounds_is_400(self, client):
        response = client.get("/escrow/breakdown", params={"totalAmount": "5"})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_huge_total_is_400(self, client):
        response = client.get("/escrow/breakdown", params={"totalAmount": "1e30"})
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_non_numeric_is_400(self, client):
        response = client.get("/escrow/breakdown", params={"totalAmount": "lots"})
        assert response.status_code == 400

    def test_missing_total_is_400(self, client):
        assert client.get("/escrow/breakdown").status_code == 400


class TestInitiatePayment:

    def _initiate(self, client, actor, order_id, total="100.00", **extra):
        payload = {"orderId": str(order_id), "totalAmount": total, "customerPhone": CUSTOMER_PHONE}
        payload.update(extra)
        return client.post(
            "/payments/escrow/initiate", json=payload, headers=auth_headers(actor),
        )

    def test_initiate_moves_order_to_pending(self, client, orders, session, session_factory, gateway):
        order_id = orders.draft()
        session.commit()

        response = self._initiate(client, orders.customer, order_id)

        assert response.status_code == 200
        body = response.json()
        assert body["paymentIntentId"] == "pi_1"
        assert Decimal(body["depositAmount"]) == Decimal("25.00")
        assert body["paymentUrl"].endswith(str(order_id))
        assert body["orderStatus"] == "PENDING_DEPOSIT"
        assert gateway.deposits[0]["payment_method"] == "MTN_MOMO"
        with session_factory() as s:
            assert s.get(OrderModel, order_id).current_stage == OrderStage.PENDING.value

    def test_tailor_may_initiate(self, client, orders, session):
        order_id = orders.draft()
        session.commit()
        assert self._initiate(client, orders.tailor, order_id).status_code == 200

    def test_stranger_is_403(self, client, orders, session):
        order_id = orders.draft()
        session.commit()
        stranger = Actor(actor_id=uuid4(), role=ActorRole.CUSTOMER)
        assert self._initiate(client, stranger, order_id).status_code == 403

    def test_total_mismatch_is_400(self, client, orders, session):
        order_id = orders.draft()
        session.commit()
        response = self._initiate(client, orders.customer, order_id, total="90.00")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_AMOUNT"

    def test_stage_past_pending_is_400(self, client, orders, session):
        order_id = orders.deposit_paid()
        session.commit()
        response = self._initiate(client, orders.customer, order_id)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE"

    def test_unknown_payment_method_is_400(self, client, orders, session):
        order_id = orders.draft()
        session.commit()
        response = self._initiate(client, orders.customer, order_id, paymentMethod="CASH")
        assert response.status_code == 400

    def test_provider_failure_is_502_and_rolled_back(
        self, client, orders, session, session_factory, gateway,
    ):
        order_id = orders.draft()
        session.commit()
        gateway.fail_on.add("initiate_deposit")

        response = self._initiate(client, orders.customer, order_id)

        assert response.status_code == 502
        assert response.json()["code"] == "PAYMENT_SERVICE_ERROR"
        with session_factory() as s:
            assert s.get(OrderModel, order_id).current_stage == OrderStage.DRAFT.value

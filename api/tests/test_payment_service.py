"""Tests for invoice payments through ``/api/tenant/payments``.

Covers:
- PSE payment creation returns the bank redirect and records a pending attempt
- Approved card payment pays the invoice and activates the plan
- Declined card payment is stored as DECLINED; a past-due invoice goes OVERDUE
- Gateway timeout returns 503 and records nothing
- Gateway refusal returns 502
- Paid invoices and missing PSE banks are rejected
- Employees cannot pay
- Polling a pending payment refreshes it from the reports API
- PSE bank list, empty on gateway failure
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from carwash_core.state import InvoiceRepository, PaymentRepository, PlanRepository, TenantRepository

from api.services.invoice_service import InvoiceService
from api.services.payu_client import generate_signature

API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
MERCHANT_ID = "508029"


@pytest_asyncio.fixture
async def open_invoice(session_factory, world):
    """A pending basic-plan invoice for tenant ``demo``."""
    now = datetime.now(UTC)
    async with session_factory() as session:
        plan = await PlanRepository(session).get(world.basic_plan_id)
        invoice = await InvoiceService(session, world.tenant_id).create_plan_invoice(
            plan, now, now + timedelta(days=30), now=now
        )
        await session.commit()
        return invoice


def _submitted(state: str, *, bank_url: str | None = None, response_code: str = "PENDING_TRANSACTION_CONFIRMATION"):
    tx = {"transactionId": "tx-9", "orderId": 8001, "state": state, "responseCode": response_code}
    if bank_url:
        tx["extraParameters"] = {"BANK_URL": bank_url}
    return {"code": "SUCCESS", "error": None, "transactionResponse": tx}


def _pse_body(invoice_id: str, **payer) -> dict:
    info = {"fullName": "Olivia Owner", "document": "1020304050", "email": "owner@demo.test", "pseBank": "1022"}
    info.update(payer)
    return {"invoiceId": invoice_id, "method": "PSE", "payerInfo": info}


def _card_body(invoice_id: str) -> dict:
    return {
        "invoiceId": invoice_id,
        "method": "CREDIT_CARD",
        "payerInfo": {
            "fullName": "Olivia Owner",
            "document": "1020304050",
            "cardNumber": "4097440000000004",
            "cardExpiration": "2030/12",
            "cardSecurityCode": "321",
            "cardBrand": "VISA",
        },
    }


async def _payments(session_factory, world, invoice_id):
    async with session_factory() as session:
        return await PaymentRepository(session, world.tenant_id).list_for_invoice(invoice_id)


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_pse_payment_returns_bank_url(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = _submitted("PENDING", bank_url="https://bank.test/pse/redirect")

        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["bankUrl"] == "https://bank.test/pse/redirect"

        [payment] = await _payments(session_factory, world, open_invoice.id)
        assert payment.id == body["paymentId"]
        assert payment.status == "PENDING"
        assert payment.method == "PSE"
        assert payment.pse_bank == "1022"
        assert payment.payu_order_id == "8001"
        assert payment.payu_reference_code.startswith("CW-")

        [sent] = gateway.requests
        order = sent["transaction"]["order"]
        assert order["referenceCode"] == payment.payu_reference_code
        assert order["signature"] == generate_signature(
            API_KEY, MERCHANT_ID, payment.payu_reference_code, Decimal("59500"), "COP"
        )
        assert sent["transaction"]["extraParameters"]["FINANCIAL_INSTITUTION_CODE"] == "1022"
        assert sent["transaction"]["extraParameters"]["RESPONSE_URL"].startswith("https://demo.carwash.test/billing")

    @pytest.mark.asyncio
    async def test_approved_card_payment_activates_plan(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = _submitted("APPROVED", response_code="APPROVED")

        resp = await client.post(
            "/api/tenant/payments", json=_card_body(open_invoice.id), headers=auth_headers(world.admin_user_id)
        )

        assert resp.status_code == 201
        assert resp.json()["status"] == "APPROVED"
        async with session_factory() as session:
            invoice = await InvoiceRepository(session, world.tenant_id).get(open_invoice.id)
            tenant = await TenantRepository(session).get(world.tenant_id)
        assert invoice.status == "PAID"
        assert tenant.plan_id == world.basic_plan_id
        assert tenant.trial_ends_at == open_invoice.period_end

        [payment] = await _payments(session_factory, world, open_invoice.id)
        assert payment.status == "APPROVED"
        assert "4097440000000004" not in json.dumps(payment.metadata_json)

    @pytest.mark.asyncio
    async def test_declined_card_is_recorded_as_declined(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = _submitted("DECLINED", response_code="ANTIFRAUD_REJECTED")

        resp = await client.post(
            "/api/tenant/payments", json=_card_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 201
        assert resp.json()["status"] == "DECLINED"
        assert resp.json()["responseCode"] == "ANTIFRAUD_REJECTED"

        [payment] = await _payments(session_factory, world, open_invoice.id)
        assert payment.status == "DECLINED"
        async with session_factory() as session:
            invoice = await InvoiceRepository(session, world.tenant_id).get(open_invoice.id)
        assert invoice.status == "PENDING"

    @pytest.mark.asyncio
    async def test_declined_card_on_past_due_invoice_marks_overdue(
        self, client, world, auth_headers, gateway, session_factory
    ) -> None:
        issued = datetime.now(UTC) - timedelta(days=10)
        async with session_factory() as session:
            plan = await PlanRepository(session).get(world.basic_plan_id)
            invoice = await InvoiceService(session, world.tenant_id).create_plan_invoice(
                plan, issued, issued + timedelta(days=30), now=issued
            )
            await session.commit()
        gateway.responses["SUBMIT_TRANSACTION"] = _submitted("DECLINED", response_code="PAYMENT_NETWORK_REJECTED")

        resp = await client.post(
            "/api/tenant/payments", json=_card_body(invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 201
        assert resp.json()["status"] == "DECLINED"
        async with session_factory() as session:
            refreshed = await InvoiceRepository(session, world.tenant_id).get(invoice.id)
        assert refreshed.status == "OVERDUE"

    @pytest.mark.asyncio
    async def test_gateway_timeout_records_nothing(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = httpx.ReadTimeout("gateway too slow")

        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 503
        assert resp.json() == {"error": "Payment gateway unavailable, please retry"}
        assert await _payments(session_factory, world, open_invoice.id) == []

    @pytest.mark.asyncio
    async def test_gateway_5xx_is_unavailable(self, client, world, auth_headers, gateway, open_invoice) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = httpx.Response(502, text="bad gateway")

        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )
        assert resp.status_code == 503

    @pytest.mark.asyncio
    async def test_gateway_refusal_is_502(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = {"code": "ERROR", "error": "Invalid merchant"}

        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 502
        assert "Invalid merchant" in resp.json()["error"]
        assert await _payments(session_factory, world, open_invoice.id) == []

    @pytest.mark.asyncio
    async def test_paid_invoice_is_rejected(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        async with session_factory() as session:
            await InvoiceRepository(session, world.tenant_id).transition_status(
                open_invoice.id, from_statuses=["PENDING"], to_status="PAID", paid_at=datetime.now(UTC)
            )
            await session.commit()

        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.owner_user_id)
        )

        assert resp.status_code == 400
        assert resp.json() == {"error": "This invoice has already been paid"}
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_pse_requires_bank(self, client, world, auth_headers, gateway, open_invoice) -> None:
        resp = await client.post(
            "/api/tenant/payments",
            json=_pse_body(open_invoice.id, pseBank=None),
            headers=auth_headers(world.owner_user_id),
        )
        assert resp.status_code == 400
        assert resp.json() == {"error": "A PSE bank is required"}
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_unknown_invoice_is_404(self, client, world, auth_headers) -> None:
        resp = await client.post(
            "/api/tenant/payments", json=_pse_body("no-such-invoice"), headers=auth_headers(world.owner_user_id)
        )
        assert resp.status_code == 404
        assert resp.json() == {"error": "Invoice not found"}

    @pytest.mark.asyncio
    async def test_employee_cannot_pay(self, client, world, auth_headers, gateway, open_invoice) -> None:
        resp = await client.post(
            "/api/tenant/payments", json=_pse_body(open_invoice.id), headers=auth_headers(world.employee_user_id)
        )
        assert resp.status_code == 403
        assert gateway.requests == []


class TestGetPayment:
    async def _pending(self, session_factory, world, invoice):
        async with session_factory() as session:
            payment = await PaymentRepository(session, world.tenant_id).create(
                invoice_id=invoice.id,
                amount=Decimal("59500"),
                method="PSE",
                status="PENDING",
                reference_code="CW-pending-0001",
            )
            await session.commit()
            return payment

    @pytest.mark.asyncio
    async def test_captured_order_approves_payment(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        payment = await self._pending(session_factory, world, open_invoice)
        gateway.responses["ORDER_DETAIL_BY_REFERENCE_CODE"] = {
            "code": "SUCCESS",
            "result": {
                "payload": [
                    {
                        "id": 8001,
                        "referenceCode": "CW-pending-0001",
                        "status": "CAPTURED",
                        "transactions": [{"transactionResponse": {"state": "APPROVED", "responseCode": "APPROVED"}}],
                    }
                ]
            },
        }

        resp = await client.get(f"/api/tenant/payments/{payment.id}", headers=auth_headers(world.employee_user_id))

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "APPROVED"
        assert body["responseCode"] == "APPROVED"
        assert body["invoice"]["status"] == "PAID"
        assert gateway.requests[0]["details"] == {"referenceCode": "CW-pending-0001"}

    @pytest.mark.asyncio
    async def test_gateway_outage_keeps_payment_pending(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        payment = await self._pending(session_factory, world, open_invoice)
        gateway.responses["ORDER_DETAIL_BY_REFERENCE_CODE"] = httpx.ConnectError("connection refused")

        resp = await client.get(f"/api/tenant/payments/{payment.id}", headers=auth_headers(world.owner_user_id))

        assert resp.status_code == 200
        assert resp.json()["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_settled_payment_is_not_polled(
        self, client, world, auth_headers, gateway, open_invoice, session_factory
    ) -> None:
        payment = await self._pending(session_factory, world, open_invoice)
        async with session_factory() as session:
            await PaymentRepository(session, world.tenant_id).transition_from_pending(payment.id, "DECLINED")
            await session.commit()

        resp = await client.get(f"/api/tenant/payments/{payment.id}", headers=auth_headers(world.owner_user_id))

        assert resp.json()["status"] == "DECLINED"
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_unknown_payment_is_404(self, client, world, auth_headers) -> None:
        resp = await client.get("/api/tenant/payments/missing", headers=auth_headers(world.owner_user_id))
        assert resp.status_code == 404
        assert resp.json() == {"error": "Payment not found"}


class TestPseBanks:
    @pytest.mark.asyncio
    async def test_lists_banks(self, client, world, auth_headers, gateway) -> None:
        gateway.responses["GET_BANKS_LIST"] = {
            "code": "SUCCESS",
            "banks": [
                {"id": "1", "description": "A continuación seleccione su banco", "pseCode": "0"},
                {"id": "2", "description": "BANCOLOMBIA", "pseCode": "1007"},
            ],
        }

        resp = await client.get("/api/tenant/payments/banks", headers=auth_headers(world.employee_user_id))

        assert resp.status_code == 200
        assert resp.json()[1] == {"pseCode": "1007", "description": "BANCOLOMBIA"}

    @pytest.mark.asyncio
    async def test_gateway_failure_gives_empty_list(self, client, world, auth_headers, gateway) -> None:
        gateway.responses["GET_BANKS_LIST"] = httpx.ReadTimeout("slow")

        resp = await client.get("/api/tenant/payments/banks", headers=auth_headers(world.owner_user_id))

        assert resp.status_code == 200
        assert resp.json() == []

"""Tests for api/api/services/payu_client.py

Covers:
- format_amount renders amounts the way the gateway signs them
- generate_signature / verify_signature, including the one-decimal variant
- map_gateway_state for numeric and textual states
- Request shape of PSE submissions and error mapping of the transport
"""

from __future__ import annotations

import hashlib
from decimal import Decimal

import httpx
import pytest
from carwash_core.billing import PaymentStatus

from api.errors import GatewayRejected, GatewayUnavailable
from api.services.payu_client import (
    Buyer,
    DeviceInfo,
    format_amount,
    generate_signature,
    map_gateway_state,
)

API_KEY = "4Vj8eK4rloUd272L48hsrarnUA"
MERCHANT_ID = "508029"


class TestFormatAmount:
    @pytest.mark.parametrize(
        ("amount", "expected"),
        [
            (Decimal("59500"), "59500"),
            (Decimal("59500.00"), "59500"),
            ("59500.50", "59500.5"),
            (Decimal("1E+3"), "1000"),
            (12.25, "12.25"),
        ],
    )
    def test_format(self, amount, expected: str) -> None:
        assert format_amount(amount) == expected


class TestSignatures:
    def test_generate_signature(self) -> None:
        expected = hashlib.md5(f"{API_KEY}~{MERCHANT_ID}~CW-ref~59500~COP".encode()).hexdigest()
        assert generate_signature(API_KEY, MERCHANT_ID, "CW-ref", Decimal("59500.00"), "COP") == expected

    def test_verify_accepts_exact_and_rounded(self, payu_client) -> None:
        exact = generate_signature(API_KEY, MERCHANT_ID, "CW-ref", "59500.00", "COP")
        rounded = hashlib.md5(f"{API_KEY}~{MERCHANT_ID}~CW-ref~59500.0~COP".encode()).hexdigest()

        assert payu_client.verify_signature("CW-ref", "59500.00", "COP", exact)
        assert payu_client.verify_signature("CW-ref", "59500.00", "COP", rounded.upper())

    @pytest.mark.parametrize(
        ("reference", "amount", "currency"),
        [("CW-other", "59500.00", "COP"), ("CW-ref", "59501.00", "COP"), ("CW-ref", "59500.00", "USD")],
    )
    def test_verify_rejects_altered_fields(self, payu_client, reference: str, amount: str, currency: str) -> None:
        sign = generate_signature(API_KEY, MERCHANT_ID, "CW-ref", "59500.00", "COP")
        assert not payu_client.verify_signature(reference, amount, currency, sign)

    def test_verify_rejects_empty_and_garbage(self, payu_client) -> None:
        assert not payu_client.verify_signature("CW-ref", "59500.00", "COP", "")
        assert not payu_client.verify_signature("CW-ref", "not-a-number", "COP", "abc")


class TestMapGatewayState:
    @pytest.mark.parametrize(
        ("state", "expected"),
        [
            ("4", PaymentStatus.APPROVED),
            ("6", PaymentStatus.DECLINED),
            ("5", PaymentStatus.EXPIRED),
            ("7", PaymentStatus.PENDING),
            ("104", PaymentStatus.ERROR),
            ("approved", PaymentStatus.APPROVED),
            (" DECLINED ", PaymentStatus.DECLINED),
        ],
    )
    def test_known_states(self, state: str, expected: PaymentStatus) -> None:
        assert map_gateway_state(state) is expected

    @pytest.mark.parametrize("state", [None, "", "99", "REFUNDED"])
    def test_unknown_states(self, state) -> None:
        assert map_gateway_state(state) is None


def _buyer() -> Buyer:
    return Buyer(full_name="Olivia Owner", email="owner@demo.test", document="1020304050")


def _device() -> DeviceInfo:
    return DeviceInfo(ip_address="10.0.0.1", user_agent="pytest", session_id="cw_t_1")


async def _submit_pse(client):
    return await client.create_pse_payment(
        reference_code="CW-ref",
        description="Invoice FAC-2603-00001",
        amount=Decimal("59500"),
        tax=Decimal("9500"),
        tax_return_base=Decimal("50000"),
        buyer=_buyer(),
        device=_device(),
        pse_bank="1022",
        person_type="N",
        response_url="https://demo.carwash.test/billing",
    )


class TestTransport:
    @pytest.mark.asyncio
    async def test_pse_request_shape(self, payu_client, gateway) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = {
            "code": "SUCCESS",
            "transactionResponse": {
                "transactionId": "tx-1",
                "orderId": 42,
                "state": "PENDING",
                "responseCode": "PENDING_TRANSACTION_CONFIRMATION",
                "extraParameters": {"BANK_URL": "https://bank.test/redirect"},
            },
        }

        result = await _submit_pse(payu_client)

        assert result.status is PaymentStatus.PENDING
        assert result.order_id == "42"
        assert result.bank_url == "https://bank.test/redirect"
        [sent] = gateway.requests
        assert sent["test"] is True
        assert sent["transaction"]["paymentMethod"] == "PSE"
        assert sent["transaction"]["order"]["additionalValues"]["TX_VALUE"] == {"value": 59500.0, "currency": "COP"}
        assert sent["transaction"]["extraParameters"]["USER_TYPE"] == "N"

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, payu_client, gateway) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = httpx.ConnectTimeout("slow")
        with pytest.raises(GatewayUnavailable):
            await _submit_pse(payu_client)

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self, payu_client, gateway) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = httpx.Response(401, text="unauthorized")
        with pytest.raises(GatewayRejected, match="401"):
            await _submit_pse(payu_client)

    @pytest.mark.asyncio
    async def test_invalid_json_is_rejected(self, payu_client, gateway) -> None:
        gateway.responses["SUBMIT_TRANSACTION"] = httpx.Response(200, text="<html>maintenance</html>")
        with pytest.raises(GatewayRejected, match="invalid response"):
            await _submit_pse(payu_client)

    @pytest.mark.asyncio
    async def test_unknown_reference_query(self, payu_client, gateway) -> None:
        gateway.responses["ORDER_DETAIL_BY_REFERENCE_CODE"] = {"code": "SUCCESS", "result": {"payload": []}}
        assert await payu_client.query_by_reference("CW-none") is None

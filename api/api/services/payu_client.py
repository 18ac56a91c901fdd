"""HTTP client for the PayU Latam payments and reports APIs.

Every call is bounded by the configured gateway timeout.  Transport
failures and timeouts surface as :class:`~api.errors.GatewayUnavailable`
(retryable, 503) and gateway-level refusals as
:class:`~api.errors.GatewayRejected` (502), so callers can abort before
writing any state.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import httpx
from carwash_core.billing import PaymentStatus
from pydantic import SecretStr

from api.errors import GatewayRejected, GatewayUnavailable

if TYPE_CHECKING:
    from api.config import APISettings

logger = logging.getLogger(__name__)

_SANDBOX_PAYMENTS_URL = "https://sandbox.api.payulatam.com/payments-api/4.0/service.cgi"
_SANDBOX_REPORTS_URL = "https://sandbox.api.payulatam.com/reports-api/4.0/service.cgi"
_PAYMENTS_URL = "https://api.payulatam.com/payments-api/4.0/service.cgi"
_REPORTS_URL = "https://api.payulatam.com/reports-api/4.0/service.cgi"

_LANGUAGE = "es"

# Confirmation ``state_pol`` codes and their textual equivalents.
_STATE_MAP: dict[str, PaymentStatus] = {
    "4": PaymentStatus.APPROVED,
    "6": PaymentStatus.DECLINED,
    "7": PaymentStatus.PENDING,
    "5": PaymentStatus.EXPIRED,
    "104": PaymentStatus.ERROR,
    "APPROVED": PaymentStatus.APPROVED,
    "DECLINED": PaymentStatus.DECLINED,
    "PENDING": PaymentStatus.PENDING,
    "EXPIRED": PaymentStatus.EXPIRED,
    "ERROR": PaymentStatus.ERROR,
}


def map_gateway_state(state: str | None) -> PaymentStatus | None:
    """Translate a PayU transaction state into a :class:`PaymentStatus`."""
    if not state:
        return None
    return _STATE_MAP.get(str(state).strip().upper())


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------


def format_amount(amount: Decimal | int | float | str) -> str:
    """Render *amount* the way PayU signs it: no trailing zeros, no exponent."""
    value = Decimal(str(amount))
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def generate_signature(
    api_key: str,
    merchant_id: str,
    reference_code: str,
    amount: Decimal | str,
    currency: str,
) -> str:
    """Return the md5 ``apiKey~merchantId~referenceCode~amount~currency`` digest."""
    raw = f"{api_key}~{merchant_id}~{reference_code}~{format_amount(amount)}~{currency}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()  # noqa: S324


# ---------------------------------------------------------------------------
# Request / response shapes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Buyer:
    """Payer identity forwarded to the gateway."""

    full_name: str
    email: str
    document: str
    document_type: str = "CC"
    phone: str = ""


@dataclass(frozen=True)
class DeviceInfo:
    """Client fingerprint PayU requires for fraud screening."""

    ip_address: str
    user_agent: str
    session_id: str


@dataclass(frozen=True)
class CardDetails:
    """Card data passed straight through; never persisted or logged."""

    number: str
    security_code: str
    expiration: str  # YYYY/MM
    holder_name: str
    network: str = "VISA"
    installments: int = 1


@dataclass(frozen=True)
class TransactionResult:
    """Outcome of a ``SUBMIT_TRANSACTION`` call."""

    transaction_id: str | None
    order_id: str | None
    state: str | None
    response_code: str | None
    bank_url: str | None = None
    pending_reason: str | None = None

    @property
    def status(self) -> PaymentStatus:
        return map_gateway_state(self.state) or PaymentStatus.PENDING


@dataclass(frozen=True)
class ReferenceQueryResult:
    """Latest order state reported for a reference code."""

    order_id: str
    reference_code: str | None
    order_status: str | None
    transaction_state: str | None
    response_code: str | None


@dataclass(frozen=True)
class PseBank:
    pse_code: str
    description: str


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class PayUClient:
    """Thin async wrapper around the PayU REST endpoints.

    Parameters
    ----------
    api_key, api_login:
        Merchant credentials.  Never logged.
    merchant_id, account_id:
        Merchant and account identifiers.
    test_mode:
        Selects the sandbox URLs and sets the ``test`` flag.
    country, currency:
        Payment country and currency for every transaction.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        *,
        api_key: SecretStr,
        api_login: SecretStr,
        merchant_id: str,
        account_id: str,
        test_mode: bool = True,
        country: str = "CO",
        currency: str = "COP",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_login = api_login
        self._merchant_id = merchant_id
        self._account_id = account_id
        self._test_mode = test_mode
        self._country = country
        self._currency = currency
        self._payments_url = _SANDBOX_PAYMENTS_URL if test_mode else _PAYMENTS_URL
        self._reports_url = _SANDBOX_REPORTS_URL if test_mode else _REPORTS_URL
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: APISettings) -> PayUClient:
        """Build a client from :class:`~api.config.APISettings`."""
        return cls(
            api_key=settings.payu_api_key,
            api_login=settings.payu_api_login,
            merchant_id=settings.payu_merchant_id,
            account_id=settings.payu_account_id,
            test_mode=settings.payu_test_mode,
            country=settings.payu_country,
            currency=settings.currency,
            timeout=settings.gateway_timeout,
        )

    @property
    def currency(self) -> str:
        return self._currency

    # -- Signatures ----------------------------------------------------------

    def sign(self, reference_code: str, amount: Decimal | str, currency: str | None = None) -> str:
        """Sign an outgoing order."""
        return generate_signature(
            self._api_key.get_secret_value(),
            self._merchant_id,
            reference_code,
            amount,
            currency or self._currency,
        )

    def verify_signature(self, reference_code: str, amount: str, currency: str, signature: str) -> bool:
        """Check a confirmation signature in constant time.

        PayU signs confirmations with the amount rounded to one decimal, so
        both the raw and the rounded renderings are accepted.
        """
        if not signature:
            return False
        try:
            value = Decimal(str(amount))
        except InvalidOperation:
            return False
        rounded = value.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        candidates = {format_amount(value), format_amount(rounded), f"{rounded:.1f}"}
        api_key = self._api_key.get_secret_value()
        matched = False
        for candidate in candidates:
            raw = f"{api_key}~{self._merchant_id}~{reference_code}~{candidate}~{currency}"
            expected = hashlib.md5(raw.encode("utf-8")).hexdigest()  # noqa: S324
            matched |= hmac.compare_digest(expected, signature.strip().lower())
        return matched

    # -- Payments API --------------------------------------------------------

    async def get_pse_banks(self) -> list[PseBank]:
        """Return the PSE bank list.

        Raises
        ------
        GatewayUnavailable, GatewayRejected
        """
        body = {
            "language": _LANGUAGE,
            "command": "GET_BANKS_LIST",
            "merchant": self._merchant(),
            "test": self._test_mode,
            "bankListInformation": {"paymentMethod": "PSE", "paymentCountry": self._country},
        }
        response = await self._post(self._payments_url, body)
        if response.get("code") != "SUCCESS":
            raise GatewayRejected(f"Bank list refused: {response.get('error') or 'unknown error'}")
        return [
            PseBank(pse_code=str(b.get("pseCode", "")), description=str(b.get("description", "")))
            for b in response.get("banks") or []
        ]

    async def create_pse_payment(
        self,
        *,
        reference_code: str,
        description: str,
        amount: Decimal,
        tax: Decimal,
        tax_return_base: Decimal,
        buyer: Buyer,
        device: DeviceInfo,
        pse_bank: str,
        person_type: str,
        response_url: str,
    ) -> TransactionResult:
        """Submit a PSE bank-redirect payment."""
        transaction = self._transaction(
            reference_code=reference_code,
            description=description,
            amount=amount,
            tax=tax,
            tax_return_base=tax_return_base,
            buyer=buyer,
            device=device,
            payment_method="PSE",
        )
        transaction["extraParameters"] = {
            "RESPONSE_URL": response_url,
            "PSE_REFERENCE1": f"IP:{device.ip_address}",
            "FINANCIAL_INSTITUTION_CODE": pse_bank,
            "USER_TYPE": person_type,
            "PSE_REFERENCE2": buyer.document_type,
            "PSE_REFERENCE3": buyer.document,
        }
        return await self._submit(transaction, reference_code)

    async def create_credit_card_payment(
        self,
        *,
        reference_code: str,
        description: str,
        amount: Decimal,
        tax: Decimal,
        tax_return_base: Decimal,
        buyer: Buyer,
        device: DeviceInfo,
        card: CardDetails,
    ) -> TransactionResult:
        """Submit a card authorisation-and-capture payment."""
        transaction = self._transaction(
            reference_code=reference_code,
            description=description,
            amount=amount,
            tax=tax,
            tax_return_base=tax_return_base,
            buyer=buyer,
            device=device,
            payment_method=card.network,
        )
        transaction["creditCard"] = {
            "number": card.number,
            "securityCode": card.security_code,
            "expirationDate": card.expiration,
            "name": card.holder_name,
        }
        transaction["extraParameters"] = {"INSTALLMENTS_NUMBER": card.installments}
        return await self._submit(transaction, reference_code)

    # -- Reports API ---------------------------------------------------------

    async def query_by_reference(self, reference_code: str) -> ReferenceQueryResult | None:
        """Return the latest order for *reference_code*, or ``None`` if unknown."""
        body = {
            "language": _LANGUAGE,
            "command": "ORDER_DETAIL_BY_REFERENCE_CODE",
            "merchant": self._merchant(),
            "details": {"referenceCode": reference_code},
            "test": self._test_mode,
        }
        response = await self._post(self._reports_url, body)
        if response.get("code") != "SUCCESS":
            return None

        orders = (response.get("result") or {}).get("payload") or []
        if not orders:
            return None
        latest = orders[0]
        transactions = latest.get("transactions") or []
        tx_response = (transactions[-1].get("transactionResponse") or {}) if transactions else {}
        return ReferenceQueryResult(
            order_id=str(latest.get("id")),
            reference_code=latest.get("referenceCode"),
            order_status=latest.get("status"),
            transaction_state=tx_response.get("state"),
            response_code=tx_response.get("responseCode"),
        )

    # -- Lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    def _merchant(self) -> dict[str, str]:
        return {
            "apiKey": self._api_key.get_secret_value(),
            "apiLogin": self._api_login.get_secret_value(),
        }

    def _money(self, value: Decimal) -> dict[str, Any]:
        return {"value": float(value), "currency": self._currency}

    def _transaction(
        self,
        *,
        reference_code: str,
        description: str,
        amount: Decimal,
        tax: Decimal,
        tax_return_base: Decimal,
        buyer: Buyer,
        device: DeviceInfo,
        payment_method: str,
    ) -> dict[str, Any]:
        person = {
            "fullName": buyer.full_name,
            "emailAddress": buyer.email,
            "contactPhone": buyer.phone,
            "dniNumber": buyer.document,
            "dniType": buyer.document_type,
        }
        return {
            "order": {
                "accountId": self._account_id,
                "referenceCode": reference_code,
                "description": description,
                "language": _LANGUAGE,
                "signature": self.sign(reference_code, amount),
                "additionalValues": {
                    "TX_VALUE": self._money(amount),
                    "TX_TAX": self._money(tax),
                    "TX_TAX_RETURN_BASE": self._money(tax_return_base),
                },
                "buyer": {"merchantBuyerId": buyer.document, **person},
            },
            "payer": {"merchantPayerId": buyer.document, **person},
            "type": "AUTHORIZATION_AND_CAPTURE",
            "paymentMethod": payment_method,
            "paymentCountry": self._country,
            "deviceSessionId": device.session_id,
            "ipAddress": device.ip_address,
            "cookie": device.session_id,
            "userAgent": device.user_agent,
        }

    async def _submit(self, transaction: dict[str, Any], reference_code: str) -> TransactionResult:
        body = {
            "language": _LANGUAGE,
            "command": "SUBMIT_TRANSACTION",
            "merchant": self._merchant(),
            "transaction": transaction,
            "test": self._test_mode,
        }
        response = await self._post(self._payments_url, body)
        if response.get("code") != "SUCCESS":
            logger.warning("PayU refused transaction %s: %s", reference_code, response.get("error"))
            raise GatewayRejected(f"Payment refused by gateway: {response.get('error') or 'unknown error'}")

        tx = response.get("transactionResponse") or {}
        extra = tx.get("extraParameters") or {}
        result = TransactionResult(
            transaction_id=tx.get("transactionId"),
            order_id=str(tx["orderId"]) if tx.get("orderId") is not None else None,
            state=tx.get("state"),
            response_code=tx.get("responseCode"),
            bank_url=extra.get("BANK_URL"),
            pending_reason=tx.get("pendingReason"),
        )
        logger.info(
            "PayU transaction %s state=%s response=%s",
            reference_code,
            result.state,
            result.response_code,
        )
        return result

    async def _post(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST *body* and return the decoded JSON.

        Raises
        ------
        GatewayUnavailable
            On timeouts, transport errors and 5xx answers.
        GatewayRejected
            On 4xx answers or an undecodable body.
        """
        command = body.get("command")
        try:
            response = await self._client.post(url, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            logger.warning("PayU %s timed out: %s", command, type(exc).__name__)
            raise GatewayUnavailable() from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("PayU %s returned %d: %s", command, status, exc.response.text[:500])
            if status >= 500:
                raise GatewayUnavailable() from exc
            raise GatewayRejected(f"Payment gateway error ({status})") from exc
        except httpx.RequestError as exc:
            logger.warning("PayU %s request failed: %s", command, exc)
            raise GatewayUnavailable() from exc

        try:
            return response.json()
        except ValueError as exc:
            raise GatewayRejected("Payment gateway returned an invalid response") from exc

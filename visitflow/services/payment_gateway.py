"""Payment gateway capability and its providers."""

import hashlib
import hmac
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
import structlog

from visitflow.config import Settings
from visitflow.core.exceptions import GatewayRejected, GatewayUnavailable, VerificationFailed
from visitflow.schemas.payments import GatewayOrder, GatewayOrderStatus, GatewayVerification

logger = structlog.get_logger(__name__)


def compute_signature(secret: str, message: str) -> str:
    """HMAC-SHA256 hex digest of a message."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: object) -> bool:
    """Constant-time signature comparison."""
    if not isinstance(received, str) or not received:
        return False
    return hmac.compare_digest(expected, received)


class PaymentGateway(ABC):
    """
    Untrusted, external payment processor.

    Every result it hands back through the client must go through
    ``verify`` before the engine acts on it.
    """

    provider: str

    @abstractmethod
    async def open(self, amount: Decimal, currency: str, subject_ref: str) -> GatewayOrder:
        """
        Open a transaction for ``subject_ref``.

        Must be idempotent by ``subject_ref``: opening twice for the same
        reference returns the same order.

        Raises:
            GatewayUnavailable: If the gateway cannot be reached
            GatewayRejected: If the gateway refuses the order
        """

    @abstractmethod
    async def verify(self, gateway_result: dict[str, Any]) -> GatewayVerification:
        """
        Attribute a client-supplied result to a gateway order.

        Raises:
            VerificationFailed: If the result is malformed or forged
            GatewayUnavailable: If the gateway must be consulted and cannot be reached
        """

    @abstractmethod
    async def fetch_status(self, gateway_ref: str) -> GatewayOrderStatus:
        """
        Poll the order state, used to reconcile orphaned payments.

        Raises:
            GatewayUnavailable: If the gateway cannot be reached
            GatewayRejected: If the gateway does not know the order
        """

    async def close(self) -> None:  # noqa: B027
        """Release transport resources."""


class MockPaymentGateway(PaymentGateway):
    """
    In-process gateway for development and tests.

    ``complete`` plays the customer's side of the checkout and returns the
    signed result a browser would post back.
    """

    provider = "mock"

    def __init__(self, secret: str):
        self._secret = secret
        self._orders: dict[str, GatewayOrder] = {}
        self._statuses: dict[str, GatewayOrderStatus] = {}

    async def open(self, amount: Decimal, currency: str, subject_ref: str) -> GatewayOrder:
        existing = self._orders.get(subject_ref)
        if existing is not None:
            return existing

        gateway_ref = f"mock_{uuid4().hex}"
        order = GatewayOrder(
            gateway_ref=gateway_ref,
            payload={
                "order_ref": gateway_ref,
                "amount": str(amount),
                "currency": currency,
                "confirm_url": "/mock-payment-gateway",
            },
        )
        self._orders[subject_ref] = order
        self._statuses[gateway_ref] = GatewayOrderStatus.PENDING
        logger.info("mock_gateway_order_opened", gateway_ref=gateway_ref, amount=str(amount))
        return order

    def complete(self, gateway_ref: str, success: bool = True) -> dict[str, Any]:
        """Settle an order as the customer would and return the signed result."""
        if gateway_ref not in self._statuses:
            raise KeyError(gateway_ref)

        status = "SUCCESS" if success else "FAILED"
        self._statuses[gateway_ref] = (
            GatewayOrderStatus.CAPTURED if success else GatewayOrderStatus.FAILED
        )
        return self.sign(gateway_ref, status)

    def sign(self, gateway_ref: str, status: str) -> dict[str, Any]:
        return {
            "gateway_ref": gateway_ref,
            "status": status,
            "signature": compute_signature(self._secret, f"{gateway_ref}|{status}"),
        }

    async def verify(self, gateway_result: dict[str, Any]) -> GatewayVerification:
        gateway_ref = gateway_result.get("gateway_ref")
        status = gateway_result.get("status")

        if not isinstance(gateway_ref, str) or status not in ("SUCCESS", "FAILED"):
            raise VerificationFailed("Malformed gateway result")

        expected = compute_signature(self._secret, f"{gateway_ref}|{status}")
        if not signatures_match(expected, gateway_result.get("signature")):
            raise VerificationFailed("Gateway signature mismatch")

        return GatewayVerification(payment_ref=gateway_ref, success=status == "SUCCESS")

    async def fetch_status(self, gateway_ref: str) -> GatewayOrderStatus:
        return self._statuses.get(gateway_ref, GatewayOrderStatus.PENDING)


class HttpPaymentGateway(PaymentGateway):
    """
    Orders-API gateway reached over HTTPS.

    Orders are created with the payment id as receipt so re-opening is
    idempotent; successful checkouts are signed with
    ``HMAC_SHA256(secret, "<order_id>|<payment_id>")``. Failure reports carry
    no signature and are checked against the order state instead.
    """

    provider = "http"

    def __init__(
        self,
        base_url: str,
        key_id: str,
        secret: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self._secret = secret
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self._secret),
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("payment_gateway_request_failed", path=path, error=str(e))
            raise GatewayUnavailable(f"Payment gateway request failed: {e}") from e

        if response.status_code >= 500:
            logger.warning(
                "payment_gateway_server_error", path=path, status_code=response.status_code
            )
            raise GatewayUnavailable(f"Payment gateway returned {response.status_code}")

        if response.status_code >= 400:
            raise GatewayRejected(f"Payment gateway rejected request: {response.status_code}")

        return response.json()

    async def open(self, amount: Decimal, currency: str, subject_ref: str) -> GatewayOrder:
        amount_minor = int((amount * 100).to_integral_value())
        order = await self._request(
            "POST",
            "/orders",
            json={"amount": amount_minor, "currency": currency, "receipt": subject_ref},
        )

        return GatewayOrder(
            gateway_ref=order["id"],
            payload={
                "order_ref": order["id"],
                "amount": amount_minor,
                "currency": currency,
                "key_id": self.key_id,
            },
        )

    async def verify(self, gateway_result: dict[str, Any]) -> GatewayVerification:
        order_id = gateway_result.get("order_id")
        if not isinstance(order_id, str) or not order_id:
            raise VerificationFailed("Malformed gateway result")

        payment_ref = gateway_result.get("payment_ref")
        if payment_ref is not None:
            expected = compute_signature(self._secret, f"{order_id}|{payment_ref}")
            if not signatures_match(expected, gateway_result.get("signature")):
                raise VerificationFailed("Gateway signature mismatch")
            return GatewayVerification(payment_ref=order_id, success=True)

        # Unsigned failure report: trust only what the gateway itself says
        try:
            status = await self.fetch_status(order_id)
        except GatewayRejected as e:
            raise VerificationFailed("Gateway does not recognise the order") from e
        if status is GatewayOrderStatus.PENDING:
            raise VerificationFailed("Gateway reports the order is still open")
        return GatewayVerification(
            payment_ref=order_id,
            success=status is GatewayOrderStatus.CAPTURED,
        )

    async def fetch_status(self, gateway_ref: str) -> GatewayOrderStatus:
        order = await self._request("GET", f"/orders/{gateway_ref}")
        status = order.get("status")
        if status == "paid":
            return GatewayOrderStatus.CAPTURED
        if status == "failed":
            return GatewayOrderStatus.FAILED
        return GatewayOrderStatus.PENDING


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    """Select the gateway provider from configuration."""
    if settings.payment_provider == "http":
        return HttpPaymentGateway(
            base_url=settings.payment_gateway_url,
            key_id=settings.payment_gateway_key_id,
            secret=settings.payment_gateway_secret,
            timeout=settings.payment_gateway_timeout_seconds,
        )

    if settings.payment_provider != "mock":
        logger.warning("unknown_payment_provider", provider=settings.payment_provider)

    return MockPaymentGateway(secret=settings.payment_gateway_secret)

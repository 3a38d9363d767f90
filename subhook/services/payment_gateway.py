"""
Outbound payment gateway adapter.

``PaymentGateway`` is the capability surface the billing services depend on;
``HttpPaymentGateway`` implements it over the gateway REST API with httpx.
``GatewayRegistry`` holds one adapter per integration type and is built once
at startup, then passed explicitly to whoever needs it.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any, Optional

import httpx

from subhook.core.exceptions import (
    GatewayNotConfiguredError,
    NotFoundError,
    PaymentGatewayError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)


class IntegrationType(str, Enum):
    """Credential set used for a gateway call or an inbound webhook."""

    SUBSCRIPTION = "SUBSCRIPTION"
    CHECKOUT = "CHECKOUT"


class PaymentGateway(ABC):
    """Abstract gateway capability surface. All payloads are plain dicts."""

    integration_type: IntegrationType = IntegrationType.SUBSCRIPTION

    @abstractmethod
    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_subscription(self, external_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def update_subscription(
        self, external_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def create_payment(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_payment(self, external_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    async def get_merchant_order(self, external_id: str) -> dict[str, Any]:
        ...

    async def set_subscription_status(self, external_id: str, status: str) -> dict[str, Any]:
        """Shortcut for pause (``paused``), resume (``authorized``) and cancel (``cancelled``)."""
        return await self.update_subscription(external_id, {"status": status})

    async def aclose(self) -> None:
        return None


class HttpPaymentGateway(PaymentGateway):
    """
    REST adapter for the gateway.

    Error mapping:
        timeout / connection error / 5xx / unparsable body -> ServiceUnavailableError
        404 -> NotFoundError
        other 4xx -> PaymentGatewayError (business rejection)
    """

    SUBSCRIPTIONS_PATH = "/preapproval"
    PAYMENTS_PATH = "/v1/payments"
    MERCHANT_ORDERS_PATH = "/merchant_orders"

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str,
        integration_type: IntegrationType = IntegrationType.SUBSCRIPTION,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not access_token:
            raise GatewayNotConfiguredError(
                f"Access token missing for {integration_type.value} integration."
            )
        self.integration_type = integration_type
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> dict[str, Any]:
        integration = self.integration_type.value
        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("gateway_timeout: operation=%s integration=%s", operation, integration)
            raise ServiceUnavailableError(
                f"Gateway timeout during {operation}",
                operation=operation,
                integration_type=integration,
            ) from exc
        except httpx.TransportError as exc:
            logger.warning(
                "gateway_unreachable: operation=%s integration=%s error=%s",
                operation,
                integration,
                exc,
            )
            raise ServiceUnavailableError(
                f"Gateway unreachable during {operation}",
                operation=operation,
                integration_type=integration,
            ) from exc

        if response.status_code >= 500:
            raise ServiceUnavailableError(
                f"Gateway error {response.status_code} during {operation}",
                operation=operation,
                integration_type=integration,
            )
        if response.status_code == 404:
            raise NotFoundError(
                f"Gateway resource not found during {operation}",
                code="gateway_resource_not_found",
            )
        if response.status_code >= 400:
            raise PaymentGatewayError(
                _error_message(response) or f"Gateway rejected {operation}",
                operation=operation,
                status_code=response.status_code,
                integration_type=integration,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ServiceUnavailableError(
                f"Gateway returned an invalid body during {operation}",
                operation=operation,
                integration_type=integration,
            ) from exc
        return body if isinstance(body, dict) else {"data": body}

    async def create_subscription(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "POST", self.SUBSCRIPTIONS_PATH, operation="create_subscription", json=payload
        )

    async def get_subscription(self, external_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"{self.SUBSCRIPTIONS_PATH}/{external_id}", operation="get_subscription"
        )

    async def update_subscription(
        self, external_id: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._request(
            "PUT",
            f"{self.SUBSCRIPTIONS_PATH}/{external_id}",
            operation="update_subscription",
            json=payload,
        )

    async def create_payment(
        self,
        payload: dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> dict[str, Any]:
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None
        return await self._request(
            "POST", self.PAYMENTS_PATH, operation="create_payment", json=payload, headers=headers
        )

    async def get_payment(self, external_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"{self.PAYMENTS_PATH}/{external_id}", operation="get_payment"
        )

    async def get_merchant_order(self, external_id: str) -> dict[str, Any]:
        return await self._request(
            "GET", f"{self.MERCHANT_ORDERS_PATH}/{external_id}", operation="get_merchant_order"
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")
    return ""


class GatewayRegistry:
    """
    Gateway adapters and webhook secrets keyed by integration type.
    """

    def __init__(
        self,
        gateways: Mapping[IntegrationType, PaymentGateway],
        webhook_secrets: Optional[Mapping[IntegrationType, str]] = None,
    ) -> None:
        self._gateways = dict(gateways)
        self._webhook_secrets = dict(webhook_secrets or {})

    @classmethod
    def from_settings(cls, config: Any) -> GatewayRegistry:
        """
        Build adapters for every integration type with an access token.

        Integration types without credentials are simply absent; ``validate``
        reports them.
        """
        tokens = {
            IntegrationType.SUBSCRIPTION: config.SUBSCRIPTION_ACCESS_TOKEN,
            IntegrationType.CHECKOUT: config.CHECKOUT_ACCESS_TOKEN,
        }
        gateways: dict[IntegrationType, PaymentGateway] = {}
        for integration_type, token in tokens.items():
            if not token:
                continue
            gateways[integration_type] = HttpPaymentGateway(
                base_url=config.PAYMENT_GATEWAY_BASE_URL,
                access_token=token,
                integration_type=integration_type,
                timeout=config.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            )
        secrets = {
            IntegrationType.SUBSCRIPTION: config.SUBSCRIPTION_WEBHOOK_SECRET,
            IntegrationType.CHECKOUT: config.CHECKOUT_WEBHOOK_SECRET,
        }
        return cls(gateways, secrets)

    def get(self, integration_type: IntegrationType = IntegrationType.SUBSCRIPTION) -> PaymentGateway:
        gateway = self._gateways.get(integration_type)
        if gateway is None:
            raise GatewayNotConfiguredError(
                f"No payment gateway configured for {integration_type.value} integration."
            )
        return gateway

    def webhook_secret(self, integration_type: IntegrationType) -> str:
        return self._webhook_secrets.get(integration_type) or ""

    def validate(
        self,
        required: Iterable[IntegrationType] = (IntegrationType.SUBSCRIPTION, IntegrationType.CHECKOUT),
    ) -> None:
        """Raise if any required integration type has no adapter."""
        missing = [item.value for item in required if item not in self._gateways]
        if missing:
            raise GatewayNotConfiguredError(
                f"Payment gateway not configured for: {', '.join(missing)}"
            )

    async def aclose(self) -> None:
        for gateway in self._gateways.values():
            await gateway.aclose()

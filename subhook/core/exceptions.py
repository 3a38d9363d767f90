"""
Domain errors shared by the billing services.

Endpoints translate them to HTTP with ``_raise_billing_http_error``; the
webhook gate catches everything at its boundary and soft-accepts.
"""
from __future__ import annotations

from typing import Optional


class BillingError(Exception):
    """Base domain error for billing operations."""

    def __init__(self, detail: str, code: str = "billing_error") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class ValidationError(BillingError):
    """Input rejected before any state change."""

    def __init__(self, detail: str, code: str = "validation_error") -> None:
        super().__init__(detail, code=code)


class NotFoundError(BillingError):
    def __init__(self, detail: str, code: str = "not_found") -> None:
        super().__init__(detail, code=code)


class ConflictError(BillingError):
    """Operation not allowed in the current subscription state."""

    def __init__(self, detail: str, code: str = "conflict") -> None:
        super().__init__(detail, code=code)


class ServiceUnavailableError(BillingError):
    """
    Infrastructure failure talking to the payment gateway (timeout,
    connection error, 5xx). Always retryable.
    """

    def __init__(
        self,
        detail: str,
        *,
        operation: str,
        integration_type: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.integration_type = integration_type
        self.retryable = True
        super().__init__(detail, code="service_unavailable")


class GatewayNotConfiguredError(BillingError):
    """Credenciais do gateway nao configuradas para o tipo de integracao."""

    def __init__(self, detail: str = "Payment gateway is not configured.") -> None:
        super().__init__(detail, code="gateway_not_configured")


class PaymentGatewayError(BillingError):
    """Business rejection reported by the gateway (4xx other than 404)."""

    def __init__(
        self,
        detail: str,
        *,
        operation: str,
        status_code: Optional[int] = None,
        integration_type: Optional[str] = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        self.integration_type = integration_type
        super().__init__(detail, code="gateway_rejected")

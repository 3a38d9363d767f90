"""
Webhook ingress gate.

Turns a raw HTTP delivery into a routed event: parse, verify the HMAC
signature, take the per-event Redis lock, dispatch, release. A body that is
not a JSON object is only soft-accepted when its signature checks out
against one of the configured secrets. Processing
errors never surface as HTTP errors; the gateway redelivers on anything but
2xx, so failures are soft-accepted and left in the ledger as ``error``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from redis.exceptions import RedisError

from subhook.core.logging_config import log_context
from subhook.services.event_router import (
    EventRouter,
    WebhookEnvelope,
    event_type_name,
    integration_type_for,
    normalize_event_type,
)
from subhook.services.payment_gateway import GatewayRegistry, IntegrationType

logger = logging.getLogger(__name__)

LOCK_KEY_PREFIX = "webhook:lock:"
DEFAULT_LOCK_TTL_SECONDS = 300


class LockStore(Protocol):
    async def set(self, name: str, value: Any, ex: Optional[int] = None, nx: bool = False) -> Any: ...

    async def delete(self, *names: str) -> Any: ...


def verify_signature(
    payload: bytes,
    signature: Optional[str],
    secret: Optional[str],
    *,
    allow_missing_secret: bool = False,
) -> bool:
    """
    Check an HMAC-SHA256 hex signature of the raw body.

    Without a configured secret the delivery is rejected unless
    ``allow_missing_secret`` is set (non-production escape hatch).
    """
    if not secret:
        if allow_missing_secret:
            logger.warning("webhook_signature_skipped: no secret configured")
            return True
        return False
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    return hmac.compare_digest(expected, provided.lower())


async def acquire_processing_lock(
    redis: LockStore, event_id: str, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
) -> bool:
    """
    Take the processing lock for ``event_id``.

    Fails open: if Redis is unreachable processing continues and the
    ledger's idempotency check is the only guard.
    """
    try:
        acquired = await redis.set(f"{LOCK_KEY_PREFIX}{event_id}", "1", ex=ttl_seconds, nx=True)
    except (RedisError, OSError):
        logger.warning("webhook_lock_unavailable: event_id=%s, proceeding without lock", event_id)
        return True
    return bool(acquired)


async def release_processing_lock(redis: LockStore, event_id: str) -> None:
    try:
        await redis.delete(f"{LOCK_KEY_PREFIX}{event_id}")
    except (RedisError, OSError):
        logger.warning("webhook_lock_release_failed: event_id=%s", event_id)


def extract_resource_id(raw: Any) -> Optional[str]:
    """``"/v1/payments/123"`` -> ``"123"``; plain ids pass through."""
    if raw is None:
        return None
    text = str(raw).strip().rstrip("/")
    if not text:
        return None
    return text.rsplit("/", 1)[-1]


@dataclass
class GateDecision:
    kind: str  # accepted | soft_accepted | rejected
    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accepted(cls, **body: Any) -> GateDecision:
        return cls("accepted", 200, {"received": True, **body})

    @classmethod
    def soft_accepted(cls, reason: str, **body: Any) -> GateDecision:
        return cls("soft_accepted", 202, {"received": True, "reason": reason, **body})

    @classmethod
    def rejected(cls, reason: str) -> GateDecision:
        return cls("rejected", 401, {"received": False, "reason": reason})


def _build_envelope(payload: dict[str, Any]) -> WebhookEnvelope:
    raw_type = payload.get("type") or payload.get("topic") or payload.get("action")
    event_type = normalize_event_type(raw_type)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    resource_id = extract_resource_id(data.get("id") or payload.get("resource"))
    event_id = str(payload.get("id") or "")
    if not event_id:
        # Sem id proprio: usa action + recurso como chave de idempotencia
        event_id = f"{event_type_name(event_type)}:{payload.get('action') or 'notification'}:{resource_id}"
    return WebhookEnvelope(
        event_type=event_type,
        event_id=event_id,
        resource_id=resource_id,
        action=payload.get("action"),
        integration_type=integration_type_for(event_type),
        raw_payload=payload,
        live_mode=bool(payload.get("live_mode", False)),
    )


class WebhookIngressGate:
    def __init__(
        self,
        router: EventRouter,
        registry: GatewayRegistry,
        redis: LockStore,
        *,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        allow_unsigned: bool = False,
    ) -> None:
        self.router = router
        self.registry = registry
        self.redis = redis
        self.lock_ttl_seconds = lock_ttl_seconds
        self.allow_unsigned = allow_unsigned

    def _signed_by_any_secret(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Without a parsed event type the integration is unknown, so try both."""
        return any(
            verify_signature(
                raw_body,
                signature,
                self.registry.webhook_secret(integration_type),
                allow_missing_secret=self.allow_unsigned,
            )
            for integration_type in IntegrationType
        )

    def _invalid_payload(self, raw_body: bytes, signature: Optional[str]) -> GateDecision:
        if not self._signed_by_any_secret(raw_body, signature):
            logger.warning("webhook_signature_invalid: unparsable body size=%s", len(raw_body))
            return GateDecision.rejected("invalid_signature")
        logger.warning("webhook_unparsable_body: size=%s", len(raw_body))
        return GateDecision.soft_accepted("invalid_payload")

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> GateDecision:
        raw_body = raw_body or b""
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError:
            return self._invalid_payload(raw_body, signature)
        if not isinstance(payload, dict):
            return self._invalid_payload(raw_body, signature)

        envelope = _build_envelope(payload)
        secret = self.registry.webhook_secret(envelope.integration_type)
        if not verify_signature(
            raw_body, signature, secret, allow_missing_secret=self.allow_unsigned
        ):
            logger.warning(
                "webhook_signature_invalid: event_id=%s integration=%s",
                envelope.event_id,
                envelope.integration_type.value,
            )
            return GateDecision.rejected("invalid_signature")

        if not await acquire_processing_lock(self.redis, envelope.event_id, self.lock_ttl_seconds):
            logger.info("webhook_in_flight: event_id=%s", envelope.event_id)
            return GateDecision.soft_accepted("in_progress", event_id=envelope.event_id)

        try:
            with log_context(
                event_id=envelope.event_id, integration=envelope.integration_type.value
            ):
                outcome = await self.router.dispatch(envelope)
        except Exception:
            logger.exception("webhook_soft_accepted_after_error: event_id=%s", envelope.event_id)
            return GateDecision.soft_accepted("processing_error", event_id=envelope.event_id)
        finally:
            await release_processing_lock(self.redis, envelope.event_id)

        return GateDecision.accepted(
            event_id=outcome.event_id,
            status=outcome.status,
            duplicate=outcome.duplicate,
        )

"""
Partial-update builder for subscription writes.

Column names are checked against a fixed allow-list before any SQL is built,
so an unknown or misspelled field fails loudly instead of being silently
dropped or interpolated.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

SUBSCRIPTION_UPDATABLE_FIELDS: frozenset[str] = frozenset(
    {
        "status",
        "is_paused",
        "paused_at",
        "current_period_start",
        "current_period_end",
        "next_billing_date",
        "renewal_failures",
        "renewal_attempt_date",
        "canceled_at",
        "cancel_reason",
        "external_subscription_id",
        "external_merchant_order_id",
        "coupon_id",
        "discount_amount",
        "original_price",
        "metadata_json",
        "updated_at",
    }
)


class UnknownFieldError(ValueError):
    """Raised when a partial update names a column outside the allow-list."""


def build_partial_update(
    changes: Mapping[str, Any],
    allowed: Iterable[str] = SUBSCRIPTION_UPDATABLE_FIELDS,
) -> dict[str, Any]:
    """
    Return a copy of ``changes`` suitable for ``update().values(...)``.

    Raises:
        UnknownFieldError: if any key is not an updatable column.
        ValueError: if ``changes`` is empty.
    """
    allowed_set = allowed if isinstance(allowed, frozenset) else frozenset(allowed)
    unknown = sorted(set(changes) - allowed_set)
    if unknown:
        raise UnknownFieldError(f"Unknown update field(s): {', '.join(unknown)}")
    if not changes:
        raise ValueError("Partial update requires at least one field")
    return dict(changes)

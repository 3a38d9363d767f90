"""
Resolves whether a gateway subscription belongs to the current billing
system or to the legacy one still being migrated.

While ``LEGACY_MIGRATION_ACTIVE`` is on, rows marked ``system=legacy`` are
left to the legacy biller. Turning it off makes every subscription current.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subhook.models.subscription import Subscription

logger = logging.getLogger(__name__)


class SystemVariant(str, Enum):
    CURRENT = "current"
    LEGACY = "legacy"


class SubscriptionSystemResolver(ABC):
    @abstractmethod
    async def resolve(self, external_id: str) -> SystemVariant:
        ...


class AlwaysCurrentResolver(SubscriptionSystemResolver):
    """Resolver to use once the legacy system is gone."""

    async def resolve(self, external_id: str) -> SystemVariant:
        return SystemVariant.CURRENT


class MetadataSystemResolver(SubscriptionSystemResolver):
    """
    Reads ``metadata_json["system"]`` of the local row.

    Missing rows, missing markers and lookup errors all resolve to CURRENT.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def resolve(self, external_id: str) -> SystemVariant:
        try:
            result = await self.db.execute(
                select(Subscription.metadata_json).where(
                    Subscription.external_subscription_id == external_id
                )
            )
            metadata = result.scalar_one_or_none()
        except SQLAlchemyError:
            logger.warning("system_resolver_lookup_failed: external_id=%s", external_id, exc_info=True)
            return SystemVariant.CURRENT

        marker = (metadata or {}).get("system") if isinstance(metadata, dict) else None
        if marker == SystemVariant.LEGACY.value:
            return SystemVariant.LEGACY
        return SystemVariant.CURRENT


def build_resolver(db: AsyncSession, legacy_migration_active: bool) -> SubscriptionSystemResolver:
    if legacy_migration_active:
        return MetadataSystemResolver(db)
    return AlwaysCurrentResolver()

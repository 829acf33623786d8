"""Match provider webhook identifiers to local source-video assets."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.asset import Asset
from services.mux_events import EventIdentifiers

logger = logging.getLogger(__name__)


class ResolverStrategy(str, Enum):
    ASSET_ID = "asset_id"
    CORRELATION_ID = "correlation_id"
    UPLOAD_ID_PLACEHOLDER = "upload_id_placeholder"


# Order matters: stop at the first hit.
DEFAULT_STRATEGIES: Sequence[ResolverStrategy] = (
    ResolverStrategy.ASSET_ID,
    ResolverStrategy.CORRELATION_ID,
    ResolverStrategy.UPLOAD_ID_PLACEHOLDER,
)


@dataclass
class Resolution:
    asset: Asset
    strategy: ResolverStrategy


def _lookup(strategy: ResolverStrategy, identifiers: EventIdentifiers):
    if strategy == ResolverStrategy.ASSET_ID:
        return Asset.mux_asset_id, identifiers.asset_id
    if strategy == ResolverStrategy.CORRELATION_ID:
        return Asset.mux_correlation_id, identifiers.correlation_id
    if strategy == ResolverStrategy.UPLOAD_ID_PLACEHOLDER:
        return Asset.mux_asset_id, identifiers.upload_id
    raise ValueError(f"Unknown resolver strategy: {strategy}")


async def resolve_asset(
    db: AsyncSession,
    identifiers: EventIdentifiers,
    strategies: Sequence[ResolverStrategy] = DEFAULT_STRATEGIES,
) -> Optional[Resolution]:
    """Run the strategies in order and return the first matching source video."""
    for strategy in strategies:
        column, value = _lookup(strategy, identifiers)
        if not value:
            continue
        result = await db.execute(
            select(Asset)
            .where(column == value, Asset.media_type != "item")
            .order_by(Asset.created_at.asc())
            .limit(1)
        )
        asset = result.scalar_one_or_none()
        if asset is not None:
            logger.info("Resolved asset %s via %s=%s", asset.id, strategy.value, value)
            return Resolution(asset=asset, strategy=strategy)

    logger.info(
        "No asset matched webhook identifiers asset_id=%s correlation_id=%s upload_id=%s",
        identifiers.asset_id,
        identifiers.correlation_id,
        identifiers.upload_id,
    )
    return None

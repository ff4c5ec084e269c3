"""Per-product ranking aggregates, recomputed for touched products only."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from sqlalchemy import case, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jerkyrank.cache.named import PurchaseHistoryCache, RankingStatsCache
from jerkyrank.db.models import ProductRanking
from jerkyrank.orders.repository import purchased_product_ids

logger = logging.getLogger(__name__)


def _pct(part: int, total: int) -> float:
    return (part / total) * 100 if total > 0 else 0.0


def empty_stats() -> dict[str, Any]:
    """Stats for a product nobody has ranked."""
    return {
        "count": 0,
        "unique_rankers": 0,
        "avg_rank": None,
        "best_rank": None,
        "worst_rank": None,
        "last_ranked_at": None,
        "distribution": {
            "count_1st": 0,
            "count_2nd": 0,
            "count_3rd": 0,
            "pct_1st": 0.0,
            "pct_2nd": 0.0,
            "pct_3rd": 0.0,
        },
    }


def _aggregate_query():  # noqa: ANN202
    return select(
        ProductRanking.shopify_product_id,
        func.count().label("total"),
        func.count(distinct(ProductRanking.user_id)).label("unique_rankers"),
        func.avg(ProductRanking.ranking).label("avg_rank"),
        func.min(ProductRanking.ranking).label("best_rank"),
        func.max(ProductRanking.ranking).label("worst_rank"),
        func.max(ProductRanking.created_at).label("last_ranked_at"),
        func.count(case((ProductRanking.ranking == 1, 1))).label("count_1st"),
        func.count(case((ProductRanking.ranking == 2, 1))).label("count_2nd"),
        func.count(case((ProductRanking.ranking == 3, 1))).label("count_3rd"),
    ).group_by(ProductRanking.shopify_product_id)


def _row_to_stats(row: Any) -> dict[str, Any]:  # noqa: ANN401
    total = int(row.total)
    c1, c2, c3 = int(row.count_1st or 0), int(row.count_2nd or 0), int(row.count_3rd or 0)
    last = row.last_ranked_at
    return {
        "count": total,
        "unique_rankers": int(row.unique_rankers),
        "avg_rank": float(row.avg_rank) if row.avg_rank is not None else None,
        "best_rank": int(row.best_rank) if row.best_rank is not None else None,
        "worst_rank": int(row.worst_rank) if row.worst_rank is not None else None,
        "last_ranked_at": last.isoformat() if isinstance(last, datetime) else last,
        "distribution": {
            "count_1st": c1,
            "count_2nd": c2,
            "count_3rd": c3,
            "pct_1st": _pct(c1, total),
            "pct_2nd": _pct(c2, total),
            "pct_3rd": _pct(c3, total),
        },
    }


async def compute_product_stats(db: AsyncSession, product_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
    """One grouped query over the ranking rows of the given products.

    Products without any ranking rows are absent from the result.
    """
    ids = sorted({str(pid) for pid in product_ids if pid})
    if not ids:
        return {}
    result = await db.execute(_aggregate_query().where(ProductRanking.shopify_product_id.in_(ids)))
    return {row.shopify_product_id: _row_to_stats(row) for row in result}


async def compute_all_product_stats(db: AsyncSession) -> dict[str, dict[str, Any]]:
    result = await db.execute(_aggregate_query())
    return {row.shopify_product_id: _row_to_stats(row) for row in result}


def assign_community_ranks(stats: dict[str, dict[str, Any]]) -> dict[str, int | None]:
    """Rank products by average position, lower is better.

    Products with no rankings (or no average) sort last and get None.
    Ties keep product-id order so the result is deterministic.
    """
    ranked = sorted(
        (pid for pid, s in stats.items() if s.get("count") and s.get("avg_rank") is not None),
        key=lambda pid: (stats[pid]["avg_rank"], pid),
    )
    ranks: dict[str, int | None] = {pid: None for pid in stats}
    for position, pid in enumerate(ranked, start=1):
        ranks[pid] = position
    return ranks


class AggregateRecomputer:
    """Recomputes ranking aggregates and purchase sets in a read-only session of its own."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        purchases: PurchaseHistoryCache | None = None,
        ranking_stats: RankingStatsCache | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._purchases = purchases
        self._ranking_stats = ranking_stats

    async def recompute(self, product_ids: Iterable[str]) -> tuple[dict[str, dict[str, Any]], list[str]]:
        """Return (stats for products that still have rankings, ids that have none)."""
        ids = sorted({str(pid) for pid in product_ids if pid})
        if not ids:
            return {}, []
        async with self._session_factory() as db:
            stats = await compute_product_stats(db, ids)
        missing = [pid for pid in ids if pid not in stats]
        logger.info("Recomputed ranking stats for %d product(s), %d without rankings", len(stats), len(missing))
        return stats, missing

    async def recompute_all(self) -> dict[str, dict[str, Any]]:
        async with self._session_factory() as db:
            return await compute_all_product_stats(db)

    async def all_stats(self) -> dict[str, dict[str, Any]]:
        """The full stats map, read through the ranking-stats cache."""
        if self._ranking_stats is not None:
            cached = await self._ranking_stats.get()
            if cached is not None:
                return cached
        stats = await self.recompute_all()
        if self._ranking_stats is not None:
            await self._ranking_stats.set(stats)
        logger.info("Rebuilt ranking stats map (%d products)", len(stats))
        return stats

    async def refresh_products(self, product_ids: Iterable[str]) -> str:
        """Bring the cached map up to date for the touched products.

        Merges when a map is cached; otherwise rebuilds the whole map, which
        already reflects the touched products. Returns ``merged`` or ``rebuilt``.
        """
        if self._ranking_stats is None:
            raise RuntimeError("AggregateRecomputer has no ranking-stats cache")
        stats, missing = await self.recompute(product_ids)
        if await self._ranking_stats.update_products(stats, removed=missing):
            return "merged"
        await self.all_stats()
        return "rebuilt"

    async def purchased_products(self, user_id: int) -> list[str]:
        """A user's purchased product ids, read through the purchase-history cache."""
        if self._purchases is not None:
            cached = await self._purchases.get(user_id)
            if cached is not None:
                return cached
        async with self._session_factory() as db:
            product_ids = await purchased_product_ids(db, user_id)
        if self._purchases is not None:
            await self._purchases.set(user_id, product_ids)
        return product_ids

"""
Restock Analysis Service — one run of the recommendation pipeline.

Lifecycle of an AiAnalysis:

  pending ──▶ processing ──▶ completed
                  │
                  └────────▶ failed

  - pending:    created; at most one non-failed analysis per
                (restock_order_id, period_days, analytics_date)
  - processing: claimed by compare-and-set; snapshots computed and
                classified, AI call in flight
  - completed:  recommendations persisted in the same transaction
  - failed:     validation error or abandoned run, no recommendations

completed/failed are terminal. A retry creates a new analysis.

Each step runs in its own short transaction. The AI call runs with no
session open, so nothing is locked while waiting on the network.
Storage errors propagate and leave the run in processing;
recover_abandoned_analyses() later moves it to failed.
"""

import uuid
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from analytics.aggregator import AnalyticsAggregator
from core.config import RestockPolicy, get_restock_policy
from core.errors import (
    AIUnavailableError,
    AnalysisConflictError,
    InvalidAIResponseError,
    RecommendationNotFoundError,
)
from core.locks import KeyedLocks
from db.models import RECOMMENDATION_CATEGORIES, RISK_LEVELS, AiAnalysis, RestockRecommendation
from restock.ai_client import AIClassificationClient, AiAnalysisResult, AnalysisBatch
from restock.classifier import Classification, classify_all
from restock.merge import merge_classifications

logger = structlog.get_logger()

NO_AI_MODEL = "none"

_analysis_locks = KeyedLocks()


def _snapshot_payload(snapshot) -> dict[str, Any]:
    return {
        "product_id": snapshot.product_id,
        "variant_id": snapshot.variant_id,
        "sales_velocity": snapshot.sales_velocity,
        "total_sales": snapshot.total_sales,
        "current_stock": snapshot.current_stock,
        "available_stock": snapshot.available_stock,
        "minimum_stock": snapshot.minimum_stock,
        "maximum_stock": snapshot.maximum_stock,
        "stock_turnover_rate": snapshot.stock_turnover_rate,
        "profit_margin": snapshot.profit_margin,
        "unit_cost": snapshot.unit_cost,
        "unit_price": snapshot.unit_price,
        "has_active_promotion": snapshot.has_active_promotion,
        "promotion_discount": snapshot.promotion_discount,
        "performance_score": snapshot.performance_score,
        "risk_level": snapshot.risk_level,
    }


class RestockAnalysisService:
    """Runs analyses and manages their recommendations."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ai_client: AIClassificationClient | None = None,
        policy: RestockPolicy | None = None,
    ):
        self.session_factory = session_factory
        self.ai_client = ai_client
        self.policy = policy or get_restock_policy()

    # ── Run ─────────────────────────────────────────────────────────────

    async def run_analysis(
        self,
        restock_order_id: str,
        period_days: int = 30,
        now: datetime | None = None,
        product_ids: list[str] | None = None,
    ) -> AiAnalysis:
        """
        RunAnalysis. Returns the existing analysis when one that has not
        failed already exists for the same key, without starting a run.
        """
        now = now or datetime.utcnow()
        key = (restock_order_id, period_days, now.date())

        async with _analysis_locks.hold(key):
            try:
                analysis = await self._create_pending(restock_order_id, period_days, now, product_ids)
            except AnalysisConflictError as conflict:
                logger.info(
                    "restock.analysis_conflict",
                    restock_order_id=restock_order_id,
                    period_days=period_days,
                    analytics_date=key[2].isoformat(),
                    existing_id=str(conflict.existing.id),
                    existing_status=conflict.existing.status,
                )
                return conflict.existing

        return await self._execute(analysis, now, product_ids)

    async def _create_pending(
        self,
        restock_order_id: str,
        period_days: int,
        now: datetime,
        product_ids: list[str] | None,
    ) -> AiAnalysis:
        analytics_date = now.date()
        async with self.session_factory() as db:
            existing = await self._find_active(db, restock_order_id, period_days, analytics_date)
            if existing is not None:
                raise AnalysisConflictError(existing)

            analysis = AiAnalysis(
                restock_order_id=restock_order_id,
                period_days=period_days,
                analytics_date=analytics_date,
                status="pending",
                ai_model=self.ai_client.model if self.ai_client else NO_AI_MODEL,
                confidence_score=0.0,
                request_data={
                    "restock_order_id": restock_order_id,
                    "period_days": period_days,
                    "analytics_date": analytics_date.isoformat(),
                    "product_ids": product_ids,
                },
                created_at=now,
            )
            db.add(analysis)
            try:
                await db.commit()
            except IntegrityError:
                # Another worker created the same key between our check and insert.
                await db.rollback()
                existing = await self._find_active(db, restock_order_id, period_days, analytics_date)
                if existing is None:
                    raise
                raise AnalysisConflictError(existing)

        logger.info(
            "restock.analysis_created",
            analysis_id=str(analysis.id),
            restock_order_id=restock_order_id,
            period_days=period_days,
            analytics_date=analytics_date.isoformat(),
        )
        return analysis

    async def _execute(self, analysis: AiAnalysis, now: datetime, product_ids: list[str] | None) -> AiAnalysis:
        log = logger.bind(
            analysis_id=str(analysis.id),
            restock_order_id=analysis.restock_order_id,
            period_days=analysis.period_days,
            analytics_date=analysis.analytics_date.isoformat(),
        )

        # 1. Claim the run and compute the deterministic baseline.
        async with self.session_factory() as db:
            claimed = await db.execute(
                update(AiAnalysis)
                .where(AiAnalysis.id == analysis.id, AiAnalysis.status == "pending")
                .values(status="processing", started_at=now, updated_at=now)
            )
            if claimed.rowcount != 1:
                await db.rollback()
                log.info("restock.analysis_already_claimed")
                return await self.get_analysis(analysis.id)

            try:
                aggregator = AnalyticsAggregator(db, self.policy)
                snapshots, catalog = await aggregator.compute_catalog_snapshots(
                    analysis.period_days, now, product_ids
                )
            except ValueError as exc:
                await db.rollback()
                return await self._fail(analysis.id, str(exc), now)

            promotions_by_key = {}
            for row in catalog.frame.itertuples(index=False):
                promotions_by_key[(row.product_id, row.variant_id)] = catalog.promotions_for(row)
            baseline = classify_all(snapshots, promotions_by_key, catalog.distribution, self.policy)
            snapshot_data = {(s.product_id, s.variant_id): _snapshot_payload(s) for s in snapshots}
            promotions = sorted(
                {p.promotion_id: p.as_dict() for items in promotions_by_key.values() for p in items}.values(),
                key=lambda p: p["promotion_id"],
            )
            await db.commit()

        log.info("restock.analysis_processing", variants=len(baseline))

        # 2. AI augmentation, outside any transaction.
        ai_result: AiAnalysisResult | None = None
        fallback_reason = None
        if not baseline:
            fallback_reason = "no catalog variants to analyze"
        elif self.ai_client is None:
            fallback_reason = "AI augmentation is not configured"
        else:
            batch = AnalysisBatch(
                period_days=analysis.period_days,
                products=list(snapshot_data.values()),
                promotions=promotions,
            )
            try:
                ai_result = await self.ai_client.augment(batch)
            except AIUnavailableError as exc:
                fallback_reason = f"AI service unavailable ({exc})"
                log.warning("restock.ai_unavailable", error=str(exc))
            except InvalidAIResponseError as exc:
                fallback_reason = f"AI response rejected ({exc})"
                log.warning("restock.ai_invalid_response", error=str(exc))

        merged = merge_classifications(baseline, ai_result, self.policy)

        # 3. Persist recommendations and complete, atomically.
        return await self._complete(analysis.id, merged, snapshot_data, ai_result, fallback_reason, now, log)

    async def _complete(
        self,
        analysis_id: uuid.UUID,
        merged: list[Classification],
        snapshot_data: dict[tuple[str, str], dict[str, Any]],
        ai_result: AiAnalysisResult | None,
        fallback_reason: str | None,
        now: datetime,
        log,
    ) -> AiAnalysis:
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(AiAnalysis).where(AiAnalysis.id == analysis_id).with_for_update()
                )
                analysis = result.scalar_one()
                if analysis.status != "processing":
                    log.warning("restock.analysis_not_processing", status=analysis.status)
                    return analysis

                for item in merged:
                    snapshot = snapshot_data[(item.product_id, item.variant_id)]
                    db.add(
                        RestockRecommendation(
                            ai_analysis_id=analysis.id,
                            product_id=item.product_id,
                            variant_id=item.variant_id,
                            category=item.category,
                            priority_score=item.priority_score,
                            recommended_quantity=item.recommended_quantity,
                            reasoning=item.full_reasoning,
                            confidence_level=item.confidence_level,
                            source=item.source,
                            current_stock=snapshot["current_stock"],
                            current_sales_velocity=snapshot["sales_velocity"],
                            current_profit_margin=snapshot["profit_margin"],
                            has_active_promotion=item.promotion is not None or snapshot["has_active_promotion"],
                            promotion_details=item.promotion,
                            created_at=now,
                        )
                    )

                categories = Counter(item.category for item in merged)
                risks = Counter(snapshot["risk_level"] for snapshot in snapshot_data.values())
                sources = Counter(item.source for item in merged)
                counts = ", ".join(f"{categories[c]} {c}" for c in RECOMMENDATION_CATEGORIES if categories[c])

                if ai_result is not None:
                    analysis.ai_model = ai_result.model
                    analysis.ai_response = ai_result.raw_response
                    analysis.confidence_score = ai_result.confidence_score
                    analysis.analysis_summary = ai_result.analysis_summary or f"{len(merged)} recommendations"
                else:
                    analysis.ai_model = NO_AI_MODEL
                    analysis.ai_response = None
                    analysis.confidence_score = (
                        round(sum(item.confidence_level for item in merged) / len(merged), 2) if merged else 0.0
                    )
                    analysis.analysis_summary = (
                        f"Deterministic classification only: {fallback_reason}. "
                        f"{len(merged)} recommendations" + (f" ({counts})." if counts else ".")
                    )

                analysis.recommended_products = {
                    category: [
                        {"product_id": item.product_id, "variant_id": item.variant_id}
                        for item in merged
                        if item.category == category
                    ]
                    for category in RECOMMENDATION_CATEGORIES
                }
                analysis.priority_scores = {
                    "categories": {c: categories[c] for c in RECOMMENDATION_CATEGORIES},
                    "risk": {level: risks[level] for level in RISK_LEVELS},
                    "sources": dict(sources),
                }
                analysis.status = "completed"
                analysis.processed_at = now
                analysis.updated_at = now

        log.info(
            "restock.analysis_completed",
            recommendations=len(merged),
            ai_model=analysis.ai_model,
            fallback=fallback_reason is not None,
        )
        return analysis

    async def _fail(self, analysis_id: uuid.UUID, reason: str, now: datetime) -> AiAnalysis:
        async with self.session_factory() as db:
            await db.execute(
                update(AiAnalysis)
                .where(AiAnalysis.id == analysis_id, AiAnalysis.status.in_(("pending", "processing")))
                .values(
                    status="failed",
                    analysis_summary=f"Analysis failed: {reason}",
                    processed_at=now,
                    updated_at=now,
                )
            )
            await db.commit()
        logger.warning("restock.analysis_failed", analysis_id=str(analysis_id), reason=reason)
        return await self.get_analysis(analysis_id)

    # ── Recovery ────────────────────────────────────────────────────────

    async def recover_abandoned_analyses(
        self,
        now: datetime | None = None,
        grace: timedelta | None = None,
    ) -> list[uuid.UUID]:
        """
        Fail runs left in pending/processing longer than the grace period.

        They are never resumed; a new analysis must be created instead.
        """
        now = now or datetime.utcnow()
        grace = grace if grace is not None else timedelta(minutes=self.policy.processing_grace_minutes)
        cutoff = now - grace

        recovered = []
        async with self.session_factory() as db:
            result = await db.execute(
                select(AiAnalysis).where(
                    AiAnalysis.status.in_(("pending", "processing")),
                    AiAnalysis.deleted_at.is_(None),
                    func.coalesce(AiAnalysis.started_at, AiAnalysis.created_at) < cutoff,
                )
            )
            for analysis in result.scalars().all():
                started = analysis.started_at or analysis.created_at
                swapped = await db.execute(
                    update(AiAnalysis)
                    .where(AiAnalysis.id == analysis.id, AiAnalysis.status == analysis.status)
                    .values(
                        status="failed",
                        analysis_summary=(
                            f"Analysis abandoned in '{analysis.status}' since {started.isoformat()}; "
                            "create a new analysis to retry"
                        ),
                        processed_at=now,
                        updated_at=now,
                    )
                )
                if swapped.rowcount == 1:
                    recovered.append(analysis.id)
                    logger.warning(
                        "restock.analysis_abandoned",
                        analysis_id=str(analysis.id),
                        restock_order_id=analysis.restock_order_id,
                        period_days=analysis.period_days,
                        analytics_date=analysis.analytics_date.isoformat(),
                        previous_status=analysis.status,
                    )
            await db.commit()
        return recovered

    # ── Queries ─────────────────────────────────────────────────────────

    async def get_analysis(self, analysis_id: uuid.UUID, include_deleted: bool = False) -> AiAnalysis | None:
        async with self.session_factory() as db:
            query = select(AiAnalysis).where(AiAnalysis.id == analysis_id)
            if not include_deleted:
                query = query.where(AiAnalysis.deleted_at.is_(None))
            result = await db.execute(query)
            return result.scalar_one_or_none()

    async def list_recommendations(self, analysis_id: uuid.UUID) -> list[RestockRecommendation]:
        """ListRecommendations, highest priority first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(RestockRecommendation)
                .where(
                    RestockRecommendation.ai_analysis_id == analysis_id,
                    RestockRecommendation.deleted_at.is_(None),
                )
                .order_by(
                    RestockRecommendation.priority_score.desc(),
                    RestockRecommendation.product_id,
                    RestockRecommendation.variant_id,
                )
            )
            return list(result.scalars().all())

    async def mark_recommendation_implemented(
        self,
        recommendation_id: uuid.UUID,
        now: datetime | None = None,
    ) -> RestockRecommendation:
        """Flag a recommendation as consumed by a restock order. Idempotent."""
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(RestockRecommendation).where(
                        RestockRecommendation.id == recommendation_id,
                        RestockRecommendation.deleted_at.is_(None),
                    )
                )
                recommendation = result.scalar_one_or_none()
                if recommendation is None:
                    raise RecommendationNotFoundError(f"Recommendation {recommendation_id} not found")
                if not recommendation.is_implemented:
                    recommendation.is_implemented = True
                    recommendation.implemented_at = now or datetime.utcnow()
        return recommendation

    async def _find_active(
        self,
        db: AsyncSession,
        restock_order_id: str,
        period_days: int,
        analytics_date: date,
    ) -> AiAnalysis | None:
        result = await db.execute(
            select(AiAnalysis).where(
                AiAnalysis.restock_order_id == restock_order_id,
                AiAnalysis.period_days == period_days,
                AiAnalysis.analytics_date == analytics_date,
                AiAnalysis.status != "failed",
                AiAnalysis.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

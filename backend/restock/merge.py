"""
Deterministic / AI merge policy.

The deterministic classification is the baseline for every variant.
An AI category that contradicts it wins only at or above the override
confidence; below that, the baseline stands and the AI reasoning is
kept as context. AI items for unknown products are dropped.
"""

from dataclasses import replace

import structlog

from core.config import RestockPolicy, get_restock_policy
from restock.ai_client import AiAnalysisResult, AiRecommendation
from restock.classifier import Classification, priority_in_band

logger = structlog.get_logger()


def _best_ai_items(
    result: AiAnalysisResult,
    known: dict[tuple[str, str], Classification],
) -> dict[tuple[str, str], AiRecommendation]:
    variants_by_product: dict[str, list[str]] = {}
    for product_id, variant_id in known:
        variants_by_product.setdefault(product_id, []).append(variant_id)

    best: dict[tuple[str, str], AiRecommendation] = {}
    for item in result.items():
        # An item without a variant speaks for every variant of the product.
        variant_ids = [item.variant_id] if item.variant_id else variants_by_product.get(item.product_id, [])
        for variant_id in variant_ids:
            key = (item.product_id, variant_id)
            if key not in known:
                continue
            current = best.get(key)
            if current is None or item.confidence_level > current.confidence_level:
                best[key] = item
    return best


def merge_classifications(
    baseline: list[Classification],
    ai_result: AiAnalysisResult | None,
    policy: RestockPolicy | None = None,
) -> list[Classification]:
    """Apply the AI result to the deterministic baseline, one entry per variant."""
    if ai_result is None:
        return list(baseline)

    policy = policy or get_restock_policy()
    known = {(c.product_id, c.variant_id): c for c in baseline}
    ai_items = _best_ai_items(ai_result, known)

    merged = []
    overrides = 0
    for classification in baseline:
        item = ai_items.get((classification.product_id, classification.variant_id))
        if item is None:
            merged.append(classification)
            continue

        if item.category == classification.category:
            merged.append(
                replace(
                    classification,
                    source="ai_confirmed",
                    confidence_level=round(max(classification.confidence_level, item.confidence_level), 2),
                    context=[*classification.context, f"AI agrees: {item.reasoning}".strip()],
                )
            )
        elif item.confidence_level >= policy.ai_override_confidence:
            overrides += 1
            score = item.priority_score if item.priority_score is not None else priority_in_band(item.category, 0.5)
            if item.category == "slow_moving_high_stock":
                quantity = 0
            elif item.recommended_quantity is not None:
                quantity = item.recommended_quantity
            else:
                quantity = classification.recommended_quantity
            merged.append(
                replace(
                    classification,
                    category=item.category,
                    priority_score=score,
                    recommended_quantity=quantity,
                    reasoning=item.reasoning or f"AI reclassified as {item.category}",
                    confidence_level=round(item.confidence_level, 2),
                    source="ai_override",
                    context=[f"Deterministic baseline: {classification.category} ({classification.reasoning})"],
                )
            )
        else:
            merged.append(
                replace(
                    classification,
                    context=[
                        *classification.context,
                        f"AI suggested {item.category} at confidence {item.confidence_level:.2f}: "
                        f"{item.reasoning}".strip(),
                    ],
                )
            )

    logger.info(
        "restock.merge_applied",
        variants=len(baseline),
        ai_items=len(ai_items),
        overrides=overrides,
    )
    return merged

"""
AI Classification Client

Sends one analysis batch to an OpenRouter-compatible chat completions
endpoint and validates what comes back. The service is untrusted:
  - transport errors, timeouts, non-2xx and unparseable bodies raise
    AIUnavailableError
  - a parsed payload with the wrong shape or an out-of-range confidence
    raises InvalidAIResponseError
Either way the caller falls back to deterministic results.

Only connection establishment is retried. A request that reached the
service is never re-sent, so each batch is classified at most once.
"""

import asyncio
import json
import math
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings, get_settings
from core.errors import AIUnavailableError, InvalidAIResponseError
from db.models import RECOMMENDATION_CATEGORIES

logger = structlog.get_logger()

SYSTEM_PROMPT = (
    "You are an expert inventory management AI assistant. Analyze product data and provide "
    "smart restock recommendations based on sales velocity, profit margins, stock levels, "
    "and supplier promotions. Respond with JSON only."
)

CATEGORY_DESCRIPTIONS = {
    "fast_moving_low_stock": "Products with high sales velocity but low stock",
    "slow_moving_high_stock": "Products with low sales velocity but high stock",
    "high_profit_potential": "Products with high profit margins but low stock",
    "supplier_promotions": "Products with active supplier promotions",
    "regular_restock": "Products needing regular restock",
}


@dataclass
class AnalysisBatch:
    """Everything the AI sees for one analysis: snapshots and active promotions."""

    period_days: int
    products: list[dict[str, Any]]
    promotions: list[dict[str, Any]] = field(default_factory=list)

    def as_request(self) -> dict[str, Any]:
        return {"period": self.period_days, "products": self.products, "promotions": self.promotions}


@dataclass(frozen=True)
class AiRecommendation:
    product_id: str
    variant_id: str | None
    category: str
    recommended_quantity: int | None
    priority_score: int | None
    reasoning: str
    confidence_level: float


@dataclass
class AiAnalysisResult:
    model: str
    analysis_summary: str
    recommendations: dict[str, list[AiRecommendation]]
    confidence_score: float
    raw_response: dict[str, Any]
    total_recommendations: int | None = None
    estimated_restock_value: float | None = None

    def items(self) -> list[AiRecommendation]:
        return [item for category in RECOMMENDATION_CATEGORIES for item in self.recommendations[category]]


def build_prompt(batch: AnalysisBatch) -> str:
    categories = "\n".join(
        f"{index}. {name}: {description}"
        for index, (name, description) in enumerate(CATEGORY_DESCRIPTIONS.items(), start=1)
    )
    return (
        "Analyze the following product data and provide smart restock recommendations.\n\n"
        f"ANALYSIS PERIOD: {batch.period_days} days\n\n"
        f"PRODUCT ANALYTICS DATA:\n{json.dumps(batch.products, indent=2, default=str)}\n\n"
        f"SUPPLIER PROMOTIONS DATA:\n{json.dumps(batch.promotions, indent=2, default=str)}\n\n"
        f"Categorize products into these categories:\n{categories}\n\n"
        "For each product give product_id, variant_id, recommended_quantity, priority_score (1-100), "
        "reasoning and confidence_level (0-1).\n\n"
        "Return JSON of the form:\n"
        '{"analysis_summary": "...", "recommendations": {"fast_moving_low_stock": [...], '
        '"slow_moving_high_stock": [...], "high_profit_potential": [...], '
        '"supplier_promotions": [...], "regular_restock": [...]}, '
        '"overall_confidence": 0.85, "total_recommendations": 15, "estimated_restock_value": 5000}'
    )


def _is_number(value: Any) -> bool:
    # json.loads accepts NaN, Infinity and 1e400
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and math.isfinite(value)


def _strip_fences(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def _parse_item(category: str, item: Any) -> AiRecommendation | None:
    if not isinstance(item, dict):
        return None
    product_id = item.get("product_id")
    confidence = item.get("confidence_level")
    if not product_id or not _is_number(confidence) or not 0 <= confidence <= 1:
        return None

    quantity = item.get("recommended_quantity")
    score = item.get("priority_score")
    variant_id = item.get("variant_id")
    return AiRecommendation(
        product_id=str(product_id),
        variant_id=str(variant_id) if variant_id else None,
        category=category,
        recommended_quantity=max(0, int(quantity)) if _is_number(quantity) else None,
        priority_score=int(min(max(score, 1), 100)) if _is_number(score) else None,
        reasoning=str(item.get("reasoning") or ""),
        confidence_level=float(confidence),
    )


def validate_ai_response(parsed: Any) -> dict[str, Any]:
    """
    Check the parsed payload and fill in what may be missing.

    Missing categories become empty lists. A missing or non-numeric
    overall confidence, or one outside [0, 1], is an error. NaN and
    infinities count as non-numeric.
    """
    if not isinstance(parsed, dict):
        raise InvalidAIResponseError("AI response is not a JSON object")

    recommendations = parsed.get("recommendations")
    if recommendations is None:
        recommendations = {}
    if not isinstance(recommendations, dict):
        raise InvalidAIResponseError("'recommendations' must be an object keyed by category")

    for category in RECOMMENDATION_CATEGORIES:
        value = recommendations.get(category)
        if value is None:
            recommendations[category] = []
        elif not isinstance(value, list):
            raise InvalidAIResponseError(f"Category '{category}' must be a list")

    confidence = parsed.get("overall_confidence", parsed.get("confidence_score"))
    if not _is_number(confidence):
        raise InvalidAIResponseError(f"Confidence score must be numeric, got {confidence!r}")
    if not 0 <= confidence <= 1:
        raise InvalidAIResponseError(f"Confidence score must be between 0 and 1, got {confidence}")

    total = parsed.get("total_recommendations")
    restock_value = parsed.get("estimated_restock_value")
    return {
        "analysis_summary": str(parsed.get("analysis_summary") or ""),
        "recommendations": recommendations,
        "confidence_score": float(confidence),
        "total_recommendations": total if _is_number(total) else None,
        "estimated_restock_value": restock_value if _is_number(restock_value) else None,
    }


class AIClassificationClient:
    """Client for the external restock classification service."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.transport = transport

    @property
    def model(self) -> str:
        return self.settings.ai_model

    @property
    def enabled(self) -> bool:
        return self.settings.ai_enabled and bool(self.settings.ai_api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.ai_api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.ai_referer,
            "X-Title": self.settings.ai_title,
        }

    def _payload(self, batch: AnalysisBatch) -> dict[str, Any]:
        return {
            "model": self.settings.ai_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(batch)},
            ],
            "temperature": self.settings.ai_temperature,
            "max_tokens": self.settings.ai_max_tokens,
        }

    async def augment(self, batch: AnalysisBatch) -> AiAnalysisResult:
        """Classify one batch. Exactly one request reaches the service."""
        if not self.enabled:
            raise AIUnavailableError("AI augmentation is disabled or no API key is configured")

        try:
            body = await asyncio.wait_for(self._post(self._payload(batch)), timeout=self.settings.ai_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise AIUnavailableError(f"AI request timed out after {self.settings.ai_timeout_seconds}s") from exc

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AIUnavailableError("AI response has no message content") from exc
        if not isinstance(content, str):
            raise AIUnavailableError("AI message content is not text")

        try:
            parsed = json.loads(_strip_fences(content))
        except json.JSONDecodeError as exc:
            raise AIUnavailableError(f"AI message content is not valid JSON: {exc}") from exc

        validated = validate_ai_response(parsed)
        recommendations = {
            category: [
                rec for rec in (_parse_item(category, item) for item in validated["recommendations"][category]) if rec
            ]
            for category in RECOMMENDATION_CATEGORIES
        }
        skipped = sum(len(validated["recommendations"][c]) for c in RECOMMENDATION_CATEGORIES) - sum(
            len(v) for v in recommendations.values()
        )
        if skipped:
            logger.warning("restock.ai_items_skipped", skipped=skipped)

        return AiAnalysisResult(
            model=str(body.get("model") or self.settings.ai_model),
            analysis_summary=validated["analysis_summary"],
            recommendations=recommendations,
            confidence_score=validated["confidence_score"],
            raw_response=body,
            total_recommendations=validated["total_recommendations"],
            estimated_restock_value=validated["estimated_restock_value"],
        )

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        timeout = httpx.Timeout(self.settings.ai_timeout_seconds)
        async with httpx.AsyncClient(
            base_url=self.settings.ai_base_url,
            headers=self._headers(),
            timeout=timeout,
            transport=self.transport,
        ) as client:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(max(1, self.settings.ai_connect_attempts)),
                    wait=wait_exponential(min=1, max=10),
                    retry=retry_if_exception_type(httpx.ConnectError),
                    reraise=True,
                ):
                    with attempt:
                        response = await client.post("/chat/completions", json=payload)
            except httpx.HTTPError as exc:
                raise AIUnavailableError(f"AI request failed: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AIUnavailableError(f"AI API error: {response.status_code} {response.reason_phrase}")
        try:
            body = response.json()
        except ValueError as exc:
            raise AIUnavailableError("AI response body is not JSON") from exc
        if not isinstance(body, dict):
            raise AIUnavailableError("AI response body is not a JSON object")
        return body

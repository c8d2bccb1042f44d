"""Insight generation seam and the Vertex AI Gemini implementation.

The generator is optional: without a configured project, or when the
service fails, callers receive the documented fallback narrative instead.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from pydantic import BaseModel, Field

from gigledger.adaptation.rules import Benchmark
from gigledger.config.settings import InsightPolicy
from gigledger.insights.usage import UsageRecord, estimate_cost
from gigledger.pipeline.aggregation import PeriodTotals
from gigledger.telemetry.errors import ErrorCode, ExternalServiceError, emit_structured_error

logger = logging.getLogger(__name__)

FALLBACK_PERFORMANCE_SCORE = 50


class InsightRequest(BaseModel):
    """Everything a generator needs to narrate one subject's window."""

    subject_id: str
    window: str
    totals: PeriodTotals
    benchmark: Benchmark | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class GenerationResult(BaseModel):
    narrative: dict[str, Any]
    usage: UsageRecord


class InsightGenerator(Protocol):
    async def generate(self, request: InsightRequest) -> GenerationResult: ...


def fallback_insights(totals: PeriodTotals) -> dict[str, Any]:
    """Deterministic narrative built from totals when generation is unavailable."""
    return {
        "summary": (
            f"{totals.total_events} events over {totals.active_periods} active periods "
            f"earned {totals.total_earnings:.2f} with net {totals.net:.2f}."
        ),
        "performance_score": FALLBACK_PERFORMANCE_SCORE,
        "performance_category": totals.performance_category,
        "recommendations": [
            "Upload more records to enable personalized insights.",
            "Review the validation findings for estimated or capped values.",
        ],
        "fallback_mode": True,
    }


_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "summary": {"type": "string"},
        "performance_score": {"type": "number"},
        "strengths": {"type": "array", "items": {"type": "string"}},
        "recommendations": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["summary", "recommendations"],
}


def build_prompt(request: InsightRequest) -> str:
    totals = request.totals.model_dump()
    benchmark = request.benchmark.model_dump() if request.benchmark else None
    return (
        "You are an earnings analyst for independent gig workers. Using only the "
        "aggregates below, write a short performance summary, list strengths, and "
        "give concrete recommendations. Do not invent figures.\n\n"
        f"Window: {request.window}\n"
        f"Totals: {json.dumps(totals)}\n"
        f"Personal benchmark: {json.dumps(benchmark)}\n"
        f"Context: {json.dumps(request.context, default=str)}"
    )


class VertexInsightGenerator:
    """Insight generator backed by Vertex AI Gemini."""

    def __init__(self, policy: InsightPolicy) -> None:
        self._policy = policy
        self._client: Any = None
        self._initialized = False

    async def initialize(self) -> bool:
        """Initialize the Vertex AI client. Returns False when unavailable."""
        if not self._policy.project_id:
            return False

        try:
            import vertexai
            from vertexai.generative_models import GenerativeModel

            vertexai.init(project=self._policy.project_id, location=self._policy.location)
            self._client = GenerativeModel(self._policy.model)
            self._initialized = True
            return True
        except Exception as exc:
            emit_structured_error(
                logger,
                code=ErrorCode.INSIGHT_INITIALIZATION_FAILED,
                message=str(exc),
                suppressed=True,
            )
            self._initialized = False
            return False

    @property
    def is_available(self) -> bool:
        return self._initialized and self._client is not None

    async def generate(self, request: InsightRequest) -> GenerationResult:
        if not self.is_available:
            raise ExternalServiceError("insight generator is not initialized")

        from vertexai.generative_models import GenerationConfig

        try:
            response = await self._client.generate_content_async(
                build_prompt(request),
                generation_config=GenerationConfig(
                    response_mime_type="application/json",
                    response_schema=_RESPONSE_SCHEMA,
                    max_output_tokens=self._policy.max_output_units,
                ),
            )
        except Exception as exc:
            rate_limited = type(exc).__name__ in {"ResourceExhausted", "TooManyRequests"}
            raise ExternalServiceError(str(exc), rate_limited=rate_limited) from exc

        try:
            narrative = json.loads(response.text)
        except (ValueError, AttributeError) as exc:
            raise ExternalServiceError(f"unparseable insight response: {exc}") from exc

        metadata = getattr(response, "usage_metadata", None)
        input_units = int(getattr(metadata, "prompt_token_count", 0) or 0)
        output_units = int(getattr(metadata, "candidates_token_count", 0) or 0)
        usage = UsageRecord(
            model=self._policy.model,
            input_units=input_units,
            output_units=output_units,
            cost=estimate_cost(self._policy.model, input_units, output_units, self._policy.pricing),
            subject_id=request.subject_id,
        )
        return GenerationResult(narrative=narrative, usage=usage)

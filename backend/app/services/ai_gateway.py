"""
AI Gateway
Single entry point for all AI calls in the estimate pipeline.
Text: xAI Grok first, OpenAI second. Vision: OpenAI first, xAI second.

The capability table is resolved once from AISettings. Selection never
touches the network, so a request with no usable provider fails with
NoProviderAvailableError before any call is made. There is no automatic
retry on another provider: a timeout is reported to the caller.
"""
import asyncio
import json
import logging
import re
import time
from typing import Any, Optional, Union

import litellm

from app.config import AISettings
from app.models.pipeline_models import (
    BIMFileInfo,
    Capability,
    CostPrediction,
    CostPredictionRequest,
    ProviderCapability,
    ProviderId,
    ServiceStatus,
)
from app.services.errors import NoProviderAvailableError, ProviderError, ProviderTimeoutError
from app.services.perf_monitor import tracker as perf_tracker

logger = logging.getLogger("estimate-ai")

# Suppress litellm verbose logging
litellm.set_verbose = False

PREFERENCE: dict[Capability, tuple[ProviderId, ...]] = {
    Capability.TEXT_COMPLETION: (ProviderId.XAI, ProviderId.OPENAI),
    Capability.VISION_ANALYSIS: (ProviderId.OPENAI, ProviderId.XAI),
}

# Bounds used when the model leaves minCost / maxCost out
MIN_COST_FACTOR = 0.85
MAX_COST_FACTOR = 1.20

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def build_capability_table(settings: AISettings) -> dict[ProviderId, ProviderCapability]:
    every = frozenset({Capability.TEXT_COMPLETION, Capability.VISION_ANALYSIS, Capability.JSON_MODE})
    return {
        ProviderId.XAI: ProviderCapability(
            provider_id=ProviderId.XAI,
            supports=every,
            available=bool(settings.xai_api_key),
            text_model=settings.xai_text_model,
            vision_model=settings.xai_vision_model,
        ),
        ProviderId.OPENAI: ProviderCapability(
            provider_id=ProviderId.OPENAI,
            supports=every,
            available=bool(settings.openai_api_key),
            text_model=settings.openai_text_model,
            vision_model=settings.openai_vision_model,
        ),
    }


def parse_json_content(content: Optional[str]) -> dict:
    """Model output → dict. Malformed or non-object output degrades to {}."""
    if not content:
        return {}
    cleaned = _FENCE.sub("", content.strip()).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning(f"AI returned malformed JSON ({e}); using empty result")
        return {}
    if not isinstance(parsed, dict):
        logger.warning(f"AI returned JSON {type(parsed).__name__}, expected object; using empty result")
        return {}
    return parsed


def _message_content(response: Any) -> str:
    """First choice's text; a reply without choices or message reads as ''."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        logger.warning("AI reply carried no choices; using empty content")
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content if isinstance(content, str) else ""


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").replace("$", "").strip())
        except ValueError:
            return 0.0
    return 0.0


def get_system_prompt(role: str) -> str:
    """Standard system prompts for different AI roles."""
    prompts = {
        "quantity_surveyor": (
            "You are an expert Australian quantity surveyor with 20+ years experience. "
            "Provide cost estimates based on current Australian construction rates in AUD. "
            "Note: Estimates are AI-generated and should be verified by a professional QS."
        ),
        "bim_specialist": (
            "You are an expert Australian quantity surveyor and BIM specialist. "
            "You assess Revit, IFC, DWG and DXF models for quantity takeoff and "
            "know how element categories map onto cost plans."
        ),
        "renovation": (
            "You are an expert Australian renovation consultant. You assess kitchen and "
            "bathroom photos and price renovation work for the Australian market."
        ),
        "assistant": (
            "You are an AI assistant for a professional construction cost estimation platform. "
            "Provide helpful, accurate advice about Australian construction, quantity surveying, "
            "and cost estimation. Note: AI estimates should be professionally verified."
        ),
    }
    return prompts.get(role, prompts["quantity_surveyor"])


class AIGateway:
    def __init__(self, settings: AISettings, forge_configured: bool = False):
        self.settings = settings
        self.forge_configured = forge_configured
        self.capabilities = build_capability_table(settings)

    # ── Selection ──────────────────────────────────────────────────────────────

    def select(self, capability: Capability) -> ProviderCapability:
        for provider_id in PREFERENCE[capability]:
            provider = self.capabilities[provider_id]
            if provider.available and capability in provider.supports:
                return provider
        raise NoProviderAvailableError(
            f"No AI provider configured for {capability.value} (set XAI_API_KEY or OPENAI_API_KEY)"
        )

    def _api_key(self, provider_id: ProviderId) -> Optional[str]:
        if provider_id == ProviderId.XAI:
            return self.settings.xai_api_key
        return self.settings.openai_api_key

    # ── Calls ──────────────────────────────────────────────────────────────────

    async def complete(
        self,
        messages: list,
        capability: Capability = Capability.TEXT_COMPLETION,
        json_mode: bool = False,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> tuple[str, ProviderId]:
        """
        One call to the preferred provider for `capability`.
        Returns (content, provider). Raises ProviderTimeoutError / ProviderError.
        """
        provider = self.select(capability)
        kwargs = {
            "model": provider.model_for(capability),
            "messages": messages,
            "temperature": self.settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.settings.max_tokens,
            "api_key": self._api_key(provider.provider_id),
            "timeout": self.settings.timeout_seconds,
        }
        if provider.provider_id == ProviderId.XAI:
            kwargs["api_base"] = self.settings.xai_base_url
        if json_mode and Capability.JSON_MODE in provider.supports:
            kwargs["response_format"] = {"type": "json_object"}

        stage = f"ai_{capability.value}"
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                litellm.acompletion(**kwargs), timeout=self.settings.timeout_seconds
            )
        except (asyncio.TimeoutError, litellm.Timeout) as e:
            perf_tracker.record_stage_error(stage)
            logger.warning(f"{provider.provider_id.value} timed out after {self.settings.timeout_seconds}s")
            raise ProviderTimeoutError(
                f"{provider.provider_id.value} did not respond within {self.settings.timeout_seconds:.0f}s",
                provider_id=provider.provider_id.value,
            ) from e
        except Exception as e:
            perf_tracker.record_stage_error(stage)
            logger.error(f"{provider.provider_id.value} call failed ({type(e).__name__}: {e})")
            raise ProviderError(
                f"{provider.provider_id.value} request failed: {e}",
                provider_id=provider.provider_id.value,
            ) from e

        perf_tracker.record_stage_duration(stage, round((time.perf_counter() - started) * 1000, 2))
        return _message_content(response), provider.provider_id

    async def complete_json(
        self,
        messages: list,
        capability: Capability = Capability.TEXT_COMPLETION,
        max_tokens: Optional[int] = None,
    ) -> tuple[dict, ProviderId]:
        content, provider_id = await self.complete(
            messages, capability=capability, json_mode=True, max_tokens=max_tokens
        )
        return parse_json_content(content), provider_id

    # ── Operations ─────────────────────────────────────────────────────────────

    async def predict_cost(self, request: CostPredictionRequest) -> CostPrediction:
        prompt = (
            "Analyze this construction project and provide a detailed cost prediction:\n\n"
            f"Project Details:\n"
            f"- Type: {request.project_type}\n"
            f"- Area: {request.area} m²\n"
            f"- Location: {request.location}, Australia\n"
            f"- Complexity: {request.complexity}\n"
            f"- Timeline: {request.timeline or 'not specified'}\n\n"
            "Provide a JSON response with:\n"
            "1. predictedCost: Total estimated cost in AUD\n"
            "2. minCost: Minimum likely cost (15% below predicted)\n"
            "3. maxCost: Maximum likely cost (20% above predicted)\n"
            "4. confidence: Your confidence level (Low/Medium/High)\n"
            "5. breakdown: Cost breakdown by major categories\n"
            "6. factors: Key factors affecting the cost\n"
            "7. risks: Major cost risks to consider\n\n"
            'Format: { "predictedCost": number, "minCost": number, "maxCost": number, '
            '"confidence": string, "breakdown": object, "factors": object, "risks": array }'
        )
        result, provider_id = await self.complete_json(
            [
                {"role": "system", "content": get_system_prompt("quantity_surveyor")},
                {"role": "user", "content": prompt},
            ]
        )

        predicted = _as_float(result.get("predictedCost"))
        min_cost = _as_float(result.get("minCost")) or predicted * MIN_COST_FACTOR
        max_cost = _as_float(result.get("maxCost")) or predicted * MAX_COST_FACTOR
        breakdown = result.get("breakdown")
        factors = result.get("factors")
        risks = result.get("risks")
        return CostPrediction(
            predicted_cost=round(predicted, 2),
            min_cost=round(min_cost, 2),
            max_cost=round(max_cost, 2),
            confidence=str(result.get("confidence") or "Medium"),
            breakdown=breakdown if isinstance(breakdown, dict) else {},
            factors=factors if isinstance(factors, dict) else {},
            risks=risks if isinstance(risks, list) else [],
            provider=provider_id,
        )

    async def analyze_bim_file(self, info: BIMFileInfo) -> dict:
        prompt = (
            "Analyze this BIM/CAD file for quantity takeoff:\n\n"
            f"File: {info.file_name}\n"
            f"Type: {info.file_type}\n"
            f"Size: {info.file_size / 1048576:.2f} MB\n\n"
            "Based on the filename and type, provide:\n"
            "1. Likely project type and complexity assessment\n"
            "2. Expected construction elements by category (structural, architectural, MEP)\n"
            "3. Quantity estimation methodology\n"
            "4. Typical Australian cost ranges for similar projects\n"
            "5. Timeline and resource requirements\n"
            "6. Risk factors and key items to review in the model\n\n"
            "Respond in JSON format."
        )
        result, _ = await self.complete_json(
            [
                {"role": "system", "content": get_system_prompt("bim_specialist")},
                {"role": "user", "content": prompt},
            ],
            max_tokens=800,
        )
        return result

    async def generate_report(self, project: dict) -> str:
        """Plain-text QS executive summary; not JSON."""
        total = _as_float(project.get("totalCost"))
        prompt = (
            "Generate a professional quantity surveyor report summary for:\n\n"
            f"Project: {project.get('name') or 'Untitled project'}\n"
            f"Type: {project.get('type') or 'unspecified'}\n"
            f"Total Cost: ${total:,.0f}\n"
            f"Area: {project.get('area') or 0} m²\n\n"
            "Create an executive summary including:\n"
            "1. Project overview\n"
            "2. Cost breakdown analysis\n"
            "3. Value engineering opportunities\n"
            "4. Risk assessment\n"
            "5. Recommendations\n\n"
            "Keep it professional and concise."
        )
        content, _ = await self.complete(
            [
                {"role": "system", "content": get_system_prompt("quantity_surveyor")},
                {"role": "user", "content": prompt},
            ],
            max_tokens=600,
        )
        return content

    async def analyze_photo(self, image_base64: str, room_type: str = "kitchen") -> dict:
        content = [
            {
                "type": "text",
                "text": (
                    f"Analyze this {room_type} photo for renovation opportunities. Identify:\n"
                    "1. Current fixtures and their condition\n"
                    "2. Layout optimization potential\n"
                    "3. Style and design elements\n"
                    "4. Renovation zones (cabinets, countertops, flooring, etc.)\n"
                    "5. Estimated costs for the Australian market\n\n"
                    "Respond in JSON format with detailed analysis."
                ),
            },
            {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"}},
        ]
        result, _ = await self.complete_json(
            [
                {"role": "system", "content": get_system_prompt("renovation")},
                {"role": "user", "content": content},
            ],
            capability=Capability.VISION_ANALYSIS,
        )
        return result

    async def construction_advice(self, query: str, context: Optional[Union[dict, str]] = None) -> str:
        messages = [{"role": "system", "content": get_system_prompt("assistant")}]
        if context:
            ctx = context if isinstance(context, str) else json.dumps(context, default=str)
            messages.append({"role": "system", "content": f"Project context: {ctx}"})
        messages.append({"role": "user", "content": query})
        content, _ = await self.complete(messages, max_tokens=500)
        return content

    def service_status(self) -> ServiceStatus:
        """Credential presence only; no live connectivity check."""
        return ServiceStatus(
            xai=self.capabilities[ProviderId.XAI].available,
            openai=self.capabilities[ProviderId.OPENAI].available,
            forge=self.forge_configured,
        )

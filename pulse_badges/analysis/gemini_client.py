"""
Gemini analysis generator.

Builds a prompt from a symbol's metrics, calls the Gemini ``generateContent``
REST endpoint through ``httpx.AsyncClient`` and parses the reply into a
``GeneratedAnalysis``.

The model is asked for a bare JSON object::

    {"recommendation": "buy", "analysis": "2-3 paragraphs ..."}

Replies wrapped in a Markdown code fence are accepted. Any other deviation
(empty reply, invalid JSON, unknown label, empty text, HTTP error) raises
``AnalysisGenerationError``. There is no retry here; the daily refresh falls
back to stored analyses instead.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import httpx

from pulse_badges.config import AnalysisConfig
from pulse_badges.models.daily_run import VALID_RECOMMENDATIONS, GeneratedAnalysis
from pulse_badges.pipeline.collaborators import AnalysisGenerator

logger = logging.getLogger(__name__)


class AnalysisGenerationError(RuntimeError):
    """The generative call failed or returned an unusable reply."""


_PROMPT_TEMPLATE = """You are a stock analyst. Analyze {company} ({symbol}) based on the provided metrics and your knowledge of the company.

STOCK METRICS:
{metrics}

Search for recent analyst reports, financial news, and market sentiment about this company to inform your analysis.

IMPORTANT: Respond with ONLY a valid JSON object (no markdown, no code blocks, no extra text). Use this exact structure:
{{"recommendation":"buy","analysis":"Your 2-3 paragraph analysis"}}

The recommendation field must be exactly one of: "buy", "hold", or "sell"

Guidelines:
- Analyze growth trends: positive multi-timeframe growth suggests momentum
- Consider sector context, competitive position, and market cap for risk assessment
- "buy": Strong growth metrics, positive momentum, favorable outlook
- "hold": Mixed signals, stable but no clear direction
- "sell": Declining metrics, negative momentum, concerning trends
- Be specific about the numbers driving your recommendation"""

_CODE_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

_CURRENCY_SIGNS: dict[str, str] = {"tlv": "₪"}

_GROWTH_LINES: tuple[tuple[str, str], ...] = (
    ("growth_1d", "1 Day"),
    ("growth_5d", "5 Day"),
    ("growth_1m", "1 Month"),
    ("growth_3m", "3 Month"),
    ("growth_6m", "6 Month"),
    ("growth_12m", "12 Month"),
)


# ── Prompt ────────────────────────────────────────────────────────────────────

def format_market_cap(market_cap: float) -> str:
    """``1.5e12`` → ``$1.50T``; sub-million values are printed whole."""
    for threshold, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M")):
        if market_cap >= threshold:
            return f"${market_cap / threshold:.2f}{suffix}"
    return f"${market_cap:.0f}"


def format_metrics(metrics: dict[str, Any]) -> str:
    """Render snapshot metrics as the prompt's metrics block."""
    lines: list[str] = []
    sign = _CURRENCY_SIGNS.get(str(metrics.get("market") or "").lower(), "$")

    if metrics.get("price") is not None:
        lines.append(f"Current Price: {sign}{metrics['price']:.2f}")
    if metrics.get("market_cap"):
        lines.append(f"Market Cap: {format_market_cap(metrics['market_cap'])}")
    if metrics.get("sector"):
        lines.append(f"Sector: {metrics['sector']}")
    if metrics.get("industry"):
        lines.append(f"Industry: {metrics['industry']}")

    lines.append("")
    lines.append("Growth Performance:")
    for key, label in _GROWTH_LINES:
        value = metrics.get(key)
        if value is not None:
            lines.append(f"  {label}: {value:+.2f}%")

    if metrics.get("description"):
        lines.append("")
        lines.append(f"Company Overview: {metrics['description']}")

    return "\n".join(lines)


def build_prompt(symbol: str, company_name: str, metrics: dict[str, Any]) -> str:
    return _PROMPT_TEMPLATE.format(
        company=company_name or symbol,
        symbol=symbol,
        metrics=format_metrics(metrics),
    )


# ── Response parsing ──────────────────────────────────────────────────────────

def extract_text(payload: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return ""
    parts = (candidates[0].get("content") or {}).get("parts") or []
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


def parse_analysis(text: str, model_id: str) -> GeneratedAnalysis:
    """Parse the model's reply into a ``GeneratedAnalysis``.

    Raises:
        AnalysisGenerationError: Empty reply, bad JSON, bad label or no text.
    """
    body = text.strip()
    if not body:
        raise AnalysisGenerationError("Empty response from model")

    fenced = _CODE_FENCE.search(body)
    if fenced:
        body = fenced.group(1).strip()

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as exc:
        raise AnalysisGenerationError(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AnalysisGenerationError("Response JSON is not an object")

    label = str(parsed.get("recommendation", "")).strip().lower()
    if label not in VALID_RECOMMENDATIONS:
        raise AnalysisGenerationError(
            f"Invalid recommendation: {parsed.get('recommendation')!r}"
        )

    analysis_text = parsed.get("analysis") or parsed.get("english") or ""
    if not isinstance(analysis_text, str) or not analysis_text.strip():
        raise AnalysisGenerationError("Missing analysis text in response")

    return GeneratedAnalysis(
        recommendation=label,
        text=analysis_text.strip(),
        model_id=model_id,
    )


# ── Client ────────────────────────────────────────────────────────────────────

class GeminiAnalysisGenerator(AnalysisGenerator):
    """``AnalysisGenerator`` backed by the Gemini REST API.

    Args:
        config: ``[analysis]`` config section.
        client: Optional shared ``httpx.AsyncClient``; one is created per
            call when omitted.
    """

    def __init__(
        self,
        config: AnalysisConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not config.api_key:
            raise ValueError("GEMINI_API_KEY is not configured.")
        self.config = config
        self._client = client

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/models/{self.config.model_id}:generateContent"

    def _request_body(self, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        if self.config.use_search:
            body["tools"] = [{"google_search": {}}]
        return body

    async def _post(self, client: httpx.AsyncClient, prompt: str) -> dict[str, Any]:
        resp = await client.post(
            self.endpoint,
            params={"key": self.config.api_key},
            json=self._request_body(prompt),
            timeout=self.config.timeout_s,
        )
        resp.raise_for_status()
        return resp.json()

    async def generate_analysis(
        self,
        symbol: str,
        company_name: str,
        metrics: dict[str, Any],
    ) -> GeneratedAnalysis:
        prompt = build_prompt(symbol, company_name, metrics)
        try:
            if self._client is not None:
                payload = await self._post(self._client, prompt)
            else:
                async with httpx.AsyncClient() as client:
                    payload = await self._post(client, prompt)
        except (httpx.HTTPError, ValueError) as exc:
            raise AnalysisGenerationError(f"Gemini request failed: {exc}") from exc

        analysis = parse_analysis(extract_text(payload), self.config.model_id)
        logger.debug("Generated analysis for %s: %s", symbol, analysis.recommendation)
        return analysis

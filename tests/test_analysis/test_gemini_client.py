"""
Tests for pulse_badges/analysis/gemini_client.py.

What we test
------------
parse_analysis():
  - Plain JSON and fenced JSON replies.
  - Label normalization; invalid label, empty reply, missing text rejected.

format_metrics() / build_prompt():
  - Currency sign per market, market-cap suffixes, signed growth lines.

GeminiAnalysisGenerator:
  - Request shape (endpoint, key param, search tool) via httpx.MockTransport.
  - HTTP errors and bad payloads surface as AnalysisGenerationError.
  - Missing API key is rejected at construction.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from pulse_badges.analysis.gemini_client import (
    AnalysisGenerationError,
    GeminiAnalysisGenerator,
    build_prompt,
    extract_text,
    format_market_cap,
    format_metrics,
    parse_analysis,
)
from pulse_badges.config import AnalysisConfig


def _payload(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


# ── Parsing ────────────────────────────────────────────────────────────────────

class TestParseAnalysis:
    def test_plain_json(self):
        result = parse_analysis('{"recommendation": "BUY", "analysis": " Strong. "}', "m")
        assert result.recommendation == "buy"
        assert result.text == "Strong."
        assert result.model_id == "m"

    def test_fenced_json(self):
        text = 'Here you go:\n```json\n{"recommendation": "hold", "analysis": "Flat."}\n```'
        assert parse_analysis(text, "m").recommendation == "hold"

    def test_legacy_english_key(self):
        assert parse_analysis('{"recommendation": "sell", "english": "Weak."}', "m").text == "Weak."

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "not json",
            "[1, 2]",
            '{"recommendation": "strong buy", "analysis": "x"}',
            '{"recommendation": "buy", "analysis": "   "}',
            '{"recommendation": "buy"}',
        ],
    )
    def test_rejected(self, text):
        with pytest.raises(AnalysisGenerationError):
            parse_analysis(text, "m")

    def test_extract_text_joins_parts(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "ab"}, {"text": "cd"}]}}]}
        assert extract_text(payload) == "abcd"
        assert extract_text({}) == ""


# ── Prompt ─────────────────────────────────────────────────────────────────────

class TestPrompt:
    def test_market_cap_suffixes(self):
        assert format_market_cap(1.5e12) == "$1.50T"
        assert format_market_cap(2.25e9) == "$2.25B"
        assert format_market_cap(3e6) == "$3.00M"
        assert format_market_cap(999.0) == "$999"

    def test_tlv_uses_shekel_sign(self):
        text = format_metrics({"market": "tlv", "price": 12.5})
        assert "Current Price: ₪12.50" in text

    def test_growth_lines_signed_and_missing_skipped(self):
        text = format_metrics({"growth_1m": 4.0, "growth_6m": -2.5, "growth_12m": None})
        assert "1 Month: +4.00%" in text
        assert "6 Month: -2.50%" in text
        assert "12 Month" not in text

    def test_prompt_names_company_and_symbol(self, make_snapshot):
        snap = make_snapshot("AAPL")
        prompt = build_prompt(snap.symbol, snap.name, snap.metrics())
        assert "AAPL Inc. (AAPL)" in prompt
        assert "Market Cap: $2.50B" in prompt


# ── Client ─────────────────────────────────────────────────────────────────────

def _generator(handler, **overrides) -> GeminiAnalysisGenerator:
    config = AnalysisConfig(api_key="secret", **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiAnalysisGenerator(config, client=client)


class TestGeminiAnalysisGenerator:
    def test_missing_api_key_rejected(self):
        with pytest.raises(ValueError):
            GeminiAnalysisGenerator(AnalysisConfig(api_key=None))

    def test_request_shape_and_result(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = request.url
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json=_payload('{"recommendation": "buy", "analysis": "Up."}')
            )

        gen = _generator(handler, model_id="gemini-test")
        result = asyncio.run(gen.generate_analysis("AAPL", "Apple", {"growth_1m": 3.0}))

        assert result.recommendation == "buy"
        assert result.model_id == "gemini-test"
        assert seen["url"].path.endswith("/models/gemini-test:generateContent")
        assert seen["url"].params["key"] == "secret"
        assert seen["body"]["tools"] == [{"google_search": {}}]
        assert "Apple (AAPL)" in seen["body"]["contents"][0]["parts"][0]["text"]

    def test_search_tool_can_be_disabled(self):
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json=_payload('{"recommendation": "hold", "analysis": "Flat."}')
            )

        gen = _generator(handler, use_search=False)
        asyncio.run(gen.generate_analysis("AAPL", "Apple", {}))
        assert "tools" not in seen["body"]

    def test_http_error_wrapped(self):
        gen = _generator(lambda request: httpx.Response(503, text="overloaded"))
        with pytest.raises(AnalysisGenerationError, match="Gemini request failed"):
            asyncio.run(gen.generate_analysis("AAPL", "Apple", {}))

    def test_non_json_body_wrapped(self):
        gen = _generator(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(AnalysisGenerationError):
            asyncio.run(gen.generate_analysis("AAPL", "Apple", {}))

    def test_empty_candidates_rejected(self):
        gen = _generator(lambda request: httpx.Response(200, json={"candidates": []}))
        with pytest.raises(AnalysisGenerationError, match="Empty response"):
            asyncio.run(gen.generate_analysis("AAPL", "Apple", {}))

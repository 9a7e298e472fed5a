"""
LLM analysis for Coinsight.

Two model calls per planner-style request:

1. classify_requirements(query)
     → asks the model which data sources the query needs
     → falls back to ``intent.keyword_requirements`` whenever the model is
       unavailable, times out or answers with something unparseable

2. summarize(query, bundle)
     → PENDING → CALLING(model) → PARSE
         PARSED                       → normalise and return
         PARSE_FAILED → strict re-ask → PARSED → normalise and return
                                      → still failing → data-driven fallback
     → circuit open / no key → data-driven fallback (``degraded=True``)
     → saturation and timeouts propagate to the HTTP layer

``chat(query)`` is a direct passthrough that skips data collection entirely.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Optional

import anthropic

from coinsight import normalizer
from coinsight.errors import CoinsightError, LLMUnavailable, UpstreamSaturated, UpstreamTimeout
from coinsight.intent import (
    explorer_actions,
    extract_dune_query_id,
    is_crypto_query,
    keyword_requirements,
    render_flags,
)
from coinsight.llm import LLMClient, LLMResponse
from coinsight.models import AnalysisResult, ApiRequirements, MarketBundle
from coinsight.parsing import ModelAnalysis, ParsedOutput, parse_model_output
from coinsight.sources import build_citations, normalize_sources, providers_used

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)


# ── Prompts ────────────────────────────────────────────────────────────────────

REQUIREMENTS_SYSTEM = (
    "You are an expert crypto analyst assistant. Decide which data sources are needed "
    "to answer the user's query. Return only a single JSON object, no markdown, no commentary."
)

_REQUIREMENTS_TEMPLATE = """User Query: {query}

Available Data Sources:
1. Crypto Market Data (CoinMarketCap/CoinGecko) - price, market cap, volume
2. DeFi Projects Data (DeFiLlama) - TVL, protocol information, rankings
3. Etherscan Blockchain Data - gas prices, token info, transactions
4. Dune Analytics - saved on-chain analytics queries (by numeric query id)

Return JSON with exactly these keys:
{{
  "needsCryptoData": boolean,
  "cryptoSymbols": string[] (ticker symbols, e.g. "BTC"),
  "needsDeFiData": boolean,
  "needsEtherscanData": boolean,
  "etherscanActions": string[] (any of "gas", "token", "transactions", "contract"),
  "needsDuneData": boolean,
  "duneQuery": string or null (numeric Dune query id),
  "analysisType": "{mode}",
  "priority": "high" | "medium" | "low"
}}"""

ANALYSIS_SYSTEM = (
    "You are an expert crypto analyst providing research insights. Always reference the "
    "actual data provided rather than general knowledge, focus on the time frame the user "
    "asks about, and point out notable movements and risks.\n\n"
    "STRICT OUTPUT RULES:\n"
    "- Output ONLY a single valid JSON object.\n"
    "- NO markdown, NO code fences, NO commentary outside the JSON.\n"
    "- Use only the keys specified by the user message."
)

STRICT_JSON_SYSTEM = (
    "You convert analyses into JSON. Respond with ONE valid JSON object and nothing else: "
    "no prose, no markdown, no code fences. The first character of your reply must be '{' "
    "and the last must be '}'."
)

_FORMAT_INSTRUCTIONS = """Return ONLY compact valid JSON with this structure:
{
  "summary": string (plain text paragraphs, no markdown),
  "dataTable": optional array of up to 10 rows: [{"project": string, "tvl": string, "tvlChange": string, "price": string, "priceChange": string, "sentiment": "Positive" | "Negative" | "Neutral", "newsCount": number}],
  "sources": string[] (only providers whose data you used, among: CoinMarketCap, CoinGecko, DeFiLlama, Etherscan, Dune Analytics, CryptoPanic),
  "insights": string[] (max 8),
  "riskFactors": string[] (max 8),
  "marketTrends": string (1-3 sentences)
}
Format numbers for display, e.g. "$1.2B" for TVL and "+2.5%" for changes. No extra keys."""

CHAT_SYSTEM = (
    "You are an expert crypto analyst and Web3 assistant. Provide helpful, educational "
    "responses to questions about blockchain technology, cryptocurrencies, DeFi, NFTs, and "
    "the wider Web3 ecosystem. Be conversational yet precise."
)

MAX_LIST_ITEMS = 8


def _bundle_payload(bundle: MarketBundle, limit: int) -> str:
    """Serialise the bundle for the prompt, bounded to *limit* characters."""
    data: dict[str, Any] = {
        "cryptoData": [a.to_json_dict() for a in bundle.crypto_data],
        "defiProjects": [p.to_json_dict() for p in bundle.defi_projects[:25]],
    }
    if bundle.explorer is not None:
        data["etherscanData"] = bundle.explorer.to_json_dict()
    if bundle.dune_data:
        data["duneData"] = bundle.dune_data[:20]
    if bundle.news_events:
        data["newsEvents"] = [
            {"title": e.title, "source": e.source, "sentiment": e.sentiment}
            for e in bundle.news_events[:15]
        ]
    text = json.dumps(data, separators=(",", ":"), default=str)
    if len(text) > limit:
        text = text[:limit] + "...(truncated)"
    return text


def build_analysis_prompt(
    query: str,
    bundle: MarketBundle,
    mode: str = "research",
    history: str = "",
    data_limit: int = 12000,
) -> str:
    """Assemble the user message for the analysis call."""
    context = bundle.query_context
    lines = []
    if history:
        lines += ["Conversation so far:", history, ""]
    lines += [f'User Query: "{query}"', f"Mode: {mode}"]
    if context is not None:
        lines += [
            f"Time Frame Focus: {context.time_frame}",
            f"Top Results Requested: {context.top_n}",
            f"Looking for Trending Projects: {'Yes' if context.use_trending else 'No'}",
            f"Request Timestamp: {context.timestamp}",
        ]
    if bundle.has_synthetic_data():
        lines.append(
            "Note: records with isSynthetic=true are simulated estimates; say so if you use them."
        )
    lines += ["", f"Available Data: {_bundle_payload(bundle, data_limit)}", "", _FORMAT_INSTRUCTIONS]
    if mode == "chat":
        lines.append("Keep the summary conversational and omit dataTable unless it helps.")
    return "\n".join(lines)


# ── Analyst ────────────────────────────────────────────────────────────────────


class Analyst:
    """Runs the classification, analysis and chat model calls.

    Args:
        settings: Application configuration.
        llm: Client that owns retries, model fallback and the circuit breaker.
    """

    def __init__(self, settings: Settings, llm: LLMClient) -> None:
        self.settings = settings
        self.llm = llm

    # ── Requirements ───────────────────────────────────────────────────────

    def classify_requirements(self, query: str, mode: str = "research") -> ApiRequirements:
        """Ask the model which data the query needs, with a keyword fallback.

        Raises:
            UpstreamSaturated: The model stayed saturated through every retry.
        """
        fallback = keyword_requirements(query, mode)
        if not is_crypto_query(query):
            return fallback

        try:
            response = self.llm.complete(
                REQUIREMENTS_SYSTEM,
                [{"role": "user", "content": _REQUIREMENTS_TEMPLATE.format(query=query, mode=mode)}],
                max_tokens=600,
                temperature=0.1,
                timeout=self.settings.classifier_timeout,
            )
        except UpstreamSaturated:
            raise
        except (LLMUnavailable, UpstreamTimeout) as exc:
            logger.info("Requirement classifier unavailable (%s); using keywords", exc)
            return fallback
        except anthropic.APIError:
            logger.exception("Requirement classifier failed; using keywords")
            return fallback

        parsed = parse_model_output(response.text, ApiRequirements)
        if not isinstance(parsed, ParsedOutput):
            logger.warning("Unparseable requirements from %s; using keywords", response.model)
            return fallback

        requirements: ApiRequirements = parsed.value
        updates: dict[str, Any] = {"analysis_type": mode}
        if requirements.needs_crypto_data and not requirements.crypto_symbols:
            updates["crypto_symbols"] = fallback.crypto_symbols
        if requirements.needs_etherscan_data and not requirements.etherscan_actions:
            updates["etherscan_actions"] = explorer_actions(query)
        if requirements.needs_dune_data:
            updates["dune_query"] = extract_dune_query_id(query) or requirements.dune_query
        requirements = requirements.model_copy(update=updates)
        logger.info(
            "Requirements via %s: crypto=%s defi=%s etherscan=%s dune=%s",
            response.model, requirements.needs_crypto_data, requirements.needs_defi_data,
            requirements.needs_etherscan_data, requirements.needs_dune_data,
        )
        return requirements

    # ── Analysis ───────────────────────────────────────────────────────────

    def summarize(
        self,
        query: str,
        bundle: MarketBundle,
        *,
        mode: str = "research",
        history: str = "",
    ) -> AnalysisResult:
        """Produce an ``AnalysisResult`` for the query and fetched data.

        Raises:
            UpstreamSaturated: Capacity or rate limits outlasted every retry.
            UpstreamTimeout: The analysis call timed out.
        """
        prompt = build_analysis_prompt(
            query, bundle, mode, history, self.settings.max_prompt_data_chars
        )
        messages = [{"role": "user", "content": prompt}]

        try:
            response = self._call(ANALYSIS_SYSTEM, messages)
        except LLMUnavailable as exc:
            logger.warning("LLM unavailable (%s); building analysis from data", exc)
            return self._fallback_result(query, bundle, reason=str(exc))

        parsed = parse_model_output(response.text)
        if isinstance(parsed, ParsedOutput):
            return self._model_result(query, bundle, parsed.value, response.model, parsed.strategy)

        logger.info("Re-asking %s for strict JSON", response.model)
        messages = messages + [
            {"role": "assistant", "content": response.text or "(empty)"},
            {"role": "user", "content": "That was not valid JSON. Reply again with only the JSON object."},
        ]
        try:
            retry = self._call(STRICT_JSON_SYSTEM, messages)
        except (CoinsightError, anthropic.APIError) as exc:
            logger.warning("Strict re-ask failed (%s)", exc)
            retry = None

        if retry is not None:
            reparsed = parse_model_output(retry.text)
            if isinstance(reparsed, ParsedOutput):
                return self._model_result(query, bundle, reparsed.value, retry.model, "strict_reask")

        logger.warning("Model output unparseable after re-ask; building analysis from data")
        return self._fallback_result(
            query, bundle, reason="unparseable model output", raw_text=response.text,
            model_used=response.model,
        )

    def _call(self, system: str, messages: list[dict[str, str]]) -> LLMResponse:
        return self.llm.complete(
            system,
            messages,
            max_tokens=self.settings.analysis_max_tokens,
            temperature=0.3,
            timeout=self.settings.analysis_timeout,
        )

    def _model_result(
        self,
        query: str,
        bundle: MarketBundle,
        analysis: ModelAnalysis,
        model: str,
        strategy: str,
    ) -> AnalysisResult:
        summary = normalizer.clean_summary(analysis.summary)
        if not normalizer.summary_is_usable(summary):
            logger.info("Model summary unusable; composing one from data")
            summary = normalizer.generate_fallback_summary(bundle, query)

        table = normalizer.repair_data_table(analysis.data_table, bundle, query)
        sources = normalize_sources(analysis.sources, providers_used(bundle, model))
        return self._result(
            query,
            bundle,
            summary=summary,
            data_table=table,
            sources=sources,
            insights=analysis.insights[:MAX_LIST_ITEMS] or normalizer.fallback_insights(query, bundle),
            risk_factors=analysis.risk_factors[:MAX_LIST_ITEMS] or normalizer.fallback_risk_factors(bundle),
            market_trends=analysis.market_trends or normalizer.fallback_market_trend(bundle),
            model_used=model,
            degraded=False,
            diagnostics={"parseStrategy": strategy},
        )

    def _fallback_result(
        self,
        query: str,
        bundle: MarketBundle,
        reason: str,
        raw_text: str = "",
        model_used: Optional[str] = None,
    ) -> AnalysisResult:
        summary = normalizer.clean_summary(raw_text)
        from_model = normalizer.summary_is_usable(summary)
        if not from_model:
            summary = normalizer.generate_fallback_summary(bundle, query)
        used = providers_used(bundle, model_used if from_model else None)
        sources = normalize_sources([], used)
        return self._result(
            query,
            bundle,
            summary=summary,
            data_table=normalizer.generate_data_table(bundle, query),
            sources=sources,
            insights=normalizer.fallback_insights(query, bundle),
            risk_factors=normalizer.fallback_risk_factors(bundle),
            market_trends=normalizer.fallback_market_trend(bundle),
            model_used=model_used,
            degraded=True,
            diagnostics={"fallbackReason": reason},
        )

    @staticmethod
    def _result(query: str, bundle: MarketBundle, **fields: Any) -> AnalysisResult:
        flags = render_flags(query)
        table = fields["data_table"]
        return AnalysisResult(
            data=bundle,
            citations=build_citations(bundle, fields["sources"]),
            show_defi=flags.show_defi,
            show_table=flags.show_table or bool(table),
            show_etherscan=bundle.explorer is not None,
            show_sentiment=False,
            show_news=bool(bundle.news_events),
            is_crypto_query=flags.is_crypto_query,
            **fields,
        )

    # ── Chat ───────────────────────────────────────────────────────────────

    def chat(self, query: str) -> LLMResponse:
        """Direct model conversation, bypassing data collection.

        Raises:
            LLMUnavailable: No API key or the circuit breaker is open.
            UpstreamSaturated: Capacity or rate limits outlasted every retry.
            UpstreamTimeout: The call timed out.
        """
        return self.llm.complete(
            CHAT_SYSTEM,
            [{"role": "user", "content": query}],
            max_tokens=self.settings.chat_max_tokens,
            temperature=0.7,
            timeout=self.settings.analysis_timeout,
        )

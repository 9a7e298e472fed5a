"""
Research pipeline: data collection plus the analysis sources built on it.

Flow
────
ResearchService.analyze(query)
  → validate
  → resolve_intent(query)
      NonCryptoIntent → canned capability message, no upstream calls
      CryptoIntent    → run every requested source concurrently:
          "standard": keyword intent  → DataCollector.collect_for_intent
                                      → Analyst.summarize
          "planner":  LLM requirements → DataCollector.collect_for_requirements
                                      → Analyst.summarize
  → first success in requested order wins; every outcome goes to diagnostics
  → conversation memory updated

Each data slot (prices, TVL, explorer, analytics, news) runs in its own
worker and is bounded by its own timeout. A slot that fails or times out is
left empty; the request carries on without it. In-flight HTTP calls are not
cancelled, their results are simply discarded.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

import requests

from coinsight.analyst import Analyst
from coinsight.errors import (
    AllSourcesFailed,
    QueryValidationError,
    UpstreamSaturated,
)
from coinsight.explorer import AnalyticsClient, BlockExplorerClient
from coinsight.intent import (
    CAPABILITIES_MESSAGE,
    CryptoIntent,
    NonCryptoIntent,
    explorer_actions,
    extract_address,
    extract_dune_query_id,
    needs_explorer_data,
    resolve_intent,
)
from coinsight.llm import LLMClient, LLMResponse
from coinsight.market import SYNTHETIC, MarketDataGateway
from coinsight.memory import ConversationMemory, ConversationStore
from coinsight.models import AnalysisResult, ApiRequirements, MarketBundle, QueryContext
from coinsight.news import NewsClient
from coinsight.sources import CRYPTOPANIC, DUNE, ETHERSCAN

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

STANDARD = "standard"
PLANNER = "planner"
ANALYSIS_SOURCES = (STANDARD, PLANNER)
DEFAULT_SOURCES = (PLANNER,)
MODES = ("research", "chat")

#: Grace added to every slot timeout on top of the HTTP timeout itself.
_SLOT_GRACE_SECONDS = 1.0


# ── Data collection ────────────────────────────────────────────────────────────


class DataCollector:
    """Fetches the data slots a request needs, concurrently."""

    def __init__(
        self,
        settings: Settings,
        gateway: MarketDataGateway,
        explorer: BlockExplorerClient,
        analytics: AnalyticsClient,
        news: NewsClient,
    ) -> None:
        self.settings = settings
        self.gateway = gateway
        self.explorer = explorer
        self.analytics = analytics
        self.news = news

    def collect_for_intent(self, query: str, intent: CryptoIntent) -> MarketBundle:
        """Keyword-driven collection: prices and TVL always, explorer when asked."""
        tokens = intent.focus_tokens
        tasks: dict[str, tuple[Callable[[], Any], float]] = {
            "crypto_data": (lambda: self.gateway.fetch_crypto_data(tokens), self._price_timeout),
            "defi_projects": (self.gateway.fetch_defi_protocols, self.settings.defi_timeout),
            "news_events": (lambda: self.news.fetch_news_events(tokens), self.settings.news_timeout),
        }
        if needs_explorer_data(query):
            actions = explorer_actions(query)
            address = extract_address(query)
            tasks["explorer"] = (
                lambda: self.explorer.collect(actions, tokens, address),
                self.settings.explorer_timeout,
            )
        dune_id = extract_dune_query_id(query)
        if dune_id:
            tasks["dune_data"] = (
                lambda: self.analytics.fetch_dune_data(dune_id, query),
                self.settings.analytics_timeout,
            )
        return self._bundle(self._gather(tasks), intent.query_context())

    def collect_for_requirements(
        self,
        requirements: ApiRequirements,
        query: str = "",
        context: Optional[QueryContext] = None,
    ) -> MarketBundle:
        """Fetch only what *requirements* ask for."""
        tasks: dict[str, tuple[Callable[[], Any], float]] = {}
        symbols = requirements.crypto_symbols
        if requirements.needs_crypto_data and symbols:
            tasks["crypto_data"] = (
                lambda: self.gateway.fetch_crypto_data(symbols), self._price_timeout
            )
            tasks["news_events"] = (
                lambda: self.news.fetch_news_events(symbols), self.settings.news_timeout
            )
        if requirements.needs_defi_data:
            tasks["defi_projects"] = (self.gateway.fetch_defi_protocols, self.settings.defi_timeout)
        if requirements.needs_etherscan_data and requirements.etherscan_actions:
            actions = requirements.etherscan_actions
            address = extract_address(query)
            tasks["explorer"] = (
                lambda: self.explorer.collect(actions, symbols, address),
                self.settings.explorer_timeout,
            )
        if requirements.needs_dune_data and requirements.dune_query:
            dune_query = requirements.dune_query
            tasks["dune_data"] = (
                lambda: self.analytics.fetch_dune_data(dune_query, query),
                self.settings.analytics_timeout,
            )
        return self._bundle(self._gather(tasks), context)

    @property
    def _price_timeout(self) -> float:
        # Both price tiers may run back to back.
        return self.settings.price_timeout + self.settings.price_fallback_timeout

    def _gather(self, tasks: dict[str, tuple[Callable[[], Any], float]]) -> dict[str, Any]:
        if not tasks:
            return {}
        executor = ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="collect")
        started = time.monotonic()
        try:
            futures = {name: executor.submit(fn) for name, (fn, _) in tasks.items()}
            results: dict[str, Any] = {}
            for name, future in futures.items():
                deadline = started + tasks[name][1] + _SLOT_GRACE_SECONDS
                try:
                    results[name] = future.result(timeout=max(0.0, deadline - time.monotonic()))
                except FuturesTimeout:
                    logger.warning("Data slot %s timed out; continuing without it", name)
                except Exception:
                    logger.exception("Data slot %s failed; continuing without it", name)
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _bundle(results: dict[str, Any], context: Optional[QueryContext]) -> MarketBundle:
        bundle = MarketBundle(
            crypto_data=results.get("crypto_data") or [],
            defi_projects=results.get("defi_projects") or [],
            explorer=results.get("explorer"),
            dune_data=results.get("dune_data") or [],
            news_events=results.get("news_events") or [],
            query_context=context or QueryContext(),
        )
        providers: list[str] = []
        for record in list(bundle.crypto_data) + list(bundle.defi_projects):
            if record.source and record.source != SYNTHETIC and record.source not in providers:
                providers.append(record.source)
        if bundle.explorer is not None:
            providers.append(ETHERSCAN)
        if bundle.dune_data:
            providers.append(DUNE)
        if bundle.news_events:
            providers.append(CRYPTOPANIC)
        bundle.providers = providers
        logger.info(
            "Collected prices=%d protocols=%d explorer=%s dune=%d news=%d providers=%s",
            len(bundle.crypto_data), len(bundle.defi_projects), bundle.explorer is not None,
            len(bundle.dune_data), len(bundle.news_events), providers,
        )
        return bundle


# ── Research service ───────────────────────────────────────────────────────────


@dataclass
class SourceOutcome:
    """What one analysis source produced, for diagnostics."""

    name: str
    result: Optional[AnalysisResult] = None
    error: Optional[BaseException] = None
    elapsed_ms: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        info: dict[str, Any] = {"ok": self.ok, "elapsedMs": self.elapsed_ms}
        if self.result is not None:
            info["degraded"] = self.result.degraded
            info["modelUsed"] = self.result.model_used
        if self.error is not None:
            info["error"] = f"{type(self.error).__name__}: {self.error}"
        return info


class ResearchService:
    """Entry point for the HTTP layer: analysis, chat and conversation history."""

    def __init__(
        self,
        settings: Settings,
        collector: DataCollector,
        analyst: Analyst,
        store: Optional[ConversationStore] = None,
    ) -> None:
        self.settings = settings
        self.collector = collector
        self.analyst = analyst
        self.store = store or ConversationStore(
            settings.max_conversations, settings.max_messages_per_conversation
        )

    # ── Validation ─────────────────────────────────────────────────────────

    def _validate_query(self, query: Any) -> str:
        if not isinstance(query, str) or not query.strip():
            raise QueryValidationError("Query is required and must be a non-empty string")
        query = query.strip()
        if len(query) > self.settings.max_query_length:
            raise QueryValidationError(
                f"Query must be at most {self.settings.max_query_length} characters"
            )
        return query

    @staticmethod
    def _validate_sources(sources: Optional[list[str]]) -> list[str]:
        if not sources:
            return list(DEFAULT_SOURCES)
        if not isinstance(sources, list):
            raise QueryValidationError("sources must be a list of strings")
        names = list(dict.fromkeys(str(s).strip().lower() for s in sources))
        unknown = [n for n in names if n not in ANALYSIS_SOURCES]
        if unknown:
            raise QueryValidationError(
                f"Unknown sources {unknown}; expected any of {list(ANALYSIS_SOURCES)}"
            )
        return names

    # ── Analysis ───────────────────────────────────────────────────────────

    def analyze(
        self,
        query: Any,
        mode: str = "research",
        conversation_id: Optional[str] = None,
        sources: Optional[list[str]] = None,
    ) -> AnalysisResult:
        """Answer a research query.

        Raises:
            QueryValidationError: Bad query, mode or source names.
            UpstreamSaturated: The model stayed saturated for every source.
            AllSourcesFailed: Several sources failed for other reasons.
            CoinsightError: The single requested source failed.
        """
        query = self._validate_query(query)
        mode = mode or "research"
        if mode not in MODES:
            raise QueryValidationError(f"mode must be one of {list(MODES)}")
        names = self._validate_sources(sources)

        memory = self.store.get_or_create(conversation_id)
        history = memory.get_history()
        intent = resolve_intent(query)

        if isinstance(intent, NonCryptoIntent):
            logger.info("Non-crypto query, answering with capabilities message")
            result = AnalysisResult(
                summary=CAPABILITIES_MESSAGE.format(query=query),
                is_crypto_query=False,
            )
        else:
            outcomes = self._run_sources(names, query, intent, mode, history)
            result = self._pick(outcomes)

        result = result.model_copy(update={"conversation_id": memory.conversation_id})
        self._remember(memory, query, result.summary)
        return result

    def _run_sources(
        self,
        names: list[str],
        query: str,
        intent: CryptoIntent,
        mode: str,
        history: str,
    ) -> list[SourceOutcome]:
        runners: dict[str, Callable[[], AnalysisResult]] = {
            STANDARD: lambda: self._standard(query, intent, mode, history),
            PLANNER: lambda: self._planner(query, intent, mode, history),
        }
        if len(names) == 1:
            return [self._timed(names[0], runners[names[0]])]

        executor = ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="source")
        try:
            futures: dict[str, Future] = {
                name: executor.submit(self._timed, name, runners[name]) for name in names
            }
            return [futures[name].result() for name in names]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _timed(name: str, runner: Callable[[], AnalysisResult]) -> SourceOutcome:
        started = time.monotonic()
        outcome = SourceOutcome(name=name)
        try:
            outcome.result = runner()
        except Exception as exc:  # recorded and re-raised by _pick
            logger.warning("Analysis source %s failed: %s", name, exc)
            outcome.error = exc
        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        return outcome

    def _standard(self, query: str, intent: CryptoIntent, mode: str, history: str) -> AnalysisResult:
        bundle = self.collector.collect_for_intent(query, intent)
        return self.analyst.summarize(query, bundle, mode=mode, history=history)

    def _planner(self, query: str, intent: CryptoIntent, mode: str, history: str) -> AnalysisResult:
        requirements = self.analyst.classify_requirements(query, mode)
        bundle = self.collector.collect_for_requirements(
            requirements, query, intent.query_context()
        )
        return self.analyst.summarize(query, bundle, mode=mode, history=history)

    @staticmethod
    def _pick(outcomes: list[SourceOutcome]) -> AnalysisResult:
        diagnostics = {"sources": {o.name: o.to_dict() for o in outcomes}}
        for outcome in outcomes:
            if outcome.ok:
                merged = {**outcome.result.diagnostics, **diagnostics, "selectedSource": outcome.name}
                return outcome.result.model_copy(update={"diagnostics": merged})

        errors = [o.error for o in outcomes if o.error is not None]
        for error in errors:
            if isinstance(error, UpstreamSaturated):
                raise error
        if len(errors) == 1:
            raise errors[0]
        summary = "; ".join(f"{o.name}: {o.error}" for o in outcomes)
        raise AllSourcesFailed(f"All analysis sources failed ({summary})")

    @staticmethod
    def _remember(memory: ConversationMemory, query: str, answer: str) -> None:
        memory.add_message("user", query)
        memory.add_message("assistant", answer)

    # ── Chat / history ─────────────────────────────────────────────────────

    def chat(self, query: Any) -> LLMResponse:
        return self.analyst.chat(self._validate_query(query))

    def history(self, conversation_id: str) -> Optional[dict[str, Any]]:
        memory = self.store.get(conversation_id)
        if memory is None:
            return None
        return {
            "conversationId": memory.conversation_id,
            "history": memory.get_history(),
            "messageCount": len(memory),
        }

    def clear(self, conversation_id: Optional[str]) -> None:
        if conversation_id:
            self.store.delete(conversation_id)

    def health(self) -> dict[str, Any]:
        return {
            "llmConfigured": self.analyst.llm.configured,
            "missingKeys": self.settings.missing_keys(),
            "circuitBreaker": self.analyst.llm.breaker.snapshot(),
            "conversations": len(self.store),
        }


def build_service(settings: Settings) -> ResearchService:
    """Wire the default production graph: one HTTP session shared by all clients."""
    session = requests.Session()
    collector = DataCollector(
        settings,
        gateway=MarketDataGateway(settings, session=session),
        explorer=BlockExplorerClient(settings, session=session),
        analytics=AnalyticsClient(settings, session=session),
        news=NewsClient(settings, session=session),
    )
    analyst = Analyst(settings, LLMClient(settings))
    return ResearchService(settings, collector, analyst)

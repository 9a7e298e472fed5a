"""
Pydantic models shared across the Coinsight core.

All models serialise with camelCase aliases (``dataTable``, ``showTable``,
``conversationId``) to match the JSON contract of the HTTP surface, and accept
either snake_case or camelCase on input.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Model(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Dump with camelCase aliases, ready for ``jsonify``."""
        return self.model_dump(by_alias=True, mode="json")


# ── Market data ───────────────────────────────────────────────────────────────


class CryptoAsset(_Model):
    """One MarketSnapshot record: latest observed price data for a symbol."""

    id: str
    name: str
    symbol: str
    price: float = 0.0
    price_change_24h: float = 0.0
    market_cap: float = 0.0
    volume_24h: float = 0.0
    circulating_supply: float = 0.0
    source: str = ""
    is_synthetic: bool = False

    @field_validator("price", "market_cap", "volume_24h", "circulating_supply", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(number) or number < 0:
            return 0.0
        return number

    @field_validator("price_change_24h", mode="before")
    @classmethod
    def _finite(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return number if math.isfinite(number) else 0.0


class DeFiProtocol(_Model):
    """One ProtocolSnapshot record from the TVL aggregator."""

    id: str
    name: str
    symbol: str = "N/A"
    tvl: float = 0.0
    tvl_change_24h: float = 0.0
    tvl_change_7d: float = 0.0
    chains: list[str] = Field(default_factory=list)
    category: str = "Unknown"
    url: str = ""
    source: str = ""
    is_synthetic: bool = False

    @field_validator("tvl", "tvl_change_24h", "tvl_change_7d", mode="before")
    @classmethod
    def _finite(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0
        return number if math.isfinite(number) else 0.0

    @property
    def tvl_change(self) -> float:
        """The 7d change when present, else the 24h change."""
        return self.tvl_change_7d or self.tvl_change_24h


# ── Block explorer / analytics / news ─────────────────────────────────────────


class GasPrice(_Model):
    safe_low: str = "0"
    standard: str = "0"
    fast: str = "0"
    fastest: str = "0"
    suggest_base_fee: str = "0"
    last_block: str = "0"


class TokenInfo(_Model):
    contract_address: str
    token_name: str = ""
    token_symbol: str = ""
    token_decimal: str = ""
    total_supply: str = ""


class ExplorerTransaction(_Model):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    block_number: str = ""
    time_stamp: str = ""
    hash: str = ""
    from_address: str = Field(default="", alias="from")
    to_address: str = Field(default="", alias="to")
    value: str = "0"
    gas: str = ""
    gas_price: str = ""
    is_error: str = "0"


class ExplorerData(_Model):
    gas_price: Optional[GasPrice] = None
    token_info: Optional[TokenInfo] = None
    transactions: list[ExplorerTransaction] = Field(default_factory=list)
    contract_source: Optional[dict[str, Any]] = None

    def is_empty(self) -> bool:
        return not (self.gas_price or self.token_info or self.transactions or self.contract_source)


class NewsEvent(_Model):
    title: str
    description: str = ""
    source: str = ""
    url: str = ""
    published_at: str = ""
    sentiment: Literal["positive", "negative", "neutral"] = "neutral"


# ── Query context / requirements ──────────────────────────────────────────────


class QueryContext(_Model):
    timestamp: str = Field(default_factory=utc_now_iso)
    time_frame: Literal["day", "week", "month"] = "week"
    top_n: int = 5
    use_trending: bool = False
    use_random_order: bool = True


class ApiRequirements(_Model):
    """DataRequirements derived from a query; recomputed per request."""

    needs_crypto_data: bool = False
    crypto_symbols: list[str] = Field(default_factory=list)
    needs_defi_data: bool = Field(
        default=False,
        validation_alias=AliasChoices("needsDeFiData", "needsDefiData", "needs_defi_data"),
        serialization_alias="needsDeFiData",
    )
    needs_etherscan_data: bool = False
    etherscan_actions: list[str] = Field(default_factory=list)
    needs_dune_data: bool = False
    dune_query: Optional[str] = None
    analysis_type: Literal["research", "chat"] = "research"
    priority: Literal["high", "medium", "low"] = "medium"

    @field_validator("crypto_symbols", mode="before")
    @classmethod
    def _upper_unique(cls, value: Any) -> list[str]:
        symbols: list[str] = []
        for item in value or []:
            symbol = str(item).strip().upper()
            if symbol and symbol not in symbols:
                symbols.append(symbol)
        return symbols[:15]

    @field_validator("analysis_type", mode="before")
    @classmethod
    def _mode(cls, value: Any) -> str:
        return "chat" if str(value or "").strip().lower() == "chat" else "research"

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value: Any) -> str:
        priority = str(value or "").strip().lower()
        return priority if priority in ("high", "medium", "low") else "medium"

    @field_validator("dune_query", mode="before")
    @classmethod
    def _query_text(cls, value: Any) -> Optional[str]:
        if value is None or value == "":
            return None
        return str(value)

    @field_validator("etherscan_actions", mode="before")
    @classmethod
    def _known_actions(cls, value: Any) -> list[str]:
        actions: list[str] = []
        for item in value or []:
            text = str(item).strip().lower()
            # Accept loose spellings such as "gas price" or "token info".
            if "source" in text or "verif" in text or text == "contract":
                action = "contract"
            else:
                action = next((a for a in ("gas", "token", "transaction") if a in text), None)
            if action == "transaction":
                action = "transactions"
            if action and action not in actions:
                actions.append(action)
        return actions


class MarketBundle(_Model):
    """Everything fetched for one request, handed to the LLM and the normaliser."""

    crypto_data: list[CryptoAsset] = Field(default_factory=list)
    defi_projects: list[DeFiProtocol] = Field(default_factory=list)
    explorer: Optional[ExplorerData] = None
    dune_data: list[dict[str, Any]] = Field(default_factory=list)
    news_events: list[NewsEvent] = Field(default_factory=list)
    query_context: Optional[QueryContext] = None
    #: Real providers that contributed data; synthetic records are not listed.
    providers: list[str] = Field(default_factory=list)

    def has_synthetic_data(self) -> bool:
        return any(a.is_synthetic for a in self.crypto_data) or any(
            p.is_synthetic for p in self.defi_projects
        )


# ── Analysis output ───────────────────────────────────────────────────────────

Sentiment = Literal["Positive", "Negative", "Neutral"]

_SENTIMENT_ALIASES = {
    "positive": "Positive",
    "bullish": "Positive",
    "negative": "Negative",
    "bearish": "Negative",
}


class ComparisonRow(_Model):
    """A display row; numeric fields are already formatted strings."""

    project: str
    tvl: str = "N/A"
    tvl_change: str = "N/A"
    price: str = "N/A"
    price_change: str = "N/A"
    sentiment: Sentiment = "Neutral"
    news_count: Union[int, str] = 0

    @field_validator("sentiment", mode="before")
    @classmethod
    def _normalise_sentiment(cls, value: Any) -> str:
        return _SENTIMENT_ALIASES.get(str(value or "").strip().lower(), "Neutral")

    @field_validator("tvl", "tvl_change", "price", "price_change", mode="before")
    @classmethod
    def _display_string(cls, value: Any) -> str:
        if value is None or value == "":
            return "N/A"
        return str(value)

    @field_validator("news_count", mode="before")
    @classmethod
    def _count(cls, value: Any) -> Union[int, str]:
        if isinstance(value, bool) or value is None:
            return 0
        if isinstance(value, (int, float)):
            return int(value)
        text = str(value).strip()
        return int(text) if text.isdigit() else text


class Citation(_Model):
    id: str
    text: str
    source: str
    url: Optional[str] = None


class AnalysisResult(_Model):
    """The unit returned to the UI. Built once per query, never mutated after."""

    summary: str
    data: MarketBundle = Field(default_factory=MarketBundle)
    data_table: list[ComparisonRow] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    risk_factors: list[str] = Field(default_factory=list)
    market_trends: str = ""
    citations: list[Citation] = Field(default_factory=list)
    show_defi: bool = False
    show_table: bool = False
    show_etherscan: bool = False
    show_sentiment: bool = False
    show_news: bool = False
    is_crypto_query: bool = True
    conversation_id: Optional[str] = None
    model_used: Optional[str] = None
    #: True when the summary came from the synthetic fallback, not the model.
    degraded: bool = False
    diagnostics: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)


class ConversationMessage(_Model):
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

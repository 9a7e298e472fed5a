"""Response normalisation and data-driven fallbacks.

Whatever the model returns (or fails to return), the functions here make sure
an ``AnalysisResult`` always has:

- a readable, non-empty summary (``clean_summary`` / ``generate_fallback_summary``)
- a comparison table (``repair_data_table`` / ``generate_data_table``), which
  degrades from protocol rows to price rows to a fixed placeholder list
- insights, risk factors and a market-trend line built from the raw data

All functions are pure; the only randomness in this pipeline lives in the
market gateway.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from coinsight.intent import detect_top_n
from coinsight.models import ComparisonRow, CryptoAsset, DeFiProtocol, MarketBundle

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = "Analysis completed with available data. Some sources may be unavailable."

#: DeFi project → governance token.
PROJECT_SYMBOLS: dict[str, str] = {
    "Uniswap": "UNI",
    "Aave": "AAVE",
    "Compound": "COMP",
    "MakerDAO": "MKR",
    "Lido": "LDO",
    "Curve": "CRV",
    "SushiSwap": "SUSHI",
    "Yearn Finance": "YFI",
    "Synthetix": "SNX",
    "PancakeSwap": "CAKE",
    "Balancer": "BAL",
    "1inch": "1INCH",
}

#: Fixed sentiment for well-known projects; others are scored from price/TVL moves.
PROJECT_SENTIMENTS: dict[str, str] = {
    "Uniswap": "Positive",
    "Aave": "Positive",
    "Compound": "Neutral",
    "MakerDAO": "Positive",
    "Curve": "Neutral",
    "Lido": "Positive",
    "SushiSwap": "Neutral",
    "Yearn Finance": "Neutral",
    "Synthetix": "Positive",
    "PancakeSwap": "Positive",
    "Balancer": "Neutral",
    "1inch": "Neutral",
}

SENTIMENT_THRESHOLD = 2.5
PRICE_WEIGHT = 0.7
TVL_WEIGHT = 0.3

_CRYPTO_NEWS_COUNTS: dict[str, int] = {"BTC": 25, "ETH": 20}
_CRYPTO_NEWS_TIERS: list[tuple[frozenset[str], int]] = [
    (frozenset(["BNB", "SOL", "ADA", "XRP"]), 15),
    (frozenset(["DOT", "DOGE", "MATIC", "AVAX", "LINK"]), 12),
]
_DEFAULT_CRYPTO_NEWS = 8

#: Last-resort table rows: (project, sentiment, news count).
PLACEHOLDER_ROWS: list[tuple[str, str, int]] = [
    ("Bitcoin", "Positive", 25),
    ("Ethereum", "Positive", 20),
    ("BNB", "Neutral", 15),
    ("Solana", "Positive", 12),
    ("Cardano", "Neutral", 10),
]

MAX_TABLE_ROWS = 10


# ── Formatting ─────────────────────────────────────────────────────────────────


def format_currency(value: Optional[float]) -> str:
    """Format a USD amount compactly.

    Examples:
        >>> format_currency(18_116_400_000)
        '$18.12B'
        >>> format_currency(532.454)
        '$532.45'
    """
    if value is None or not isinstance(value, (int, float)) or math.isnan(value):
        return "N/A"
    for divisor, suffix in ((1e9, "B"), (1e6, "M"), (1e3, "K")):
        if value >= divisor:
            return f"${value / divisor:.2f}{suffix}"
    return f"${value:.2f}"


def format_percentage(value: Optional[float]) -> str:
    """Format a percentage change with an explicit ``+`` for gains."""
    if value is None or not isinstance(value, (int, float)) or math.isnan(value):
        return "0%"
    return f"{'+' if value > 0 else ''}{value:.2f}%"


_SUFFIXES = {"K": 1e3, "M": 1e6, "B": 1e9, "T": 1e12}
_DISPLAY_NUMBER_RE = re.compile(r"(-?\d+(?:\.\d+)?)\s*([KMBT])?", re.IGNORECASE)


def parse_display_number(text: Any) -> Optional[float]:
    """Parse display strings such as ``"$1.23B"`` back into a number.

    Examples:
        >>> parse_display_number("$1.23B")
        1230000000.0
        >>> parse_display_number("N/A") is None
        True
    """
    if isinstance(text, (int, float)) and not isinstance(text, bool):
        return float(text)
    match = _DISPLAY_NUMBER_RE.search(str(text or "").replace(",", ""))
    if not match:
        return None
    number = float(match.group(1))
    suffix = (match.group(2) or "").upper()
    return number * _SUFFIXES.get(suffix, 1.0)


_NAME_TAG_RE = re.compile(r"\s*\((?:Updated: )?\d{1,2}:\d{2}(?::\d{2})?\)\s*$")


def strip_name_tag(name: str) -> str:
    """Remove the time tag synthetic records carry, e.g. ``"Lido (14:05)"``."""
    return _NAME_TAG_RE.sub("", name or "").strip()


# ── Sentiment / news counts ────────────────────────────────────────────────────


def classify_change(change: float) -> str:
    if change > SENTIMENT_THRESHOLD:
        return "Positive"
    if change < -SENTIMENT_THRESHOLD:
        return "Negative"
    return "Neutral"


def protocol_sentiment(
    project: DeFiProtocol, asset: Optional[CryptoAsset], name: Optional[str] = None
) -> str:
    name = name or strip_name_tag(project.name)
    if name in PROJECT_SENTIMENTS:
        return PROJECT_SENTIMENTS[name]
    if asset is None:
        return "Neutral"
    return classify_change(
        asset.price_change_24h * PRICE_WEIGHT + project.tvl_change * TVL_WEIGHT
    )


def protocol_news_count(project: DeFiProtocol, bundle: MarketBundle, name: Optional[str] = None) -> int:
    """Headline matches when there is news, else a TVL-scaled estimate in [5, 30]."""
    name = name or strip_name_tag(project.name)
    if bundle.news_events:
        symbol = project.symbol if project.symbol not in ("", "N/A") else None
        matches = sum(
            1
            for event in bundle.news_events
            if name in event.title or (symbol and symbol in event.title)
        )
        if matches:
            return matches
    estimate = int(5 + project.tvl / 1e9) + (10 if abs(project.tvl_change) > 5 else 0)
    return min(30, max(5, estimate))


def crypto_news_count(symbol: str) -> int:
    if symbol in _CRYPTO_NEWS_COUNTS:
        return _CRYPTO_NEWS_COUNTS[symbol]
    for symbols, count in _CRYPTO_NEWS_TIERS:
        if symbol in symbols:
            return count
    return _DEFAULT_CRYPTO_NEWS


# ── Table generation ───────────────────────────────────────────────────────────


def _has_any(text: str, words: Iterable[str]) -> bool:
    return any(word in text for word in words)


def is_tvl_ranking(query: str) -> bool:
    """True for queries like "top protocols by TVL" or "highest TVL growth"."""
    q = query.lower()
    return _has_any(q, ("tvl", "growth", "surge")) and _has_any(q, ("highest", "top", "best"))


def is_change_ranking(query: str) -> bool:
    q = query.lower()
    return not is_tvl_ranking(query) and _has_any(q, ("change", "growth", "surge"))


def row_limit(query: str, bundle: Optional[MarketBundle] = None) -> int:
    q = query.lower()
    if "top 10" in q:
        return 10
    if "top 5" in q:
        return 5
    top_n = bundle.query_context.top_n if bundle and bundle.query_context else detect_top_n(query)
    return min(MAX_TABLE_ROWS, top_n or 5)


def match_asset(project: DeFiProtocol, assets: list[CryptoAsset]) -> Optional[CryptoAsset]:
    """Find the price record for a protocol: by symbol first, then by name."""
    name = strip_name_tag(project.name)
    token = PROJECT_SYMBOLS.get(name) or project.symbol
    symbols = {s.lower() for s in (token, project.symbol) if s and s != "N/A"}
    for asset in assets:
        if asset.symbol.lower() in symbols:
            return asset
    lowered = name.lower()
    for asset in assets:
        asset_name = strip_name_tag(asset.name).lower()
        if asset_name and (asset_name in lowered or lowered in asset_name):
            return asset
    return None


def protocol_rows(bundle: MarketBundle, query: str) -> list[ComparisonRow]:
    projects = list(bundle.defi_projects)
    if is_tvl_ranking(query):
        projects.sort(key=lambda p: p.tvl, reverse=True)
    elif is_change_ranking(query):
        projects.sort(key=lambda p: p.tvl_change, reverse=True)

    rows = []
    for project in projects[: row_limit(query, bundle)]:
        name = strip_name_tag(project.name)
        asset = match_asset(project, bundle.crypto_data)
        rows.append(ComparisonRow(
            project=project.name,
            tvl=format_currency(project.tvl),
            tvl_change=format_percentage(project.tvl_change),
            price=format_currency(asset.price) if asset else "N/A",
            price_change=format_percentage(asset.price_change_24h) if asset else "N/A",
            sentiment=protocol_sentiment(project, asset, name),
            news_count=protocol_news_count(project, bundle, name),
        ))
    return rows


def price_rows(bundle: MarketBundle) -> list[ComparisonRow]:
    return [
        ComparisonRow(
            project=asset.name,
            price=format_currency(asset.price),
            price_change=format_percentage(asset.price_change_24h),
            sentiment=classify_change(asset.price_change_24h),
            news_count=crypto_news_count(asset.symbol),
        )
        for asset in bundle.crypto_data[:MAX_TABLE_ROWS]
        if asset.name
    ]


def placeholder_rows() -> list[ComparisonRow]:
    return [
        ComparisonRow(project=name, sentiment=sentiment, news_count=count)
        for name, sentiment, count in PLACEHOLDER_ROWS
    ]


def generate_data_table(bundle: MarketBundle, query: str = "") -> list[ComparisonRow]:
    """Build comparison rows straight from the fetched data.

    Protocol rows are preferred, then price rows, then the fixed placeholder
    list, so the table is never empty.
    """
    rows = protocol_rows(bundle, query)
    if not rows:
        rows = price_rows(bundle)
        if rows:
            logger.info("No protocol data; built %d price rows", len(rows))
    if not rows:
        logger.info("No market data; using placeholder rows")
        rows = placeholder_rows()
    return rows


def coerce_rows(raw_rows: Iterable[Any]) -> list[ComparisonRow]:
    """Validate model-provided rows, skipping any without a project name."""
    rows = []
    for raw in raw_rows or []:
        if isinstance(raw, ComparisonRow):
            rows.append(raw)
            continue
        if not isinstance(raw, dict) or not str(raw.get("project") or "").strip():
            continue
        try:
            rows.append(ComparisonRow.model_validate(raw))
        except ValidationError as exc:
            logger.info("Skipping malformed table row %r: %s", raw.get("project"), exc.error_count())
    return rows


def repair_data_table(raw_rows: Iterable[Any], bundle: MarketBundle, query: str) -> list[ComparisonRow]:
    """Prefer the model's rows; synthesise when empty; enforce ranking rules.

    For TVL ranking queries the rows are re-sorted by TVL (rows without a
    readable TVL go last), and an explicit "top N" caps the row count. No table
    exceeds ``MAX_TABLE_ROWS``.
    """
    rows = coerce_rows(raw_rows)
    if not rows:
        return generate_data_table(bundle, query)

    if is_tvl_ranking(query):
        def tvl_key(row: ComparisonRow) -> float:
            value = parse_display_number(row.tvl)
            return value if value is not None else -1.0

        rows.sort(key=tvl_key, reverse=True)

    requested = detect_top_n(query, default=0)
    if requested:
        rows = rows[:requested]
    return rows[:MAX_TABLE_ROWS]


# ── Summary text ───────────────────────────────────────────────────────────────

_LEADING_LABEL_RE = re.compile(r'"summary":\s*"|^summary:\s*"|^"')
_TRAILING_QUOTE_RE = re.compile(r'"\s*$|",$')
_EXCESS_NEWLINES_RE = re.compile(r"\n\s*\n\s*\n")
_JSON_OBJECT_RE = re.compile(r"\{.*?\}", re.DOTALL)
_JSON_ARRAY_RE = re.compile(r"\[.*?\]", re.DOTALL)
_LABELS_RE = re.compile(r"(?:summary|dataTable|sources):", re.IGNORECASE)


def clean_summary(text: Optional[str]) -> str:
    """Strip JSON artefacts the model sometimes leaves in the summary."""
    if not text:
        return ""
    cleaned = _LEADING_LABEL_RE.sub("", text, count=1)
    cleaned = _TRAILING_QUOTE_RE.sub("", cleaned, count=1)
    cleaned = cleaned.replace('\\"', '"')
    cleaned = _EXCESS_NEWLINES_RE.sub("\n\n", cleaned).strip()

    if cleaned.startswith("{") and cleaned.endswith("}"):
        cleaned = _JSON_OBJECT_RE.sub("", cleaned)
        cleaned = _JSON_ARRAY_RE.sub("", cleaned)
        cleaned = _LABELS_RE.sub("", cleaned.replace('"', "")).strip()
    return cleaned


def summary_is_usable(text: str) -> bool:
    return bool(text) and len(text) >= 50 and "{" not in text and "[" not in text


def market_direction(bundle: MarketBundle) -> str:
    """``"positive"``, ``"negative"`` or ``"mixed"`` by counting signed moves."""
    changes = [a.price_change_24h for a in bundle.crypto_data]
    changes += [p.tvl_change_24h or p.tvl_change_7d for p in bundle.defi_projects]
    up = sum(1 for c in changes if c > 0)
    down = sum(1 for c in changes if c < 0)
    if up > down:
        return "positive"
    if down > up:
        return "negative"
    return "mixed"


_CONCLUSIONS: dict[str, dict[str, str]] = {
    "invest": {
        "positive": (
            "the market is showing mostly positive momentum. Consider researching projects "
            "with strong fundamentals and consistent growth before making investment decisions. "
            "Always diversify your portfolio and invest only what you can afford to lose."
        ),
        "negative": (
            "the market is showing some bearish signals. Consider waiting for stability or look "
            "for projects that have shown resilience during downturns. Risk management should "
            "be prioritized in current conditions."
        ),
        "mixed": (
            "the market shows mixed signals. Focus on projects with strong fundamentals and "
            "consider dollar-cost averaging rather than lump-sum investments given the current "
            "volatility."
        ),
    },
    "trend": {
        "positive": (
            "the current trend appears bullish with most assets showing positive price action. "
            "Keep an eye on trading volumes and potential resistance levels that might indicate "
            "trend reversals."
        ),
        "negative": (
            "the trend appears bearish in the short term with several assets showing price "
            "declines. Watch for potential support levels where reversals might occur."
        ),
        "mixed": (
            "we're seeing consolidation across many assets with mixed signals. This often "
            "precedes significant market movements, so monitor key technical indicators for "
            "breakout signals."
        ),
    },
    "general": {
        "positive": (
            "the overall crypto market shows strength at the moment. Keep monitoring key "
            "resistance levels and news events that might impact this positive trend."
        ),
        "negative": (
            "caution is advised as several assets are showing downward pressure. Consider "
            "watching key support levels and market catalysts that could reverse this trend."
        ),
        "mixed": (
            "the market lacks clear direction at the moment. This might present opportunities "
            "for both entries and exits depending on your investment strategy and risk tolerance."
        ),
    },
}


def _query_kind(query: str) -> str:
    q = query.lower()
    if "invest" in q or "buy" in q:
        return "invest"
    if "trend" in q or "movement" in q:
        return "trend"
    return "general"


def dynamic_conclusion(query: str, bundle: MarketBundle) -> str:
    return _CONCLUSIONS[_query_kind(query)][market_direction(bundle)]


def _defi_paragraph(projects: list[DeFiProtocol], mentions_top: bool, mentions_price: bool) -> str:
    parts = [f"Analysis of the DeFi market reveals {len(projects)} active protocols."]
    if mentions_top or not mentions_price:
        names = ", ".join(p.name or "Unknown" for p in projects[:3])
        parts.append(f"The top performers by Total Value Locked (TVL) include {names}.")
    total_tvl = sum(p.tvl for p in projects)
    if total_tvl > 0:
        parts.append(
            f"Total Value Locked across all protocols is approximately ${total_tvl / 1e9:.1f}B."
        )
    ranked = sorted(projects, key=lambda p: p.tvl_change, reverse=True)
    gainer, loser = ranked[0], ranked[-1]
    if gainer.tvl_change > 0:
        parts.append(
            f"{gainer.name} shows the highest growth with a {gainer.tvl_change:.2f}% increase in TVL."
        )
    if loser.tvl_change < 0:
        parts.append(f"{loser.name} has experienced a {abs(loser.tvl_change):.2f}% decrease in TVL.")
    return " ".join(parts)


def _price_sentence(label: str, asset: CryptoAsset) -> str:
    return (
        f"{label} trading at ${asset.price:,.2f} with a 24h change of "
        f"{format_percentage(asset.price_change_24h)}."
    )


def _price_paragraph(assets: list[CryptoAsset]) -> str:
    now = datetime.now()
    text = f"As of {now:%B} {now.day}, {now.year}, "
    by_symbol = {a.symbol: a for a in assets}
    sentences = []
    if "BTC" in by_symbol:
        sentences.append(_price_sentence("Bitcoin is currently", by_symbol["BTC"]))
    if "ETH" in by_symbol:
        sentences.append(_price_sentence("Ethereum is", by_symbol["ETH"]))
    text += " ".join(sentences) if sentences else "the tracked assets are summarised below."

    others = sorted(
        (a for a in assets if a.symbol not in ("BTC", "ETH")),
        key=lambda a: a.price_change_24h,
        reverse=True,
    )
    if others:
        gainer, loser = others[0], others[-1]
        text += "\n\nAmong altcoins, "
        if gainer.price_change_24h > 0:
            text += (
                f"{gainer.name} ({gainer.symbol}) is the top performer with a "
                f"{format_percentage(gainer.price_change_24h)} price change, currently at "
                f"${gainer.price:,.2f}. "
            )
        if loser.price_change_24h < 0:
            text += (
                f"{loser.name} ({loser.symbol}) shows the largest decline at "
                f"{loser.price_change_24h:.2f}%, trading at ${loser.price:,.2f}. "
            )
        if gainer.price_change_24h <= 0 and loser.price_change_24h >= 0:
            text += "prices were broadly flat over the last 24 hours."
    return text.rstrip()


def generate_fallback_summary(bundle: MarketBundle, query: str) -> str:
    """Compose a plain-language summary from whatever data was fetched."""
    q = query.lower()
    if _has_any(q, ("defi", "protocol", "tvl")):
        topic = "DeFi protocols"
    elif _has_any(q, ("bitcoin", "btc")):
        topic = "Bitcoin"
    elif _has_any(q, ("ethereum", "eth")):
        topic = "Ethereum"
    else:
        topic = "the crypto market"

    paragraphs = [f"Based on your query about {topic}, here's my analysis:"]
    if bundle.defi_projects:
        paragraphs.append(_defi_paragraph(
            bundle.defi_projects,
            mentions_top=_has_any(q, ("top", "best", "leading")),
            mentions_price=_has_any(q, ("price", "market", "trading")),
        ))
    if bundle.crypto_data:
        paragraphs.append(_price_paragraph(bundle.crypto_data))
    if not bundle.defi_projects and not bundle.crypto_data:
        paragraphs.append(
            "Live market data is currently unavailable from every provider, so this overview "
            "is limited to general context."
        )
    if bundle.has_synthetic_data():
        paragraphs.append(
            "Note: some figures are simulated estimates because live providers were unreachable."
        )
    paragraphs.append(f"In summary, {dynamic_conclusion(query, bundle)}")
    return "\n\n".join(paragraphs) or DEFAULT_SUMMARY


# ── Insights / risks / trend ───────────────────────────────────────────────────


def fallback_insights(query: str, bundle: MarketBundle) -> list[str]:
    insights = []
    if bundle.defi_projects:
        leader = max(bundle.defi_projects, key=lambda p: p.tvl)
        insights.append(f"{leader.name} leads the tracked protocols with {format_currency(leader.tvl)} TVL.")
    if bundle.crypto_data:
        mover = max(bundle.crypto_data, key=lambda a: abs(a.price_change_24h))
        insights.append(
            f"{mover.symbol} is the biggest 24h mover at {format_percentage(mover.price_change_24h)}."
        )
    kind = _query_kind(query)
    if kind == "invest":
        insights.append(
            "Cryptocurrency investments carry significant risk. Always conduct thorough research, "
            "diversify your portfolio, and invest only what you can afford to lose."
        )
    elif kind == "trend" or "market" in query.lower():
        insights.append(
            "Market trends show varying patterns across different assets. Focus on fundamentals "
            "and long-term potential rather than short-term price movements when evaluating projects."
        )
    else:
        insights.append(
            "The crypto market is constantly evolving. Stay informed about project developments, "
            "regulatory changes, and broader market conditions to make better decisions."
        )
    return insights


def fallback_risk_factors(bundle: MarketBundle) -> list[str]:
    risks = [
        "Crypto assets are highly volatile and prices can move sharply within hours.",
        "Smart contract and protocol risk: exploits can drain TVL regardless of fundamentals.",
    ]
    if any(abs(a.price_change_24h) > 10 for a in bundle.crypto_data):
        risks.append("At least one tracked asset moved more than 10% in 24 hours.")
    if bundle.has_synthetic_data():
        risks.append("Part of this analysis uses simulated data; verify figures before acting.")
    return risks


def fallback_market_trend(bundle: MarketBundle) -> str:
    direction = market_direction(bundle)
    if direction == "positive":
        return "Bullish: most tracked assets and protocols are up."
    if direction == "negative":
        return "Bearish: most tracked assets and protocols are down."
    return "Mixed: no clear direction across tracked assets."

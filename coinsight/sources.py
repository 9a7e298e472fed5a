"""Provider registry and source-name normalisation.

The UI turns every name in ``AnalysisResult.sources`` into a hyperlink via a
fixed lookup table, so only registered providers may appear there, and only
the ones that actually contributed data to the answer.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Optional

from coinsight.models import Citation, MarketBundle

logger = logging.getLogger(__name__)


# ── Registry ───────────────────────────────────────────────────────────────────

COINMARKETCAP = "CoinMarketCap"
COINGECKO = "CoinGecko"
DEFILLAMA = "DeFiLlama"
DUNE = "Dune Analytics"
ETHERSCAN = "Etherscan"
CRYPTOPANIC = "CryptoPanic"
ANTHROPIC = "Anthropic"

#: Every provider the UI knows how to link to.
PROVIDER_LINKS: dict[str, str] = {
    COINMARKETCAP: "https://coinmarketcap.com/",
    COINGECKO: "https://coingecko.com/",
    DEFILLAMA: "https://defillama.com/",
    DUNE: "https://dune.com/",
    ETHERSCAN: "https://etherscan.io/",
    CRYPTOPANIC: "https://cryptopanic.com/",
    ANTHROPIC: "https://www.anthropic.com/",
}

_PRICE_PROVIDERS = (COINMARKETCAP, COINGECKO)

#: Lower-cased names the model tends to write, mapped to candidate providers.
#: The first candidate that was actually used wins.
_ALIASES: dict[str, tuple[str, ...]] = {
    "crypto market data": _PRICE_PROVIDERS,
    "market data": _PRICE_PROVIDERS,
    "price data": _PRICE_PROVIDERS,
    "cmc": (COINMARKETCAP,),
    "coin market cap": (COINMARKETCAP,),
    "coingecko api": (COINGECKO,),
    "defi llama": (DEFILLAMA,),
    "defillama api": (DEFILLAMA,),
    "llama": (DEFILLAMA,),
    "dune": (DUNE,),
    "etherscan api": (ETHERSCAN,),
    "blockchain data": (ETHERSCAN,),
    "on-chain data": (ETHERSCAN, DUNE),
    "news": (CRYPTOPANIC,),
    "crypto panic": (CRYPTOPANIC,),
    "claude": (ANTHROPIC,),
    "anthropic claude": (ANTHROPIC,),
}

_CANONICAL = {name.lower(): name for name in PROVIDER_LINKS}
_NOISE_RE = re.compile(r"[\s\"'`.]+")


def _resolve(raw: str, used: set[str]) -> Optional[str]:
    key = _NOISE_RE.sub(" ", raw).strip().lower()
    if key in _CANONICAL:
        return _CANONICAL[key]
    for candidate in _ALIASES.get(key, ()):
        if candidate in used:
            return candidate
    return None


def normalize_sources(raw: Iterable[str], used: Iterable[str]) -> list[str]:
    """Map model-reported source names onto registered, actually-used providers.

    Unknown names and providers that contributed nothing are dropped. When
    nothing survives, every used provider is listed instead.

    Args:
        raw: Source names as reported by the model (any spelling).
        used: Provider names that really supplied data for this answer.

    Returns:
        Registered provider names, de-duplicated, in reported order.

    Examples:
        >>> normalize_sources(["Crypto Market Data", "Dune", "Bloomberg"], ["CoinGecko", "DeFiLlama"])
        ['CoinGecko']
    """
    used_set = {name for name in used if name in PROVIDER_LINKS}
    sources: list[str] = []
    dropped: list[str] = []

    for name in raw or []:
        resolved = _resolve(str(name), used_set)
        if resolved is None or resolved not in used_set:
            dropped.append(str(name))
            continue
        if resolved not in sources:
            sources.append(resolved)

    if dropped:
        logger.info("Dropped unsupported sources: %s", dropped)
    if not sources:
        sources = [name for name in PROVIDER_LINKS if name in used_set]
    return sources


def providers_used(bundle: MarketBundle, model_used: Optional[str] = None) -> list[str]:
    """Registered providers that contributed real (non-synthetic) data."""
    used = [name for name in bundle.providers if name in PROVIDER_LINKS]
    if model_used and ANTHROPIC not in used:
        used.append(ANTHROPIC)
    return used


_CITATION_TEXT: dict[str, str] = {
    COINMARKETCAP: "Token prices, market caps and 24h volume",
    COINGECKO: "Token prices and 24h changes",
    DEFILLAMA: "Protocol TVL, TVL changes and categories",
    DUNE: "On-chain analytics query results",
    ETHERSCAN: "Ethereum gas, token and transaction data",
    CRYPTOPANIC: "Recent crypto news headlines",
    ANTHROPIC: "AI-generated analysis of the collected data",
}


def build_citations(bundle: MarketBundle, sources: list[str]) -> list[Citation]:
    """One citation per listed provider, with what it contributed."""
    counts = {
        COINMARKETCAP: sum(1 for a in bundle.crypto_data if a.source == COINMARKETCAP),
        COINGECKO: sum(1 for a in bundle.crypto_data if a.source == COINGECKO),
        DEFILLAMA: sum(1 for p in bundle.defi_projects if p.source == DEFILLAMA),
        DUNE: len(bundle.dune_data),
        CRYPTOPANIC: len(bundle.news_events),
    }
    citations = []
    for index, name in enumerate(sources, start=1):
        text = _CITATION_TEXT.get(name, name)
        if counts.get(name):
            text = f"{text} ({counts[name]} records)"
        citations.append(
            Citation(id=str(index), text=text, source=name, url=PROVIDER_LINKS.get(name))
        )
    return citations

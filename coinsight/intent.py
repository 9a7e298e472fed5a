"""Query intent resolution.

Responsibilities:
- Decide whether a query is about crypto at all (non-crypto queries get a
  canned capability message and no upstream calls)
- Extract the time frame, "top N" size and trending/ranking hints
- Build focus-token and focus-project lists from keyword groups
- Derive UI render flags and block-explorer needs
- Produce ``ApiRequirements`` without calling the LLM (the always-available
  fallback for ``Analyst.classify_requirements``)

Everything here is a pure function of the query string, except the optional
shuffling of focus lists which is driven by an injectable ``random.Random``.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from coinsight.models import ApiRequirements, QueryContext

logger = logging.getLogger(__name__)

#: Canned reply for queries outside the crypto domain.
CAPABILITIES_MESSAGE = (
    "I'm a specialized crypto research assistant designed to analyze cryptocurrency "
    "markets, DeFi protocols, and blockchain data. Your question \"{query}\" appears "
    "to be outside my area of expertise.\n\n"
    "I can help you with:\n"
    "• Cryptocurrency price analysis and market trends\n"
    "• DeFi protocol comparisons and TVL data\n"
    "• Technical and fundamental analysis of digital assets\n\n"
    "Please ask me about cryptocurrency, blockchain, DeFi, or related topics, and I'll "
    "provide comprehensive analysis using real-time data from multiple sources."
)


# ── Intent variants ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class NonCryptoIntent:
    """The query is outside the crypto domain."""

    query: str


@dataclass(frozen=True)
class CryptoIntent:
    """A crypto query with the tokens and projects worth fetching."""

    focus_tokens: list[str] = field(default_factory=list)
    focus_projects: list[str] = field(default_factory=list)
    time_frame: str = "week"
    use_trending: bool = False
    use_random_order: bool = True
    top_n: int = 5

    def query_context(self) -> QueryContext:
        return QueryContext(
            time_frame=self.time_frame,
            top_n=self.top_n,
            use_trending=self.use_trending,
            use_random_order=self.use_random_order,
        )


Intent = Union[NonCryptoIntent, CryptoIntent]


@dataclass(frozen=True)
class RenderFlags:
    show_defi: bool
    show_table: bool
    is_crypto_query: bool


# ── Crypto-domain detection ────────────────────────────────────────────────────

#: Domain vocabulary; matched as whole words with an optional plural "s".
_CRYPTO_TERMS: frozenset[str] = frozenset([
    "crypto", "cryptocurrency", "cryptocurrencies", "bitcoin", "btc", "ethereum",
    "eth", "ether", "defi", "blockchain", "token", "coin", "altcoin", "stablecoin",
    "memecoin", "tvl", "protocol", "nft", "web3", "metaverse", "dao", "yield",
    "staking", "stake", "liquidity", "swap", "amm", "dex", "cex", "wallet",
    "airdrop", "gas", "gwei", "validator", "mining", "halving", "hodl", "fomo",
    "fud", "apy", "apr", "marketcap", "market cap", "bull", "bear", "bullish",
    "bearish", "layer 1", "layer 2", "l1", "l2", "rollup", "zk", "bridge",
    "oracle", "mev", "perpetual", "perp", "leverage", "onchain", "on-chain",
    "smart contract", "solana", "sol", "cardano", "ada", "polkadot", "dot",
    "avalanche", "avax", "polygon", "matic", "arbitrum", "optimism", "cosmos",
    "atom", "near", "bnb", "xrp", "doge", "dogecoin", "usdt", "usdc", "dai",
    "link", "chainlink", "uni", "uniswap", "aave", "compound", "maker",
    "makerdao", "mkr", "lido", "curve", "sushi", "sushiswap", "pancakeswap",
    "balancer", "yearn", "gmx", "dydx", "synthetix", "etherscan", "defillama",
    "coingecko", "coinmarketcap", "dune", "satoshi", "sats", "lightning",
])

_CRYPTO_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(t) for t in sorted(_CRYPTO_TERMS, key=len, reverse=True)) + r")s?\b",
    re.IGNORECASE,
)

_SHOW_DEFI_RE = re.compile(r"defi|protocol|tvl|project|compare|top|performance|growth", re.IGNORECASE)
_SHOW_TABLE_RE = re.compile(r"compare|table|list|top|performance|summary|metrics", re.IGNORECASE)


def is_crypto_query(query: str) -> bool:
    """Return True when the query mentions any crypto-domain term.

    Examples:
        >>> is_crypto_query("Compare the top 5 DeFi protocols by TVL")
        True
        >>> is_crypto_query("What's the weather today?")
        False
    """
    return bool(_CRYPTO_RE.search(query or ""))


def render_flags(query: str) -> RenderFlags:
    """Decide which UI sections the query calls for."""
    if not is_crypto_query(query):
        return RenderFlags(show_defi=False, show_table=False, is_crypto_query=False)
    return RenderFlags(
        show_defi=bool(_SHOW_DEFI_RE.search(query)),
        show_table=bool(_SHOW_TABLE_RE.search(query)),
        is_crypto_query=True,
    )


# ── Time frame / size hints ────────────────────────────────────────────────────

_TIME_FRAME_SIGNALS: list[tuple[str, tuple[str, ...]]] = [
    ("day", ("today", "24h", "daily", "last day")),
    ("week", ("week", "weekly", "7 day")),
    ("month", ("month", "monthly", "30 day")),
]
_TRENDING_SIGNALS = (
    "trending", "popular", "hot", "highest surge", "biggest gain", "most active", "viral",
)
_RANKING_SIGNALS = ("rank", "top", "highest", "best performing")

_TOP_TEN_RE = re.compile(r"\b10 (?:best|highest|biggest)\b")
_TOP_THREE_RE = re.compile(r"\b3 (?:best|highest|biggest)\b")
_TOP_N_RE = re.compile(r"\btop (\d+)\b")


def detect_time_frame(query: str) -> str:
    """Return ``"day"``, ``"week"`` or ``"month"`` (default ``"week"``)."""
    query_lower = query.lower()
    for frame, signals in _TIME_FRAME_SIGNALS:
        if any(sig in query_lower for sig in signals):
            return frame
    return "week"


def detect_top_n(query: str, default: int = 5) -> int:
    """Extract the requested result count from phrases like "top 10".

    Examples:
        >>> detect_top_n("top 10 lending protocols")
        10
        >>> detect_top_n("3 biggest gainers")
        3
        >>> detect_top_n("ethereum gas")
        5
    """
    query_lower = query.lower()
    if "top 10" in query_lower or _TOP_TEN_RE.search(query_lower):
        return 10
    if "top 3" in query_lower or _TOP_THREE_RE.search(query_lower):
        return 3
    match = _TOP_N_RE.search(query_lower)
    if match:
        return max(1, min(int(match.group(1)), 50))
    return default


# ── Focus lists ────────────────────────────────────────────────────────────────

_BASE_TOKENS = ["BTC", "ETH"]

#: DeFi sub-categories, checked in order; the first match wins.
_DEFI_CATEGORIES: list[tuple[tuple[str, ...], list[str], list[str]]] = [
    (
        ("lending", "borrow"),
        ["AAVE", "COMP", "MKR"],
        ["Aave", "Compound", "MakerDAO", "Maple Finance", "TrueFi"],
    ),
    (
        ("dex", "exchange", "swap"),
        ["UNI", "CAKE", "CRV", "SUSHI", "BAL", "DYDX"],
        ["Uniswap", "PancakeSwap", "Curve", "SushiSwap", "Balancer", "dYdX"],
    ),
    (
        ("staking", "yield"),
        ["LDO", "YFI", "CAKE", "CVX", "MATIC"],
        ["Lido", "Yearn Finance", "PancakeSwap", "Convex", "Stake DAO"],
    ),
    (
        ("synthetics", "derivatives"),
        ["SNX", "PERP", "GMX", "DYDX"],
        ["Synthetix", "Perpetual Protocol", "GMX", "dYdX"],
    ),
    (
        ("insurance", "cover"),
        ["INSUR", "NXM", "UNN"],
        ["InsurAce", "Nexus Mutual", "Union"],
    ),
]
_GENERIC_DEFI_TOKENS = ["UNI", "AAVE", "COMP", "MKR", "CRV", "SUSHI", "YFI", "SNX", "LDO", "CVX", "FXS", "BAL"]
_GENERIC_DEFI_PROJECTS = [
    "Uniswap", "Aave", "Compound", "MakerDAO", "Lido", "Curve", "SushiSwap",
    "Yearn Finance", "Convex", "Frax",
]

#: Additive keyword groups (every matching group contributes).
_SECTOR_GROUPS: list[tuple[tuple[str, ...], list[str], list[str]]] = [
    (
        ("layer 1", "l1", "blockchain"),
        ["SOL", "AVAX", "ADA", "DOT", "ATOM", "NEAR"],
        ["Solana", "Avalanche", "Cardano", "Polkadot", "Cosmos", "NEAR Protocol"],
    ),
    (
        ("layer 2", "l2", "scaling"),
        ["MATIC", "ARB", "OP", "IMX"],
        ["Polygon", "Arbitrum", "Optimism", "Immutable X"],
    ),
    (
        ("nft", "gaming", "metaverse"),
        ["MANA", "SAND", "AXS", "IMX", "APE", "ILV"],
        ["Decentraland", "The Sandbox", "Axie Infinity", "ApeCoin", "Illuvium"],
    ),
]

_BROAD_TOKENS = ["UNI", "SOL", "AVAX", "MATIC", "LINK", "DOT", "AAVE", "CRV", "LDO", "DYDX", "GMX"]
_BROAD_PROJECTS = [
    "Uniswap", "Lido", "Aave", "Curve", "Solana", "Avalanche", "Polygon",
    "Chainlink", "dYdX", "GMX",
]

_TRENDING_TOKENS = ["ETH", "SOL", "AVAX", "MATIC", "LDO", "ARB", "OP"]
_TRENDING_PROJECTS = ["Lido", "Uniswap", "GMX", "Arbitrum", "Optimism", "Solana"]

_SHORT_KEYWORD_RE_CACHE: dict[str, re.Pattern[str]] = {}


def _mentions(query_lower: str, keyword: str) -> bool:
    # Two-letter keywords ("l1", "l2") only count as whole words.
    if len(keyword) > 2:
        return keyword in query_lower
    pattern = _SHORT_KEYWORD_RE_CACHE.get(keyword)
    if pattern is None:
        pattern = re.compile(rf"\b{re.escape(keyword)}\b")
        _SHORT_KEYWORD_RE_CACHE[keyword] = pattern
    return bool(pattern.search(query_lower))


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def resolve_intent(
    query: str,
    allow_random: bool = True,
    rng: Optional[random.Random] = None,
) -> Intent:
    """Resolve a query into a ``NonCryptoIntent`` or a ``CryptoIntent``.

    Args:
        query: The raw query string.
        allow_random: When False the focus lists are deterministic: no
            shuffling, and trending promotion takes the head of each list.
        rng: Random source for shuffling (defaults to the ``random`` module).

    Returns:
        The resolved intent variant.
    """
    if not is_crypto_query(query):
        return NonCryptoIntent(query=query)

    rng = rng or random.Random()
    query_lower = query.lower()

    time_frame = detect_time_frame(query)
    use_trending = any(sig in query_lower for sig in _TRENDING_SIGNALS)
    ranked = any(sig in query_lower for sig in _RANKING_SIGNALS)
    use_random_order = allow_random and not ranked
    top_n = detect_top_n(query)

    tokens = list(_BASE_TOKENS)
    projects: list[str] = []

    if "defi" in query_lower or "protocol" in query_lower:
        for keywords, cat_tokens, cat_projects in _DEFI_CATEGORIES:
            if any(_mentions(query_lower, kw) for kw in keywords):
                tokens += cat_tokens
                projects = list(cat_projects)
                break
        else:
            tokens += _GENERIC_DEFI_TOKENS
            projects = list(_GENERIC_DEFI_PROJECTS)

    for keywords, group_tokens, group_projects in _SECTOR_GROUPS:
        if any(_mentions(query_lower, kw) for kw in keywords):
            tokens += group_tokens
            projects += group_projects

    # Nothing specific: fall back to a broad cross-sector list.
    if len(projects) <= 2 and "bitcoin" not in query_lower and "ethereum" not in query_lower:
        tokens += _BROAD_TOKENS
        projects = list(_BROAD_PROJECTS)

    tokens = _dedupe(tokens)
    projects = _dedupe(projects)

    # Truncation bounds downstream request sizes.
    if use_random_order:
        rng.shuffle(tokens)
        rng.shuffle(projects)
        tokens = tokens[: min(len(tokens), rng.randint(8, 12))]
        projects = projects[: min(len(projects), rng.randint(6, 8))]
    elif use_trending:
        trending_tokens = list(_TRENDING_TOKENS)
        trending_projects = list(_TRENDING_PROJECTS)
        if allow_random:
            rng.shuffle(trending_tokens)
            rng.shuffle(trending_projects)
        trending_tokens = trending_tokens[:3]
        trending_projects = trending_projects[:3]
        tokens = (trending_tokens + [t for t in tokens if t not in trending_tokens])[:10]
        projects = (trending_projects + [p for p in projects if p not in trending_projects])[:8]

    logger.info(
        "Intent tokens=%s projects=%s time_frame=%s trending=%s random=%s top_n=%d",
        tokens, projects, time_frame, use_trending, use_random_order, top_n,
    )
    return CryptoIntent(
        focus_tokens=tokens,
        focus_projects=projects,
        time_frame=time_frame,
        use_trending=use_trending,
        use_random_order=use_random_order,
        top_n=top_n,
    )


# ── Block explorer / analytics gating ──────────────────────────────────────────

#: Block-explorer vocabulary, kept separate from the domain classifier.
_EXPLORER_SIGNALS = (
    "ethereum", "eth", "contract", "transaction", "gas", "blockchain", "address", "token",
)
_ADDRESS_RE = re.compile(r"\b0x[a-fA-F0-9]{40}\b")
_ANALYTICS_SIGNALS = ("dune", "on-chain analytics", "onchain analytics", "analytics query")
_DUNE_QUERY_ID_RE = re.compile(r"\b(?:dune|query)\s*(?:id\s*)?#?(\d{3,})\b", re.IGNORECASE)


def extract_address(query: str) -> Optional[str]:
    """Return the first ``0x``-prefixed 40-hex-digit address in the query."""
    match = _ADDRESS_RE.search(query or "")
    return match.group(0) if match else None


def needs_explorer_data(query: str) -> bool:
    query_lower = query.lower()
    if extract_address(query):
        return True
    return any(_mentions(query_lower, sig) for sig in _EXPLORER_SIGNALS)


_CONTRACT_SOURCE_RE = re.compile(r"\b(?:source code|verified|audit(?:ed)?|abi)\b")


def explorer_actions(query: str) -> list[str]:
    """Pick the block-explorer calls a query needs; gas is the default."""
    query_lower = query.lower()
    actions: list[str] = []
    if any(sig in query_lower for sig in ("gas", "fee", "gwei")):
        actions.append("gas")
    if "token" in query_lower or "contract" in query_lower:
        actions.append("token")
    if "transaction" in query_lower or "activity" in query_lower or extract_address(query):
        actions.append("transactions")
    if extract_address(query) and _CONTRACT_SOURCE_RE.search(query_lower):
        actions.append("contract")
    return actions or ["gas"]


def extract_dune_query_id(query: str) -> Optional[str]:
    """Return a saved Dune query id mentioned as e.g. "dune query 1234567"."""
    match = _DUNE_QUERY_ID_RE.search(query or "")
    return match.group(1) if match else None


def keyword_requirements(query: str, mode: str = "research") -> ApiRequirements:
    """Derive ``ApiRequirements`` from keywords alone (no LLM call).

    Non-crypto queries yield requirements with every ``needs_*`` flag False.
    """
    intent = resolve_intent(query, allow_random=False)
    if isinstance(intent, NonCryptoIntent):
        return ApiRequirements(analysis_type=mode)

    flags = render_flags(query)
    query_lower = query.lower()
    wants_explorer = needs_explorer_data(query)
    dune_id = extract_dune_query_id(query)
    wants_dune = dune_id is not None or any(sig in query_lower for sig in _ANALYTICS_SIGNALS)

    return ApiRequirements(
        needs_crypto_data=True,
        crypto_symbols=intent.focus_tokens,
        needs_defi_data=flags.show_defi or bool(intent.focus_projects),
        needs_etherscan_data=wants_explorer,
        etherscan_actions=explorer_actions(query) if wants_explorer else [],
        needs_dune_data=wants_dune,
        dune_query=dune_id or (query if wants_dune else None),
        analysis_type=mode,
        priority="high" if flags.show_table else "medium",
    )

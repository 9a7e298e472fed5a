"""Price and TVL lookups with a three-tier degrade.

Prices:  CoinMarketCap (keyed) → CoinGecko (free) → synthetic values
TVL:     DeFiLlama (free)      → synthetic protocol list

Resolution is per symbol: CoinGecko is only asked for the symbols
CoinMarketCap did not resolve, and only the remainder is synthesised.
Synthetic records carry ``is_synthetic=True`` and a visible time tag in their
name so stale or fabricated values are never mistaken for live data.

Neither public method raises; every upstream failure is logged and degraded.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

import requests

from coinsight.models import CryptoAsset, DeFiProtocol
from coinsight.sources import COINGECKO, COINMARKETCAP, DEFILLAMA

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

COINMARKETCAP_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"
COINGECKO_URL = "https://api.coingecko.com/api/v3/simple/price"
DEFILLAMA_URL = "https://api.llama.fi/protocols"

SYNTHETIC = "Synthetic"

#: Symbol → CoinGecko id. Unlisted symbols are tried as their lower-cased form.
COINGECKO_IDS: dict[str, str] = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "USDT": "tether",
    "USDC": "usd-coin",
    "BNB": "binancecoin",
    "ADA": "cardano",
    "SOL": "solana",
    "DOT": "polkadot",
    "AVAX": "avalanche-2",
    "MATIC": "matic-network",
    "UNI": "uniswap",
    "LINK": "chainlink",
    "AAVE": "aave",
    "COMP": "compound-governance-token",
    "MKR": "maker",
    "CRV": "curve-dao-token",
    "SUSHI": "sushi",
    "YFI": "yearn-finance",
    "SNX": "havven",
    "LDO": "lido-dao",
    "CAKE": "pancakeswap-token",
    "BAL": "balancer",
    "1INCH": "1inch",
    "DYDX": "dydx",
    "GMX": "gmx",
    "PERP": "perpetual-protocol",
    "JOE": "trader-joe",
    "CVX": "convex-finance",
    "FXS": "frax-share",
    "XRP": "ripple",
    "DOGE": "dogecoin",
    "ATOM": "cosmos",
    "NEAR": "near",
    "ARB": "arbitrum",
    "OP": "optimism",
}

#: Base (price, 24h change %) used to synthesise plausible prices.
_BASE_PRICES: dict[str, tuple[float, float]] = {
    "BTC": (65432.10, 2.45),
    "ETH": (3234.56, -1.23),
    "USDT": (1.00, 0.01),
    "USDC": (1.00, -0.02),
    "BNB": (532.45, 1.89),
    "UNI": (12.34, -3.45),
    "AAVE": (87.65, 4.56),
    "COMP": (123.45, -2.34),
    "MKR": (1234.56, 1.23),
    "LDO": (2.34, 5.67),
}

#: Protocols the synthetic TVL tier picks from.
_BASE_PROTOCOLS: list[dict[str, Any]] = [
    {"id": "uniswap", "name": "Uniswap", "symbol": "UNI", "tvl": 18_116_400_000,
     "category": "Dexes", "url": "https://uniswap.org",
     "chains": ["Ethereum", "Polygon", "Arbitrum", "Optimism"]},
    {"id": "aave-v3", "name": "AAVE V3", "symbol": "AAVE", "tvl": 3_584_200_000,
     "category": "Lending", "url": "https://aave.com",
     "chains": ["Ethereum", "Polygon", "Avalanche"]},
    {"id": "lido", "name": "Lido", "symbol": "LDO", "tvl": 3_407_600_000,
     "category": "Liquid Staking", "url": "https://lido.fi", "chains": ["Ethereum"]},
    {"id": "curve", "name": "Curve Finance", "symbol": "CRV", "tvl": 4_300_000_000,
     "category": "Dexes", "url": "https://curve.fi",
     "chains": ["Ethereum", "Polygon", "Arbitrum"]},
    {"id": "maker", "name": "MakerDAO", "symbol": "MKR", "tvl": 2_700_000_000,
     "category": "CDP", "url": "https://makerdao.com", "chains": ["Ethereum"]},
    {"id": "compound", "name": "Compound", "symbol": "COMP", "tvl": 1_900_000_000,
     "category": "Lending", "url": "https://compound.finance", "chains": ["Ethereum"]},
    {"id": "pancakeswap", "name": "PancakeSwap", "symbol": "CAKE", "tvl": 1_600_000_000,
     "category": "Dexes", "url": "https://pancakeswap.finance", "chains": ["BSC", "Ethereum"]},
    {"id": "sushi", "name": "SushiSwap", "symbol": "SUSHI", "tvl": 1_100_000_000,
     "category": "Dexes", "url": "https://sushi.com",
     "chains": ["Ethereum", "Polygon", "Arbitrum"]},
]

#: Number of protocols kept from the aggregator listing.
TOP_PROTOCOLS = 50

_UPSTREAM_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError)


class MarketDataGateway:
    """Fetches price and TVL snapshots, degrading instead of raising.

    Args:
        settings: Application configuration (keys, timeouts, synthetic toggle).
        session: HTTP session; a fresh ``requests.Session`` by default.
        rng: Random source for synthetic values (injectable for tests).
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self.session = session or requests.Session()
        self.rng = rng or random.Random()

    # ── Prices ────────────────────────────────────────────────────────────

    def fetch_crypto_data(self, symbols: list[str]) -> list[CryptoAsset]:
        """Return one record per input symbol, in input order.

        With synthetic data disabled, symbols no real provider resolved are
        left out instead.
        """
        wanted = [s.strip().upper() for s in symbols if s and s.strip()]
        if not wanted:
            return []
        unique = list(dict.fromkeys(wanted))

        resolved: dict[str, CryptoAsset] = {}
        if self.settings.coinmarketcap_api_key:
            resolved.update(self._from_coinmarketcap(unique))
        else:
            logger.info("No CoinMarketCap key; using CoinGecko for prices")

        missing = [s for s in unique if s not in resolved]
        if missing:
            resolved.update(self._from_coingecko(missing))

        missing = [s for s in unique if s not in resolved]
        if missing:
            if self.settings.allow_synthetic_data:
                logger.warning("Synthesising prices for %s", missing)
                for symbol in missing:
                    resolved[symbol] = self._synthetic_asset(symbol)
            else:
                logger.warning("No price data for %s (synthetic data disabled)", missing)

        return [resolved[s] for s in wanted if s in resolved]

    def _from_coinmarketcap(self, symbols: list[str]) -> dict[str, CryptoAsset]:
        try:
            response = self.session.get(
                COINMARKETCAP_URL,
                headers={"X-CMC_PRO_API_KEY": self.settings.coinmarketcap_api_key},
                params={"symbol": ",".join(symbols), "convert": "USD"},
                timeout=self.settings.price_timeout,
            )
            response.raise_for_status()
            payload = response.json().get("data") or {}
        except _UPSTREAM_ERRORS as exc:
            logger.warning("CoinMarketCap request failed: %s", exc)
            return {}

        assets: dict[str, CryptoAsset] = {}
        for symbol in symbols:
            entry = payload.get(symbol)
            # v2-style responses map each symbol to a list of candidates.
            if isinstance(entry, list):
                entry = entry[0] if entry else None
            if not isinstance(entry, dict):
                continue
            try:
                quote = entry["quote"]["USD"]
                assets[symbol] = CryptoAsset(
                    id=str(entry.get("id", symbol.lower())),
                    name=entry.get("name") or symbol,
                    symbol=symbol,
                    price=quote.get("price"),
                    price_change_24h=quote.get("percent_change_24h"),
                    market_cap=quote.get("market_cap"),
                    volume_24h=quote.get("volume_24h"),
                    circulating_supply=entry.get("circulating_supply"),
                    source=COINMARKETCAP,
                )
            except (KeyError, TypeError, AttributeError):
                logger.warning("Malformed CoinMarketCap quote for %s", symbol)
        logger.info("CoinMarketCap resolved %d/%d symbols", len(assets), len(symbols))
        return assets

    def _from_coingecko(self, symbols: list[str]) -> dict[str, CryptoAsset]:
        ids = {COINGECKO_IDS.get(s, s.lower()): s for s in symbols}
        try:
            response = self.session.get(
                COINGECKO_URL,
                params={
                    "ids": ",".join(ids),
                    "vs_currencies": "usd",
                    "include_24hr_change": "true",
                    "include_market_cap": "true",
                    "include_24hr_vol": "true",
                },
                timeout=self.settings.price_fallback_timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("Unexpected CoinGecko payload")
        except _UPSTREAM_ERRORS as exc:
            logger.warning("CoinGecko request failed: %s", exc)
            return {}

        assets: dict[str, CryptoAsset] = {}
        for gecko_id, prices in payload.items():
            symbol = ids.get(gecko_id)
            if symbol is None or not isinstance(prices, dict) or "usd" not in prices:
                continue
            assets[symbol] = CryptoAsset(
                id=gecko_id,
                name=gecko_id.replace("-", " ").title(),
                symbol=symbol,
                price=prices.get("usd"),
                price_change_24h=prices.get("usd_24h_change"),
                market_cap=prices.get("usd_market_cap"),
                volume_24h=prices.get("usd_24h_vol"),
                source=COINGECKO,
            )
        logger.info("CoinGecko resolved %d/%d symbols", len(assets), len(symbols))
        return assets

    def _synthetic_asset(self, symbol: str) -> CryptoAsset:
        base = _BASE_PRICES.get(symbol)
        if base is None:
            base = (1 + self.rng.random() * 500, self.rng.uniform(-10, 10))
        base_price, base_change = base
        price = base_price * self.rng.uniform(0.95, 1.05)
        return CryptoAsset(
            id=symbol.lower(),
            name=f"{symbol} (Updated: {datetime.now().strftime('%H:%M:%S')})",
            symbol=symbol,
            price=price,
            price_change_24h=base_change + self.rng.uniform(-5, 5),
            market_cap=price * self.rng.uniform(900_000, 1_100_000),
            volume_24h=price * self.rng.uniform(45_000, 55_000),
            circulating_supply=self.rng.randint(900_000, 1_100_000),
            source=SYNTHETIC,
            is_synthetic=True,
        )

    # ── DeFi protocols ────────────────────────────────────────────────────

    def fetch_defi_protocols(self) -> list[DeFiProtocol]:
        """Return the top protocols by TVL, or a synthetic list on failure."""
        try:
            response = self.session.get(DEFILLAMA_URL, timeout=self.settings.defi_timeout)
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, list):
                raise ValueError("Invalid response format from DeFiLlama")
        except _UPSTREAM_ERRORS as exc:
            logger.warning("DeFiLlama request failed: %s", exc)
            if not self.settings.allow_synthetic_data:
                return []
            return self._synthetic_protocols()

        protocols = [
            self._protocol_from_llama(item) for item in payload if isinstance(item, dict)
        ]
        protocols.sort(key=lambda p: p.tvl, reverse=True)
        logger.info("DeFiLlama returned %d protocols", len(protocols))
        return protocols[:TOP_PROTOCOLS]

    @staticmethod
    def _protocol_from_llama(item: dict[str, Any]) -> DeFiProtocol:
        return DeFiProtocol(
            id=str(item.get("id") or item.get("slug") or item.get("name", "")),
            name=item.get("name") or "Unknown",
            symbol=item.get("symbol") or "N/A",
            tvl=item.get("tvl"),
            tvl_change_24h=item.get("change_1d"),
            tvl_change_7d=item.get("change_7d"),
            chains=item.get("chains") or [],
            category=item.get("category") or "Unknown",
            url=item.get("url") or "",
            source=DEFILLAMA,
        )

    def _synthetic_protocols(self) -> list[DeFiProtocol]:
        count = self.rng.randint(5, 8)
        chosen = self.rng.sample(_BASE_PROTOCOLS, count)
        stamp = datetime.now().strftime("%H:%M")
        logger.warning("Synthesising %d DeFi protocols", count)
        return [
            DeFiProtocol(
                id=base["id"],
                name=f"{base['name']} ({stamp})",
                symbol=base["symbol"],
                tvl=base["tvl"] * self.rng.uniform(0.8, 1.2),
                tvl_change_24h=self.rng.uniform(-5, 5),
                tvl_change_7d=self.rng.uniform(-10, 10),
                chains=list(base["chains"]),
                category=base["category"],
                url=base["url"],
                source=SYNTHETIC,
                is_synthetic=True,
            )
            for base in chosen
        ]

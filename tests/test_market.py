"""Tests for coinsight/market.py: the three-tier price and TVL degrade."""

from __future__ import annotations

import random
from unittest.mock import MagicMock

import pytest
import requests

from coinsight.market import (
    COINGECKO_URL,
    COINMARKETCAP_URL,
    DEFILLAMA_URL,
    MarketDataGateway,
    SYNTHETIC,
    TOP_PROTOCOLS,
)
from conftest import http_response


def cmc_payload(*symbols):
    return {
        "data": {
            s: {
                "id": i,
                "name": f"{s} Coin",
                "circulating_supply": 1000,
                "quote": {"USD": {
                    "price": 100.0 + i,
                    "percent_change_24h": 1.5,
                    "market_cap": 1e9,
                    "volume_24h": 1e7,
                }},
            }
            for i, s in enumerate(symbols, start=1)
        }
    }


def routed_session(routes):
    """A session whose ``get`` answers per URL; values may be exceptions."""
    session = MagicMock()

    def get(url, **kwargs):
        outcome = routes[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    session.get.side_effect = get
    return session


# ── Prices ─────────────────────────────────────────────────────────────────────


class TestFetchCryptoData:
    def test_empty_symbols_makes_no_calls(self, make_settings):
        session = MagicMock()
        gateway = MarketDataGateway(make_settings(), session=session)
        assert gateway.fetch_crypto_data([]) == []
        session.get.assert_not_called()

    def test_coinmarketcap_used_when_key_set(self, make_settings):
        session = routed_session({COINMARKETCAP_URL: http_response(cmc_payload("BTC", "ETH"))})
        gateway = MarketDataGateway(make_settings(coinmarketcap_api_key="cmc"), session=session)

        assets = gateway.fetch_crypto_data(["btc", "ETH"])

        assert [a.symbol for a in assets] == ["BTC", "ETH"]
        assert all(a.source == "CoinMarketCap" for a in assets)
        assert assets[0].price == 101.0
        headers = session.get.call_args.kwargs["headers"]
        assert headers == {"X-CMC_PRO_API_KEY": "cmc"}

    def test_coingecko_without_key(self, make_settings):
        payload = {"bitcoin": {"usd": 65000, "usd_24h_change": -1.2, "usd_market_cap": 1.2e12}}
        session = routed_session({COINGECKO_URL: http_response(payload)})
        gateway = MarketDataGateway(make_settings(), session=session)

        assets = gateway.fetch_crypto_data(["BTC"])

        assert len(assets) == 1
        assert assets[0].source == "CoinGecko"
        assert assets[0].price == 65000
        assert assets[0].name == "Bitcoin"
        urls = [c.args[0] for c in session.get.call_args_list]
        assert COINMARKETCAP_URL not in urls

    def test_coingecko_only_asked_for_unresolved_symbols(self, make_settings):
        gecko = {"ethereum": {"usd": 3000, "usd_24h_change": 2.0}}
        session = routed_session({
            COINMARKETCAP_URL: http_response(cmc_payload("BTC")),
            COINGECKO_URL: http_response(gecko),
        })
        gateway = MarketDataGateway(make_settings(coinmarketcap_api_key="cmc"), session=session)

        assets = gateway.fetch_crypto_data(["BTC", "ETH"])

        assert [(a.symbol, a.source) for a in assets] == [
            ("BTC", "CoinMarketCap"),
            ("ETH", "CoinGecko"),
        ]
        gecko_call = session.get.call_args_list[-1]
        assert gecko_call.kwargs["params"]["ids"] == "ethereum"

    def test_synthetic_tier_when_providers_fail(self, make_settings):
        session = routed_session({
            COINMARKETCAP_URL: requests.ConnectionError("down"),
            COINGECKO_URL: http_response({}, status=500),
        })
        gateway = MarketDataGateway(
            make_settings(coinmarketcap_api_key="cmc"), session=session, rng=random.Random(1)
        )

        assets = gateway.fetch_crypto_data(["BTC", "XYZ"])

        assert [a.symbol for a in assets] == ["BTC", "XYZ"]
        for asset in assets:
            assert asset.is_synthetic
            assert asset.source == SYNTHETIC
            assert "(Updated: " in asset.name
            assert asset.price > 0
        assert 65432.10 * 0.95 <= assets[0].price <= 65432.10 * 1.05

    def test_synthetic_disabled_omits_unresolved(self, make_settings):
        session = routed_session({COINGECKO_URL: requests.Timeout("slow")})
        gateway = MarketDataGateway(make_settings(allow_synthetic_data=False), session=session)
        assert gateway.fetch_crypto_data(["BTC", "ETH"]) == []

    def test_malformed_coinmarketcap_entry_falls_through(self, make_settings):
        bad = {"data": {"BTC": {"name": "Bitcoin"}}}
        gecko = {"bitcoin": {"usd": 64000}}
        session = routed_session({
            COINMARKETCAP_URL: http_response(bad),
            COINGECKO_URL: http_response(gecko),
        })
        gateway = MarketDataGateway(make_settings(coinmarketcap_api_key="cmc"), session=session)
        assets = gateway.fetch_crypto_data(["BTC"])
        assert assets[0].source == "CoinGecko"

    def test_duplicate_symbols_keep_input_order(self, make_settings):
        session = routed_session({COINGECKO_URL: http_response({
            "bitcoin": {"usd": 1}, "ethereum": {"usd": 2},
        })})
        gateway = MarketDataGateway(make_settings(), session=session)
        assets = gateway.fetch_crypto_data(["ETH", "BTC", "ETH"])
        assert [a.symbol for a in assets] == ["ETH", "BTC", "ETH"]


# ── DeFi protocols ─────────────────────────────────────────────────────────────


class TestFetchDefiProtocols:
    def test_sorted_by_tvl_and_capped(self, make_settings):
        payload = [
            {"id": str(i), "name": f"P{i}", "tvl": float(i), "change_1d": 1.0, "change_7d": 2.0}
            for i in range(TOP_PROTOCOLS + 10)
        ]
        session = routed_session({DEFILLAMA_URL: http_response(payload)})
        gateway = MarketDataGateway(make_settings(), session=session)

        protocols = gateway.fetch_defi_protocols()

        assert len(protocols) == TOP_PROTOCOLS
        assert protocols[0].name == f"P{TOP_PROTOCOLS + 9}"
        tvls = [p.tvl for p in protocols]
        assert tvls == sorted(tvls, reverse=True)
        assert protocols[0].source == "DeFiLlama"
        assert protocols[0].tvl_change_24h == 1.0

    def test_missing_fields_default(self, make_settings):
        session = routed_session({DEFILLAMA_URL: http_response([{"name": "Bare", "tvl": None}])})
        gateway = MarketDataGateway(make_settings(), session=session)
        protocol = gateway.fetch_defi_protocols()[0]
        assert protocol.symbol == "N/A"
        assert protocol.tvl == 0.0
        assert protocol.category == "Unknown"

    def test_invalid_payload_falls_back_to_synthetic(self, make_settings):
        session = routed_session({DEFILLAMA_URL: http_response({"error": "nope"})})
        gateway = MarketDataGateway(make_settings(), session=session, rng=random.Random(5))

        protocols = gateway.fetch_defi_protocols()

        assert 5 <= len(protocols) <= 8
        assert all(p.is_synthetic and p.source == SYNTHETIC for p in protocols)
        assert all(p.name.endswith(")") for p in protocols)

    @pytest.mark.parametrize("error", [requests.ConnectionError("down"), requests.Timeout("slow")])
    def test_synthetic_disabled_returns_empty(self, make_settings, error):
        session = routed_session({DEFILLAMA_URL: error})
        gateway = MarketDataGateway(make_settings(allow_synthetic_data=False), session=session)
        assert gateway.fetch_defi_protocols() == []

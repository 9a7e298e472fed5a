"""Tests for coinsight/intent.py: keyword intent, hints and keyword requirements."""

from __future__ import annotations

import random

import pytest

from coinsight.intent import (
    CAPABILITIES_MESSAGE,
    CryptoIntent,
    NonCryptoIntent,
    detect_time_frame,
    detect_top_n,
    explorer_actions,
    extract_address,
    extract_dune_query_id,
    is_crypto_query,
    keyword_requirements,
    needs_explorer_data,
    render_flags,
    resolve_intent,
)
from coinsight.models import ApiRequirements

ADDRESS = "0x28C6c06298d514Db089934071355E5743bf21d60"


# ── Domain detection ───────────────────────────────────────────────────────────


class TestIsCryptoQuery:
    @pytest.mark.parametrize("query", [
        "Compare the top 5 DeFi protocols by TVL",
        "What is the bitcoin price?",
        "Show me ETH gas fees",
        "Which stablecoins are growing?",
        "best layer 2 rollups",
    ])
    def test_crypto_queries(self, query):
        assert is_crypto_query(query)

    @pytest.mark.parametrize("query", [
        "What's the weather today?",
        "Recommend a pasta recipe",
        "Who won the football match?",
        "",
    ])
    def test_non_crypto_queries(self, query):
        assert not is_crypto_query(query)

    def test_terms_match_whole_words_only(self):
        # "eth" inside "method" is not a match.
        assert not is_crypto_query("Explain the scientific method")


class TestRenderFlags:
    def test_comparison_query_shows_table_and_defi(self):
        flags = render_flags("Compare the top 5 DeFi protocols by TVL")
        assert flags.show_table is True
        assert flags.show_defi is True
        assert flags.is_crypto_query is True

    def test_plain_price_question_hides_table(self):
        flags = render_flags("What is the bitcoin price?")
        assert flags.show_table is False
        assert flags.show_defi is False

    def test_non_crypto_query_hides_everything(self):
        flags = render_flags("Compare the top 5 pizza places")
        assert flags.show_table is False
        assert flags.show_defi is False
        assert flags.is_crypto_query is False


# ── Hints ──────────────────────────────────────────────────────────────────────


class TestHints:
    @pytest.mark.parametrize("query,expected", [
        ("bitcoin moves today", "day"),
        ("ethereum over the last 24h", "day"),
        ("monthly DeFi recap", "month"),
        ("weekly token report", "week"),
        ("defi protocols", "week"),
    ])
    def test_time_frame(self, query, expected):
        assert detect_time_frame(query) == expected

    @pytest.mark.parametrize("query,expected", [
        ("top 10 lending protocols", 10),
        ("the 10 best tokens", 10),
        ("top 3 dexes", 3),
        ("3 biggest gainers", 3),
        ("top 7 chains", 7),
        ("top 500 coins", 50),
        ("ethereum gas", 5),
    ])
    def test_top_n(self, query, expected):
        assert detect_top_n(query) == expected

    def test_top_n_custom_default(self):
        assert detect_top_n("defi overview", default=0) == 0


# ── resolve_intent ─────────────────────────────────────────────────────────────


class TestResolveIntent:
    def test_non_crypto_query(self):
        intent = resolve_intent("What's the weather today?")
        assert isinstance(intent, NonCryptoIntent)
        assert intent.query == "What's the weather today?"

    def test_lending_query_is_deterministic_without_randomness(self):
        intent = resolve_intent("top lending DeFi protocols", allow_random=False)
        assert isinstance(intent, CryptoIntent)
        assert intent.focus_tokens[:2] == ["BTC", "ETH"]
        assert {"AAVE", "COMP", "MKR"} <= set(intent.focus_tokens)
        assert intent.focus_projects[0] == "Aave"
        assert intent.use_random_order is False

    def test_generic_defi_query_uses_generic_lists(self):
        intent = resolve_intent("rank defi protocols", allow_random=False)
        assert "UNI" in intent.focus_tokens
        assert "Uniswap" in intent.focus_projects

    def test_sector_groups_are_additive(self):
        intent = resolve_intent("rank layer 2 and nft tokens", allow_random=False)
        assert "ARB" in intent.focus_tokens
        assert "MANA" in intent.focus_tokens
        assert "Arbitrum" in intent.focus_projects
        assert "Decentraland" in intent.focus_projects

    def test_ranking_words_disable_shuffling(self):
        intent = resolve_intent("top defi protocols", rng=random.Random(1))
        assert intent.use_random_order is False
        assert intent.top_n == 5

    def test_random_order_truncates_lists(self):
        intent = resolve_intent("tell me about defi lending", rng=random.Random(7))
        assert intent.use_random_order is True
        assert len(intent.focus_tokens) <= 12
        assert len(intent.focus_projects) <= 8
        assert len(set(intent.focus_tokens)) == len(intent.focus_tokens)

    def test_same_seed_same_lists(self):
        first = resolve_intent("tell me about solana blockchain", rng=random.Random(3))
        second = resolve_intent("tell me about solana blockchain", rng=random.Random(3))
        assert first == second

    def test_trending_promotes_trending_items(self):
        intent = resolve_intent("top trending defi protocols", allow_random=False)
        assert intent.use_trending is True
        assert intent.focus_tokens[:3] == ["ETH", "SOL", "AVAX"]
        assert intent.focus_projects[:3] == ["Lido", "Uniswap", "GMX"]
        assert len(intent.focus_tokens) <= 10

    def test_query_context_carries_hints(self):
        intent = resolve_intent("top 10 defi protocols this month", allow_random=False)
        context = intent.query_context()
        assert context.top_n == 10
        assert context.time_frame == "month"
        assert context.use_random_order is False


# ── Explorer / analytics ───────────────────────────────────────────────────────


class TestExplorerHelpers:
    def test_extract_address(self):
        assert extract_address(f"show activity for {ADDRESS} please") == ADDRESS

    def test_extract_address_rejects_short_hex(self):
        assert extract_address("0x1234 is not an address") is None

    def test_needs_explorer_data(self):
        assert needs_explorer_data("current ethereum gas price")
        assert needs_explorer_data(f"what is {ADDRESS}")
        assert not needs_explorer_data("solana defi overview")

    def test_actions_default_to_gas(self):
        assert explorer_actions("ethereum overview") == ["gas"]

    def test_actions_from_keywords(self):
        assert explorer_actions(f"token contract and transactions of {ADDRESS}") == [
            "token",
            "transactions",
        ]
        assert explorer_actions("gas fees in gwei") == ["gas"]

    def test_contract_action_needs_address_and_source_words(self):
        assert "contract" in explorer_actions(f"is the source code of {ADDRESS} verified?")
        assert "contract" not in explorer_actions("which contracts are audited?")
        assert "contract" not in explorer_actions(f"probability that {ADDRESS} is a whale")

    def test_requirements_accept_contract_source_actions(self):
        req = ApiRequirements(etherscan_actions=["contract source code", "Verified contract", "gas price"])
        assert req.etherscan_actions == ["contract", "gas"]

    @pytest.mark.parametrize("query,expected", [
        ("show dune query 1234567", "1234567"),
        ("Dune #3456789 results", "3456789"),
        ("query id 987654 please", "987654"),
        ("dune dashboards", None),
    ])
    def test_dune_query_id(self, query, expected):
        assert extract_dune_query_id(query) == expected


class TestKeywordRequirements:
    def test_non_crypto_needs_nothing(self):
        req = keyword_requirements("What's the weather today?")
        assert not req.needs_crypto_data
        assert not req.needs_defi_data
        assert not req.needs_etherscan_data
        assert not req.needs_dune_data

    def test_defi_comparison(self):
        req = keyword_requirements("Compare the top 5 DeFi protocols by TVL")
        assert req.needs_crypto_data
        assert req.needs_defi_data
        assert req.crypto_symbols[:2] == ["BTC", "ETH"]
        assert req.priority == "high"

    def test_gas_query_needs_explorer(self):
        req = keyword_requirements("What is the ethereum gas price right now?")
        assert req.needs_etherscan_data
        assert req.etherscan_actions == ["gas"]

    def test_dune_query(self):
        req = keyword_requirements("run dune query 1234567 for uniswap volume", mode="chat")
        assert req.needs_dune_data
        assert req.dune_query == "1234567"
        assert req.analysis_type == "chat"


def test_capabilities_message_quotes_query():
    text = CAPABILITIES_MESSAGE.format(query="weather")
    assert '"weather"' in text
    assert "crypto research assistant" in text

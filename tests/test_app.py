"""
Tests for web/app.py: the HTTP surface wired to real components.

Every outbound call goes through a mocked ``requests.Session`` and a mocked
Anthropic client, so no test touches the network.

Run with: pytest tests/test_app.py
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import requests

from coinsight.analyst import Analyst
from coinsight.explorer import AnalyticsClient, BlockExplorerClient
from coinsight.llm import LLMClient
from coinsight.market import DEFILLAMA_URL, MarketDataGateway
from coinsight.news import NewsClient
from coinsight.pipeline import DataCollector, ResearchService
from conftest import FakeStatusError, analysis_json, http_response, llm_message
from web.app import create_app

TOP5_QUERY = "Compare the top 5 DeFi protocols by TVL"

LLAMA_PROTOCOLS = [
    {"id": "1", "name": "Lido", "symbol": "LDO", "tvl": 3.4e9, "change_1d": 1.2},
    {"id": "2", "name": "Uniswap", "symbol": "UNI", "tvl": 18.1e9, "change_1d": 0.4},
    {"id": "3", "name": "Aave", "symbol": "AAVE", "tvl": 3.5e9, "change_1d": -0.3},
    {"id": "4", "name": "Curve", "symbol": "CRV", "tvl": 4.3e9, "change_1d": 2.0},
    {"id": "5", "name": "MakerDAO", "symbol": "MKR", "tvl": 2.7e9, "change_1d": -1.0},
    {"id": "6", "name": "Compound", "symbol": "COMP", "tvl": 1.9e9, "change_1d": 0.1},
]


def offline_session(routes=None):
    """Session answering only the given URLs; everything else is unreachable."""
    routes = routes or {}
    session = MagicMock()

    def get(url, **kwargs):
        if url in routes:
            return routes[url]
        raise requests.ConnectionError(f"unreachable: {url}")

    session.get.side_effect = get
    return session


def build_client(settings, session, sdk=None):
    llm = LLMClient(settings, sleep=lambda s: None)
    if sdk is not None:
        llm._client = sdk
    collector = DataCollector(
        settings,
        gateway=MarketDataGateway(settings, session=session),
        explorer=BlockExplorerClient(settings, session=session),
        analytics=AnalyticsClient(settings, session=session),
        news=NewsClient(settings, session=session),
    )
    service = ResearchService(settings, collector, Analyst(settings, llm))
    app = create_app(settings, service)
    app.config["TESTING"] = True
    return app.test_client(), service


@pytest.fixture
def offline_client(make_settings):
    """No keys, no synthetic data, every provider unreachable."""
    settings = make_settings(allow_synthetic_data=False)
    session = offline_session()
    client, _ = build_client(settings, session)
    return client, session


# ── Basic routes ───────────────────────────────────────────────────────────────


class TestBasicRoutes:
    def test_index_describes_service(self, offline_client):
        client, _ = offline_client
        body = client.get("/").get_json()
        assert body["name"] == "coinsight"
        assert "POST /api/analyze" in body["endpoints"]

    def test_health(self, offline_client):
        client, _ = offline_client
        body = client.get("/api/health").get_json()
        assert body["success"] is True
        assert body["llmConfigured"] is False
        assert "ANTHROPIC_API_KEY" in body["missingKeys"]
        assert body["circuitBreaker"]["state"] == "CLOSED"

    def test_unknown_route_is_json_404(self, offline_client):
        client, _ = offline_client
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.get_json()["success"] is False


# ── Validation ─────────────────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.parametrize("body", [{}, {"query": ""}, {"query": "   "}, {"query": 5}])
    def test_bad_query_is_400(self, offline_client, body):
        client, session = offline_client
        response = client.post("/api/analyze", json=body)
        assert response.status_code == 400
        assert response.get_json()["success"] is False
        session.get.assert_not_called()

    def test_non_json_body_is_400(self, offline_client):
        client, _ = offline_client
        response = client.post("/api/analyze", data="query=bitcoin")
        assert response.status_code == 400

    @pytest.mark.parametrize("route", ["/api/analyze", "/api/chat"])
    @pytest.mark.parametrize("body", [["bitcoin"], "bitcoin price", 42])
    def test_non_object_json_is_400(self, offline_client, route, body):
        client, session = offline_client
        response = client.post(route, json=body)
        assert response.status_code == 400
        assert response.get_json()["success"] is False
        session.get.assert_not_called()

    def test_unknown_source_is_400(self, offline_client):
        client, _ = offline_client
        response = client.post("/api/analyze", json={"query": "bitcoin", "sources": ["magic"]})
        assert response.status_code == 400
        assert "Unknown sources" in response.get_json()["error"]


# ── End-to-end scenarios ───────────────────────────────────────────────────────


class TestAnalyzeScenarios:
    def test_top_five_protocols_by_tvl(self, make_settings):
        requirements = json.dumps({
            "needsCryptoData": False,
            "cryptoSymbols": [],
            "needsDeFiData": True,
            "needsEtherscanData": False,
            "etherscanActions": [],
            "needsDuneData": False,
            "duneQuery": None,
            "analysisType": "research",
            "priority": "high",
        })
        rows = [
            {"project": "Lido", "tvl": "$3.40B"},
            {"project": "Uniswap", "tvl": "$18.10B"},
            {"project": "Aave", "tvl": "$3.50B"},
            {"project": "Curve", "tvl": "$4.30B"},
            {"project": "MakerDAO", "tvl": "$2.70B"},
            {"project": "Compound", "tvl": "$1.90B"},
        ]
        sdk = MagicMock()
        sdk.messages.create.side_effect = [
            llm_message(requirements),
            llm_message(analysis_json(dataTable=rows, sources=["DeFiLlama", "Reuters"])),
        ]
        session = offline_session({DEFILLAMA_URL: http_response(LLAMA_PROTOCOLS)})
        client, _ = build_client(make_settings(anthropic_api_key="k"), session, sdk)

        response = client.post("/api/analyze", json={"query": TOP5_QUERY})

        assert response.status_code == 200
        body = response.get_json()
        data = body["data"]
        assert body["success"] is True
        assert body["conversationId"] == data["conversationId"]
        assert data["showTable"] is True
        assert data["degraded"] is False
        table = data["dataTable"]
        assert len(table) <= 5
        assert [r["project"] for r in table] == ["Uniswap", "Curve", "Aave", "Lido", "MakerDAO"]
        assert data["sources"] == ["DeFiLlama"]
        assert data["modelUsed"] == "model-a"

    def test_top_five_without_model_generates_sorted_rows(self, make_settings):
        session = offline_session({DEFILLAMA_URL: http_response(LLAMA_PROTOCOLS)})
        client, _ = build_client(make_settings(allow_synthetic_data=False), session)

        data = client.post(
            "/api/analyze", json={"query": TOP5_QUERY, "sources": ["standard"]}
        ).get_json()["data"]

        tvls = [float(r["tvl"].strip("$B")) for r in data["dataTable"]]
        assert len(tvls) == 5
        assert tvls == sorted(tvls, reverse=True)
        assert data["degraded"] is True
        assert data["sources"] == ["DeFiLlama"]

    def test_non_crypto_query(self, make_settings):
        sdk = MagicMock()
        session = offline_session()
        client, _ = build_client(make_settings(anthropic_api_key="k"), session, sdk)

        response = client.post("/api/analyze", json={"query": "What's the weather today?"})

        data = response.get_json()["data"]
        assert response.status_code == 200
        assert data["isCryptoQuery"] is False
        assert "outside my area of expertise" in data["summary"]
        assert data["dataTable"] == []
        assert data["sources"] == []
        session.get.assert_not_called()
        sdk.messages.create.assert_not_called()

    def test_every_provider_down_uses_placeholder_table(self, offline_client):
        client, _ = offline_client

        response = client.post("/api/analyze", json={"query": TOP5_QUERY})

        assert response.status_code == 200
        data = response.get_json()["data"]
        assert data["degraded"] is True
        assert data["showTable"] is True
        assert [(r["project"], r["sentiment"], r["newsCount"]) for r in data["dataTable"]] == [
            ("Bitcoin", "Positive", 25),
            ("Ethereum", "Positive", 20),
            ("BNB", "Neutral", 15),
            ("Solana", "Positive", 12),
            ("Cardano", "Neutral", 10),
        ]
        assert data["summary"]

    def test_model_over_capacity_is_503_then_degrades(self, make_settings):
        sdk = MagicMock()
        sdk.messages.create.side_effect = FakeStatusError(503, "over capacity")
        session = offline_session({DEFILLAMA_URL: http_response(LLAMA_PROTOCOLS)})
        client, service = build_client(make_settings(anthropic_api_key="k"), session, sdk)

        response = client.post("/api/analyze", json={"query": TOP5_QUERY})

        assert response.status_code == 503
        body = response.get_json()
        assert body["success"] is False
        assert "over capacity" in body["error"]
        assert service.analyst.llm.breaker.state == "OPEN"
        calls = sdk.messages.create.call_count

        # While the breaker is open the model is not called at all.
        retry = client.post("/api/analyze", json={"query": TOP5_QUERY})
        assert retry.status_code == 200
        assert retry.get_json()["data"]["degraded"] is True
        assert sdk.messages.create.call_count == calls


# ── Conversation history / chat ────────────────────────────────────────────────


class TestConversationRoutes:
    def test_history_roundtrip_and_delete(self, offline_client):
        client, _ = offline_client
        first = client.post("/api/analyze", json={"query": "bitcoin price"}).get_json()
        conversation_id = first["conversationId"]

        history = client.get(f"/api/analyze?conversationId={conversation_id}").get_json()
        assert history["data"]["messageCount"] == 2
        assert history["data"]["history"].startswith("user: bitcoin price")

        assert client.delete(f"/api/analyze?conversationId={conversation_id}").get_json() == {
            "success": True
        }
        response = client.get(f"/api/analyze?conversationId={conversation_id}")
        assert response.status_code == 404

    def test_history_requires_id(self, offline_client):
        client, _ = offline_client
        assert client.get("/api/analyze").status_code == 404

    def test_chat(self, make_settings):
        sdk = MagicMock()
        sdk.messages.create.return_value = llm_message("A DAO is a member-governed organisation.")
        client, _ = build_client(make_settings(anthropic_api_key="k"), offline_session(), sdk)

        body = client.post("/api/chat", json={"query": "What is a DAO?"}).get_json()

        assert body["success"] is True
        assert body["summary"].startswith("A DAO")
        assert body["modelUsed"] == "model-a"

    def test_chat_without_key_is_503(self, offline_client):
        client, _ = offline_client
        response = client.post("/api/chat", json={"query": "What is a DAO?"})
        assert response.status_code == 503
        assert response.get_json()["success"] is False

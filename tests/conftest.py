"""Shared fixtures: a clean environment, settings factory and fake HTTP/LLM replies."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest
import requests

from config.settings import Settings

_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "COINMARKETCAP_API_KEY",
    "ETHERSCAN_API_KEY",
    "DUNE_API_KEY",
    "CRYPTOPANIC_API_KEY",
    "ALLOW_SYNTHETIC_DATA",
    "LLM_MODELS",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep real keys from the developer's shell out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings():
    """Return a factory for ``Settings`` with test-friendly defaults."""

    def factory(**overrides) -> Settings:
        values = {
            "anthropic_api_key": "",
            "coinmarketcap_api_key": "",
            "etherscan_api_key": "",
            "dune_api_key": "",
            "cryptopanic_api_key": "",
            "allow_synthetic_data": True,
            "llm_models": ["model-a", "model-b"],
            "llm_initial_delay": 0.0,
        }
        values.update(overrides)
        return Settings(**values)

    return factory


def http_response(payload=None, status: int = 200) -> MagicMock:
    """A ``requests.Response`` stand-in returning *payload* from ``.json()``."""
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        response.raise_for_status.return_value = None
    return response


def llm_message(text: str) -> MagicMock:
    """An Anthropic ``Message`` stand-in with a single text block."""
    block = MagicMock()
    block.text = text
    message = MagicMock()
    message.content = [block]
    return message


class FakeStatusError(Exception):
    """Mimics an SDK error carrying an HTTP ``status_code``."""

    def __init__(self, status_code: int, message: str = "error") -> None:
        super().__init__(message)
        self.status_code = status_code


def analysis_json(**overrides) -> str:
    body = {
        "summary": (
            "DeFi lending protocols held steady this week while Uniswap led decentralised "
            "exchanges on TVL and volume."
        ),
        "dataTable": [],
        "sources": ["DeFiLlama"],
        "insights": ["Uniswap leads"],
        "riskFactors": ["Volatility"],
        "marketTrends": "Sideways",
    }
    body.update(overrides)
    return json.dumps(body)

"""Etherscan and Dune clients.

Both are key-gated: without a key every call returns ``None`` or ``[]``
without touching the network. Neither ever falls back to synthetic data, since
their output is presented as on-chain fact.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import requests

from coinsight.models import (
    ExplorerData,
    ExplorerTransaction,
    GasPrice,
    TokenInfo,
    utc_now_iso,
)

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

ETHERSCAN_URL = "https://api.etherscan.io/v2/api"
ETHEREUM_MAINNET = 1
DUNE_RESULTS_URL = "https://api.dune.com/api/v1/query/{query_id}/results"

#: Well-known ERC-20 contracts on Ethereum mainnet.
TOKEN_CONTRACTS: dict[str, str] = {
    "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
    "UNI": "0x1f9840a85d5aF5bf1D1762F925BDADdC4201F984",
    "LINK": "0x514910771AF9Ca656af840dff83E8264EcF986CA",
    "AAVE": "0x7Fc66500c84A76Ad7e9c93437bFc5Ac33E2DDaE9",
    "COMP": "0xc00e94Cb662C3520282E6f5717214004A7f26888",
    "MKR": "0x9f8F72aA9304c8B593d555F12eF6589cC3A579A2",
}
DEFAULT_TOKEN = "USDT"
#: A high-traffic exchange hot wallet, used when the query names no address.
DEFAULT_ACTIVITY_ADDRESS = "0x28C6c06298d514Db089934071355E5743bf21d60"
MAX_TRANSACTIONS = 10
CONTRACT_FIELDS = (
    "ContractName", "CompilerVersion", "OptimizationUsed", "LicenseType", "Proxy", "Implementation",
)

_UPSTREAM_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError)


class BlockExplorerClient:
    """Thin wrapper over the Etherscan v2 multichain API."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.settings.etherscan_api_key)

    def _call(self, params: dict[str, Any]) -> Any:
        """Return the ``result`` field of a successful call, else ``None``."""
        if not self.configured:
            logger.info("Etherscan key not configured, skipping %s", params.get("action"))
            return None
        query = {"chainid": ETHEREUM_MAINNET, **params, "apikey": self.settings.etherscan_api_key}
        try:
            response = self.session.get(
                ETHERSCAN_URL, params=query, timeout=self.settings.explorer_timeout
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError(f"unexpected payload type {type(payload).__name__}")
        except _UPSTREAM_ERRORS as exc:
            logger.warning("Etherscan %s failed: %s", params.get("action"), exc)
            return None
        if str(payload.get("status")) != "1" or not payload.get("result"):
            logger.info("Etherscan %s returned no data: %s", params.get("action"), payload.get("message"))
            return None
        return payload["result"]

    def fetch_gas_price(self) -> Optional[GasPrice]:
        result = self._call({"module": "gastracker", "action": "gasoracle"})
        if not isinstance(result, dict):
            return None
        safe = result.get("SafeGasPrice") or "0"
        propose = result.get("ProposeGasPrice") or safe
        fast = result.get("FastGasPrice") or propose
        try:
            fastest = f"{float(fast) * 1.15:.9f}" if float(fast) > 0 else fast
        except ValueError:
            fastest = fast
        return GasPrice(
            safe_low=safe,
            standard=propose,
            fast=fast,
            fastest=fastest,
            suggest_base_fee=result.get("suggestBaseFee") or "0",
            last_block=result.get("LastBlock") or "0",
        )

    def fetch_token_info(self, contract: str) -> Optional[TokenInfo]:
        result = self._call(
            {"module": "token", "action": "tokeninfo", "contractaddress": contract}
        )
        if isinstance(result, list):
            result = result[0] if result else None
        if not isinstance(result, dict):
            return None
        return TokenInfo(
            contract_address=result.get("contractAddress") or contract,
            token_name=result.get("tokenName", ""),
            token_symbol=result.get("symbol") or result.get("tokenSymbol", ""),
            token_decimal=str(result.get("divisor") or result.get("tokenDecimal", "")),
            total_supply=str(result.get("totalSupply", "")),
        )

    def fetch_transactions(self, address: str) -> list[ExplorerTransaction]:
        """Return up to ten of the address's most recent transactions."""
        result = self._call({
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": 0,
            "endblock": 99999999,
            "page": 1,
            "offset": MAX_TRANSACTIONS,
            "sort": "desc",
        })
        if not isinstance(result, list):
            return []
        return [
            ExplorerTransaction.model_validate(tx)
            for tx in result[:MAX_TRANSACTIONS]
            if isinstance(tx, dict)
        ]

    def fetch_contract_source(self, contract: str) -> Optional[dict[str, Any]]:
        """Return verification metadata for a contract.

        The source text is reduced to a ``Verified`` flag and its length, and
        the ABI is dropped.
        """
        result = self._call(
            {"module": "contract", "action": "getsourcecode", "address": contract}
        )
        if isinstance(result, list):
            result = result[0] if result else None
        if not isinstance(result, dict):
            return None
        source = str(result.get("SourceCode") or "")
        summary = {key: result[key] for key in CONTRACT_FIELDS if result.get(key)}
        summary["ContractAddress"] = contract
        summary["Verified"] = bool(source)
        summary["SourceLength"] = len(source)
        return summary

    def collect(
        self,
        actions: list[str],
        symbols: Optional[list[str]] = None,
        address: Optional[str] = None,
    ) -> Optional[ExplorerData]:
        """Run the requested actions and bundle whatever came back.

        Args:
            actions: Any of ``"gas"``, ``"token"``, ``"transactions"``,
                ``"contract"``.
            symbols: Focus symbols; the first with a known contract drives
                the token lookup (``USDT`` otherwise).
            address: Address for the transaction list; the contract lookup
                runs only when one is given.

        Returns:
            ``ExplorerData``, or ``None`` when nothing could be fetched.
        """
        if not self.configured or not actions:
            return None

        data = ExplorerData()
        if "gas" in actions:
            data.gas_price = self.fetch_gas_price()
        if "token" in actions:
            known = [s for s in (symbols or []) if s in TOKEN_CONTRACTS]
            contract = TOKEN_CONTRACTS[known[0] if known else DEFAULT_TOKEN]
            data.token_info = self.fetch_token_info(contract)
        if "transactions" in actions:
            data.transactions = self.fetch_transactions(address or DEFAULT_ACTIVITY_ADDRESS)
        if "contract" in actions and address:
            data.contract_source = self.fetch_contract_source(address)

        logger.info(
            "Etherscan data: gas=%s token=%s transactions=%d contract=%s",
            data.gas_price is not None, data.token_info is not None, len(data.transactions),
            data.contract_source is not None,
        )
        return None if data.is_empty() else data


class AnalyticsClient:
    """Fetches saved-query results from Dune."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    def fetch_dune_data(self, query_id: Optional[str], query_text: str = "") -> list[dict[str, Any]]:
        """Return result rows for a saved Dune query.

        A 403 (usually a plan limitation) yields a single marker row so the
        model can mention it; every other failure yields ``[]``.
        """
        if not self.settings.dune_api_key:
            return []
        if not query_id or not str(query_id).isdigit():
            logger.info("No numeric Dune query id in request, skipping analytics")
            return []
        try:
            response = self.session.get(
                DUNE_RESULTS_URL.format(query_id=query_id),
                headers={"X-DUNE-API-KEY": self.settings.dune_api_key},
                timeout=self.settings.analytics_timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Dune request failed: %s", exc)
            return []

        if response.status_code == 403:
            logger.warning("Dune returned 403 (likely plan limitation)")
            return [{
                "type": "dune_fallback",
                "reason": "forbidden_or_plan_limit",
                "queryFragment": (query_text or str(query_id))[:120],
                "timestamp": utc_now_iso(),
            }]
        if response.status_code >= 400:
            logger.warning("Dune returned status %s", response.status_code)
            return []
        try:
            rows = (response.json().get("result") or {}).get("rows") or []
        except (ValueError, AttributeError) as exc:
            logger.warning("Malformed Dune response: %s", exc)
            return []
        return [row for row in rows if isinstance(row, dict)]

"""Application settings: all configuration loaded from environment variables.

Usage:
    from config.settings import Settings
    settings = Settings()
    settings.validate()   # raises ValueError on unusable values

Every provider key is optional. A missing key never stops the app; the
matching data source degrades as described in ``coinsight.market``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

#: Default model fallback order, most capable first.
DEFAULT_LLM_MODELS = (
    "claude-sonnet-4-5",
    "claude-haiku-4-5",
    "claude-3-7-sonnet-latest",
    "claude-3-5-haiku-latest",
)


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> list[str]:
    raw = os.environ.get(name, "")
    items = [item.strip() for item in raw.split(",") if item.strip()]
    return items or list(default)


@dataclass
class Settings:
    """Centralised application configuration.

    All values are read from environment variables at instantiation time
    so that tests can override them by patching ``os.environ``.
    """

    # ── API Keys ────────────────────────────────────────────────────────────
    anthropic_api_key: str = field(
        default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", "")
    )
    coinmarketcap_api_key: str = field(
        default_factory=lambda: os.environ.get("COINMARKETCAP_API_KEY", "")
    )
    etherscan_api_key: str = field(
        default_factory=lambda: os.environ.get("ETHERSCAN_API_KEY", "")
    )
    dune_api_key: str = field(
        default_factory=lambda: os.environ.get("DUNE_API_KEY", "")
    )
    cryptopanic_api_key: str = field(
        default_factory=lambda: os.environ.get("CRYPTOPANIC_API_KEY", "")
    )

    # ── Flask ───────────────────────────────────────────────────────────────
    debug: bool = field(
        default_factory=lambda: os.environ.get("FLASK_DEBUG", "0") == "1"
    )
    port: int = field(
        default_factory=lambda: _env_int("PORT", "5001")
    )

    # ── Upstream timeouts (seconds) ─────────────────────────────────────────
    price_timeout: float = field(
        default_factory=lambda: _env_float("PRICE_TIMEOUT", "10")
    )
    price_fallback_timeout: float = field(
        default_factory=lambda: _env_float("PRICE_FALLBACK_TIMEOUT", "5")
    )
    defi_timeout: float = field(
        default_factory=lambda: _env_float("DEFI_TIMEOUT", "8")
    )
    explorer_timeout: float = field(
        default_factory=lambda: _env_float("EXPLORER_TIMEOUT", "15")
    )
    analytics_timeout: float = field(
        default_factory=lambda: _env_float("ANALYTICS_TIMEOUT", "15")
    )
    news_timeout: float = field(
        default_factory=lambda: _env_float("NEWS_TIMEOUT", "8")
    )

    #: When off, price/TVL lookups return only what real providers resolved.
    allow_synthetic_data: bool = field(
        default_factory=lambda: _env_flag("ALLOW_SYNTHETIC_DATA", "1")
    )

    # ── AI Models ───────────────────────────────────────────────────────────
    #: Ordered fallback list; a capacity or rate-limit error advances to the next.
    llm_models: list[str] = field(
        default_factory=lambda: _env_list("LLM_MODELS", DEFAULT_LLM_MODELS)
    )
    classifier_timeout: float = field(
        default_factory=lambda: _env_float("LLM_CLASSIFIER_TIMEOUT", "20")
    )
    analysis_timeout: float = field(
        default_factory=lambda: _env_float("LLM_ANALYSIS_TIMEOUT", "30")
    )
    analysis_max_tokens: int = field(
        default_factory=lambda: _env_int("LLM_ANALYSIS_MAX_TOKENS", "2500")
    )
    chat_max_tokens: int = field(
        default_factory=lambda: _env_int("LLM_CHAT_MAX_TOKENS", "2500")
    )

    # ── Retry / circuit breaker ─────────────────────────────────────────────
    llm_max_retries: int = field(
        default_factory=lambda: _env_int("LLM_MAX_RETRIES", "3")
    )
    llm_initial_delay: float = field(
        default_factory=lambda: _env_float("LLM_INITIAL_DELAY", "1.5")
    )
    llm_backoff_factor: float = field(
        default_factory=lambda: _env_float("LLM_BACKOFF_FACTOR", "2")
    )
    llm_jitter: float = field(
        default_factory=lambda: _env_float("LLM_JITTER", "0.2")
    )
    llm_max_delay: float = field(
        default_factory=lambda: _env_float("LLM_MAX_DELAY", "20")
    )
    llm_cooldown_seconds: float = field(
        default_factory=lambda: _env_float("LLM_COOLDOWN_SECONDS", "300")
    )

    # ── Conversations / request limits ──────────────────────────────────────
    max_messages_per_conversation: int = field(
        default_factory=lambda: _env_int("MAX_CONVERSATION_MESSAGES", "10")
    )
    max_conversations: int = field(
        default_factory=lambda: _env_int("MAX_CONVERSATIONS", "500")
    )
    max_query_length: int = field(
        default_factory=lambda: _env_int("MAX_QUERY_LENGTH", "2000")
    )
    max_prompt_data_chars: int = field(
        default_factory=lambda: _env_int("MAX_PROMPT_DATA_CHARS", "12000")
    )

    def validate(self) -> None:
        """Raise ``ValueError`` if any setting is unusable."""
        if not self.llm_models:
            raise ValueError("LLM_MODELS must name at least one model.")
        if self.llm_max_retries < 0:
            raise ValueError("LLM_MAX_RETRIES must not be negative.")
        if self.max_messages_per_conversation < 1 or self.max_conversations < 1:
            raise ValueError("Conversation limits must be positive.")
        timeouts = (
            self.price_timeout, self.price_fallback_timeout, self.defi_timeout,
            self.explorer_timeout, self.analytics_timeout, self.news_timeout,
            self.classifier_timeout, self.analysis_timeout,
        )
        if any(t <= 0 for t in timeouts):
            raise ValueError("All upstream timeouts must be positive.")

    def missing_keys(self) -> list[str]:
        """Return the environment names of optional provider keys that are unset."""
        keys = {
            "ANTHROPIC_API_KEY": self.anthropic_api_key,
            "COINMARKETCAP_API_KEY": self.coinmarketcap_api_key,
            "ETHERSCAN_API_KEY": self.etherscan_api_key,
            "DUNE_API_KEY": self.dune_api_key,
            "CRYPTOPANIC_API_KEY": self.cryptopanic_api_key,
        }
        return [name for name, value in keys.items() if not value]

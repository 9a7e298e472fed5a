"""
coinsight core package.

Modules
───────
models           Pydantic data models (CryptoAsset, DeFiProtocol, AnalysisResult, ...)
errors           Error taxonomy mapped onto HTTP statuses
intent           Keyword intent resolution and keyword-only data requirements
market           Price and TVL gateway: CoinMarketCap → CoinGecko → synthetic
explorer         Etherscan and Dune clients
news             CryptoPanic headlines
retry            Backoff with jitter and ordered model fallback
circuit_breaker  Time-based breaker in front of the LLM
llm              Anthropic client wrapper
parsing          JSON recovery for model output
sources          Provider registry, source normalisation, citations
normalizer       Table repair, fallback summaries and insights
memory           Bounded in-process conversation memory
analyst          Requirement classification, analysis and chat prompts
pipeline         Data collection and the ResearchService entry point
"""

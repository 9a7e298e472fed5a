"""CryptoPanic news headlines, used for news-mention counts in the comparison table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

import requests

from coinsight.models import NewsEvent

if TYPE_CHECKING:
    from config.settings import Settings

logger = logging.getLogger(__name__)

CRYPTOPANIC_URL = "https://cryptopanic.com/api/developer/v2/posts/"
MAX_EVENTS = 50


def _vote_sentiment(votes: dict) -> str:
    positive = (votes.get("positive") or 0) + (votes.get("liked") or 0)
    negative = (votes.get("negative") or 0) + (votes.get("disliked") or 0)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


class NewsClient:
    """Key-gated CryptoPanic client. Returns ``[]`` without a key or on failure."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.session = session or requests.Session()

    def fetch_news_events(self, symbols: list[str]) -> list[NewsEvent]:
        if not self.settings.cryptopanic_api_key or not symbols:
            return []
        try:
            response = self.session.get(
                CRYPTOPANIC_URL,
                params={
                    "auth_token": self.settings.cryptopanic_api_key,
                    "currencies": ",".join(symbols[:20]),
                    "public": "true",
                },
                timeout=self.settings.news_timeout,
            )
            response.raise_for_status()
            posts = response.json().get("results") or []
        except (requests.RequestException, ValueError, AttributeError) as exc:
            logger.warning("CryptoPanic request failed: %s", exc)
            return []

        events: list[NewsEvent] = []
        for post in posts[:MAX_EVENTS]:
            if not isinstance(post, dict) or not post.get("title"):
                continue
            source = post.get("source") or {}
            events.append(NewsEvent(
                title=post["title"],
                description=post.get("description") or "",
                source=source.get("title", "") if isinstance(source, dict) else str(source),
                url=post.get("url") or "",
                published_at=post.get("published_at") or "",
                sentiment=_vote_sentiment(post.get("votes") or {}),
            ))
        logger.info("CryptoPanic returned %d news events", len(events))
        return events

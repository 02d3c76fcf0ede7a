"""Web search service using Tavily."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

import httpx

from ..config import settings
from ..errors import ConfigurationError, UpstreamServiceError
from ..models.rag_context import WebSearchResult

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
_TOPICS = {"general", "news", "finance"}
_TIME_RANGES = {"day", "week", "month", "year", "d", "w", "m", "y"}


@dataclass(frozen=True)
class WebSearchFilters:
    topic: Optional[str] = None
    time_range: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    country: Optional[str] = None


class SearchService:
    """Service for web search and result normalization."""

    def __init__(self, api_key: Optional[str] = None, timeout_seconds: Optional[int] = None):
        self.api_key = api_key if api_key is not None else settings.tavily_api_key
        self.timeout_seconds = int(timeout_seconds or settings.tavily_timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    @staticmethod
    def build_payload(query: str, max_results: int, filters: Optional[WebSearchFilters] = None) -> Dict[str, Any]:
        filters = filters or WebSearchFilters()
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": "basic",
            "max_results": max(1, min(20, int(max_results))),
            "include_answer": False,
            "include_raw_content": False,
        }
        topic = (filters.topic or "").strip().lower()
        if topic in _TOPICS:
            payload["topic"] = topic
        time_range = (filters.time_range or "").strip().lower()
        if time_range in _TIME_RANGES:
            payload["time_range"] = time_range
        if filters.start_date:
            payload["start_date"] = filters.start_date
        if filters.end_date:
            payload["end_date"] = filters.end_date
        if filters.country:
            # Tavily only honours country on the general topic
            payload["country"] = filters.country.strip().lower()
        return payload

    async def search(
        self,
        query: str,
        *,
        max_results: int = 5,
        filters: Optional[WebSearchFilters] = None,
    ) -> List[WebSearchResult]:
        query = (query or "").strip()
        if not query:
            return []
        if not self.is_configured():
            raise ConfigurationError("Tavily API key is not configured")

        payload = self.build_payload(query, max_results, filters)
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        timeout = httpx.Timeout(self.timeout_seconds)
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(TAVILY_SEARCH_URL, json=payload, headers=headers)
            if response.status_code >= 400:
                raise UpstreamServiceError(
                    f"Web search failed: HTTP {response.status_code}",
                    service="tavily",
                    status=response.status_code,
                )
            data = response.json()

        access_date = datetime.now(timezone.utc).isoformat()
        return self.parse_results(data, access_date=access_date)

    @staticmethod
    def parse_results(data: Dict[str, Any], *, access_date: Optional[str] = None) -> List[WebSearchResult]:
        results: List[WebSearchResult] = []
        for item in data.get("results", []) or []:
            url = item.get("url")
            if not url:
                continue
            score = item.get("score")
            results.append(
                WebSearchResult(
                    title=item.get("title") or url,
                    url=url,
                    content=str(item.get("content") or ""),
                    score=float(score) if score is not None else None,
                    published_date=item.get("published_date"),
                    author=item.get("author"),
                    access_date=access_date,
                )
            )
        logger.info("[Search] Tavily returned %d results", len(results))
        return results

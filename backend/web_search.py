"""Web search through the Serper API."""

from __future__ import annotations

from typing import Optional

import httpx

import config
from logger import get_logger
from models import SearchSnippet

logger = get_logger("PromptQuiz.search")


class SerperSearchClient:
    def __init__(
        self,
        api_key: str = config.SERPER_API_KEY,
        url: str = config.SERPER_URL,
        num_results: int = config.SERPER_RESULTS,
        http: Optional[httpx.AsyncClient] = None,
        request_timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.url = url
        self.num_results = num_results
        self.http = http
        self.request_timeout = request_timeout

    async def search(self, query: str) -> list[SearchSnippet]:
        """Top organic results for ``query``.

        Raises RuntimeError when the key is missing or the API call fails;
        the trivia agent treats that as "stop searching".
        """
        if not self.api_key:
            raise RuntimeError("SERPER_API_KEY is not set")

        payload = {"q": query, "num": self.num_results}
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        try:
            if self.http is not None:
                response = await self.http.post(self.url, json=payload, headers=headers, timeout=self.request_timeout)
            else:
                async with httpx.AsyncClient() as http:
                    response = await http.post(self.url, json=payload, headers=headers, timeout=self.request_timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise RuntimeError(f"Serper API error: {e}") from e

        organic = response.json().get("organic") or []
        results = [
            SearchSnippet(
                title=item.get("title") or "No title",
                url=item.get("link") or "",
                snippet=item.get("snippet") or "No snippet available",
            )
            for item in organic
        ]
        logger.info(f"🔎 Search '{query}' -> {len(results)} results")
        return results

# caloric/orchestrator.py
from typing import Any, List

from caloric import monitoring
from caloric.concurrency import run_with_concurrency
from caloric.db import ResponseCache
from caloric.processors.food_normalizer import as_string
from caloric.schemas import (
    DetailFailed,
    DetailFetched,
    DetailKey,
    DetailOutcome,
    DetailPayload,
    FAILED_DETAIL_STATUS,
    SearchParams,
    SearchPayload,
    SearchResult,
)

E_SEARCH_FAILED = "E_SEARCH_FAILED"
DEFAULT_DETAIL_CONCURRENCY = 10


def extract_detail_keys(search_json: Any) -> List[DetailKey]:
    """
    Distinct (id, version) pairs from `items[].item`, in first-seen order.
    Rows missing either field are skipped.
    """
    if not isinstance(search_json, dict):
        return []
    items = search_json.get("items")
    if not isinstance(items, list):
        return []

    seen = set()
    keys: List[DetailKey] = []
    for row in items:
        item = row.get("item") if isinstance(row, dict) else None
        if not isinstance(item, dict):
            continue
        food_id = as_string(item.get("id"))
        version = as_string(item.get("version"))
        if food_id is None or version is None:
            continue
        key = DetailKey(food_id=food_id, version=version)
        if key in seen:
            continue
        seen.add(key)
        keys.append(key)
    return keys


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class SearchOrchestrator:
    """
    Cache-or-fetch search with per-item detail enrichment.

    `client` needs search_nutrition(params), fetch_food_detail(id, version)
    and detail_url(id, version); see connectors.nutrition_client.
    """

    def __init__(self, cache: ResponseCache, client, detail_concurrency: int = DEFAULT_DETAIL_CONCURRENCY):
        self.cache = cache
        self.client = client
        self.detail_concurrency = max(1, detail_concurrency)

    async def _resolve_search(self, params: SearchParams):
        cached = await self.cache.find_cached_search(params)
        if cached is not None:
            monitoring.inc_search_cache("hit")
            return cached.id, SearchPayload(status=cached.status, url=cached.url, data=cached.data, text=cached.text)

        monitoring.inc_search_cache("miss")
        response = await self.client.search_nutrition(params)
        search_id = await self.cache.insert_search(params, response)
        monitoring.logger.info(
            "Stored upstream search",
            extra={"search_response_id": search_id, "query": params.query, "status": response.status},
        )
        return search_id, SearchPayload(status=response.status, url=response.url, data=response.data, text=response.text)

    async def _resolve_detail(self, search_id: int, key: DetailKey) -> DetailOutcome:
        cached = await self.cache.find_cached_detail(key.food_id, key.version)
        if cached is not None:
            await self.cache.insert_detail(search_id, key, url=cached.url, status=cached.status,
                                           data=cached.data, text=cached.text)
            monitoring.inc_detail_resolution("cached")
            return DetailFetched(key=key, status=cached.status, url=cached.url, data=cached.data, text=cached.text)

        try:
            response = await self.client.fetch_food_detail(key.food_id, key.version)
            await self.cache.insert_detail(search_id, key, url=response.url, status=response.status,
                                           data=response.data, text=response.text)
        except Exception as e:
            outcome = DetailFailed(key=key, url=self.client.detail_url(key.food_id, key.version),
                                   message=_error_message(e))
            monitoring.logger.warning(
                "Detail fetch failed",
                extra={"search_response_id": search_id, "food_id": key.food_id,
                       "version": key.version, "error": outcome.message},
            )
            await self.cache.insert_detail(search_id, key, url=outcome.url, status=FAILED_DETAIL_STATUS,
                                           data=None, text=outcome.message)
            monitoring.inc_detail_resolution("failed")
            return outcome

        monitoring.inc_detail_resolution("fetched")
        return DetailFetched(key=key, status=response.status, url=response.url, data=response.data, text=response.text)

    async def execute_search(self, params: SearchParams, include_details: bool = True) -> SearchResult:
        """
        1. Reuse the newest cached search for the exact params, else fetch + store.
        2. Without details (or without a parsed body) return right away.
        3. Resolve each distinct (id, version) pair: copy a cached detail forward
           onto this search, else fetch it. Failures become status-0 records.
        4. Details come back in pair order, whatever order they finish in.

        Raises UpstreamError if the search call itself fails.
        """
        search_id, search = await self._resolve_search(params)

        if not include_details or not search.data:
            return SearchResult(search_response_id=search_id, search=search, detail_count=0, details=[])

        keys = extract_detail_keys(search.data)
        tasks = [lambda key=key: self._resolve_detail(search_id, key) for key in keys]
        outcomes = await run_with_concurrency(tasks, self.detail_concurrency)
        details = [DetailPayload.from_outcome(o) for o in outcomes]

        monitoring.logger.info(
            "Search resolved",
            extra={"search_response_id": search_id, "detail_count": len(details),
                   "failed": sum(1 for o in outcomes if isinstance(o, DetailFailed))},
        )
        return SearchResult(search_response_id=search_id, search=search, detail_count=len(details), details=details)

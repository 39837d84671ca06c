# caloric/connectors/nutrition_client.py
"""
Async client for the upstream nutrition provider.

Two read operations:
- search_nutrition(params)            GET /api/nutrition?query&offset&max_items&country_code&resource_type
- fetch_food_detail(food_id, version) GET /api/services/foods/<id>?version=<version>

Both return UpstreamResponse(status, url, data, text): the body is parsed as JSON
when possible, otherwise `data` is None and `text` carries the raw body.
Non-2xx responses are returned, not raised. Transport failures and timeouts
raise UpstreamError.
"""

import json
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx

from caloric import monitoring
from caloric.schemas import SearchParams, UpstreamResponse

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/145.0.0.0 Safari/537.36"
)


class UpstreamError(RuntimeError):
    pass


def _parse_body(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return None


class NutritionClient:
    def __init__(self, base_url: str, authorization: str, cookie: Optional[str] = None,
                 timeout_seconds: float = 20.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.authorization = authorization
        self.cookie = cookie
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._headers(),
            timeout=timeout_seconds,
            follow_redirects=True,
            transport=transport,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Language": "en-US,en;q=0.9",
            "User-Agent": USER_AGENT,
            "Referer": f"{self.base_url}/food/search",
            "Authorization": self.authorization,
        }
        if self.cookie:
            headers["Cookie"] = self.cookie
        return headers

    def detail_url(self, food_id: str, version: str) -> str:
        return f"{self.base_url}{self._detail_path(food_id)}?{urlencode({'version': version})}"

    @staticmethod
    def _detail_path(food_id: str) -> str:
        return f"/api/services/foods/{quote(food_id, safe='')}"

    async def _get(self, path: str, params: Dict[str, str], operation: str) -> UpstreamResponse:
        start = time.time()
        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamError(f"{operation} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"{operation} failed: {e}") from e
        finally:
            monitoring.observe_upstream(start, operation)

        raw = response.text
        data = _parse_body(raw)
        return UpstreamResponse(
            status=response.status_code,
            url=str(response.url),
            data=data,
            text=None if data is not None else raw,
        )

    async def search_nutrition(self, params: SearchParams) -> UpstreamResponse:
        return await self._get(
            "/api/nutrition",
            {
                "query": params.query,
                "offset": str(params.offset),
                "max_items": str(params.max_items),
                "country_code": params.country_code,
                "resource_type": params.resource_type,
            },
            "search",
        )

    async def fetch_food_detail(self, food_id: str, version: str) -> UpstreamResponse:
        return await self._get(self._detail_path(food_id), {"version": version}, "detail")

    async def aclose(self):
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Offline stand-in for local development (MOCK_UPSTREAM=true)
# ---------------------------------------------------------------------------
_MOCK_FOODS = [
    {"id": "1001", "version": "1", "description": "Banana", "brand_name": None,
     "serving_sizes": [{"value": 1, "unit": "medium"}],
     "nutritional_contents": {"energy": {"value": 105}, "protein": 1.3, "carbohydrates": 27, "fat": 0.4,
                              "fiber": 3.1, "sugar": 14.4, "potassium": 422}},
    {"id": "1002", "version": "3", "description": "Greek Yogurt, Plain", "brand_name": "Fage",
     "serving_sizes": [{"value": 170, "unit": "g"}],
     "nutritional_contents": {"energy": {"value": 100}, "protein": 18, "carbohydrates": 6, "fat": 0,
                              "sugar": 6, "sodium": 65}},
    {"id": "1003", "version": "2", "description": "Whey Protein Cookies & Cream", "brand_name": "Ena",
     "serving_sizes": [{"value": 31, "unit": "g"}],
     "nutritional_contents": {"energy": {"value": 120}, "protein": 24, "carbohydrates": 3, "fat": 1.5}},
]


class MockNutritionClient:
    """Deterministic provider used when no upstream credentials are configured."""

    def __init__(self, base_url: str = "https://mock.nutrition.local"):
        self.base_url = base_url.rstrip("/")

    def detail_url(self, food_id: str, version: str) -> str:
        return f"{self.base_url}/api/services/foods/{quote(food_id, safe='')}?{urlencode({'version': version})}"

    async def search_nutrition(self, params: SearchParams) -> UpstreamResponse:
        q = params.query.strip().lower()
        hits = [f for f in _MOCK_FOODS if any(w in f["description"].lower() for w in q.split())]
        page = hits[params.offset:params.offset + params.max_items]
        items = [{"item": {"id": f["id"], "version": f["version"], "description": f["description"],
                           "brand_name": f["brand_name"]}} for f in page]
        url = f"{self.base_url}/api/nutrition?{urlencode({'query': params.query})}"
        return UpstreamResponse(status=200, url=url, data={"items": items})

    async def fetch_food_detail(self, food_id: str, version: str) -> UpstreamResponse:
        for food in _MOCK_FOODS:
            if food["id"] == food_id and food["version"] == version:
                return UpstreamResponse(status=200, url=self.detail_url(food_id, version), data=dict(food))
        return UpstreamResponse(status=404, url=self.detail_url(food_id, version), data={"error": "not found"})

    async def aclose(self):
        return None

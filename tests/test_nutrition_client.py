# tests/test_nutrition_client.py
import asyncio

import httpx
import pytest

from caloric.connectors.nutrition_client import MockNutritionClient, NutritionClient, UpstreamError
from caloric.schemas import SearchParams

BASE = "https://nutrition.test"
PARAMS = SearchParams(query="greek yogurt", offset=5, max_items=20, country_code="US", resource_type="foods")


def run_with(handler, call, cookie=None):
    async def go():
        client = NutritionClient(BASE, "Bearer token", cookie=cookie, transport=httpx.MockTransport(handler))
        try:
            return await call(client)
        finally:
            await client.aclose()
    return asyncio.run(go())


def test_search_request_shape_and_json_body():
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={"items": []})

    resp = run_with(handler, lambda c: c.search_nutrition(PARAMS), cookie="sid=1")

    req = seen["request"]
    assert req.url.path == "/api/nutrition"
    assert dict(req.url.params) == {
        "query": "greek yogurt", "offset": "5", "max_items": "20",
        "country_code": "US", "resource_type": "foods",
    }
    assert req.headers["authorization"] == "Bearer token"
    assert req.headers["accept"] == "application/json"
    assert req.headers["referer"] == f"{BASE}/food/search"
    assert req.headers["cookie"] == "sid=1"
    assert resp.status == 200
    assert resp.data == {"items": []}
    assert resp.text is None


def test_detail_path_is_encoded():
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={"id": "a/b"})

    resp = run_with(handler, lambda c: c.fetch_food_detail("a/b", "7"))

    assert "/api/services/foods/a%2Fb?" in str(seen["request"].url)
    assert seen["request"].url.params["version"] == "7"
    assert resp.data == {"id": "a/b"}


def test_non_json_body_kept_as_text_and_status_passed_through():
    def handler(request):
        return httpx.Response(503, text="<html>maintenance</html>")

    resp = run_with(handler, lambda c: c.search_nutrition(PARAMS))

    assert resp.status == 503
    assert resp.data is None
    assert resp.text == "<html>maintenance</html>"


def test_transport_failure_raises_upstream_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(UpstreamError):
        run_with(handler, lambda c: c.fetch_food_detail("1", "1"))


def test_timeout_raises_upstream_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(UpstreamError, match="timed out"):
        run_with(handler, lambda c: c.search_nutrition(PARAMS))


def test_detail_url_matches_failure_record_format():
    client = NutritionClient(BASE, "x")
    assert client.detail_url("42", "3") == f"{BASE}/api/services/foods/42?version=3"
    asyncio.run(client.aclose())


def test_mock_client_is_deterministic():
    client = MockNutritionClient()
    search = asyncio.run(client.search_nutrition(
        SearchParams(query="banana", offset=0, max_items=10, country_code="US", resource_type="foods")))
    assert [row["item"]["id"] for row in search.data["items"]] == ["1001"]

    detail = asyncio.run(client.fetch_food_detail("1001", "1"))
    assert detail.status == 200
    assert detail.data["description"] == "Banana"
    assert asyncio.run(client.fetch_food_detail("1001", "9")).status == 404

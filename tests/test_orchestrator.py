# tests/test_orchestrator.py
"""
SearchOrchestrator.execute_search with a real SQLite cache and a fake upstream.
"""
import asyncio

import pytest
from sqlalchemy import select

from caloric.connectors.nutrition_client import UpstreamError
from caloric.models import FoodDetailResponseRecord
from caloric.orchestrator import SearchOrchestrator, extract_detail_keys
from caloric.processors.food_normalizer import map_search_results
from caloric.schemas import DetailKey, SearchParams
from fakes import FakeNutritionClient, make_cache, search_items


def params(query="banana"):
    return SearchParams(query=query, offset=0, max_items=10, country_code="US", resource_type="foods")


def detail_rows(cache, search_id):
    async def run():
        async with cache.engine.connect() as conn:
            stmt = select(FoodDetailResponseRecord).where(FoodDetailResponseRecord.search_response_id == search_id)
            return (await conn.execute(stmt)).all()
    return asyncio.run(run())


def test_extract_detail_keys_dedups_and_skips_incomplete():
    payload = {
        "items": [
            {"item": {"id": 42, "version": 3}},
            {"item": {"id": "42", "version": "3"}},
            {"item": {"id": "7"}},
            {"nope": True},
            "junk",
            {"item": {"id": "8", "version": "1"}},
        ]
    }
    assert extract_detail_keys(payload) == [DetailKey("42", "3"), DetailKey("8", "1")]
    assert extract_detail_keys(None) == []
    assert extract_detail_keys({"items": "x"}) == []


def test_extract_detail_keys_matches_result_mapping_keys():
    payload = {"items": [{"item": {"id": 1.0, "version": 2}}, {"item": {"id": " 5 ", "version": "  "}}]}
    assert extract_detail_keys(payload) == [DetailKey("1", "2")]


def test_cache_idempotence(tmp_path):
    client = FakeNutritionClient(search_data=search_items(("1", "1")))
    orch = SearchOrchestrator(make_cache(tmp_path), client)

    first = asyncio.run(orch.execute_search(params()))
    second = asyncio.run(orch.execute_search(params()))

    assert first.search_response_id == second.search_response_id
    assert len(client.search_calls) == 1
    assert second.search.data == first.search.data


def test_detail_dedup(tmp_path):
    client = FakeNutritionClient(search_data=search_items(("42", "3"), ("42", "3"), ("9", "1")))
    orch = SearchOrchestrator(make_cache(tmp_path), client)

    result = asyncio.run(orch.execute_search(params()))

    assert result.detail_count == 2
    assert [(d.food_id, d.version) for d in result.details] == [("42", "3"), ("9", "1")]
    assert sorted(client.detail_calls) == [("42", "3"), ("9", "1")]


def test_detail_cache_reused_across_searches(tmp_path):
    cache = make_cache(tmp_path)
    client = FakeNutritionClient(search_data=search_items(("42", "3")))
    orch = SearchOrchestrator(cache, client)

    a = asyncio.run(orch.execute_search(params("greek yogurt")))
    b = asyncio.run(orch.execute_search(params("yogurt")))

    assert a.search_response_id != b.search_response_id
    assert client.detail_calls == [("42", "3")]
    assert b.details[0].data == a.details[0].data
    assert len(detail_rows(cache, a.search_response_id)) == 1
    assert len(detail_rows(cache, b.search_response_id)) == 1


def test_order_preserved_under_concurrency(tmp_path):
    pairs = [(str(i), "1") for i in range(1, 6)]
    # first pair finishes last
    delays = {str(i): 0.05 - i * 0.01 for i in range(1, 6)}
    client = FakeNutritionClient(search_data=search_items(*pairs), delays=delays)
    orch = SearchOrchestrator(make_cache(tmp_path), client, detail_concurrency=5)

    result = asyncio.run(orch.execute_search(params()))

    assert [d.food_id for d in result.details] == ["1", "2", "3", "4", "5"]


def test_partial_failure_isolated(tmp_path):
    cache = make_cache(tmp_path)
    pairs = [(str(i), "1") for i in range(1, 6)]
    client = FakeNutritionClient(search_data=search_items(*pairs), failures={"2"})
    orch = SearchOrchestrator(cache, client, detail_concurrency=2)

    result = asyncio.run(orch.execute_search(params()))

    assert result.detail_count == 5
    failed = result.details[1]
    assert failed.food_id == "2"
    assert failed.status == 0
    assert failed.data is None
    assert failed.text == "detail 2 failed"
    assert all(d.status == 200 for i, d in enumerate(result.details) if i != 1)

    rows = {r.food_id: r for r in detail_rows(cache, result.search_response_id)}
    assert rows["2"].mfp_status == 0
    assert rows["2"].mfp_url == "https://upstream.test/api/services/foods/2?version=1"


def test_include_details_false_skips_enrichment(tmp_path):
    client = FakeNutritionClient(search_data=search_items(("1", "1"), ("2", "1")))
    orch = SearchOrchestrator(make_cache(tmp_path), client)

    result = asyncio.run(orch.execute_search(params(), include_details=False))

    assert result.detail_count == 0
    assert result.details == []
    assert client.detail_calls == []


def test_unparsed_search_body_returns_without_details(tmp_path):
    client = FakeNutritionClient(search_data=None)
    orch = SearchOrchestrator(make_cache(tmp_path), client)

    result = asyncio.run(orch.execute_search(params()))

    assert result.details == []
    assert client.detail_calls == []


def test_search_failure_propagates(tmp_path):
    class Broken(FakeNutritionClient):
        async def search_nutrition(self, params):
            raise UpstreamError("search timed out")

    orch = SearchOrchestrator(make_cache(tmp_path), Broken())
    with pytest.raises(UpstreamError):
        asyncio.run(orch.execute_search(params()))


def test_payload_serializes_camel_case(tmp_path):
    orch = SearchOrchestrator(make_cache(tmp_path), FakeNutritionClient())
    payload = asyncio.run(orch.execute_search(params())).model_dump(by_alias=True)

    assert set(payload) == {"searchResponseId", "search", "detailCount", "details"}
    assert set(payload["details"][0]) == {"foodId", "version", "status", "data", "text"}


def test_details_for_float_ids_merge_into_foods(tmp_path):
    search = {"items": [{"item": {"id": 1.0, "version": 2, "description": "apple"}}]}
    client = FakeNutritionClient(
        search_data=search,
        details={("1", "2"): {"id": "1", "version": "2", "description": "Apple, raw", "brand_name": "Orchard"}},
    )
    orch = SearchOrchestrator(make_cache(tmp_path), client)

    result = asyncio.run(orch.execute_search(params("apple")))
    foods = map_search_results(result)

    assert client.detail_calls == [("1", "2")]
    assert [(f.id, f.name, f.brand) for f in foods] == [("1:2", "Apple, raw", "Orchard")]

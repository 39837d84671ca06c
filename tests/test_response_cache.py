# tests/test_response_cache.py
"""
ResponseCache against a disposable SQLite file.
"""
import asyncio

from sqlalchemy import func, select

from caloric.models import FoodDetailResponseRecord
from caloric.schemas import DetailKey, SearchParams, UpstreamResponse
from fakes import make_cache

PARAMS = SearchParams(query="banana", offset=0, max_items=10, country_code="US", resource_type="foods")


def _count_details(cache):
    async def run():
        async with cache.engine.connect() as conn:
            return (await conn.execute(select(func.count()).select_from(FoodDetailResponseRecord))).scalar()
    return asyncio.run(run())


def test_search_miss_then_newest_hit(tmp_path):
    cache = make_cache(tmp_path)
    assert asyncio.run(cache.find_cached_search(PARAMS)) is None

    first = asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "u1", data={"items": []})))
    second = asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "u2", data={"items": [1]})))
    assert second > first

    hit = asyncio.run(cache.find_cached_search(PARAMS))
    assert hit.id == second
    assert hit.url == "u2"
    assert hit.data == {"items": [1]}


def test_search_lookup_uses_all_five_fields(tmp_path):
    cache = make_cache(tmp_path)
    asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "u", data={})))

    other = SearchParams(query="banana", offset=0, max_items=10, country_code="GB", resource_type="foods")
    assert asyncio.run(cache.find_cached_search(other)) is None


def test_text_body_round_trips(tmp_path):
    cache = make_cache(tmp_path)
    asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(503, "u", data=None, text="<html>down</html>")))

    hit = asyncio.run(cache.find_cached_search(PARAMS))
    assert hit.status == 503
    assert hit.data is None
    assert hit.text == "<html>down</html>"


def test_detail_duplicate_insert_is_noop(tmp_path):
    cache = make_cache(tmp_path)
    search_id = asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "u", data={})))
    key = DetailKey(food_id="42", version="3")

    asyncio.run(cache.insert_detail(search_id, key, url="d1", status=200, data={"a": 1}))
    asyncio.run(cache.insert_detail(search_id, key, url="d2", status=200, data={"a": 2}))

    assert _count_details(cache) == 1
    hit = asyncio.run(cache.find_cached_detail("42", "3"))
    assert hit.url == "d1"


def test_detail_lookup_ignores_search_id(tmp_path):
    cache = make_cache(tmp_path)
    a = asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "a", data={})))
    b = asyncio.run(cache.insert_search(PARAMS, UpstreamResponse(200, "b", data={})))
    key = DetailKey(food_id="42", version="3")

    asyncio.run(cache.insert_detail(a, key, url="from-a", status=200, data={"v": "a"}))
    asyncio.run(cache.insert_detail(b, key, url="from-b", status=200, data={"v": "b"}))

    assert _count_details(cache) == 2
    assert asyncio.run(cache.find_cached_detail("42", "3")).data == {"v": "b"}
    assert asyncio.run(cache.find_cached_detail("42", "4")) is None

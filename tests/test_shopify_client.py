"""Tests for the commerce REST client, request pacing and backoff."""

import asyncio
from datetime import datetime, timezone

import aiohttp
import pytest

from stocksync.api_clients import (
    AuthenticationError,
    CommerceAPIError,
    CommerceNotConfiguredError,
    RequestPacer,
    RetryExhaustedError,
    ShopifyClient,
    compute_backoff,
    extract_next_page_info,
    parse_retry_after
)
from stocksync.config.settings import CommerceSettings, RateLimitSettings

from conftest import FakeResponse, FakeSession

VARIANT = {"id": 1, "sku": "WIDGET-1", "product_id": 10, "inventory_item_id": 111, "title": "Default"}


class Recorder:
    """Awaitable sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_client(responses, location_id="99", max_retries=2):
    session = FakeSession(responses)
    sleep = Recorder()
    client = ShopifyClient(
        CommerceSettings(store="test-shop.myshopify.com", token="shpat_test", location_id=location_id),
        RateLimitSettings(min_interval_ms=0, max_retries=max_retries, base_backoff_ms=10, max_backoff_ms=40),
        session=session,
        sleep=sleep,
    )
    return client, session, sleep


class TestHelpers:

    def test_extract_next_page_info(self):
        link = (
            '<https://s.myshopify.com/admin/api/2024-01/inventory_levels.json?limit=250&page_info=prev1>; rel="previous", '
            '<https://s.myshopify.com/admin/api/2024-01/inventory_levels.json?limit=250&page_info=next2>; rel="next"'
        )

        assert extract_next_page_info(link) == "next2"
        assert extract_next_page_info('<https://x/?page_info=p>; rel="previous"') is None
        assert extract_next_page_info(None) is None

    def test_compute_backoff_is_bounded(self):
        assert compute_backoff(1, base=0.75, max_delay=5) == 0.75
        assert compute_backoff(2, base=0.75, max_delay=5) == 1.5
        assert compute_backoff(10, base=0.75, max_delay=5) == 5

    def test_parse_retry_after(self):
        now = datetime(2024, 3, 5, 12, 0, 0, tzinfo=timezone.utc)

        assert parse_retry_after("2.5") == 2.5
        assert parse_retry_after("Tue, 05 Mar 2024 12:00:10 GMT", now=now) == 10
        assert parse_retry_after("Tue, 05 Mar 2024 11:00:00 GMT", now=now) == 0
        assert parse_retry_after("soon") is None
        assert parse_retry_after(None) is None

    @pytest.mark.asyncio
    async def test_pacer_spaces_requests(self):
        now = [100.0]
        waits = []

        async def fake_sleep(delay):
            waits.append(delay)
            now[0] += delay

        pacer = RequestPacer(0.5, clock=lambda: now[0], sleep=fake_sleep)

        for _ in range(3):
            async with pacer.slot():
                now[0] += 0.1

        assert waits == pytest.approx([0.4, 0.4])


class TestShopifyClient:

    @pytest.mark.asyncio
    async def test_find_variant_by_sku(self):
        client, session, _ = make_client([FakeResponse(200, {"variants": [VARIANT]})])

        variant = await client.find_variant_by_sku(" WIDGET-1 ")

        assert variant["inventory_item_id"] == 111
        call = session.calls[0]
        assert call["method"] == "GET"
        assert call["url"] == "https://test-shop.myshopify.com/admin/api/2024-01/variants.json"
        assert call["params"] == {"sku": "WIDGET-1"}
        assert call["headers"]["X-Shopify-Access-Token"] == "shpat_test"

    @pytest.mark.asyncio
    async def test_find_variant_by_inventory_item_prefers_exact_match(self):
        other = {**VARIANT, "inventory_item_id": 999, "sku": "OTHER"}
        client, _, _ = make_client([FakeResponse(200, {"variants": [other, VARIANT]})])

        variant = await client.find_variant_by_inventory_item_id(111)

        assert variant["sku"] == "WIDGET-1"

    @pytest.mark.asyncio
    async def test_get_inventory_item_sku(self):
        client, _, _ = make_client([
            FakeResponse(200, {"inventory_item": {"id": 111, "sku": " WIDGET-1 "}}),
            FakeResponse(200, {"inventory_item": {"id": 112, "sku": ""}}),
        ])

        assert await client.get_inventory_item_sku(111) == "WIDGET-1"
        assert await client.get_inventory_item_sku(112) is None

    @pytest.mark.asyncio
    async def test_retries_on_429_honouring_retry_after(self):
        client, session, sleep = make_client([
            FakeResponse(429, {"errors": "slow down"}, headers={"Retry-After": "2"}),
            FakeResponse(200, {"variants": [VARIANT]}),
        ])

        variant = await client.find_variant_by_sku("WIDGET-1")

        assert variant["sku"] == "WIDGET-1"
        assert sleep.delays == [2.0]
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self):
        client, _, sleep = make_client([
            FakeResponse(502, "bad gateway"),
            FakeResponse(503, "unavailable"),
            FakeResponse(200, {"variants": []}),
        ])

        assert await client.find_variant_by_sku("NOPE") is None
        assert sleep.delays == [0.01, 0.02]

    @pytest.mark.asyncio
    async def test_retries_network_errors(self):
        client, _, sleep = make_client([
            aiohttp.ClientConnectionError("reset"),
            asyncio.TimeoutError(),
            FakeResponse(200, {"variants": [VARIANT]}),
        ])

        assert (await client.find_variant_by_sku("WIDGET-1"))["id"] == 1
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_with_last_body(self):
        client, session, _ = make_client([FakeResponse(503, f"down {i}") for i in range(3)])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await client.find_variant_by_sku("WIDGET-1")

        assert exc_info.value.attempts == 3
        assert exc_info.value.status == 503
        assert exc_info.value.body == "down 2"
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_client_errors_are_terminal(self):
        client, session, sleep = make_client([FakeResponse(422, {"errors": "bad"})])

        with pytest.raises(CommerceAPIError) as exc_info:
            await client.set_inventory_level(111, 5)

        assert exc_info.value.status == 422
        assert len(session.calls) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_auth_errors_are_terminal(self):
        client, session, _ = make_client([FakeResponse(401, "unauthorized")])

        with pytest.raises(AuthenticationError):
            await client.list_locations()
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_list_levels_follows_pagination(self):
        next_link = '<https://test-shop.myshopify.com/admin/api/2024-01/inventory_levels.json?page_info=abc&limit=250>; rel="next"'
        client, session, _ = make_client([
            FakeResponse(200, {"inventory_levels": [{"inventory_item_id": 1}]}, headers={"Link": next_link}),
            FakeResponse(200, {"inventory_levels": [{"inventory_item_id": 2}]}),
        ])
        start = datetime(2024, 3, 5, 5, 0, tzinfo=timezone.utc)

        levels = await client.list_inventory_levels_since(start)

        assert [level["inventory_item_id"] for level in levels] == [1, 2]
        first, second = session.calls
        assert first["params"] == {
            "limit": "250",
            "updated_at_min": "2024-03-05T05:00:00+00:00",
            "location_ids": "99",
        }
        assert second["params"] == {"limit": "250", "page_info": "abc"}

    @pytest.mark.asyncio
    async def test_pagination_safety_stop(self):
        link = '<https://x/inventory_levels.json?page_info=again>; rel="next"'
        client, _, _ = make_client([FakeResponse(200, {"inventory_levels": []}, headers={"Link": link})] * 3)
        client.rate_limit = RateLimitSettings(min_interval_ms=0, max_retries=0, max_pages=2)

        with pytest.raises(CommerceAPIError, match="pagination"):
            await client.list_inventory_levels_since(datetime.now(timezone.utc))

    @pytest.mark.asyncio
    async def test_set_inventory_level_payload(self):
        client, session, _ = make_client([FakeResponse(200, {"inventory_level": {"available": 7}})])

        result = await client.set_inventory_level("111", 7.0)

        assert result == {"available": 7}
        call = session.calls[0]
        assert call["method"] == "POST"
        assert call["url"].endswith("/inventory_levels/set.json")
        assert call["json"] == {"inventory_item_id": 111, "location_id": 99, "available": 7}

    @pytest.mark.asyncio
    async def test_set_inventory_level_requires_location(self):
        client, session, _ = make_client([], location_id=None)

        with pytest.raises(CommerceNotConfiguredError):
            await client.set_inventory_level(111, 1)
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_unconfigured_store_raises(self):
        client = ShopifyClient(CommerceSettings(store="", token=""), session=FakeSession())

        with pytest.raises(CommerceNotConfiguredError):
            await client.list_locations()

"""Shared fixtures for the stock sync tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from stocksync.api_clients import CommerceAPIError
from stocksync.config.settings import (
    AutoSyncSettings,
    CommerceSettings,
    LoggingSettings,
    QBXMLSettings,
    RateLimitSettings,
    SessionSettings,
    StorageSettings,
    SyncSettings,
    load_settings
)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(data_dir):
    """Build AppSettings isolated from the process environment."""

    def factory(
        commerce: bool = True,
        sku_fields: str = "Name",
        auto_push: bool = False,
        initial_sweep: bool = False,
        auto_sync: bool = False,
        **overrides
    ):
        sections = {
            "session": SessionSettings(username="qbuser", password="s3cret", company_file=""),
            "qbxml": QBXMLSettings(version="16.0", adjust_account="Inventory Adjustment"),
            "commerce": CommerceSettings(
                store="test-shop.myshopify.com" if commerce else "",
                token="shpat_test" if commerce else "",
                api_version="2024-01",
                location_id="99" if commerce else None,
            ),
            "rate_limit": RateLimitSettings(
                min_interval_ms=0,
                max_retries=2,
                base_backoff_ms=10,
                max_backoff_ms=40,
            ),
            "sync": SyncSettings(
                sku_fields=sku_fields,
                auto_push=auto_push,
                initial_sweep_enabled=initial_sweep,
            ),
            "auto_sync": auto_sync if isinstance(auto_sync, AutoSyncSettings) else AutoSyncSettings(
                enabled=auto_sync,
                interval_seconds=60,
                run_immediately=False,
                initial_delay_seconds=0,
            ),
            "storage": StorageSettings(
                data_dir=str(data_dir),
                lock_poll_interval_ms=5,
                lock_max_wait_seconds=1,
                lock_stale_seconds=30,
                response_history=3,
            ),
            "logging": LoggingSettings(level="INFO", format="console", file_path=None),
        }
        sections.update(overrides)
        return load_settings(**sections)

    return factory


@pytest.fixture
def settings(make_settings):
    return make_settings()


class FakeResponse:
    """Minimal stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.headers = headers or {}
        if body is None:
            self._text = ""
        elif isinstance(body, str):
            self._text = body
        else:
            self._text = json.dumps(body)

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


class FakeSession:
    """Replays queued responses (or raises queued exceptions) in order."""

    def __init__(self, responses: Optional[List[Any]] = None):
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method, url, params=None, json=None, headers=None):
        self.calls.append({
            "method": method,
            "url": url,
            "params": params,
            "json": json,
            "headers": headers,
        })
        if not self.responses:
            raise AssertionError(f"Unexpected request {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_session():
    return FakeSession()


class FakeCommerceClient:
    """In-memory commerce client with the ShopifyClient call surface."""

    def __init__(self):
        self.variants_by_sku: Dict[str, Dict[str, Any]] = {}
        self.item_skus: Dict[str, str] = {}
        self.levels: List[Dict[str, Any]] = []
        self.set_calls: List[Dict[str, Any]] = []
        self.failing_items: set = set()
        self.lookup_errors: set = set()
        self.closed = False

    def add_variant(self, sku: str, inventory_item_id: str, variant_id: str = "1"):
        self.variants_by_sku[sku] = {
            "id": variant_id,
            "sku": sku,
            "product_id": "10",
            "inventory_item_id": inventory_item_id,
            "title": sku,
        }
        self.item_skus[str(inventory_item_id)] = sku

    async def find_variant_by_sku(self, sku):
        await asyncio.sleep(0)
        if sku in self.lookup_errors:
            raise CommerceAPIError(f"lookup failed for {sku}", status=500)
        return self.variants_by_sku.get(sku)

    async def find_variant_by_inventory_item_id(self, inventory_item_id):
        await asyncio.sleep(0)
        for variant in self.variants_by_sku.values():
            if str(variant["inventory_item_id"]) == str(inventory_item_id):
                return variant
        return None

    async def get_inventory_item_sku(self, inventory_item_id):
        await asyncio.sleep(0)
        return self.item_skus.get(str(inventory_item_id))

    async def list_inventory_levels_since(self, start, location_id=None):
        await asyncio.sleep(0)
        return list(self.levels)

    async def set_inventory_level(self, inventory_item_id, available, location_id=None):
        await asyncio.sleep(0)
        if str(inventory_item_id) in self.failing_items:
            raise CommerceAPIError("set failed", status=422)
        call = {"inventory_item_id": str(inventory_item_id), "available": available}
        self.set_calls.append(call)
        return call

    async def close(self):
        self.closed = True


@pytest.fixture
def commerce():
    return FakeCommerceClient()

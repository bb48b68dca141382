import json

import httpx
import pytest

from adspider.notifier import Notifier

pytestmark = pytest.mark.asyncio

SUPABASE_URL = "https://project.supabase.test"


def make_notifier(handler):
    client = httpx.AsyncClient(base_url=SUPABASE_URL, transport=httpx.MockTransport(handler))
    return Notifier(url=SUPABASE_URL, key="service-key", client=client)


class Backend:
    def __init__(self, requests=None, brands=None, links=None):
        self.tables = {
            "ads_scrape_request": requests if requests is not None
            else [{"id": 1, "user_id": "u1", "created_at": "2026-01-01T00:00:00Z"}],
            "brands": brands if brands is not None else [{"id": 9, "name": "SleepCo"}],
            "user_brand": links or [],
        }
        self.writes = []

    def __call__(self, request):
        table = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET":
            return httpx.Response(200, json=self.tables[table])
        self.writes.append((request.method, table, json.loads(request.content)))
        return httpx.Response(201 if request.method == "POST" else 204)


async def test_completed_page_links_user_and_notifies():
    backend = Backend()

    await make_notifier(backend).on_page_completed("555")

    assert backend.writes == [
        ("PATCH", "ads_scrape_request", {"complete": True}),
        ("POST", "user_brand", {"user_id": "u1", "brand_id": 9, "last_scrap": "2026-01-01T00:00:00Z"}),
        ("POST", "user_notification_v2", {
            "user_id": "u1", "message": "Your ad scrape request for SleepCo has been completed",
        }),
    ]


async def test_existing_link_is_not_duplicated_and_period_updates_last_scrap():
    backend = Backend(links=[{"id": 3}])

    await make_notifier(backend).on_page_completed("555", period="last7d")

    tables = [(method, table) for method, table, _ in backend.writes]
    assert ("POST", "user_brand") not in tables
    assert tables[-1] == ("PATCH", "user_brand")
    assert "last_scrap" in backend.writes[-1][2]


async def test_missing_request_skips_notification():
    backend = Backend(requests=[])

    user_id = await make_notifier(backend).link_user_brand_and_notify("555")

    assert user_id is None
    assert backend.writes == []


async def test_http_errors_are_swallowed():
    def handler(request):
        return httpx.Response(500)

    notifier = make_notifier(handler)

    assert await notifier.mark_request_complete("555") is False
    assert await notifier.link_user_brand_and_notify("555") is None
    assert await notifier.update_last_scrap("555", "u1") is False
    await notifier.on_page_completed("555", period="last7d")

import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from app.supabase_client import (
    SupabaseClient,
    SupabaseError,
    SupabaseNotConfiguredError,
    parse_content_range,
)


def _run_with_client(handler, action):
    async def scenario():
        client = SupabaseClient("https://db.example.test/", "service-key", transport=httpx.MockTransport(handler))
        try:
            return await action(client)
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_parse_content_range_variants():
    assert parse_content_range("0-24/3573") == 3573
    assert parse_content_range("*/0") == 0
    assert parse_content_range("*/*") is None
    assert parse_content_range(None) is None


def test_missing_configuration_is_rejected():
    with pytest.raises(SupabaseNotConfiguredError):
        SupabaseClient("", "key")


def test_query_builder_params_and_headers():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = request.url
        captured["headers"] = request.headers
        return httpx.Response(200, json=[{"id": 1}], headers={"Content-Range": "0-0/42"})

    async def action(client):
        return await (
            client.table("user_profiles")
            .select("id,name")
            .eq("onboarding_completed", True)
            .gte("created_at", datetime(2024, 12, 1, tzinfo=timezone.utc))
            .not_null("diabetes_type")
            .search(["name", "email"], "ann, (x)")
            .order("created_at", desc=True)
            .range(40, 59)
            .execute(count=True)
        )

    result = _run_with_client(handler, action)

    assert result.rows == [{"id": 1}]
    assert result.count == 42
    url = captured["url"]
    assert url.path == "/rest/v1/user_profiles"
    params = url.params
    assert params["select"] == "id,name"
    assert params["onboarding_completed"] == "eq.true"
    assert params["created_at"] == "gte.2024-12-01T00:00:00+00:00"
    assert params["diabetes_type"] == "not.is.null"
    assert params["or"] == "(name.ilike.*ann   x*,email.ilike.*ann   x*)"
    assert params["order"] == "created_at.desc"
    assert params["offset"] == "40"
    assert params["limit"] == "20"
    headers = captured["headers"]
    assert headers["apikey"] == "service-key"
    assert headers["authorization"] == "Bearer service-key"
    assert headers["prefer"] == "count=exact"


def test_count_uses_head_request():
    methods = []

    def handler(request: httpx.Request) -> httpx.Response:
        methods.append(request.method)
        return httpx.Response(200, headers={"Content-Range": "*/17"})

    total = _run_with_client(handler, lambda client: client.table("articles").eq("is_published", True).count())

    assert total == 17
    assert methods == ["HEAD"]


def test_error_response_raises_with_postgrest_code():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            406,
            json={"code": "PGRST116", "message": "JSON object requested, multiple (or no) rows returned", "details": None},
        )

    with pytest.raises(SupabaseError) as excinfo:
        _run_with_client(handler, lambda client: client.table("user_profiles").eq("user_id", "u1").execute())

    assert excinfo.value.status_code == 406
    assert excinfo.value.code == "PGRST116"


def test_transport_error_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SupabaseError) as excinfo:
        _run_with_client(handler, lambda client: client.table("videos").count())

    assert excinfo.value.status_code is None
    assert "ConnectError" in excinfo.value.message


def test_range_and_membership_filters():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = request.url.params
        return httpx.Response(200, json=[])

    async def action(client):
        return await (
            client.table("medication_history")
            .in_("status", ("taken", "skipped"))
            .gte("created_at", "2024-12-01")
            .lte("created_at", "2024-12-31")
            .execute()
        )

    _run_with_client(handler, action)

    params = captured["params"]
    assert params["status"] == "in.(taken,skipped)"
    assert params.get_list("created_at") == ["gte.2024-12-01", "lte.2024-12-31"]

import json

import httpx
import pytest

from runstudio.core.config import settings
from runstudio.core.errors import (
    DecodingError,
    InsufficientCreditsError,
    NetworkError,
    ServerError,
    UnauthorizedError,
)
from runstudio.schemas import GenerationStatus
from runstudio.services.job_client import RunClient

BASE = "http://api.test/api"
CREDITS = "http://credits.test"


def make_client(handler, api_key="token-123"):
    return RunClient(api_key=api_key, base_url=BASE, credits_url=CREDITS,
                     transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_submit_posts_run_and_completes_generation():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.raw_path.decode()
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "success": True,
            "data": {"id": "gen-1", "modelId": "owner/model", "status": "processing"},
            "credits_deducted": 3,
        })

    client = make_client(handler)
    generation = await client.submit("owner/model", {"prompt": "cat"}, title="t", tags=["a"])

    assert seen["path"] == "/api/models/owner%2Fmodel/run"
    assert seen["auth"] == "Bearer token-123"
    assert seen["body"] == {"input": {"prompt": "cat"}, "organizationId": None, "title": "t", "tags": ["a"]}
    assert generation.id == "gen-1"
    assert generation.status == GenerationStatus.PROCESSING
    assert generation.input == {"prompt": "cat"}
    assert generation.creditsUsed == 3
    assert generation.title == "t"


@pytest.mark.asyncio
async def test_get_model_schema_reads_input_schema():
    def handler(request):
        assert request.url.raw_path.decode() == "/api/models/owner%2Fmodel/schema"
        return httpx.Response(200, json={"success": True, "data": {
            "modelId": "owner/model",
            "inputSchema": {"type": "object", "properties": {"prompt": {"type": "string"}}, "required": ["prompt"]},
        }})

    schema = await make_client(handler).get_model_schema("owner/model")
    assert list(schema.properties) == ["prompt"]
    assert schema.required == ["prompt"]


@pytest.mark.asyncio
async def test_fetch_balance_uses_credits_service():
    def handler(request):
        assert str(request.url) == f"{CREDITS}/api/credits/balance"
        return httpx.Response(200, json={"success": True, "data": {
            "total_credits": 40, "subscription_credits": 30, "purchased_credits": 10,
            "promotional_credits": 0, "plan": "pro",
        }})

    balance = await make_client(handler).fetch_balance()
    assert balance.totalCredits == 40
    assert balance.purchasedCredits == 10
    assert balance.plan == "pro"


@pytest.mark.asyncio
async def test_list_generations_sends_filters():
    def handler(request):
        assert request.url.params["modelId"] == "owner/model"
        assert request.url.params["limit"] == "10"
        return httpx.Response(200, json={"success": True, "data": [
            {"id": "g1", "modelId": "owner/model", "status": "completed", "isFavorite": 1},
        ]})

    generations = await make_client(handler).list_generations(model_id="owner/model", limit=10)
    assert [g.id for g in generations] == ["g1"]
    assert generations[0].isFavorite is True


@pytest.mark.asyncio
async def test_update_generation_patches_only_given_fields():
    def handler(request):
        assert request.method == "PATCH"
        assert json.loads(request.content) == {"isFavorite": True}
        return httpx.Response(200, json={"success": True, "data": {
            "id": "g1", "modelId": "m", "status": "completed", "isFavorite": True,
        }})

    updated = await make_client(handler).update_generation("g1", is_favorite=True)
    assert updated.isFavorite


@pytest.mark.parametrize(
    "response,error",
    [
        (httpx.Response(401, json={"error": "nope"}), UnauthorizedError),
        (httpx.Response(500, json={"error": "boom"}), ServerError),
        (httpx.Response(404, text="not json"), ServerError),
        (httpx.Response(200, text="<html>"), DecodingError),
        (httpx.Response(200, json={"success": False, "error": "Model not found"}), ServerError),
        (httpx.Response(200, json={"success": True}), DecodingError),
    ],
)
@pytest.mark.asyncio
async def test_status_mapping(response, error):
    client = make_client(lambda request: response)
    with pytest.raises(error):
        await client.fetch_status("g1")


@pytest.mark.asyncio
async def test_server_error_carries_message_and_status():
    client = make_client(lambda request: httpx.Response(503, json={"message": "maintenance"}))
    with pytest.raises(ServerError) as exc:
        await client.fetch_status("g1")
    assert exc.value.message == "maintenance"
    assert exc.value.status_code == 503

    client = make_client(lambda request: httpx.Response(500, json={}))
    with pytest.raises(ServerError) as exc:
        await client.fetch_status("g1")
    assert exc.value.message == "Request failed with status 500"


@pytest.mark.asyncio
async def test_payment_required_maps_to_insufficient_credits():
    client = make_client(lambda request: httpx.Response(402, json={
        "error": "Insufficient credits", "details": {"required": 5, "available": 1},
    }))
    with pytest.raises(InsufficientCreditsError) as exc:
        await client.submit("owner/model", {"prompt": "cat"})
    assert exc.value.required == 5
    assert exc.value.available == 1


@pytest.mark.asyncio
async def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(NetworkError):
        await make_client(handler).fetch_status("g1")


@pytest.mark.asyncio
async def test_missing_token_fails_before_any_request(monkeypatch):
    monkeypatch.setattr(settings, "API_KEY", None)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"success": True, "data": {}})

    with pytest.raises(UnauthorizedError):
        await make_client(handler, api_key=None).submit("m", {"prompt": "cat"})
    assert calls == []


@pytest.mark.asyncio
async def test_cancel_generation_posts_to_cancel_path():
    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/api/models/user/generations/g1/cancel"
        return httpx.Response(200, json={"success": True, "data": {
            "id": "g1", "modelId": "m", "status": "cancelled",
        }})

    generation = await make_client(handler).cancel_generation("g1")
    assert generation.status == GenerationStatus.CANCELLED

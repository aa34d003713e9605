"""
Unit tests for BatchProtocolClient and ConnectivityProber.

The remote authority is an httpx.MockTransport; no real network calls are made.
"""
import json
from datetime import datetime

import httpx
import pytest

from tasksync.models.sync import SyncQueueEntry
from tasksync.sync.protocol import (
    BatchProtocolClient,
    Conflict,
    ConnectivityProber,
    Failure,
    ProtocolError,
    Success,
)

BASE_URL = "http://remote.test/api"


def make_entry(record_id: str, seq: int = 1, operation: str = "create") -> SyncQueueEntry:
    return SyncQueueEntry(
        seq=seq,
        id=f"entry-{seq}",
        record_id=record_id,
        operation=operation,
        data=json.dumps({"id": record_id, "title": "Buy milk"}),
        created_at=datetime(2025, 1, 1, 8, 0, seq),
    )


def make_client(handler) -> BatchProtocolClient:
    return BatchProtocolClient(BASE_URL, transport=httpx.MockTransport(handler))


class TestExchange:
    @pytest.mark.asyncio
    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"processed_items": []})

        async with make_client(handler) as client:
            await client.exchange([make_entry("a", 1), make_entry("b", 2)])

        assert seen["method"] == "POST"
        assert seen["url"] == f"{BASE_URL}/batch"
        body = seen["body"]
        assert "client_timestamp" in body
        assert [i["record_id"] for i in body["items"]] == ["a", "b"]
        item = body["items"][0]
        assert item["id"] == "entry-1"
        assert item["operation"] == "create"
        assert item["data"] == {"id": "a", "title": "Buy milk"}
        assert item["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_outcome_tags(self):
        def handler(request):
            return httpx.Response(200, json={"processed_items": [
                {"client_id": "a", "server_id": "srv_1", "status": "success"},
                {"client_id": "b", "status": "conflict", "resolved_data": {
                    "title": "Theirs", "updated_at": "2025-01-02T00:00:00Z", "server_id": "srv_2",
                }},
                {"client_id": "c", "status": "error", "error": "rejected"},
            ]})

        async with make_client(handler) as client:
            outcomes = await client.exchange([make_entry("a")])

        assert [o.client_id for o in outcomes] == ["a", "b", "c"]
        assert outcomes[0].outcome == Success(remote_id="srv_1")
        conflict = outcomes[1].outcome
        assert isinstance(conflict, Conflict)
        assert conflict.remote_snapshot.title == "Theirs"
        assert conflict.remote_snapshot.updated_at == datetime(2025, 1, 2)
        assert outcomes[2].outcome == Failure(message="rejected")

    @pytest.mark.asyncio
    async def test_conflict_without_data_has_no_snapshot(self):
        def handler(request):
            return httpx.Response(200, json={"processed_items": [
                {"client_id": "a", "status": "conflict"},
                {"client_id": "b", "status": "conflict", "resolved_data": {"title": "no timestamp"}},
            ]})

        async with make_client(handler) as client:
            outcomes = await client.exchange([make_entry("a")])

        assert all(o.outcome.remote_snapshot is None for o in outcomes)

    @pytest.mark.asyncio
    async def test_error_without_message(self):
        def handler(request):
            return httpx.Response(200, json={"processed_items": [
                {"client_id": "a", "status": "error"},
            ]})

        async with make_client(handler) as client:
            [outcome] = await client.exchange([make_entry("a")])

        assert outcome.outcome == Failure(message="Sync error")

    @pytest.mark.asyncio
    async def test_non_success_status_fails_whole_batch(self):
        def handler(request):
            return httpx.Response(500, json={"error": "Failed to process batch"})

        async with make_client(handler) as client:
            with pytest.raises(ProtocolError, match="500"):
                await client.exchange([make_entry("a")])

    @pytest.mark.asyncio
    async def test_connection_error_fails_whole_batch(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(ProtocolError, match="connection refused"):
                await client.exchange([make_entry("a")])

    @pytest.mark.asyncio
    async def test_timeout_fails_whole_batch(self):
        def handler(request):
            raise httpx.ReadTimeout("", request=request)

        async with make_client(handler) as client:
            with pytest.raises(ProtocolError, match="ReadTimeout"):
                await client.exchange([make_entry("a")])

    @pytest.mark.asyncio
    async def test_malformed_body_fails_whole_batch(self):
        def handler(request):
            return httpx.Response(200, json={"unexpected": True})

        async with make_client(handler) as client:
            with pytest.raises(ProtocolError):
                await client.exchange([make_entry("a")])

    @pytest.mark.asyncio
    async def test_non_json_body_fails_whole_batch(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        async with make_client(handler) as client:
            with pytest.raises(ProtocolError):
                await client.exchange([make_entry("a")])

    @pytest.mark.asyncio
    async def test_invalid_url_fails_whole_batch(self):
        async with BatchProtocolClient("http://remote.test:notaport/api") as client:
            with pytest.raises(ProtocolError):
                await client.exchange([make_entry("a")])


class TestConnectivityProber:
    @pytest.mark.asyncio
    async def test_online(self):
        def handler(request):
            assert request.url.path == "/api/health"
            return httpx.Response(200, json={"status": "ok"})

        async with make_client(handler) as client:
            prober = ConnectivityProber(client, timeout=1.0)
            assert await prober.probe() is True
            assert prober.last_result is True

    @pytest.mark.asyncio
    async def test_non_success_is_offline(self):
        async with make_client(lambda request: httpx.Response(503)) as client:
            assert await ConnectivityProber(client).probe() is False

    @pytest.mark.asyncio
    async def test_timeout_is_offline(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        async with make_client(handler) as client:
            prober = ConnectivityProber(client)
            assert await prober.probe(timeout=0.1) is False
            assert prober.last_result is False

    @pytest.mark.asyncio
    async def test_refused_is_offline(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_client(handler) as client:
            assert await ConnectivityProber(client).probe() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("base_url", ["http://remote.test:notaport/api", "ftp://remote.test/api"])
    async def test_misconfigured_url_is_offline(self, base_url):
        async with BatchProtocolClient(base_url) as client:
            prober = ConnectivityProber(client)
            assert await prober.probe() is False
            assert prober.last_result is False

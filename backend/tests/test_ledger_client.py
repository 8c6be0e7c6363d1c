import json

import httpx
import pytest

from community_pass.services.ledger_client import HttpLedgerClient, LedgerError
from community_pass.services.notifier import RedisNotifier


def _client(handler):
    return HttpLedgerClient(
        base_url="http://ledger.test",
        api_key="k",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


async def test_mint_sends_idempotency_key_and_parses_receipt():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"token_id": 7, "transaction_hash": "0xabc", "block_number": 12})

    receipt = await _client(handler).mint("0xfan", "0xcollection", idempotency_key="key-1")

    assert receipt.token_id == "7"
    assert receipt.transaction_hash == "0xabc"
    assert receipt.block_number == 12
    assert seen["path"] == "/v1/mint"
    assert seen["headers"]["Idempotency-Key"] == "key-1"
    assert seen["headers"]["Authorization"] == "Bearer k"
    assert seen["body"] == {"wallet_address": "0xfan", "contract_address": "0xcollection"}


async def test_http_error_carries_ledger_reason():
    def handler(request):
        return httpx.Response(400, json={"error": "insufficient funds"})

    with pytest.raises(LedgerError) as exc_info:
        await _client(handler).renew("7", "0xcollection", idempotency_key="key-2")

    assert exc_info.value.reason == "insufficient funds"
    assert exc_info.value.status_code == 400


async def test_failed_status_payload_is_an_error():
    def handler(request):
        return httpx.Response(200, json={"status": "failed", "error": "reverted"})

    with pytest.raises(LedgerError, match="reverted"):
        await _client(handler).create_collection("0xartist", "Pass", "P", idempotency_key="key-3")


async def test_timeout_maps_to_ledger_error():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(LedgerError) as exc_info:
        await _client(handler).mint("0xfan", "0xcollection", idempotency_key="key-4")

    assert "timeout" in exc_info.value.reason


async def test_missing_transaction_hash_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"token_id": "1"})

    with pytest.raises(LedgerError, match="transaction_hash"):
        await _client(handler).mint("0xfan", "0xcollection", idempotency_key="key-5")


class _StubRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, message):
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, json.loads(message)))
        return 1


async def test_notifier_publishes_reminder_event(monkeypatch):
    notifier = RedisNotifier(redis_url="redis://unused", channel="notifications:test")
    stub = _StubRedis()
    monkeypatch.setattr(notifier, "_get_redis", lambda: stub)

    assert await notifier.send_renewal_reminder({"membership_id": 1}) is True
    assert stub.published == [
        ("notifications:test", {"event": "membership.renewal_reminder", "data": {"membership_id": 1}})
    ]


async def test_notifier_failure_returns_false(monkeypatch):
    notifier = RedisNotifier(redis_url="redis://unused", channel="notifications:test")
    monkeypatch.setattr(notifier, "_get_redis", lambda: _StubRedis(fail=True))

    assert await notifier.send_renewal_reminder({"membership_id": 1}) is False

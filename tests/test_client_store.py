"""Tests for the client API wrapper and the client-side messaging store."""

import asyncio
import json

import httpx
import pytest

from admin_messaging.client.api import MessagingApiClient
from admin_messaging.client.errors import ApiError, AuthError, NetworkError, PayloadTooLargeError
from admin_messaging.client.store import LOCAL_ID_PREFIX, MessagingStore

ME = "aaaaaaaaaaaaaaaaaaaaaaaa"
THEM = "bbbbbbbbbbbbbbbbbbbbbbbb"


def message(mid, content="hi", sender=THEM, created="2024-05-01T12:00:00Z", status="sent"):
    return {
        "_id": mid,
        "conversation_id": "c1",
        "sender_id": sender,
        "message_type": "text",
        "content": content,
        "status": status,
        "created_at": created,
    }


def conversation(cid, unread=0):
    return {"_id": cid, "title": cid, "unread_count": unread, "last_message": None}


def ok(data, **extra):
    return httpx.Response(200, json={"success": True, "data": data, **extra})


def make_store(handler):
    api = MessagingApiClient("http://test", token="t", transport=httpx.MockTransport(handler))
    return MessagingStore(api, ME), api


@pytest.mark.asyncio
async def test_error_mapping():
    def handler(request):
        path = request.url.path
        if path.endswith("/conversations"):
            return httpx.Response(401, json={"detail": "Invalid or expired token"})
        if path.endswith("/media"):
            return httpx.Response(413, json={"success": False, "code": "payload_too_large", "message": "too big"})
        if path.endswith("/users/available"):
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(503, text="unavailable")

    async with MessagingApiClient("http://test", transport=httpx.MockTransport(handler)) as api:
        with pytest.raises(AuthError) as auth:
            await api.list_conversations()
        assert auth.value.message == "Invalid or expired token"

        with pytest.raises(PayloadTooLargeError) as too_big:
            await api.send_media("c1", [("a.mp4", b"x", "video/mp4")])
        assert too_big.value.code == "payload_too_large"

        with pytest.raises(NetworkError):
            await api.available_users()

        with pytest.raises(ApiError) as server:
            await api.get_conversation("c1")
        assert server.value.status == 503
        assert server.value.retryable is True


@pytest.mark.asyncio
async def test_requests_carry_bearer_token_and_prefix():
    seen = []

    def handler(request):
        seen.append(request)
        return ok({"conversations": [], "total_unread": 0, "count": 0})

    api = MessagingApiClient("http://test", token="secret", transport=httpx.MockTransport(handler))
    await api.list_conversations(status="archived")
    await api.close()

    assert seen[0].url.path == "/api/messaging/conversations"
    assert seen[0].url.params["status"] == "archived"
    assert seen[0].headers["authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_fetch_conversations_takes_server_totals():
    def handler(request):
        return ok({"conversations": [conversation("c1", 2), conversation("c2", 1)], "total_unread": 3, "count": 2})

    store, _ = make_store(handler)
    await store.fetch_conversations()

    assert store.total_unread == 3
    assert [c["_id"] for c in store.conversations] == ["c1", "c2"]
    assert store.loading is False


@pytest.mark.asyncio
async def test_failed_send_restores_draft():
    def handler(request):
        return httpx.Response(500, json={"success": False, "code": "internal", "message": "db down", "retryable": True})

    store, _ = make_store(handler)
    store.draft = "quarterly report"

    with pytest.raises(ApiError):
        await store.send_message("c1", "quarterly report")

    assert store.messages("c1") == []
    assert store.draft == "quarterly report"
    assert store.error == "db down"
    assert store.sending_message is False


@pytest.mark.asyncio
async def test_send_replaces_pending_message_and_moves_conversation_up():
    sent_bodies = []

    def handler(request):
        sent_bodies.append(json.loads(request.content))
        return httpx.Response(201, json={"success": True, "data": message("m9", "done", sender=ME)})

    store, _ = make_store(handler)
    store.conversations = [conversation("c0"), conversation("c1")]
    store.reply_to_message = message("m1")

    sent = await store.send_message("c1", "done")

    assert sent["_id"] == "m9"
    assert [m["_id"] for m in store.messages("c1")] == ["m9"]
    assert store.conversations[0]["_id"] == "c1"
    assert store.conversations[0]["last_message"]["content"] == "done"
    assert store.reply_to_message is None
    assert sent_bodies[0]["replyTo"] == "m1"


@pytest.mark.asyncio
async def test_stale_page_is_discarded():
    release = asyncio.Event()

    async def handler(request):
        if "/conversations/c1/" in request.url.path:
            await release.wait()
            return ok({"messages": [message("old")], "pagination": {"current_page": 1, "has_more": False}})
        return ok({"messages": [message("fresh")], "pagination": {"current_page": 1, "has_more": False}})

    store, _ = make_store(handler)
    store.active_conversation_id = "c1"
    slow = asyncio.create_task(store.fetch_messages("c1"))
    await asyncio.sleep(0)

    store.active_conversation_id = "c2"
    await store.fetch_messages("c2")
    release.set()

    assert await slow is None
    assert "c1" not in store.messages_by_conversation
    assert [m["_id"] for m in store.messages("c2")] == ["fresh"]


@pytest.mark.asyncio
async def test_closing_during_a_fetch_clears_the_loading_flag():
    release = asyncio.Event()

    async def handler(request):
        await release.wait()
        return ok({"messages": [message("late")], "pagination": {"current_page": 1, "has_more": False}})

    store, _ = make_store(handler)
    store.active_conversation_id = "c1"
    slow = asyncio.create_task(store.fetch_messages("c1"))
    await asyncio.sleep(0)
    assert store.messages_loading is True

    store.close_conversation()
    assert store.messages_loading is False
    release.set()

    assert await slow is None
    assert store.messages_loading is False
    assert "c1" not in store.messages_by_conversation


@pytest.mark.asyncio
async def test_stale_response_leaves_the_current_fetch_loading():
    releases = {"c1": asyncio.Event(), "c2": asyncio.Event()}

    async def handler(request):
        cid = request.url.path.split("/conversations/")[1].split("/")[0]
        await releases[cid].wait()
        return ok({"messages": [message(f"from-{cid}")], "pagination": {"current_page": 1, "has_more": False}})

    store, _ = make_store(handler)
    store.active_conversation_id = "c1"
    first = asyncio.create_task(store.fetch_messages("c1"))
    await asyncio.sleep(0)
    store.active_conversation_id = "c2"
    second = asyncio.create_task(store.fetch_messages("c2"))
    await asyncio.sleep(0)

    releases["c1"].set()
    assert await first is None
    assert store.messages_loading is True

    releases["c2"].set()
    await second
    assert store.messages_loading is False
    assert [m["_id"] for m in store.messages("c2")] == ["from-c2"]


@pytest.mark.asyncio
async def test_older_pages_are_prepended_without_duplicates():
    pages = {
        "1": {"messages": [message("m3"), message("m4")], "pagination": {"current_page": 1, "has_more": True}},
        "2": {"messages": [message("m1"), message("m2"), message("m3")], "pagination": {"current_page": 2, "has_more": False}},
    }

    def handler(request):
        return ok(pages[request.url.params["page"]])

    store, _ = make_store(handler)
    store.active_conversation_id = "c1"
    await store.fetch_messages("c1")
    await store.fetch_older("c1")

    assert [m["_id"] for m in store.messages("c1")] == ["m1", "m2", "m3", "m4"]
    # nothing more to load
    assert [m["_id"] for m in await store.fetch_older("c1")] == ["m1", "m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_first_page_keeps_pending_local_messages():
    def handler(request):
        return ok({"messages": [message("m1")], "pagination": {"current_page": 1, "has_more": False}})

    store, _ = make_store(handler)
    store.active_conversation_id = "c1"
    pending = message(f"{LOCAL_ID_PREFIX}abc", sender=ME, status="sending")
    store.messages_by_conversation["c1"] = [pending]

    await store.fetch_messages("c1")

    assert [m["_id"] for m in store.messages("c1")] == ["m1", pending["_id"]]


@pytest.mark.asyncio
async def test_open_conversation_marks_read():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.url.path.endswith("/read"):
            return httpx.Response(200, json={"success": True, "marked": 2})
        return ok({"messages": [message("m1"), message("m2")], "pagination": {"current_page": 1, "has_more": False}})

    store, _ = make_store(handler)
    store.conversations = [conversation("c1", 2), conversation("c2", 1)]
    store.total_unread = 3

    loaded = await store.open_conversation("c1")

    assert [m["_id"] for m in loaded] == ["m1", "m2"]
    assert calls[-1] == ("POST", "/api/messaging/conversations/c1/read")
    assert store.conversation("c1")["unread_count"] == 0
    assert store.total_unread == 1


@pytest.mark.asyncio
async def test_partial_read_subtracts_marked_count():
    def handler(request):
        return httpx.Response(200, json={"success": True, "marked": 1})

    store, _ = make_store(handler)
    store.conversations = [conversation("c1", 3)]
    store.total_unread = 3

    await store.mark_as_read("c1", ["m1", "m2"])

    assert store.conversation("c1")["unread_count"] == 2
    assert store.total_unread == 2


def test_realtime_message_counts_only_background_conversations():
    store = MessagingStore(None, ME)
    store.conversations = [conversation("c1"), conversation("c2")]
    store.active_conversation_id = "c1"
    store.messages_by_conversation["c1"] = []

    store.apply_realtime_message("c1", message("m1"))
    store.apply_realtime_message("c1", message("m1"))
    store.apply_realtime_message("c2", message("m2"))
    store.apply_realtime_message("c2", message("m3", sender=ME))

    assert [m["_id"] for m in store.messages("c1")] == ["m1"]
    assert store.conversation("c1")["unread_count"] == 0
    assert store.conversation("c2")["unread_count"] == 1
    assert store.total_unread == 1
    assert store.conversations[0]["_id"] == "c2"


def test_message_status_only_moves_forward():
    store = MessagingStore(None, ME)
    store.messages_by_conversation["c1"] = [message("m1", sender=ME, status="sent")]

    assert store.update_message_status("c1", "m1", "read") is True
    assert store.update_message_status("c1", "m1", "delivered") is False
    assert store.update_message_status("c1", "missing", "read") is False
    assert store.messages("c1")[0]["status"] == "read"


def test_typing_indicators_and_reset():
    store = MessagingStore(None, ME)
    store.set_typing("c1", THEM, True)
    assert store.typing_users["c1"] == {THEM}
    store.set_typing("c1", THEM, False)
    assert store.typing_users["c1"] == set()

    store.draft = "unsent"
    store.reset()
    assert store.draft == ""
    assert store.typing_users == {}

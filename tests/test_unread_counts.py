"""Unread counters against an independent model of who has read what."""

import asyncio
import random

import pytest

from admin_messaging.models.conversation import new_conversation
from admin_messaging.repositories.memory import InMemoryConversationRepository
from admin_messaging.services.messaging_service import MessagingService


async def make_group(conversation_repo, users, clock, names):
    participants = [
        {"user_id": users[n]["_id"], "role": users[n]["role"], "joined_at": clock()} for n in names
    ]
    return await conversation_repo.create(new_conversation(participants, "Ops", clock(), type="general"))


async def assert_counters_match(service, message_repo, conversation_id, users, names, expected):
    for name in names:
        uid = users[name]["_id"]
        details = await service._conversations.get_by_id(conversation_id)
        assert details["unread_counters"][uid] == len(expected[name]), name
        assert await message_repo.count_unread(conversation_id, uid) == len(expected[name]), name


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [1, 7, 42, 2024])
async def test_random_sends_and_reads_keep_counters_exact(service, conversation_repo, message_repo, users, clock, seed):
    """Any mix of sends, full reads and partial reads leaves each counter equal to the unread messages."""
    rng = random.Random(seed)
    names = ["alice", "bob", "carol"]
    conversation = await make_group(conversation_repo, users, clock, names)
    cid = conversation["_id"]
    unread = {name: set() for name in names}

    for _ in range(60):
        clock.advance(seconds=rng.randint(0, 3))
        actor = rng.choice(names)
        action = rng.random()
        if action < 0.55:
            message = await service.send_text_message(cid, users[actor], f"msg from {actor}")
            for other in names:
                if other != actor:
                    unread[other].add(message["_id"])
        elif action < 0.8:
            marked = await service.mark_as_read(cid, users[actor]["_id"])
            assert marked == len(unread[actor])
            unread[actor].clear()
        else:
            pool = sorted(unread[actor]) + [m for n in names if n != actor for m in sorted(unread[n])]
            chosen = rng.sample(pool, min(len(pool), rng.randint(1, 3))) if pool else []
            marked = await service.mark_as_read(cid, users[actor]["_id"], chosen)
            assert marked == len(unread[actor] & set(chosen))
            unread[actor] -= set(chosen)

        await assert_counters_match(service, message_repo, cid, users, names, unread)

    listing = await service.list_conversations(users["alice"]["_id"])
    assert listing["total_unread"] == len(unread["alice"])


@pytest.mark.asyncio
async def test_mark_as_read_is_idempotent(service, users, bus):
    conversation = await service.get_or_create_direct_conversation(users["alice"], users["bob"]["_id"])
    await service.send_text_message(conversation["_id"], users["alice"], "one")
    await service.send_text_message(conversation["_id"], users["alice"], "two")

    assert await service.mark_as_read(conversation["_id"], users["bob"]["_id"]) == 2
    assert await service.mark_as_read(conversation["_id"], users["bob"]["_id"]) == 0

    details = await service.get_conversation_details(conversation["_id"], users["bob"]["_id"])
    assert details["unread_count"] == 0
    # only the call that changed something is announced
    assert len(bus.of_type("messages_read")) == 1


@pytest.mark.asyncio
async def test_reading_own_conversation_without_messages_marks_nothing(service, users):
    conversation = await service.get_or_create_direct_conversation(users["alice"], users["bob"]["_id"])
    assert await service.mark_as_read(conversation["_id"], users["bob"]["_id"]) == 0


@pytest.mark.asyncio
async def test_explicit_ids_only_clear_those_messages(service, message_repo, users):
    conversation = await service.get_or_create_direct_conversation(users["alice"], users["bob"]["_id"])
    first = await service.send_text_message(conversation["_id"], users["alice"], "first")
    await service.send_text_message(conversation["_id"], users["alice"], "second")
    own = await service.send_text_message(conversation["_id"], users["bob"], "mine")

    marked = await service.mark_as_read(conversation["_id"], users["bob"]["_id"], [first["_id"], own["_id"]])

    assert marked == 1
    listing = await service.list_conversations(users["bob"]["_id"])
    assert listing["conversations"][0]["unread_count"] == 1
    assert await message_repo.count_unread(conversation["_id"], users["bob"]["_id"]) == 1
    stored = await message_repo.get_by_id(first["_id"])
    assert stored["status"] == "read"
    assert stored["read_by"][0]["user_id"] == users["bob"]["_id"]


@pytest.mark.asyncio
async def test_opening_details_clears_unread(service, users):
    conversation = await service.get_or_create_direct_conversation(users["alice"], users["bob"]["_id"])
    await service.send_text_message(conversation["_id"], users["alice"], "hello")

    details = await service.get_conversation_details(conversation["_id"], users["bob"]["_id"])

    assert details["unread_count"] == 0
    listing = await service.list_conversations(users["bob"]["_id"])
    assert listing["total_unread"] == 0


@pytest.mark.asyncio
async def test_failed_messages_never_count_as_unread(service, message_repo, users):
    conversation = await service.get_or_create_direct_conversation(users["alice"], users["bob"]["_id"])
    message = await service.send_text_message(conversation["_id"], users["alice"], "flaky")
    await service.mark_failed(message["_id"], "upload_failed", "storage unreachable")

    assert await message_repo.count_unread(conversation["_id"], users["bob"]["_id"]) == 0
    listing = await service.list_conversations(users["bob"]["_id"])
    assert listing["total_unread"] == 0
    assert await service.mark_as_read(conversation["_id"], users["bob"]["_id"]) == 0


@pytest.mark.asyncio
async def test_concurrent_sends_and_reads_settle_consistently(service, conversation_repo, message_repo, users, clock):
    names = ["alice", "bob", "carol"]
    conversation = await make_group(conversation_repo, users, clock, names)
    cid = conversation["_id"]

    sends = [service.send_text_message(cid, users[names[i % 3]], f"burst {i}") for i in range(30)]
    reads = [service.mark_as_read(cid, users[name]["_id"]) for name in names]
    await asyncio.gather(*sends, *reads)

    stored = await conversation_repo.get_by_id(cid)
    for name in names:
        uid = users[name]["_id"]
        assert stored["unread_counters"][uid] == await message_repo.count_unread(cid, uid)


class HeldBackUpdates(InMemoryConversationRepository):
    """Parks the first conversation update until ``release`` is set."""

    def __init__(self, store):
        super().__init__(store)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.held = False

    async def apply_new_message(self, conversation_id, snapshot, recipient_ids, now):
        if not self.held:
            self.held = True
            self.entered.set()
            await self.release.wait()
        return await super().apply_new_message(conversation_id, snapshot, recipient_ids, now)


@pytest.mark.asyncio
async def test_read_during_a_slow_send_keeps_counters_exact(
    memory_store, message_repo, user_repo, pipeline, settings, clock, users
):
    """A later message committing first must not let a read clear the slower, still uncounted one."""
    repo = HeldBackUpdates(memory_store)
    service = MessagingService(repo, message_repo, user_repo, pipeline, settings=settings, clock=clock)
    names = ["alice", "bob", "carol"]
    conversation = await make_group(repo, users, clock, names)
    cid = conversation["_id"]
    bob = users["bob"]["_id"]

    slow = asyncio.ensure_future(service.send_text_message(cid, users["alice"], "slow"))
    await repo.entered.wait()
    pending = [m for m in memory_store.messages.values() if m.get("content") == "slow"]
    assert pending[0]["status"] == "sending"

    clock.advance(seconds=1)
    fast = await service.send_text_message(cid, users["carol"], "fast")
    assert await service.mark_as_read(cid, bob) == 1

    repo.release.set()
    slow_message = await slow

    assert slow_message["status"] == "sent"
    stored = await repo.get_by_id(cid)
    assert stored["last_message"]["message_id"] == fast["_id"]
    expected = {"alice": {fast["_id"]}, "bob": {slow_message["_id"]}, "carol": {slow_message["_id"]}}
    await assert_counters_match(service, message_repo, cid, users, names, expected)

    assert await service.mark_as_read(cid, bob) == 1
    assert (await repo.get_by_id(cid))["unread_counters"][bob] == 0


@pytest.mark.asyncio
async def test_failing_a_sent_message_gives_back_its_counts(service, conversation_repo, message_repo, users, clock):
    names = ["alice", "bob", "carol"]
    conversation = await make_group(conversation_repo, users, clock, names)
    cid = conversation["_id"]
    message = await service.send_text_message(cid, users["alice"], "retracted")
    assert (await conversation_repo.get_by_id(cid))["unread_counters"][users["bob"]["_id"]] == 1

    failed = await service.mark_failed(message["_id"], "delivery_failed", "recipient gateway rejected it")

    assert failed["status"] == "failed"
    await assert_counters_match(service, message_repo, cid, users, names, {n: set() for n in names})

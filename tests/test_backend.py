import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from errors import NotFoundError, PersistenceError
from schemas.messages import ChatMessage, CommunityTarget, DirectTarget, MessageType


def test_get_user_returns_identity(make_backend):
    async def scenario():
        backend = make_backend()
        alice = await backend.get_user("alice")
        assert alice.userId == "alice"
        assert alice.name == "Alice Kumar"
        assert alice.role == "alumni"
        # empty avatar is normalised to None
        assert (await backend.get_user("bob")).avatar is None
        assert await backend.get_user("nobody") is None

    asyncio.run(scenario())


def test_create_message_stores_sender_id_and_returns_enriched_sender(make_backend):
    async def scenario():
        backend = make_backend()
        message = await backend.create_message(
            "bob",
            CommunityTarget(communityId="c1"),
            "slides are up",
            MessageType.FILE,
            {"fileUrl": "/uploads/slides.pdf", "fileName": "slides.pdf", "fileSize": 2048},
        )
        assert message.sender.name == "Bob Mensah"
        assert message.read is False

        document = json.loads(await backend.redis_client.get(f"message:{message.id}"))
        assert document["sender"] == "bob"
        assert document["community"] == "c1"
        assert document["isPrivate"] is False
        assert document["fileName"] == "slides.pdf"
        assert "receiver" not in document

    asyncio.run(scenario())


def test_private_conversation_is_shared_by_both_users(make_backend):
    async def scenario():
        backend = make_backend()
        await backend.create_message("alice", DirectTarget(receiverId="bob"), "one")
        await backend.create_message("bob", DirectTarget(receiverId="alice"), "two")
        await backend.create_message("alice", DirectTarget(receiverId="carol"), "elsewhere")

        from_alice = await backend.private_messages("alice", "bob")
        from_bob = await backend.private_messages("bob", "alice")
        assert [m.content for m in from_alice] == ["one", "two"]
        assert [m.id for m in from_bob] == [m.id for m in from_alice]
        assert all(m.isPrivate for m in from_alice)

    asyncio.run(scenario())


def test_community_history_is_paged_oldest_first(make_backend):
    async def scenario():
        backend = make_backend()
        for i in range(5):
            await backend.create_message("alice", CommunityTarget(communityId="c1"), f"msg {i}")

        first = await backend.community_messages("c1", page=1, limit=2)
        third = await backend.community_messages("c1", page=3, limit=2)
        assert [m.content for m in first] == ["msg 0", "msg 1"]
        assert [m.content for m in third] == ["msg 4"]
        assert await backend.community_messages("c1", page=4, limit=2) == []
        assert await backend.community_messages("empty") == []

    asyncio.run(scenario())


def test_mark_read_sets_flag_and_timestamp(make_backend):
    async def scenario():
        backend = make_backend()
        created = await backend.create_message("alice", DirectTarget(receiverId="bob"), "hi")

        updated = await backend.mark_read(created.id)
        assert updated.read is True
        assert updated.readAt is not None
        assert updated.sender.name == "Alice Kumar"
        assert (await backend.find_by_id(created.id)).read is True

    asyncio.run(scenario())


def test_mark_read_missing_message(make_backend):
    async def scenario():
        backend = make_backend()
        with pytest.raises(NotFoundError):
            await backend.mark_read("missing")
        assert await backend.find_by_id("missing") is None

    asyncio.run(scenario())


def test_redis_errors_become_persistence_errors(make_backend, mocker):
    async def scenario():
        backend = make_backend()
        mocker.patch.object(backend.redis_client, "get", side_effect=RedisConnectionError("down"))
        with pytest.raises(PersistenceError):
            await backend.find_by_id("anything")
        with pytest.raises(PersistenceError):
            await backend.mark_read("anything")

    asyncio.run(scenario())


def test_document_round_trip_keeps_target_kind():
    message = ChatMessage(
        id="m1",
        sender={"id": "alice", "name": "Alice Kumar"},
        target=DirectTarget(receiverId="bob"),
        content="hey",
    )
    wire = message.to_wire()
    assert wire["receiver"] == "bob"
    assert wire["isPrivate"] is True
    assert wire["sender"]["name"] == "Alice Kumar"

    restored = ChatMessage.from_document(message.to_document())
    assert isinstance(restored.target, DirectTarget)
    assert restored.sender.id == "alice"
    assert restored.createdAt == message.createdAt

from __future__ import annotations

import anyio
import pytest

from app.config import get_settings
from app.models import ConversationType, Friendship, normalize_pair
from app.services.conversations import ConversationDirectory, serialize_conversation
from app.services.errors import (
    AlreadyMember,
    Forbidden,
    InvalidName,
    InvalidTarget,
    NotAMember,
    NotFound,
)
from app.services.message_log import MessageLog


@pytest.mark.anyio("asyncio")
async def test_direct_conversation_is_created_once(db_session, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    directory = ConversationDirectory(db_session)

    first, created = await directory.get_or_create_direct(alice, bob)
    again, created_again = await directory.get_or_create_direct(bob, alice)

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert first.type == ConversationType.DIRECT
    assert sorted(directory.member_ids(first.id)) == sorted([alice, bob])


@pytest.mark.anyio("asyncio")
async def test_concurrent_direct_creation_converges(session_factory, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    results: list[tuple[int, bool]] = []

    async def open_direct(user_id: int, other_id: int) -> None:
        with session_factory() as session:
            conversation, created = await ConversationDirectory(session).get_or_create_direct(user_id, other_id)
            results.append((conversation.id, created))

    async with anyio.create_task_group() as tg:
        for index in range(6):
            tg.start_soon(open_direct, alice if index % 2 else bob, bob if index % 2 else alice)

    assert len({conversation_id for conversation_id, _ in results}) == 1
    assert [created for _, created in results].count(True) == 1


@pytest.mark.anyio("asyncio")
async def test_losing_writer_reuses_existing_direct(session_factory, make_user, monkeypatch):
    alice, bob = make_user("alice"), make_user("bob")
    with session_factory() as session:
        winner, _ = await ConversationDirectory(session).get_or_create_direct(alice, bob)
        winner_id = winner.id

    with session_factory() as session:
        directory = ConversationDirectory(session)
        real_find = directory.find_direct
        calls = {"count": 0}

        # First lookup misses as if the other writer had not committed yet
        def racing_find(first_id, second_id):
            calls["count"] += 1
            if calls["count"] == 1:
                return None
            return real_find(first_id, second_id)

        monkeypatch.setattr(directory, "find_direct", racing_find)
        conversation, created = await directory.get_or_create_direct(bob, alice)

    assert created is False
    assert conversation.id == winner_id


@pytest.mark.anyio("asyncio")
async def test_direct_conversation_validation(db_session, make_user):
    alice = make_user("alice")
    directory = ConversationDirectory(db_session)

    with pytest.raises(InvalidTarget):
        await directory.get_or_create_direct(alice, alice)
    with pytest.raises(NotFound):
        await directory.get_or_create_direct(alice, 404)


@pytest.mark.anyio("asyncio")
async def test_direct_conversation_can_require_friendship(db_session, make_user, monkeypatch):
    alice, bob = make_user("alice"), make_user("bob")
    directory = ConversationDirectory(db_session)
    monkeypatch.setattr(get_settings(), "dm_require_friendship", True)

    with pytest.raises(Forbidden):
        await directory.get_or_create_direct(alice, bob)

    low, high = normalize_pair(alice, bob)
    db_session.add(Friendship(user_a_id=low, user_b_id=high))
    db_session.commit()

    _, created = await directory.get_or_create_direct(alice, bob)
    assert created is True


def test_create_group_deduplicates_members(db_session, make_user):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")

    group = ConversationDirectory(db_session).create_group(alice, "  Weekend  ", [bob, carol, bob, alice])

    assert group.type == ConversationType.GROUP
    assert group.name == "Weekend"
    assert group.creator_id == alice
    assert sorted(member.user_id for member in group.members) == sorted([alice, bob, carol])


def test_create_group_validation(db_session, make_user):
    alice = make_user("alice")
    directory = ConversationDirectory(db_session)

    with pytest.raises(InvalidName):
        directory.create_group(alice, "   ")
    with pytest.raises(InvalidName):
        directory.create_group(alice, "x" * 129)
    with pytest.raises(NotFound) as excinfo:
        directory.create_group(alice, "ghosts", [501, 502])
    assert excinfo.value.context == {"user_ids": [501, 502]}


@pytest.mark.anyio("asyncio")
async def test_group_membership_changes(db_session, make_user):
    alice, bob, carol, dave = (make_user(name) for name in ("alice", "bob", "carol", "dave"))
    directory = ConversationDirectory(db_session)
    group = directory.create_group(alice, "team", [bob])

    membership = directory.add_member(group.id, bob, carol)
    assert membership.user_id == carol

    with pytest.raises(AlreadyMember):
        directory.add_member(group.id, alice, carol)
    with pytest.raises(Forbidden):
        directory.add_member(group.id, dave, dave)

    with pytest.raises(Forbidden):
        directory.remove_member(group.id, bob, carol)
    with pytest.raises(NotAMember):
        directory.remove_member(group.id, dave, carol)

    directory.remove_member(group.id, alice, carol)
    directory.remove_member(group.id, bob, bob)
    assert directory.member_ids(group.id) == [alice]

    with pytest.raises(NotFound):
        directory.remove_member(group.id, alice, dave)


@pytest.mark.anyio("asyncio")
async def test_direct_conversations_have_fixed_membership(db_session, make_user):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    directory = ConversationDirectory(db_session)
    direct, _ = await directory.get_or_create_direct(alice, bob)

    with pytest.raises(Forbidden):
        directory.add_member(direct.id, alice, carol)
    with pytest.raises(Forbidden):
        directory.remove_member(direct.id, alice, alice)
    with pytest.raises(Forbidden):
        directory.rename_group(direct.id, alice, "us")


def test_rename_group(db_session, make_user):
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    directory = ConversationDirectory(db_session)
    group = directory.create_group(alice, "team", [bob])

    assert directory.rename_group(group.id, bob, "crew").name == "crew"
    with pytest.raises(NotAMember):
        directory.rename_group(group.id, eve, "mine")
    with pytest.raises(InvalidName):
        directory.rename_group(group.id, alice, "")


@pytest.mark.anyio("asyncio")
async def test_read_marker_is_monotonic_and_clamped(db_session, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    directory = ConversationDirectory(db_session)
    group = directory.create_group(alice, "team", [bob])
    log = MessageLog(db_session)
    for index in range(3):
        await log.append(group.id, alice, f"note {index}")

    assert directory.unread_count(group.id, bob) == 3
    assert directory.unread_count(group.id, alice) == 0

    assert directory.mark_read(group.id, bob, 2).last_read_sequence == 2
    assert directory.unread_count(group.id, bob) == 1
    assert directory.mark_read(group.id, bob, 1).last_read_sequence == 2
    assert directory.mark_read(group.id, bob, 99).last_read_sequence == 3
    assert directory.unread_count(group.id, bob) == 0

    await log.append(group.id, alice, "one more")
    assert directory.mark_read(group.id, bob).last_read_sequence == 4


@pytest.mark.anyio("asyncio")
async def test_list_conversations_orders_by_activity(db_session, make_user):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    directory = ConversationDirectory(db_session)
    older = directory.create_group(alice, "older", [bob])
    newer = directory.create_group(alice, "newer", [carol])
    direct, _ = await directory.get_or_create_direct(alice, carol)

    assert [item.conversation.id for item in directory.list_conversations(alice)] == [
        direct.id,
        newer.id,
        older.id,
    ]

    await MessageLog(db_session).append(older.id, bob, "bump")
    await MessageLog(db_session).append(older.id, bob, "bump again")

    summaries = directory.list_conversations(alice)
    assert summaries[0].conversation.id == older.id
    assert summaries[0].unread_count == 2
    assert summaries[0].last_message.sequence == 2
    assert {item.conversation.id for item in summaries[1:]} == {newer.id, direct.id}
    assert all(item.unread_count == 0 and item.last_message is None for item in summaries[1:])

    assert [item.conversation.id for item in directory.list_conversations(bob)] == [older.id]

    read = serialize_conversation(summaries[0])
    assert read.unread_count == 2
    assert read.last_message.content == "bump again"
    assert {member.user.id for member in read.members} == {alice, bob}


def test_co_members(db_session, make_user):
    alice, bob, carol, dave = (make_user(name) for name in ("alice", "bob", "carol", "dave"))
    directory = ConversationDirectory(db_session)
    directory.create_group(alice, "one", [bob])
    directory.create_group(carol, "two", [alice])
    directory.create_group(dave, "three")

    assert directory.co_member_ids(alice) == {bob, carol}
    assert directory.co_member_ids(dave) == set()

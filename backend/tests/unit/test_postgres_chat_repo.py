import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatcore.domain import errors
from chatcore.domain.chat.models import Chat, ChatParticipant, ParticipantRole, TOMBSTONE_AFTER_READ, TOMBSTONE_EXPIRED
from chatcore.domain.chat.repo import PostgresChatRepository

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _async_ctx(value=None):
	ctx = AsyncMock()
	ctx.__aenter__.return_value = value
	return ctx


def _mock_pool(conn):
	pool = MagicMock()  # Pool itself is not async, its methods are
	pool.acquire.return_value = _async_ctx(conn)
	return AsyncMock(return_value=pool)


def _conn():
	conn = AsyncMock()
	conn.transaction = MagicMock(return_value=_async_ctx())
	return conn


def _chat_row(chat_id, *, is_group=False, created_at=NOW):
	return {
		"id": chat_id,
		"is_group": is_group,
		"name": None,
		"description": None,
		"avatar_url": None,
		"created_by": "alice",
		"created_at": created_at,
		"updated_at": created_at,
		"auto_delete_at": None,
		"is_deleted": False,
	}


def _participant_row(chat_id, user_id, role="member"):
	return {
		"chat_id": chat_id,
		"user_id": user_id,
		"role": role,
		"joined_at": NOW,
		"last_read": None,
		"is_muted": False,
	}


def _message_row(message_id, *, chat_id="c1", sender_id="alice", media=None, is_read=False, policy="forever"):
	return {
		"id": message_id,
		"chat_id": chat_id,
		"sender_id": sender_id,
		"content": "hello",
		"media": json.dumps(media or []),
		"is_read": is_read,
		"is_deleted": False,
		"created_at": NOW,
		"updated_at": NOW,
		"auto_delete_at": None,
		"retention_policy": policy,
		"forwarded_from": None,
	}


def _patched(conn):
	return patch("chatcore.domain.chat.repo.get_pool", _mock_pool(conn))


@pytest.mark.asyncio
async def test_find_direct_requires_exact_pair():
	conn = _conn()
	conn.fetch.side_effect = [
		[_chat_row("legacy"), _chat_row("pair", created_at=NOW + timedelta(minutes=1))],
		[
			_participant_row("legacy", "alice"),
			_participant_row("legacy", "bob"),
			_participant_row("legacy", "carol"),
			_participant_row("pair", "alice"),
			_participant_row("pair", "bob"),
		],
	]
	with _patched(conn):
		chat = await PostgresChatRepository().find_direct_chat("alice", "bob")

	assert chat.id == "pair"
	assert set(chat.participant_ids()) == {"alice", "bob"}
	lookup = conn.fetch.await_args_list[0]
	assert "is_group = FALSE" in lookup.args[0]
	assert lookup.args[1:] == ("alice", "bob")
	assert conn.fetch.await_args_list[1].args[1] == ["legacy", "pair"]


@pytest.mark.asyncio
async def test_find_direct_without_candidates_skips_participant_load():
	conn = _conn()
	conn.fetch.return_value = []
	with _patched(conn):
		assert await PostgresChatRepository().find_direct_chat("alice", "bob") is None
	assert conn.fetch.await_count == 1


@pytest.mark.asyncio
async def test_create_direct_chat_reuses_existing_under_advisory_lock():
	conn = _conn()
	conn.fetch.side_effect = [
		[_chat_row("existing")],
		[_participant_row("existing", "alice"), _participant_row("existing", "bob")],
	]
	chat = Chat(id="new", is_group=False, created_at=NOW, updated_at=NOW, created_by="bob")
	participants = [ChatParticipant("new", "bob", joined_at=NOW), ChatParticipant("new", "alice", joined_at=NOW)]
	with _patched(conn):
		result, created = await PostgresChatRepository().create_chat(chat, participants, direct_pair=("bob", "alice"))

	assert not created
	assert result.id == "existing"
	lock = conn.execute.await_args_list[0]
	assert "pg_advisory_xact_lock" in lock.args[0]
	assert lock.args[1] == "direct:alice:bob"
	conn.executemany.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_chat_inserts_chat_and_participants():
	conn = _conn()
	conn.fetch.return_value = []
	chat = Chat(id="g1", is_group=True, created_at=NOW, updated_at=NOW, name="team", created_by="alice")
	participants = [
		ChatParticipant("g1", "alice", role=ParticipantRole.ADMIN, joined_at=NOW),
		ChatParticipant("g1", "bob", joined_at=NOW),
	]
	with _patched(conn):
		result, created = await PostgresChatRepository().create_chat(chat, participants)

	assert created
	assert result.participant_ids() == ("alice", "bob")
	insert = conn.execute.await_args_list[0]
	assert "INSERT INTO chats" in insert.args[0]
	assert insert.args[1:4] == ("g1", True, "team")
	rows = conn.executemany.await_args.args[1]
	assert rows == [("g1", "alice", "admin", NOW, None, False), ("g1", "bob", "member", NOW, None, False)]
	conn.fetch.assert_not_awaited()


@pytest.mark.asyncio
async def test_add_participants_raises_when_chat_is_gone():
	conn = _conn()
	conn.fetchrow.return_value = None
	with _patched(conn):
		with pytest.raises(errors.NotFound):
			await PostgresChatRepository().add_participants("c1", [ChatParticipant("c1", "carol", joined_at=NOW)])


@pytest.mark.asyncio
async def test_list_messages_uses_keyset_cursor():
	conn = _conn()
	conn.fetch.return_value = [_message_row("m2"), _message_row("m1")]
	repo = PostgresChatRepository()
	with _patched(conn):
		first = await repo.list_messages("c1", limit=2, before=None)
		await repo.list_messages("c1", limit=2, before=(NOW, "m1"))

	assert [m.id for m in first] == ["m2", "m1"]
	plain, paged = conn.fetch.await_args_list
	assert "LIMIT $2" in plain.args[0]
	assert plain.args[1:] == ("c1", 2)
	assert "(created_at, id) < ($2, $3)" in paged.args[0]
	assert "LIMIT $4" in paged.args[0]
	assert paged.args[1:] == ("c1", NOW, "m1", 2)


@pytest.mark.asyncio
async def test_mark_read_maps_returned_rows():
	conn = _conn()
	media = [{"attachment_id": "a1", "media_type": "image", "url": "https://cdn/x.png"}]
	conn.fetch.return_value = [_message_row("m1", media=media, is_read=True, policy="after_read")]
	with _patched(conn):
		changed = await PostgresChatRepository().mark_read("c1", "bob", ["m1", "m2"], NOW)

	assert [m.id for m in changed] == ["m1"]
	assert changed[0].is_read
	assert changed[0].retention_policy == "after_read"
	assert changed[0].media[0].url == "https://cdn/x.png"
	call = conn.fetch.await_args
	assert "sender_id <> $2" in call.args[0]
	assert call.args[1:] == ("c1", "bob", ["m1", "m2"], NOW)


@pytest.mark.asyncio
async def test_edit_is_conditional_on_updated_at():
	conn = _conn()
	conn.fetchrow.return_value = None
	later = NOW + timedelta(seconds=5)
	with _patched(conn):
		stale = await PostgresChatRepository().update_content("m1", "edited", expected_updated_at=NOW, at=later)

	assert stale is None
	call = conn.fetchrow.await_args
	assert "updated_at = $3" in call.args[0]
	assert call.args[1:] == ("m1", "edited", NOW, later)


@pytest.mark.asyncio
async def test_expiry_sweeps_skip_locked_rows():
	conn = _conn()
	conn.fetch.return_value = [{"id": "m1"}, {"id": "m2"}]
	repo = PostgresChatRepository()
	with _patched(conn):
		expired = await repo.expire_messages(NOW, limit=50, text=TOMBSTONE_EXPIRED)
		after_read = await repo.expire_read_after_read(NOW, limit=50, text=TOMBSTONE_AFTER_READ)

	assert expired == ["m1", "m2"]
	assert after_read == ["m1", "m2"]
	expire_call, after_read_call = conn.fetch.await_args_list
	assert "FOR UPDATE SKIP LOCKED" in expire_call.args[0]
	assert "auto_delete_at <= $1" in expire_call.args[0]
	assert expire_call.args[1:] == (NOW, 50, TOMBSTONE_EXPIRED)
	assert "FOR UPDATE SKIP LOCKED" in after_read_call.args[0]
	assert "retention_policy = 'after_read'" in after_read_call.args[0]
	assert after_read_call.args[1:] == (NOW, 50, TOMBSTONE_AFTER_READ)


@pytest.mark.asyncio
async def test_expire_chats_returns_swept_ids():
	conn = _conn()
	conn.fetch.return_value = [{"id": "c9"}]
	with _patched(conn):
		assert await PostgresChatRepository().expire_chats(NOW) == ["c9"]
	call = conn.fetch.await_args
	assert "auto_delete_at <= $1" in call.args[0]
	assert call.args[1:] == (NOW,)

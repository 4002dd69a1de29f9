import asyncio
from unittest.mock import AsyncMock

import pytest
import socketio
import socketio.exceptions

from chatcore.container import build_container
from chatcore.domain.chat.sockets import ChatNamespace
from chatcore.settings import settings


def _environ(*headers):
	return {"asgi.scope": {"headers": [(name.encode(), value.encode()) for name, value in headers]}}


def _namespace():
	container = build_container(memory=True, timers_enabled=False)
	server = socketio.AsyncServer(async_mode="asgi")
	namespace = ChatNamespace(container)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	namespace.disconnect = AsyncMock()
	return namespace, container


async def _connect(namespace, sid, user_id):
	await namespace.trigger_event("connect", sid, _environ(), {"userId": user_id})


def _emitted(namespace, event):
	return [call for call in namespace.emit.await_args_list if call.args[0] == event]


@pytest.mark.asyncio
async def test_connect_requires_identity(monkeypatch):
	namespace, _ = _namespace()
	monkeypatch.setattr(settings, "environment", "production")
	with pytest.raises(socketio.exceptions.ConnectionRefusedError):
		await namespace.trigger_event("connect", "sid-1", _environ(("x-user-id", "alice")))
	assert "sid-1" not in namespace.sessions


@pytest.mark.asyncio
async def test_connect_joins_user_room_and_goes_online():
	namespace, container = _namespace()
	await namespace.trigger_event("connect", "sid-1", _environ(("x-user-id", "alice")))

	assert namespace.sessions["sid-1"].id == "alice"
	namespace.enter_room.assert_awaited_with("sid-1", "user:alice")
	assert container.presence_registry.is_online("alice")


@pytest.mark.asyncio
async def test_connect_is_rate_limited_per_address(monkeypatch):
	namespace, _ = _namespace()
	monkeypatch.setattr(settings, "socket_connect_limit_per_minute", 1)
	await _connect(namespace, "sid-1", "alice")
	with pytest.raises(socketio.exceptions.ConnectionRefusedError):
		await _connect(namespace, "sid-2", "alice")


@pytest.mark.asyncio
async def test_disconnect_marks_user_offline():
	namespace, container = _namespace()
	await _connect(namespace, "sid-1", "alice")
	await namespace.trigger_event("disconnect", "sid-1")
	assert "sid-1" not in namespace.sessions
	assert not container.presence_registry.is_online("alice")


@pytest.mark.asyncio
async def test_create_chat_and_send_message():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")

	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})
	assert created["ok"] is True
	assert created["created"] is True
	chat_id = created["chat"]["id"]
	namespace.enter_room.assert_awaited_with("sid-1", f"chat:{chat_id}")

	ack = await namespace.trigger_event("message:send", "sid-1", {"chatId": chat_id, "content": "hi bob"})
	assert ack["ok"] is True
	assert ack["message"]["content"] == "hi bob"

	sent = _emitted(namespace, "message:sent")
	assert sent[0].kwargs["room"] == "sid-1"
	fanout = _emitted(namespace, "message:new")
	assert fanout[0].kwargs["room"] == f"chat:{chat_id}"

	listed = await namespace.trigger_event("messages:list", "sid-1", {"chatId": chat_id})
	assert [m["content"] for m in listed["messages"]] == ["hi bob"]
	assert listed["nextCursor"] is None

	chats = await namespace.trigger_event("chats:list", "sid-1", {})
	assert chats["chats"][0]["id"] == chat_id


@pytest.mark.asyncio
async def test_invalid_payload_returns_validation_error():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")

	ack = await namespace.trigger_event("message:send", "sid-1", {"content": "no chat id"})
	assert ack["ok"] is False
	assert ack["error"]["code"] == "validation_error"
	assert ack["error"]["event"] == "message:send"
	errors = _emitted(namespace, "chat:error")
	assert errors[0].kwargs["room"] == "sid-1"


@pytest.mark.asyncio
async def test_non_participant_cannot_join():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")
	await _connect(namespace, "sid-2", "mallory")
	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})

	ack = await namespace.trigger_event("chat:join", "sid-2", {"chatId": created["chat"]["id"]})
	assert ack["ok"] is False
	assert ack["error"]["code"] == "not_participant"


@pytest.mark.asyncio
async def test_events_without_session_disconnect():
	namespace, _ = _namespace()
	ack = await namespace.trigger_event("chats:list", "ghost", {})
	assert ack["ok"] is False
	assert ack["error"]["code"] == "not_authenticated"
	namespace.disconnect.assert_awaited_once_with("ghost")


@pytest.mark.asyncio
async def test_send_is_rate_limited(monkeypatch):
	namespace, _ = _namespace()
	monkeypatch.setattr(settings, "socket_send_limit", 1)
	await _connect(namespace, "sid-1", "alice")
	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})
	payload = {"chatId": created["chat"]["id"], "content": "spam"}

	assert (await namespace.trigger_event("message:send", "sid-1", payload))["ok"] is True
	ack = await namespace.trigger_event("message:send", "sid-1", payload)
	assert ack["ok"] is False
	assert ack["error"]["code"] == "rate_limited"


@pytest.mark.asyncio
async def test_typing_skips_the_typist():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")
	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})
	chat_id = created["chat"]["id"]

	ack = await namespace.trigger_event("chat:typing", "sid-1", {"chatId": chat_id, "isTyping": True})
	assert ack["ok"] is True
	typing = _emitted(namespace, "chat:typing")
	assert typing[0].args[1] == {"chatId": chat_id, "userId": "alice", "isTyping": True}
	assert typing[0].kwargs["skip_sid"] == "sid-1"


@pytest.mark.asyncio
async def test_presence_commands():
	namespace, container = _namespace()
	await container.graph.add_friendship("alice", "bob")
	await _connect(namespace, "sid-1", "alice")
	await _connect(namespace, "sid-2", "bob")

	friends = await namespace.trigger_event("presence:online_friends", "sid-1", {})
	assert friends["friends"] == [{"userId": "bob", "status": "online"}]

	status = await namespace.trigger_event("presence:set_status", "sid-2", {"status": "away"})
	assert status["status"] == "away"
	seen = await namespace.trigger_event("presence:get", "sid-1", {"userId": "bob"})
	assert seen["presence"]["status"] == "away"

	bad = await namespace.trigger_event("presence:set_status", "sid-2", {"status": "offline"})
	assert bad["error"]["reason"] == "invalid_status"


@pytest.mark.asyncio
async def test_slow_handler_times_out(monkeypatch):
	namespace, container = _namespace()
	monkeypatch.setattr(settings, "handler_timeout_seconds", 0.01)
	await _connect(namespace, "sid-1", "alice")

	async def slow(*args, **kwargs):
		await asyncio.sleep(1)
		return []

	monkeypatch.setattr(container.chat_service, "list_user_chats", slow)
	ack = await namespace.trigger_event("chats:list", "sid-1", {})
	assert ack["ok"] is False
	assert ack["error"]["code"] == "transient"


@pytest.mark.asyncio
async def test_store_failure_is_reported_as_transient(monkeypatch):
	namespace, container = _namespace()
	await _connect(namespace, "sid-1", "alice")

	async def broken(*args, **kwargs):
		raise OSError("connection reset by peer")

	monkeypatch.setattr(container.chat_service, "list_user_chats", broken)
	ack = await namespace.trigger_event("chats:list", "sid-1", {})
	assert ack["error"]["code"] == "transient"
	assert "connection reset" not in ack["error"]["message"]


@pytest.mark.asyncio
async def test_friend_lookup_failure_keeps_connection_consistent(monkeypatch):
	namespace, container = _namespace()
	await container.graph.add_friendship("alice", "bob")
	monkeypatch.setattr(container.graph, "list_friend_ids", AsyncMock(side_effect=OSError("graph down")))

	await namespace.trigger_event("connect", "sid-1", _environ(("x-user-id", "alice")))
	assert namespace.sessions["sid-1"].id == "alice"
	assert container.presence_registry.is_online("alice")
	assert _emitted(namespace, "presence:online") == []

	await namespace.trigger_event("disconnect", "sid-1")
	assert "sid-1" not in namespace.sessions
	assert not container.presence_registry.is_online("alice")


@pytest.mark.asyncio
async def test_slow_friend_lookup_does_not_block_connect(monkeypatch):
	namespace, container = _namespace()
	monkeypatch.setattr(settings, "handler_timeout_seconds", 0.01)

	async def slow(*args, **kwargs):
		await asyncio.sleep(1)
		return []

	monkeypatch.setattr(container.graph, "list_friend_ids", slow)
	await _connect(namespace, "sid-1", "alice")
	assert "sid-1" in namespace.sessions
	assert container.presence_registry.is_online("alice")


@pytest.mark.asyncio
async def test_unexpected_connect_failure_rolls_back_presence(monkeypatch):
	namespace, container = _namespace()
	registry = container.presence_registry

	async def broken(user_id, sid):
		await registry.register_connection(user_id, sid)
		raise RuntimeError("boom")

	monkeypatch.setattr(container.presence_service, "connected", broken)
	with pytest.raises(socketio.exceptions.ConnectionRefusedError):
		await _connect(namespace, "sid-1", "alice")
	assert "sid-1" not in namespace.sessions
	assert not registry.is_online("alice")
	namespace.leave_room.assert_awaited_with("sid-1", "user:alice")


@pytest.mark.asyncio
async def test_join_announces_member_and_returns_members():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")
	await _connect(namespace, "sid-2", "bob")
	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})
	chat_id = created["chat"]["id"]

	first = await namespace.trigger_event("chat:join", "sid-1", {"chatId": chat_id})
	assert first["members"] == ["alice"]
	ack = await namespace.trigger_event("chat:join", "sid-2", {"chatId": chat_id})
	assert ack["ok"] is True
	assert ack["members"] == ["alice", "bob"]

	joined = _emitted(namespace, "chat:user_joined")
	assert joined[-1].args[1] == {"chatId": chat_id, "userId": "bob"}
	assert joined[-1].kwargs["room"] == f"chat:{chat_id}"
	assert joined[-1].kwargs["skip_sid"] == "sid-2"
	welcome = _emitted(namespace, "chat:joined")
	assert welcome[-1].args[1] == {"chatId": chat_id, "members": ["alice", "bob"]}
	assert welcome[-1].kwargs["room"] == "sid-2"


@pytest.mark.asyncio
async def test_leave_and_disconnect_announce_departure():
	namespace, _ = _namespace()
	await _connect(namespace, "sid-1", "alice")
	await _connect(namespace, "sid-2", "bob")
	created = await namespace.trigger_event("chat:create", "sid-1", {"participantIds": ["bob"]})
	chat_id = created["chat"]["id"]
	await namespace.trigger_event("chat:join", "sid-1", {"chatId": chat_id})
	await namespace.trigger_event("chat:join", "sid-2", {"chatId": chat_id})

	await namespace.trigger_event("chat:leave", "sid-2", {"chatId": chat_id})
	left = _emitted(namespace, "chat:user_left")
	assert left[-1].args[1] == {"chatId": chat_id, "userId": "bob"}
	assert left[-1].kwargs["skip_sid"] == "sid-2"
	assert namespace.viewers[chat_id] == {"sid-1": "alice"}

	# leaving twice is silent
	await namespace.trigger_event("chat:leave", "sid-2", {"chatId": chat_id})
	assert len(_emitted(namespace, "chat:user_left")) == 1

	await namespace.trigger_event("disconnect", "sid-1")
	left = _emitted(namespace, "chat:user_left")
	assert left[-1].args[1] == {"chatId": chat_id, "userId": "alice"}
	assert chat_id not in namespace.viewers

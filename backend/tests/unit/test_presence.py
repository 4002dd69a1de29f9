from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from chatcore.domain import errors
from chatcore.domain.chat.broadcaster import EventBroadcaster
from chatcore.domain.presence.registry import PresenceRegistry, PresenceStatus
from chatcore.domain.presence.service import PresenceService
from chatcore.domain.privacy.store import InMemoryPrivacySettingsStore
from chatcore.domain.social.graph import InMemoryFriendshipGraph


class FakeEmitter:
	namespace = "/chat"

	def __init__(self) -> None:
		self.emit = AsyncMock()

	def events(self):
		return [(call.args[0], call.kwargs.get("room"), call.args[1]) for call in self.emit.await_args_list]


async def _service():
	registry = PresenceRegistry()
	store = InMemoryPrivacySettingsStore()
	graph = InMemoryFriendshipGraph()
	await graph.add_friendship("alice", "bob")
	emitter = FakeEmitter()
	service = PresenceService(registry, privacy_store=store, graph=graph, broadcaster=EventBroadcaster(emitter))
	return service, registry, store, emitter


@pytest.mark.asyncio
async def test_registry_tracks_connection_sets():
	registry = PresenceRegistry()
	assert await registry.register_connection("alice", "s1")
	assert not await registry.register_connection("alice", "s2")
	assert registry.is_online("alice")
	assert registry.connection_ids("alice") == {"s1", "s2"}

	assert not await registry.remove_connection("alice", "s1")
	assert registry.is_online("alice")
	assert await registry.remove_connection("alice", "s2")
	assert not registry.is_online("alice")
	assert registry.list_online_users() == []
	assert registry.status("alice") is PresenceStatus.OFFLINE
	assert not await registry.remove_connection("alice", "s2")


@pytest.mark.asyncio
async def test_invisible_is_reported_offline_and_survives_reconnect():
	registry = PresenceRegistry()
	await registry.register_connection("alice", "s1")
	await registry.set_status("alice", PresenceStatus.INVISIBLE)
	snapshot = registry.snapshot("alice")
	assert not snapshot.online
	assert snapshot.status is PresenceStatus.OFFLINE

	await registry.remove_connection("alice", "s1")
	await registry.register_connection("alice", "s2")
	assert registry.status("alice") is PresenceStatus.INVISIBLE
	assert not registry.is_visible_online("alice")


@pytest.mark.asyncio
async def test_set_status_rejects_offline():
	registry = PresenceRegistry()
	with pytest.raises(ValueError):
		await registry.set_status("alice", PresenceStatus.OFFLINE)


@pytest.mark.asyncio
async def test_prune_offline_forgets_stale_users():
	registry = PresenceRegistry()
	await registry.register_connection("alice", "s1")
	await registry.register_connection("bob", "s2")
	await registry.remove_connection("alice", "s1")
	later = datetime.now(timezone.utc) + timedelta(hours=2)
	removed = await registry.prune_offline(timedelta(hours=1), now=later)
	assert removed == 1
	assert registry.last_active("alice") is None
	assert registry.last_active("bob") is not None


@pytest.mark.asyncio
async def test_first_and_last_connection_announce_to_friends():
	service, registry, _, emitter = await _service()
	await service.connected("alice", "s1")
	await service.connected("alice", "s2")
	await service.disconnected("alice", "s1")
	await service.disconnected("alice", "s2")

	events = emitter.events()
	assert events == [
		("presence:online", "user:bob", {"userId": "alice"}),
		("presence:offline", "user:bob", {"userId": "alice"}),
	]


@pytest.mark.asyncio
async def test_hidden_online_status_is_not_announced():
	service, _, store, emitter = await _service()
	await store.put("alice", {"showOnlineStatus": False})
	await service.connected("alice", "s1")
	assert emitter.events() == []


@pytest.mark.asyncio
async def test_going_invisible_announces_offline():
	service, _, _, emitter = await _service()
	await service.connected("alice", "s1")
	status = await service.set_status("alice", "invisible")
	assert status is PresenceStatus.INVISIBLE
	assert emitter.events()[-1] == ("presence:offline", "user:bob", {"userId": "alice"})

	with pytest.raises(errors.ValidationError):
		await service.set_status("alice", "offline")
	with pytest.raises(errors.ValidationError):
		await service.set_status("alice", "busy")


@pytest.mark.asyncio
async def test_get_presence_respects_viewer():
	service, _, store, _ = await _service()
	await service.connected("alice", "s1")
	await service.set_status("alice", "invisible")

	own = await service.get_presence("alice", "alice")
	assert own["status"] == "invisible"
	assert own["online"] is True

	seen_by_friend = await service.get_presence("bob", "alice")
	assert seen_by_friend["online"] is False
	assert seen_by_friend["status"] == "offline"

	await store.put("alice", {"profileVisibility": "private"})
	hidden = await service.get_presence("carol", "alice")
	assert hidden["online"] is None
	assert hidden["lastActive"] is None


@pytest.mark.asyncio
async def test_online_friends_lists_visible_friends_only():
	service, _, _, _ = await _service()
	await service.connected("bob", "s9")
	assert await service.online_friends("alice") == [{"userId": "bob", "status": "online"}]
	await service.set_status("bob", "away")
	assert await service.online_friends("alice") == [{"userId": "bob", "status": "away"}]
	await service.set_status("bob", "invisible")
	assert await service.online_friends("alice") == []


@pytest.mark.asyncio
async def test_failed_friend_lookup_drops_announcement_not_presence(monkeypatch):
	service, registry, _, emitter = await _service()
	monkeypatch.setattr(service._graph, "list_friend_ids", AsyncMock(side_effect=OSError("graph down")))

	assert await service.connected("alice", "s1")
	assert registry.is_online("alice")
	assert await service.disconnected("alice", "s1")
	assert not registry.is_online("alice")
	assert emitter.events() == []

import pytest

from chatcore.domain import errors
from chatcore.domain.privacy import policy
from chatcore.domain.privacy.models import PrivacySettings
from chatcore.domain.privacy.store import InMemoryPrivacySettingsStore
from chatcore.domain.social.graph import InMemoryFriendshipGraph


async def _graph(*pairs):
	graph = InMemoryFriendshipGraph()
	for a, b in pairs:
		await graph.add_friendship(a, b)
	return graph


@pytest.mark.asyncio
async def test_everyone_allows_strangers():
	graph = await _graph()
	decision = await policy.can_send_message("alice", "bob", PrivacySettings(user_id="bob"), graph)
	assert decision.allowed
	assert decision.reason is None


@pytest.mark.asyncio
async def test_nobody_blocks_even_friends():
	graph = await _graph(("alice", "bob"))
	settings = PrivacySettings(user_id="bob", allow_messages_from="nobody")
	decision = await policy.can_send_message("alice", "bob", settings, graph)
	assert not decision
	assert decision.reason == errors.RECIPIENT_BLOCKS_MESSAGES


@pytest.mark.asyncio
async def test_friends_only():
	graph = await _graph(("alice", "bob"))
	settings = PrivacySettings(user_id="bob", allow_messages_from="friends")
	assert (await policy.can_send_message("alice", "bob", settings, graph)).allowed
	denied = await policy.can_send_message("carol", "bob", settings, graph)
	assert denied.reason == errors.NOT_FRIENDS


@pytest.mark.asyncio
async def test_friends_of_friends_accepts_direct_and_mutual():
	graph = await _graph(("alice", "bob"), ("carol", "alice"))
	settings = PrivacySettings(user_id="bob", allow_messages_from="friends_of_friends")
	assert (await policy.can_send_message("alice", "bob", settings, graph)).allowed
	assert (await policy.can_send_message("carol", "bob", settings, graph)).allowed
	denied = await policy.can_send_message("dave", "bob", settings, graph)
	assert denied.reason == errors.NO_MUTUAL_FRIENDS


@pytest.mark.asyncio
async def test_unknown_level_fails_closed():
	graph = await _graph(("alice", "bob"))
	settings = PrivacySettings(user_id="bob", allow_messages_from="colleagues")
	decision = await policy.can_send_message("alice", "bob", settings, graph)
	assert decision.reason == errors.UNKNOWN_PRIVACY_LEVEL


@pytest.mark.asyncio
async def test_sender_can_always_message_self():
	graph = await _graph()
	settings = PrivacySettings(user_id="bob", allow_messages_from="nobody")
	assert (await policy.can_send_message("bob", "bob", settings, graph)).allowed


@pytest.mark.asyncio
async def test_ensure_can_add_participants_raises_on_first_refusal():
	store = InMemoryPrivacySettingsStore()
	await store.put("carol", {"allowMessagesFrom": "nobody"})
	graph = await _graph()
	with pytest.raises(errors.PermissionDenied) as excinfo:
		await policy.ensure_can_add_participants("alice", ["bob", "carol"], store, graph)
	assert excinfo.value.reason == errors.RECIPIENT_BLOCKS_MESSAGES


def test_read_receipts_need_both_sides():
	on = PrivacySettings(user_id="a")
	off = PrivacySettings(user_id="b", allow_read_receipts=False)
	assert policy.should_send_read_receipt(on, on)
	assert not policy.should_send_read_receipt(on, off)
	assert not policy.should_send_read_receipt(off, on)


def test_forwarding_rules():
	sender = PrivacySettings(user_id="alice", allow_forwarding=False)
	with pytest.raises(errors.PermissionDenied) as excinfo:
		policy.ensure_can_forward("bob", sender, is_source_participant=True)
	assert excinfo.value.reason == errors.FORWARDING_DISABLED

	with pytest.raises(errors.NotParticipant):
		policy.ensure_can_forward("mallory", PrivacySettings(user_id="alice"), is_source_participant=False)

	policy.ensure_can_forward("bob", PrivacySettings(user_id="alice"), is_source_participant=True)


@pytest.mark.asyncio
async def test_online_status_visibility():
	graph = await _graph(("alice", "bob"))
	hidden = PrivacySettings(user_id="bob", show_online_status=False)
	friends_only = PrivacySettings(user_id="bob", profile_visibility="friends")
	private = PrivacySettings(user_id="bob", profile_visibility="private")

	assert await policy.can_see_online_status("bob", hidden, graph)
	assert not await policy.can_see_online_status("alice", hidden, graph)
	assert await policy.can_see_online_status("alice", friends_only, graph)
	assert not await policy.can_see_online_status("carol", friends_only, graph)
	assert not await policy.can_see_online_status("alice", private, graph)
	assert await policy.can_see_last_active("carol", PrivacySettings(user_id="bob"), graph)
	assert not await policy.can_see_last_active("carol", PrivacySettings(user_id="bob", show_last_active=False), graph)

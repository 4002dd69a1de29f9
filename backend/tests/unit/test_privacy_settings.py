import pytest

from chatcore.domain.privacy.models import RetentionPeriod
from chatcore.domain.privacy.store import InMemoryPrivacySettingsStore, resolve_settings


def test_missing_document_uses_defaults():
	resolved = resolve_settings("u1", None)
	assert resolved.allow_messages_from == "everyone"
	assert resolved.retention is RetentionPeriod.FOREVER
	assert resolved.allow_read_receipts
	assert resolved.allow_forwarding
	assert resolved.profile_visibility == "public"


def test_nested_camel_case_sections():
	raw = {
		"messageSettings": {
			"allowMessagesFrom": "friends",
			"messageRetentionPeriod": "one_week",
			"allowMessageReadReceipts": False,
			"allowForwarding": False,
		},
		"baseSettings": {"profileVisibility": "friends", "showOnlineStatus": False},
	}
	resolved = resolve_settings("u1", raw)
	assert resolved.allow_messages_from == "friends"
	assert resolved.retention is RetentionPeriod.ONE_WEEK
	assert not resolved.allow_read_receipts
	assert not resolved.allow_forwarding
	assert resolved.profile_visibility == "friends"
	assert not resolved.show_online_status


def test_flat_snake_case_document():
	resolved = resolve_settings("u1", {"allow_messages_from": "NOBODY", "retention": "one-day"})
	assert resolved.allow_messages_from == "nobody"
	assert resolved.retention is RetentionPeriod.ONE_DAY


def test_unknown_values_are_handled_conservatively():
	resolved = resolve_settings(
		"u1",
		{"allowMessagesFrom": "coworkers", "retentionPeriod": "decade", "profileVisibility": "secret"},
	)
	# the permission engine denies unknown levels, so keep it verbatim
	assert resolved.allow_messages_from == "coworkers"
	assert resolved.retention is RetentionPeriod.FOREVER
	assert resolved.profile_visibility == "private"


@pytest.mark.asyncio
async def test_in_memory_store_round_trip():
	store = InMemoryPrivacySettingsStore()
	await store.put("u2", {"allowReadReceipts": "false"})
	resolved = await store.get_settings("u2")
	assert resolved.user_id == "u2"
	assert not resolved.allow_read_receipts
	assert (await store.get_settings("someone-else")).allow_read_receipts

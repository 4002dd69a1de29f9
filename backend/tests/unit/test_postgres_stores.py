import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chatcore.domain.privacy.models import RetentionPeriod
from chatcore.domain.privacy.store import PostgresPrivacySettingsStore
from chatcore.domain.social.graph import PostgresFriendshipGraph


def _mock_pool(conn):
	pool = MagicMock()  # Pool itself is not async, its methods are
	acquire_ctx = AsyncMock()
	acquire_ctx.__aenter__.return_value = conn
	pool.acquire.return_value = acquire_ctx
	return AsyncMock(return_value=pool)


@pytest.mark.asyncio
async def test_privacy_store_decodes_json_text():
	conn = AsyncMock()
	conn.fetchrow.return_value = {"settings": json.dumps({"messageSettings": {"messageRetentionPeriod": "one_month"}})}
	with patch("chatcore.domain.privacy.store.get_pool", _mock_pool(conn)):
		resolved = await PostgresPrivacySettingsStore().get_settings("alice")
	assert resolved.retention is RetentionPeriod.ONE_MONTH
	assert conn.fetchrow.await_args.args[1] == "alice"


@pytest.mark.asyncio
async def test_privacy_store_defaults_when_row_missing():
	conn = AsyncMock()
	conn.fetchrow.return_value = None
	with patch("chatcore.domain.privacy.store.get_pool", _mock_pool(conn)):
		resolved = await PostgresPrivacySettingsStore().get_settings("bob")
	assert resolved.allow_messages_from == "everyone"
	assert resolved.retention is RetentionPeriod.FOREVER


@pytest.mark.asyncio
async def test_friendship_graph_queries():
	conn = AsyncMock()
	conn.fetchrow.return_value = {"?column?": 1}
	conn.fetch.return_value = [{"uid": "bob"}, {"uid": "carol"}]
	graph = PostgresFriendshipGraph()
	with patch("chatcore.domain.social.graph.get_pool", _mock_pool(conn)):
		assert await graph.are_friends("alice", "bob")
		assert not await graph.are_friends("alice", "alice")
		assert await graph.list_friend_ids("alice") == ["bob", "carol"]
		conn.fetchrow.return_value = None
		assert not await graph.have_mutual_friends("alice", "dave")

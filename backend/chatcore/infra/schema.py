"""DDL for the durable chat tables and an idempotent bootstrap helper."""

from __future__ import annotations

import logging

from chatcore.infra.postgres import get_pool

LOGGER = logging.getLogger(__name__)

STATEMENTS: tuple[str, ...] = (
	"""
	CREATE TABLE IF NOT EXISTS chats (
		id TEXT PRIMARY KEY,
		is_group BOOLEAN NOT NULL DEFAULT FALSE,
		name TEXT,
		description TEXT,
		avatar_url TEXT,
		created_by TEXT,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		auto_delete_at TIMESTAMPTZ,
		is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
		deleted_at TIMESTAMPTZ
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS chat_participants (
		chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
		user_id TEXT NOT NULL,
		role TEXT NOT NULL DEFAULT 'member',
		joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		last_read TIMESTAMPTZ,
		is_muted BOOLEAN NOT NULL DEFAULT FALSE,
		PRIMARY KEY (chat_id, user_id)
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS messages (
		id TEXT PRIMARY KEY,
		chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
		sender_id TEXT NOT NULL,
		content TEXT,
		media JSONB NOT NULL DEFAULT '[]'::jsonb,
		is_read BOOLEAN NOT NULL DEFAULT FALSE,
		is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		auto_delete_at TIMESTAMPTZ,
		retention_policy TEXT NOT NULL DEFAULT 'forever',
		forwarded_from TEXT,
		deleted_at TIMESTAMPTZ
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS friendships (
		user_id TEXT NOT NULL,
		friend_id TEXT NOT NULL,
		status TEXT NOT NULL DEFAULT 'accepted',
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		PRIMARY KEY (user_id, friend_id)
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS user_privacy_settings (
		user_id TEXT PRIMARY KEY,
		settings JSONB NOT NULL DEFAULT '{}'::jsonb,
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"CREATE INDEX IF NOT EXISTS idx_messages_chat_keyset ON messages (chat_id, created_at DESC, id DESC)",
	"CREATE INDEX IF NOT EXISTS idx_messages_auto_delete ON messages (auto_delete_at) WHERE is_deleted = FALSE AND auto_delete_at IS NOT NULL",
	"CREATE INDEX IF NOT EXISTS idx_messages_after_read ON messages (chat_id) WHERE is_deleted = FALSE AND is_read = TRUE AND retention_policy = 'after_read'",
	"CREATE INDEX IF NOT EXISTS idx_chat_participants_user ON chat_participants (user_id, chat_id)",
	"CREATE INDEX IF NOT EXISTS idx_chats_auto_delete ON chats (auto_delete_at) WHERE is_deleted = FALSE AND auto_delete_at IS NOT NULL",
	"CREATE INDEX IF NOT EXISTS idx_friendships_friend ON friendships (friend_id, user_id) WHERE status = 'accepted'",
)


async def apply_schema() -> None:
	pool = await get_pool()
	async with pool.acquire() as conn:
		async with conn.transaction():
			for statement in STATEMENTS:
				await conn.execute(statement)
	LOGGER.info("chat schema applied", extra={"statements": len(STATEMENTS)})

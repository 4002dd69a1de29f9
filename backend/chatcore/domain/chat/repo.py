"""Chat persistence: asyncpg repository and an in-process counterpart."""

from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .attachments import media_from_json
from .models import (
	Chat,
	ChatParticipant,
	ChatSummary,
	Message,
	ParticipantRole,
	PendingDeletion,
)
from chatcore.domain import errors
from chatcore.infra.postgres import get_pool

Cursor = Tuple[datetime, str]


class ChatRepository(Protocol):
	async def create_chat(
		self,
		chat: Chat,
		participants: Sequence[ChatParticipant],
		*,
		direct_pair: Optional[Tuple[str, str]] = None,
	) -> Tuple[Chat, bool]: ...

	async def get_chat(self, chat_id: str) -> Optional[Chat]: ...

	async def find_direct_chat(self, user_a: str, user_b: str) -> Optional[Chat]: ...

	async def list_user_chats(self, user_id: str, *, limit: int, offset: int) -> List[ChatSummary]: ...

	async def add_participants(self, chat_id: str, participants: Sequence[ChatParticipant]) -> Chat: ...

	async def remove_participant(self, chat_id: str, user_id: str) -> int: ...

	async def set_muted(self, chat_id: str, user_id: str, muted: bool) -> bool: ...

	async def update_last_read(self, chat_id: str, user_id: str, at: datetime) -> None: ...

	async def set_chat_auto_delete(self, chat_id: str, at: Optional[datetime]) -> None: ...

	async def soft_delete_chat(self, chat_id: str, at: datetime) -> bool: ...

	async def insert_message(self, message: Message) -> Message: ...

	async def get_message(self, message_id: str) -> Optional[Message]: ...

	async def list_messages(self, chat_id: str, *, limit: int, before: Optional[Cursor]) -> List[Message]: ...

	async def mark_read(self, chat_id: str, reader_id: str, message_ids: Sequence[str], at: datetime) -> List[Message]: ...

	async def update_content(
		self, message_id: str, content: str, *, expected_updated_at: datetime, at: datetime
	) -> Optional[Message]: ...

	async def tombstone_message(self, message_id: str, text: str, at: datetime) -> Optional[Message]: ...

	async def pending_message_deletions(self, now: datetime) -> List[PendingDeletion]: ...

	async def pending_chat_deletions(self, now: datetime) -> List[PendingDeletion]: ...

	async def expire_messages(self, now: datetime, *, limit: int, text: str) -> List[str]: ...

	async def expire_read_after_read(self, now: datetime, *, limit: int, text: str) -> List[str]: ...

	async def expire_chats(self, now: datetime) -> List[str]: ...


def _row_to_participant(row) -> ChatParticipant:
	return ChatParticipant(
		chat_id=str(row["chat_id"]),
		user_id=str(row["user_id"]),
		role=ParticipantRole(row["role"]),
		joined_at=row["joined_at"],
		last_read=row["last_read"],
		is_muted=bool(row["is_muted"]),
	)


def _row_to_chat(row, participants: Iterable[ChatParticipant] = ()) -> Chat:
	return Chat(
		id=str(row["id"]),
		is_group=bool(row["is_group"]),
		created_at=row["created_at"],
		updated_at=row["updated_at"],
		name=row["name"],
		description=row["description"],
		avatar_url=row["avatar_url"],
		created_by=row["created_by"],
		auto_delete_at=row["auto_delete_at"],
		is_deleted=bool(row["is_deleted"]),
		participants=tuple(participants),
	)


def _row_to_message(row) -> Message:
	media_raw = row["media"]
	if isinstance(media_raw, str):
		media_raw = json.loads(media_raw) if media_raw else []
	return Message(
		id=str(row["id"]),
		chat_id=str(row["chat_id"]),
		sender_id=str(row["sender_id"]),
		content=row["content"],
		media=media_from_json(media_raw),
		created_at=row["created_at"],
		updated_at=row["updated_at"],
		is_read=bool(row["is_read"]),
		is_deleted=bool(row["is_deleted"]),
		auto_delete_at=row["auto_delete_at"],
		retention_policy=str(row["retention_policy"]),
		forwarded_from=row["forwarded_from"],
	)


_MESSAGE_COLUMNS = (
	"id, chat_id, sender_id, content, media, is_read, is_deleted, created_at, updated_at, "
	"auto_delete_at, retention_policy, forwarded_from"
)
_CHAT_COLUMNS = (
	"id, is_group, name, description, avatar_url, created_by, created_at, updated_at, auto_delete_at, is_deleted"
)


class PostgresChatRepository:
	"""Repository backed by asyncpg."""

	async def _load_participants(self, conn, chat_ids: Sequence[str]) -> Dict[str, List[ChatParticipant]]:
		rows = await conn.fetch(
			"""
			SELECT chat_id, user_id, role, joined_at, last_read, is_muted
			FROM chat_participants
			WHERE chat_id = ANY($1::text[])
			ORDER BY joined_at ASC, user_id ASC
			""",
			list(chat_ids),
		)
		grouped: Dict[str, List[ChatParticipant]] = {chat_id: [] for chat_id in chat_ids}
		for row in rows:
			grouped.setdefault(str(row["chat_id"]), []).append(_row_to_participant(row))
		return grouped

	async def _fetch_chat(self, conn, chat_id: str) -> Optional[Chat]:
		row = await conn.fetchrow(f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = $1", chat_id)
		if not row:
			return None
		participants = await self._load_participants(conn, [chat_id])
		return _row_to_chat(row, participants.get(chat_id, []))

	async def _find_direct(self, conn, user_a: str, user_b: str) -> Optional[Chat]:
		rows = await conn.fetch(
			f"""
			SELECT {_CHAT_COLUMNS} FROM chats c
			WHERE c.is_group = FALSE AND c.is_deleted = FALSE
			  AND EXISTS (SELECT 1 FROM chat_participants p WHERE p.chat_id = c.id AND p.user_id = $1)
			  AND EXISTS (SELECT 1 FROM chat_participants p WHERE p.chat_id = c.id AND p.user_id = $2)
			ORDER BY c.created_at ASC
			""",
			user_a,
			user_b,
		)
		if not rows:
			return None
		wanted = {user_a, user_b}
		participants = await self._load_participants(conn, [str(row["id"]) for row in rows])
		for row in rows:
			members = participants.get(str(row["id"]), [])
			# membership alone is not enough: the chat must be exactly this pair
			if len(members) == len(wanted) and {m.user_id for m in members} == wanted:
				return _row_to_chat(row, members)
		return None

	async def create_chat(
		self,
		chat: Chat,
		participants: Sequence[ChatParticipant],
		*,
		direct_pair: Optional[Tuple[str, str]] = None,
	) -> Tuple[Chat, bool]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				if direct_pair is not None:
					key = "direct:" + ":".join(sorted(direct_pair))
					await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)
					existing = await self._find_direct(conn, *direct_pair)
					if existing is not None:
						return existing, False
				await conn.execute(
					"""
					INSERT INTO chats (id, is_group, name, description, avatar_url, created_by, created_at, updated_at)
					VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
					""",
					chat.id,
					chat.is_group,
					chat.name,
					chat.description,
					chat.avatar_url,
					chat.created_by,
					chat.created_at,
					chat.updated_at,
				)
				await conn.executemany(
					"""
					INSERT INTO chat_participants (chat_id, user_id, role, joined_at, last_read, is_muted)
					VALUES ($1, $2, $3, $4, $5, $6)
					""",
					[(p.chat_id, p.user_id, p.role.value, p.joined_at, p.last_read, p.is_muted) for p in participants],
				)
		return replace(chat, participants=tuple(participants)), True

	async def get_chat(self, chat_id: str) -> Optional[Chat]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await self._fetch_chat(conn, chat_id)

	async def find_direct_chat(self, user_a: str, user_b: str) -> Optional[Chat]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await self._find_direct(conn, user_a, user_b)

	async def list_user_chats(self, user_id: str, *, limit: int, offset: int) -> List[ChatSummary]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT {", ".join("c." + col.strip() for col in _CHAT_COLUMNS.split(","))},
					(
						SELECT COUNT(*) FROM messages m
						WHERE m.chat_id = c.id AND m.is_deleted = FALSE AND m.sender_id <> $1
						  AND (p.last_read IS NULL OR m.created_at > p.last_read)
					) AS unread_count
				FROM chats c
				JOIN chat_participants p ON p.chat_id = c.id AND p.user_id = $1
				WHERE c.is_deleted = FALSE
				ORDER BY c.updated_at DESC, c.id DESC
				LIMIT $2 OFFSET $3
				""",
				user_id,
				limit,
				offset,
			)
			chat_ids = [str(row["id"]) for row in rows]
			if not chat_ids:
				return []
			participants = await self._load_participants(conn, chat_ids)
			latest_rows = await conn.fetch(
				f"""
				SELECT DISTINCT ON (chat_id) {_MESSAGE_COLUMNS}
				FROM messages
				WHERE chat_id = ANY($1::text[]) AND is_deleted = FALSE
				ORDER BY chat_id, created_at DESC, id DESC
				""",
				chat_ids,
			)
		latest = {str(row["chat_id"]): _row_to_message(row) for row in latest_rows}
		return [
			ChatSummary(
				chat=_row_to_chat(row, participants.get(str(row["id"]), [])),
				last_message=latest.get(str(row["id"])),
				unread_count=int(row["unread_count"]),
			)
			for row in rows
		]

	async def add_participants(self, chat_id: str, participants: Sequence[ChatParticipant]) -> Chat:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.executemany(
					"""
					INSERT INTO chat_participants (chat_id, user_id, role, joined_at, last_read, is_muted)
					VALUES ($1, $2, $3, $4, $5, $6)
					ON CONFLICT (chat_id, user_id) DO NOTHING
					""",
					[(p.chat_id, p.user_id, p.role.value, p.joined_at, p.last_read, p.is_muted) for p in participants],
				)
				await conn.execute("UPDATE chats SET updated_at = NOW() WHERE id = $1", chat_id)
			chat = await self._fetch_chat(conn, chat_id)
		if chat is None:
			raise errors.NotFound("chat_not_found", "chat vanished during update")
		return chat

	async def remove_participant(self, chat_id: str, user_id: str) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute(
					"DELETE FROM chat_participants WHERE chat_id = $1 AND user_id = $2",
					chat_id,
					user_id,
				)
				remaining = await conn.fetchval("SELECT COUNT(*) FROM chat_participants WHERE chat_id = $1", chat_id)
		return int(remaining or 0)

	async def set_muted(self, chat_id: str, user_id: str, muted: bool) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"UPDATE chat_participants SET is_muted = $3 WHERE chat_id = $1 AND user_id = $2",
				chat_id,
				user_id,
				muted,
			)
		return result.endswith(" 1")

	async def update_last_read(self, chat_id: str, user_id: str, at: datetime) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				UPDATE chat_participants
				SET last_read = GREATEST(COALESCE(last_read, $3), $3)
				WHERE chat_id = $1 AND user_id = $2
				""",
				chat_id,
				user_id,
				at,
			)

	async def set_chat_auto_delete(self, chat_id: str, at: Optional[datetime]) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("UPDATE chats SET auto_delete_at = $2 WHERE id = $1", chat_id, at)

	async def soft_delete_chat(self, chat_id: str, at: datetime) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			result = await conn.execute(
				"""
				UPDATE chats SET is_deleted = TRUE, deleted_at = $2, updated_at = $2
				WHERE id = $1 AND is_deleted = FALSE
				""",
				chat_id,
				at,
			)
		return result.endswith(" 1")

	async def insert_message(self, message: Message) -> Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO messages (
						id, chat_id, sender_id, content, media, is_read, is_deleted,
						created_at, updated_at, auto_delete_at, retention_policy, forwarded_from
					) VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8, $9, $10, $11, $12)
					""",
					message.id,
					message.chat_id,
					message.sender_id,
					message.content,
					json.dumps([item.to_dict() for item in message.media]),
					message.is_read,
					message.is_deleted,
					message.created_at,
					message.updated_at,
					message.auto_delete_at,
					message.retention_policy,
					message.forwarded_from,
				)
				await conn.execute("UPDATE chats SET updated_at = $2 WHERE id = $1", message.chat_id, message.created_at)
		return message

	async def get_message(self, message_id: str) -> Optional[Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = $1", message_id)
		return _row_to_message(row) if row else None

	async def list_messages(self, chat_id: str, *, limit: int, before: Optional[Cursor]) -> List[Message]:
		params: List[object] = [chat_id]
		where_clause = ""
		if before:
			params.extend([before[0], before[1]])
			where_clause = " AND (created_at, id) < ($2, $3)"
		params.append(limit)
		query = (
			f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE chat_id = $1 AND is_deleted = FALSE"
			+ where_clause
			+ f" ORDER BY created_at DESC, id DESC LIMIT ${len(params)}"
		)
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(query, *params)
		return [_row_to_message(row) for row in rows]

	async def mark_read(self, chat_id: str, reader_id: str, message_ids: Sequence[str], at: datetime) -> List[Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				UPDATE messages SET is_read = TRUE, updated_at = $4
				WHERE chat_id = $1 AND id = ANY($3::text[]) AND sender_id <> $2
				  AND is_read = FALSE AND is_deleted = FALSE
				RETURNING {_MESSAGE_COLUMNS}
				""",
				chat_id,
				reader_id,
				list(message_ids),
				at,
			)
		return [_row_to_message(row) for row in rows]

	async def update_content(
		self, message_id: str, content: str, *, expected_updated_at: datetime, at: datetime
	) -> Optional[Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE messages SET content = $2, updated_at = $4
				WHERE id = $1 AND updated_at = $3 AND is_deleted = FALSE
				RETURNING {_MESSAGE_COLUMNS}
				""",
				message_id,
				content,
				expected_updated_at,
				at,
			)
		return _row_to_message(row) if row else None

	async def tombstone_message(self, message_id: str, text: str, at: datetime) -> Optional[Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE messages
				SET content = $2, media = '[]'::jsonb, is_deleted = TRUE, deleted_at = $3, updated_at = $3
				WHERE id = $1 AND is_deleted = FALSE
				RETURNING {_MESSAGE_COLUMNS}
				""",
				message_id,
				text,
				at,
			)
		return _row_to_message(row) if row else None

	async def pending_message_deletions(self, now: datetime) -> List[PendingDeletion]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, auto_delete_at FROM messages
				WHERE auto_delete_at > $1 AND is_deleted = FALSE
				ORDER BY auto_delete_at ASC
				""",
				now,
			)
		return [PendingDeletion(id=str(row["id"]), due_at=row["auto_delete_at"]) for row in rows]

	async def pending_chat_deletions(self, now: datetime) -> List[PendingDeletion]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT id, auto_delete_at FROM chats
				WHERE auto_delete_at > $1 AND is_deleted = FALSE
				ORDER BY auto_delete_at ASC
				""",
				now,
			)
		return [PendingDeletion(id=str(row["id"]), due_at=row["auto_delete_at"]) for row in rows]

	async def expire_messages(self, now: datetime, *, limit: int, text: str) -> List[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				WITH due AS (
					SELECT id FROM messages
					WHERE is_deleted = FALSE AND auto_delete_at IS NOT NULL AND auto_delete_at <= $1
					ORDER BY auto_delete_at ASC
					LIMIT $2
					FOR UPDATE SKIP LOCKED
				)
				UPDATE messages m
				SET content = $3, media = '[]'::jsonb, is_deleted = TRUE, deleted_at = $1, updated_at = $1
				FROM due WHERE m.id = due.id
				RETURNING m.id
				""",
				now,
				limit,
				text,
			)
		return [str(row["id"]) for row in rows]

	async def expire_read_after_read(self, now: datetime, *, limit: int, text: str) -> List[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				WITH due AS (
					SELECT id FROM messages
					WHERE is_deleted = FALSE AND is_read = TRUE AND retention_policy = 'after_read'
					LIMIT $2
					FOR UPDATE SKIP LOCKED
				)
				UPDATE messages m
				SET content = $3, media = '[]'::jsonb, is_deleted = TRUE, deleted_at = $1, updated_at = $1
				FROM due WHERE m.id = due.id
				RETURNING m.id
				""",
				now,
				limit,
				text,
			)
		return [str(row["id"]) for row in rows]

	async def expire_chats(self, now: datetime) -> List[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				UPDATE chats SET is_deleted = TRUE, deleted_at = $1, updated_at = $1
				WHERE is_deleted = FALSE AND auto_delete_at IS NOT NULL AND auto_delete_at <= $1
				RETURNING id
				""",
				now,
			)
		return [str(row["id"]) for row in rows]


class InMemoryChatRepository:
	"""In-process store used for local runs and tests."""

	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._chats: Dict[str, Chat] = {}
		self._participants: Dict[str, Dict[str, ChatParticipant]] = {}
		self._messages: Dict[str, Message] = {}
		self._by_chat: Dict[str, List[str]] = {}

	def _snapshot(self, chat_id: str) -> Optional[Chat]:
		chat = self._chats.get(chat_id)
		if chat is None:
			return None
		members = sorted(
			self._participants.get(chat_id, {}).values(),
			key=lambda p: (p.joined_at or chat.created_at, p.user_id),
		)
		return replace(chat, participants=tuple(replace(p) for p in members))

	def _find_direct(self, user_a: str, user_b: str) -> Optional[Chat]:
		wanted = {user_a, user_b}
		candidates = sorted(
			(c for c in self._chats.values() if not c.is_group and not c.is_deleted),
			key=lambda c: c.created_at,
		)
		for chat in candidates:
			members = self._participants.get(chat.id, {})
			if len(members) == len(wanted) and set(members) == wanted:
				return self._snapshot(chat.id)
		return None

	async def create_chat(
		self,
		chat: Chat,
		participants: Sequence[ChatParticipant],
		*,
		direct_pair: Optional[Tuple[str, str]] = None,
	) -> Tuple[Chat, bool]:
		async with self._lock:
			if direct_pair is not None:
				existing = self._find_direct(*direct_pair)
				if existing is not None:
					return existing, False
			self._chats[chat.id] = replace(chat, participants=())
			self._participants[chat.id] = {p.user_id: replace(p) for p in participants}
			self._by_chat[chat.id] = []
			snapshot = self._snapshot(chat.id)
		if snapshot is None:
			raise errors.NotFound("chat_not_found", "chat vanished during update")
		return snapshot, True

	async def get_chat(self, chat_id: str) -> Optional[Chat]:
		async with self._lock:
			return self._snapshot(chat_id)

	async def find_direct_chat(self, user_a: str, user_b: str) -> Optional[Chat]:
		async with self._lock:
			return self._find_direct(user_a, user_b)

	def _visible_messages(self, chat_id: str) -> List[Message]:
		messages = [self._messages[mid] for mid in self._by_chat.get(chat_id, [])]
		live = [m for m in messages if not m.is_deleted]
		live.sort(key=lambda m: (m.created_at, m.id), reverse=True)
		return live

	async def list_user_chats(self, user_id: str, *, limit: int, offset: int) -> List[ChatSummary]:
		async with self._lock:
			chats = [
				c
				for c in self._chats.values()
				if not c.is_deleted and user_id in self._participants.get(c.id, {})
			]
			chats.sort(key=lambda c: (c.updated_at, c.id), reverse=True)
			summaries: List[ChatSummary] = []
			for chat in chats[offset : offset + limit]:
				participant = self._participants[chat.id][user_id]
				live = self._visible_messages(chat.id)
				unread = sum(
					1
					for m in live
					if m.sender_id != user_id and (participant.last_read is None or m.created_at > participant.last_read)
				)
				snapshot = self._snapshot(chat.id)
				if snapshot is None:
					raise errors.NotFound("chat_not_found", "chat vanished during update")
				summaries.append(
					ChatSummary(chat=snapshot, last_message=replace(live[0]) if live else None, unread_count=unread)
				)
			return summaries

	async def add_participants(self, chat_id: str, participants: Sequence[ChatParticipant]) -> Chat:
		async with self._lock:
			members = self._participants.setdefault(chat_id, {})
			for participant in participants:
				members.setdefault(participant.user_id, replace(participant))
			snapshot = self._snapshot(chat_id)
		if snapshot is None:
			raise errors.NotFound("chat_not_found", "chat vanished during update")
		return snapshot

	async def remove_participant(self, chat_id: str, user_id: str) -> int:
		async with self._lock:
			members = self._participants.get(chat_id, {})
			members.pop(user_id, None)
			return len(members)

	async def set_muted(self, chat_id: str, user_id: str, muted: bool) -> bool:
		async with self._lock:
			participant = self._participants.get(chat_id, {}).get(user_id)
			if participant is None:
				return False
			participant.is_muted = muted
			return True

	async def update_last_read(self, chat_id: str, user_id: str, at: datetime) -> None:
		async with self._lock:
			participant = self._participants.get(chat_id, {}).get(user_id)
			if participant is not None and (participant.last_read is None or participant.last_read < at):
				participant.last_read = at

	async def set_chat_auto_delete(self, chat_id: str, at: Optional[datetime]) -> None:
		async with self._lock:
			chat = self._chats.get(chat_id)
			if chat is not None:
				chat.auto_delete_at = at

	async def soft_delete_chat(self, chat_id: str, at: datetime) -> bool:
		async with self._lock:
			chat = self._chats.get(chat_id)
			if chat is None or chat.is_deleted:
				return False
			chat.is_deleted = True
			chat.updated_at = at
			return True

	async def insert_message(self, message: Message) -> Message:
		async with self._lock:
			self._messages[message.id] = replace(message)
			self._by_chat.setdefault(message.chat_id, []).append(message.id)
			chat = self._chats.get(message.chat_id)
			if chat is not None and chat.updated_at < message.created_at:
				chat.updated_at = message.created_at
			return replace(message)

	async def get_message(self, message_id: str) -> Optional[Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			return replace(message) if message else None

	async def list_messages(self, chat_id: str, *, limit: int, before: Optional[Cursor]) -> List[Message]:
		async with self._lock:
			live = self._visible_messages(chat_id)
			if before:
				live = [m for m in live if (m.created_at, m.id) < before]
			return [replace(m) for m in live[:limit]]

	async def mark_read(self, chat_id: str, reader_id: str, message_ids: Sequence[str], at: datetime) -> List[Message]:
		async with self._lock:
			changed: List[Message] = []
			for message_id in message_ids:
				message = self._messages.get(message_id)
				if (
					message is None
					or message.chat_id != chat_id
					or message.sender_id == reader_id
					or message.is_read
					or message.is_deleted
				):
					continue
				message.is_read = True
				message.updated_at = at
				changed.append(replace(message))
			return changed

	async def update_content(
		self, message_id: str, content: str, *, expected_updated_at: datetime, at: datetime
	) -> Optional[Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None or message.is_deleted or message.updated_at != expected_updated_at:
				return None
			message.content = content
			message.updated_at = at
			return replace(message)

	async def tombstone_message(self, message_id: str, text: str, at: datetime) -> Optional[Message]:
		async with self._lock:
			message = self._messages.get(message_id)
			if message is None or message.is_deleted:
				return None
			updated = message.tombstoned(text, at)
			self._messages[message_id] = updated
			return replace(updated)

	async def pending_message_deletions(self, now: datetime) -> List[PendingDeletion]:
		async with self._lock:
			due = [
				PendingDeletion(id=m.id, due_at=m.auto_delete_at)
				for m in self._messages.values()
				if m.auto_delete_at is not None and m.auto_delete_at > now and not m.is_deleted
			]
		return sorted(due, key=lambda item: item.due_at)

	async def pending_chat_deletions(self, now: datetime) -> List[PendingDeletion]:
		async with self._lock:
			due = [
				PendingDeletion(id=c.id, due_at=c.auto_delete_at)
				for c in self._chats.values()
				if c.auto_delete_at is not None and c.auto_delete_at > now and not c.is_deleted
			]
		return sorted(due, key=lambda item: item.due_at)

	async def _expire_where(self, predicate, *, limit: int, text: str, at: datetime) -> List[str]:
		async with self._lock:
			due = sorted(
				(m for m in self._messages.values() if not m.is_deleted and predicate(m)),
				key=lambda m: (m.auto_delete_at or m.created_at, m.id),
			)[:limit]
			for message in due:
				self._messages[message.id] = message.tombstoned(text, at)
			return [m.id for m in due]

	async def expire_messages(self, now: datetime, *, limit: int, text: str) -> List[str]:
		return await self._expire_where(
			lambda m: m.auto_delete_at is not None and m.auto_delete_at <= now,
			limit=limit,
			text=text,
			at=now,
		)

	async def expire_read_after_read(self, now: datetime, *, limit: int, text: str) -> List[str]:
		return await self._expire_where(
			lambda m: m.is_read and m.retention_policy == "after_read",
			limit=limit,
			text=text,
			at=now,
		)

	async def expire_chats(self, now: datetime) -> List[str]:
		async with self._lock:
			expired: List[str] = []
			for chat in self._chats.values():
				if not chat.is_deleted and chat.auto_delete_at is not None and chat.auto_delete_at <= now:
					chat.is_deleted = True
					chat.updated_at = now
					expired.append(chat.id)
			return expired

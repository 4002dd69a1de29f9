"""Chat and message lifecycle: creation, delivery, reads, edits and deletion."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

import ulid

from chatcore.api.pagination import encode_cursor, parse_before
from chatcore.domain import errors
from chatcore.domain.privacy import policy
from chatcore.domain.privacy.store import PrivacySettingsStore
from chatcore.domain.retention import policy as retention
from chatcore.domain.retention.scheduler import CHAT, MESSAGE, RetentionScheduler
from chatcore.domain.social.graph import FriendshipGraph
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

from . import attachments
from .broadcaster import EventBroadcaster
from .models import (
	TOMBSTONE_AFTER_READ,
	TOMBSTONE_DELETED,
	TOMBSTONE_EXPIRED,
	Chat,
	ChatParticipant,
	ChatSummary,
	MediaAttachment,
	Message,
	ParticipantRole,
)
from .repo import ChatRepository

LOGGER = logging.getLogger(__name__)

MAX_READ_BATCH = 100


def _now() -> datetime:
	return datetime.now(timezone.utc)


class ChatService:
	def __init__(
		self,
		repository: ChatRepository,
		*,
		privacy_store: PrivacySettingsStore,
		graph: FriendshipGraph,
		scheduler: RetentionScheduler,
		broadcaster: EventBroadcaster,
	) -> None:
		self._repo = repository
		self._privacy = privacy_store
		self._graph = graph
		self._scheduler = scheduler
		self._broadcaster = broadcaster

	@property
	def repository(self) -> ChatRepository:
		return self._repo

	# Chats

	async def _require_chat(self, chat_id: str) -> Chat:
		chat = await self._repo.get_chat(chat_id)
		if chat is None or chat.is_deleted:
			raise errors.NotFound("chat_not_found", f"chat {chat_id} not found")
		return chat

	async def _require_participant(self, chat_id: str, user_id: str) -> Tuple[Chat, ChatParticipant]:
		chat = await self._require_chat(chat_id)
		participant = chat.participant(user_id)
		if participant is None:
			raise errors.NotParticipant(message=f"user is not a participant of chat {chat_id}")
		return chat, participant

	async def create_chat(
		self,
		creator_id: str,
		participant_ids: Iterable[str],
		*,
		is_group: bool = False,
		name: Optional[str] = None,
		description: Optional[str] = None,
		avatar_url: Optional[str] = None,
	) -> Tuple[Chat, bool]:
		"""Create a chat, or return the existing direct chat for the same pair.

		Returns ``(chat, created)``.
		"""
		creator_id = str(creator_id).strip()
		if not creator_id:
			raise errors.ValidationError("invalid_creator", "creator id is required")
		unique: List[str] = []
		for user_id in [creator_id, *participant_ids]:
			user_id = str(user_id).strip()
			if user_id and user_id not in unique:
				unique.append(user_id)
		others = unique[1:]

		direct_pair: Optional[Tuple[str, str]] = None
		if not is_group:
			if len(others) > 1:
				raise errors.ValidationError("too_many_participants", "a direct chat has exactly two participants")
			direct_pair = (creator_id, others[0] if others else creator_id)
			existing = await self._repo.find_direct_chat(*direct_pair)
			if existing is not None:
				return existing, False
		elif not others:
			raise errors.ValidationError("no_participants", "a group chat needs at least one other participant")

		await policy.ensure_can_add_participants(creator_id, others, self._privacy, self._graph)

		now = _now()
		chat_id = str(ulid.new())
		chat = Chat(
			id=chat_id,
			is_group=is_group,
			created_at=now,
			updated_at=now,
			name=name if is_group else None,
			description=description if is_group else None,
			avatar_url=avatar_url if is_group else None,
			created_by=creator_id,
		)
		participants = [
			ChatParticipant(
				chat_id=chat_id,
				user_id=user_id,
				role=ParticipantRole.ADMIN if user_id == creator_id else ParticipantRole.MEMBER,
				joined_at=now,
			)
			for user_id in unique
		]
		stored, created = await self._repo.create_chat(chat, participants, direct_pair=direct_pair)
		if created:
			obs_metrics.inc_chat_created(is_group)
			LOGGER.info("chat created", extra={"chat_id": stored.id, "is_group": is_group, "participants": len(unique)})
			await self._broadcaster.chat_updated(stored.id, stored.participant_ids())
		return stored, created

	async def find_direct_chat(self, user_a: str, user_b: str) -> Optional[Chat]:
		return await self._repo.find_direct_chat(user_a, user_b)

	async def get_chat(self, chat_id: str, user_id: str) -> Chat:
		chat, _ = await self._require_participant(chat_id, user_id)
		return chat

	async def list_user_chats(self, user_id: str, *, limit: int = 20, offset: int = 0) -> List[ChatSummary]:
		return await self._repo.list_user_chats(user_id, limit=max(1, min(limit, 100)), offset=max(0, offset))

	async def add_participants(self, chat_id: str, actor_id: str, user_ids: Iterable[str]) -> Chat:
		chat, actor = await self._require_participant(chat_id, actor_id)
		if not chat.is_group:
			raise errors.ValidationError("not_group_chat", "participants can only be added to group chats")
		if not actor.can_manage():
			raise errors.PermissionDenied(errors.NOT_CHAT_ADMIN, "only admins or moderators can add participants")
		existing = set(chat.participant_ids())
		new_ids: List[str] = []
		for user_id in user_ids:
			user_id = str(user_id).strip()
			if user_id and user_id not in existing and user_id not in new_ids:
				new_ids.append(user_id)
		if not new_ids:
			return chat
		# every check runs before anything is written
		await policy.ensure_can_add_participants(actor_id, new_ids, self._privacy, self._graph)
		now = _now()
		updated = await self._repo.add_participants(
			chat_id,
			[ChatParticipant(chat_id=chat_id, user_id=user_id, joined_at=now) for user_id in new_ids],
		)
		await self._broadcaster.chat_updated(chat_id, updated.participant_ids())
		return updated

	async def leave_chat(self, chat_id: str, user_id: str) -> bool:
		"""Remove the caller from a group. Returns True when the group was deleted."""
		chat, _ = await self._require_participant(chat_id, user_id)
		if not chat.is_group:
			raise errors.ValidationError("direct_chat", "direct chats cannot be left")
		remaining = await self._repo.remove_participant(chat_id, user_id)
		if remaining > 0:
			await self._broadcaster.chat_updated(chat_id, [uid for uid in chat.participant_ids() if uid != user_id])
			return False
		await self._repo.soft_delete_chat(chat_id, _now())
		await self._scheduler.cancel(chat_id, kind=CHAT)
		return True

	async def set_muted(self, chat_id: str, user_id: str, muted: bool) -> bool:
		await self._require_participant(chat_id, user_id)
		return await self._repo.set_muted(chat_id, user_id, muted)

	async def schedule_chat_deletion(self, chat_id: str, user_id: str, delete_at: datetime) -> Chat:
		chat, participant = await self._require_participant(chat_id, user_id)
		if participant.role is not ParticipantRole.ADMIN:
			raise errors.PermissionDenied(errors.NOT_CHAT_ADMIN, "only a chat admin can schedule deletion")
		if delete_at.tzinfo is None:
			delete_at = delete_at.replace(tzinfo=timezone.utc)
		if delete_at <= _now():
			raise errors.ValidationError("delete_at_in_past", "deletion time must be in the future")
		await self._repo.set_chat_auto_delete(chat_id, delete_at)
		await self._scheduler.schedule(chat_id, delete_at, kind=CHAT)
		chat.auto_delete_at = delete_at
		return chat

	async def expire_chat(self, chat_id: str) -> bool:
		chat = await self._repo.get_chat(chat_id)
		deleted = await self._repo.soft_delete_chat(chat_id, _now())
		if deleted and chat is not None:
			LOGGER.info("chat expired", extra={"chat_id": chat_id})
			await self._broadcaster.chat_deleted(chat_id, chat.participant_ids())
		return deleted

	# Messages

	async def _effective_retention(self, sender_id: str, chat: Chat) -> str:
		# strictest policy across the sender and every current participant
		user_ids = {sender_id, *chat.participant_ids()}
		values = [(await self._privacy.get_settings(user_id)).retention for user_id in sorted(user_ids)]
		return retention.strictest_of(values).value

	async def _advance_last_read(self, chat_id: str, user_id: str, at: datetime) -> None:
		try:
			await self._repo.update_last_read(chat_id, user_id, at)
		except Exception:
			LOGGER.warning("last_read update failed", extra={"chat_id": chat_id}, exc_info=True)

	async def _store_message(
		self,
		chat: Chat,
		sender_id: str,
		content: Optional[str],
		media: Sequence[MediaAttachment],
		*,
		forwarded_from: Optional[str] = None,
	) -> Message:
		if not chat.is_group:
			other = chat.other_participant(sender_id)
			if other is not None:
				await policy.ensure_can_send_message(sender_id, other, self._privacy, self._graph)
		effective = await self._effective_retention(sender_id, chat)
		now = _now()
		message = Message(
			id=str(ulid.new()),
			chat_id=chat.id,
			sender_id=sender_id,
			content=content,
			media=tuple(media),
			created_at=now,
			updated_at=now,
			auto_delete_at=retention.compute_expiry(effective, now),
			retention_policy=effective,
			forwarded_from=forwarded_from,
		)
		stored = await self._repo.insert_message(message)
		await self._advance_last_read(chat.id, sender_id, now)
		if stored.auto_delete_at is not None:
			await self._scheduler.schedule(stored.id, stored.auto_delete_at, kind=MESSAGE)
		await self._broadcaster.message_created(stored, chat.participant_ids())
		return stored

	async def send_message(
		self,
		sender_id: str,
		chat_id: str,
		content: Optional[str],
		media: Optional[Iterable[Mapping[str, object]]] = None,
	) -> Message:
		text = content.strip() if content else ""
		normalized = attachments.normalize_media(media, max_items=settings.message_max_media)
		if not text and not normalized:
			raise errors.ValidationError("empty_message", "message needs content or media")
		if len(text) > settings.message_max_length:
			raise errors.ValidationError("content_too_long", f"content exceeds {settings.message_max_length} characters")
		chat, _ = await self._require_participant(chat_id, sender_id)
		message = await self._store_message(chat, sender_id, text or None, normalized)
		obs_metrics.inc_chat_send()
		return message

	async def get_chat_messages(
		self,
		chat_id: str,
		user_id: str,
		*,
		limit: Optional[int] = None,
		before: Optional[str] = None,
	) -> Tuple[List[Message], Optional[str]]:
		"""Newest-first page of live messages plus the cursor for the next page."""
		await self._require_participant(chat_id, user_id)
		page_size = max(1, min(limit or settings.message_page_default, settings.message_page_max))
		try:
			cursor = parse_before(before)
		except ValueError:
			raise errors.ValidationError("invalid_cursor", "before must be a cursor or ISO timestamp")
		rows = await self._repo.list_messages(chat_id, limit=page_size + 1, before=cursor)
		page = rows[:page_size]
		next_cursor = None
		if len(rows) > page_size and page:
			last = page[-1]
			next_cursor = encode_cursor(last.created_at, last.id)
		await self._advance_last_read(chat_id, user_id, _now())
		return page, next_cursor

	async def _apply_reads(self, chat_id: str, reader_id: str, message_ids: Sequence[str]) -> List[Message]:
		now = _now()
		changed = await self._repo.mark_read(chat_id, reader_id, message_ids, now)
		if not changed:
			return []
		obs_metrics.inc_chat_read(len(changed))
		reader_settings = await self._privacy.get_settings(reader_id)
		results: List[Message] = []
		for message in changed:
			if retention.is_after_read(message.retention_policy):
				tombstoned = await self._repo.tombstone_message(message.id, TOMBSTONE_AFTER_READ, now)
				await self._scheduler.cancel(message.id, kind=MESSAGE)
				if tombstoned is not None:
					obs_metrics.inc_chat_deleted("after_read")
					await self._broadcaster.message_deleted(chat_id, message.id)
					message = tombstoned
			sender_settings = await self._privacy.get_settings(message.sender_id)
			if policy.should_send_read_receipt(reader_settings, sender_settings):
				obs_metrics.inc_read_receipt()
				await self._broadcaster.message_read(message, reader_id)
			results.append(message)
		return results

	async def mark_message_as_read(self, message_id: str, reader_id: str) -> Message:
		message = await self._repo.get_message(message_id)
		if message is None or (message.is_deleted and not message.is_read):
			raise errors.NotFound("message_not_found", f"message {message_id} not found")
		await self._require_participant(message.chat_id, reader_id)
		changed = await self._apply_reads(message.chat_id, reader_id, [message_id])
		await self._advance_last_read(message.chat_id, reader_id, _now())
		return changed[0] if changed else message

	async def mark_messages_as_read(self, chat_id: str, reader_id: str, message_ids: Sequence[str]) -> List[str]:
		ids = list(dict.fromkeys(str(mid) for mid in message_ids if str(mid).strip()))
		if not ids:
			raise errors.ValidationError("no_message_ids", "message_ids must not be empty")
		if len(ids) > MAX_READ_BATCH:
			raise errors.ValidationError("too_many_message_ids", f"at most {MAX_READ_BATCH} ids per batch")
		await self._require_participant(chat_id, reader_id)
		changed = await self._apply_reads(chat_id, reader_id, ids)
		await self._advance_last_read(chat_id, reader_id, _now())
		return [message.id for message in changed]

	async def _require_live_message(self, message_id: str) -> Message:
		message = await self._repo.get_message(message_id)
		if message is None or message.is_deleted:
			raise errors.NotFound("message_not_found", f"message {message_id} not found")
		return message

	async def edit_message(
		self,
		message_id: str,
		user_id: str,
		content: str,
		*,
		expected_updated_at: Optional[datetime] = None,
	) -> Message:
		message = await self._require_live_message(message_id)
		if message.sender_id != user_id:
			raise errors.PermissionDenied(errors.NOT_SENDER, "only the sender can edit a message")
		await self._require_participant(message.chat_id, user_id)
		text = (content or "").strip()
		if not text:
			raise errors.ValidationError("empty_message", "edited content must not be empty")
		if len(text) > settings.message_max_length:
			raise errors.ValidationError("content_too_long", f"content exceeds {settings.message_max_length} characters")
		expected = expected_updated_at or message.updated_at
		if expected.tzinfo is None:
			expected = expected.replace(tzinfo=timezone.utc)
		updated = await self._repo.update_content(message_id, text, expected_updated_at=expected, at=_now())
		if updated is None:
			raise errors.ValidationError("stale_message", "message changed concurrently, reload and retry")
		obs_metrics.inc_chat_edited()
		await self._broadcaster.message_edited(updated)
		return updated

	async def delete_message(self, message_id: str, user_id: str) -> Message:
		message = await self._require_live_message(message_id)
		if message.sender_id != user_id:
			raise errors.PermissionDenied(errors.NOT_SENDER, "only the sender can delete a message")
		deleted = await self._repo.tombstone_message(message_id, TOMBSTONE_DELETED, _now())
		await self._scheduler.cancel(message_id, kind=MESSAGE)
		if deleted is None:
			raise errors.NotFound("message_not_found", f"message {message_id} not found")
		obs_metrics.inc_chat_deleted("user")
		await self._broadcaster.message_deleted(deleted.chat_id, deleted.id)
		return deleted

	async def expire_message(self, message_id: str) -> bool:
		"""Timer callback; False when the message was already gone."""
		expired = await self._repo.tombstone_message(message_id, TOMBSTONE_EXPIRED, _now())
		if expired is None:
			return False
		obs_metrics.inc_chat_deleted("expired")
		await self._broadcaster.message_deleted(expired.chat_id, expired.id)
		return True

	async def forward_message(self, message_id: str, user_id: str, target_chat_id: str) -> Message:
		message = await self._require_live_message(message_id)
		source = await self._repo.get_chat(message.chat_id)
		is_source_participant = source is not None and source.participant(user_id) is not None
		sender_settings = await self._privacy.get_settings(message.sender_id)
		policy.ensure_can_forward(user_id, sender_settings, is_source_participant=is_source_participant)
		target, _ = await self._require_participant(target_chat_id, user_id)
		forwarded = await self._store_message(
			target,
			user_id,
			message.content,
			message.media,
			forwarded_from=message.id,
		)
		obs_metrics.inc_chat_forwarded()
		return forwarded

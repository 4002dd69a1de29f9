"""Domain models for chats, participants and messages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from chatcore.domain.privacy.models import RetentionPeriod

TOMBSTONE_DELETED = "[This message was deleted]"
TOMBSTONE_EXPIRED = "[This message has expired]"
TOMBSTONE_AFTER_READ = "[This message was automatically deleted after being read]"


class ParticipantRole(str, Enum):
	ADMIN = "admin"
	MODERATOR = "moderator"
	MEMBER = "member"


@dataclass(slots=True)
class MediaAttachment:
	attachment_id: str
	media_type: str
	url: Optional[str] = None
	size_bytes: Optional[int] = None
	file_name: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"attachment_id": self.attachment_id,
			"media_type": self.media_type,
			"url": self.url,
			"size_bytes": self.size_bytes,
			"file_name": self.file_name,
		}


@dataclass(slots=True)
class ChatParticipant:
	chat_id: str
	user_id: str
	role: ParticipantRole = ParticipantRole.MEMBER
	joined_at: Optional[datetime] = None
	last_read: Optional[datetime] = None
	is_muted: bool = False

	def can_manage(self) -> bool:
		return self.role in (ParticipantRole.ADMIN, ParticipantRole.MODERATOR)


@dataclass(slots=True)
class Chat:
	id: str
	is_group: bool
	created_at: datetime
	updated_at: datetime
	name: Optional[str] = None
	description: Optional[str] = None
	avatar_url: Optional[str] = None
	created_by: Optional[str] = None
	auto_delete_at: Optional[datetime] = None
	is_deleted: bool = False
	participants: Tuple[ChatParticipant, ...] = field(default_factory=tuple)

	def participant_ids(self) -> Tuple[str, ...]:
		return tuple(p.user_id for p in self.participants)

	def participant(self, user_id: str) -> Optional[ChatParticipant]:
		for item in self.participants:
			if item.user_id == user_id:
				return item
		return None

	def other_participant(self, user_id: str) -> Optional[str]:
		for item in self.participants:
			if item.user_id != user_id:
				return item.user_id
		return None

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"is_group": self.is_group,
			"name": self.name,
			"description": self.description,
			"avatar_url": self.avatar_url,
			"created_by": self.created_by,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
			"auto_delete_at": self.auto_delete_at.isoformat() if self.auto_delete_at else None,
			"participants": [
				{
					"user_id": p.user_id,
					"role": p.role.value,
					"joined_at": p.joined_at.isoformat() if p.joined_at else None,
					"last_read": p.last_read.isoformat() if p.last_read else None,
					"is_muted": p.is_muted,
				}
				for p in self.participants
			],
		}


@dataclass(slots=True)
class Message:
	id: str
	chat_id: str
	sender_id: str
	content: Optional[str]
	media: Tuple[MediaAttachment, ...]
	created_at: datetime
	updated_at: datetime
	is_read: bool = False
	is_deleted: bool = False
	auto_delete_at: Optional[datetime] = None
	retention_policy: str = RetentionPeriod.FOREVER.value
	forwarded_from: Optional[str] = None

	def tombstoned(self, text: str, at: datetime) -> "Message":
		return replace(self, content=text, media=(), is_deleted=True, updated_at=at)

	def to_dict(self) -> dict:
		return {
			"id": self.id,
			"chat_id": self.chat_id,
			"sender_id": self.sender_id,
			"content": self.content,
			"media": [item.to_dict() for item in self.media],
			"is_read": self.is_read,
			"is_deleted": self.is_deleted,
			"created_at": self.created_at.isoformat(),
			"updated_at": self.updated_at.isoformat(),
			"auto_delete_at": self.auto_delete_at.isoformat() if self.auto_delete_at else None,
			"retention_policy": self.retention_policy,
			"forwarded_from": self.forwarded_from,
		}


@dataclass(slots=True)
class ChatSummary:
	chat: Chat
	last_message: Optional[Message]
	unread_count: int

	def to_dict(self) -> dict:
		payload = self.chat.to_dict()
		payload["last_message"] = self.last_message.to_dict() if self.last_message else None
		payload["unread_count"] = self.unread_count
		return payload


@dataclass(slots=True)
class PendingDeletion:
	"""Row handed to the retention scheduler on store or recovery."""

	id: str
	due_at: datetime

"""Pydantic schemas for inbound socket payloads."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from chatcore.settings import settings


class _Payload(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MediaItem(_Payload):
	attachment_id: Optional[str] = None
	media_type: str = Field(..., min_length=1)
	url: Optional[str] = None
	size_bytes: Optional[int] = Field(default=None, ge=0)
	file_name: Optional[str] = None


class ChatRef(_Payload):
	chat_id: str = Field(..., min_length=1)


class MessageRef(_Payload):
	message_id: str = Field(..., min_length=1)


class CreateChatRequest(_Payload):
	participant_ids: List[str] = Field(..., min_length=1)
	is_group: bool = False
	name: Optional[str] = Field(default=None, max_length=120)
	description: Optional[str] = Field(default=None, max_length=1000)
	avatar_url: Optional[str] = None

	@field_validator("participant_ids")
	@classmethod
	def _strip_ids(cls, value: List[str]) -> List[str]:
		cleaned = [str(item).strip() for item in value if str(item).strip()]
		if not cleaned:
			raise ValueError("participant_ids must not be empty")
		return cleaned


class ListChatsRequest(_Payload):
	limit: int = Field(default=20, ge=1, le=100)
	offset: int = Field(default=0, ge=0)


class ListMessagesRequest(ChatRef):
	limit: Optional[int] = Field(default=None, ge=1)
	before: Optional[str] = None


class SendMessageRequest(ChatRef):
	content: Optional[str] = None
	media: List[MediaItem] = Field(default_factory=list)

	@field_validator("content")
	@classmethod
	def _limit_content(cls, value: Optional[str]) -> Optional[str]:
		if value is not None and len(value) > settings.message_max_length:
			raise ValueError(f"content exceeds {settings.message_max_length} characters")
		return value


class ReadBatchRequest(ChatRef):
	message_ids: List[str] = Field(..., min_length=1, max_length=100)


class EditMessageRequest(MessageRef):
	content: str
	expected_updated_at: Optional[datetime] = None


class ForwardMessageRequest(MessageRef):
	target_chat_id: str = Field(..., min_length=1)


class TypingRequest(ChatRef):
	is_typing: bool = True


class AddParticipantsRequest(ChatRef):
	user_ids: List[str] = Field(..., min_length=1, max_length=100)


class MuteRequest(ChatRef):
	muted: bool = True


class ScheduleChatDeletionRequest(ChatRef):
	delete_at: datetime


class SetStatusRequest(_Payload):
	status: str


class PresenceQuery(_Payload):
	user_id: str = Field(..., min_length=1)

"""Best-effort fan-out of chat, membership, typing, read-receipt and presence events."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Protocol

from chatcore.obs import metrics as obs_metrics

from .models import Message

LOGGER = logging.getLogger(__name__)


class Emitter(Protocol):
	namespace: str

	async def emit(self, event: str, data: Any = None, room: Optional[str] = None, skip_sid: Optional[str] = None, **kwargs: Any) -> None: ...


def chat_topic(chat_id: str) -> str:
	return f"chat:{chat_id}"


def user_topic(user_id: str) -> str:
	return f"user:{user_id}"


class EventBroadcaster:
	"""Routes events to chat rooms and personal user channels.

	Delivery is at-most-once to currently connected sockets; a failed emit is
	logged and never fails the operation that produced it.
	"""

	def __init__(self, emitter: Optional[Emitter] = None) -> None:
		self._emitter = emitter

	def attach(self, emitter: Emitter) -> None:
		self._emitter = emitter

	async def publish(self, topic: str, event: str, payload: dict, *, skip_sid: Optional[str] = None) -> bool:
		if self._emitter is None:
			return False
		try:
			await self._emitter.emit(event, payload, room=topic, skip_sid=skip_sid)
		except Exception:
			LOGGER.warning("broadcast failed", extra={"event": event, "topic": topic}, exc_info=True)
			return False
		obs_metrics.socket_event(self._emitter.namespace, event)
		return True

	async def message_created(self, message: Message, participant_ids: Iterable[str]) -> None:
		payload = message.to_dict()
		await self.publish(chat_topic(message.chat_id), "message:new", {"message": payload})
		update = {"chatId": message.chat_id, "lastMessage": payload}
		for user_id in participant_ids:
			await self.publish(user_topic(user_id), "chats:update", update)

	async def message_sent(self, sid: str, message: Message) -> None:
		await self.publish(sid, "message:sent", {"message": message.to_dict()})

	async def message_read(self, message: Message, reader_id: str) -> None:
		await self.publish(
			user_topic(message.sender_id),
			"message:read",
			{"messageId": message.id, "chatId": message.chat_id, "readBy": reader_id},
		)

	async def message_edited(self, message: Message) -> None:
		await self.publish(
			chat_topic(message.chat_id),
			"message:edited",
			{
				"messageId": message.id,
				"chatId": message.chat_id,
				"content": message.content,
				"editedAt": message.updated_at.isoformat(),
			},
		)

	async def message_deleted(self, chat_id: str, message_id: str) -> None:
		await self.publish(chat_topic(chat_id), "message:deleted", {"messageId": message_id, "chatId": chat_id})

	async def chat_updated(self, chat_id: str, participant_ids: Iterable[str], last_message: Optional[Message] = None) -> None:
		update = {"chatId": chat_id, "lastMessage": last_message.to_dict() if last_message else None}
		for user_id in participant_ids:
			await self.publish(user_topic(user_id), "chats:update", update)

	async def chat_deleted(self, chat_id: str, participant_ids: Iterable[str]) -> None:
		for user_id in participant_ids:
			await self.publish(user_topic(user_id), "chat:deleted", {"chatId": chat_id})

	async def typing(self, chat_id: str, user_id: str, is_typing: bool, *, skip_sid: Optional[str]) -> None:
		await self.publish(
			chat_topic(chat_id),
			"chat:typing",
			{"chatId": chat_id, "userId": user_id, "isTyping": is_typing},
			skip_sid=skip_sid,
		)

	async def presence_changed(self, user_id: str, online: bool, viewer_ids: Iterable[str]) -> None:
		event = "presence:online" if online else "presence:offline"
		for viewer_id in viewer_ids:
			await self.publish(user_topic(viewer_id), event, {"userId": user_id})

	async def member_joined(self, chat_id: str, user_id: str, *, skip_sid: Optional[str]) -> None:
		await self.publish(chat_topic(chat_id), "chat:user_joined", {"chatId": chat_id, "userId": user_id}, skip_sid=skip_sid)

	async def member_left(self, chat_id: str, user_id: str, *, skip_sid: Optional[str]) -> None:
		await self.publish(chat_topic(chat_id), "chat:user_left", {"chatId": chat_id, "userId": user_id}, skip_sid=skip_sid)

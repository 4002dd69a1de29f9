"""Socket.IO gateway for the ``/chat`` namespace."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import asyncpg
import pydantic
import socketio
import socketio.exceptions
from redis.exceptions import RedisError

from chatcore.container import ChatContainer
from chatcore.domain import errors
from chatcore.infra import rate_limit
from chatcore.infra.auth import AuthenticatedUser, authenticate_socket, client_address
from chatcore.obs import logging as obs_logging
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

from . import schemas
from .broadcaster import chat_topic, user_topic

logger = logging.getLogger(__name__)

Handler = Callable[[str, AuthenticatedUser, Dict[str, Any]], Awaitable[Dict[str, Any]]]

_TRANSIENT = (asyncpg.PostgresError, OSError, RedisError)


def _handler_name(event: str) -> str:
	# "message:read_batch" dispatches to on_message_read_batch
	return (event or "").replace(":", "_")


class ChatNamespace(socketio.AsyncNamespace):
	"""Authenticates connections and dispatches chat commands.

	Each connection joins its personal ``user:{id}`` room at connect time and
	``chat:{id}`` rooms on demand. Every command returns an ack payload.
	"""

	def __init__(self, container: ChatContainer, namespace: str = "/chat") -> None:
		super().__init__(namespace)
		self.container = container
		self.sessions: Dict[str, AuthenticatedUser] = {}
		# chat id -> {sid: user id} for sockets currently viewing the chat
		self.viewers: Dict[str, Dict[str, str]] = {}
		container.broadcaster.attach(self)

	async def trigger_event(self, event: str, *args):
		return await super().trigger_event(_handler_name(event), *args)

	async def _join(self, sid: str, room: str) -> None:
		try:
			await self.enter_room(sid, room)
		except (KeyError, ValueError):
			logger.debug("room attach failed", extra={"room": room}, exc_info=True)

	async def _leave(self, sid: str, room: str) -> None:
		try:
			await self.leave_room(sid, room)
		except (KeyError, ValueError):
			logger.debug("room detach failed", extra={"room": room}, exc_info=True)

	def _members(self, chat_id: str) -> List[str]:
		return sorted(set(self.viewers.get(chat_id, {}).values()))

	async def _enter_chat(self, sid: str, user: AuthenticatedUser, chat_id: str) -> List[str]:
		await self._join(sid, chat_topic(chat_id))
		self.viewers.setdefault(chat_id, {})[sid] = user.id
		await self.container.broadcaster.member_joined(chat_id, user.id, skip_sid=sid)
		return self._members(chat_id)

	async def _exit_chat(self, sid: str, user: AuthenticatedUser, chat_id: str) -> None:
		await self._leave(sid, chat_topic(chat_id))
		room = self.viewers.get(chat_id)
		if room is None or room.pop(sid, None) is None:
			return
		if not room:
			del self.viewers[chat_id]
		await self.container.broadcaster.member_left(chat_id, user.id, skip_sid=sid)

	async def _announce_departure(self, sid: str, user: AuthenticatedUser) -> None:
		for chat_id in [chat_id for chat_id, room in self.viewers.items() if sid in room]:
			await self._exit_chat(sid, user, chat_id)

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		address = client_address(scope)
		if not await rate_limit.allow(
			"socket_connect",
			address,
			limit=settings.socket_connect_limit_per_minute,
			window_seconds=60,
		):
			obs_metrics.inc_rate_limited("connect")
			logger.info("socket connect rate limited", extra={"remote": address})
			raise socketio.exceptions.ConnectionRefusedError("rate_limited")
		try:
			user = authenticate_socket(scope, auth_payload)
		except errors.NotAuthenticated as exc:
			logger.info("socket connect rejected", extra={"reason": exc.reason, "remote": address})
			raise socketio.exceptions.ConnectionRefusedError(exc.code)

		await self._join(sid, user_topic(user.id))
		try:
			await self.container.presence_service.connected(user.id, sid)
		except Exception:
			# a refused connection never gets a disconnect event
			await self.container.presence_registry.remove_connection(user.id, sid)
			await self._leave(sid, user_topic(user.id))
			logger.error("socket connect failed", extra={"sid": sid, "user_id": user.id}, exc_info=True)
			raise socketio.exceptions.ConnectionRefusedError("transient")
		self.sessions[sid] = user
		obs_metrics.socket_connected(self.namespace)
		logger.info("socket connected", extra={"sid": sid, "user_id": user.id})

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		user = self.sessions.pop(sid, None)
		if user is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		await self._announce_departure(sid, user)
		await self.container.presence_service.disconnected(user.id, sid)
		logger.info("socket disconnected", extra={"sid": sid, "user_id": user.id})

	async def _fail(self, sid: str, event: str, exc: errors.ChatError) -> Dict[str, Any]:
		payload = exc.to_payload(event)
		obs_metrics.inc_client_error(exc.code)
		await self.emit("chat:error", payload, room=sid)
		return {"ok": False, "error": payload}

	async def _dispatch(self, sid: str, event: str, payload: Any, handler: Handler) -> Dict[str, Any]:
		user = self.sessions.get(sid)
		if user is None:
			ack = await self._fail(sid, event, errors.NotAuthenticated("session_missing"))
			await self.disconnect(sid)
			return ack
		obs_metrics.socket_event(self.namespace, event)
		await self.container.presence_registry.touch(user.id)
		tokens = obs_logging.bind_context(route=event, user_id=user.id, sid=sid)
		try:
			data = payload if isinstance(payload, dict) else {}
			result = await asyncio.wait_for(handler(sid, user, data), timeout=settings.handler_timeout_seconds)
			return {"ok": True, **result}
		except pydantic.ValidationError as exc:
			detail = "; ".join(
				f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
			)
			return await self._fail(sid, event, errors.ValidationError("invalid_payload", detail or "invalid payload"))
		except errors.TransientError as exc:
			logger.error("transient failure", extra={"event": event}, exc_info=True)
			return await self._fail(sid, event, exc)
		except errors.ChatError as exc:
			logger.debug("client error", extra={"event": event, "code": exc.code, "reason": exc.reason})
			return await self._fail(sid, event, exc)
		except asyncio.TimeoutError:
			obs_metrics.inc_handler_timeout(event)
			logger.error("handler timed out", extra={"event": event, "timeout": settings.handler_timeout_seconds})
			return await self._fail(sid, event, errors.TransientError("timeout"))
		except _TRANSIENT:
			logger.error("store failure", extra={"event": event}, exc_info=True)
			return await self._fail(sid, event, errors.TransientError())
		finally:
			obs_logging.reset_context(tokens)

	async def _within_limit(self, kind: str, user_id: str, limit: int) -> None:
		allowed = await rate_limit.allow(kind, user_id, limit=limit, window_seconds=settings.socket_send_window_seconds)
		if not allowed:
			obs_metrics.inc_rate_limited(kind)
			raise errors.RateLimited(kind, "slow down")

	# Rooms and chats

	async def on_chat_join(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ChatRef.model_validate(data)
			chat = await self.container.chat_service.get_chat(request.chat_id, user.id)
			members = await self._enter_chat(sid, user, chat.id)
			await self.emit("chat:joined", {"chatId": chat.id, "members": members}, room=sid)
			return {"chatId": chat.id, "members": members}

		return await self._dispatch(sid, "chat:join", payload, handle)

	async def on_chat_leave(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ChatRef.model_validate(data)
			await self._exit_chat(sid, user, request.chat_id)
			return {"chatId": request.chat_id}

		return await self._dispatch(sid, "chat:leave", payload, handle)

	async def on_chats_list(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ListChatsRequest.model_validate(data)
			summaries = await self.container.chat_service.list_user_chats(
				user.id, limit=request.limit, offset=request.offset
			)
			return {"chats": [summary.to_dict() for summary in summaries]}

		return await self._dispatch(sid, "chats:list", payload, handle)

	async def on_chat_create(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.CreateChatRequest.model_validate(data)
			chat, created = await self.container.chat_service.create_chat(
				user.id,
				request.participant_ids,
				is_group=request.is_group,
				name=request.name,
				description=request.description,
				avatar_url=request.avatar_url,
			)
			await self._join(sid, chat_topic(chat.id))
			return {"chat": chat.to_dict(), "created": created}

		return await self._dispatch(sid, "chat:create", payload, handle)

	async def on_chat_get(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ChatRef.model_validate(data)
			chat = await self.container.chat_service.get_chat(request.chat_id, user.id)
			return {"chat": chat.to_dict()}

		return await self._dispatch(sid, "chat:get", payload, handle)

	async def on_chat_add_participants(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.AddParticipantsRequest.model_validate(data)
			chat = await self.container.chat_service.add_participants(request.chat_id, user.id, request.user_ids)
			return {"chat": chat.to_dict()}

		return await self._dispatch(sid, "chat:add_participants", payload, handle)

	async def on_chat_exit(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ChatRef.model_validate(data)
			deleted = await self.container.chat_service.leave_chat(request.chat_id, user.id)
			await self._exit_chat(sid, user, request.chat_id)
			return {"chatId": request.chat_id, "chatDeleted": deleted}

		return await self._dispatch(sid, "chat:exit", payload, handle)

	async def on_chat_mute(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.MuteRequest.model_validate(data)
			await self.container.chat_service.set_muted(request.chat_id, user.id, request.muted)
			return {"chatId": request.chat_id, "muted": request.muted}

		return await self._dispatch(sid, "chat:mute", payload, handle)

	async def on_chat_schedule_deletion(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ScheduleChatDeletionRequest.model_validate(data)
			chat = await self.container.chat_service.schedule_chat_deletion(
				request.chat_id, user.id, request.delete_at
			)
			return {"chatId": chat.id, "deleteAt": chat.auto_delete_at.isoformat() if chat.auto_delete_at else None}

		return await self._dispatch(sid, "chat:schedule_deletion", payload, handle)

	# Messages

	async def on_messages_list(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ListMessagesRequest.model_validate(data)
			messages, next_cursor = await self.container.chat_service.get_chat_messages(
				request.chat_id, user.id, limit=request.limit, before=request.before
			)
			return {"messages": [m.to_dict() for m in messages], "nextCursor": next_cursor}

		return await self._dispatch(sid, "messages:list", payload, handle)

	async def on_message_send(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			await self._within_limit("socket_send", user.id, settings.socket_send_limit)
			request = schemas.SendMessageRequest.model_validate(data)
			message = await self.container.chat_service.send_message(
				user.id,
				request.chat_id,
				request.content,
				[item.model_dump() for item in request.media],
			)
			await self.container.broadcaster.message_sent(sid, message)
			return {"message": message.to_dict()}

		return await self._dispatch(sid, "message:send", payload, handle)

	async def on_message_read(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.MessageRef.model_validate(data)
			message = await self.container.chat_service.mark_message_as_read(request.message_id, user.id)
			return {"message": message.to_dict()}

		return await self._dispatch(sid, "message:read", payload, handle)

	async def on_message_read_batch(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ReadBatchRequest.model_validate(data)
			changed = await self.container.chat_service.mark_messages_as_read(
				request.chat_id, user.id, request.message_ids
			)
			return {"chatId": request.chat_id, "readIds": changed}

		return await self._dispatch(sid, "message:read_batch", payload, handle)

	async def on_message_edit(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.EditMessageRequest.model_validate(data)
			message = await self.container.chat_service.edit_message(
				request.message_id,
				user.id,
				request.content,
				expected_updated_at=request.expected_updated_at,
			)
			return {"message": message.to_dict()}

		return await self._dispatch(sid, "message:edit", payload, handle)

	async def on_message_delete(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.MessageRef.model_validate(data)
			message = await self.container.chat_service.delete_message(request.message_id, user.id)
			return {"messageId": message.id, "chatId": message.chat_id}

		return await self._dispatch(sid, "message:delete", payload, handle)

	async def on_message_forward(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.ForwardMessageRequest.model_validate(data)
			message = await self.container.chat_service.forward_message(
				request.message_id, user.id, request.target_chat_id
			)
			await self.container.broadcaster.message_sent(sid, message)
			return {"message": message.to_dict()}

		return await self._dispatch(sid, "message:forward", payload, handle)

	async def on_chat_typing(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			await self._within_limit("socket_typing", user.id, settings.socket_typing_limit)
			request = schemas.TypingRequest.model_validate(data)
			await self.container.chat_service.get_chat(request.chat_id, user.id)
			await self.container.broadcaster.typing(request.chat_id, user.id, request.is_typing, skip_sid=sid)
			return {"chatId": request.chat_id}

		return await self._dispatch(sid, "chat:typing", payload, handle)

	# Presence

	async def on_presence_set_status(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.SetStatusRequest.model_validate(data)
			status = await self.container.presence_service.set_status(user.id, request.status)
			return {"status": status.value}

		return await self._dispatch(sid, "presence:set_status", payload, handle)

	async def on_presence_get(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			request = schemas.PresenceQuery.model_validate(data)
			return {"presence": await self.container.presence_service.get_presence(user.id, request.user_id)}

		return await self._dispatch(sid, "presence:get", payload, handle)

	async def on_presence_online_friends(self, sid: str, payload: Any = None) -> Dict[str, Any]:
		async def handle(sid: str, user: AuthenticatedUser, data: Dict[str, Any]) -> Dict[str, Any]:
			return {"friends": await self.container.presence_service.online_friends(user.id)}

		return await self._dispatch(sid, "presence:online_friends", payload, handle)

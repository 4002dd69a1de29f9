"""Presence announcements and privacy-gated presence queries."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List

import asyncpg
from redis.exceptions import RedisError

from chatcore.domain import errors
from chatcore.domain.chat.broadcaster import EventBroadcaster
from chatcore.domain.presence.registry import PresenceRegistry, PresenceStatus
from chatcore.domain.privacy import policy
from chatcore.domain.privacy.store import PrivacySettingsStore
from chatcore.domain.social.graph import FriendshipGraph
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

_SETTABLE = {PresenceStatus.ONLINE, PresenceStatus.AWAY, PresenceStatus.INVISIBLE}
_STORE_ERRORS = (asyncio.TimeoutError, asyncpg.PostgresError, OSError, RedisError)


class PresenceService:
	def __init__(
		self,
		registry: PresenceRegistry,
		*,
		privacy_store: PrivacySettingsStore,
		graph: FriendshipGraph,
		broadcaster: EventBroadcaster,
	) -> None:
		self._registry = registry
		self._privacy = privacy_store
		self._graph = graph
		self._broadcaster = broadcaster

	@property
	def registry(self) -> PresenceRegistry:
		return self._registry

	async def _audience(self, user_id: str) -> List[str]:
		"""Friends allowed to see the user's online status."""
		target = await self._privacy.get_settings(user_id)
		audience: List[str] = []
		for friend_id in await self._graph.list_friend_ids(user_id):
			if await policy.can_see_online_status(friend_id, target, self._graph):
				audience.append(friend_id)
		return audience

	async def _announce(self, user_id: str, online: bool) -> bool:
		"""Tell visible friends about a transition; the registry is already updated.

		A slow or failing friend lookup drops the announcement, never the connection.
		"""
		transition = "online" if online else "offline"
		obs_metrics.inc_presence_transition(transition)
		try:
			audience = await asyncio.wait_for(self._audience(user_id), timeout=settings.handler_timeout_seconds)
		except _STORE_ERRORS:
			LOGGER.warning(
				"presence announcement dropped",
				extra={"user_id": user_id, "transition": transition},
				exc_info=True,
			)
			return False
		await self._broadcaster.presence_changed(user_id, online, audience)
		return True

	async def connected(self, user_id: str, sid: str) -> bool:
		came_online = await self._registry.register_connection(user_id, sid)
		obs_metrics.set_presence_online(self._registry.online_count())
		if came_online and self._registry.is_visible_online(user_id):
			await self._announce(user_id, True)
		return came_online

	async def disconnected(self, user_id: str, sid: str) -> bool:
		was_visible = self._registry.is_visible_online(user_id)
		went_offline = await self._registry.remove_connection(user_id, sid)
		obs_metrics.set_presence_online(self._registry.online_count())
		if went_offline and was_visible:
			await self._announce(user_id, False)
		return went_offline

	async def set_status(self, user_id: str, value: str) -> PresenceStatus:
		try:
			status = PresenceStatus(str(value).strip().lower())
		except ValueError:
			raise errors.ValidationError("invalid_status", "status must be online, away or invisible")
		if status not in _SETTABLE:
			raise errors.ValidationError("invalid_status", "status must be online, away or invisible")
		was_visible = self._registry.is_visible_online(user_id)
		await self._registry.set_status(user_id, status)
		now_visible = self._registry.is_visible_online(user_id)
		if was_visible != now_visible:
			await self._announce(user_id, now_visible)
		return status

	async def get_presence(self, viewer_id: str, target_id: str) -> Dict[str, Any]:
		snapshot = self._registry.snapshot(target_id)
		if viewer_id == target_id:
			# the owner sees their own chosen status, invisible included
			status = self._registry.status(target_id)
			return {
				"userId": target_id,
				"online": self._registry.is_online(target_id),
				"status": status.value,
				"lastActive": snapshot.last_active.isoformat() if snapshot.last_active else None,
			}
		target = await self._privacy.get_settings(target_id)
		show_online = await policy.can_see_online_status(viewer_id, target, self._graph)
		show_last_active = await policy.can_see_last_active(viewer_id, target, self._graph)
		return {
			"userId": target_id,
			"online": snapshot.online if show_online else None,
			"status": snapshot.status.value if show_online else None,
			"lastActive": snapshot.last_active.isoformat() if show_last_active and snapshot.last_active else None,
		}

	async def online_friends(self, user_id: str) -> List[Dict[str, Any]]:
		result: List[Dict[str, Any]] = []
		for friend_id in await self._graph.list_friend_ids(user_id):
			if not self._registry.is_visible_online(friend_id):
				continue
			target = await self._privacy.get_settings(friend_id)
			if not await policy.can_see_online_status(user_id, target, self._graph):
				continue
			result.append({"userId": friend_id, "status": self._registry.status(friend_id).value})
		return result

	async def sweep(self) -> int:
		removed = await self._registry.prune_offline(timedelta(hours=settings.presence_offline_retention_hours))
		if removed:
			LOGGER.info("presence entries pruned", extra={"removed": removed})
		return removed

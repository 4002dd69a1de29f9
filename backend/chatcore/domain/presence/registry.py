"""Process-local presence registry keyed by user with per-connection sets."""

from __future__ import annotations

import asyncio
import zlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Set


class PresenceStatus(str, Enum):
	ONLINE = "online"
	AWAY = "away"
	INVISIBLE = "invisible"
	OFFLINE = "offline"


@dataclass(slots=True)
class PresenceSnapshot:
	user_id: str
	online: bool
	status: PresenceStatus
	last_active: Optional[datetime]


def _now() -> datetime:
	return datetime.now(timezone.utc)


class PresenceRegistry:
	"""Tracks live connections per user.

	A user is online iff their connection set is non-empty; empty sets are
	dropped. Mutations take a lock striped by user so unrelated users never
	contend, and no lock is held across I/O.
	"""

	def __init__(self, *, stripes: int = 32) -> None:
		self._locks = [asyncio.Lock() for _ in range(max(1, stripes))]
		self._connections: Dict[str, Set[str]] = {}
		self._status: Dict[str, PresenceStatus] = {}
		self._last_active: Dict[str, datetime] = {}

	def _lock_for(self, user_id: str) -> asyncio.Lock:
		return self._locks[zlib.crc32(user_id.encode()) % len(self._locks)]

	async def register_connection(self, user_id: str, connection_id: str) -> bool:
		"""Add a connection; True when the user just came online."""
		async with self._lock_for(user_id):
			connections = self._connections.get(user_id)
			came_online = not connections
			if connections is None:
				connections = self._connections[user_id] = set()
			connections.add(connection_id)
			if came_online and self._status.get(user_id) is not PresenceStatus.INVISIBLE:
				self._status[user_id] = PresenceStatus.ONLINE
			self._last_active[user_id] = _now()
			return came_online

	async def remove_connection(self, user_id: str, connection_id: str) -> bool:
		"""Drop a connection; True only when the last one for the user went away."""
		async with self._lock_for(user_id):
			connections = self._connections.get(user_id)
			if not connections or connection_id not in connections:
				return False
			connections.discard(connection_id)
			self._last_active[user_id] = _now()
			if connections:
				return False
			del self._connections[user_id]
			return True

	def is_online(self, user_id: str) -> bool:
		return bool(self._connections.get(user_id))

	def is_visible_online(self, user_id: str) -> bool:
		return self.is_online(user_id) and self._status.get(user_id) is not PresenceStatus.INVISIBLE

	def list_online_users(self) -> List[str]:
		return list(self._connections.keys())

	def online_count(self) -> int:
		return len(self._connections)

	def connection_ids(self, user_id: str) -> Set[str]:
		return set(self._connections.get(user_id, ()))

	def status(self, user_id: str) -> PresenceStatus:
		if not self.is_online(user_id):
			return PresenceStatus.OFFLINE
		return self._status.get(user_id, PresenceStatus.ONLINE)

	def last_active(self, user_id: str) -> Optional[datetime]:
		return self._last_active.get(user_id)

	async def set_status(self, user_id: str, status: PresenceStatus) -> PresenceStatus:
		if status is PresenceStatus.OFFLINE:
			raise ValueError("offline is derived from connections")
		async with self._lock_for(user_id):
			previous = self._status.get(user_id, PresenceStatus.ONLINE)
			self._status[user_id] = status
			self._last_active[user_id] = _now()
			return previous

	async def touch(self, user_id: str) -> None:
		async with self._lock_for(user_id):
			self._last_active[user_id] = _now()

	def snapshot(self, user_id: str) -> PresenceSnapshot:
		status = self.status(user_id)
		return PresenceSnapshot(
			user_id=user_id,
			online=status not in (PresenceStatus.OFFLINE, PresenceStatus.INVISIBLE),
			status=PresenceStatus.OFFLINE if status is PresenceStatus.INVISIBLE else status,
			last_active=self._last_active.get(user_id),
		)

	async def prune_offline(self, older_than: timedelta, *, now: Optional[datetime] = None) -> int:
		"""Forget status and last-active for users offline longer than ``older_than``."""
		cutoff = (now or _now()) - older_than
		removed = 0
		for user_id in list(self._last_active.keys()):
			async with self._lock_for(user_id):
				if self._connections.get(user_id):
					continue
				seen = self._last_active.get(user_id)
				if seen is not None and seen < cutoff:
					self._last_active.pop(user_id, None)
					self._status.pop(user_id, None)
					removed += 1
		return removed

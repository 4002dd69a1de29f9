"""Friendship graph lookups used by the permission engine and presence."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Protocol, Set

from chatcore.infra.postgres import get_pool

ACCEPTED = "accepted"


class FriendshipGraph(Protocol):
	async def are_friends(self, user_a: str, user_b: str) -> bool: ...

	async def have_mutual_friends(self, user_a: str, user_b: str) -> bool: ...

	async def list_friend_ids(self, user_id: str) -> List[str]: ...


class PostgresFriendshipGraph:
	"""Graph over ``friendships`` rows; either direction of an accepted row counts."""

	async def are_friends(self, user_a: str, user_b: str) -> bool:
		if user_a == user_b:
			return False
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				SELECT 1 FROM friendships
				WHERE status = $3
				  AND ((user_id = $1 AND friend_id = $2) OR (user_id = $2 AND friend_id = $1))
				LIMIT 1
				""",
				user_a,
				user_b,
				ACCEPTED,
			)
		return row is not None

	async def have_mutual_friends(self, user_a: str, user_b: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				WITH a AS (
					SELECT friend_id AS uid FROM friendships WHERE user_id = $1 AND status = $3
					UNION SELECT user_id FROM friendships WHERE friend_id = $1 AND status = $3
				), b AS (
					SELECT friend_id AS uid FROM friendships WHERE user_id = $2 AND status = $3
					UNION SELECT user_id FROM friendships WHERE friend_id = $2 AND status = $3
				)
				SELECT 1 FROM a JOIN b USING (uid)
				WHERE uid <> $1 AND uid <> $2
				LIMIT 1
				""",
				user_a,
				user_b,
				ACCEPTED,
			)
		return row is not None

	async def list_friend_ids(self, user_id: str) -> List[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT friend_id AS uid FROM friendships WHERE user_id = $1 AND status = $2
				UNION SELECT user_id FROM friendships WHERE friend_id = $1 AND status = $2
				""",
				user_id,
				ACCEPTED,
			)
		return [str(row["uid"]) for row in rows]


class InMemoryFriendshipGraph:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._edges: Dict[str, Set[str]] = {}

	async def add_friendship(self, user_a: str, user_b: str) -> None:
		async with self._lock:
			self._edges.setdefault(user_a, set()).add(user_b)
			self._edges.setdefault(user_b, set()).add(user_a)

	async def remove_friendship(self, user_a: str, user_b: str) -> None:
		async with self._lock:
			self._edges.get(user_a, set()).discard(user_b)
			self._edges.get(user_b, set()).discard(user_a)

	async def are_friends(self, user_a: str, user_b: str) -> bool:
		async with self._lock:
			return user_b in self._edges.get(user_a, set())

	async def have_mutual_friends(self, user_a: str, user_b: str) -> bool:
		async with self._lock:
			shared = self._edges.get(user_a, set()) & self._edges.get(user_b, set())
		return bool(shared - {user_a, user_b})

	async def list_friend_ids(self, user_id: str) -> List[str]:
		async with self._lock:
			return sorted(self._edges.get(user_id, set()))

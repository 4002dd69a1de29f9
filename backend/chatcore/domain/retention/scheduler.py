"""In-memory deletion timers backed by the durable ``auto_delete_at`` columns."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, Optional, Tuple

from chatcore.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

MESSAGE = "message"
CHAT = "chat"

# Returns True when the row was deleted, False when it was already gone.
DueHandler = Callable[[str], Awaitable[bool]]


def _now() -> datetime:
	return datetime.now(timezone.utc)


@dataclass(slots=True, eq=False)
class _Timer:
	kind: str
	target_id: str
	due_at: datetime
	task: Optional[asyncio.Task] = None
	firing: bool = False
	failed: bool = field(default=False)


class RetentionScheduler:
	"""Arms one timer per pending deletion.

	The in-memory map is only a cache of the next wake-up; ``recover`` rebuilds
	it from storage. A timer whose deletion fails stays registered so the
	reaper sweep can confirm it later.
	"""

	def __init__(self, *, enabled: bool = True) -> None:
		self._enabled = enabled
		self._lock = asyncio.Lock()
		self._timers: Dict[Tuple[str, str], _Timer] = {}
		self._handlers: Dict[str, DueHandler] = {}

	def bind(self, *, on_message_due: DueHandler, on_chat_due: DueHandler) -> None:
		self._handlers[MESSAGE] = on_message_due
		self._handlers[CHAT] = on_chat_due

	@property
	def enabled(self) -> bool:
		return self._enabled

	def has_pending(self, target_id: str, kind: str = MESSAGE) -> bool:
		return (kind, target_id) in self._timers

	def pending_ids(self, kind: str = MESSAGE) -> list[str]:
		return [target for (timer_kind, target) in self._timers if timer_kind == kind]

	def failed_ids(self, kind: str = MESSAGE) -> list[str]:
		return [timer.target_id for timer in self._timers.values() if timer.kind == kind and timer.failed]

	def _publish_gauge(self, kind: str) -> None:
		obs_metrics.set_pending_timers(kind, sum(1 for key in self._timers if key[0] == kind))

	async def schedule(self, target_id: str, due_at: datetime, *, kind: str = MESSAGE) -> bool:
		"""Arm (or re-arm) the timer for ``target_id``; past-due rows fire immediately."""
		if not self._enabled:
			return False
		key = (kind, target_id)
		async with self._lock:
			previous = self._timers.pop(key, None)
			if previous is not None and previous.task is not None and not previous.firing:
				previous.task.cancel()
			timer = _Timer(kind=kind, target_id=target_id, due_at=due_at)
			timer.task = asyncio.create_task(self._run(timer), name=f"retention:{kind}:{target_id}")
			self._timers[key] = timer
			self._publish_gauge(kind)
		return True

	async def cancel(self, target_id: str, *, kind: str = MESSAGE) -> bool:
		"""Drop the timer. A timer already mid-fire is left to finish on its own."""
		key = (kind, target_id)
		async with self._lock:
			timer = self._timers.pop(key, None)
			if timer is None:
				return False
			if timer.task is not None and not timer.firing:
				timer.task.cancel()
			self._publish_gauge(kind)
		return True

	async def forget(self, target_ids: Iterable[str], *, kind: str = MESSAGE) -> int:
		"""Remove entries whose deletion was confirmed elsewhere (e.g. by the sweep)."""
		removed = 0
		for target_id in target_ids:
			if await self.cancel(target_id, kind=kind):
				removed += 1
		return removed

	async def _run(self, timer: _Timer) -> None:
		delay = (timer.due_at - _now()).total_seconds()
		if delay > 0:
			await asyncio.sleep(delay)
		timer.firing = True
		handler = self._handlers.get(timer.kind)
		if handler is None:
			LOGGER.error("no retention handler bound", extra={"kind": timer.kind, "target_id": timer.target_id})
			timer.failed = True
			timer.firing = False
			return
		try:
			deleted = await handler(timer.target_id)
		except Exception:
			obs_metrics.inc_timer_fire(timer.kind, "error")
			LOGGER.error(
				"retention timer failed",
				extra={"kind": timer.kind, "target_id": timer.target_id},
				exc_info=True,
			)
			timer.failed = True
			timer.firing = False
			return
		obs_metrics.inc_timer_fire(timer.kind, "deleted" if deleted else "already_deleted")
		async with self._lock:
			key = (timer.kind, timer.target_id)
			if self._timers.get(key) is timer:
				del self._timers[key]
			self._publish_gauge(timer.kind)

	async def recover(self, repository, *, now: Optional[datetime] = None) -> Tuple[int, int]:
		"""Re-arm timers for every undeleted row with a future deletion time."""
		if not self._enabled:
			return (0, 0)
		now = now or _now()
		messages = await repository.pending_message_deletions(now)
		for item in messages:
			await self.schedule(item.id, item.due_at, kind=MESSAGE)
		chats = await repository.pending_chat_deletions(now)
		for item in chats:
			await self.schedule(item.id, item.due_at, kind=CHAT)
		LOGGER.info(
			"retention timers recovered",
			extra={"messages": len(messages), "chats": len(chats)},
		)
		return (len(messages), len(chats))

	async def shutdown(self) -> None:
		async with self._lock:
			timers = list(self._timers.values())
			self._timers.clear()
		for timer in timers:
			if timer.task is not None and not timer.task.done():
				timer.task.cancel()
		for timer in timers:
			if timer.task is not None:
				try:
					await timer.task
				except asyncio.CancelledError:
					pass
		self._publish_gauge(MESSAGE)
		self._publish_gauge(CHAT)

"""Batch reaper: the sweep that backs up the in-memory deletion timers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from chatcore.domain.chat.models import TOMBSTONE_AFTER_READ, TOMBSTONE_EXPIRED
from chatcore.domain.chat.repo import ChatRepository
from chatcore.domain.retention.scheduler import CHAT, MESSAGE, RetentionScheduler
from chatcore.obs import metrics as obs_metrics
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

_JOB_NAME = "retention-reaper"


class RetentionReaper:
    """Soft-deletes expired rows in bounded batches.

    Each pass stops when a batch comes back short or ``max_batches`` is hit,
    pausing between batches to bound write load.
    """

    def __init__(
        self,
        repository: ChatRepository,
        scheduler: Optional[RetentionScheduler] = None,
        *,
        batch_size: Optional[int] = None,
        max_batches: Optional[int] = None,
        pause_seconds: Optional[float] = None,
    ) -> None:
        self.repo = repository
        self.scheduler = scheduler
        self.batch_size = batch_size or settings.reaper_batch_size
        self.max_batches = max_batches or settings.reaper_max_batches
        self.pause_seconds = settings.reaper_batch_pause_seconds if pause_seconds is None else pause_seconds

    async def _drain(self, pass_name: str, sweep, now: datetime) -> int:
        total = 0
        for batch_no in range(self.max_batches):
            ids = await sweep(now, limit=self.batch_size)
            total += len(ids)
            if ids and self.scheduler is not None:
                await self.scheduler.forget(ids, kind=MESSAGE)
            if len(ids) < self.batch_size:
                break
            if batch_no + 1 < self.max_batches and self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)
        if total:
            obs_metrics.inc_reaped(pass_name, total)
        return total

    async def _expire(self, now: datetime, *, limit: int):
        return await self.repo.expire_messages(now, limit=limit, text=TOMBSTONE_EXPIRED)

    async def _after_read(self, now: datetime, *, limit: int):
        return await self.repo.expire_read_after_read(now, limit=limit, text=TOMBSTONE_AFTER_READ)

    async def run_once(self, *, now: Optional[datetime] = None) -> Dict[str, int]:
        started = datetime.now(timezone.utc)
        now = now or started
        counts: Dict[str, int] = {"expired": 0, "after_read": 0, "chats": 0}
        result = "error"
        try:
            counts["expired"] = await self._drain("expired", self._expire, now)
            counts["after_read"] = await self._drain("after_read", self._after_read, now)
            chat_ids = await self.repo.expire_chats(now)
            counts["chats"] = len(chat_ids)
            if chat_ids and self.scheduler is not None:
                await self.scheduler.forget(chat_ids, kind=CHAT)
            result = "success"
            return counts
        finally:
            duration = (datetime.now(timezone.utc) - started).total_seconds()
            obs_metrics.record_job_run(_JOB_NAME, result=result, duration_seconds=duration)
            LOGGER.info("retention sweep finished", extra={"result": result, **counts})

    async def tick(self) -> None:
        """Scheduler entrypoint; failures wait for the next pass."""
        try:
            await self.run_once()
        except Exception:
            LOGGER.error("retention sweep failed", exc_info=True)

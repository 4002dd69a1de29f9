"""Service container wiring stores, collaborators and background work."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from chatcore.domain.chat.broadcaster import EventBroadcaster
from chatcore.domain.chat.repo import ChatRepository, InMemoryChatRepository, PostgresChatRepository
from chatcore.domain.chat.service import ChatService
from chatcore.domain.presence.registry import PresenceRegistry
from chatcore.domain.presence.service import PresenceService
from chatcore.domain.privacy.store import (
	InMemoryPrivacySettingsStore,
	PostgresPrivacySettingsStore,
	PrivacySettingsStore,
)
from chatcore.domain.retention.scheduler import RetentionScheduler
from chatcore.domain.social.graph import FriendshipGraph, InMemoryFriendshipGraph, PostgresFriendshipGraph
from chatcore.infra.scheduler import JobScheduler
from chatcore.maintenance.retention import RetentionReaper
from chatcore.settings import settings

LOGGER = logging.getLogger(__name__)

REAPER_JOB_ID = "retention-reaper"
PRESENCE_SWEEP_JOB_ID = "presence-sweep"


@dataclass(slots=True)
class ChatContainer:
	repository: ChatRepository
	privacy_store: PrivacySettingsStore
	graph: FriendshipGraph
	presence_registry: PresenceRegistry
	scheduler: RetentionScheduler
	broadcaster: EventBroadcaster
	chat_service: ChatService
	presence_service: PresenceService
	reaper: RetentionReaper
	jobs: JobScheduler


def build_container(
	*,
	memory: Optional[bool] = None,
	repository: Optional[ChatRepository] = None,
	privacy_store: Optional[PrivacySettingsStore] = None,
	graph: Optional[FriendshipGraph] = None,
	timers_enabled: Optional[bool] = None,
) -> ChatContainer:
	use_memory = settings.uses_memory_store() if memory is None else memory
	if repository is None:
		repository = InMemoryChatRepository() if use_memory else PostgresChatRepository()
	if privacy_store is None:
		privacy_store = InMemoryPrivacySettingsStore() if use_memory else PostgresPrivacySettingsStore()
	if graph is None:
		graph = InMemoryFriendshipGraph() if use_memory else PostgresFriendshipGraph()
	enabled = settings.retention_timers_enabled if timers_enabled is None else timers_enabled

	registry = PresenceRegistry()
	scheduler = RetentionScheduler(enabled=enabled)
	broadcaster = EventBroadcaster()
	chat_service = ChatService(
		repository,
		privacy_store=privacy_store,
		graph=graph,
		scheduler=scheduler,
		broadcaster=broadcaster,
	)
	scheduler.bind(on_message_due=chat_service.expire_message, on_chat_due=chat_service.expire_chat)
	presence_service = PresenceService(
		registry,
		privacy_store=privacy_store,
		graph=graph,
		broadcaster=broadcaster,
	)
	return ChatContainer(
		repository=repository,
		privacy_store=privacy_store,
		graph=graph,
		presence_registry=registry,
		scheduler=scheduler,
		broadcaster=broadcaster,
		chat_service=chat_service,
		presence_service=presence_service,
		reaper=RetentionReaper(repository, scheduler),
		jobs=JobScheduler(),
	)


async def start(container: ChatContainer) -> None:
	"""Re-arm timers from storage and start the periodic sweeps."""
	await container.scheduler.recover(container.repository)
	container.jobs.schedule_every(
		REAPER_JOB_ID,
		container.reaper.tick,
		seconds=settings.reaper_interval_minutes * 60,
	)
	container.jobs.schedule_every(
		PRESENCE_SWEEP_JOB_ID,
		container.presence_service.sweep,
		seconds=settings.presence_sweep_interval_seconds,
	)
	container.jobs.start()
	LOGGER.info("chat container started", extra={"jobs": container.jobs.job_ids()})


async def stop(container: ChatContainer) -> None:
	container.jobs.shutdown()
	await container.scheduler.shutdown()

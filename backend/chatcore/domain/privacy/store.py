"""Privacy settings store implementations and the read-boundary resolver."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from chatcore.domain.privacy.models import AllowLevel, PrivacySettings, ProfileVisibility, RetentionPeriod
from chatcore.domain.retention.policy import coerce_retention
from chatcore.infra.postgres import get_pool

LOGGER = logging.getLogger(__name__)

_ALLOW_VALUES = {level.value for level in AllowLevel}
_VISIBILITY_VALUES = {level.value for level in ProfileVisibility}


class PrivacySettingsStore(Protocol):
	async def get_settings(self, user_id: str) -> PrivacySettings: ...


def _pick(sources: tuple[Mapping[str, Any], ...], *names: str) -> Any:
	for source in sources:
		for name in names:
			if name in source and source[name] is not None:
				return source[name]
	return None


def _as_bool(value: Any, default: bool) -> bool:
	if value is None:
		return default
	if isinstance(value, str):
		return value.strip().lower() in {"1", "true", "yes", "on"}
	return bool(value)


def _section(raw: Mapping[str, Any], *names: str) -> Mapping[str, Any]:
	for name in names:
		value = raw.get(name)
		if isinstance(value, Mapping):
			return value
	return {}


def resolve_settings(user_id: str, raw: Optional[Mapping[str, Any]]) -> PrivacySettings:
	"""Resolve a raw settings document into a fully-populated PrivacySettings.

	Accepts flat documents or ones nested under ``messageSettings`` /
	``baseSettings``, with camelCase or snake_case keys. Missing values take
	the defaults; an unknown ``allow_messages_from`` is kept verbatim so the
	permission engine can fail closed on it.
	"""
	raw = raw or {}
	message = _section(raw, "messageSettings", "message_settings")
	base = _section(raw, "baseSettings", "base_settings")
	sources = (message, base, raw)

	allow = _pick(sources, "allowMessagesFrom", "allow_messages_from")
	if allow is None:
		allow_value = AllowLevel.EVERYONE.value
	else:
		allow_value = str(allow).strip().lower()
		if allow_value not in _ALLOW_VALUES:
			LOGGER.warning(
				"unrecognised allow_messages_from value",
				extra={"target_user_id": user_id, "allow_value": allow_value},
			)

	retention_raw = _pick(sources, "messageRetentionPeriod", "retentionPeriod", "retention_period", "retention")
	visibility = _pick(sources, "profileVisibility", "profile_visibility")
	visibility_value = str(visibility).strip().lower() if visibility is not None else ProfileVisibility.PUBLIC.value
	if visibility_value not in _VISIBILITY_VALUES:
		# unknown visibility degrades to the most private option
		visibility_value = ProfileVisibility.PRIVATE.value

	return PrivacySettings(
		user_id=user_id,
		allow_messages_from=allow_value,
		retention=coerce_retention(retention_raw) if retention_raw is not None else RetentionPeriod.FOREVER,
		allow_read_receipts=_as_bool(
			_pick(sources, "allowMessageReadReceipts", "allowReadReceipts", "allow_read_receipts"), True
		),
		allow_forwarding=_as_bool(_pick(sources, "allowForwarding", "allow_forwarding"), True),
		profile_visibility=visibility_value,
		show_online_status=_as_bool(_pick(sources, "showOnlineStatus", "show_online_status"), True),
		show_last_active=_as_bool(_pick(sources, "showLastActive", "show_last_active"), True),
	)


class PostgresPrivacySettingsStore:
	"""Reads the JSON ``settings`` column of ``user_privacy_settings``."""

	async def get_settings(self, user_id: str) -> PrivacySettings:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT settings FROM user_privacy_settings WHERE user_id = $1", user_id)
		if not row:
			return resolve_settings(user_id, None)
		raw = row["settings"]
		if isinstance(raw, str):
			raw = json.loads(raw) if raw else {}
		return resolve_settings(user_id, raw)


class InMemoryPrivacySettingsStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self._documents: Dict[str, Dict[str, Any]] = {}

	async def put(self, user_id: str, document: Mapping[str, Any]) -> PrivacySettings:
		async with self._lock:
			self._documents[user_id] = dict(document)
		return resolve_settings(user_id, document)

	async def get_settings(self, user_id: str) -> PrivacySettings:
		async with self._lock:
			document = self._documents.get(user_id)
		return resolve_settings(user_id, document)

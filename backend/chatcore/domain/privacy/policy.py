"""Permission engine: who may message, forward to, or observe whom."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from chatcore.domain import errors
from chatcore.domain.privacy.models import AllowLevel, PrivacySettings, ProfileVisibility
from chatcore.domain.privacy.store import PrivacySettingsStore
from chatcore.domain.social.graph import FriendshipGraph


@dataclass(frozen=True, slots=True)
class Decision:
	allowed: bool
	reason: Optional[str] = None

	def __bool__(self) -> bool:
		return self.allowed


ALLOW = Decision(True)


async def can_send_message(
	sender_id: str,
	recipient_id: str,
	recipient_settings: PrivacySettings,
	graph: FriendshipGraph,
) -> Decision:
	if sender_id == recipient_id:
		return ALLOW
	level = recipient_settings.allow_messages_from
	if level == AllowLevel.EVERYONE:
		return ALLOW
	if level == AllowLevel.NOBODY:
		return Decision(False, errors.RECIPIENT_BLOCKS_MESSAGES)
	if level == AllowLevel.FRIENDS:
		if await graph.are_friends(sender_id, recipient_id):
			return ALLOW
		return Decision(False, errors.NOT_FRIENDS)
	if level == AllowLevel.FRIENDS_OF_FRIENDS:
		if await graph.are_friends(sender_id, recipient_id):
			return ALLOW
		if await graph.have_mutual_friends(sender_id, recipient_id):
			return ALLOW
		return Decision(False, errors.NO_MUTUAL_FRIENDS)
	return Decision(False, errors.UNKNOWN_PRIVACY_LEVEL)


async def ensure_can_send_message(
	sender_id: str,
	recipient_id: str,
	settings_store: PrivacySettingsStore,
	graph: FriendshipGraph,
) -> None:
	if sender_id == recipient_id:
		return
	recipient_settings = await settings_store.get_settings(recipient_id)
	decision = await can_send_message(sender_id, recipient_id, recipient_settings, graph)
	if not decision.allowed:
		raise errors.PermissionDenied(decision.reason, f"{recipient_id} does not accept messages from {sender_id}")


async def ensure_can_add_participants(
	adder_id: str,
	user_ids: Iterable[str],
	settings_store: PrivacySettingsStore,
	graph: FriendshipGraph,
) -> None:
	"""Check every prospective participant against the adder before anything is written."""
	for user_id in user_ids:
		await ensure_can_send_message(adder_id, user_id, settings_store, graph)


def should_send_read_receipt(reader_settings: PrivacySettings, sender_settings: PrivacySettings) -> bool:
	return reader_settings.allow_read_receipts and sender_settings.allow_read_receipts


def can_forward_message(original_sender_settings: PrivacySettings) -> bool:
	return original_sender_settings.allow_forwarding


def ensure_can_forward(
	forwarder_id: str,
	original_sender_settings: PrivacySettings,
	*,
	is_source_participant: bool,
) -> None:
	if not is_source_participant and forwarder_id != original_sender_settings.user_id:
		raise errors.NotParticipant(message="forwarder is not part of the source chat")
	if not can_forward_message(original_sender_settings):
		raise errors.PermissionDenied(errors.FORWARDING_DISABLED, "original sender disallows forwarding")


async def _visible_by_profile(viewer_id: str, target: PrivacySettings, graph: FriendshipGraph) -> bool:
	if target.profile_visibility == ProfileVisibility.PUBLIC:
		return True
	if target.profile_visibility == ProfileVisibility.FRIENDS:
		return await graph.are_friends(viewer_id, target.user_id)
	return False


async def can_see_online_status(viewer_id: str, target: PrivacySettings, graph: FriendshipGraph) -> bool:
	if viewer_id == target.user_id:
		return True
	if not target.show_online_status:
		return False
	return await _visible_by_profile(viewer_id, target, graph)


async def can_see_last_active(viewer_id: str, target: PrivacySettings, graph: FriendshipGraph) -> bool:
	if viewer_id == target.user_id:
		return True
	if not target.show_last_active:
		return False
	return await _visible_by_profile(viewer_id, target, graph)

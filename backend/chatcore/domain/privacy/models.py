"""Privacy settings consulted by the permission engine."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AllowLevel(str, Enum):
	EVERYONE = "everyone"
	FRIENDS = "friends"
	FRIENDS_OF_FRIENDS = "friends_of_friends"
	NOBODY = "nobody"


class ProfileVisibility(str, Enum):
	PUBLIC = "public"
	FRIENDS = "friends"
	PRIVATE = "private"


class RetentionPeriod(str, Enum):
	"""Message retention, declared shortest first."""

	AFTER_READ = "after_read"
	ONE_DAY = "one_day"
	ONE_WEEK = "one_week"
	ONE_MONTH = "one_month"
	THREE_MONTHS = "three_months"
	SIX_MONTHS = "six_months"
	ONE_YEAR = "one_year"
	FOREVER = "forever"


@dataclass(frozen=True, slots=True)
class PrivacySettings:
	"""Fully-populated privacy settings for a single user.

	``allow_messages_from`` stays a plain string so that a value this build
	does not recognise reaches the permission engine verbatim and is denied.
	"""

	user_id: str
	allow_messages_from: str = AllowLevel.EVERYONE.value
	retention: RetentionPeriod = RetentionPeriod.FOREVER
	allow_read_receipts: bool = True
	allow_forwarding: bool = True
	profile_visibility: str = ProfileVisibility.PUBLIC.value
	show_online_status: bool = True
	show_last_active: bool = True

"""Retention ordering and expiry arithmetic."""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from chatcore.domain.privacy.models import RetentionPeriod

LOGGER = logging.getLogger(__name__)

# Declaration order of RetentionPeriod is shortest first.
_RANK = {period: index for index, period in enumerate(RetentionPeriod)}
_MONTHS = {
	RetentionPeriod.ONE_MONTH: 1,
	RetentionPeriod.THREE_MONTHS: 3,
	RetentionPeriod.SIX_MONTHS: 6,
	RetentionPeriod.ONE_YEAR: 12,
}


def parse_retention(value: Any) -> Optional[RetentionPeriod]:
	"""Return the matching period, or None when the value is not recognised."""
	if isinstance(value, RetentionPeriod):
		return value
	if value is None:
		return None
	key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
	try:
		return RetentionPeriod(key)
	except ValueError:
		return None


def coerce_retention(value: Any) -> RetentionPeriod:
	"""Map a stored value onto a period, ranking unknown values as FOREVER."""
	period = parse_retention(value)
	if period is None:
		LOGGER.warning("unrecognised retention value", extra={"retention_value": str(value)})
		return RetentionPeriod.FOREVER
	return period


def rank(value: Any) -> int:
	return _RANK[coerce_retention(value)]


def strictest_retention(first: Any, second: Any) -> RetentionPeriod:
	"""Return the shorter of two retention policies."""
	a = coerce_retention(first)
	b = coerce_retention(second)
	return a if _RANK[a] <= _RANK[b] else b


def strictest_of(values: Iterable[Any]) -> RetentionPeriod:
	"""Strictest policy over any number of users; FOREVER when there are none."""
	result = RetentionPeriod.FOREVER
	for value in values:
		result = strictest_retention(result, value)
	return result


def add_months(moment: datetime, months: int) -> datetime:
	"""Calendar month addition, clamping the day to the target month's length."""
	month_index = moment.month - 1 + months
	year = moment.year + month_index // 12
	month = month_index % 12 + 1
	day = min(moment.day, calendar.monthrange(year, month)[1])
	return moment.replace(year=year, month=month, day=day)


def compute_expiry(policy: Any, now: datetime) -> Optional[datetime]:
	"""Absolute deletion time for a message created at ``now``.

	FOREVER never expires. AFTER_READ has no precomputed expiry; such
	messages are deleted when they are read.
	"""
	period = coerce_retention(policy)
	if period in (RetentionPeriod.FOREVER, RetentionPeriod.AFTER_READ):
		return None
	if period is RetentionPeriod.ONE_DAY:
		return now + timedelta(days=1)
	if period is RetentionPeriod.ONE_WEEK:
		return now + timedelta(days=7)
	return add_months(now, _MONTHS[period])


def is_after_read(policy: Any) -> bool:
	return parse_retention(policy) is RetentionPeriod.AFTER_READ

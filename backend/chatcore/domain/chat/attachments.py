"""Attachment helpers for chat messages."""

from __future__ import annotations

from typing import Iterable, List, Mapping

import ulid

from chatcore.domain.errors import ValidationError

from .models import MediaAttachment

_ALLOWED_PREFIXES = ("image/", "video/", "audio/", "application/pdf")


def _ensure_ulid(value: str | None) -> str:
	return value or str(ulid.new())


def normalize_media(items: Iterable[Mapping[str, object]] | None, *, max_items: int) -> List[MediaAttachment]:
	"""Validate and normalise media payloads sent by clients.

	Each item may include:
	- attachment_id (optional ULID string)
	- media_type (required)
	- url (optional, for already uploaded assets)
	- size_bytes (optional)
	- file_name (optional)
	"""

	normalized: List[MediaAttachment] = []
	if not items:
		return normalized
	items = list(items)
	if len(items) > max_items:
		raise ValidationError("too_many_media", f"at most {max_items} media items per message")
	for entry in items:
		media_type = str(entry.get("media_type") or entry.get("type") or "").strip()
		if not media_type or not media_type.lower().startswith(_ALLOWED_PREFIXES):
			raise ValidationError("unsupported_media_type", "unsupported media type")
		size = entry.get("size_bytes")
		normalized.append(
			MediaAttachment(
				attachment_id=_ensure_ulid(str(entry.get("attachment_id") or "")),
				media_type=media_type,
				url=str(entry.get("url")) if entry.get("url") else None,
				size_bytes=int(size) if size is not None else None,
				file_name=str(entry.get("file_name")) if entry.get("file_name") else None,
			)
		)
	return normalized


def media_from_json(payload: Iterable[Mapping[str, object]] | None) -> tuple[MediaAttachment, ...]:
	"""Rebuild stored media without re-validating it."""
	if not payload:
		return ()
	return tuple(
		MediaAttachment(
			attachment_id=str(item.get("attachment_id")),
			media_type=str(item.get("media_type")),
			url=item.get("url"),  # type: ignore[arg-type]
			size_bytes=item.get("size_bytes"),  # type: ignore[arg-type]
			file_name=item.get("file_name"),  # type: ignore[arg-type]
		)
		for item in payload
	)

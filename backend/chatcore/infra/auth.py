"""Authentication helpers for socket connections.

Connections present a bearer JWT verified with PyJWT. Dev headers are only
respected in development.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple

from chatcore.domain.errors import NotAuthenticated
from chatcore.infra import jwt as jwt_helper
from chatcore.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


def _parse_roles(claim: Any) -> Tuple[str, ...]:
	if isinstance(claim, (list, tuple)):
		return tuple(str(r).strip() for r in claim if str(r).strip())
	if isinstance(claim, str):
		return tuple(part.strip() for part in claim.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser.

	- issuer="chatcore-auth", audience="chatcore-clients"
	- required claims: sub, exp, iat
	- roles can be list[str] or comma-separated string.
	"""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise NotAuthenticated("invalid_token")
	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise NotAuthenticated("invalid_token")
	return AuthenticatedUser(id=sub, roles=_parse_roles(payload.get("roles") or payload.get("role")))


def header(scope: Mapping[str, Any], name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []) or []:
		if key.lower() == target:
			return value.decode()
	return None


def _bearer_from_header(value: Optional[str]) -> Optional[str]:
	if value and value.lower().startswith("bearer "):
		return value.split(" ", 1)[1].strip() or None
	return None


def authenticate_socket(scope: Mapping[str, Any], auth_payload: Optional[Mapping[str, Any]]) -> AuthenticatedUser:
	"""Resolve the identity of an incoming socket connection.

	Prefers ``auth.token`` then the ``Authorization`` header. In development a
	bare ``auth.userId`` or ``X-User-Id`` header is accepted for local tools.
	"""
	auth_payload = auth_payload or {}
	token = auth_payload.get("token") or _bearer_from_header(header(scope, "authorization"))
	if token:
		return verify_access_jwt(str(token))
	if settings.is_dev():
		user_id = auth_payload.get("userId") or header(scope, "x-user-id")
		if user_id:
			roles = _parse_roles(auth_payload.get("roles") or header(scope, "x-user-roles"))
			return AuthenticatedUser(id=str(user_id), roles=roles)
	raise NotAuthenticated("missing_token")


def client_address(scope: Mapping[str, Any]) -> str:
	forwarded = header(scope, "x-forwarded-for")
	if forwarded:
		return forwarded.split(",")[0].strip()
	client = scope.get("client")
	if client:
		return str(client[0])
	return "unknown"

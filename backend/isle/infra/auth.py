"""Authentication helpers for FastAPI endpoints.

Bearer JWTs are always honoured. The `X-User-Id` header is only respected in
development so local tools can act as any traveller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from isle.infra import jwt as jwt_helper
from isle.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	handle: Optional[str] = None
	display_name: Optional[str] = None
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser."""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		# Normalise all decode failures to invalid_token for the API surface
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	handle = payload.get("handle")
	display_name = payload.get("name") or payload.get("display_name")
	roles_claim = payload.get("roles") or payload.get("role")
	roles: Tuple[str, ...]
	if isinstance(roles_claim, (list, tuple)):
		roles = tuple(str(r).strip() for r in roles_claim if str(r).strip())
	elif isinstance(roles_claim, str):
		roles = tuple(part.strip() for part in roles_claim.split(",") if part.strip())
	else:
		roles = ()

	return AuthenticatedUser(
		id=sub,
		handle=str(handle) if handle is not None else None,
		display_name=str(display_name) if display_name is not None else None,
		roles=roles,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow a simple header. In all other environments the header
	is ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)

	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id.strip())

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

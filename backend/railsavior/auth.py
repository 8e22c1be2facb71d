"""Caller identity.

The service sits behind an auth gateway that forwards the verified user id
and role as request headers. Reads are open; writes need an identity.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from railsavior import config


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_current_user(request: Request) -> Optional[Caller]:
    user_id = (request.headers.get(config.get_auth_user_header()) or "").strip()
    if not user_id:
        return None
    role = (request.headers.get(config.get_auth_role_header()) or "user").strip().lower()
    return Caller(user_id=user_id, role=role)


def require_user(request: Request) -> Caller:
    caller = get_current_user(request)
    if caller is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return caller

from fastapi import Depends, Header
from fastapi.security import OAuth2PasswordBearer
from enum import Enum
from typing import Optional, Union
import logging
import os

from pydantic import BaseModel

from backend import PosBackend
from errors import PermissionDenied, ValidationError, to_http

logger = logging.getLogger(__name__)

# --- Auth configuration ---
# Tokens are issued elsewhere; the service only forwards them to the PHP backend
AUTH_TOKEN_URL = os.getenv("AUTH_TOKEN_URL", "/auth/token")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=AUTH_TOKEN_URL, auto_error=False)


class Role(str, Enum):
    BRANCH_ADMIN = "branch-admin"
    ACCOUNTANT = "accountant"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "Role":
        key = (raw or "").strip().lower().replace("_", "-").replace(" ", "-")
        if key in ("accountant", "accounts"):
            return cls.ACCOUNTANT
        return cls.BRANCH_ADMIN


# Actions each role may perform; the order lifecycle itself is identical for both
ROLE_ACTIONS = {
    Role.BRANCH_ADMIN: {"view", "place", "edit", "change_status", "cancel", "delete", "generate_bill", "pay", "print", "kot", "mark_complete"},
    Role.ACCOUNTANT: {"view", "place", "edit", "change_status", "cancel", "generate_bill", "pay", "print", "kot", "mark_complete"},
}


class Session(BaseModel):
    terminal: Union[int, str] = 1
    branch_id: Optional[Union[int, str]] = None
    token: Optional[str] = None
    role: Role = Role.BRANCH_ADMIN

    def require_branch(self) -> Union[int, str]:
        """Branch-scoped backend calls are blocked before reaching the network without a branch id."""
        if self.branch_id in (None, ""):
            raise ValidationError("Branch ID is missing. Please login again.")
        return self.branch_id

    def can(self, action: str) -> bool:
        return action in ROLE_ACTIONS.get(self.role, set())

    def require(self, action: str):
        if not self.can(action):
            logger.warning(f"⚠️ Role '{self.role.value}' attempted forbidden action '{action}'")
            raise PermissionDenied(f"Your role ({self.role.value}) is not allowed to {action.replace('_', ' ')} orders.")


def _coerce_id(raw: Optional[str]) -> Optional[Union[int, str]]:
    if raw is None or not str(raw).strip():
        return None
    raw = str(raw).strip()
    return int(raw) if raw.isdigit() else raw


async def get_session(
    x_terminal: Optional[str] = Header(None),
    x_branch_id: Optional[str] = Header(None),
    x_role: Optional[str] = Header(None),
    token: Optional[str] = Depends(oauth2_scheme),
) -> Session:
    session = Session(
        terminal=_coerce_id(x_terminal) or 1,
        branch_id=_coerce_id(x_branch_id),
        token=token,
        role=Role.parse(x_role),
    )
    if session.branch_id is None:
        logger.error("❌ Request without X-Branch-Id header")
        raise to_http(ValidationError("Branch ID is missing. Please login again."))
    return session


async def get_backend(session: Session = Depends(get_session)) -> PosBackend:
    return PosBackend(token=session.token)


def require_action(action: str):
    """Dependency factory gating a route on the caller's role."""
    async def checker(session: Session = Depends(get_session)) -> Session:
        try:
            session.require(action)
        except PermissionDenied as e:
            raise to_http(e)
        return session
    return checker

from __future__ import annotations

from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from erp.core.config import get_settings


CRM_READ_PERMISSIONS = frozenset(
    {
        "crm.pipelines.read",
        "crm.deals.read",
        "crm.activities.read",
        "crm.analytics.read",
    }
)
CRM_WRITE_PERMISSIONS = frozenset({"crm.deals.write", "crm.activities.write"})

# Roles a token may carry instead of spelling out every permission.
ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "crm.viewer": CRM_READ_PERMISSIONS,
    "crm.sales": CRM_READ_PERMISSIONS | CRM_WRITE_PERMISSIONS,
    "crm.manager": CRM_READ_PERMISSIONS
    | CRM_WRITE_PERMISSIONS
    | frozenset({"crm.pipelines.manage", "crm.deals.convert"}),
    "admin": CRM_READ_PERMISSIONS
    | CRM_WRITE_PERMISSIONS
    | frozenset({"crm.pipelines.manage", "crm.deals.convert", "system.metrics.read"}),
}


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    permissions: list[str] = field(default_factory=list)

    def granted(self) -> set[str]:
        """Explicit permissions, role expansions, and role names themselves."""
        granted = set(self.permissions) | set(self.roles)
        for role in self.roles:
            granted |= ROLE_PERMISSIONS.get(role, frozenset())
        return granted

    def has(self, permission: str) -> bool:
        return permission in self.granted()


def guest() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


def _string_list(value: object, default: list[str]) -> list[str]:
    if not isinstance(value, list):
        return default
    return [str(item) for item in value]


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return guest()
    return AuthUser(
        sub=str(payload.get("sub", "anonymous")),
        roles=_string_list(payload.get("roles"), ["user"]),
        permissions=_string_list(payload.get("permissions"), []),
    )


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return guest()
    token = auth_header.removeprefix("Bearer ").strip()
    return decode_token(token) if token else guest()

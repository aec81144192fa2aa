from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from solar_crm.core.config import get_settings
from solar_crm.core.context import get_request_context


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=[])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=[])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles")
    if roles is None and payload.get("role") is not None:
        roles = [payload["role"]]
    if not isinstance(roles, list):
        roles = []
    context = get_request_context(request)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])

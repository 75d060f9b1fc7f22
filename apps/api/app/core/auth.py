import uuid
from dataclasses import dataclass

from starlette.requests import Request

from app.auth.tokens import verify_access_token
from app.context import set_user_id
from app.core.errors import AuthenticationError


@dataclass
class AuthUser:
    sub: str
    email: str
    role: str

    @property
    def id(self) -> uuid.UUID:
        return uuid.UUID(self.sub)


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        raise AuthenticationError("Access token required", code="INVALID_TOKEN")

    payload = verify_access_token(token)
    if payload is None:
        raise AuthenticationError("Invalid or expired access token", code="INVALID_TOKEN")
    try:
        uuid.UUID(payload.user_id)
    except ValueError as exc:
        raise AuthenticationError("Invalid or expired access token", code="INVALID_TOKEN") from exc

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = payload.user_id
    set_user_id(payload.user_id)
    return AuthUser(sub=payload.user_id, email=payload.email, role=payload.role)
